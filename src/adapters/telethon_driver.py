"""Telethon transport driver.

Adapts one TelegramClient to the core TransportDriver port: QR pairing,
incoming message events, sends and chat listings.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from telethon import TelegramClient, errors, events

from adapters.telegram_mapper import build_chat_summary, build_inbound
from core.errors import AuthError
from core.models import ChatSummary, InboundMessage, SentReceipt
from core.ports import DriverListener

LOGGER = logging.getLogger(__name__)


class TelethonDriver:
    """Drive a single Telegram account through a Telethon client."""

    # Telegram peers are plain ids, usernames or phone numbers.
    chat_suffix = ""

    def __init__(
        self,
        client: TelegramClient,
        qr_timeout: int = 120,
        qr_max_attempts: int = 3,
        password: Optional[str] = None,
    ) -> None:
        self._client = client
        self._qr_timeout = qr_timeout
        self._qr_max_attempts = max(1, qr_max_attempts)
        self._password = password
        self._listener: Optional[DriverListener] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._destroyed = False

    def set_listener(self, listener: DriverListener) -> None:
        self._listener = listener

    def _require_listener(self) -> DriverListener:
        if self._listener is None:
            raise RuntimeError("Driver listener is not set")
        return self._listener

    async def connect(self) -> None:
        listener = self._require_listener()
        await self._client.connect()
        if not await self._client.is_user_authorized():
            try:
                await self._authorize_with_qr(listener)
            except AuthError as exc:
                LOGGER.warning("Authorization failed: %s", exc)
                await listener.on_auth_failure(str(exc))
                return
        if self._destroyed:
            return

        self._client.add_event_handler(self._on_new_message, events.NewMessage(incoming=True))
        self._watch_task = asyncio.create_task(self._watch_disconnect())
        me = await self._client.get_me()
        LOGGER.info("Logged in as: %s", getattr(me, "first_name", None) or getattr(me, "id", "?"))
        await listener.on_ready()

    async def _authorize_with_qr(self, listener: DriverListener) -> None:
        qr = await self._client.qr_login()
        for attempt in range(1, self._qr_max_attempts + 1):
            await listener.on_qr(qr.url)
            try:
                await qr.wait(timeout=self._qr_timeout)
                return
            except asyncio.TimeoutError:
                LOGGER.info("QR code expired (attempt %s/%s)", attempt, self._qr_max_attempts)
                if attempt < self._qr_max_attempts:
                    await qr.recreate()
            except errors.SessionPasswordNeededError:
                await self._sign_in_with_password()
                return
        raise AuthError("QR code was not scanned in time")

    async def _sign_in_with_password(self) -> None:
        if not self._password:
            raise AuthError("Two-step verification password required (set 2FA)")
        try:
            await self._client.sign_in(password=self._password)
        except errors.PasswordHashInvalidError as exc:
            raise AuthError("Invalid two-step verification password") from exc

    async def _on_new_message(self, event: Any) -> None:
        # Resolve the sender entity so the mapper can see its phone number.
        try:
            await event.message.get_sender()
        except Exception:
            LOGGER.debug("Could not resolve sender for message %s", event.message.id)
        if self._listener is None or self._destroyed:
            return
        await self._listener.on_message(build_inbound(event.message))

    async def _watch_disconnect(self) -> None:
        try:
            await self._client.disconnected
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            reason = str(exc) or exc.__class__.__name__
        else:
            reason = "Connection closed"
        if not self._destroyed and self._listener is not None:
            await self._listener.on_disconnected(reason)

    async def _resolve_peer(self, chat_id: str) -> Any:
        try:
            peer: Any = int(chat_id)
        except ValueError:
            return await self._client.get_input_entity(chat_id)
        try:
            return await self._client.get_input_entity(peer)
        except ValueError:
            # Bare digits that are not a known id are tried as a phone contact.
            return await self._client.get_input_entity(f"+{chat_id}")

    async def send_message(self, chat_id: str, text: str, media: Optional[str] = None) -> SentReceipt:
        entity = await self._resolve_peer(chat_id)
        if media:
            sent = await self._client.send_file(entity, media, caption=text)
        else:
            sent = await self._client.send_message(entity, text)
        return SentReceipt(message_id=str(sent.id), timestamp=sent.date)

    async def get_chats(self) -> list[ChatSummary]:
        chats: list[ChatSummary] = []
        async for dialog in self._client.iter_dialogs():
            chats.append(build_chat_summary(dialog))
        return chats

    async def fetch_messages(self, chat_id: str, limit: int) -> list[InboundMessage]:
        entity = await self._resolve_peer(chat_id)
        messages = []
        async for message in self._client.iter_messages(entity, limit=limit):
            messages.append(build_inbound(message))
        # Oldest first, like a chat transcript.
        return list(reversed(messages))

    async def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        self._client.remove_event_handler(self._on_new_message)
        current = asyncio.current_task()
        if self._watch_task is not None and self._watch_task is not current:
            self._watch_task.cancel()
        await self._client.disconnect()
