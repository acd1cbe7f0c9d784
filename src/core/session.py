"""Account session: one authenticated transport connection for one account.

The session is the driver's listener. Driver events move it through the
connection state machine; every accepted transition is reported to the
owner (the registry) through ``on_state_change``. Incoming messages are
queued and handed to ``on_message`` by a single worker task so they are
processed one at a time in arrival order.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from core.errors import TransportError
from core.models import (
    AccountStatus,
    ChatSummary,
    ConnectionState,
    Direction,
    InboundMessage,
    Message,
    SentReceipt,
    TERMINAL_STATES,
)
from core.ports import TransportDriver

LOGGER = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.AUTHENTICATING}),
    ConnectionState.AUTHENTICATING: frozenset(
        {
            ConnectionState.AWAITING_SCAN,
            ConnectionState.CONNECTED,
            ConnectionState.AUTH_FAILED,
            ConnectionState.ERROR,
            ConnectionState.DISCONNECTED,
        }
    ),
    # awaiting_scan -> awaiting_scan is a refreshed pairing token.
    ConnectionState.AWAITING_SCAN: frozenset(
        {
            ConnectionState.AWAITING_SCAN,
            ConnectionState.CONNECTED,
            ConnectionState.AUTH_FAILED,
            ConnectionState.ERROR,
            ConnectionState.DISCONNECTED,
        }
    ),
    ConnectionState.CONNECTED: frozenset(
        {ConnectionState.DISCONNECTED, ConnectionState.AUTH_FAILED, ConnectionState.ERROR}
    ),
    ConnectionState.AUTH_FAILED: frozenset(),
    ConnectionState.ERROR: frozenset(),
}

StateCallback = Callable[["AccountSession", ConnectionState, Optional[str]], Awaitable[None]]
MessageCallback = Callable[["AccountSession", Message], Awaitable[None]]


def can_transition(current: ConnectionState, target: ConnectionState) -> bool:
    return target in _ALLOWED_TRANSITIONS[current]


class AccountSession:
    """Connection lifecycle and message log for one account."""

    def __init__(
        self,
        account_id: str,
        display_name: str,
        driver: TransportDriver,
        on_state_change: StateCallback,
        on_message: MessageCallback,
        message_log_size: int = 500,
    ) -> None:
        self.account_id = account_id
        self.display_name = display_name
        self._driver = driver
        self._on_state_change = on_state_change
        self._on_message = on_message
        self._state = ConnectionState.DISCONNECTED
        self._pairing_token: Optional[str] = None
        self._messages: deque[Message] = deque(maxlen=message_log_size)
        self._inbox: asyncio.Queue[Optional[Message]] = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._auth_task: Optional[asyncio.Task] = None
        self._closed = False
        driver.set_listener(self)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def pairing_token(self) -> Optional[str]:
        return self._pairing_token

    @property
    def chat_suffix(self) -> str:
        return self._driver.chat_suffix

    @property
    def is_closed(self) -> bool:
        return self._closed

    def status(self) -> AccountStatus:
        return AccountStatus(
            account_id=self.account_id,
            name=self.display_name,
            state=self._state,
            pairing_token=self._pairing_token,
        )

    def messages(self) -> list[Message]:
        return list(self._messages)

    def begin(self) -> asyncio.Task:
        """Start authentication in the background and return its task."""

        self._auth_task = asyncio.create_task(self.start())
        return self._auth_task

    async def start(self) -> None:
        """Run the authentication flow; outcomes arrive as state changes."""

        if self._worker is None:
            self._worker = asyncio.create_task(self._process_inbox())
        await self._transition(ConnectionState.AUTHENTICATING)
        try:
            await self._driver.connect()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.exception("Transport connect failed for account %s", self.account_id)
            await self._transition(ConnectionState.ERROR, str(exc))

    async def _transition(self, target: ConnectionState, reason: Optional[str] = None) -> bool:
        if self._closed:
            return False
        if not can_transition(self._state, target):
            LOGGER.warning(
                "Ignoring transition %s -> %s for account %s",
                self._state.value,
                target.value,
                self.account_id,
            )
            return False
        self._state = target
        if target is not ConnectionState.AWAITING_SCAN:
            self._pairing_token = None
        LOGGER.info("Account %s is now %s", self.account_id, target.value)
        await self._on_state_change(self, target, reason)
        return True

    # Driver listener --------------------------------------------------------

    async def on_qr(self, token: str) -> None:
        if self._closed or not can_transition(self._state, ConnectionState.AWAITING_SCAN):
            LOGGER.warning("Unexpected pairing token for account %s", self.account_id)
            return
        self._pairing_token = token
        await self._transition(ConnectionState.AWAITING_SCAN)

    async def on_ready(self) -> None:
        await self._transition(ConnectionState.CONNECTED)

    async def on_disconnected(self, reason: str) -> None:
        await self._transition(ConnectionState.DISCONNECTED, reason)

    async def on_auth_failure(self, reason: str) -> None:
        await self._transition(ConnectionState.AUTH_FAILED, reason)

    async def on_message(self, message: InboundMessage) -> None:
        if self._closed:
            return
        recorded = Message(
            id=message.id,
            account_id=self.account_id,
            sender=message.sender,
            body=message.body,
            timestamp=message.timestamp,
            direction=Direction.IN,
            chat_id=message.chat_id,
        )
        self._messages.append(recorded)
        self._inbox.put_nowait(recorded)

    async def _process_inbox(self) -> None:
        while True:
            message = await self._inbox.get()
            try:
                if message is None:
                    return
                await self._on_message(self, message)
            except Exception:
                # One bad message must never stop the account's inbox.
                LOGGER.exception("Error while processing message for account %s", self.account_id)
            finally:
                self._inbox.task_done()

    async def join(self) -> None:
        """Wait until every queued incoming message has been handled."""

        await self._inbox.join()

    # Commands ---------------------------------------------------------------

    def _require_connected(self) -> None:
        if self._state is not ConnectionState.CONNECTED:
            raise TransportError(
                f"Account {self.account_id} is not connected (status: {self._state.value})"
            )

    async def send(self, chat_id: str, text: str, media: Optional[str] = None) -> SentReceipt:
        self._require_connected()
        try:
            receipt = await self._driver.send_message(chat_id, text, media)
        except TransportError:
            raise
        except Exception as exc:
            raise TransportError(str(exc) or exc.__class__.__name__) from exc
        self._messages.append(
            Message(
                id=receipt.message_id,
                account_id=self.account_id,
                sender=self.account_id,
                body=text,
                timestamp=receipt.timestamp or datetime.now(timezone.utc),
                direction=Direction.OUT,
                chat_id=chat_id,
            )
        )
        return receipt

    async def get_chats(self) -> list[ChatSummary]:
        self._require_connected()
        try:
            return await self._driver.get_chats()
        except Exception as exc:
            raise TransportError(str(exc) or exc.__class__.__name__) from exc

    async def fetch_messages(self, chat_id: str, limit: int) -> list[InboundMessage]:
        self._require_connected()
        try:
            return await self._driver.fetch_messages(chat_id, limit)
        except Exception as exc:
            raise TransportError(str(exc) or exc.__class__.__name__) from exc

    async def close(self, cancel_pending: bool = False) -> None:
        """Destroy the transport handle and stop the inbox worker.

        Messages already queued are still handed on; sends they trigger fail
        naturally because the session is no longer connected. With
        ``cancel_pending`` the worker is cancelled instead.
        """

        if self._closed:
            return
        self._closed = True
        if self._state not in TERMINAL_STATES:
            self._state = ConnectionState.DISCONNECTED
        self._pairing_token = None

        current = asyncio.current_task()
        if self._auth_task is not None and not self._auth_task.done() and self._auth_task is not current:
            self._auth_task.cancel()
        if self._worker is not None:
            if cancel_pending and self._worker is not current:
                self._worker.cancel()
            else:
                self._inbox.put_nowait(None)

        await self._driver.destroy()
