"""Session registry: owns every account session and routes by account id.

The registry is the only holder of the account map. It is created once,
initialised with ``init()`` and torn down with ``shutdown()``, and injected
into the dispatch pipeline and command surface instead of living as ambient
module state.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Union

from core.config import SessionConfig
from core.errors import SetupError, TransportError
from core.events import EventHub, EventKind
from core.models import (
    AccountStatus,
    AccountSummary,
    ChatSummary,
    ConnectionState,
    ConnectResult,
    InboundMessage,
    Message,
    TERMINAL_STATES,
)
from core.ports import DriverFactory
from core.session import AccountSession

LOGGER = logging.getLogger(__name__)

IncomingHandler = Callable[[str, Message], Awaitable[None]]
SessionClosedHandler = Callable[[str], None]


class SessionRegistry:
    """Collection of account sessions with explicit lifecycle."""

    def __init__(
        self,
        driver_factory: DriverFactory,
        events: Optional[EventHub] = None,
        config: Optional[SessionConfig] = None,
    ) -> None:
        self._driver_factory = driver_factory
        self.events = events or EventHub()
        self._config = config or SessionConfig()
        self._sessions: dict[str, AccountSession] = {}
        self._incoming_handler: Optional[IncomingHandler] = None
        self._closed_handler: Optional[SessionClosedHandler] = None
        self._running = False

    def init(self) -> None:
        self._running = True
        LOGGER.info("Session registry ready (max accounts: %s)", self._config.max_accounts)

    async def shutdown(self) -> None:
        await self.disconnect(cancel_pending=True)
        self._running = False
        LOGGER.info("Session registry shut down")

    def set_incoming_handler(self, handler: Optional[IncomingHandler]) -> None:
        """Register the internal consumer of incoming messages (auto-reply)."""

        self._incoming_handler = handler

    def set_session_closed_handler(self, handler: Optional[SessionClosedHandler]) -> None:
        """Register a callback run with the account id whenever a session ends."""

        self._closed_handler = handler

    def get_session(self, account_id: str) -> Optional[AccountSession]:
        return self._sessions.get(account_id)

    def require_session(self, account_id: str) -> AccountSession:
        session = self._sessions.get(account_id)
        if session is None:
            raise TransportError(f"Account {account_id} not found")
        return session

    async def connect(self, account_id: str, display_name: str = "") -> ConnectResult:
        """Create (if absent) and start authenticating an account session.

        Returns success immediately when the account is already connected or
        mid-authentication; the outcome of a new attempt is reported through
        ``status_changed`` events.
        """

        account_id = (account_id or "").strip()
        try:
            session = self._sessions.get(account_id)
            if session is not None and session.state not in TERMINAL_STATES:
                LOGGER.info("Account %s already %s", account_id, session.state.value)
                return ConnectResult(success=True, account_id=account_id)
            session = self._create_session(account_id, display_name)
        except SetupError as exc:
            LOGGER.error("Cannot connect account %r: %s", account_id, exc)
            return ConnectResult(success=False, account_id=account_id, error=str(exc))

        self._sessions[account_id] = session
        LOGGER.info("Connecting account %s (%s)", account_id, session.display_name)
        session.begin()
        return ConnectResult(success=True, account_id=account_id)

    def _create_session(self, account_id: str, display_name: str) -> AccountSession:
        if not self._running:
            raise SetupError("Session registry is not initialised")
        if not account_id:
            raise SetupError("Account id is required")
        if len(self._sessions) >= self._config.max_accounts:
            raise SetupError(f"Account limit reached ({self._config.max_accounts})")
        try:
            driver = self._driver_factory(account_id)
        except Exception as exc:
            raise SetupError(f"Could not create transport for {account_id}: {exc}") from exc
        return AccountSession(
            account_id=account_id,
            display_name=display_name or f"Account {account_id}",
            driver=driver,
            on_state_change=self._handle_state_change,
            on_message=self._handle_message,
            message_log_size=self._config.message_log_size,
        )

    async def disconnect(self, account_id: Optional[str] = None, cancel_pending: bool = False) -> None:
        """Tear down one or all sessions; teardown errors never propagate."""

        if account_id is not None:
            targets = [account_id] if account_id in self._sessions else []
        else:
            targets = list(self._sessions)
        for target in targets:
            session = self._sessions.pop(target)
            await self._close_session(session, cancel_pending=cancel_pending)
            await self.events.emit(EventKind.STATUS_CHANGED, target, ConnectionState.DISCONNECTED)

    async def _close_session(self, session: AccountSession, cancel_pending: bool = False) -> None:
        try:
            await session.close(cancel_pending=cancel_pending)
        except Exception:
            LOGGER.exception("Error while closing account %s", session.account_id)
        if self._closed_handler is not None and session.account_id not in self._sessions:
            try:
                self._closed_handler(session.account_id)
            except Exception:
                LOGGER.exception("Session closed handler failed for account %s", session.account_id)

    async def _handle_state_change(
        self, session: AccountSession, state: ConnectionState, reason: Optional[str]
    ) -> None:
        account_id = session.account_id
        if state in TERMINAL_STATES:
            # Only evict the exact session that failed; a newer session under
            # the same id must survive a late event from an old driver.
            if self._sessions.get(account_id) is session:
                del self._sessions[account_id]
            if reason:
                LOGGER.warning("Account %s %s: %s", account_id, state.value, reason)
            await self._close_session(session)
        elif state is ConnectionState.AWAITING_SCAN and session.pairing_token:
            await self.events.emit(EventKind.QR_CODE_ISSUED, account_id, session.pairing_token)
        await self.events.emit(EventKind.STATUS_CHANGED, account_id, state)

    async def _handle_message(self, session: AccountSession, message: Message) -> None:
        await self.events.emit(EventKind.MESSAGE_RECEIVED, session.account_id, message)
        if self._incoming_handler is None:
            return
        try:
            await self._incoming_handler(session.account_id, message)
        except Exception:
            LOGGER.exception("Incoming handler failed for account %s", session.account_id)

    def get_status(
        self, account_id: Optional[str] = None
    ) -> Union[AccountStatus, dict[str, AccountStatus]]:
        if account_id is not None:
            session = self._sessions.get(account_id)
            if session is None:
                return AccountStatus(
                    account_id=account_id,
                    name=f"Account {account_id}",
                    state=ConnectionState.DISCONNECTED,
                )
            return session.status()
        return {key: session.status() for key, session in self._sessions.items()}

    def list_accounts(self) -> list[AccountSummary]:
        return [
            AccountSummary(
                id=session.account_id,
                name=session.display_name,
                connected=session.state is ConnectionState.CONNECTED,
            )
            for session in self._sessions.values()
        ]

    def connected_sessions(self) -> list[AccountSession]:
        return [s for s in self._sessions.values() if s.state is ConnectionState.CONNECTED]

    def get_message_log(self, account_id: Optional[str] = None) -> list[Message]:
        if account_id is not None:
            session = self._sessions.get(account_id)
            return session.messages() if session else []
        log: list[Message] = []
        for session in self._sessions.values():
            log.extend(session.messages())
        return sorted(log, key=lambda message: message.timestamp)

    async def get_chats(self) -> list[ChatSummary]:
        """Collect chats from every connected account, tagged with its id."""

        chats: list[ChatSummary] = []
        for session in self.connected_sessions():
            for chat in await session.get_chats():
                chats.append(
                    ChatSummary(
                        id=chat.id,
                        name=chat.name,
                        is_group=chat.is_group,
                        unread_count=chat.unread_count,
                        last_message=chat.last_message,
                        account_id=session.account_id,
                    )
                )
        return chats

    async def get_messages(
        self, chat_id: str, limit: int = 50, account_id: Optional[str] = None
    ) -> list[InboundMessage]:
        """Fetch history for a chat from the given account or the first that has it."""

        if account_id is not None:
            return await self.require_session(account_id).fetch_messages(chat_id, limit)
        for session in self.connected_sessions():
            try:
                messages = await session.fetch_messages(chat_id, limit)
            except TransportError:
                continue
            if messages:
                return messages
        return []

    async def wait_idle(self) -> None:
        """Wait for every session's pending incoming messages to be handled."""

        await asyncio.gather(*(session.join() for session in list(self._sessions.values())))
