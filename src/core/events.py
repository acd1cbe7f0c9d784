"""Upward event delivery for the session registry.

Each event kind has at most one handler. Fan-out to several listeners is left
to whatever layer subscribes here.
"""

from __future__ import annotations

import inspect
import logging
from enum import Enum
from typing import Any, Callable, Optional

LOGGER = logging.getLogger(__name__)


class EventKind(str, Enum):
    STATUS_CHANGED = "status_changed"
    QR_CODE_ISSUED = "qr_code_issued"
    MESSAGE_RECEIVED = "message_received"


# Handlers may be plain functions or coroutines.
EventHandler = Callable[..., Any]


class EventHub:
    """Single-slot-per-kind observer registry."""

    def __init__(self) -> None:
        self._handlers: dict[EventKind, EventHandler] = {}

    def subscribe(self, kind: EventKind, handler: EventHandler) -> None:
        if kind in self._handlers:
            LOGGER.warning("Replacing existing %s handler", kind.value)
        self._handlers[kind] = handler

    def unsubscribe(self, kind: EventKind) -> None:
        self._handlers.pop(kind, None)

    def handler_for(self, kind: EventKind) -> Optional[EventHandler]:
        return self._handlers.get(kind)

    async def emit(self, kind: EventKind, *args: Any) -> None:
        """Deliver an event; handler failures are logged and swallowed."""

        handler = self._handlers.get(kind)
        if handler is None:
            return
        try:
            result = handler(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            LOGGER.exception("Error in %s handler", kind.value)
