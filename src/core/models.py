"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any integration-specific types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class ConnectionState(str, Enum):
    """Per-account connection state exposed to subscribers."""

    DISCONNECTED = "disconnected"
    AUTHENTICATING = "authenticating"
    AWAITING_SCAN = "awaiting_scan"
    CONNECTED = "connected"
    AUTH_FAILED = "auth_failed"
    ERROR = "error"


# States that end a session; entering one evicts it from the registry.
TERMINAL_STATES = frozenset(
    {ConnectionState.DISCONNECTED, ConnectionState.AUTH_FAILED, ConnectionState.ERROR}
)


class Direction(str, Enum):
    IN = "in"
    OUT = "out"


class TriggerType(str, Enum):
    ALL = "all"
    KEYWORDS = "keywords"
    SPECIFIC_USER = "specific_user"


@dataclass(frozen=True)
class Message:
    """One recorded message, tagged with the owning account."""

    id: str
    account_id: str
    sender: str
    body: str
    timestamp: datetime
    direction: Direction
    chat_id: Optional[str] = None

    @property
    def reply_to(self) -> str:
        """Chat the reply for this message should go to."""

        return self.chat_id or self.sender

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "sender": self.sender,
            "body": self.body,
            "timestamp": self.timestamp.isoformat(),
            "direction": self.direction.value,
            "chat_id": self.chat_id,
        }


@dataclass(frozen=True)
class InboundMessage:
    """Raw incoming message as reported by a transport driver."""

    id: str
    sender: str
    body: str
    timestamp: datetime
    chat_id: Optional[str] = None


@dataclass(frozen=True)
class SentReceipt:
    """What the transport reports after a successful send."""

    message_id: str
    timestamp: datetime


@dataclass(frozen=True)
class ChatSummary:
    id: str
    name: str
    is_group: bool
    unread_count: int = 0
    last_message: Optional[str] = None
    account_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "is_group": self.is_group,
            "unread_count": self.unread_count,
            "last_message": self.last_message,
            "account_id": self.account_id,
        }


@dataclass(frozen=True)
class AccountStatus:
    """Point-in-time snapshot of one account session."""

    account_id: str
    name: str
    state: ConnectionState
    pairing_token: Optional[str] = None

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "name": self.name,
            "status": self.state.value,
            "is_connected": self.is_connected,
            "qr_code": self.pairing_token,
        }


@dataclass(frozen=True)
class AccountSummary:
    id: str
    name: str
    connected: bool


@dataclass(frozen=True)
class NumberedOption:
    """One entry of a numbered menu."""

    number: int
    response_template_id: str
    label: Optional[str] = None


@dataclass(frozen=True)
class AutoReplyRule:
    """Stored auto-reply rule, as read from the rule store.

    ``time_from``/``time_to`` are "HH:MM" strings; a window applies only when
    both are set. ``days_of_week`` uses 0=Sunday..6=Saturday; ``None`` or an
    empty tuple means every day. ``account_id`` of ``None`` scopes the rule to
    every account.
    """

    id: str
    name: str
    trigger_type: str
    template_id: str
    is_active: bool = True
    trigger_pattern: str = ""
    delay_seconds: int = 0
    time_from: Optional[str] = None
    time_to: Optional[str] = None
    days_of_week: Optional[tuple[int, ...]] = None
    numbered_options: tuple[NumberedOption, ...] = ()
    account_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "is_active": self.is_active,
            "trigger_type": self.trigger_type,
            "trigger_pattern": self.trigger_pattern,
            "template_id": self.template_id,
            "delay_seconds": self.delay_seconds,
            "time_from": self.time_from,
            "time_to": self.time_to,
            "days_of_week": list(self.days_of_week) if self.days_of_week is not None else None,
            "numbered_options": [
                {
                    "number": option.number,
                    "response_template_id": option.response_template_id,
                    "label": option.label,
                }
                for option in self.numbered_options
            ],
            "account_id": self.account_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AutoReplyRule":
        days = data.get("days_of_week")
        options = tuple(
            NumberedOption(
                number=int(option["number"]),
                response_template_id=str(option["response_template_id"]),
                label=option.get("label"),
            )
            for option in data.get("numbered_options") or []
        )
        return cls(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            trigger_type=str(data.get("trigger_type") or ""),
            template_id=str(data.get("template_id") or ""),
            is_active=bool(data.get("is_active", True)),
            trigger_pattern=str(data.get("trigger_pattern") or ""),
            delay_seconds=int(data.get("delay_seconds") or 0),
            time_from=data.get("time_from") or None,
            time_to=data.get("time_to") or None,
            days_of_week=tuple(int(day) for day in days) if days else None,
            numbered_options=options,
            account_id=data.get("account_id") or None,
        )


@dataclass(frozen=True)
class Template:
    """Reusable message content referenced by rules."""

    id: str
    name: str
    content: str
    category: str = "general"
    variables: tuple[str, ...] = ()
    attachment_path: Optional[str] = None


@dataclass(frozen=True)
class RuleStats:
    rule_id: str
    triggered_count: int = 0
    last_triggered_at: Optional[datetime] = None


@dataclass(frozen=True)
class SendResult:
    """Structured outcome of one dispatch attempt."""

    success: bool
    account_id: str
    recipient: str
    message_id: Optional[str] = None
    timestamp: Optional[datetime] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "account_id": self.account_id,
            "recipient": self.recipient,
        }
        if self.message_id is not None:
            payload["message_id"] = self.message_id
        if self.timestamp is not None:
            payload["timestamp"] = self.timestamp.isoformat()
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True)
class ConnectResult:
    success: bool
    account_id: str
    error: Optional[str] = None


@dataclass
class StatsSummary:
    """Aggregate rule counters for one account (or all accounts)."""

    total: int = 0
    active: int = 0
    inactive: int = 0
    replies_sent: int = 0
    per_rule: dict[str, int] = field(default_factory=dict)
