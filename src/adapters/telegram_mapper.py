"""Telegram-to-core message mapping adapter.

This keeps Telethon-specific details out of the core session and pipeline.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from telethon.tl.custom import Message

from core.models import ChatSummary, InboundMessage
from core.recipients import digits_only


def sender_from_message(message: Message) -> str:
    """Normalize the sender using a single rule enforced across the app.

    Users with a visible phone number are identified by its digits so that
    phone-based rules match; everyone else falls back to the numeric id.
    """

    sender = getattr(message, "sender", None)
    phone = getattr(sender, "phone", None)
    if isinstance(phone, str) and digits_only(phone):
        return digits_only(phone)

    sender_id = getattr(message, "sender_id", None)
    if sender_id is not None:
        return str(sender_id)
    # Channel posts have no sender; the chat itself is the author.
    return str(message.chat_id)


def _timestamp(message: Message) -> datetime:
    date = getattr(message, "date", None)
    if date is None:
        return datetime.now(timezone.utc)
    if date.tzinfo is None:
        return date.replace(tzinfo=timezone.utc)
    return date


def build_inbound(message: Message) -> InboundMessage:
    """Build a core InboundMessage from a Telethon Message."""

    return InboundMessage(
        id=str(message.id),
        sender=sender_from_message(message),
        body=message.raw_text or "",
        timestamp=_timestamp(message),
        chat_id=str(message.chat_id),
    )


def _dialog_title(dialog: Any) -> str:
    name = getattr(dialog, "name", None)
    if name:
        return str(name)
    entity = getattr(dialog, "entity", None)
    title = getattr(entity, "title", None)
    if title:
        return str(title)
    first = getattr(entity, "first_name", None)
    last = getattr(entity, "last_name", None)
    if first or last:
        return " ".join(part for part in [first, last] if part)
    entity_id = getattr(entity, "id", None)
    return str(entity_id or "unknown")


def _last_message_text(dialog: Any) -> Optional[str]:
    message = getattr(dialog, "message", None)
    text = getattr(message, "raw_text", None)
    return text or None


def build_chat_summary(dialog: Any) -> ChatSummary:
    """Build a core ChatSummary from a Telethon Dialog."""

    # Channels count as groups here; only 1:1 chats are not.
    is_group = bool(getattr(dialog, "is_group", False) or getattr(dialog, "is_channel", False))
    return ChatSummary(
        id=str(dialog.id),
        name=_dialog_title(dialog),
        is_group=is_group,
        unread_count=int(getattr(dialog, "unread_count", 0) or 0),
        last_message=_last_message_text(dialog),
    )
