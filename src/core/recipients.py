"""Helpers for working with transport chat identifiers."""

from __future__ import annotations

import re
from typing import Tuple

from core.errors import TransportError

SUFFIX_SEPARATOR = "@"

_NON_DIGITS = re.compile(r"\D")


def digits_only(value: str) -> str:
    """Return only the ASCII digits of ``value``."""

    return _NON_DIGITS.sub("", value or "")


def split_chat_id(chat_id: str) -> Tuple[str, str]:
    """Split a chat id into (local part, network suffix including '@')."""

    if SUFFIX_SEPARATOR not in chat_id:
        return chat_id, ""
    local, _, network = chat_id.partition(SUFFIX_SEPARATOR)
    return local, f"{SUFFIX_SEPARATOR}{network}"


def strip_network_suffix(chat_id: str) -> str:
    return split_chat_id(chat_id)[0]


def format_chat_id(recipient: str, suffix: str) -> str:
    """Normalize a user-entered recipient into a transport chat id.

    Recipients that already carry a network suffix are used verbatim;
    anything else is reduced to digits and given the driver's suffix.
    """

    recipient = (recipient or "").strip()
    if SUFFIX_SEPARATOR in recipient:
        return recipient
    digits = digits_only(recipient)
    if not digits:
        raise TransportError(f"Invalid recipient: {recipient!r}")
    return f"{digits}{suffix}"


def sender_matches(sender: str, pattern: str) -> bool:
    """Return True when ``sender`` identifies the configured user ``pattern``.

    The comparison tolerates formatting differences: the sender's suffix is
    dropped and the pattern's digits only need to appear in the sender's.
    """

    local = strip_network_suffix(sender or "")
    if local == pattern.strip():
        return True
    pattern_digits = digits_only(pattern)
    if not pattern_digits:
        return False
    return pattern_digits in digits_only(local)
