import pytest

from core.errors import TransportError
from core.recipients import digits_only, format_chat_id, sender_matches, split_chat_id


def test_format_chat_id_appends_suffix_to_digits() -> None:
    assert format_chat_id("+1 (555) 123-4567", "@c.us") == "15551234567@c.us"


def test_format_chat_id_keeps_full_ids_verbatim() -> None:
    assert format_chat_id("12345-678@g.us", "@c.us") == "12345-678@g.us"
    assert format_chat_id("@someuser", "") == "@someuser"


def test_format_chat_id_without_suffix() -> None:
    assert format_chat_id("555 0101", "") == "5550101"


def test_format_chat_id_rejects_recipients_without_digits() -> None:
    with pytest.raises(TransportError):
        format_chat_id("nobody", "@c.us")


def test_split_chat_id() -> None:
    assert split_chat_id("1555@c.us") == ("1555", "@c.us")
    assert split_chat_id("1555") == ("1555", "")


def test_digits_only() -> None:
    assert digits_only("+44 20-7946") == "44207946"
    assert digits_only("") == ""


def test_sender_matches() -> None:
    assert sender_matches("15551234567@c.us", "15551234567")
    assert sender_matches("15551234567@c.us", "+1 555 123 4567")
    assert sender_matches("alice", "alice")
    assert not sender_matches("15551234567@c.us", "1999")
    assert not sender_matches("15551234567", "no-digits")
