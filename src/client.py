"""Telegram client factory for switchboard.

Every account gets its own Telethon session file so accounts stay logged in
independently across restarts.
"""

from __future__ import annotations

import logging
import os
import re

from dotenv import load_dotenv
from telethon import TelegramClient

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


def session_path(account_id: str, sessions_dir: str) -> str:
    """Return the session file stem for an account (Telethon adds .session)."""

    safe_id = _UNSAFE.sub("_", account_id.strip()) or "default"
    prefix = os.getenv("SESSION_NAME", "switchboard")
    return os.path.join(sessions_dir, f"{prefix}-{safe_id}")


def build_client(account_id: str, sessions_dir: str) -> TelegramClient:
    """Create a Telethon client for one account from environment variables.

    We read API_ID/API_HASH via python-dotenv to keep secrets out of the repo.
    """

    load_dotenv()

    api_id = os.getenv("API_ID")
    api_hash = os.getenv("API_HASH")

    # Fail fast on missing credentials to avoid an ambiguous login prompt.
    if not api_id or not api_hash:
        raise RuntimeError("Missing API_ID or API_HASH in environment")

    os.makedirs(sessions_dir, exist_ok=True)
    logging.getLogger(__name__).info("Initializing Telegram client for account %s", account_id)

    return TelegramClient(session_path(account_id, sessions_dir), int(api_id), api_hash)
