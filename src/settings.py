"""Static configuration for switchboard.

All user-editable settings (accounts, auto-reply, throttling, logging) live in
a single JSON file for quick edits without touching Python.
"""

import json
import os

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

CONFIG_PATH = os.getenv("SWITCHBOARD_CONFIG", os.path.join(PROJECT_ROOT, "config.json"))


def _load_json_config() -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(f"Config file not found: {CONFIG_PATH}")

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _resolve_path(path: str) -> str:
    if os.path.isabs(path):
        return path
    return os.path.join(PROJECT_ROOT, path)


def _normalize_accounts(raw_accounts: list[dict]) -> list[dict]:
    """Keep enabled accounts with an id, defaulting the display name to the id."""

    accounts: list[dict] = []
    seen: set[str] = set()
    for entry in raw_accounts:
        account_id = str(entry.get("id", "")).strip()
        if not account_id or account_id in seen:
            continue
        if not entry.get("enabled", True):
            continue
        seen.add(account_id)
        accounts.append({"id": account_id, "name": entry.get("name") or account_id})
    return accounts


_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

# Accounts connected by `switchboard run`, in order.
ACCOUNTS = _normalize_accounts(_CONFIG.get("accounts", []))

# Storage: rules, templates and stats share one SQLite file.
_storage = _CONFIG.get("storage", {})
DB_PATH = _resolve_path(_storage.get("db_path", "data/switchboard.db"))
ATTACHMENTS_DIR = _resolve_path(_storage.get("attachments_dir", "data/attachments"))
SESSIONS_DIR = _resolve_path(_storage.get("sessions_dir", "data/sessions"))

# Auto-reply switches.
# - MENU_TRACKING: "stateless" (any numeric message answers the first menu
#   rule) or "per_sender" (only answers to a menu sent to that sender)
# - MAX_PENDING_MENUS / PENDING_MENU_TTL_SECONDS: bounds for per_sender tracking
_auto_reply = _CONFIG.get("auto_reply", {})
AUTO_REPLY_ENABLED = bool(_auto_reply.get("enabled", True))
MENU_TRACKING = _auto_reply.get("menu_tracking", "stateless")
MAX_PENDING_MENUS = int(_auto_reply.get("max_pending_menus", 1000))
PENDING_MENU_TTL_SECONDS = float(_auto_reply.get("pending_menu_ttl_seconds", 3600))

# Pauses between sequential sends, in seconds.
_dispatch = _CONFIG.get("dispatch", {})
BULK_DELAY_SECONDS = float(_dispatch.get("bulk_delay_seconds", 1.0))
ACCOUNT_DELAY_SECONDS = float(_dispatch.get("account_delay_seconds", 2.0))

# Session registry limits and pairing behaviour.
_sessions = _CONFIG.get("sessions", {})
MAX_ACCOUNTS = int(_sessions.get("max_accounts", 10))
MESSAGE_LOG_SIZE = int(_sessions.get("message_log_size", 500))
QR_TIMEOUT_SECONDS = int(_sessions.get("qr_timeout_seconds", 120))
QR_MAX_ATTEMPTS = int(_sessions.get("qr_max_attempts", 3))

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})
