"""Application entry point for switchboard."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import re
from logging.handlers import RotatingFileHandler
from typing import Any, Optional

import qrcode
from art import tprint
from dotenv import load_dotenv

import settings
from adapters.sqlite_storage import SQLiteStorage
from adapters.telethon_driver import TelethonDriver
from client import build_client
from core.commands import CommandSurface
from core.composer import ReplyComposer
from core.config import AutoReplyConfig, DispatchConfig, SessionConfig
from core.dispatch import DispatchPipeline
from core.events import EventHub, EventKind
from core.models import AutoReplyRule, ConnectionState, NumberedOption, TERMINAL_STATES
from core.processor import AutoReplyProcessor
from core.registry import SessionRegistry

NAME = "SWITCHBOARD"
FONT = "tarty-1"

# Credentials the Telethon client reads from the environment.
DEFAULT_REDACT_ENV = ("API_ID", "API_HASH", "2FA")

# Runs of 7+ digits are phone numbers or Telegram peer ids.
_PHONE_LIKE = re.compile(r"(?<!\d)\+?\d{3,}(\d{4})(?!\d)")

LOGGER = logging.getLogger(__name__)


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    """Hide credentials and, optionally, contact numbers in log lines."""

    def __init__(
        self,
        secrets: list[str],
        fmt: str,
        datefmt: Optional[str] = None,
        mask_phone_numbers: bool = False,
    ) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]
        self._mask_phone_numbers = mask_phone_numbers

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        if self._mask_phone_numbers:
            message = _PHONE_LIKE.sub(lambda match: "***" + match.group(1), message)
        return message


def _collect_redaction_values(redact_cfg: dict) -> list[str]:
    if not redact_cfg.get("enabled", False):
        return []
    names = redact_cfg.get("patterns") or DEFAULT_REDACT_ENV
    values = {os.getenv(name) for name in names}
    # Longest first so a secret containing another is replaced whole.
    return sorted((value for value in values if value), key=len, reverse=True)


def _log_file_handler(file_cfg: dict, level: int, formatter: logging.Formatter) -> logging.Handler:
    path = file_cfg.get("path") or os.path.join("logs", "switchboard.log")
    if not os.path.isabs(path):
        path = os.path.join(settings.PROJECT_ROOT, path)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    handler = RotatingFileHandler(
        path,
        maxBytes=int(file_cfg.get("max_bytes", 5 * 1024 * 1024)),
        backupCount=int(file_cfg.get("backup_count", 5)),
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _configure_logging() -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", False):
        return

    # Secrets come from .env, so load it before reading their values.
    load_dotenv()
    level = getattr(logging, str(config.get("level", "INFO")).upper(), logging.INFO)
    redact_cfg = config.get("redact", {})
    formatter = _RedactingFormatter(
        _collect_redaction_values(redact_cfg),
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        mask_phone_numbers=bool(redact_cfg.get("phone_numbers", False)),
    )

    handlers: list[logging.Handler] = []
    if config.get("console", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)
    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        handlers.append(_log_file_handler(file_cfg, level, formatter))
    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers)
    # Telethon logs every reconnect and update gap at INFO.
    telethon_level = str(config.get("telethon_level", "WARNING")).upper()
    logging.getLogger("telethon").setLevel(getattr(logging, telethon_level, logging.WARNING))


def _print_qr(account_id: str, url: str) -> None:
    print(f"\nScan this QR code with Telegram to log in account {account_id}:")
    qr = qrcode.QRCode(border=1)
    qr.add_data(url)
    qr.make(fit=True)
    qr.print_ascii(invert=True)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def _driver_factory(account_id: str) -> TelethonDriver:
    client = build_client(account_id, settings.SESSIONS_DIR)
    return TelethonDriver(
        client,
        qr_timeout=settings.QR_TIMEOUT_SECONDS,
        qr_max_attempts=settings.QR_MAX_ATTEMPTS,
        password=os.getenv("2FA"),
    )


def _build_storage() -> SQLiteStorage:
    directory = os.path.dirname(settings.DB_PATH)
    if directory:
        os.makedirs(directory, exist_ok=True)
    storage = SQLiteStorage(settings.DB_PATH, settings.ATTACHMENTS_DIR)
    storage.init_db()
    return storage


def _build_commands(events: Optional[EventHub] = None) -> tuple[SessionRegistry, CommandSurface]:
    """Wire the registry, auto-reply processor and dispatch pipeline together."""

    storage = _build_storage()
    registry = SessionRegistry(
        _driver_factory,
        events=events,
        config=SessionConfig(
            max_accounts=settings.MAX_ACCOUNTS,
            message_log_size=settings.MESSAGE_LOG_SIZE,
        ),
    )
    dispatch = DispatchPipeline(
        registry,
        storage,
        DispatchConfig(
            bulk_delay_seconds=settings.BULK_DELAY_SECONDS,
            account_delay_seconds=settings.ACCOUNT_DELAY_SECONDS,
        ),
    )
    processor = AutoReplyProcessor(
        storage,
        ReplyComposer(storage),
        dispatch,
        AutoReplyConfig(
            enabled=settings.AUTO_REPLY_ENABLED,
            menu_tracking=settings.MENU_TRACKING,
            max_pending_menus=settings.MAX_PENDING_MENUS,
            pending_menu_ttl_seconds=settings.PENDING_MENU_TTL_SECONDS,
        ),
    )
    registry.set_incoming_handler(processor)
    registry.set_session_closed_handler(processor.forget_account)
    registry.init()
    return registry, CommandSurface(registry, dispatch, processor, storage, storage)


def _log_status(account_id: str, state: ConnectionState) -> None:
    LOGGER.info("Account %s status: %s", account_id, state.value)


async def _run_async() -> None:
    events = EventHub()
    events.subscribe(EventKind.QR_CODE_ISSUED, _print_qr)
    events.subscribe(EventKind.STATUS_CHANGED, _log_status)
    registry, commands = _build_commands(events)

    if not settings.ACCOUNTS:
        LOGGER.warning("No accounts configured in %s", settings.CONFIG_PATH)
    for account in settings.ACCOUNTS:
        result = await commands.connect(account["id"], account["name"])
        if not result["success"]:
            LOGGER.error("Could not start account %s: %s", account["id"], result.get("error"))

    LOGGER.info("Listening for incoming messages. Press Ctrl+C to stop.")
    try:
        await asyncio.Event().wait()
    finally:
        await registry.shutdown()


def _run() -> None:
    _print_banner()
    _configure_logging()
    LOGGER.info("Starting switchboard")
    try:
        asyncio.run(_run_async())
    except KeyboardInterrupt:
        LOGGER.info("Stopped by user")


async def _send_async(args: argparse.Namespace) -> None:
    accounts = [args.account, *(args.from_accounts or [])]
    pending = set(accounts)
    settled = asyncio.Event()

    def _on_status(account_id: str, state: ConnectionState) -> None:
        _log_status(account_id, state)
        if account_id in pending and (state is ConnectionState.CONNECTED or state in TERMINAL_STATES):
            pending.discard(account_id)
            if not pending:
                settled.set()

    events = EventHub()
    events.subscribe(EventKind.QR_CODE_ISSUED, _print_qr)
    events.subscribe(EventKind.STATUS_CHANGED, _on_status)
    registry, commands = _build_commands(events)
    try:
        for account_id in accounts:
            result = await commands.connect(account_id)
            if not result["success"]:
                _print_json(result)
                return
        await settled.wait()
        if args.from_accounts:
            # Accounts that failed to connect show up as failed results.
            _print_json(
                await commands.send_from_multiple_accounts(accounts, args.to[0], args.message, args.attachment)
            )
            return
        _print_json(await commands.send_bulk(args.account, args.to, args.message, args.attachment))
    finally:
        await registry.shutdown()


def _parse_option(raw: str) -> NumberedOption:
    """Parse ``NUMBER:TEMPLATE_ID[:LABEL]``."""

    parts = raw.split(":", 2)
    if len(parts) < 2 or not parts[0].strip().isdigit():
        raise argparse.ArgumentTypeError(f"Invalid option {raw!r}; expected NUMBER:TEMPLATE_ID[:LABEL]")
    label = parts[2].strip() if len(parts) == 3 and parts[2].strip() else None
    return NumberedOption(number=int(parts[0]), response_template_id=parts[1].strip(), label=label)


def _parse_days(raw: str) -> tuple[int, ...]:
    try:
        return tuple(int(day) for day in raw.split(",") if day.strip())
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid days {raw!r}; expected e.g. 1,2,3") from exc


def _rule_from_args(args: argparse.Namespace) -> AutoReplyRule:
    return AutoReplyRule(
        id="",
        name=args.name,
        trigger_type=args.trigger,
        template_id=args.template,
        is_active=not args.inactive,
        trigger_pattern=args.pattern or "",
        delay_seconds=args.delay,
        time_from=args.time_from,
        time_to=args.time_to,
        days_of_week=args.days or None,
        numbered_options=tuple(args.option or ()),
        account_id=args.account,
    )


async def _rules_async(args: argparse.Namespace) -> None:
    _, commands = _build_commands()
    action = args.rules_command
    if action == "list":
        _print_json(await commands.list_rules(args.account))
    elif action == "add":
        _print_json(await commands.add_rule(_rule_from_args(args)))
    elif action == "toggle":
        _print_json(await commands.toggle_rule(args.rule_id))
    elif action == "delete":
        _print_json(await commands.delete_rule(args.rule_id))
    elif action == "test":
        _print_json(await commands.test_rule(args.rule_id, args.message, args.sender))
    elif action == "stats":
        _print_json(await commands.rule_stats(args.account))
    elif action == "export":
        result = await commands.export_rules(args.account)
        if args.output and result["success"]:
            with open(args.output, "w", encoding="utf-8") as handle:
                json.dump(result["data"], handle, indent=2, ensure_ascii=False)
            _print_json({"success": True, "exported": len(result["data"]), "path": args.output})
        else:
            _print_json(result)
    elif action == "import":
        with open(args.path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
        _print_json(await commands.import_rules(data))


async def _templates_async(args: argparse.Namespace) -> None:
    _, commands = _build_commands()
    if args.templates_command == "add":
        _print_json(await commands.add_template(args.name, args.content, args.category, args.attachment))
    else:
        _print_json(await commands.list_templates(args.query))


def _add_rules_parser(subparsers: Any) -> None:
    rules = subparsers.add_parser("rules", help="Manage auto-reply rules")
    actions = rules.add_subparsers(dest="rules_command", required=True)

    list_parser = actions.add_parser("list", help="List rules")
    list_parser.add_argument("--account", help="Only rules that apply to this account")

    add = actions.add_parser("add", help="Create a rule")
    add.add_argument("--name", required=True)
    add.add_argument("--trigger", required=True, choices=["all", "keywords", "specific_user"])
    add.add_argument("--pattern", help="Comma separated keywords or a sender number")
    add.add_argument("--template", required=True, help="Template id to reply with")
    add.add_argument("--delay", type=int, default=0, help="Seconds to wait before replying (0-300)")
    add.add_argument("--from", dest="time_from", help="Window start, HH:MM")
    add.add_argument("--to", dest="time_to", help="Window end, HH:MM")
    add.add_argument("--days", type=_parse_days, help="Days of week, 0=Sunday, e.g. 1,2,3,4,5")
    add.add_argument(
        "--option",
        action="append",
        type=_parse_option,
        help="Menu option NUMBER:TEMPLATE_ID[:LABEL]; repeat for more",
    )
    add.add_argument("--account", help="Restrict the rule to one account")
    add.add_argument("--inactive", action="store_true", help="Create the rule disabled")

    for name, help_text in (("toggle", "Enable or disable a rule"), ("delete", "Delete a rule")):
        action = actions.add_parser(name, help=help_text)
        action.add_argument("rule_id")

    test = actions.add_parser("test", help="Dry-run a rule against a message")
    test.add_argument("rule_id")
    test.add_argument("message")
    test.add_argument("--sender", default="test")

    stats = actions.add_parser("stats", help="Show trigger counters")
    stats.add_argument("--account")

    export = actions.add_parser("export", help="Export rules as JSON")
    export.add_argument("--account")
    export.add_argument("--output", help="Write to a file instead of stdout")

    import_parser = actions.add_parser("import", help="Import rules from a JSON file")
    import_parser.add_argument("path")


def _add_templates_parser(subparsers: Any) -> None:
    templates = subparsers.add_parser("templates", help="Manage reply templates")
    actions = templates.add_subparsers(dest="templates_command", required=True)

    list_parser = actions.add_parser("list", help="List templates")
    list_parser.add_argument("--query", help="Search name, content and category")

    add = actions.add_parser("add", help="Create a template")
    add.add_argument("--name", required=True)
    add.add_argument("--content", required=True)
    add.add_argument("--category", default="general")
    add.add_argument("--attachment", help="File to send along with the text")


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="switchboard")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Connect configured accounts and auto-reply")

    send = subparsers.add_parser("send", help="Send a message from an account")
    send.add_argument("--account", required=True)
    send.add_argument("--to", required=True, action="append", help="Recipient; repeat for bulk")
    send.add_argument("--message", required=True)
    send.add_argument("--attachment")
    send.add_argument(
        "--also-from",
        dest="from_accounts",
        action="append",
        help="Send the same message from additional accounts to the first recipient",
    )

    _add_rules_parser(subparsers)
    _add_templates_parser(subparsers)

    args = parser.parse_args(argv)
    if args.command == "send":
        _configure_logging()
        asyncio.run(_send_async(args))
        return
    if args.command == "rules":
        _configure_logging()
        asyncio.run(_rules_async(args))
        return
    if args.command == "templates":
        _configure_logging()
        asyncio.run(_templates_async(args))
        return
    _run()


if __name__ == "__main__":
    main()
