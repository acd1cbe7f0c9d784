"""Command surface consumed by outer layers (CLI, UI).

Every command is async and returns a ``{"success": bool, ...}`` dict. Errors
are logged and reported in the result; nothing raises across this boundary.
"""

from __future__ import annotations

import functools
import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional

from core.composer import extract_variables
from core.dispatch import DispatchPipeline
from core.errors import SwitchboardError
from core.models import AutoReplyRule, Direction, Message, StatsSummary, Template
from core.ports import RuleStorePort, TemplateStorePort
from core.processor import AutoReplyProcessor
from core.registry import SessionRegistry
from core.rules_engine import validate_rule

LOGGER = logging.getLogger(__name__)


def _structured(func: Callable[..., Awaitable[dict[str, Any]]]) -> Callable[..., Awaitable[dict[str, Any]]]:
    """Turn any exception into ``{"success": False, "error": ...}``."""

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> dict[str, Any]:
        try:
            return await func(*args, **kwargs)
        except SwitchboardError as exc:
            LOGGER.error("%s failed: %s", func.__name__, exc)
            return {"success": False, "error": str(exc)}
        except Exception as exc:
            LOGGER.exception("%s failed", func.__name__)
            return {"success": False, "error": str(exc) or exc.__class__.__name__}

    return wrapper


def summarize_stats(rule_store: RuleStorePort, account_id: Optional[str] = None) -> StatsSummary:
    """Count rules and replies sent, optionally for one account's rules."""

    summary = StatsSummary()
    for rule in rule_store.get_all_rules():
        if account_id is not None and rule.account_id not in (None, account_id):
            continue
        summary.total += 1
        if rule.is_active:
            summary.active += 1
        else:
            summary.inactive += 1
        count = rule_store.get_stats(rule.id).triggered_count
        summary.per_rule[rule.id] = count
        summary.replies_sent += count
    return summary


class CommandSurface:
    """Facade over the registry, dispatch pipeline and stores."""

    def __init__(
        self,
        registry: SessionRegistry,
        dispatch: DispatchPipeline,
        processor: AutoReplyProcessor,
        rule_store: RuleStorePort,
        template_store: TemplateStorePort,
    ) -> None:
        self._registry = registry
        self._dispatch = dispatch
        self._processor = processor
        self._rules = rule_store
        self._templates = template_store

    # Accounts ---------------------------------------------------------------

    @_structured
    async def connect(self, account_id: str, account_name: str = "") -> dict[str, Any]:
        result = await self._registry.connect(account_id, account_name)
        payload: dict[str, Any] = {"success": result.success, "account_id": result.account_id}
        if result.error:
            payload["error"] = result.error
        return payload

    @_structured
    async def disconnect(self, account_id: Optional[str] = None) -> dict[str, Any]:
        await self._registry.disconnect(account_id)
        return {"success": True}

    @_structured
    async def get_status(self, account_id: Optional[str] = None) -> dict[str, Any]:
        status = self._registry.get_status(account_id)
        if isinstance(status, dict):
            return {"success": True, "accounts": {key: s.to_dict() for key, s in status.items()}}
        return {"success": True, **status.to_dict()}

    @_structured
    async def list_accounts(self) -> dict[str, Any]:
        accounts = [
            {"id": a.id, "name": a.name, "is_connected": a.connected}
            for a in self._registry.list_accounts()
        ]
        return {"success": True, "accounts": accounts}

    # Sending ----------------------------------------------------------------

    @_structured
    async def send_message(
        self, account_id: str, to: str, message: str, attachment_path: Optional[str] = None
    ) -> dict[str, Any]:
        result = await self._dispatch.send(account_id, to, message, attachment_path)
        return result.to_dict()

    @_structured
    async def send_bulk(
        self,
        account_id: str,
        contacts: Iterable[str],
        message: str,
        attachment_path: Optional[str] = None,
    ) -> dict[str, Any]:
        results = await self._dispatch.send_bulk(account_id, contacts, message, attachment_path)
        return {"success": True, "results": [r.to_dict() for r in results]}

    @_structured
    async def send_from_multiple_accounts(
        self,
        account_ids: Iterable[str],
        to: str,
        message: str,
        attachment_path: Optional[str] = None,
    ) -> dict[str, Any]:
        results = await self._dispatch.send_from_multiple_accounts(account_ids, to, message, attachment_path)
        return {"success": True, "results": [r.to_dict() for r in results]}

    @_structured
    async def get_chats(self) -> dict[str, Any]:
        chats = await self._registry.get_chats()
        return {"success": True, "chats": [chat.to_dict() for chat in chats]}

    @_structured
    async def get_messages(
        self, chat_id: str, limit: int = 50, account_id: Optional[str] = None
    ) -> dict[str, Any]:
        messages = await self._registry.get_messages(chat_id, limit, account_id)
        return {
            "success": True,
            "messages": [
                {
                    "id": m.id,
                    "from": m.sender,
                    "body": m.body,
                    "timestamp": m.timestamp.isoformat(),
                    "chat_id": m.chat_id,
                }
                for m in messages
            ],
        }

    # Rules ------------------------------------------------------------------

    @_structured
    async def add_rule(self, rule: AutoReplyRule) -> dict[str, Any]:
        errors = validate_rule(rule)
        if errors:
            return {"success": False, "error": "; ".join(errors), "errors": errors}
        stored = self._rules.create_rule(rule)
        return {"success": True, "rule": stored.to_dict()}

    @_structured
    async def update_rule(self, rule: AutoReplyRule) -> dict[str, Any]:
        errors = validate_rule(rule)
        if errors:
            return {"success": False, "error": "; ".join(errors), "errors": errors}
        stored = self._rules.update_rule(rule)
        return {"success": True, "rule": stored.to_dict()}

    @_structured
    async def delete_rule(self, rule_id: str) -> dict[str, Any]:
        deleted = self._rules.delete_rule(rule_id)
        if not deleted:
            return {"success": False, "error": f"Rule {rule_id} not found"}
        return {"success": True}

    @_structured
    async def toggle_rule(self, rule_id: str) -> dict[str, Any]:
        is_active = self._rules.toggle_active(rule_id)
        return {"success": True, "is_active": is_active}

    @_structured
    async def list_rules(self, account_id: Optional[str] = None) -> dict[str, Any]:
        rules = [
            rule.to_dict()
            for rule in self._rules.get_all_rules()
            if account_id is None or rule.account_id in (None, account_id)
        ]
        return {"success": True, "data": rules}

    @_structured
    async def rule_stats(self, account_id: Optional[str] = None) -> dict[str, Any]:
        summary = summarize_stats(self._rules, account_id)
        return {
            "success": True,
            "data": {
                "total": summary.total,
                "active": summary.active,
                "inactive": summary.inactive,
                "replies_sent": summary.replies_sent,
                "per_rule": summary.per_rule,
            },
        }

    @_structured
    async def test_rule(self, rule_id: str, test_message: str, sender: str = "test") -> dict[str, Any]:
        message = Message(
            id=f"test-{uuid.uuid4().hex[:8]}",
            account_id="test",
            sender=sender,
            body=test_message,
            timestamp=datetime.now(timezone.utc),
            direction=Direction.IN,
        )
        outcome = self._processor.dry_run(rule_id, message)
        payload: dict[str, Any] = {"success": outcome.error is None, "matched": outcome.matched}
        if outcome.reply is not None:
            payload["reply"] = outcome.reply.text
            payload["kind"] = outcome.reply.kind
        if outcome.error is not None:
            payload["error"] = outcome.error
        return payload

    @_structured
    async def import_rules(self, rules: Iterable[dict[str, Any]]) -> dict[str, Any]:
        parsed = [AutoReplyRule.from_dict(item) for item in rules]
        for index, rule in enumerate(parsed, start=1):
            errors = validate_rule(rule)
            if errors:
                message = f"Rule #{index} ({rule.name or 'unnamed'}): " + "; ".join(errors)
                return {"success": False, "error": message, "errors": errors}
        imported = self._rules.import_rules(parsed)
        return {"success": True, "imported": imported}

    @_structured
    async def export_rules(self, account_id: Optional[str] = None) -> dict[str, Any]:
        return await self.list_rules(account_id)

    @_structured
    async def set_auto_reply_enabled(self, enabled: bool) -> dict[str, Any]:
        self._processor.set_enabled(enabled)
        return {"success": True, "enabled": self._processor.enabled}

    # Templates --------------------------------------------------------------

    @_structured
    async def add_template(
        self, name: str, content: str, category: str = "general", attachment_path: Optional[str] = None
    ) -> dict[str, Any]:
        if not name.strip() or not content.strip():
            return {"success": False, "error": "Template name and content are required"}
        data: Optional[bytes] = None
        if attachment_path:
            # The store keeps its own copy so the template survives the source file moving.
            try:
                with open(attachment_path, "rb") as handle:
                    data = handle.read()
            except OSError as exc:
                error = f"Cannot read attachment {attachment_path}: {exc.strerror or exc}"
                return {"success": False, "error": error}
        template = self._templates.create_template(
            Template(
                id="",
                name=name.strip(),
                content=content,
                category=category or "general",
                variables=extract_variables(content),
            )
        )
        if attachment_path and data is not None:
            self._templates.save_attachment(template.id, os.path.basename(attachment_path), data)
            template = self._templates.get_template(template.id) or template
        return {"success": True, "template": _template_dict(template)}

    @_structured
    async def list_templates(self, query: Optional[str] = None) -> dict[str, Any]:
        templates = self._templates.search_templates(query) if query else self._templates.get_all_templates()
        return {"success": True, "data": [_template_dict(t) for t in templates]}


def _template_dict(template: Template) -> dict[str, Any]:
    return {
        "id": template.id,
        "name": template.name,
        "content": template.content,
        "category": template.category,
        "variables": list(template.variables),
        "attachment_path": template.attachment_path,
    }
