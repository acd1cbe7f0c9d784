"""Core auto-reply pipeline.

This module is integration-agnostic. It only relies on ports for rules and
templates and on the dispatch pipeline for sending.

For each inbound message the order is strict:
1) Skip outbound messages or a disabled auto-reply switch
2) Read a fresh rule snapshot (read failure => no rules)
3) Numbered-menu answer detection
4) First-match trigger evaluation
5) Compose and dispatch the reply, counting the trigger
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from core.composer import ComposedReply, PendingMenus, ReplyComposer, find_menu_selection
from core.config import AutoReplyConfig
from core.dispatch import DispatchPipeline
from core.errors import ConfigError
from core.models import Direction, Message, SendResult
from core.ports import RuleStorePort
from core.rules_engine import CompiledRule, build_rules, compile_rule, evaluate, select_rule

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class DryRunResult:
    """What a rule would do with a given message, without sending."""

    matched: bool
    reply: Optional[ComposedReply] = None
    error: Optional[str] = None


class AutoReplyProcessor:
    """Decides whether, what and when to reply to each inbound message."""

    def __init__(
        self,
        rule_store: RuleStorePort,
        composer: ReplyComposer,
        dispatch: DispatchPipeline,
        config: Optional[AutoReplyConfig] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._rule_store = rule_store
        self._composer = composer
        self._dispatch = dispatch
        self._config = config or AutoReplyConfig()
        self._clock = clock
        self._enabled = self._config.enabled
        self._pending: Optional[PendingMenus] = None
        if self._config.menu_tracking == "per_sender":
            self._pending = PendingMenus(
                max_entries=self._config.max_pending_menus,
                ttl_seconds=self._config.pending_menu_ttl_seconds,
            )

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled
        LOGGER.info("Auto-reply %s", "enabled" if enabled else "disabled")

    async def __call__(self, account_id: str, message: Message) -> None:
        await self.handle(account_id, message)

    def forget_account(self, account_id: str) -> None:
        """Drop pending menus sent from an account whose session ended."""

        if self._pending is not None:
            self._pending.forget_account(account_id)

    def _load_rules(self, account_id: str) -> list[CompiledRule]:
        try:
            records = self._rule_store.get_all_rules()
        except Exception:
            LOGGER.exception("Could not read rules; treating message as unmatched")
            return []
        scoped = [r for r in records if r.account_id is None or r.account_id == account_id]
        return build_rules(scoped)

    async def handle(self, account_id: str, message: Message) -> Optional[SendResult]:
        """Process one inbound message; never raises."""

        try:
            return await self._handle(account_id, message)
        except Exception:
            LOGGER.exception("Error while auto-replying to %s on %s", message.id, account_id)
            return None

    async def _handle(self, account_id: str, message: Message) -> Optional[SendResult]:
        if message.direction is not Direction.IN or not self._enabled:
            return None

        rules = self._load_rules(account_id)
        if not rules:
            return None

        # A menu answer always wins over normal triggers and consumes the message.
        if self._pending is not None:
            selection = self._pending.find_selection(account_id, message.sender, rules, message.body)
        else:
            selection = find_menu_selection(rules, message.body)
        if selection is not None:
            try:
                reply = self._composer.compose_selection(selection)
            except ConfigError as exc:
                LOGGER.warning("Menu answer for rule %s skipped: %s", selection.rule.id, exc)
                return None
            if self._pending is not None:
                self._pending.clear(account_id, message.sender)
            return await self._send(account_id, message, reply)

        now = self._clock()
        remaining = rules
        while remaining:
            rule = select_rule(remaining, message, now)
            if rule is None:
                return None
            try:
                reply = self._composer.compose(rule)
            except ConfigError as exc:
                # The broken rule is skipped for this message only.
                LOGGER.warning("Rule %s skipped: %s", rule.id, exc)
                remaining = remaining[remaining.index(rule) + 1 :]
                continue
            result = await self._send(account_id, message, reply)
            if result.success and reply.kind == "menu" and self._pending is not None:
                self._pending.remember(account_id, message.sender, rule.id)
            return result
        return None

    async def _send(self, account_id: str, message: Message, reply: ComposedReply) -> SendResult:
        result = await self._dispatch.send_quick_reply(account_id, message, reply)
        if not result.success:
            LOGGER.error("Failed to send auto-reply %r: %s", reply.rule_name, result.error)
        return result

    def dry_run(self, rule_id: str, message: Message) -> DryRunResult:
        """Evaluate and compose one rule against a test message, without sending."""

        record = self._rule_store.get_rule(rule_id)
        if record is None:
            return DryRunResult(matched=False, error=f"Rule {rule_id} not found")
        try:
            rule = compile_rule(record)
        except ConfigError as exc:
            return DryRunResult(matched=False, error=str(exc))

        selection = find_menu_selection([rule], message.body)
        try:
            if selection is not None:
                return DryRunResult(matched=True, reply=self._composer.compose_selection(selection))
            if not evaluate(rule, message, self._clock()):
                return DryRunResult(matched=False)
            return DryRunResult(matched=True, reply=self._composer.compose(rule))
        except ConfigError as exc:
            return DryRunResult(matched=True, error=str(exc))
