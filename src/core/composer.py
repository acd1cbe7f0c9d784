"""Reply composition: rule -> outbound text, including numbered menus."""

from __future__ import annotations

import logging
import os
import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from core.errors import ConfigError
from core.models import NumberedOption, Template
from core.ports import TemplateStorePort
from core.rules_engine import CompiledRule

LOGGER = logging.getLogger(__name__)

MENU_HEADER = "Please select an option:"

_VARIABLE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")
_SELECTION = re.compile(r"[0-9]+")


@dataclass(frozen=True)
class ComposedReply:
    """Final outbound content attributed to one rule."""

    rule_id: str
    rule_name: str
    kind: str  # "direct" | "menu" | "selection"
    text: str
    delay_seconds: int = 0
    attachment_path: Optional[str] = None


@dataclass(frozen=True)
class MenuSelection:
    rule: CompiledRule
    option: NumberedOption


def extract_variables(content: str) -> tuple[str, ...]:
    """Return placeholder names in order of first appearance."""

    seen: dict[str, None] = {}
    for match in _VARIABLE.finditer(content or ""):
        seen.setdefault(match.group(1), None)
    return tuple(seen)


def parse_selection(body: str) -> Optional[int]:
    """Return the menu number a message body encodes, if it is just a number."""

    text = (body or "").strip()
    if not _SELECTION.fullmatch(text):
        return None
    return int(text)


def find_menu_selection(rules: Iterable[CompiledRule], body: str) -> Optional[MenuSelection]:
    """Interpret ``body`` as an answer to the first menu rule it fits.

    This is stateless: any sender's numeric message is matched against the
    first active menu rule whose options cover the number.
    """

    number = parse_selection(body)
    if number is None or number < 1:
        return None
    for rule in rules:
        if not rule.is_menu or number > len(rule.options):
            continue
        option = _option_for(rule, number)
        if option is not None:
            return MenuSelection(rule=rule, option=option)
    return None


def _option_for(rule: CompiledRule, number: int) -> Optional[NumberedOption]:
    for option in rule.options:
        if option.number == number:
            return option
    return None


class PendingMenus:
    """Menus awaiting an answer, keyed by (account_id, sender).

    Entries expire after ``ttl_seconds`` and the map never holds more than
    ``max_entries``; the oldest menu is dropped first.
    """

    def __init__(
        self,
        max_entries: int = 1000,
        ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._pending: OrderedDict[tuple[str, str], tuple[str, float]] = OrderedDict()
        self._max_entries = max_entries
        self._ttl = ttl_seconds
        self._clock = clock

    def _expire(self) -> None:
        cutoff = self._clock() - self._ttl
        while self._pending:
            key, (_, sent_at) = next(iter(self._pending.items()))
            if sent_at > cutoff:
                break
            del self._pending[key]

    def remember(self, account_id: str, sender: str, rule_id: str) -> None:
        key = (account_id, sender)
        self._pending.pop(key, None)
        self._pending[key] = (rule_id, self._clock())
        self._expire()
        while len(self._pending) > self._max_entries:
            self._pending.popitem(last=False)

    def pending_rule(self, account_id: str, sender: str) -> Optional[str]:
        self._expire()
        entry = self._pending.get((account_id, sender))
        return entry[0] if entry else None

    def clear(self, account_id: str, sender: str) -> None:
        self._pending.pop((account_id, sender), None)

    def forget_account(self, account_id: str) -> None:
        for key in [key for key in self._pending if key[0] == account_id]:
            del self._pending[key]

    def find_selection(
        self, account_id: str, sender: str, rules: Iterable[CompiledRule], body: str
    ) -> Optional[MenuSelection]:
        rule_id = self.pending_rule(account_id, sender)
        if rule_id is None:
            return None
        candidates = [rule for rule in rules if rule.id == rule_id]
        return find_menu_selection(candidates, body)

    def __len__(self) -> int:
        return len(self._pending)


class ReplyComposer:
    """Resolve rules to final outbound text using the template store."""

    def __init__(self, templates: TemplateStorePort) -> None:
        self._templates = templates

    def _template(self, template_id: str, rule: CompiledRule) -> Template:
        template = self._templates.get_template(template_id)
        if template is None:
            raise ConfigError(f"Template {template_id} not found for rule {rule.id} ({rule.name})")
        return template

    def _attachment(self, template: Template) -> Optional[str]:
        path = template.attachment_path or self._templates.get_attachment(template.id)
        if not path:
            return None
        if not os.path.exists(path):
            LOGGER.warning("Attachment %s for template %s is missing, sending text only", path, template.id)
            return None
        return path

    def option_label(self, rule: CompiledRule, option: NumberedOption) -> str:
        if option.label:
            return option.label
        return self._template(option.response_template_id, rule).name

    def compose(self, rule: CompiledRule) -> ComposedReply:
        """Build the reply for a rule that fired.

        Template content is delivered verbatim; ``{{placeholders}}`` are left
        for whoever produced the template.
        """

        template = self._template(rule.template_id, rule)
        if not rule.is_menu:
            return ComposedReply(
                rule_id=rule.id,
                rule_name=rule.name,
                kind="direct",
                text=template.content,
                delay_seconds=rule.delay_seconds,
                attachment_path=self._attachment(template),
            )

        lines = [f"{option.number}. {self.option_label(rule, option)}" for option in rule.options]
        text = f"{template.content}\n\n{MENU_HEADER}\n" + "\n".join(lines)
        return ComposedReply(
            rule_id=rule.id,
            rule_name=rule.name,
            kind="menu",
            text=text,
            delay_seconds=rule.delay_seconds,
            attachment_path=self._attachment(template),
        )

    def compose_selection(self, selection: MenuSelection) -> ComposedReply:
        template = self._template(selection.option.response_template_id, selection.rule)
        return ComposedReply(
            rule_id=selection.rule.id,
            rule_name=selection.rule.name,
            kind="selection",
            text=template.content,
            delay_seconds=selection.rule.delay_seconds,
            attachment_path=self._attachment(template),
        )
