"""Rule compilation and trigger evaluation (core domain)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Union

from core.errors import ConfigError
from core.models import AutoReplyRule, Message, NumberedOption, TriggerType
from core.recipients import sender_matches

LOGGER = logging.getLogger(__name__)

MAX_DELAY_SECONDS = 300


@dataclass(frozen=True)
class AllTrigger:
    pass


@dataclass(frozen=True)
class KeywordsTrigger:
    keywords: tuple[str, ...]


@dataclass(frozen=True)
class SpecificUserTrigger:
    pattern: str


Trigger = Union[AllTrigger, KeywordsTrigger, SpecificUserTrigger]


@dataclass(frozen=True)
class TimeWindow:
    """Inclusive minute-of-day window; ``start > end`` wraps past midnight."""

    start: int
    end: int

    def contains(self, minute_of_day: int) -> bool:
        if self.start <= self.end:
            return self.start <= minute_of_day <= self.end
        return minute_of_day >= self.start or minute_of_day <= self.end


@dataclass(frozen=True)
class CompiledRule:
    """Rule in the shape the evaluator and composer work with."""

    id: str
    name: str
    template_id: str
    trigger: Trigger
    delay_seconds: int
    time_window: Optional[TimeWindow]
    days_of_week: Optional[frozenset[int]]
    options: tuple[NumberedOption, ...]
    account_id: Optional[str]

    @property
    def is_menu(self) -> bool:
        return bool(self.options)


def parse_keywords(pattern: str) -> tuple[str, ...]:
    """Split a comma-separated keyword pattern into trimmed, lower-cased keywords."""

    return tuple(k for k in (part.strip().lower() for part in pattern.split(",")) if k)


def parse_clock(value: str) -> int:
    """Return minute-of-day for an "HH:MM" string."""

    hour_text, sep, minute_text = value.strip().partition(":")
    if not sep or not hour_text.isdigit() or not minute_text.isdigit():
        raise ConfigError(f"Invalid time {value!r}, expected HH:MM")
    hour, minute = int(hour_text), int(minute_text)
    if hour > 23 or minute > 59:
        raise ConfigError(f"Invalid time {value!r}, expected HH:MM")
    return hour * 60 + minute


def build_trigger(trigger_type: str, pattern: str) -> Trigger:
    try:
        kind = TriggerType(trigger_type)
    except ValueError:
        raise ConfigError(f"Unknown trigger type: {trigger_type!r}") from None

    if kind is TriggerType.ALL:
        return AllTrigger()
    if kind is TriggerType.KEYWORDS:
        keywords = parse_keywords(pattern)
        if not keywords:
            raise ConfigError("Keyword trigger requires at least one keyword")
        return KeywordsTrigger(keywords=keywords)
    if not pattern.strip():
        raise ConfigError("Specific user trigger requires a sender pattern")
    return SpecificUserTrigger(pattern=pattern.strip())


def compile_rule(rule: AutoReplyRule) -> CompiledRule:
    """Compile one stored rule, raising ConfigError when it cannot be used."""

    if not rule.template_id:
        raise ConfigError(f"Rule {rule.id} has no template")
    if not 0 <= rule.delay_seconds <= MAX_DELAY_SECONDS:
        raise ConfigError(f"Rule {rule.id} delay {rule.delay_seconds}s outside 0..{MAX_DELAY_SECONDS}")

    window = None
    if rule.time_from and rule.time_to:
        window = TimeWindow(start=parse_clock(rule.time_from), end=parse_clock(rule.time_to))

    days = None
    if rule.days_of_week:
        if any(day not in range(7) for day in rule.days_of_week):
            raise ConfigError(f"Rule {rule.id} has a day outside 0..6")
        days = frozenset(rule.days_of_week)

    options = tuple(sorted(rule.numbered_options, key=lambda option: option.number))
    numbers = [option.number for option in options]
    if len(set(numbers)) != len(numbers):
        raise ConfigError(f"Rule {rule.id} has duplicate option numbers")

    return CompiledRule(
        id=rule.id,
        name=rule.name,
        template_id=rule.template_id,
        trigger=build_trigger(rule.trigger_type, rule.trigger_pattern),
        delay_seconds=rule.delay_seconds,
        time_window=window,
        days_of_week=days,
        options=options,
        account_id=rule.account_id,
    )


def build_rules(rules: Iterable[AutoReplyRule]) -> List[CompiledRule]:
    """Compile active rules in their stored order.

    Misconfigured rules are logged and left out so one bad record never blocks
    the rest of the rule set.
    """

    compiled: List[CompiledRule] = []
    for rule in rules:
        if not rule.is_active:
            continue
        try:
            compiled.append(compile_rule(rule))
        except ConfigError as exc:
            LOGGER.warning("Skipping rule %s (%s): %s", rule.id, rule.name, exc)
    return compiled


def day_of_week(now: datetime) -> int:
    """Return 0=Sunday..6=Saturday."""

    return (now.weekday() + 1) % 7


def trigger_matches(trigger: Trigger, message: Message) -> bool:
    if isinstance(trigger, AllTrigger):
        return True
    if isinstance(trigger, KeywordsTrigger):
        body = message.body.lower()
        return any(keyword in body for keyword in trigger.keywords)
    if isinstance(trigger, SpecificUserTrigger):
        return sender_matches(message.sender, trigger.pattern)
    raise TypeError(f"Unsupported trigger: {trigger!r}")


def evaluate(rule: CompiledRule, message: Message, now: datetime) -> bool:
    """Decide whether ``rule`` fires for ``message`` at ``now``.

    Checks short-circuit in order: time window, day of week, trigger.
    """

    if rule.time_window is not None:
        if not rule.time_window.contains(now.hour * 60 + now.minute):
            return False
    if rule.days_of_week is not None and day_of_week(now) not in rule.days_of_week:
        return False
    return trigger_matches(rule.trigger, message)


def select_rule(
    rules: Iterable[CompiledRule], message: Message, now: datetime
) -> Optional[CompiledRule]:
    """Return the first rule that fires, or None."""

    for rule in rules:
        if evaluate(rule, message, now):
            return rule
    return None


def validate_rule(rule: AutoReplyRule) -> List[str]:
    """Return human-readable problems with a rule before it is stored."""

    errors: List[str] = []
    if not rule.name.strip():
        errors.append("Rule name is required")
    if not rule.template_id:
        errors.append("Template is required")
    if rule.trigger_type == TriggerType.SPECIFIC_USER.value and not rule.trigger_pattern.strip():
        errors.append("User phone number is required for specific user trigger")
    if rule.trigger_type == TriggerType.KEYWORDS.value and not parse_keywords(rule.trigger_pattern):
        errors.append("Keywords are required for keyword trigger")
    if rule.trigger_type not in {kind.value for kind in TriggerType}:
        errors.append(f"Unknown trigger type: {rule.trigger_type}")
    if not 0 <= rule.delay_seconds <= MAX_DELAY_SECONDS:
        errors.append(f"Delay must be between 0 and {MAX_DELAY_SECONDS} seconds")
    try:
        if rule.time_from:
            parse_clock(rule.time_from)
        if rule.time_to:
            parse_clock(rule.time_to)
    except ConfigError as exc:
        errors.append(str(exc))
    if rule.days_of_week and any(day not in range(7) for day in rule.days_of_week):
        errors.append("Days of week must be between 0 (Sunday) and 6 (Saturday)")
    numbers = [option.number for option in rule.numbered_options]
    if len(set(numbers)) != len(numbers):
        errors.append("Numbered options must have unique numbers")
    if any(not option.response_template_id for option in rule.numbered_options):
        errors.append("Every numbered option needs a response template")
    return errors
