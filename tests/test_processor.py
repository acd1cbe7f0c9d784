from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Optional

from core.composer import MENU_HEADER, ReplyComposer
from core.config import AutoReplyConfig, DispatchConfig
from core.dispatch import DispatchPipeline
from core.models import AutoReplyRule, Direction, Message, NumberedOption, RuleStats, SentReceipt, Template
from core.processor import AutoReplyProcessor
from core.registry import SessionRegistry

NOON = datetime(2024, 1, 1, 12, 0)


class FakeDriver:
    chat_suffix = "@c.us"

    def __init__(self) -> None:
        self.listener = None
        self.sent: list[tuple[str, str]] = []

    def set_listener(self, listener) -> None:
        self.listener = listener

    async def connect(self) -> None:
        return None

    async def send_message(self, chat_id: str, text: str, media=None) -> SentReceipt:
        self.sent.append((chat_id, text))
        return SentReceipt(message_id=str(len(self.sent)), timestamp=datetime.now(timezone.utc))

    async def destroy(self) -> None:
        return None

    async def get_chats(self):
        return []

    async def fetch_messages(self, chat_id: str, limit: int):
        return []


class FakeStore:
    """In-memory rule and template store."""

    def __init__(self, rules: list[AutoReplyRule], templates: list[Template]) -> None:
        self.rules = rules
        self.templates = {template.id: template for template in templates}
        self.counts: dict[str, int] = {}
        self.fail_reads = False

    def get_all_rules(self) -> list[AutoReplyRule]:
        if self.fail_reads:
            raise RuntimeError("database is locked")
        return list(self.rules)

    def get_rule(self, rule_id: str) -> Optional[AutoReplyRule]:
        return next((rule for rule in self.rules if rule.id == rule_id), None)

    def update_stats(self, rule_id: str, triggered_at: datetime) -> RuleStats:
        self.counts[rule_id] = self.counts.get(rule_id, 0) + 1
        return RuleStats(rule_id=rule_id, triggered_count=self.counts[rule_id], last_triggered_at=triggered_at)

    def get_template(self, template_id: str) -> Optional[Template]:
        return self.templates.get(template_id)

    def get_attachment(self, template_id: str) -> Optional[str]:
        return None


TEMPLATES = [
    Template(id="T1", name="Support", content="Our team will help you shortly."),
    Template(id="MENU", name="Welcome", content="Welcome to the shop!"),
    Template(id="R1", name="Prices", content="Everything is 10% off."),
    Template(id="R2", name="Hours", content="We are open 9 to 5."),
]

MENU_RULE = AutoReplyRule(
    id="menu",
    name="Main menu",
    trigger_type="all",
    template_id="MENU",
    numbered_options=(NumberedOption(1, "R1"), NumberedOption(2, "R2")),
)


async def _sleep(seconds: float) -> None:
    return None


async def _setup(rules, menu_tracking: str = "stateless", enabled: bool = True):
    driver = FakeDriver()
    registry = SessionRegistry(lambda account_id: driver)
    registry.init()
    await registry.connect("acc")
    for _ in range(5):
        await asyncio.sleep(0)
    await driver.listener.on_ready()

    store = FakeStore(rules, TEMPLATES)
    dispatch = DispatchPipeline(registry, store, DispatchConfig(), sleep=_sleep)
    processor = AutoReplyProcessor(
        store,
        ReplyComposer(store),
        dispatch,
        AutoReplyConfig(enabled=enabled, menu_tracking=menu_tracking),
        clock=lambda: NOON,
    )
    return registry, driver, store, processor


def _incoming(body: str, sender: str = "15551234567", message_id: str = "m1") -> Message:
    return Message(
        id=message_id,
        account_id="acc",
        sender=sender,
        body=body,
        timestamp=datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc),
        direction=Direction.IN,
        chat_id=f"{sender}@c.us",
    )


def test_keyword_rule_replies_with_template() -> None:
    async def main() -> None:
        rule = AutoReplyRule(
            id="kw", name="Support", trigger_type="keywords", trigger_pattern="help, support", template_id="T1"
        )
        registry, driver, store, processor = await _setup([rule])

        result = await processor.handle("acc", _incoming("I need HELP please"))

        assert result.success
        assert driver.sent == [("15551234567@c.us", "Our team will help you shortly.")]
        assert store.counts == {"kw": 1}

        assert await processor.handle("acc", _incoming("thanks")) is None
        assert len(driver.sent) == 1
        await registry.shutdown()

    asyncio.run(main())


def test_menu_then_numbered_answer() -> None:
    async def main() -> None:
        registry, driver, store, processor = await _setup([MENU_RULE])

        await processor.handle("acc", _incoming("hi"))
        assert driver.sent[-1][1] == f"Welcome to the shop!\n\n{MENU_HEADER}\n1. Prices\n2. Hours"
        assert store.counts["menu"] == 1

        await processor.handle("acc", _incoming("2", message_id="m2"))
        assert driver.sent[-1][1] == "We are open 9 to 5."
        assert store.counts["menu"] == 2
        assert len(driver.sent) == 2
        await registry.shutdown()

    asyncio.run(main())


def test_only_first_matching_rule_fires() -> None:
    async def main() -> None:
        rules = [
            AutoReplyRule(id="a", name="A", trigger_type="all", template_id="T1"),
            AutoReplyRule(id="b", name="B", trigger_type="all", template_id="R1"),
        ]
        registry, driver, store, processor = await _setup(rules)

        await processor.handle("acc", _incoming("hello"))

        assert len(driver.sent) == 1
        assert store.counts == {"a": 1}
        await registry.shutdown()

    asyncio.run(main())


def test_rule_with_missing_template_is_skipped() -> None:
    async def main() -> None:
        rules = [
            AutoReplyRule(id="broken", name="Broken", trigger_type="all", template_id="deleted"),
            AutoReplyRule(id="ok", name="Fallback", trigger_type="all", template_id="R1"),
        ]
        registry, driver, store, processor = await _setup(rules)

        await processor.handle("acc", _incoming("hello"))

        assert driver.sent == [("15551234567@c.us", "Everything is 10% off.")]
        assert store.counts == {"ok": 1}
        await registry.shutdown()

    asyncio.run(main())


def test_rule_read_failure_sends_nothing() -> None:
    async def main() -> None:
        registry, driver, store, processor = await _setup([MENU_RULE])
        store.fail_reads = True

        assert await processor.handle("acc", _incoming("hello")) is None
        assert driver.sent == []
        await registry.shutdown()

    asyncio.run(main())


def test_outbound_and_disabled_are_ignored() -> None:
    async def main() -> None:
        registry, driver, _, processor = await _setup([MENU_RULE], enabled=False)

        await processor.handle("acc", _incoming("hello"))
        processor.set_enabled(True)
        outbound = Message(
            id="o1",
            account_id="acc",
            sender="acc",
            body="hello",
            timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
            direction=Direction.OUT,
            chat_id="15551234567@c.us",
        )
        await processor.handle("acc", outbound)

        assert driver.sent == []
        await registry.shutdown()

    asyncio.run(main())


def test_rules_scoped_to_other_accounts_do_not_fire() -> None:
    async def main() -> None:
        rules = [
            AutoReplyRule(id="other", name="Other", trigger_type="all", template_id="T1", account_id="other"),
            AutoReplyRule(id="mine", name="Mine", trigger_type="all", template_id="R1", account_id="acc"),
        ]
        registry, driver, store, processor = await _setup(rules)

        await processor.handle("acc", _incoming("hello"))

        assert store.counts == {"mine": 1}
        await registry.shutdown()

    asyncio.run(main())


def test_stateless_menu_answer_from_any_sender() -> None:
    async def main() -> None:
        registry, driver, _, processor = await _setup([MENU_RULE])

        # A number from someone who never saw the menu still selects an option.
        await processor.handle("acc", _incoming("1", sender="19998887777"))

        assert driver.sent == [("19998887777@c.us", "Everything is 10% off.")]
        await registry.shutdown()

    asyncio.run(main())


def test_per_sender_menu_tracking() -> None:
    async def main() -> None:
        registry, driver, _, processor = await _setup([MENU_RULE], menu_tracking="per_sender")
        menu_text = f"Welcome to the shop!\n\n{MENU_HEADER}\n1. Prices\n2. Hours"

        await processor.handle("acc", _incoming("hi", sender="111"))
        # Bob never got a menu, so "2" is a normal message for him.
        await processor.handle("acc", _incoming("2", sender="222"))
        await processor.handle("acc", _incoming("2", sender="111"))
        # The answer consumed Alice's pending menu.
        await processor.handle("acc", _incoming("2", sender="111"))

        assert driver.sent == [
            ("111@c.us", menu_text),
            ("222@c.us", menu_text),
            ("111@c.us", "We are open 9 to 5."),
            ("111@c.us", menu_text),
        ]
        await registry.shutdown()

    asyncio.run(main())


def test_dry_run_does_not_send() -> None:
    async def main() -> None:
        rule = AutoReplyRule(
            id="kw", name="Support", trigger_type="keywords", trigger_pattern="help", template_id="T1"
        )
        registry, driver, store, processor = await _setup([rule, MENU_RULE])

        hit = processor.dry_run("kw", _incoming("help!"))
        assert hit.matched
        assert hit.reply.text == "Our team will help you shortly."

        miss = processor.dry_run("kw", _incoming("hello"))
        assert not miss.matched

        selection = processor.dry_run("menu", _incoming("1"))
        assert selection.reply.text == "Everything is 10% off."

        missing = processor.dry_run("nope", _incoming("hello"))
        assert missing.error == "Rule nope not found"

        assert driver.sent == []
        assert store.counts == {}
        await registry.shutdown()

    asyncio.run(main())


def test_forgetting_an_account_drops_its_pending_menus() -> None:
    async def main() -> None:
        registry, driver, _, processor = await _setup([MENU_RULE], menu_tracking="per_sender")
        menu_text = f"Welcome to the shop!\n\n{MENU_HEADER}\n1. Prices\n2. Hours"

        await processor.handle("acc", _incoming("hi", sender="111"))
        processor.forget_account("acc")
        await processor.handle("acc", _incoming("2", sender="111"))

        assert driver.sent == [("111@c.us", menu_text), ("111@c.us", menu_text)]
        await registry.shutdown()

    asyncio.run(main())
