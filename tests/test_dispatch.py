from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from core.composer import ComposedReply
from core.config import DispatchConfig
from core.dispatch import DispatchPipeline
from core.models import Direction, Message, RuleStats, SentReceipt
from core.registry import SessionRegistry

SENT_AT = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
NOW = datetime(2024, 1, 1, 9, 30, tzinfo=timezone.utc)


class FakeDriver:
    chat_suffix = "@c.us"

    def __init__(self, failing: frozenset = frozenset()) -> None:
        self.listener = None
        self.sent: list[tuple[str, str, object]] = []
        self._failing = failing

    def set_listener(self, listener) -> None:
        self.listener = listener

    async def connect(self) -> None:
        return None

    async def send_message(self, chat_id: str, text: str, media=None) -> SentReceipt:
        if chat_id in self._failing:
            raise RuntimeError("recipient not on network")
        self.sent.append((chat_id, text, media))
        return SentReceipt(message_id=f"msg-{len(self.sent)}", timestamp=SENT_AT)

    async def destroy(self) -> None:
        return None

    async def get_chats(self):
        return []

    async def fetch_messages(self, chat_id: str, limit: int):
        return []


class FakeRuleStore:
    def __init__(self, fail: bool = False) -> None:
        self.stats_calls: list[tuple[str, datetime]] = []
        self._fail = fail

    def update_stats(self, rule_id: str, triggered_at: datetime) -> RuleStats:
        if self._fail:
            raise RuntimeError("database is locked")
        self.stats_calls.append((rule_id, triggered_at))
        return RuleStats(rule_id=rule_id, triggered_count=len(self.stats_calls))


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


async def _connected_registry(drivers: dict[str, FakeDriver], ready=None) -> SessionRegistry:
    registry = SessionRegistry(lambda account_id: drivers[account_id])
    registry.init()
    for account_id in drivers:
        await registry.connect(account_id)
    for _ in range(5):
        await asyncio.sleep(0)
    for account_id, driver in drivers.items():
        if ready is None or account_id in ready:
            await driver.listener.on_ready()
    return registry


def _pipeline(registry, store=None, sleep=None) -> DispatchPipeline:
    return DispatchPipeline(
        registry,
        store or FakeRuleStore(),
        DispatchConfig(bulk_delay_seconds=1.0, account_delay_seconds=2.0),
        sleep=sleep or SleepRecorder(),
        clock=lambda: NOW,
    )


def test_send_formats_phone_numbers_and_keeps_full_ids() -> None:
    async def main() -> None:
        driver = FakeDriver()
        registry = await _connected_registry({"acc": driver})
        dispatch = _pipeline(registry)

        result = await dispatch.send("acc", "+1 555-123-4567", "hello")
        assert result.success
        assert result.message_id == "msg-1"
        assert result.timestamp == SENT_AT
        await dispatch.send("acc", "team@g.us", "hi team", "/tmp/file.pdf")

        assert driver.sent == [
            ("15551234567@c.us", "hello", None),
            ("team@g.us", "hi team", "/tmp/file.pdf"),
        ]
        outbound = [m for m in registry.get_message_log("acc") if m.direction is Direction.OUT]
        assert [m.chat_id for m in outbound] == ["15551234567@c.us", "team@g.us"]
        await registry.shutdown()

    asyncio.run(main())


def test_send_reports_unknown_and_unconnected_accounts() -> None:
    async def main() -> None:
        registry = await _connected_registry({"acc": FakeDriver()}, ready=set())
        dispatch = _pipeline(registry)

        missing = await dispatch.send("nope", "123", "hi")
        assert not missing.success
        assert missing.error == "Account nope not found"

        pending = await dispatch.send("acc", "123", "hi")
        assert not pending.success
        assert "not connected" in pending.error

        invalid = await dispatch.send("acc", "no digits", "hi")
        assert not invalid.success
        await registry.shutdown()

    asyncio.run(main())


def test_bulk_send_continues_after_a_failure() -> None:
    async def main() -> None:
        driver = FakeDriver(failing=frozenset({"333@c.us"}))
        registry = await _connected_registry({"acc": driver})
        sleep = SleepRecorder()
        dispatch = _pipeline(registry, sleep=sleep)

        results = await dispatch.send_bulk("acc", ["111", "222", "333", "444", "555"], "promo")

        assert [r.success for r in results] == [True, True, False, True, True]
        assert [r.recipient for r in results] == ["111", "222", "333", "444", "555"]
        assert results[2].error == "recipient not on network"
        assert [chat for chat, _, _ in driver.sent] == ["111@c.us", "222@c.us", "444@c.us", "555@c.us"]
        # Pauses only between sends.
        assert sleep.calls == [1.0, 1.0, 1.0, 1.0]
        await registry.shutdown()

    asyncio.run(main())


def test_send_from_multiple_accounts() -> None:
    async def main() -> None:
        first, second = FakeDriver(), FakeDriver()
        registry = await _connected_registry({"a": first, "b": second})
        sleep = SleepRecorder()
        dispatch = _pipeline(registry, sleep=sleep)

        results = await dispatch.send_from_multiple_accounts(["a", "b", "c"], "999", "hello")

        assert [(r.account_id, r.success) for r in results] == [("a", True), ("b", True), ("c", False)]
        assert first.sent == [("999@c.us", "hello", None)]
        assert second.sent == [("999@c.us", "hello", None)]
        assert sleep.calls == [2.0, 2.0]
        await registry.shutdown()

    asyncio.run(main())


def _incoming(chat_id: str = "15551234567@c.us") -> Message:
    return Message(
        id="in-1",
        account_id="acc",
        sender="15551234567",
        body="hi",
        timestamp=NOW,
        direction=Direction.IN,
        chat_id=chat_id,
    )


def test_quick_reply_waits_sends_to_chat_and_counts() -> None:
    async def main() -> None:
        driver = FakeDriver()
        registry = await _connected_registry({"acc": driver})
        store = FakeRuleStore()
        sleep = SleepRecorder()
        dispatch = _pipeline(registry, store=store, sleep=sleep)
        reply = ComposedReply(rule_id="r1", rule_name="Welcome", kind="direct", text="Hello!", delay_seconds=3)

        result = await dispatch.send_quick_reply("acc", _incoming(), reply)

        assert result.success
        assert result.recipient == "15551234567"
        assert sleep.calls == [3]
        assert driver.sent == [("15551234567@c.us", "Hello!", None)]
        assert store.stats_calls == [("r1", NOW)]
        await registry.shutdown()

    asyncio.run(main())


def test_quick_reply_failure_is_not_counted() -> None:
    async def main() -> None:
        driver = FakeDriver(failing=frozenset({"15551234567@c.us"}))
        registry = await _connected_registry({"acc": driver})
        store = FakeRuleStore()
        dispatch = _pipeline(registry, store=store)
        reply = ComposedReply(rule_id="r1", rule_name="Welcome", kind="direct", text="Hello!")

        result = await dispatch.send_quick_reply("acc", _incoming(), reply)

        assert not result.success
        assert store.stats_calls == []
        await registry.shutdown()

    asyncio.run(main())


def test_quick_reply_stats_failure_keeps_send_result() -> None:
    async def main() -> None:
        driver = FakeDriver()
        registry = await _connected_registry({"acc": driver})
        dispatch = _pipeline(registry, store=FakeRuleStore(fail=True))
        reply = ComposedReply(rule_id="r1", rule_name="Welcome", kind="direct", text="Hello!")

        result = await dispatch.send_quick_reply("acc", _incoming(), reply)

        assert result.success
        assert len(driver.sent) == 1
        await registry.shutdown()

    asyncio.run(main())
