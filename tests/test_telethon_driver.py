from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Optional

from telethon import errors

from adapters.telethon_driver import TelethonDriver


class DummyQR:
    def __init__(self, outcomes: list) -> None:
        self._outcomes = list(outcomes)
        self.generation = 1
        self.recreated = 0

    @property
    def url(self) -> str:
        return f"tg://login?token={self.generation}"

    async def wait(self, timeout: Optional[float] = None) -> None:
        outcome = self._outcomes.pop(0) if self._outcomes else asyncio.TimeoutError()
        if outcome is not None:
            raise outcome

    async def recreate(self) -> None:
        self.generation += 1
        self.recreated += 1


class DummySent:
    def __init__(self, message_id: int) -> None:
        self.id = message_id
        self.date = datetime(2024, 1, 1, tzinfo=timezone.utc)


class DummyClient:
    def __init__(self, authorized: bool = True, qr: Optional[DummyQR] = None, password_error=None) -> None:
        self.authorized = authorized
        self.qr = qr or DummyQR([])
        self.password_error = password_error
        self.passwords: list[str] = []
        self.handlers: list = []
        self.known_ids = {12345}
        self.resolved: list = []
        self.sent: list = []
        self.disconnect_calls = 0
        self.disconnected = asyncio.get_running_loop().create_future()

    async def connect(self) -> None:
        return None

    async def is_user_authorized(self) -> bool:
        return self.authorized

    async def qr_login(self) -> DummyQR:
        return self.qr

    async def sign_in(self, password: str) -> None:
        self.passwords.append(password)
        if self.password_error is not None:
            raise self.password_error

    def add_event_handler(self, callback, event) -> None:
        self.handlers.append(callback)

    def remove_event_handler(self, callback) -> None:
        if callback in self.handlers:
            self.handlers.remove(callback)

    async def get_me(self):
        return None

    async def get_input_entity(self, peer):
        if isinstance(peer, int) and peer not in self.known_ids:
            raise ValueError(f"Could not find the input entity for {peer}")
        self.resolved.append(peer)
        return peer

    async def send_message(self, entity, text: str) -> DummySent:
        self.sent.append((entity, text))
        return DummySent(len(self.sent))

    async def disconnect(self) -> None:
        await asyncio.sleep(0)
        self.disconnect_calls += 1


class RecordingListener:
    def __init__(self) -> None:
        self.qr_urls: list[str] = []
        self.ready = 0
        self.auth_failures: list[str] = []
        self.disconnects: list[str] = []

    async def on_qr(self, token: str) -> None:
        self.qr_urls.append(token)

    async def on_ready(self) -> None:
        self.ready += 1

    async def on_auth_failure(self, reason: str) -> None:
        self.auth_failures.append(reason)

    async def on_disconnected(self, reason: str) -> None:
        self.disconnects.append(reason)

    async def on_message(self, message) -> None:
        return None


async def _connected_driver(client: DummyClient, **kwargs) -> tuple[TelethonDriver, RecordingListener]:
    driver = TelethonDriver(client, **kwargs)
    listener = RecordingListener()
    driver.set_listener(listener)
    await driver.connect()
    return driver, listener


def test_qr_is_refreshed_until_attempts_run_out() -> None:
    async def main() -> None:
        client = DummyClient(authorized=False)
        driver, listener = await _connected_driver(client, qr_max_attempts=3)

        assert listener.qr_urls == [
            "tg://login?token=1",
            "tg://login?token=2",
            "tg://login?token=3",
        ]
        assert client.qr.recreated == 2
        assert listener.auth_failures == ["QR code was not scanned in time"]
        assert listener.ready == 0
        assert client.handlers == []

    asyncio.run(main())


def test_qr_scanned_after_refresh_logs_in() -> None:
    async def main() -> None:
        client = DummyClient(authorized=False, qr=DummyQR([asyncio.TimeoutError(), None]))
        driver, listener = await _connected_driver(client)

        assert len(listener.qr_urls) == 2
        assert listener.ready == 1
        assert len(client.handlers) == 1
        await driver.destroy()

    asyncio.run(main())


def test_two_step_password_is_used_when_required() -> None:
    async def main() -> None:
        qr = DummyQR([errors.SessionPasswordNeededError(request=None)])
        client = DummyClient(authorized=False, qr=qr)
        driver, listener = await _connected_driver(client, password="hunter2")

        assert client.passwords == ["hunter2"]
        assert listener.ready == 1
        await driver.destroy()

    asyncio.run(main())


def test_two_step_without_password_fails_auth() -> None:
    async def main() -> None:
        qr = DummyQR([errors.SessionPasswordNeededError(request=None)])
        client = DummyClient(authorized=False, qr=qr)
        _, listener = await _connected_driver(client)

        assert client.passwords == []
        assert listener.ready == 0
        assert "2FA" in listener.auth_failures[0]

    asyncio.run(main())


def test_wrong_two_step_password_fails_auth() -> None:
    async def main() -> None:
        qr = DummyQR([errors.SessionPasswordNeededError(request=None)])
        client = DummyClient(
            authorized=False, qr=qr, password_error=errors.PasswordHashInvalidError(request=None)
        )
        _, listener = await _connected_driver(client, password="wrong")

        assert listener.auth_failures == ["Invalid two-step verification password"]
        assert listener.ready == 0

    asyncio.run(main())


def test_peers_resolve_by_id_then_phone() -> None:
    async def main() -> None:
        client = DummyClient()
        driver, _ = await _connected_driver(client)

        receipt = await driver.send_message("12345", "by id")
        await driver.send_message("15551234567", "by phone")
        await driver.send_message("@shop", "by username")

        assert client.resolved == [12345, "+15551234567", "@shop"]
        assert client.sent[1] == ("+15551234567", "by phone")
        assert receipt.message_id == "1"
        await driver.destroy()

    asyncio.run(main())


def test_destroy_from_disconnect_callback_does_not_cancel_itself() -> None:
    async def main() -> None:
        client = DummyClient()
        driver = TelethonDriver(client)
        finished: list[str] = []

        class DestroyingListener(RecordingListener):
            async def on_disconnected(self, reason: str) -> None:
                await super().on_disconnected(reason)
                await driver.destroy()
                finished.append(reason)

        listener = DestroyingListener()
        driver.set_listener(listener)
        await driver.connect()

        client.disconnected.set_result(None)
        for _ in range(5):
            await asyncio.sleep(0)

        assert listener.disconnects == ["Connection closed"]
        assert finished == ["Connection closed"]
        assert client.disconnect_calls == 1
        assert client.handlers == []

    asyncio.run(main())
