"""Dispatch pipeline: sequential sends through account sessions.

Sends are strictly sequential per call so outbound order within an account is
FIFO. Nothing is retried here; every failure comes back as a structured
``SendResult`` and the caller decides what to do with it.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, Optional

from core.composer import ComposedReply
from core.config import DispatchConfig
from core.errors import SwitchboardError
from core.models import Message, SendResult
from core.ports import RuleStorePort
from core.recipients import format_chat_id
from core.registry import SessionRegistry

LOGGER = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class DispatchPipeline:
    """Send single, bulk, multi-account and quick-reply messages."""

    def __init__(
        self,
        registry: SessionRegistry,
        rule_store: RuleStorePort,
        config: Optional[DispatchConfig] = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._registry = registry
        self._rule_store = rule_store
        self._config = config or DispatchConfig()
        self._sleep = sleep
        self._clock = clock

    async def _deliver(
        self, account_id: str, chat_id: str, recipient: str, text: str, attachment: Optional[str]
    ) -> SendResult:
        try:
            session = self._registry.require_session(account_id)
            receipt = await session.send(chat_id, text, attachment)
        except SwitchboardError as exc:
            LOGGER.error("Send from %s to %s failed: %s", account_id, recipient, exc)
            return SendResult(success=False, account_id=account_id, recipient=recipient, error=str(exc))
        except Exception as exc:
            LOGGER.exception("Unexpected error sending from %s to %s", account_id, recipient)
            return SendResult(
                success=False,
                account_id=account_id,
                recipient=recipient,
                error=str(exc) or exc.__class__.__name__,
            )
        return SendResult(
            success=True,
            account_id=account_id,
            recipient=recipient,
            message_id=receipt.message_id,
            timestamp=receipt.timestamp,
        )

    async def send(
        self, account_id: str, recipient: str, text: str, attachment: Optional[str] = None
    ) -> SendResult:
        """Send to a user-entered recipient (phone number or full chat id)."""

        session = self._registry.get_session(account_id)
        if session is None:
            return SendResult(
                success=False,
                account_id=account_id,
                recipient=recipient,
                error=f"Account {account_id} not found",
            )
        try:
            chat_id = format_chat_id(recipient, session.chat_suffix)
        except SwitchboardError as exc:
            return SendResult(success=False, account_id=account_id, recipient=recipient, error=str(exc))
        return await self._deliver(account_id, chat_id, recipient, text, attachment)

    async def send_bulk(
        self,
        account_id: str,
        recipients: Iterable[str],
        text: str,
        attachment: Optional[str] = None,
    ) -> list[SendResult]:
        """Send the same content to many recipients, one at a time."""

        results: list[SendResult] = []
        targets = list(recipients)
        for index, recipient in enumerate(targets):
            if index:
                await self._sleep(self._config.bulk_delay_seconds)
            results.append(await self.send(account_id, recipient, text, attachment))
        failed = sum(1 for result in results if not result.success)
        LOGGER.info("Bulk send from %s: %s sent, %s failed", account_id, len(results) - failed, failed)
        return results

    async def send_from_multiple_accounts(
        self,
        account_ids: Iterable[str],
        recipient: str,
        text: str,
        attachment: Optional[str] = None,
    ) -> list[SendResult]:
        """Send the same content to one recipient from several accounts."""

        results: list[SendResult] = []
        for index, account_id in enumerate(list(account_ids)):
            if index:
                await self._sleep(self._config.account_delay_seconds)
            results.append(await self.send(account_id, recipient, text, attachment))
        return results

    async def send_quick_reply(self, account_id: str, message: Message, reply: ComposedReply) -> SendResult:
        """Apply the rule delay, answer the message's chat and count the trigger.

        A stats write failure does not undo the send; it is logged and the
        send result is returned as-is.
        """

        if reply.delay_seconds > 0:
            await self._sleep(reply.delay_seconds)
        result = await self._deliver(
            account_id, message.reply_to, message.sender, reply.text, reply.attachment_path
        )
        if not result.success:
            return result
        LOGGER.info("Auto-reply %r sent from %s to %s", reply.rule_name, account_id, message.sender)
        try:
            self._rule_store.update_stats(reply.rule_id, self._clock())
        except Exception:
            LOGGER.exception("Reply for rule %s sent but stats were not recorded", reply.rule_id)
        return result
