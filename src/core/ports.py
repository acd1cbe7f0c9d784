"""Ports (interfaces) used by the core.

Ports define the minimal contracts for the transport driver and the rule and
template stores so that the core can be reused with different backends.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Iterable, Optional, Protocol

from core.models import (
    AutoReplyRule,
    ChatSummary,
    InboundMessage,
    RuleStats,
    SentReceipt,
    Template,
)


class DriverListener(Protocol):
    """Lifecycle events a transport driver reports for its account."""

    async def on_qr(self, token: str) -> None:
        ...

    async def on_ready(self) -> None:
        ...

    async def on_message(self, message: InboundMessage) -> None:
        ...

    async def on_disconnected(self, reason: str) -> None:
        ...

    async def on_auth_failure(self, reason: str) -> None:
        ...


class TransportDriver(Protocol):
    """Opaque connection to the chat network for one account."""

    # Appended to bare phone digits to form a chat id (e.g. "@c.us").
    chat_suffix: str

    def set_listener(self, listener: DriverListener) -> None:
        ...

    async def connect(self) -> None:
        ...

    async def send_message(
        self, chat_id: str, text: str, media: Optional[str] = None
    ) -> SentReceipt:
        ...

    async def destroy(self) -> None:
        ...

    async def get_chats(self) -> list[ChatSummary]:
        ...

    async def fetch_messages(self, chat_id: str, limit: int) -> list[InboundMessage]:
        ...


DriverFactory = Callable[[str], TransportDriver]


class RuleStorePort(Protocol):
    """Persistence operations for auto-reply rules and their counters."""

    def create_rule(self, rule: AutoReplyRule) -> AutoReplyRule:
        ...

    def update_rule(self, rule: AutoReplyRule) -> AutoReplyRule:
        ...

    def delete_rule(self, rule_id: str) -> bool:
        ...

    def get_all_rules(self) -> list[AutoReplyRule]:
        ...

    def get_rule(self, rule_id: str) -> Optional[AutoReplyRule]:
        ...

    def toggle_active(self, rule_id: str) -> bool:
        ...

    def update_stats(self, rule_id: str, triggered_at: datetime) -> RuleStats:
        ...

    def get_stats(self, rule_id: str) -> RuleStats:
        ...

    def import_rules(self, rules: Iterable[AutoReplyRule]) -> int:
        ...


class TemplateStorePort(Protocol):
    """Persistence operations for message templates and attachments."""

    def create_template(self, template: Template) -> Template:
        ...

    def update_template(self, template: Template) -> Template:
        ...

    def delete_template(self, template_id: str) -> bool:
        ...

    def get_all_templates(self) -> list[Template]:
        ...

    def get_template(self, template_id: str) -> Optional[Template]:
        ...

    def search_templates(self, query: str) -> list[Template]:
        ...

    def get_templates_by_category(self, category: str) -> list[Template]:
        ...

    def save_attachment(self, template_id: str, file_name: str, data: bytes) -> str:
        ...

    def get_attachment(self, template_id: str) -> Optional[str]:
        ...
