"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass

MENU_TRACKING_MODES = ("stateless", "per_sender")


@dataclass(frozen=True)
class SessionConfig:
    """Limits for the session registry."""

    max_accounts: int = 10
    message_log_size: int = 500


@dataclass(frozen=True)
class DispatchConfig:
    """Throttling delays applied between sequential sends."""

    bulk_delay_seconds: float = 1.0
    account_delay_seconds: float = 2.0


@dataclass(frozen=True)
class AutoReplyConfig:
    """Auto-reply behaviour switches."""

    enabled: bool = True
    menu_tracking: str = "stateless"
    max_pending_menus: int = 1000
    pending_menu_ttl_seconds: float = 3600.0

    def __post_init__(self) -> None:
        if self.menu_tracking not in MENU_TRACKING_MODES:
            raise ValueError(f"Unsupported menu tracking mode: {self.menu_tracking}")
        if self.max_pending_menus < 1:
            raise ValueError("max_pending_menus must be at least 1")
