"""Error taxonomy shared by the core and adapters."""

from __future__ import annotations


class SwitchboardError(Exception):
    """Base class for all switchboard errors."""


class SetupError(SwitchboardError):
    """Synchronous setup failure (invalid account id, resource exhaustion)."""


class AuthError(SwitchboardError):
    """Authentication failed for one connect attempt."""


class TransportError(SwitchboardError):
    """A transport call failed (send failed, session gone, network drop)."""


class ConfigError(SwitchboardError):
    """A rule or template is misconfigured and cannot be used."""


class PersistenceError(SwitchboardError):
    """The rule or template store could not be read or written."""
