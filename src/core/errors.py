"""Domain error kinds shared by the decision and execution layers.

External-service failures live in ``src.exchange.exceptions``; this module
holds the errors that originate inside the engine itself.
"""


class TradingError(Exception):
    """Base class for engine-side errors."""


class ConfigError(TradingError):
    """Missing or disabled profile, invalid control value. Fatal to the current tick only."""


class PolicyRejection(TradingError):
    """A deliberate SKIP (governance, filter, guardrail). Never retried."""

    def __init__(self, reason: str, detail: str = ""):
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason
        self.detail = detail


class DataCorruption(TradingError):
    """Persisted JSON or model state could not be parsed. Callers fall back to a safe default."""
