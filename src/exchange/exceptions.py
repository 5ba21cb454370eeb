"""Typed exception hierarchy for venue, signer, RPC and price-feed calls.

Lets callers distinguish transient unavailability (retry next heartbeat)
from permanent refusals (skip, or fall back to the next venue).
"""

from typing import Optional

from src.core.errors import PolicyRejection


class ExchangeError(Exception):
    """Base class for all external-service errors."""


class ExternalUnavailable(ExchangeError):
    """Service unreachable, timed out or returned 5xx. May succeed next tick."""


class RateLimitError(ExternalUnavailable):
    """Service rate limit hit (429). Caller should backoff and retry."""
    def __init__(self, message: str = "Rate limit exceeded", retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after


class PermanentExchangeError(ExchangeError):
    """Non-recoverable failure for this request."""


class SignerRejected(PermanentExchangeError):
    """The signer refused the transaction under its own policy."""


class InsufficientFundsError(PermanentExchangeError):
    """Not enough balance for the requested swap."""


class TransactionFailed(PermanentExchangeError):
    """Transaction landed with an error or never confirmed before the deadline."""


class QuoteRejected(PermanentExchangeError, PolicyRejection):
    """Quote violated a guardrail (price impact, route length, DEX labels, drift, staleness)."""

    def __init__(self, reason: str, detail: str = ""):
        PolicyRejection.__init__(self, reason, detail)


class VenueExhausted(ExchangeError):
    """Every configured venue failed for one swap."""

    def __init__(self, message: str = "All venues failed", last_error: Optional[BaseException] = None):
        super().__init__(message if last_error is None else f"{message}: {last_error!r}")
        self.last_error = last_error


class ShadowSendSuppressed(PermanentExchangeError, PolicyRejection):
    """Shadow mode quoted and validated the swap, then declined to send it."""

    def __init__(self, detail: str = ""):
        PolicyRejection.__init__(self, "shadow_mode_no_send", detail)
