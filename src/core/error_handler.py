"""
Graceful Error Handler - tick error classification.

Every error that escapes a tick is classified by kind so the operator feed
shows what went wrong and how much it matters:

- CRITICAL: configuration is broken; no tick can succeed until it is fixed
- TRANSIENT: an external service was unreachable; the next heartbeat retries
- DEGRADED: anything else; logged with a short traceback, loop continues

Classification never changes control flow. The orchestrator trips the
circuit breaker for every tick error regardless of severity.
"""

from __future__ import annotations

import asyncio
import enum
import traceback
from typing import Any, Optional

from src.core.errors import ConfigError, DataCorruption, PolicyRejection
from src.core.logger import get_logger
from src.exchange.exceptions import ExternalUnavailable, SignerRejected, VenueExhausted

logger = get_logger("error_handler")


class ErrorSeverity(enum.Enum):
    CRITICAL = "critical"    # Config missing/disabled, nothing can trade
    DEGRADED = "degraded"    # Unexpected failure, log + continue
    TRANSIENT = "transient"  # External outage, retried next tick


class GracefulErrorHandler:
    """
    Centralized error classification and handling.

    Usage::

        handler = GracefulErrorHandler(db_log_fn=db.log_thought)
        await handler.handle(err, component="orchestrator", context="tick")
    """

    def __init__(self, db_log_fn: Optional[Any] = None):
        self._db_log_fn = db_log_fn

    def set_db_log_fn(self, fn: Any) -> None:
        self._db_log_fn = fn

    def classify_error(self, error: BaseException) -> ErrorSeverity:
        if isinstance(error, ConfigError):
            return ErrorSeverity.CRITICAL
        if isinstance(error, SignerRejected):
            # The signer answered and refused; retrying the same tx will not help.
            return ErrorSeverity.DEGRADED
        if isinstance(error, (ExternalUnavailable, VenueExhausted)):
            return ErrorSeverity.TRANSIENT
        if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
            return ErrorSeverity.TRANSIENT
        if isinstance(error, (PolicyRejection, DataCorruption)):
            return ErrorSeverity.TRANSIENT
        return ErrorSeverity.DEGRADED

    async def handle(
        self,
        error: BaseException,
        *,
        component: str = "",
        context: str = "",
    ) -> ErrorSeverity:
        """Classify, log, and persist an error. Returns the severity."""
        severity = self.classify_error(error)
        tb = traceback.format_exception(type(error), error, error.__traceback__)
        tb_str = "".join(tb[-3:])

        msg = (
            f"[{severity.value.upper()}] {component or 'unknown'}"
            f"{(' / ' + context) if context else ''}: "
            f"{type(error).__name__}: {error}"
        )

        if severity == ErrorSeverity.CRITICAL:
            logger.critical(msg, traceback=tb_str)
        elif severity == ErrorSeverity.DEGRADED:
            logger.warning(msg, traceback=tb_str)
        else:
            logger.info(msg)

        if self._db_log_fn:
            sev_map = {
                ErrorSeverity.CRITICAL: "critical",
                ErrorSeverity.DEGRADED: "warning",
                ErrorSeverity.TRANSIENT: "info",
            }
            try:
                await self._db_log_fn("system", msg, severity=sev_map[severity])
            except Exception as e:
                logger.debug("Error feed write failed", error=repr(e))

        return severity
