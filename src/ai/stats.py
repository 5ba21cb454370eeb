"""Rolling 24h PnL of AI-controlled trades, backing the AI's own circuit breaker."""

from __future__ import annotations

from typing import Any, Optional

from src.core.logger import get_logger

logger = get_logger("ai_stats")

DAY_MS = 24 * 60 * 60 * 1000
# Events stamped slightly in the future (clock skew) still count.
FUTURE_SKEW_MS = 5 * 60 * 1000
MAX_EVENTS = 500


class AIPnlTracker:
    """Append-only event log of AI realized PnL, pruned to a 24h window."""

    def __init__(self, db: Any):
        self.db = db
        self._tripped = False

    async def record_ai_close(
        self, entry_id: Optional[str], pnl_sol: float, closed_at_ms: int, daily_loss_limit_sol: float
    ) -> float:
        await self.db.append_ai_pnl_event(
            closed_at_ms,
            pnl_sol,
            entry_id,
            keep_last=MAX_EVENTS,
            prune_before_ms=closed_at_ms - DAY_MS,
        )
        rolling = await self.rolling_pnl(closed_at_ms)
        limit = abs(daily_loss_limit_sol)
        if rolling <= -limit:
            if not self._tripped:
                self._tripped = True
                logger.warning(
                    "AI circuit breaker tripped",
                    rolling_24h_ai_pnl_sol=round(rolling, 6),
                    limit_sol=limit,
                )
        else:
            self._tripped = False
        return rolling

    async def rolling_pnl(self, now_ms: int) -> float:
        events = await self.db.list_ai_pnl_events(now_ms - DAY_MS, now_ms + FUTURE_SKEW_MS)
        return float(sum(float(e["pnl_sol"]) for e in events))
