"""
Risk Gate - portfolio-level capital preservation.

Entry gating on open-position count, today's realized loss and the tick
circuit breaker, plus position sizing. All counters live in the day-bucketed
risk ledger, so a new UTC day starts from zero without any reset job.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

from src.core.config import EntryConfig, RiskConfig
from src.core.database import utc_date
from src.core.logger import get_logger

logger = get_logger("risk_manager")


@dataclass
class RiskCheck:
    ok: bool
    reason: Optional[str] = None


def clamp_sol(value: float, lo: float, hi: float) -> float:
    v = value if math.isfinite(value) else 0.0
    lo = max(0.0, lo)
    hi = max(lo, hi)
    return min(hi, max(lo, v))


class RiskGate:

    def __init__(self, db: Any, cfg: RiskConfig):
        self.db = db
        self.cfg = cfg

    async def can_open_position(self, open_count: int, now_ms: Optional[int] = None) -> RiskCheck:
        if open_count >= self.cfg.max_concurrent_positions:
            return RiskCheck(False, "max_positions")

        day = await self.db.get_risk_day(utc_date(now_ms))
        if day["realized_pnl_sol"] <= -abs(self.cfg.max_daily_loss_sol):
            return RiskCheck(False, "daily_loss")

        if (
            self.cfg.enable_circuit_breaker
            and day["circuit_breaker_trips"] >= self.cfg.circuit_breaker_threshold
        ):
            return RiskCheck(False, "circuit_breaker")
        return RiskCheck(True)

    async def record_realized_pnl(self, delta_sol: float, now_ms: Optional[int] = None) -> None:
        if not math.isfinite(delta_sol):
            logger.warning("Ignoring non-finite realized PnL", delta_sol=str(delta_sol))
            return
        await self.db.add_realized_pnl(utc_date(now_ms), delta_sol)

    async def trip_circuit_breaker(self, now_ms: Optional[int] = None) -> None:
        date = utc_date(now_ms)
        await self.db.increment_circuit_breaker(date)
        day = await self.db.get_risk_day(date)
        logger.warning(
            "Circuit breaker tripped",
            trips=day["circuit_breaker_trips"],
            threshold=self.cfg.circuit_breaker_threshold,
        )

    def allocate_position_size(self, wallet_balance_sol: float, entry: EntryConfig) -> float:
        """fixed + balance * pct / 100, clamped to the profile bounds and the global cap."""
        raw = entry.position_size_fixed_sol + wallet_balance_sol * entry.position_size_wallet_pct / 100.0
        size = clamp_sol(raw, entry.position_size_min_sol, entry.position_size_max_sol)
        if self.cfg.max_position_size_sol > 0:
            size = min(size, self.cfg.max_position_size_sol)
        return size

    async def get_risk_report(self, now_ms: Optional[int] = None) -> Dict[str, Any]:
        day = await self.db.get_risk_day(utc_date(now_ms))
        return {
            "date": day["date"],
            "realized_pnl_sol": round(day["realized_pnl_sol"], 9),
            "circuit_breaker_trips": day["circuit_breaker_trips"],
            "circuit_breaker_threshold": self.cfg.circuit_breaker_threshold,
            "circuit_breaker_enabled": self.cfg.enable_circuit_breaker,
            "max_daily_loss_sol": self.cfg.max_daily_loss_sol,
            "max_concurrent_positions": self.cfg.max_concurrent_positions,
        }
