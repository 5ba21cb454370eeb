"""Reward shaping for closed trades."""

from __future__ import annotations

import math
from dataclasses import dataclass

from src.core.config import RewardConfig


@dataclass
class RealizedTradeStats:
    realized_pnl_sol: float
    hold_minutes: float
    max_drawdown_pct: float
    closed_at_ms: int


def compute_reward(stats: RealizedTradeStats, cfg: RewardConfig) -> float:
    """reward = pnl - hold_penalty * minutes held - drawdown_penalty * max drawdown %."""
    pnl = stats.realized_pnl_sol if math.isfinite(stats.realized_pnl_sol) else 0.0
    hold = max(0.0, stats.hold_minutes) if math.isfinite(stats.hold_minutes) else 0.0
    dd = max(0.0, stats.max_drawdown_pct) if math.isfinite(stats.max_drawdown_pct) else 0.0
    return pnl - cfg.hold_penalty_per_minute * hold - cfg.drawdown_penalty * dd
