"""Value types shared by the intelligence, filter and scoring layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List


@dataclass
class TokenFeatures:
    mint: str
    age_hours: float = 0.0
    holder_count: float = 0.0
    top_holder_pct: float = 0.0
    liquidity_sol: float = 0.0
    volume24h_sol: float = 0.0
    has_frozen_authority: bool = False
    has_revoked_mint_authority: bool = False


@dataclass
class SignalScore:
    mint: str
    confidence: float
    pump_probability: float
    rug_probability: float
    reasons: List[str] = field(default_factory=list)


@dataclass
class FilterResult:
    passed: bool
    reasons: List[str] = field(default_factory=list)
