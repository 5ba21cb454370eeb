"""
Deterministic scoring model.

Two logistic scores over the raw token features: a pump probability that
rewards volume, liquidity and holder breadth, and a rug probability driven by
holder concentration and live authorities. Confidence is the chance of a pump
that is not also a rug.
"""

from __future__ import annotations

import math

from src.intel.models import SignalScore, TokenFeatures


def _sigmoid(x: float) -> float:
    if x >= 0:
        z = math.exp(-x)
        return 1.0 / (1.0 + z)
    z = math.exp(x)
    return z / (1.0 + z)


def _log1p(x: float) -> float:
    return math.log1p(max(0.0, x)) if math.isfinite(x) else 0.0


def _non_neg(x: float) -> float:
    return max(0.0, x) if math.isfinite(x) else 0.0


def _clamp01(x: float) -> float:
    if not math.isfinite(x):
        return 0.0
    return min(1.0, max(0.0, x))


class ScoringModel:

    def score(self, mint: str, f: TokenFeatures) -> SignalScore:
        frozen = 1.0 if f.has_frozen_authority else 0.0
        revoked = 1.0 if f.has_revoked_mint_authority else 0.0
        top_pct = _non_neg(f.top_holder_pct)

        pump_logit = (
            0.9 * _log1p(f.volume24h_sol)
            + 0.6 * _log1p(f.liquidity_sol)
            + 0.2 * _log1p(f.holder_count)
            - 0.05 * top_pct
            - 0.03 * _non_neg(f.age_hours)
            - 0.6 * frozen
        )
        rug_logit = (
            0.25 * top_pct
            + 0.4 * frozen
            + 0.15 * (1.0 - revoked)
            - 0.2 * _log1p(f.holder_count)
            - 0.1 * _log1p(f.liquidity_sol)
        )

        pump = _sigmoid(pump_logit)
        rug = _sigmoid(rug_logit)

        reasons = []
        if f.has_frozen_authority:
            reasons.append("freeze_authority_present")
        if not f.has_revoked_mint_authority:
            reasons.append("mint_authority_present")
        if top_pct > 30:
            reasons.append("high_top_holder_pct")
        if f.age_hours < 1:
            reasons.append("very_new_token")
        if f.holder_count < 25:
            reasons.append("low_holder_count")

        return SignalScore(
            mint=mint,
            confidence=_clamp01(pump * (1.0 - rug)),
            pump_probability=pump,
            rug_probability=rug,
            reasons=reasons,
        )
