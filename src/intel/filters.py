from __future__ import annotations

from src.core.config import FiltersConfig
from src.intel.models import FilterResult, TokenFeatures


class FilterSystem:
    """Deterministic pre-trade filter. Every failing rule contributes a reason."""

    def __init__(self, cfg: FiltersConfig):
        self.cfg = cfg

    def evaluate(self, f: TokenFeatures) -> FilterResult:
        cfg = self.cfg
        reasons = []

        if f.age_hours > cfg.max_age_hours:
            reasons.append("too_old")
        if f.liquidity_sol < cfg.min_liquidity_sol:
            reasons.append("low_liquidity")
        if f.liquidity_sol > cfg.max_liquidity_sol:
            reasons.append("liquidity_too_high")
        if f.volume24h_sol < cfg.min_volume24h_sol:
            reasons.append("low_volume")
        if f.top_holder_pct > cfg.max_top_holder_pct:
            reasons.append("top_holder_too_high")
        if f.holder_count < cfg.min_holder_count:
            reasons.append("too_few_holders")
        # require_frozen_authority means the freeze authority must be absent
        if cfg.require_frozen_authority and f.has_frozen_authority:
            reasons.append("freeze_authority_present")
        if cfg.require_revoked_mint_authority and not f.has_revoked_mint_authority:
            reasons.append("mint_authority_not_revoked")

        return FilterResult(passed=not reasons, reasons=reasons)
