"""Token intelligence: chain feature extraction, filters and scoring."""

from __future__ import annotations

import time

import pytest

from src.core.config import FiltersConfig
from src.exchange.exceptions import ExternalUnavailable
from src.intel.chain_intelligence import ChainIntelligence, MintNotFound, NotAMint
from src.intel.filters import FilterSystem
from src.intel.scoring import ScoringModel
from tests.conftest import MINT, make_features


class _ChainRpc:
    def __init__(self, account=None, supply=1000, largest=None, holders=120, signatures=None, holder_error=False):
        self.account = account
        self.supply = supply
        self.largest = largest if largest is not None else [125]
        self.holders = holders
        self.signatures = signatures or []
        self.holder_error = holder_error
        self.signature_calls = 0

    async def get_parsed_account(self, address):
        return self.account

    async def get_token_supply_raw(self, mint):
        return self.supply

    async def get_token_largest_accounts_raw(self, mint):
        return self.largest

    async def count_token_accounts(self, mint):
        if self.holder_error:
            raise ExternalUnavailable("getProgramAccounts disabled")
        return self.holders

    async def get_signatures(self, mint, limit=1000, before=None):
        self.signature_calls += 1
        return self.signatures


def _mint_account(freeze=None, mint_authority=None):
    return {
        "data": {
            "program": "spl-token",
            "parsed": {
                "type": "mint",
                "info": {"freezeAuthority": freeze, "mintAuthority": mint_authority, "decimals": 6},
            },
        },
    }


# ---- Chain intelligence ----


class TestChainIntelligence:

    @pytest.mark.asyncio
    async def test_features_from_mint_account(self):
        created = int(time.time()) - 3 * 3600
        rpc = _ChainRpc(
            account=_mint_account(freeze="Auth1", mint_authority=None),
            supply=1000,
            largest=[125, 50],
            holders=120,
            signatures=[{"signature": "s1", "blockTime": created + 60}, {"signature": "s0", "blockTime": created}],
        )
        f = await ChainIntelligence(rpc).get_features(MINT)

        assert f.top_holder_pct == 12.5
        assert f.holder_count == 120
        assert f.has_frozen_authority is True
        assert f.has_revoked_mint_authority is True
        assert f.liquidity_sol == 0.0
        assert f.volume24h_sol == 0.0
        assert 2.9 < f.age_hours < 3.1

    @pytest.mark.asyncio
    async def test_top_holder_pct_is_floored_to_hundredths(self):
        rpc = _ChainRpc(account=_mint_account(), supply=3, largest=[1])
        f = await ChainIntelligence(rpc).get_features(MINT)
        assert f.top_holder_pct == 33.33

    @pytest.mark.asyncio
    async def test_holder_scan_failure_reports_zero(self):
        rpc = _ChainRpc(account=_mint_account(mint_authority="Auth"), holder_error=True)
        f = await ChainIntelligence(rpc).get_features(MINT)
        assert f.holder_count == 0
        assert f.has_revoked_mint_authority is False
        assert f.age_hours == 0.0

    @pytest.mark.asyncio
    async def test_missing_account_raises(self):
        with pytest.raises(MintNotFound):
            await ChainIntelligence(_ChainRpc(account=None)).get_features(MINT)

    @pytest.mark.asyncio
    async def test_non_mint_account_raises(self):
        account = {"data": {"program": "spl-token", "parsed": {"type": "account", "info": {}}}}
        with pytest.raises(NotAMint):
            await ChainIntelligence(_ChainRpc(account=account)).get_features(MINT)

    @pytest.mark.asyncio
    async def test_signature_scan_is_bounded(self):
        full_page = [{"signature": f"s{i}", "blockTime": 1} for i in range(ChainIntelligence.SIGNATURE_PAGE_SIZE)]
        rpc = _ChainRpc(account=_mint_account(), signatures=full_page)
        await ChainIntelligence(rpc).get_features(MINT)
        assert rpc.signature_calls == ChainIntelligence.MAX_SIGNATURE_PAGES


# ---- Filters ----


class TestFilters:

    def test_clean_token_passes(self):
        result = FilterSystem(FiltersConfig(min_holder_count=25)).evaluate(make_features())
        assert result.passed is True
        assert result.reasons == []

    def test_every_failing_rule_is_reported(self):
        cfg = FiltersConfig(
            min_liquidity_sol=10, min_volume24h_sol=10, max_top_holder_pct=40,
            min_holder_count=25, max_age_hours=72,
        )
        f = make_features(
            age_hours=100, liquidity_sol=1, volume24h_sol=1, top_holder_pct=60, holder_count=3,
            has_frozen_authority=True, has_revoked_mint_authority=False,
        )
        assert FilterSystem(cfg).evaluate(f).reasons == [
            "too_old",
            "low_liquidity",
            "low_volume",
            "top_holder_too_high",
            "too_few_holders",
            "freeze_authority_present",
            "mint_authority_not_revoked",
        ]

    def test_liquidity_ceiling(self):
        cfg = FiltersConfig(max_liquidity_sol=100)
        assert FilterSystem(cfg).evaluate(make_features(liquidity_sol=101)).reasons == ["liquidity_too_high"]

    def test_authority_rules_can_be_relaxed(self):
        cfg = FiltersConfig(require_frozen_authority=False, require_revoked_mint_authority=False, min_holder_count=0)
        f = make_features(has_frozen_authority=True, has_revoked_mint_authority=False)
        assert FilterSystem(cfg).evaluate(f).passed is True


# ---- Scoring ----


class TestScoring:

    def test_scores_are_probabilities(self):
        s = ScoringModel().score(MINT, make_features())
        for value in (s.confidence, s.pump_probability, s.rug_probability):
            assert 0.0 <= value <= 1.0
        assert s.confidence == pytest.approx(s.pump_probability * (1 - s.rug_probability))

    def test_concentration_and_authority_raise_rug_probability(self):
        model = ScoringModel()
        clean = model.score(MINT, make_features())
        risky = model.score(MINT, make_features(top_holder_pct=45, has_frozen_authority=True))
        assert risky.rug_probability > clean.rug_probability
        assert risky.pump_probability < clean.pump_probability

    def test_reasons_explain_risk_factors(self):
        f = make_features(
            top_holder_pct=35, age_hours=0.5, holder_count=10,
            has_frozen_authority=True, has_revoked_mint_authority=False,
        )
        assert ScoringModel().score(MINT, f).reasons == [
            "freeze_authority_present",
            "mint_authority_present",
            "high_top_holder_pct",
            "very_new_token",
            "low_holder_count",
        ]

    def test_non_finite_features_do_not_poison_the_score(self):
        f = make_features(volume24h_sol=float("nan"), top_holder_pct=float("inf"))
        s = ScoringModel().score(MINT, f)
        assert 0.0 <= s.confidence <= 1.0
