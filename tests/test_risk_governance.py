"""Risk gate, position sizing and per-mint governance."""

from __future__ import annotations

import pytest

from src.core.config import EntryConfig, GovernanceConfig, RiskConfig
from src.core.database import utc_date
from src.execution.governance import (
    DAY_MS,
    GovernanceGate,
    attempt_bucket_ms,
    attempt_cap_key,
    cooldown_key,
)
from src.execution.risk_manager import RiskGate, clamp_sol
from tests.conftest import MINT, open_db

T0 = 1_700_000_000_000


class TestRiskGate:

    @pytest.mark.asyncio
    async def test_open_count_cap(self, tmp_path):
        async with open_db(tmp_path) as db:
            gate = RiskGate(db, RiskConfig(max_concurrent_positions=2))
            assert (await gate.can_open_position(1, T0)).ok is True
            check = await gate.can_open_position(2, T0)
            assert check.ok is False
            assert check.reason == "max_positions"

    @pytest.mark.asyncio
    async def test_daily_loss_blocks_until_the_next_utc_day(self, tmp_path):
        async with open_db(tmp_path) as db:
            gate = RiskGate(db, RiskConfig(max_daily_loss_sol=1.0))
            await gate.record_realized_pnl(-0.6, T0)
            assert (await gate.can_open_position(0, T0)).ok is True
            await gate.record_realized_pnl(-0.4, T0)
            assert (await gate.can_open_position(0, T0)).reason == "daily_loss"
            assert (await gate.can_open_position(0, T0 + DAY_MS)).ok is True

    @pytest.mark.asyncio
    async def test_circuit_breaker_threshold(self, tmp_path):
        async with open_db(tmp_path) as db:
            gate = RiskGate(db, RiskConfig(circuit_breaker_threshold=2))
            await gate.trip_circuit_breaker(T0)
            assert (await gate.can_open_position(0, T0)).ok is True
            await gate.trip_circuit_breaker(T0)
            assert (await gate.can_open_position(0, T0)).reason == "circuit_breaker"

            disabled = RiskGate(db, RiskConfig(circuit_breaker_threshold=2, enable_circuit_breaker=False))
            assert (await disabled.can_open_position(0, T0)).ok is True

    @pytest.mark.asyncio
    async def test_non_finite_pnl_is_ignored(self, tmp_path):
        async with open_db(tmp_path) as db:
            gate = RiskGate(db, RiskConfig())
            await gate.record_realized_pnl(float("nan"), T0)
            report = await gate.get_risk_report(T0)
            assert report["realized_pnl_sol"] == 0.0
            assert report["date"] == utc_date(T0)


class TestSizing:

    def test_fixed_plus_wallet_share_within_bounds(self):
        gate = RiskGate(None, RiskConfig(max_position_size_sol=0))
        entry = EntryConfig(
            position_size_fixed_sol=0.05, position_size_wallet_pct=10,
            position_size_min_sol=0.01, position_size_max_sol=5.0,
        )
        assert gate.allocate_position_size(2.0, entry) == pytest.approx(0.25)

    def test_profile_bounds_clamp(self):
        gate = RiskGate(None, RiskConfig(max_position_size_sol=0))
        entry = EntryConfig(position_size_wallet_pct=50, position_size_min_sol=0.1, position_size_max_sol=0.5)
        assert gate.allocate_position_size(100.0, entry) == 0.5
        assert gate.allocate_position_size(0.0, entry) == 0.1

    def test_global_cap_applies_after_profile_bounds(self):
        gate = RiskGate(None, RiskConfig(max_position_size_sol=0.2))
        entry = EntryConfig(position_size_wallet_pct=50, position_size_min_sol=0.1, position_size_max_sol=0.5)
        assert gate.allocate_position_size(100.0, entry) == 0.2

    @pytest.mark.parametrize(
        "value,lo,hi,expected",
        [
            (float("nan"), 0.1, 1.0, 0.1),
            (5.0, -1.0, 1.0, 1.0),
            (0.5, 2.0, 1.0, 2.0),
        ],
    )
    def test_clamp_sol(self, value, lo, hi, expected):
        assert clamp_sol(value, lo, hi) == expected


class TestGovernance:

    @pytest.mark.asyncio
    async def test_block_rule_beats_allowlist(self, tmp_path):
        async with open_db(tmp_path) as db:
            gate = GovernanceGate(db, GovernanceConfig(mint_allowlist=[MINT]))
            assert await gate.is_mint_allowed(MINT) is True
            await db.set_governance(MINT, "BLOCK")
            assert await gate.is_mint_allowed(MINT) is False

    @pytest.mark.asyncio
    async def test_allow_rule_does_not_beat_blocklist(self, tmp_path):
        async with open_db(tmp_path) as db:
            gate = GovernanceGate(db, GovernanceConfig(mint_blocklist=[MINT]))
            await db.set_governance(MINT, "ALLOW")
            assert await gate.is_mint_allowed(MINT) is False

    @pytest.mark.asyncio
    async def test_non_empty_allowlist_excludes_everything_else(self, tmp_path):
        async with open_db(tmp_path) as db:
            gate = GovernanceGate(db, GovernanceConfig(mint_allowlist=["other"]))
            assert await gate.is_mint_allowed(MINT) is False
            assert await GovernanceGate(db, GovernanceConfig()).is_mint_allowed(MINT) is True

    @pytest.mark.asyncio
    async def test_attempt_cap_allows_one_claim_per_bucket(self, tmp_path):
        async with open_db(tmp_path) as db:
            gate = GovernanceGate(db, GovernanceConfig(max_attempts_per_mint_per_day=4))
            bucket = attempt_bucket_ms(4)
            start = (T0 // bucket) * bucket
            assert await gate.claim_attempt(MINT, start) is True
            assert await gate.claim_attempt(MINT, start + bucket - 1) is False
            assert await gate.claim_attempt(MINT, start + bucket) is True
            assert await gate.claim_attempt("other-mint", start) is True

    @pytest.mark.asyncio
    async def test_cooldown_expires(self, tmp_path):
        async with open_db(tmp_path) as db:
            gate = GovernanceGate(db, GovernanceConfig(cooldown_minutes_per_mint=5))
            assert await gate.claim_cooldown(MINT, T0) is True
            assert await gate.claim_cooldown(MINT, T0 + 4 * 60_000) is False
            assert await gate.claim_cooldown(MINT, T0 + 5 * 60_000) is True

    def test_claim_keys(self):
        assert attempt_bucket_ms(0) == DAY_MS
        assert attempt_bucket_ms(24) == 3_600_000
        assert attempt_cap_key(MINT, T0, 24) == f"cap:{MINT}:{utc_date(T0)}:{T0 // 3_600_000}"
        assert cooldown_key(MINT) == f"cooldown:{MINT}"
