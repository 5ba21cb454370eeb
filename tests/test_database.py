"""Persistence contract tests for the SQLite store."""

from __future__ import annotations

import aiosqlite
import pytest

from src.core.database import utc_date
from tests.conftest import MINT, open_db

T0 = 1_700_000_000_000


class TestClaims:

    @pytest.mark.asyncio
    async def test_claim_blocks_until_expiry(self, tmp_path):
        async with open_db(tmp_path) as db:
            assert await db.claim("cooldown:abc", 1000, at_ms=T0) is True
            assert await db.claim("cooldown:abc", 1000, at_ms=T0 + 999) is False
            assert await db.claim("cooldown:abc", 1000, at_ms=T0 + 1000) is True

    @pytest.mark.asyncio
    async def test_distinct_keys_do_not_interfere(self, tmp_path):
        async with open_db(tmp_path) as db:
            assert await db.claim("a", 60_000, at_ms=T0) is True
            assert await db.claim("b", 60_000, at_ms=T0) is True


class TestRiskLedger:

    @pytest.mark.asyncio
    async def test_day_row_starts_at_zero(self, tmp_path):
        async with open_db(tmp_path) as db:
            day = await db.get_risk_day("2024-01-01")
            assert day == {"date": "2024-01-01", "realized_pnl_sol": 0.0, "circuit_breaker_trips": 0}

    @pytest.mark.asyncio
    async def test_pnl_and_trips_accumulate_per_day(self, tmp_path):
        async with open_db(tmp_path) as db:
            await db.add_realized_pnl("2024-01-01", -0.25)
            await db.add_realized_pnl("2024-01-01", 0.1)
            await db.increment_circuit_breaker("2024-01-01")
            await db.add_realized_pnl("2024-01-02", 3.0)

            day = await db.get_risk_day("2024-01-01")
            assert day["realized_pnl_sol"] == pytest.approx(-0.15)
            assert day["circuit_breaker_trips"] == 1
            assert (await db.get_risk_day("2024-01-02"))["circuit_breaker_trips"] == 0

    def test_utc_date_buckets_by_utc_day(self):
        assert utc_date(0) == "1970-01-01"
        assert utc_date(86_400_000 - 1) == "1970-01-01"
        assert utc_date(86_400_000) == "1970-01-02"


class TestPositions:

    @pytest.mark.asyncio
    async def test_open_and_close_position(self, tmp_path):
        async with open_db(tmp_path) as db:
            row = await db.open_position(
                MINT, 0.5, entry_signature="sig", entry_token_amount_raw=12345678901234567890,
                token_decimals=6, strategy={"profile": "default"},
            )
            assert row["status"] == "OPEN"
            assert int(row["entry_token_amount_raw"]) == 12345678901234567890
            assert await db.count_open_positions() == 1

            assert await db.close_position(row["id"], pnl_sol=0.2, exit_signature="x") is True
            assert await db.close_position(row["id"], pnl_sol=9.9) is False

            closed = await db.get_position(row["id"])
            assert closed["status"] == "CLOSED"
            assert closed["pnl_sol"] == 0.2
            assert closed["closed_at"] is not None

    @pytest.mark.asyncio
    async def test_one_open_position_per_mint(self, tmp_path):
        async with open_db(tmp_path) as db:
            first = await db.open_position(MINT, 0.1)
            with pytest.raises(aiosqlite.IntegrityError):
                await db.open_position(MINT, 0.1)
            await db.close_position(first["id"], pnl_sol=0.0)
            again = await db.open_position(MINT, 0.1)
            assert again["status"] == "OPEN"

    @pytest.mark.asyncio
    async def test_entry_backfill_rejects_unknown_columns(self, tmp_path):
        async with open_db(tmp_path) as db:
            row = await db.open_position(MINT, 0.1)
            await db.update_entry_fields(row["id"], {"entry_price_sol": 0.002, "entry_cost_sol": None})
            assert (await db.get_position(row["id"]))["entry_price_sol"] == 0.002
            with pytest.raises(ValueError):
                await db.update_entry_fields(row["id"], {"status": "CLOSED"})


class TestCandidatesAndAttempts:

    @pytest.mark.asyncio
    async def test_candidates_keep_discovery_order(self, tmp_path):
        async with open_db(tmp_path) as db:
            await db.upsert_discovered("first", "logs")
            await db.add_manual_candidate("second")
            await db.upsert_discovered("first", "logs", slot=99)
            rows = await db.list_candidates()
            assert [r["mint"] for r in rows] == ["first", "second"]
            assert rows[0]["last_seen_slot"] == 99

            await db.mark_scored("second", 0.5, 0.6, 0.1, ["low_holder_count"])
            scored = (await db.list_candidates())[1]
            assert scored["status"] == "SCORED"
            assert scored["score"]["reasons"] == ["low_holder_count"]

            await db.remove_candidate("first")
            assert await db.count_candidates() == 1

    @pytest.mark.asyncio
    async def test_tx_attempt_lifecycle(self, tmp_path):
        async with open_db(tmp_path) as db:
            attempt = await db.start_tx_attempt("ENTRY", MINT, "jupiter", 0.1)
            await db.mark_tx_submitted(attempt, "sig-1")
            await db.mark_tx_confirmed(attempt)
            failed = await db.start_tx_attempt("EXIT", MINT, "backup")
            await db.mark_tx_failed(failed, "boom")

            rows = await db.list_tx_attempts(MINT)
            assert [(r["status"], r["signature"], r["error"]) for r in rows] == [
                ("CONFIRMED", "sig-1", None),
                ("FAILED", None, "boom"),
            ]


class TestPaperLedger:

    @pytest.mark.asyncio
    async def test_sol_balance_is_initial_plus_ledger(self, tmp_path):
        async with open_db(tmp_path) as db:
            await db.record_paper_ledger("ENTRY_BUY", -1.5, MINT)
            await db.record_paper_ledger("EXIT_SELL", 0.75, MINT)
            assert await db.get_paper_sol_balance(10.0) == pytest.approx(9.25)

    @pytest.mark.asyncio
    async def test_token_balance_never_negative(self, tmp_path):
        async with open_db(tmp_path) as db:
            assert await db.get_paper_balance(MINT) == (0, 0)
            await db.upsert_paper_balance(MINT, -5, 6)
            assert await db.get_paper_balance(MINT) == (0, 6)


class TestSettingsAndGovernance:

    @pytest.mark.asyncio
    async def test_state_round_trip(self, tmp_path):
        async with open_db(tmp_path) as db:
            await db.set_state("controls.killSwitch", True)
            assert await db.get_state("controls.killSwitch") is True
            assert await db.get_state("missing", "fallback") == "fallback"

    @pytest.mark.asyncio
    async def test_governance_modes(self, tmp_path):
        async with open_db(tmp_path) as db:
            await db.set_governance(MINT, "block", "rugged")
            assert (await db.get_governance(MINT))["mode"] == "BLOCK"
            with pytest.raises(ValueError):
                await db.set_governance(MINT, "maybe")
            await db.remove_governance(MINT)
            assert await db.get_governance(MINT) is None

    @pytest.mark.asyncio
    async def test_thought_feed_newest_first(self, tmp_path):
        async with open_db(tmp_path) as db:
            await db.log_thought("system", "one")
            await db.log_thought("trade", "two", metadata={"k": 1})
            thoughts = await db.get_thoughts(limit=10)
            assert [t["message"] for t in thoughts] == ["two", "one"]
            assert thoughts[0]["metadata"] == {"k": 1}
