"""Live-mode reconciliation and tick error classification."""

from __future__ import annotations

import json

import pytest

from src.core.error_handler import ErrorSeverity, GracefulErrorHandler
from src.core.errors import ConfigError, PolicyRejection
from src.exchange.exceptions import ExternalUnavailable, SignerRejected, VenueExhausted
from src.execution.reconciler import Reconciler
from tests.conftest import MINT, OWNER, FakeRpc, iso_ago, open_db


def _entry_tx(lamport_delta, token_post, decimals=6):
    return {
        "transaction": {"message": {"accountKeys": [OWNER, "Pool"]}},
        "meta": {
            "preBalances": [3_000_000_000, 0],
            "postBalances": [3_000_000_000 + lamport_delta, 0],
            "preTokenBalances": [],
            "postTokenBalances": [
                {"mint": MINT, "owner": OWNER, "uiTokenAmount": {"amount": str(token_post), "decimals": decimals}},
            ],
        },
    }


class _BrokenRpc(FakeRpc):
    async def get_token_balance_raw(self, owner, mint):
        raise ExternalUnavailable("rpc down")


class TestReconciler:

    @pytest.mark.asyncio
    async def test_backfills_entry_fields_from_transaction(self, tmp_path):
        async with open_db(tmp_path) as db:
            rpc = FakeRpc()
            rpc.token_balances[MINT] = 4_000_000
            rpc.transactions["entry-sig"] = _entry_tx(-200_000_000, 4_000_000)
            row = await db.open_position(MINT, 0.2, entry_signature="entry-sig", opened_at=iso_ago(1))

            summary = await Reconciler(db, rpc).run_once(OWNER)

            assert summary == {"checked": 1, "backfilled": 1, "failed": 0}
            pos = await db.get_position(row["id"])
            assert pos["entry_cost_sol"] == pytest.approx(0.2)
            assert int(pos["entry_token_amount_raw"]) == 4_000_000
            assert pos["token_decimals"] == 6
            assert pos["entry_price_sol"] == pytest.approx(0.05)
            assert json.loads(pos["state_json"])["last_seen_balance_raw"] == "4000000"

    @pytest.mark.asyncio
    async def test_paper_signatures_and_complete_rows_are_left_alone(self, tmp_path):
        async with open_db(tmp_path) as db:
            rpc = FakeRpc()
            await db.open_position(MINT, 0.2, entry_signature="paper:abc", opened_at=iso_ago(2))
            await db.open_position(
                "Other1111", 0.2, entry_signature="real-sig", entry_cost_sol=0.2,
                entry_token_amount_raw=10, token_decimals=0, entry_price_sol=0.02,
                opened_at=iso_ago(1),
            )

            summary = await Reconciler(db, rpc).run_once(OWNER)

            assert summary == {"checked": 2, "backfilled": 0, "failed": 0}

    @pytest.mark.asyncio
    async def test_rpc_failure_is_counted_not_raised(self, tmp_path):
        async with open_db(tmp_path) as db:
            await db.open_position(MINT, 0.2, entry_signature="entry-sig", opened_at=iso_ago(1))
            summary = await Reconciler(db, _BrokenRpc()).run_once(OWNER)
            assert summary == {"checked": 1, "backfilled": 0, "failed": 1}


class TestErrorHandler:

    @pytest.mark.parametrize(
        "error,severity",
        [
            (ConfigError("no profile"), ErrorSeverity.CRITICAL),
            (SignerRejected("policy"), ErrorSeverity.DEGRADED),
            (ExternalUnavailable("down"), ErrorSeverity.TRANSIENT),
            (VenueExhausted(), ErrorSeverity.TRANSIENT),
            (TimeoutError(), ErrorSeverity.TRANSIENT),
            (PolicyRejection("signer_unhealthy"), ErrorSeverity.TRANSIENT),
            (KeyError("x"), ErrorSeverity.DEGRADED),
        ],
    )
    def test_classification(self, error, severity):
        assert GracefulErrorHandler().classify_error(error) is severity

    @pytest.mark.asyncio
    async def test_handle_writes_to_feed(self):
        written = []

        async def _log(category, message, severity="info"):
            written.append((category, message, severity))

        handler = GracefulErrorHandler(db_log_fn=_log)
        severity = await handler.handle(ConfigError("boom"), component="orchestrator", context="tick")

        assert severity is ErrorSeverity.CRITICAL
        assert written == [("system", "[CRITICAL] orchestrator / tick: ConfigError: boom", "critical")]

    @pytest.mark.asyncio
    async def test_feed_failure_does_not_escape(self):
        async def _log(category, message, severity="info"):
            raise RuntimeError("db closed")

        handler = GracefulErrorHandler(db_log_fn=_log)
        assert await handler.handle(ValueError("x")) is ErrorSeverity.DEGRADED
