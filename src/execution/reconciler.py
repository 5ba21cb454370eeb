from __future__ import annotations

from typing import Any, Dict

from src.core.logger import get_logger
from src.exchange.exceptions import ExternalUnavailable
from src.exchange.solana_rpc import sol_delta_from_tx, token_delta_from_tx
from src.execution.exit_engine import ExitState

logger = get_logger("reconciler")


class Reconciler:
    """
    Live-mode bookkeeping against chain state.

    Records the last seen token balance of each open position and backfills
    entry cost, amount, decimals and price from the entry transaction when the
    row was opened without them. Failures are logged per position and never
    abort the tick.
    """

    def __init__(self, db: Any, rpc: Any):
        self.db = db
        self.rpc = rpc

    async def run_once(self, owner: str) -> Dict[str, int]:
        summary = {"checked": 0, "backfilled": 0, "failed": 0}
        for row in await self.db.get_open_positions():
            summary["checked"] += 1
            try:
                if await self._reconcile(row, owner):
                    summary["backfilled"] += 1
            except (ExternalUnavailable, ValueError) as e:
                summary["failed"] += 1
                logger.warning("Reconcile failed", position_id=row["id"], mint=row["mint"], error=repr(e))
        return summary

    async def _reconcile(self, row: Dict[str, Any], owner: str) -> bool:
        mint = row["mint"]
        balance = await self.rpc.get_token_balance_raw(owner, mint)
        state = ExitState.from_json(row.get("state_json"), row["id"])
        state.last_seen_balance_raw = balance
        await self.db.update_position_state(row["id"], state.to_json())

        missing = not row.get("entry_token_amount_raw") or row.get("entry_price_sol") is None
        signature = row.get("entry_signature")
        if not missing or not signature or ":" in signature:
            return False

        tx = await self.rpc.get_transaction(signature)
        if not tx:
            return False
        sol_delta = sol_delta_from_tx(tx, owner)
        entry_cost = -sol_delta if sol_delta < 0 else None
        token_delta, decimals = token_delta_from_tx(tx, owner, mint)
        tokens = token_delta / 10 ** decimals if token_delta > 0 else 0.0
        entry_price = entry_cost / tokens if entry_cost is not None and tokens > 0 else None

        await self.db.update_entry_fields(row["id"], {
            "entry_cost_sol": entry_cost,
            "entry_token_amount_raw": token_delta if token_delta > 0 else None,
            "token_decimals": decimals,
            "entry_price_sol": entry_price,
        })
        logger.info("Entry fields backfilled", position_id=row["id"], mint=mint, entry_price_sol=entry_price)
        return True
