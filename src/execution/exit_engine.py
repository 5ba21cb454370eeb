"""
Exit Engine - lifecycle management for open positions.

Rule order per position each tick:
  price -> zero balance -> time stop -> stop loss -> take-profit ladder
  -> trailing stop -> persist snapshot

At most one sell happens per position per tick. A take-profit rung sells a
share of the balance observed this tick, so later rungs wait for the next
tick's refreshed balance. Only a final exit closes the row and reports the
outcome to the AI policy.
"""

from __future__ import annotations

import json
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

from src.ai.reward import RealizedTradeStats
from src.core.config import BotConfig, ProfileConfig
from src.core.database import DatabaseManager, now_ms
from src.core.errors import ConfigError, DataCorruption, PolicyRejection
from src.core.logger import get_logger
from src.exchange.exceptions import ExchangeError

logger = get_logger("exit_engine")

EXIT_STATE_SCHEMA = 1

_LEGACY_KEYS = {
    "takeProfitHits": "take_profit_hits",
    "highWaterPriceSol": "high_water_price_sol",
    "trailingArmed": "trailing_armed",
    "realizedPnlSol": "realized_pnl_sol",
    "maxDrawdownPct": "max_drawdown_pct",
    "lastSeenBalanceRaw": "last_seen_balance_raw",
    "lastPriceSol": "last_price_sol",
    "lastProfitPct": "last_profit_pct",
    "lastExitSignature": "last_exit_signature",
    "lastExitReceivedSol": "last_exit_received_sol",
}


def _opt_float(v: Any) -> Optional[float]:
    if v is None:
        return None
    try:
        f = float(v)
    except (TypeError, ValueError) as e:
        raise DataCorruption(f"expected number, got {v!r}") from e
    if not math.isfinite(f):
        raise DataCorruption(f"non-finite number {v!r}")
    return f


def _opt_int(v: Any) -> Optional[int]:
    if v is None:
        return None
    try:
        return int(str(v))
    except (TypeError, ValueError) as e:
        raise DataCorruption(f"expected integer, got {v!r}") from e


@dataclass
class ExitState:
    """Per-position exit bookkeeping, persisted as ``positions.state_json``."""

    take_profit_hits: List[int] = field(default_factory=list)
    high_water_price_sol: Optional[float] = None
    trailing_armed: bool = False
    realized_pnl_sol: float = 0.0
    max_drawdown_pct: float = 0.0
    last_seen_balance_raw: Optional[int] = None
    last_price_sol: Optional[float] = None
    last_profit_pct: Optional[float] = None
    last_exit_signature: Optional[str] = None
    last_exit_received_sol: Optional[float] = None

    @classmethod
    def parse(cls, text: Optional[str]) -> ExitState:
        """Strict parse. Raises DataCorruption on anything unreadable."""
        if not text:
            return cls()
        try:
            raw = json.loads(text)
        except (TypeError, ValueError) as e:
            raise DataCorruption(f"exit state is not JSON: {e}") from e
        if not isinstance(raw, dict):
            raise DataCorruption("exit state is not an object")

        schema = raw.get("schema")
        if schema is None:
            # Legacy camelCase shape written before the schema tag existed.
            raw = {_LEGACY_KEYS.get(k, k): v for k, v in raw.items()}
        elif schema != EXIT_STATE_SCHEMA:
            raise DataCorruption(f"unknown exit state schema {schema!r}")

        hits = raw.get("take_profit_hits") or []
        if not isinstance(hits, list):
            raise DataCorruption("take_profit_hits is not a list")
        try:
            hits = sorted({int(h) for h in hits})
        except (TypeError, ValueError) as e:
            raise DataCorruption("take_profit_hits holds a non-integer") from e

        return cls(
            take_profit_hits=hits,
            high_water_price_sol=_opt_float(raw.get("high_water_price_sol")),
            trailing_armed=bool(raw.get("trailing_armed", False)),
            realized_pnl_sol=_opt_float(raw.get("realized_pnl_sol")) or 0.0,
            max_drawdown_pct=_opt_float(raw.get("max_drawdown_pct")) or 0.0,
            last_seen_balance_raw=_opt_int(raw.get("last_seen_balance_raw")),
            last_price_sol=_opt_float(raw.get("last_price_sol")),
            last_profit_pct=_opt_float(raw.get("last_profit_pct")),
            last_exit_signature=raw.get("last_exit_signature"),
            last_exit_received_sol=_opt_float(raw.get("last_exit_received_sol")),
        )

    @classmethod
    def from_json(cls, text: Optional[str], position_id: str = "") -> ExitState:
        try:
            return cls.parse(text)
        except DataCorruption as e:
            logger.warning("Exit state unreadable, starting fresh", position_id=position_id, error=str(e))
            return cls()

    def to_json(self) -> str:
        d = asdict(self)
        if d["last_seen_balance_raw"] is not None:
            d["last_seen_balance_raw"] = str(d["last_seen_balance_raw"])
        d["schema"] = EXIT_STATE_SCHEMA
        return json.dumps(d)


def prorated_cost_basis(
    entry_cost_sol: Optional[float],
    entry_token_raw: Optional[int],
    sold_raw: int,
    decimals: Optional[int],
    entry_price_sol: Optional[float],
) -> float:
    """Cost of ``sold_raw`` tokens: share of the entry cost, else entry price x amount."""
    if entry_cost_sol is not None and entry_token_raw and entry_token_raw > 0:
        return entry_cost_sol * (sold_raw / entry_token_raw)
    if entry_price_sol and decimals is not None and sold_raw > 0:
        return entry_price_sol * (sold_raw / 10 ** decimals)
    return 0.0


def take_profit_sell_raw(balance_raw: int, sell_pct: float) -> int:
    pct = 0.0 if not math.isfinite(sell_pct) else min(100.0, max(0.0, sell_pct))
    return balance_raw * int(math.floor(pct * 100)) // 10_000


class ExitEngine:

    def __init__(
        self,
        cfg: BotConfig,
        db: Any,
        router: Any,
        rpc: Any,
        prices: Any,
        risk: Any,
        policy: Any,
        clock: Callable[[], int] = now_ms,
    ):
        self.cfg = cfg
        self.db = db
        self.router = router
        self.rpc = rpc
        self.prices = prices
        self.risk = risk
        self.policy = policy
        self._clock = clock

    def _profile_for(self, row: Dict[str, Any], active_profile: str) -> ProfileConfig:
        name = None
        try:
            name = (json.loads(row.get("strategy_json") or "{}") or {}).get("profile")
        except (TypeError, ValueError):
            name = None
        profile = self.cfg.profiles.get(name) if name else None
        if profile is not None and profile.enabled:
            return profile
        return self.cfg.profiles[active_profile]

    async def run_once(self, owner: Optional[str], active_profile: str) -> Dict[str, int]:
        profile = self.cfg.profiles.get(active_profile)
        if profile is None or not profile.enabled:
            raise ConfigError(f"Active profile missing or disabled: {active_profile}")

        summary = {"checked": 0, "exits": 0, "partials": 0, "failures": 0, "skipped": 0}
        rows = await self.db.get_open_positions()
        if not rows:
            return summary

        wsol = self.cfg.app.wsol_mint
        prices = await self.prices.get_usd_prices([wsol] + [r["mint"] for r in rows])
        sol_usd = prices.get(wsol)
        if not sol_usd:
            logger.warning("SOL price unavailable, skipping exit pass", open_positions=len(rows))
            summary["skipped"] = len(rows)
            return summary

        for row in rows:
            summary["checked"] += 1
            try:
                outcome = await self._process(row, owner, prices, sol_usd, active_profile)
            except (ExchangeError, PolicyRejection) as e:
                summary["failures"] += 1
                logger.warning(
                    "Exit failed, position stays open",
                    position_id=row["id"],
                    mint=row["mint"],
                    error=repr(e),
                )
                continue
            if outcome == "final":
                summary["exits"] += 1
            elif outcome == "partial":
                summary["partials"] += 1
            elif outcome == "skipped":
                summary["skipped"] += 1
        return summary

    async def _balance_raw(self, owner: Optional[str], mint: str) -> int:
        if self.cfg.app.mode == "paper":
            raw, _ = await self.db.get_paper_balance(mint)
            return raw
        return await self.rpc.get_token_balance_raw(owner, mint)

    async def _process(
        self,
        row: Dict[str, Any],
        owner: Optional[str],
        prices: Dict[str, float],
        sol_usd: float,
        active_profile: str,
    ) -> str:
        mint = row["mint"]
        token_usd = prices.get(mint)
        if not token_usd:
            return "skipped"
        current = token_usd / sol_usd

        entry_price = row.get("entry_price_sol")
        if entry_price is None or not math.isfinite(entry_price) or entry_price <= 0:
            logger.debug("Entry price unknown, waiting for reconciliation", position_id=row["id"])
            return "skipped"

        profile = self._profile_for(row, active_profile)
        exits = profile.exits
        profit_pct = (current - entry_price) / entry_price * 100.0
        state = ExitState.from_json(row.get("state_json"), row["id"])
        state.max_drawdown_pct = max(state.max_drawdown_pct, -profit_pct, 0.0)

        balance = await self._balance_raw(owner, mint)
        if balance <= 0:
            state.last_seen_balance_raw = 0
            await self.db.update_position_state(
                row["id"], state.to_json(), notes="token_balance_zero_reconciled"
            )
            return "skipped"

        opened = DatabaseManager.parse_dt(row.get("opened_at"))
        now = self._clock()
        age_min = (now - opened.timestamp() * 1000) / 60_000 if opened else 0.0

        if age_min >= exits.max_hold_minutes:
            await self._settle(row, state, owner, balance, None, entry_price, "time_stop", now)
            return "final"

        if profit_pct <= -abs(exits.stop_loss_pct):
            await self._settle(row, state, owner, balance, None, entry_price, "stop_loss", now)
            return "final"

        trailing = exits.trailing_stop
        if trailing.enabled:
            if not state.trailing_armed and profit_pct >= trailing.activation_profit_pct:
                state.trailing_armed = True
                state.high_water_price_sol = current
            if state.trailing_armed and (
                state.high_water_price_sol is None or current > state.high_water_price_sol
            ):
                state.high_water_price_sol = current

        for index, level in enumerate(exits.take_profit_levels):
            if index in state.take_profit_hits or profit_pct < level.profit_pct:
                continue
            sell_raw = take_profit_sell_raw(balance, level.sell_pct)
            if sell_raw <= 0:
                continue
            await self._settle(row, state, owner, sell_raw, index, entry_price, f"take_profit_{index}", now)
            return "partial"

        if trailing.enabled and state.trailing_armed and state.high_water_price_sol:
            high = state.high_water_price_sol
            drawdown = (high - current) / high * 100.0 if high > 0 else 0.0
            if drawdown >= trailing.trailing_pct:
                await self._settle(row, state, owner, balance, None, entry_price, "trailing_stop", now)
                return "final"

        state.last_seen_balance_raw = balance
        state.last_price_sol = current
        state.last_profit_pct = profit_pct
        await self.db.update_position_state(row["id"], state.to_json())
        return "held"

    async def _settle(
        self,
        row: Dict[str, Any],
        state: ExitState,
        owner: Optional[str],
        sell_raw: int,
        rung: Optional[int],
        entry_price: float,
        reason: str,
        now: int,
    ) -> None:
        mint = row["mint"]
        # A failed sale must not lose the trailing arm or high-water mark.
        await self.db.update_position_state(row["id"], state.to_json())
        result = await self.router.execute_exit(mint, sell_raw, owner, position_id=row["id"])

        sold_raw = result.sold_raw if result.sold_raw is not None else sell_raw
        received = result.received_sol or 0.0
        decimals = result.decimals if result.decimals is not None else row.get("token_decimals")
        entry_raw = int(row["entry_token_amount_raw"]) if row.get("entry_token_amount_raw") else None

        realized = received - prorated_cost_basis(
            row.get("entry_cost_sol"), entry_raw, sold_raw, decimals, entry_price
        )
        await self.risk.record_realized_pnl(realized, now)

        state.realized_pnl_sol += realized
        state.last_exit_signature = result.signature
        state.last_exit_received_sol = received
        if rung is not None and rung not in state.take_profit_hits:
            state.take_profit_hits = sorted(state.take_profit_hits + [rung])

        log_kw = dict(
            position_id=row["id"],
            mint=mint,
            reason=reason,
            sold_raw=sold_raw,
            received_sol=round(received, 9),
            realized_pnl_sol=round(realized, 9),
            venue=result.venue,
        )

        if rung is not None:
            state.last_seen_balance_raw = None
            await self.db.update_position_state(row["id"], state.to_json())
            logger.info("Take-profit executed", **log_kw)
            return

        closed = await self.db.close_position(
            row["id"],
            pnl_sol=state.realized_pnl_sol,
            exit_signature=result.signature,
            state_json=state.to_json(),
            notes=reason,
        )
        logger.info("Position closed", total_pnl_sol=round(state.realized_pnl_sol, 9), **log_kw)
        await self.db.log_thought(
            "exit",
            f"Closed {mint} ({reason}) pnl={state.realized_pnl_sol:.6f} SOL",
            metadata={"position_id": row["id"], "venue": result.venue},
        )
        if not closed:
            return

        opened = DatabaseManager.parse_dt(row.get("opened_at"))
        hold_minutes = (now - opened.timestamp() * 1000) / 60_000 if opened else 0.0
        await self.policy.on_exit(
            row["id"],
            RealizedTradeStats(
                realized_pnl_sol=state.realized_pnl_sol,
                hold_minutes=hold_minutes,
                max_drawdown_pct=state.max_drawdown_pct,
                closed_at_ms=now,
            ),
        )
