"""
Orchestrator - the single tick loop driving exits and entries.

Lifecycle is an explicit state machine (STOPPED -> RUNNING -> STOPPING ->
STOPPED). Exactly one tick runs at a time; the loop waits for the in-flight
tick before sleeping, and ``stop()`` sets the cancellation token and awaits
the loop. The token is checked between tick stages so a stop request never
starts a new money-moving step.

Tick order:
  1. refresh status counters
  2. load controls + active profile (ConfigError if missing/disabled)
  3. signer health (ExternalUnavailable if down)
  4. reconcile open positions (live mode, best effort)
  5. exit pass, unless exits are paused; the kill switch always runs it
  6. stop if kill switch, entries paused, or no candidates
  7. risk gate -> first candidate -> governance/cooldown/attempt cap
  8. features -> filter -> score -> decision
  9. on ENTER: profile capacity, size, execute, open position, notify AI
"""

from __future__ import annotations

import asyncio
import enum
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from src.ai.features import build_snapshot
from src.ai.policy import Controller, PROFILE_PREFIX, profile_action
from src.core.config import BotConfig
from src.core.database import now_ms
from src.core.error_handler import GracefulErrorHandler
from src.core.errors import ConfigError
from src.core.logger import get_logger, log_performance, tick_context
from src.exchange.exceptions import ExchangeError, ExternalUnavailable, ShadowSendSuppressed
from src.execution.exit_engine import ExitState
from src.intel.chain_intelligence import MintNotFound, NotAMint

logger = get_logger("orchestrator")


def ai_explanation(policy: Any, decision: Any, snapshot: Any, top_n: int = 6) -> Optional[List[Tuple[str, float]]]:
    """Largest feature contributions behind an AI-controlled decision, or None."""
    if decision.controller != Controller.AI or not decision.ai_action:
        return None
    return [(key, round(value, 6)) for key, value in policy.explain(snapshot, decision.ai_action, top_n)]


class EngineState(str, enum.Enum):
    STOPPED = "STOPPED"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"


class Orchestrator:

    def __init__(
        self,
        cfg: BotConfig,
        db: Any,
        controls: Any,
        signer: Any,
        rpc: Any,
        intelligence: Any,
        filters: Any,
        scoring: Any,
        decision: Any,
        policy: Any,
        risk: Any,
        governance: Any,
        router: Any,
        exit_engine: Any,
        reconciler: Any,
        error_handler: Optional[GracefulErrorHandler] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.cfg = cfg
        self.db = db
        self.controls = controls
        self.signer = signer
        self.rpc = rpc
        self.intelligence = intelligence
        self.filters = filters
        self.scoring = scoring
        self.decision = decision
        self.policy = policy
        self.risk = risk
        self.governance = governance
        self.router = router
        self.exit_engine = exit_engine
        self.reconciler = reconciler
        self.error_handler = error_handler or GracefulErrorHandler(db_log_fn=db.log_thought)
        self._clock = clock

        self.state = EngineState.STOPPED
        self._stop_event = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self._tick_lock = asyncio.Lock()

        self.tick_count = 0
        self.last_tick_at: Optional[str] = None
        self.last_error: Optional[str] = None
        self._candidate_count = 0
        self._open_count = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.state != EngineState.STOPPED:
            return
        self._stop_event = asyncio.Event()
        self.state = EngineState.RUNNING
        self._loop_task = asyncio.create_task(self._loop(), name="orchestrator_loop")
        logger.info("Orchestrator started", mode=self.cfg.app.mode, heartbeat_s=self.cfg.app.heartbeat_seconds)
        await self.db.log_thought("system", f"Engine started in {self.cfg.app.mode} mode")

    async def stop(self) -> None:
        if self.state == EngineState.STOPPED:
            return
        self.state = EngineState.STOPPING
        self._stop_event.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None
        self.state = EngineState.STOPPED
        logger.info("Orchestrator stopped", ticks=self.tick_count)
        await self.db.log_thought("system", "Engine stopped", severity="warning")

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    async def _loop(self) -> None:
        heartbeat = float(self.cfg.app.heartbeat_seconds)
        while not self._stop_event.is_set():
            await self._guarded_tick()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=heartbeat)
            except asyncio.TimeoutError:
                pass

    async def tick_once(self) -> Dict[str, Any]:
        await self._guarded_tick()
        return await self.status()

    async def _guarded_tick(self) -> None:
        async with self._tick_lock:
            try:
                with tick_context(tick=self.tick_count + 1, mode=self.cfg.app.mode), \
                        log_performance(logger, "tick", slow_ms=5000.0):
                    await self._tick()
            except Exception as e:
                self.last_error = f"{type(e).__name__}: {e}"
                await self.error_handler.handle(e, component="orchestrator", context="tick")
                try:
                    await self.risk.trip_circuit_breaker()
                except Exception as trip_error:
                    logger.error("Circuit breaker write failed", error=repr(trip_error))

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def _tick(self) -> None:
        self.tick_count += 1
        self.last_tick_at = datetime.now(timezone.utc).isoformat()

        candidates = await self.db.list_candidates(self.cfg.app.candidate_scan_limit)
        open_positions = await self.db.get_open_positions()
        self._candidate_count = len(candidates)
        self._open_count = len(open_positions)

        controls = await self.controls.load()
        active_name = controls.active_profile
        active = self.cfg.profiles.get(active_name)
        if active is None or not active.enabled:
            raise ConfigError(f"Active profile missing or disabled: {active_name}")

        if not await self.signer.health():
            raise ExternalUnavailable("signer_unhealthy")
        owner = await self.signer.get_public_key()

        if self.cfg.app.mode == "live":
            try:
                await self.reconciler.run_once(owner)
            except ExchangeError as e:
                logger.warning("Reconcile pass failed", error=repr(e))

        if self.stop_requested:
            return

        if not controls.pause_exits or controls.kill_switch:
            summary = await self.exit_engine.run_once(owner, active_name)
            if summary.get("exits") or summary.get("partials") or summary.get("failures"):
                logger.info("Exit pass", **summary)
            open_positions = await self.db.get_open_positions()
            self._open_count = len(open_positions)

        if controls.kill_switch or controls.pause_entries or not candidates:
            return
        if self.stop_requested:
            return

        gate = await self.risk.can_open_position(len(open_positions))
        if not gate.ok:
            logger.debug("Entries gated by risk", reason=gate.reason)
            return

        await self._evaluate_candidate(candidates[0], open_positions, active_name, owner)

    async def _forget(self, mint: str) -> None:
        await self.db.remove_candidate(mint)
        self._candidate_count = max(0, self._candidate_count - 1)

    async def _evaluate_candidate(
        self,
        candidate: Dict[str, Any],
        open_positions: List[Dict[str, Any]],
        active_name: str,
        owner: str,
    ) -> None:
        mint = candidate["mint"]

        if any(p["mint"] == mint for p in open_positions):
            await self._forget(mint)
            return
        if not await self.governance.is_mint_allowed(mint):
            logger.info("Candidate blocked by governance", mint=mint)
            await self._forget(mint)
            return
        if not await self.governance.claim_attempt(mint):
            return
        if not await self.governance.claim_cooldown(mint):
            return

        try:
            features = await self.intelligence.get_features(mint)
        except (MintNotFound, NotAMint) as e:
            logger.info("Candidate is not a tradable mint", mint=mint, error=str(e))
            await self._forget(mint)
            return

        verdict = self.filters.evaluate(features)
        if not verdict.passed:
            logger.info("Candidate filtered", mint=mint, reasons=verdict.reasons)
            await self._forget(mint)
            return

        score = self.scoring.score(mint, features)
        await self.db.mark_scored(
            mint, score.confidence, score.pump_probability, score.rug_probability, score.reasons
        )
        snapshot = build_snapshot(features, score)
        now = self._clock()
        decision = await self.decision.decide(
            features, score, snapshot, active_name, self.cfg.enabled_profiles(), now
        )
        if not decision.is_enter:
            logger.info(
                "Candidate skipped",
                mint=mint,
                reason=decision.reason,
                controller=decision.controller.value,
                confidence=round(score.confidence, 4),
                explain=ai_explanation(self.policy, decision, snapshot),
            )
            await self._forget(mint)
            return

        profile_name = decision.profile
        profile = self.cfg.profiles.get(profile_name)
        if profile is None or not profile.enabled:
            raise ConfigError(f"Entry profile missing or disabled: {profile_name}")
        if len(open_positions) >= profile.entry.max_open_positions:
            logger.info("Candidate skipped", mint=mint, reason="profile_max_open_positions", profile=profile_name)
            await self._forget(mint)
            return

        if self.cfg.app.mode == "paper":
            balance = await self.db.get_paper_sol_balance(self.cfg.paper.initial_sol)
        else:
            balance = await self.rpc.get_balance_sol(owner)
        size_sol = self.risk.allocate_position_size(balance, profile.entry)
        if size_sol <= 0:
            logger.info("Position size is zero, not trading this tick", mint=mint, balance_sol=balance)
            return

        try:
            result = await self.router.execute_entry(mint, size_sol, owner)
        except ShadowSendSuppressed:
            logger.info("Shadow entry validated", mint=mint, profile=profile_name, size_sol=size_sol)
            await self._forget(mint)
            return

        entry_cost = result.spent_sol if result.spent_sol is not None else size_sol
        token_raw = result.out_amount_raw if result.out_amount_raw and result.out_amount_raw > 0 else None
        entry_price = None
        if token_raw and result.decimals is not None:
            tokens = token_raw / 10 ** result.decimals
            entry_price = entry_cost / tokens if tokens > 0 else None

        if decision.controller == Controller.AI and (decision.ai_action or "").startswith(PROFILE_PREFIX):
            ai_action = decision.ai_action
        else:
            ai_action = profile_action(profile_name)

        position = await self.db.open_position(
            mint,
            size_sol,
            entry_signature=result.signature,
            entry_cost_sol=entry_cost,
            entry_token_amount_raw=token_raw,
            token_decimals=result.decimals,
            entry_price_sol=entry_price,
            strategy={
                "profile": profile_name,
                "venue": result.venue,
                "controller": decision.controller.value,
                "reason": decision.reason,
                "ai_action": ai_action,
                "exploratory": decision.exploratory,
            },
            state_json=ExitState().to_json(),
        )
        opened = self.db.parse_dt(position.get("opened_at"))
        opened_ms = int(opened.timestamp() * 1000) if opened else now
        await self.policy.on_entry(position["id"], snapshot, ai_action, decision.controller, opened_ms)
        await self._forget(mint)
        self._open_count += 1

        logger.info(
            "Position opened",
            position_id=position["id"],
            mint=mint,
            size_sol=size_sol,
            entry_price_sol=entry_price,
            profile=profile_name,
            controller=decision.controller.value,
            signature=result.signature,
            explain=ai_explanation(self.policy, decision, snapshot),
        )
        await self.db.log_thought(
            "trade",
            f"Opened {mint} with {size_sol:.4f} SOL ({profile_name}, {decision.controller.value})",
            metadata={"position_id": position["id"], "venue": result.venue},
        )

    # ------------------------------------------------------------------
    # Status and operator pass-throughs
    # ------------------------------------------------------------------

    async def status(self) -> Dict[str, Any]:
        now = self._clock()
        check = await self.policy.can_control_now(now)
        return {
            "state": self.state.value,
            "running": self.state == EngineState.RUNNING,
            "mode": self.cfg.app.mode,
            "tick_count": self.tick_count,
            "last_tick_at": self.last_tick_at,
            "last_error": self.last_error,
            "candidates": await self.db.count_candidates(),
            "open_positions": await self.db.count_open_positions(),
            "ai": {
                "enabled": self.cfg.ai.enabled,
                "trained_samples": self.policy.trained_samples,
                "can_control": check.ok,
                "reason": check.reason,
                "rolling_24h_ai_pnl_sol": await self.policy.stats.rolling_pnl(now),
            },
            "risk": await self.risk.get_risk_report(now),
        }

    async def list_positions(self, limit: int = 100) -> List[Dict[str, Any]]:
        return await self.db.list_positions(limit)

    async def list_candidates(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return await self.db.list_candidates(limit or self.cfg.app.candidate_scan_limit)

    async def add_manual_candidate(self, mint: str) -> None:
        mint = (mint or "").strip()
        if not mint:
            raise ValueError("mint is required")
        await self.db.add_manual_candidate(mint)
        logger.info("Manual candidate added", mint=mint)

    async def set_governance(self, mint: str, mode: str, reason: Optional[str] = None) -> None:
        await self.db.set_governance(mint, mode, reason)
        logger.info("Governance rule set", mint=mint, mode=mode.upper(), reason=reason)
