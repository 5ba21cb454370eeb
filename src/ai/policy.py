"""
AI Policy Controller - epsilon-greedy contextual bandit over entry profiles.

Each action (``skip`` or ``profile:<name>``) has a linear value model
``q(a) = bias[a] + w[a] . x`` over the feature snapshot. Training is one
online gradient step per closed trade, preceded by a global recency decay
of every action's parameters. The controller also gates itself: it refuses
control while under-trained or after its own rolling 24h loss limit.
"""

from __future__ import annotations

import asyncio
import math
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from src.ai.features import FEATURE_KEYS, FeatureSnapshot, parse_snapshot
from src.ai.model_store import LinearPolicyModel, ModelStore
from src.ai.reward import RealizedTradeStats, compute_reward
from src.ai.stats import AIPnlTracker
from src.core.config import AIConfig
from src.core.logger import get_logger

logger = get_logger("ai_policy")

ACTION_SKIP = "skip"
PROFILE_PREFIX = "profile:"
DAY_MS = 24 * 60 * 60 * 1000


class Controller(str, Enum):
    SYSTEM = "system"
    AI = "ai"


def profile_action(profile: str) -> str:
    return f"{PROFILE_PREFIX}{profile}"


def profile_from_action(action: str) -> Optional[str]:
    if action.startswith(PROFILE_PREFIX):
        return action[len(PROFILE_PREFIX):] or None
    return None


def allowed_actions(profiles: Iterable[str]) -> List[str]:
    """``skip`` first, then one action per unique profile in sorted order."""
    return [ACTION_SKIP] + [profile_action(p) for p in sorted(set(profiles))]


@dataclass
class PolicyDecision:
    action: str
    value: float
    exploratory: bool


@dataclass
class ControlCheck:
    ok: bool
    reason: Optional[str] = None


class BasePolicy(ABC):
    """Interface the decision engine relies on; swap in a stronger policy here."""

    @abstractmethod
    def decide(self, snapshot: FeatureSnapshot, actions: Sequence[str]) -> PolicyDecision:
        ...

    @abstractmethod
    def train(self, snapshot: FeatureSnapshot, action: str, reward: float, at_ms: int) -> None:
        ...

    @abstractmethod
    def explain(self, snapshot: FeatureSnapshot, action: str, top_n: int = 6) -> List[Tuple[str, float]]:
        ...

    @abstractmethod
    async def bootstrap(self, now_ms: int, actions: Sequence[str]) -> int:
        ...


class AIPolicyController(BasePolicy):

    def __init__(
        self,
        db: Any,
        cfg: AIConfig,
        rng: Optional[random.Random] = None,
        store: Optional[ModelStore] = None,
        stats: Optional[AIPnlTracker] = None,
    ):
        self.db = db
        self.cfg = cfg
        self._rng = rng or random.Random()
        self.store = store or ModelStore(db)
        self.stats = stats or AIPnlTracker(db)
        self.model = LinearPolicyModel(feature_keys=FEATURE_KEYS)
        self._lock = asyncio.Lock()

    @property
    def trained_samples(self) -> int:
        return self.model.trained_samples

    async def load(self) -> None:
        async with self._lock:
            self.model = await self.store.load_or_init(FEATURE_KEYS)

    # ------------------------------------------------------------------
    # Acting
    # ------------------------------------------------------------------

    def decide(self, snapshot: FeatureSnapshot, actions: Sequence[str]) -> PolicyDecision:
        """
        Epsilon-greedy selection among ``actions``.

        ``skip`` is always a candidate and is evaluated first, so it wins
        every tie; any other action must be strictly better to replace it.
        """
        candidates = [ACTION_SKIP] + [a for a in actions if a != ACTION_SKIP]
        x = snapshot.as_array()
        epsilon = min(1.0, max(0.0, float(self.cfg.epsilon)))

        if epsilon > 0 and self._rng.random() < epsilon:
            action = self._rng.choice(candidates)
            return PolicyDecision(action=action, value=self.model.q_value(action, x), exploratory=True)

        best = ACTION_SKIP
        best_q = self.model.q_value(ACTION_SKIP, x)
        for action in candidates[1:]:
            q = self.model.q_value(action, x)
            if q > best_q:
                best, best_q = action, q
        return PolicyDecision(action=best, value=best_q, exploratory=False)

    def explain(self, snapshot: FeatureSnapshot, action: str, top_n: int = 6) -> List[Tuple[str, float]]:
        """Largest per-feature contributions ``w_i * x_i`` to ``q(action)``."""
        w = self.model.weights.get(action)
        if w is None:
            return []
        contributions = w * snapshot.as_array()
        ranked = sorted(
            zip(snapshot.keys, (float(c) for c in contributions)),
            key=lambda kv: abs(kv[1]),
            reverse=True,
        )
        return ranked[: max(0, int(top_n))]

    async def can_control_now(self, now_ms: int) -> ControlCheck:
        if not self.cfg.enabled:
            return ControlCheck(False, "disabled")
        if self.model.trained_samples < self.cfg.min_samples_before_live:
            return ControlCheck(False, "insufficient_samples")
        rolling = await self.stats.rolling_pnl(now_ms)
        if rolling <= -abs(self.cfg.ai_daily_loss_limit_sol):
            return ControlCheck(False, "daily_loss_limit")
        return ControlCheck(True)

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    def train(self, snapshot: FeatureSnapshot, action: str, reward: float, at_ms: int) -> None:
        model = self.model
        x = snapshot.as_array()

        dt_days = max(0.0, (at_ms - model.updated_at_ms) / DAY_MS) if model.updated_at_ms else 0.0
        half_life = max(1.0, float(self.cfg.recent_window_days))
        decay = math.exp(-math.log(2) * dt_days / half_life)
        if decay < 1.0:
            for a in list(model.weights):
                model.weights[a] = model.weights[a] * decay
            for a in list(model.bias):
                model.bias[a] = model.bias[a] * decay

        n = model.action_counts.get(action, 0) + 1
        alpha = min(0.05, max(0.001, 0.05 / math.sqrt(n)))
        error = float(reward) - model.q_value(action, x)

        model.weights[action] = model.weights_for(action) + alpha * error * x
        model.bias[action] = model.bias.get(action, 0.0) + alpha * error
        model.action_counts[action] = n
        model.trained_samples += 1
        model.updated_at_ms = max(model.updated_at_ms, int(at_ms))

    async def on_entry(
        self,
        entry_id: str,
        snapshot: FeatureSnapshot,
        action: str,
        controller: Controller,
        opened_at_ms: int,
    ) -> None:
        await self.db.upsert_ai_entry(
            entry_id, snapshot.to_json(), action, Controller(controller).value, opened_at_ms
        )

    async def on_exit(self, entry_id: str, stats: RealizedTradeStats) -> bool:
        """Close the learning loop for one entry. Later calls for the same entry are no-ops."""
        entry = await self.db.get_ai_entry(entry_id)
        if entry is None:
            return False

        reward = compute_reward(stats, self.cfg.reward)
        if not await self.db.insert_ai_outcome(entry_id, reward, stats.closed_at_ms):
            return False

        if entry["controller"] == Controller.AI.value:
            await self.stats.record_ai_close(
                entry_id, stats.realized_pnl_sol, stats.closed_at_ms, self.cfg.ai_daily_loss_limit_sol
            )

        snapshot = parse_snapshot(entry["features_json"], self.model.feature_keys)
        if snapshot is None:
            logger.warning("AI entry snapshot unreadable, outcome not trained", entry_id=entry_id)
            return True

        async with self._lock:
            self.train(snapshot, entry["action"], reward, stats.closed_at_ms)
            await self.store.save(self.model)
        logger.info(
            "AI outcome trained",
            entry_id=entry_id,
            action=entry["action"],
            reward=round(reward, 6),
            trained_samples=self.model.trained_samples,
        )
        return True

    async def bootstrap(self, now_ms: int, actions: Sequence[str]) -> int:
        """Rebuild the model by replaying recent outcomes for currently allowed actions."""
        if not self.cfg.enabled or not self.cfg.bootstrap_on_startup:
            return 0

        window_days = max(1.0, float(self.cfg.recent_window_days))
        samples = await self.db.load_ai_samples(now_ms - int(window_days * DAY_MS))
        if not samples:
            return 0

        allowed = set(actions) | {ACTION_SKIP}
        replayed = 0
        async with self._lock:
            self.model = LinearPolicyModel(feature_keys=FEATURE_KEYS)
            for s in samples:
                if s["action"] not in allowed:
                    continue
                snapshot = parse_snapshot(s["features_json"], FEATURE_KEYS)
                if snapshot is None:
                    continue
                self.train(snapshot, s["action"], float(s["reward"]), int(s["closed_at"]))
                replayed += 1
            await self.store.save(self.model)
        logger.info("AI policy bootstrapped", samples=len(samples), replayed=replayed)
        return replayed
