"""AI policy: action selection, learning loop, self circuit breaker, persistence."""

from __future__ import annotations

import json
import random

import numpy as np
import pytest

from src.ai.features import FEATURE_KEYS, FEATURE_VERSION, build_snapshot, parse_snapshot
from src.ai.model_store import LinearPolicyModel, ModelStore
from src.ai.policy import (
    ACTION_SKIP,
    DAY_MS,
    AIPolicyController,
    Controller,
    allowed_actions,
    profile_action,
    profile_from_action,
)
from src.ai.reward import RealizedTradeStats, compute_reward
from src.core.config import AIConfig, RewardConfig
from src.intel.models import SignalScore
from tests.conftest import make_features, open_db

NOW = 1_700_000_000_000


def _snapshot(**overrides):
    features = make_features(**overrides)
    score = SignalScore(mint=features.mint, confidence=0.6, pump_probability=0.7, rug_probability=0.1)
    return build_snapshot(features, score)


def _ai_cfg(**kw) -> AIConfig:
    values = dict(enabled=True, epsilon=0.0, min_samples_before_live=0, ai_daily_loss_limit_sol=1.0)
    values.update(kw)
    return AIConfig(**values)


# ---- Actions ----


class TestActions:

    def test_allowed_actions_puts_skip_first_and_sorts_profiles(self):
        assert allowed_actions(["scalp", "default", "scalp"]) == [
            "skip", "profile:default", "profile:scalp",
        ]

    def test_profile_action_round_trip(self):
        assert profile_from_action(profile_action("aggressive")) == "aggressive"
        assert profile_from_action("skip") is None
        assert profile_from_action("profile:") is None


# ---- Decide ----


class TestDecide:

    def test_untrained_model_ties_go_to_skip(self):
        policy = AIPolicyController(db=None, cfg=_ai_cfg(), rng=random.Random(1))
        decision = policy.decide(_snapshot(), allowed_actions(["default", "aggressive"]))
        assert decision.action == ACTION_SKIP
        assert decision.exploratory is False
        assert decision.value == 0.0

    def test_strictly_better_profile_replaces_skip(self):
        policy = AIPolicyController(db=None, cfg=_ai_cfg(), rng=random.Random(1))
        policy.model.bias["profile:default"] = 0.2
        policy.model.bias["profile:aggressive"] = 0.5
        decision = policy.decide(_snapshot(), allowed_actions(["default", "aggressive"]))
        assert decision.action == "profile:aggressive"
        assert decision.value == pytest.approx(0.5)

    def test_equal_profile_value_does_not_beat_skip(self):
        policy = AIPolicyController(db=None, cfg=_ai_cfg(), rng=random.Random(1))
        policy.model.bias["skip"] = 0.3
        policy.model.bias["profile:default"] = 0.3
        assert policy.decide(_snapshot(), allowed_actions(["default"])).action == ACTION_SKIP

    def test_full_epsilon_always_explores_within_allowed_set(self):
        policy = AIPolicyController(db=None, cfg=_ai_cfg(epsilon=1.0), rng=random.Random(3))
        actions = allowed_actions(["default", "aggressive"])
        for _ in range(25):
            decision = policy.decide(_snapshot(), actions)
            assert decision.exploratory is True
            assert decision.action in actions

    def test_explain_ranks_by_absolute_contribution(self):
        policy = AIPolicyController(db=None, cfg=_ai_cfg(), rng=random.Random(1))
        weights = np.zeros(len(FEATURE_KEYS))
        weights[FEATURE_KEYS.index("score_rug")] = -10.0
        weights[FEATURE_KEYS.index("score_pump")] = 1.0
        policy.model.weights["profile:default"] = weights
        top = policy.explain(_snapshot(), "profile:default", top_n=2)
        assert [k for k, _ in top] == ["score_rug", "score_pump"]
        assert policy.explain(_snapshot(), "profile:unknown") == []


# ---- Train ----


class TestTrain:

    def test_first_step_uses_max_learning_rate(self):
        policy = AIPolicyController(db=None, cfg=_ai_cfg(), rng=random.Random(1))
        snap = _snapshot()
        policy.train(snap, "profile:default", reward=1.0, at_ms=NOW)

        assert policy.model.bias["profile:default"] == pytest.approx(0.05)
        np.testing.assert_allclose(policy.model.weights["profile:default"], 0.05 * snap.as_array())
        assert policy.model.action_counts["profile:default"] == 1
        assert policy.trained_samples == 1
        assert policy.model.updated_at_ms == NOW

    def test_learning_rate_shrinks_with_visits(self):
        policy = AIPolicyController(db=None, cfg=_ai_cfg(), rng=random.Random(1))
        snap = _snapshot()
        policy.model.action_counts["skip"] = 3
        policy.train(snap, "skip", reward=1.0, at_ms=NOW)
        # n = 4 -> alpha = 0.05 / 2
        assert policy.model.bias["skip"] == pytest.approx(0.025)

    def test_elapsed_half_life_halves_existing_parameters(self):
        policy = AIPolicyController(db=None, cfg=_ai_cfg(recent_window_days=2), rng=random.Random(1))
        policy.model.bias["profile:other"] = 1.0
        policy.model.updated_at_ms = NOW
        policy.train(_snapshot(), "skip", reward=0.0, at_ms=NOW + 2 * DAY_MS)
        assert policy.model.bias["profile:other"] == pytest.approx(0.5)

    def test_out_of_order_sample_keeps_newest_timestamp(self):
        policy = AIPolicyController(db=None, cfg=_ai_cfg(), rng=random.Random(1))
        policy.train(_snapshot(), "skip", 0.1, at_ms=NOW)
        policy.train(_snapshot(), "skip", 0.1, at_ms=NOW - 1000)
        assert policy.model.updated_at_ms == NOW


# ---- Reward ----


def test_reward_subtracts_hold_and_drawdown_penalties():
    stats = RealizedTradeStats(realized_pnl_sol=1.0, hold_minutes=30, max_drawdown_pct=10, closed_at_ms=NOW)
    cfg = RewardConfig(hold_penalty_per_minute=0.01, drawdown_penalty=0.02)
    assert compute_reward(stats, cfg) == pytest.approx(1.0 - 0.3 - 0.2)


def test_reward_treats_non_finite_inputs_as_zero():
    stats = RealizedTradeStats(
        realized_pnl_sol=float("nan"), hold_minutes=float("inf"), max_drawdown_pct=-5, closed_at_ms=NOW
    )
    assert compute_reward(stats, RewardConfig(hold_penalty_per_minute=1, drawdown_penalty=1)) == 0.0


# ---- Snapshot parsing ----


class TestSnapshot:

    def test_snapshot_survives_storage(self):
        snap = _snapshot()
        parsed = parse_snapshot(snap.to_json())
        assert parsed == snap

    def test_other_version_is_rejected(self):
        raw = json.loads(_snapshot().to_json())
        raw["version"] = FEATURE_VERSION + 1
        assert parse_snapshot(json.dumps(raw)) is None

    def test_reordered_keys_are_rejected(self):
        raw = json.loads(_snapshot().to_json())
        raw["keys"] = list(reversed(raw["keys"]))
        assert parse_snapshot(json.dumps(raw)) is None

    @pytest.mark.parametrize("text", [None, "", "not json", "[]", '{"version": 1}'])
    def test_malformed_text_is_rejected(self, text):
        assert parse_snapshot(text) is None

    def test_feature_vector_is_normalized(self):
        snap = _snapshot(top_holder_pct=25.0, has_frozen_authority=True, liquidity_sol=-3.0)
        d = snap.as_dict()
        assert d["top_holder_pct"] == pytest.approx(0.25)
        assert d["frozen_flag"] == 1.0
        assert d["liquidity_log1p"] == 0.0


# ---- Persistence and learning loop ----


class TestLearningLoop:

    @pytest.mark.asyncio
    async def test_on_exit_trains_once_per_entry(self, tmp_path):
        async with open_db(tmp_path) as db:
            policy = AIPolicyController(db, _ai_cfg(), rng=random.Random(1))
            await policy.load()
            snap = _snapshot()
            await policy.on_entry("pos-1", snap, "profile:default", Controller.SYSTEM, NOW)

            stats = RealizedTradeStats(0.4, 10.0, 0.0, NOW + 60_000)
            assert await policy.on_exit("pos-1", stats) is True
            assert await policy.on_exit("pos-1", stats) is False
            assert policy.trained_samples == 1

            outcome = await db.get_ai_outcome("pos-1")
            assert outcome["reward"] == pytest.approx(0.4)

    @pytest.mark.asyncio
    async def test_on_exit_for_unknown_entry_is_a_no_op(self, tmp_path):
        async with open_db(tmp_path) as db:
            policy = AIPolicyController(db, _ai_cfg(), rng=random.Random(1))
            assert await policy.on_exit("missing", RealizedTradeStats(1.0, 1.0, 0.0, NOW)) is False
            assert policy.trained_samples == 0

    @pytest.mark.asyncio
    async def test_ai_losses_trip_the_daily_limit(self, tmp_path):
        async with open_db(tmp_path) as db:
            policy = AIPolicyController(db, _ai_cfg(ai_daily_loss_limit_sol=0.5), rng=random.Random(1))
            await policy.on_entry("ai-1", _snapshot(), "profile:default", Controller.AI, NOW)
            await policy.on_entry("sys-1", _snapshot(), "profile:default", Controller.SYSTEM, NOW)

            await policy.on_exit("sys-1", RealizedTradeStats(-5.0, 1.0, 0.0, NOW + 1000))
            assert (await policy.can_control_now(NOW + 2000)).ok is True

            await policy.on_exit("ai-1", RealizedTradeStats(-0.6, 1.0, 0.0, NOW + 1000))
            check = await policy.can_control_now(NOW + 2000)
            assert check.ok is False
            assert check.reason == "daily_loss_limit"

            # The loss ages out of the 24h window.
            assert (await policy.can_control_now(NOW + 1000 + DAY_MS + 1)).ok is True

    @pytest.mark.asyncio
    async def test_control_requires_enough_samples(self, tmp_path):
        async with open_db(tmp_path) as db:
            policy = AIPolicyController(db, _ai_cfg(min_samples_before_live=2), rng=random.Random(1))
            assert (await policy.can_control_now(NOW)).reason == "insufficient_samples"
            disabled = AIPolicyController(db, _ai_cfg(enabled=False))
            assert (await disabled.can_control_now(NOW)).reason == "disabled"

    @pytest.mark.asyncio
    async def test_bootstrap_replays_recent_allowed_outcomes(self, tmp_path):
        async with open_db(tmp_path) as db:
            snap = _snapshot()
            for i, action in enumerate(["profile:default", "profile:retired", "skip"]):
                entry_id = f"e-{i}"
                await db.upsert_ai_entry(entry_id, snap.to_json(), action, "system", NOW)
                await db.insert_ai_outcome(entry_id, 0.2, NOW + i)
            await db.upsert_ai_entry("old", snap.to_json(), "skip", "system", NOW - 40 * DAY_MS)
            await db.insert_ai_outcome("old", 1.0, NOW - 30 * DAY_MS)

            policy = AIPolicyController(db, _ai_cfg(recent_window_days=14), rng=random.Random(1))
            replayed = await policy.bootstrap(NOW + DAY_MS, allowed_actions(["default"]))

            assert replayed == 2
            assert policy.trained_samples == 2
            assert "profile:retired" not in policy.model.weights

            reloaded = AIPolicyController(db, _ai_cfg(), rng=random.Random(1))
            await reloaded.load()
            assert reloaded.trained_samples == 2
            assert reloaded.model.bias["skip"] == pytest.approx(policy.model.bias["skip"])

    @pytest.mark.asyncio
    async def test_bootstrap_with_no_samples_keeps_loaded_model(self, tmp_path):
        async with open_db(tmp_path) as db:
            policy = AIPolicyController(db, _ai_cfg(), rng=random.Random(1))
            policy.model.trained_samples = 9
            assert await policy.bootstrap(NOW, allowed_actions(["default"])) == 0
            assert policy.trained_samples == 9


class TestModelStore:

    @pytest.mark.asyncio
    async def test_save_and_load(self, tmp_path):
        async with open_db(tmp_path) as db:
            store = ModelStore(db)
            model = LinearPolicyModel()
            model.weights["skip"] = np.arange(len(FEATURE_KEYS), dtype=np.float64)
            model.bias["skip"] = -0.25
            model.action_counts["skip"] = 4
            model.trained_samples = 4
            model.updated_at_ms = NOW
            await store.save(model)

            loaded = await store.load_or_init()
            np.testing.assert_allclose(loaded.weights["skip"], model.weights["skip"])
            assert loaded.bias["skip"] == -0.25
            assert loaded.action_counts["skip"] == 4
            assert loaded.updated_at_ms == NOW

    @pytest.mark.asyncio
    async def test_schema_mismatch_reinitializes(self, tmp_path):
        async with open_db(tmp_path) as db:
            await db.save_ai_model(FEATURE_VERSION, ["only_one_key"], 12, NOW, [("skip", [1.0], 0.5, 3)])
            loaded = await ModelStore(db).load_or_init()
            assert loaded.trained_samples == 0
            assert loaded.weights == {}

    @pytest.mark.asyncio
    async def test_version_mismatch_reinitializes(self, tmp_path):
        async with open_db(tmp_path) as db:
            zeros = [0.0] * len(FEATURE_KEYS)
            await db.save_ai_model(FEATURE_VERSION + 1, list(FEATURE_KEYS), 5, NOW, [("skip", zeros, 0.0, 1)])
            loaded = await ModelStore(db).load_or_init()
            assert loaded.trained_samples == 0
