"""
Strategy Decision Engine - entry decision for one scored candidate.

Deterministic hard gates run first and cannot be overridden. Only a candidate
that clears them is offered to the AI policy, and only when the policy is
currently allowed to take control; otherwise the active profile enters under
system control.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Sequence

from src.ai.features import FeatureSnapshot
from src.ai.policy import (
    ACTION_SKIP,
    AIPolicyController,
    Controller,
    allowed_actions,
    profile_from_action,
)
from src.core.config import AIConfig, StrategyConfig
from src.core.logger import get_logger
from src.intel.models import SignalScore, TokenFeatures

logger = get_logger("decision")


class EntryAction(str, Enum):
    ENTER = "ENTER"
    SKIP = "SKIP"


@dataclass
class EntryDecision:
    action: EntryAction
    controller: Controller
    reason: str
    profile: Optional[str] = None
    ai_action: Optional[str] = None
    exploratory: bool = False

    @property
    def is_enter(self) -> bool:
        return self.action == EntryAction.ENTER

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "controller": self.controller.value,
            "reason": self.reason,
            "profile": self.profile,
            "ai_action": self.ai_action,
            "exploratory": self.exploratory,
        }


def _skip(reason: str, controller: Controller = Controller.SYSTEM, **kw: Any) -> EntryDecision:
    return EntryDecision(action=EntryAction.SKIP, controller=controller, reason=reason, **kw)


class StrategyDecisionEngine:

    def __init__(self, strategy: StrategyConfig, ai_cfg: AIConfig, policy: AIPolicyController):
        self.strategy = strategy
        self.ai_cfg = ai_cfg
        self.policy = policy

    def hard_gate(self, features: TokenFeatures, score: SignalScore) -> Optional[str]:
        """First failing deterministic disqualifier, or None."""
        s = self.strategy
        if score.confidence < s.entry_min_confidence:
            return "low_confidence"
        if score.pump_probability < s.entry_min_pump_prob:
            return "low_pump_probability"
        if score.rug_probability > s.entry_max_rug_prob:
            return "high_rug_probability"
        if features.has_frozen_authority:
            return "freeze_authority_present"
        if features.top_holder_pct > s.max_top_holder_pct:
            return "extreme_top_holder_pct"
        return None

    async def decide(
        self,
        features: TokenFeatures,
        score: SignalScore,
        snapshot: FeatureSnapshot,
        active_profile: str,
        profiles: Sequence[str],
        now_ms: int,
    ) -> EntryDecision:
        reason = self.hard_gate(features, score)
        if reason:
            return _skip(reason)

        check = await self.policy.can_control_now(now_ms)
        if not check.ok:
            return EntryDecision(
                action=EntryAction.ENTER,
                controller=Controller.SYSTEM,
                reason=f"ai_unavailable:{check.reason}",
                profile=active_profile,
            )

        if score.rug_probability > self.ai_cfg.max_rug_prob:
            return _skip("ai_rug_ceiling", controller=Controller.AI)

        actions = allowed_actions(profiles)
        choice = self.policy.decide(snapshot, actions)
        if choice.action == ACTION_SKIP:
            return _skip(
                "ai_skip",
                controller=Controller.AI,
                ai_action=choice.action,
                exploratory=choice.exploratory,
            )

        chosen = profile_from_action(choice.action)
        if choice.action not in actions or chosen is None:
            logger.warning(
                "AI chose an action outside the allowed set, falling back",
                action=choice.action,
                allowed=actions,
                fallback_profile=active_profile,
            )
            return EntryDecision(
                action=EntryAction.ENTER,
                controller=Controller.SYSTEM,
                reason="ai_invalid_action",
                profile=active_profile,
                ai_action=choice.action,
                exploratory=choice.exploratory,
            )

        return EntryDecision(
            action=EntryAction.ENTER,
            controller=Controller.AI,
            reason="ai_profile",
            profile=chosen,
            ai_action=choice.action,
            exploratory=choice.exploratory,
        )
