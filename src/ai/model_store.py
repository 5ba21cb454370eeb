"""
Linear policy model and its persistence.

The model is stored in dedicated tables (one weights row per action plus a
meta row) and replaced in a single transaction on every save. A stored model
whose feature schema differs from the current one is discarded and rebuilt.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Tuple

import numpy as np

from src.ai.features import FEATURE_KEYS, FEATURE_VERSION
from src.core.errors import DataCorruption
from src.core.logger import get_logger

logger = get_logger("ai_model_store")


@dataclass
class LinearPolicyModel:
    feature_keys: Tuple[str, ...] = FEATURE_KEYS
    weights: Dict[str, np.ndarray] = field(default_factory=dict)
    bias: Dict[str, float] = field(default_factory=dict)
    action_counts: Dict[str, int] = field(default_factory=dict)
    trained_samples: int = 0
    updated_at_ms: int = 0

    @property
    def dim(self) -> int:
        return len(self.feature_keys)

    def weights_for(self, action: str) -> np.ndarray:
        w = self.weights.get(action)
        if w is None:
            w = np.zeros(self.dim, dtype=np.float64)
            self.weights[action] = w
        return w

    def q_value(self, action: str, x: np.ndarray) -> float:
        w = self.weights.get(action)
        dot = float(np.dot(w, x)) if w is not None else 0.0
        return self.bias.get(action, 0.0) + dot


def _decode_model(raw: Dict[str, Any], feature_keys: Sequence[str]) -> LinearPolicyModel:
    if int(raw.get("version", -1)) != FEATURE_VERSION:
        raise DataCorruption(f"model version {raw.get('version')} != {FEATURE_VERSION}")
    try:
        stored_keys = json.loads(raw["feature_keys_json"])
    except (KeyError, TypeError, ValueError) as e:
        raise DataCorruption(f"unreadable feature keys: {e!r}")
    if list(stored_keys) != list(feature_keys):
        raise DataCorruption("feature key schema mismatch")

    model = LinearPolicyModel(
        feature_keys=tuple(feature_keys),
        trained_samples=max(0, int(raw.get("trained_samples") or 0)),
        updated_at_ms=max(0, int(raw.get("updated_at_ms") or 0)),
    )
    for row in raw.get("actions") or []:
        action = str(row.get("action") or "")
        try:
            w = [float(v) for v in json.loads(row["weights_json"])]
            b = float(row["bias"])
            n = int(row["visit_count"])
        except (KeyError, TypeError, ValueError):
            logger.warning("Dropping unreadable model row", action=action)
            continue
        if not action or len(w) != model.dim or not all(math.isfinite(v) for v in w) or not math.isfinite(b):
            logger.warning("Dropping invalid model row", action=action)
            continue
        model.weights[action] = np.asarray(w, dtype=np.float64)
        model.bias[action] = b
        model.action_counts[action] = max(0, n)
    return model


class ModelStore:
    def __init__(self, db: Any):
        self.db = db

    async def load_or_init(self, feature_keys: Sequence[str] = FEATURE_KEYS) -> LinearPolicyModel:
        raw = await self.db.load_ai_model()
        if raw is None:
            return LinearPolicyModel(feature_keys=tuple(feature_keys))
        try:
            model = _decode_model(raw, feature_keys)
        except DataCorruption as e:
            logger.warning("Stored AI model discarded, reinitializing", reason=str(e))
            return LinearPolicyModel(feature_keys=tuple(feature_keys))
        logger.info(
            "AI model loaded",
            trained_samples=model.trained_samples,
            actions=sorted(model.weights),
        )
        return model

    async def save(self, model: LinearPolicyModel) -> None:
        actions: List[Tuple[str, List[float], float, int]] = []
        names = set(model.weights) | set(model.bias) | set(model.action_counts)
        for action in sorted(names):
            w = model.weights.get(action)
            actions.append((
                action,
                [float(v) for v in (w if w is not None else np.zeros(model.dim))],
                float(model.bias.get(action, 0.0)),
                int(model.action_counts.get(action, 0)),
            ))
        await self.db.save_ai_model(
            FEATURE_VERSION,
            list(model.feature_keys),
            model.trained_samples,
            model.updated_at_ms,
            actions,
        )
