"""
Feature snapshots for the AI policy.

A snapshot is a versioned, fixed-order named vector. The order and length of
``FEATURE_KEYS`` are part of the model schema: changing them bumps
``FEATURE_VERSION`` and forces a model rebuild.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

import numpy as np

from src.intel.models import SignalScore, TokenFeatures

FEATURE_VERSION = 1

FEATURE_KEYS: Tuple[str, ...] = (
    "age_log1p",
    "holders_log1p",
    "top_holder_pct",
    "liquidity_log1p",
    "volume24h_log1p",
    "frozen_flag",
    "revoked_flag",
    "score_confidence",
    "score_pump",
    "score_rug",
)


def _finite(x: Any) -> float:
    try:
        v = float(x)
    except (TypeError, ValueError):
        return 0.0
    return v if math.isfinite(v) else 0.0


def _log1p_non_neg(x: Any) -> float:
    return math.log1p(max(0.0, _finite(x)))


def _clamp01(x: Any) -> float:
    return min(1.0, max(0.0, _finite(x)))


@dataclass(frozen=True)
class FeatureSnapshot:
    version: int
    keys: Tuple[str, ...]
    values: Tuple[float, ...]

    def as_array(self) -> np.ndarray:
        return np.asarray(self.values, dtype=np.float64)

    def to_json(self) -> str:
        return json.dumps({"version": self.version, "keys": list(self.keys), "values": list(self.values)})

    def as_dict(self) -> dict:
        return dict(zip(self.keys, self.values))


def build_snapshot(features: TokenFeatures, score: SignalScore) -> FeatureSnapshot:
    values = (
        _log1p_non_neg(features.age_hours),
        _log1p_non_neg(features.holder_count),
        max(0.0, _finite(features.top_holder_pct)) / 100.0,
        _log1p_non_neg(features.liquidity_sol),
        _log1p_non_neg(features.volume24h_sol),
        1.0 if features.has_frozen_authority else 0.0,
        1.0 if features.has_revoked_mint_authority else 0.0,
        _clamp01(score.confidence),
        _clamp01(score.pump_probability),
        _clamp01(score.rug_probability),
    )
    return FeatureSnapshot(version=FEATURE_VERSION, keys=FEATURE_KEYS, values=values)


def parse_snapshot(
    text: Optional[str], expected_keys: Sequence[str] = FEATURE_KEYS
) -> Optional[FeatureSnapshot]:
    """Parse a stored snapshot; anything malformed or from another schema is None."""
    if not text:
        return None
    try:
        raw = json.loads(text)
    except (TypeError, ValueError):
        return None
    if not isinstance(raw, dict) or raw.get("version") != FEATURE_VERSION:
        return None
    keys = raw.get("keys")
    values = raw.get("values")
    if not isinstance(keys, list) or not isinstance(values, list):
        return None
    if len(keys) != len(expected_keys) or len(values) != len(expected_keys):
        return None
    if [str(k) for k in keys] != list(expected_keys):
        return None
    parsed: List[float] = []
    for v in values:
        if isinstance(v, bool) or not isinstance(v, (int, float)) or not math.isfinite(v):
            return None
        parsed.append(float(v))
    return FeatureSnapshot(version=FEATURE_VERSION, keys=tuple(expected_keys), values=tuple(parsed))
