"""
Per-mint governance: explicit ALLOW/BLOCK rules, global lists, cooldowns and
the daily attempt cap.

The attempt cap splits the UTC day into ``max_attempts_per_mint_per_day``
equal buckets and allows one claim per bucket. Near bucket edges this can
admit one attempt more or less than a strict rolling counter would.
"""

from __future__ import annotations

from typing import Any, Optional

from src.core.config import GovernanceConfig
from src.core.database import now_ms as _now_ms
from src.core.database import utc_date
from src.core.logger import get_logger

logger = get_logger("governance")

DAY_MS = 24 * 60 * 60 * 1000


def attempt_bucket_ms(max_attempts: int) -> int:
    return DAY_MS // max(1, int(max_attempts))


def attempt_cap_key(mint: str, at_ms: int, max_attempts: int) -> str:
    bucket = at_ms // attempt_bucket_ms(max_attempts)
    return f"cap:{mint}:{utc_date(at_ms)}:{bucket}"


def cooldown_key(mint: str) -> str:
    return f"cooldown:{mint}"


class GovernanceGate:

    def __init__(self, db: Any, cfg: GovernanceConfig):
        self.db = db
        self.cfg = cfg

    async def is_mint_allowed(self, mint: str) -> bool:
        rule = await self.db.get_governance(mint)
        if rule and rule.get("mode") == "BLOCK":
            return False
        if mint in self.cfg.mint_blocklist:
            return False
        if self.cfg.mint_allowlist and mint not in self.cfg.mint_allowlist:
            return False
        return True

    async def claim_attempt(self, mint: str, at_ms: Optional[int] = None) -> bool:
        ts = _now_ms() if at_ms is None else at_ms
        max_attempts = self.cfg.max_attempts_per_mint_per_day
        ok = await self.db.claim(
            attempt_cap_key(mint, ts, max_attempts), attempt_bucket_ms(max_attempts), at_ms=ts
        )
        if not ok:
            logger.info("Candidate blocked by attempt cap", mint=mint)
        return ok

    async def claim_cooldown(self, mint: str, at_ms: Optional[int] = None) -> bool:
        ttl = int(self.cfg.cooldown_minutes_per_mint) * 60_000
        ok = await self.db.claim(cooldown_key(mint), ttl, at_ms=at_ms)
        if not ok:
            logger.debug("Candidate in cooldown", mint=mint)
        return ok
