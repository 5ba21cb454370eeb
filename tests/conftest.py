"""Shared test fixtures and stubs for the trading node tests.

Provides in-memory fakes for the venue, signer, RPC and price clients plus
factory functions for config, features and databases. Everything that
persists uses a real DatabaseManager on a temp file.
"""

from __future__ import annotations

import copy
import random
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Union

import pytest

from src.ai.policy import AIPolicyController
from src.core.config import WSOL_MINT, BotConfig, ConfigManager
from src.core.database import DatabaseManager
from src.exchange.exceptions import ExternalUnavailable
from src.intel.models import TokenFeatures

OWNER = "Owner1111111111111111111111111111111111111"
MINT = "Mint11111111111111111111111111111111111111"


# ---------------------------------------------------------------------------
# Stub classes
# ---------------------------------------------------------------------------


class FakeVenue:
    """Jupiter-shaped venue client.

    ``out_amount`` is either a fixed integer or a callable
    ``(input_mint, output_mint, amount) -> int``. Set ``fail`` to make every
    quote raise ExternalUnavailable.
    """

    def __init__(
        self,
        out_amount: Union[int, Callable[[str, str, int], int]] = 1_000_000,
        price_impact: float = 0.001,
        labels: Optional[List[str]] = None,
        fail: bool = False,
    ) -> None:
        self.out_amount = out_amount
        self.price_impact = price_impact
        self.labels = labels if labels is not None else ["Raydium"]
        self.fail = fail
        self.quotes: List[tuple] = []
        self.builds: List[Dict[str, Any]] = []

    async def get_quote(self, input_mint, output_mint, amount, slippage_bps, only_direct_routes=False):
        self.quotes.append((input_mint, output_mint, amount))
        if self.fail:
            raise ExternalUnavailable("venue down")
        out = self.out_amount(input_mint, output_mint, amount) if callable(self.out_amount) else self.out_amount
        return {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "inAmount": str(amount),
            "outAmount": str(int(out)),
            "priceImpactPct": str(self.price_impact),
            "routePlan": [{"swapInfo": {"label": label}} for label in self.labels],
        }

    async def build_swap(self, quote, user_public_key, priority_fee_lamports=None):
        self.builds.append(quote)
        return b"unsigned-tx"


class FakeSigner:
    def __init__(self, healthy: bool = True, public_key: str = OWNER) -> None:
        self.healthy = healthy
        self.public_key = public_key
        self.signed: List[bytes] = []

    async def health(self) -> bool:
        return self.healthy

    async def get_public_key(self) -> str:
        return self.public_key

    async def sign_transaction(self, unsigned_tx: bytes) -> bytes:
        self.signed.append(unsigned_tx)
        return b"signed-tx"


class FakeRpc:
    """Chain state held in dicts; sent transactions get sequential signatures."""

    def __init__(self, decimals: int = 6, balance_sol: float = 10.0) -> None:
        self.decimals = decimals
        self.balance_sol = balance_sol
        self.token_balances: Dict[str, int] = {}
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.sent: List[str] = []
        self.confirmed: List[str] = []

    async def get_mint_decimals(self, mint: str) -> int:
        return self.decimals

    async def get_balance_sol(self, owner: str) -> float:
        return self.balance_sol

    async def get_token_balance_raw(self, owner: str, mint: str) -> int:
        return self.token_balances.get(mint, 0)

    async def send_raw_transaction(self, signed_b64: str, max_retries: int = 2) -> str:
        signature = f"sig-{len(self.sent) + 1}"
        self.sent.append(signature)
        return signature

    async def confirm_transaction(self, signature: str, timeout_ms: int, poll_seconds: float = 1.0) -> None:
        self.confirmed.append(signature)

    async def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        return self.transactions.get(signature)


class FakePriceClient:
    def __init__(self, prices: Optional[Dict[str, float]] = None) -> None:
        self.prices = dict(prices or {})
        self.calls = 0

    async def get_usd_prices(self, mints) -> Dict[str, float]:
        self.calls += 1
        return {m: self.prices[m] for m in mints if m in self.prices}


class FakeIntelligence:
    def __init__(self, features: Optional[Dict[str, TokenFeatures]] = None, error: Optional[Exception] = None):
        self.features = features or {}
        self.error = error
        self.calls: List[str] = []

    async def get_features(self, mint: str) -> TokenFeatures:
        self.calls.append(mint)
        if self.error is not None:
            raise self.error
        return self.features.get(mint) or make_features(mint)


class FakeReconciler:
    def __init__(self) -> None:
        self.runs = 0

    async def run_once(self, owner: str) -> Dict[str, int]:
        self.runs += 1
        return {"checked": 0, "backfilled": 0, "failed": 0}


# ---------------------------------------------------------------------------
# Factory functions
# ---------------------------------------------------------------------------


def _deep_update(dst: Dict[str, Any], src: Dict[str, Any]) -> None:
    for key, value in src.items():
        if isinstance(value, dict) and isinstance(dst.get(key), dict):
            _deep_update(dst[key], value)
        else:
            dst[key] = value


_BASE_CONFIG: Dict[str, Any] = {
    "app": {"mode": "paper", "heartbeat_seconds": 0.1},
    "paper": {"initial_sol": 10.0, "fee_reserve_sol": 0.05},
    "mev": {"max_quote_drift_bps": 0, "require_fresh_quote_ms": 0},
    "execution": {
        "venues": [{"name": "jupiter"}, {"name": "backup"}],
        "venue_order": ["jupiter", "backup"],
    },
    "profiles": {
        "default": {
            "entry": {
                "position_size_fixed_sol": 0.0,
                "position_size_wallet_pct": 5.0,
                "position_size_min_sol": 0.01,
                "position_size_max_sol": 0.5,
                "max_open_positions": 3,
            },
            "exits": {
                "stop_loss_pct": 15.0,
                "max_hold_minutes": 240,
                "take_profit_levels": [],
                "trailing_stop": {"enabled": False},
            },
        },
    },
    "filters": {"min_holder_count": 0, "max_top_holder_pct": 40.0},
    "governance": {"max_attempts_per_mint_per_day": 100, "cooldown_minutes_per_mint": 0},
}


def make_config(**overrides: Any) -> BotConfig:
    """Build a validated BotConfig from test defaults plus section overrides."""
    raw = copy.deepcopy(_BASE_CONFIG)
    _deep_update(raw, overrides)
    return BotConfig(**raw)


def make_features(mint: str = MINT, **overrides: Any) -> TokenFeatures:
    """Features of a token that clears the default filters and gates."""
    values = dict(
        age_hours=2.0,
        holder_count=400.0,
        top_holder_pct=2.0,
        liquidity_sol=200.0,
        volume24h_sol=500.0,
        has_frozen_authority=False,
        has_revoked_mint_authority=True,
    )
    values.update(overrides)
    return TokenFeatures(mint=mint, **values)


def iso_ago(minutes: float) -> str:
    return (datetime.now(timezone.utc) - timedelta(minutes=minutes)).isoformat()


def make_policy(db: Any, cfg: BotConfig, seed: int = 7) -> AIPolicyController:
    return AIPolicyController(db, cfg.ai, rng=random.Random(seed))


@asynccontextmanager
async def open_db(tmp_path) -> AsyncIterator[DatabaseManager]:
    """Initialized DatabaseManager on a temp file, closed on exit."""
    db = DatabaseManager(str(tmp_path / "test.db"))
    await db.initialize()
    try:
        yield db
    finally:
        await db.close()


def sol_to_token_quote(price_sol: float, decimals: int = 6) -> Callable[[str, str, int], int]:
    """Quote function for a token worth ``price_sol`` SOL in both directions."""

    def _quote(input_mint: str, output_mint: str, amount: int) -> int:
        if input_mint == WSOL_MINT:
            return int(round(amount / 1e9 / price_sol * 10 ** decimals))
        return int(round(amount / 10 ** decimals * price_sol * 1e9))

    return _quote


# ---------------------------------------------------------------------------
# Auto-use fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_config_singleton():
    """Prevent ConfigManager singleton state from leaking between tests."""
    saved_instance = ConfigManager._instance
    saved_config = ConfigManager._config
    yield
    ConfigManager._instance = saved_instance
    ConfigManager._config = saved_config
