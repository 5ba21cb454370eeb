"""
Configuration Manager - Loads and validates all system configuration.

Merges YAML config with environment variables. Environment variables take
precedence over YAML values for deployment flexibility.
"""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator


WSOL_MINT = "So11111111111111111111111111111111111111112"


def _truthy(v: str) -> bool:
    return v.lower() in ("1", "true", "yes", "on")


def _csv(v: str) -> List[str]:
    return [s.strip() for s in v.split(",") if s.strip()]


# ---------------------------------------------------------------------------
# Environment overrides (shared)
# ---------------------------------------------------------------------------

def _apply_env_overrides(config: Dict[str, Any]) -> None:
    """Override YAML values with environment variables where set."""
    env_mappings = {
        "TRADING_MODE": ("app", "mode"),
        "LOG_LEVEL": ("app", "log_level"),
        "LOG_JSON": ("app", "log_json", _truthy),
        "DB_PATH": ("app", "db_path"),
        "HEARTBEAT_SECONDS": ("app", "heartbeat_seconds", float),
        "CANDIDATE_SCAN_LIMIT": ("app", "candidate_scan_limit", int),
        "PAPER_INITIAL_SOL": ("paper", "initial_sol", float),
        "PAPER_FEE_RESERVE_SOL": ("paper", "fee_reserve_sol", float),
        "SIGNER_URL": ("signer", "url"),
        "SIGNER_API_KEY": ("signer", "api_key"),
        "SIGNER_TIMEOUT_SECONDS": ("signer", "timeout_seconds", float),
        "SIGNER_RETRY_ATTEMPTS": ("signer", "retry_attempts", int),
        "SOLANA_RPC_HTTP": ("rpc", "endpoints", _csv),
        "RPC_TIMEOUT_SECONDS": ("rpc", "timeout_seconds", float),
        "RPC_MAX_RETRIES": ("rpc", "max_retries", int),
        "JUPITER_BASE_URL": ("market", "quote_base_url"),
        "JUPITER_PRICE_URL": ("market", "price_url"),
        "MINT_BLOCKLIST": ("governance", "mint_blocklist", _csv),
        "MINT_ALLOWLIST": ("governance", "mint_allowlist", _csv),
        "KILL_SWITCH": ("controls", "kill_switch", _truthy),
        "PAUSE_ENTRIES": ("controls", "pause_entries", _truthy),
        "PAUSE_EXITS": ("controls", "pause_exits", _truthy),
        "ACTIVE_PROFILE": (None, "active_profile"),
        "MAX_DAILY_LOSS_SOL": ("risk", "max_daily_loss_sol", float),
        "MAX_CONCURRENT_POSITIONS": ("risk", "max_concurrent_positions", int),
        "AI_ENABLED": ("ai", "enabled", _truthy),
        "AI_EPSILON": ("ai", "epsilon", float),
        "AI_MIN_SAMPLES_BEFORE_LIVE": ("ai", "min_samples_before_live", int),
        "AI_DAILY_LOSS_LIMIT_SOL": ("ai", "ai_daily_loss_limit_sol", float),
        "AI_BOOTSTRAP_ON_STARTUP": ("ai", "bootstrap_on_startup", _truthy),
    }

    for env_key, mapping in env_mappings.items():
        value = os.getenv(env_key)
        if value is None:
            continue
        section = mapping[0]
        key = mapping[1]
        converter = mapping[2] if len(mapping) > 2 else str
        try:
            converted = converter(value)
        except (ValueError, TypeError) as e:
            import logging
            logging.getLogger("config").warning(
                "Env %s=%r failed to convert: %s. Using YAML value.",
                env_key, value, e,
            )
            continue
        if section is None:
            config[key] = converted
            continue
        if not isinstance(config.get(section), dict):
            config[section] = {}
        config[section][key] = converted


# ---------------------------------------------------------------------------
# Pydantic Configuration Models (strict validation)
# ---------------------------------------------------------------------------

class AppConfig(BaseModel):
    name: str = "Solana Degen Trading Node"
    version: str = "1.0.0"
    mode: str = "paper"
    log_level: str = "INFO"
    log_json: bool = False
    db_path: str = "data/trading.db"
    heartbeat_seconds: float = 5.0
    candidate_scan_limit: int = 250
    wsol_mint: str = WSOL_MINT

    @field_validator("mode")
    @classmethod
    def validate_mode(cls, v):
        v = str(v).strip().lower()
        if v not in ("live", "paper", "shadow"):
            raise ValueError("mode must be one of live, paper, shadow")
        return v

    @field_validator("heartbeat_seconds")
    @classmethod
    def validate_heartbeat(cls, v):
        if v < 0.1 or v > 3600:
            raise ValueError("heartbeat_seconds must be between 0.1 and 3600")
        return v


class PaperConfig(BaseModel):
    initial_sol: float = 10.0
    fee_reserve_sol: float = 0.05

    @field_validator("initial_sol", "fee_reserve_sol")
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("paper balances must be >= 0")
        return v


class SignerConfig(BaseModel):
    url: str = "http://localhost:3001"
    api_key: str = ""
    timeout_seconds: float = 5.0
    retry_attempts: int = 3


class RpcConfig(BaseModel):
    # Ordered by priority; the first endpoint is preferred.
    endpoints: List[str] = Field(default_factory=lambda: ["https://api.mainnet-beta.solana.com"])
    timeout_seconds: float = 10.0
    max_retries: int = 2

    @field_validator("endpoints")
    @classmethod
    def validate_endpoints(cls, v):
        if not v:
            raise ValueError("rpc.endpoints must not be empty")
        return v


class MarketConfig(BaseModel):
    quote_base_url: str = "https://quote-api.jup.ag"
    price_url: str = "https://price.jup.ag/v6/price"
    price_timeout_seconds: float = 8.0


class GovernanceConfig(BaseModel):
    mint_blocklist: List[str] = Field(default_factory=list)
    mint_allowlist: List[str] = Field(default_factory=list)
    max_attempts_per_mint_per_day: int = 3
    cooldown_minutes_per_mint: int = 30

    @field_validator("max_attempts_per_mint_per_day")
    @classmethod
    def validate_attempts(cls, v):
        if v < 0 or v > 1000:
            raise ValueError("max_attempts_per_mint_per_day must be between 0 and 1000")
        return v


class MevConfig(BaseModel):
    max_quote_drift_bps: int = 0  # 0 disables the re-quote drift check
    max_price_impact_pct: float = 5.0
    max_route_steps: int = 3
    require_fresh_quote_ms: int = 10_000  # 0 disables the staleness check

    @field_validator("max_quote_drift_bps")
    @classmethod
    def validate_drift(cls, v):
        if v < 0 or v > 10_000:
            raise ValueError("max_quote_drift_bps must be between 0 and 10000")
        return v

    @field_validator("max_route_steps")
    @classmethod
    def validate_route_steps(cls, v):
        if v < 1 or v > 50:
            raise ValueError("max_route_steps must be between 1 and 50")
        return v


class ControlsConfig(BaseModel):
    pause_discovery: bool = False
    pause_entries: bool = False
    pause_exits: bool = False
    kill_switch: bool = False


class VenueConfig(BaseModel):
    name: str
    enabled: bool = True
    kind: str = "jupiter"
    allowed_dex_labels: List[str] = Field(default_factory=list)
    only_direct_routes: bool = False
    slippage_bps: int = 100
    max_priority_fee_lamports: int = 100_000
    max_retries: int = 2
    confirmation_timeout_ms: int = 60_000

    @field_validator("confirmation_timeout_ms")
    @classmethod
    def validate_confirmation_timeout(cls, v):
        if v < 1000 or v > 300_000:
            raise ValueError("confirmation_timeout_ms must be between 1000 and 300000")
        return v


class ExecutionConfig(BaseModel):
    venues: List[VenueConfig] = Field(default_factory=lambda: [VenueConfig(name="jupiter")])
    venue_order: List[str] = Field(default_factory=lambda: ["jupiter"])

    @model_validator(mode="after")
    def validate_venues(self):
        if not self.venues:
            raise ValueError("execution.venues must define at least one venue")
        names = {v.name for v in self.venues}
        unknown = [n for n in self.venue_order if n not in names]
        if unknown:
            raise ValueError(f"execution.venue_order names unknown venues: {unknown}")
        return self


class EntryConfig(BaseModel):
    position_size_fixed_sol: float = 0.0
    position_size_wallet_pct: float = 5.0
    position_size_min_sol: float = 0.01
    position_size_max_sol: float = 0.5
    max_open_positions: int = 3

    @field_validator("position_size_wallet_pct")
    @classmethod
    def validate_wallet_pct(cls, v):
        if v < 0 or v > 100:
            raise ValueError("position_size_wallet_pct must be between 0 and 100")
        return v


class TakeProfitLevel(BaseModel):
    profit_pct: float
    sell_pct: float

    @field_validator("sell_pct")
    @classmethod
    def validate_sell_pct(cls, v):
        if v < 0 or v > 100:
            raise ValueError("sell_pct must be between 0 and 100")
        return v


class TrailingStopConfig(BaseModel):
    enabled: bool = True
    activation_profit_pct: float = 30.0
    trailing_pct: float = 15.0


class ExitsConfig(BaseModel):
    stop_loss_pct: float = 20.0
    take_profit_levels: List[TakeProfitLevel] = Field(default_factory=lambda: [
        TakeProfitLevel(profit_pct=50.0, sell_pct=30.0),
        TakeProfitLevel(profit_pct=100.0, sell_pct=30.0),
    ])
    trailing_stop: TrailingStopConfig = Field(default_factory=TrailingStopConfig)
    max_hold_minutes: int = 240

    @field_validator("max_hold_minutes")
    @classmethod
    def validate_max_hold(cls, v):
        if v < 1 or v > 365 * 24 * 60:
            raise ValueError("max_hold_minutes must be between 1 and 525600")
        return v


class ProfileConfig(BaseModel):
    enabled: bool = True
    entry: EntryConfig = Field(default_factory=EntryConfig)
    exits: ExitsConfig = Field(default_factory=ExitsConfig)


class StrategyConfig(BaseModel):
    entry_min_confidence: float = 0.3
    entry_min_pump_prob: float = 0.5
    entry_max_rug_prob: float = 0.5
    # Hard ceiling; the AI cannot override it.
    max_top_holder_pct: float = 50.0


class RiskConfig(BaseModel):
    max_daily_loss_sol: float = 1.0
    max_position_size_sol: float = 1.0
    max_concurrent_positions: int = 5
    enable_circuit_breaker: bool = True
    circuit_breaker_threshold: int = 5

    @field_validator("max_concurrent_positions")
    @classmethod
    def validate_max_positions(cls, v):
        if v < 1 or v > 100:
            raise ValueError("max_concurrent_positions must be between 1 and 100")
        return v

    @field_validator("circuit_breaker_threshold")
    @classmethod
    def validate_threshold(cls, v):
        if v < 1 or v > 1000:
            raise ValueError("circuit_breaker_threshold must be between 1 and 1000")
        return v


class FiltersConfig(BaseModel):
    min_liquidity_sol: float = 0.0
    max_liquidity_sol: float = 1_000_000.0
    min_volume24h_sol: float = 0.0
    max_top_holder_pct: float = 40.0
    # true => freeze authority must be absent
    require_frozen_authority: bool = True
    require_revoked_mint_authority: bool = True
    min_holder_count: int = 25
    max_age_hours: float = 72.0


class RewardConfig(BaseModel):
    hold_penalty_per_minute: float = 0.0
    drawdown_penalty: float = 0.0


class AIConfig(BaseModel):
    enabled: bool = False
    epsilon: float = 0.05
    min_samples_before_live: int = 30
    ai_daily_loss_limit_sol: float = 1.0
    recent_window_days: float = 14.0
    bootstrap_on_startup: bool = True
    # AI-only rug ceiling, applied after the deterministic gates.
    max_rug_prob: float = 0.35
    reward: RewardConfig = Field(default_factory=RewardConfig)

    @field_validator("epsilon")
    @classmethod
    def validate_epsilon(cls, v):
        if v < 0 or v > 1:
            raise ValueError("epsilon must be between 0 and 1")
        return v


class BotConfig(BaseModel):
    """Master configuration model with full validation."""
    app: AppConfig = Field(default_factory=AppConfig)
    paper: PaperConfig = Field(default_factory=PaperConfig)
    signer: SignerConfig = Field(default_factory=SignerConfig)
    rpc: RpcConfig = Field(default_factory=RpcConfig)
    market: MarketConfig = Field(default_factory=MarketConfig)
    governance: GovernanceConfig = Field(default_factory=GovernanceConfig)
    mev: MevConfig = Field(default_factory=MevConfig)
    controls: ControlsConfig = Field(default_factory=ControlsConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    profiles: Dict[str, ProfileConfig] = Field(default_factory=lambda: {"default": ProfileConfig()})
    active_profile: str = "default"
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    filters: FiltersConfig = Field(default_factory=FiltersConfig)
    ai: AIConfig = Field(default_factory=AIConfig)

    @model_validator(mode="after")
    def validate_active_profile(self):
        if self.active_profile not in self.profiles:
            raise ValueError(f"active_profile '{self.active_profile}' is not a configured profile")
        return self

    def enabled_profiles(self) -> List[str]:
        return sorted(name for name, p in self.profiles.items() if p.enabled)


# ---------------------------------------------------------------------------
# Configuration Manager (Singleton)
# ---------------------------------------------------------------------------

class ConfigManager:
    """
    Thread-safe configuration manager.

    Loads configuration from YAML file, then overlays environment
    variables for deployment flexibility. Validates all values through
    Pydantic models.
    """

    _instance: Optional[ConfigManager] = None
    _config: Optional[BotConfig] = None
    _lock: threading.Lock = threading.Lock()

    def __new__(cls) -> ConfigManager:
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._config is None:
            self.load()

    def load(self, config_path: str = "config/config.yaml") -> BotConfig:
        """Load configuration from YAML + environment variables."""
        load_dotenv()

        yaml_config = _read_yaml(config_path)
        _apply_env_overrides(yaml_config)

        self._config = BotConfig(**yaml_config)
        return self._config

    @property
    def config(self) -> BotConfig:
        """Get the current validated configuration."""
        if self._config is None:
            self.load()
        return self._config

    def reload(self, config_path: str = "config/config.yaml") -> BotConfig:
        return self.load(config_path)

    def get(self, dotpath: str, default: Any = None) -> Any:
        """
        Access config values using dot notation.

        Example: config.get("risk.max_daily_loss_sol") -> 1.0
        """
        obj = self._config
        for key in dotpath.split("."):
            if hasattr(obj, key):
                obj = getattr(obj, key)
            elif isinstance(obj, dict) and key in obj:
                obj = obj[key]
            else:
                return default
        return obj

    def to_dict(self) -> Dict[str, Any]:
        """Export full config as dictionary."""
        return self._config.model_dump() if self._config else {}


def _read_yaml(config_path: str) -> Dict[str, Any]:
    config_file = Path(config_path)
    if not config_file.exists():
        return {}
    with open(config_file, "r") as f:
        return yaml.safe_load(f) or {}


# Convenience accessor
def get_config() -> BotConfig:
    """Get the global configuration instance."""
    return ConfigManager().config


def load_config_with_overrides(
    config_path: str = "config/config.yaml",
    overrides: Optional[Dict[str, Any]] = None,
) -> BotConfig:
    """Load a fresh config (YAML + env) with optional deep overrides."""
    load_dotenv()

    yaml_config = _read_yaml(config_path)
    _apply_env_overrides(yaml_config)

    def _deep_update(dst: Dict[str, Any], src: Dict[str, Any]) -> None:
        for key, value in (src or {}).items():
            if isinstance(value, dict) and isinstance(dst.get(key), dict):
                _deep_update(dst[key], value)
            else:
                dst[key] = value

    if overrides:
        _deep_update(yaml_config, overrides)

    return BotConfig(**yaml_config)
