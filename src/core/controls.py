"""
Operator controls.

Pause flags, the kill switch and the active profile live in the settings
table so an operator can flip them while the engine runs. Config values are
the defaults until a setting has been written.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from src.core.config import BotConfig
from src.core.errors import ConfigError
from src.core.logger import get_logger

logger = get_logger("controls")

FLAG_KEYS = {
    "pause_discovery": "controls.pauseDiscovery",
    "pause_entries": "controls.pauseEntries",
    "pause_exits": "controls.pauseExits",
    "kill_switch": "controls.killSwitch",
}
ACTIVE_PROFILE_KEY = "controls.activeProfile"


@dataclass
class ControlState:
    pause_discovery: bool
    pause_entries: bool
    pause_exits: bool
    kill_switch: bool
    active_profile: str

    def to_dict(self) -> dict:
        return {
            "pause_discovery": self.pause_discovery,
            "pause_entries": self.pause_entries,
            "pause_exits": self.pause_exits,
            "kill_switch": self.kill_switch,
            "active_profile": self.active_profile,
        }


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().lower() in ("1", "true", "yes", "on")


class Controls:

    def __init__(self, db: Any, cfg: BotConfig):
        self.db = db
        self.cfg = cfg

    async def load(self) -> ControlState:
        defaults = self.cfg.controls
        values = {}
        for name, key in FLAG_KEYS.items():
            values[name] = _as_bool(await self.db.get_state(key), getattr(defaults, name))
        active = await self.db.get_state(ACTIVE_PROFILE_KEY)
        if not isinstance(active, str) or not active:
            active = self.cfg.active_profile
        return ControlState(active_profile=active, **values)

    async def set_flag(self, name: str, value: bool) -> None:
        key = FLAG_KEYS.get(name)
        if key is None:
            raise ConfigError(f"Unknown control flag: {name}")
        await self.db.set_state(key, bool(value))
        logger.info("Control flag updated", flag=name, value=bool(value))
        await self.db.log_thought(
            "control", f"{name} set to {bool(value)}", severity="warning" if value else "info"
        )

    async def set_active_profile(self, name: str) -> None:
        if name not in self.cfg.profiles:
            raise ConfigError(f"Unknown profile: {name}")
        await self.db.set_state(ACTIVE_PROFILE_KEY, name)
        logger.info("Active profile updated", profile=name)
        await self.db.log_thought("control", f"Active profile set to {name}")
