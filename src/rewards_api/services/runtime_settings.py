"""Admin-editable toggles persisted in the store."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from loguru import logger

from rewards_api.core.settings import Settings, settings as default_settings
from rewards_api.models.user import VipTier
from rewards_api.store import KeyValueStore, cas_update
from rewards_api.store import paths


@dataclass
class RuntimeToggles:
    claiming_enabled: bool = True
    daily_reward_enabled: bool = True
    maintenance_mode: bool = False
    referral_reward_points: int | None = None

    @classmethod
    def from_record(cls, record: dict[str, Any] | None) -> "RuntimeToggles":
        record = record or {}
        reward = record.get("referral_reward_points")
        return cls(
            claiming_enabled=bool(record.get("claiming_enabled", True)),
            daily_reward_enabled=bool(record.get("daily_reward_enabled", True)),
            maintenance_mode=bool(record.get("maintenance_mode", False)),
            referral_reward_points=int(reward) if reward is not None else None,
        )


class RuntimeSettingsService:
    """Reads toggles fresh on every call; nothing here is cached in-process."""

    def __init__(self, store: KeyValueStore, *, config: Settings | None = None) -> None:
        self._store = store
        self._config = config or default_settings

    async def load(self) -> RuntimeToggles:
        return RuntimeToggles.from_record(await self._store.get(paths.RUNTIME_SETTINGS))

    async def update(self, **changes: Any) -> RuntimeToggles:
        allowed = set(RuntimeToggles.__dataclass_fields__)
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Unknown runtime settings: {', '.join(sorted(unknown))}")

        def apply(current: dict[str, Any] | None) -> dict[str, Any]:
            merged = asdict(RuntimeToggles.from_record(current))
            merged.update(changes)
            return merged

        result = await cas_update(self._store, paths.RUNTIME_SETTINGS, apply)
        logger.info("Updated runtime settings", changes={key: str(value) for key, value in changes.items()})
        return RuntimeToggles.from_record(result.current)

    async def referral_reward(self) -> int:
        toggles = await self.load()
        if toggles.referral_reward_points is not None:
            return toggles.referral_reward_points
        return self._config.referral_reward_points

    def vip_multiplier(self, tier: VipTier | None) -> float:
        if tier is None:
            return 1.0
        return {
            VipTier.SILVER: self._config.vip_multiplier_silver,
            VipTier.GOLD: self._config.vip_multiplier_gold,
            VipTier.PLATINUM: self._config.vip_multiplier_platinum,
        }[tier]


def apply_multiplier(points: int, multiplier: float) -> int:
    """Scale a reward, flooring but never dropping below one point."""

    if multiplier <= 1.0:
        return points
    return max(int(points * multiplier), 1)
