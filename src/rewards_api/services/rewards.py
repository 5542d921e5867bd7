"""Daily login bonus with streak tracking."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from loguru import logger

from rewards_api.core.errors import DailyRewardCooldown, FeatureDisabled
from rewards_api.core.settings import Settings, settings as default_settings
from rewards_api.models.common import from_iso, to_iso, utcnow
from rewards_api.models.user import VipTier
from rewards_api.services.ledger import LedgerReason, LedgerService
from rewards_api.services.runtime_settings import RuntimeSettingsService, apply_multiplier

COOLDOWN = timedelta(hours=24)
STREAK_WINDOW = timedelta(hours=48)
STREAK_STEP_DAYS = 7


@dataclass
class DailyRewardResult:
    user_id: str
    reward: int
    streak: int
    balance: int


def compute_daily_reward(streak: int, *, base: int, max_bonus: int, multiplier: float = 1.0) -> int:
    bonus = min(streak // STREAK_STEP_DAYS, max_bonus)
    return apply_multiplier(base + bonus, multiplier)


class DailyRewardService:
    """Grants the daily bonus through a single ledger CAS on the user record.

    The cooldown check, streak update and credit all run against the same freshly
    read record, so two concurrent claims cannot both pay out.
    """

    def __init__(
        self,
        ledger: LedgerService,
        runtime_settings: RuntimeSettingsService,
        *,
        config: Settings | None = None,
    ) -> None:
        self._ledger = ledger
        self._runtime = runtime_settings
        self._config = config or default_settings

    async def claim(self, user_id: str, *, now: datetime | None = None) -> DailyRewardResult:
        toggles = await self._runtime.load()
        if not toggles.daily_reward_enabled:
            raise FeatureDisabled("Daily rewards")

        moment = now or utcnow()
        streaks: dict[str, int] = {}

        def compute(current: dict[str, Any]) -> int:
            last = from_iso(current.get("last_daily_reward"))
            if last is not None and moment - last < COOLDOWN:
                remaining = COOLDOWN - (moment - last)
                raise DailyRewardCooldown(math.ceil(remaining.total_seconds() / 3600))

            previous = int(current.get("daily_streak") or 0)
            streak = previous + 1 if last is not None and moment - last < STREAK_WINDOW else 1
            tier = current.get("vip_tier")
            current["last_daily_reward"] = to_iso(moment)
            current["daily_streak"] = streak
            streaks["streak"] = streak
            return compute_daily_reward(
                streak,
                base=self._config.daily_reward_base_points,
                max_bonus=self._config.daily_reward_max_streak_bonus,
                multiplier=self._runtime.vip_multiplier(VipTier(tier) if tier else None),
            )

        entry = await self._ledger.credit_computed(
            user_id,
            LedgerReason.DAILY_REWARD,
            compute,
            metadata={"claimed_at": to_iso(moment)},
        )
        logger.info("Daily reward granted", user_id=user_id, reward=entry.delta, streak=streaks["streak"])
        return DailyRewardResult(
            user_id=user_id,
            reward=entry.delta,
            streak=streaks["streak"],
            balance=entry.balance_after,
        )
