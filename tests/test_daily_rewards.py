import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from rewards_api.core.errors import DailyRewardCooldown, FeatureDisabled
from rewards_api.models.common import to_iso
from rewards_api.services.rewards import compute_daily_reward


NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_streak_bonus_grows_weekly_and_is_capped() -> None:
    assert compute_daily_reward(1, base=2, max_bonus=3) == 2
    assert compute_daily_reward(7, base=2, max_bonus=3) == 3
    assert compute_daily_reward(100, base=2, max_bonus=3) == 5
    assert compute_daily_reward(1, base=2, max_bonus=3, multiplier=1.5) == 3


@pytest.mark.asyncio
async def test_first_claim_starts_streak(services, make_user) -> None:
    await make_user("1", balance=0)

    result = await services.daily_rewards.claim("1", now=NOW)

    assert result.reward == 2
    assert result.streak == 1
    assert result.balance == 2
    user = await services.users.require("1")
    assert user.last_daily_reward == NOW
    assert user.daily_streak == 1


@pytest.mark.asyncio
async def test_claim_within_cooldown_reports_hours_remaining(services, make_user) -> None:
    await make_user("1", balance=0, last_daily_reward=to_iso(NOW - timedelta(hours=20, minutes=30)), daily_streak=3)

    with pytest.raises(DailyRewardCooldown) as exc_info:
        await services.daily_rewards.claim("1", now=NOW)

    assert exc_info.value.hours_remaining == 4
    assert await services.ledger.balance("1") == 0


@pytest.mark.asyncio
async def test_streak_continues_inside_window_and_resets_after(services, make_user) -> None:
    await make_user("1", balance=0, last_daily_reward=to_iso(NOW - timedelta(hours=30)), daily_streak=6)
    await make_user("2", balance=0, last_daily_reward=to_iso(NOW - timedelta(hours=60)), daily_streak=6)

    continued = await services.daily_rewards.claim("1", now=NOW)
    reset = await services.daily_rewards.claim("2", now=NOW)

    assert continued.streak == 7
    assert continued.reward == 3
    assert reset.streak == 1
    assert reset.reward == 2


@pytest.mark.asyncio
async def test_concurrent_claims_pay_out_once(services, make_user) -> None:
    await make_user("1", balance=0)

    async def attempt() -> bool:
        try:
            await services.daily_rewards.claim("1", now=NOW)
        except DailyRewardCooldown:
            return False
        return True

    results = await asyncio.gather(*(attempt() for _ in range(5)))

    assert results.count(True) == 1
    assert await services.ledger.balance("1") == 2


@pytest.mark.asyncio
async def test_disabled_toggle_blocks_claims(services, make_user) -> None:
    await make_user("1", balance=0)
    await services.runtime_settings.update(daily_reward_enabled=False)

    with pytest.raises(FeatureDisabled):
        await services.daily_rewards.claim("1", now=NOW)
