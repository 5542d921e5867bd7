"""At-most-once referral crediting."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, Sequence

from loguru import logger

from rewards_api.core.errors import TransportError, UserNotFound
from rewards_api.models.user import User, VipTier
from rewards_api.observability.rewards import RewardsObservabilityStore, get_rewards_store
from rewards_api.services.ledger import LedgerReason, LedgerService
from rewards_api.services.runtime_settings import RuntimeSettingsService, apply_multiplier
from rewards_api.services.transport import ChatTransport
from rewards_api.store import KeyValueStore, cas_update
from rewards_api.store import paths


class MembershipChecker(Protocol):
    async def is_member(self, user_id: str) -> bool:
        ...


class ChannelMembershipChecker:
    """Join condition: the user must be a member of every required channel."""

    def __init__(self, transport: ChatTransport, channels: Sequence[str]) -> None:
        self._transport = transport
        self._channels = list(channels)

    async def is_member(self, user_id: str) -> bool:
        for channel in self._channels:
            if not await self._transport.get_chat_membership(channel, user_id):
                return False
        return True


class ReferralSkipReason(str, Enum):
    NOT_REFERRED = "not_referred"
    ALREADY_CLAIMED = "already_claimed"
    SELF_REFERRAL = "self_referral"
    REFERRER_MISSING = "referrer_missing"
    JOIN_CONDITION_UNMET = "join_condition_unmet"
    LOST_RACE = "lost_race"


@dataclass
class ReferralOutcome:
    credited: bool
    referrer_id: str | None = None
    reward: int = 0
    skipped: ReferralSkipReason | None = None


class _AlreadyClaimed(Exception):
    pass


class ReferralService:
    """Credits a referrer exactly once per referred user.

    The one-shot ``referral_claimed`` flag on the referred user is flipped by CAS
    *before* the referrer is credited; only the caller that wins the flip proceeds,
    so duplicate ``/start`` and "verify membership" events cannot double-credit.
    """

    def __init__(
        self,
        store: KeyValueStore,
        ledger: LedgerService,
        runtime_settings: RuntimeSettingsService,
        membership: MembershipChecker,
        *,
        transport: ChatTransport | None = None,
        observability: RewardsObservabilityStore | None = None,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._runtime = runtime_settings
        self._membership = membership
        self._transport = transport
        self._observability = observability or get_rewards_store()

    async def credit_referral_if_eligible(self, new_user_id: str) -> ReferralOutcome:
        record = await self._store.get(paths.user(new_user_id))
        if record is None:
            raise UserNotFound(new_user_id)
        user = User.from_record(new_user_id, record)

        if not user.referred_by:
            return self._skip(new_user_id, ReferralSkipReason.NOT_REFERRED)
        if user.referral_claimed:
            return self._skip(new_user_id, ReferralSkipReason.ALREADY_CLAIMED, user.referred_by)
        if user.referred_by == new_user_id:
            return self._skip(new_user_id, ReferralSkipReason.SELF_REFERRAL, user.referred_by)
        referrer_id = user.referred_by
        if await self._store.get(paths.user(referrer_id)) is None:
            return self._skip(new_user_id, ReferralSkipReason.REFERRER_MISSING, referrer_id)
        if not await self._membership.is_member(new_user_id):
            return self._skip(new_user_id, ReferralSkipReason.JOIN_CONDITION_UNMET, referrer_id)

        if not await self._claim_flag(new_user_id, referrer_id):
            return self._skip(new_user_id, ReferralSkipReason.LOST_RACE, referrer_id)

        base_reward = await self._runtime.referral_reward()

        def compute(current: dict[str, Any]) -> int:
            tier = current.get("vip_tier")
            current["total_referrals"] = int(current.get("total_referrals") or 0) + 1
            return apply_multiplier(base_reward, self._runtime.vip_multiplier(VipTier(tier) if tier else None))

        entry = await self._ledger.credit_computed(
            referrer_id,
            LedgerReason.REFERRAL,
            compute,
            metadata={"referred_user_id": new_user_id},
        )
        reward = entry.delta
        self._observability.record_referral_event("credited")
        logger.info("Referral credited", referrer_id=referrer_id, referred_user_id=new_user_id, reward=reward)

        await self._notify_referrer(referrer_id, user, reward)
        return ReferralOutcome(credited=True, referrer_id=referrer_id, reward=reward)

    async def _claim_flag(self, user_id: str, referrer_id: str) -> bool:
        def flip(current: dict[str, Any] | None) -> dict[str, Any]:
            if current is None:
                raise UserNotFound(user_id)
            if current.get("referral_claimed") or current.get("referred_by") != referrer_id:
                raise _AlreadyClaimed()
            current["referral_claimed"] = True
            return current

        try:
            await cas_update(self._store, paths.user(user_id), flip)
        except _AlreadyClaimed:
            return False
        return True

    async def _notify_referrer(self, referrer_id: str, referred: User, reward: int) -> None:
        if self._transport is None:
            return
        noun = "point" if reward == 1 else "points"
        text = (
            "🎉 *Referral Successful!*\n\n"
            f"User {referred.name or 'someone'} joined the channels using your referral link.\n"
            f"💰 {reward} {noun} added to your balance."
        )
        try:
            await self._transport.send_message(referrer_id, text)
        except TransportError as exc:
            logger.warning("Could not notify referrer", referrer_id=referrer_id, error=str(exc))

    def _skip(self, user_id: str, reason: ReferralSkipReason, referrer_id: str | None = None) -> ReferralOutcome:
        self._observability.record_referral_event(f"skipped:{reason.value}")
        logger.debug("Referral not credited", user_id=user_id, referrer_id=referrer_id, reason=reason.value)
        return ReferralOutcome(credited=False, referrer_id=referrer_id, skipped=reason)
