"""User registration and admin-side soft flags."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from loguru import logger

from rewards_api.core.errors import UserNotFound
from rewards_api.models.common import to_iso, utcnow
from rewards_api.models.user import User, VipTier
from rewards_api.store import KeyValueStore, cas_update
from rewards_api.store import paths

REFERRAL_PAYLOAD_PREFIX = "ref_"


def parse_referral_payload(payload: str | None, user_id: str) -> str | None:
    """Extract the referrer id from a ``/start ref_<id>`` payload, ignoring self-referrals."""

    if not payload:
        return None
    payload = payload.strip()
    if not payload.startswith(REFERRAL_PAYLOAD_PREFIX):
        return None
    referrer_id = payload[len(REFERRAL_PAYLOAD_PREFIX):].strip()
    if not referrer_id or referrer_id == str(user_id):
        return None
    return referrer_id


@dataclass
class Registration:
    user: User
    created: bool


class UserDirectory:
    """Creates users on first contact and maintains their soft flags.

    Balance fields are deliberately absent from every mutation here; the ledger
    owns them.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    async def get(self, user_id: str) -> User | None:
        record = await self._store.get(paths.user(user_id))
        return User.from_record(user_id, record) if record is not None else None

    async def require(self, user_id: str) -> User:
        user = await self.get(user_id)
        if user is None:
            raise UserNotFound(user_id)
        return user

    async def ensure_user(
        self,
        user_id: str,
        *,
        name: str = "",
        username: str | None = None,
        start_payload: str | None = None,
    ) -> Registration:
        """Register on first contact; the referrer is only recorded for brand-new users."""

        referred_by = parse_referral_payload(start_payload, user_id)
        if referred_by is not None and await self._store.get(paths.user(referred_by)) is None:
            logger.info("Ignoring referral from unknown user", user_id=user_id, referrer_id=referred_by)
            referred_by = None

        now = utcnow()
        fresh = User(
            id=user_id,
            name=name,
            username=username,
            referred_by=referred_by,
            joined_at=now,
            last_active=now,
        )

        def create_or_touch(current: dict[str, Any] | None) -> dict[str, Any]:
            if current is None:
                return fresh.to_record()
            current["last_active"] = to_iso(now)
            if name:
                current["name"] = name
            if username:
                current["username"] = username
            return current

        result = await cas_update(self._store, paths.user(user_id), create_or_touch)
        created = result.previous is None
        if created:
            logger.info("Registered user", user_id=user_id, referred_by=referred_by)
        return Registration(user=User.from_record(user_id, result.current or {}), created=created)

    async def touch(self, user_id: str) -> None:
        await self._update_flags(user_id, last_active=to_iso(utcnow()))

    async def set_banned(self, user_id: str, banned: bool, *, create_missing: bool = False) -> User:
        """Set the ban flag; with ``create_missing`` an unknown id gets a banned placeholder record."""

        if banned and create_missing:
            placeholder = User(id=user_id, name="User", banned=True, joined_at=utcnow()).to_record()

            def ban(current: dict[str, Any] | None) -> dict[str, Any]:
                if current is None:
                    return placeholder
                current["banned"] = True
                return current

            result = await cas_update(self._store, paths.user(user_id), ban)
            if result.previous is None:
                logger.info("Pre-emptively banned unknown user", user_id=user_id)
            else:
                logger.info("Updated user ban flag", user_id=user_id, banned=True)
            return User.from_record(user_id, result.current or {})

        user = await self._update_flags(user_id, banned=banned)
        logger.info("Updated user ban flag", user_id=user_id, banned=banned)
        return user

    async def set_vip_tier(self, user_id: str, tier: VipTier | None) -> User:
        user = await self._update_flags(user_id, vip_tier=tier.value if tier else None)
        logger.info("Updated user VIP tier", user_id=user_id, vip_tier=tier.value if tier else None)
        return user

    async def mark_blocked(self, user_id: str) -> User | None:
        """Flag a user whose chat rejected delivery; unknown ids are ignored."""

        def flag(current: dict[str, Any] | None) -> dict[str, Any] | None:
            if current is None or current.get("blocked"):
                return current
            current["blocked"] = True
            current["blocked_at"] = to_iso(utcnow())
            return current

        result = await cas_update(self._store, paths.user(user_id), flag)
        if result.current is None:
            return None
        if result.changed:
            logger.info("Marked user as blocked", user_id=user_id)
        return User.from_record(user_id, result.current)

    async def list_users(self) -> list[User]:
        children = await self._store.list_children(paths.USERS)
        return [User.from_record(user_id, record) for user_id, record in children.items()]

    async def _update_flags(self, user_id: str, **fields: Any) -> User:
        def apply(current: dict[str, Any] | None) -> dict[str, Any]:
            if current is None:
                raise UserNotFound(user_id)
            current.update(fields)
            return current

        result = await cas_update(self._store, paths.user(user_id), apply)
        return User.from_record(user_id, result.current or {})
