from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from rewards_api.models.common import from_iso, to_iso


class VipTier(str, Enum):
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"


@dataclass
class User:
    """Bot user as persisted under ``users/{id}``."""

    id: str
    name: str = ""
    username: str | None = None
    balance: int = 0
    total_earned: int = 0
    total_spent: int = 0
    total_referrals: int = 0
    referred_by: str | None = None
    referral_claimed: bool = False
    banned: bool = False
    blocked: bool = False
    blocked_at: datetime | None = None
    vip_tier: VipTier | None = None
    joined_at: datetime | None = None
    last_active: datetime | None = None
    last_daily_reward: datetime | None = None
    daily_streak: int = 0

    @property
    def is_vip(self) -> bool:
        return self.vip_tier is not None

    @classmethod
    def from_record(cls, user_id: str, record: dict[str, Any]) -> "User":
        tier = record.get("vip_tier")
        return cls(
            id=user_id,
            name=record.get("name") or "",
            username=record.get("username"),
            balance=int(record.get("balance") or 0),
            total_earned=int(record.get("total_earned") or 0),
            total_spent=int(record.get("total_spent") or 0),
            total_referrals=int(record.get("total_referrals") or 0),
            referred_by=record.get("referred_by"),
            referral_claimed=bool(record.get("referral_claimed", False)),
            banned=bool(record.get("banned", False)),
            blocked=bool(record.get("blocked", False)),
            blocked_at=from_iso(record.get("blocked_at")),
            vip_tier=VipTier(tier) if tier else None,
            joined_at=from_iso(record.get("joined_at")),
            last_active=from_iso(record.get("last_active")),
            last_daily_reward=from_iso(record.get("last_daily_reward")),
            daily_streak=int(record.get("daily_streak") or 0),
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "username": self.username,
            "balance": self.balance,
            "total_earned": self.total_earned,
            "total_spent": self.total_spent,
            "total_referrals": self.total_referrals,
            "referred_by": self.referred_by,
            "referral_claimed": self.referral_claimed,
            "banned": self.banned,
            "blocked": self.blocked,
            "blocked_at": to_iso(self.blocked_at),
            "vip_tier": self.vip_tier.value if self.vip_tier else None,
            "joined_at": to_iso(self.joined_at),
            "last_active": to_iso(self.last_active),
            "last_daily_reward": to_iso(self.last_daily_reward),
            "daily_streak": self.daily_streak,
        }


@dataclass
class StaffMember:
    id: str
    name: str
    active: bool = True
    active_session_user_id: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_record(cls, staff_id: str, record: dict[str, Any]) -> "StaffMember":
        return cls(
            id=staff_id,
            name=record.get("name") or "Support",
            active=bool(record.get("active", True)),
            active_session_user_id=record.get("active_session_user_id"),
            created_at=from_iso(record.get("created_at")),
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "active": self.active,
            "active_session_user_id": self.active_session_user_id,
            "created_at": to_iso(self.created_at),
        }
