"""Admin endpoints for user lookup, point adjustments, bans and VIP tiers."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from rewards_api.api.dependencies.security import require_admin_api_key
from rewards_api.api.dependencies.services import get_ledger, get_user_directory
from rewards_api.core.errors import Contention, InsufficientBalance, UserNotFound
from rewards_api.models.user import User, VipTier
from rewards_api.services.ledger import LedgerEntry, LedgerReason, LedgerService
from rewards_api.services.users import UserDirectory


router = APIRouter(
    prefix="/users",
    tags=["Users"],
    dependencies=[Depends(require_admin_api_key)],
)


class UserResponse(BaseModel):
    id: str
    name: str
    username: str | None = None
    balance: int
    totalEarned: int
    totalSpent: int
    totalReferrals: int
    banned: bool
    blocked: bool
    vipTier: VipTier | None = None
    joinedAt: datetime | None = None
    lastActive: datetime | None = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            name=user.name,
            username=user.username,
            balance=user.balance,
            totalEarned=user.total_earned,
            totalSpent=user.total_spent,
            totalReferrals=user.total_referrals,
            banned=user.banned,
            blocked=user.blocked,
            vipTier=user.vip_tier,
            joinedAt=user.joined_at,
            lastActive=user.last_active,
        )


class PointsAdjustmentRequest(BaseModel):
    delta: int = Field(..., description="Positive to add points, negative to deduct")
    note: str | None = Field(default=None, max_length=280)


class LedgerEntryResponse(BaseModel):
    id: str
    delta: int
    reason: LedgerReason
    balanceAfter: int
    createdAt: datetime
    metadata: dict[str, Any]

    @classmethod
    def from_entry(cls, entry: LedgerEntry) -> "LedgerEntryResponse":
        return cls(
            id=entry.id,
            delta=entry.delta,
            reason=entry.reason,
            balanceAfter=entry.balance_after,
            createdAt=entry.created_at,
            metadata=entry.metadata,
        )


class BanRequest(BaseModel):
    banned: bool


class VipRequest(BaseModel):
    tier: VipTier | None = Field(default=None, description="silver, gold, platinum or null to remove")


def _not_found(exc: UserNotFound) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


@router.get("/{user_id}", response_model=UserResponse)
async def get_user(
    user_id: str,
    users: UserDirectory = Depends(get_user_directory),
) -> UserResponse:
    try:
        return UserResponse.from_user(await users.require(user_id))
    except UserNotFound as exc:
        raise _not_found(exc) from exc


@router.post("/{user_id}/points", response_model=LedgerEntryResponse)
async def adjust_points(
    user_id: str,
    payload: PointsAdjustmentRequest,
    ledger: LedgerService = Depends(get_ledger),
) -> LedgerEntryResponse:
    """Credit or debit a user's balance; deductions never take it below zero."""

    if payload.delta == 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="delta must not be zero")
    metadata = {"note": payload.note} if payload.note else None
    try:
        if payload.delta > 0:
            entry = await ledger.credit(user_id, payload.delta, LedgerReason.ADMIN_ADJUSTMENT, metadata=metadata)
        else:
            entry = await ledger.debit(user_id, -payload.delta, LedgerReason.ADMIN_ADJUSTMENT, metadata=metadata)
    except UserNotFound as exc:
        raise _not_found(exc) from exc
    except InsufficientBalance as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except Contention as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return LedgerEntryResponse.from_entry(entry)


@router.get("/{user_id}/ledger", response_model=list[LedgerEntryResponse])
async def list_ledger_entries(
    user_id: str,
    limit: int = Query(default=25, ge=1, le=200),
    ledger: LedgerService = Depends(get_ledger),
) -> list[LedgerEntryResponse]:
    return [LedgerEntryResponse.from_entry(entry) for entry in await ledger.list_entries(user_id, limit=limit)]


@router.put("/{user_id}/ban", response_model=UserResponse)
async def set_ban(
    user_id: str,
    payload: BanRequest,
    users: UserDirectory = Depends(get_user_directory),
) -> UserResponse:
    """Ban or unban; banning an unknown id records a pre-emptive ban."""

    try:
        user = await users.set_banned(user_id, payload.banned, create_missing=True)
    except UserNotFound as exc:
        raise _not_found(exc) from exc
    return UserResponse.from_user(user)


@router.put("/{user_id}/vip", response_model=UserResponse)
async def set_vip(
    user_id: str,
    payload: VipRequest,
    users: UserDirectory = Depends(get_user_directory),
) -> UserResponse:
    try:
        user = await users.set_vip_tier(user_id, payload.tier)
    except UserNotFound as exc:
        raise _not_found(exc) from exc
    return UserResponse.from_user(user)
