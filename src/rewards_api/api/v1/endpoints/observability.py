"""Observability endpoints for the rewards counters."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from rewards_api.api.dependencies.security import require_admin_api_key
from rewards_api.api.dependencies.services import get_observability
from rewards_api.observability.rewards import RewardsObservabilityStore


router = APIRouter(prefix="/observability", tags=["Observability"])


@router.get(
    "/rewards",
    dependencies=[Depends(require_admin_api_key)],
    summary="Ledger, claim, referral, broadcast and support counters",
)
async def get_rewards_snapshot(
    observability: RewardsObservabilityStore = Depends(get_observability),
) -> dict[str, object]:
    return observability.snapshot().as_dict()
