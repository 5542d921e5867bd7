"""Admin endpoints for segment broadcasts."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from rewards_api.api.dependencies.security import require_admin_api_key
from rewards_api.api.dependencies.services import get_broadcast_coordinator
from rewards_api.core.errors import BroadcastNotFound
from rewards_api.models.broadcast import BroadcastJob, BroadcastSegment, BroadcastStatus
from rewards_api.services.broadcast import BroadcastCoordinator


router = APIRouter(
    prefix="/broadcast",
    tags=["Broadcast"],
    dependencies=[Depends(require_admin_api_key)],
)


class BroadcastRequest(BaseModel):
    segment: BroadcastSegment = Field(..., description="Target audience: all, active or vip")
    message: str = Field(..., min_length=1, max_length=4096, description="Message text (Markdown)")


class BroadcastStartResponse(BaseModel):
    jobId: str
    status: BroadcastStatus
    total: int


class BroadcastJobResponse(BaseModel):
    jobId: str
    segment: BroadcastSegment
    status: BroadcastStatus
    total: int
    sent: int
    delivered: int
    failed: int
    cancelRequested: bool
    createdAt: datetime | None = None
    completedAt: datetime | None = None
    error: str | None = None

    @classmethod
    def from_job(cls, job: BroadcastJob) -> "BroadcastJobResponse":
        return cls(
            jobId=job.id,
            segment=job.segment,
            status=job.status,
            total=job.total,
            sent=job.sent,
            delivered=job.delivered,
            failed=job.failed,
            cancelRequested=job.cancel_requested,
            createdAt=job.created_at,
            completedAt=job.completed_at,
            error=job.error,
        )


@router.post(
    "",
    response_model=BroadcastStartResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a broadcast to a user segment",
)
async def start_broadcast(
    payload: BroadcastRequest,
    coordinator: BroadcastCoordinator = Depends(get_broadcast_coordinator),
) -> BroadcastStartResponse:
    try:
        job = await coordinator.start(payload.segment, payload.message)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return BroadcastStartResponse(jobId=job.id, status=job.status, total=job.total)


@router.get("", response_model=list[BroadcastJobResponse], summary="Recent broadcast jobs")
async def list_broadcasts(
    limit: int = 20,
    coordinator: BroadcastCoordinator = Depends(get_broadcast_coordinator),
) -> list[BroadcastJobResponse]:
    jobs = await coordinator.list_jobs(limit=max(1, min(limit, 100)))
    return [BroadcastJobResponse.from_job(job) for job in jobs]


@router.get("/{job_id}", response_model=BroadcastJobResponse, summary="Broadcast progress")
async def get_broadcast(
    job_id: str,
    coordinator: BroadcastCoordinator = Depends(get_broadcast_coordinator),
) -> BroadcastJobResponse:
    job = await coordinator.get(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Broadcast job not found")
    return BroadcastJobResponse.from_job(job)


@router.post("/{job_id}/cancel", response_model=BroadcastJobResponse, summary="Cancel a running broadcast")
async def cancel_broadcast(
    job_id: str,
    coordinator: BroadcastCoordinator = Depends(get_broadcast_coordinator),
) -> BroadcastJobResponse:
    try:
        job = await coordinator.cancel(job_id)
    except BroadcastNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return BroadcastJobResponse.from_job(job)
