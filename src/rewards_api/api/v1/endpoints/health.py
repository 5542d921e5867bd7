from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from rewards_api.core.errors import StoreUnavailable
from rewards_api.core.settings import settings
from rewards_api.store import paths


router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "starting", "disabled", "error", "degraded"]
    detail: str | None = Field(default=None, description="Human readable status detail")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(request: Request) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded", "error"] = "ready"

    container = getattr(request.app.state, "services", None)
    if container is None:
        components["store"] = ComponentStatus(status="starting", detail="Services not wired yet")
        status = "degraded"
    else:
        try:
            await container.store.get(paths.RUNTIME_SETTINGS)
        except StoreUnavailable as exc:
            components["store"] = ComponentStatus(status="error", detail=str(exc))
            status = "error"
        else:
            components["store"] = ComponentStatus(status="ready", detail=settings.store_backend)

    transport_task = getattr(request.app.state, "transport_started", None)
    if transport_task is None:
        components["chat_transport"] = ComponentStatus(status="disabled", detail="No bot token configured")
    else:
        components["chat_transport"] = ComponentStatus(status="ready" if transport_task else "starting")

    notifier = getattr(request.app.state, "expiry_notifier", None)
    if settings.expiry_notifier_enabled and notifier is not None:
        running = bool(getattr(notifier, "is_running", False))
        detail = None if running else "Expiry notifier not running"
        if not running and status == "ready":
            status = "degraded"
        components["expiry_notifier"] = ComponentStatus(status="ready" if running else "starting", detail=detail)
    else:
        components["expiry_notifier"] = ComponentStatus(
            status="disabled",
            detail="Expiry notifier disabled via settings",
        )

    return ReadinessPayload(status=status, components=components)
