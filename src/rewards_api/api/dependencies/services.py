"""Resolve services wired by the application lifespan."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from rewards_api.observability.rewards import RewardsObservabilityStore
from rewards_api.services import ServiceContainer
from rewards_api.services.broadcast import BroadcastCoordinator
from rewards_api.services.inventory import CatalogService
from rewards_api.services.ledger import LedgerService
from rewards_api.services.runtime_settings import RuntimeSettingsService
from rewards_api.services.users import UserDirectory


def get_container(request: Request) -> ServiceContainer:
    container = getattr(request.app.state, "services", None)
    if container is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Services are still starting",
        )
    return container


def get_broadcast_coordinator(request: Request) -> BroadcastCoordinator:
    return get_container(request).broadcasts


def get_catalog_service(request: Request) -> CatalogService:
    return get_container(request).catalog


def get_runtime_settings(request: Request) -> RuntimeSettingsService:
    return get_container(request).runtime_settings


def get_observability(request: Request) -> RewardsObservabilityStore:
    return get_container(request).observability


def get_user_directory(request: Request) -> UserDirectory:
    return get_container(request).users


def get_ledger(request: Request) -> LedgerService:
    return get_container(request).ledger
