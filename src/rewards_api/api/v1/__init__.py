from fastapi import APIRouter

from .endpoints import broadcast, catalog, health, observability, users

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(broadcast.router)
router.include_router(catalog.router)
router.include_router(observability.router)
router.include_router(users.router)
