"""Admin endpoints for products, key pools and runtime toggles."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from rewards_api.api.dependencies.security import require_admin_api_key
from rewards_api.api.dependencies.services import get_catalog_service, get_runtime_settings
from rewards_api.core.errors import ProductNotFound
from rewards_api.models.inventory import Product
from rewards_api.services.inventory import CatalogService
from rewards_api.services.runtime_settings import RuntimeSettingsService


router = APIRouter(tags=["Catalog"], dependencies=[Depends(require_admin_api_key)])


class ProductCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    prices: dict[int, int] | None = Field(default=None, description="Duration in days mapped to point cost")
    downloadLink: str | None = None


class ProductPricesRequest(BaseModel):
    prices: dict[int, int]


class ProductActiveRequest(BaseModel):
    active: bool


class KeyUploadRequest(BaseModel):
    durationDays: int = Field(..., gt=0)
    keys: str = Field(..., description="One key per line")


class ProductResponse(BaseModel):
    id: str
    name: str
    prices: dict[int, int]
    active: bool
    downloadLink: str | None = None

    @classmethod
    def from_product(cls, product: Product) -> "ProductResponse":
        return cls(
            id=product.id,
            name=product.name,
            prices=product.prices,
            active=product.active,
            downloadLink=product.download_link,
        )


class RuntimeTogglesPayload(BaseModel):
    claimingEnabled: bool | None = None
    dailyRewardEnabled: bool | None = None
    maintenanceMode: bool | None = None
    referralRewardPoints: int | None = Field(default=None, ge=1)


@router.get("/products", response_model=list[ProductResponse])
async def list_products(catalog: CatalogService = Depends(get_catalog_service)) -> list[ProductResponse]:
    return [ProductResponse.from_product(product) for product in await catalog.list_products()]


@router.post("/products", response_model=ProductResponse, status_code=status.HTTP_201_CREATED)
async def create_product(
    payload: ProductCreateRequest,
    catalog: CatalogService = Depends(get_catalog_service),
) -> ProductResponse:
    try:
        product = await catalog.create_product(payload.name, prices=payload.prices, download_link=payload.downloadLink)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return ProductResponse.from_product(product)


@router.put("/products/{product_id}/prices", response_model=ProductResponse)
async def update_prices(
    product_id: str,
    payload: ProductPricesRequest,
    catalog: CatalogService = Depends(get_catalog_service),
) -> ProductResponse:
    try:
        product = await catalog.update_prices(product_id, payload.prices)
    except ProductNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return ProductResponse.from_product(product)


@router.put("/products/{product_id}/active", response_model=ProductResponse)
async def set_product_active(
    product_id: str,
    payload: ProductActiveRequest,
    catalog: CatalogService = Depends(get_catalog_service),
) -> ProductResponse:
    try:
        product = await catalog.set_active(product_id, payload.active)
    except ProductNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return ProductResponse.from_product(product)


@router.post("/products/{product_id}/keys", status_code=status.HTTP_201_CREATED)
async def upload_keys(
    product_id: str,
    payload: KeyUploadRequest,
    catalog: CatalogService = Depends(get_catalog_service),
) -> dict[str, int]:
    try:
        items = await catalog.add_keys(product_id, payload.durationDays, payload.keys)
    except ProductNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return {"added": len(items)}


@router.get("/products/{product_id}/stock")
async def product_stock(
    product_id: str,
    catalog: CatalogService = Depends(get_catalog_service),
) -> dict[int, int]:
    try:
        return await catalog.stock_counts(product_id)
    except ProductNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.delete("/products/{product_id}")
async def delete_product(
    product_id: str,
    catalog: CatalogService = Depends(get_catalog_service),
) -> dict[str, int]:
    try:
        removed = await catalog.delete_product(product_id)
    except ProductNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return {"removedKeys": removed}


@router.get("/settings/runtime", response_model=RuntimeTogglesPayload)
async def get_runtime_toggles(
    runtime_settings: RuntimeSettingsService = Depends(get_runtime_settings),
) -> RuntimeTogglesPayload:
    toggles = await runtime_settings.load()
    return RuntimeTogglesPayload(
        claimingEnabled=toggles.claiming_enabled,
        dailyRewardEnabled=toggles.daily_reward_enabled,
        maintenanceMode=toggles.maintenance_mode,
        referralRewardPoints=toggles.referral_reward_points,
    )


@router.patch("/settings/runtime", response_model=RuntimeTogglesPayload)
async def update_runtime_toggles(
    payload: RuntimeTogglesPayload,
    runtime_settings: RuntimeSettingsService = Depends(get_runtime_settings),
) -> RuntimeTogglesPayload:
    field_map = {
        "claimingEnabled": "claiming_enabled",
        "dailyRewardEnabled": "daily_reward_enabled",
        "maintenanceMode": "maintenance_mode",
        "referralRewardPoints": "referral_reward_points",
    }
    changes = {field_map[key]: value for key, value in payload.model_dump(exclude_unset=True).items()}
    toggles = await runtime_settings.update(**changes)
    return RuntimeTogglesPayload(
        claimingEnabled=toggles.claiming_enabled,
        dailyRewardEnabled=toggles.daily_reward_enabled,
        maintenanceMode=toggles.maintenance_mode,
        referralRewardPoints=toggles.referral_reward_points,
    )
