"""Admin-side product and key pool management."""

from __future__ import annotations

import time
from typing import Any, Iterable, Mapping
from uuid import uuid4

from loguru import logger

from rewards_api.core.errors import ProductNotFound
from rewards_api.models.common import to_iso, utcnow
from rewards_api.models.inventory import DEFAULT_PRICE_TABLE, InventoryItem, ItemStatus, Product
from rewards_api.store import KeyValueStore, cas_update
from rewards_api.store import paths


def _normalise_prices(prices: Mapping[Any, Any]) -> dict[int, int]:
    normalised: dict[int, int] = {}
    for days, cost in prices.items():
        duration = int(days)
        price = int(cost)
        if duration <= 0 or price <= 0:
            raise ValueError(f"Invalid price entry {days!r}: {cost!r}")
        normalised[duration] = price
    if not normalised:
        raise ValueError("A product needs at least one priced duration")
    return normalised


def split_keys(raw: str | Iterable[str]) -> list[str]:
    """One key per line; surrounding whitespace and blank lines are dropped."""

    lines = raw.splitlines() if isinstance(raw, str) else list(raw)
    return [line.strip() for line in lines if line and line.strip()]


class CatalogService:
    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    async def create_product(
        self,
        name: str,
        *,
        prices: Mapping[Any, Any] | None = None,
        download_link: str | None = None,
    ) -> Product:
        if not name.strip():
            raise ValueError("Product name is required")
        product = Product(
            id=uuid4().hex[:12],
            name=name.strip(),
            prices=_normalise_prices(prices) if prices is not None else dict(DEFAULT_PRICE_TABLE),
            download_link=download_link,
            created_at=utcnow(),
        )
        if not await self._store.compare_and_swap(paths.product(product.id), None, product.to_record()):
            raise ValueError(f"Product id collision for {product.id}")
        logger.info("Created product", product_id=product.id, name=product.name)
        return product

    async def get_product(self, product_id: str, *, include_deleted: bool = False) -> Product | None:
        record = await self._store.get(paths.product(product_id))
        if record is None:
            return None
        product = Product.from_record(product_id, record)
        if product.deleted and not include_deleted:
            return None
        return product

    async def require_product(self, product_id: str) -> Product:
        product = await self.get_product(product_id)
        if product is None:
            raise ProductNotFound(product_id)
        return product

    async def list_products(self, *, active_only: bool = False) -> list[Product]:
        children = await self._store.list_children(paths.PRODUCTS)
        products = [Product.from_record(product_id, record) for product_id, record in children.items()]
        products = [product for product in products if not product.deleted]
        if active_only:
            products = [product for product in products if product.active]
        return sorted(products, key=lambda product: product.name.lower())

    async def update_prices(self, product_id: str, prices: Mapping[Any, Any]) -> Product:
        normalised = _normalise_prices(prices)
        product = await self._update(product_id, prices={str(days): cost for days, cost in sorted(normalised.items())})
        logger.info("Updated product prices", product_id=product_id, prices=normalised)
        return product

    async def set_active(self, product_id: str, active: bool) -> Product:
        product = await self._update(product_id, active=active)
        logger.info("Toggled product", product_id=product_id, active=active)
        return product

    async def add_keys(self, product_id: str, duration_days: int, raw_keys: str | Iterable[str]) -> list[InventoryItem]:
        """Bulk-add keys to one pool, preserving the order they were supplied in."""

        product = await self.require_product(product_id)
        if product.price_for(duration_days) is None:
            raise ValueError(f"Product {product_id} has no {duration_days}-day price")

        keys = split_keys(raw_keys)
        added_at = utcnow()
        base_score = time.time()
        items: list[InventoryItem] = []
        for offset, payload in enumerate(keys):
            item = InventoryItem(
                id=uuid4().hex,
                product_id=product_id,
                duration_days=int(duration_days),
                payload=payload,
                added_at=added_at,
            )
            # Strictly increasing scores keep pool order equal to upload order.
            score = base_score + offset / 1_000_000
            await self._store.put(paths.inventory_item(item.id), item.to_record())
            await self._store.index_add(paths.product_items_index(product_id), item.id, score)
            await self._store.index_add(paths.pool_index(product_id, item.duration_days), item.id, score)
            items.append(item)

        logger.info("Added keys", product_id=product_id, duration_days=duration_days, count=len(items))
        return items

    async def stock_counts(self, product_id: str) -> dict[int, int]:
        product = await self.require_product(product_id)
        counts: dict[int, int] = {}
        for duration in sorted(product.prices):
            members = await self._store.index_members(paths.pool_index(product_id, duration))
            counts[duration] = len(members)
        return counts

    async def delete_product(self, product_id: str) -> int:
        """Mark a product deleted and retire its unclaimed keys; claimed keys stay in user history."""

        product = await self.require_product(product_id)
        deleted_at = utcnow()

        def mark(current: dict[str, Any] | None) -> dict[str, Any]:
            if current is None or current.get("deleted_at"):
                raise ProductNotFound(product_id)
            current["deleted_at"] = to_iso(deleted_at)
            current["active"] = False
            return current

        await cas_update(self._store, paths.product(product_id), mark)

        retired = 0
        for item_id in await self._store.index_members(paths.product_items_index(product_id)):
            if await self.retire_item(item_id):
                retired += 1

        for duration in product.prices:
            for item_id in await self._store.index_members(paths.pool_index(product_id, duration)):
                await self._store.index_remove(paths.pool_index(product_id, duration), item_id)

        logger.info("Deleted product", product_id=product_id, retired_keys=retired, deleted_at=to_iso(deleted_at))
        return retired

    async def retire_item(self, item_id: str) -> bool:
        """Move an unclaimed key to ``deleted`` and drop it from its pool."""

        def retire(current: dict[str, Any] | None) -> dict[str, Any] | None:
            if current is None or current.get("status") != ItemStatus.UNCLAIMED.value:
                return current
            current["status"] = ItemStatus.DELETED.value
            return current

        result = await cas_update(self._store, paths.inventory_item(item_id), retire)
        if not result.changed or result.current is None:
            return False
        await self._store.index_remove(
            paths.pool_index(result.current["product_id"], int(result.current["duration_days"])),
            item_id,
        )
        return True

    async def _update(self, product_id: str, **fields: Any) -> Product:
        def apply(current: dict[str, Any] | None) -> dict[str, Any]:
            if current is None or current.get("deleted_at"):
                raise ProductNotFound(product_id)
            current.update(fields)
            return current

        result = await cas_update(self._store, paths.product(product_id), apply)
        return Product.from_record(product_id, result.current or {})
