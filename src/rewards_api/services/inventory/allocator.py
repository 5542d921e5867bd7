"""Hands out single-use keys from per-product pools."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from loguru import logger

from rewards_api.core.errors import (
    Contention,
    FeatureDisabled,
    InsufficientBalance,
    OutOfStock,
    ProductNotFound,
    RewardsError,
    TransportError,
)
from rewards_api.core.settings import Settings, settings as default_settings
from rewards_api.models.common import to_iso, utcnow
from rewards_api.models.inventory import InventoryItem, ItemStatus, Product
from rewards_api.observability.rewards import RewardsObservabilityStore, get_rewards_store
from rewards_api.observability.tracing import get_tracer
from rewards_api.services.inventory.catalog import CatalogService
from rewards_api.services.ledger import LedgerReason, LedgerService
from rewards_api.services.runtime_settings import RuntimeSettingsService
from rewards_api.services.transport import ChatTransport
from rewards_api.store import KeyValueStore, cas_update
from rewards_api.store import paths

tracer = get_tracer(__name__)


def is_expired(item: InventoryItem, now: datetime | None = None) -> bool:
    return item.is_expired(now)


@dataclass
class ClaimQuote:
    product_id: str
    product_name: str
    duration_days: int
    price: int
    balance: int
    in_stock: int

    @property
    def remaining_after(self) -> int:
        return self.balance - self.price

    @property
    def affordable(self) -> bool:
        return self.balance >= self.price

    @property
    def shortfall(self) -> int:
        return max(self.price - self.balance, 0)


@dataclass
class OwnedItem:
    item: InventoryItem
    product_name: str
    expired: bool


class _CandidateTaken(Exception):
    pass


class InventoryAllocator:
    """Allocates at most one claim per item, debiting the price after allocation.

    Allocation is a CAS on the item record (unclaimed -> claimed); the ledger debit
    follows. If the debit fails, a compensating CAS returns the item to the pool
    and the ledger error reaches the caller unchanged.
    """

    def __init__(
        self,
        store: KeyValueStore,
        ledger: LedgerService,
        catalog: CatalogService,
        runtime_settings: RuntimeSettingsService,
        *,
        transport: ChatTransport | None = None,
        config: Settings | None = None,
        observability: RewardsObservabilityStore | None = None,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._catalog = catalog
        self._runtime = runtime_settings
        self._transport = transport
        self._config = config or default_settings
        self._observability = observability or get_rewards_store()

    async def quote(self, user_id: str, product_id: str, duration_days: int) -> ClaimQuote:
        await self._ensure_claiming_enabled()
        product = await self._claimable_product(product_id)
        price = self._price(product, duration_days)
        balance = await self._ledger.balance(user_id)
        stock = await self._store.index_members(paths.pool_index(product_id, duration_days))
        return ClaimQuote(
            product_id=product_id,
            product_name=product.name,
            duration_days=duration_days,
            price=price,
            balance=balance,
            in_stock=len(stock),
        )

    async def claim(self, user_id: str, product_id: str, duration_days: int) -> InventoryItem:
        with tracer.start_as_current_span("inventory.claim") as span:
            span.set_attribute("rewards.user_id", user_id)
            span.set_attribute("rewards.product_id", product_id)
            span.set_attribute("rewards.duration_days", duration_days)

            await self._ensure_claiming_enabled()
            product = await self._claimable_product(product_id)
            price = self._price(product, duration_days)

            balance = await self._ledger.balance(user_id)
            if balance < price:
                self._observability.record_claim("insufficient_balance")
                raise InsufficientBalance(user_id, required=price, available=balance)

            item = await self._allocate(user_id, product_id, duration_days)
            span.set_attribute("rewards.item_id", item.id)

            try:
                await self._index_claim(user_id, item)
                await self._ledger.debit(
                    user_id,
                    price,
                    LedgerReason.KEY_CLAIM,
                    metadata={"item_id": item.id, "product_id": product_id, "duration_days": duration_days},
                )
            except RewardsError as exc:
                await self._compensate(item, user_id, exc)
                raise

            self._observability.record_claim("claimed")
            logger.info(
                "Claimed inventory item",
                user_id=user_id,
                product_id=product_id,
                duration_days=duration_days,
                item_id=item.id,
                price=price,
            )
            await self._send_receipt(user_id, product, item, price)
            return item

    async def list_user_items(self, user_id: str, *, now: datetime | None = None) -> list[OwnedItem]:
        moment = now or utcnow()
        item_ids = await self._store.index_members(paths.user_items_index(user_id))
        names: dict[str, str] = {}
        owned: list[OwnedItem] = []
        for item_id in reversed(item_ids):
            record = await self._store.get(paths.inventory_item(item_id))
            if record is None:
                continue
            item = InventoryItem.from_record(item_id, record)
            if item.claimed_by != user_id:
                continue
            if item.product_id not in names:
                product = await self._catalog.get_product(item.product_id, include_deleted=True)
                names[item.product_id] = product.name if product else item.product_id
            owned.append(OwnedItem(item=item, product_name=names[item.product_id], expired=item.is_expired(moment)))
        return owned

    async def find_expiring(self, *, within: timedelta, now: datetime | None = None) -> list[InventoryItem]:
        """Claimed items expiring inside ``within`` that have not been notified yet."""

        moment = now or utcnow()
        horizon = moment + within
        expiring: list[InventoryItem] = []
        for item_id in await self._store.index_members(paths.claimed_items_index()):
            record = await self._store.get(paths.inventory_item(item_id))
            if record is None:
                continue
            item = InventoryItem.from_record(item_id, record)
            if item.expiry_notified or item.expires_at is None:
                continue
            if moment < item.expires_at <= horizon:
                expiring.append(item)
        return expiring

    async def mark_expiry_notified(self, item_id: str) -> bool:
        """Flip ``expiry_notified``; only the caller that flips it may notify."""

        def flip(current: dict[str, Any] | None) -> dict[str, Any]:
            if current is None or current.get("expiry_notified"):
                raise _CandidateTaken()
            current["expiry_notified"] = True
            return current

        try:
            await cas_update(self._store, paths.inventory_item(item_id), flip)
        except _CandidateTaken:
            return False
        return True

    async def _allocate(self, user_id: str, product_id: str, duration_days: int) -> InventoryItem:
        pool = paths.pool_index(product_id, duration_days)
        for item_id in await self._store.index_members(pool):
            claimed_at = utcnow()

            def take(current: dict[str, Any] | None) -> dict[str, Any]:
                if current is None or current.get("status") != ItemStatus.UNCLAIMED.value:
                    raise _CandidateTaken()
                current["status"] = ItemStatus.CLAIMED.value
                current["claimed_by"] = user_id
                current["claimed_at"] = to_iso(claimed_at)
                current["expires_at"] = to_iso(claimed_at + timedelta(days=int(current["duration_days"])))
                return current

            try:
                result = await cas_update(self._store, paths.inventory_item(item_id), take, max_attempts=1)
            except (_CandidateTaken, Contention):
                self._observability.record_claim_conflict()
                logger.debug("Candidate already taken, trying next", item_id=item_id, user_id=user_id)
                continue

            return InventoryItem.from_record(item_id, result.current or {})

        self._observability.record_claim("out_of_stock")
        raise OutOfStock(product_id, duration_days)

    async def _index_claim(self, user_id: str, item: InventoryItem) -> None:
        score = item.claimed_at.timestamp() if item.claimed_at else utcnow().timestamp()
        await self._store.index_remove(paths.pool_index(item.product_id, item.duration_days), item.id)
        await self._store.index_add(paths.user_items_index(user_id), item.id, score)
        await self._store.index_add(paths.claimed_items_index(), item.id, score)

    async def _compensate(self, item: InventoryItem, user_id: str, exc: RewardsError) -> None:
        try:
            await self._release(item, user_id)
        except RewardsError as release_exc:
            self._observability.record_claim("rollback_failed")
            logger.error(
                "Compensating release failed, item left claimed without a debit",
                user_id=user_id,
                item_id=item.id,
                error=exc.code,
                release_error=release_exc.code,
            )
            return
        self._observability.record_claim(f"rolled_back:{exc.code}")
        logger.warning("Rolled back allocation after failed claim", user_id=user_id, item_id=item.id, error=exc.code)

    async def _release(self, item: InventoryItem, user_id: str) -> None:
        product = await self._catalog.get_product(item.product_id, include_deleted=True)
        retired = product is None or product.deleted
        target = ItemStatus.DELETED if retired else ItemStatus.UNCLAIMED

        def revert(current: dict[str, Any] | None) -> dict[str, Any] | None:
            if current is None or current.get("claimed_by") != user_id or current.get("claimed_at") != to_iso(item.claimed_at):
                return current
            current["status"] = target.value
            current["claimed_by"] = None
            current["claimed_at"] = None
            current["expires_at"] = None
            return current

        result = await cas_update(self._store, paths.inventory_item(item.id), revert, max_attempts=10)
        if not result.changed:
            logger.error("Compensating release found item in unexpected state", item_id=item.id, user_id=user_id)
            return
        await self._store.index_remove(paths.user_items_index(user_id), item.id)
        await self._store.index_remove(paths.claimed_items_index(), item.id)
        if retired:
            return
        score = item.added_at.timestamp() if item.added_at else utcnow().timestamp()
        await self._store.index_add(paths.pool_index(item.product_id, item.duration_days), item.id, score)
        # The product may have been deleted while the item was out of the pool.
        if (await self._catalog.get_product(item.product_id)) is None:
            await self._catalog.retire_item(item.id)

    async def _ensure_claiming_enabled(self) -> None:
        toggles = await self._runtime.load()
        if not toggles.claiming_enabled or toggles.maintenance_mode:
            raise FeatureDisabled("Claiming")

    async def _claimable_product(self, product_id: str) -> Product:
        product = await self._catalog.get_product(product_id)
        if product is None or not product.active:
            raise ProductNotFound(product_id)
        return product

    @staticmethod
    def _price(product: Product, duration_days: int) -> int:
        price = product.price_for(duration_days)
        if price is None:
            raise ValueError(f"Product {product.id} has no {duration_days}-day option")
        return price

    async def _send_receipt(self, user_id: str, product: Product, item: InventoryItem, price: int) -> None:
        channel = self._config.logs_channel
        if not channel or self._transport is None:
            return
        text = (
            "🔑 *Key claimed*\n"
            f"User: `{user_id}`\n"
            f"Product: {product.name} ({item.duration_days}d)\n"
            f"Cost: {price} points\n"
            f"Expires: {to_iso(item.expires_at)}"
        )
        try:
            await self._transport.send_message(channel, text)
        except TransportError as exc:
            logger.warning("Failed to post claim receipt", channel=channel, item_id=item.id, error=str(exc))
