import asyncio
from datetime import timedelta

import pytest

from rewards_api.core.errors import FeatureDisabled, InsufficientBalance, OutOfStock, ProductNotFound, StoreUnavailable
from rewards_api.models.inventory import ItemStatus
from rewards_api.services import build_container
from rewards_api.services.inventory import InventoryAllocator, split_keys
from rewards_api.services.ledger import LedgerService
from rewards_api.store import InMemoryStore, paths


class _DrainedLedger(LedgerService):
    """Passes the balance pre-check but rejects the debit, as if a concurrent spend won."""

    async def debit(self, user_id, amount, reason, *, metadata=None):
        raise InsufficientBalance(user_id, required=amount, available=0)


class _UserIndexDownStore(InMemoryStore):
    """Fails writes to per-user item indexes once the store's retries are spent."""

    async def index_add(self, index, member, score):
        if index.startswith("user-items:"):
            raise StoreUnavailable(f"index_add {index} failed")
        await super().index_add(index, member, score)


class _DeletingLedger(LedgerService):
    """Deletes the product while the claimed key is out of the pool, then rejects the debit."""

    def __init__(self, store, catalog, product_id):
        super().__init__(store)
        self._catalog = catalog
        self._product_id = product_id

    async def debit(self, user_id, amount, reason, *, metadata=None):
        await self._catalog.delete_product(self._product_id)
        raise InsufficientBalance(user_id, required=amount, available=0)


async def _product_with_keys(services, keys: str, *, prices=None):
    product = await services.catalog.create_product("ProA", prices=prices or {7: 10})
    await services.catalog.add_keys(product.id, 7, keys)
    return product


def test_split_keys_drops_blank_lines() -> None:
    assert split_keys("K-1\n\n  K-2  \r\nK-3\n") == ["K-1", "K-2", "K-3"]


@pytest.mark.asyncio
async def test_claim_allocates_oldest_key_and_debits(services, make_user, store) -> None:
    await make_user("1", balance=25)
    product = await _product_with_keys(services, "K-1\nK-2")

    item = await services.allocator.claim("1", product.id, 7)

    assert item.payload == "K-1"
    assert item.status is ItemStatus.CLAIMED
    assert item.claimed_by == "1"
    assert item.expires_at == item.claimed_at + timedelta(days=7)
    assert await services.ledger.balance("1") == 15
    assert await services.catalog.stock_counts(product.id) == {7: 1}
    assert await store.index_members(paths.user_items_index("1")) == [item.id]


@pytest.mark.asyncio
async def test_single_key_is_allocated_to_exactly_one_of_two_claimers(services, make_user) -> None:
    await make_user("1", balance=10)
    await make_user("2", balance=10)
    product = await _product_with_keys(services, "ONLY-KEY")

    results = await asyncio.gather(
        services.allocator.claim("1", product.id, 7),
        services.allocator.claim("2", product.id, 7),
        return_exceptions=True,
    )

    winners = [result for result in results if not isinstance(result, Exception)]
    losers = [result for result in results if isinstance(result, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], OutOfStock)
    balances = sorted([await services.ledger.balance("1"), await services.ledger.balance("2")])
    assert balances == [0, 10]


@pytest.mark.asyncio
async def test_more_claimers_than_keys_yields_one_success_per_key(services, make_user) -> None:
    for user_id in ("1", "2", "3"):
        await make_user(user_id, balance=10)
    product = await _product_with_keys(services, "K-1\nK-2")

    results = await asyncio.gather(
        *(services.allocator.claim(user_id, product.id, 7) for user_id in ("1", "2", "3")),
        return_exceptions=True,
    )

    winners = [result for result in results if not isinstance(result, Exception)]
    assert len(winners) == 2
    assert {item.payload for item in winners} == {"K-1", "K-2"}
    assert len({item.claimed_by for item in winners}) == 2
    assert sum(isinstance(result, OutOfStock) for result in results) == 1


@pytest.mark.asyncio
async def test_insufficient_balance_leaves_pool_untouched(services, make_user, observability) -> None:
    await make_user("1", balance=3)
    product = await _product_with_keys(services, "K-1")

    with pytest.raises(InsufficientBalance) as exc_info:
        await services.allocator.claim("1", product.id, 7)

    assert exc_info.value.shortfall == 7
    assert await services.catalog.stock_counts(product.id) == {7: 1}
    assert observability.snapshot().claims["insufficient_balance"] == 1


@pytest.mark.asyncio
async def test_failed_debit_returns_key_to_pool(services, make_user, store, config, observability) -> None:
    await make_user("1", balance=10)
    product = await _product_with_keys(services, "K-1")
    allocator = InventoryAllocator(
        store,
        _DrainedLedger(store),
        services.catalog,
        services.runtime_settings,
        config=config,
        observability=observability,
    )

    with pytest.raises(InsufficientBalance):
        await allocator.claim("1", product.id, 7)

    [item_id] = await store.index_members(paths.pool_index(product.id, 7))
    record = await store.get(paths.inventory_item(item_id))
    assert record["status"] == ItemStatus.UNCLAIMED.value
    assert record["claimed_by"] is None
    assert await store.index_members(paths.user_items_index("1")) == []
    assert await services.ledger.balance("1") == 10
    assert observability.snapshot().claims["rolled_back:insufficient_balance"] == 1


@pytest.mark.asyncio
async def test_empty_pool_raises_out_of_stock(services, make_user) -> None:
    await make_user("1", balance=50)
    product = await services.catalog.create_product("ProA", prices={7: 10})

    with pytest.raises(OutOfStock):
        await services.allocator.claim("1", product.id, 7)
    assert await services.ledger.balance("1") == 50


@pytest.mark.asyncio
async def test_claiming_respects_runtime_toggles_and_product_state(services, make_user) -> None:
    await make_user("1", balance=50)
    product = await _product_with_keys(services, "K-1")

    await services.runtime_settings.update(claiming_enabled=False)
    with pytest.raises(FeatureDisabled):
        await services.allocator.claim("1", product.id, 7)

    await services.runtime_settings.update(claiming_enabled=True)
    await services.catalog.set_active(product.id, False)
    with pytest.raises(ProductNotFound):
        await services.allocator.claim("1", product.id, 7)

    await services.catalog.set_active(product.id, True)
    with pytest.raises(ValueError):
        await services.allocator.claim("1", product.id, 30)


@pytest.mark.asyncio
async def test_quote_reports_price_balance_and_stock(services, make_user) -> None:
    await make_user("1", balance=4)
    product = await _product_with_keys(services, "K-1\nK-2\nK-3")

    quote = await services.allocator.quote("1", product.id, 7)

    assert quote.price == 10
    assert quote.in_stock == 3
    assert quote.affordable is False
    assert quote.shortfall == 6


@pytest.mark.asyncio
async def test_user_items_are_listed_newest_first_with_expiry(services, make_user) -> None:
    await make_user("1", balance=100)
    product = await _product_with_keys(services, "K-1\nK-2")

    first = await services.allocator.claim("1", product.id, 7)
    second = await services.allocator.claim("1", product.id, 7)

    owned = await services.allocator.list_user_items("1")
    assert [entry.item.id for entry in owned] == [second.id, first.id]
    assert all(entry.product_name == "ProA" and not entry.expired for entry in owned)

    later = await services.allocator.list_user_items("1", now=first.claimed_at + timedelta(days=8))
    assert all(entry.expired for entry in later)


@pytest.mark.asyncio
async def test_expiry_flag_flips_once(services, make_user) -> None:
    await make_user("1", balance=100)
    product = await _product_with_keys(services, "K-1")
    item = await services.allocator.claim("1", product.id, 7)

    expiring = await services.allocator.find_expiring(within=timedelta(hours=24), now=item.expires_at - timedelta(hours=2))
    assert [candidate.id for candidate in expiring] == [item.id]

    assert await services.allocator.mark_expiry_notified(item.id) is True
    assert await services.allocator.mark_expiry_notified(item.id) is False
    assert await services.allocator.find_expiring(within=timedelta(hours=24), now=item.expires_at - timedelta(hours=2)) == []


@pytest.mark.asyncio
async def test_catalog_rejects_unpriced_durations_and_bad_prices(services) -> None:
    product = await services.catalog.create_product("ProA", prices={7: 10})

    with pytest.raises(ValueError):
        await services.catalog.add_keys(product.id, 30, "K-1")
    with pytest.raises(ValueError):
        await services.catalog.update_prices(product.id, {7: -1})
    with pytest.raises(ProductNotFound):
        await services.catalog.add_keys("missing", 7, "K-1")


@pytest.mark.asyncio
async def test_delete_product_retires_only_unclaimed_keys(services, make_user, store) -> None:
    await make_user("1", balance=100)
    product = await _product_with_keys(services, "K-1\nK-2\nK-3")
    claimed = await services.allocator.claim("1", product.id, 7)

    removed = await services.catalog.delete_product(product.id)

    assert removed == 2
    assert await services.catalog.get_product(product.id) is None
    assert await store.get(paths.inventory_item(claimed.id)) is not None
    assert await store.index_members(paths.pool_index(product.id, 7)) == []
    for item_id in await store.index_members(paths.product_items_index(product.id)):
        record = await store.get(paths.inventory_item(item_id))
        expected = ItemStatus.CLAIMED if item_id == claimed.id else ItemStatus.DELETED
        assert record["status"] == expected.value
    with pytest.raises(ProductNotFound):
        await services.catalog.set_active(product.id, True)
    assert [entry.product_name for entry in await services.allocator.list_user_items("1")] == ["ProA"]


@pytest.mark.asyncio
async def test_index_failure_after_allocation_returns_key_without_debit(transport, config, observability) -> None:
    store = _UserIndexDownStore()
    services = build_container(store, transport, config, observability=observability)
    await store.put(paths.user("1"), {"name": "Alice", "balance": 100})
    product = await _product_with_keys(services, "K-1")

    with pytest.raises(StoreUnavailable):
        await services.allocator.claim("1", product.id, 7)

    [item_id] = await store.index_members(paths.pool_index(product.id, 7))
    record = await store.get(paths.inventory_item(item_id))
    assert record["status"] == ItemStatus.UNCLAIMED.value
    assert record["claimed_by"] is None
    assert await services.ledger.balance("1") == 100
    assert await store.index_members(paths.claimed_items_index()) == []
    assert observability.snapshot().claims["rolled_back:store_unavailable"] == 1


@pytest.mark.asyncio
async def test_rollback_after_product_delete_retires_the_key(services, make_user, store, config, observability) -> None:
    await make_user("1", balance=10)
    product = await _product_with_keys(services, "K-1")
    [item_id] = await store.index_members(paths.pool_index(product.id, 7))
    allocator = InventoryAllocator(
        store,
        _DeletingLedger(store, services.catalog, product.id),
        services.catalog,
        services.runtime_settings,
        config=config,
        observability=observability,
    )

    with pytest.raises(InsufficientBalance):
        await allocator.claim("1", product.id, 7)

    record = await store.get(paths.inventory_item(item_id))
    assert record["status"] == ItemStatus.DELETED.value
    assert record["claimed_by"] is None
    assert await store.index_members(paths.pool_index(product.id, 7)) == []
    assert await services.catalog.get_product(product.id) is None
    assert (await services.catalog.get_product(product.id, include_deleted=True)).deleted
