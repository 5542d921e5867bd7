import asyncio

import pytest

from rewards_api.core.errors import Contention, InsufficientBalance, UserNotFound
from rewards_api.services.ledger import LedgerReason, LedgerService
from rewards_api.store import InMemoryStore, paths


class _ConflictingStore(InMemoryStore):
    async def compare_and_swap(self, path, expected, new):
        return False


@pytest.mark.asyncio
async def test_credit_and_debit_update_balance_and_totals(store, make_user, observability) -> None:
    await make_user("1", balance=10)
    ledger = LedgerService(store, observability=observability)

    await ledger.credit("1", 5, LedgerReason.REFERRAL)
    entry = await ledger.debit("1", 12, LedgerReason.KEY_CLAIM, metadata={"item_id": "abc"})

    assert entry.balance_after == 3
    record = await store.get(paths.user("1"))
    assert record["balance"] == 3
    assert record["total_earned"] == 15
    assert record["total_spent"] == 12
    snapshot = observability.snapshot()
    assert snapshot.ledger["credit"] == 1
    assert snapshot.ledger["debit"] == 1


@pytest.mark.asyncio
async def test_debit_rejects_overdraft_without_writing(store, make_user, observability) -> None:
    await make_user("1", balance=5)
    ledger = LedgerService(store, observability=observability)

    with pytest.raises(InsufficientBalance) as exc_info:
        await ledger.debit("1", 10, LedgerReason.KEY_CLAIM)

    assert exc_info.value.shortfall == 5
    assert await ledger.balance("1") == 5
    assert observability.snapshot().ledger["rejected:insufficient_balance"] == 1


@pytest.mark.asyncio
async def test_amounts_must_be_positive(store, make_user) -> None:
    await make_user("1", balance=5)
    ledger = LedgerService(store)

    with pytest.raises(ValueError):
        await ledger.credit("1", 0, LedgerReason.ADMIN_ADJUSTMENT)
    with pytest.raises(ValueError):
        await ledger.debit("1", -3, LedgerReason.ADMIN_ADJUSTMENT)


@pytest.mark.asyncio
async def test_unknown_user_is_rejected(store) -> None:
    ledger = LedgerService(store)

    with pytest.raises(UserNotFound):
        await ledger.credit("missing", 1, LedgerReason.REFERRAL)


@pytest.mark.asyncio
async def test_concurrent_mutations_preserve_balance_invariant(store, make_user) -> None:
    await make_user("1", balance=50)
    ledger = LedgerService(store, max_attempts=200)

    async def attempt_debit() -> bool:
        try:
            await ledger.debit("1", 10, LedgerReason.KEY_CLAIM)
        except InsufficientBalance:
            return False
        return True

    results = await asyncio.gather(
        *(attempt_debit() for _ in range(12)),
        *(ledger.credit("1", 3, LedgerReason.REFERRAL) for _ in range(10)),
    )
    successful_debits = sum(1 for result in results[:12] if result is True)

    balance = await ledger.balance("1")
    assert balance == 50 + 10 * 3 - successful_debits * 10
    assert balance >= 0
    assert successful_debits <= 8


@pytest.mark.asyncio
async def test_contention_surfaces_after_bounded_retries(make_user) -> None:
    store = _ConflictingStore()
    await store.put(paths.user("1"), {"balance": 1})
    ledger = LedgerService(store, max_attempts=5)

    with pytest.raises(Contention):
        await ledger.credit("1", 1, LedgerReason.REFERRAL)


@pytest.mark.asyncio
async def test_successful_mutations_leave_audit_entries(store, make_user) -> None:
    await make_user("1", balance=0)
    ledger = LedgerService(store)

    await ledger.credit("1", 4, LedgerReason.DAILY_REWARD)
    await ledger.debit("1", 3, LedgerReason.KEY_CLAIM, metadata={"item_id": "k1"})

    entries = await ledger.list_entries("1")
    assert sorted(entry.delta for entry in entries) == [-3, 4]
    debit = next(entry for entry in entries if entry.delta < 0)
    assert debit.reason is LedgerReason.KEY_CLAIM
    assert debit.balance_after == 1
    assert debit.metadata == {"item_id": "k1"}


@pytest.mark.asyncio
async def test_computed_credit_commits_extra_fields_atomically(store, make_user) -> None:
    await make_user("1", balance=1, daily_streak=2)
    ledger = LedgerService(store)

    def compute(current):
        current["daily_streak"] += 1
        return 5

    entry = await ledger.credit_computed("1", LedgerReason.DAILY_REWARD, compute)

    record = await store.get(paths.user("1"))
    assert entry.delta == 5
    assert record["balance"] == 6
    assert record["daily_streak"] == 3


@pytest.mark.asyncio
async def test_credit_is_applied_once_when_store_reply_is_lost(store, make_user, observability) -> None:
    await make_user("1", balance=0)
    ledger = LedgerService(store, observability=observability)

    store.inject_lost_replies("cas")
    entry = await ledger.credit("1", 10, LedgerReason.ADMIN_ADJUSTMENT)

    assert entry.balance_after == 10
    assert await ledger.balance("1") == 10
