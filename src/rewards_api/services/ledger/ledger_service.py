"""Point ledger: the only writer of user balance fields."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable
from uuid import uuid4

from loguru import logger

from rewards_api.core.errors import InsufficientBalance, RewardsError, UserNotFound
from rewards_api.core.settings import settings
from rewards_api.models.common import from_iso, to_iso, utcnow
from rewards_api.observability.rewards import RewardsObservabilityStore, get_rewards_store
from rewards_api.store import KeyValueStore, cas_update
from rewards_api.store import paths


class LedgerReason(str, Enum):
    REFERRAL = "referral"
    DAILY_REWARD = "daily_reward"
    KEY_CLAIM = "key_claim"
    ADMIN_ADJUSTMENT = "admin_adjustment"


@dataclass
class LedgerEntry:
    """Audit row written after a committed balance change."""

    id: str
    user_id: str
    delta: int
    reason: LedgerReason
    balance_after: int
    created_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_record(self) -> dict[str, Any]:
        return {
            "delta": self.delta,
            "reason": self.reason.value,
            "balance_after": self.balance_after,
            "created_at": to_iso(self.created_at),
            "metadata": self.metadata,
        }

    @classmethod
    def from_record(cls, user_id: str, entry_id: str, record: dict[str, Any]) -> "LedgerEntry":
        return cls(
            id=entry_id,
            user_id=user_id,
            delta=int(record["delta"]),
            reason=LedgerReason(record["reason"]),
            balance_after=int(record["balance_after"]),
            created_at=from_iso(record["created_at"]),  # type: ignore[arg-type]
            metadata=dict(record.get("metadata") or {}),
        )


class LedgerService:
    """Credits and debits user balances with optimistic CAS retries.

    For any interleaving of calls against one user the final balance equals the
    initial balance plus successful credits minus successful debits, and no debit
    ever commits against a balance that cannot cover it: the sufficiency check runs
    inside the CAS loop against the freshly read record, never against a value read
    earlier by the caller.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        max_attempts: int | None = None,
        observability: RewardsObservabilityStore | None = None,
    ) -> None:
        self._store = store
        self._max_attempts = max_attempts or settings.ledger_max_attempts
        self._observability = observability or get_rewards_store()

    async def credit(
        self,
        user_id: str,
        amount: int,
        reason: LedgerReason,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        if amount <= 0:
            raise ValueError("Credit amount must be positive")
        return await self._apply(user_id, amount, reason, metadata)

    async def debit(
        self,
        user_id: str,
        amount: int,
        reason: LedgerReason,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        if amount <= 0:
            raise ValueError("Debit amount must be positive")
        return await self._apply(user_id, -amount, reason, metadata)

    async def credit_computed(
        self,
        user_id: str,
        reason: LedgerReason,
        compute: Callable[[dict[str, Any]], int],
        *,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        """Credit an amount derived from the freshly read user record.

        ``compute`` runs inside the CAS loop; it may raise a domain error to abort,
        and may update non-balance fields on the record it is given (streaks,
        timestamps) so they commit atomically with the credit.
        """

        return await self._apply(user_id, None, reason, metadata, compute=compute)

    async def balance(self, user_id: str) -> int:
        record = await self._store.get(paths.user(user_id))
        if record is None:
            raise UserNotFound(user_id)
        return int(record.get("balance") or 0)

    async def list_entries(self, user_id: str, *, limit: int = 25) -> list[LedgerEntry]:
        children = await self._store.list_children(paths.ledger_entries(user_id))
        entries = [LedgerEntry.from_record(user_id, entry_id, record) for entry_id, record in children.items()]
        entries.sort(key=lambda entry: entry.created_at, reverse=True)
        return entries[:limit]

    async def _apply(
        self,
        user_id: str,
        delta: int | None,
        reason: LedgerReason,
        metadata: dict[str, Any] | None,
        *,
        compute: Callable[[dict[str, Any]], int] | None = None,
    ) -> LedgerEntry:
        path = paths.user(user_id)
        applied: dict[str, int] = {}

        def mutate(current: dict[str, Any] | None) -> dict[str, Any]:
            if current is None:
                raise UserNotFound(user_id)
            change = compute(current) if compute is not None else int(delta or 0)
            if compute is not None and change <= 0:
                raise ValueError("Computed credit must be positive")
            applied["delta"] = change
            balance = int(current.get("balance") or 0)
            if change < 0 and balance < -change:
                raise InsufficientBalance(user_id, required=-change, available=balance)
            current["balance"] = balance + change
            if change > 0:
                current["total_earned"] = int(current.get("total_earned") or 0) + change
            else:
                current["total_spent"] = int(current.get("total_spent") or 0) - change
            return current

        try:
            result = await cas_update(self._store, path, mutate, max_attempts=self._max_attempts)
        except RewardsError as exc:
            self._observability.record_ledger_event(f"rejected:{exc.code}")
            logger.info(
                "Ledger mutation rejected",
                user_id=user_id,
                delta=applied.get("delta", delta),
                reason=reason.value,
                error=exc.code,
            )
            raise

        delta = applied["delta"]
        entry = LedgerEntry(
            id=uuid4().hex,
            user_id=user_id,
            delta=delta,
            reason=reason,
            balance_after=int(result.current["balance"]),  # type: ignore[index]
            created_at=utcnow(),
            metadata=metadata or {},
        )
        event = "credit" if delta > 0 else "debit"
        self._observability.record_ledger_event(event, cas_attempts=result.attempts)
        logger.info(
            "Recorded ledger entry",
            user_id=user_id,
            delta=delta,
            reason=reason.value,
            balance_after=entry.balance_after,
            cas_attempts=result.attempts,
        )
        await self._write_audit(entry)
        return entry

    async def _write_audit(self, entry: LedgerEntry) -> None:
        # Balance is already committed at this point; audit rows are best-effort.
        try:
            await self._store.put(paths.ledger_entry(entry.user_id, entry.id), entry.to_record())
        except RewardsError as exc:
            logger.exception("Failed to persist ledger audit entry", user_id=entry.user_id, entry_id=entry.id, error=str(exc))
