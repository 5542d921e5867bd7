"""Store adapter contract and the optimistic CAS helpers built on top of it."""

from __future__ import annotations

import asyncio
import json
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol, TypeVar

from loguru import logger

from rewards_api.core.errors import Contention, StoreUnavailable

Record = dict[str, Any]
T = TypeVar("T")


class TransientStoreError(Exception):
    """Raised by store backends for failures worth retrying (timeouts, dropped connections)."""


class KeyValueStore(Protocol):
    """Typed read/write/compare-and-swap operations over hierarchical paths."""

    async def get(self, path: str) -> Record | None:
        ...

    async def put(self, path: str, value: Record) -> None:
        ...

    async def patch(self, path: str, fields: Record) -> Record:
        ...

    async def compare_and_swap(self, path: str, expected: Record | None, new: Record | None) -> bool:
        ...

    async def delete(self, path: str) -> None:
        ...

    async def list_children(self, prefix: str) -> dict[str, Record]:
        ...

    async def index_add(self, index: str, member: str, score: float) -> None:
        ...

    async def index_remove(self, index: str, member: str) -> None:
        ...

    async def index_members(self, index: str, *, limit: int | None = None) -> list[str]:
        ...

    async def close(self) -> None:
        ...


def canonical_json(value: Record | None) -> str:
    """Serialise deterministically so stored strings compare equal for equal values."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_seconds: float = 0.1
    multiplier: float = 2.0
    jitter_seconds: float = 0.0

    def delay_for(self, attempt: int) -> float:
        delay = self.base_seconds * (self.multiplier ** (attempt - 1))
        if self.jitter_seconds:
            delay += random.uniform(0, self.jitter_seconds)
        return max(delay, 0.0)


async def with_retries(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    op_name: str,
    path: str,
) -> T:
    """Run a store call, retrying transient failures with exponential backoff."""

    attempts = max(policy.attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except TransientStoreError as exc:
            if attempt >= attempts:
                logger.error("Store operation failed after retries", op=op_name, path=path, attempts=attempt, error=str(exc))
                raise StoreUnavailable(f"{op_name} {path} failed after {attempt} attempts: {exc}") from exc
            delay = policy.delay_for(attempt)
            logger.warning("Store operation retrying", op=op_name, path=path, attempt=attempt + 1, delay_seconds=delay)
            if delay:
                await asyncio.sleep(delay)
    raise StoreUnavailable(f"{op_name} {path} failed")  # pragma: no cover - loop always returns or raises


@dataclass
class CasResult:
    previous: Record | None
    current: Record | None
    attempts: int

    @property
    def changed(self) -> bool:
        return self.previous != self.current


async def cas_update(
    store: KeyValueStore,
    path: str,
    mutate: Callable[[Record | None], Record | None],
    *,
    max_attempts: int = 5,
) -> CasResult:
    """Read, compute, compare-and-swap against the value read; retry on mismatch.

    ``mutate`` receives a private copy of the current record (``None`` if absent)
    and returns the replacement. Returning a value equal to the current record
    skips the write. Domain errors raised by ``mutate`` propagate untouched and
    are never retried.
    """

    for attempt in range(1, max_attempts + 1):
        current = await store.get(path)
        snapshot = json.loads(canonical_json(current)) if current is not None else None
        replacement = mutate(snapshot)
        if replacement == current:
            return CasResult(previous=current, current=current, attempts=attempt)
        if await store.compare_and_swap(path, current, replacement):
            return CasResult(previous=current, current=replacement, attempts=attempt)
        logger.debug("CAS mismatch, re-reading", path=path, attempt=attempt)
    raise Contention(path, max_attempts)


async def next_sequence(store: KeyValueStore, path: str, *, max_attempts: int = 20) -> int:
    """Allocate the next value of a store-backed monotonic counter."""

    def bump(current: Record | None) -> Record:
        value = int((current or {}).get("value") or 0)
        return {"value": value + 1}

    result = await cas_update(store, path, bump, max_attempts=max_attempts)
    return int(result.current["value"])  # type: ignore[index]


__all__ = [
    "next_sequence",
    "CasResult",
    "KeyValueStore",
    "Record",
    "RetryPolicy",
    "TransientStoreError",
    "canonical_json",
    "cas_update",
    "with_retries",
]
