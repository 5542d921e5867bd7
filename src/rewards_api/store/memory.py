"""In-process store used by tests and local development."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from uuid import uuid4

from rewards_api.store.base import Record, RetryPolicy, TransientStoreError, canonical_json, with_retries

APPLIED_TOKEN_LIMIT = 10_000


@dataclass
class InMemoryStore:
    """Dictionary-backed store honouring the same CAS semantics as the Redis adapter.

    Every operation yields to the event loop before touching state so concurrent
    callers interleave the way they would against a remote store.
    """

    retry_policy: RetryPolicy = field(default_factory=lambda: RetryPolicy(attempts=3, base_seconds=0.0))
    _data: dict[str, str] = field(default_factory=dict)
    _indexes: dict[str, dict[str, float]] = field(default_factory=dict)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    _applied_tokens: dict[str, None] = field(default_factory=dict)
    _pending_failures: int = 0
    _lost_replies: dict[str, int] = field(default_factory=dict)

    def inject_failures(self, count: int) -> None:
        """Make the next ``count`` backend calls raise a transient error."""

        self._pending_failures = count

    def inject_lost_replies(self, op_name: str, count: int = 1) -> None:
        """Apply the next ``count`` ``op_name`` calls, then fail them as if the reply was lost."""

        self._lost_replies[op_name] = count

    async def _call(self, op_name: str, path: str, func):
        async def attempt():
            await asyncio.sleep(0)
            if self._pending_failures > 0:
                self._pending_failures -= 1
                raise TransientStoreError("injected failure")
            async with self._lock:
                result = func()
            if self._lost_replies.get(op_name, 0) > 0:
                self._lost_replies[op_name] -= 1
                raise TransientStoreError("reply lost after apply")
            return result

        return await with_retries(attempt, policy=self.retry_policy, op_name=op_name, path=path)

    async def get(self, path: str) -> Record | None:
        def _get():
            raw = self._data.get(path)
            return json.loads(raw) if raw is not None else None

        return await self._call("get", path, _get)

    async def put(self, path: str, value: Record) -> None:
        def _put():
            self._data[path] = canonical_json(value)

        await self._call("put", path, _put)

    async def patch(self, path: str, fields: Record) -> Record:
        def _patch():
            raw = self._data.get(path)
            current = json.loads(raw) if raw is not None else {}
            current.update(fields)
            self._data[path] = canonical_json(current)
            return current

        return await self._call("patch", path, _patch)

    async def compare_and_swap(self, path: str, expected: Record | None, new: Record | None) -> bool:
        expected_raw = canonical_json(expected) if expected is not None else None
        token = uuid4().hex

        def _cas():
            # A retried call whose first attempt already applied.
            if token in self._applied_tokens:
                return True
            if self._data.get(path) != expected_raw:
                return False
            if new is None:
                self._data.pop(path, None)
            else:
                self._data[path] = canonical_json(new)
            self._applied_tokens[token] = None
            if len(self._applied_tokens) > APPLIED_TOKEN_LIMIT:
                del self._applied_tokens[next(iter(self._applied_tokens))]
            return True

        return await self._call("cas", path, _cas)

    async def delete(self, path: str) -> None:
        await self._call("delete", path, lambda: self._data.pop(path, None))

    async def list_children(self, prefix: str) -> dict[str, Record]:
        base = prefix.rstrip("/") + "/"

        def _list():
            children: dict[str, Record] = {}
            for key, raw in self._data.items():
                if not key.startswith(base):
                    continue
                child = key[len(base):]
                if "/" in child:
                    continue
                children[child] = json.loads(raw)
            return children

        return await self._call("list", prefix, _list)

    async def index_add(self, index: str, member: str, score: float) -> None:
        def _add():
            self._indexes.setdefault(index, {})[member] = score

        await self._call("index_add", index, _add)

    async def index_remove(self, index: str, member: str) -> None:
        await self._call("index_remove", index, lambda: self._indexes.get(index, {}).pop(member, None))

    async def index_members(self, index: str, *, limit: int | None = None) -> list[str]:
        def _members():
            entries = sorted(self._indexes.get(index, {}).items(), key=lambda item: (item[1], item[0]))
            members = [member for member, _ in entries]
            return members[:limit] if limit is not None else members

        return await self._call("index_members", index, _members)

    async def close(self) -> None:
        return None
