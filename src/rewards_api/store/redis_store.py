"""Redis-backed store adapter with Lua compare-and-swap."""

from __future__ import annotations

import json
from typing import Any, Awaitable, Callable, TypeVar
from uuid import uuid4

from loguru import logger
from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from rewards_api.core.settings import Settings, settings
from rewards_api.store.base import (
    Record,
    RetryPolicy,
    TransientStoreError,
    canonical_json,
    cas_update,
    with_retries,
)

T = TypeVar("T")

# KEYS[1] = entity key, KEYS[2] = applied-token marker for this call
# ARGV[1] = "1" when the key is expected to be absent, ARGV[2] = expected payload
# ARGV[3] = "1" to delete on success, ARGV[4] = replacement payload
# ARGV[5] = marker lifetime in seconds
_CAS_SCRIPT = """
if redis.call('EXISTS', KEYS[2]) == 1 then return 1 end
local current = redis.call('GET', KEYS[1])
if ARGV[1] == '1' then
  if current then return 0 end
elseif current ~= ARGV[2] then
  return 0
end
if ARGV[3] == '1' then
  redis.call('DEL', KEYS[1])
else
  redis.call('SET', KEYS[1], ARGV[4])
end
redis.call('SET', KEYS[2], '1', 'EX', ARGV[5])
return 1
"""

APPLIED_TOKEN_TTL_SECONDS = 300


class RedisStore:
    """Hierarchical JSON documents stored as Redis strings, indexes as sorted sets."""

    def __init__(
        self,
        redis_client: Redis | None = None,
        *,
        key_prefix: str | None = None,
        retry_policy: RetryPolicy | None = None,
        max_patch_attempts: int = 5,
    ) -> None:
        self._redis = redis_client or Redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        self._prefix = key_prefix if key_prefix is not None else settings.store_key_prefix
        self._retry = retry_policy or RetryPolicy(
            attempts=settings.store_retry_attempts,
            base_seconds=settings.store_retry_base_seconds,
            multiplier=settings.store_retry_multiplier,
        )
        self._max_patch_attempts = max_patch_attempts
        self._cas = self._redis.register_script(_CAS_SCRIPT)

    @classmethod
    def from_settings(cls, config: Settings) -> "RedisStore":
        client = Redis.from_url(config.redis_url, encoding="utf-8", decode_responses=True)
        return cls(
            client,
            key_prefix=config.store_key_prefix,
            retry_policy=RetryPolicy(
                attempts=config.store_retry_attempts,
                base_seconds=config.store_retry_base_seconds,
                multiplier=config.store_retry_multiplier,
            ),
        )

    def _key(self, path: str) -> str:
        return f"{self._prefix}:{path}"

    def _index_key(self, index: str) -> str:
        return f"{self._prefix}:index:{index}"

    def _token_key(self, token: str) -> str:
        return f"{self._prefix}:cas:{token}"

    async def _call(self, op_name: str, path: str, func: Callable[[], Awaitable[T]]) -> T:
        async def attempt() -> T:
            try:
                return await func()
            except (RedisConnectionError, RedisTimeoutError) as exc:
                raise TransientStoreError(str(exc)) from exc

        return await with_retries(attempt, policy=self._retry, op_name=op_name, path=path)

    async def get(self, path: str) -> Record | None:
        raw = await self._call("get", path, lambda: self._redis.get(self._key(path)))
        return json.loads(raw) if raw is not None else None

    async def put(self, path: str, value: Record) -> None:
        payload = canonical_json(value)
        await self._call("put", path, lambda: self._redis.set(self._key(path), payload))

    async def patch(self, path: str, fields: Record) -> Record:
        def merge(current: Record | None) -> Record:
            merged: dict[str, Any] = dict(current or {})
            merged.update(fields)
            return merged

        result = await cas_update(self, path, merge, max_attempts=self._max_patch_attempts)
        return result.current or {}

    async def compare_and_swap(self, path: str, expected: Record | None, new: Record | None) -> bool:
        args = [
            "1" if expected is None else "0",
            canonical_json(expected) if expected is not None else "",
            "1" if new is None else "0",
            canonical_json(new) if new is not None else "",
            APPLIED_TOKEN_TTL_SECONDS,
        ]
        keys = [self._key(path), self._token_key(uuid4().hex)]
        swapped = await self._call("cas", path, lambda: self._cas(keys=keys, args=args))
        return bool(swapped)

    async def delete(self, path: str) -> None:
        await self._call("delete", path, lambda: self._redis.delete(self._key(path)))

    async def list_children(self, prefix: str) -> dict[str, Record]:
        base = self._key(prefix.rstrip("/")) + "/"

        async def scan() -> dict[str, Record]:
            keys = [key async for key in self._redis.scan_iter(match=f"{base}*", count=500)]
            direct = [key for key in keys if "/" not in key[len(base):]]
            if not direct:
                return {}
            values = await self._redis.mget(direct)
            return {
                key[len(base):]: json.loads(raw)
                for key, raw in zip(direct, values)
                if raw is not None
            }

        children = await self._call("list", prefix, scan)
        logger.debug("Listed store children", prefix=prefix, count=len(children))
        return children

    async def index_add(self, index: str, member: str, score: float) -> None:
        await self._call("index_add", index, lambda: self._redis.zadd(self._index_key(index), {member: score}))

    async def index_remove(self, index: str, member: str) -> None:
        await self._call("index_remove", index, lambda: self._redis.zrem(self._index_key(index), member))

    async def index_members(self, index: str, *, limit: int | None = None) -> list[str]:
        if limit is not None and limit <= 0:
            return []
        stop = -1 if limit is None else limit - 1
        members = await self._call("index_members", index, lambda: self._redis.zrange(self._index_key(index), 0, stop))
        return list(members)

    async def close(self) -> None:
        await self._redis.aclose()
