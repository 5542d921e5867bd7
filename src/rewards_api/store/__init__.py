"""Key-value store adapters."""

from rewards_api.core.settings import Settings
from rewards_api.store.base import (
    CasResult,
    KeyValueStore,
    Record,
    RetryPolicy,
    TransientStoreError,
    canonical_json,
    cas_update,
    next_sequence,
)
from rewards_api.store.memory import InMemoryStore
from rewards_api.store.redis_store import RedisStore


def build_store(config: Settings) -> KeyValueStore:
    """Instantiate the backend selected by ``store_backend``."""

    if config.store_backend == "memory":
        return InMemoryStore(
            retry_policy=RetryPolicy(
                attempts=config.store_retry_attempts,
                base_seconds=config.store_retry_base_seconds,
                multiplier=config.store_retry_multiplier,
            )
        )
    return RedisStore.from_settings(config)


__all__ = [
    "CasResult",
    "InMemoryStore",
    "KeyValueStore",
    "Record",
    "RedisStore",
    "RetryPolicy",
    "TransientStoreError",
    "build_store",
    "canonical_json",
    "cas_update",
    "next_sequence",
]
