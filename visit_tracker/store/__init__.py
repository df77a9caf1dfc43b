"""Keyed TTL store backends and the factory that picks one at startup."""

from typing import Optional, Protocol, Union

import redis

from visit_tracker.config import Settings, settings as default_settings
from visit_tracker.obs.logger import log_event
from visit_tracker.store.memory_store import MemoryKVStore
from visit_tracker.store.redis_store import RedisKVStore


# Errors treated as transient store failures (retried, then surfaced as 503)
STORE_ERRORS = (redis.RedisError, ConnectionError, TimeoutError)


class KVStore(Protocol):
    backend: str

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    def delete(self, key: str) -> None: ...

    def acquire_lease(self, key: str, token: str, ttl_ms: int) -> bool: ...

    def release_lease(self, key: str, token: str) -> None: ...

    def renew_lease(self, key: str, token: str, ttl_ms: int) -> bool: ...

    def ping(self) -> bool: ...


def create_store(config: Settings = None) -> Union[RedisKVStore, MemoryKVStore]:
    config = config or default_settings
    if not config.REDIS_URL:
        log_event(
            "store_fallback_memory",
            level="WARNING",
            reason="REDIS_URL not set",
            note="in-process store, single-instance only",
        )
        return MemoryKVStore()

    store = RedisKVStore(config.REDIS_URL)
    try:
        store.ping()
    except STORE_ERRORS as e:
        if config.ALLOW_MEMORY_FALLBACK:
            log_event(
                "store_fallback_memory",
                level="WARNING",
                reason=str(e),
                note="sessions are not shared across instances",
            )
            return MemoryKVStore()
        log_event("store_unreachable", level="ERROR", error=str(e))
    return store


__all__ = ["KVStore", "MemoryKVStore", "RedisKVStore", "STORE_ERRORS", "create_store"]
