"""Per-key serialization for session updates.

Every read-modify-write on a (user, location) key runs inside ``hold``:
an in-process asyncio.Lock orders requests within this worker, and a
store-side lease (SET NX PX + token) orders them across workers that share
the store. Different keys never wait on each other.

A lease can run out while a slow store call is retried. Callers confirm it
right before they write: confirming extends a lease still owned and raises
SessionBusy for one that has passed to another worker.
"""

import asyncio
import secrets
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from visit_tracker.errors import SessionBusy, StoreUnavailable
from visit_tracker.obs.logger import log_event
from visit_tracker.store import KVStore, STORE_ERRORS


class Lease:
    def __init__(self, store: KVStore, key: str, token: str, ttl_ms: int):
        self.store = store
        self.key = key
        self.token = token
        self.ttl_ms = ttl_ms

    def confirm(self) -> None:
        try:
            owned = self.store.renew_lease(self.key, self.token, self.ttl_ms)
        except STORE_ERRORS as e:
            raise StoreUnavailable("Session store unavailable, try again shortly.") from e
        if not owned:
            log_event("lease_lost", level="WARNING", key=self.key)
            raise SessionBusy("Another update for this session is in progress. Retry shortly.")


class KeyedSerializer:
    def __init__(
        self,
        store: KVStore,
        lease_ttl_ms: int = 5000,
        wait_seconds: float = 3.0,
        poll_base: float = 0.01,
        poll_max: float = 0.2,
    ):
        self.store = store
        self.lease_ttl_ms = lease_ttl_ms
        self.wait_seconds = wait_seconds
        self.poll_base = poll_base
        self.poll_max = poll_max
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}
        self._locks_lock = asyncio.Lock()

    async def _local_lock(self, key: str) -> asyncio.Lock:
        async with self._locks_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
            self._waiters[key] = self._waiters.get(key, 0) + 1
            return lock

    async def _drop_local_lock(self, key: str) -> None:
        async with self._locks_lock:
            remaining = self._waiters.get(key, 1) - 1
            if remaining <= 0:
                self._waiters.pop(key, None)
                self._locks.pop(key, None)
            else:
                self._waiters[key] = remaining

    def active_keys(self) -> int:
        return len(self._locks)

    async def _acquire_lease(self, key: str, token: str) -> None:
        deadline = time.monotonic() + self.wait_seconds
        delay = self.poll_base
        while True:
            try:
                if self.store.acquire_lease(key, token, self.lease_ttl_ms):
                    return
            except STORE_ERRORS as e:
                raise StoreUnavailable("Session store unavailable, try again shortly.") from e
            if time.monotonic() >= deadline:
                log_event("lease_timeout", level="WARNING", key=key, waited_s=self.wait_seconds)
                raise SessionBusy("Another update for this session is in progress. Retry shortly.")
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.poll_max)

    def _release_lease(self, key: str, token: str) -> None:
        try:
            self.store.release_lease(key, token)
        except STORE_ERRORS as e:
            # The lease expires on its own after lease_ttl_ms
            log_event("lease_release_failed", level="WARNING", key=key, error=str(e))

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[Lease]:
        lock = await self._local_lock(key)
        try:
            async with lock:
                token = secrets.token_hex(16)
                await self._acquire_lease(key, token)
                try:
                    yield Lease(self.store, key, token, self.lease_ttl_ms)
                finally:
                    self._release_lease(key, token)
        finally:
            await self._drop_local_lock(key)
