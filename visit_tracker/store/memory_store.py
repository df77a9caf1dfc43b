"""In-process key/value store with TTL semantics.

Used when no Redis is configured. State lives in one process, so it is only
correct for single-instance deployments.
"""

from typing import Callable, Dict, Optional, Tuple
import time
import threading


class MemoryKVStore:
    backend = "memory"

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        # key -> (value, expires_at epoch seconds)
        self._data: Dict[str, Tuple[str, float]] = {}

    def _live(self, key: str) -> Optional[str]:
        rec = self._data.get(key)
        if rec is None:
            return None
        value, expires_at = rec
        if self._clock() >= expires_at:
            self._data.pop(key, None)
            return None
        return value

    def get(self, key: str) -> Optional[str]:
        """Return the stored value if not expired, else None."""
        with self._lock:
            return self._live(key)

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._data[key] = (value, self._clock() + max(1, int(ttl_seconds)))

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def ttl(self, key: str) -> Optional[int]:
        """Remaining seconds to live, None when absent."""
        with self._lock:
            if self._live(key) is None:
                return None
            return int(self._data[key][1] - self._clock())

    def acquire_lease(self, key: str, token: str, ttl_ms: int) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (token, self._clock() + ttl_ms / 1000.0)
            return True

    def release_lease(self, key: str, token: str) -> None:
        with self._lock:
            if self._live(key) == token:
                self._data.pop(key, None)

    def renew_lease(self, key: str, token: str, ttl_ms: int) -> bool:
        with self._lock:
            if self._live(key) != token:
                return False
            self._data[key] = (token, self._clock() + ttl_ms / 1000.0)
            return True

    def ping(self) -> bool:
        return True
