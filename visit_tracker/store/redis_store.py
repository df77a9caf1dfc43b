from typing import Optional
import redis

from visit_tracker.config import settings


# Delete the lease only if we still own it
_RELEASE_LEASE_LUA = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

# Extend the lease only if we still own it
_RENEW_LEASE_LUA = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('pexpire', KEYS[1], ARGV[2])
end
return 0
"""


class RedisKVStore:
    backend = "redis"

    def __init__(self, redis_url: str = None, client: Optional[redis.Redis] = None):
        self.redis_url = redis_url or settings.REDIS_URL
        self.client = client or redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
        )
        self._release_script = self.client.register_script(_RELEASE_LEASE_LUA)
        self._renew_script = self.client.register_script(_RENEW_LEASE_LUA)

    def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self.client.setex(key, max(1, int(ttl_seconds)), value)

    def delete(self, key: str) -> None:
        self.client.delete(key)

    def ttl(self, key: str) -> Optional[int]:
        remaining = self.client.ttl(key)
        return remaining if remaining is not None and remaining >= 0 else None

    def acquire_lease(self, key: str, token: str, ttl_ms: int) -> bool:
        return bool(self.client.set(key, token, nx=True, px=ttl_ms))

    def release_lease(self, key: str, token: str) -> None:
        self._release_script(keys=[key], args=[token])

    def renew_lease(self, key: str, token: str, ttl_ms: int) -> bool:
        return bool(self._renew_script(keys=[key], args=[token, ttl_ms]))

    def ping(self) -> bool:
        return bool(self.client.ping())
