from __future__ import annotations

import secrets
from typing import Optional

import redis.asyncio as aioredis


class RedisCache:
    """Thin Redis wrapper holding short-lived per-user locks."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Only the holder that set the token may delete the key
    _RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _lock_key(name: str) -> str:
        return f"gatehouse:lock:{name}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def acquire_lock(self, name: str, ttl_ms: int) -> Optional[str]:
        """Try once to take the lock; returns the holder token or ``None``."""
        token = secrets.token_hex(16)
        acquired = await self.client.set(self._lock_key(name), token, px=ttl_ms, nx=True)
        return token if acquired else None

    async def release_lock(self, name: str, token: str) -> bool:
        released = await self.client.eval(self._RELEASE_SCRIPT, 1, self._lock_key(name), token)
        return bool(released)

    async def close(self) -> None:
        await self.client.aclose()
