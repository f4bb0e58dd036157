from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from redis.exceptions import RedisError

from gatehouse.logging import get_logger
from gatehouse.service.errors import ServiceUnavailableError
from gatehouse.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class UserLocks:
    """Serializes critical sections per user id.

    Without a cache the locks are in-process ``asyncio.Lock`` objects,
    created on demand and dropped once nobody holds or waits on them. With
    a ``RedisCache`` the lock is a leased Redis key so several workers share
    it. Failing to acquire within ``timeout`` raises the retryable
    ``ServiceUnavailableError``.
    """

    def __init__(
        self,
        *,
        timeout: float = 10.0,
        cache: Optional[RedisCache] = None,
        lease_ms: int = 30_000,
        poll_interval: float = 0.05,
    ) -> None:
        self.timeout = timeout
        self.cache = cache
        self.lease_ms = lease_ms
        self.poll_interval = poll_interval
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        if self.cache is not None:
            async with self._hold_redis(user_id):
                yield
            return
        async with self._hold_local(user_id):
            yield

    @asynccontextmanager
    async def _hold_local(self, user_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._waiters[user_id] = self._waiters.get(user_id, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), self.timeout)
            except asyncio.TimeoutError:
                logger.warning("user_lock_timeout", user_id=user_id, backend="local")
                raise ServiceUnavailableError("resource busy, retry")
            try:
                yield
            finally:
                lock.release()
        finally:
            self._waiters[user_id] -= 1
            if not self._waiters[user_id]:
                del self._waiters[user_id]
                self._locks.pop(user_id, None)

    async def _try_redis(self, name: str) -> Optional[str]:
        try:
            return await self.cache.acquire_lock(name, self.lease_ms)
        except RedisError as exc:
            logger.error("user_lock_backend_error", lock=name, error=str(exc))
            raise ServiceUnavailableError("lock backend unavailable") from exc

    @asynccontextmanager
    async def _hold_redis(self, user_id: str) -> AsyncIterator[None]:
        name = f"user:{user_id}"
        deadline = time.monotonic() + self.timeout
        token = await self._try_redis(name)
        while token is None:
            if time.monotonic() >= deadline:
                logger.warning("user_lock_timeout", user_id=user_id, backend="redis")
                raise ServiceUnavailableError("resource busy, retry")
            await asyncio.sleep(self.poll_interval)
            token = await self._try_redis(name)
        try:
            yield
        finally:
            if not await self.cache.release_lock(name, token):
                # Lease ran out while held; another worker may have taken over
                logger.warning("user_lock_lease_expired", user_id=user_id)

    def active_locks(self) -> int:
        return len(self._locks)
