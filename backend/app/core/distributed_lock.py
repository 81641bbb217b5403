"""
Per-category locking for boost queue mutations.

Every state-mutating queue operation of a category runs under one lock.
With Redis connected the lock is shared by all workers; otherwise an
in-process asyncio lock per category is used.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from app.exceptions import ConcurrencyConflictError

logger = logging.getLogger(__name__)


def category_lock_resource(category_id) -> str:
    return f"boost_queue:{category_id}"


class DistributedLockManager:
    # Queue mutations only touch the database, so a short TTL suffices
    DEFAULT_LOCK_TTL = 30
    DEFAULT_ACQUIRE_TIMEOUT = 10
    RETRY_INTERVAL = 0.1

    def __init__(self, cache=None):
        self._cache = cache
        self._fallback_locks: dict[str, asyncio.Lock] = {}
        self._fallback_locks_lock = asyncio.Lock()
        self._active_locks: dict[str, str] = {}  # resource -> lock_id

    async def _get_cache(self):
        if self._cache is None:
            from app.core.cache import get_cache
            self._cache = await get_cache()
        return self._cache

    async def _get_fallback_lock(self, resource: str) -> asyncio.Lock:
        async with self._fallback_locks_lock:
            return self._fallback_locks.setdefault(resource, asyncio.Lock())

    async def _acquire_redis(self, cache, resource: str, lock_id: str, ttl: int, timeout: float) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not await cache.acquire_lock(resource, lock_id, ttl):
            if loop.time() >= deadline:
                logger.warning(f"Timeout waiting for distributed lock on {resource} after {timeout}s")
                return False
            await asyncio.sleep(self.RETRY_INTERVAL)
        logger.debug(f"Acquired distributed lock for {resource} with lock_id {lock_id[:8]}")
        return True

    async def acquire(
        self,
        resource: str,
        ttl: int = DEFAULT_LOCK_TTL,
        timeout: float = DEFAULT_ACQUIRE_TIMEOUT,
        lock_id: Optional[str] = None
    ) -> tuple[bool, str]:
        """
        Waits up to ``timeout`` seconds for ``resource``.
        Returns (acquired, lock_id); the id is needed to release.
        """
        lock_id = lock_id or str(uuid.uuid4())
        cache = await self._get_cache()

        if cache.is_connected:
            acquired = await self._acquire_redis(cache, resource, lock_id, ttl, timeout)
        else:
            fallback_lock = await self._get_fallback_lock(resource)
            try:
                await asyncio.wait_for(fallback_lock.acquire(), timeout=timeout)
                acquired = True
            except asyncio.TimeoutError:
                logger.warning(f"Timeout waiting for fallback lock on {resource}")
                acquired = False

        if acquired:
            self._active_locks[resource] = lock_id
        return acquired, lock_id

    async def release(self, resource: str, lock_id: str) -> bool:
        cache = await self._get_cache()

        if self._active_locks.get(resource) == lock_id:
            del self._active_locks[resource]

        if cache.is_connected:
            released = await cache.release_lock(resource, lock_id)
            if not released:
                logger.warning(f"Failed to release distributed lock for {resource} (may have expired)")
            return released

        async with self._fallback_locks_lock:
            lock = self._fallback_locks.get(resource)
            if lock and lock.locked():
                lock.release()
                return True
        return False

    @asynccontextmanager
    async def category_lock(self, category_id, timeout: float = DEFAULT_ACQUIRE_TIMEOUT):
        """
        Serializes queue mutations for one category. A lock that cannot be
        obtained in time is reported as a concurrency conflict so the caller
        retries the whole operation.
        """
        resource = category_lock_resource(category_id)
        acquired, lock_id = await self.acquire(resource, timeout=timeout)
        if not acquired:
            raise ConcurrencyConflictError(f"Boost queue for category {category_id} is busy. Please retry.")

        try:
            yield lock_id
        finally:
            await self.release(resource, lock_id)

    def get_active_locks_count(self) -> int:
        return len(self._active_locks)


_lock_manager: Optional[DistributedLockManager] = None


def get_lock_manager() -> DistributedLockManager:
    global _lock_manager
    if _lock_manager is None:
        _lock_manager = DistributedLockManager()
    return _lock_manager
