"""
Redis cache service.
Provides:
- Global boost statistics (30s TTL)
- Per-category queue snapshots (30s TTL)
- Distributed locks for per-category queue mutations
- Background service health heartbeats
"""
import json
import logging
import time
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

import redis.asyncio as redis

from app.core.config import settings

logger = logging.getLogger(__name__)

# Deletes the lock key only while it still holds the caller's token
RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class BoostJSONEncoder(json.JSONEncoder):
    """JSON encoder for the Decimal, UUID and datetime values found in queue snapshots."""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, UUID):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


class CacheService:
    """
    Redis-based cache for the boost engine.
    Falls back gracefully if Redis is unavailable or not configured.
    """

    # TTL constants in seconds
    TTL_BOOST_STATS = 30
    TTL_QUEUE_SNAPSHOT = 30
    TTL_SERVICE_HEALTH = 300

    # Key prefixes
    PREFIX_BOOST_STATS = "boost_stats"
    PREFIX_QUEUE_SNAPSHOT = "boost_queue_snapshot"
    PREFIX_DISTRIBUTED_LOCK = "lock"
    PREFIX_SERVICE_HEALTH = "service_health"

    def __init__(self, redis_url: Optional[str] = None):
        self._redis_url = redis_url
        self._redis: Optional[redis.Redis] = None
        self._connected = False
        self._connection_attempted = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> bool:
        """
        Initialize Redis connection.
        Returns True if connected, False otherwise.
        """
        if self._connection_attempted:
            return self._connected

        self._connection_attempted = True
        if not self._redis_url:
            logger.info("REDIS_URL not configured. Caching and distributed locks disabled.")
            return False

        try:
            self._redis = redis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5
            )
            await self._redis.ping()
            self._connected = True
            logger.info(f"Connected to Redis at {self._redis_url}")
            return True
        except Exception as e:
            logger.warning(f"Redis connection failed: {e}. Caching disabled.")
            self._connected = False
            self._redis = None
            return False

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._connected = False

    def _make_key(self, prefix: str, *parts: str) -> str:
        return f"{prefix}:{':'.join(str(p) for p in parts)}"

    async def get(self, key: str) -> Optional[Any]:
        if not self._connected:
            return None

        try:
            value = await self._redis.get(key)
            if value:
                return json.loads(value)
            return None
        except Exception as e:
            logger.warning(f"Cache get failed for {key}: {e}")
            return None

    async def set(self, key: str, value: Any, ttl: int = 300) -> bool:
        if not self._connected:
            return False

        try:
            serialized = json.dumps(value, cls=BoostJSONEncoder)
            await self._redis.setex(key, ttl, serialized)
            return True
        except Exception as e:
            logger.warning(f"Cache set failed for {key}: {e}")
            return False

    async def delete(self, key: str) -> bool:
        if not self._connected:
            return False

        try:
            await self._redis.delete(key)
            return True
        except Exception as e:
            logger.warning(f"Cache delete failed for {key}: {e}")
            return False

    # ==================== Boost statistics ====================

    async def get_boost_stats(self) -> Optional[dict]:
        return await self.get(self._make_key(self.PREFIX_BOOST_STATS, "global"))

    async def set_boost_stats(self, stats: dict) -> bool:
        return await self.set(self._make_key(self.PREFIX_BOOST_STATS, "global"), stats, self.TTL_BOOST_STATS)

    async def get_queue_snapshot(self, category_id) -> Optional[dict]:
        return await self.get(self._make_key(self.PREFIX_QUEUE_SNAPSHOT, category_id))

    async def set_queue_snapshot(self, category_id, snapshot: dict) -> bool:
        key = self._make_key(self.PREFIX_QUEUE_SNAPSHOT, category_id)
        return await self.set(key, snapshot, self.TTL_QUEUE_SNAPSHOT)

    async def invalidate_boost_views(self, category_id) -> None:
        """Drops cached reads that a mutation of this category made stale."""
        await self.delete(self._make_key(self.PREFIX_BOOST_STATS, "global"))
        await self.delete(self._make_key(self.PREFIX_QUEUE_SNAPSHOT, category_id))

    # ==================== Distributed Locking ====================

    async def acquire_lock(
        self,
        resource: str,
        lock_id: str,
        ttl_seconds: int = 30
    ) -> bool:
        """
        Acquire a distributed lock for a resource.

        Args:
            resource: The resource to lock (e.g., "boost_queue:<category_id>")
            lock_id: Unique identifier for this lock attempt
            ttl_seconds: Lock timeout to prevent deadlocks

        Returns:
            True if lock acquired, False otherwise
        """
        if not self._connected:
            return True  # Callers fall back to in-process locking

        try:
            key = self._make_key(self.PREFIX_DISTRIBUTED_LOCK, resource)
            result = await self._redis.set(key, lock_id, nx=True, ex=ttl_seconds)
            return result is not None
        except Exception as e:
            logger.warning(f"Lock acquisition failed for {resource}: {e}")
            return True

    async def release_lock(self, resource: str, lock_id: str) -> bool:
        """
        Release a distributed lock, only if ``lock_id`` still owns it.
        """
        if not self._connected:
            return True

        try:
            key = self._make_key(self.PREFIX_DISTRIBUTED_LOCK, resource)
            result = await self._redis.eval(RELEASE_LOCK_SCRIPT, 1, key, lock_id)
            return result == 1
        except Exception as e:
            logger.warning(f"Lock release failed for {resource}: {e}")
            return False

    # ==================== Service Health ====================

    async def update_service_health(
        self,
        service_name: str,
        status: str,
        metrics: dict = None
    ) -> bool:
        """
        Update health status for a background service.

        Args:
            service_name: Name of the service (e.g., "boost_queue_reconciler")
            status: Current status ("running", "error", "stopped")
            metrics: Optional metrics dict (cycle_count, last_error, etc.)
        """
        health_data = {"status": status, "last_heartbeat": time.time(), "metrics": metrics or {}}
        # Expires unless refreshed, so a dead service stops reporting
        return await self.set(
            self._make_key(self.PREFIX_SERVICE_HEALTH, service_name), health_data, self.TTL_SERVICE_HEALTH
        )

    async def get_service_health(self, service_name: str) -> Optional[dict]:
        return await self.get(self._make_key(self.PREFIX_SERVICE_HEALTH, service_name))

    async def ping(self) -> bool:
        if not self._connected:
            return False
        try:
            return bool(await self._redis.ping())
        except Exception as e:
            logger.warning(f"Redis ping failed: {e}")
            return False


# Global cache instance
_cache_instance: Optional[CacheService] = None


async def get_cache() -> CacheService:
    """Get the global cache instance, initializing if needed."""
    global _cache_instance
    if _cache_instance is None:
        _cache_instance = CacheService(settings.REDIS_URL)
        await _cache_instance.connect()
    return _cache_instance


async def close_cache():
    """Close the global cache instance."""
    global _cache_instance
    if _cache_instance:
        await _cache_instance.close()
        _cache_instance = None
