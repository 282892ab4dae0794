"""
Owner-scoped cache service.

All cache keys include the owner (tenant) id so catalog data never leaks
between operators. Keys follow ``{namespace}:{owner_id}:{key}``.

Supports:
1. Redis (preferred for production)
2. In-memory fallback (for development/testing)
"""
import json
from typing import Any, Optional, Dict
from datetime import datetime, timedelta, timezone
from abc import ABC, abstractmethod
import asyncio
import logging

from shiprate.config import settings

logger = logging.getLogger(__name__)


class CacheBackend(ABC):
    """Abstract cache backend interface."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache."""
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        """Set value in cache with TTL (seconds)."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete key from cache."""
        pass

    @abstractmethod
    async def clear_pattern(self, pattern: str) -> int:
        """Clear all keys matching pattern."""
        pass


class InMemoryCache(CacheBackend):
    """
    In-memory cache for development/fallback.

    Not shared across server instances; prefer Redis in production.
    """

    def __init__(self):
        self._cache: Dict[str, tuple[Any, datetime]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            if key in self._cache:
                value, expires_at = self._cache[key]
                if expires_at > datetime.now(timezone.utc):
                    return value
                else:
                    del self._cache[key]
            return None

    async def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        async with self._lock:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl)
            self._cache[key] = (value, expires_at)
            return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            if key in self._cache:
                del self._cache[key]
                return True
            return False

    async def clear_pattern(self, pattern: str) -> int:
        """Clear keys matching pattern (simple prefix match)."""
        async with self._lock:
            prefix = pattern.rstrip('*')
            keys_to_delete = [k for k in self._cache.keys() if k.startswith(prefix)]
            for key in keys_to_delete:
                del self._cache[key]
            return len(keys_to_delete)

    async def cleanup_expired(self) -> int:
        """Remove expired entries. Call periodically to prevent memory bloat."""
        async with self._lock:
            now = datetime.now(timezone.utc)
            expired_keys = [
                k for k, (_, expires_at) in self._cache.items()
                if expires_at <= now
            ]
            for key in expired_keys:
                del self._cache[key]
            return len(expired_keys)


class RedisCache(CacheBackend):
    """
    Redis cache backend for production.

    Redis errors are logged and reported as a miss so lookups fall
    through to the database.
    """

    def __init__(self, redis_url: str):
        self._redis_url = redis_url
        self._client = None

    async def _get_client(self):
        if self._client is None:
            import redis.asyncio as redis
            self._client = redis.from_url(self._redis_url, decode_responses=True)
        return self._client

    async def get(self, key: str) -> Optional[Any]:
        try:
            client = await self._get_client()
            value = await client.get(key)
            if value:
                return json.loads(value)
            return None
        except Exception as e:
            logger.warning(f"Redis get failed for {key}: {e}")
            return None

    async def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        try:
            client = await self._get_client()
            await client.set(key, json.dumps(value), ex=ttl)
            return True
        except Exception as e:
            logger.warning(f"Redis set failed for {key}: {e}")
            return False

    async def delete(self, key: str) -> bool:
        try:
            client = await self._get_client()
            await client.delete(key)
            return True
        except Exception as e:
            logger.warning(f"Redis delete failed for {key}: {e}")
            return False

    async def clear_pattern(self, pattern: str) -> int:
        try:
            client = await self._get_client()
            cursor = 0
            deleted = 0
            while True:
                cursor, keys = await client.scan(cursor, match=pattern, count=100)
                if keys:
                    await client.delete(*keys)
                    deleted += len(keys)
                if cursor == 0:
                    break
            return deleted
        except Exception as e:
            logger.warning(f"Redis clear failed for {pattern}: {e}")
            return 0


class CacheService:
    """
    Owner-scoped cache with JSON values and TTL management.

    Examples:
        shiprate:owner123:services
        shiprate:owner123:policy:seller456
        shiprate:owner123:cards:delhivery:surface
    """

    def __init__(self, backend: CacheBackend, namespace: str = "shiprate"):
        self._backend = backend
        self._namespace = namespace

    @property
    def backend(self) -> CacheBackend:
        return self._backend

    def _make_key(self, owner_id: str, key: str) -> str:
        if not owner_id:
            logger.warning(f"Cache key created without owner_id: {key}")
        return f"{self._namespace}:{owner_id}:{key}"

    def _make_global_key(self, key: str) -> str:
        """Global key for data shared by all owners (e.g. carrier auth tokens)."""
        return f"{self._namespace}:global:{key}"

    async def get(self, owner_id: str, key: str) -> Optional[Any]:
        return await self._backend.get(self._make_key(owner_id, key))

    async def set(self, owner_id: str, key: str, value: Any, ttl: int = 3600) -> bool:
        return await self._backend.set(self._make_key(owner_id, key), value, ttl)

    async def clear_pattern(self, owner_id: str, pattern: str) -> int:
        return await self._backend.clear_pattern(self._make_key(owner_id, pattern))

    async def get_global(self, key: str) -> Optional[Any]:
        return await self._backend.get(self._make_global_key(key))

    async def set_global(self, key: str, value: Any, ttl: int = 3600) -> bool:
        return await self._backend.set(self._make_global_key(key), value, ttl)

    async def delete_global(self, key: str) -> bool:
        return await self._backend.delete(self._make_global_key(key))


# Singleton cache instance
_cache_instance: Optional[CacheService] = None


def get_cache() -> CacheService:
    """Get the cache service singleton."""
    global _cache_instance

    if _cache_instance is None:
        if settings.REDIS_URL and settings.CACHE_ENABLED:
            backend = RedisCache(settings.REDIS_URL)
            logger.info("Cache initialized with Redis backend")
        else:
            backend = InMemoryCache()
            logger.info("Cache initialized with in-memory backend")

        _cache_instance = CacheService(backend, namespace=settings.CACHE_NAMESPACE)

    return _cache_instance
