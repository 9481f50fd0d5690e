"""
Catalog Listing Cache.

Short-lived read-through cache for catalog listings. It is never a source
of truth: every mutation that changes available stock calls
``invalidate()`` after its transaction commits.

Supports:
1. Redis (shared across workers)
2. In-memory fallback (single process, development/testing)

Usage:
    cache = get_catalog_cache()

    listing = await cache.get_listing(params)
    if listing is None:
        listing = await build_listing(params)
        await cache.set_listing(params, listing)

    # After a stock-changing commit
    await cache.invalidate()
"""
import json
import hashlib
from typing import Any, Optional, Dict
from datetime import datetime, timedelta, timezone
from abc import ABC, abstractmethod
import asyncio
import logging

from app.config import settings

logger = logging.getLogger(__name__)


class CacheBackend(ABC):
    """Abstract cache backend interface."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache."""
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: float = 3600) -> bool:
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

    Note: does not share entries across server processes, so each worker
    invalidates only its own copy.
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

    async def set(self, key: str, value: Any, ttl: float = 3600) -> bool:
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


class RedisCache(CacheBackend):
    """Redis cache backend for multi-worker deployments."""

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

    async def set(self, key: str, value: Any, ttl: float = 3600) -> bool:
        try:
            client = await self._get_client()
            await client.set(key, json.dumps(value), px=max(int(ttl * 1000), 1))
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


class CatalogCache:
    """
    Catalog listing cache with explicit TTL and invalidation.

    Cache keys follow the format:

        {namespace}:catalog:{params_hash}
    """

    def __init__(
        self,
        backend: CacheBackend,
        namespace: str = "orders",
        ttl: Optional[float] = None,
    ):
        self._backend = backend
        self._namespace = namespace
        self._ttl = ttl if ttl is not None else settings.CATALOG_CACHE_TTL_SECONDS

    @property
    def ttl(self) -> float:
        return self._ttl

    @staticmethod
    def hash_params(params: dict) -> str:
        """Create hash from query parameters."""
        sorted_params = sorted((str(k), str(v)) for k, v in params.items())
        param_str = json.dumps(sorted_params, sort_keys=True)
        return hashlib.md5(param_str.encode()).hexdigest()[:12]

    def _listing_key(self, params: dict) -> str:
        return f"{self._namespace}:catalog:{self.hash_params(params)}"

    async def get_listing(self, params: dict) -> Optional[Any]:
        """Get a cached catalog listing for these query parameters."""
        return await self._backend.get(self._listing_key(params))

    async def set_listing(self, params: dict, data: Any) -> bool:
        """Cache a catalog listing for these query parameters."""
        return await self._backend.set(self._listing_key(params), data, self._ttl)

    async def invalidate(self) -> int:
        """Drop every cached listing. Called after stock-changing commits."""
        count = await self._backend.clear_pattern(f"{self._namespace}:catalog:*")
        logger.debug(f"Catalog cache invalidated ({count} entries)")
        return count


# Process-scoped instance, wired into services by the API and scheduler
_cache_instance: Optional[CatalogCache] = None


def get_catalog_cache() -> CatalogCache:
    """Get the process-wide catalog cache."""
    global _cache_instance

    if _cache_instance is None:
        if settings.REDIS_URL and settings.CACHE_ENABLED:
            backend = RedisCache(settings.REDIS_URL)
            logger.info("Catalog cache initialized with Redis backend")
        else:
            backend = InMemoryCache()
            logger.info("Catalog cache initialized with in-memory backend")

        _cache_instance = CatalogCache(backend)

    return _cache_instance


async def invalidate_after_commit(cache: Optional[CatalogCache]) -> None:
    """
    Signal catalog invalidation once a stock-changing transaction committed.

    The commit already happened, so a cache failure is logged and not raised.
    Stale entries expire on their own after the listing TTL.
    """
    if cache is None:
        return
    try:
        await cache.invalidate()
    except Exception as e:
        logger.warning(f"Catalog cache invalidation failed: {e}")
