#!/usr/bin/env python3
"""
Read-through cache for per-user lists and statistics.

Two backends share one small async interface (``get``, ``set``,
``delete``, ``invalidate_pattern``):

- ``MemoryCache`` keeps entries in-process, for tests and single-process
  deployments.
- ``RedisCache`` stores JSON values in Redis and invalidates with
  ``SCAN MATCH`` so large keyspaces are never blocked by ``KEYS``.

Cache failures are logged and treated as misses; a cache outage never
fails an ingestion write.

Key scheme (glob patterns are used for invalidation)::

    feed:<name>:user:<user_id>      feed lists, single feeds, statistics
    article:<name>:user:<user_id>   article lists
"""

from copy import deepcopy
from fnmatch import fnmatchcase
from time import monotonic
from typing import Any, Callable, Dict, Optional, Tuple
import json

from redis.asyncio import Redis
from redis.exceptions import RedisError

from config import config, get_logger

logger = get_logger("cache")


def feed_pattern(user_id: str) -> str:
    return f"feed:*:user:{user_id}"


def feed_list_pattern(user_id: str) -> str:
    return f"feed:feeds:*:user:{user_id}"


def article_pattern(user_id: str) -> str:
    return f"article:*:user:{user_id}"


def statistics_key(user_id: str) -> str:
    return f"feed:statistics:user:{user_id}"


def feed_list_key(user_id: str, page: int, per_page: int) -> str:
    return f"feed:feeds:page:{page}:per:{per_page}:user:{user_id}"


class MemoryCache:
    """In-process cache with per-entry TTL."""

    def __init__(self, clock: Callable[[], float] = monotonic) -> None:
        self._store: Dict[str, Tuple[Optional[float], Any]] = {}
        self._clock = clock

    async def get(self, key: str) -> Any:
        entry = self._store.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at is not None and self._clock() >= expires_at:
            self._store.pop(key, None)
            return None
        return deepcopy(value)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl if ttl else None
        self._store[key] = (expires_at, deepcopy(value))

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)

    async def invalidate_pattern(self, pattern: str) -> int:
        doomed = [key for key in self._store if fnmatchcase(key, pattern)]
        for key in doomed:
            del self._store[key]
        return len(doomed)

    async def close(self) -> None:
        self._store.clear()

    def keys(self):
        return list(self._store)


class RedisCache:
    """Redis-backed cache storing JSON-encoded values."""

    def __init__(self, client: Redis, prefix: str = "") -> None:
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "") -> "RedisCache":
        return cls(Redis.from_url(url, decode_responses=True), prefix)

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get(self, key: str) -> Any:
        try:
            raw = await self.client.get(self._key(key))
        except RedisError as e:
            logger.warning(f"Cache get failed for {key}: {e}")
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding undecodable cache entry {key}")
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        try:
            await self.client.set(self._key(key), json.dumps(value), ex=ttl or None)
        except (RedisError, TypeError) as e:
            logger.warning(f"Cache set failed for {key}: {e}")

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(self._key(key))
        except RedisError as e:
            logger.warning(f"Cache delete failed for {key}: {e}")

    async def invalidate_pattern(self, pattern: str) -> int:
        removed = 0
        try:
            batch = []
            async for key in self.client.scan_iter(match=self._key(pattern), count=500):
                batch.append(key)
                if len(batch) >= 500:
                    removed += await self.client.delete(*batch)
                    batch = []
            if batch:
                removed += await self.client.delete(*batch)
        except RedisError as e:
            logger.warning(f"Cache invalidation failed for {pattern}: {e}")
        return removed

    async def close(self) -> None:
        await self.client.aclose()


def create_cache():
    """Build the cache backend selected by configuration."""
    if config.REDIS_URL:
        logger.info("Using Redis cache backend")
        return RedisCache.from_url(config.REDIS_URL, config.REDIS_KEY_PREFIX)
    logger.info("Using in-memory cache backend")
    return MemoryCache()
