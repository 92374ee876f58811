"""
TTL cache store shared by the market data gateway, admission control and
the feed endpoint.

- L1: in-process dict with monotonic expiry
- L2: optional Redis (RedisService) so several API/worker processes share entries
- Request coalescing: concurrent misses for one key share a single fetch

The store is constructed once and injected; nothing in the engine reaches
for a module-level cache.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from redis.exceptions import RedisError

from .redis_service import RedisService

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    value: Any
    expires_at: float  # monotonic


class TTLCacheStore:
    """
    Two-tier key/value store with per-entry TTL.

    Values must be JSON-serializable when an L2 backend is configured.
    """

    def __init__(
        self,
        redis: Optional[RedisService] = None,
        clock: Callable[[], float] = time.monotonic,
        namespace: str = "arena",
        max_entries: int = 10_000,
        purge_interval: float = 60.0,
    ):
        self._redis = redis
        self._clock = clock
        self._namespace = namespace
        self._max_entries = max_entries
        self._purge_interval = purge_interval
        self._next_purge = clock() + purge_interval
        self._l1: dict[str, CacheEntry] = {}
        self._pending: dict[str, asyncio.Future] = {}

        self._hits = 0
        self._misses = 0
        self._fetches = 0

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    def _purge(self, now: float) -> None:
        """Drop expired L1 entries, then the soonest-expiring ones above max_entries."""
        expired = [k for k, entry in self._l1.items() if entry.expires_at <= now]
        for key in expired:
            del self._l1[key]
        overflow = len(self._l1) - self._max_entries
        if overflow > 0:
            for key in sorted(self._l1, key=lambda k: self._l1[k].expires_at)[:overflow]:
                del self._l1[key]
        self._next_purge = now + self._purge_interval

    def _store(self, key: str, entry: CacheEntry, now: float) -> None:
        self._l1[key] = entry
        if now >= self._next_purge or len(self._l1) > self._max_entries:
            self._purge(now)

    # =========================================================================
    # Public API
    # =========================================================================

    async def get(self, key: str) -> Optional[Any]:
        now = self._clock()
        entry = self._l1.get(key)
        if entry is not None:
            if entry.expires_at > now:
                self._hits += 1
                return entry.value
            del self._l1[key]

        if self._redis is not None:
            try:
                value = await self._redis.get(self._key(key))
            except RedisError as e:
                logger.debug(f"L2 get failed for {key}: {e}")
                value = None
            if value is not None:
                self._hits += 1
                # Promote with a short L1 lifetime; L2 holds the authoritative TTL
                self._store(key, CacheEntry(value, now + 1.0), now)
                return value

        self._misses += 1
        return None

    async def set(self, key: str, value: Any, ttl: float) -> None:
        now = self._clock()
        self._store(key, CacheEntry(value, now + ttl), now)
        if self._redis is not None:
            try:
                await self._redis.set(self._key(key), value, ttl=ttl)
            except RedisError as e:
                logger.debug(f"L2 set failed for {key}: {e}")

    async def delete(self, key: str) -> None:
        self._l1.pop(key, None)
        if self._redis is not None:
            try:
                await self._redis.delete(self._key(key))
            except RedisError as e:
                logger.debug(f"L2 delete failed for {key}: {e}")

    async def get_or_fetch(
        self,
        key: str,
        ttl: float,
        fetcher: Callable[[], Awaitable[Any]],
    ) -> Any:
        """
        Return the cached value or fetch, cache and return it.

        Concurrent callers for the same key await one fetch; a fetch error
        is raised to every waiter and nothing is cached.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached

        pending = self._pending.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        try:
            self._fetches += 1
            value = await fetcher()
            if value is not None:
                await self.set(key, value, ttl)
            future.set_result(value)
            return value
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so a fetch nobody else waited on doesn't warn at GC
            future.exception()
            raise
        finally:
            self._pending.pop(key, None)

    def clear(self) -> None:
        self._l1.clear()

    def get_stats(self) -> dict:
        total = self._hits + self._misses
        return {
            "l1_entries": len(self._l1),
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": self._hits / total if total else 0.0,
            "fetches": self._fetches,
            "pending": len(self._pending),
        }
