"""
Redis service for rate limiting, shared cache entries and agent locks.

Provides:
- Fixed-window IP rate limiting for the on-demand monitor endpoint
- JSON key-value cache (L2 of the TTL store)
- Distributed locks for per-agent balance mutations
"""

import json
import logging
from typing import Any, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..core.config import get_settings

logger = logging.getLogger(__name__)


class RedisService:
    """
    Redis service for caching and rate limiting.

    Usage:
        redis_service = await get_redis_service()
        await redis_service.set("key", {"a": 1}, ttl=30)
        value = await redis_service.get("key")
    """

    PREFIX_RATE_LIMIT = "rate_limit:"
    PREFIX_CACHE = "cache:"
    PREFIX_LOCK = "lock:"

    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client

    # ==================== Rate Limiting ====================

    async def check_rate_limit(
        self,
        identifier: str,
        max_requests: int,
        window_seconds: int
    ) -> tuple[bool, int]:
        """
        Check and update rate limit.

        Returns:
            Tuple of (is_allowed, remaining_requests)
        """
        key = f"{self.PREFIX_RATE_LIMIT}{identifier}"

        current = await self.redis.get(key)
        count = int(current) if current else 0

        if count >= max_requests:
            return False, 0

        pipe = self.redis.pipeline()
        pipe.incr(key)
        if count == 0:
            pipe.expire(key, window_seconds)
        await pipe.execute()

        return True, max_requests - count - 1

    async def get_rate_limit_ttl(self, identifier: str) -> int:
        ttl = await self.redis.ttl(f"{self.PREFIX_RATE_LIMIT}{identifier}")
        return max(int(ttl), 0)

    # ==================== General Cache ====================

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """Store a JSON-serializable value, with optional TTL in seconds."""
        cache_key = f"{self.PREFIX_CACHE}{key}"
        payload = json.dumps(value, default=str)
        if ttl:
            await self.redis.set(cache_key, payload, px=max(int(ttl * 1000), 1))
        else:
            await self.redis.set(cache_key, payload)
        return True

    async def get(self, key: str) -> Optional[Any]:
        result = await self.redis.get(f"{self.PREFIX_CACHE}{key}")
        if result is None:
            return None
        try:
            return json.loads(result)
        except (json.JSONDecodeError, TypeError):
            logger.warning(f"Discarding undecodable cache entry {key}")
            return None

    async def delete(self, key: str) -> bool:
        return await self.redis.delete(f"{self.PREFIX_CACHE}{key}") > 0

    # ==================== Locks ====================

    def lock(self, name: str, timeout: float = 30.0, blocking_timeout: float = 10.0):
        """Distributed lock; use as ``async with redis_service.lock(...)``."""
        return self.redis.lock(
            f"{self.PREFIX_LOCK}{name}",
            timeout=timeout,
            blocking_timeout=blocking_timeout,
        )

    # ==================== Health ====================

    async def ping(self) -> bool:
        try:
            return await self.redis.ping()
        except RedisError as e:
            logger.error(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        await self.redis.aclose()


_redis_client: Optional[redis.Redis] = None
_redis_service: Optional[RedisService] = None


async def get_redis_client() -> redis.Redis:
    """Get or create Redis client.

    If the cached client cannot ping, it is discarded and a fresh
    connection is created.
    """
    global _redis_client
    if _redis_client is not None:
        try:
            await _redis_client.ping()
        except RedisError:
            logger.warning("Redis client health check failed, reconnecting...")
            _redis_client = None

    if _redis_client is None:
        settings = get_settings()
        _redis_client = redis.from_url(
            str(settings.redis_url),
            encoding="utf-8",
            decode_responses=False,
            retry_on_timeout=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
    return _redis_client


async def get_redis_service() -> RedisService:
    """Get or create RedisService instance"""
    global _redis_service
    client = await get_redis_client()
    if _redis_service is None or _redis_service.redis is not client:
        _redis_service = RedisService(client)
    return _redis_service


async def close_redis() -> None:
    """Close Redis connections"""
    global _redis_client, _redis_service
    if _redis_service:
        await _redis_service.close()
    _redis_client = None
    _redis_service = None
