"""
Redis-backed store shared across API instances.
"""

from typing import Any, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.logging import get_logger
from .base import KeyValueStore


class RedisStore(KeyValueStore):
    """KeyValueStore over ``redis.asyncio``."""

    kind = "redis"
    transient_errors = (RedisError, OSError)

    def __init__(self, redis_url: str, client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.logger = get_logger("api.redis_store")
        self._redis: Optional[redis.Redis] = client

    def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, decode_responses=True)
        return self._redis

    async def get(self, key: str) -> Optional[str]:
        return await self._get_redis().get(key)

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        client = self._get_redis()
        if ttl:
            await client.setex(key, ttl, value)
        else:
            await client.set(key, value)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._get_redis().delete(*keys)

    async def keys(self, pattern: str) -> List[str]:
        return [key async for key in self._get_redis().scan_iter(match=pattern, count=500)]

    async def increment(self, key: str, ttl: int) -> Tuple[int, float]:
        client = self._get_redis()
        async with client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.pttl(key)
            count, remaining_ms = await pipe.execute()

        # No expiry yet: first hit in this window
        if remaining_ms is None or remaining_ms < 0:
            await client.expire(key, ttl)
            return int(count), float(ttl)
        return int(count), remaining_ms / 1000.0

    async def ttl(self, key: str) -> Optional[float]:
        remaining_ms = await self._get_redis().pttl(key)
        if remaining_ms is None or remaining_ms < 0:
            return None
        return remaining_ms / 1000.0

    async def push_capped(self, key: str, value: str, max_len: int) -> None:
        async with self._get_redis().pipeline(transaction=True) as pipe:
            pipe.lpush(key, value)
            pipe.ltrim(key, 0, max_len - 1)
            await pipe.execute()

    async def list_range(self, key: str, start: int = 0, stop: int = -1) -> List[Any]:
        return await self._get_redis().lrange(key, start, stop)

    async def ping(self) -> bool:
        return bool(await self._get_redis().ping())

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
