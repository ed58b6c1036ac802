"""
Redis cache backend implementation.
"""

from __future__ import annotations

from datetime import timedelta

import redis.asyncio as redis
from redis.exceptions import RedisError

from featurekit.core.interfaces.cache import CacheError


class RedisCacheBackend:
    """
    Redis cache backend implementation.

    Shared by every replica, so invalidating an entry on one replica is
    visible to all of them.

    Usage:
        cache = RedisCacheBackend(redis_url="redis://localhost:6379/0")
        await cache.connect()

        await cache.set("features:flag:production:dark_mode:user-1", payload, ttl=300)
        value = await cache.get("features:flag:production:dark_mode:user-1")

        # Invalidate everything cached for a flag
        await cache.delete_pattern("*dark_mode*")
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        prefix: str = "",
        default_ttl: int = 300,
        max_connections: int = 10,
        client: redis.Redis | None = None,
    ):
        self.redis_url = redis_url
        self.prefix = prefix
        self.default_ttl = default_ttl
        self.max_connections = max_connections
        self._client: redis.Redis | None = client

    async def connect(self) -> None:
        """Connect to Redis."""
        if self._client is None:
            self._client = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                max_connections=self.max_connections,
            )

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            raise CacheError("Cache not connected. Call connect() first.")
        return self._client

    def _key(self, key: str) -> str:
        """Prepend prefix to key."""
        return f"{self.prefix}{key}" if self.prefix else key

    def _ttl_seconds(self, ttl: int | timedelta | None) -> int | None:
        """Convert TTL to seconds."""
        if ttl is None:
            return self.default_ttl
        if isinstance(ttl, timedelta):
            return int(ttl.total_seconds())
        return ttl

    async def get(self, key: str) -> str | None:
        """Get value by key."""
        try:
            return await self.client.get(self._key(key))
        except RedisError as e:
            raise CacheError(f"redis get failed for {key}: {e}") from e

    async def set(
        self,
        key: str,
        value: str,
        ttl: int | timedelta | None = None,
    ) -> bool:
        """Set value with optional TTL."""
        ttl_seconds = self._ttl_seconds(ttl) or None
        try:
            result = await self.client.set(self._key(key), value, ex=ttl_seconds)
        except RedisError as e:
            raise CacheError(f"redis set failed for {key}: {e}") from e
        return result is True

    async def delete(self, key: str) -> bool:
        """Delete key."""
        try:
            result = await self.client.delete(self._key(key))
        except RedisError as e:
            raise CacheError(f"redis delete failed for {key}: {e}") from e
        return result > 0

    async def exists(self, key: str) -> bool:
        """Check if key exists."""
        try:
            result = await self.client.exists(self._key(key))
        except RedisError as e:
            raise CacheError(f"redis exists failed for {key}: {e}") from e
        return result > 0

    async def delete_pattern(self, pattern: str) -> int:
        """Delete keys matching pattern (SCAN, never KEYS)."""
        prefixed_pattern = self._key(pattern)
        keys = []

        try:
            async for key in self.client.scan_iter(match=prefixed_pattern):
                keys.append(key)

            if keys:
                return await self.client.delete(*keys)
        except RedisError as e:
            raise CacheError(f"redis delete_pattern failed for {pattern}: {e}") from e
        return 0
