"""
In-memory cache backend for development and testing.
"""

from __future__ import annotations

import fnmatch
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CacheEntry:
    """Cache entry with value and expiration."""
    value: str
    expires_at: datetime | None = None

    @property
    def is_expired(self) -> bool:
        if self.expires_at is None:
            return False
        return _utcnow() >= self.expires_at


class MemoryCacheBackend:
    """
    In-memory cache backend for development and testing.

    Expired entries are dropped when read and swept on writes at most
    once per `cleanup_interval`.

    Note: Not suitable for multi-replica deployments.
    Data is not persisted and not shared between processes, so an
    invalidation on one replica is invisible to the others.

    Usage:
        cache = MemoryCacheBackend()
        await cache.set("features:flag:production:dark_mode:anonymous", payload, ttl=300)
        value = await cache.get("features:flag:production:dark_mode:anonymous")
    """

    def __init__(self, default_ttl: int = 300, cleanup_interval: int | timedelta = 1):
        self.default_ttl = default_ttl
        self.cleanup_interval = (
            cleanup_interval
            if isinstance(cleanup_interval, timedelta)
            else timedelta(seconds=cleanup_interval)
        )
        self._store: dict[str, CacheEntry] = {}
        self._last_cleanup = _utcnow()

    def _ttl_seconds(self, ttl: int | timedelta | None) -> int | None:
        if ttl is None:
            return self.default_ttl
        if isinstance(ttl, timedelta):
            return int(ttl.total_seconds())
        return ttl

    async def connect(self) -> None:
        """No-op, present for lifecycle symmetry with RedisCacheBackend."""

    async def disconnect(self) -> None:
        """No-op, present for lifecycle symmetry with RedisCacheBackend."""

    async def get(self, key: str) -> str | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        if entry.is_expired:
            del self._store[key]
            return None
        return entry.value

    async def set(
        self,
        key: str,
        value: str,
        ttl: int | timedelta | None = None,
    ) -> bool:
        ttl_seconds = self._ttl_seconds(ttl)
        expires_at = None
        if ttl_seconds:
            expires_at = _utcnow() + timedelta(seconds=ttl_seconds)

        self._store[key] = CacheEntry(value=value, expires_at=expires_at)

        # Entries nobody reads again are only reclaimed here
        now = _utcnow()
        if now - self._last_cleanup >= self.cleanup_interval:
            self._cleanup_expired()
            self._last_cleanup = now
        return True

    async def delete(self, key: str) -> bool:
        if key in self._store:
            del self._store[key]
            return True
        return False

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    async def delete_pattern(self, pattern: str) -> int:
        """Delete matching keys. Expired entries are dropped but not counted."""
        matching_keys = [k for k in self._store if fnmatch.fnmatchcase(k, pattern)]
        deleted = 0
        for key in matching_keys:
            if not self._store.pop(key).is_expired:
                deleted += 1
        return deleted

    async def clear(self) -> None:
        """Clear all cache entries."""
        self._store.clear()

    def keys(self) -> list[str]:
        """Live keys (for testing)."""
        return [k for k, v in self._store.items() if not v.is_expired]

    def _cleanup_expired(self) -> None:
        """Remove expired entries."""
        expired = [k for k, v in self._store.items() if v.is_expired]
        for key in expired:
            del self._store[key]
