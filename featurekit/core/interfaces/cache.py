"""
Cache backend protocol.
Implementations: RedisCacheBackend, MemoryCacheBackend
"""
from __future__ import annotations

from typing import Protocol
from datetime import timedelta


class CacheError(Exception):
    """Raised by cache backends when the underlying store fails."""
    pass


_GLOB_SPECIAL = {"*": "[*]", "?": "[?]", "[": "[[]", "\\": "[\\\\]"}


def escape_pattern(text: str) -> str:
    """
    Escape glob metacharacters so `text` matches only itself.

    Uses single-character classes, which fnmatch and Redis MATCH read the
    same way (a bare backslash is literal to fnmatch but an escape to Redis).
    """
    return "".join(_GLOB_SPECIAL.get(ch, ch) for ch in text)


class CacheBackend(Protocol):
    """
    Protocol for evaluation-result cache backends.

    Values are opaque strings (the feature manager stores JSON-serialized
    evaluations). Backends raise CacheError on transport failures; callers
    decide whether that is fatal.

    Example implementations:
    - RedisCacheBackend: Redis-based caching, shared across replicas
    - MemoryCacheBackend: In-process cache (for testing/dev)
    """

    async def get(self, key: str) -> str | None:
        """Get value by key. Returns None if not found or expired."""
        ...

    async def set(
        self,
        key: str,
        value: str,
        ttl: int | timedelta | None = None,
    ) -> bool:
        """Set value with optional TTL (seconds or timedelta)."""
        ...

    async def delete(self, key: str) -> bool:
        """Delete key. Returns True if deleted."""
        ...

    async def delete_pattern(self, pattern: str) -> int:
        """
        Delete keys matching glob pattern (e.g., '*dark_mode*'). Returns count.

        Build patterns from untrusted text with `escape_pattern`.
        """
        ...

    async def exists(self, key: str) -> bool:
        """Check if key exists."""
        ...
