"""Cache backend implementations."""

from featurekit.implementations.cache.redis import RedisCacheBackend
from featurekit.implementations.cache.memory import MemoryCacheBackend

__all__ = ["RedisCacheBackend", "MemoryCacheBackend"]
