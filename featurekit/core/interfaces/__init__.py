"""
Core interfaces (protocols) for pluggable backends.
"""

from .cache import CacheBackend, CacheError, escape_pattern
from .queue import QueueBackend, TaskStatus

__all__ = [
    "CacheBackend",
    "CacheError",
    "escape_pattern",
    "QueueBackend",
    "TaskStatus",
]
