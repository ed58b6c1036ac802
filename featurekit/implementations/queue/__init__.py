"""Queue backend implementations."""

from featurekit.implementations.queue.memory import MemoryQueueBackend

__all__ = ["MemoryQueueBackend"]
