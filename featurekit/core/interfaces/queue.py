"""
Background task queue protocol.
Implementations: MemoryQueueBackend (bounded in-process worker pool)
"""
from __future__ import annotations

from typing import Protocol, Any, Callable, TypeVar
from enum import Enum


class TaskStatus(str, Enum):
    PENDING = "pending"
    STARTED = "started"
    SUCCESS = "success"
    FAILURE = "failure"
    DROPPED = "dropped"


T = TypeVar("T")


class QueueBackend(Protocol):
    """
    Protocol for detached (fire-and-forget) work.

    Jobs run outside the caller's task: cancelling the caller does not
    cancel an already enqueued job.
    """

    def register(
        self,
        name: str | None = None,
    ) -> Callable[[Callable[..., T]], Callable[..., T]]:
        """Decorator to register a task function."""
        ...

    async def enqueue(
        self,
        task_name: str,
        args: tuple = (),
        kwargs: dict[str, Any] | None = None,
    ) -> str:
        """
        Enqueue a task for background execution.
        Returns task_id. Never blocks on a full queue.
        """
        ...

    async def start(self) -> None:
        """Start workers."""
        ...

    async def join(self) -> None:
        """Wait until every enqueued task has been processed."""
        ...

    async def shutdown(self, timeout: float | None = None) -> int:
        """
        Stop accepting work and drain pending tasks.
        Returns the number of tasks abandoned after the timeout.
        """
        ...

    async def queue_length(self) -> int:
        """Get number of pending tasks."""
        ...
