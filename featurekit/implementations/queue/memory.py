"""
In-process queue backend: a bounded pool of asyncio workers.
"""

from __future__ import annotations

import asyncio
import inspect
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, TypeVar
from dataclasses import dataclass, field

import structlog

from featurekit.core.interfaces.queue import TaskStatus

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class QueuedTask:
    """Internal representation of a queued task."""
    task_id: str
    task_name: str
    args: tuple
    kwargs: dict[str, Any]
    status: TaskStatus = TaskStatus.PENDING
    error: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None


class MemoryQueueBackend:
    """
    Bounded in-process queue for fire-and-forget writes.

    A fixed number of worker tasks consume a bounded asyncio.Queue, so the
    number of concurrent background writes never exceeds `workers` and
    pending work never exceeds `maxsize`. Jobs enqueued while the queue is
    full (or after shutdown started) are dropped and logged.

    Workers are independent tasks: cancelling the request that enqueued a
    job does not cancel the job.

    Usage:
        queue = MemoryQueueBackend(workers=4, maxsize=1000)

        @queue.register("record_event")
        async def record_event(event):
            await repository.create_feature_event(event)

        await queue.start()
        await queue.enqueue("record_event", kwargs={"event": event})

        # On shutdown: drain for up to 10 seconds
        await queue.shutdown(timeout=10)
    """

    def __init__(
        self,
        workers: int = 4,
        maxsize: int = 1000,
        logger: Any | None = None,
    ):
        if workers < 1:
            raise ValueError("workers must be >= 1")

        self.workers = workers
        self.maxsize = maxsize
        self.logger = logger or structlog.get_logger(__name__)

        self._handlers: dict[str, Callable] = {}
        self._queue: asyncio.Queue[QueuedTask] = asyncio.Queue(maxsize=maxsize)
        self._worker_tasks: list[asyncio.Task] = []
        self._closed = False
        self._in_flight = 0

        # Counters
        self.processed = 0
        self.failed = 0
        self.dropped = 0

    def register(
        self,
        name: str | None = None,
    ) -> Callable[[Callable[..., T]], Callable[..., T]]:
        """
        Decorator to register a task function.

        Example:
            @queue.register("my_task")
            async def my_task(arg1, arg2):
                ...
        """
        def decorator(func: Callable[..., T]) -> Callable[..., T]:
            task_name = name or f"{func.__module__}.{func.__name__}"
            self._handlers[task_name] = func
            return func
        return decorator

    @property
    def is_running(self) -> bool:
        return bool(self._worker_tasks) and not self._closed

    async def start(self) -> None:
        """Start worker tasks (idempotent)."""
        if self._worker_tasks:
            return
        self._closed = False
        self._worker_tasks = [
            asyncio.create_task(self._worker(i), name=f"featurekit-worker-{i}")
            for i in range(self.workers)
        ]
        self.logger.info("queue_started", workers=self.workers, maxsize=self.maxsize)

    async def enqueue(
        self,
        task_name: str,
        args: tuple = (),
        kwargs: dict[str, Any] | None = None,
    ) -> str:
        """
        Enqueue a task for execution.

        Returns task_id. Does not wait for the task, and does not block
        when the queue is full.
        """
        task = QueuedTask(
            task_id=str(uuid.uuid4()),
            task_name=task_name,
            args=args,
            kwargs=kwargs or {},
        )

        if self._closed:
            self._drop(task, "queue_closed")
            return task.task_id

        try:
            self._queue.put_nowait(task)
        except asyncio.QueueFull:
            self._drop(task, "queue_full")

        return task.task_id

    def _drop(self, task: QueuedTask, reason: str) -> None:
        task.status = TaskStatus.DROPPED
        self.dropped += 1
        self.logger.warning(
            "task_dropped",
            task_name=task.task_name,
            task_id=task.task_id,
            reason=reason,
        )

    async def _worker(self, index: int) -> None:
        while True:
            task = await self._queue.get()
            self._in_flight += 1
            try:
                await self._execute_task(task)
            finally:
                self._in_flight -= 1
                self._queue.task_done()

    async def _execute_task(self, task: QueuedTask) -> None:
        """Run one task, recording (never raising) its failure."""
        handler = self._handlers.get(task.task_name)

        if not handler:
            task.status = TaskStatus.FAILURE
            task.error = f"No handler registered for task: {task.task_name}"
            task.completed_at = _utcnow()
            self.failed += 1
            self.logger.error("task_unregistered", task_name=task.task_name)
            return

        task.status = TaskStatus.STARTED
        task.started_at = _utcnow()

        try:
            if inspect.iscoroutinefunction(handler):
                await handler(*task.args, **task.kwargs)
            else:
                handler(*task.args, **task.kwargs)

            task.status = TaskStatus.SUCCESS
            self.processed += 1
        except Exception as e:
            task.status = TaskStatus.FAILURE
            task.error = str(e)
            self.failed += 1
            self.logger.error(
                "task_failed",
                task_name=task.task_name,
                task_id=task.task_id,
                error=str(e),
                exc_info=True,
            )
        finally:
            task.completed_at = _utcnow()

    async def join(self) -> None:
        """Wait until every enqueued task has been processed. Requires start()."""
        await self._queue.join()

    async def shutdown(self, timeout: float | None = None) -> int:
        """
        Stop intake, drain pending tasks for up to `timeout` seconds,
        then cancel the workers.

        Returns the number of tasks abandoned.
        """
        self._closed = True

        if self._worker_tasks:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except asyncio.TimeoutError:
                pass

        abandoned = self._queue.qsize() + self._in_flight

        for worker in self._worker_tasks:
            worker.cancel()
        await asyncio.gather(*self._worker_tasks, return_exceptions=True)
        self._worker_tasks = []

        if abandoned:
            self.logger.warning("queue_shutdown_abandoned", abandoned=abandoned)
        else:
            self.logger.info(
                "queue_shutdown",
                processed=self.processed,
                failed=self.failed,
                dropped=self.dropped,
            )
        return abandoned

    async def queue_length(self) -> int:
        """Get number of pending tasks."""
        return self._queue.qsize()
