"""Supervised background task queue.

Webhook handlers must answer quickly, so follow-up work (role changes,
event processing) is handed to this queue instead of being awaited in the
request. Unlike a bare ``asyncio.create_task``, every submission returns a
handle that can be awaited, inspected or cancelled, and the most recent
failures are kept instead of vanishing.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import structlog

logger = structlog.get_logger()

# Most recent failures kept for inspection; older ones are only in the logs.
MAX_FAILED_TASKS = 100


class TaskStatus(str, Enum):
    """Lifecycle of a background task."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class BackgroundTask:
    """Handle for one unit of queued work."""

    def __init__(self, name: str, factory: Callable[[], Awaitable[Any]]) -> None:
        """Initialize the task handle.

        Args:
            name: Label used in logs.
            factory: Zero-argument callable producing the coroutine to run.
        """
        self.name = name
        self._factory = factory
        self.status = TaskStatus.PENDING
        self.result: Any = None
        self.error: BaseException | None = None
        self._done = asyncio.Event()

    @property
    def done(self) -> bool:
        """Whether the task reached a terminal status."""
        return self._done.is_set()

    async def wait(self) -> Any:
        """Wait for completion and return the result (None on failure)."""
        await self._done.wait()
        return self.result

    def _finish(self, status: TaskStatus) -> None:
        self.status = status
        self._done.set()


class BackgroundTaskQueue:
    """Fixed pool of workers draining a FIFO of background tasks.

    Usage:
        queue = BackgroundTaskQueue(workers=2)
        await queue.start()
        task = queue.submit("assign_role", lambda: roles.assign(uid, role))
        await task.wait()
        await queue.stop()
    """

    def __init__(self, workers: int = 2, max_failed: int = MAX_FAILED_TASKS) -> None:
        """Initialize the queue.

        Args:
            workers: Number of concurrent worker coroutines.
            max_failed: How many failed handles to retain.
        """
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self.workers = workers
        self._queue: asyncio.Queue[BackgroundTask] = asyncio.Queue()
        self._workers: list[asyncio.Task[None]] = []
        self.failed: deque[BackgroundTask] = deque(maxlen=max_failed)

    @property
    def is_running(self) -> bool:
        """Whether workers are active."""
        return bool(self._workers)

    async def start(self) -> None:
        """Spawn the workers."""
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"background-worker-{i}")
            for i in range(self.workers)
        ]
        logger.info("task_queue_started", workers=self.workers)

    async def stop(self) -> None:
        """Cancel the workers and every task that has not finished."""
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        cancelled = 0
        while not self._queue.empty():
            task = self._queue.get_nowait()
            task._finish(TaskStatus.CANCELLED)
            self._queue.task_done()
            cancelled += 1
        logger.info("task_queue_stopped", cancelled=cancelled)

    def submit(self, name: str, factory: Callable[[], Awaitable[Any]]) -> BackgroundTask:
        """Enqueue work and return its handle immediately."""
        task = BackgroundTask(name, factory)
        self._queue.put_nowait(task)
        logger.debug("task_submitted", task=name, queued=self._queue.qsize())
        return task

    async def join(self) -> None:
        """Wait until every submitted task has finished."""
        await self._queue.join()

    async def _worker(self, index: int) -> None:
        while True:
            task = await self._queue.get()
            try:
                await self._run(task)
            finally:
                self._queue.task_done()

    async def _run(self, task: BackgroundTask) -> None:
        task.status = TaskStatus.RUNNING
        try:
            task.result = await task._factory()
        except asyncio.CancelledError:
            task._finish(TaskStatus.CANCELLED)
            raise
        except Exception as e:
            task.error = e
            self.failed.append(task)
            task._finish(TaskStatus.FAILED)
            logger.error("background_task_failed", task=task.name, error=str(e))
        else:
            task._finish(TaskStatus.SUCCEEDED)
            logger.debug("background_task_succeeded", task=task.name)
