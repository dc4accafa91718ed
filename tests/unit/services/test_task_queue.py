"""Tests for the background task queue."""

import asyncio

import pytest
from gatekeeper.services.tasks import BackgroundTaskQueue, TaskStatus


class TestBackgroundTaskQueue:
    """Tests for BackgroundTaskQueue."""

    def test_rejects_zero_workers(self) -> None:
        """At least one worker is required."""
        with pytest.raises(ValueError):
            BackgroundTaskQueue(workers=0)

    async def test_runs_submitted_work(self) -> None:
        """Submitted work runs and its result is kept."""
        queue = BackgroundTaskQueue(workers=1)
        await queue.start()

        async def work() -> int:
            return 42

        task = queue.submit("answer", work)
        assert await task.wait() == 42
        assert task.status is TaskStatus.SUCCEEDED
        await queue.stop()

    async def test_failures_are_collected(self) -> None:
        """A failing task is recorded, not lost, and the worker survives."""
        queue = BackgroundTaskQueue(workers=1)
        await queue.start()

        async def boom() -> None:
            raise RuntimeError("boom")

        async def fine() -> str:
            return "ok"

        failed = queue.submit("boom", boom)
        ok = queue.submit("fine", fine)
        await queue.join()

        assert failed.status is TaskStatus.FAILED
        assert isinstance(failed.error, RuntimeError)
        assert list(queue.failed) == [failed]
        assert ok.result == "ok"
        await queue.stop()

    async def test_failure_history_is_bounded(self) -> None:
        """Only the most recent failures are retained."""
        queue = BackgroundTaskQueue(workers=1, max_failed=3)
        await queue.start()

        async def boom() -> None:
            raise RuntimeError("boom")

        tasks = [queue.submit(f"boom-{n}", boom) for n in range(5)]
        await queue.join()

        assert list(queue.failed) == tasks[2:]
        assert all(task.status is TaskStatus.FAILED for task in tasks)
        await queue.stop()

    async def test_stop_cancels_pending_tasks(self) -> None:
        """Queued tasks are marked cancelled on stop."""
        queue = BackgroundTaskQueue(workers=1)

        async def never() -> None:
            await asyncio.sleep(3600)

        task = queue.submit("never-started", never)
        await queue.stop()

        assert task.done
        assert task.status is TaskStatus.CANCELLED

    async def test_start_is_idempotent(self) -> None:
        """Starting twice does not double the workers."""
        queue = BackgroundTaskQueue(workers=2)
        await queue.start()
        await queue.start()

        assert queue.is_running
        assert len(queue._workers) == 2
        await queue.stop()
        assert not queue.is_running
