"""In-process job scheduler with explicit lifecycle and injectable clock.

Tests drive it without waiting on wall-clock time: advance a fake clock,
then call ``run_due_jobs()``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Any, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

from gatekeeper.core.exceptions import ConfigurationError
from gatekeeper.scheduling.clock import Clock, SystemClock

logger = structlog.get_logger()

JobFunc = Callable[[], Awaitable[Any]]


class Trigger(Protocol):
    """Decides when a job fires next."""

    def next_fire(self, after: datetime) -> datetime | None:
        """First fire time strictly after `after`, None when exhausted."""
        ...


class DailyTrigger:
    """Fires once a day at `hour`:00 in an IANA timezone."""

    def __init__(self, hour: int, timezone: str) -> None:
        if not 0 <= hour <= 23:
            raise ConfigurationError(f"Invalid hour {hour}: must be 0-23")
        try:
            self.tz = ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigurationError(f"Unknown timezone: {timezone}") from e
        self.hour = hour
        self.timezone = timezone

    @property
    def cron_expression(self) -> str:
        """Equivalent five-field cron expression (in `timezone`)."""
        return f"0 {self.hour} * * *"

    def next_fire(self, after: datetime) -> datetime:
        local = after.astimezone(self.tz)
        candidate = datetime.combine(local.date(), time(self.hour), tzinfo=self.tz)
        if candidate <= local:
            candidate = datetime.combine(
                local.date() + timedelta(days=1), time(self.hour), tzinfo=self.tz
            )
        return candidate


class IntervalTrigger:
    """Fires every `seconds`."""

    def __init__(self, seconds: float) -> None:
        if seconds <= 0:
            raise ConfigurationError("Interval must be positive")
        self.interval = timedelta(seconds=seconds)

    def next_fire(self, after: datetime) -> datetime:
        return after + self.interval


class OneShotTrigger:
    """Fires once at `at`."""

    def __init__(self, at: datetime) -> None:
        self.at = at
        self.fired = False

    def next_fire(self, after: datetime) -> datetime | None:
        if self.fired:
            return None
        return self.at


@dataclass
class ScheduledJob:
    """A registered job."""

    name: str
    trigger: Trigger
    func: JobFunc
    next_run: datetime | None


class Scheduler:
    """Registry of jobs with start()/stop().

    Usage:
        scheduler = Scheduler()
        scheduler.add_job("reconciliation", DailyTrigger(3, "America/New_York"), run)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(self, clock: Clock | None = None, max_idle_seconds: float = 60.0) -> None:
        """Initialize the scheduler.

        Args:
            clock: Time source, injectable for tests.
            max_idle_seconds: Longest single sleep of the run loop.
        """
        self.clock = clock or SystemClock()
        self._max_idle = max_idle_seconds
        self._jobs: dict[str, ScheduledJob] = {}
        self._task: asyncio.Task[None] | None = None

    @property
    def jobs(self) -> dict[str, ScheduledJob]:
        """Registered jobs by name."""
        return dict(self._jobs)

    @property
    def is_running(self) -> bool:
        """Whether the run loop is active."""
        return self._task is not None and not self._task.done()

    def add_job(self, name: str, trigger: Trigger, func: JobFunc) -> ScheduledJob:
        """Register (or replace) a job."""
        job = ScheduledJob(name, trigger, func, trigger.next_fire(self.clock.now()))
        self._jobs[name] = job
        logger.info(
            "job_scheduled",
            job=name,
            next_run=job.next_run.isoformat() if job.next_run else None,
        )
        return job

    def schedule_once(self, name: str, delay: timedelta, func: JobFunc) -> ScheduledJob:
        """Register a job that fires once after `delay`."""
        return self.add_job(name, OneShotTrigger(self.clock.now() + delay), func)

    def remove_job(self, name: str) -> None:
        """Unregister a job; unknown names are ignored."""
        self._jobs.pop(name, None)

    async def run_due_jobs(self) -> list[str]:
        """Run every job whose time has come; returns their names."""
        now = self.clock.now()
        ran: list[str] = []
        for job in list(self._jobs.values()):
            if job.next_run is None or job.next_run > now:
                continue
            if isinstance(job.trigger, OneShotTrigger):
                job.trigger.fired = True
            await self._run_job(job)
            ran.append(job.name)
            job.next_run = job.trigger.next_fire(now)
            if job.next_run is None and self._jobs.get(job.name) is job:
                del self._jobs[job.name]
        return ran

    async def _run_job(self, job: ScheduledJob) -> None:
        logger.info("job_started", job=job.name)
        try:
            await job.func()
        except Exception as e:
            logger.error("job_failed", job=job.name, error=str(e), exc_info=True)
        else:
            logger.info("job_finished", job=job.name)

    def _seconds_until_next(self) -> float:
        pending = [job.next_run for job in self._jobs.values() if job.next_run is not None]
        if not pending:
            return self._max_idle
        delta = (min(pending) - self.clock.now()).total_seconds()
        return max(0.0, min(delta, self._max_idle))

    async def _loop(self) -> None:
        while True:
            await self.run_due_jobs()
            await self.clock.sleep(self._seconds_until_next())

    async def start(self) -> None:
        """Start the run loop."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop(), name="scheduler")
        logger.info("scheduler_started", jobs=sorted(self._jobs))

    async def stop(self) -> None:
        """Stop the run loop; a job in flight is cancelled."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("scheduler_stopped")
