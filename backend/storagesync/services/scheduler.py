"""Cron-style scheduling of recurring coroutines."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Protocol

from croniter import croniter

from storagesync.core.logging import get_logger

logger = get_logger(__name__)

JobCallback = Callable[[], Awaitable[object]]


class ScheduledJob(Protocol):
    """Handle returned by a scheduler."""

    name: str

    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Accepts a cron expression and a zero-argument callback."""

    def schedule(self, expression: str, callback: JobCallback, name: str = ...) -> ScheduledJob: ...


class CronJob:
    """A cron expression bound to a callback, run as an asyncio task."""

    def __init__(self, name: str, expression: str, callback: JobCallback):
        if not croniter.is_valid(expression):
            raise ValueError(f"Invalid cron expression: {expression}")
        self.name = name
        self.expression = expression
        self.callback = callback
        self.runs = 0
        self.last_run_at: datetime | None = None
        self._task: asyncio.Task | None = None

    def next_run_after(self, now: datetime) -> datetime:
        return croniter(self.expression, now).get_next(datetime)

    def start(self) -> None:
        self._task = asyncio.create_task(self._loop(), name=f"cron-{self.name}")

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            logger.info("cron_job_cancelled", job=self.name)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self) -> None:
        while True:
            now = datetime.now(timezone.utc)
            next_run = self.next_run_after(now)
            delay = max(0.0, (next_run - now).total_seconds())
            logger.debug("cron_job_waiting", job=self.name, next_run=next_run.isoformat())

            await asyncio.sleep(delay)
            await self.run_once()

    async def run_once(self) -> None:
        """Invoke the callback; failures are logged and the schedule continues."""
        self.last_run_at = datetime.now(timezone.utc)
        self.runs += 1
        try:
            await self.callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "cron_job_failed",
                job=self.name,
                error=str(e),
                exc_info=True,
            )


class CronScheduler:
    """In-process scheduler; must be used from a running event loop."""

    def __init__(self) -> None:
        self._jobs: dict[str, CronJob] = {}

    def schedule(self, expression: str, callback: JobCallback, name: str = "job") -> CronJob:
        """Start running ``callback`` at every fire time of ``expression``.

        A job already registered under ``name`` is replaced.
        """
        existing = self._jobs.pop(name, None)
        if existing is not None:
            existing.cancel()

        job = CronJob(name, expression, callback)
        job.start()
        self._jobs[name] = job
        logger.info("cron_job_scheduled", job=name, schedule=expression)
        return job

    def cancel(self, name: str) -> None:
        job = self._jobs.pop(name, None)
        if job is not None:
            job.cancel()

    def shutdown(self) -> None:
        for job in self._jobs.values():
            job.cancel()
        self._jobs.clear()

    @property
    def jobs(self) -> list[CronJob]:
        return list(self._jobs.values())
