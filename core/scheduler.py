"""
Cycle Scheduler
===============

Periodic runner for the scan and monitor cycles.

- Each job runs every `interval_seconds`
- A job that is still running when it comes due again is skipped, never stacked
- Jobs are independent: a slow scan does not delay the monitor
- On shutdown no new runs start; runs in flight are awaited
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable


logger = logging.getLogger(__name__)


@dataclass
class ScheduledJob:
    """A periodic coroutine with run bookkeeping."""
    name: str
    func: Callable[[], Awaitable[Any]]
    interval_seconds: float
    run_on_start: bool = True

    next_run: float = 0.0  # monotonic seconds
    run_count: int = 0
    skipped_count: int = 0
    error_count: int = 0
    last_started: datetime | None = None
    last_finished: datetime | None = None
    last_error: str | None = None
    task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def is_running(self) -> bool:
        return self.task is not None and not self.task.done()

    def get_status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "interval_seconds": self.interval_seconds,
            "running": self.is_running,
            "run_count": self.run_count,
            "skipped_count": self.skipped_count,
            "error_count": self.error_count,
            "last_started": self.last_started.isoformat() if self.last_started else None,
            "last_finished": self.last_finished.isoformat() if self.last_finished else None,
            "last_error": self.last_error,
        }


class CycleScheduler:
    """
    Runs registered jobs on fixed intervals until shutdown is requested.

    Usage:
        scheduler = CycleScheduler()
        scheduler.add_job("monitor", monitor.run_cycle, 15 * 60)
        scheduler.add_job("scan", scanner.run_scan, 12 * 3600)
        await scheduler.run()
    """

    def __init__(self, tick_seconds: float = 1.0, clock: Callable[[], float] = time.monotonic):
        self._tick_seconds = tick_seconds
        self._clock = clock
        self._jobs: dict[str, ScheduledJob] = {}
        self._shutdown_event = asyncio.Event()
        self._running = False

    @property
    def jobs(self) -> dict[str, ScheduledJob]:
        return dict(self._jobs)

    @property
    def is_running(self) -> bool:
        return self._running

    def add_job(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        interval_seconds: float,
        run_on_start: bool = True,
    ) -> ScheduledJob:
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")
        if name in self._jobs:
            raise ValueError(f"Job '{name}' already registered")

        job = ScheduledJob(name, func, interval_seconds, run_on_start)
        job.next_run = self._clock() if run_on_start else self._clock() + interval_seconds
        self._jobs[name] = job
        logger.info(f"Scheduled job '{name}' every {interval_seconds:.0f}s")
        return job

    def trigger(self, name: str) -> bool:
        """
        Start a run of the named job now.

        Returns False (and counts a skip) when the previous run is still going.
        """
        job = self._jobs[name]
        if job.is_running:
            job.skipped_count += 1
            logger.info(f"Job '{name}' still running; skipping this run")
            return False

        job.task = asyncio.create_task(self._execute(job), name=f"job-{name}")
        return True

    async def _execute(self, job: ScheduledJob) -> None:
        job.last_started = datetime.now(timezone.utc)
        job.run_count += 1
        try:
            await job.func()
            job.last_error = None
        except Exception as e:
            # A failed cycle must not stop the schedule
            job.error_count += 1
            job.last_error = str(e)
            logger.exception(f"Job '{job.name}' failed")
        finally:
            job.last_finished = datetime.now(timezone.utc)

    def _due_jobs(self) -> list[ScheduledJob]:
        now = self._clock()
        return [job for job in self._jobs.values() if now >= job.next_run]

    async def run(self) -> None:
        """Run until request_shutdown(); waits for in-flight runs before returning."""
        self._running = True
        logger.info(f"Scheduler started with {len(self._jobs)} jobs")

        try:
            while not self._shutdown_event.is_set():
                for job in self._due_jobs():
                    self.trigger(job.name)
                    job.next_run = self._clock() + job.interval_seconds

                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=self._tick_seconds)
                except asyncio.TimeoutError:
                    pass
        finally:
            in_flight = [job.task for job in self._jobs.values() if job.is_running]
            if in_flight:
                logger.info(f"Waiting for {len(in_flight)} running job(s) to finish")
                await asyncio.gather(*in_flight, return_exceptions=True)
            self._running = False
            logger.info("Scheduler stopped")

    def request_shutdown(self) -> None:
        logger.info("Scheduler shutdown requested")
        self._shutdown_event.set()

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "jobs": [job.get_status() for job in self._jobs.values()],
        }


def create_scheduler(config: dict[str, Any] | None = None) -> CycleScheduler:
    """Factory function to create the scheduler from the scheduler section."""
    config = (config or {}).get("scheduler", {})
    return CycleScheduler(tick_seconds=config.get("tick_seconds", 1.0))
