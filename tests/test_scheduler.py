"""
Tests for Cycle Scheduler
=========================

Registration, skip-while-running, error isolation and shutdown.
"""

import asyncio

import pytest

from core.scheduler import CycleScheduler, create_scheduler


class TestRegistration:
    """Tests for add_job."""

    def test_rejects_bad_interval(self):
        scheduler = CycleScheduler()

        with pytest.raises(ValueError):
            scheduler.add_job("monitor", lambda: None, 0)

    def test_rejects_duplicate_name(self):
        scheduler = CycleScheduler()

        async def job():
            pass

        scheduler.add_job("monitor", job, 60)
        with pytest.raises(ValueError):
            scheduler.add_job("monitor", job, 60)

    def test_run_on_start_schedules_now(self):
        """Deferred jobs wait one interval."""
        clock = iter([100.0, 100.0]).__next__
        scheduler = CycleScheduler(clock=clock)

        async def job():
            pass

        first = scheduler.add_job("scan", job, 60, run_on_start=True)
        second = scheduler.add_job("monitor", job, 60, run_on_start=False)

        assert first.next_run == 100.0
        assert second.next_run == 160.0

    def test_factory_tick(self, test_config):
        scheduler = create_scheduler(test_config)

        assert scheduler._tick_seconds == 0.01


class TestExecution:
    """Tests for trigger and _execute."""

    @pytest.mark.asyncio
    async def test_skip_while_running(self):
        """A second trigger while the first run is going is skipped, not stacked."""
        release = asyncio.Event()
        calls = []

        async def slow_cycle():
            calls.append(1)
            await release.wait()

        scheduler = CycleScheduler()
        job = scheduler.add_job("monitor", slow_cycle, 60)

        assert scheduler.trigger("monitor")
        await asyncio.sleep(0)
        assert not scheduler.trigger("monitor")

        release.set()
        await job.task

        assert calls == [1]
        assert job.run_count == 1
        assert job.skipped_count == 1
        assert scheduler.trigger("monitor")
        await job.task

    @pytest.mark.asyncio
    async def test_error_counted_not_raised(self):
        """A failing cycle is recorded and the job stays schedulable."""
        async def broken():
            raise RuntimeError("exchange down")

        scheduler = CycleScheduler()
        job = scheduler.add_job("scan", broken, 60)

        scheduler.trigger("scan")
        await job.task

        assert job.error_count == 1
        assert job.last_error == "exchange down"
        assert job.last_finished is not None
        assert job.get_status()["error_count"] == 1


class TestRunLoop:
    """Tests for run() and shutdown."""

    @pytest.mark.asyncio
    async def test_runs_due_jobs_until_shutdown(self):
        """run_on_start jobs run once; long intervals do not repeat."""
        counter = {"runs": 0}

        async def cycle():
            counter["runs"] += 1

        scheduler = CycleScheduler(tick_seconds=0.01)
        scheduler.add_job("monitor", cycle, 3600)
        scheduler.add_job("scan", cycle, 3600, run_on_start=False)

        runner = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.05)
        assert scheduler.is_running

        scheduler.request_shutdown()
        await asyncio.wait_for(runner, timeout=1.0)

        assert counter["runs"] == 1
        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_in_flight(self):
        """A run in progress finishes before run() returns."""
        release = asyncio.Event()
        finished = []

        async def slow_cycle():
            await release.wait()
            finished.append(True)

        scheduler = CycleScheduler(tick_seconds=0.01)
        scheduler.add_job("scan", slow_cycle, 3600)

        runner = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.05)
        scheduler.request_shutdown()
        await asyncio.sleep(0.05)

        assert not runner.done()

        release.set()
        await asyncio.wait_for(runner, timeout=1.0)

        assert finished == [True]
        assert scheduler.get_status()["jobs"][0]["run_count"] == 1
