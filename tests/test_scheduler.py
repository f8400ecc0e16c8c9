import asyncio
import time

import pytest

from scheduler import Scheduler, get_scheduler


class TestScheduler:

    @pytest.mark.asyncio
    async def test_schedule_periodic(self):
        scheduler = Scheduler(job_timeout=5)
        scheduler.start()
        calls = []

        await scheduler.schedule_periodic(lambda: calls.append(1), 0.05, name="test_task")
        await asyncio.sleep(0.3)
        await scheduler.stop()

        assert len(calls) >= 2

    @pytest.mark.asyncio
    async def test_run_job_returns_the_result(self):
        scheduler = Scheduler(job_timeout=5)
        assert await scheduler.run_job(lambda: {"deleted": 3}, "sweep") == {"deleted": 3}

    @pytest.mark.asyncio
    async def test_run_job_is_bounded_by_the_timeout(self):
        scheduler = Scheduler(job_timeout=0.05)
        with pytest.raises(asyncio.TimeoutError):
            await scheduler.run_job(lambda: time.sleep(0.3), "slow")

    @pytest.mark.asyncio
    async def test_failing_job_keeps_the_schedule_alive(self):
        scheduler = Scheduler(job_timeout=5)
        scheduler.start()
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("first run fails")

        await scheduler.schedule_periodic(flaky, 0.05, name="flaky", max_retries=0)
        await asyncio.sleep(0.3)
        await scheduler.stop()

        assert len(calls) >= 2

    @pytest.mark.asyncio
    async def test_stop_cancels_tasks(self):
        scheduler = Scheduler()
        scheduler.start()
        await scheduler.schedule_periodic(lambda: None, 10, name="long_task")
        assert len(scheduler.tasks) == 1
        assert scheduler.running is True

        await scheduler.stop()

        assert scheduler.running is False
        assert scheduler.tasks == []

    def test_get_scheduler_singleton(self):
        assert get_scheduler() is get_scheduler()
