"""
scheduler.py: periodic background jobs (expiry sweep, orphan-chunk sweep).

Jobs are plain blocking callables; each run is pushed to a worker thread
and bounded by a job timeout so a stuck run is reported instead of
blocking the event loop.
"""

import asyncio
import logging
from typing import Callable, Optional

import config

logger = logging.getLogger(__name__)


class Scheduler:
    """Simple periodic task scheduler."""

    def __init__(self, job_timeout: Optional[float] = None):
        self.tasks: list[asyncio.Task] = []
        self.running = False
        self.job_timeout = job_timeout or config.SWEEP_JOB_TIMEOUT_SECONDS

    async def run_job(self, func: Callable, name: str):
        """Runs one blocking job off the event loop, bounded by the job timeout."""
        logger.debug(f"Running job: {name}")
        return await asyncio.wait_for(asyncio.to_thread(func), timeout=self.job_timeout)

    async def schedule_periodic(
        self,
        func: Callable,
        interval_seconds: float,
        name: str = "periodic_task",
        max_retries: int = 3,
        initial_delay: float = 0,
    ):
        """
        Schedules ``func`` every ``interval_seconds``.

        Args:
            func: blocking callable to run
            interval_seconds: delay between two runs
            name: task name used in logs
            max_retries: retries (with back-off) after a failed run before waiting a full period
            initial_delay: delay before the first run
        """
        async def periodic_task():
            consecutive_failures = 0
            if initial_delay:
                await asyncio.sleep(initial_delay)
            while self.running:
                try:
                    await self.run_job(func, name)
                    consecutive_failures = 0
                except asyncio.CancelledError:
                    break
                except asyncio.TimeoutError:
                    logger.error(f"Job {name} exceeded its {self.job_timeout}s timeout")
                except Exception as e:
                    consecutive_failures += 1
                    logger.error(f"Job {name} failed ({consecutive_failures} in a row): {e}", exc_info=True)

                    if consecutive_failures <= max_retries:
                        retry_delay = min(30, 2 ** consecutive_failures)
                        logger.info(f"Job {name} retrying in {retry_delay}s")
                        await asyncio.sleep(retry_delay)
                        continue
                    logger.warning(f"Job {name} failed {consecutive_failures} times, waiting for next period")
                    consecutive_failures = 0

                await asyncio.sleep(interval_seconds)

        task = asyncio.create_task(periodic_task(), name=name)
        self.tasks.append(task)
        logger.info(f"Scheduled job {name} every {interval_seconds}s")

    def start(self):
        self.running = True
        logger.debug("Scheduler started")

    async def stop(self, timeout: float = 10.0):
        """Stops the scheduler and cancels its tasks, waiting at most ``timeout`` seconds."""
        self.running = False
        if not self.tasks:
            return

        for task in self.tasks:
            task.cancel()

        try:
            await asyncio.wait_for(asyncio.gather(*self.tasks, return_exceptions=True), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Scheduler stop timed out after {timeout}s")

        self.tasks.clear()
        logger.debug("Scheduler stopped")


_scheduler: Optional[Scheduler] = None


def get_scheduler() -> Scheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = Scheduler()
    return _scheduler
