"""
Periodic background jobs on APScheduler's AsyncIOScheduler.

Both timing domains of the service run as interval jobs:
- the Event Recorder flush (every few seconds, or earlier when a batch fills up)
- the Rollout Controller evaluation tick (hourly by default)

The jobs share one scheduler when the service is wired by
`build_rollout_service`; a `PeriodicJob` built without a scheduler creates and
owns its own.

Job defaults:
- max_instances=1: a job never overlaps with itself
- coalesce=True: missed runs collapse into one
- misfire_grace_time=30: runs delayed by a busy loop still execute

Callback failures are reported through the EVENT_JOB_ERROR listener and the
job keeps its schedule. `trigger()` moves the next run to now and may be called
from any thread. `stop()` removes the job and waits for an in-flight run to
finish; it never cancels a callback half-way.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED
from apscheduler.job import Job
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger


logger = logging.getLogger(__name__)

MISFIRE_GRACE_SECONDS: int = 30


def _on_job_error(event) -> None:
    exc = event.exception
    logger.error(
        f"Scheduled job {event.job_id} failed: {exc}",
        exc_info=(type(exc), exc, exc.__traceback__) if exc else None,
    )


def _on_job_missed(event) -> None:
    logger.warning(
        f"Scheduled job {event.job_id} missed its run at {event.scheduled_run_time}"
    )


def create_scheduler() -> AsyncIOScheduler:
    """AsyncIOScheduler in UTC with the service's job defaults and log listeners."""
    scheduler = AsyncIOScheduler(
        timezone="UTC",
        job_defaults={
            'coalesce': True,
            'max_instances': 1,
            'misfire_grace_time': MISFIRE_GRACE_SECONDS,
        },
    )
    scheduler.add_listener(_on_job_error, EVENT_JOB_ERROR)
    scheduler.add_listener(_on_job_missed, EVENT_JOB_MISSED)
    return scheduler


class PeriodicJob:
    """Runs an async callback every `interval_seconds` until stopped."""

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        callback: Callable[[], Awaitable[object]],
        scheduler: Optional[AsyncIOScheduler] = None,
    ) -> None:
        self.name = name
        self.interval_seconds = interval_seconds
        self._callback = callback
        self._scheduler = scheduler
        self._owns_scheduler = scheduler is None
        self._job: Optional[Job] = None
        self._run_lock = asyncio.Lock()
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._job is not None

    def start(self) -> None:
        """Schedule the job. Must be called from the running event loop."""
        if self.running:
            return

        if self._owns_scheduler:
            self._scheduler = create_scheduler()

        self._job = self._scheduler.add_job(
            self._run,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=self.name,
            name=self.name,
            replace_existing=True,
        )
        if not self._scheduler.running:
            self._scheduler.start()
        logger.info(f"Scheduled job {self.name} (every {self.interval_seconds}s)")

    def trigger(self) -> None:
        """Run the job as soon as possible instead of waiting for the interval."""
        job = self._job
        if job is None:
            return
        try:
            job.modify(next_run_time=datetime.now(timezone.utc))
        except JobLookupError:
            logger.debug(f"Job {self.name} was removed before it could be triggered")

    async def stop(self) -> None:
        """Unschedule the job after the in-flight run (if any) completes."""
        job = self._job
        if job is None:
            return
        self._job = None

        try:
            job.remove()
        except JobLookupError:
            pass

        async with self._run_lock:
            pass

        if self._owns_scheduler and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        logger.info(f"Stopped job {self.name}")

    async def _run(self) -> None:
        async with self._run_lock:
            try:
                await self._callback()
            finally:
                self.runs += 1
