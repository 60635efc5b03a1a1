"""
Background Job Scheduler

Scheduled task execution using APScheduler with AsyncIO support.

A JobScheduler is constructed once per process and handed to the services
that need periodic work (health polling, queue draining). Nothing here is
module-level state, so tests build their own scheduler and drive jobs with
`trigger_job_manually` instead of waiting on the wall clock.

Design Principles:
- Jobs are idempotent (safe to run multiple times)
- At most one instance of a job runs at a time; missed runs coalesce
- Failed jobs are logged but don't crash the scheduler
- Jobs can be registered before or after the scheduler starts
"""

import logging
from collections.abc import Callable, Coroutine
from datetime import UTC, datetime
from typing import Any

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, JobExecutionEvent
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger

logger = logging.getLogger(__name__)

JobFunc = Callable[[], Coroutine[Any, Any, Any]]


class SchedulerConfig:
    """Configuration for the background scheduler."""

    TIMEZONE = "UTC"

    JOB_COALESCE = True  # Combine multiple missed executions into one
    JOB_MAX_INSTANCES = 1  # Only one instance of each job can run at a time
    JOB_MISFIRE_GRACE_TIME = 60  # Seconds a late job may still start

    JOB_DEFAULTS = {
        "coalesce": JOB_COALESCE,
        "max_instances": JOB_MAX_INSTANCES,
        "misfire_grace_time": JOB_MISFIRE_GRACE_TIME,
    }


def _job_listener(event: JobExecutionEvent) -> None:
    """Log job execution results for monitoring and debugging."""
    if event.exception:
        logger.error(
            f"Job {event.job_id} failed with exception: {event.exception}",
            exc_info=event.exception,
        )
    else:
        logger.debug(f"Job {event.job_id} executed at {datetime.now(UTC).isoformat()}")


class JobScheduler:
    """Owns one AsyncIOScheduler and a registry of jobs."""

    def __init__(self, timezone: str = SchedulerConfig.TIMEZONE):
        self.timezone = timezone
        self._scheduler: AsyncIOScheduler | None = None
        self._registry: dict[str, tuple[JobFunc, BaseTrigger]] = {}

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    async def start(self) -> None:
        """
        Start the scheduler and add every job registered so far.

        Must be called from inside a running event loop.
        """
        if self.running:
            logger.warning("Scheduler already running")
            return

        logger.info("Initializing background job scheduler...")

        self._scheduler = AsyncIOScheduler(
            timezone=self.timezone,
            job_defaults=SchedulerConfig.JOB_DEFAULTS,
        )
        self._scheduler.add_listener(_job_listener, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)

        for job_id, (func, trigger) in self._registry.items():
            self._scheduler.add_job(func, trigger=trigger, id=job_id, replace_existing=True)

        self._scheduler.start()
        logger.info(f"Background job scheduler started with {len(self._registry)} job(s)")

    async def shutdown(self) -> None:
        """Stop the scheduler, waiting for running jobs to complete."""
        if not self.running:
            logger.debug("Scheduler not running, nothing to stop")
            return

        logger.info("Stopping background job scheduler...")
        self._scheduler.shutdown(wait=True)
        self._scheduler = None
        logger.info("Background job scheduler stopped")

    def register_job(
        self,
        job_id: str,
        func: JobFunc,
        trigger: BaseTrigger,
        replace_existing: bool = True,
    ) -> None:
        """
        Register a job.

        Jobs registered before `start` are added when the scheduler starts.

        Args:
            job_id: Unique identifier for the job
            func: Async function to execute
            trigger: APScheduler trigger (IntervalTrigger, CronTrigger, etc.)
            replace_existing: Whether to replace an existing job with the same ID
        """
        if job_id in self._registry and not replace_existing:
            raise ValueError(f"Job {job_id} is already registered")

        self._registry[job_id] = (func, trigger)

        if self.running:
            self._scheduler.add_job(func, trigger=trigger, id=job_id, replace_existing=True)

        logger.info(f"Registered job: {job_id}")

    def remove_job(self, job_id: str) -> bool:
        """
        Remove a job. Removing an unknown job is a no-op.

        Returns:
            True if the job was registered
        """
        existed = self._registry.pop(job_id, None) is not None

        if self.running:
            try:
                self._scheduler.remove_job(job_id)
            except JobLookupError:
                pass

        if existed:
            logger.info(f"Removed job: {job_id}")
        return existed

    def has_job(self, job_id: str) -> bool:
        return job_id in self._registry

    async def trigger_job_manually(self, job_id: str) -> dict[str, Any]:
        """
        Run a registered job immediately, bypassing the schedule.

        Args:
            job_id: The ID of the job to trigger

        Returns:
            Dict with job_id, status ("success" or "error"), executed_at,
            and error when the job raised

        Raises:
            ValueError: If job_id is not registered
        """
        if job_id not in self._registry:
            raise ValueError(
                f"Job {job_id} not found in registry. Available jobs: {list(self._registry)}"
            )

        func, _trigger = self._registry[job_id]
        executed_at = datetime.now(UTC)

        logger.info(f"Manually triggering job: {job_id}")

        try:
            await func()
            return {
                "job_id": job_id,
                "status": "success",
                "executed_at": executed_at.isoformat(),
            }
        except Exception as e:
            logger.error(f"Manual execution of job {job_id} failed: {e}", exc_info=True)
            return {
                "job_id": job_id,
                "status": "error",
                "executed_at": executed_at.isoformat(),
                "error": str(e),
            }

    def list_registered_jobs(self) -> list[dict[str, Any]]:
        """List registered jobs with their next run time and pause state."""
        jobs = []

        for job_id in self._registry:
            job_info: dict[str, Any] = {"job_id": job_id, "registered": True}

            if self.running:
                scheduled_job = self._scheduler.get_job(job_id)
                next_run = scheduled_job.next_run_time if scheduled_job else None
                job_info["next_run_time"] = next_run.isoformat() if next_run else None
                job_info["is_paused"] = next_run is None
            else:
                job_info["next_run_time"] = None
                job_info["is_paused"] = True

            jobs.append(job_info)

        return jobs

    def pause_job(self, job_id: str) -> bool:
        """Pause a scheduled job. Returns False if it is not scheduled."""
        if not self.running or self._scheduler.get_job(job_id) is None:
            logger.warning(f"Job not found for pausing: {job_id}")
            return False

        self._scheduler.pause_job(job_id)
        logger.info(f"Paused job: {job_id}")
        return True

    def resume_job(self, job_id: str) -> bool:
        """Resume a paused job. Returns False if it is not scheduled."""
        if not self.running or self._scheduler.get_job(job_id) is None:
            logger.warning(f"Job not found for resuming: {job_id}")
            return False

        self._scheduler.resume_job(job_id)
        logger.info(f"Resumed job: {job_id}")
        return True
