"""
Verification Background Jobs

Scheduled tasks for the offline queue:
1. Drain queued verifications on a fixed interval

The health check job is registered by HealthMonitor.start_monitoring, and
recovery from offline also starts a drain through the monitor callback. The
periodic drain catches anything those two miss, such as items queued after a
transient validation failure while the monitor still reported online.

Design Principles:
- Jobs are idempotent (a drain that finds nothing to do is cheap)
- Drains are single-flight; overlapping triggers collapse
- Jobs log their own summaries
"""

import logging
from typing import Any

from apscheduler.triggers.interval import IntervalTrigger

from enrollment_sync.core.scheduler import JobScheduler
from enrollment_sync.modules.verification.coordinator import VerificationCoordinator

logger = logging.getLogger(__name__)

JOB_ID_DRAIN_QUEUE = "verification_drain_queue"


def make_drain_job(coordinator: VerificationCoordinator):
    """Build the drain job callable for one coordinator."""

    async def drain_verification_queue() -> dict[str, Any]:
        summary = await coordinator.drain_queue()
        return summary.model_dump()

    return drain_verification_queue


def register_verification_jobs(
    scheduler: JobScheduler,
    coordinator: VerificationCoordinator,
    drain_interval_seconds: float,
) -> None:
    """
    Register verification background jobs with the scheduler.

    Should be called during application startup, before or after the
    scheduler is started.
    """
    scheduler.register_job(
        JOB_ID_DRAIN_QUEUE,
        make_drain_job(coordinator),
        IntervalTrigger(seconds=drain_interval_seconds),
    )
    logger.info(f"Verification jobs registered (drain every {drain_interval_seconds:g}s)")
