"""
Verification Health Monitor

Tracks whether the backend of record is reachable so the coordinator can
choose between synchronous verification and the offline queue.

Classification of one check:
- liveness probe answers, or the fallback table read answers -> online
- both fail and the fallback failure is network/timeout class -> offline
- both fail for any other reason (auth, schema) -> degraded

Every check produces a complete ServiceHealthStatus that replaces the cached
one in a single assignment. check_health never raises.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta

from apscheduler.triggers.interval import IntervalTrigger

from enrollment_sync.core.backend import BackendClient
from enrollment_sync.core.clock import Clock, utc_now
from enrollment_sync.core.errors import BackendError, ErrorKind, format_error
from enrollment_sync.core.scheduler import JobScheduler
from enrollment_sync.modules.local_state import StateStore, StateStoreError
from enrollment_sync.modules.verification.schemas import HealthState, ServiceHealthStatus

logger = logging.getLogger(__name__)

JOB_ID_HEALTH_CHECK = "verification_health_check"

HEALTH_NAMESPACE = "service_health"
HEALTH_KEY = "last_status"

MESSAGE_ONLINE = "Verification service is online"
MESSAGE_OFFLINE = "Verification service is temporarily unavailable"
MESSAGE_DEGRADED = "Verification service experiencing issues"
MESSAGE_NOT_CHECKED = "Verification service has not been checked yet"

# A cached status older than this many polling intervals is stale
STALE_AFTER_INTERVALS = 2

HealthCallback = Callable[[ServiceHealthStatus], Awaitable[None] | None]


class HealthMonitor:
    """
    Polls backend reachability and caches the latest status.

    One instance per process. The schedule is owned by the injected
    JobScheduler; tests drive it with `trigger_job_manually`.
    """

    def __init__(
        self,
        backend: BackendClient,
        store: StateStore | None = None,
        scheduler: JobScheduler | None = None,
        interval_seconds: float = 30,
        check_timeout_seconds: float = 5.0,
        clock: Clock = utc_now,
    ):
        self._backend = backend
        self._store = store
        self._scheduler = scheduler
        self.interval_seconds = interval_seconds
        self.check_timeout_seconds = check_timeout_seconds
        self._clock = clock
        self._callback: HealthCallback | None = None
        self._monitoring = False
        self._status = ServiceHealthStatus(
            status=HealthState.OFFLINE,
            last_checked=clock(),
            next_retry_at=None,
            message=MESSAGE_NOT_CHECKED,
        )

    @property
    def last_status(self) -> ServiceHealthStatus:
        """Last known status. Never triggers a probe."""
        return self._status

    @property
    def monitoring(self) -> bool:
        return self._monitoring

    def _age_seconds(self) -> float:
        return (self._clock() - self._status.last_checked).total_seconds()

    def is_fresh(self) -> bool:
        """
        True while the cached status, whatever its state, is recent enough to route on.

        One missed polling tick is tolerated; a status restored from a long
        stopped process is not.
        """
        return self._age_seconds() <= self.interval_seconds * STALE_AFTER_INTERVALS

    def is_online(self) -> bool:
        """True only when the cached status is online and no older than one interval."""
        if self._status.status is not HealthState.ONLINE:
            return False
        return self._age_seconds() <= self.interval_seconds

    async def _probe(self, probe: Callable[[], Awaitable[None]]) -> None:
        try:
            await asyncio.wait_for(probe(), timeout=self.check_timeout_seconds)
        except TimeoutError as e:
            raise BackendError("Health check timed out.", kind=ErrorKind.TRANSIENT) from e

    async def check_health(self) -> ServiceHealthStatus:
        """
        Run one health check and replace the cached status.

        Returns:
            The fresh status. Any failure is folded into the status.
        """
        try:
            await self._probe(self._backend.health_probe)
            fresh = self._build(HealthState.ONLINE, MESSAGE_ONLINE)
        except Exception as probe_error:
            logger.debug(
                f"Liveness probe failed, trying fallback read: {format_error(probe_error)}"
            )
            try:
                await self._probe(self._backend.fallback_probe)
                fresh = self._build(HealthState.ONLINE, MESSAGE_ONLINE)
            except BackendError as e:
                fresh = self._classify(e)
            except Exception as e:
                logger.error(f"Unexpected health check failure: {e}", exc_info=True)
                fresh = self._build(HealthState.DEGRADED, MESSAGE_DEGRADED)

        previous = self._status
        self._status = fresh

        if previous.status is not fresh.status:
            logger.info(
                f"Verification service health: {previous.status.value} -> {fresh.status.value}"
            )

        await self._persist(fresh)
        return fresh

    def _classify(self, error: BackendError) -> ServiceHealthStatus:
        if error.is_transient:
            logger.warning(f"Verification service offline: {error.message}")
            return self._build(HealthState.OFFLINE, MESSAGE_OFFLINE)
        logger.warning(f"Verification service degraded: {error.message}")
        return self._build(HealthState.DEGRADED, MESSAGE_DEGRADED)

    def _build(self, state: HealthState, message: str) -> ServiceHealthStatus:
        now = self._clock()
        next_retry_at = None
        if state is not HealthState.ONLINE:
            next_retry_at = now + timedelta(seconds=self.interval_seconds)
        return ServiceHealthStatus(
            status=state,
            last_checked=now,
            next_retry_at=next_retry_at,
            message=message,
        )

    async def _persist(self, status: ServiceHealthStatus) -> None:
        if self._store is None:
            return
        try:
            await self._store.put(
                HEALTH_NAMESPACE, HEALTH_KEY, status.model_dump_json(), status.last_checked
            )
        except StateStoreError as e:
            logger.warning(f"Could not persist health status: {e}")

    async def restore(self) -> ServiceHealthStatus:
        """
        Load the last persisted status, if any, as the cached status.

        The coordinator routes on a restored status only while is_fresh()
        holds; an older one is treated as offline until the next check.
        """
        if self._store is None:
            return self._status
        try:
            payload = await self._store.get(HEALTH_NAMESPACE, HEALTH_KEY)
        except StateStoreError as e:
            logger.warning(f"Could not restore health status: {e}")
            return self._status

        if payload:
            try:
                self._status = ServiceHealthStatus.model_validate_json(payload)
            except ValueError as e:
                logger.warning(f"Ignoring unreadable persisted health status: {e}")
                return self._status
            logger.info(f"Restored verification service health: {self._status.status.value}")
        return self._status

    # ============================================
    # Scheduling
    # ============================================

    async def _tick(self) -> None:
        status = await self.check_health()
        callback = self._callback
        if callback is None:
            return
        try:
            result = callback(status)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Health status callback failed: {e}", exc_info=True)

    async def start_monitoring(
        self,
        interval_seconds: float | None = None,
        callback: HealthCallback | None = None,
    ) -> ServiceHealthStatus:
        """
        Check immediately, then schedule a check every interval.

        Calling this again replaces the previous schedule and callback.

        Args:
            interval_seconds: Polling interval; defaults to the configured one
            callback: Called with every fresh status, sync or async

        Returns:
            The status from the immediate first check
        """
        if self._scheduler is None:
            raise RuntimeError("HealthMonitor was constructed without a scheduler")

        if interval_seconds is not None:
            self.interval_seconds = interval_seconds
        self._callback = callback
        self._monitoring = True

        await self._tick()

        self._scheduler.register_job(
            JOB_ID_HEALTH_CHECK,
            self._tick,
            IntervalTrigger(seconds=self.interval_seconds),
        )
        logger.info(f"Health monitoring started (every {self.interval_seconds:g}s)")
        return self._status

    def stop_monitoring(self) -> None:
        """Cancel the schedule. A no-op when monitoring was never started."""
        if not self._monitoring:
            return
        self._monitoring = False
        self._callback = None
        if self._scheduler is not None:
            self._scheduler.remove_job(JOB_ID_HEALTH_CHECK)
        logger.info("Health monitoring stopped")
