"""
Unit tests for the verification health monitor.

These tests cover:
- Online / degraded / offline classification
- Bounded probe time
- Freshness of the cached status
- Persistence across restarts
- Scheduled monitoring and callbacks
"""

import asyncio
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from enrollment_sync.core.scheduler import JobScheduler
from enrollment_sync.modules.verification.health import (
    JOB_ID_HEALTH_CHECK,
    MESSAGE_DEGRADED,
    MESSAGE_NOT_CHECKED,
    MESSAGE_OFFLINE,
    MESSAGE_ONLINE,
    HealthMonitor,
)
from enrollment_sync.modules.verification.schemas import HealthState
from tests.conftest import FIXED_NOW, permanent_error, transient_error


@pytest.fixture
def monitor(mock_backend, store, clock):
    return HealthMonitor(
        mock_backend,
        store=store,
        scheduler=JobScheduler(),
        interval_seconds=30,
        check_timeout_seconds=0.05,
        clock=clock,
    )


class TestInitialStatus:
    """Tests for the status before any check."""

    @pytest.mark.asyncio
    async def test_starts_offline_and_unchecked(self, monitor):
        status = monitor.last_status
        assert status.status is HealthState.OFFLINE
        assert status.message == MESSAGE_NOT_CHECKED
        assert monitor.is_online() is False


class TestCheckHealth:
    """Tests for check_health classification."""

    @pytest.mark.asyncio
    async def test_probe_answers_online(self, monitor, mock_backend):
        status = await monitor.check_health()

        assert status.status is HealthState.ONLINE
        assert status.message == MESSAGE_ONLINE
        assert status.last_checked == FIXED_NOW
        assert status.next_retry_at is None
        assert monitor.last_status == status
        mock_backend.fallback_probe.assert_not_called()

    @pytest.mark.asyncio
    async def test_fallback_answers_online(self, monitor, mock_backend):
        mock_backend.health_probe.side_effect = permanent_error("function not found")

        status = await monitor.check_health()

        assert status.status is HealthState.ONLINE
        mock_backend.fallback_probe.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_network_failure_is_offline(self, monitor, mock_backend):
        mock_backend.health_probe.side_effect = transient_error()
        mock_backend.fallback_probe.side_effect = transient_error()

        status = await monitor.check_health()

        assert status.status is HealthState.OFFLINE
        assert status.message == MESSAGE_OFFLINE
        assert status.next_retry_at == FIXED_NOW + timedelta(seconds=30)

    @pytest.mark.asyncio
    async def test_auth_failure_is_degraded(self, monitor, mock_backend):
        mock_backend.health_probe.side_effect = permanent_error()
        mock_backend.fallback_probe.side_effect = permanent_error()

        status = await monitor.check_health()

        assert status.status is HealthState.DEGRADED
        assert status.message == MESSAGE_DEGRADED
        assert status.next_retry_at is not None

    @pytest.mark.asyncio
    async def test_unexpected_failure_is_degraded_not_raised(self, monitor, mock_backend):
        mock_backend.health_probe.side_effect = RuntimeError("boom")
        mock_backend.fallback_probe.side_effect = RuntimeError("boom")

        status = await monitor.check_health()

        assert status.status is HealthState.DEGRADED

    @pytest.mark.asyncio
    async def test_hanging_probe_is_bounded(self, monitor, mock_backend):
        async def hang():
            await asyncio.sleep(10)

        mock_backend.health_probe.side_effect = hang
        mock_backend.fallback_probe.side_effect = hang

        status = await asyncio.wait_for(monitor.check_health(), timeout=2)

        assert status.status is HealthState.OFFLINE


class TestIsOnline:
    """Tests for freshness of the cached status."""

    @pytest.mark.asyncio
    async def test_fresh_online_status(self, monitor, clock):
        await monitor.check_health()
        clock.advance(30)
        assert monitor.is_online() is True

    @pytest.mark.asyncio
    async def test_stale_online_status(self, monitor, clock):
        await monitor.check_health()
        clock.advance(31)
        assert monitor.is_online() is False
        # The cached status itself is unchanged
        assert monitor.last_status.status is HealthState.ONLINE

    @pytest.mark.asyncio
    async def test_one_missed_tick_is_still_fresh(self, monitor, mock_backend, clock):
        mock_backend.health_probe.side_effect = transient_error()
        mock_backend.fallback_probe.side_effect = transient_error()
        await monitor.check_health()
        clock.advance(60)

        assert monitor.is_fresh() is True

    @pytest.mark.asyncio
    async def test_restored_day_old_status_is_stale(self, monitor, mock_backend, store, clock):
        await monitor.check_health()
        clock.advance(86400)

        restarted = HealthMonitor(mock_backend, store=store, interval_seconds=30, clock=clock)
        await restarted.restore()

        assert restarted.last_status.status is HealthState.ONLINE
        assert restarted.is_fresh() is False
        assert restarted.is_online() is False


class TestPersistence:
    """Tests for persisting and restoring the status."""

    @pytest.mark.asyncio
    async def test_restore_after_restart(self, monitor, mock_backend, store, clock):
        mock_backend.health_probe.side_effect = transient_error()
        mock_backend.fallback_probe.side_effect = transient_error()
        await monitor.check_health()

        restarted = HealthMonitor(mock_backend, store=store, clock=clock)
        restored = await restarted.restore()

        assert restored.status is HealthState.OFFLINE
        assert restored.message == MESSAGE_OFFLINE
        assert restarted.last_status == restored

    @pytest.mark.asyncio
    async def test_restore_with_nothing_persisted(self, monitor):
        restored = await monitor.restore()
        assert restored.message == MESSAGE_NOT_CHECKED


class TestMonitoring:
    """Tests for start_monitoring / stop_monitoring."""

    @pytest.mark.asyncio
    async def test_start_requires_scheduler(self, mock_backend, clock):
        monitor = HealthMonitor(mock_backend, clock=clock)

        with pytest.raises(RuntimeError):
            await monitor.start_monitoring()

    @pytest.mark.asyncio
    async def test_start_checks_immediately_and_schedules(self, monitor, mock_backend):
        callback = MagicMock(return_value=None)

        status = await monitor.start_monitoring(interval_seconds=15, callback=callback)

        assert status.status is HealthState.ONLINE
        assert monitor.monitoring is True
        assert monitor.interval_seconds == 15
        assert monitor._scheduler.has_job(JOB_ID_HEALTH_CHECK)
        callback.assert_called_once_with(status)

    @pytest.mark.asyncio
    async def test_scheduled_tick_runs_check_and_async_callback(self, monitor, mock_backend):
        seen = []

        async def callback(status):
            seen.append(status.status)

        await monitor.start_monitoring(callback=callback)
        mock_backend.health_probe.side_effect = transient_error()
        mock_backend.fallback_probe.side_effect = transient_error()

        result = await monitor._scheduler.trigger_job_manually(JOB_ID_HEALTH_CHECK)

        assert result["status"] == "success"
        assert seen == [HealthState.ONLINE, HealthState.OFFLINE]

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_the_tick(self, monitor):
        callback = MagicMock(side_effect=RuntimeError("listener crashed"))

        status = await monitor.start_monitoring(callback=callback)

        assert status.status is HealthState.ONLINE
        callback.assert_called_once()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, monitor):
        monitor.stop_monitoring()

        await monitor.start_monitoring()
        monitor.stop_monitoring()
        monitor.stop_monitoring()

        assert monitor.monitoring is False
        assert not monitor._scheduler.has_job(JOB_ID_HEALTH_CHECK)
