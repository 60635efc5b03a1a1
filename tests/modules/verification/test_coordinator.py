"""
Tests for the verification coordinator.

The coordinator is wired through build_services on an in-memory store with a
mocked backend client, so queue, audit log, health monitor and state machine
are the real implementations.

These tests cover:
- Input normalization and validation
- Synchronous verification for both code types
- Offline queueing without network calls
- Queue draining: success, retries, abandonment, single-flight
- Drain on recovery from offline
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from enrollment_sync.core.config import Settings
from enrollment_sync.core.errors import ErrorKind
from enrollment_sync.modules.local_state import StateStoreError
from enrollment_sync.modules.verification.coordinator import MAX_RETRIES_EXCEEDED
from enrollment_sync.modules.verification.schemas import (
    AuditResult,
    CodeType,
    HealthState,
    OutcomeStatus,
)
from enrollment_sync.services import build_services
from tests.conftest import FIXED_NOW, permanent_error, transient_error

ADMISSION_PAYLOAD = {
    "found": True,
    "code_type": "Admission",
    "admission_id": "adm-1",
    "applicant_name": "Aminata Sesay",
    "grade": "JSS 1",
}

ENQUIRY_PAYLOAD = {
    "found": True,
    "code_type": "Enquiry",
    "enquiry_id": "enq-1",
    "admission_id": "adm-9",
}


@pytest.fixture
def settings():
    return Settings(_env_file=None, branch_id="branch-1", queue_max_retries=3)


@pytest.fixture
def services(settings, store, mock_backend, clock):
    """Create the full service graph on the in-memory store."""
    mock_backend.validate_code.return_value = ADMISSION_PAYLOAD
    mock_backend.get_admission.return_value = {"id": "adm-1", "status": "Registered"}
    mock_backend.update_admission.return_value = {"id": "adm-1", "status": "Verified"}
    return build_services(settings, store, backend=mock_backend, clock=clock)


@pytest.fixture
def coordinator(services):
    return services.coordinator


async def go_online(services, backend):
    backend.health_probe.side_effect = None
    backend.fallback_probe.side_effect = None
    status = await services.monitor.check_health()
    assert status.status is HealthState.ONLINE
    return status


async def go_offline(services, backend):
    backend.health_probe.side_effect = transient_error()
    backend.fallback_probe.side_effect = transient_error()
    status = await services.monitor.check_health()
    assert status.status is HealthState.OFFLINE
    return status


class TestSubmitInput:
    """Tests for input handling before any backend interaction."""

    @pytest.mark.asyncio
    async def test_empty_code_is_invalid_and_not_audited(self, coordinator, services, mock_backend):
        for raw in (None, "", "   "):
            outcome = await coordinator.submit(raw)

            assert outcome.status is OutcomeStatus.INVALID
            assert outcome.error_kind is ErrorKind.INVALID_INPUT
            assert outcome.logged is False

        assert await services.audit.count() == 0
        assert await services.queue.count() == 0
        mock_backend.validate_code.assert_not_called()

    @pytest.mark.asyncio
    async def test_malformed_code_is_invalid_and_audited(self, coordinator, services, mock_backend):
        await go_online(services, mock_backend)

        outcome = await coordinator.submit("AB12_CD!")

        assert outcome.status is OutcomeStatus.INVALID
        assert outcome.logged is True
        entries = await services.audit.list()
        assert [e.result for e in entries] == [AuditResult.INVALID]
        mock_backend.validate_code.assert_not_called()


class TestSubmitOnline:
    """Tests for synchronous verification while the backend is reachable."""

    @pytest.mark.asyncio
    async def test_admission_code_success(self, coordinator, services, mock_backend):
        await go_online(services, mock_backend)

        outcome = await coordinator.submit("ab12 cd")

        assert outcome.status is OutcomeStatus.SUCCESS
        assert outcome.code == "AB12CD"
        assert outcome.code_type is CodeType.ADMISSION
        assert outcome.target_entity_id == "adm-1"
        mock_backend.validate_code.assert_awaited_once_with("AB12CD")
        mock_backend.import_record.assert_awaited_once_with("adm-1", "Admission", "branch-1")
        mock_backend.update_admission.assert_awaited_once_with(
            "adm-1", {"status": "Verified", "updated_at": FIXED_NOW.isoformat()}
        )

        entries = await services.audit.list()
        assert len(entries) == 1
        assert entries[0].result is AuditResult.SUCCESS
        assert entries[0].error_message is None

        await services.audit.flush()
        mock_backend.insert_verification_log.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_enquiry_code_success(self, coordinator, services, mock_backend):
        await go_online(services, mock_backend)
        mock_backend.validate_code.return_value = ENQUIRY_PAYLOAD
        mock_backend.get_enquiry.return_value = {"id": "enq-1", "status": "NEW"}

        outcome = await coordinator.submit("ENQ-42")

        assert outcome.status is OutcomeStatus.SUCCESS
        assert outcome.code_type is CodeType.ENQUIRY
        assert outcome.target_entity_id == "enq-1"
        mock_backend.import_record.assert_awaited_once_with("adm-9", "Enquiry", "branch-1")
        mock_backend.update_enquiry_status.assert_awaited_once_with(
            "enq-1", "ENQUIRY_VERIFIED", "Verified via access code"
        )

    @pytest.mark.asyncio
    async def test_unknown_code_is_invalid(self, coordinator, services, mock_backend):
        await go_online(services, mock_backend)
        mock_backend.validate_code.return_value = {"found": False, "message": "Unknown code"}

        outcome = await coordinator.submit("ZZ9999")

        assert outcome.status is OutcomeStatus.INVALID
        assert outcome.error_kind is ErrorKind.NOT_FOUND
        assert outcome.message == "Unknown code"
        mock_backend.import_record.assert_not_called()
        assert (await services.audit.list())[0].result is AuditResult.INVALID

    @pytest.mark.asyncio
    async def test_expired_code(self, coordinator, services, mock_backend):
        await go_online(services, mock_backend)
        mock_backend.validate_code.return_value = {
            **ADMISSION_PAYLOAD,
            "expires_at": (FIXED_NOW - timedelta(hours=1)).isoformat(),
        }

        outcome = await coordinator.submit("AB12CD")

        assert outcome.status is OutcomeStatus.EXPIRED
        assert outcome.error_kind is ErrorKind.EXPIRED
        mock_backend.import_record.assert_not_called()
        assert (await services.audit.list())[0].result is AuditResult.EXPIRED

    @pytest.mark.asyncio
    async def test_code_type_mismatch(self, coordinator, services, mock_backend):
        await go_online(services, mock_backend)

        outcome = await coordinator.submit("AB12CD", expected_code_type=CodeType.ENQUIRY)

        assert outcome.status is OutcomeStatus.INVALID
        assert outcome.message == "Code type mismatch: expected Enquiry, got Admission."
        mock_backend.import_record.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_code_type_is_configuration_mismatch(
        self, coordinator, services, mock_backend
    ):
        await go_online(services, mock_backend)
        mock_backend.validate_code.return_value = {**ADMISSION_PAYLOAD, "code_type": "Student"}

        outcome = await coordinator.submit("AB12CD")

        assert outcome.status is OutcomeStatus.INVALID
        assert "configuration mismatch" in outcome.message

    @pytest.mark.asyncio
    async def test_transient_validation_failure_queues(self, coordinator, services, mock_backend):
        await go_online(services, mock_backend)
        mock_backend.validate_code.side_effect = transient_error()

        outcome = await coordinator.submit("AB12CD")

        assert outcome.status is OutcomeStatus.QUEUED
        assert outcome.error_kind is ErrorKind.TRANSIENT
        assert await services.queue.count() == 1

    @pytest.mark.asyncio
    async def test_permanent_validation_failure(self, coordinator, services, mock_backend):
        await go_online(services, mock_backend)
        mock_backend.validate_code.side_effect = permanent_error("JWT expired")

        outcome = await coordinator.submit("AB12CD")

        assert outcome.status is OutcomeStatus.FAILED
        assert outcome.error_kind is ErrorKind.PERMANENT
        assert outcome.retryable is False
        assert outcome.message == "JWT expired"
        assert await services.queue.count() == 0
        assert (await services.audit.list())[0].error_message == "JWT expired"

    @pytest.mark.asyncio
    async def test_transient_import_failure_is_retryable(self, coordinator, services, mock_backend):
        await go_online(services, mock_backend)
        mock_backend.import_record.side_effect = transient_error()

        outcome = await coordinator.submit("AB12CD")

        assert outcome.status is OutcomeStatus.FAILED
        assert outcome.retryable is True
        assert await services.queue.count() == 0
        mock_backend.update_admission.assert_not_called()

    @pytest.mark.asyncio
    async def test_lifecycle_refusal_is_failed(self, coordinator, services, mock_backend):
        await go_online(services, mock_backend)
        mock_backend.get_admission.return_value = {"id": "adm-1", "status": "Rejected"}

        outcome = await coordinator.submit("AB12CD")

        assert outcome.status is OutcomeStatus.FAILED
        assert outcome.error_kind is ErrorKind.PRECONDITION_NOT_MET
        assert outcome.message == "Admission is Rejected and cannot be verified."

    @pytest.mark.asyncio
    async def test_unexpected_error_is_failed_not_raised(self, coordinator, services, mock_backend):
        await go_online(services, mock_backend)
        mock_backend.validate_code.side_effect = RuntimeError("bug")

        outcome = await coordinator.submit("AB12CD")

        assert outcome.status is OutcomeStatus.FAILED
        assert outcome.message == "bug"
        assert (await services.audit.list())[0].result is AuditResult.FAILED

    @pytest.mark.asyncio
    async def test_same_code_is_not_verified_twice_concurrently(
        self, coordinator, services, mock_backend
    ):
        await go_online(services, mock_backend)
        release = asyncio.Event()

        async def slow_validate(code):
            await release.wait()
            return ADMISSION_PAYLOAD

        mock_backend.validate_code.side_effect = slow_validate

        first = asyncio.create_task(coordinator.submit("AB12CD"))
        while "AB12CD" not in coordinator._in_flight:
            await asyncio.sleep(0)

        second = await coordinator.submit("ab12cd")
        release.set()
        outcome = await first

        assert second.status is OutcomeStatus.FAILED
        assert "already being processed" in second.message
        assert second.logged is False
        assert outcome.status is OutcomeStatus.SUCCESS
        mock_backend.validate_code.assert_awaited_once()


class TestSubmitOffline:
    """Tests for submissions while the backend is unreachable."""

    @pytest.mark.asyncio
    async def test_day_old_online_status_is_not_trusted(
        self, settings, store, services, mock_backend, clock
    ):
        await go_online(services, mock_backend)
        clock.advance(86400)

        restarted = build_services(settings, store, backend=mock_backend, clock=clock)
        restored = await restarted.monitor.restore()
        mock_backend.validate_code.reset_mock()

        outcome = await restarted.coordinator.submit("ZZ99")

        assert restored.status is HealthState.ONLINE
        assert outcome.status is OutcomeStatus.QUEUED
        mock_backend.validate_code.assert_not_called()

    @pytest.mark.asyncio
    async def test_status_one_tick_late_still_routes_online(
        self, coordinator, services, mock_backend, clock
    ):
        await go_online(services, mock_backend)
        clock.advance(45)

        outcome = await coordinator.submit("AB12CD")

        assert outcome.status is OutcomeStatus.SUCCESS
        mock_backend.validate_code.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_offline_submit_queues_without_network(self, coordinator, services, mock_backend):
        await go_offline(services, mock_backend)

        outcome = await coordinator.submit("AB12 CD")
        await services.audit.flush()

        assert outcome.status is OutcomeStatus.QUEUED
        assert outcome.retryable is True
        assert outcome.queue_id is not None

        items = await services.queue.list()
        assert len(items) == 1
        assert items[0].id == outcome.queue_id
        assert items[0].code == "AB12CD"
        assert items[0].retry_count == 0
        assert items[0].max_retries == 3

        entries = await services.audit.list()
        assert len(entries) == 1
        assert entries[0].result is AuditResult.QUEUED
        assert entries[0].queue_id == outcome.queue_id

        mock_backend.validate_code.assert_not_called()
        mock_backend.import_record.assert_not_called()
        mock_backend.insert_verification_log.assert_not_called()

    @pytest.mark.asyncio
    async def test_unchecked_monitor_counts_as_offline(self, coordinator, services, mock_backend):
        outcome = await coordinator.submit("AB12CD")

        assert outcome.status is OutcomeStatus.QUEUED
        mock_backend.validate_code.assert_not_called()

    @pytest.mark.asyncio
    async def test_duplicate_offline_submit_reuses_queue_entry(
        self, coordinator, services, mock_backend
    ):
        await go_offline(services, mock_backend)

        first = await coordinator.submit("AB12CD")
        second = await coordinator.submit("ab12 cd")

        assert second.status is OutcomeStatus.QUEUED
        assert second.queue_id == first.queue_id
        assert await services.queue.count() == 1
        assert await services.audit.count() == 2

    @pytest.mark.asyncio
    async def test_queue_write_failure(self, coordinator, services, mock_backend):
        await go_offline(services, mock_backend)
        services.queue.enqueue = AsyncMock(side_effect=StateStoreError("disk full", "put"))

        outcome = await coordinator.submit("AB12CD")

        assert outcome.status is OutcomeStatus.FAILED
        assert outcome.message == "Could not queue verification for offline processing."
        assert (await services.audit.list())[0].result is AuditResult.FAILED

    @pytest.mark.asyncio
    async def test_degraded_backend_is_still_attempted(self, coordinator, services, mock_backend):
        mock_backend.health_probe.side_effect = permanent_error()
        mock_backend.fallback_probe.side_effect = permanent_error()
        status = await services.monitor.check_health()
        assert status.status is HealthState.DEGRADED

        outcome = await coordinator.submit("AB12CD")

        assert outcome.status is OutcomeStatus.SUCCESS
        mock_backend.validate_code.assert_awaited_once()


class TestDrainQueue:
    """Tests for replaying the offline queue."""

    @pytest.mark.asyncio
    async def test_online_resubmit_settles_queued_copy(self, coordinator, services, mock_backend):
        await go_offline(services, mock_backend)
        queued = await coordinator.submit("AB12CD")
        await go_online(services, mock_backend)

        outcome = await coordinator.submit("AB12CD")

        assert outcome.status is OutcomeStatus.SUCCESS
        assert await services.queue.count() == 0

        summary = await coordinator.drain_queue()

        assert summary.processed == 0
        mock_backend.import_record.assert_awaited_once()
        assert await services.queue.list_abandoned() == []
        entries = await services.audit.list()
        assert [e.result for e in entries] == [AuditResult.SUCCESS, AuditResult.QUEUED]
        assert entries[0].queue_id == queued.queue_id

    @pytest.mark.asyncio
    async def test_drain_skips_items_settled_after_listing(
        self, coordinator, services, mock_backend, clock
    ):
        await go_offline(services, mock_backend)
        await coordinator.submit("FIRST1")
        clock.advance(1)
        second = await coordinator.submit("SECOND2")
        await go_online(services, mock_backend)

        async def validate(code):
            if code == "FIRST1":
                await services.queue.remove(second.queue_id)
            return ADMISSION_PAYLOAD

        mock_backend.validate_code.side_effect = validate

        summary = await coordinator.drain_queue()

        assert summary.processed == 1
        assert summary.successful == 1
        mock_backend.validate_code.assert_awaited_once_with("FIRST1")

    @pytest.mark.asyncio
    async def test_round_trip_produces_one_success(self, coordinator, services, mock_backend):
        await go_offline(services, mock_backend)
        queued = await coordinator.submit("AB12CD")
        await go_online(services, mock_backend)

        summary = await coordinator.drain_queue()

        assert summary.processed == 1
        assert summary.successful == 1
        assert summary.failed == 0
        assert await services.queue.count() == 0

        entries = await services.audit.list()
        assert [e.result for e in entries] == [AuditResult.SUCCESS, AuditResult.QUEUED]
        assert entries[0].queue_id == queued.queue_id

        # A second drain has nothing left to process
        again = await coordinator.drain_queue()
        assert again.processed == 0
        results = [e.result for e in await services.audit.list()]
        assert results.count(AuditResult.SUCCESS) == 1
        mock_backend.import_record.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_queued_code_abandoned_after_max_retries(
        self, coordinator, services, mock_backend
    ):
        await go_offline(services, mock_backend)
        queued = await coordinator.submit("AB12 CD")
        assert queued.code == "AB12CD"
        await go_online(services, mock_backend)
        mock_backend.validate_code.side_effect = transient_error()

        first = await coordinator.drain_queue()
        second = await coordinator.drain_queue()

        assert first.failed == 1 and first.abandoned == 0
        assert second.failed == 1 and second.abandoned == 0
        assert (await services.queue.get(queued.queue_id)).retry_count == 2

        third = await coordinator.drain_queue()

        assert third.abandoned == 1
        assert await services.queue.count() == 0
        abandoned = await services.queue.list_abandoned()
        assert len(abandoned) == 1
        assert abandoned[0].code == "AB12CD"
        assert abandoned[0].retry_count == 3

        final = (await services.audit.list())[0]
        assert final.result is AuditResult.FAILED
        assert MAX_RETRIES_EXCEEDED in final.error_message
        assert "(3/3)" in final.error_message

    @pytest.mark.asyncio
    async def test_invalid_code_is_abandoned_immediately(self, coordinator, services, mock_backend):
        await go_offline(services, mock_backend)
        await coordinator.submit("AB12CD")
        await go_online(services, mock_backend)
        mock_backend.validate_code.return_value = {"found": False}

        summary = await coordinator.drain_queue()

        assert summary.abandoned == 1
        assert await services.queue.count() == 0
        abandoned = await services.queue.list_abandoned()
        assert abandoned[0].retry_count == 0
        assert (await services.audit.list())[0].result is AuditResult.INVALID

    @pytest.mark.asyncio
    async def test_drain_while_offline_is_skipped(self, coordinator, services, mock_backend):
        await go_offline(services, mock_backend)
        await coordinator.submit("AB12CD")

        summary = await coordinator.drain_queue()

        assert summary.skipped is True
        assert summary.processed == 0
        assert await services.queue.count() == 1
        mock_backend.validate_code.assert_not_called()

    @pytest.mark.asyncio
    async def test_drain_stops_when_backend_goes_offline(
        self, coordinator, services, mock_backend, clock
    ):
        await go_offline(services, mock_backend)
        first = await coordinator.submit("FIRST1")
        clock.advance(1)
        second = await coordinator.submit("SECOND2")
        await go_online(services, mock_backend)

        mock_backend.validate_code.side_effect = transient_error()
        mock_backend.health_probe.side_effect = transient_error()
        mock_backend.fallback_probe.side_effect = transient_error()

        summary = await coordinator.drain_queue()

        assert summary.processed == 1
        assert summary.stopped_early is True
        assert services.monitor.last_status.status is HealthState.OFFLINE
        assert (await services.queue.get(first.queue_id)).retry_count == 1
        assert (await services.queue.get(second.queue_id)).retry_count == 0

    @pytest.mark.asyncio
    async def test_drain_is_single_flight(self, coordinator, services, mock_backend):
        await go_offline(services, mock_backend)
        await coordinator.submit("AB12CD")
        await go_online(services, mock_backend)
        release = asyncio.Event()

        async def slow_validate(code):
            await release.wait()
            return ADMISSION_PAYLOAD

        mock_backend.validate_code.side_effect = slow_validate

        running = asyncio.create_task(coordinator.drain_queue())
        while not coordinator.draining:
            await asyncio.sleep(0)

        overlapping = await coordinator.drain_queue()
        release.set()
        summary = await running

        assert overlapping.skipped is True
        assert overlapping.processed == 0
        assert summary.successful == 1
        mock_backend.validate_code.assert_awaited_once()


class TestHealthRecovery:
    """Tests for draining on recovery from offline."""

    @pytest.mark.asyncio
    async def test_outage_seen_mid_drain_still_triggers_recovery(
        self, coordinator, services, mock_backend
    ):
        status = await go_online(services, mock_backend)
        await coordinator.handle_health_update(status)
        await services.queue.enqueue("AB12CD")
        mock_backend.validate_code.side_effect = transient_error()
        mock_backend.health_probe.side_effect = transient_error()
        mock_backend.fallback_probe.side_effect = transient_error()

        summary = await coordinator.drain_queue()

        assert summary.failed == 1
        assert services.monitor.last_status.status is HealthState.OFFLINE

        mock_backend.validate_code.side_effect = None
        status = await go_online(services, mock_backend)
        await coordinator.handle_health_update(status)
        await coordinator.aclose()

        assert await services.queue.count() == 0
        mock_backend.import_record.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_recovery_starts_drain(self, coordinator, services, mock_backend):
        await go_offline(services, mock_backend)
        await coordinator.submit("AB12CD")
        await coordinator.handle_health_update(services.monitor.last_status)

        status = await go_online(services, mock_backend)
        await coordinator.handle_health_update(status)
        await coordinator.aclose()

        assert await services.queue.count() == 0
        mock_backend.import_record.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_staying_online_does_not_drain(self, coordinator, services, mock_backend):
        status = await go_online(services, mock_backend)
        await coordinator.handle_health_update(status)
        await services.queue.enqueue("AB12CD")

        await coordinator.handle_health_update(status)

        assert coordinator._drain_task is None
        assert await services.queue.count() == 1

    @pytest.mark.asyncio
    async def test_monitoring_callback_drains_on_recovery(
        self, coordinator, services, mock_backend
    ):
        await go_offline(services, mock_backend)
        await coordinator.submit("AB12CD")
        mock_backend.health_probe.side_effect = None
        mock_backend.fallback_probe.side_effect = None

        await services.monitor.start_monitoring(callback=coordinator.handle_health_update)
        await coordinator.aclose()
        services.monitor.stop_monitoring()

        assert await services.queue.count() == 0
        assert (await services.audit.list())[0].result is AuditResult.SUCCESS
