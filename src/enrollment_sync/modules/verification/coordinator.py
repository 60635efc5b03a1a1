"""
Verification Coordinator

Orchestrates verification attempts end to end:

1. submit(code):
   - Normalize the code; empty or malformed codes are INVALID without any
     network or queue interaction
   - Read the cached health status (never a fresh probe)
   - Offline: queue the attempt durably and record a QUEUED audit entry
   - Online or degraded: validate the code, import the record, then hand
     off to the ConversionStateMachine processor for its code type

2. drain_queue():
   - Replays queued attempts oldest first through the same online path
   - Single-flight: a drain requested while one is running is a no-op
   - Stops early as soon as the backend is seen offline again

3. handle_health_update(status):
   - Health monitor callback; starts a drain when the backend recovers

Public operations never raise. Every outcome is one of SUCCESS, QUEUED,
INVALID, EXPIRED or FAILED, and every attempt on a non-empty code is
recorded in the audit log.
"""

import asyncio
import logging

from enrollment_sync.core.backend import BackendClient
from enrollment_sync.core.clock import Clock, utc_now
from enrollment_sync.core.errors import BackendError, ErrorKind, format_error
from enrollment_sync.modules.admissions.schemas import LifecycleResult
from enrollment_sync.modules.admissions.service import ConversionStateMachine
from enrollment_sync.modules.local_state import StateStoreError
from enrollment_sync.modules.verification.audit import AuditLog
from enrollment_sync.modules.verification.health import HealthMonitor
from enrollment_sync.modules.verification.helpers import (
    is_well_formed,
    normalize_code,
    parse_validation,
)
from enrollment_sync.modules.verification.queue import OfflineQueue
from enrollment_sync.modules.verification.schemas import (
    AuditLogEntry,
    AuditResult,
    CodeType,
    DrainSummary,
    HealthState,
    OutcomeStatus,
    QueuedVerification,
    ServiceHealthStatus,
    ValidationResult,
    VerificationOutcome,
)

logger = logging.getLogger(__name__)

MAX_RETRIES_EXCEEDED = "max retries exceeded"

AUDIT_RESULTS = {
    OutcomeStatus.SUCCESS: AuditResult.SUCCESS,
    OutcomeStatus.QUEUED: AuditResult.QUEUED,
    OutcomeStatus.INVALID: AuditResult.INVALID,
    OutcomeStatus.EXPIRED: AuditResult.EXPIRED,
    OutcomeStatus.FAILED: AuditResult.FAILED,
}


class VerificationCoordinator:
    """
    One instance per process, built by the service container.

    Args:
        monitor: Source of the cached backend health status
        queue: Durable offline queue
        audit: Audit log
        state_machine: Domain processors for verified codes
        backend: Backend client used for validation and import
        branch_id: Branch context passed to the import step
        clock: Time source
    """

    def __init__(
        self,
        monitor: HealthMonitor,
        queue: OfflineQueue,
        audit: AuditLog,
        state_machine: ConversionStateMachine,
        backend: BackendClient,
        branch_id: str | None = None,
        clock: Clock = utc_now,
    ):
        self._monitor = monitor
        self._queue = queue
        self._audit = audit
        self._state_machine = state_machine
        self._backend = backend
        self.branch_id = branch_id
        self._clock = clock
        # Codes with a backend call outstanding
        self._in_flight: set[str] = set()
        self._drain_lock = asyncio.Lock()
        self._drain_task: asyncio.Task | None = None
        self._last_health = monitor.last_status.status

    @property
    def draining(self) -> bool:
        return self._drain_lock.locked()

    def _is_offline(self) -> bool:
        # A status nobody has refreshed lately is not trusted for routing
        if not self._monitor.is_fresh():
            return True
        return self._monitor.last_status.status is HealthState.OFFLINE

    # ============================================
    # Submit
    # ============================================

    async def submit(
        self,
        code: str | None,
        expected_code_type: CodeType | None = None,
    ) -> VerificationOutcome:
        """
        Verify a code now, or queue it when the backend is offline.

        Args:
            code: Code as entered by the user
            expected_code_type: Reject codes of the other type when given

        Returns:
            The outcome. Never raises.
        """
        normalized = normalize_code(code)

        if not normalized:
            return VerificationOutcome(
                status=OutcomeStatus.INVALID,
                code="",
                message="Verification code is required.",
                error_kind=ErrorKind.INVALID_INPUT,
                logged=False,
            )

        if not is_well_formed(normalized):
            outcome = VerificationOutcome(
                status=OutcomeStatus.INVALID,
                code=normalized,
                message="Verification code is malformed.",
                error_kind=ErrorKind.INVALID_INPUT,
            )
            return await self._record(outcome, mirror=not self._is_offline())

        if normalized in self._in_flight:
            logger.warning(f"Code {normalized} submitted while already being processed")
            return VerificationOutcome(
                status=OutcomeStatus.FAILED,
                code=normalized,
                message=(
                    "This code is already being processed. "
                    "Wait for the current attempt to finish."
                ),
                retryable=True,
                logged=False,
            )

        self._in_flight.add(normalized)
        try:
            if self._is_offline():
                return await self._queue_offline(normalized, expected_code_type)

            outcome, queueable = await self._run_online(normalized, expected_code_type)
            if queueable:
                logger.info(f"Backend unreachable while validating {normalized}, queueing")
                return await self._queue_offline(normalized, expected_code_type)

            if outcome.status is OutcomeStatus.SUCCESS:
                queue_id = await self._settle_queued(normalized)
                return await self._record(outcome, queue_id=queue_id)
            return await self._record(outcome)
        except Exception as e:
            logger.error(f"Unexpected error verifying {normalized}: {e}", exc_info=True)
            return await self._record(
                VerificationOutcome(
                    status=OutcomeStatus.FAILED,
                    code=normalized,
                    message=format_error(e),
                    error_kind=ErrorKind.PERMANENT,
                )
            )
        finally:
            self._in_flight.discard(normalized)

    async def _queue_offline(
        self,
        code: str,
        expected_code_type: CodeType | None,
    ) -> VerificationOutcome:
        try:
            item = await self._queue.find_pending_by_code(code)
            if item is None:
                item = await self._queue.enqueue(code, code_type=expected_code_type)
                message = (
                    "Verification service offline. Code queued for processing when it returns."
                )
            else:
                message = "Code is already queued for processing."
        except StateStoreError as e:
            logger.error(f"Could not queue code {code}: {e}")
            outcome = VerificationOutcome(
                status=OutcomeStatus.FAILED,
                code=code,
                message="Could not queue verification for offline processing.",
                retryable=True,
            )
            return await self._record(outcome, mirror=False)

        outcome = VerificationOutcome(
            status=OutcomeStatus.QUEUED,
            code=code,
            message=message,
            code_type=item.code_type,
            queue_id=item.id,
            retryable=True,
            error_kind=ErrorKind.TRANSIENT,
        )
        return await self._record(outcome, queue_id=item.id, mirror=False)

    async def _settle_queued(self, code: str) -> str | None:
        """Drop the queued copy of a code that has just verified online."""
        try:
            item = await self._queue.find_pending_by_code(code)
            if item is None:
                return None
            await self._queue.remove(item.id)
        except StateStoreError as e:
            logger.error(f"Could not clear queued copy of {code}: {e}")
            return None

        logger.info(f"Code {code} verified online, dropped queued verification {item.id}")
        return item.id

    async def _record(
        self,
        outcome: VerificationOutcome,
        queue_id: str | None = None,
        mirror: bool = True,
    ) -> VerificationOutcome:
        """Append the audit entry for an outcome. A logging failure never fails the outcome."""
        entry = AuditLogEntry(
            code=outcome.code,
            code_type=outcome.code_type,
            target_entity_id=outcome.target_entity_id,
            result=AUDIT_RESULTS[outcome.status],
            error_message=None if outcome.status is OutcomeStatus.SUCCESS else outcome.message,
            verified_at=self._clock(),
            queue_id=queue_id or outcome.queue_id,
        )
        try:
            await self._audit.append(entry, mirror=mirror)
        except StateStoreError as e:
            logger.error(f"Audit entry for {outcome.code} not written: {e}")
            return outcome.model_copy(update={"logged": False})
        return outcome

    # ============================================
    # Online path
    # ============================================

    async def _run_online(
        self,
        code: str,
        expected_code_type: CodeType | None,
    ) -> tuple[VerificationOutcome, bool]:
        """
        Validate, import and process one code.

        Returns:
            (outcome, queueable). queueable is True only for a transient
            failure of the validation call, before anything was mutated.
        """
        try:
            payload = await self._backend.validate_code(code)
        except BackendError as e:
            return self._failed(code, e.message, e.kind), e.is_transient

        validation = parse_validation(payload, self._clock())
        rejected = self._check_validation(code, validation, expected_code_type)
        if rejected is not None:
            return rejected, False

        code_type = validation.code_type
        import_id = validation.admission_id or validation.target_entity_id
        if not import_id:
            message = "Backend did not return a record for this code."
            return self._failed(code, message, ErrorKind.PERMANENT), False

        try:
            await self._backend.import_record(import_id, code_type.value, self.branch_id)
        except BackendError as e:
            return self._failed(code, e.message, e.kind, validation), False

        if code_type is CodeType.ENQUIRY:
            result = await self._state_machine.process_enquiry_verification(
                enquiry_id=validation.enquiry_id,
                admission_id=validation.admission_id,
            )
        else:
            result = await self._state_machine.process_admission_verification(import_id)

        return self._from_lifecycle(code, validation, result), False

    def _check_validation(
        self,
        code: str,
        validation: ValidationResult,
        expected_code_type: CodeType | None,
    ) -> VerificationOutcome | None:
        if not validation.found:
            return VerificationOutcome(
                status=OutcomeStatus.INVALID,
                code=code,
                message=validation.message or "Verification code not found.",
                error_kind=ErrorKind.NOT_FOUND,
            )

        if validation.expired:
            return VerificationOutcome(
                status=OutcomeStatus.EXPIRED,
                code=code,
                message="Verification code has expired.",
                code_type=validation.code_type,
                target_entity_id=validation.target_entity_id,
                error_kind=ErrorKind.EXPIRED,
            )

        if validation.code_type is None:
            return VerificationOutcome(
                status=OutcomeStatus.INVALID,
                code=code,
                message="The code could not be processed due to a configuration mismatch.",
                target_entity_id=validation.target_entity_id,
                error_kind=ErrorKind.PERMANENT,
            )

        if expected_code_type is not None and validation.code_type is not expected_code_type:
            return VerificationOutcome(
                status=OutcomeStatus.INVALID,
                code=code,
                message=(
                    f"Code type mismatch: expected {expected_code_type.value}, "
                    f"got {validation.code_type.value}."
                ),
                code_type=validation.code_type,
                target_entity_id=validation.target_entity_id,
                error_kind=ErrorKind.INVALID_INPUT,
            )

        return None

    def _failed(
        self,
        code: str,
        message: str,
        kind: ErrorKind,
        validation: ValidationResult | None = None,
    ) -> VerificationOutcome:
        return VerificationOutcome(
            status=OutcomeStatus.FAILED,
            code=code,
            message=message,
            code_type=validation.code_type if validation else None,
            target_entity_id=validation.target_entity_id if validation else None,
            retryable=kind is ErrorKind.TRANSIENT,
            error_kind=kind,
        )

    def _from_lifecycle(
        self,
        code: str,
        validation: ValidationResult,
        result: LifecycleResult,
    ) -> VerificationOutcome:
        if not result.success:
            kind = result.kind or ErrorKind.PERMANENT
            return self._failed(code, result.message, kind, validation)

        logger.info(
            f"Code {code} verified "
            f"({validation.code_type.value} {validation.target_entity_id})"
        )
        return VerificationOutcome(
            status=OutcomeStatus.SUCCESS,
            code=code,
            message=result.message,
            code_type=validation.code_type,
            target_entity_id=validation.target_entity_id,
        )

    # ============================================
    # Drain
    # ============================================

    async def drain_queue(self) -> DrainSummary:
        """
        Replay queued attempts, oldest first.

        Returns:
            Summary of the pass; skipped=True when another drain was running
            or the backend is offline
        """
        if self._drain_lock.locked():
            logger.info("Queue drain already in progress, skipping")
            return DrainSummary(skipped=True)

        async with self._drain_lock:
            summary = await self._drain()

        if not summary.skipped:
            logger.info(
                f"Queue drain complete: processed={summary.processed} "
                f"successful={summary.successful} failed={summary.failed} "
                f"abandoned={summary.abandoned} stopped_early={summary.stopped_early}"
            )
        return summary

    async def _drain(self) -> DrainSummary:
        summary = DrainSummary()

        if self._is_offline():
            logger.info("Verification service offline, not draining queue")
            summary.skipped = True
            return summary

        try:
            items = await self._queue.list()
        except StateStoreError as e:
            logger.error(f"Could not read offline queue: {e}")
            summary.errors.append(f"Could not read offline queue: {e.message}")
            return summary

        for item in items:
            if self._is_offline():
                logger.warning("Verification service went offline, stopping drain")
                summary.stopped_early = True
                break

            if item.code in self._in_flight:
                continue

            self._in_flight.add(item.code)
            try:
                # Settled by an online submit since the queue was read
                current = await self._queue.get(item.id)
                if current is None:
                    continue
                await self._drain_item(current, summary)
            except StateStoreError as e:
                logger.error(f"Queue update for {item.id} failed: {e}")
                summary.errors.append(f"{item.code}: {e.message}")
            finally:
                self._in_flight.discard(item.code)

        return summary

    async def _drain_item(self, item: QueuedVerification, summary: DrainSummary) -> None:
        summary.processed += 1

        try:
            outcome, _ = await self._run_online(item.code, item.code_type)
        except Exception as e:
            logger.error(f"Unexpected error draining {item.id}: {e}", exc_info=True)
            outcome = self._failed(item.code, format_error(e), ErrorKind.PERMANENT)

        if outcome.status is OutcomeStatus.SUCCESS:
            await self._queue.remove(item.id)
            summary.successful += 1
            await self._record(outcome, queue_id=item.id)
            return

        summary.failed += 1

        if outcome.status in (OutcomeStatus.INVALID, OutcomeStatus.EXPIRED):
            # Retrying cannot make an unknown or expired code valid
            await self._queue.abandon(item.id, outcome.message)
            summary.abandoned += 1
            summary.errors.append(f"{item.code}: {outcome.message}")
            await self._record(outcome, queue_id=item.id)
            return

        updated = await self._queue.increment_retry(item.id, outcome.message)
        if updated is not None and updated.is_abandoned:
            summary.abandoned += 1
            outcome = outcome.model_copy(
                update={
                    "message": (
                        f"{MAX_RETRIES_EXCEEDED} "
                        f"({updated.retry_count}/{updated.max_retries}): {outcome.message}"
                    ),
                    "retryable": False,
                }
            )
        summary.errors.append(f"{item.code}: {outcome.message}")
        await self._record(outcome, queue_id=item.id)

        if outcome.error_kind is ErrorKind.TRANSIENT:
            # Refresh so the next iteration sees an outage straight away
            status = await self._monitor.check_health()
            self._last_health = status.status

    # ============================================
    # Health recovery
    # ============================================

    async def handle_health_update(self, status: ServiceHealthStatus) -> None:
        """Start a drain when the backend comes back from offline."""
        previous = self._last_health
        self._last_health = status.status

        if status.status is HealthState.OFFLINE or previous is not HealthState.OFFLINE:
            return

        try:
            pending = await self._queue.count()
        except StateStoreError as e:
            logger.error(f"Could not count offline queue after recovery: {e}")
            return

        if pending == 0:
            return

        logger.info(f"Verification service recovered, draining {pending} queued verification(s)")
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self.drain_queue())

    async def aclose(self) -> None:
        """Wait for a recovery drain to finish, then for pending audit mirrors."""
        if self._drain_task is not None and not self._drain_task.done():
            await self._drain_task
        await self._audit.flush()
