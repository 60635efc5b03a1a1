"""
Admissions Service Layer

The ConversionStateMachine governs the Enquiry and Admission lifecycles:

1. Enquiry side:
   - Verification by access code (status -> Verified, record un-archived)
   - Manual status moves validated against VALID_ENQUIRY_TRANSITIONS
   - One-way conversion into an Admission

2. Admission side:
   - Verification by access code (status -> Verified)
   - Document audit (verify / reject one requirement)
   - Document requests to the guardian
   - Enrollment finalization to Approved, gated on mandatory documents

Every operation returns a LifecycleResult. Business-rule refusals
(already converted, documents incomplete, missing reason) are results with
an ErrorKind and error_code, not exceptions. BackendError from the client is
caught and folded into a result of the same kind.
"""

import asyncio
import logging
from typing import Any

from enrollment_sync.core.backend import BackendClient
from enrollment_sync.core.clock import Clock, utc_now
from enrollment_sync.core.errors import BackendError, ErrorKind
from enrollment_sync.modules.admissions.models import (
    BACKEND_ENQUIRY_VERIFIED,
    CONVERTIBLE_ENQUIRY_STATUSES,
    TERMINAL_ADMISSION_STATUSES,
    VALID_ENQUIRY_TRANSITIONS,
    AdmissionStatus,
    EnquiryStatus,
    RequirementStatus,
)
from enrollment_sync.modules.admissions.schemas import (
    Admission,
    DocumentGateSummary,
    DocumentRequirement,
    Enquiry,
    LifecycleResult,
)

logger = logging.getLogger(__name__)

# Stable error codes
ALREADY_CONVERTED = "ALREADY_CONVERTED"
ENQUIRY_NOT_VERIFIED = "ENQUIRY_NOT_VERIFIED"
ENQUIRY_NOT_FOUND = "ENQUIRY_NOT_FOUND"
ADMISSION_NOT_FOUND = "ADMISSION_NOT_FOUND"
REQUIREMENT_NOT_FOUND = "REQUIREMENT_NOT_FOUND"
ID_REQUIRED = "ID_REQUIRED"
INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"
CONVERSION_FAILED = "CONVERSION_FAILED"
DOCUMENTS_INCOMPLETE = "DOCUMENTS_INCOMPLETE"
ALREADY_FINALIZED = "ALREADY_FINALIZED"
ADMISSION_CLOSED = "ADMISSION_CLOSED"
TRANSITION_FAILED = "TRANSITION_FAILED"
REASON_REQUIRED = "REASON_REQUIRED"
DOCUMENTS_REQUIRED = "DOCUMENTS_REQUIRED"
BACKEND_UNAVAILABLE = "BACKEND_UNAVAILABLE"
BACKEND_ERROR = "BACKEND_ERROR"

AUDIT_ITEM_TYPE = "ARTIFACT_VERIFICATION"
AUDIT_ACTOR_NAME = "Institutional Auditor"


def _backend_failure(error: BackendError, operation: str) -> LifecycleResult:
    logger.error(f"{operation} failed: {error.message}")
    code = BACKEND_UNAVAILABLE if error.is_transient else BACKEND_ERROR
    return LifecycleResult.fail(error.kind, code, error.message)


def summarize_requirements(requirements: list[DocumentRequirement]) -> DocumentGateSummary:
    """Count mandatory requirements that are not yet Accepted or Verified."""
    mandatory = [req for req in requirements if req.is_mandatory]
    pending = [req for req in mandatory if not req.is_cleared]
    return DocumentGateSummary(
        total=len(requirements),
        mandatory=len(mandatory),
        mandatory_pending=len(pending),
        pending_documents=[req.document_name for req in pending],
    )


class ConversionStateMachine:
    """
    Enquiry and Admission lifecycle operations against the backend of record.

    Args:
        backend: Backend client
        finalize_without_requirements: Whether an admission with zero
            document requirements may be finalized
        clock: Time source for updated_at stamps
    """

    def __init__(
        self,
        backend: BackendClient,
        finalize_without_requirements: bool = False,
        clock: Clock = utc_now,
    ):
        self._backend = backend
        self.finalize_without_requirements = finalize_without_requirements
        self._clock = clock
        # Enquiries this process has converted; guards against a stale backend read
        self._converted: set[str] = set()
        self._convert_lock = asyncio.Lock()

    # ============================================
    # Enquiries
    # ============================================

    async def _load_enquiry(self, enquiry_id: str) -> Enquiry | None:
        row = await self._backend.get_enquiry(enquiry_id)
        return Enquiry.from_row(row) if row else None

    async def can_convert(self, enquiry_id: str) -> bool:
        """True only for a Verified (or later) enquiry that is not yet converted."""
        if not enquiry_id or enquiry_id in self._converted:
            return False
        try:
            enquiry = await self._load_enquiry(enquiry_id)
        except BackendError as e:
            logger.warning(f"Could not read enquiry {enquiry_id}: {e.message}")
            return False
        if enquiry is None or enquiry.is_converted:
            return False
        return enquiry.status in CONVERTIBLE_ENQUIRY_STATUSES

    async def convert(self, enquiry_id: str) -> LifecycleResult:
        """
        Promote an enquiry to an Admission. One-way.

        The backend must answer with an explicit success flag and the new
        admission id; anything else is a failure.
        """
        if not enquiry_id:
            return LifecycleResult.fail(
                ErrorKind.INVALID_INPUT, ID_REQUIRED, "Enquiry id is required for conversion."
            )

        async with self._convert_lock:
            if enquiry_id in self._converted:
                return self._already_converted(enquiry_id)

            try:
                enquiry = await self._load_enquiry(enquiry_id)
                if enquiry is None:
                    return LifecycleResult.fail(
                        ErrorKind.NOT_FOUND, ENQUIRY_NOT_FOUND, f"Enquiry {enquiry_id} not found."
                    )

                if enquiry.is_converted:
                    self._converted.add(enquiry_id)
                    return self._already_converted(enquiry_id)

                if enquiry.status not in CONVERTIBLE_ENQUIRY_STATUSES:
                    current = enquiry.raw_status or "unknown"
                    logger.info(f"Refused conversion of enquiry {enquiry_id} in status {current}")
                    return LifecycleResult.fail(
                        ErrorKind.PRECONDITION_NOT_MET,
                        ENQUIRY_NOT_VERIFIED,
                        f"Enquiry must be verified before conversion (current status: {current}).",
                    )

                result = await self._backend.convert_enquiry_to_admission(enquiry_id)
            except BackendError as e:
                return _backend_failure(e, f"Conversion of enquiry {enquiry_id}")

            admission_id = result.data.get("admission_id")
            if not result.success:
                return LifecycleResult.fail(ErrorKind.PERMANENT, CONVERSION_FAILED, result.message)
            if not admission_id:
                return LifecycleResult.fail(
                    ErrorKind.PERMANENT,
                    CONVERSION_FAILED,
                    "Backend reported success without an admission id.",
                )

            self._converted.add(enquiry_id)

        logger.info(f"Enquiry {enquiry_id} converted to admission {admission_id}")
        return LifecycleResult.ok(result.message, admission_id=str(admission_id))

    def _already_converted(self, enquiry_id: str) -> LifecycleResult:
        return LifecycleResult.fail(
            ErrorKind.PRECONDITION_NOT_MET,
            ALREADY_CONVERTED,
            f"Enquiry {enquiry_id} has already been converted to an admission.",
        )

    async def process_enquiry_verification(
        self,
        enquiry_id: str | None = None,
        admission_id: str | None = None,
    ) -> LifecycleResult:
        """
        Mark an enquiry verified after its access code was validated.

        The enquiry is resolved by id, or by its admission reference when the
        code carried no enquiry id. An archived or deleted enquiry is
        restored, since a verified enquiry must be an active record.
        """
        if not enquiry_id and not admission_id:
            return LifecycleResult.fail(
                ErrorKind.INVALID_INPUT, ID_REQUIRED, "Reference id required for processing."
            )

        try:
            if enquiry_id:
                row = await self._backend.get_enquiry(enquiry_id)
            else:
                row = await self._backend.find_enquiry_by_admission(admission_id)
            if not row:
                return LifecycleResult.fail(
                    ErrorKind.NOT_FOUND, ENQUIRY_NOT_FOUND, "Enquiry not found in registry."
                )

            enquiry = Enquiry.from_row(row)

            if enquiry.is_converted:
                return LifecycleResult.ok(
                    "Enquiry was already converted to an admission.",
                    admission_id=enquiry.admission_id,
                    enquiry=row,
                )

            # Never move a verified or in-progress enquiry backwards
            if enquiry.status not in CONVERTIBLE_ENQUIRY_STATUSES:
                await self._backend.update_enquiry_status(
                    enquiry.id, BACKEND_ENQUIRY_VERIFIED, "Verified via access code"
                )

            if enquiry.is_archived or enquiry.is_deleted:
                await self._backend.update_enquiry(
                    enquiry.id, {"is_archived": False, "is_deleted": False}
                )
                logger.info(f"Restored archived enquiry {enquiry.id} on verification")

            updated = await self._backend.get_enquiry(enquiry.id)
        except BackendError as e:
            return _backend_failure(e, "Enquiry verification")

        logger.info(f"Enquiry {enquiry.id} verified via access code")
        return LifecycleResult.ok(
            "Enquiry identity verified successfully.",
            admission_id=enquiry.admission_id,
            enquiry=updated or row,
        )

    async def transition_enquiry(
        self,
        enquiry_id: str,
        status: EnquiryStatus,
        notes: str | None = None,
    ) -> LifecycleResult:
        """
        Move an enquiry to another status.

        Conversion is not a status move: CONVERTED is only reachable through
        convert().
        """
        if not enquiry_id:
            return LifecycleResult.fail(
                ErrorKind.INVALID_INPUT, ID_REQUIRED, "Enquiry id is required."
            )

        if status is EnquiryStatus.CONVERTED:
            return LifecycleResult.fail(
                ErrorKind.PRECONDITION_NOT_MET,
                INVALID_STATUS_TRANSITION,
                "Use conversion to move an enquiry to CONVERTED.",
            )

        try:
            enquiry = await self._load_enquiry(enquiry_id)
            if enquiry is None:
                return LifecycleResult.fail(
                    ErrorKind.NOT_FOUND, ENQUIRY_NOT_FOUND, f"Enquiry {enquiry_id} not found."
                )
            if enquiry.is_converted or enquiry_id in self._converted:
                return self._already_converted(enquiry_id)

            current = enquiry.status or EnquiryStatus.NEW
            if current is status:
                return LifecycleResult.ok(f"Enquiry is already {status.value}.")

            allowed = VALID_ENQUIRY_TRANSITIONS.get(current, set())
            if status not in allowed:
                return LifecycleResult.fail(
                    ErrorKind.PRECONDITION_NOT_MET,
                    INVALID_STATUS_TRANSITION,
                    f"Invalid status transition: {current.value} -> {status.value}. "
                    f"Valid transitions: {sorted(s.value for s in allowed)}",
                )

            await self._backend.update_enquiry_status(enquiry_id, status.value, notes)
        except BackendError as e:
            return _backend_failure(e, f"Status change of enquiry {enquiry_id}")

        logger.info(f"Enquiry {enquiry_id}: {current.value} -> {status.value}")
        return LifecycleResult.ok(f"Enquiry moved to {status.value}.")

    # ============================================
    # Admissions
    # ============================================

    async def process_admission_verification(self, admission_id: str | None) -> LifecycleResult:
        """Mark an admission Verified after its access code was validated."""
        if not admission_id:
            return LifecycleResult.fail(
                ErrorKind.INVALID_INPUT, ID_REQUIRED, "Reference id required for processing."
            )

        try:
            row = await self._backend.get_admission(admission_id)
            if not row:
                return LifecycleResult.fail(
                    ErrorKind.NOT_FOUND,
                    ADMISSION_NOT_FOUND,
                    "Admission record not found in registry.",
                )

            admission = Admission.from_row(row)
            if admission.status in (AdmissionStatus.VERIFIED, AdmissionStatus.APPROVED):
                return LifecycleResult.ok(
                    f"Admission is already {admission.status.value}.", admission_id=admission_id
                )
            if admission.status in TERMINAL_ADMISSION_STATUSES:
                return LifecycleResult.fail(
                    ErrorKind.PRECONDITION_NOT_MET,
                    ADMISSION_CLOSED,
                    f"Admission is {admission.status.value} and cannot be verified.",
                )

            updated = await self._backend.update_admission(
                admission_id,
                {"status": AdmissionStatus.VERIFIED.value, "updated_at": self._clock().isoformat()},
            )
        except BackendError as e:
            return _backend_failure(e, "Admission verification")

        if not updated:
            return LifecycleResult.fail(
                ErrorKind.NOT_FOUND, ADMISSION_NOT_FOUND, "Admission record not found in registry."
            )

        logger.info(f"Admission {admission_id} verified via access code")
        return LifecycleResult.ok(
            "Admission identity verified successfully.",
            admission_id=admission_id,
            admission=updated,
        )

    async def load_requirements(self, admission_id: str) -> list[DocumentRequirement]:
        rows = await self._backend.list_document_requirements(admission_id)
        return [DocumentRequirement.from_row(row) for row in rows]

    async def finalize_enrollment(self, admission_id: str) -> LifecycleResult:
        """
        Transition an admission to Approved. Irreversible.

        Refused with DOCUMENTS_INCOMPLETE while any mandatory requirement is
        not Accepted or Verified. An admission with no requirements at all is
        refused too unless finalize_without_requirements is set.
        """
        if not admission_id:
            return LifecycleResult.fail(
                ErrorKind.INVALID_INPUT, ID_REQUIRED, "Admission id is required."
            )

        try:
            row = await self._backend.get_admission(admission_id)
            if not row:
                return LifecycleResult.fail(
                    ErrorKind.NOT_FOUND, ADMISSION_NOT_FOUND, f"Admission {admission_id} not found."
                )

            admission = Admission.from_row(row)
            if admission.status is AdmissionStatus.APPROVED:
                return LifecycleResult.fail(
                    ErrorKind.PRECONDITION_NOT_MET,
                    ALREADY_FINALIZED,
                    "Enrollment has already been finalized.",
                    admission_id=admission_id,
                )
            if admission.status in TERMINAL_ADMISSION_STATUSES:
                return LifecycleResult.fail(
                    ErrorKind.PRECONDITION_NOT_MET,
                    ADMISSION_CLOSED,
                    f"Admission is {admission.status.value} and cannot be finalized.",
                    admission_id=admission_id,
                )

            try:
                await self._backend.initialize_document_slots(admission_id)
            except BackendError as e:
                logger.warning(f"Document slot setup failed for {admission_id}: {e.message}")

            requirements = await self.load_requirements(admission_id)
            gate = summarize_requirements(requirements)

            if gate.total == 0 and not self.finalize_without_requirements:
                logger.info(f"Refused finalization of {admission_id}: no document requirements")
                return LifecycleResult.fail(
                    ErrorKind.PRECONDITION_NOT_MET,
                    DOCUMENTS_INCOMPLETE,
                    "No document requirements are defined for this admission.",
                    mandatory_pending=0,
                    pending_documents=[],
                )

            if gate.mandatory_pending > 0:
                logger.info(
                    f"Refused finalization of {admission_id}: "
                    f"{gate.mandatory_pending} mandatory document(s) pending"
                )
                return LifecycleResult.fail(
                    ErrorKind.PRECONDITION_NOT_MET,
                    DOCUMENTS_INCOMPLETE,
                    f"{gate.mandatory_pending} mandatory document(s) still need verification.",
                    mandatory_pending=gate.mandatory_pending,
                    pending_documents=gate.pending_documents,
                )

            result = await self._backend.transition_admission(
                admission_id, AdmissionStatus.APPROVED.value
            )
        except BackendError as e:
            return _backend_failure(e, f"Finalization of admission {admission_id}")

        if not result.success:
            return LifecycleResult.fail(ErrorKind.PERMANENT, TRANSITION_FAILED, result.message)

        logger.info(f"Admission {admission_id} finalized to {AdmissionStatus.APPROVED.value}")
        return LifecycleResult.ok(
            "Enrollment finalized.",
            admission_id=admission_id,
            status=AdmissionStatus.APPROVED.value,
            student_id=result.data.get("student_id"),
            student_id_number=result.data.get("student_id_number"),
        )

    # ============================================
    # Document audit
    # ============================================

    async def verify_document(
        self,
        requirement_id: int,
        changed_by: str | None = None,
    ) -> LifecycleResult:
        """Mark one document requirement Verified. Setting it twice is harmless."""
        return await self._set_requirement_status(
            requirement_id, RequirementStatus.VERIFIED, None, changed_by
        )

    async def reject_document(
        self,
        requirement_id: int,
        reason: str | None,
        changed_by: str | None = None,
    ) -> LifecycleResult:
        """Mark one document requirement Rejected. A non-empty reason is required."""
        reason = (reason or "").strip()
        if not reason:
            return LifecycleResult.fail(
                ErrorKind.INVALID_INPUT, REASON_REQUIRED, "A rejection reason is required."
            )
        return await self._set_requirement_status(
            requirement_id, RequirementStatus.REJECTED, reason, changed_by
        )

    async def _set_requirement_status(
        self,
        requirement_id: int,
        status: RequirementStatus,
        reason: str | None,
        changed_by: str | None,
    ) -> LifecycleResult:
        try:
            row = await self._backend.get_document_requirement(requirement_id)
            if not row:
                return LifecycleResult.fail(
                    ErrorKind.NOT_FOUND,
                    REQUIREMENT_NOT_FOUND,
                    f"Document requirement {requirement_id} not found.",
                )

            requirement = DocumentRequirement.from_row(row)
            if requirement.status is status and requirement.rejection_reason == reason:
                return LifecycleResult.ok(
                    f"Document is already {status.value}.", admission_id=requirement.admission_id
                )

            updated = await self._backend.update_document_requirement(
                requirement_id,
                {
                    "status": status.value,
                    "rejection_reason": reason,
                    "updated_at": self._clock().isoformat(),
                },
            )
        except BackendError as e:
            return _backend_failure(e, f"Document audit of requirement {requirement_id}")

        if not updated:
            return LifecycleResult.fail(
                ErrorKind.NOT_FOUND,
                REQUIREMENT_NOT_FOUND,
                f"Document requirement {requirement_id} not found.",
            )

        await self._write_audit_record(requirement, status, reason, changed_by)

        logger.info(
            f"Document requirement {requirement_id}: {requirement.status.value} -> {status.value}"
        )
        return LifecycleResult.ok(
            f"Document {status.value.lower()}.",
            admission_id=requirement.admission_id,
            requirement_id=requirement_id,
            status=status.value,
        )

    async def _write_audit_record(
        self,
        requirement: DocumentRequirement,
        status: RequirementStatus,
        reason: str | None,
        changed_by: str | None,
    ) -> None:
        details: dict[str, Any] = {
            "action": "document_audit",
            "requirement_id": requirement.id,
            "document_name": requirement.document_name,
            "outcome": status.value,
        }
        if reason:
            details["reason"] = reason

        try:
            await self._backend.insert_admission_audit_log(
                {
                    "admission_id": requirement.admission_id,
                    "item_type": AUDIT_ITEM_TYPE,
                    "previous_status": requirement.status.value,
                    "new_status": status.value,
                    "details": details,
                    "changed_by": changed_by,
                    "changed_by_name": AUDIT_ACTOR_NAME,
                }
            )
        except BackendError as e:
            logger.warning(
                f"Admission audit record for requirement {requirement.id} "
                f"not written: {e.message}"
            )

    async def request_documents(
        self,
        admission_id: str,
        documents: list[str],
        message: str | None = None,
    ) -> LifecycleResult:
        """Ask the guardian for additional documents."""
        if not admission_id:
            return LifecycleResult.fail(
                ErrorKind.INVALID_INPUT, ID_REQUIRED, "Admission id is required."
            )

        names = [name.strip() for name in documents if name and name.strip()]
        if not names:
            return LifecycleResult.fail(
                ErrorKind.INVALID_INPUT,
                DOCUMENTS_REQUIRED,
                "At least one document name is required.",
            )

        try:
            await self._backend.request_documents(admission_id, names, message)
        except BackendError as e:
            return _backend_failure(e, f"Document request for admission {admission_id}")

        logger.info(f"Requested {len(names)} document(s) for admission {admission_id}")
        return LifecycleResult.ok(
            f"Requested {len(names)} document(s).", admission_id=admission_id, documents=names
        )
