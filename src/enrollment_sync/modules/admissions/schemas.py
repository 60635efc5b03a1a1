"""
Admissions Schemas

Pydantic views of the backend records the state machine reads, the result
type every lifecycle operation returns, and HTTP request bodies.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from enrollment_sync.core.errors import ErrorKind
from enrollment_sync.modules.admissions.models import (
    CLEARED_REQUIREMENT_STATUSES,
    AdmissionStatus,
    ConversionState,
    EnquiryStatus,
    RequirementStatus,
    parse_admission_status,
    parse_enquiry_status,
    parse_requirement_status,
)


class Enquiry(BaseModel):
    """Enquiry as read from the backend. Unknown columns are ignored."""

    model_config = ConfigDict(extra="ignore")

    id: str
    status: EnquiryStatus | None = None
    raw_status: str | None = None
    verification_status: str | None = None
    conversion_state: ConversionState = ConversionState.NOT_CONVERTED
    admission_id: str | None = None
    is_archived: bool = False
    is_deleted: bool = False

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Enquiry":
        raw_status = row.get("status")
        conversion = row.get("conversion_state") or ConversionState.NOT_CONVERTED.value
        return cls(
            id=str(row["id"]),
            status=parse_enquiry_status(raw_status),
            raw_status=raw_status,
            verification_status=row.get("verification_status"),
            conversion_state=(
                ConversionState.CONVERTED
                if str(conversion).upper() == ConversionState.CONVERTED.value
                else ConversionState.NOT_CONVERTED
            ),
            admission_id=str(row["admission_id"]) if row.get("admission_id") else None,
            is_archived=bool(row.get("is_archived")),
            is_deleted=bool(row.get("is_deleted")),
        )

    @property
    def is_converted(self) -> bool:
        return (
            self.conversion_state is ConversionState.CONVERTED
            or self.status is EnquiryStatus.CONVERTED
        )


class DocumentRequirement(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    admission_id: str | None = None
    document_name: str = "Document"
    is_mandatory: bool = False
    status: RequirementStatus = RequirementStatus.PENDING
    rejection_reason: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "DocumentRequirement":
        return cls(
            id=int(row["id"]),
            admission_id=str(row["admission_id"]) if row.get("admission_id") else None,
            document_name=row.get("document_name") or "Document",
            is_mandatory=bool(row.get("is_mandatory")),
            status=parse_requirement_status(row.get("status")),
            rejection_reason=row.get("rejection_reason"),
        )

    @property
    def is_cleared(self) -> bool:
        return self.status in CLEARED_REQUIREMENT_STATUSES


class Admission(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    status: AdmissionStatus | None = None
    raw_status: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Admission":
        raw_status = row.get("status")
        return cls(
            id=str(row["id"]),
            status=parse_admission_status(raw_status),
            raw_status=raw_status,
        )


class LifecycleResult(BaseModel):
    """
    Outcome of a lifecycle operation.

    Business-rule refusals are returned as results with an ErrorKind and a
    stable error_code, never raised.
    """

    success: bool
    message: str
    kind: ErrorKind | None = None
    error_code: str | None = None
    admission_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, message: str, admission_id: str | None = None, **data: Any) -> "LifecycleResult":
        return cls(success=True, message=message, admission_id=admission_id, data=data)

    @classmethod
    def fail(
        cls,
        kind: ErrorKind,
        error_code: str,
        message: str,
        **data: Any,
    ) -> "LifecycleResult":
        return cls(success=False, message=message, kind=kind, error_code=error_code, data=data)


class DocumentGateSummary(BaseModel):
    """Counts used by the enrollment document gate."""

    total: int
    mandatory: int
    mandatory_pending: int
    pending_documents: list[str] = Field(default_factory=list)


# ============================================
# HTTP request bodies
# ============================================


class EnquiryStatusRequest(BaseModel):
    status: EnquiryStatus
    notes: str | None = Field(None, max_length=1000)


class RejectDocumentRequest(BaseModel):
    reason: str = Field(..., max_length=1000)


class DocumentRequestBody(BaseModel):
    documents: list[str] = Field(default_factory=list)
    message: str | None = Field(None, max_length=2000)


class CanConvertResponse(BaseModel):
    enquiry_id: str
    can_convert: bool
