"""
Verification Schemas

Pydantic models for the verification subsystem. Queue items, audit entries
and the cached health status are persisted as JSON through these models, so
they double as the local storage format.
"""

import enum
import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from enrollment_sync.core.errors import ErrorKind


class CodeType(str, enum.Enum):
    """What a verification code grants access to."""

    ENQUIRY = "Enquiry"
    ADMISSION = "Admission"


class HealthState(str, enum.Enum):
    ONLINE = "online"
    DEGRADED = "degraded"
    OFFLINE = "offline"


class AuditResult(str, enum.Enum):
    """Result recorded for one verification attempt."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"
    INVALID = "INVALID"
    QUEUED = "QUEUED"  # Transitional, neither success nor failure


class OutcomeStatus(str, enum.Enum):
    """Closed set of outcomes returned to the caller of submit()."""

    SUCCESS = "SUCCESS"
    QUEUED = "QUEUED"
    INVALID = "INVALID"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"


class QueueItemStatus(str, enum.Enum):
    PENDING = "pending"
    ABANDONED = "abandoned"


# ============================================
# Persisted state
# ============================================


class QueuedVerification(BaseModel):
    """A verification attempt waiting for the backend to come back."""

    id: str
    code: str
    code_type: CodeType | None = None
    target_entity_id: str | None = None
    applicant_name: str = "Unknown"
    grade: str = "Unknown"
    queued_at: datetime
    retry_count: int = 0
    max_retries: int = 3
    last_error: str | None = None
    status: QueueItemStatus = QueueItemStatus.PENDING
    abandoned_at: datetime | None = None

    @property
    def is_abandoned(self) -> bool:
        return self.status is QueueItemStatus.ABANDONED


class ServiceHealthStatus(BaseModel):
    """One complete health observation. Replaced as a whole on every check."""

    status: HealthState
    last_checked: datetime
    next_retry_at: datetime | None = None
    message: str


class AuditLogEntry(BaseModel):
    """One verification attempt and its result."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    code: str
    code_type: CodeType | None = None
    target_entity_id: str | None = None
    result: AuditResult
    error_message: str | None = None
    verified_at: datetime
    queue_id: str | None = None


# ============================================
# Operation results
# ============================================


class ValidationResult(BaseModel):
    """What the backend said about a code, before anything is mutated."""

    found: bool
    code_type: CodeType | None = None
    target_entity_id: str | None = None
    admission_id: str | None = None
    enquiry_id: str | None = None
    applicant_name: str = "Unknown"
    grade: str = "Unknown"
    expired: bool = False
    message: str | None = None


class VerificationOutcome(BaseModel):
    """Result of submit(). Never accompanied by an exception."""

    status: OutcomeStatus
    code: str
    message: str
    code_type: CodeType | None = None
    target_entity_id: str | None = None
    queue_id: str | None = None
    retryable: bool = False
    error_kind: ErrorKind | None = None
    logged: bool = True

    @property
    def succeeded(self) -> bool:
        return self.status is OutcomeStatus.SUCCESS


class DrainSummary(BaseModel):
    """What one pass over the offline queue did."""

    processed: int = 0
    successful: int = 0
    failed: int = 0
    abandoned: int = 0
    errors: list[str] = Field(default_factory=list)
    skipped: bool = False
    stopped_early: bool = False


# ============================================
# HTTP request / response bodies
# ============================================


class SubmitVerificationRequest(BaseModel):
    """Request body for POST /verifications."""

    code: str = Field(..., max_length=128)
    expected_code_type: CodeType | None = None


class QueueListResponse(BaseModel):
    items: list[QueuedVerification]
    count: int


class AuditLogResponse(BaseModel):
    entries: list[AuditLogEntry]


class QueueClearedResponse(BaseModel):
    removed: int
