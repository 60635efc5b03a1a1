"""
Admissions Lifecycle Models

Status enums and transition tables for Enquiries and Admissions. The records
themselves live in the backend of record; this module only describes which
states exist and which moves between them are legal.
"""

import enum


class EnquiryStatus(str, enum.Enum):
    """Lifecycle of an enquiry, in order."""

    NEW = "NEW"
    ACTIVE = "ACTIVE"
    VERIFIED = "VERIFIED"
    IN_PROGRESS = "IN_PROGRESS"
    CONVERTED = "CONVERTED"


# Status strings the backend uses for the same states
ENQUIRY_STATUS_ALIASES: dict[str, EnquiryStatus] = {
    "CONTACTED": EnquiryStatus.ACTIVE,
    "ENQUIRY_ACTIVE": EnquiryStatus.ACTIVE,
    "ENQUIRY_VERIFIED": EnquiryStatus.VERIFIED,
    "APPROVED": EnquiryStatus.VERIFIED,
    "ENQUIRY_IN_PROGRESS": EnquiryStatus.IN_PROGRESS,
    "ENQUIRY_CONVERTED": EnquiryStatus.CONVERTED,
}

# Status written to the backend when an enquiry is verified by code
BACKEND_ENQUIRY_VERIFIED = "ENQUIRY_VERIFIED"


class ConversionState(str, enum.Enum):
    NOT_CONVERTED = "NOT_CONVERTED"
    CONVERTED = "CONVERTED"


class AdmissionStatus(str, enum.Enum):
    """Lifecycle of an admission."""

    REGISTERED = "Registered"
    PENDING_REVIEW = "Pending Review"
    VERIFIED = "Verified"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    CANCELLED = "Cancelled"


class RequirementStatus(str, enum.Enum):
    """Status of one document requirement."""

    PENDING = "Pending"
    SUBMITTED = "Submitted"
    ACCEPTED = "Accepted"
    VERIFIED = "Verified"
    REJECTED = "Rejected"


# Requirement statuses that satisfy the document gate
CLEARED_REQUIREMENT_STATUSES = {RequirementStatus.ACCEPTED, RequirementStatus.VERIFIED}


# Valid enquiry status transitions (state machine)
VALID_ENQUIRY_TRANSITIONS: dict[EnquiryStatus, set[EnquiryStatus]] = {
    EnquiryStatus.NEW: {
        EnquiryStatus.ACTIVE,  # Contacted by staff
        EnquiryStatus.VERIFIED,  # Verified by access code straight away
    },
    EnquiryStatus.ACTIVE: {
        EnquiryStatus.VERIFIED,
    },
    EnquiryStatus.VERIFIED: {
        EnquiryStatus.IN_PROGRESS,
        EnquiryStatus.CONVERTED,
    },
    EnquiryStatus.IN_PROGRESS: {
        EnquiryStatus.CONVERTED,
    },
    # Terminal state - conversion is one-way
    EnquiryStatus.CONVERTED: set(),
}

# Statuses from which an enquiry may be converted
CONVERTIBLE_ENQUIRY_STATUSES = {EnquiryStatus.VERIFIED, EnquiryStatus.IN_PROGRESS}


# Valid admission status transitions (state machine)
VALID_ADMISSION_TRANSITIONS: dict[AdmissionStatus, set[AdmissionStatus]] = {
    AdmissionStatus.REGISTERED: {
        AdmissionStatus.PENDING_REVIEW,
        AdmissionStatus.VERIFIED,  # Verified by access code
        AdmissionStatus.APPROVED,  # Document-gated
        AdmissionStatus.REJECTED,
        AdmissionStatus.CANCELLED,
    },
    AdmissionStatus.PENDING_REVIEW: {
        AdmissionStatus.VERIFIED,
        AdmissionStatus.APPROVED,  # Document-gated
        AdmissionStatus.REJECTED,
        AdmissionStatus.CANCELLED,
    },
    AdmissionStatus.VERIFIED: {
        AdmissionStatus.APPROVED,  # Document-gated
        AdmissionStatus.REJECTED,
        AdmissionStatus.CANCELLED,
    },
    # Terminal states - no transitions allowed
    AdmissionStatus.APPROVED: set(),
    AdmissionStatus.REJECTED: set(),
    AdmissionStatus.CANCELLED: set(),
}

TERMINAL_ADMISSION_STATUSES = {
    status for status, targets in VALID_ADMISSION_TRANSITIONS.items() if not targets
}


def parse_enquiry_status(value: str | None) -> EnquiryStatus | None:
    """Map a backend status string onto EnquiryStatus. Unknown values give None."""
    if not value:
        return None
    normalized = value.strip().upper().replace(" ", "_")
    if normalized in EnquiryStatus.__members__:
        return EnquiryStatus[normalized]
    return ENQUIRY_STATUS_ALIASES.get(normalized)


def parse_admission_status(value: str | None) -> AdmissionStatus | None:
    if not value:
        return None
    lowered = value.strip().lower()
    for status in AdmissionStatus:
        if status.value.lower() == lowered:
            return status
    return None


def parse_requirement_status(value: str | None) -> RequirementStatus:
    """Unknown or missing requirement statuses count as Pending."""
    if value:
        lowered = value.strip().lower()
        for status in RequirementStatus:
            if status.value.lower() == lowered:
                return status
    return RequirementStatus.PENDING
