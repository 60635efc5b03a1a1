"""
Verification Shared Helpers

Small pure functions shared by the coordinator, queue and audit log.
"""

import re
import secrets
from datetime import UTC, datetime
from typing import Any

from enrollment_sync.modules.verification.schemas import CodeType, ValidationResult

MAX_CODE_LENGTH = 64

_WHITESPACE = re.compile(r"\s+")
_CODE_PATTERN = re.compile(r"^[A-Z0-9-]+$")


def normalize_code(raw: str | None) -> str:
    """
    Normalize a user-entered code.

    Strips every whitespace character (not only the ends) and uppercases,
    so "ab12 cd" and " AB12CD " are the same code.

    Args:
        raw: Code as typed

    Returns:
        Normalized code, possibly empty
    """
    if not raw:
        return ""
    return _WHITESPACE.sub("", raw).upper()


def is_well_formed(code: str) -> bool:
    """A normalized code is letters, digits and dashes, and not too long."""
    return 0 < len(code) <= MAX_CODE_LENGTH and bool(_CODE_PATTERN.match(code))


def generate_queue_id(now: datetime) -> str:
    """Locally unique queue id: creation time in ms plus random suffix."""
    return f"queued_{int(now.timestamp() * 1000)}_{secrets.token_hex(4)}"


def parse_code_type(value: Any) -> CodeType | None:
    """Map a backend code type string onto CodeType. Unknown values give None."""
    if isinstance(value, CodeType):
        return value
    if not isinstance(value, str):
        return None
    lowered = value.strip().lower()
    for code_type in CodeType:
        if code_type.value.lower() == lowered:
            return code_type
    return None


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _as_id(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def parse_validation(payload: dict[str, Any] | None, now: datetime) -> ValidationResult:
    """
    Interpret a validate_code response.

    A code is expired if the backend says so explicitly, reports an expired
    status, or returns an expiry timestamp in the past.
    """
    if not payload:
        return ValidationResult(found=False, message="Verification code not found.")

    found = payload.get("found")
    if found is None:
        found = payload.get("success", True)
    if found is not True:
        message = payload.get("message") or payload.get("error")
        if not isinstance(message, str) or not message:
            message = "Verification code not found."
        return ValidationResult(found=False, message=message)

    code_type = parse_code_type(payload.get("code_type"))
    admission_id = _as_id(payload.get("admission_id"))
    enquiry_id = _as_id(payload.get("enquiry_id"))
    target = _as_id(payload.get("target_entity_id"))
    if target is None:
        target = enquiry_id if code_type is CodeType.ENQUIRY and enquiry_id else admission_id

    expires_at = _parse_timestamp(payload.get("expires_at"))
    expired = (
        payload.get("expired") is True
        or str(payload.get("status", "")).lower() == "expired"
        or (expires_at is not None and expires_at < now)
    )

    return ValidationResult(
        found=True,
        code_type=code_type,
        target_entity_id=target,
        admission_id=admission_id,
        enquiry_id=enquiry_id,
        applicant_name=payload.get("applicant_name") or "Unknown",
        grade=payload.get("grade") or "Unknown",
        expired=expired,
        message=payload.get("message") if isinstance(payload.get("message"), str) else None,
    )
