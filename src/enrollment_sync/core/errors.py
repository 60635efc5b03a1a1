"""
Error Taxonomy

Classifies every failure the coordinator can meet into a small closed set
of kinds, and turns arbitrary backend error payloads into readable text.

Kinds:
- INVALID_INPUT: empty or malformed input, resolved locally
- NOT_FOUND / EXPIRED: the backend answered but the code is unusable
- PRECONDITION_NOT_MET: a business rule gate (already converted, documents incomplete)
- TRANSIENT: network, timeout or connection failures; eligible for queueing and retry
- PERMANENT: auth, schema or unexpected shapes; logged, retried only within maxRetries
"""

import enum
import json
from typing import Any

JUNK_STRINGS = {"[object Object]", "{}", "null", "undefined", "None", ""}

MESSAGE_KEYS = ("message", "error_description", "details", "hint", "error")

# Postgres error codes with a fixed user-facing explanation
POSTGRES_CODE_MESSAGES = {
    "42501": "Access denied to this record. Check row-level security and grants.",
    "42804": "Type mismatch detected between client and schema. Please run the schema migration.",
    "22P02": "Invalid identifier format.",
    "23505": "This record is already registered.",
    "42703": "Verification service temporarily unavailable.",
}

DEFAULT_ERROR_MESSAGE = "Unexpected backend error during verification."


class ErrorKind(str, enum.Enum):
    """Closed set of failure kinds."""

    INVALID_INPUT = "invalid_input"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    PRECONDITION_NOT_MET = "precondition_not_met"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class BackendError(Exception):
    """Raised by the backend client for any failed call."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.PERMANENT,
        code: str | None = None,
        status_code: int | None = None,
    ):
        self.message = message
        self.kind = kind
        self.code = code
        self.status_code = status_code
        super().__init__(message)

    @property
    def is_transient(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT


def _find_message(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    for key in MESSAGE_KEYS:
        value = payload.get(key)
        if isinstance(value, str) and value not in JUNK_STRINGS:
            return value
        if isinstance(value, dict):
            nested = _find_message(value)
            if nested:
                return nested
    return None


def format_error(err: Any) -> str:
    """
    Produce a human-readable message from any error value.

    Handles plain strings, exceptions, and JSON error payloads returned by
    the backend. Never returns an empty or placeholder string.

    Args:
        err: The error value

    Returns:
        A message suitable for showing to an operator
    """
    if err is None:
        return DEFAULT_ERROR_MESSAGE

    if isinstance(err, BackendError):
        return err.message or DEFAULT_ERROR_MESSAGE

    if isinstance(err, str):
        return DEFAULT_ERROR_MESSAGE if err.strip() in JUNK_STRINGS else err

    if isinstance(err, dict):
        code = err.get("code")
        if isinstance(code, str) and code in POSTGRES_CODE_MESSAGES:
            return POSTGRES_CODE_MESSAGES[code]

        message = _find_message(err)
        if message:
            return message

        try:
            dumped = json.dumps(err, default=str)
        except (TypeError, ValueError):
            dumped = ""
        return dumped if dumped not in JUNK_STRINGS else DEFAULT_ERROR_MESSAGE

    if isinstance(err, BaseException):
        text = str(err)
        if text and text not in JUNK_STRINGS:
            return text
        return f"{type(err).__name__} during backend call"

    text = str(err)
    return text if text not in JUNK_STRINGS else DEFAULT_ERROR_MESSAGE
