"""
Backend Client

Talks to the backend of record over its REST/RPC interface using requests.
Every call runs in a worker thread so the event loop is never blocked, and
every call is time-bounded twice: by the requests timeout and by an outer
asyncio deadline.

All failures surface as BackendError with a classified ErrorKind:
- connection errors, timeouts, 408/429/5xx -> TRANSIENT
- other 4xx (auth, schema, bad input) and malformed bodies -> PERMANENT

Responses are untrusted. Some RPCs return a bare object, others a
single-element list. `unwrap_response` and `to_result` are the only places
that deal with that, so callers always see a canonical BackendResult.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import requests

from enrollment_sync.core.errors import BackendError, ErrorKind, format_error

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}

# Extra grace on top of the requests timeout before the asyncio deadline fires
DEADLINE_GRACE_SECONDS = 1.0

# RPC names and tables on the backend of record
RPC_VERIFY_CODE = "admin_verify_share_code"
RPC_IMPORT_RECORD = "admin_import_record_from_share_code"
RPC_UPDATE_ENQUIRY_STATUS = "update_enquiry_status"
RPC_CONVERT_ENQUIRY = "convert_enquiry_to_admission"
RPC_TRANSITION_ADMISSION = "admin_transition_admission"
RPC_REQUEST_DOCUMENTS = "admin_request_documents"
RPC_INITIALIZE_DOCUMENT_SLOTS = "parent_initialize_vault_slots"

TABLE_ENQUIRIES = "enquiries"
TABLE_ADMISSIONS = "admissions"
TABLE_DOCUMENT_REQUIREMENTS = "document_requirements"
TABLE_ADMISSION_AUDIT_LOGS = "admission_audit_logs"
TABLE_VERIFICATION_AUDIT_LOGS = "verification_audit_logs"

# The liveness probe resolves a code that never exists; only reachability matters
HEALTH_CHECK_CODE = "HEALTH_CHECK_DUMMY"


@dataclass(frozen=True)
class BackendResult:
    """Canonical shape of a mutating backend response."""

    success: bool
    message: str
    data: dict[str, Any] = field(default_factory=dict)


def unwrap_response(data: Any) -> dict[str, Any] | None:
    """
    Reduce a backend response to a single object.

    A list is unwrapped to its first element; anything that is not an
    object after unwrapping yields None.
    """
    if isinstance(data, list):
        data = data[0] if data else None
    if isinstance(data, dict):
        return data
    return None


def to_result(
    data: Any,
    failure_message: str = "Backend did not confirm the operation.",
) -> BackendResult:
    """
    Convert a raw response into a BackendResult.

    Only an explicit `success: true` counts as success. A missing, empty or
    falsy response is a failure, never an assumed success.
    """
    payload = unwrap_response(data)
    if payload is None:
        return BackendResult(success=False, message="Backend returned no response.")

    success = payload.get("success") is True
    message = payload.get("message")
    if not isinstance(message, str) or not message:
        message = "OK" if success else failure_message
    return BackendResult(success=success, message=message, data=payload)


class BackendClient:
    """
    Thin async wrapper around the backend REST and RPC endpoints.

    The client holds no domain state. Methods return decoded JSON (or a
    BackendResult for mutations) and raise BackendError on failure.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        access_token: str | None = None,
        timeout_seconds: float = 10.0,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.access_token = access_token
        self.timeout_seconds = timeout_seconds
        self._session = session or requests.Session()

    def _headers(self, prefer: str | None = None) -> dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
        token = self.access_token or self.api_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _send(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        prefer: str | None = None,
    ) -> Any:
        """Perform one blocking HTTP request. Runs in a worker thread."""
        url = f"{self.base_url}{path}"
        try:
            response = self._session.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=self._headers(prefer),
                timeout=self.timeout_seconds,
            )
        except requests.Timeout as e:
            raise BackendError("Backend request timed out.", ErrorKind.TRANSIENT) from e
        except requests.ConnectionError as e:
            raise BackendError("Backend connection unavailable.", ErrorKind.TRANSIENT) from e
        except requests.RequestException as e:
            raise BackendError(format_error(e), ErrorKind.PERMANENT) from e

        payload: Any = None
        if response.content:
            try:
                payload = response.json()
            except ValueError:
                payload = None
                if response.ok:
                    raise BackendError(
                        "Backend returned a response that is not JSON.",
                        ErrorKind.PERMANENT,
                        status_code=response.status_code,
                    ) from None

        if response.status_code >= 400:
            kind = (
                ErrorKind.TRANSIENT
                if response.status_code in TRANSIENT_STATUS_CODES
                else ErrorKind.PERMANENT
            )
            code = payload.get("code") if isinstance(payload, dict) else None
            detail = payload
            if detail is None:
                detail = response.text or f"HTTP {response.status_code}"
            raise BackendError(
                format_error(detail),
                kind,
                code=str(code) if code is not None else None,
                status_code=response.status_code,
            )

        return payload

    async def _call(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._send, method, path, **kwargs),
                timeout=self.timeout_seconds + DEADLINE_GRACE_SECONDS,
            )
        except TimeoutError as e:
            raise BackendError(
                f"Backend call exceeded {self.timeout_seconds:g}s deadline.",
                ErrorKind.TRANSIENT,
            ) from e

    # ============================================
    # Generic REST / RPC primitives
    # ============================================

    async def rpc(self, function: str, params: dict[str, Any] | None = None) -> Any:
        """Call a backend RPC function."""
        return await self._call("POST", f"/rest/v1/rpc/{function}", json_body=params or {})

    async def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        columns: str = "*",
        limit: int | None = None,
        order: str | None = None,
    ) -> list[dict[str, Any]]:
        """Read rows from a table using equality filters."""
        params: dict[str, Any] = {"select": columns}
        for column, value in (filters or {}).items():
            params[column] = f"eq.{value}"
        if limit is not None:
            params["limit"] = limit
        if order:
            params["order"] = order

        rows = await self._call("GET", f"/rest/v1/{table}", params=params)
        if rows is None:
            return []
        if not isinstance(rows, list):
            raise BackendError(f"Unexpected response shape reading {table}.", ErrorKind.PERMANENT)
        return rows

    async def select_one(
        self,
        table: str,
        filters: dict[str, Any],
        columns: str = "*",
    ) -> dict[str, Any] | None:
        rows = await self.select(table, filters, columns=columns, limit=1)
        return unwrap_response(rows)

    async def update(
        self,
        table: str,
        filters: dict[str, Any],
        values: dict[str, Any],
    ) -> list[dict[str, Any]]:
        """Update rows matching the filters and return the updated rows."""
        params = {column: f"eq.{value}" for column, value in filters.items()}
        rows = await self._call(
            "PATCH",
            f"/rest/v1/{table}",
            params=params,
            json_body=values,
            prefer="return=representation",
        )
        return rows if isinstance(rows, list) else []

    async def insert(self, table: str, values: dict[str, Any]) -> None:
        await self._call("POST", f"/rest/v1/{table}", json_body=values, prefer="return=minimal")

    # ============================================
    # Health
    # ============================================

    async def health_probe(self) -> None:
        """Lightweight liveness probe. Any answer at all means reachable."""
        await self.rpc(RPC_VERIFY_CODE, {"p_code": HEALTH_CHECK_CODE})

    async def fallback_probe(self) -> None:
        """Minimal read against the domain-of-record table."""
        await self.select(TABLE_ADMISSIONS, columns="id", limit=1)

    # ============================================
    # Verification codes
    # ============================================

    async def validate_code(self, code: str) -> dict[str, Any] | None:
        """Resolve a code to its target without mutating anything."""
        return unwrap_response(await self.rpc(RPC_VERIFY_CODE, {"p_code": code}))

    async def import_record(
        self,
        target_entity_id: str,
        code_type: str,
        branch_id: str | None = None,
    ) -> None:
        """Materialize the record into the active branch. Idempotent per id."""
        await self.rpc(
            RPC_IMPORT_RECORD,
            {
                "p_admission_id": target_entity_id,
                "p_code_type": code_type,
                "p_branch_id": branch_id,
            },
        )

    # ============================================
    # Enquiries
    # ============================================

    async def get_enquiry(self, enquiry_id: str) -> dict[str, Any] | None:
        return await self.select_one(TABLE_ENQUIRIES, {"id": enquiry_id})

    async def find_enquiry_by_admission(self, admission_id: str) -> dict[str, Any] | None:
        return await self.select_one(TABLE_ENQUIRIES, {"admission_id": admission_id})

    async def update_enquiry_status(
        self,
        enquiry_id: str,
        status: str,
        notes: str | None = None,
    ) -> None:
        await self.rpc(
            RPC_UPDATE_ENQUIRY_STATUS,
            {"p_enquiry_id": enquiry_id, "p_new_status": status, "p_notes": notes},
        )

    async def update_enquiry(
        self,
        enquiry_id: str,
        values: dict[str, Any],
    ) -> dict[str, Any] | None:
        return unwrap_response(await self.update(TABLE_ENQUIRIES, {"id": enquiry_id}, values))

    async def convert_enquiry_to_admission(self, enquiry_id: str) -> BackendResult:
        data = await self.rpc(RPC_CONVERT_ENQUIRY, {"p_enquiry_id": enquiry_id})
        return to_result(data, "Conversion was not confirmed by the backend.")

    # ============================================
    # Admissions and documents
    # ============================================

    async def get_admission(self, admission_id: str) -> dict[str, Any] | None:
        return await self.select_one(TABLE_ADMISSIONS, {"id": admission_id})

    async def update_admission(
        self,
        admission_id: str,
        values: dict[str, Any],
    ) -> dict[str, Any] | None:
        return unwrap_response(await self.update(TABLE_ADMISSIONS, {"id": admission_id}, values))

    async def transition_admission(self, admission_id: str, next_status: str) -> BackendResult:
        data = await self.rpc(
            RPC_TRANSITION_ADMISSION,
            {"p_admission_id": admission_id, "p_next_status": next_status},
        )
        return to_result(data, "Admission transition was not confirmed by the backend.")

    async def initialize_document_slots(self, admission_id: str) -> None:
        """Create the requirement rows for an admission. A no-op when they exist."""
        await self.rpc(RPC_INITIALIZE_DOCUMENT_SLOTS, {"p_admission_id": admission_id})

    async def list_document_requirements(self, admission_id: str) -> list[dict[str, Any]]:
        return await self.select(
            TABLE_DOCUMENT_REQUIREMENTS,
            {"admission_id": admission_id},
            order="is_mandatory.desc",
        )

    async def get_document_requirement(self, requirement_id: int) -> dict[str, Any] | None:
        return await self.select_one(TABLE_DOCUMENT_REQUIREMENTS, {"id": requirement_id})

    async def update_document_requirement(
        self,
        requirement_id: int,
        values: dict[str, Any],
    ) -> dict[str, Any] | None:
        return unwrap_response(
            await self.update(TABLE_DOCUMENT_REQUIREMENTS, {"id": requirement_id}, values)
        )

    async def request_documents(
        self,
        admission_id: str,
        documents: list[str],
        message: str | None,
    ) -> None:
        await self.rpc(
            RPC_REQUEST_DOCUMENTS,
            {"p_admission_id": admission_id, "p_documents": documents, "p_message": message},
        )

    async def insert_admission_audit_log(self, record: dict[str, Any]) -> None:
        await self.insert(TABLE_ADMISSION_AUDIT_LOGS, record)

    async def insert_verification_log(self, record: dict[str, Any]) -> None:
        await self.insert(TABLE_VERIFICATION_AUDIT_LOGS, record)
