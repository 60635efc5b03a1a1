"""
API tests for the enrollment router.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from enrollment_sync.api import api_router
from enrollment_sync.core.errors import ErrorKind
from enrollment_sync.modules.admissions.models import EnquiryStatus
from enrollment_sync.modules.admissions.schemas import LifecycleResult


@pytest.fixture
def state_machine():
    return MagicMock(
        can_convert=AsyncMock(return_value=True),
        convert=AsyncMock(),
        transition_enquiry=AsyncMock(),
        finalize_enrollment=AsyncMock(),
        request_documents=AsyncMock(),
        verify_document=AsyncMock(),
        reject_document=AsyncMock(),
    )


@pytest.fixture
def client(state_machine):
    app = FastAPI()
    app.include_router(api_router, prefix="/api/v1")
    app.state.services = SimpleNamespace(state_machine=state_machine)
    return TestClient(app)


class TestEnquiryEndpoints:
    """Tests for enquiry conversion and status endpoints."""

    def test_can_convert(self, client, state_machine):
        response = client.get("/api/v1/enrollment/enquiries/enq-1/can-convert")

        assert response.status_code == 200
        assert response.json() == {"enquiry_id": "enq-1", "can_convert": True}
        state_machine.can_convert.assert_awaited_once_with("enq-1")

    def test_convert_success(self, client, state_machine):
        state_machine.convert.return_value = LifecycleResult.ok("Converted", admission_id="adm-1")

        response = client.post("/api/v1/enrollment/enquiries/enq-1/convert")

        assert response.status_code == 200
        assert response.json()["admission_id"] == "adm-1"

    def test_convert_twice_is_conflict(self, client, state_machine):
        state_machine.convert.return_value = LifecycleResult.fail(
            ErrorKind.PRECONDITION_NOT_MET,
            "ALREADY_CONVERTED",
            "Enquiry enq-1 has already been converted to an admission.",
        )

        response = client.post("/api/v1/enrollment/enquiries/enq-1/convert")

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "ALREADY_CONVERTED"

    def test_unknown_enquiry_is_404(self, client, state_machine):
        state_machine.convert.return_value = LifecycleResult.fail(
            ErrorKind.NOT_FOUND, "ENQUIRY_NOT_FOUND", "Enquiry enq-9 not found."
        )

        response = client.post("/api/v1/enrollment/enquiries/enq-9/convert")

        assert response.status_code == 404

    def test_change_status(self, client, state_machine):
        state_machine.transition_enquiry.return_value = LifecycleResult.ok("Enquiry moved")

        response = client.post(
            "/api/v1/enrollment/enquiries/enq-1/status",
            json={"status": "ACTIVE", "notes": "Called parent"},
        )

        assert response.status_code == 200
        state_machine.transition_enquiry.assert_awaited_once_with(
            "enq-1", EnquiryStatus.ACTIVE, "Called parent"
        )

    def test_change_status_rejects_unknown_status(self, client):
        response = client.post(
            "/api/v1/enrollment/enquiries/enq-1/status", json={"status": "LOST"}
        )
        assert response.status_code == 422


class TestAdmissionEndpoints:
    """Tests for finalization and document endpoints."""

    def test_finalize_blocked_lists_pending_documents(self, client, state_machine):
        state_machine.finalize_enrollment.return_value = LifecycleResult.fail(
            ErrorKind.PRECONDITION_NOT_MET,
            "DOCUMENTS_INCOMPLETE",
            "1 mandatory document(s) still need verification.",
            mandatory_pending=1,
            pending_documents=["Report Card"],
        )

        response = client.post("/api/v1/enrollment/admissions/adm-1/finalize")

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["error"] == "DOCUMENTS_INCOMPLETE"
        assert detail["mandatory_pending"] == 1
        assert detail["pending_documents"] == ["Report Card"]

    def test_finalize_backend_unavailable_is_503(self, client, state_machine):
        state_machine.finalize_enrollment.return_value = LifecycleResult.fail(
            ErrorKind.TRANSIENT, "BACKEND_UNAVAILABLE", "Backend connection unavailable."
        )

        response = client.post("/api/v1/enrollment/admissions/adm-1/finalize")

        assert response.status_code == 503

    def test_finalize_success(self, client, state_machine):
        state_machine.finalize_enrollment.return_value = LifecycleResult.ok(
            "Enrollment finalized.", admission_id="adm-1", status="Approved"
        )

        response = client.post("/api/v1/enrollment/admissions/adm-1/finalize")

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "Approved"

    def test_request_documents(self, client, state_machine):
        state_machine.request_documents.return_value = LifecycleResult.ok("Requested")

        response = client.post(
            "/api/v1/enrollment/admissions/adm-1/document-requests",
            json={"documents": ["Birth Certificate"], "message": "Please upload"},
        )

        assert response.status_code == 200
        state_machine.request_documents.assert_awaited_once_with(
            "adm-1", ["Birth Certificate"], "Please upload"
        )

    def test_verify_document(self, client, state_machine):
        state_machine.verify_document.return_value = LifecycleResult.ok("Document verified.")

        response = client.post("/api/v1/enrollment/document-requirements/5/verify")

        assert response.status_code == 200
        state_machine.verify_document.assert_awaited_once_with(5)

    def test_reject_without_reason_is_400(self, client, state_machine):
        state_machine.reject_document.return_value = LifecycleResult.fail(
            ErrorKind.INVALID_INPUT, "REASON_REQUIRED", "A rejection reason is required."
        )

        response = client.post(
            "/api/v1/enrollment/document-requirements/5/reject", json={"reason": ""}
        )

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "REASON_REQUIRED"
