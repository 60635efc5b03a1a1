"""
Enrollment Router

API endpoints for the Enquiry and Admission lifecycle.

Endpoints:
- GET /enrollment/enquiries/{id}/can-convert - Whether an enquiry may be converted
- POST /enrollment/enquiries/{id}/convert - Convert an enquiry into an admission
- POST /enrollment/enquiries/{id}/status - Move an enquiry to another status
- POST /enrollment/admissions/{id}/finalize - Finalize enrollment (document-gated)
- POST /enrollment/admissions/{id}/document-requests - Request documents from the guardian
- POST /enrollment/document-requirements/{id}/verify - Verify one document
- POST /enrollment/document-requirements/{id}/reject - Reject one document with a reason

Refusals are returned as HTTPException with detail
{"error": <error_code>, "message": <text>}.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from enrollment_sync.core.errors import ErrorKind
from enrollment_sync.modules.admissions.schemas import (
    CanConvertResponse,
    DocumentRequestBody,
    EnquiryStatusRequest,
    LifecycleResult,
    RejectDocumentRequest,
)
from enrollment_sync.modules.admissions.service import ConversionStateMachine

logger = logging.getLogger(__name__)

router = APIRouter()

ERROR_STATUS_CODES = {
    ErrorKind.INVALID_INPUT: status.HTTP_400_BAD_REQUEST,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.EXPIRED: status.HTTP_410_GONE,
    ErrorKind.PRECONDITION_NOT_MET: status.HTTP_409_CONFLICT,
    ErrorKind.TRANSIENT: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.PERMANENT: status.HTTP_502_BAD_GATEWAY,
}


def get_state_machine(request: Request) -> ConversionStateMachine:
    return request.app.state.services.state_machine


def _unwrap(result: LifecycleResult) -> LifecycleResult:
    """Return a successful result, or raise the HTTP error for a refusal."""
    if result.success:
        return result

    status_code = ERROR_STATUS_CODES.get(result.kind, status.HTTP_400_BAD_REQUEST)
    logger.warning(f"Lifecycle operation refused: {result.error_code} - {result.message}")
    detail = {"error": result.error_code, "message": result.message}
    if result.data:
        detail.update(result.data)
    raise HTTPException(status_code=status_code, detail=detail)


@router.get(
    "/enquiries/{enquiry_id}/can-convert",
    response_model=CanConvertResponse,
    summary="Check Enquiry Conversion",
)
async def can_convert(
    enquiry_id: str,
    state_machine: ConversionStateMachine = Depends(get_state_machine),
) -> CanConvertResponse:
    return CanConvertResponse(
        enquiry_id=enquiry_id,
        can_convert=await state_machine.can_convert(enquiry_id),
    )


@router.post(
    "/enquiries/{enquiry_id}/convert",
    response_model=LifecycleResult,
    summary="Convert Enquiry To Admission",
    description="""
Promote a verified enquiry into an admission. This is one-way.

**Refusals:**
- 409 `ALREADY_CONVERTED` if the enquiry was converted before
- 409 `ENQUIRY_NOT_VERIFIED` if the enquiry is not Verified or In Progress
""",
)
async def convert_enquiry(
    enquiry_id: str,
    state_machine: ConversionStateMachine = Depends(get_state_machine),
) -> LifecycleResult:
    return _unwrap(await state_machine.convert(enquiry_id))


@router.post(
    "/enquiries/{enquiry_id}/status",
    response_model=LifecycleResult,
    summary="Change Enquiry Status",
)
async def change_enquiry_status(
    enquiry_id: str,
    data: EnquiryStatusRequest,
    state_machine: ConversionStateMachine = Depends(get_state_machine),
) -> LifecycleResult:
    return _unwrap(await state_machine.transition_enquiry(enquiry_id, data.status, data.notes))


@router.post(
    "/admissions/{admission_id}/finalize",
    response_model=LifecycleResult,
    summary="Finalize Enrollment",
    description="""
Transition an admission to Approved. Irreversible.

**Document gate:**
Refused with 409 `DOCUMENTS_INCOMPLETE` while any mandatory document
requirement is not Accepted or Verified. The response lists the pending
documents.
""",
)
async def finalize_enrollment(
    admission_id: str,
    state_machine: ConversionStateMachine = Depends(get_state_machine),
) -> LifecycleResult:
    return _unwrap(await state_machine.finalize_enrollment(admission_id))


@router.post(
    "/admissions/{admission_id}/document-requests",
    response_model=LifecycleResult,
    summary="Request Documents",
)
async def request_documents(
    admission_id: str,
    data: DocumentRequestBody,
    state_machine: ConversionStateMachine = Depends(get_state_machine),
) -> LifecycleResult:
    result = await state_machine.request_documents(admission_id, data.documents, data.message)
    return _unwrap(result)


@router.post(
    "/document-requirements/{requirement_id}/verify",
    response_model=LifecycleResult,
    summary="Verify Document",
)
async def verify_document(
    requirement_id: int,
    state_machine: ConversionStateMachine = Depends(get_state_machine),
) -> LifecycleResult:
    return _unwrap(await state_machine.verify_document(requirement_id))


@router.post(
    "/document-requirements/{requirement_id}/reject",
    response_model=LifecycleResult,
    summary="Reject Document",
)
async def reject_document(
    requirement_id: int,
    data: RejectDocumentRequest,
    state_machine: ConversionStateMachine = Depends(get_state_machine),
) -> LifecycleResult:
    return _unwrap(await state_machine.reject_document(requirement_id, data.reason))
