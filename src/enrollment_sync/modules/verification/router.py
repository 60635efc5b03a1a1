"""
Verification Router

API endpoints for code verification and the offline queue.

Endpoints:
- POST /verifications - Submit a code for verification
- POST /verifications/drain - Replay the offline queue now
- GET /verifications/queue - List queued verifications
- GET /verifications/queue/abandoned - List abandoned verifications
- DELETE /verifications/queue/{queue_id} - Remove one queued verification
- DELETE /verifications/queue - Clear the offline queue
- GET /verifications/audit-log - Recent verification attempts, newest first
- GET /verifications/health - Cached backend health status
- POST /verifications/health/check - Run a health check now

Submitting never fails at the HTTP level: the outcome status in the body
(SUCCESS, QUEUED, INVALID, EXPIRED, FAILED) carries the result.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from enrollment_sync.modules.local_state import StateStoreError
from enrollment_sync.modules.verification.audit import AuditLog
from enrollment_sync.modules.verification.coordinator import VerificationCoordinator
from enrollment_sync.modules.verification.health import HealthMonitor
from enrollment_sync.modules.verification.queue import OfflineQueue
from enrollment_sync.modules.verification.schemas import (
    AuditLogResponse,
    DrainSummary,
    QueueClearedResponse,
    QueueListResponse,
    ServiceHealthStatus,
    SubmitVerificationRequest,
    VerificationOutcome,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# ============================================
# Dependencies
# ============================================


def get_coordinator(request: Request) -> VerificationCoordinator:
    return request.app.state.services.coordinator


def get_queue(request: Request) -> OfflineQueue:
    return request.app.state.services.queue


def get_audit_log(request: Request) -> AuditLog:
    return request.app.state.services.audit


def get_monitor(request: Request) -> HealthMonitor:
    return request.app.state.services.monitor


def _store_unavailable(e: StateStoreError) -> HTTPException:
    logger.error(f"Local store unavailable: {e}")
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={
            "error": "LOCAL_STORE_UNAVAILABLE",
            "message": "Local verification storage is unavailable.",
        },
    )


@router.post(
    "",
    response_model=VerificationOutcome,
    summary="Submit Verification Code",
    description="""
Verify an access code against the backend of record.

If the backend is offline the code is queued locally and processed
automatically once the service returns; the response status is `QUEUED`.
""",
)
async def submit_verification(
    data: SubmitVerificationRequest,
    coordinator: VerificationCoordinator = Depends(get_coordinator),
) -> VerificationOutcome:
    return await coordinator.submit(data.code, data.expected_code_type)


@router.post("/drain", response_model=DrainSummary, summary="Drain Offline Queue")
async def drain_queue(
    coordinator: VerificationCoordinator = Depends(get_coordinator),
) -> DrainSummary:
    """Replay queued verifications now. A no-op while another drain is running."""
    return await coordinator.drain_queue()


@router.get("/queue", response_model=QueueListResponse, summary="List Offline Queue")
async def list_queue(queue: OfflineQueue = Depends(get_queue)) -> QueueListResponse:
    try:
        items = await queue.list()
    except StateStoreError as e:
        raise _store_unavailable(e) from e
    return QueueListResponse(items=items, count=len(items))


@router.get(
    "/queue/abandoned",
    response_model=QueueListResponse,
    summary="List Abandoned Verifications",
)
async def list_abandoned(queue: OfflineQueue = Depends(get_queue)) -> QueueListResponse:
    try:
        items = await queue.list_abandoned()
    except StateStoreError as e:
        raise _store_unavailable(e) from e
    return QueueListResponse(items=items, count=len(items))


@router.delete(
    "/queue/{queue_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove Queued Verification",
)
async def remove_queued(
    queue_id: str,
    queue: OfflineQueue = Depends(get_queue),
) -> Response:
    try:
        removed = await queue.remove(queue_id)
    except StateStoreError as e:
        raise _store_unavailable(e) from e

    if not removed:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error": "QUEUE_ITEM_NOT_FOUND",
                "message": f"Queued verification {queue_id} not found.",
            },
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("/queue", response_model=QueueClearedResponse, summary="Clear Offline Queue")
async def clear_queue(queue: OfflineQueue = Depends(get_queue)) -> QueueClearedResponse:
    try:
        removed = await queue.clear()
    except StateStoreError as e:
        raise _store_unavailable(e) from e
    logger.warning(f"Offline queue cleared by operator ({removed} item(s))")
    return QueueClearedResponse(removed=removed)


@router.get("/audit-log", response_model=AuditLogResponse, summary="Verification Audit Log")
async def audit_log(
    limit: int = Query(50, ge=1, le=1000),
    audit: AuditLog = Depends(get_audit_log),
) -> AuditLogResponse:
    try:
        entries = await audit.list(limit)
    except StateStoreError as e:
        raise _store_unavailable(e) from e
    return AuditLogResponse(entries=entries)


@router.get("/health", response_model=ServiceHealthStatus, summary="Verification Service Health")
async def service_health(monitor: HealthMonitor = Depends(get_monitor)) -> ServiceHealthStatus:
    """Last known status. Does not contact the backend."""
    return monitor.last_status


@router.post(
    "/health/check",
    response_model=ServiceHealthStatus,
    summary="Check Verification Service Health",
)
async def check_service_health(
    monitor: HealthMonitor = Depends(get_monitor),
    coordinator: VerificationCoordinator = Depends(get_coordinator),
) -> ServiceHealthStatus:
    """Run a health check now. A recovery from offline starts a queue drain."""
    fresh = await monitor.check_health()
    await coordinator.handle_health_update(fresh)
    return fresh
