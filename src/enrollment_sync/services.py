"""
Service Container

Builds the single per-process graph of verification services from
settings and injected infrastructure. The container is stored on
`app.state.services`; routers reach it through their own FastAPI
dependencies, so there is no module-level mutable state.
"""

from dataclasses import dataclass

from enrollment_sync.core.backend import BackendClient
from enrollment_sync.core.clock import Clock, utc_now
from enrollment_sync.core.config import Settings
from enrollment_sync.core.scheduler import JobScheduler
from enrollment_sync.modules.admissions.service import ConversionStateMachine
from enrollment_sync.modules.local_state import StateStore
from enrollment_sync.modules.verification.audit import AuditLog
from enrollment_sync.modules.verification.coordinator import VerificationCoordinator
from enrollment_sync.modules.verification.health import HealthMonitor
from enrollment_sync.modules.verification.queue import OfflineQueue


@dataclass
class ServiceContainer:
    """Every long-lived service of one process."""

    settings: Settings
    store: StateStore
    backend: BackendClient
    scheduler: JobScheduler
    monitor: HealthMonitor
    queue: OfflineQueue
    audit: AuditLog
    state_machine: ConversionStateMachine
    coordinator: VerificationCoordinator


def build_backend(settings: Settings) -> BackendClient:
    return BackendClient(
        base_url=settings.backend_url,
        api_key=settings.backend_api_key,
        access_token=settings.backend_access_token,
        timeout_seconds=settings.request_timeout_seconds,
    )


def build_services(
    settings: Settings,
    store: StateStore,
    backend: BackendClient | None = None,
    scheduler: JobScheduler | None = None,
    clock: Clock = utc_now,
) -> ServiceContainer:
    """
    Wire the verification subsystem together.

    Args:
        settings: Application settings
        store: Durable local store shared by queue, audit log and health cache
        backend: Backend client; built from settings when omitted
        scheduler: Job scheduler; a new one when omitted
        clock: Time source shared by every service

    Returns:
        The container. Nothing is started yet.
    """
    backend = backend or build_backend(settings)
    scheduler = scheduler or JobScheduler()

    monitor = HealthMonitor(
        backend,
        store=store,
        scheduler=scheduler,
        interval_seconds=settings.health_check_interval_seconds,
        check_timeout_seconds=settings.health_check_timeout_seconds,
        clock=clock,
    )
    queue = OfflineQueue(store, max_retries=settings.queue_max_retries, clock=clock)
    audit = AuditLog(
        store,
        backend=backend,
        max_entries=settings.audit_log_max_entries,
        mirror_enabled=settings.audit_mirror_enabled,
    )
    state_machine = ConversionStateMachine(
        backend,
        finalize_without_requirements=settings.finalize_without_requirements,
        clock=clock,
    )
    coordinator = VerificationCoordinator(
        monitor,
        queue,
        audit,
        state_machine,
        backend,
        branch_id=settings.branch_id,
        clock=clock,
    )

    return ServiceContainer(
        settings=settings,
        store=store,
        backend=backend,
        scheduler=scheduler,
        monitor=monitor,
        queue=queue,
        audit=audit,
        state_machine=state_machine,
        coordinator=coordinator,
    )

