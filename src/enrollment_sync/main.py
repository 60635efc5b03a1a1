"""
Enrollment Sync API - Main Application Entry Point

This module initializes and configures the FastAPI application including:
- Durable local state (SQL or Redis)
- The verification service graph
- Background job scheduler and health monitoring
- CORS middleware
- API routing
- Health check endpoints
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware

from enrollment_sync.api import api_router
from enrollment_sync.core.config import settings
from enrollment_sync.core.database import async_session_maker, close_db, init_db
from enrollment_sync.core.redis import close_redis, init_redis
from enrollment_sync.modules.local_state import (
    RedisStateStore,
    SqlStateStore,
    StateStore,
    StateStoreError,
)
from enrollment_sync.modules.verification.jobs import register_verification_jobs
from enrollment_sync.modules.verification.queue import QUEUE_NAMESPACE
from enrollment_sync.services import build_services

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

logger = logging.getLogger(__name__)


async def open_state_store() -> StateStore:
    """Open the configured durable store."""
    if settings.state_store_backend == "redis":
        redis = await init_redis()
        logger.info("Local state on Redis")
        return RedisStateStore(redis)

    await init_db()
    logger.info("Local state on SQL database")
    return SqlStateStore(async_session_maker)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events including:
    - Local state store
    - Verification services and cached health
    - Background job scheduler and health monitoring
    """
    # Startup
    logger.info(f"Starting Enrollment Sync API in {settings.python_env} mode...")

    # Nothing works without durable local state
    store = await open_state_store()

    services = build_services(settings, store)
    app.state.services = services

    await services.monitor.restore()

    # Initialize Background Job Scheduler
    try:
        # Register jobs before starting the scheduler
        register_verification_jobs(
            services.scheduler,
            services.coordinator,
            settings.drain_interval_seconds,
        )
        await services.scheduler.start()
        await services.monitor.start_monitoring(callback=services.coordinator.handle_health_update)
        logger.info("Background scheduler and health monitoring started")
    except Exception as e:
        logger.error(f"Background scheduler failed to start: {e}", exc_info=True)
        if settings.is_production:
            raise

    yield  # Application runs here

    # Shutdown
    logger.info("Shutting down Enrollment Sync API...")

    services.monitor.stop_monitoring()
    # Stop the scheduler first (wait for running jobs)
    await services.scheduler.shutdown()
    await services.coordinator.aclose()

    await close_redis()
    await close_db()
    logger.info("Cleanup complete")


app = FastAPI(
    title="Enrollment Sync API",
    description="Enrollment verification and conversion coordinator",
    version="0.1.0",
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    lifespan=lifespan,
)

app.include_router(api_router, prefix="/api/v1")

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """Root endpoint - API welcome message."""
    return {
        "message": "Welcome to Enrollment Sync API",
        "status": "running",
        "environment": settings.python_env,
    }


@app.get("/health", tags=["Health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint for container orchestration."""
    return {"status": "healthy"}


@app.get("/ready", tags=["Health"])
async def readiness_check(request: Request) -> dict[str, str | int]:
    """Ready once the local store answers. Reports the cached backend status."""
    services = request.app.state.services
    try:
        queued = await services.store.count(QUEUE_NAMESPACE)
    except StateStoreError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "LOCAL_STORE_UNAVAILABLE", "message": str(e)},
        ) from e

    return {
        "status": "ready",
        "verification_service": services.monitor.last_status.status.value,
        "queued_verifications": queued,
    }
