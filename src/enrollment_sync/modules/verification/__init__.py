"""
Verification Module

Verification of short-lived access codes against a backend that may be
unreachable:
1. Health monitoring with an online / degraded / offline status
2. Durable offline queue with bounded retries and abandoned records
3. Size-bounded audit log, mirrored to the backend best-effort
4. Coordinator choosing between synchronous verification and queueing

API Endpoints:
- POST /verifications - Submit a code
- POST /verifications/drain - Replay the offline queue
- GET /verifications/queue, GET /verifications/queue/abandoned
- DELETE /verifications/queue/{id}, DELETE /verifications/queue
- GET /verifications/audit-log
- GET /verifications/health, POST /verifications/health/check

Background Jobs (via APScheduler):
- verification_health_check: registered by HealthMonitor.start_monitoring
- verification_drain_queue: periodic queue drain
"""

from .jobs import register_verification_jobs
from .router import router

__all__ = ["router", "register_verification_jobs"]
