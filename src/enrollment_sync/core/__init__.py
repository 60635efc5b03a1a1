"""
Core module - Configuration, database, Redis, scheduling, backend client and errors.
"""

from enrollment_sync.core.backend import BackendClient, BackendResult
from enrollment_sync.core.config import Settings, get_settings, settings
from enrollment_sync.core.database import Base, close_db, init_db
from enrollment_sync.core.errors import BackendError, ErrorKind, format_error
from enrollment_sync.core.redis import close_redis, init_redis
from enrollment_sync.core.scheduler import JobScheduler

__all__ = [
    # Config
    "Settings",
    "settings",
    "get_settings",
    # Database
    "Base",
    "init_db",
    "close_db",
    # Redis
    "init_redis",
    "close_redis",
    # Scheduler
    "JobScheduler",
    # Backend
    "BackendClient",
    "BackendResult",
    "BackendError",
    "ErrorKind",
    "format_error",
]
