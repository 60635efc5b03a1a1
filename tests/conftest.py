"""
Shared fixtures for enrollment sync tests.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from enrollment_sync.core.backend import BackendClient
from enrollment_sync.core.database import Base
from enrollment_sync.core.errors import BackendError, ErrorKind
from enrollment_sync.modules.local_state import SqlStateStore
from enrollment_sync.modules.local_state import models  # noqa: F401 - registers the table

FIXED_NOW = datetime(2026, 3, 2, 9, 30, tzinfo=UTC)


class FakeClock:
    """Pinned clock that tests advance explicitly."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


def transient_error(message: str = "Backend connection unavailable.") -> BackendError:
    return BackendError(message, ErrorKind.TRANSIENT)


def permanent_error(message: str = "JWT expired") -> BackendError:
    return BackendError(message, ErrorKind.PERMANENT, status_code=401)


@pytest.fixture
def clock():
    """Create a pinned clock."""
    return FakeClock()


@pytest.fixture
async def session_maker():
    """In-memory SQLite shared across sessions of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
async def store(session_maker):
    """Create a durable local store on the in-memory database."""
    return SqlStateStore(session_maker)


@pytest.fixture
def mock_backend():
    """Create a mock backend client. Every call succeeds with no data by default."""
    backend = AsyncMock(spec=BackendClient)
    backend.health_probe.return_value = None
    backend.fallback_probe.return_value = None
    backend.validate_code.return_value = None
    backend.import_record.return_value = None
    backend.insert_verification_log.return_value = None
    backend.insert_admission_audit_log.return_value = None
    return backend
