"""
Application Configuration

Settings are loaded from environment variables (or a local .env file)
using pydantic-settings. Import `settings` for the process-wide instance,
or call `get_settings()` where a dependency is preferred.
"""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration for the verification coordinator."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    python_env: str = "development"
    log_level: str = "INFO"
    cors_origins: str = "http://localhost:3000"

    # Local durable state
    database_url: str = "sqlite+aiosqlite:///./enrollment_sync.db"
    redis_url: str = "redis://localhost:6379/0"
    state_store_backend: Literal["sql", "redis"] = "sql"

    # Backend of record
    backend_url: str = "http://localhost:54321"
    backend_api_key: str | None = None
    backend_access_token: str | None = None
    branch_id: str | None = None
    request_timeout_seconds: float = 10.0

    # Health monitoring
    health_check_interval_seconds: int = 30
    health_check_timeout_seconds: float = 5.0

    # Offline queue
    queue_max_retries: int = 3
    drain_interval_seconds: int = 60

    # Audit log
    audit_log_max_entries: int = 1000
    audit_mirror_enabled: bool = True

    # Enrollment policy: may an admission with zero document requirements be finalized?
    finalize_without_requirements: bool = False

    @property
    def is_production(self) -> bool:
        return self.python_env.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.python_env.lower() == "development"

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    """Return the cached settings instance."""
    return Settings()


settings = get_settings()
