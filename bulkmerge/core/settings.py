"""Application settings using Pydantic BaseSettings."""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_VALID_STRATEGIES = {"merge", "squash", "rebase"}


class Settings(BaseSettings):
    """Service configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server
    environment: str = Field(default="development")
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000)
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    log_file: Optional[str] = Field(default=None)

    # Database
    database_url: str = Field(default="sqlite+aiosqlite:///./bulkmerge.db")
    # Tables are normally created by `alembic upgrade head`; dev and test
    # environments may create them on startup instead.
    auto_create_tables: bool = Field(default=False)

    # Caller identity. Authentication happens upstream; the gateway in front
    # of this service forwards the authenticated user id in this header.
    requester_header: str = Field(default="X-User-ID")

    # Bulk merge engine
    max_batch_size: int = Field(default=50)
    max_concurrent_groups: int = Field(default=4)
    max_concurrent_operations: int = Field(default=8)
    shutdown_grace_seconds: float = Field(default=30.0)
    # Terminal status writes are retried with exponential backoff before the
    # operation is marked failed instead.
    finalize_attempts: int = Field(default=3)
    finalize_retry_backoff_seconds: float = Field(default=0.5)
    # Mark operations left in progress by a previous process as failed on startup.
    # Leave off when several workers share one database.
    recover_orphaned_operations: bool = Field(default=False)
    operations_page_size: int = Field(default=20)
    operations_max_page_size: int = Field(default=100)

    # Requester defaults, used when no user_settings row exists
    default_merge_strategy: str = Field(default="squash")
    default_delete_branch: bool = Field(default=False)
    default_merge_delay_seconds: int = Field(default=0)

    # Providers
    providers_enabled: str = Field(default="github,gitlab,bitbucket")
    provider_timeout_seconds: int = Field(default=30)

    github_base_url: str = Field(default="https://api.github.com")
    github_token: str = Field(default="")

    gitlab_base_url: str = Field(default="https://gitlab.com/api/v4")
    gitlab_token: str = Field(default="")

    bitbucket_base_url: str = Field(default="https://api.bitbucket.org/2.0")
    bitbucket_username: str = Field(default="")
    bitbucket_app_password: str = Field(default="")

    @property
    def providers_enabled_list(self) -> List[str]:
        """Parse enabled providers from comma-separated string."""
        if not self.providers_enabled:
            return []
        return [p.strip().lower() for p in self.providers_enabled.split(",") if p.strip()]

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def docs_url(self) -> str | None:
        return None if self.is_production else "/docs"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        upper = v.upper()
        if upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        vv = (v or "").strip().lower()
        if vv not in {"development", "staging", "production", "test"}:
            raise ValueError("ENVIRONMENT must be one of: development, staging, production, test")
        return vv

    @field_validator("default_merge_strategy")
    @classmethod
    def validate_default_merge_strategy(cls, v: str) -> str:
        vv = (v or "").strip().lower()
        if vv not in _VALID_STRATEGIES:
            raise ValueError("DEFAULT_MERGE_STRATEGY must be one of: merge, squash, rebase")
        return vv

    @model_validator(mode="after")
    def validate_engine_limits(self) -> "Settings":
        if self.max_batch_size < 1:
            raise ValueError("MAX_BATCH_SIZE must be at least 1")
        if self.max_concurrent_groups < 1:
            raise ValueError("MAX_CONCURRENT_GROUPS must be at least 1")
        if self.max_concurrent_operations < 1:
            raise ValueError("MAX_CONCURRENT_OPERATIONS must be at least 1")
        if self.finalize_attempts < 1:
            raise ValueError("FINALIZE_ATTEMPTS must be at least 1")
        if self.finalize_retry_backoff_seconds < 0:
            raise ValueError("FINALIZE_RETRY_BACKOFF_SECONDS must not be negative")
        if self.default_merge_delay_seconds < 0:
            raise ValueError("DEFAULT_MERGE_DELAY_SECONDS must not be negative")
        if not (1 <= self.operations_page_size <= self.operations_max_page_size):
            raise ValueError("OPERATIONS_PAGE_SIZE must be between 1 and OPERATIONS_MAX_PAGE_SIZE")
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
