"""
Engine configuration.

Every tunable the scheduler reads comes from here, overridable through
``COGSCHED_*`` environment variables or a local ``.env`` file.
"""
import logging
from functools import lru_cache

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cogsched.exceptions import RetryConfig

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_LOG_FORMATS = ("text", "json")
_ENVIRONMENTS = ("development", "staging", "production")


class Settings(BaseSettings):
    """Scheduler settings; validated once at construction."""

    model_config = SettingsConfigDict(
        env_prefix="COGSCHED_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "cogsched"
    environment: str = "development"

    # ── Dispatch ──
    max_concurrent_tasks: int = Field(default=4, ge=1, description="Upper bound on RUNNING tasks")

    # ── Retry / timeout defaults for submissions that omit them ──
    default_max_retries: int = Field(default=3, ge=0)
    default_execution_timeout_ms: int = Field(default=30000, ge=1)
    retry_backoff_base_ms: int = Field(default=1000, ge=0, description="Backoff unit; retry n waits base * 2**n")
    retry_backoff_max_ms: int = Field(default=30000, ge=0, description="Cap on any single retry delay")

    # ── Priority score coefficients ──
    priority_weight_user: float = Field(default=2.0, ge=0.0)
    priority_weight_urgency: float = Field(default=1.5, ge=0.0)
    priority_weight_resource: float = Field(default=0.8, ge=0.0)
    priority_weight_cost: float = Field(default=0.5, ge=0.0)
    max_age_bonus: float = Field(default=100.0, ge=0.0, description="Age bonus once a task reaches the horizon")
    age_horizon_seconds: float = Field(default=3600.0, gt=0.0)
    priority_failure_penalty: float = Field(default=10.0, ge=0.0, description="Score lost per retry already used")
    priority_stalled_boost: float = Field(default=20.0, ge=0.0)
    stalled_threshold_seconds: float = Field(default=300.0, gt=0.0, description="Age of the last attempt that counts as stalled")
    priority_inheritance_direct: float = Field(default=1.0, ge=0.0, le=1.0)
    priority_inheritance_transitive: float = Field(default=0.6, ge=0.0, le=1.0)

    # ── Bookkeeping ──
    transition_history_size: int = Field(default=1000, ge=1)

    # ── Logging ──
    log_level: str = "INFO"
    log_format: str = "text"

    @field_validator("environment")
    @classmethod
    def _known_environment(cls, v: str) -> str:
        if v not in _ENVIRONMENTS:
            raise ValueError(f"environment must be one of {_ENVIRONMENTS}, got {v!r}")
        return v

    @field_validator("log_level")
    @classmethod
    def _known_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {_LOG_LEVELS}, got {v!r}")
        return level

    @field_validator("log_format")
    @classmethod
    def _known_log_format(cls, v: str) -> str:
        fmt = v.strip().lower()
        if fmt not in _LOG_FORMATS:
            raise ValueError(f"log_format must be one of {_LOG_FORMATS}, got {v!r}")
        return fmt

    @model_validator(mode="after")
    def _backoff_bounds(self) -> "Settings":
        if self.retry_backoff_base_ms > self.retry_backoff_max_ms:
            raise ValueError("retry_backoff_base_ms must not exceed retry_backoff_max_ms")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def get_log_level(self) -> int:
        return getattr(logging, self.log_level)

    def retry_config(self) -> RetryConfig:
        """Backoff schedule: base * 2**n, capped at the maximum."""
        return RetryConfig(
            initial_delay_ms=self.retry_backoff_base_ms,
            max_delay_ms=self.retry_backoff_max_ms,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings, read from the environment on first call."""
    return Settings()
