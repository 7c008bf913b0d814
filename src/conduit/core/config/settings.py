"""
Centralized settings for the conduit execution core.

:class:`ConduitSettings` is the single validated source of truth for
retry defaults, circuit-breaker thresholds, loop intervals and the
ambient knobs (logging, API bind address). Every field can be set via a
``CONDUIT_*`` environment variable or a ``.env`` file.

Tags:
    conduit-core, configuration, settings, pydantic
"""

from __future__ import annotations

from datetime import date
from enum import Enum

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class HalfOpenPolicy(str, Enum):
    """What a failure in ``half_open`` does to the breaker.

    IMMEDIATE: any half-open failure reopens the circuit.
    THRESHOLD: half-open failures count afresh and reopen only at the
               failure threshold.
    """

    IMMEDIATE = "immediate"
    THRESHOLD = "threshold"


class ConduitSettings(BaseSettings):
    """Conduit configuration.

    Example::

        CONDUIT_RETRY_MAX_RETRIES=5 CONDUIT_LOG_FORMAT=console conduit serve
    """

    model_config = SettingsConfigDict(
        env_prefix="CONDUIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Retry defaults (system-level policy) ─────────────────────
    retry_max_retries: int = Field(default=3, ge=0)
    retry_initial_delay_seconds: float = Field(default=5.0, gt=0)
    retry_multiplier: float = Field(default=2.0, ge=1.0)
    retry_max_delay_seconds: float = Field(default=300.0, gt=0)
    retry_jitter: float = Field(default=0.1, ge=0.0, lt=1.0)

    # ── Circuit breaker defaults ─────────────────────────────────
    breaker_failure_threshold: int = Field(default=5, ge=1)
    breaker_reset_timeout_seconds: float = Field(default=60.0, gt=0)
    breaker_half_open_max_calls: int = Field(default=1, ge=1)
    breaker_half_open_policy: HalfOpenPolicy = Field(default=HalfOpenPolicy.IMMEDIATE)
    circuit_open_max_waits: int = Field(default=3, ge=0)
    breaker_probe_poll_seconds: float = Field(default=1.0, gt=0)

    # ── Dead letter ──────────────────────────────────────────────
    dlq_retention_days: int = Field(default=30, ge=1)

    # ── Background loops ─────────────────────────────────────────
    scheduler_interval_seconds: float = Field(default=10.0, gt=0)
    condition_scan_interval_seconds: float = Field(default=60.0, gt=0)
    monitor_poll_interval_seconds: float = Field(default=5.0, gt=0)
    maintenance_interval_seconds: float = Field(default=300.0, gt=0)

    # ── Engine ───────────────────────────────────────────────────
    max_concurrent_executions: int = Field(default=10, ge=1)
    max_pending_executions: int = Field(default=1000, ge=1)
    cancel_grace_seconds: float = Field(default=5.0, ge=0)
    default_step_timeout_seconds: float | None = Field(default=None)

    # ── Pub/sub ──────────────────────────────────────────────────
    subscriber_buffer_size: int = Field(default=100, ge=1)

    # ── Monitor / alerts ─────────────────────────────────────────
    monitor_window_seconds: float = Field(default=3600.0, gt=0)
    alert_cooldown_seconds: float = Field(default=300.0, ge=0)

    # ── Calendar ─────────────────────────────────────────────────
    holidays: list[date] = Field(default_factory=list)

    # ── Error notifications ──────────────────────────────────────
    error_notification_channel: str = Field(default="email")
    error_notification_recipients: list[str] = Field(default_factory=list)

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")

    # ── API ──────────────────────────────────────────────────────
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8600)
    api_prefix: str = Field(default="/api/v1")
    debug: bool = Field(default=False)
    sse_heartbeat_seconds: float = Field(default=15.0, gt=0)

    # ── Tenancy ──────────────────────────────────────────────────
    default_organization_id: str = Field(default="default")

    @field_validator("monitor_poll_interval_seconds")
    @classmethod
    def _poll_within_staleness_bound(cls, value: float) -> float:
        if value > 5.0:
            raise ValueError("monitor_poll_interval_seconds must be <= 5 seconds")
        return value

    @field_validator("log_format")
    @classmethod
    def _known_log_format(cls, value: str) -> str:
        if value not in ("json", "console"):
            raise ValueError("log_format must be 'json' or 'console'")
        return value

    @model_validator(mode="after")
    def _delay_bounds(self) -> ConduitSettings:
        if self.retry_initial_delay_seconds > self.retry_max_delay_seconds:
            raise ValueError("retry_initial_delay_seconds must not exceed retry_max_delay_seconds")
        return self


# ── Settings factory with caching ────────────────────────────────────────

_settings_cache: dict[str, ConduitSettings] = {}


def get_settings(*, _force_reload: bool = False) -> ConduitSettings:
    """Load, validate, and cache a :class:`ConduitSettings` instance."""
    if not _force_reload and "default" in _settings_cache:
        return _settings_cache["default"]
    settings = ConduitSettings()
    _settings_cache["default"] = settings
    return settings


def clear_settings_cache() -> None:
    """Clear the settings cache (primarily for testing)."""
    _settings_cache.clear()
