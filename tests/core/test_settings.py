"""Tests for ConduitSettings and the settings cache."""

from __future__ import annotations

from datetime import date

import pytest
from pydantic import ValidationError

from conduit.core.config import ConduitSettings, HalfOpenPolicy, clear_settings_cache, get_settings


@pytest.fixture(autouse=True)
def _clean_cache():
    clear_settings_cache()
    yield
    clear_settings_cache()


class TestDefaults:
    """Documented defaults."""

    def test_retry_defaults(self):
        """Retry policy defaults."""
        s = ConduitSettings()
        assert s.retry_max_retries == 3
        assert s.retry_initial_delay_seconds == 5.0
        assert s.retry_multiplier == 2.0
        assert s.retry_max_delay_seconds == 300.0
        assert s.retry_jitter == 0.1

    def test_breaker_and_dlq_defaults(self):
        """Breaker and dead-letter defaults."""
        s = ConduitSettings()
        assert s.breaker_failure_threshold == 5
        assert s.breaker_reset_timeout_seconds == 60.0
        assert s.breaker_half_open_policy == HalfOpenPolicy.IMMEDIATE
        assert s.dlq_retention_days == 30

    def test_api_defaults(self):
        """Ambient API settings."""
        s = ConduitSettings()
        assert s.api_port == 8600
        assert s.api_prefix == "/api/v1"


class TestEnvironment:
    """CONDUIT_* variables override defaults."""

    def test_env_override(self, monkeypatch):
        """Scalars and lists load from the environment."""
        monkeypatch.setenv("CONDUIT_RETRY_MAX_RETRIES", "7")
        monkeypatch.setenv("CONDUIT_BREAKER_HALF_OPEN_POLICY", "threshold")
        monkeypatch.setenv("CONDUIT_HOLIDAYS", '["2026-12-25"]')
        s = ConduitSettings()
        assert s.retry_max_retries == 7
        assert s.breaker_half_open_policy == HalfOpenPolicy.THRESHOLD
        assert s.holidays == [date(2026, 12, 25)]

    def test_get_settings_caches(self, monkeypatch):
        """get_settings returns one instance until reloaded."""
        first = get_settings()
        monkeypatch.setenv("CONDUIT_API_PORT", "9000")
        assert get_settings() is first
        reloaded = get_settings(_force_reload=True)
        assert reloaded.api_port == 9000


class TestValidation:
    """Invalid configuration is rejected."""

    def test_negative_retries(self):
        """max_retries must be non-negative."""
        with pytest.raises(ValidationError):
            ConduitSettings(retry_max_retries=-1)

    def test_initial_delay_above_max(self):
        """Initial delay may not exceed the cap."""
        with pytest.raises(ValidationError):
            ConduitSettings(retry_initial_delay_seconds=10, retry_max_delay_seconds=5)

    def test_poll_interval_bound(self):
        """Monitor poll interval is at most five seconds."""
        with pytest.raises(ValidationError):
            ConduitSettings(monitor_poll_interval_seconds=6)

    def test_log_format(self):
        """Only json and console formats exist."""
        with pytest.raises(ValidationError):
            ConduitSettings(log_format="xml")

    def test_jitter_bounds(self):
        """Jitter is a fraction below one."""
        with pytest.raises(ValidationError):
            ConduitSettings(retry_jitter=1.0)
