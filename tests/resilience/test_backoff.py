"""Tests for retry policies and exponential backoff."""

from __future__ import annotations

import random

import pytest

from conduit.core.errors import ErrorKind
from conduit.resilience.models import BreakerPolicy, RetryPolicy
from conduit.resilience.retry import ExponentialBackoff


class TestRetryPolicy:
    """Retryable kinds and construction."""

    def test_default_retryable_kinds(self):
        """Transient-ish kinds retry; validation and permanent never do."""
        policy = RetryPolicy()
        for kind in (ErrorKind.TRANSIENT, ErrorKind.TIMEOUT, ErrorKind.RATE_LIMIT, ErrorKind.UNKNOWN):
            assert policy.allows(kind)
        for kind in (ErrorKind.VALIDATION, ErrorKind.PERMANENT):
            assert not policy.allows(kind)

    def test_no_retry_wins(self):
        """A kind in both lists does not retry."""
        policy = RetryPolicy(retry_on=frozenset({ErrorKind.TRANSIENT}), no_retry=frozenset({ErrorKind.TRANSIENT}))
        assert not policy.allows(ErrorKind.TRANSIENT)

    def test_from_dict_milliseconds(self):
        """Millisecond keys are accepted."""
        policy = RetryPolicy.from_dict({"max_retries": 5, "initial_delay_ms": 250, "max_delay_ms": 10_000})
        assert policy.max_retries == 5
        assert policy.initial_delay_seconds == 0.25
        assert policy.max_delay_seconds == 10.0

    def test_from_dict_kinds(self):
        """Kind lists parse from strings."""
        policy = RetryPolicy.from_dict({"retry_on": ["external_service"], "no_retry": []})
        assert policy.allows(ErrorKind.EXTERNAL_SERVICE)
        assert not policy.allows(ErrorKind.TRANSIENT)
        assert RetryPolicy.from_dict(policy.to_dict()) == policy

    def test_from_settings(self, settings):
        """Settings provide the global default policy."""
        policy = RetryPolicy.from_settings(settings)
        assert policy.max_retries == settings.retry_max_retries
        assert policy.initial_delay_seconds == settings.retry_initial_delay_seconds

    def test_breaker_policy_from_dict(self):
        """Breaker thresholds parse from a mapping."""
        policy = BreakerPolicy.from_dict({"failure_threshold": 2, "half_open_policy": "threshold"})
        assert policy.failure_threshold == 2
        assert policy.half_open_policy.value == "threshold"


class TestExponentialBackoff:
    """Delay schedule."""

    def test_exponential_growth(self):
        """Delays double until the cap."""
        backoff = ExponentialBackoff(RetryPolicy(initial_delay_seconds=5, max_delay_seconds=300, jitter=0))
        assert [backoff.next_delay(n) for n in range(8)] == [5, 10, 20, 40, 80, 160, 300, 300]

    def test_base_delay_monotonic(self):
        """Un-jittered delays never decrease."""
        backoff = ExponentialBackoff(RetryPolicy(initial_delay_seconds=1, multiplier=3, max_delay_seconds=50))
        delays = [backoff.base_delay(n) for n in range(10)]
        assert delays == sorted(delays)

    def test_jitter_bounds(self):
        """Jittered delays stay within ±jitter and under the cap."""
        policy = RetryPolicy(initial_delay_seconds=10, max_delay_seconds=12, jitter=0.1)
        backoff = ExponentialBackoff(policy, rng=random.Random(42))
        for _ in range(200):
            delay = backoff.next_delay(0)
            assert 9.0 <= delay <= 11.0
        for _ in range(200):
            assert backoff.next_delay(1) <= 12

    def test_retry_after_floor(self):
        """A server Retry-After raises the delay, capped at max."""
        backoff = ExponentialBackoff(RetryPolicy(initial_delay_seconds=1, max_delay_seconds=60, jitter=0))
        assert backoff.next_delay(0, retry_after=30) == 30
        assert backoff.next_delay(0, retry_after=600) == 60

    @pytest.mark.parametrize(
        "retry_count,kind,expected",
        [
            (0, ErrorKind.TRANSIENT, True),
            (2, ErrorKind.TRANSIENT, True),
            (3, ErrorKind.TRANSIENT, False),
            (0, ErrorKind.VALIDATION, False),
        ],
    )
    def test_should_retry(self, retry_count, kind, expected):
        """Retries stop at max_retries or for non-retryable kinds."""
        backoff = ExponentialBackoff(RetryPolicy(max_retries=3))
        assert backoff.should_retry(retry_count, kind) is expected
