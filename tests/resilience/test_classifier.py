"""Tests for error classification."""

from __future__ import annotations

import pytest

from conduit.core.errors import ErrorContext, ErrorKind, RateLimitedError, StepError
from conduit.resilience.classifier import classify, classify_kind, http_status_of, retry_after_of


class FakeResponse:
    def __init__(self, status_code: int, headers: dict[str, str] | None = None) -> None:
        self.status_code = status_code
        self.headers = headers or {}


class HTTPFailure(Exception):
    """Shaped like an httpx.HTTPStatusError: status lives on the response."""

    def __init__(self, status_code: int, headers: dict[str, str] | None = None, message: str = "request failed"):
        super().__init__(message)
        self.response = FakeResponse(status_code, headers)


class TestClassifyRules:
    """Priority-ordered rules."""

    @pytest.mark.parametrize(
        "error,kind,rule",
        [
            (TimeoutError(), ErrorKind.TIMEOUT, "timeout"),
            (ConnectionError("read timed out"), ErrorKind.TIMEOUT, "timeout"),
            (HTTPFailure(504), ErrorKind.TIMEOUT, "timeout"),
            (HTTPFailure(429), ErrorKind.RATE_LIMIT, "rate_limit"),
            (RuntimeError("Too Many Requests"), ErrorKind.RATE_LIMIT, "rate_limit"),
            (PermissionError("nope"), ErrorKind.AUTHORIZATION, "authorization"),
            (HTTPFailure(401), ErrorKind.AUTHORIZATION, "authorization"),
            (HTTPFailure(404), ErrorKind.PERMANENT, "not_found"),
            (KeyError("vendor_id"), ErrorKind.PERMANENT, "not_found"),
            (ValueError("bad amount"), ErrorKind.VALIDATION, "validation"),
            (HTTPFailure(422), ErrorKind.VALIDATION, "validation"),
            (RuntimeError("vendor does not exist"), ErrorKind.PERMANENT, "not_found"),
            (ConnectionError("refused"), ErrorKind.TRANSIENT, "transient"),
            (HTTPFailure(503), ErrorKind.TRANSIENT, "transient"),
            (HTTPFailure(500), ErrorKind.EXTERNAL_SERVICE, "external_service"),
            (RuntimeError("upstream blew up"), ErrorKind.EXTERNAL_SERVICE, "external_service"),
            (RuntimeError("something odd"), ErrorKind.UNKNOWN, "unknown"),
        ],
    )
    def test_rule(self, error, kind, rule):
        """Each signal maps to its kind."""
        result = classify(error)
        assert result.kind == kind
        assert result.rule == rule

    def test_explicit_kind_wins(self):
        """A ConduitError's declared kind overrides message heuristics."""
        result = classify(RateLimitedError("connection timed out"))
        assert result.kind == ErrorKind.RATE_LIMIT
        assert result.rule == "explicit"

    def test_unknown_kind_conduit_error_falls_through(self):
        """A ConduitError without a kind is classified by its signals."""
        assert classify_kind(StepError("request timed out")) == ErrorKind.TIMEOUT


class TestSignals:
    """Status and Retry-After extraction."""

    def test_status_from_attribute(self):
        """status_code attributes are read directly."""
        error = RuntimeError("x")
        error.status_code = 502
        assert http_status_of(error) == 502

    def test_status_from_context(self):
        """ConduitError context carries an http status."""
        error = StepError("x", context=ErrorContext(http_status=410))
        assert http_status_of(error) == 410
        assert classify_kind(error) == ErrorKind.PERMANENT

    def test_retry_after_header(self):
        """Retry-After on the response is surfaced."""
        result = classify(HTTPFailure(429, {"Retry-After": "30"}))
        assert result.retry_after == 30.0
        assert result.http_status == 429

    def test_retry_after_explicit(self):
        """Explicit retry_after on the error wins."""
        assert retry_after_of(RateLimitedError("slow", retry_after=7)) == 7

    def test_never_raises(self):
        """Odd exceptions classify without raising."""
        error = Exception()
        error.status_code = "not-an-int"
        assert classify_kind(error) == ErrorKind.UNKNOWN
