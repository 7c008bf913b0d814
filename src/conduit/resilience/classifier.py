"""
Error classification.

``classify(error)`` is a pure, total function from an exception to an
:class:`~conduit.core.errors.ErrorKind`. Rules are checked in priority
order and the first match wins:

    1. explicit kind      ConduitError subclasses declare their kind
    2. timeout            TimeoutError, 408/504, "timed out"
    3. rate_limit         429, "rate limit", "too many requests"
    4. authorization      401/403, PermissionError, "unauthorized"
    5. permanent          404/410, FileNotFoundError, LookupError
    6. validation         ValueError/TypeError, 400/422, "invalid"
    7. permanent          "not found", "does not exist"
    8. transient          ConnectionError, 502/503, "connection"
    9. external_service   other 5xx, "upstream"
   10. unknown            catch-all

Timeout signals are checked before generic network signals and "not
found" before generic transient ones, so a ``ConnectionError("read timed
out")`` is a timeout and an HTTP 404 is permanent.

Tags:
    conduit-core, resilience, error-classification
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from conduit.core.errors import ConduitError, ErrorKind


@dataclass(frozen=True)
class Classification:
    kind: ErrorKind
    rule: str
    http_status: int | None = None
    retry_after: float | None = None


_TIMEOUT_PATTERN = re.compile(r"timed?\s*out|timeout|deadline exceeded", re.IGNORECASE)
_RATE_LIMIT_PATTERN = re.compile(r"rate.?limit|too many requests|throttl", re.IGNORECASE)
_AUTH_PATTERN = re.compile(r"unauthori[sz]ed|forbidden|permission denied|invalid token|expired token", re.IGNORECASE)
_VALIDATION_PATTERN = re.compile(r"invalid|validation|malformed|schema", re.IGNORECASE)
_NOT_FOUND_PATTERN = re.compile(r"not found|does not exist|no such|gone", re.IGNORECASE)
_TRANSIENT_PATTERN = re.compile(
    r"connection|unavailable|network|temporar|reset by peer|try again", re.IGNORECASE
)
_EXTERNAL_PATTERN = re.compile(r"upstream|bad gateway|internal server error|service error", re.IGNORECASE)


def http_status_of(error: BaseException) -> int | None:
    """Best-effort HTTP status from an exception.

    Looks at ``error.status_code``, ``error.status``, ``error.code`` (as
    raised by ``urllib.error.HTTPError``), ``error.response.status_code``
    and a ConduitError's context.
    """
    if isinstance(error, ConduitError) and error.context.http_status is not None:
        return error.context.http_status
    for attr in ("status_code", "status", "code"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
    response = getattr(error, "response", None)
    if response is not None:
        value = getattr(response, "status_code", None)
        if isinstance(value, int):
            return value
    return None


def retry_after_of(error: BaseException) -> float | None:
    if isinstance(error, ConduitError) and error.retry_after is not None:
        return error.retry_after
    headers = getattr(error, "headers", None)
    if headers is None:
        response = getattr(error, "response", None)
        headers = getattr(response, "headers", None)
    if headers is not None:
        value = headers.get("Retry-After") if hasattr(headers, "get") else None
        if value is not None:
            try:
                return float(value)
            except (TypeError, ValueError):
                return None
    return None


def classify(error: BaseException) -> Classification:
    """Classify ``error``; never raises."""
    status = http_status_of(error)
    retry_after = retry_after_of(error)
    message = str(error)

    def result(kind: ErrorKind, rule: str) -> Classification:
        return Classification(kind=kind, rule=rule, http_status=status, retry_after=retry_after)

    if isinstance(error, ConduitError) and error.kind != ErrorKind.UNKNOWN:
        return result(error.kind, "explicit")

    if isinstance(error, TimeoutError) or status in (408, 504) or _TIMEOUT_PATTERN.search(message):
        return result(ErrorKind.TIMEOUT, "timeout")

    if status == 429 or _RATE_LIMIT_PATTERN.search(message):
        return result(ErrorKind.RATE_LIMIT, "rate_limit")

    if isinstance(error, PermissionError) or status in (401, 403) or _AUTH_PATTERN.search(message):
        return result(ErrorKind.AUTHORIZATION, "authorization")

    if status in (404, 410) or isinstance(error, (FileNotFoundError, LookupError)):
        return result(ErrorKind.PERMANENT, "not_found")

    if isinstance(error, (ValueError, TypeError)) or status in (400, 422) or _VALIDATION_PATTERN.search(message):
        return result(ErrorKind.VALIDATION, "validation")

    if _NOT_FOUND_PATTERN.search(message):
        return result(ErrorKind.PERMANENT, "not_found")

    if isinstance(error, ConnectionError) or status in (502, 503) or _TRANSIENT_PATTERN.search(message):
        return result(ErrorKind.TRANSIENT, "transient")

    if (status is not None and status >= 500) or _EXTERNAL_PATTERN.search(message):
        return result(ErrorKind.EXTERNAL_SERVICE, "external_service")

    return result(ErrorKind.UNKNOWN, "unknown")


def classify_kind(error: BaseException) -> ErrorKind:
    return classify(error).kind


__all__ = ["Classification", "classify", "classify_kind", "http_status_of", "retry_after_of"]
