"""
Exception handlers turning ConduitError into problem+json responses.

Routers raise domain errors and never build error responses themselves;
the error's ``code`` alone decides the HTTP status.
"""

from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from conduit.api.schemas.common import ErrorDetail, ProblemDetail
from conduit.core.errors import ConduitError, ConfigurationError
from conduit.core.logging import get_logger

logger = get_logger(__name__)

# code -> (status, title)
_PROBLEMS: dict[str, tuple[int, str]] = {
    "VALIDATION_FAILED": (400, "Validation Failed"),
    "UNAUTHORIZED": (401, "Unauthorized"),
    "FORBIDDEN": (403, "Forbidden"),
    "NOT_FOUND": (404, "Not Found"),
    "CONFLICT": (409, "Conflict"),
    "NOT_CANCELLABLE": (409, "Execution Not Cancellable"),
    "QUOTA_EXCEEDED": (429, "Too Many Pending Executions"),
    "UNAVAILABLE": (503, "Service Unavailable"),
}
_INTERNAL = (500, "Internal Server Error")


def status_for_error_code(code: str) -> int:
    return _PROBLEMS.get(code, _INTERNAL)[0]


def problem_response(
    *,
    status: int,
    title: str,
    detail: str = "",
    instance: str = "",
    errors: list[dict[str, Any]] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    problem = ProblemDetail(
        title=title,
        status=status,
        detail=detail,
        instance=instance,
        errors=[ErrorDetail(**item) for item in errors or ()],
    )
    return JSONResponse(
        problem.model_dump(),
        status_code=status,
        headers=headers,
        media_type="application/problem+json",
    )


def _field_errors(exc: ConduitError) -> list[dict[str, Any]]:
    if not isinstance(exc, ConfigurationError):
        return []
    return [
        {"code": "INVALID", "field": item.get("field"), "message": item.get("message", "")}
        for item in exc.field_errors or ()
    ]


async def conduit_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, ConduitError)
    status, title = _PROBLEMS.get(exc.code, _INTERNAL)
    if status >= 500:
        logger.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
    retry = {"Retry-After": str(int(exc.retry_after))} if exc.retry_after is not None else None
    return problem_response(
        status=status,
        title=title,
        detail=exc.message,
        instance=request.url.path,
        errors=_field_errors(exc),
        headers=retry,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort: log with traceback, hide the message unless debugging."""
    logger.exception("unhandled_request_error", path=request.url.path, error=str(exc))
    debug = request.app.state.settings.debug
    return problem_response(
        status=500,
        title=_INTERNAL[1],
        detail=str(exc) if debug else "Unexpected server error; see logs for the request id.",
        instance=request.url.path,
    )
