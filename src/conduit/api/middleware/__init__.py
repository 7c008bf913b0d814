"""HTTP middleware and exception handlers."""

from .errors import conduit_error_handler, problem_response, status_for_error_code, unhandled_exception_handler
from .request_id import RequestIDMiddleware

__all__ = [
    "RequestIDMiddleware",
    "conduit_error_handler",
    "problem_response",
    "status_for_error_code",
    "unhandled_exception_handler",
]
