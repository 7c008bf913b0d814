"""Correlation ids for HTTP requests.

A caller-supplied ``X-Request-ID`` is kept; otherwise one is minted.
The id is echoed on the response and bound into the structlog context,
so a webhook call, the trigger evaluation it causes and the execution
it submits all log under the same ``request_id``.
"""

from __future__ import annotations

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from conduit.core.logging import LogContext
from conduit.core.timestamps import new_id

REQUEST_ID_HEADER = "X-Request-ID"


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or new_id("req")
        request.state.request_id = request_id
        async with LogContext(request_id=request_id, http_path=request.url.path):
            response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
