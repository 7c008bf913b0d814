"""
Inbound webhook endpoint.

Every webhook trigger owns a unique token; external systems call
``/hooks/{token}`` with whatever method the trigger allows. Rejections
map to 401 (bad credentials), 403 (method or IP not allowed) and 404
(unknown or inactive token); accepted calls answer 202 immediately
while the execution runs in the background.
"""

from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from conduit.api.deps import Runtime
from conduit.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/hooks", tags=["webhooks"])


async def _read_body(request: Request) -> Any:
    """JSON bodies are decoded; anything else, malformed JSON included, stays text."""
    raw = await request.body()
    if not raw:
        return None
    text = raw.decode("utf-8", errors="replace")
    if "json" in request.headers.get("content-type", ""):
        try:
            return json.loads(text)
        except ValueError:
            logger.info("webhook_body_not_json", path=request.url.path, size=len(raw))
    return text


@router.api_route("/{token}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"], status_code=202)
async def receive_webhook(token: str, request: Request, runtime: Runtime) -> JSONResponse:
    """Receive a webhook call and start the bound workflow."""
    result = await runtime.process_webhook(
        token,
        method=request.method,
        headers=dict(request.headers),
        body=await _read_body(request),
        query=dict(request.query_params),
        source_ip=request.client.host if request.client else None,
    )
    return JSONResponse(status_code=202, content={"accepted": result.accepted, "execution_id": result.execution_id})
