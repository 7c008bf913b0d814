"""
Live update stream over Server-Sent Events.

Endpoints:
    GET /events/stream?workflow_id=&execution_id=&types=

Manifesto:
    A dashboard watching one execution should see every status change
    without polling. Each connection gets its own bounded stream on the
    event bus; a slow reader loses its oldest events, never blocks the
    engine.

Tags:
    conduit-core, api, events, streaming
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator

from fastapi import APIRouter, Query, Request
from fastapi.responses import StreamingResponse

from conduit.api.deps import Runtime, Settings
from conduit.core.events import EventStream
from conduit.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/events", tags=["events"])


def _frame(data: dict) -> str:
    return f"data: {json.dumps(data, default=str)}\n\n"


async def _generate(
    stream: EventStream, request: Request, heartbeat: float, types: list[str] | None
) -> AsyncIterator[str]:
    try:
        yield _frame({"event_type": "connected", "message": "stream connected"})
        while True:
            if await request.is_disconnected():
                break
            event = await stream.get(timeout=heartbeat)
            if event is None:
                yield ": heartbeat\n\n"
                continue
            if types and not any(event.matches(t) for t in types):
                continue
            yield _frame(event.to_dict())
    except asyncio.CancelledError:
        logger.debug("event_stream_cancelled")
        raise
    finally:
        await stream.close()


@router.get("/stream")
async def event_stream(
    request: Request,
    runtime: Runtime,
    settings: Settings,
    workflow_id: str | None = Query(None, description="Only events for this workflow"),
    execution_id: str | None = Query(None, description="Only events for this execution"),
    types: str | None = Query(None, description="Comma-separated event type patterns (e.g. 'execution.*,step.*')"),
) -> StreamingResponse:
    """Stream execution, step, alert and dead-letter events as they happen."""
    stream = await runtime.subscribe(workflow_id=workflow_id, execution_id=execution_id)
    patterns = [t.strip() for t in types.split(",") if t.strip()] if types else None
    return StreamingResponse(
        _generate(stream, request, settings.sse_heartbeat_seconds, patterns),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
