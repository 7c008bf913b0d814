"""Dead letter queue endpoints.

Endpoints:
    GET  /dlq                      Active entries, newest first
    GET  /dlq/stats                Entry counts by status
    GET  /dlq/{id}                 One entry with its execution snapshot
    POST /dlq/{id}/process         retry | retry_modified | skip | resolve
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query

from conduit.api.deps import Runtime
from conduit.api.schemas.common import ListResponse, SuccessResponse
from conduit.api.schemas.requests import DeadLetterProcessRequest
from conduit.deadletter.models import DeadLetterStatus

router = APIRouter(prefix="/dlq", tags=["dlq"])


@router.get("", response_model=ListResponse[dict[str, Any]])
async def list_dead_letters(
    runtime: Runtime,
    status: DeadLetterStatus | None = Query(None),
    workflow_id: str | None = Query(None),
    include_inactive: bool = Query(False),
    limit: int = Query(100, ge=1, le=1000),
):
    entries = runtime.dead_letters.list(
        status=status, workflow_id=workflow_id, include_inactive=include_inactive, limit=limit
    )
    return ListResponse(data=[e.to_dict() for e in entries], total=len(entries))


@router.get("/stats", response_model=SuccessResponse[dict[str, int]])
async def dead_letter_stats(runtime: Runtime):
    return SuccessResponse(data=runtime.dead_letters.stats())


@router.get("/{entry_id}", response_model=SuccessResponse[dict[str, Any]])
async def get_dead_letter(entry_id: str, runtime: Runtime):
    return SuccessResponse(data=runtime.dead_letters.get(entry_id).to_dict())


@router.post("/{entry_id}/process", response_model=SuccessResponse[dict[str, Any]])
async def process_dead_letter(entry_id: str, body: DeadLetterProcessRequest, runtime: Runtime):
    """Act on an entry. Processing an already resolved entry is a no-op."""
    result = await runtime.process_dead_letter(entry_id, body.action, body.modified_input, actor=body.actor)
    return SuccessResponse(data=result.to_dict())
