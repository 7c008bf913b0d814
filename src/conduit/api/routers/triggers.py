"""Trigger management endpoints.

Endpoints:
    POST   /triggers                 Create a trigger
    GET    /triggers                 List triggers (``workflow_id``, ``type`` filters)
    GET    /triggers/{id}            Get one trigger (secrets redacted)
    PUT    /triggers/{id}            Update name, config or active flag (PATCH also accepted)
    DELETE /triggers/{id}            Delete a trigger (audit rows are kept)
    POST   /triggers/{id}/test       Preview what the trigger would do
    POST   /triggers/{id}/fire       Fire a manual trigger
    GET    /triggers/{id}/schedule   Schedule state of a scheduled trigger
    POST   /triggers/{id}/schedule/pause | resume
    GET    /triggers/{id}/schedule/runs   fired, missed and skipped runs
    GET    /triggers/{id}/webhook-logs
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query, Response

from conduit.api.deps import Runtime
from conduit.api.schemas.common import ListResponse, SuccessResponse
from conduit.api.schemas.requests import (
    TriggerCreateRequest,
    TriggerFireRequest,
    TriggerTestRequest,
    TriggerUpdateRequest,
)
from conduit.core.errors import NotFoundError
from conduit.triggers.models import TriggerType

router = APIRouter(prefix="/triggers", tags=["triggers"])


@router.post("", status_code=201, response_model=SuccessResponse[dict[str, Any]])
async def create_trigger(body: TriggerCreateRequest, runtime: Runtime):
    trigger = runtime.create_trigger(body.workflow_id, body.name, body.type, body.config, is_active=body.is_active)
    return SuccessResponse(data=trigger.to_dict())


@router.get("", response_model=ListResponse[dict[str, Any]])
async def list_triggers(
    runtime: Runtime,
    workflow_id: str | None = Query(None),
    type: TriggerType | None = Query(None),
):
    triggers = runtime.triggers.list_triggers(workflow_id=workflow_id, trigger_type=type)
    return ListResponse(data=[t.to_dict() for t in triggers], total=len(triggers))


@router.get("/{trigger_id}", response_model=SuccessResponse[dict[str, Any]])
async def get_trigger(trigger_id: str, runtime: Runtime):
    return SuccessResponse(data=runtime.triggers.get_trigger(trigger_id).to_dict())


@router.api_route("/{trigger_id}", methods=["PUT", "PATCH"], response_model=SuccessResponse[dict[str, Any]])
async def update_trigger(trigger_id: str, body: TriggerUpdateRequest, runtime: Runtime):
    trigger = runtime.update_trigger(trigger_id, name=body.name, config=body.config, is_active=body.is_active)
    return SuccessResponse(data=trigger.to_dict())


@router.delete("/{trigger_id}", status_code=204)
async def delete_trigger(trigger_id: str, runtime: Runtime) -> Response:
    runtime.delete_trigger(trigger_id)
    return Response(status_code=204)


@router.post("/{trigger_id}/test", response_model=SuccessResponse[dict[str, Any]])
async def test_trigger(trigger_id: str, runtime: Runtime, body: TriggerTestRequest | None = None):
    """Dry-run the trigger: resolved input and, for schedules, the next run times."""
    sample = body.sample_input if body else None
    return SuccessResponse(data=runtime.test_trigger(trigger_id, sample))


@router.post("/{trigger_id}/fire", status_code=202, response_model=SuccessResponse[dict[str, Any]])
async def fire_trigger(trigger_id: str, runtime: Runtime, body: TriggerFireRequest | None = None):
    body = body or TriggerFireRequest()
    execution_id = await runtime.fire_trigger(trigger_id, body.input, actor=body.actor)
    return SuccessResponse(data={"execution_id": execution_id})


@router.get("/{trigger_id}/schedule", response_model=SuccessResponse[dict[str, Any]])
async def get_schedule(trigger_id: str, runtime: Runtime):
    runtime.triggers.get_trigger(trigger_id)
    schedule = runtime.triggers.schedule_for(trigger_id)
    if schedule is None:
        raise NotFoundError(f"Trigger {trigger_id} has no schedule")
    return SuccessResponse(data=schedule.to_dict())


@router.get("/{trigger_id}/webhook-logs", response_model=ListResponse[dict[str, Any]])
async def webhook_logs(trigger_id: str, runtime: Runtime, limit: int = Query(100, ge=1, le=1000)):
    runtime.triggers.get_trigger(trigger_id)
    logs = runtime.triggers.webhook_logs(trigger_id, limit=limit)
    return ListResponse(data=[log.to_dict() for log in logs], total=len(logs))


@router.post("/{trigger_id}/schedule/pause", response_model=SuccessResponse[dict[str, Any]])
async def pause_schedule(trigger_id: str, runtime: Runtime):
    return SuccessResponse(data=runtime.triggers.pause_schedule(trigger_id).to_dict())


@router.post("/{trigger_id}/schedule/resume", response_model=SuccessResponse[dict[str, Any]])
async def resume_schedule(trigger_id: str, runtime: Runtime):
    """Resume from now; runs that fell due while paused are not replayed."""
    return SuccessResponse(data=runtime.triggers.resume_schedule(trigger_id).to_dict())


@router.get("/{trigger_id}/schedule/runs", response_model=ListResponse[dict[str, Any]])
async def schedule_runs(trigger_id: str, runtime: Runtime, limit: int = Query(50, ge=1, le=500)):
    runtime.triggers.get_trigger(trigger_id)
    schedule = runtime.triggers.schedule_for(trigger_id)
    if schedule is None:
        raise NotFoundError(f"Trigger {trigger_id} has no schedule")
    runs = runtime.scheduler.runs(schedule.id, limit=limit)
    return ListResponse(data=[run.to_dict() for run in runs], total=len(runs))
