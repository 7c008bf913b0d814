"""Workflow and execution endpoints.

Endpoints:
    POST /workflows                                  Register a workflow definition
    GET  /workflows                                  List registered workflows
    POST /workflows/{id}/execute                     Start an execution (202)
    GET  /executions                                 List executions
    GET  /executions/{id}                            Execution status
    POST /executions/{id}/cancel                     Cancel
    POST /executions/{id}/steps/{step_id}/signal     Resume a waiting step
    POST /executions/{id}/compensate                 Run compensating actions
    POST /events                                     Publish a domain event
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Query

from conduit.api.deps import Runtime
from conduit.api.schemas.common import ListResponse, SuccessResponse
from conduit.api.schemas.requests import DomainEventRequest, ExecuteRequest, SignalRequest
from conduit.execution.models import ExecutionOptions, ExecutionStatus

router = APIRouter(tags=["executions"])


@router.post("/workflows", status_code=201, response_model=SuccessResponse[dict[str, Any]])
async def register_workflow(runtime: Runtime, definition: dict[str, Any] = Body(...)):
    workflow = runtime.register_workflow(definition)
    return SuccessResponse(data=workflow.to_dict())


@router.get("/workflows", response_model=ListResponse[dict[str, Any]])
async def list_workflows(runtime: Runtime):
    workflows = runtime.registry.list()
    return ListResponse(data=[w.to_dict() for w in workflows], total=len(workflows))


@router.post("/workflows/{workflow_id}/execute", status_code=202, response_model=SuccessResponse[dict[str, Any]])
async def execute_workflow(workflow_id: str, runtime: Runtime, body: ExecuteRequest | None = None):
    body = body or ExecuteRequest()
    options = ExecutionOptions(
        priority=body.priority,
        idempotency_key=body.idempotency_key,
        timeout_seconds=body.timeout_seconds,
    )
    execution_id = await runtime.execute(workflow_id, body.input, options)
    return SuccessResponse(data={"execution_id": execution_id, "status": "pending"})


@router.get("/executions", response_model=ListResponse[dict[str, Any]])
async def list_executions(
    runtime: Runtime,
    workflow_id: str | None = Query(None),
    status: ExecutionStatus | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
):
    executions = runtime.engine.list_executions(workflow_id=workflow_id, status=status, limit=limit)
    return ListResponse(data=[e.status_snapshot() for e in executions], total=len(executions))


@router.get("/executions/{execution_id}", response_model=SuccessResponse[dict[str, Any]])
async def get_execution(execution_id: str, runtime: Runtime):
    return SuccessResponse(data=runtime.get_execution_status(execution_id))


@router.post("/executions/{execution_id}/cancel", response_model=SuccessResponse[dict[str, Any]])
async def cancel_execution(execution_id: str, runtime: Runtime):
    return SuccessResponse(data=await runtime.cancel(execution_id))


@router.post("/executions/{execution_id}/steps/{step_id}/signal", response_model=SuccessResponse[dict[str, Any]])
async def signal_step(execution_id: str, step_id: str, runtime: Runtime, body: SignalRequest | None = None):
    payload = body.payload if body else None
    return SuccessResponse(data=await runtime.signal(execution_id, step_id, payload))


@router.post("/executions/{execution_id}/compensate", response_model=SuccessResponse[dict[str, Any]])
async def compensate_execution(execution_id: str, runtime: Runtime):
    report = await runtime.compensate(execution_id)
    return SuccessResponse(data=report.to_dict())


@router.post("/events", status_code=202, response_model=SuccessResponse[dict[str, Any]])
async def publish_domain_event(body: DomainEventRequest, runtime: Runtime):
    execution_ids = await runtime.publish_domain_event(body.event_type, body.payload)
    return SuccessResponse(data={"execution_ids": execution_ids})
