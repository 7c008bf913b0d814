"""Alert rule and alert event endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query, Response

from conduit.api.deps import Runtime
from conduit.api.schemas.common import ListResponse, SuccessResponse
from conduit.api.schemas.requests import AlertActionRequest, AlertRuleCreateRequest
from conduit.monitoring.models import AlertStatus

router = APIRouter(prefix="/alerts", tags=["alerts"])


# ------------------------------------------------------------------ #
# Rules
# ------------------------------------------------------------------ #


@router.post("/rules", status_code=201, response_model=SuccessResponse[dict[str, Any]])
async def create_alert_rule(body: AlertRuleCreateRequest, runtime: Runtime):
    rule = runtime.create_alert_rule(
        body.name,
        body.condition,
        workflow_id=body.workflow_id,
        severity=body.severity.value,
        channel=body.channel,
        recipients=body.recipients,
        cooldown_seconds=body.cooldown_seconds,
    )
    return SuccessResponse(data=rule.to_dict())


@router.get("/rules", response_model=ListResponse[dict[str, Any]])
async def list_alert_rules(runtime: Runtime, workflow_id: str | None = Query(None)):
    rules = runtime.alerts.list_rules(workflow_id=workflow_id)
    return ListResponse(data=[r.to_dict() for r in rules], total=len(rules))


@router.delete("/rules/{rule_id}", status_code=204)
async def delete_alert_rule(rule_id: str, runtime: Runtime) -> Response:
    runtime.alerts.delete_rule(rule_id)
    return Response(status_code=204)


# ------------------------------------------------------------------ #
# Fired alerts
# ------------------------------------------------------------------ #


@router.get("", response_model=ListResponse[dict[str, Any]])
async def list_alerts(
    runtime: Runtime,
    status: AlertStatus | None = Query(None),
    workflow_id: str | None = Query(None),
):
    alerts = runtime.alerts.list_alerts(status=status, workflow_id=workflow_id)
    return ListResponse(data=[a.to_dict() for a in alerts], total=len(alerts))


@router.get("/{alert_id}", response_model=SuccessResponse[dict[str, Any]])
async def get_alert(alert_id: str, runtime: Runtime):
    return SuccessResponse(data=runtime.alerts.get_alert(alert_id).to_dict())


@router.post("/{alert_id}/acknowledge", response_model=SuccessResponse[dict[str, Any]])
async def acknowledge_alert(alert_id: str, runtime: Runtime, body: AlertActionRequest | None = None):
    alert = await runtime.acknowledge_alert(alert_id, body.by if body else None)
    return SuccessResponse(data=alert.to_dict())


@router.post("/{alert_id}/resolve", response_model=SuccessResponse[dict[str, Any]])
async def resolve_alert(alert_id: str, runtime: Runtime, body: AlertActionRequest | None = None):
    alert = await runtime.resolve_alert(alert_id, body.by if body else None)
    return SuccessResponse(data=alert.to_dict())
