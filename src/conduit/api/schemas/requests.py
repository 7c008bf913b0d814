"""Request bodies for the conduit HTTP API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from conduit.deadletter.models import DeadLetterAction
from conduit.execution.models import ExecutionPriority
from conduit.monitoring.models import AlertSeverity
from conduit.triggers.models import TriggerType


class TriggerCreateRequest(BaseModel):
    workflow_id: str = Field(..., description="Workflow the trigger starts")
    name: str = Field(..., description="Display name")
    type: TriggerType = Field(..., description="manual, scheduled, webhook, event, document, threshold, deadline")
    config: dict[str, Any] = Field(default_factory=dict, description="Type-specific configuration")
    is_active: bool = True


class TriggerUpdateRequest(BaseModel):
    name: str | None = None
    config: dict[str, Any] | None = None
    is_active: bool | None = None


class TriggerTestRequest(BaseModel):
    sample_input: dict[str, Any] | None = Field(default=None, description="Input to preview the trigger with")


class TriggerFireRequest(BaseModel):
    input: dict[str, Any] = Field(default_factory=dict)
    actor: str | None = None


class ExecuteRequest(BaseModel):
    """Body of ``POST /workflows/{id}/execute``."""

    input: dict[str, Any] = Field(default_factory=dict)
    priority: ExecutionPriority = ExecutionPriority.NORMAL
    idempotency_key: str | None = None
    timeout_seconds: float | None = Field(default=None, gt=0, description="Per-step timeout override")


class SignalRequest(BaseModel):
    payload: Any = None


class DomainEventRequest(BaseModel):
    event_type: str = Field(..., description="Dot-separated event type, e.g. document.uploaded")
    payload: dict[str, Any] = Field(default_factory=dict)


class DeadLetterProcessRequest(BaseModel):
    action: DeadLetterAction = Field(..., description="retry, retry_modified, skip or resolve")
    modified_input: dict[str, Any] | None = None
    actor: str | None = None


class AlertRuleCreateRequest(BaseModel):
    name: str
    condition: dict[str, Any] = Field(..., description='Tagged condition, e.g. {"type": "consecutive_failures", "count": 3}')
    workflow_id: str | None = Field(default=None, description="Null applies the rule to every workflow")
    severity: AlertSeverity = AlertSeverity.ERROR
    channel: str | None = None
    recipients: list[str] = Field(default_factory=list)
    cooldown_seconds: float | None = Field(default=None, ge=0)


class AlertActionRequest(BaseModel):
    by: str | None = None
