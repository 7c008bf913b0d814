"""
Dead-letter and compensation data model.

A :class:`DeadLetterEntry` owns a frozen copy of the failed execution's
context (original input, prior step outputs, completion order) so it
survives execution cleanup and never holds a live back-reference.

Compensating actions are a closed tagged union; each variant carries
only the fields it needs:

    HttpCallCompensation           outbound HTTP call
    DataMutationCompensation       named data-mutation handler
    NotificationCompensation       message through the notification port
    ManualInstructionCompensation  placeholder for a human

Tags:
    conduit-core, dead-letter, compensation, saga, audit
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from conduit.core.errors import ErrorKind, InvalidTransitionError, WorkflowDefinitionError

# =============================================================================
# DEAD-LETTER ENTRY
# =============================================================================


class DeadLetterStatus(str, Enum):
    """Lifecycle of a dead-letter entry."""

    PENDING = "pending"
    PROCESSING = "processing"
    RESOLVED = "resolved"
    EXPIRED = "expired"


VALID_DLQ_TRANSITIONS: dict[DeadLetterStatus, set[DeadLetterStatus]] = {
    DeadLetterStatus.PENDING: {DeadLetterStatus.PROCESSING, DeadLetterStatus.RESOLVED, DeadLetterStatus.EXPIRED},
    DeadLetterStatus.PROCESSING: {DeadLetterStatus.PENDING, DeadLetterStatus.RESOLVED, DeadLetterStatus.EXPIRED},
    DeadLetterStatus.RESOLVED: {DeadLetterStatus.EXPIRED},
    DeadLetterStatus.EXPIRED: set(),
}


class DeadLetterAction(str, Enum):
    """Manual actions on a dead-letter entry."""

    RETRY = "retry"
    RETRY_MODIFIED = "retry_modified"
    SKIP = "skip"
    RESOLVE = "resolve"


class ResolutionType(str, Enum):
    """How an entry left the active queue."""

    RETRIED = "retried"
    SKIPPED = "skipped"
    MANUAL = "manual"


@dataclass
class DeadLetterEntry:
    """A failed execution parked for manual handling.

    Attributes:
        error_id: The ExecutionError that exhausted its retries
        original_input: Execution input at the time of failure
        prior_outputs: Outputs of every step completed before the failure
        completed_steps: Step ids in completion order
        failed_step_id: Step that failed
        manual_retry_count: Number of retry / retry_modified actions
        retry_execution_ids: Executions created by manual retries
    """

    id: str
    organization_id: str
    execution_id: str
    error_id: str
    workflow_id: str
    failed_step_id: str
    error_kind: ErrorKind
    error_message: str
    original_input: dict[str, Any]
    prior_outputs: dict[str, Any]
    completed_steps: list[str]
    created_at: datetime
    expires_at: datetime
    trigger_id: str | None = None
    retry_count: int = 0
    status: DeadLetterStatus = DeadLetterStatus.PENDING
    manual_retry_count: int = 0
    retry_execution_ids: list[str] = field(default_factory=list)
    resolution_type: ResolutionType | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    notes: str | None = None
    version: int = 0

    def transition(self, target: DeadLetterStatus) -> None:
        if target not in VALID_DLQ_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.status.value, target.value, "DeadLetterStatus")
        self.status = target

    @property
    def is_active(self) -> bool:
        return self.status in (DeadLetterStatus.PENDING, DeadLetterStatus.PROCESSING)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "error_id": self.error_id,
            "workflow_id": self.workflow_id,
            "trigger_id": self.trigger_id,
            "failed_step_id": self.failed_step_id,
            "error_kind": self.error_kind.value,
            "error_message": self.error_message,
            "retry_count": self.retry_count,
            "status": self.status.value,
            "manual_retry_count": self.manual_retry_count,
            "retry_execution_ids": list(self.retry_execution_ids),
            "resolution_type": self.resolution_type.value if self.resolution_type else None,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolved_by": self.resolved_by,
        }


@dataclass(frozen=True)
class ProcessResult:
    """Outcome of ``process_dead_letter``."""

    entry_id: str
    action: DeadLetterAction
    status: DeadLetterStatus
    execution_id: str | None = None
    noop: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "action": self.action.value,
            "status": self.status.value,
            "execution_id": self.execution_id,
            "noop": self.noop,
        }


# =============================================================================
# COMPENSATING ACTIONS
# =============================================================================


@dataclass(frozen=True)
class HttpCallCompensation:
    url: str
    method: str = "POST"
    headers: dict[str, str] = field(default_factory=dict)
    body: dict[str, Any] | None = None
    timeout_seconds: float = 10.0


@dataclass(frozen=True)
class DataMutationCompensation:
    operation: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class NotificationCompensation:
    channel: str
    template: str
    recipients: tuple[str, ...] = ()
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ManualInstructionCompensation:
    instructions: str


CompensationAction = (
    HttpCallCompensation
    | DataMutationCompensation
    | NotificationCompensation
    | ManualInstructionCompensation
)


def compensation_from_dict(data: dict[str, Any]) -> CompensationAction:
    """Parse a ``{"type": ..., ...}`` mapping into a compensation variant."""
    kind = data.get("type")
    match kind:
        case "http_call":
            return HttpCallCompensation(
                url=data["url"],
                method=data.get("method", "POST"),
                headers=dict(data.get("headers", {})),
                body=data.get("body"),
                timeout_seconds=data.get("timeout_seconds", 10.0),
            )
        case "data_mutation":
            return DataMutationCompensation(operation=data["operation"], params=dict(data.get("params", {})))
        case "notification":
            return NotificationCompensation(
                channel=data["channel"],
                template=data["template"],
                recipients=tuple(data.get("recipients", ())),
                data=dict(data.get("data", {})),
            )
        case "manual":
            return ManualInstructionCompensation(instructions=data["instructions"])
        case _:
            raise WorkflowDefinitionError(f"Unknown compensation type: {kind!r}")


def compensation_to_dict(action: CompensationAction) -> dict[str, Any]:
    match action:
        case HttpCallCompensation():
            return {
                "type": "http_call",
                "url": action.url,
                "method": action.method,
                "headers": dict(action.headers),
                "body": action.body,
                "timeout_seconds": action.timeout_seconds,
            }
        case DataMutationCompensation():
            return {"type": "data_mutation", "operation": action.operation, "params": dict(action.params)}
        case NotificationCompensation():
            return {
                "type": "notification",
                "channel": action.channel,
                "template": action.template,
                "recipients": list(action.recipients),
                "data": dict(action.data),
            }
        case ManualInstructionCompensation():
            return {"type": "manual", "instructions": action.instructions}


def compensation_type(action: CompensationAction) -> str:
    return compensation_to_dict(action)["type"]


class CompensationStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    MANUAL_REQUIRED = "manual_required"


@dataclass
class CompensationResult:
    """Result of compensating one step."""

    step_id: str
    action_type: str
    status: CompensationStatus
    output: Any = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "action_type": self.action_type,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass
class CompensationReport:
    """Per-step results, in the order compensations ran."""

    execution_id: str
    failed_step_id: str | None
    results: list[CompensationResult] = field(default_factory=list)

    @property
    def all_succeeded(self) -> bool:
        return all(r.status == CompensationStatus.SUCCEEDED for r in self.results)

    @property
    def order(self) -> list[str]:
        return [r.step_id for r in self.results]

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "failed_step_id": self.failed_step_id,
            "all_succeeded": self.all_succeeded,
            "results": [r.to_dict() for r in self.results],
        }


__all__ = [
    "DeadLetterStatus",
    "VALID_DLQ_TRANSITIONS",
    "DeadLetterAction",
    "ResolutionType",
    "DeadLetterEntry",
    "ProcessResult",
    "HttpCallCompensation",
    "DataMutationCompensation",
    "NotificationCompensation",
    "ManualInstructionCompensation",
    "CompensationAction",
    "compensation_from_dict",
    "compensation_to_dict",
    "compensation_type",
    "CompensationStatus",
    "CompensationResult",
    "CompensationReport",
]
