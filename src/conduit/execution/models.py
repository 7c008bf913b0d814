"""
Execution data model.

State machine per execution::

    pending ──► running ──► completed
       │          │  ▲
       │          ▼  │
       │        waiting        (timer, signal, open circuit)
       │          │
       └──────────┴──► failed | cancelled

Status is monotonic: a terminal execution never changes again. Manual
retry from the dead-letter queue creates a new Execution seeded with the
frozen outputs of the steps that had already completed.

Step state machine::

    pending ──► running ──► completed
                  │  ▲
                  ▼  │
               retrying / waiting
                  │
                  └──► failed | cancelled | skipped

Tags:
    conduit-core, execution, state-machine, DAG
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from conduit.core.errors import InvalidTransitionError


class ExecutionStatus(str, Enum):
    """Execution lifecycle status."""

    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED)


VALID_EXECUTION_TRANSITIONS: dict[ExecutionStatus, set[ExecutionStatus]] = {
    ExecutionStatus.PENDING: {ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED, ExecutionStatus.FAILED},
    ExecutionStatus.RUNNING: {
        ExecutionStatus.WAITING,
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    },
    ExecutionStatus.WAITING: {ExecutionStatus.RUNNING, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED},
    ExecutionStatus.COMPLETED: set(),
    ExecutionStatus.FAILED: set(),
    ExecutionStatus.CANCELLED: set(),
}


class StepStatus(str, Enum):
    """Step execution status."""

    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.CANCELLED, StepStatus.SKIPPED)


VALID_STEP_TRANSITIONS: dict[StepStatus, set[StepStatus]] = {
    StepStatus.PENDING: {
        StepStatus.RUNNING,
        StepStatus.WAITING,
        StepStatus.FAILED,
        StepStatus.CANCELLED,
        StepStatus.SKIPPED,
    },
    StepStatus.RUNNING: {
        StepStatus.COMPLETED,
        StepStatus.FAILED,
        StepStatus.RETRYING,
        StepStatus.WAITING,
        StepStatus.CANCELLED,
    },
    StepStatus.RETRYING: {StepStatus.RUNNING, StepStatus.WAITING, StepStatus.FAILED, StepStatus.CANCELLED},
    StepStatus.WAITING: {
        StepStatus.RUNNING,
        StepStatus.RETRYING,
        StepStatus.COMPLETED,
        StepStatus.FAILED,
        StepStatus.CANCELLED,
    },
    StepStatus.COMPLETED: set(),
    StepStatus.FAILED: set(),
    StepStatus.CANCELLED: set(),
    StepStatus.SKIPPED: set(),
}


class ExecutionPriority(str, Enum):
    """Queue priority; lower rank is dequeued first."""

    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    ExecutionPriority.CRITICAL: 0,
    ExecutionPriority.HIGH: 1,
    ExecutionPriority.NORMAL: 2,
    ExecutionPriority.LOW: 3,
}


@dataclass
class ExecutionOptions:
    """Optional knobs for ``execute``.

    Attributes:
        priority: Pending-queue ordering
        idempotency_key: Duplicate submissions return the existing execution
        trigger_id: Trigger that produced the request
        resume_from_step: Start at this step (dead-letter replay)
        prior_outputs: Frozen outputs of steps that are not re-run
        dead_letter_entry_id: Entry this execution replays
        timeout_seconds: Per-step timeout override for this execution
    """

    priority: ExecutionPriority = ExecutionPriority.NORMAL
    idempotency_key: str | None = None
    trigger_id: str | None = None
    resume_from_step: str | None = None
    prior_outputs: dict[str, Any] = field(default_factory=dict)
    dead_letter_entry_id: str | None = None
    timeout_seconds: float | None = None


@dataclass
class ExecutionRequest:
    """What a trigger evaluation produces and the engine accepts."""

    workflow_id: str
    input: dict[str, Any] = field(default_factory=dict)
    organization_id: str = "default"
    trigger_id: str | None = None
    trigger_type: str | None = None
    options: ExecutionOptions = field(default_factory=ExecutionOptions)
    source: dict[str, Any] = field(default_factory=dict)


@dataclass
class StepExecution:
    """One node's run within an execution."""

    step_id: str
    status: StepStatus = StepStatus.PENDING
    input: dict[str, Any] = field(default_factory=dict)
    output: Any = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    attempt: int = 0
    retry_count: int = 0
    circuit_waits: int = 0
    error_kind: str | None = None
    error_message: str | None = None
    next_retry_at: datetime | None = None
    waiting_reason: str | None = None
    restored: bool = False
    completion_seq: int | None = None
    in_critical_section: bool = False

    def transition(self, target: StepStatus) -> None:
        if target not in VALID_STEP_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.status.value, target.value, "StepStatus")
        self.status = target

    @property
    def duration_ms(self) -> int | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "status": self.status.value,
            "input": self.input,
            "output": self.output,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "attempt": self.attempt,
            "retry_count": self.retry_count,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "waiting_reason": self.waiting_reason,
            "restored": self.restored,
        }


@dataclass
class Execution:
    """One run of a workflow.

    ``steps`` holds one StepExecution per workflow step, in topological
    order. ``completion_order`` lists step ids as they completed, which is
    the order compensation reverses.
    """

    id: str
    organization_id: str
    workflow_id: str
    workflow_version: int
    status: ExecutionStatus = ExecutionStatus.PENDING
    input: dict[str, Any] = field(default_factory=dict)
    trigger_id: str | None = None
    trigger_type: str | None = None
    priority: ExecutionPriority = ExecutionPriority.NORMAL
    idempotency_key: str | None = None
    steps: dict[str, StepExecution] = field(default_factory=dict)
    completion_order: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    failed_step_id: str | None = None
    dead_letter_entry_id: str | None = None
    replay_of_entry_id: str | None = None
    resume_from_step: str | None = None
    cancel_requested: bool = False
    step_timeout_seconds: float | None = None
    waiting_reason: str | None = None
    version: int = 0

    def transition(self, target: ExecutionStatus) -> None:
        if target not in VALID_EXECUTION_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.status.value, target.value, "ExecutionStatus")
        self.status = target

    # -- derived views --------------------------------------------------------

    @property
    def progress(self) -> int:
        """Completed steps / total steps as an integer percentage."""
        if not self.steps:
            return 0
        done = sum(1 for s in self.steps.values() if s.status == StepStatus.COMPLETED)
        return round(done / len(self.steps) * 100)

    @property
    def running_steps(self) -> list[str]:
        active = (StepStatus.RUNNING, StepStatus.RETRYING, StepStatus.WAITING)
        return [s.step_id for s in self.steps.values() if s.status in active]

    @property
    def current_step(self) -> str | None:
        """Most recently started, not-yet-completed step.

        None when idle or when several steps are in flight; observers then
        use :attr:`running_steps`.
        """
        running = self.running_steps
        if len(running) != 1:
            return None
        return running[0]

    @property
    def retry_count(self) -> int:
        return sum(s.retry_count for s in self.steps.values())

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def outputs(self) -> dict[str, Any]:
        """Outputs of completed steps, keyed by step id."""
        return {
            sid: s.output for sid, s in self.steps.items() if s.status == StepStatus.COMPLETED
        }

    def status_snapshot(self) -> dict[str, Any]:
        """The ``get_execution_status`` view."""
        return {
            "execution_id": self.id,
            "workflow_id": self.workflow_id,
            "trigger_id": self.trigger_id,
            "status": self.status.value,
            "progress": self.progress,
            "current_step": self.current_step,
            "running_steps": self.running_steps,
            "retry_count": self.retry_count,
            "waiting_reason": self.waiting_reason,
            "error": self.error,
            "failed_step_id": self.failed_step_id,
            "dead_letter_entry_id": self.dead_letter_entry_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "steps": [s.to_dict() for s in self.steps.values()],
        }


__all__ = [
    "ExecutionStatus",
    "VALID_EXECUTION_TRANSITIONS",
    "StepStatus",
    "VALID_STEP_TRANSITIONS",
    "ExecutionPriority",
    "ExecutionOptions",
    "ExecutionRequest",
    "StepExecution",
    "Execution",
]
