"""Workflow -- a directed graph of steps.

Manifesto:
    The Workflow dataclass is the blueprint. It declares **what** runs and
    in what order, but never **how** (that is the ExecutionEngine's job).
    Once an execution references a workflow its graph is frozen.

ARCHITECTURE
────────────
::

    Workflow           ── id, status, steps, policies
      ├── steps[]        ── Step(id, kind, action, depends_on, ...)
      ├── execution_policy ─ sequential vs parallel, max_concurrency
      ├── retry_policy   ── workflow-level RetryPolicy (optional)
      └── breaker_policy ── workflow-level BreakerPolicy (optional)

    ExecutionEngine.submit(request) → Execution

Step kinds:
    - ``action``  calls the Step Executor with ``(step, input)``
    - ``wait``    sleeps ``wait_seconds``; the execution shows ``waiting``
    - ``signal``  parks until ``ConduitRuntime.signal(...)`` delivers input

Example::

    from conduit.orchestration.workflow import Step, Workflow

    workflow = Workflow(
        id="invoice-intake",
        name="Invoice intake",
        steps=[
            Step(id="extract", action="doc.extract"),
            Step(id="post", action="ledger.post", depends_on=("extract",)),
        ],
    )

Tags:
    conduit-core, orchestration, workflow, DAG, steps
"""

from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import yaml

from conduit.core.errors import InvalidTransitionError, WorkflowDefinitionError
from conduit.deadletter.models import CompensationAction, compensation_from_dict, compensation_to_dict
from conduit.resilience.models import BreakerPolicy, RetryPolicy


class WorkflowStatus(str, Enum):
    """Workflow lifecycle status."""

    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


VALID_WORKFLOW_TRANSITIONS: dict[WorkflowStatus, set[WorkflowStatus]] = {
    WorkflowStatus.DRAFT: {WorkflowStatus.ACTIVE, WorkflowStatus.ARCHIVED},
    WorkflowStatus.ACTIVE: {WorkflowStatus.PAUSED, WorkflowStatus.ARCHIVED},
    WorkflowStatus.PAUSED: {WorkflowStatus.ACTIVE, WorkflowStatus.ARCHIVED},
    WorkflowStatus.ARCHIVED: set(),
}


class ExecutionMode(str, Enum):
    """Workflow execution mode."""

    SEQUENTIAL = "sequential"  # one step at a time, topological order
    PARALLEL = "parallel"  # independent steps run concurrently


class StepKind(str, Enum):
    ACTION = "action"
    WAIT = "wait"
    SIGNAL = "signal"


@dataclass(frozen=True)
class ExecutionPolicy:
    """
    Controls how a workflow's steps are scheduled.

    Attributes:
        mode: Sequential (default) or parallel (DAG-based)
        max_concurrency: Max concurrently running steps (parallel mode only)
    """

    mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    max_concurrency: int = 4


@dataclass(frozen=True)
class Step:
    """
    One node of the workflow graph.

    Attributes:
        id: Unique step id within the workflow
        kind: action, wait or signal
        action: Step Executor action name (action steps)
        config: Opaque configuration handed to the executor
        depends_on: Step ids that must complete first
        timeout_seconds: Per-attempt timeout (None = settings default)
        retry_policy: Step-level retry policy (overrides the workflow's)
        breaker_policy: Step-level breaker thresholds
        compensation: Compensating action run on rollback
        wait_seconds: Duration of a wait step
        critical: Whole attempt runs inside a critical section
    """

    id: str
    kind: StepKind = StepKind.ACTION
    action: str | None = None
    config: dict[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()
    timeout_seconds: float | None = None
    retry_policy: RetryPolicy | None = None
    breaker_policy: BreakerPolicy | None = None
    compensation: CompensationAction | None = None
    wait_seconds: float = 0.0
    critical: bool = False

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"id": self.id, "kind": self.kind.value}
        if self.action:
            result["action"] = self.action
        if self.config:
            result["config"] = dict(self.config)
        if self.depends_on:
            result["depends_on"] = list(self.depends_on)
        if self.timeout_seconds is not None:
            result["timeout_seconds"] = self.timeout_seconds
        if self.retry_policy is not None:
            result["retry_policy"] = self.retry_policy.to_dict()
        if self.compensation is not None:
            result["compensation"] = compensation_to_dict(self.compensation)
        if self.kind == StepKind.WAIT:
            result["wait_seconds"] = self.wait_seconds
        if self.critical:
            result["critical"] = True
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Step:
        step_id = data.get("id") or data.get("name")
        if not step_id:
            raise WorkflowDefinitionError("Step is missing an id")
        try:
            kind = StepKind(data.get("kind", data.get("type", "action")))
        except ValueError as e:
            raise WorkflowDefinitionError(f"Step '{step_id}' has unknown kind: {data.get('kind')!r}") from e
        retry = data.get("retry_policy")
        breaker = data.get("breaker_policy")
        compensation = data.get("compensation")
        return cls(
            id=step_id,
            kind=kind,
            action=data.get("action"),
            config=dict(data.get("config", {})),
            depends_on=tuple(data.get("depends_on", ())),
            timeout_seconds=data.get("timeout_seconds"),
            retry_policy=RetryPolicy.from_dict(retry) if retry else None,
            breaker_policy=BreakerPolicy.from_dict(breaker) if breaker else None,
            compensation=compensation_from_dict(compensation) if compensation else None,
            wait_seconds=float(data.get("wait_seconds", 0.0)),
            critical=bool(data.get("critical", False)),
        )


@dataclass
class Workflow:
    """
    A workflow graph plus its policies.

    Attributes:
        id: Stable workflow id
        name: Human-readable name
        steps: Steps in declaration order
        status: draft / active / paused / archived
        version: Incremented by callers when they register an edited graph
        execution_policy: Sequential or parallel step scheduling
        retry_policy: Workflow-level retry policy
        breaker_policy: Workflow-level breaker thresholds
        organization_id: Tenant scope
    """

    id: str
    name: str
    steps: list[Step]
    status: WorkflowStatus = WorkflowStatus.ACTIVE
    version: int = 1
    description: str = ""
    execution_policy: ExecutionPolicy = field(default_factory=ExecutionPolicy)
    retry_policy: RetryPolicy | None = None
    breaker_policy: BreakerPolicy | None = None
    organization_id: str = "default"
    tags: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    referenced: bool = False

    def __post_init__(self) -> None:
        self.validate()

    # =========================================================================
    # Validation
    # =========================================================================

    def validate(self) -> None:
        if not self.steps:
            raise WorkflowDefinitionError(f"Workflow '{self.id}' has no steps")
        self._validate_steps()
        self._validate_dependencies()
        self._validate_no_cycles()

    def _validate_steps(self) -> None:
        seen: set[str] = set()
        for step in self.steps:
            if step.id in seen:
                raise WorkflowDefinitionError(f"Duplicate step id: {step.id}")
            seen.add(step.id)
            if step.kind == StepKind.ACTION and not step.action:
                raise WorkflowDefinitionError(f"Action step '{step.id}' has no action")
            if step.kind == StepKind.WAIT and step.wait_seconds < 0:
                raise WorkflowDefinitionError(f"Wait step '{step.id}' has a negative duration")

    def _validate_dependencies(self) -> None:
        step_ids = {s.id for s in self.steps}
        for step in self.steps:
            for dep in step.depends_on:
                if dep == step.id:
                    raise WorkflowDefinitionError(f"Step '{step.id}' depends on itself")
                if dep not in step_ids:
                    raise WorkflowDefinitionError(f"Step '{step.id}' depends on unknown step: '{dep}'")

    def _validate_no_cycles(self) -> None:
        """Kahn's algorithm; any node left with in-degree > 0 is on a cycle."""
        if len(self.topological_order()) != len(self.steps):
            in_cycle = sorted(set(self.step_ids()) - set(self.topological_order()))
            raise WorkflowDefinitionError(f"Dependency cycle detected among steps: {in_cycle}")

    # =========================================================================
    # Graph
    # =========================================================================

    def dependency_graph(self) -> dict[str, list[str]]:
        """Return adjacency list (dep -> dependents)."""
        graph: dict[str, list[str]] = defaultdict(list)
        for step in self.steps:
            for dep in step.depends_on:
                graph[dep].append(step.id)
        return dict(graph)

    def topological_order(self) -> list[str]:
        """Steps in topological order, ties broken by declaration order."""
        in_degree: dict[str, int] = {s.id: len(s.depends_on) for s in self.steps}
        adjacency = self.dependency_graph()
        queue: deque[str] = deque(s.id for s in self.steps if in_degree[s.id] == 0)
        result: list[str] = []
        while queue:
            node = queue.popleft()
            result.append(node)
            for neighbor in adjacency.get(node, []):
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    queue.append(neighbor)
        return result

    def upstream_of(self, step_id: str) -> set[str]:
        """All transitive dependencies of ``step_id``."""
        by_id = {s.id: s for s in self.steps}
        seen: set[str] = set()
        stack = list(by_id[step_id].depends_on)
        while stack:
            dep = stack.pop()
            if dep not in seen:
                seen.add(dep)
                stack.extend(by_id[dep].depends_on)
        return seen

    def effective_dependencies(self, step_id: str) -> tuple[str, ...]:
        """Dependencies the engine waits on.

        In sequential mode each step also waits for its predecessor in
        topological order, so steps run one at a time.
        """
        step = self.require_step(step_id)
        if self.execution_policy.mode == ExecutionMode.PARALLEL:
            return step.depends_on
        order = self.topological_order()
        index = order.index(step_id)
        if index == 0:
            return step.depends_on
        return tuple(dict.fromkeys((*step.depends_on, order[index - 1])))

    # =========================================================================
    # Accessors
    # =========================================================================

    def get_step(self, step_id: str) -> Step | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def require_step(self, step_id: str) -> Step:
        step = self.get_step(step_id)
        if step is None:
            raise WorkflowDefinitionError(f"Workflow '{self.id}' has no step '{step_id}'")
        return step

    def step_ids(self) -> list[str]:
        return [s.id for s in self.steps]

    def transition(self, target: WorkflowStatus) -> None:
        if target not in VALID_WORKFLOW_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.status.value, target.value, "WorkflowStatus")
        self.status = target

    @property
    def is_runnable(self) -> bool:
        return self.status == WorkflowStatus.ACTIVE

    # =========================================================================
    # Serialization
    # =========================================================================

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "version": self.version,
            "steps": [s.to_dict() for s in self.steps],
            "execution_policy": {
                "mode": self.execution_policy.mode.value,
                "max_concurrency": self.execution_policy.max_concurrency,
            },
        }
        if self.description:
            result["description"] = self.description
        if self.retry_policy is not None:
            result["retry_policy"] = self.retry_policy.to_dict()
        if self.tags:
            result["tags"] = list(self.tags)
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any], organization_id: str = "default") -> Workflow:
        """Deserialize from a mapping (``id``, ``name``, ``steps`` ...)."""
        if not data.get("id"):
            raise WorkflowDefinitionError("Workflow definition is missing 'id'")
        policy_data = data.get("execution_policy", {})
        try:
            execution_policy = ExecutionPolicy(
                mode=ExecutionMode(policy_data.get("mode", "sequential")),
                max_concurrency=policy_data.get("max_concurrency", 4),
            )
            status = WorkflowStatus(data.get("status", "active"))
        except ValueError as e:
            raise WorkflowDefinitionError(str(e)) from e
        retry = data.get("retry_policy")
        breaker = data.get("breaker_policy")
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            steps=[Step.from_dict(sd) for sd in data.get("steps", [])],
            status=status,
            version=data.get("version", 1),
            description=data.get("description", ""),
            execution_policy=execution_policy,
            retry_policy=RetryPolicy.from_dict(retry) if retry else None,
            breaker_policy=BreakerPolicy.from_dict(breaker) if breaker else None,
            organization_id=data.get("organization_id", organization_id),
            tags=list(data.get("tags", [])),
        )

    @classmethod
    def from_yaml(cls, text: str, organization_id: str = "default") -> Workflow:
        """Load a workflow from a YAML document.

        Accepts either a bare mapping or a ``kind: Workflow`` document with
        the definition under ``spec``.
        """
        doc = yaml.safe_load(text)
        if not isinstance(doc, dict):
            raise WorkflowDefinitionError("Workflow YAML must be a mapping")
        if doc.get("kind") == "Workflow":
            data = dict(doc.get("spec", {}))
            metadata = doc.get("metadata", {})
            data.setdefault("id", metadata.get("id", metadata.get("name")))
            data.setdefault("name", metadata.get("name"))
            doc = data
        return cls.from_dict(doc, organization_id=organization_id)

    def to_yaml(self) -> str:
        doc = {
            "apiVersion": "conduit/v1",
            "kind": "Workflow",
            "metadata": {"id": self.id, "name": self.name},
            "spec": {k: v for k, v in self.to_dict().items() if k not in ("id", "name")},
        }
        return yaml.safe_dump(doc, default_flow_style=False, sort_keys=False)

    def __repr__(self) -> str:
        return f"Workflow({self.id!r}, steps={len(self.steps)}, status={self.status.value})"


__all__ = [
    "WorkflowStatus",
    "VALID_WORKFLOW_TRANSITIONS",
    "ExecutionMode",
    "StepKind",
    "ExecutionPolicy",
    "Step",
    "Workflow",
]
