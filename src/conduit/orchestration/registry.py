"""Workflow registry.

Workflows live in the ``workflows`` table. Registering a workflow whose
graph differs from one already referenced by an execution raises
:class:`~conduit.core.errors.WorkflowImmutableError`; callers register the
edit under a new id or version instead. Status changes remain allowed.
"""

from __future__ import annotations

from conduit.core.errors import NotFoundError, WorkflowImmutableError
from conduit.core.logging import get_logger
from conduit.core.store import InMemoryStore
from conduit.core.timestamps import Clock, utc_now

from .workflow import Workflow, WorkflowStatus

logger = get_logger(__name__)


class WorkflowRegistry:
    def __init__(self, store: InMemoryStore, clock: Clock = utc_now) -> None:
        self._store = store
        self._clock = clock

    def register(self, workflow: Workflow) -> Workflow:
        existing: Workflow | None = self._store.workflows.get(workflow.id)
        if existing is not None:
            if existing.referenced and existing.to_dict() | {"status": None} != workflow.to_dict() | {"status": None}:
                raise WorkflowImmutableError(
                    f"Workflow '{workflow.id}' is referenced by an execution; register a new version instead"
                )
            workflow.referenced = existing.referenced
            workflow.created_at = existing.created_at
            self._store.workflows.put(workflow)
            logger.info("workflow_updated", workflow_id=workflow.id, version=workflow.version)
            return workflow
        workflow.created_at = self._clock()
        self._store.workflows.insert(workflow)
        logger.info("workflow_registered", workflow_id=workflow.id, steps=len(workflow.steps))
        return workflow

    def get(self, workflow_id: str, organization_id: str | None = None) -> Workflow:
        workflow = self._store.workflows.get(workflow_id, organization_id)
        if workflow is None:
            raise NotFoundError(f"Workflow {workflow_id} not found")
        return workflow

    def set_status(self, workflow_id: str, status: WorkflowStatus) -> Workflow:
        workflow = self.get(workflow_id)
        workflow.transition(status)
        logger.info("workflow_status_changed", workflow_id=workflow_id, status=status.value)
        return workflow

    def mark_referenced(self, workflow: Workflow) -> None:
        workflow.referenced = True

    def list(self, organization_id: str | None = None) -> list[Workflow]:
        return self._store.workflows.find(organization_id=organization_id)
