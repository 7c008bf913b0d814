"""Workflow definitions and the workflow registry."""

from .registry import WorkflowRegistry
from .workflow import ExecutionMode, ExecutionPolicy, Step, StepKind, Workflow, WorkflowStatus

__all__ = [
    "ExecutionMode",
    "ExecutionPolicy",
    "Step",
    "StepKind",
    "Workflow",
    "WorkflowRegistry",
    "WorkflowStatus",
]
