"""Execution engine: executions, step executions and the step executor port."""

from .context import StepContext
from .engine import ExecutionEngine, QueueDepth
from .executor import RegistryStepExecutor, StepExecutor, StepHandler
from .models import (
    Execution,
    ExecutionOptions,
    ExecutionPriority,
    ExecutionRequest,
    ExecutionStatus,
    StepExecution,
    StepStatus,
)

__all__ = [
    "Execution",
    "ExecutionEngine",
    "ExecutionOptions",
    "ExecutionPriority",
    "ExecutionRequest",
    "ExecutionStatus",
    "QueueDepth",
    "RegistryStepExecutor",
    "StepContext",
    "StepExecution",
    "StepExecutor",
    "StepHandler",
    "StepStatus",
]
