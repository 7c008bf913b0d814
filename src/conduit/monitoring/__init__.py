"""Live execution monitoring and alert rules."""

from .alerts import AlertEvaluator
from .models import (
    AlertCondition,
    AlertEvent,
    AlertRule,
    AlertSeverity,
    AlertStatus,
    ConsecutiveFailuresCondition,
    ExecutionFailedCondition,
    ExecutionView,
    HighErrorRateCondition,
    QueueBacklogCondition,
    QueueSnapshot,
    SlowExecutionCondition,
    condition_from_dict,
)
from .monitor import ExecutionMonitor
from .rolling import RollingWindow, WorkflowStats

__all__ = [
    "AlertCondition",
    "AlertEvaluator",
    "AlertEvent",
    "AlertRule",
    "AlertSeverity",
    "AlertStatus",
    "ConsecutiveFailuresCondition",
    "ExecutionFailedCondition",
    "ExecutionMonitor",
    "ExecutionView",
    "HighErrorRateCondition",
    "QueueBacklogCondition",
    "QueueSnapshot",
    "RollingWindow",
    "SlowExecutionCondition",
    "WorkflowStats",
    "condition_from_dict",
]
