"""
Monitoring and alerting data model.

An :class:`AlertRule` binds one condition to notification targets and a
cooldown. Conditions are a closed tagged union:

    ExecutionFailedCondition      any failed terminal status (optionally by error kind)
    ConsecutiveFailuresCondition  last N executions of a workflow all failed
    SlowExecutionCondition        completed execution ran longer than a threshold
    HighErrorRateCondition        failure ratio over a rolling window, min sample size
    QueueBacklogCondition         pending executions / oldest-pending age over a limit

An :class:`AlertEvent` is one firing of a rule, with acknowledge/resolve
state.

Tags:
    conduit-core, monitoring, alerts, data-model
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from conduit.core.errors import ConfigurationError, InvalidTransitionError


class AlertSeverity(str, Enum):
    """Alert severity levels, ordered."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return list(AlertSeverity).index(self)

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, AlertSeverity):
            return NotImplemented
        return self.rank >= other.rank


class AlertStatus(str, Enum):
    FIRING = "firing"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


VALID_ALERT_TRANSITIONS: dict[AlertStatus, set[AlertStatus]] = {
    AlertStatus.FIRING: {AlertStatus.ACKNOWLEDGED, AlertStatus.RESOLVED},
    AlertStatus.ACKNOWLEDGED: {AlertStatus.RESOLVED},
    AlertStatus.RESOLVED: set(),
}


# =============================================================================
# CONDITIONS
# =============================================================================


@dataclass(frozen=True)
class ExecutionFailedCondition:
    error_kinds: tuple[str, ...] = ()


@dataclass(frozen=True)
class ConsecutiveFailuresCondition:
    count: int = 3


@dataclass(frozen=True)
class SlowExecutionCondition:
    threshold_seconds: float


@dataclass(frozen=True)
class HighErrorRateCondition:
    threshold: float
    window_seconds: float = 3600.0
    min_samples: int = 10


@dataclass(frozen=True)
class QueueBacklogCondition:
    max_pending: int
    max_oldest_age_seconds: float | None = None


AlertCondition = (
    ExecutionFailedCondition
    | ConsecutiveFailuresCondition
    | SlowExecutionCondition
    | HighErrorRateCondition
    | QueueBacklogCondition
)


def condition_from_dict(data: dict[str, Any]) -> AlertCondition:
    """Parse ``{"type": ..., ...}`` into a condition, validating bounds.

    Raises:
        ConfigurationError: Unknown type, missing field or out-of-range value
    """
    kind = data.get("type")
    try:
        match kind:
            case "execution_failed":
                condition: AlertCondition = ExecutionFailedCondition(
                    error_kinds=tuple(data.get("error_kinds", ()))
                )
            case "consecutive_failures":
                condition = ConsecutiveFailuresCondition(count=int(data.get("count", 3)))
            case "slow_execution":
                condition = SlowExecutionCondition(threshold_seconds=float(data["threshold_seconds"]))
            case "high_error_rate":
                condition = HighErrorRateCondition(
                    threshold=float(data["threshold"]),
                    window_seconds=float(data.get("window_seconds", 3600.0)),
                    min_samples=int(data.get("min_samples", 10)),
                )
            case "queue_backlog":
                age = data.get("max_oldest_age_seconds")
                condition = QueueBacklogCondition(
                    max_pending=int(data["max_pending"]),
                    max_oldest_age_seconds=float(age) if age is not None else None,
                )
            case _:
                raise ConfigurationError(
                    f"Unknown alert condition type: {kind!r}",
                    field_errors=[{"field": "type", "message": "unknown condition type"}],
                )
    except KeyError as e:
        raise ConfigurationError(
            f"Alert condition '{kind}' is missing {e.args[0]!r}",
            field_errors=[{"field": str(e.args[0]), "message": "required"}],
        ) from e
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid alert condition '{kind}': {e}") from e
    _validate_condition(condition)
    return condition


def _validate_condition(condition: AlertCondition) -> None:
    errors: list[dict[str, str]] = []
    match condition:
        case ConsecutiveFailuresCondition(count=count) if count < 1:
            errors.append({"field": "count", "message": "must be >= 1"})
        case SlowExecutionCondition(threshold_seconds=t) if t <= 0:
            errors.append({"field": "threshold_seconds", "message": "must be > 0"})
        case HighErrorRateCondition():
            if not 0.0 < condition.threshold <= 1.0:
                errors.append({"field": "threshold", "message": "must be in (0, 1]"})
            if condition.window_seconds <= 0:
                errors.append({"field": "window_seconds", "message": "must be > 0"})
            if condition.min_samples < 1:
                errors.append({"field": "min_samples", "message": "must be >= 1"})
        case QueueBacklogCondition():
            if condition.max_pending < 0:
                errors.append({"field": "max_pending", "message": "must be >= 0"})
    if errors:
        raise ConfigurationError("Invalid alert condition", field_errors=errors)


def condition_to_dict(condition: AlertCondition) -> dict[str, Any]:
    match condition:
        case ExecutionFailedCondition():
            return {"type": "execution_failed", "error_kinds": list(condition.error_kinds)}
        case ConsecutiveFailuresCondition():
            return {"type": "consecutive_failures", "count": condition.count}
        case SlowExecutionCondition():
            return {"type": "slow_execution", "threshold_seconds": condition.threshold_seconds}
        case HighErrorRateCondition():
            return {
                "type": "high_error_rate",
                "threshold": condition.threshold,
                "window_seconds": condition.window_seconds,
                "min_samples": condition.min_samples,
            }
        case QueueBacklogCondition():
            return {
                "type": "queue_backlog",
                "max_pending": condition.max_pending,
                "max_oldest_age_seconds": condition.max_oldest_age_seconds,
            }


def condition_type(condition: AlertCondition) -> str:
    return condition_to_dict(condition)["type"]


# =============================================================================
# RULES AND EVENTS
# =============================================================================


@dataclass
class AlertRule:
    """A condition plus where to send its firings.

    ``workflow_id`` of None applies the rule to every workflow; a
    ``cooldown_seconds`` of None falls back to the configured default.
    """

    id: str
    organization_id: str
    name: str
    condition: AlertCondition
    workflow_id: str | None = None
    severity: AlertSeverity = AlertSeverity.ERROR
    channel: str = "email"
    recipients: list[str] = field(default_factory=list)
    cooldown_seconds: float | None = None
    enabled: bool = True
    created_at: datetime | None = None
    version: int = 0

    def applies_to(self, workflow_id: str | None) -> bool:
        return self.workflow_id is None or self.workflow_id == workflow_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "condition": condition_to_dict(self.condition),
            "workflow_id": self.workflow_id,
            "severity": self.severity.value,
            "channel": self.channel,
            "recipients": list(self.recipients),
            "cooldown_seconds": self.cooldown_seconds,
            "enabled": self.enabled,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class AlertEvent:
    """One materialized firing of an :class:`AlertRule`."""

    id: str
    organization_id: str
    rule_id: str
    rule_name: str
    condition_type: str
    severity: AlertSeverity
    title: str
    message: str
    fired_at: datetime
    workflow_id: str | None = None
    execution_id: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    status: AlertStatus = AlertStatus.FIRING
    acknowledged_at: datetime | None = None
    acknowledged_by: str | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    version: int = 0

    def transition(self, target: AlertStatus) -> None:
        if target not in VALID_ALERT_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.status.value, target.value, "AlertStatus")
        self.status = target

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "condition_type": self.condition_type,
            "severity": self.severity.value,
            "title": self.title,
            "message": self.message,
            "workflow_id": self.workflow_id,
            "execution_id": self.execution_id,
            "context": self.context,
            "status": self.status.value,
            "fired_at": self.fired_at.isoformat(),
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
            "acknowledged_by": self.acknowledged_by,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolved_by": self.resolved_by,
        }


# =============================================================================
# LIVE VIEW
# =============================================================================


@dataclass
class ExecutionView:
    """Monitor's cached view of one execution."""

    execution_id: str
    workflow_id: str
    status: str
    progress: int = 0
    current_step: str | None = None
    retry_count: int = 0
    trigger_id: str | None = None
    organization_id: str | None = None
    updated_at: datetime | None = None
    duration_seconds: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "trigger_id": self.trigger_id,
            "status": self.status,
            "progress": self.progress,
            "current_step": self.current_step,
            "retry_count": self.retry_count,
            "duration_seconds": self.duration_seconds,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class QueueSnapshot:
    """Queue depth as of ``captured_at``."""

    pending: int
    running: int
    pending_by_priority: dict[str, int]
    oldest_pending_age_seconds: float | None
    completions_per_minute: float
    captured_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "pending": self.pending,
            "running": self.running,
            "pending_by_priority": dict(self.pending_by_priority),
            "oldest_pending_age_seconds": self.oldest_pending_age_seconds,
            "completions_per_minute": self.completions_per_minute,
            "captured_at": self.captured_at.isoformat(),
        }


__all__ = [
    "AlertSeverity",
    "AlertStatus",
    "VALID_ALERT_TRANSITIONS",
    "ExecutionFailedCondition",
    "ConsecutiveFailuresCondition",
    "SlowExecutionCondition",
    "HighErrorRateCondition",
    "QueueBacklogCondition",
    "AlertCondition",
    "condition_from_dict",
    "condition_to_dict",
    "condition_type",
    "AlertRule",
    "AlertEvent",
    "ExecutionView",
    "QueueSnapshot",
]
