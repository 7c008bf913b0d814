"""
Trigger data model: trigger configs, schedules, stimuli and audit rows.

Manifesto:
    A trigger belongs to exactly one workflow and carries a type-specific
    configuration. Each trigger family is a closed variant: a frozen
    dataclass holding only the fields that family needs. Evaluation
    dispatches on the variant with ``match``, so adding a family without
    handling it everywhere shows up in review, not at runtime.

Variants::

    TriggerType   Config              Stimulus
    ───────────   ─────────────────   ─────────────────────
    manual        ManualConfig        ManualStimulus
    scheduled     ScheduleConfig      ScheduleTick
    webhook       WebhookConfig       WebhookStimulus
    event         EventConfig         DomainEventStimulus
    document      DocumentConfig      DomainEventStimulus (document.*)
    threshold     ThresholdConfig     ThresholdSample
    deadline      DeadlineConfig      DeadlineScan

A scheduled trigger owns one :class:`Schedule` row. Threshold and
deadline triggers record a :class:`FireKey` per (trigger, period) so a
condition scan never fires twice for the same period. Every inbound
webhook call is recorded as a :class:`WebhookRequestLog`.

Tags:
    conduit-core, triggers, tagged-variants, data-model
"""

from __future__ import annotations

import operator
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any

from conduit.core.errors import TriggerConfigError

from .filters import FilterPredicate

DEFAULT_DEADLINE_OFFSETS = (14, 7, 3, 1)


class TriggerType(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"
    EVENT = "event"
    DOCUMENT = "document"
    THRESHOLD = "threshold"
    DEADLINE = "deadline"


class WebhookAuth(str, Enum):
    NONE = "none"
    BASIC = "basic"
    BEARER = "bearer"
    API_KEY = "api_key"


class ComparisonOperator(str, Enum):
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    EQ = "eq"
    NE = "ne"

    def compare(self, actual: float, expected: float) -> bool:
        return _COMPARATORS[self](actual, expected)


_COMPARATORS = {
    ComparisonOperator.GT: operator.gt,
    ComparisonOperator.GTE: operator.ge,
    ComparisonOperator.LT: operator.lt,
    ComparisonOperator.LTE: operator.le,
    ComparisonOperator.EQ: operator.eq,
    ComparisonOperator.NE: operator.ne,
}


class ThresholdPeriod(str, Enum):
    """Idempotency window for threshold triggers: at most one fire per period."""

    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"

    def key(self, at: datetime) -> str:
        match self:
            case ThresholdPeriod.HOUR:
                return at.strftime("%Y-%m-%dT%H")
            case ThresholdPeriod.DAY:
                return at.strftime("%Y-%m-%d")
            case ThresholdPeriod.WEEK:
                year, week, _ = at.isocalendar()
                return f"{year}-W{week:02d}"
            case ThresholdPeriod.MONTH:
                return at.strftime("%Y-%m")


# =============================================================================
# CONFIG VARIANTS
# =============================================================================


@dataclass(frozen=True)
class ManualConfig:
    default_input: dict[str, Any] = field(default_factory=dict)
    require_confirmation: bool = False


@dataclass(frozen=True)
class ScheduleConfig:
    cron_expression: str
    timezone: str = "UTC"
    skip_weekends: bool = False
    skip_holidays: bool = False
    allow_overlap: bool = False
    extra_holidays: tuple[date, ...] = ()
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class WebhookConfig:
    token: str
    authentication: WebhookAuth = WebhookAuth.NONE
    secret: str | None = None
    username: str | None = None
    api_key_header: str = "X-API-Key"
    allowed_ips: tuple[str, ...] = ()


@dataclass(frozen=True)
class EventConfig:
    event_types: tuple[str, ...]
    filters: tuple[FilterPredicate, ...] = ()


@dataclass(frozen=True)
class DocumentConfig:
    document_types: tuple[str, ...] = ()
    actions: tuple[str, ...] = ("uploaded",)
    filters: tuple[FilterPredicate, ...] = ()


@dataclass(frozen=True)
class ThresholdConfig:
    metric: str
    operator: ComparisonOperator
    value: float
    period: ThresholdPeriod = ThresholdPeriod.DAY


@dataclass(frozen=True)
class DeadlineConfig:
    name: str
    deadline_date: date | None = None
    day_of_month: int | None = None
    offsets: tuple[int, ...] = DEFAULT_DEADLINE_OFFSETS
    shift_to_business_day: bool = False
    extra_holidays: tuple[date, ...] = ()


TriggerConfig = (
    ManualConfig
    | ScheduleConfig
    | WebhookConfig
    | EventConfig
    | DocumentConfig
    | ThresholdConfig
    | DeadlineConfig
)


def _dates(values: Any) -> tuple[date, ...]:
    return tuple(v if isinstance(v, date) else date.fromisoformat(v) for v in values or ())


def _filters(values: Any) -> tuple[FilterPredicate, ...]:
    return tuple(v if isinstance(v, FilterPredicate) else FilterPredicate.from_dict(v) for v in values or ())


def config_from_dict(trigger_type: TriggerType, data: dict[str, Any]) -> TriggerConfig:
    """Parse a raw config mapping into its variant.

    Raises:
        TriggerConfigError: Missing keys or unparseable values
    """
    data = dict(data or {})
    try:
        match trigger_type:
            case TriggerType.MANUAL:
                return ManualConfig(
                    default_input=dict(data.get("default_input", {})),
                    require_confirmation=bool(data.get("require_confirmation", False)),
                )
            case TriggerType.SCHEDULED:
                return ScheduleConfig(
                    cron_expression=data["cron_expression"],
                    timezone=data.get("timezone", "UTC"),
                    skip_weekends=bool(data.get("skip_weekends", False)),
                    skip_holidays=bool(data.get("skip_holidays", False)),
                    allow_overlap=bool(data.get("allow_overlap", False)),
                    extra_holidays=_dates(data.get("extra_holidays")),
                    input=dict(data.get("input", {})),
                )
            case TriggerType.WEBHOOK:
                return WebhookConfig(
                    token=data.get("token", ""),
                    authentication=WebhookAuth(data.get("authentication", "none")),
                    secret=data.get("secret"),
                    username=data.get("username"),
                    api_key_header=data.get("api_key_header", "X-API-Key"),
                    allowed_ips=tuple(data.get("allowed_ips", ())),
                )
            case TriggerType.EVENT:
                return EventConfig(
                    event_types=tuple(data.get("event_types", ())),
                    filters=_filters(data.get("filters")),
                )
            case TriggerType.DOCUMENT:
                return DocumentConfig(
                    document_types=tuple(data.get("document_types", ())),
                    actions=tuple(data.get("actions", ("uploaded",))),
                    filters=_filters(data.get("filters")),
                )
            case TriggerType.THRESHOLD:
                return ThresholdConfig(
                    metric=data["metric"],
                    operator=ComparisonOperator(data["operator"]),
                    value=float(data["value"]),
                    period=ThresholdPeriod(data.get("period", "day")),
                )
            case TriggerType.DEADLINE:
                deadline_date = data.get("deadline_date")
                return DeadlineConfig(
                    name=data.get("name", "deadline"),
                    deadline_date=_dates([deadline_date])[0] if deadline_date else None,
                    day_of_month=data.get("day_of_month"),
                    offsets=tuple(int(o) for o in data.get("offsets", DEFAULT_DEADLINE_OFFSETS)),
                    shift_to_business_day=bool(data.get("shift_to_business_day", False)),
                    extra_holidays=_dates(data.get("extra_holidays")),
                )
    except KeyError as e:
        field_name = e.args[0]
        raise TriggerConfigError(
            f"{trigger_type.value} trigger config is missing '{field_name}'",
            field_errors=[{"field": field_name, "message": "required"}],
        ) from e
    except (TypeError, ValueError) as e:
        raise TriggerConfigError(f"Invalid {trigger_type.value} trigger config: {e}", cause=e) from e
    raise TriggerConfigError(f"Unknown trigger type: {trigger_type}")


def config_to_dict(config: TriggerConfig, redact: bool = False) -> dict[str, Any]:
    match config:
        case ManualConfig():
            return {"default_input": config.default_input, "require_confirmation": config.require_confirmation}
        case ScheduleConfig():
            return {
                "cron_expression": config.cron_expression,
                "timezone": config.timezone,
                "skip_weekends": config.skip_weekends,
                "skip_holidays": config.skip_holidays,
                "allow_overlap": config.allow_overlap,
                "extra_holidays": [d.isoformat() for d in config.extra_holidays],
                "input": config.input,
            }
        case WebhookConfig():
            return {
                "token": config.token,
                "authentication": config.authentication.value,
                "secret": "***" if redact and config.secret else config.secret,
                "username": config.username,
                "api_key_header": config.api_key_header,
                "allowed_ips": list(config.allowed_ips),
            }
        case EventConfig():
            return {"event_types": list(config.event_types), "filters": [f.to_dict() for f in config.filters]}
        case DocumentConfig():
            return {
                "document_types": list(config.document_types),
                "actions": list(config.actions),
                "filters": [f.to_dict() for f in config.filters],
            }
        case ThresholdConfig():
            return {
                "metric": config.metric,
                "operator": config.operator.value,
                "value": config.value,
                "period": config.period.value,
            }
        case DeadlineConfig():
            return {
                "name": config.name,
                "deadline_date": config.deadline_date.isoformat() if config.deadline_date else None,
                "day_of_month": config.day_of_month,
                "offsets": list(config.offsets),
                "shift_to_business_day": config.shift_to_business_day,
                "extra_holidays": [d.isoformat() for d in config.extra_holidays],
            }


# =============================================================================
# ROWS
# =============================================================================


@dataclass
class Trigger:
    id: str
    organization_id: str
    workflow_id: str
    name: str
    type: TriggerType
    config: TriggerConfig
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_fired_at: datetime | None = None
    fire_count: int = 0
    version: int = 0

    def to_dict(self, redact: bool = True) -> dict[str, Any]:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "workflow_id": self.workflow_id,
            "name": self.name,
            "type": self.type.value,
            "config": config_to_dict(self.config, redact=redact),
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "last_fired_at": self.last_fired_at.isoformat() if self.last_fired_at else None,
            "fire_count": self.fire_count,
        }


@dataclass
class Schedule:
    """The cron state of a scheduled trigger.

    ``next_run_at`` is the only thing the scheduler needs to recompute
    what is due after a restart.
    """

    id: str
    organization_id: str
    trigger_id: str
    workflow_id: str
    cron_expression: str
    timezone: str = "UTC"
    skip_weekends: bool = False
    skip_holidays: bool = False
    allow_overlap: bool = False
    extra_holidays: tuple[date, ...] = ()
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    paused: bool = False
    version: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "trigger_id": self.trigger_id,
            "workflow_id": self.workflow_id,
            "cron_expression": self.cron_expression,
            "timezone": self.timezone,
            "skip_weekends": self.skip_weekends,
            "skip_holidays": self.skip_holidays,
            "allow_overlap": self.allow_overlap,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "paused": self.paused,
        }


class ScheduleRunStatus(str, Enum):
    FIRED = "fired"
    MISSED = "missed"  # suppressed by the overlap policy
    SKIPPED = "skipped"  # not eligible (weekend, holiday, inactive trigger)
    FAILED = "failed"


@dataclass
class ScheduleRun:
    id: str
    organization_id: str
    schedule_id: str
    trigger_id: str
    scheduled_for: datetime
    status: ScheduleRunStatus
    recorded_at: datetime
    execution_id: str | None = None
    reason: str | None = None
    version: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "schedule_id": self.schedule_id,
            "trigger_id": self.trigger_id,
            "scheduled_for": self.scheduled_for.isoformat(),
            "status": self.status.value,
            "recorded_at": self.recorded_at.isoformat(),
            "execution_id": self.execution_id,
            "reason": self.reason,
        }


@dataclass
class FireKey:
    """Marks a threshold/deadline trigger as fired for one period."""

    id: str
    organization_id: str
    trigger_id: str
    period_key: str
    fired_at: datetime
    version: int = 0

    @staticmethod
    def make_id(trigger_id: str, period_key: str) -> str:
        return f"{trigger_id}:{period_key}"


class WebhookOutcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    IGNORED = "ignored"


@dataclass
class WebhookRequestLog:
    """Audit record of one inbound webhook call, whatever its outcome."""

    id: str
    organization_id: str
    token: str
    method: str
    headers: dict[str, str]
    body: Any
    query: dict[str, Any]
    source_ip: str | None
    received_at: datetime
    trigger_id: str | None = None
    outcome: WebhookOutcome = WebhookOutcome.ACCEPTED
    error: str | None = None
    error_code: str | None = None
    execution_id: str | None = None
    version: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "trigger_id": self.trigger_id,
            "method": self.method,
            "headers": self.headers,
            "body": self.body,
            "query": self.query,
            "source_ip": self.source_ip,
            "received_at": self.received_at.isoformat(),
            "outcome": self.outcome.value,
            "error": self.error,
            "error_code": self.error_code,
            "execution_id": self.execution_id,
        }


# =============================================================================
# STIMULI
# =============================================================================


@dataclass(frozen=True)
class ManualStimulus:
    trigger_id: str
    input: dict[str, Any] = field(default_factory=dict)
    actor: str | None = None


@dataclass(frozen=True)
class ScheduleTick:
    schedule_id: str
    scheduled_for: datetime


@dataclass(frozen=True)
class WebhookStimulus:
    token: str
    method: str = "POST"
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None
    query: dict[str, Any] = field(default_factory=dict)
    source_ip: str | None = None


@dataclass(frozen=True)
class DomainEventStimulus:
    """A domain event addressed to one subscribed trigger."""

    trigger_id: str
    event_type: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ThresholdSample:
    trigger_id: str
    value: float
    observed_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DeadlineScan:
    trigger_id: str
    today: date


Stimulus = ManualStimulus | ScheduleTick | WebhookStimulus | DomainEventStimulus | ThresholdSample | DeadlineScan


__all__ = [
    "DEFAULT_DEADLINE_OFFSETS",
    "TriggerType",
    "WebhookAuth",
    "ComparisonOperator",
    "ThresholdPeriod",
    "ManualConfig",
    "ScheduleConfig",
    "WebhookConfig",
    "EventConfig",
    "DocumentConfig",
    "ThresholdConfig",
    "DeadlineConfig",
    "TriggerConfig",
    "config_from_dict",
    "config_to_dict",
    "Trigger",
    "Schedule",
    "ScheduleRunStatus",
    "ScheduleRun",
    "FireKey",
    "WebhookOutcome",
    "WebhookRequestLog",
    "ManualStimulus",
    "ScheduleTick",
    "WebhookStimulus",
    "DomainEventStimulus",
    "ThresholdSample",
    "DeadlineScan",
    "Stimulus",
]
