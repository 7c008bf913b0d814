"""Trigger evaluation: stimuli in, execution requests out."""

from .calendar import BusinessCalendar
from .evaluator import Evaluation, TriggerEvaluator
from .filters import FilterOperator, FilterPredicate
from .models import (
    DeadlineConfig,
    DeadlineScan,
    DocumentConfig,
    DomainEventStimulus,
    EventConfig,
    ManualConfig,
    ManualStimulus,
    Schedule,
    ScheduleConfig,
    ScheduleRun,
    ScheduleRunStatus,
    ScheduleTick,
    Stimulus,
    ThresholdConfig,
    ThresholdSample,
    Trigger,
    TriggerConfig,
    TriggerType,
    WebhookAuth,
    WebhookConfig,
    WebhookRequestLog,
    WebhookStimulus,
)
from .service import TriggerService, WebhookResult
from .validation import parse_trigger_config, validate_trigger_config

__all__ = [
    "BusinessCalendar",
    "DeadlineConfig",
    "DeadlineScan",
    "DocumentConfig",
    "DomainEventStimulus",
    "Evaluation",
    "EventConfig",
    "FilterOperator",
    "FilterPredicate",
    "ManualConfig",
    "ManualStimulus",
    "Schedule",
    "ScheduleConfig",
    "ScheduleRun",
    "ScheduleRunStatus",
    "ScheduleTick",
    "Stimulus",
    "ThresholdConfig",
    "ThresholdSample",
    "Trigger",
    "TriggerConfig",
    "TriggerEvaluator",
    "TriggerService",
    "TriggerType",
    "WebhookAuth",
    "WebhookConfig",
    "WebhookRequestLog",
    "WebhookResult",
    "WebhookStimulus",
    "parse_trigger_config",
    "validate_trigger_config",
]
