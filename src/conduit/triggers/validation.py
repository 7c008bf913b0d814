"""Creation-time validation of trigger configurations.

Malformed configuration is rejected when a trigger is created or
updated, never at evaluation time. All problems are collected and raised
together as one :class:`TriggerConfigError` whose ``field_errors`` lists
``{"field", "message"}`` pairs.
"""

from __future__ import annotations

import ipaddress
from typing import Any

from conduit.core.errors import TriggerConfigError
from conduit.core.scheduling.cron import resolve_timezone, validate_cron

from .filters import FilterOperator, FilterPredicate
from .models import (
    DeadlineConfig,
    DocumentConfig,
    EventConfig,
    ManualConfig,
    ScheduleConfig,
    ThresholdConfig,
    TriggerConfig,
    TriggerType,
    WebhookAuth,
    WebhookConfig,
    config_from_dict,
)


def parse_trigger_config(trigger_type: TriggerType | str, data: dict[str, Any]) -> TriggerConfig:
    """Parse and validate; the entry point used by create/update."""
    config = config_from_dict(TriggerType(trigger_type), data)
    validate_trigger_config(config)
    return config


def validate_trigger_config(config: TriggerConfig) -> None:
    errors: list[dict[str, str]] = []

    def problem(field_name: str, message: str) -> None:
        errors.append({"field": field_name, "message": message})

    match config:
        case ManualConfig():
            pass
        case ScheduleConfig():
            try:
                validate_cron(config.cron_expression)
            except TriggerConfigError:
                problem("cron_expression", "invalid cron expression")
            try:
                resolve_timezone(config.timezone)
            except TriggerConfigError:
                problem("timezone", f"unknown timezone {config.timezone!r}")
        case WebhookConfig():
            if not config.token:
                problem("token", "required")
            if config.authentication in (WebhookAuth.BEARER, WebhookAuth.API_KEY, WebhookAuth.BASIC):
                if not config.secret:
                    problem("secret", f"required for {config.authentication.value} authentication")
            if config.authentication == WebhookAuth.BASIC and not config.username:
                problem("username", "required for basic authentication")
            if config.authentication == WebhookAuth.API_KEY and not config.api_key_header:
                problem("api_key_header", "required for api_key authentication")
            for entry in config.allowed_ips:
                try:
                    ipaddress.ip_network(entry, strict=False)
                except ValueError:
                    problem("allowed_ips", f"invalid address or network {entry!r}")
        case EventConfig():
            if not config.event_types:
                problem("event_types", "at least one event type is required")
            _check_filters(config.filters, problem)
        case DocumentConfig():
            if not config.actions:
                problem("actions", "at least one document action is required")
            _check_filters(config.filters, problem)
        case ThresholdConfig():
            if not config.metric:
                problem("metric", "required")
        case DeadlineConfig():
            if (config.deadline_date is None) == (config.day_of_month is None):
                problem("deadline_date", "exactly one of deadline_date or day_of_month is required")
            if config.day_of_month is not None and not 1 <= config.day_of_month <= 31:
                problem("day_of_month", "must be between 1 and 31")
            if not config.offsets:
                problem("offsets", "at least one offset is required")
            if any(o < 0 for o in config.offsets):
                problem("offsets", "offsets must be non-negative")

    if errors:
        raise TriggerConfigError(
            "Trigger configuration is invalid: " + "; ".join(f"{e['field']}: {e['message']}" for e in errors),
            field_errors=errors,
        )


def _check_filters(filters: tuple[FilterPredicate, ...], problem: Any) -> None:
    for index, predicate in enumerate(filters):
        name = f"filters[{index}]"
        if not predicate.field:
            problem(name, "field is required")
        if predicate.operator == FilterOperator.BETWEEN:
            if not isinstance(predicate.value, (list, tuple)) or len(predicate.value) != 2:
                problem(name, "between expects [low, high]")
        elif predicate.operator in (FilterOperator.IN, FilterOperator.NOT_IN):
            if not isinstance(predicate.value, (list, tuple)):
                problem(name, f"{predicate.operator.value} expects a list")


__all__ = ["parse_trigger_config", "validate_trigger_config"]
