"""Tests for trigger config parsing and validation."""

from __future__ import annotations

from datetime import UTC, date, datetime

import pytest

from conduit.core.errors import TriggerConfigError
from conduit.triggers.models import (
    ComparisonOperator,
    ScheduleConfig,
    ThresholdPeriod,
    TriggerType,
    WebhookAuth,
    WebhookConfig,
    config_to_dict,
)
from conduit.triggers.validation import parse_trigger_config


def fields_of(exc_info) -> set[str]:
    return {e["field"] for e in exc_info.value.field_errors}


class TestParsing:
    """Raw mappings into config variants."""

    def test_schedule_defaults(self):
        """Scheduled configs default to UTC and no skipping."""
        config = parse_trigger_config("scheduled", {"cron_expression": "0 9 * * 1-5"})
        assert isinstance(config, ScheduleConfig)
        assert config.timezone == "UTC"
        assert not config.skip_weekends
        assert not config.allow_overlap

    def test_missing_required_key(self):
        """Missing keys name the field."""
        with pytest.raises(TriggerConfigError) as exc_info:
            parse_trigger_config(TriggerType.THRESHOLD, {"operator": "gt", "value": 5})
        assert fields_of(exc_info) == {"metric"}

    def test_unparseable_value(self):
        """Bad enum values raise TriggerConfigError."""
        with pytest.raises(TriggerConfigError):
            parse_trigger_config(TriggerType.WEBHOOK, {"token": "t", "authentication": "kerberos"})

    def test_deadline_dates(self):
        """ISO strings parse to dates."""
        config = parse_trigger_config(
            TriggerType.DEADLINE, {"name": "filing", "deadline_date": "2026-04-15", "offsets": [7, 1]}
        )
        assert config.deadline_date == date(2026, 4, 15)
        assert config.offsets == (7, 1)

    def test_webhook_secret_redacted(self):
        """Serialized webhook secrets are masked on request."""
        config = WebhookConfig(token="t", authentication=WebhookAuth.BEARER, secret="s3cret")
        assert config_to_dict(config, redact=True)["secret"] == "***"
        assert config_to_dict(config)["secret"] == "s3cret"


class TestValidation:
    """Cross-field validation problems are collected."""

    def test_bad_cron_and_timezone(self):
        """Both problems are reported at once."""
        with pytest.raises(TriggerConfigError) as exc_info:
            parse_trigger_config("scheduled", {"cron_expression": "nope", "timezone": "Nowhere/Land"})
        assert fields_of(exc_info) == {"cron_expression", "timezone"}

    def test_webhook_auth_requirements(self):
        """Basic auth needs a username and a secret."""
        with pytest.raises(TriggerConfigError) as exc_info:
            parse_trigger_config("webhook", {"token": "t", "authentication": "basic"})
        assert fields_of(exc_info) == {"secret", "username"}

    def test_webhook_allowed_ips(self):
        """Allow-list entries must be addresses or networks."""
        parse_trigger_config("webhook", {"token": "t", "allowed_ips": ["10.0.0.0/8", "192.168.1.5"]})
        with pytest.raises(TriggerConfigError) as exc_info:
            parse_trigger_config("webhook", {"token": "t", "allowed_ips": ["not-an-ip"]})
        assert fields_of(exc_info) == {"allowed_ips"}

    def test_event_requires_types(self):
        """Event triggers subscribe to at least one type."""
        with pytest.raises(TriggerConfigError) as exc_info:
            parse_trigger_config("event", {"event_types": []})
        assert fields_of(exc_info) == {"event_types"}

    def test_filter_shapes(self):
        """between and in need list values."""
        with pytest.raises(TriggerConfigError) as exc_info:
            parse_trigger_config(
                "event",
                {
                    "event_types": ["invoice.created"],
                    "filters": [
                        {"field": "amount", "operator": "between", "value": 5},
                        {"field": "tier", "operator": "in", "value": "gold"},
                    ],
                },
            )
        assert fields_of(exc_info) == {"filters[0]", "filters[1]"}

    def test_deadline_exactly_one_anchor(self):
        """Deadline triggers need a date or a day of month, not both."""
        with pytest.raises(TriggerConfigError):
            parse_trigger_config("deadline", {"name": "x"})
        with pytest.raises(TriggerConfigError):
            parse_trigger_config("deadline", {"name": "x", "deadline_date": "2026-04-15", "day_of_month": 15})
        with pytest.raises(TriggerConfigError) as exc_info:
            parse_trigger_config("deadline", {"name": "x", "day_of_month": 32, "offsets": [-1]})
        assert fields_of(exc_info) == {"day_of_month", "offsets"}


class TestEnums:
    """Helper behaviour on trigger enums."""

    def test_comparison(self):
        """Operators compare floats."""
        assert ComparisonOperator.GTE.compare(5, 5)
        assert not ComparisonOperator.GT.compare(5, 5)
        assert ComparisonOperator.NE.compare(1, 2)

    def test_period_keys(self):
        """Period keys bucket instants."""
        at = datetime(2026, 3, 4, 15, 30, tzinfo=UTC)
        assert ThresholdPeriod.DAY.key(at) == "2026-03-04"
        assert ThresholdPeriod.WEEK.key(at) == "2026-W10"
        assert ThresholdPeriod.MONTH.key(at) == "2026-03"
        assert ThresholdPeriod.HOUR.key(at) == "2026-03-04T15"
