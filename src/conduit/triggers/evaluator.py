"""
Trigger evaluator: stimulus in, execution request (or nothing) out.

Manifesto:
    ``evaluate(stimulus)`` matches one external stimulus against the
    registered trigger it addresses and produces an ExecutionRequest, or
    None. Evaluation never raises for a bad stimulus: an unknown token, an
    inactive trigger, a failed filter or an unexpected error all mean "no
    request". The one exception is a SystemicError (the persistence layer
    is gone), which must halt the engine rather than be mistaken for "no
    match".

Architecture:
    ::

        assess(stimulus) ── match ──┬─ ManualStimulus      → always fires if active
                                    ├─ ScheduleTick        → calendar, overlap policy
                                    ├─ WebhookStimulus     → token, IP allow-list, auth, audit log
                                    ├─ DomainEventStimulus → event types / document actions, filters
                                    ├─ ThresholdSample     → operator/value, one fire per period
                                    └─ DeadlineScan        → today + N == deadline, one fire per offset
                          │
                          ▼
                    Evaluation(request | None, reason, webhook_log)

    ``preview(trigger, sample_input)`` builds the payload an execution
    would receive without touching any state.

Tags:
    conduit-core, triggers, evaluation, webhook-auth
"""

from __future__ import annotations

import base64
import binascii
import hmac
import ipaddress
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any

from conduit.core.config import ConduitSettings
from conduit.core.errors import SystemicError
from conduit.core.logging import get_logger
from conduit.core.scheduling.cron import resolve_timezone
from conduit.core.store import InMemoryStore
from conduit.core.timestamps import Clock, new_id, utc_now
from conduit.execution.models import ExecutionOptions, ExecutionRequest

from .calendar import BusinessCalendar, recurring_deadlines
from .filters import event_type_matches, matches_all
from .models import (
    DeadlineConfig,
    DeadlineScan,
    DocumentConfig,
    DomainEventStimulus,
    EventConfig,
    FireKey,
    ManualConfig,
    ManualStimulus,
    Schedule,
    ScheduleConfig,
    ScheduleTick,
    Stimulus,
    ThresholdConfig,
    ThresholdSample,
    Trigger,
    WebhookAuth,
    WebhookConfig,
    WebhookOutcome,
    WebhookRequestLog,
    WebhookStimulus,
)

logger = get_logger(__name__)

REDACTED = "[REDACTED]"
SENSITIVE_HEADERS = frozenset({"authorization", "proxy-authorization", "cookie", "x-api-key"})


@dataclass
class Evaluation:
    """Outcome of assessing one stimulus.

    Attributes:
        request: The execution request, or None when nothing fires
        reason: Why nothing fired (``trigger_inactive``, ``overlap``, ...)
        trigger: The trigger the stimulus addressed, if resolved
        webhook_log: Audit row for webhook stimuli
        rejection_code: ``NOT_FOUND`` / ``FORBIDDEN`` / ``UNAUTHORIZED`` for
            rejected webhooks
        fire_key: Period claim taken for threshold/deadline fires; released
            by the caller if the execution cannot be submitted
    """

    request: ExecutionRequest | None = None
    reason: str | None = None
    trigger: Trigger | None = None
    webhook_log: WebhookRequestLog | None = None
    rejection_code: str | None = None
    fire_key: str | None = None

    @property
    def fired(self) -> bool:
        return self.request is not None


def redact_headers(headers: dict[str, str], extra: tuple[str, ...] = ()) -> dict[str, str]:
    sensitive = SENSITIVE_HEADERS | {h.lower() for h in extra}
    return {k: (REDACTED if k.lower() in sensitive else v) for k, v in headers.items()}


def _secure_equals(given: str, expected: str) -> bool:
    return hmac.compare_digest(given.encode("utf-8"), expected.encode("utf-8"))


def authenticate_webhook(config: WebhookConfig, headers: dict[str, str]) -> str | None:
    """Check credentials; returns an error annotation, or None when accepted."""
    lowered = {k.lower(): v for k, v in headers.items()}
    secret = config.secret or ""
    match config.authentication:
        case WebhookAuth.NONE:
            return None
        case WebhookAuth.BEARER:
            value = lowered.get("authorization")
            if not value:
                return "missing Authorization header"
            scheme, _, token = value.partition(" ")
            if scheme.lower() != "bearer" or not token:
                return "expected Bearer credentials"
            return None if _secure_equals(token.strip(), secret) else "invalid bearer token"
        case WebhookAuth.BASIC:
            value = lowered.get("authorization")
            if not value:
                return "missing Authorization header"
            scheme, _, encoded = value.partition(" ")
            if scheme.lower() != "basic" or not encoded:
                return "expected Basic credentials"
            try:
                decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError):
                return "malformed basic credentials"
            username, sep, password = decoded.partition(":")
            if not sep:
                return "malformed basic credentials"
            user_ok = _secure_equals(username, config.username or "")
            password_ok = _secure_equals(password, secret)
            return None if user_ok and password_ok else "invalid username or password"
        case WebhookAuth.API_KEY:
            value = lowered.get(config.api_key_header.lower())
            if not value:
                return f"missing {config.api_key_header} header"
            return None if _secure_equals(value, secret) else "invalid API key"


def ip_allowed(config: WebhookConfig, source_ip: str | None) -> bool:
    if not config.allowed_ips:
        return True
    if not source_ip:
        return False
    try:
        address = ipaddress.ip_address(source_ip)
    except ValueError:
        return False
    return any(address in ipaddress.ip_network(entry, strict=False) for entry in config.allowed_ips)


class TriggerEvaluator:
    """Matches stimuli against registered triggers."""

    def __init__(self, store: InMemoryStore, settings: ConduitSettings, clock: Clock = utc_now) -> None:
        self._store = store
        self._settings = settings
        self._clock = clock

    # =========================================================================
    # Public API
    # =========================================================================

    def evaluate(self, stimulus: Stimulus) -> ExecutionRequest | None:
        return self.assess(stimulus).request

    def assess(self, stimulus: Stimulus) -> Evaluation:
        try:
            match stimulus:
                case ManualStimulus():
                    return self._manual(stimulus)
                case ScheduleTick():
                    return self._schedule_tick(stimulus)
                case WebhookStimulus():
                    return self._webhook(stimulus)
                case DomainEventStimulus():
                    return self._domain_event(stimulus)
                case ThresholdSample():
                    return self._threshold(stimulus)
                case DeadlineScan():
                    return self._deadline(stimulus)
        except SystemicError:
            raise
        except Exception as e:
            logger.exception("trigger_evaluation_failed", stimulus=type(stimulus).__name__, error=str(e))
            return Evaluation(reason="evaluation_error")
        return Evaluation(reason="unsupported_stimulus")

    def calendar_for(
        self,
        extra_holidays: tuple[date, ...] = (),
        skip_weekends: bool = True,
        skip_holidays: bool = True,
    ) -> BusinessCalendar:
        return BusinessCalendar.build(
            self._settings.holidays,
            extra_holidays,
            skip_weekends=skip_weekends,
            skip_holidays=skip_holidays,
        )

    def schedule_calendar(self, schedule: Schedule) -> BusinessCalendar:
        return self.calendar_for(schedule.extra_holidays, schedule.skip_weekends, schedule.skip_holidays)

    def preview(self, trigger: Trigger, sample_input: dict[str, Any] | None = None) -> dict[str, Any]:
        """Payload an execution of ``trigger`` would receive. No side effects."""
        sample = dict(sample_input or {})
        now = self._clock()
        would_fire: bool | None = None
        match trigger.config:
            case ManualConfig():
                payload = {**trigger.config.default_input, **sample}
            case ScheduleConfig():
                payload = {**trigger.config.input, "scheduled_for": now.isoformat(), **sample}
            case WebhookConfig():
                payload = sample
            case EventConfig() | DocumentConfig():
                payload = sample
                would_fire = matches_all(sample, trigger.config.filters)
            case ThresholdConfig():
                value = sample.get("value")
                payload = self._threshold_input(trigger.config, value, now, sample)
                if isinstance(value, (int, float)):
                    would_fire = trigger.config.operator.compare(float(value), trigger.config.value)
            case DeadlineConfig():
                upcoming = self._deadline_dates(trigger.config, now.date())
                target = next((d for d in upcoming if d >= now.date()), upcoming[-1] if upcoming else None)
                days = (target - now.date()).days if target else None
                payload = {
                    "deadline_name": trigger.config.name,
                    "deadline_date": target.isoformat() if target else None,
                    "days_remaining": days,
                    **sample,
                }
                would_fire = days in trigger.config.offsets if days is not None else False
        return {
            "trigger_id": trigger.id,
            "workflow_id": trigger.workflow_id,
            "trigger_type": trigger.type.value,
            "input": payload,
            "would_fire": would_fire,
        }

    # =========================================================================
    # Variants
    # =========================================================================

    def _active_trigger(self, trigger_id: str) -> tuple[Trigger | None, str | None]:
        trigger: Trigger | None = self._store.triggers.get(trigger_id)
        if trigger is None:
            return None, "trigger_not_found"
        if not trigger.is_active:
            return trigger, "trigger_inactive"
        return trigger, None

    def _manual(self, stimulus: ManualStimulus) -> Evaluation:
        trigger, reason = self._active_trigger(stimulus.trigger_id)
        if reason:
            return Evaluation(reason=reason, trigger=trigger)
        base = trigger.config.default_input if isinstance(trigger.config, ManualConfig) else {}
        payload = {**base, **stimulus.input}
        return self._fire(trigger, payload, {"kind": "manual", "actor": stimulus.actor})

    def _schedule_tick(self, stimulus: ScheduleTick) -> Evaluation:
        schedule: Schedule | None = self._store.schedules.get(stimulus.schedule_id)
        if schedule is None:
            return Evaluation(reason="schedule_not_found")
        if schedule.paused:
            return Evaluation(reason="schedule_paused")
        trigger, reason = self._active_trigger(schedule.trigger_id)
        if reason:
            return Evaluation(reason=reason, trigger=trigger)

        local_day = stimulus.scheduled_for.astimezone(resolve_timezone(schedule.timezone)).date()
        if not self.schedule_calendar(schedule).is_eligible(local_day):
            return Evaluation(reason="not_business_day", trigger=trigger)

        if not schedule.allow_overlap:
            running = self._store.executions.first(
                lambda e: e.trigger_id == trigger.id and not e.status.is_terminal
            )
            if running is not None:
                logger.warning(
                    "schedule_run_missed",
                    schedule_id=schedule.id,
                    trigger_id=trigger.id,
                    running_execution_id=running.id,
                )
                return Evaluation(reason="overlap", trigger=trigger)

        base = trigger.config.input if isinstance(trigger.config, ScheduleConfig) else {}
        payload = {**base, "scheduled_for": stimulus.scheduled_for.isoformat()}
        return self._fire(
            trigger,
            payload,
            {"kind": "schedule", "schedule_id": schedule.id, "scheduled_for": stimulus.scheduled_for.isoformat()},
        )

    def webhook_log(self, stimulus: WebhookStimulus) -> WebhookRequestLog:
        """Unsaved audit row for one inbound call, sensitive headers redacted."""
        trigger = self._webhook_trigger(stimulus.token)
        extra_sensitive = (trigger.config.api_key_header,) if trigger is not None else ()
        return WebhookRequestLog(
            id=new_id("whl"),
            organization_id=trigger.organization_id if trigger else self._settings.default_organization_id,
            token=stimulus.token,
            method=stimulus.method.upper(),
            headers=redact_headers(stimulus.headers, extra_sensitive),
            body=stimulus.body,
            query=dict(stimulus.query),
            source_ip=stimulus.source_ip,
            received_at=self._clock(),
            trigger_id=trigger.id if trigger else None,
        )

    def _webhook_trigger(self, token: str) -> Trigger | None:
        return self._store.triggers.first(lambda t: isinstance(t.config, WebhookConfig) and t.config.token == token)

    def _webhook(self, stimulus: WebhookStimulus) -> Evaluation:
        trigger = self._webhook_trigger(stimulus.token)
        log = self.webhook_log(stimulus)
        rejection: tuple[str, str] | None = None
        if trigger is None or not trigger.is_active:
            rejection = ("NOT_FOUND", "unknown or inactive webhook token")
        elif not ip_allowed(trigger.config, stimulus.source_ip):
            rejection = ("FORBIDDEN", f"source IP {stimulus.source_ip} not in allow-list")
        else:
            error = authenticate_webhook(trigger.config, stimulus.headers)
            if error is not None:
                rejection = ("UNAUTHORIZED", error)

        if rejection is not None:
            code, message = rejection
            log.outcome = WebhookOutcome.REJECTED
            log.error_code = code
            log.error = message
            self._store.webhook_logs.insert(log)
            logger.warning(
                "webhook_rejected",
                log_id=log.id,
                trigger_id=log.trigger_id,
                code=code,
                error=message,
                source_ip=stimulus.source_ip,
            )
            return Evaluation(reason=message, trigger=trigger, webhook_log=log, rejection_code=code)

        self._store.webhook_logs.insert(log)
        payload = dict(stimulus.body) if isinstance(stimulus.body, dict) else {"body": stimulus.body}
        evaluation = self._fire(
            trigger,
            payload,
            {
                "kind": "webhook",
                "log_id": log.id,
                "method": log.method,
                "query": log.query,
                "source_ip": stimulus.source_ip,
            },
        )
        evaluation.webhook_log = log
        return evaluation

    def _domain_event(self, stimulus: DomainEventStimulus) -> Evaluation:
        trigger, reason = self._active_trigger(stimulus.trigger_id)
        if reason:
            return Evaluation(reason=reason, trigger=trigger)
        config = trigger.config
        match config:
            case EventConfig():
                if not any(event_type_matches(stimulus.event_type, p) for p in config.event_types):
                    return Evaluation(reason="event_type_not_subscribed", trigger=trigger)
            case DocumentConfig():
                kind, _, action = stimulus.event_type.partition(".")
                if kind != "document" or action not in config.actions:
                    return Evaluation(reason="document_action_not_subscribed", trigger=trigger)
                if config.document_types and stimulus.payload.get("document_type") not in config.document_types:
                    return Evaluation(reason="document_type_filtered", trigger=trigger)
            case _:
                return Evaluation(reason="not_an_event_trigger", trigger=trigger)
        if not matches_all(stimulus.payload, config.filters):
            return Evaluation(reason="filtered", trigger=trigger)
        return self._fire(trigger, dict(stimulus.payload), {"kind": "event", "event_type": stimulus.event_type})

    def _threshold(self, stimulus: ThresholdSample) -> Evaluation:
        trigger, reason = self._active_trigger(stimulus.trigger_id)
        if reason:
            return Evaluation(reason=reason, trigger=trigger)
        config = trigger.config
        if not isinstance(config, ThresholdConfig):
            return Evaluation(reason="not_a_threshold_trigger", trigger=trigger)
        if not config.operator.compare(stimulus.value, config.value):
            return Evaluation(reason="condition_not_met", trigger=trigger)
        fire_key = self._claim_period(trigger, config.period.key(stimulus.observed_at))
        if fire_key is None:
            return Evaluation(reason="already_fired", trigger=trigger)
        payload = self._threshold_input(config, stimulus.value, stimulus.observed_at, stimulus.payload)
        evaluation = self._fire(trigger, payload, {"kind": "threshold", "metric": config.metric})
        evaluation.fire_key = fire_key
        return evaluation

    def _deadline(self, stimulus: DeadlineScan) -> Evaluation:
        trigger, reason = self._active_trigger(stimulus.trigger_id)
        if reason:
            return Evaluation(reason=reason, trigger=trigger)
        config = trigger.config
        if not isinstance(config, DeadlineConfig):
            return Evaluation(reason="not_a_deadline_trigger", trigger=trigger)

        deadlines = self._deadline_dates(config, stimulus.today)
        for offset in sorted(config.offsets):
            target = stimulus.today + timedelta(days=offset)
            if target not in deadlines:
                continue
            fire_key = self._claim_period(trigger, f"{target.isoformat()}:{offset}")
            if fire_key is None:
                return Evaluation(reason="already_fired", trigger=trigger)
            payload = {
                "deadline_name": config.name,
                "deadline_date": target.isoformat(),
                "days_remaining": offset,
                "scan_date": stimulus.today.isoformat(),
            }
            evaluation = self._fire(trigger, payload, {"kind": "deadline", "offset": offset})
            evaluation.fire_key = fire_key
            return evaluation
        return Evaluation(reason="no_deadline_due", trigger=trigger)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _deadline_dates(self, config: DeadlineConfig, today: date) -> list[date]:
        if config.deadline_date is not None:
            raw = [config.deadline_date]
        else:
            raw = recurring_deadlines(today, config.day_of_month or 1)
        if not config.shift_to_business_day:
            return raw
        calendar = self.calendar_for(config.extra_holidays)
        return [calendar.next_business_day(d) for d in raw]

    @staticmethod
    def _threshold_input(
        config: ThresholdConfig,
        value: Any,
        observed_at: datetime,
        extra: dict[str, Any],
    ) -> dict[str, Any]:
        return {
            "metric": config.metric,
            "value": value,
            "threshold": config.value,
            "operator": config.operator.value,
            "observed_at": observed_at.isoformat(),
            **extra,
        }

    def _claim_period(self, trigger: Trigger, period_key: str) -> str | None:
        """Record a fire for (trigger, period); None if already recorded."""
        key_id = FireKey.make_id(trigger.id, period_key)
        if self._store.fire_keys.get(key_id) is not None:
            return None
        self._store.fire_keys.insert(
            FireKey(
                id=key_id,
                organization_id=trigger.organization_id,
                trigger_id=trigger.id,
                period_key=period_key,
                fired_at=self._clock(),
            )
        )
        return key_id

    def release_period(self, fire_key: str) -> None:
        """Forget a claim whose execution was never submitted, so a later scan retries."""
        self._store.fire_keys.delete(fire_key)
        logger.info("trigger_period_released", fire_key=fire_key)

    @staticmethod
    def _fire(trigger: Trigger, payload: dict[str, Any], source: dict[str, Any]) -> Evaluation:
        request = ExecutionRequest(
            workflow_id=trigger.workflow_id,
            input=payload,
            organization_id=trigger.organization_id,
            trigger_id=trigger.id,
            trigger_type=trigger.type.value,
            options=ExecutionOptions(trigger_id=trigger.id),
            source=source,
        )
        return Evaluation(request=request, trigger=trigger)


__all__ = [
    "Evaluation",
    "TriggerEvaluator",
    "authenticate_webhook",
    "ip_allowed",
    "redact_headers",
    "REDACTED",
]
