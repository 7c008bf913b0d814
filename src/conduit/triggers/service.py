"""Trigger service - trigger CRUD, dispatch and the condition scan.

Owns Trigger and Schedule rows. Creating or updating a trigger validates
its configuration synchronously (``TriggerConfigError`` on failure), and
a scheduled trigger gets its Schedule row with a computed
``next_run_at``. Deleting a trigger removes its schedule and its
threshold/deadline fire keys; schedule run history and webhook request
logs are kept for audit.

Every fired request goes through :meth:`TriggerService.dispatch`, which
submits it to the engine, updates the trigger's fire bookkeeping and
emits ``trigger.fired``.
"""

from __future__ import annotations

import secrets
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from conduit.core.config import ConduitSettings
from conduit.core.errors import (
    ConduitError,
    EngineHaltedError,
    NotFoundError,
    SystemicError,
    TriggerConfigError,
    WebhookRejectedError,
)
from conduit.core.events import Event, EventBus, EventTypes
from conduit.core.logging import get_logger
from conduit.core.scheduling.service import HaltCallback, Submit, next_run_for
from conduit.core.store import InMemoryStore
from conduit.core.timestamps import Clock, new_id, utc_now
from conduit.execution.models import ExecutionRequest

from .evaluator import TriggerEvaluator
from .models import (
    DeadlineConfig,
    DeadlineScan,
    DocumentConfig,
    DomainEventStimulus,
    EventConfig,
    ManualStimulus,
    Schedule,
    ScheduleConfig,
    ThresholdConfig,
    ThresholdSample,
    Trigger,
    TriggerType,
    WebhookConfig,
    WebhookOutcome,
    WebhookRequestLog,
    WebhookStimulus,
)
from .validation import parse_trigger_config

logger = get_logger(__name__)

MetricSource = Callable[[str, str], Awaitable[float | None]]


@dataclass
class WebhookResult:
    accepted: bool
    execution_id: str | None
    log_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"accepted": self.accepted, "execution_id": self.execution_id, "log_id": self.log_id}


class TriggerService:
    """Trigger lifecycle and every path that turns a stimulus into an execution."""

    def __init__(
        self,
        store: InMemoryStore,
        evaluator: TriggerEvaluator,
        settings: ConduitSettings,
        submit: Submit | None = None,
        bus: EventBus | None = None,
        clock: Clock = utc_now,
        metric_source: MetricSource | None = None,
        on_halt: HaltCallback | None = None,
    ) -> None:
        self._store = store
        self.evaluator = evaluator
        self._settings = settings
        self._submit = submit
        self._bus = bus
        self._clock = clock
        self._metric_source = metric_source
        self._on_halt = on_halt
        self._halted = False

    def set_submit(self, submit: Submit) -> None:
        self._submit = submit

    def set_metric_source(self, metric_source: MetricSource) -> None:
        self._metric_source = metric_source

    def mark_halted(self) -> None:
        self._halted = True

    @property
    def halted(self) -> bool:
        return self._halted

    # =========================================================================
    # CRUD
    # =========================================================================

    def create_trigger(
        self,
        workflow_id: str,
        name: str,
        trigger_type: TriggerType | str,
        config: dict[str, Any] | None = None,
        organization_id: str | None = None,
        is_active: bool = True,
    ) -> Trigger:
        organization_id = organization_id or self._settings.default_organization_id
        trigger_type = TriggerType(trigger_type)
        if self._store.workflows.get(workflow_id, organization_id) is None:
            raise NotFoundError(f"Workflow {workflow_id} not found")

        raw = dict(config or {})
        if trigger_type == TriggerType.WEBHOOK and not raw.get("token"):
            raw["token"] = secrets.token_urlsafe(24)
        parsed = parse_trigger_config(trigger_type, raw)
        if isinstance(parsed, WebhookConfig):
            self._ensure_unique_token(parsed.token)

        now = self._clock()
        trigger = Trigger(
            id=new_id("trg"),
            organization_id=organization_id,
            workflow_id=workflow_id,
            name=name,
            type=trigger_type,
            config=parsed,
            is_active=is_active,
            created_at=now,
            updated_at=now,
        )
        self._store.triggers.insert(trigger)
        if isinstance(parsed, ScheduleConfig):
            self._sync_schedule(trigger, parsed)
        logger.info(
            "trigger_created",
            trigger_id=trigger.id,
            workflow_id=workflow_id,
            trigger_type=trigger_type.value,
        )
        return trigger

    def get_trigger(self, trigger_id: str, organization_id: str | None = None) -> Trigger:
        trigger = self._store.triggers.get(trigger_id, organization_id)
        if trigger is None:
            raise NotFoundError(f"Trigger {trigger_id} not found")
        return trigger

    def list_triggers(
        self,
        workflow_id: str | None = None,
        trigger_type: TriggerType | None = None,
        organization_id: str | None = None,
    ) -> list[Trigger]:
        triggers = self._store.triggers.find(
            lambda t: (workflow_id is None or t.workflow_id == workflow_id)
            and (trigger_type is None or t.type == trigger_type),
            organization_id=organization_id,
        )
        triggers.sort(key=lambda t: t.created_at)
        return triggers

    def update_trigger(
        self,
        trigger_id: str,
        *,
        name: str | None = None,
        config: dict[str, Any] | None = None,
        is_active: bool | None = None,
        organization_id: str | None = None,
    ) -> Trigger:
        trigger = self.get_trigger(trigger_id, organization_id)
        if config is not None:
            raw = dict(config)
            if isinstance(trigger.config, WebhookConfig) and not raw.get("token"):
                raw["token"] = trigger.config.token
            parsed = parse_trigger_config(trigger.type, raw)
            if isinstance(parsed, WebhookConfig) and parsed.token != getattr(trigger.config, "token", None):
                self._ensure_unique_token(parsed.token, exclude=trigger.id)
            trigger.config = parsed
        if name is not None:
            trigger.name = name
        if is_active is not None:
            trigger.is_active = is_active
        trigger.updated_at = self._clock()
        self._store.triggers.save(trigger)
        if isinstance(trigger.config, ScheduleConfig) and config is not None:
            self._sync_schedule(trigger, trigger.config)
        logger.info("trigger_updated", trigger_id=trigger.id, is_active=trigger.is_active)
        return trigger

    def deactivate_trigger(self, trigger_id: str, organization_id: str | None = None) -> Trigger:
        return self.update_trigger(trigger_id, is_active=False, organization_id=organization_id)

    def delete_trigger(self, trigger_id: str, organization_id: str | None = None) -> None:
        trigger = self.get_trigger(trigger_id, organization_id)
        schedule = self.schedule_for(trigger.id)
        if schedule is not None:
            self._store.schedules.delete(schedule.id)
        for key in self._store.fire_keys.find(lambda k: k.trigger_id == trigger.id):
            self._store.fire_keys.delete(key.id)
        self._store.triggers.delete(trigger.id)
        logger.info("trigger_deleted", trigger_id=trigger.id, workflow_id=trigger.workflow_id)

    def _ensure_unique_token(self, token: str, exclude: str | None = None) -> None:
        clash = self._store.triggers.first(
            lambda t: t.id != exclude and isinstance(t.config, WebhookConfig) and t.config.token == token
        )
        if clash is not None:
            raise TriggerConfigError(
                "Webhook token already in use",
                field_errors=[{"field": "token", "message": "already in use"}],
            )

    # =========================================================================
    # Schedules
    # =========================================================================

    def schedule_for(self, trigger_id: str) -> Schedule | None:
        return self._store.schedules.first(lambda s: s.trigger_id == trigger_id)

    def _sync_schedule(self, trigger: Trigger, config: ScheduleConfig) -> Schedule:
        schedule = self.schedule_for(trigger.id)
        now = self._clock()
        if schedule is None:
            schedule = Schedule(
                id=new_id("sch"),
                organization_id=trigger.organization_id,
                trigger_id=trigger.id,
                workflow_id=trigger.workflow_id,
                cron_expression=config.cron_expression,
            )
            self._store.schedules.insert(schedule)
        schedule.cron_expression = config.cron_expression
        schedule.timezone = config.timezone
        schedule.skip_weekends = config.skip_weekends
        schedule.skip_holidays = config.skip_holidays
        schedule.allow_overlap = config.allow_overlap
        schedule.extra_holidays = config.extra_holidays
        schedule.next_run_at = next_run_for(schedule, now, self.evaluator.schedule_calendar(schedule))
        self._store.schedules.save(schedule)
        return schedule

    def _require_schedule(self, trigger_id: str, organization_id: str | None) -> Schedule:
        self.get_trigger(trigger_id, organization_id)
        schedule = self.schedule_for(trigger_id)
        if schedule is None:
            raise NotFoundError(f"Trigger {trigger_id} has no schedule")
        return schedule

    def pause_schedule(self, trigger_id: str, organization_id: str | None = None) -> Schedule:
        schedule = self._require_schedule(trigger_id, organization_id)
        schedule.paused = True
        self._store.schedules.save(schedule)
        logger.info("schedule_paused", schedule_id=schedule.id, trigger_id=trigger_id)
        return schedule

    def resume_schedule(self, trigger_id: str, organization_id: str | None = None) -> Schedule:
        """Resume from now; runs that fell due while paused are not replayed."""
        schedule = self._require_schedule(trigger_id, organization_id)
        schedule.paused = False
        schedule.next_run_at = next_run_for(schedule, self._clock(), self.evaluator.schedule_calendar(schedule))
        self._store.schedules.save(schedule)
        logger.info("schedule_resumed", schedule_id=schedule.id, trigger_id=trigger_id)
        return schedule

    # =========================================================================
    # Preview
    # =========================================================================

    def test_trigger(
        self,
        trigger_id: str,
        sample_input: dict[str, Any] | None = None,
        organization_id: str | None = None,
    ) -> dict[str, Any]:
        return self.evaluator.preview(self.get_trigger(trigger_id, organization_id), sample_input)

    # =========================================================================
    # Firing
    # =========================================================================

    async def dispatch(self, request: ExecutionRequest) -> str:
        """Submit a fired request and record the fire on its trigger."""
        if self._halted:
            raise EngineHaltedError("Engine halted; trigger evaluation is suspended")
        if self._submit is None:
            raise RuntimeError("TriggerService has no submit callable")
        execution_id = await self._submit(request)
        trigger = self._store.triggers.get(request.trigger_id) if request.trigger_id else None
        if trigger is not None:
            trigger.last_fired_at = self._clock()
            trigger.fire_count += 1
            self._store.triggers.save(trigger)
        logger.info(
            "trigger_fired",
            trigger_id=request.trigger_id,
            trigger_type=request.trigger_type,
            workflow_id=request.workflow_id,
            execution_id=execution_id,
        )
        if self._bus is not None:
            await self._bus.publish(
                Event(
                    event_type=EventTypes.TRIGGER_FIRED,
                    source="triggers.service",
                    payload={
                        "trigger_id": request.trigger_id,
                        "trigger_type": request.trigger_type,
                        "workflow_id": request.workflow_id,
                        "execution_id": execution_id,
                    },
                    correlation_id=execution_id,
                    organization_id=request.organization_id,
                )
            )
        return execution_id

    async def fire_manual(
        self,
        trigger_id: str,
        input: dict[str, Any] | None = None,
        actor: str | None = None,
        organization_id: str | None = None,
    ) -> str:
        trigger = self.get_trigger(trigger_id, organization_id)
        evaluation = await self._assess(ManualStimulus(trigger_id=trigger.id, input=dict(input or {}), actor=actor))
        if evaluation.request is None:
            raise TriggerConfigError(f"Trigger {trigger_id} did not fire: {evaluation.reason}")
        return await self.dispatch(evaluation.request)

    async def process_webhook(
        self,
        token: str,
        method: str = "POST",
        headers: dict[str, str] | None = None,
        body: Any = None,
        query: dict[str, Any] | None = None,
        source_ip: str | None = None,
    ) -> WebhookResult:
        """Webhook gateway entry point.

        Raises:
            WebhookRejectedError: Unknown token (NOT_FOUND), source IP not
                allowed (FORBIDDEN) or bad credentials (UNAUTHORIZED)
            EngineHaltedError: The engine halted after a systemic failure
            ConduitError: Evaluation failed unexpectedly (INTERNAL)

        Every call leaves a webhook log row, whatever the outcome, as long
        as the store can still be written.
        """
        stimulus = WebhookStimulus(
            token=token,
            method=method,
            headers=dict(headers or {}),
            body=body,
            query=dict(query or {}),
            source_ip=source_ip,
        )
        if self._halted:
            self._audit_refused(stimulus, "UNAVAILABLE", "engine halted")
            raise EngineHaltedError("Engine halted; webhooks are not accepted")
        try:
            evaluation = await self._assess(stimulus)
        except SystemicError as e:
            self._audit_refused(stimulus, "UNAVAILABLE", str(e))
            raise
        log = evaluation.webhook_log
        if log is None:
            log = self._audit_refused(stimulus, "INTERNAL", evaluation.reason or "evaluation_error")
            raise ConduitError(f"Webhook evaluation failed (log {log.id if log else 'unavailable'})")
        if evaluation.request is None:
            raise WebhookRejectedError(
                log.error or "webhook rejected",
                code=evaluation.rejection_code or "UNAUTHORIZED",
                log_id=log.id,
            )
        try:
            execution_id = await self.dispatch(evaluation.request)
        except Exception as e:
            if isinstance(e, SystemicError):
                await self._halt(e)
            log.outcome = WebhookOutcome.IGNORED
            log.error = str(e) or type(e).__name__
            log.error_code = getattr(e, "code", "INTERNAL")
            if self._store.available:
                self._store.webhook_logs.save(log)
            raise
        log.execution_id = execution_id
        self._store.webhook_logs.save(log)
        return WebhookResult(accepted=True, execution_id=execution_id, log_id=log.id)

    def _audit_refused(self, stimulus: WebhookStimulus, code: str, message: str) -> WebhookRequestLog | None:
        """Log a call refused before evaluation produced a row; None if the store is down."""
        if not self._store.available:
            return None
        log = self.evaluator.webhook_log(stimulus)
        log.outcome = WebhookOutcome.REJECTED
        log.error_code = code
        log.error = message
        self._store.webhook_logs.insert(log)
        logger.warning("webhook_refused", log_id=log.id, trigger_id=log.trigger_id, code=code, error=message)
        return log

    def webhook_logs(self, trigger_id: str | None = None, limit: int = 100) -> list[Any]:
        logs = self._store.webhook_logs.find(lambda log: trigger_id is None or log.trigger_id == trigger_id)
        logs.sort(key=lambda log: log.received_at, reverse=True)
        return logs[:limit]

    async def handle_domain_event(
        self,
        event_type: str,
        payload: dict[str, Any] | None = None,
        organization_id: str | None = None,
    ) -> list[str]:
        """Fan a domain event out to every subscribed event/document trigger."""
        if self._halted:
            raise EngineHaltedError("Engine halted; domain events are not evaluated")
        organization_id = organization_id or self._settings.default_organization_id
        subscribed = self._store.triggers.find(
            lambda t: t.is_active and isinstance(t.config, (EventConfig, DocumentConfig)),
            organization_id=organization_id,
        )
        base = DomainEventStimulus(trigger_id="", event_type=event_type, payload=dict(payload or {}))
        execution_ids = []
        for trigger in subscribed:
            evaluation = await self._assess(replace(base, trigger_id=trigger.id))
            if evaluation.request is None:
                continue
            execution_id = await self._dispatch_logged(evaluation.request)
            if execution_id is not None:
                execution_ids.append(execution_id)
        logger.debug("domain_event_evaluated", event_type=event_type, fired=len(execution_ids))
        return execution_ids

    async def scan_conditions(self) -> list[str]:
        """One pass over threshold and deadline triggers (a background tick).

        A trigger whose metric source or evaluation fails is logged and
        skipped; the rest of the pass still runs.
        """
        if self._halted:
            return []
        try:
            now = self._clock()
            triggers = self._store.triggers.find(lambda t: t.is_active)
        except SystemicError as e:
            await self._halt(e)
            return []
        execution_ids = []
        for trigger in triggers:
            try:
                execution_id = await self._scan_trigger(trigger, now)
            except SystemicError:
                # already halted by _assess or _dispatch_logged
                break
            except Exception:
                logger.exception("condition_scan_failed", trigger_id=trigger.id, workflow_id=trigger.workflow_id)
                continue
            if execution_id is not None:
                execution_ids.append(execution_id)
        return execution_ids

    async def _scan_trigger(self, trigger: Trigger, now: datetime) -> str | None:
        match trigger.config:
            case ThresholdConfig():
                if self._metric_source is None:
                    return None
                value = await self._metric_source(trigger.config.metric, trigger.organization_id)
                if value is None:
                    return None
                stimulus = ThresholdSample(trigger_id=trigger.id, value=float(value), observed_at=now)
            case DeadlineConfig():
                stimulus = DeadlineScan(trigger_id=trigger.id, today=now.date())
            case _:
                return None
        evaluation = await self._assess(stimulus)
        if evaluation.request is None:
            return None
        return await self._dispatch_logged(evaluation.request, evaluation.fire_key)

    async def _assess(self, stimulus: Any) -> Any:
        try:
            return self.evaluator.assess(stimulus)
        except SystemicError as e:
            await self._halt(e)
            raise

    async def _dispatch_logged(self, request: ExecutionRequest, fire_key: str | None = None) -> str | None:
        try:
            return await self.dispatch(request)
        except SystemicError as e:
            await self._halt(e)
            raise
        except Exception as e:
            logger.warning(
                "trigger_dispatch_failed",
                trigger_id=request.trigger_id,
                workflow_id=request.workflow_id,
                error=str(e),
            )
            if fire_key is not None:
                self.evaluator.release_period(fire_key)
            return None

    async def _halt(self, error: SystemicError) -> None:
        if self._halted:
            return
        self._halted = True
        logger.critical("trigger_evaluation_halted", error=str(error))
        if self._on_halt is not None:
            await self._on_halt(error)


__all__ = ["TriggerService", "WebhookResult", "MetricSource"]
