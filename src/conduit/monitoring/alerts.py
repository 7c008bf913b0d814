"""
Alert evaluator - turns monitor updates into alert events.

Manifesto:
    Alerts answer "does a human need to look at this?" Rules are evaluated
    on every terminal execution event, after the monitor has folded the
    event into its rolling aggregates, and on every queue snapshot. A
    rule that fires is silenced for its cooldown per (rule, workflow), so
    a failing workflow produces one alert rather than a storm.

Architecture:
    ::

        ExecutionMonitor ── (event, view) ──► on_event
                                                │  execution_failed
                                                │  consecutive_failures
                                                │  slow_execution
                                                │  high_error_rate
                         ── QueueSnapshot ──► on_queue_snapshot
                                                │  queue_backlog
                                                ▼
                                   cooldown check (rule, workflow)
                                                ▼
                        AlertEvent ─► store ─► alert.fired ─► notification port

Tags:
    conduit-core, monitoring, alerts, cooldown, notifications
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from conduit.core.config import ConduitSettings
from conduit.core.errors import NotFoundError
from conduit.core.events import Event, EventBus, EventTypes
from conduit.core.logging import get_logger
from conduit.core.store import InMemoryStore
from conduit.core.timestamps import Clock, new_id, utc_now
from conduit.notifications import Notification, NotificationDispatcher

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
    condition_type,
)
from .monitor import ExecutionMonitor

logger = get_logger(__name__)

_ALL_WORKFLOWS = "*"


class AlertEvaluator:
    """Evaluates alert rules and owns alert rule/event rows.

    Example:
        >>> alerts = AlertEvaluator(store, monitor, settings, notifier=dispatcher, bus=bus)
        >>> alerts.attach()
        >>> alerts.create_rule("close failures", {"type": "consecutive_failures", "count": 3},
        ...                    workflow_id="month-end-close")
    """

    def __init__(
        self,
        store: InMemoryStore,
        monitor: ExecutionMonitor,
        settings: ConduitSettings,
        notifier: NotificationDispatcher | None = None,
        bus: EventBus | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._monitor = monitor
        self._settings = settings
        self._notifier = notifier
        self._bus = bus
        self._clock = clock
        self._last_fired: dict[tuple[str, str], datetime] = {}

    def attach(self) -> None:
        self._monitor.add_listener(self.on_event)
        self._monitor.add_snapshot_listener(self.on_queue_snapshot)

    # =========================================================================
    # Rules
    # =========================================================================

    def create_rule(
        self,
        name: str,
        condition: AlertCondition | dict[str, Any],
        *,
        workflow_id: str | None = None,
        severity: AlertSeverity | str = AlertSeverity.ERROR,
        channel: str | None = None,
        recipients: list[str] | None = None,
        cooldown_seconds: float | None = None,
        enabled: bool = True,
        organization_id: str = "default",
    ) -> AlertRule:
        """Create an alert rule.

        Raises:
            ConfigurationError: Invalid condition
        """
        if isinstance(condition, dict):
            condition = condition_from_dict(condition)
        rule = AlertRule(
            id=new_id("alr"),
            organization_id=organization_id,
            name=name,
            condition=condition,
            workflow_id=workflow_id,
            severity=AlertSeverity(severity),
            channel=channel or self._settings.error_notification_channel,
            recipients=list(recipients or []),
            cooldown_seconds=cooldown_seconds,
            enabled=enabled,
            created_at=self._clock(),
        )
        self._store.alert_rules.insert(rule)
        logger.info(
            "alert_rule_created",
            rule_id=rule.id,
            condition=condition_type(condition),
            workflow_id=workflow_id,
        )
        return rule

    def get_rule(self, rule_id: str, organization_id: str | None = None) -> AlertRule:
        rule = self._store.alert_rules.get(rule_id, organization_id)
        if rule is None:
            raise NotFoundError(f"Alert rule {rule_id} not found")
        return rule

    def list_rules(self, organization_id: str | None = None, workflow_id: str | None = None) -> list[AlertRule]:
        return self._store.alert_rules.find(
            lambda r: workflow_id is None or r.workflow_id in (None, workflow_id),
            organization_id=organization_id,
        )

    def set_rule_enabled(self, rule_id: str, enabled: bool, organization_id: str | None = None) -> AlertRule:
        rule = self.get_rule(rule_id, organization_id)
        rule.enabled = enabled
        return self._store.alert_rules.save(rule)

    def delete_rule(self, rule_id: str, organization_id: str | None = None) -> None:
        rule = self.get_rule(rule_id, organization_id)
        self._store.alert_rules.delete(rule.id)
        for key in [k for k in self._last_fired if k[0] == rule.id]:
            del self._last_fired[key]

    def _rules_for(self, workflow_id: str | None, organization_id: str | None) -> list[AlertRule]:
        return self._store.alert_rules.find(
            lambda r: r.enabled and r.applies_to(workflow_id),
            organization_id=organization_id,
        )

    # =========================================================================
    # Evaluation
    # =========================================================================

    async def on_event(self, event: Event, view: ExecutionView | None) -> list[AlertEvent]:
        if event.event_type not in (EventTypes.EXECUTION_COMPLETED, EventTypes.EXECUTION_FAILED):
            return []
        workflow_id = event.workflow_id
        if workflow_id is None:
            return []
        failed = event.event_type == EventTypes.EXECUTION_FAILED
        payload = event.payload
        stats = self._monitor.stats_for(workflow_id)
        now = self._clock()

        fired: list[AlertEvent] = []
        for rule in self._rules_for(workflow_id, event.organization_id):
            context: dict[str, Any] | None = None
            match rule.condition:
                case ExecutionFailedCondition(error_kinds=kinds):
                    if failed and (not kinds or payload.get("error_kind") in kinds):
                        context = {
                            "failed_step_id": payload.get("failed_step_id"),
                            "error": payload.get("error"),
                            "error_kind": payload.get("error_kind"),
                            "dead_letter_entry_id": payload.get("dead_letter_entry_id"),
                        }
                case ConsecutiveFailuresCondition(count=count):
                    if failed and stats.consecutive_failures >= count:
                        context = {"consecutive_failures": stats.consecutive_failures, "count": count}
                case SlowExecutionCondition(threshold_seconds=threshold):
                    duration = payload.get("duration_seconds")
                    if not failed and duration is not None and duration > threshold:
                        context = {"duration_seconds": duration, "threshold_seconds": threshold}
                case HighErrorRateCondition():
                    rate, samples = stats.window.failure_rate(now, rule.condition.window_seconds)
                    if samples >= rule.condition.min_samples and rate > rule.condition.threshold:
                        context = {
                            "failure_rate": round(rate, 4),
                            "samples": samples,
                            "threshold": rule.condition.threshold,
                            "window_seconds": rule.condition.window_seconds,
                        }
                case QueueBacklogCondition():
                    continue
            if context is None:
                continue
            alert = await self._fire(rule, workflow_id, event.execution_id, context)
            if alert is not None:
                fired.append(alert)
        return fired

    async def on_queue_snapshot(self, snapshot: QueueSnapshot) -> list[AlertEvent]:
        fired: list[AlertEvent] = []
        for rule in self._store.alert_rules.find(lambda r: r.enabled):
            if not isinstance(rule.condition, QueueBacklogCondition):
                continue
            condition = rule.condition
            age = snapshot.oldest_pending_age_seconds
            over_depth = snapshot.pending > condition.max_pending
            over_age = condition.max_oldest_age_seconds is not None and age is not None and (
                age > condition.max_oldest_age_seconds
            )
            if not (over_depth or over_age):
                continue
            context = {
                "pending": snapshot.pending,
                "max_pending": condition.max_pending,
                "oldest_pending_age_seconds": age,
                "pending_by_priority": dict(snapshot.pending_by_priority),
            }
            alert = await self._fire(rule, rule.workflow_id, None, context)
            if alert is not None:
                fired.append(alert)
        return fired

    async def evaluate_queue(self) -> list[AlertEvent]:
        """Evaluate backlog rules against a fresh snapshot (maintenance loop)."""
        return await self.on_queue_snapshot(self._monitor.queue_snapshot())

    def _in_cooldown(self, rule: AlertRule, workflow_id: str | None, now: datetime) -> bool:
        last = self._last_fired.get((rule.id, workflow_id or _ALL_WORKFLOWS))
        if last is None:
            return False
        cooldown = rule.cooldown_seconds
        if cooldown is None:
            cooldown = self._settings.alert_cooldown_seconds
        return now - last < timedelta(seconds=cooldown)

    async def _fire(
        self,
        rule: AlertRule,
        workflow_id: str | None,
        execution_id: str | None,
        context: dict[str, Any],
    ) -> AlertEvent | None:
        now = self._clock()
        if self._in_cooldown(rule, workflow_id, now):
            logger.debug("alert_suppressed_cooldown", rule_id=rule.id, workflow_id=workflow_id)
            return None
        self._last_fired[(rule.id, workflow_id or _ALL_WORKFLOWS)] = now

        kind = condition_type(rule.condition)
        subject = workflow_id or "queue"
        alert = AlertEvent(
            id=new_id("alt"),
            organization_id=rule.organization_id,
            rule_id=rule.id,
            rule_name=rule.name,
            condition_type=kind,
            severity=rule.severity,
            title=f"{rule.name}: {kind.replace('_', ' ')} ({subject})",
            message=_describe(kind, workflow_id, context),
            fired_at=now,
            workflow_id=workflow_id,
            execution_id=execution_id,
            context=context,
        )
        self._store.alert_events.insert(alert)
        logger.warning(
            "alert_fired",
            alert_id=alert.id,
            rule_id=rule.id,
            condition=kind,
            workflow_id=workflow_id,
            execution_id=execution_id,
            severity=rule.severity.value,
        )
        await self._emit(EventTypes.ALERT_FIRED, alert)
        await self._notify(rule, alert)
        return alert

    async def _notify(self, rule: AlertRule, alert: AlertEvent) -> None:
        if self._notifier is None:
            return
        notification = Notification(
            channel=rule.channel,
            template=f"alert.{alert.condition_type}",
            data=alert.to_dict(),
            recipients=list(rule.recipients or self._settings.error_notification_recipients),
        )
        try:
            result = await self._notifier.send(notification)
        except Exception as e:
            logger.warning("alert_notification_failed", alert_id=alert.id, error=str(e))
            return
        if not result.success:
            logger.warning("alert_notification_failed", alert_id=alert.id, error=result.message)

    # =========================================================================
    # Acknowledge / resolve
    # =========================================================================

    def get_alert(self, alert_id: str, organization_id: str | None = None) -> AlertEvent:
        alert = self._store.alert_events.get(alert_id, organization_id)
        if alert is None:
            raise NotFoundError(f"Alert {alert_id} not found")
        return alert

    def list_alerts(
        self,
        status: AlertStatus | None = None,
        workflow_id: str | None = None,
        organization_id: str | None = None,
    ) -> list[AlertEvent]:
        alerts = self._store.alert_events.find(
            lambda a: (status is None or a.status == status) and (workflow_id is None or a.workflow_id == workflow_id),
            organization_id=organization_id,
        )
        alerts.sort(key=lambda a: a.fired_at, reverse=True)
        return alerts

    async def acknowledge(self, alert_id: str, by: str | None = None, organization_id: str | None = None) -> AlertEvent:
        """Acknowledge a firing alert; repeating it is a no-op.

        Raises:
            NotFoundError: Unknown alert
            InvalidTransitionError: Alert already resolved
        """
        alert = self.get_alert(alert_id, organization_id)
        if alert.status == AlertStatus.ACKNOWLEDGED:
            return alert
        alert.transition(AlertStatus.ACKNOWLEDGED)
        alert.acknowledged_at = self._clock()
        alert.acknowledged_by = by
        self._store.alert_events.save(alert)
        logger.info("alert_acknowledged", alert_id=alert.id, by=by)
        await self._emit(EventTypes.ALERT_ACKNOWLEDGED, alert)
        return alert

    async def resolve(self, alert_id: str, by: str | None = None, organization_id: str | None = None) -> AlertEvent:
        """Resolve an alert; resolving a resolved alert is a no-op."""
        alert = self.get_alert(alert_id, organization_id)
        if alert.status == AlertStatus.RESOLVED:
            return alert
        alert.transition(AlertStatus.RESOLVED)
        alert.resolved_at = self._clock()
        alert.resolved_by = by
        self._store.alert_events.save(alert)
        logger.info("alert_resolved", alert_id=alert.id, by=by)
        await self._emit(EventTypes.ALERT_RESOLVED, alert)
        return alert

    async def _emit(self, event_type: str, alert: AlertEvent) -> None:
        if self._bus is None:
            return
        await self._bus.publish(
            Event(
                event_type=event_type,
                source="monitoring.alerts",
                payload={
                    "alert_id": alert.id,
                    "rule_id": alert.rule_id,
                    "workflow_id": alert.workflow_id,
                    "execution_id": alert.execution_id,
                    "severity": alert.severity.value,
                    "status": alert.status.value,
                    "title": alert.title,
                },
                correlation_id=alert.execution_id,
                organization_id=alert.organization_id,
            )
        )


def _describe(kind: str, workflow_id: str | None, context: dict[str, Any]) -> str:
    match kind:
        case "execution_failed":
            return (
                f"Execution of {workflow_id} failed at step {context.get('failed_step_id')}: "
                f"{context.get('error')}"
            )
        case "consecutive_failures":
            return f"Last {context['consecutive_failures']} executions of {workflow_id} failed"
        case "slow_execution":
            return (
                f"Execution of {workflow_id} took {context['duration_seconds']:.1f}s "
                f"(threshold {context['threshold_seconds']}s)"
            )
        case "high_error_rate":
            return (
                f"{workflow_id} failure rate {context['failure_rate']:.0%} over "
                f"{context['samples']} executions exceeds {context['threshold']:.0%}"
            )
        case "queue_backlog":
            return f"{context['pending']} executions pending (limit {context['max_pending']})"
        case _:
            return kind


__all__ = ["AlertEvaluator"]
