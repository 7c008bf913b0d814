"""
Conduit runtime - the composition root.

Manifesto:
    Every component takes its collaborators explicitly. The runtime is the
    one place that builds them, wires their callbacks together and owns
    the background loops, so the HTTP API, the CLI and tests all drive the
    same object through the same outbound operations.

Architecture:
    ::

        ConduitRuntime
          ├── InMemoryStore, InMemoryEventBus
          ├── WorkflowRegistry
          ├── ResilienceManager ─┬─ CircuitBreakerManager
          │                      └─ DeadLetterStore ◄── replayer (new execution)
          ├── ExecutionEngine ───── finished callback → replay outcome
          ├── TriggerEvaluator / TriggerService ── submit → engine
          ├── SchedulerService       (loop: scheduler)
          ├── condition scan         (loop: conditions)
          ├── ExecutionMonitor       (loop: monitor)
          ├── AlertEvaluator
          ├── CompensationManager
          └── maintenance            (loop: maintenance; DLQ expiry, backlog alerts)

    A systemic failure anywhere (scheduler tick, trigger evaluation,
    execution run) calls ``_on_halt`` once: triggers and engine refuse new
    work, the scheduler stops and ``engine.halted`` is emitted.

Tags:
    conduit-core, runtime, composition-root, lifecycle
"""

from __future__ import annotations

from typing import Any

from conduit.core.config import ConduitSettings, get_settings
from conduit.core.errors import ConflictError, SystemicError
from conduit.core.events import Event, EventStream, EventTypes
from conduit.core.events.memory import InMemoryEventBus
from conduit.core.logging import get_logger
from conduit.core.scheduling import AsyncioSchedulerBackend, SchedulerService
from conduit.core.store import InMemoryStore
from conduit.core.timestamps import Clock, utc_now
from conduit.deadletter import (
    CompensationManager,
    CompensationReport,
    DeadLetterAction,
    DeadLetterEntry,
    DeadLetterStore,
    ProcessResult,
)
from conduit.deadletter.compensation import HttpCaller
from conduit.execution import (
    Execution,
    ExecutionEngine,
    ExecutionOptions,
    ExecutionRequest,
    ExecutionStatus,
    RegistryStepExecutor,
    StepExecutor,
)
from conduit.monitoring import AlertCondition, AlertEvaluator, AlertEvent, AlertRule, ExecutionMonitor
from conduit.notifications import ChannelRouter, NotificationDispatcher
from conduit.orchestration.registry import WorkflowRegistry
from conduit.orchestration.workflow import Workflow
from conduit.resilience.circuit_breaker import CircuitBreakerManager
from conduit.resilience.manager import ResilienceManager
from conduit.triggers import Trigger, TriggerEvaluator, TriggerService, TriggerType, WebhookResult
from conduit.triggers.service import MetricSource

logger = get_logger(__name__)


class ConduitRuntime:
    """Wires the execution core and exposes its outbound operations.

    Example:
        >>> runtime = ConduitRuntime(settings, executor=executor)
        >>> runtime.register_workflow(Workflow.from_yaml(text))
        >>> await runtime.start()
        >>> execution_id = await runtime.execute("month-end-close", {"period": "2026-09"})
        >>> runtime.get_execution_status(execution_id)["progress"]
        40
        >>> await runtime.stop()
    """

    def __init__(
        self,
        settings: ConduitSettings | None = None,
        executor: StepExecutor | None = None,
        notifier: NotificationDispatcher | None = None,
        clock: Clock = utc_now,
        store: InMemoryStore | None = None,
        http_caller: HttpCaller | None = None,
        metric_source: MetricSource | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock
        self.store = store or InMemoryStore()
        self.bus = InMemoryEventBus(stream_buffer_size=self.settings.subscriber_buffer_size)
        self.notifier = notifier or ChannelRouter()
        self.executor = executor or RegistryStepExecutor()

        self.registry = WorkflowRegistry(self.store, clock=clock)
        self.breakers = CircuitBreakerManager(
            self.store, bus=self.bus, clock=clock, organization_id=self.settings.default_organization_id
        )
        self.dead_letters = DeadLetterStore(
            self.store, bus=self.bus, clock=clock, retention_days=self.settings.dlq_retention_days
        )
        self.resilience = ResilienceManager(
            self.store,
            self.breakers,
            self.dead_letters,
            self.settings,
            notifier=self.notifier,
            bus=self.bus,
            clock=clock,
        )
        self.engine = ExecutionEngine(
            self.store,
            self.registry,
            self.executor,
            self.resilience,
            self.settings,
            bus=self.bus,
            clock=clock,
            on_halt=self._on_halt,
        )
        self.evaluator = TriggerEvaluator(self.store, self.settings, clock=clock)
        self.triggers = TriggerService(
            self.store,
            self.evaluator,
            self.settings,
            submit=self.engine.submit,
            bus=self.bus,
            clock=clock,
            metric_source=metric_source,
            on_halt=self._on_halt,
        )
        self.scheduler = SchedulerService(
            backend=AsyncioSchedulerBackend("scheduler"),
            store=self.store,
            evaluator=self.evaluator,
            submit=self.triggers.dispatch,
            interval_seconds=self.settings.scheduler_interval_seconds,
            clock=clock,
            bus=self.bus,
            on_halt=self._on_halt,
        )
        self.compensation = CompensationManager(
            notifier=self.notifier, http_caller=http_caller, bus=self.bus, clock=clock
        )
        self.monitor = ExecutionMonitor(self.bus, self.settings, queue_source=self.engine.queue_depth, clock=clock)
        self.alerts = AlertEvaluator(
            self.store, self.monitor, self.settings, notifier=self.notifier, bus=self.bus, clock=clock
        )
        self.alerts.attach()

        self._condition_loop = AsyncioSchedulerBackend("conditions")
        self._monitor_loop = AsyncioSchedulerBackend("monitor")
        self._maintenance_loop = AsyncioSchedulerBackend("maintenance")

        self.dead_letters.set_replayer(self._replay)
        self.engine.add_finished_callback(self._on_execution_finished)

        self._attached = False
        self._started = False
        self._halted = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def _attach(self) -> None:
        if not self._attached:
            await self.monitor.attach()
            self._attached = True

    async def start(self, background: bool = True) -> None:
        """Start the engine and, unless ``background`` is False, the periodic loops."""
        if self._started:
            return
        await self._attach()
        await self.engine.start()
        if background:
            self.scheduler.start()
            self._condition_loop.start(
                self._scan_conditions, interval_seconds=self.settings.condition_scan_interval_seconds
            )
            self._monitor_loop.start(self.monitor.poll, interval_seconds=self.settings.monitor_poll_interval_seconds)
            self._maintenance_loop.start(
                self.run_maintenance, interval_seconds=self.settings.maintenance_interval_seconds
            )
        self._started = True
        logger.info("runtime_started", background=background)

    async def stop(self) -> None:
        await self.scheduler.stop()
        for loop in (self._condition_loop, self._monitor_loop, self._maintenance_loop):
            await loop.stop()
        await self.engine.stop()
        await self.monitor.detach()
        await self.bus.close()
        self._attached = False
        self._started = False
        logger.info("runtime_stopped")

    @property
    def halted(self) -> bool:
        return self._halted

    async def _on_halt(self, error: SystemicError) -> None:
        if self._halted:
            return
        self._halted = True
        logger.critical("runtime_halted", error=str(error), error_type=type(error).__name__)
        self.triggers.mark_halted()
        await self.engine.halt(error)
        await self.scheduler.stop()
        await self._condition_loop.stop()
        await self.bus.publish(
            Event(
                event_type=EventTypes.ENGINE_HALTED,
                source="runtime",
                payload={"error": str(error), "error_type": type(error).__name__},
            )
        )

    async def _scan_conditions(self) -> None:
        await self.triggers.scan_conditions()

    async def run_maintenance(self) -> dict[str, int]:
        """One maintenance pass: dead-letter expiry and backlog alert evaluation."""
        expired = await self.dead_letters.expire()
        fired = await self.alerts.evaluate_queue()
        return {"dead_letters_expired": len(expired), "backlog_alerts": len(fired)}

    def health(self) -> dict[str, Any]:
        depth = self.engine.queue_depth()
        return {
            "status": "halted" if self._halted else "ok",
            "halted": self._halted,
            "scheduler": self.scheduler.health().to_dict(),
            "queue": depth.to_dict(),
            "dead_letters": self.dead_letters.stats(),
        }

    # =========================================================================
    # Workflows and triggers
    # =========================================================================

    def register_workflow(self, workflow: Workflow | dict[str, Any] | str) -> Workflow:
        """Register a workflow given as an object, a mapping or YAML text."""
        if isinstance(workflow, str):
            workflow = Workflow.from_yaml(workflow, organization_id=self.settings.default_organization_id)
        elif isinstance(workflow, dict):
            workflow = Workflow.from_dict(workflow, organization_id=self.settings.default_organization_id)
        return self.registry.register(workflow)

    def create_trigger(
        self,
        workflow_id: str,
        name: str,
        trigger_type: TriggerType | str,
        config: dict[str, Any] | None = None,
        organization_id: str | None = None,
        is_active: bool = True,
    ) -> Trigger:
        return self.triggers.create_trigger(
            workflow_id, name, trigger_type, config, organization_id=organization_id, is_active=is_active
        )

    def update_trigger(
        self,
        trigger_id: str,
        *,
        name: str | None = None,
        config: dict[str, Any] | None = None,
        is_active: bool | None = None,
        organization_id: str | None = None,
    ) -> Trigger:
        return self.triggers.update_trigger(
            trigger_id, name=name, config=config, is_active=is_active, organization_id=organization_id
        )

    def delete_trigger(self, trigger_id: str, organization_id: str | None = None) -> None:
        self.triggers.delete_trigger(trigger_id, organization_id)

    def test_trigger(
        self,
        trigger_id: str,
        sample_input: dict[str, Any] | None = None,
        organization_id: str | None = None,
    ) -> dict[str, Any]:
        return self.triggers.test_trigger(trigger_id, sample_input, organization_id)

    async def fire_trigger(
        self,
        trigger_id: str,
        input: dict[str, Any] | None = None,
        actor: str | None = None,
        organization_id: str | None = None,
    ) -> str:
        """Fire a manual trigger."""
        await self._attach()
        return await self.triggers.fire_manual(trigger_id, input, actor=actor, organization_id=organization_id)

    async def process_webhook(
        self,
        token: str,
        method: str = "POST",
        headers: dict[str, str] | None = None,
        body: Any = None,
        query: dict[str, Any] | None = None,
        source_ip: str | None = None,
    ) -> WebhookResult:
        await self._attach()
        return await self.triggers.process_webhook(token, method, headers, body, query, source_ip)

    async def publish_domain_event(
        self,
        event_type: str,
        payload: dict[str, Any] | None = None,
        organization_id: str | None = None,
    ) -> list[str]:
        """Publish a domain event to subscribers and fire matching triggers."""
        await self._attach()
        organization_id = organization_id or self.settings.default_organization_id
        await self.bus.publish(
            Event(
                event_type=event_type,
                source="domain",
                payload=dict(payload or {}),
                organization_id=organization_id,
            )
        )
        return await self.triggers.handle_domain_event(event_type, payload, organization_id)

    # =========================================================================
    # Executions
    # =========================================================================

    async def execute(
        self,
        workflow_id: str,
        input: dict[str, Any] | None = None,
        options: ExecutionOptions | None = None,
        organization_id: str | None = None,
    ) -> str:
        await self._attach()
        options = options or ExecutionOptions()
        request = ExecutionRequest(
            workflow_id=workflow_id,
            input=dict(input or {}),
            organization_id=organization_id or self.settings.default_organization_id,
            trigger_id=options.trigger_id,
            trigger_type=TriggerType.MANUAL.value if options.trigger_id else None,
            options=options,
        )
        return await self.engine.submit(request)

    async def cancel(self, execution_id: str, organization_id: str | None = None) -> dict[str, Any]:
        execution = await self.engine.cancel(execution_id, organization_id)
        return execution.status_snapshot()

    async def signal(
        self,
        execution_id: str,
        step_id: str,
        payload: Any = None,
        organization_id: str | None = None,
    ) -> dict[str, Any]:
        execution = await self.engine.signal(execution_id, step_id, payload, organization_id)
        return execution.status_snapshot()

    def get_execution_status(self, execution_id: str, organization_id: str | None = None) -> dict[str, Any]:
        return self.engine.get_status(execution_id, organization_id)

    async def wait_for(self, execution_id: str, timeout: float | None = None) -> Execution:
        return await self.engine.wait_for(execution_id, timeout)

    async def compensate(self, execution_id: str, organization_id: str | None = None) -> CompensationReport:
        """Run compensating actions for a failed or cancelled execution.

        Raises:
            NotFoundError: Unknown execution
            ConflictError: Execution has not failed or been cancelled
        """
        execution = self.engine.get(execution_id, organization_id)
        if execution.status not in (ExecutionStatus.FAILED, ExecutionStatus.CANCELLED):
            raise ConflictError(
                f"Execution {execution_id} is {execution.status.value}; only failed or cancelled executions compensate"
            )
        workflow = self.registry.get(execution.workflow_id)
        return await self.compensation.compensate(execution, workflow)

    # =========================================================================
    # Dead letters
    # =========================================================================

    async def process_dead_letter(
        self,
        entry_id: str,
        action: DeadLetterAction | str,
        modified_input: dict[str, Any] | None = None,
        actor: str | None = None,
        organization_id: str | None = None,
    ) -> ProcessResult:
        await self._attach()
        return await self.dead_letters.process(
            entry_id, DeadLetterAction(action), modified_input, actor=actor, organization_id=organization_id
        )

    async def _replay(self, entry: DeadLetterEntry, replay_input: dict[str, Any]) -> str:
        options = ExecutionOptions(
            trigger_id=entry.trigger_id,
            resume_from_step=entry.failed_step_id,
            prior_outputs=dict(entry.prior_outputs),
            dead_letter_entry_id=entry.id,
        )
        request = ExecutionRequest(
            workflow_id=entry.workflow_id,
            input=replay_input,
            organization_id=entry.organization_id,
            trigger_id=entry.trigger_id,
            trigger_type="dead_letter_replay",
            options=options,
        )
        return await self.engine.submit(request)

    async def _on_execution_finished(self, execution: Execution) -> None:
        if execution.replay_of_entry_id is None:
            return
        await self.dead_letters.record_replay_outcome(
            execution.replay_of_entry_id,
            execution.id,
            succeeded=execution.status == ExecutionStatus.COMPLETED,
        )

    # =========================================================================
    # Alerts and subscriptions
    # =========================================================================

    def create_alert_rule(
        self,
        name: str,
        condition: AlertCondition | dict[str, Any],
        *,
        workflow_id: str | None = None,
        severity: str = "error",
        channel: str | None = None,
        recipients: list[str] | None = None,
        cooldown_seconds: float | None = None,
        organization_id: str | None = None,
    ) -> AlertRule:
        return self.alerts.create_rule(
            name,
            condition,
            workflow_id=workflow_id,
            severity=severity,
            channel=channel,
            recipients=recipients,
            cooldown_seconds=cooldown_seconds,
            organization_id=organization_id or self.settings.default_organization_id,
        )

    async def acknowledge_alert(
        self, alert_id: str, by: str | None = None, organization_id: str | None = None
    ) -> AlertEvent:
        return await self.alerts.acknowledge(alert_id, by, organization_id)

    async def resolve_alert(self, alert_id: str, by: str | None = None, organization_id: str | None = None) -> AlertEvent:
        return await self.alerts.resolve(alert_id, by, organization_id)

    async def subscribe(
        self,
        workflow_id: str | None = None,
        execution_id: str | None = None,
        event_type: str = "*",
        maxsize: int | None = None,
    ) -> EventStream:
        """Open a bounded live-update stream scoped to a workflow or execution."""

        def wanted(event: Event) -> bool:
            if workflow_id is not None and event.workflow_id != workflow_id:
                return False
            if execution_id is not None and event.execution_id != execution_id:
                return False
            return True

        await self._attach()
        return await self.bus.open_stream(event_type, predicate=wanted, maxsize=maxsize)


__all__ = ["ConduitRuntime"]
