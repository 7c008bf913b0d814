"""
Resilience manager -- what happens when a step fails.

Manifesto:
    Step failures never escape the engine as unhandled exceptions. Every
    failure is classified, recorded on a single ExecutionError row,
    counted by the step's circuit breaker, and turned into exactly one
    decision: retry after a delay, wait for an open circuit, or park the
    execution in the dead-letter store.

Architecture:
    ::

        handle_failure(execution, workflow, step, error, context)
            │
            ├── CircuitOpenError (fast-fail, executor never called)
            │       └── CircuitOpen(reset_at)  │  DeadLetter after max waits
            │
            ├── classify(error) ──► ErrorKind
            ├── upsert ExecutionError (in place, per (execution, step))
            ├── breakers.record_failure(workflow, step)
            │
            ├── kind not retryable ─────────────► DeadLetter (retry_count 0)
            ├── breaker open ───────────────────► CircuitOpen (no retry used)
            ├── retry_count < max_retries ──────► Retry(backoff delay)
            └── otherwise ──────────────────────► DeadLetter + notification

    Policy resolution: step policy, else workflow policy, else settings.

Tags:
    conduit-core, resilience, retry, circuit-breaker, dead-letter
"""

from __future__ import annotations

import random
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from conduit.core.config import ConduitSettings
from conduit.core.errors import CircuitOpenError
from conduit.core.events import Event, EventBus, EventTypes
from conduit.core.locks import KeyedLock
from conduit.core.logging import get_logger
from conduit.core.store import InMemoryStore
from conduit.core.timestamps import Clock, new_id, utc_now
from conduit.deadletter.store import DeadLetterStore
from conduit.notifications import Notification, NotificationDispatcher

from .circuit_breaker import CircuitBreakerManager
from .classifier import Classification, classify
from .models import (
    BreakerPolicy,
    CircuitOpen,
    CircuitState,
    DeadLetter,
    ErrorStatus,
    ExecutionError,
    FailureContext,
    FailureDecision,
    Retry,
    RetryPolicy,
)
from .retry import ExponentialBackoff

if TYPE_CHECKING:
    from conduit.execution.models import Execution
    from conduit.orchestration.workflow import Step, Workflow

logger = get_logger(__name__)


class ResilienceManager:
    """Classifies step failures and decides retry / circuit-open / dead-letter."""

    def __init__(
        self,
        store: InMemoryStore,
        breakers: CircuitBreakerManager,
        dead_letters: DeadLetterStore,
        settings: ConduitSettings,
        notifier: NotificationDispatcher | None = None,
        bus: EventBus | None = None,
        clock: Clock = utc_now,
        rng: random.Random | None = None,
    ) -> None:
        self._store = store
        self.breakers = breakers
        self.dead_letters = dead_letters
        self._settings = settings
        self._notifier = notifier
        self._bus = bus
        self._clock = clock
        self._rng = rng or random.Random()
        self._locks = KeyedLock()
        self._default_retry = RetryPolicy.from_settings(settings)
        self._default_breaker = BreakerPolicy.from_settings(settings)

    # =========================================================================
    # Policy resolution
    # =========================================================================

    def retry_policy_for(self, workflow: Workflow, step: Step) -> RetryPolicy:
        return step.retry_policy or workflow.retry_policy or self._default_retry

    def breaker_policy_for(self, workflow: Workflow, step: Step) -> BreakerPolicy:
        return step.breaker_policy or workflow.breaker_policy or self._default_breaker

    # =========================================================================
    # Call gating
    # =========================================================================

    async def allow_call(self, workflow: Workflow, step: Step) -> bool:
        return await self.breakers.allow_call(workflow.id, step.id, self.breaker_policy_for(workflow, step))

    def circuit_open_error(self, workflow: Workflow, step: Step) -> CircuitOpenError:
        """Fast-fail error for a refused call, carrying when to ask again.

        Open: the reset instant. Half-open with the probe slot taken: a short
        poll, capped by the reset timeout, until the probe settles.
        """
        state = self.breakers.get(workflow.id, step.id)
        if state is not None and state.state == CircuitState.HALF_OPEN:
            poll = min(state.reset_timeout_seconds, self._settings.breaker_probe_poll_seconds)
            retry_at = self._clock() + timedelta(seconds=poll)
            return CircuitOpenError(workflow.id, step.id, retry_at=retry_at, probe_in_flight=True)
        return CircuitOpenError(workflow.id, step.id, retry_at=state.reset_at if state else None)

    async def record_success(self, execution: Execution, workflow: Workflow, step: Step) -> None:
        """Close the breaker if probing and resolve the step's active error."""
        await self.breakers.record_success(workflow.id, step.id, self.breaker_policy_for(workflow, step))
        async with self._locks.hold((execution.id, step.id)):
            row = self.active_error(execution.id, step.id)
            if row is not None:
                row.transition(ErrorStatus.RESOLVED)
                row.resolution = "recovered"
                row.resolved_at = self._clock()
                row.next_retry_at = None
                self._store.execution_errors.save(row, expected_version=row.version)
                logger.info(
                    "step_recovered",
                    execution_id=execution.id,
                    step_id=step.id,
                    retry_count=row.retry_count,
                )

    # =========================================================================
    # Failure handling
    # =========================================================================

    def active_error(self, execution_id: str, step_id: str) -> ExecutionError | None:
        return self._store.execution_errors.first(
            lambda e: e.execution_id == execution_id and e.step_id == step_id and e.is_active
        )

    def errors_for(self, execution_id: str) -> list[ExecutionError]:
        return self._store.execution_errors.find(lambda e: e.execution_id == execution_id)

    async def handle_failure(
        self,
        execution: Execution,
        workflow: Workflow,
        step: Step,
        error: BaseException,
        context: FailureContext | None = None,
    ) -> FailureDecision:
        """Decide what happens after ``step`` failed with ``error``."""
        context = context or FailureContext()
        if isinstance(error, CircuitOpenError):
            return await self._handle_circuit_fast_fail(execution, workflow, step, error, context)

        classification = classify(error)
        policy = self.retry_policy_for(workflow, step)
        row = await self._upsert_error(execution, step, error, classification, policy)
        breaker = await self.breakers.record_failure(workflow.id, step.id, self.breaker_policy_for(workflow, step))

        logger.warning(
            "step_failure_recorded",
            execution_id=execution.id,
            workflow_id=workflow.id,
            step_id=step.id,
            error_kind=classification.kind.value,
            rule=classification.rule,
            retry_count=row.retry_count,
            breaker_state=breaker.state.value,
            error=str(error),
        )
        await self._emit(EventTypes.ERROR_RECORDED, execution, row.to_dict())

        if not policy.allows(classification.kind):
            return await self._dead_letter(execution, step, row, f"non_retryable:{classification.kind.value}")

        if breaker.state == CircuitState.OPEN:
            return await self._circuit_open(execution, step, row, breaker.reset_at, context)

        backoff = ExponentialBackoff(policy, rng=self._rng)
        if backoff.should_retry(row.retry_count, classification.kind):
            delay = backoff.next_delay(row.retry_count, classification.retry_after)
            async with self._locks.hold((execution.id, step.id)):
                row.retry_count += 1
                row.transition(ErrorStatus.RETRYING)
                row.next_retry_at = self._clock() + timedelta(seconds=delay)
                self._store.execution_errors.save(row, expected_version=row.version)
            logger.info(
                "step_retry_scheduled",
                execution_id=execution.id,
                step_id=step.id,
                retry_count=row.retry_count,
                max_retries=row.max_retries,
                delay_seconds=round(delay, 3),
            )
            return Retry(
                delay_seconds=delay,
                retry_count=row.retry_count,
                error_id=row.id,
                next_retry_at=row.next_retry_at,
            )

        return await self._dead_letter(execution, step, row, "retries_exhausted")

    async def _handle_circuit_fast_fail(
        self,
        execution: Execution,
        workflow: Workflow,
        step: Step,
        error: CircuitOpenError,
        context: FailureContext,
    ) -> FailureDecision:
        policy = self.retry_policy_for(workflow, step)
        async with self._locks.hold((execution.id, step.id)):
            row = self.active_error(execution.id, step.id)
            if row is None:
                row = self._new_error(execution, step, error, classify(error), policy)
                self._store.execution_errors.insert(row)
        state = self.breakers.get(workflow.id, step.id)
        reset_at = error.retry_at or (state.reset_at if state is not None else None)
        logger.info(
            "step_circuit_open",
            execution_id=execution.id,
            workflow_id=workflow.id,
            step_id=step.id,
            circuit_waits=context.circuit_waits,
        )
        return await self._circuit_open(execution, step, row, reset_at, context, counted=not error.probe_in_flight)

    async def _circuit_open(
        self,
        execution: Execution,
        step: Step,
        row: ExecutionError,
        reset_at: Any,
        context: FailureContext,
        counted: bool = True,
    ) -> FailureDecision:
        if counted and context.circuit_waits >= self._settings.circuit_open_max_waits:
            return await self._dead_letter(execution, step, row, "circuit_open")
        async with self._locks.hold((execution.id, step.id)):
            row.transition(ErrorStatus.ESCALATED)
            row.next_retry_at = reset_at
            self._store.execution_errors.save(row, expected_version=row.version)
        waits = context.circuit_waits + 1 if counted else context.circuit_waits
        return CircuitOpen(retry_at=reset_at, error_id=row.id, waits=waits)

    async def _upsert_error(
        self,
        execution: Execution,
        step: Step,
        error: BaseException,
        classification: Classification,
        policy: RetryPolicy,
    ) -> ExecutionError:
        async with self._locks.hold((execution.id, step.id)):
            row = self.active_error(execution.id, step.id)
            if row is None:
                row = self._new_error(execution, step, error, classification, policy)
                self._store.execution_errors.insert(row)
                return row
            row.kind = classification.kind
            row.message = str(error) or type(error).__name__
            row.error_type = type(error).__name__
            row.http_status = classification.http_status
            row.last_seen_at = self._clock()
            self._store.execution_errors.save(row, expected_version=row.version)
            return row

    def _new_error(
        self,
        execution: Execution,
        step: Step,
        error: BaseException,
        classification: Classification,
        policy: RetryPolicy,
    ) -> ExecutionError:
        now = self._clock()
        return ExecutionError(
            id=new_id("err"),
            organization_id=execution.organization_id,
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            step_id=step.id,
            kind=classification.kind,
            message=str(error) or type(error).__name__,
            max_retries=policy.max_retries,
            error_type=type(error).__name__,
            http_status=classification.http_status,
            first_seen_at=now,
            last_seen_at=now,
        )

    async def _dead_letter(
        self,
        execution: Execution,
        step: Step,
        row: ExecutionError,
        reason: str,
    ) -> DeadLetter:
        async with self._locks.hold((execution.id, step.id)):
            row.transition(ErrorStatus.DEAD_LETTER)
            row.next_retry_at = None
            self._store.execution_errors.save(row, expected_version=row.version)
        entry = self.dead_letters.create(execution, row)
        logger.error(
            "execution_dead_lettered",
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            step_id=step.id,
            entry_id=entry.id,
            reason=reason,
            error_kind=row.kind.value,
            retry_count=row.retry_count,
        )
        await self._emit(
            EventTypes.ERROR_DEAD_LETTERED,
            execution,
            {**row.to_dict(), "entry_id": entry.id, "reason": reason},
        )
        await self._emit(EventTypes.DLQ_ENTRY_CREATED, execution, entry.to_dict())
        await self._notify_dead_letter(execution, row, entry.id, reason)
        return DeadLetter(entry_id=entry.id, error_id=row.id, reason=reason)

    async def _notify_dead_letter(
        self,
        execution: Execution,
        row: ExecutionError,
        entry_id: str,
        reason: str,
    ) -> None:
        if self._notifier is None:
            return
        notification = Notification(
            channel=self._settings.error_notification_channel,
            template="execution_dead_lettered",
            data={
                "execution_id": execution.id,
                "workflow_id": execution.workflow_id,
                "step_id": row.step_id,
                "error_kind": row.kind.value,
                "error_message": row.message,
                "retry_count": row.retry_count,
                "entry_id": entry_id,
                "reason": reason,
            },
            recipients=list(self._settings.error_notification_recipients),
        )
        try:
            await self._notifier.send(notification)
        except Exception as e:
            logger.warning("error_notification_failed", execution_id=execution.id, error=str(e))

    async def _emit(self, event_type: str, execution: Execution, payload: dict[str, Any]) -> None:
        if self._bus is None:
            return
        await self._bus.publish(
            Event(
                event_type=event_type,
                source="resilience.manager",
                payload={"execution_id": execution.id, "workflow_id": execution.workflow_id, **payload},
                correlation_id=execution.id,
                organization_id=execution.organization_id,
            )
        )


__all__ = ["ResilienceManager"]
