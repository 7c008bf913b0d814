"""Tests for ResilienceManager failure decisions."""

from __future__ import annotations

import pytest

from conduit.core.errors import CircuitOpenError, StepValidationError
from conduit.core.events import Event, EventTypes
from conduit.deadletter.store import DeadLetterStore
from conduit.execution.models import Execution, StepExecution
from conduit.orchestration.workflow import Step, Workflow
from conduit.resilience.circuit_breaker import CircuitBreakerManager
from conduit.resilience.manager import ResilienceManager
from conduit.resilience.models import (
    BreakerPolicy,
    CircuitOpen,
    CircuitState,
    DeadLetter,
    ErrorStatus,
    FailureContext,
    Retry,
    RetryPolicy,
)

LENIENT_BREAKER = BreakerPolicy(failure_threshold=10, reset_timeout_seconds=60)


def make_execution(workflow: Workflow, execution_id: str = "exe_1") -> Execution:
    return Execution(
        id=execution_id,
        organization_id="default",
        workflow_id=workflow.id,
        workflow_version=workflow.version,
        input={"invoice_id": "inv-1"},
        steps={step.id: StepExecution(step_id=step.id) for step in workflow.steps},
    )


@pytest.fixture
def dead_letters(store, bus, clock):
    return DeadLetterStore(store, bus=bus, clock=clock)


@pytest.fixture
def manager(store, bus, clock, settings, dead_letters, dispatcher):
    breakers = CircuitBreakerManager(store, bus=bus, clock=clock)
    return ResilienceManager(store, breakers, dead_letters, settings, notifier=dispatcher, bus=bus, clock=clock)


@pytest.fixture
def workflow():
    return Workflow(
        id="wf",
        name="wf",
        steps=[Step(id="post", action="ledger.post", breaker_policy=LENIENT_BREAKER)],
    )


class TestPolicyResolution:
    """step > workflow > settings."""

    def test_step_policy_wins(self, manager):
        """A step policy overrides the workflow's."""
        step = Step(id="s", retry_policy=RetryPolicy(max_retries=9))
        workflow = Workflow(id="wf", name="wf", steps=[step], retry_policy=RetryPolicy(max_retries=1))
        assert manager.retry_policy_for(workflow, step).max_retries == 9

    def test_settings_default(self, manager, settings):
        """Without step or workflow policy the settings apply."""
        step = Step(id="s")
        workflow = Workflow(id="wf", name="wf", steps=[step])
        assert manager.retry_policy_for(workflow, step).max_retries == settings.retry_max_retries
        assert manager.breaker_policy_for(workflow, step).failure_threshold == settings.breaker_failure_threshold


class TestRetryDecisions:
    """Retry until exhausted, then dead-letter."""

    @pytest.mark.asyncio
    async def test_transient_failure_retries(self, manager, workflow):
        """A transient failure schedules a retry with backoff."""
        execution = make_execution(workflow)
        decision = await manager.handle_failure(execution, workflow, workflow.steps[0], ConnectionError("refused"))
        assert isinstance(decision, Retry)
        assert decision.retry_count == 1
        assert decision.delay_seconds == pytest.approx(0.01)
        row = manager.active_error(execution.id, "post")
        assert row.status == ErrorStatus.RETRYING
        assert row.next_retry_at is not None

    @pytest.mark.asyncio
    async def test_one_error_row_per_step(self, manager, workflow):
        """Repeated failures update one active error record."""
        execution = make_execution(workflow)
        for _ in range(2):
            await manager.handle_failure(execution, workflow, workflow.steps[0], ConnectionError("refused"))
        assert len(manager.errors_for(execution.id)) == 1

    @pytest.mark.asyncio
    async def test_exhausted_retries_dead_letter(self, manager, workflow, dispatcher, store):
        """After max_retries the execution is dead-lettered and notified."""
        execution = make_execution(workflow)
        step = workflow.steps[0]
        decisions = [await manager.handle_failure(execution, workflow, step, ConnectionError("refused")) for _ in range(3)]
        assert [type(d) for d in decisions] == [Retry, Retry, DeadLetter]
        assert decisions[-1].reason == "retries_exhausted"
        entry = store.dead_letters.get(decisions[-1].entry_id)
        assert entry.retry_count == 2
        assert entry.original_input == {"invoice_id": "inv-1"}
        assert dispatcher.templates() == ["execution_dead_lettered"]
        assert manager.errors_for(execution.id)[0].status == ErrorStatus.DEAD_LETTER

    @pytest.mark.asyncio
    async def test_non_retryable_dead_letters_immediately(self, manager, workflow, bus):
        """Validation failures skip retries entirely."""
        seen: list[Event] = []

        async def handler(event: Event) -> None:
            seen.append(event)

        await bus.subscribe(EventTypes.ERROR_DEAD_LETTERED, handler)
        execution = make_execution(workflow)
        decision = await manager.handle_failure(execution, workflow, workflow.steps[0], StepValidationError("bad payload"))
        assert isinstance(decision, DeadLetter)
        assert decision.reason == "non_retryable:validation"
        assert seen[0].payload["entry_id"] == decision.entry_id

    @pytest.mark.asyncio
    async def test_success_resolves_active_error(self, manager, workflow):
        """A success after a retry resolves the error as recovered."""
        execution = make_execution(workflow)
        step = workflow.steps[0]
        await manager.handle_failure(execution, workflow, step, ConnectionError("refused"))
        await manager.record_success(execution, workflow, step)
        assert manager.active_error(execution.id, "post") is None
        row = manager.errors_for(execution.id)[0]
        assert row.status == ErrorStatus.RESOLVED
        assert row.resolution == "recovered"


class TestCircuitDecisions:
    """Open breakers park steps instead of consuming retries."""

    @pytest.mark.asyncio
    async def test_breaker_opening_parks_step(self, manager, settings):
        """The failure that opens the breaker yields a circuit-open decision."""
        step = Step(id="post", action="ledger.post", breaker_policy=BreakerPolicy(failure_threshold=1))
        workflow = Workflow(id="wf", name="wf", steps=[step])
        execution = make_execution(workflow)
        decision = await manager.handle_failure(execution, workflow, step, ConnectionError("refused"))
        assert isinstance(decision, CircuitOpen)
        assert decision.waits == 1
        assert manager.breakers.state_of("wf", "post") == CircuitState.OPEN
        assert manager.active_error(execution.id, "post").status == ErrorStatus.ESCALATED

    @pytest.mark.asyncio
    async def test_fast_fail_does_not_consume_retries(self, manager, workflow):
        """CircuitOpenError does not bump the retry count."""
        execution = make_execution(workflow)
        step = workflow.steps[0]
        decision = await manager.handle_failure(execution, workflow, step, CircuitOpenError("wf", "post"))
        assert isinstance(decision, CircuitOpen)
        assert manager.active_error(execution.id, "post").retry_count == 0

    @pytest.mark.asyncio
    async def test_too_many_waits_dead_letter(self, manager, workflow, settings):
        """Beyond circuit_open_max_waits the execution is dead-lettered."""
        execution = make_execution(workflow)
        context = FailureContext(circuit_waits=settings.circuit_open_max_waits)
        decision = await manager.handle_failure(execution, workflow, workflow.steps[0], CircuitOpenError("wf", "post"), context)
        assert isinstance(decision, DeadLetter)
        assert decision.reason == "circuit_open"
