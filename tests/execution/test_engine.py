"""Tests for ExecutionEngine through a started runtime."""

from __future__ import annotations

import asyncio

import pytest

from conduit.core.errors import (
    ConflictError,
    EngineHaltedError,
    NotCancellableError,
    NotFoundError,
    PersistenceError,
    QueueBacklogError,
    StepValidationError,
    TransientStepError,
)
from conduit.core.events import Event, EventTypes
from conduit.execution import ExecutionOptions, RegistryStepExecutor
from conduit.execution.models import ExecutionPriority, ExecutionStatus, StepStatus
from conduit.orchestration.workflow import (
    ExecutionMode,
    ExecutionPolicy,
    Step,
    StepKind,
    Workflow,
    WorkflowStatus,
)
from conduit.resilience.models import CircuitState, RetryPolicy


async def record(rt, pattern: str = "*") -> list[Event]:
    events: list[Event] = []

    async def handler(event: Event) -> None:
        events.append(event)

    await rt.bus.subscribe(pattern, handler)
    return events


def diamond(mode: ExecutionMode = ExecutionMode.PARALLEL, max_concurrency: int = 4) -> Workflow:
    return Workflow(
        id="wf-diamond",
        name="diamond",
        steps=[
            Step(id="start", action="track"),
            Step(id="left", action="track", depends_on=("start",)),
            Step(id="right", action="track", depends_on=("start",)),
            Step(id="join", action="track", depends_on=("left", "right")),
        ],
        execution_policy=ExecutionPolicy(mode=mode, max_concurrency=max_concurrency),
    )


class ConcurrencyTracker:
    def __init__(self) -> None:
        self.current = 0
        self.peak = 0
        self.order: list[str] = []

    async def __call__(self, input, ctx):
        self.current += 1
        self.peak = max(self.peak, self.current)
        self.order.append(ctx.step_id)
        await asyncio.sleep(0.02)
        self.current -= 1
        return {"step": ctx.step_id, "upstream": sorted(ctx.upstream_outputs)}


class TestSuccessfulRuns:
    """Happy paths."""

    @pytest.mark.asyncio
    async def test_linear_completes(self, runtime, workflow_factory):
        """Steps run in order and their outputs are kept."""
        runtime.register_workflow(workflow_factory())
        events = await record(runtime)
        execution_id = await runtime.execute("wf-linear", {"invoice_id": "inv-1"})
        execution = await runtime.wait_for(execution_id, timeout=2)
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.completion_order == ["a", "b", "c"]
        assert execution.outputs() == {"a": {"step": "a"}, "b": {"step": "b"}, "c": {"step": "c"}}
        assert execution.progress == 100
        types = [e.event_type for e in events if e.execution_id == execution_id]
        assert types[0] == EventTypes.EXECUTION_CREATED
        assert types[-1] == EventTypes.EXECUTION_COMPLETED
        assert types.count(EventTypes.STEP_COMPLETED) == 3

    @pytest.mark.asyncio
    async def test_status_snapshot(self, runtime, workflow_factory):
        """The status view carries progress and step detail."""
        runtime.register_workflow(workflow_factory())
        execution_id = await runtime.execute("wf-linear")
        await runtime.wait_for(execution_id, timeout=2)
        status = runtime.get_execution_status(execution_id)
        assert status["status"] == "completed"
        assert status["progress"] == 100
        assert [s["step_id"] for s in status["steps"]] == ["a", "b", "c"]
        assert status["current_step"] is None

    @pytest.mark.asyncio
    async def test_parallel_branches_overlap(self, runtime):
        """Independent branches run concurrently in parallel mode."""
        tracker = ConcurrencyTracker()
        runtime.executor.register("track", tracker)
        runtime.register_workflow(diamond())
        execution = await runtime.wait_for(await runtime.execute("wf-diamond"), timeout=2)
        assert execution.status == ExecutionStatus.COMPLETED
        assert tracker.peak == 2
        assert tracker.order[0] == "start"
        assert tracker.order[-1] == "join"
        assert execution.steps["join"].output["upstream"] == ["left", "right", "start"]

    @pytest.mark.asyncio
    async def test_sequential_runs_one_at_a_time(self, runtime):
        """Sequential mode never overlaps steps."""
        tracker = ConcurrencyTracker()
        runtime.executor.register("track", tracker)
        runtime.register_workflow(diamond(ExecutionMode.SEQUENTIAL))
        execution = await runtime.wait_for(await runtime.execute("wf-diamond"), timeout=2)
        assert execution.status == ExecutionStatus.COMPLETED
        assert tracker.peak == 1
        assert tracker.order == ["start", "left", "right", "join"]

    @pytest.mark.asyncio
    async def test_max_concurrency(self, runtime):
        """max_concurrency caps running steps in parallel mode."""
        tracker = ConcurrencyTracker()
        runtime.executor.register("track", tracker)
        runtime.register_workflow(diamond(max_concurrency=1))
        await runtime.wait_for(await runtime.execute("wf-diamond"), timeout=2)
        assert tracker.peak == 1

    @pytest.mark.asyncio
    async def test_step_input_is_execution_input(self, runtime):
        """Every step receives the execution input."""
        seen = []
        runtime.executor.register("capture", lambda input, ctx: seen.append(input) or {})
        runtime.register_workflow(Workflow(id="wf", name="wf", steps=[Step(id="s", action="capture")]))
        await runtime.wait_for(await runtime.execute("wf", {"amount": 10}), timeout=2)
        assert seen == [{"amount": 10}]


class TestSubmission:
    """Validation, idempotency, priority and backlog."""

    @pytest.mark.asyncio
    async def test_unknown_workflow(self, runtime):
        """Submitting an unknown workflow raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await runtime.execute("missing")

    @pytest.mark.asyncio
    async def test_inactive_workflow(self, runtime, workflow_factory):
        """Only active workflows execute."""
        runtime.register_workflow(workflow_factory(status=WorkflowStatus.DRAFT))
        with pytest.raises(ConflictError):
            await runtime.execute("wf-linear")

    @pytest.mark.asyncio
    async def test_idempotency_key(self, runtime, workflow_factory):
        """A repeated idempotency key returns the first execution."""
        runtime.register_workflow(workflow_factory())
        options = ExecutionOptions(idempotency_key="inv-1")
        first = await runtime.execute("wf-linear", options=options)
        second = await runtime.execute("wf-linear", options=options)
        assert first == second
        assert len(runtime.engine.list_executions()) == 1

    @pytest.mark.asyncio
    async def test_priority_order(self, runtime_factory, settings_factory, eventually):
        """Queued executions start critical first, low last."""
        executor = RegistryStepExecutor()
        release = asyncio.Event()
        started: list[str] = []

        async def block(input, ctx):
            await release.wait()

        executor.register("block", block)
        executor.register("record", lambda input, ctx: started.append(input["name"]))
        rt = await runtime_factory(settings_factory(max_concurrent_executions=1), step_executor=executor)
        rt.register_workflow(Workflow(id="blocker", name="blocker", steps=[Step(id="s", action="block")]))
        rt.register_workflow(Workflow(id="rec", name="rec", steps=[Step(id="s", action="record")]))

        await rt.execute("blocker")
        await eventually(lambda: rt.engine.running_count == 1)
        for name, priority in (("low", "low"), ("critical", "critical"), ("normal", "normal")):
            await rt.execute("rec", {"name": name}, ExecutionOptions(priority=ExecutionPriority(priority)))
        assert rt.engine.queue_depth().pending_by_priority["critical"] == 1
        release.set()
        await eventually(lambda: len(started) == 3)
        assert started == ["critical", "normal", "low"]

    @pytest.mark.asyncio
    async def test_backlog_limit(self, runtime_factory, settings_factory, eventually):
        """Submissions beyond max_pending_executions are refused."""
        executor = RegistryStepExecutor()
        release = asyncio.Event()

        async def block(input, ctx):
            await release.wait()

        executor.register("block", block)
        rt = await runtime_factory(
            settings_factory(max_concurrent_executions=1, max_pending_executions=1), step_executor=executor
        )
        rt.register_workflow(Workflow(id="blocker", name="blocker", steps=[Step(id="s", action="block")]))
        await rt.execute("blocker")
        await eventually(lambda: rt.engine.running_count == 1)
        await rt.execute("blocker")
        with pytest.raises(QueueBacklogError):
            await rt.execute("blocker")
        release.set()

    @pytest.mark.asyncio
    async def test_halted_engine_refuses(self, runtime, workflow_factory):
        """After a systemic failure new executions are refused."""
        runtime.register_workflow(workflow_factory())
        await runtime.engine.halt(PersistenceError("store gone"))
        with pytest.raises(EngineHaltedError):
            await runtime.execute("wf-linear")


class TestFailures:
    """Retry, dead letter and circuit interplay."""

    @pytest.mark.asyncio
    async def test_retry_then_success(self, runtime, workflow_factory):
        """A transient failure is retried and the execution completes."""
        attempts = []

        def flaky(input, ctx):
            attempts.append(ctx.attempt)
            if ctx.attempt == 1:
                raise TransientStepError("ledger busy")
            return {"posted": True}

        runtime.executor.register("b", flaky)
        runtime.register_workflow(workflow_factory())
        events = await record(runtime, EventTypes.STEP_RETRYING)
        execution = await runtime.wait_for(await runtime.execute("wf-linear"), timeout=2)
        assert execution.status == ExecutionStatus.COMPLETED
        assert attempts == [1, 2]
        assert execution.steps["b"].retry_count == 1
        assert execution.retry_count == 1
        assert events[0].payload["step_id"] == "b"

    @pytest.mark.asyncio
    async def test_non_retryable_dead_letters(self, runtime, workflow_factory):
        """A validation error fails the execution at once and skips the rest."""

        def invalid(input, ctx):
            raise StepValidationError("amount must be positive")

        runtime.executor.register("b", invalid)
        runtime.register_workflow(workflow_factory())
        execution = await runtime.wait_for(await runtime.execute("wf-linear"), timeout=2)
        assert execution.status == ExecutionStatus.FAILED
        assert execution.failed_step_id == "b"
        assert execution.error == "amount must be positive"
        assert execution.steps["b"].status == StepStatus.FAILED
        assert execution.steps["b"].error_kind == "validation"
        assert execution.steps["c"].status == StepStatus.SKIPPED
        entry = runtime.dead_letters.get(execution.dead_letter_entry_id)
        assert entry.prior_outputs == {"a": {"step": "a"}}

    @pytest.mark.asyncio
    async def test_missing_handler_is_permanent(self, runtime):
        """An action with no handler dead-letters without retries."""
        runtime.register_workflow(Workflow(id="wf", name="wf", steps=[Step(id="s", action="nobody")]))
        execution = await runtime.wait_for(await runtime.execute("wf"), timeout=2)
        assert execution.status == ExecutionStatus.FAILED
        assert execution.steps["s"].error_kind == "permanent"
        assert execution.steps["s"].attempt == 1

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, runtime_factory, settings_factory):
        """After max_retries a failing step dead-letters the execution."""
        executor = RegistryStepExecutor()
        calls = []

        def down(input, ctx):
            calls.append(1)
            raise TransientStepError("service unavailable")

        executor.register("down", down)
        rt = await runtime_factory(settings_factory(breaker_failure_threshold=10), step_executor=executor)
        rt.register_workflow(Workflow(id="wf", name="wf", steps=[Step(id="s", action="down")]))
        execution = await rt.wait_for(await rt.execute("wf"), timeout=2)
        assert execution.status == ExecutionStatus.FAILED
        assert len(calls) == 3
        assert execution.steps["s"].retry_count == 2

    @pytest.mark.asyncio
    async def test_open_circuit_parks_then_dead_letters(self, runtime):
        """A persistently failing step opens its breaker and finally dead-letters."""

        def down(input, ctx):
            raise TransientStepError("service unavailable")

        runtime.executor.register("down", down)
        runtime.register_workflow(Workflow(id="wf", name="wf", steps=[Step(id="s", action="down")]))
        dead = await record(runtime, EventTypes.ERROR_DEAD_LETTERED)
        waiting = await record(runtime, EventTypes.EXECUTION_WAITING)
        execution = await runtime.wait_for(await runtime.execute("wf"), timeout=3)
        assert execution.status == ExecutionStatus.FAILED
        assert dead[0].payload["reason"] == "circuit_open"
        assert any(e.payload["reason"] == "circuit_open" for e in waiting)
        assert runtime.breakers.state_of("wf", "s") == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_half_open_callers_wait_for_probe(self, runtime_factory, settings_factory, eventually):
        """While the half-open probe is running, other executions wait instead of dead-lettering."""
        executor = RegistryStepExecutor()
        gate = asyncio.Event()
        calls: list[int] = []

        async def ledger(input, ctx):
            calls.append(1)
            if len(calls) == 1:
                raise TransientStepError("ledger down")
            await gate.wait()
            return {"posted": True}

        executor.register("ledger", ledger)
        rt = await runtime_factory(
            settings_factory(breaker_failure_threshold=1, circuit_open_max_waits=3),
            step_executor=executor,
        )
        rt.register_workflow(Workflow(id="wf", name="wf", steps=[Step(id="post", action="ledger")]))
        dead = await record(rt, EventTypes.ERROR_DEAD_LETTERED)

        probe_id = await rt.execute("wf")
        await eventually(lambda: len(calls) == 2)
        assert rt.breakers.state_of("wf", "post") == CircuitState.HALF_OPEN

        other_id = await rt.execute("wf")
        await asyncio.sleep(0.3)
        assert rt.get_execution_status(other_id)["status"] in ("running", "waiting")
        assert dead == []

        gate.set()
        assert (await rt.wait_for(probe_id, timeout=2)).status == ExecutionStatus.COMPLETED
        assert (await rt.wait_for(other_id, timeout=2)).status == ExecutionStatus.COMPLETED
        assert rt.breakers.state_of("wf", "post") == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_step_timeout(self, runtime):
        """A step exceeding its timeout fails with the timeout kind."""

        async def slow(input, ctx):
            await asyncio.sleep(1)

        runtime.executor.register("slow", slow)
        runtime.register_workflow(
            Workflow(
                id="wf",
                name="wf",
                steps=[Step(id="s", action="slow", timeout_seconds=0.02, retry_policy=RetryPolicy(max_retries=0))],
            )
        )
        execution = await runtime.wait_for(await runtime.execute("wf"), timeout=2)
        assert execution.status == ExecutionStatus.FAILED
        assert execution.steps["s"].error_kind == "timeout"

    @pytest.mark.asyncio
    async def test_execution_timeout_override(self, runtime):
        """The execution's timeout option overrides the step's."""

        async def slow(input, ctx):
            await asyncio.sleep(0.2)
            return {"done": True}

        runtime.executor.register("slow", slow)
        runtime.register_workflow(
            Workflow(id="wf", name="wf", steps=[Step(id="s", action="slow", timeout_seconds=0.01)])
        )
        execution_id = await runtime.execute("wf", options=ExecutionOptions(timeout_seconds=5))
        execution = await runtime.wait_for(execution_id, timeout=2)
        assert execution.status == ExecutionStatus.COMPLETED


class TestWaitingSteps:
    """Wait and signal steps."""

    @pytest.mark.asyncio
    async def test_wait_step(self, runtime):
        """A wait step puts the execution in waiting, then it resumes."""
        runtime.register_workflow(
            Workflow(
                id="wf",
                name="wf",
                steps=[
                    Step(id="pause", kind=StepKind.WAIT, wait_seconds=0.05),
                    Step(id="a", action="a", depends_on=("pause",)),
                ],
            )
        )
        events = await record(runtime, "execution.*")
        execution = await runtime.wait_for(await runtime.execute("wf"), timeout=2)
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.steps["pause"].output == {"waited_seconds": 0.05}
        types = [e.event_type for e in events]
        assert EventTypes.EXECUTION_WAITING in types
        assert EventTypes.EXECUTION_RESUMED in types

    @pytest.mark.asyncio
    async def test_signal_step(self, runtime, eventually):
        """A signal step parks until input is delivered."""
        runtime.register_workflow(
            Workflow(
                id="wf",
                name="wf",
                steps=[
                    Step(id="approve", kind=StepKind.SIGNAL),
                    Step(id="a", action="a", depends_on=("approve",)),
                ],
            )
        )
        execution_id = await runtime.execute("wf")
        await eventually(lambda: runtime.engine.get(execution_id).status == ExecutionStatus.WAITING)
        assert runtime.get_execution_status(execution_id)["waiting_reason"] == "signal"
        await runtime.signal(execution_id, "approve", {"approved_by": "controller"})
        execution = await runtime.wait_for(execution_id, timeout=2)
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.steps["approve"].output == {"approved_by": "controller"}

    @pytest.mark.asyncio
    async def test_signal_non_signal_step(self, runtime, eventually):
        """Signalling an action step is a conflict."""
        runtime.register_workflow(
            Workflow(
                id="wf",
                name="wf",
                steps=[Step(id="approve", kind=StepKind.SIGNAL), Step(id="a", action="a", depends_on=("approve",))],
            )
        )
        execution_id = await runtime.execute("wf")
        await eventually(lambda: runtime.engine.get(execution_id).status == ExecutionStatus.WAITING)
        with pytest.raises(ConflictError):
            await runtime.signal(execution_id, "a")
        with pytest.raises(NotFoundError):
            await runtime.signal(execution_id, "nope")
        await runtime.cancel(execution_id)


class TestCancellation:
    """Cooperative cancel, grace period and critical sections."""

    @pytest.mark.asyncio
    async def test_cooperative_cancel(self, runtime, eventually):
        """A step sleeping on its context stops at once."""

        async def long(input, ctx):
            await ctx.sleep(10)

        runtime.executor.register("long", long)
        runtime.register_workflow(
            Workflow(id="wf", name="wf", steps=[Step(id="s", action="long"), Step(id="t", action="a", depends_on=("s",))])
        )
        execution_id = await runtime.execute("wf")
        await eventually(lambda: runtime.engine.get(execution_id).steps["s"].status == StepStatus.RUNNING)
        status = await runtime.cancel(execution_id)
        assert status["status"] == "cancelled"
        execution = runtime.engine.get(execution_id)
        assert execution.steps["s"].status == StepStatus.CANCELLED
        assert execution.steps["t"].status == StepStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_uncooperative_step_aborted_after_grace(self, runtime, eventually):
        """Steps that ignore cancellation are aborted after the grace period."""

        async def stubborn(input, ctx):
            await asyncio.sleep(10)

        runtime.executor.register("stubborn", stubborn)
        runtime.register_workflow(Workflow(id="wf", name="wf", steps=[Step(id="s", action="stubborn")]))
        execution_id = await runtime.execute("wf")
        await eventually(lambda: runtime.engine.get(execution_id).steps["s"].status == StepStatus.RUNNING)
        status = await runtime.cancel(execution_id)
        assert status["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_critical_section_refuses_cancel(self, runtime, eventually):
        """Cancellation is refused while a step holds a critical section."""
        release = asyncio.Event()

        async def post(input, ctx):
            async with ctx.critical_section():
                await release.wait()
            return {"posted": True}

        runtime.executor.register("post", post)
        runtime.register_workflow(Workflow(id="wf", name="wf", steps=[Step(id="s", action="post")]))
        execution_id = await runtime.execute("wf")
        await eventually(lambda: runtime.engine.get(execution_id).steps["s"].in_critical_section)
        with pytest.raises(NotCancellableError):
            await runtime.cancel(execution_id)
        release.set()
        execution = await runtime.wait_for(execution_id, timeout=2)
        assert execution.status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_queued(self, runtime_factory, settings_factory, eventually):
        """A queued execution is cancelled without running."""
        executor = RegistryStepExecutor()
        release = asyncio.Event()

        async def block(input, ctx):
            await release.wait()

        executor.register("block", block)
        rt = await runtime_factory(settings_factory(max_concurrent_executions=1), step_executor=executor)
        rt.register_workflow(Workflow(id="blocker", name="blocker", steps=[Step(id="s", action="block")]))
        await rt.execute("blocker")
        await eventually(lambda: rt.engine.running_count == 1)
        queued = await rt.execute("blocker")
        status = await rt.cancel(queued)
        assert status["status"] == "cancelled"
        assert status["started_at"] is None
        release.set()

    @pytest.mark.asyncio
    async def test_cancel_finished_rejected(self, runtime, workflow_factory):
        """Finished executions cannot be cancelled."""
        runtime.register_workflow(workflow_factory())
        execution_id = await runtime.execute("wf-linear")
        await runtime.wait_for(execution_id, timeout=2)
        with pytest.raises(ConflictError):
            await runtime.cancel(execution_id)
