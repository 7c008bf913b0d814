"""
Execution engine - the workflow execution state machine.

Manifesto:
    The engine owns every Execution and its Step Executions. It accepts a
    request, queues it by priority, runs the workflow graph with as much
    parallelism as the dependency edges allow, and emits a lifecycle event
    for every transition. A failing step never fails the execution by
    itself: the failure goes to the resilience manager, whose decision
    (retry, wait for an open circuit, dead-letter) the engine carries
    out. Only a dead-letter decision or a cancellation ends an execution
    unsuccessfully.

Architecture:
    ::

        submit(request) ──► Execution(pending) ──► priority heap
                                                        │
                           dispatcher (max_concurrent_executions)
                                                        │
                                                        ▼
        _run_execution ── running ── _run_graph ──┬── ready steps → tasks
                                                  │   (deps completed;
                                                  │    sequential mode = 1)
                                                  │
                          _drive_step ────────────┤
                            allow_call? ── no ──► CircuitOpenError
                            attempt (timeout) ──► output | error
                            error ──► resilience.handle_failure
                                       ├── Retry       → retrying, sleep, loop
                                       ├── CircuitOpen → waiting until reset, loop
                                       └── DeadLetter  → step failed, stop graph
                                                  │
        finish ── completed | failed (dead-lettered) | cancelled

    Ordering: a step's output is written to the execution, and the
    execution saved, before the graph loop can see the step as complete
    and schedule its dependents.

    Cancellation is cooperative: the cancel event is observed by steps at
    their next checkpoint. Steps still running after
    ``cancel_grace_seconds`` are cancelled outright, except steps inside a
    critical section.

Tags:
    conduit-core, execution, state-machine, DAG, priority-queue
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from conduit.core.config import ConduitSettings
from conduit.core.errors import (
    ConflictError,
    EngineHaltedError,
    ExecutionCancelledError,
    InvalidTransitionError,
    NotCancellableError,
    NotFoundError,
    QueueBacklogError,
    StepTimeoutError,
    SystemicError,
)
from conduit.core.events import Event, EventBus, EventTypes
from conduit.core.logging import LogContext, get_logger
from conduit.core.store import InMemoryStore
from conduit.core.timestamps import Clock, new_id, utc_now
from conduit.orchestration.registry import WorkflowRegistry
from conduit.orchestration.workflow import ExecutionMode, Step, StepKind, Workflow
from conduit.resilience.manager import ResilienceManager
from conduit.resilience.models import CircuitOpen, DeadLetter, FailureContext, Retry

from .context import StepContext
from .executor import StepExecutor
from .models import (
    Execution,
    ExecutionPriority,
    ExecutionRequest,
    ExecutionStatus,
    StepExecution,
    StepStatus,
)

logger = get_logger(__name__)

FinishedCallback = Callable[[Execution], Awaitable[None]]
HaltCallback = Callable[[SystemicError], Awaitable[None]]


class StepOutcome(str, Enum):
    COMPLETED = "completed"
    DEAD_LETTERED = "dead_lettered"
    CANCELLED = "cancelled"


@dataclass
class _StepResult:
    step_id: str
    outcome: StepOutcome
    entry_id: str | None = None
    error: str | None = None


@dataclass
class _Run:
    """In-flight bookkeeping for one execution; never persisted."""

    execution: Execution
    workflow: Workflow
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    tasks: dict[str, asyncio.Task[_StepResult]] = field(default_factory=dict)
    signal_waiters: dict[str, asyncio.Future[Any]] = field(default_factory=dict)
    signal_payloads: dict[str, Any] = field(default_factory=dict)
    completion_seq: itertools.count = field(default_factory=itertools.count)


@dataclass
class QueueDepth:
    """Pending-work view polled by the monitor."""

    pending: int
    running: int
    pending_by_priority: dict[str, int]
    oldest_pending_at: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pending": self.pending,
            "running": self.running,
            "pending_by_priority": self.pending_by_priority,
            "oldest_pending_at": self.oldest_pending_at.isoformat() if self.oldest_pending_at else None,
        }


class ExecutionEngine:
    """Runs workflow executions.

    Example:
        >>> engine = ExecutionEngine(store, registry, executor, resilience, settings, bus=bus)
        >>> await engine.start()
        >>> execution_id = await engine.submit(ExecutionRequest(workflow_id="month-end-close"))
        >>> execution = await engine.wait_for(execution_id, timeout=30)
        >>> execution.status
        <ExecutionStatus.COMPLETED: 'completed'>
    """

    def __init__(
        self,
        store: InMemoryStore,
        registry: WorkflowRegistry,
        executor: StepExecutor,
        resilience: ResilienceManager,
        settings: ConduitSettings,
        bus: EventBus | None = None,
        clock: Clock = utc_now,
        on_halt: HaltCallback | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._executor = executor
        self._resilience = resilience
        self._settings = settings
        self._bus = bus
        self._clock = clock
        self._on_halt = on_halt
        self._finished_callbacks: list[FinishedCallback] = []

        self._heap: list[tuple[int, int, str]] = []
        self._seq = itertools.count()
        self._runs: dict[str, _Run] = {}
        self._active: dict[str, asyncio.Task[None]] = {}
        self._done_events: dict[str, asyncio.Event] = {}
        self._wakeup: asyncio.Event | None = None
        self._dispatcher: asyncio.Task[None] | None = None
        self._stopping = False
        self._halted = False

    def add_finished_callback(self, callback: FinishedCallback) -> None:
        self._finished_callbacks.append(callback)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        self._stopping = False
        self._ensure_dispatcher()
        logger.info("engine_started", max_concurrent=self._settings.max_concurrent_executions)

    def _ensure_dispatcher(self) -> None:
        if self._wakeup is None:
            self._wakeup = asyncio.Event()
        if self._stopping:
            return
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.get_running_loop().create_task(
                self._dispatch_loop(), name="conduit-dispatcher"
            )
        self._wakeup.set()

    async def stop(self) -> None:
        """Stop dispatching and cancel in-flight executions."""
        self._stopping = True
        for run in list(self._runs.values()):
            run.execution.cancel_requested = True
            run.cancel_event.set()
        if self._active:
            await asyncio.gather(*self._active.values(), return_exceptions=True)
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None
        logger.info("engine_stopped")

    @property
    def halted(self) -> bool:
        return self._halted

    async def halt(self, error: SystemicError) -> None:
        """Refuse new work after a systemic failure."""
        if self._halted:
            return
        self._halted = True
        logger.critical("engine_halted", error=str(error), error_type=type(error).__name__)
        if self._on_halt is not None:
            await self._on_halt(error)

    # =========================================================================
    # Submission
    # =========================================================================

    async def submit(self, request: ExecutionRequest) -> str:
        """Create and queue an execution; returns its id.

        Raises:
            EngineHaltedError: After a systemic failure
            NotFoundError: Unknown workflow
            ConflictError: Workflow is not active
            QueueBacklogError: Too many pending executions
        """
        if self._halted:
            raise EngineHaltedError("Engine halted; new executions are refused")
        options = request.options
        workflow = self._registry.get(request.workflow_id, request.organization_id)
        if not workflow.is_runnable:
            raise ConflictError(f"Workflow '{workflow.id}' is {workflow.status.value}; only active workflows execute")

        if options.idempotency_key:
            existing = self._store.executions.first(
                lambda e: e.organization_id == request.organization_id
                and e.workflow_id == workflow.id
                and e.idempotency_key == options.idempotency_key
            )
            if existing is not None:
                logger.info(
                    "execution_deduplicated",
                    execution_id=existing.id,
                    idempotency_key=options.idempotency_key,
                )
                return existing.id

        if self.pending_count >= self._settings.max_pending_executions:
            raise QueueBacklogError(
                f"{self.pending_count} executions pending (limit {self._settings.max_pending_executions})"
            )

        execution = self._build_execution(request, workflow)
        self._store.executions.insert(execution)
        self._registry.mark_referenced(workflow)
        self._done_events[execution.id] = asyncio.Event()
        heapq.heappush(self._heap, (execution.priority.rank, next(self._seq), execution.id))

        logger.info(
            "execution_created",
            execution_id=execution.id,
            workflow_id=workflow.id,
            trigger_id=execution.trigger_id,
            priority=execution.priority.value,
        )
        await self._emit(EventTypes.EXECUTION_CREATED, execution, priority=execution.priority.value)
        self._ensure_dispatcher()
        return execution.id

    def _build_execution(self, request: ExecutionRequest, workflow: Workflow) -> Execution:
        options = request.options
        now = self._clock()
        execution = Execution(
            id=new_id("exe"),
            organization_id=request.organization_id,
            workflow_id=workflow.id,
            workflow_version=workflow.version,
            input=dict(request.input),
            trigger_id=request.trigger_id or options.trigger_id,
            trigger_type=request.trigger_type,
            priority=options.priority,
            idempotency_key=options.idempotency_key,
            created_at=now,
            replay_of_entry_id=options.dead_letter_entry_id,
            resume_from_step=options.resume_from_step,
            step_timeout_seconds=options.timeout_seconds,
        )
        for step_id in workflow.topological_order():
            execution.steps[step_id] = StepExecution(step_id=step_id)

        # Replay: steps whose outputs were frozen in the dead-letter snapshot
        # are restored as completed and not re-run.
        for step_id, output in options.prior_outputs.items():
            step_run = execution.steps.get(step_id)
            if step_run is None or step_id == options.resume_from_step:
                continue
            step_run.status = StepStatus.COMPLETED
            step_run.output = output
            step_run.restored = True
            step_run.completed_at = now
            execution.completion_order.append(step_id)
        return execution

    # =========================================================================
    # Dispatcher
    # =========================================================================

    @property
    def pending_count(self) -> int:
        return sum(1 for _, _, eid in self._heap if self._is_pending(eid))

    @property
    def running_count(self) -> int:
        return len(self._active)

    def _is_pending(self, execution_id: str) -> bool:
        execution = self._store.executions.get(execution_id)
        return execution is not None and execution.status == ExecutionStatus.PENDING

    async def _dispatch_loop(self) -> None:
        assert self._wakeup is not None
        while not self._stopping:
            await self._wakeup.wait()
            self._wakeup.clear()
            while self._heap and len(self._active) < self._settings.max_concurrent_executions:
                _, _, execution_id = heapq.heappop(self._heap)
                execution = self._store.executions.get(execution_id)
                if execution is None or execution.status != ExecutionStatus.PENDING:
                    continue
                workflow = self._registry.get(execution.workflow_id)
                run = _Run(execution=execution, workflow=workflow)
                self._runs[execution_id] = run
                task = asyncio.get_running_loop().create_task(
                    self._run_execution(run), name=f"conduit-execution-{execution_id}"
                )
                self._active[execution_id] = task
                task.add_done_callback(lambda _t, eid=execution_id: self._on_run_done(eid))

    def _on_run_done(self, execution_id: str) -> None:
        self._active.pop(execution_id, None)
        if self._wakeup is not None:
            self._wakeup.set()

    # =========================================================================
    # Execution run
    # =========================================================================

    async def _run_execution(self, run: _Run) -> None:
        execution = run.execution
        async with LogContext(
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            trigger_id=execution.trigger_id,
        ):
            try:
                if run.cancel_event.is_set():
                    await self._finish_cancelled(run)
                    return
                execution.transition(ExecutionStatus.RUNNING)
                execution.started_at = self._clock()
                self._save(execution)
                logger.info("execution_started", steps=len(execution.steps))
                await self._emit(EventTypes.EXECUTION_STARTED, execution)

                failure, cancelled = await self._run_graph(run)
                if failure is not None:
                    await self._finish_failed(run, failure)
                elif cancelled or run.cancel_event.is_set():
                    await self._finish_cancelled(run)
                else:
                    await self._finish_completed(run)
            except SystemicError as e:
                logger.critical("execution_aborted_systemic", error=str(e))
                await self.halt(e)
            except Exception as e:
                logger.exception("execution_crashed", error=str(e))
                await self._finish_crashed(run, e)
            finally:
                self._runs.pop(execution.id, None)
                run.done.set()
                done_event = self._done_events.pop(execution.id, None)
                if done_event is not None:
                    done_event.set()

        if execution.status.is_terminal:
            for callback in self._finished_callbacks:
                try:
                    await callback(execution)
                except Exception as e:
                    logger.warning("execution_finished_callback_failed", execution_id=execution.id, error=str(e))

    async def _run_graph(self, run: _Run) -> tuple[_StepResult | None, bool]:
        """Schedule steps as their dependencies complete.

        Returns (first dead-lettered step result or None, cancelled flag).
        """
        execution, workflow = run.execution, run.workflow
        order = workflow.topological_order()
        deps = {sid: workflow.effective_dependencies(sid) for sid in order}
        pending = [sid for sid in order if execution.steps[sid].status == StepStatus.PENDING]
        completed = {sid for sid in order if execution.steps[sid].status == StepStatus.COMPLETED}
        policy = workflow.execution_policy
        limit = max(1, policy.max_concurrency) if policy.mode == ExecutionMode.PARALLEL else 1

        failure: _StepResult | None = None
        cancelled = False
        cancel_waiter = asyncio.get_running_loop().create_task(run.cancel_event.wait())
        grace_deadline: float | None = None
        loop = asyncio.get_running_loop()
        try:
            while True:
                if failure is None and not run.cancel_event.is_set():
                    for sid in [s for s in pending if all(d in completed for d in deps[s])]:
                        if len(run.tasks) >= limit:
                            break
                        pending.remove(sid)
                        run.tasks[sid] = loop.create_task(
                            self._drive_step(run, workflow.require_step(sid)), name=f"conduit-step-{sid}"
                        )
                if not run.tasks:
                    break

                timeout = None
                if run.cancel_event.is_set():
                    if grace_deadline is None:
                        grace_deadline = loop.time() + self._settings.cancel_grace_seconds
                    timeout = max(0.0, grace_deadline - loop.time())
                waitables: set[asyncio.Future[Any]] = set(run.tasks.values())
                if not cancel_waiter.done():
                    waitables.add(cancel_waiter)
                done, _ = await asyncio.wait(waitables, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)

                if not done:
                    self._abort_steps(run)
                    grace_deadline = loop.time() + self._settings.cancel_grace_seconds
                    continue

                for sid, task in list(run.tasks.items()):
                    if task not in done:
                        continue
                    del run.tasks[sid]
                    if task.cancelled():
                        self._mark_cancelled(execution.steps[sid])
                        cancelled = True
                        continue
                    exc = task.exception()
                    if exc is not None:
                        raise exc
                    result = task.result()
                    match result.outcome:
                        case StepOutcome.COMPLETED:
                            completed.add(sid)
                        case StepOutcome.CANCELLED:
                            cancelled = True
                        case StepOutcome.DEAD_LETTERED:
                            if failure is None:
                                failure = result
        finally:
            cancel_waiter.cancel()
            for task in run.tasks.values():
                task.cancel()
        return failure, cancelled

    def _abort_steps(self, run: _Run) -> None:
        """Grace period elapsed: cancel step tasks outside critical sections."""
        for sid, task in run.tasks.items():
            if run.execution.steps[sid].in_critical_section:
                continue
            logger.warning("step_aborted", step_id=sid)
            task.cancel()

    # =========================================================================
    # Step driver
    # =========================================================================

    async def _drive_step(self, run: _Run, step: Step) -> _StepResult:
        execution, workflow = run.execution, run.workflow
        step_run = execution.steps[step.id]
        step_run.input = dict(execution.input)
        guarded = step.kind == StepKind.ACTION

        while True:
            if run.cancel_event.is_set():
                return await self._cancel_step(run, step_run)

            error: BaseException
            if guarded and not await self._resilience.allow_call(workflow, step):
                error = self._resilience.circuit_open_error(workflow, step)
            else:
                step_run.attempt += 1
                await self._begin_attempt(run, step, step_run)
                ctx = self._context_for(run, step, step_run)
                try:
                    output = await self._attempt(run, step, step_run, ctx)
                except ExecutionCancelledError:
                    return await self._cancel_step(run, step_run)
                except SystemicError:
                    raise
                except Exception as e:
                    error = e
                else:
                    await self._resilience.record_success(execution, workflow, step)
                    await self._complete_step(run, step_run, output)
                    return _StepResult(step.id, StepOutcome.COMPLETED)

            decision = await self._resilience.handle_failure(
                execution,
                workflow,
                step,
                error,
                FailureContext(
                    attempt=step_run.attempt,
                    circuit_waits=step_run.circuit_waits,
                    prior_outputs=execution.outputs(),
                    step_input=step_run.input,
                ),
            )
            step_run.error_message = str(error) or type(error).__name__
            active = self._resilience.active_error(execution.id, step.id)
            match decision:
                case Retry():
                    step_run.retry_count = decision.retry_count
                    step_run.next_retry_at = decision.next_retry_at
                    step_run.error_kind = active.kind.value if active else None
                    self._step_status(step_run, StepStatus.RETRYING)
                    self._save(execution)
                    await self._refresh_waiting(run)
                    logger.info(
                        "step_retrying",
                        step_id=step.id,
                        retry_count=decision.retry_count,
                        delay_seconds=round(decision.delay_seconds, 3),
                    )
                    await self._emit(
                        EventTypes.STEP_RETRYING,
                        execution,
                        step_id=step.id,
                        retry_count=decision.retry_count,
                        delay_seconds=decision.delay_seconds,
                        error=step_run.error_message,
                    )
                    if not await self._pause(run, decision.delay_seconds):
                        return await self._cancel_step(run, step_run)
                case CircuitOpen():
                    step_run.circuit_waits = decision.waits
                    step_run.waiting_reason = "circuit_open"
                    step_run.next_retry_at = decision.retry_at
                    self._step_status(step_run, StepStatus.WAITING)
                    self._save(execution)
                    await self._refresh_waiting(run)
                    delay = 0.0
                    if decision.retry_at is not None:
                        delay = max(0.0, (decision.retry_at - self._clock()).total_seconds())
                    logger.info("step_waiting_for_circuit", step_id=step.id, waits=decision.waits, delay_seconds=delay)
                    if not await self._pause(run, delay):
                        return await self._cancel_step(run, step_run)
                case DeadLetter():
                    step_run.error_kind = self._error_kind_of(decision.error_id)
                    step_run.completed_at = self._clock()
                    step_run.next_retry_at = None
                    self._step_status(step_run, StepStatus.FAILED)
                    self._save(execution)
                    logger.error(
                        "step_failed",
                        step_id=step.id,
                        entry_id=decision.entry_id,
                        reason=decision.reason,
                        error=step_run.error_message,
                    )
                    await self._emit(
                        EventTypes.STEP_FAILED,
                        execution,
                        step_id=step.id,
                        error=step_run.error_message,
                        error_kind=step_run.error_kind,
                        entry_id=decision.entry_id,
                    )
                    return _StepResult(
                        step.id,
                        StepOutcome.DEAD_LETTERED,
                        entry_id=decision.entry_id,
                        error=step_run.error_message,
                    )

    def _error_kind_of(self, error_id: str) -> str | None:
        row = self._store.execution_errors.get(error_id)
        return row.kind.value if row is not None else None

    def _context_for(self, run: _Run, step: Step, step_run: StepExecution) -> StepContext:
        execution, workflow = run.execution, run.workflow
        upstream = workflow.upstream_of(step.id)
        return StepContext(
            execution_id=execution.id,
            workflow_id=workflow.id,
            step_id=step.id,
            organization_id=execution.organization_id,
            attempt=step_run.attempt,
            timeout_seconds=self._timeout_for(run, step),
            upstream_outputs={sid: execution.steps[sid].output for sid in upstream if sid in execution.steps},
            config=dict(step.config),
            cancel_event=run.cancel_event,
            step_run=step_run,
        )

    def _timeout_for(self, run: _Run, step: Step) -> float | None:
        if run.execution.step_timeout_seconds is not None:
            return run.execution.step_timeout_seconds
        if step.timeout_seconds is not None:
            return step.timeout_seconds
        return self._settings.default_step_timeout_seconds

    async def _begin_attempt(self, run: _Run, step: Step, step_run: StepExecution) -> None:
        target = StepStatus.RUNNING if step.kind == StepKind.ACTION else StepStatus.WAITING
        step_run.waiting_reason = None if target == StepStatus.RUNNING else step.kind.value
        step_run.next_retry_at = None
        if step_run.started_at is None:
            step_run.started_at = self._clock()
        self._step_status(step_run, target)
        self._save(run.execution)
        await self._refresh_waiting(run)
        logger.info("step_started", step_id=step.id, attempt=step_run.attempt, kind=step.kind.value)
        await self._emit(EventTypes.STEP_STARTED, run.execution, step_id=step.id, attempt=step_run.attempt)

    async def _attempt(self, run: _Run, step: Step, step_run: StepExecution, ctx: StepContext) -> Any:
        timeout = ctx.timeout_seconds
        match step.kind:
            case StepKind.ACTION:
                call = self._executor.execute(step, step_run.input, ctx)
            case StepKind.WAIT:
                call = self._wait(ctx, step.wait_seconds)
            case StepKind.SIGNAL:
                call = self._await_signal(run, step.id)
        try:
            if step.critical:
                async with ctx.critical_section():
                    return await asyncio.wait_for(call, timeout=timeout)
            return await asyncio.wait_for(call, timeout=timeout)
        except TimeoutError as e:
            raise StepTimeoutError(f"Step '{step.id}' exceeded its {timeout}s timeout", cause=e) from e

    @staticmethod
    async def _wait(ctx: StepContext, seconds: float) -> dict[str, Any]:
        await ctx.sleep(seconds)
        return {"waited_seconds": seconds}

    async def _await_signal(self, run: _Run, step_id: str) -> Any:
        if step_id in run.signal_payloads:
            return run.signal_payloads.pop(step_id)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        run.signal_waiters[step_id] = future
        cancel_waiter = asyncio.ensure_future(run.cancel_event.wait())
        try:
            await asyncio.wait({future, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_waiter.cancel()
            run.signal_waiters.pop(step_id, None)
        if not future.done():
            future.cancel()
            raise ExecutionCancelledError(f"Execution {run.execution.id} cancelled while awaiting signal {step_id}")
        return future.result()

    async def _pause(self, run: _Run, seconds: float) -> bool:
        """Sleep unless cancelled first; False means cancelled."""
        try:
            await asyncio.wait_for(run.cancel_event.wait(), timeout=seconds)
        except TimeoutError:
            return True
        return False

    async def _complete_step(self, run: _Run, step_run: StepExecution, output: Any) -> None:
        execution = run.execution
        step_run.output = output
        step_run.completed_at = self._clock()
        step_run.waiting_reason = None
        step_run.next_retry_at = None
        step_run.completion_seq = next(run.completion_seq)
        self._step_status(step_run, StepStatus.COMPLETED)
        execution.completion_order.append(step_run.step_id)
        self._save(execution)
        await self._refresh_waiting(run)
        logger.info("step_completed", step_id=step_run.step_id, duration_ms=step_run.duration_ms)
        await self._emit(
            EventTypes.STEP_COMPLETED,
            execution,
            step_id=step_run.step_id,
            duration_ms=step_run.duration_ms,
            progress=execution.progress,
        )

    async def _cancel_step(self, run: _Run, step_run: StepExecution) -> _StepResult:
        self._mark_cancelled(step_run)
        self._save(run.execution)
        return _StepResult(step_run.step_id, StepOutcome.CANCELLED)

    def _mark_cancelled(self, step_run: StepExecution) -> None:
        if step_run.status.is_terminal:
            return
        step_run.in_critical_section = False
        step_run.completed_at = self._clock()
        self._step_status(step_run, StepStatus.CANCELLED)

    @staticmethod
    def _step_status(step_run: StepExecution, target: StepStatus) -> None:
        if step_run.status != target:
            step_run.transition(target)

    async def _refresh_waiting(self, run: _Run) -> None:
        """Move the execution between running and waiting as its steps do."""
        execution = run.execution
        if execution.status.is_terminal:
            return
        statuses = [s.status for s in execution.steps.values()]
        active = any(s in (StepStatus.RUNNING, StepStatus.RETRYING) for s in statuses)
        waiting = [s for s in execution.steps.values() if s.status == StepStatus.WAITING]
        if execution.status == ExecutionStatus.RUNNING and waiting and not active:
            execution.transition(ExecutionStatus.WAITING)
            execution.waiting_reason = waiting[0].waiting_reason
            self._save(execution)
            logger.info("execution_waiting", reason=execution.waiting_reason)
            await self._emit(EventTypes.EXECUTION_WAITING, execution, reason=execution.waiting_reason)
        elif execution.status == ExecutionStatus.WAITING and (active or not waiting):
            execution.transition(ExecutionStatus.RUNNING)
            execution.waiting_reason = None
            self._save(execution)
            await self._emit(EventTypes.EXECUTION_RESUMED, execution)

    # =========================================================================
    # Finish
    # =========================================================================

    def _close_remaining(self, execution: Execution, target: StepStatus) -> list[str]:
        closed = []
        for step_run in execution.steps.values():
            if step_run.status.is_terminal:
                continue
            step_run.in_critical_section = False
            if step_run.status != StepStatus.PENDING and target == StepStatus.SKIPPED:
                self._step_status(step_run, StepStatus.CANCELLED)
            else:
                self._step_status(step_run, target)
            closed.append(step_run.step_id)
        return closed

    async def _finish_completed(self, run: _Run) -> None:
        execution = run.execution
        if execution.status == ExecutionStatus.WAITING:
            execution.transition(ExecutionStatus.RUNNING)
        execution.transition(ExecutionStatus.COMPLETED)
        execution.completed_at = self._clock()
        execution.waiting_reason = None
        self._save(execution)
        logger.info("execution_completed", duration_seconds=execution.duration_seconds)
        await self._emit(
            EventTypes.EXECUTION_COMPLETED,
            execution,
            duration_seconds=execution.duration_seconds,
            retry_count=execution.retry_count,
        )

    async def _finish_failed(self, run: _Run, failure: _StepResult) -> None:
        execution = run.execution
        skipped = self._close_remaining(execution, StepStatus.SKIPPED)
        execution.transition(ExecutionStatus.FAILED)
        execution.completed_at = self._clock()
        execution.failed_step_id = failure.step_id
        execution.dead_letter_entry_id = failure.entry_id
        execution.error = failure.error
        execution.waiting_reason = None
        self._save(execution)
        for step_id in skipped:
            await self._emit(EventTypes.STEP_SKIPPED, execution, step_id=step_id)
        logger.error(
            "execution_failed",
            failed_step_id=failure.step_id,
            entry_id=failure.entry_id,
            error=failure.error,
        )
        failed_step = execution.steps.get(failure.step_id)
        await self._emit(
            EventTypes.EXECUTION_FAILED,
            execution,
            failed_step_id=failure.step_id,
            dead_letter_entry_id=failure.entry_id,
            error=failure.error,
            error_kind=failed_step.error_kind if failed_step else None,
            duration_seconds=execution.duration_seconds,
        )

    async def _finish_cancelled(self, run: _Run) -> None:
        execution = run.execution
        self._close_remaining(execution, StepStatus.CANCELLED)
        execution.transition(ExecutionStatus.CANCELLED)
        execution.completed_at = self._clock()
        execution.waiting_reason = None
        self._save(execution)
        logger.info("execution_cancelled")
        await self._emit(EventTypes.EXECUTION_CANCELLED, execution)

    async def _finish_crashed(self, run: _Run, error: Exception) -> None:
        execution = run.execution
        if execution.status.is_terminal:
            return
        self._close_remaining(execution, StepStatus.CANCELLED)
        execution.transition(ExecutionStatus.FAILED)
        execution.completed_at = self._clock()
        execution.error = str(error) or type(error).__name__
        self._save(execution)
        await self._emit(EventTypes.EXECUTION_FAILED, execution, error=execution.error)

    # =========================================================================
    # Control
    # =========================================================================

    def get(self, execution_id: str, organization_id: str | None = None) -> Execution:
        execution = self._store.executions.get(execution_id, organization_id)
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        return execution

    def get_status(self, execution_id: str, organization_id: str | None = None) -> dict[str, Any]:
        return self.get(execution_id, organization_id).status_snapshot()

    async def cancel(self, execution_id: str, organization_id: str | None = None) -> Execution:
        """Request cancellation and wait (bounded) for the execution to stop.

        Raises:
            NotFoundError: Unknown execution
            InvalidTransitionError: Execution already finished
            NotCancellableError: A step is inside a critical section
        """
        execution = self.get(execution_id, organization_id)
        if execution.status.is_terminal:
            raise InvalidTransitionError(execution.status.value, ExecutionStatus.CANCELLED.value, "ExecutionStatus")
        critical = [s.step_id for s in execution.steps.values() if s.in_critical_section]
        if critical:
            raise NotCancellableError(
                f"Execution {execution_id} has steps in a critical section: {', '.join(critical)}"
            )

        execution.cancel_requested = True
        run = self._runs.get(execution_id)
        if run is None:
            self._close_remaining(execution, StepStatus.CANCELLED)
            execution.transition(ExecutionStatus.CANCELLED)
            execution.completed_at = self._clock()
            self._save(execution)
            done_event = self._done_events.pop(execution_id, None)
            if done_event is not None:
                done_event.set()
            logger.info("execution_cancelled", execution_id=execution_id, queued=True)
            await self._emit(EventTypes.EXECUTION_CANCELLED, execution)
            return execution

        self._save(execution)
        run.cancel_event.set()
        logger.info("execution_cancel_requested", execution_id=execution_id)
        try:
            await asyncio.wait_for(run.done.wait(), timeout=self._settings.cancel_grace_seconds * 2 + 1.0)
        except TimeoutError:
            logger.warning("execution_cancel_pending", execution_id=execution_id)
        return execution

    async def signal(
        self,
        execution_id: str,
        step_id: str,
        payload: Any = None,
        organization_id: str | None = None,
    ) -> Execution:
        """Deliver external input to a signal step."""
        execution = self.get(execution_id, organization_id)
        step_run = execution.steps.get(step_id)
        if step_run is None:
            raise NotFoundError(f"Execution {execution_id} has no step '{step_id}'")
        run = self._runs.get(execution_id)
        if run is None or execution.status.is_terminal:
            raise ConflictError(f"Execution {execution_id} is not running")
        if run.workflow.require_step(step_id).kind != StepKind.SIGNAL:
            raise ConflictError(f"Step '{step_id}' is not a signal step")
        if step_run.status.is_terminal:
            raise ConflictError(f"Step '{step_id}' is already {step_run.status.value}")

        waiter = run.signal_waiters.get(step_id)
        if waiter is not None and not waiter.done():
            waiter.set_result(payload)
        else:
            run.signal_payloads[step_id] = payload
        logger.info("step_signalled", execution_id=execution_id, step_id=step_id)
        return execution

    async def wait_for(self, execution_id: str, timeout: float | None = None) -> Execution:
        """Wait until the execution reaches a terminal status."""
        execution = self.get(execution_id)
        if execution.status.is_terminal:
            return execution
        done_event = self._done_events.get(execution_id)
        if done_event is not None:
            await asyncio.wait_for(done_event.wait(), timeout=timeout)
        return self.get(execution_id)

    def list_executions(
        self,
        workflow_id: str | None = None,
        status: ExecutionStatus | None = None,
        organization_id: str | None = None,
        limit: int = 100,
    ) -> list[Execution]:
        executions = self._store.executions.find(
            lambda e: (workflow_id is None or e.workflow_id == workflow_id) and (status is None or e.status == status),
            organization_id=organization_id,
        )
        executions.sort(key=lambda e: e.created_at, reverse=True)
        return executions[:limit]

    def queue_depth(self) -> QueueDepth:
        pending = self._store.executions.find(lambda e: e.status == ExecutionStatus.PENDING)
        by_priority = {p.value: 0 for p in ExecutionPriority}
        for execution in pending:
            by_priority[execution.priority.value] += 1
        oldest = min((e.created_at for e in pending if e.created_at), default=None)
        return QueueDepth(
            pending=len(pending),
            running=len(self._active),
            pending_by_priority=by_priority,
            oldest_pending_at=oldest,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _save(self, execution: Execution) -> None:
        self._store.executions.save(execution)

    async def _emit(self, event_type: str, execution: Execution, **payload: Any) -> None:
        if self._bus is None:
            return
        await self._bus.publish(
            Event(
                event_type=event_type,
                source="execution.engine",
                payload={
                    "execution_id": execution.id,
                    "workflow_id": execution.workflow_id,
                    "trigger_id": execution.trigger_id,
                    "status": execution.status.value,
                    "progress": execution.progress,
                    "current_step": execution.current_step,
                    "retry_count": execution.retry_count,
                    **payload,
                },
                correlation_id=execution.id,
                organization_id=execution.organization_id,
            )
        )


__all__ = ["ExecutionEngine", "QueueDepth", "StepOutcome", "FinishedCallback"]
