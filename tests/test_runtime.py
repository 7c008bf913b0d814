"""End-to-end tests through ConduitRuntime."""

from __future__ import annotations

import pytest

from conduit.core.errors import ConflictError, EngineHaltedError, PersistenceError, StepValidationError
from conduit.core.events import EventTypes
from conduit.deadletter.models import (
    CompensationStatus,
    DataMutationCompensation,
    DeadLetterStatus,
    ManualInstructionCompensation,
    ResolutionType,
)
from conduit.execution.models import ExecutionStatus, StepStatus
from conduit.orchestration.workflow import Step, Workflow

INVOICE_YAML = """
id: invoice-intake
name: Invoice intake
execution_policy:
  mode: parallel
  max_concurrency: 2
steps:
  - id: a
    action: a
  - id: b
    action: b
    depends_on: [a]
  - id: c
    action: c
    depends_on: [a]
"""


class FailingOnce:
    """Handler that raises a validation error until told to recover."""

    def __init__(self) -> None:
        self.broken = True
        self.inputs: list[dict] = []

    def __call__(self, input, ctx):
        self.inputs.append(dict(input))
        if self.broken:
            raise StepValidationError("vendor id missing")
        return {"posted": input.get("vendor_id")}


class TestWorkflows:
    """Registration forms."""

    @pytest.mark.asyncio
    async def test_register_from_yaml(self, runtime):
        """YAML definitions register and run."""
        workflow = runtime.register_workflow(INVOICE_YAML)
        assert workflow.execution_policy.max_concurrency == 2
        execution = await runtime.wait_for(await runtime.execute("invoice-intake"), timeout=2)
        assert execution.status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_register_from_dict(self, runtime):
        """Mappings register too."""
        runtime.register_workflow({"id": "wf", "name": "wf", "steps": [{"name": "a", "action": "a"}]})
        assert runtime.registry.get("wf").steps[0].id == "a"


class TestDeadLetterReplay:
    """Manual actions on dead-lettered executions."""

    @pytest.mark.asyncio
    async def test_retry_resumes_from_failed_step(self, runtime, workflow_factory, eventually):
        """A replay restores completed outputs and reruns from the failed step."""
        calls = {"a": 0}

        def count_a(input, ctx):
            calls["a"] += 1
            return {"step": "a"}

        flaky = FailingOnce()
        runtime.executor.register("a", count_a)
        runtime.executor.register("b", flaky)
        runtime.register_workflow(workflow_factory())

        failed = await runtime.wait_for(await runtime.execute("wf-linear", {"vendor_id": "v-1"}), timeout=2)
        assert failed.status == ExecutionStatus.FAILED
        entry_id = failed.dead_letter_entry_id

        flaky.broken = False
        result = await runtime.process_dead_letter(entry_id, "retry", actor="ops")
        replay = await runtime.wait_for(result.execution_id, timeout=2)
        assert replay.status == ExecutionStatus.COMPLETED
        assert replay.steps["a"].restored
        assert replay.steps["b"].output == {"posted": "v-1"}
        assert calls["a"] == 1
        await eventually(lambda: runtime.dead_letters.get(entry_id).status == DeadLetterStatus.RESOLVED)
        assert runtime.dead_letters.get(entry_id).resolution_type == ResolutionType.RETRIED

    @pytest.mark.asyncio
    async def test_retry_modified_input(self, runtime, workflow_factory):
        """retry_modified replays with the corrected input."""
        flaky = FailingOnce()
        runtime.executor.register("b", flaky)
        runtime.register_workflow(workflow_factory())
        failed = await runtime.wait_for(await runtime.execute("wf-linear", {"vendor_id": None}), timeout=2)
        flaky.broken = False
        result = await runtime.process_dead_letter(
            failed.dead_letter_entry_id, "retry_modified", modified_input={"vendor_id": "v-9"}
        )
        replay = await runtime.wait_for(result.execution_id, timeout=2)
        assert replay.input == {"vendor_id": "v-9"}
        assert flaky.inputs[-1] == {"vendor_id": "v-9"}

    @pytest.mark.asyncio
    async def test_failed_replay_returns_entry_to_queue(self, runtime, workflow_factory, eventually):
        """A replay that fails again reuses the original entry."""
        runtime.executor.register("b", FailingOnce())
        runtime.register_workflow(workflow_factory())
        failed = await runtime.wait_for(await runtime.execute("wf-linear"), timeout=2)
        entry_id = failed.dead_letter_entry_id
        result = await runtime.process_dead_letter(entry_id, "retry")
        replay = await runtime.wait_for(result.execution_id, timeout=2)
        assert replay.status == ExecutionStatus.FAILED
        assert replay.dead_letter_entry_id == entry_id
        await eventually(lambda: runtime.dead_letters.get(entry_id).status == DeadLetterStatus.PENDING)
        assert len(runtime.dead_letters.list(include_inactive=True)) == 1
        assert runtime.dead_letters.get(entry_id).manual_retry_count == 1

    @pytest.mark.asyncio
    async def test_skip(self, runtime, workflow_factory):
        """Skip resolves without a replay."""
        runtime.executor.register("b", FailingOnce())
        runtime.register_workflow(workflow_factory())
        failed = await runtime.wait_for(await runtime.execute("wf-linear"), timeout=2)
        result = await runtime.process_dead_letter(failed.dead_letter_entry_id, "skip", actor="ops")
        assert result.status == DeadLetterStatus.RESOLVED
        assert result.execution_id is None
        assert len(runtime.engine.list_executions()) == 1


class TestCompensation:
    """Rollback of failed executions."""

    @pytest.mark.asyncio
    async def test_compensate_failed_execution(self, runtime):
        """Completed steps are compensated newest first."""
        released = []

        async def release(params, context):
            released.append(context["step_id"])

        runtime.compensation.register_handler("release", release)
        runtime.executor.register("b", FailingOnce())
        runtime.register_workflow(
            Workflow(
                id="wf",
                name="wf",
                steps=[
                    Step(id="reserve", action="a", compensation=DataMutationCompensation("release")),
                    Step(id="book", action="c", depends_on=("reserve",),
                         compensation=ManualInstructionCompensation("reverse the journal")),
                    Step(id="post", action="b", depends_on=("book",)),
                ],
            )
        )
        failed = await runtime.wait_for(await runtime.execute("wf"), timeout=2)
        report = await runtime.compensate(failed.id)
        assert report.order == ["book", "reserve"]
        assert report.results[0].status == CompensationStatus.MANUAL_REQUIRED
        assert released == ["reserve"]

    @pytest.mark.asyncio
    async def test_compensate_completed_rejected(self, runtime, workflow_factory):
        """Completed executions are not compensated."""
        runtime.register_workflow(workflow_factory())
        done = await runtime.wait_for(await runtime.execute("wf-linear"), timeout=2)
        with pytest.raises(ConflictError):
            await runtime.compensate(done.id)


class TestTriggersEndToEnd:
    """Stimuli reaching the engine."""

    @pytest.mark.asyncio
    async def test_domain_event_starts_execution(self, runtime, workflow_factory):
        """Publishing a matching domain event runs the workflow."""
        runtime.register_workflow(workflow_factory())
        runtime.create_trigger("wf-linear", "on invoice", "event", {"event_types": ["invoice.created"]})
        ids = await runtime.publish_domain_event("invoice.created", {"invoice_id": "inv-1"})
        execution = await runtime.wait_for(ids[0], timeout=2)
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.input["invoice_id"] == "inv-1"
        assert execution.trigger_id is not None

    @pytest.mark.asyncio
    async def test_manual_trigger_and_preview(self, runtime, workflow_factory):
        """Manual triggers fire; previews show the input without firing."""
        runtime.register_workflow(workflow_factory())
        trigger = runtime.create_trigger("wf-linear", "manual", "manual", {"default_input": {"source": "ops"}})
        preview = runtime.test_trigger(trigger.id, {"extra": 1})
        assert preview["input"] == {"source": "ops", "extra": 1}
        assert runtime.engine.list_executions() == []
        execution_id = await runtime.fire_trigger(trigger.id, {"extra": 2})
        execution = await runtime.wait_for(execution_id, timeout=2)
        assert execution.trigger_id == trigger.id
        assert execution.input == {"source": "ops", "extra": 2}

    @pytest.mark.asyncio
    async def test_webhook(self, runtime, workflow_factory):
        """Accepted webhooks start an execution with the body as input."""
        runtime.register_workflow(workflow_factory())
        runtime.create_trigger("wf-linear", "hook", "webhook", {"token": "tok-123"})
        result = await runtime.process_webhook("tok-123", body={"invoice_id": "inv-7"})
        assert result.accepted
        execution = await runtime.wait_for(result.execution_id, timeout=2)
        assert execution.status == ExecutionStatus.COMPLETED


class TestObservability:
    """Subscriptions, alerts, health and halting."""

    @pytest.mark.asyncio
    async def test_subscribe_scoped_stream(self, runtime, workflow_factory):
        """A workflow-scoped stream sees that workflow's events only."""
        runtime.register_workflow(workflow_factory())
        runtime.register_workflow(workflow_factory("wf-other"))
        stream = await runtime.subscribe(workflow_id="wf-linear")
        await runtime.wait_for(await runtime.execute("wf-other"), timeout=2)
        execution_id = await runtime.execute("wf-linear")
        seen = []
        while True:
            event = await stream.get(timeout=2)
            assert event is not None
            seen.append(event)
            if event.event_type == EventTypes.EXECUTION_COMPLETED:
                break
        assert {e.workflow_id for e in seen} == {"wf-linear"}
        assert seen[-1].execution_id == execution_id
        await stream.close()

    @pytest.mark.asyncio
    async def test_failure_alerts_and_notifies(self, runtime, workflow_factory, dispatcher, eventually):
        """A dead-lettered execution notifies and fires matching alert rules."""
        runtime.create_alert_rule("failures", {"type": "execution_failed"}, workflow_id="wf-linear")
        runtime.executor.register("b", FailingOnce())
        runtime.register_workflow(workflow_factory())
        failed = await runtime.wait_for(await runtime.execute("wf-linear"), timeout=2)
        await eventually(lambda: "alert.execution_failed" in dispatcher.templates())
        assert "execution_dead_lettered" in dispatcher.templates()
        alert = runtime.alerts.list_alerts()[0]
        assert alert.execution_id == failed.id
        acked = await runtime.acknowledge_alert(alert.id, by="ops")
        assert acked.acknowledged_by == "ops"
        view = runtime.monitor.execution_view(failed.id)
        assert view.status == "failed"

    @pytest.mark.asyncio
    async def test_health_and_maintenance(self, runtime):
        """Health reports ok; a maintenance pass runs cleanly."""
        health = runtime.health()
        assert health["status"] == "ok"
        assert health["queue"]["pending"] == 0
        assert await runtime.run_maintenance() == {"dead_letters_expired": 0, "backlog_alerts": 0}

    @pytest.mark.asyncio
    async def test_systemic_failure_halts_everything(self, runtime, workflow_factory):
        """A systemic failure halts triggers and the engine and is announced."""
        runtime.register_workflow(workflow_factory())
        stream = await runtime.subscribe(event_type=EventTypes.ENGINE_HALTED)
        await runtime.engine.halt(PersistenceError("store unreachable"))
        event = await stream.get(timeout=1)
        assert event.payload["error_type"] == "PersistenceError"
        assert runtime.halted
        assert runtime.health()["status"] == "halted"
        with pytest.raises(EngineHaltedError):
            await runtime.publish_domain_event("invoice.created", {})
        with pytest.raises(EngineHaltedError):
            await runtime.execute("wf-linear")

    @pytest.mark.asyncio
    async def test_cancelled_steps_visible_in_status(self, runtime, eventually):
        """Status snapshots report cancelled steps."""

        async def long(input, ctx):
            await ctx.sleep(5)

        runtime.executor.register("long", long)
        runtime.register_workflow(Workflow(id="wf", name="wf", steps=[Step(id="s", action="long")]))
        execution_id = await runtime.execute("wf")
        await eventually(lambda: runtime.engine.get(execution_id).steps["s"].status == StepStatus.RUNNING)
        status = await runtime.cancel(execution_id)
        assert status["steps"][0]["status"] == "cancelled"
