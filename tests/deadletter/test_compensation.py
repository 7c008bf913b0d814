"""Tests for CompensationManager."""

from __future__ import annotations

import pytest

from conduit.deadletter.compensation import CompensationManager
from conduit.deadletter.models import (
    CompensationStatus,
    DataMutationCompensation,
    HttpCallCompensation,
    ManualInstructionCompensation,
    NotificationCompensation,
    compensation_from_dict,
)
from conduit.execution.models import Execution, StepExecution, StepStatus
from conduit.orchestration.workflow import Step, Workflow


def workflow_with_compensations() -> Workflow:
    return Workflow(
        id="wf",
        name="wf",
        steps=[
            Step(id="reserve", action="reserve", compensation=DataMutationCompensation("release", {"pool": "ap"})),
            Step(id="charge", action="charge", depends_on=("reserve",),
                 compensation=HttpCallCompensation(url="https://payments.example.com/refund")),
            Step(id="notify", action="notify", depends_on=("charge",),
                 compensation=NotificationCompensation(channel="email", template="rollback", recipients=("ops@example.com",))),
            Step(id="plain", action="plain", depends_on=("notify",)),
            Step(id="post", action="post", depends_on=("plain",)),
        ],
    )


def failed_at_post(completed: tuple[str, ...] = ("reserve", "charge", "notify", "plain")) -> Execution:
    steps = {sid: StepExecution(step_id=sid, status=StepStatus.COMPLETED, output={"id": sid}) for sid in completed}
    steps["post"] = StepExecution(step_id="post", status=StepStatus.FAILED)
    return Execution(
        id="exe_1",
        organization_id="default",
        workflow_id="wf",
        workflow_version=1,
        steps=steps,
        completion_order=list(completed),
        failed_step_id="post",
    )


class RecordingHttp:
    def __init__(self, fail: bool = False) -> None:
        self.calls = []
        self.fail = fail

    async def __call__(self, action, context):
        self.calls.append((action.url, context["step_id"]))
        if self.fail:
            raise RuntimeError("refund endpoint down")
        return {"status": 200}


@pytest.fixture
def http():
    return RecordingHttp()


@pytest.fixture
def compensator(dispatcher, http, bus, clock):
    manager = CompensationManager(notifier=dispatcher, http_caller=http, bus=bus, clock=clock)
    released = []

    async def release(params, context):
        released.append((params, context["step_id"]))
        return {"released": True}

    manager.register_handler("release", release)
    manager.released = released
    return manager


class TestCompensation:
    """Reverse-order rollback."""

    def test_plan_reverse_completion_order(self, compensator):
        """Only steps with compensations, newest first."""
        plan = compensator.plan(failed_at_post(), workflow_with_compensations())
        assert [step_id for step_id, _ in plan] == ["notify", "charge", "reserve"]

    @pytest.mark.asyncio
    async def test_runs_every_variant(self, compensator, http, dispatcher):
        """Each variant dispatches through its port."""
        report = await compensator.compensate(failed_at_post(), workflow_with_compensations())
        assert report.order == ["notify", "charge", "reserve"]
        assert report.all_succeeded
        assert http.calls == [("https://payments.example.com/refund", "charge")]
        assert dispatcher.templates() == ["rollback"]
        assert compensator.released == [({"pool": "ap"}, "reserve")]

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_earlier_steps(self, dispatcher, bus, clock):
        """A failed compensation is recorded and the rest still run."""
        manager = CompensationManager(notifier=dispatcher, http_caller=RecordingHttp(fail=True), bus=bus, clock=clock)
        report = await manager.compensate(failed_at_post(), workflow_with_compensations())
        statuses = {r.step_id: r.status for r in report.results}
        assert statuses["charge"] == CompensationStatus.FAILED
        assert statuses["notify"] == CompensationStatus.SUCCEEDED
        # no handler registered for "release"
        assert statuses["reserve"] == CompensationStatus.FAILED
        assert not report.all_succeeded

    @pytest.mark.asyncio
    async def test_restored_steps_skipped(self, compensator, http):
        """Steps restored from a snapshot are not compensated again."""
        execution = failed_at_post()
        execution.steps["charge"].restored = True
        report = await compensator.compensate(execution, workflow_with_compensations())
        assert report.order == ["notify", "reserve"]
        assert http.calls == []

    @pytest.mark.asyncio
    async def test_manual_instruction(self, compensator):
        """Manual compensations are flagged for a human."""
        workflow = Workflow(
            id="wf",
            name="wf",
            steps=[Step(id="reserve", compensation=ManualInstructionCompensation("call the bank"))],
        )
        report = await compensator.compensate(failed_at_post(("reserve",)), workflow)
        assert report.results[0].status == CompensationStatus.MANUAL_REQUIRED
        assert report.results[0].output == {"instructions": "call the bank"}


class TestCompensationParsing:
    """Tagged mapping form."""

    def test_from_dict(self):
        """The type tag selects the variant."""
        action = compensation_from_dict({"type": "http_call", "url": "https://x.example.com", "method": "DELETE"})
        assert action == HttpCallCompensation(url="https://x.example.com", method="DELETE")
        assert compensation_from_dict({"type": "manual", "instructions": "x"}) == ManualInstructionCompensation("x")
