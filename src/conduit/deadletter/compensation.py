"""Compensating rollback for partially completed executions.

For an execution that failed at step K, every completed step before K
that declares a compensating action is compensated in **reverse
completion order**. Each result is recorded independently; a failed
compensation never stops earlier steps from being compensated. Steps
restored from a dead-letter snapshot were not run by this execution and
are not compensated by it.

Dispatch is exhaustive over the compensation variants:

    HttpCallCompensation           httpx.AsyncClient request
    DataMutationCompensation       registered handler by operation name
    NotificationCompensation       NotificationDispatcher.send
    ManualInstructionCompensation  recorded as manual_required
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import httpx

from conduit.core.events import Event, EventBus, EventTypes
from conduit.core.logging import get_logger
from conduit.core.timestamps import Clock, utc_now
from conduit.notifications import Notification, NotificationDispatcher

from .models import (
    CompensationAction,
    CompensationReport,
    CompensationResult,
    CompensationStatus,
    DataMutationCompensation,
    HttpCallCompensation,
    ManualInstructionCompensation,
    NotificationCompensation,
    compensation_type,
)

if TYPE_CHECKING:
    from conduit.execution.models import Execution
    from conduit.orchestration.workflow import Workflow

logger = get_logger(__name__)

MutationHandler = Callable[[dict[str, Any], dict[str, Any]], Awaitable[Any]]
HttpCaller = Callable[[HttpCallCompensation, dict[str, Any]], Awaitable[Any]]


async def default_http_caller(action: HttpCallCompensation, context: dict[str, Any]) -> dict[str, Any]:
    """Send the compensating request; non-2xx raises ``httpx.HTTPStatusError``."""
    body = action.body if action.body is not None else context
    async with httpx.AsyncClient(timeout=action.timeout_seconds) as client:
        response = await client.request(action.method, action.url, json=body, headers=action.headers)
        response.raise_for_status()
        return {"status": response.status_code}


class CompensationManager:
    """Runs compensating actions for an execution."""

    def __init__(
        self,
        notifier: NotificationDispatcher | None = None,
        http_caller: HttpCaller | None = None,
        bus: EventBus | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._notifier = notifier
        self._http_caller = http_caller or default_http_caller
        self._handlers: dict[str, MutationHandler] = {}
        self._bus = bus
        self._clock = clock

    def register_handler(self, operation: str, handler: MutationHandler) -> None:
        """Register the handler behind a ``DataMutationCompensation``."""
        self._handlers[operation] = handler

    def plan(self, execution: Execution, workflow: Workflow) -> list[tuple[str, CompensationAction]]:
        """Steps to compensate, in the order they will run."""
        plan = []
        for step_id in reversed(execution.completion_order):
            step_run = execution.steps.get(step_id)
            if step_run is None or step_run.restored:
                continue
            step = workflow.get_step(step_id)
            if step is None or step.compensation is None:
                continue
            plan.append((step_id, step.compensation))
        return plan

    async def compensate(self, execution: Execution, workflow: Workflow) -> CompensationReport:
        report = CompensationReport(execution_id=execution.id, failed_step_id=execution.failed_step_id)
        for step_id, action in self.plan(execution, workflow):
            context = {
                "execution_id": execution.id,
                "workflow_id": execution.workflow_id,
                "step_id": step_id,
                "input": execution.input,
                "output": execution.steps[step_id].output,
            }
            result = await self._run(step_id, action, context)
            report.results.append(result)

        logger.info(
            "compensation_completed",
            execution_id=execution.id,
            order=report.order,
            all_succeeded=report.all_succeeded,
        )
        if self._bus is not None:
            await self._bus.publish(
                Event(
                    event_type=EventTypes.COMPENSATION_COMPLETED,
                    source="deadletter.compensation",
                    payload={"workflow_id": execution.workflow_id, **report.to_dict()},
                    correlation_id=execution.id,
                    organization_id=execution.organization_id,
                )
            )
        return report

    async def _run(self, step_id: str, action: CompensationAction, context: dict[str, Any]) -> CompensationResult:
        result = CompensationResult(
            step_id=step_id,
            action_type=compensation_type(action),
            status=CompensationStatus.SUCCEEDED,
            started_at=self._clock(),
        )
        try:
            match action:
                case HttpCallCompensation():
                    result.output = await self._http_caller(action, context)
                case DataMutationCompensation():
                    handler = self._handlers.get(action.operation)
                    if handler is None:
                        raise LookupError(f"No compensation handler for operation '{action.operation}'")
                    result.output = await handler(action.params, context)
                case NotificationCompensation():
                    if self._notifier is None:
                        raise LookupError("No notification dispatcher configured")
                    delivery = await self._notifier.send(
                        Notification(
                            channel=action.channel,
                            template=action.template,
                            data={**action.data, **context},
                            recipients=list(action.recipients),
                        )
                    )
                    if not delivery.success:
                        raise RuntimeError(delivery.message or "notification delivery failed")
                case ManualInstructionCompensation():
                    result.status = CompensationStatus.MANUAL_REQUIRED
                    result.output = {"instructions": action.instructions}
        except Exception as e:
            result.status = CompensationStatus.FAILED
            result.error = str(e) or type(e).__name__
            logger.warning(
                "compensation_step_failed",
                execution_id=context["execution_id"],
                step_id=step_id,
                action_type=result.action_type,
                error=result.error,
            )
        result.completed_at = self._clock()
        return result


__all__ = ["CompensationManager", "default_http_caller", "MutationHandler", "HttpCaller"]
