"""Step Executor port and the registry-backed implementation.

The core never performs a step's domain action itself. An action step is
handed to a :class:`StepExecutor` as ``(step, input, context)`` and
returns an output or raises. Raised :class:`~conduit.core.errors.StepError`
subclasses carry their error kind; anything else is classified by the
resilience layer.

ARCHITECTURE
────────────
::

    RegistryStepExecutor
      ├── .register(action, handler)   ─ store handler
      ├── .action(name)                ─ decorator form
      ├── .has(action)                 ─ existence check
      └── .execute(step, input, ctx)   ─ resolve step.action → await handler

Handlers may be sync or async and receive ``(input, ctx)``.
"""

from __future__ import annotations

import inspect
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from conduit.core.errors import PermanentStepError
from conduit.core.logging import get_logger

from .context import StepContext

if TYPE_CHECKING:
    from conduit.orchestration.workflow import Step

logger = get_logger(__name__)

StepHandler = Callable[[dict[str, Any], StepContext], Any]


@runtime_checkable
class StepExecutor(Protocol):
    """Performs a step's domain action."""

    async def execute(self, step: Step, input: dict[str, Any], context: StepContext) -> Any:
        ...


class RegistryStepExecutor:
    """Name → handler lookup for action steps.

    Example:
        >>> executor = RegistryStepExecutor()
        >>> @executor.action("post_invoice")
        ... async def post_invoice(input, ctx):
        ...     return {"invoice_id": input["id"]}
    """

    def __init__(self) -> None:
        self._handlers: dict[str, StepHandler] = {}

    def register(self, action: str, handler: StepHandler) -> None:
        if action in self._handlers:
            logger.warning("step_handler_replaced", action=action)
        self._handlers[action] = handler

    def action(self, name: str) -> Callable[[StepHandler], StepHandler]:
        def decorator(func: StepHandler) -> StepHandler:
            self.register(name, func)
            return func

        return decorator

    def has(self, action: str) -> bool:
        return action in self._handlers

    def list_actions(self) -> list[str]:
        return sorted(self._handlers)

    async def execute(self, step: Step, input: dict[str, Any], context: StepContext) -> Any:
        handler = self._handlers.get(step.action or "")
        if handler is None:
            raise PermanentStepError(f"No handler registered for action '{step.action}'")
        result = handler(input, context)
        if inspect.isawaitable(result):
            result = await result
        return result


__all__ = ["StepExecutor", "StepHandler", "RegistryStepExecutor"]
