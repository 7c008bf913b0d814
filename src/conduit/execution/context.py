"""Step context handed to every Step Executor call.

Cancellation is cooperative. A cancel request sets the execution's
cancel event; executors observe it at their next ``checkpoint()`` (or
during ``ctx.sleep()``). Work that must not be interrupted runs inside
``critical_section()``: while any step of an execution holds one, the
execution refuses cancellation with ``NotCancellableError``.

Example::

    async def post_entries(input, ctx):
        for batch in chunks(input["entries"], 100):
            ctx.checkpoint()
            async with ctx.critical_section():
                await ledger.post(batch)
        return {"posted": len(input["entries"])}
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from conduit.core.errors import ExecutionCancelledError

from .models import StepExecution


@dataclass
class StepContext:
    """Per-attempt view of the running execution."""

    execution_id: str
    workflow_id: str
    step_id: str
    organization_id: str
    attempt: int
    timeout_seconds: float | None
    upstream_outputs: dict[str, Any]
    config: dict[str, Any]
    cancel_event: asyncio.Event
    step_run: StepExecution
    _critical_depth: int = field(default=0, repr=False)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def checkpoint(self) -> None:
        """Raise ExecutionCancelledError if cancellation was requested."""
        if self.cancelled and self._critical_depth == 0:
            raise ExecutionCancelledError(f"Execution {self.execution_id} cancelled at step {self.step_id}")

    @asynccontextmanager
    async def critical_section(self) -> AsyncIterator[None]:
        """Block cancellation while held; re-entrant."""
        self._critical_depth += 1
        self.step_run.in_critical_section = True
        try:
            yield
        finally:
            self._critical_depth -= 1
            if self._critical_depth == 0:
                self.step_run.in_critical_section = False

    async def sleep(self, seconds: float) -> None:
        """Sleep that wakes early (and raises) when the execution is cancelled."""
        try:
            await asyncio.wait_for(self.cancel_event.wait(), timeout=seconds)
        except TimeoutError:
            return
        self.checkpoint()


__all__ = ["StepContext"]
