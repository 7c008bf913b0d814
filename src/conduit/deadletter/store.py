"""Dead-letter store -- capture, inspect and replay failed executions.

WHY
───
Executions that exhaust their retries must never disappear silently. The
store captures each one exactly once, with a frozen copy of its context
(original input, outputs of completed steps, completion order), so an
operator can retry, retry with modified input, skip, or resolve it.

ARCHITECTURE
────────────
::

    DeadLetterStore(store, bus)
      ├── .create(execution, error)         ─ one entry per execution
      ├── .process(entry_id, action, input) ─ retry / retry_modified / skip / resolve
      ├── .record_replay_outcome(...)       ─ replay completed → resolved (retried)
      ├── .expire(now)                      ─ retention window → expired
      └── .list(status, workflow_id)        ─ active queue by default

    Replays re-enter the engine through the ``replayer`` callable wired
    by the runtime; a replay that fails again returns its entry to
    ``pending`` instead of creating a second entry.

Example::

    entry = dlq.create(execution, error)
    result = await dlq.process(entry.id, DeadLetterAction.RETRY)
    result.execution_id   # the replay execution
"""

from __future__ import annotations

import copy
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from conduit.core.errors import DeadLetterStateError, NotFoundError
from conduit.core.events import Event, EventBus, EventTypes
from conduit.core.locks import KeyedLock
from conduit.core.logging import get_logger
from conduit.core.store import InMemoryStore
from conduit.core.timestamps import Clock, new_id, utc_now
from conduit.resilience.models import ErrorStatus, ExecutionError

from .models import (
    DeadLetterAction,
    DeadLetterEntry,
    DeadLetterStatus,
    ProcessResult,
    ResolutionType,
)

if TYPE_CHECKING:
    from conduit.execution.models import Execution

logger = get_logger(__name__)

Replayer = Callable[[DeadLetterEntry, dict[str, Any]], Awaitable[str]]


class DeadLetterStore:
    """Owns every DeadLetterEntry row."""

    def __init__(
        self,
        store: InMemoryStore,
        bus: EventBus | None = None,
        clock: Clock = utc_now,
        retention_days: int = 30,
    ) -> None:
        self._store = store
        self._bus = bus
        self._clock = clock
        self._retention = timedelta(days=retention_days)
        self._locks = KeyedLock()
        self._replayer: Replayer | None = None

    def set_replayer(self, replayer: Replayer) -> None:
        self._replayer = replayer

    # =========================================================================
    # Capture
    # =========================================================================

    def create(self, execution: Execution, error: ExecutionError) -> DeadLetterEntry:
        """Park ``execution``; returns the existing entry if there is one.

        A replay execution that fails again reuses the entry it replays.
        """
        existing = self.for_execution(execution.id)
        if existing is not None:
            return existing

        if execution.replay_of_entry_id:
            entry = self._store.dead_letters.get(execution.replay_of_entry_id)
            if entry is not None and entry.is_active:
                if entry.status == DeadLetterStatus.PROCESSING:
                    entry.transition(DeadLetterStatus.PENDING)
                entry.error_id = error.id
                entry.failed_step_id = error.step_id
                entry.error_kind = error.kind
                entry.error_message = error.message
                entry.retry_count = error.retry_count
                entry.prior_outputs = copy.deepcopy(execution.outputs())
                entry.completed_steps = list(execution.completion_order)
                self._store.dead_letters.save(entry)
                logger.warning(
                    "dead_letter_replay_failed",
                    entry_id=entry.id,
                    execution_id=execution.id,
                    step_id=error.step_id,
                )
                return entry

        now = self._clock()
        entry = DeadLetterEntry(
            id=new_id("dlq"),
            organization_id=execution.organization_id,
            execution_id=execution.id,
            error_id=error.id,
            workflow_id=execution.workflow_id,
            trigger_id=execution.trigger_id,
            failed_step_id=error.step_id,
            error_kind=error.kind,
            error_message=error.message,
            original_input=copy.deepcopy(execution.input),
            prior_outputs=copy.deepcopy(execution.outputs()),
            completed_steps=list(execution.completion_order),
            retry_count=error.retry_count,
            created_at=now,
            expires_at=now + self._retention,
        )
        self._store.dead_letters.insert(entry)
        logger.warning(
            "dead_letter_created",
            entry_id=entry.id,
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            step_id=error.step_id,
            error_kind=error.kind.value,
            retry_count=error.retry_count,
        )
        return entry

    # =========================================================================
    # Lookup
    # =========================================================================

    def get(self, entry_id: str, organization_id: str | None = None) -> DeadLetterEntry:
        entry = self._store.dead_letters.get(entry_id, organization_id)
        if entry is None:
            raise NotFoundError(f"Dead-letter entry {entry_id} not found")
        return entry

    def for_execution(self, execution_id: str) -> DeadLetterEntry | None:
        return self._store.dead_letters.first(lambda e: e.execution_id == execution_id)

    def list(
        self,
        status: DeadLetterStatus | None = None,
        workflow_id: str | None = None,
        include_inactive: bool = False,
        organization_id: str | None = None,
        limit: int = 100,
    ) -> list[DeadLetterEntry]:
        """Entries newest first; the active queue unless told otherwise."""

        def wanted(entry: DeadLetterEntry) -> bool:
            if status is not None and entry.status != status:
                return False
            if status is None and not include_inactive and not entry.is_active:
                return False
            return workflow_id is None or entry.workflow_id == workflow_id

        entries = self._store.dead_letters.find(wanted, organization_id=organization_id)
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return entries[:limit]

    def stats(self) -> dict[str, int]:
        counts = {status.value: 0 for status in DeadLetterStatus}
        for entry in self._store.dead_letters:
            counts[entry.status.value] += 1
        return counts

    # =========================================================================
    # Actions
    # =========================================================================

    async def process(
        self,
        entry_id: str,
        action: DeadLetterAction,
        modified_input: dict[str, Any] | None = None,
        actor: str | None = None,
        organization_id: str | None = None,
    ) -> ProcessResult:
        """Apply a manual action to an entry.

        Raises:
            NotFoundError: Unknown entry
            DeadLetterStateError: Action not valid in the entry's status
        """
        async with self._locks.hold(entry_id):
            entry = self.get(entry_id, organization_id)
            match action:
                case DeadLetterAction.RETRY | DeadLetterAction.RETRY_MODIFIED:
                    result = await self._retry(entry, action, modified_input)
                case DeadLetterAction.SKIP:
                    result = self._close(entry, action, ResolutionType.SKIPPED, actor)
                case DeadLetterAction.RESOLVE:
                    result = self._close(entry, action, ResolutionType.MANUAL, actor)

        if not result.noop:
            await self._emit(EventTypes.DLQ_ENTRY_PROCESSED, entry, action=action.value)
        return result

    async def _retry(
        self,
        entry: DeadLetterEntry,
        action: DeadLetterAction,
        modified_input: dict[str, Any] | None,
    ) -> ProcessResult:
        if entry.status != DeadLetterStatus.PENDING:
            raise DeadLetterStateError(f"Cannot {action.value} entry {entry.id} in status {entry.status.value}")
        if action == DeadLetterAction.RETRY_MODIFIED and modified_input is None:
            raise DeadLetterStateError("retry_modified requires modified_input")
        if self._replayer is None:
            raise DeadLetterStateError("No replayer configured for dead-letter retries")

        replay_input = copy.deepcopy(modified_input if modified_input is not None else entry.original_input)
        entry.transition(DeadLetterStatus.PROCESSING)
        entry.manual_retry_count += 1
        self._store.dead_letters.save(entry)
        try:
            execution_id = await self._replayer(entry, replay_input)
        except Exception:
            entry.transition(DeadLetterStatus.PENDING)
            entry.manual_retry_count -= 1
            self._store.dead_letters.save(entry)
            raise
        entry.retry_execution_ids.append(execution_id)
        logger.info(
            "dead_letter_retried",
            entry_id=entry.id,
            execution_id=execution_id,
            modified=action == DeadLetterAction.RETRY_MODIFIED,
            manual_retry_count=entry.manual_retry_count,
        )
        return ProcessResult(entry_id=entry.id, action=action, status=entry.status, execution_id=execution_id)

    def _close(
        self,
        entry: DeadLetterEntry,
        action: DeadLetterAction,
        resolution: ResolutionType,
        actor: str | None,
    ) -> ProcessResult:
        if entry.status == DeadLetterStatus.RESOLVED:
            return ProcessResult(entry_id=entry.id, action=action, status=entry.status, noop=True)
        if entry.status == DeadLetterStatus.EXPIRED:
            raise DeadLetterStateError(f"Entry {entry.id} has expired")
        entry.transition(DeadLetterStatus.RESOLVED)
        entry.resolution_type = resolution
        entry.resolved_at = self._clock()
        entry.resolved_by = actor
        self._store.dead_letters.save(entry)
        self._resolve_error(entry.error_id, resolution.value)
        logger.info("dead_letter_resolved", entry_id=entry.id, resolution=resolution.value, actor=actor)
        return ProcessResult(entry_id=entry.id, action=action, status=entry.status)

    def _resolve_error(self, error_id: str, resolution: str) -> None:
        error: ExecutionError | None = self._store.execution_errors.get(error_id)
        if error is None or error.status == ErrorStatus.RESOLVED:
            return
        error.transition(ErrorStatus.RESOLVED)
        error.resolution = resolution
        error.resolved_at = self._clock()
        self._store.execution_errors.save(error)

    # =========================================================================
    # Replay outcome and retention
    # =========================================================================

    async def record_replay_outcome(self, entry_id: str, execution_id: str, succeeded: bool) -> None:
        """Replay completed → resolved (retried); replay failed → pending."""
        async with self._locks.hold(entry_id):
            entry = self._store.dead_letters.get(entry_id)
            if entry is None or entry.status != DeadLetterStatus.PROCESSING:
                return
            if succeeded:
                entry.transition(DeadLetterStatus.RESOLVED)
                entry.resolution_type = ResolutionType.RETRIED
                entry.resolved_at = self._clock()
                self._store.dead_letters.save(entry)
                self._resolve_error(entry.error_id, ResolutionType.RETRIED.value)
                logger.info("dead_letter_replay_succeeded", entry_id=entry_id, execution_id=execution_id)
            else:
                entry.transition(DeadLetterStatus.PENDING)
                self._store.dead_letters.save(entry)
                logger.warning("dead_letter_replay_unsuccessful", entry_id=entry_id, execution_id=execution_id)

    async def expire(self) -> list[DeadLetterEntry]:
        """Mark entries past their retention window ``expired``."""
        now = self._clock()
        expired = []
        for entry in self._store.dead_letters.find(
            lambda e: e.status != DeadLetterStatus.EXPIRED and e.expires_at <= now
        ):
            entry.transition(DeadLetterStatus.EXPIRED)
            self._store.dead_letters.save(entry)
            expired.append(entry)
            await self._emit(EventTypes.DLQ_ENTRY_EXPIRED, entry)
        if expired:
            logger.info("dead_letters_expired", count=len(expired))
        return expired

    async def _emit(self, event_type: str, entry: DeadLetterEntry, **extra: Any) -> None:
        if self._bus is None:
            return
        await self._bus.publish(
            Event(
                event_type=event_type,
                source="deadletter.store",
                payload={**entry.to_dict(), **extra},
                correlation_id=entry.execution_id,
                organization_id=entry.organization_id,
            )
        )


__all__ = ["DeadLetterStore", "Replayer"]
