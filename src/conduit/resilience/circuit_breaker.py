"""Circuit breaker per (workflow, step).

Prevents cascading failures by failing fast when a step keeps failing.

States:
    CLOSED: Normal operation, calls pass through
    OPEN: Failing fast, calls rejected without invoking the executor
    HALF_OPEN: Limited trial calls probe for recovery

Transitions::

    closed ──(failure_count ≥ threshold)──► open
    open ──(reset_timeout elapsed, next call)──► half_open
    half_open ──success──► closed (failure_count = 0)
    half_open ──failure──► open (timer restarts)        policy "immediate"
    half_open ──failures ≥ threshold──► open            policy "threshold"

Each breaker is one ``CircuitBreakerState`` row. Every read-modify-write
runs under a per-(workflow, step) lock and is written back with an
optimistic version check, so concurrent failures on the same step apply
one at a time.

Example:
    >>> breakers = CircuitBreakerManager(store, bus=bus)
    >>> if await breakers.allow_call("wf-1", "post", policy):
    ...     try:
    ...         result = await run_step()
    ...         await breakers.record_success("wf-1", "post", policy)
    ...     except Exception:
    ...         await breakers.record_failure("wf-1", "post", policy)
"""

from __future__ import annotations

import dataclasses

from conduit.core.config import HalfOpenPolicy
from conduit.core.events import Event, EventBus, EventTypes
from conduit.core.locks import KeyedLock
from conduit.core.logging import get_logger
from conduit.core.store import InMemoryStore
from conduit.core.timestamps import Clock, utc_now

from .models import BreakerPolicy, CircuitBreakerState, CircuitState, breaker_key

logger = get_logger(__name__)


class CircuitBreakerManager:
    """Owns every CircuitBreakerState row."""

    def __init__(
        self,
        store: InMemoryStore,
        bus: EventBus | None = None,
        clock: Clock = utc_now,
        organization_id: str = "default",
    ) -> None:
        self._store = store
        self._bus = bus
        self._clock = clock
        self._organization_id = organization_id
        self._locks = KeyedLock()

    # -- row access -----------------------------------------------------------

    def get(self, workflow_id: str, step_id: str) -> CircuitBreakerState | None:
        return self._store.circuit_breakers.get(breaker_key(workflow_id, step_id))

    def _load(self, workflow_id: str, step_id: str, policy: BreakerPolicy) -> CircuitBreakerState:
        row = self.get(workflow_id, step_id)
        if row is None:
            row = CircuitBreakerState(
                id=breaker_key(workflow_id, step_id),
                organization_id=self._organization_id,
                workflow_id=workflow_id,
                step_id=step_id,
                failure_threshold=policy.failure_threshold,
                reset_timeout_seconds=policy.reset_timeout_seconds,
                half_open_max_calls=policy.half_open_max_calls,
            )
            self._store.circuit_breakers.insert(row)
        return dataclasses.replace(row)

    def _write(self, state: CircuitBreakerState) -> CircuitBreakerState:
        return self._store.circuit_breakers.save(state, expected_version=state.version)

    def state_of(self, workflow_id: str, step_id: str) -> CircuitState:
        row = self.get(workflow_id, step_id)
        return row.state if row is not None else CircuitState.CLOSED

    def list(self) -> list[CircuitBreakerState]:
        return self._store.circuit_breakers.find()

    # -- transitions ----------------------------------------------------------

    async def allow_call(self, workflow_id: str, step_id: str, policy: BreakerPolicy) -> bool:
        """Whether a call may proceed; may move open → half_open."""
        async with self._locks.hold((workflow_id, step_id)):
            state = self._load(workflow_id, step_id, policy)
            now = self._clock()

            if state.state == CircuitState.CLOSED:
                return True

            if state.state == CircuitState.OPEN:
                reset_at = state.reset_at
                if reset_at is None or now < reset_at:
                    return False
                state.state = CircuitState.HALF_OPEN
                state.half_opened_at = now
                state.half_open_calls = 0
                state.success_count = 0
                if policy.half_open_policy == HalfOpenPolicy.THRESHOLD:
                    state.failure_count = 0
                transitioned = True
            else:
                transitioned = False

            if state.half_open_calls >= state.half_open_max_calls:
                self._write(state)
                return False
            state.half_open_calls += 1
            self._write(state)

        if transitioned:
            logger.info("circuit_half_opened", workflow_id=workflow_id, step_id=step_id)
            await self._emit(EventTypes.CIRCUIT_HALF_OPENED, state)
        return True

    async def record_success(self, workflow_id: str, step_id: str, policy: BreakerPolicy) -> CircuitBreakerState:
        async with self._locks.hold((workflow_id, step_id)):
            state = self._load(workflow_id, step_id, policy)
            state.success_count += 1
            closed = state.state == CircuitState.HALF_OPEN
            if closed:
                state.state = CircuitState.CLOSED
                state.opened_at = None
                state.half_opened_at = None
                state.half_open_calls = 0
            state.failure_count = 0
            state = self._write(state)

        if closed:
            logger.info("circuit_closed", workflow_id=workflow_id, step_id=step_id)
            await self._emit(EventTypes.CIRCUIT_CLOSED, state)
        return state

    async def record_failure(self, workflow_id: str, step_id: str, policy: BreakerPolicy) -> CircuitBreakerState:
        """Count a failure; open the breaker at the threshold."""
        async with self._locks.hold((workflow_id, step_id)):
            state = self._load(workflow_id, step_id, policy)
            now = self._clock()
            state.failure_count += 1
            state.last_failure_at = now
            opened = False

            if state.state == CircuitState.CLOSED:
                if state.failure_count >= state.failure_threshold:
                    opened = True
            elif state.state == CircuitState.HALF_OPEN:
                state.half_open_calls = max(0, state.half_open_calls - 1)
                if policy.half_open_policy == HalfOpenPolicy.IMMEDIATE:
                    opened = True
                elif state.failure_count >= state.failure_threshold:
                    opened = True
            else:
                # already open: restart the timer
                state.opened_at = now

            if opened:
                state.state = CircuitState.OPEN
                state.opened_at = now
                state.half_opened_at = None
                state.half_open_calls = 0
            state = self._write(state)

        if opened:
            logger.warning(
                "circuit_opened",
                workflow_id=workflow_id,
                step_id=step_id,
                failure_count=state.failure_count,
                reset_at=state.reset_at.isoformat() if state.reset_at else None,
            )
            await self._emit(EventTypes.CIRCUIT_OPENED, state)
        return state

    async def reset(self, workflow_id: str, step_id: str) -> None:
        """Force the breaker closed (operator action)."""
        async with self._locks.hold((workflow_id, step_id)):
            row = self.get(workflow_id, step_id)
            if row is None:
                return
            state = dataclasses.replace(row)
            state.state = CircuitState.CLOSED
            state.failure_count = 0
            state.half_open_calls = 0
            state.opened_at = None
            state.half_opened_at = None
            self._write(state)

    async def _emit(self, event_type: str, state: CircuitBreakerState) -> None:
        if self._bus is None:
            return
        await self._bus.publish(
            Event(
                event_type=event_type,
                source="resilience.circuit_breaker",
                payload=state.to_dict(),
                organization_id=state.organization_id,
            )
        )


__all__ = ["CircuitBreakerManager"]
