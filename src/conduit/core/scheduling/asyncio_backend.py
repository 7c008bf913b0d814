"""asyncio task-based scheduler backend.

┌──────────────────────────────────────────────────────────────────────────┐
│  AsyncioSchedulerBackend                                                  │
│                                                                           │
│   start()  ──► loop.create_task(_loop)                                    │
│                                                                           │
│   _loop:                                                                  │
│      while not stop_event (wait up to interval):                          │
│          tick_count += 1                                                  │
│          await tick_callback()      exceptions logged, loop continues     │
│                                                                           │
│   stop()   ──► stop_event.set(); await task                               │
└──────────────────────────────────────────────────────────────────────────┘

Ticks run on the engine's own event loop, so a tick callback can submit
executions and publish events directly. A tick that calls ``stop()`` on
its own backend (systemic halt) only sets the stop flag.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any

from conduit.core.logging import get_logger
from conduit.core.timestamps import utc_now

from .protocol import BackendHealth, TickCallback

logger = get_logger(__name__)


class AsyncioSchedulerBackend:
    """Run a tick callback on a fixed interval as an asyncio task.

    Example:
        >>> backend = AsyncioSchedulerBackend("scheduler")
        >>> backend.start(service.tick, interval_seconds=10.0)
        >>> # ... later ...
        >>> await backend.stop()
    """

    name = "asyncio"

    def __init__(self, label: str = "scheduler", tick_immediately: bool = False) -> None:
        self.label = label
        self.tick_immediately = tick_immediately
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._tick_count = 0
        self._last_tick: datetime | None = None
        self._interval = 10.0

    def start(self, tick_callback: TickCallback, interval_seconds: float = 10.0) -> None:
        if self.is_running:
            logger.warning("scheduler_backend_already_started", loop=self.label)
            return

        self._interval = interval_seconds
        self._stop_event = asyncio.Event()

        async def _loop() -> None:
            logger.info("scheduler_backend_started", loop=self.label, interval_seconds=interval_seconds)
            first = True
            while not self._stop_event.is_set():
                if not (first and self.tick_immediately):
                    try:
                        await asyncio.wait_for(self._stop_event.wait(), timeout=interval_seconds)
                        break
                    except TimeoutError:
                        pass
                first = False
                self._tick_count += 1
                self._last_tick = utc_now()
                try:
                    await tick_callback()
                except Exception as e:
                    logger.exception("scheduler_tick_failed", loop=self.label, error=str(e))
            logger.info("scheduler_backend_stopped", loop=self.label)

        self._task = asyncio.get_running_loop().create_task(_loop(), name=f"conduit-{self.label}")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        if asyncio.current_task() is self._task:
            return
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except TimeoutError:
            logger.warning("scheduler_backend_stop_timeout", loop=self.label)
            self._task.cancel()
        self._task = None

    def health(self) -> dict[str, Any]:
        return self.get_health().to_dict()

    def get_health(self) -> BackendHealth:
        return BackendHealth(
            healthy=self.is_running,
            backend=self.name,
            tick_count=self._tick_count,
            last_tick=self._last_tick,
            extra={"loop": self.label, "interval_seconds": self._interval},
        )

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done() and not self._stop_event.is_set()

    @property
    def tick_count(self) -> int:
        return self._tick_count
