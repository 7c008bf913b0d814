"""Conduit core -- domain-agnostic primitives shared by every component.

Architecture::

    errors.py        ConduitError hierarchy and ErrorKind
    logging.py       structlog configuration, LogContext
    timestamps.py    prefixed ULID ids, UTC clock
    config/          ConduitSettings (pydantic-settings)
    events/          Event, EventBus protocol, InMemoryEventBus
    store.py         in-memory, org-scoped, version-checked tables
    locks.py         per-key asyncio locks
    scheduling/      timing backends, cron helpers, SchedulerService

Submodules are imported directly (``from conduit.core.errors import ...``);
this package re-exports nothing so that importing one primitive never
drags in the rest.
"""
