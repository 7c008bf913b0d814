"""
Structured logging for conduit.

All components log through structlog with snake_case event names and
keyword fields. Trigger, execution, resilience and alert activity is
correlated through context variables (``execution_id``, ``workflow_id``,
``trigger_id``, ``request_id``) bound for the lifetime of a run or a
request.

Architecture:
    ::

        configure_logging(level, json_format, service)
            │
            ▼
        TimeStamper(iso) → merge_contextvars → level / logger name
            → service.name → [ECS renames + exc_info] → JSON | console

    ``get_logger`` works before ``configure_logging`` runs; structlog's
    defaults apply until then, which is what tests rely on.

Examples:
    >>> configure_logging(level="DEBUG", json_format=False)
    >>> logger = get_logger(__name__)
    >>> async with LogContext(execution_id="exe_1", workflow_id="month-end"):
    ...     logger.info("step_completed", step_id="reconcile", duration_ms=412)

Tags:
    logging, structlog, observability, conduit-core
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# Field renames applied to JSON output so log shippers index by ECS names.
_ECS_FIELDS = {"timestamp": "@timestamp", "level": "log.level", "logger": "log.logger"}


class _ServiceName:
    """Processor stamping ``service.name`` on every event."""

    def __init__(self, service: str) -> None:
        self.service = service

    def __call__(self, logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service.name", self.service)
        return event_dict


def _ecs_fields(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    for plain, ecs in _ECS_FIELDS.items():
        if plain in event_dict:
            event_dict[ecs] = event_dict.pop(plain)
    return event_dict


def _processors(service: str, json_format: bool) -> list[Processor]:
    chain: list[Processor] = [
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        _ServiceName(service),
    ]
    if json_format:
        chain += [_ecs_fields, structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        chain += [structlog.dev.set_exc_info, structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]
    return chain


def configure_logging(level: str = "INFO", json_format: bool | None = None, service: str = "conduit") -> None:
    """Configure structlog (and the stdlib root logger it writes through).

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_format: JSON lines when True, coloured console when False;
            None picks JSON unless stdout is a terminal
        service: Value of ``service.name`` on every line
    """
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise ValueError(f"Unknown log level: {level!r}")
    if json_format is None:
        json_format = not sys.stdout.isatty()

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric, force=True)
    structlog.configure(
        processors=_processors(service, json_format),
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> Any:
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Bind keys for the duration of a ``with`` / ``async with`` block.

    Context variables are copied per asyncio task, so two executions
    running concurrently never see each other's ids. On exit only the
    keys this block bound are removed.
    """

    def __init__(self, **fields: Any) -> None:
        self._fields = {k: v for k, v in fields.items() if v is not None}

    def __enter__(self) -> LogContext:
        bind_context(**self._fields)
        return self

    def __exit__(self, *exc: Any) -> None:
        unbind_context(*self._fields)

    async def __aenter__(self) -> LogContext:
        return self.__enter__()

    async def __aexit__(self, *exc: Any) -> None:
        self.__exit__(*exc)


__all__ = [
    "configure_logging",
    "get_logger",
    "bind_context",
    "unbind_context",
    "clear_context",
    "LogContext",
]
