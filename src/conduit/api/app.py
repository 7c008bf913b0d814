"""
FastAPI application factory for the conduit HTTP API.

Routers only translate HTTP into :class:`ConduitRuntime` calls; status
codes come from the error handlers in :mod:`conduit.api.middleware`.
``/health`` and ``/monitor/*`` are mounted at the root for probes, the
rest under ``settings.api_prefix``.

Tags:
    conduit-core, api, FastAPI
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from conduit import __version__
from conduit.api.middleware.errors import conduit_error_handler, unhandled_exception_handler
from conduit.api.middleware.request_id import RequestIDMiddleware
from conduit.api.routers import alerts, dlq, events, executions, health, hooks, triggers
from conduit.core.config import ConduitSettings, get_settings
from conduit.core.errors import ConduitError
from conduit.core.logging import get_logger
from conduit.runtime import ConduitRuntime

logger = get_logger(__name__)

_PREFIXED_ROUTERS = (hooks, triggers, executions, dlq, alerts, events)


@asynccontextmanager
async def _runtime_lifespan(app: FastAPI) -> AsyncIterator[None]:
    runtime: ConduitRuntime = app.state.runtime
    await runtime.start()
    logger.info("api_started", version=app.version, prefix=app.state.settings.api_prefix)
    try:
        yield
    finally:
        await runtime.stop()
        logger.info("api_stopped")


def create_app(
    *,
    runtime: ConduitRuntime | None = None,
    settings: ConduitSettings | None = None,
) -> FastAPI:
    """Assemble the API around ``runtime``.

    Without a runtime one is built from ``settings`` (or the cached
    :func:`get_settings`); ``conduit serve`` relies on that path through
    uvicorn's ``factory=True``.
    """
    if settings is None:
        settings = runtime.settings if runtime is not None else get_settings()
    if runtime is None:
        runtime = ConduitRuntime(settings)

    prefix = settings.api_prefix
    app = FastAPI(
        title="Conduit",
        version=__version__,
        lifespan=_runtime_lifespan,
        docs_url=prefix + "/docs",
        openapi_url=prefix + "/openapi.json",
    )
    app.state.settings = settings
    app.state.runtime = runtime

    app.add_middleware(RequestIDMiddleware)
    app.add_exception_handler(ConduitError, conduit_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health.router)
    for module in _PREFIXED_ROUTERS:
        app.include_router(module.router, prefix=prefix)
    return app
