"""
FastAPI dependency injection.

Usage in routers::

    from conduit.api.deps import Runtime

    @router.get("/things")
    async def list_things(runtime: Runtime):
        ...

The runtime is created once by :func:`conduit.api.app.create_app` and
stashed on ``app.state``; routers never build components themselves.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from conduit.core.config import ConduitSettings
from conduit.runtime import ConduitRuntime


def get_runtime(request: Request) -> ConduitRuntime:
    return request.app.state.runtime


def get_app_settings(request: Request) -> ConduitSettings:
    return request.app.state.settings


Runtime = Annotated[ConduitRuntime, Depends(get_runtime)]
Settings = Annotated[ConduitSettings, Depends(get_app_settings)]
