"""Health and monitoring overview endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

from conduit.api.deps import Runtime

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(runtime: Runtime) -> JSONResponse:
    """Liveness plus scheduler, queue and dead-letter summary; 503 once halted."""
    body = runtime.health()
    return JSONResponse(status_code=503 if body["halted"] else 200, content=body)


@router.get("/monitor/overview")
async def monitor_overview(runtime: Runtime) -> dict[str, Any]:
    return runtime.monitor.overview()


@router.get("/monitor/workflows")
async def workflow_stats(runtime: Runtime, workflow_id: str | None = Query(None)) -> list[dict[str, Any]]:
    return runtime.monitor.workflow_stats(workflow_id)
