"""
CLI: ``conduit serve`` -- start the API server.
"""

from __future__ import annotations

import typer
import uvicorn

from conduit.cli.utils import console
from conduit.core.config import get_settings
from conduit.core.logging import configure_logging


def serve(
    host: str | None = typer.Option(None, "--host", "-h", help="Bind address (default: CONDUIT_API_HOST)"),
    port: int | None = typer.Option(None, "--port", "-p", help="Bind port (default: CONDUIT_API_PORT)"),
    reload: bool = typer.Option(False, "--reload", help="Auto-reload on changes"),
    log_level: str | None = typer.Option(None, "--log-level", help="Override CONDUIT_LOG_LEVEL"),
) -> None:
    """Start the conduit REST API server with its background loops."""
    settings = get_settings()
    host = host or settings.api_host
    port = port or settings.api_port
    level = (log_level or settings.log_level).upper()
    configure_logging(level=level, json_format=settings.log_format == "json")

    console.print(f"[bold green]Starting conduit API[/bold green] on {host}:{port}{settings.api_prefix}")
    uvicorn.run(
        "conduit.api:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level=level.lower(),
    )
