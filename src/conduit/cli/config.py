"""
CLI: ``conduit config`` -- print the effective settings.
"""

from __future__ import annotations

import typer
from rich.table import Table

from conduit.cli.utils import console, err_console
from conduit.core.config import clear_settings_cache, get_settings

_SECRET_MARKERS = ("secret", "password", "token", "key")


def _display(key: str, value: object) -> str:
    if value and any(marker in key for marker in _SECRET_MARKERS):
        return "***"
    return str(value)


def show_config(
    format: str = typer.Option("table", "--format", "-f", help="Output format: table, json, env"),
) -> None:
    """Show the effective configuration (environment, .env file and defaults)."""
    clear_settings_cache()
    try:
        settings = get_settings()
    except ValueError as e:
        err_console.print(f"[red]Configuration Error:[/red] {e}")
        raise typer.Exit(code=1) from e

    values = settings.model_dump(mode="json")

    if format == "json":
        console.print_json(data={k: _display(k, v) if v else v for k, v in values.items()})
        return

    if format == "env":
        for key, value in sorted(values.items()):
            console.print(f"CONDUIT_{key.upper()}={_display(key, value)}")
        return

    table = Table(title="Effective settings")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for key, value in sorted(values.items()):
        table.add_row(key, _display(key, value))
    console.print(table)
