"""
Root Typer application for the conduit CLI.
"""

from __future__ import annotations

import typer

from conduit import __version__
from conduit.cli.config import show_config
from conduit.cli.serve import serve
from conduit.cli.validate import app as validate_app

app = typer.Typer(
    name="conduit",
    help="conduit - workflow automation: triggers, executions, dead letters and alerts.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"conduit {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """conduit CLI - serve the API, inspect settings, validate definitions."""


app.command("serve")(serve)
app.command("config")(show_config)
app.add_typer(validate_app, name="validate")
