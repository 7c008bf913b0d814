"""
CLI: ``conduit validate`` -- check workflow and trigger YAML files.

Exit codes: 0 valid, 1 invalid definition, 2 unreadable or malformed YAML.
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import typer

from conduit.cli.utils import console, err_console, load_yaml_file, print_field_errors
from conduit.core.errors import ConfigurationError
from conduit.core.scheduling.cron import compute_next_run
from conduit.orchestration.workflow import Workflow
from conduit.triggers.models import ScheduleConfig, TriggerType
from conduit.triggers.validation import parse_trigger_config

app = typer.Typer(no_args_is_help=True, help="Validate workflow and trigger definitions.")


def _fail(kind: str, path: Path, error: ConfigurationError) -> None:
    err_console.print(f"[red]✗ Invalid {kind}[/red] {path}: {error.message}")
    print_field_errors(error.field_errors)
    raise typer.Exit(code=1)


@app.command("workflow")
def validate_workflow(
    file: Path = typer.Argument(..., help="Workflow YAML file"),
) -> None:
    """Validate a workflow definition (steps, dependencies, policies)."""
    load_yaml_file(file)
    try:
        workflow = Workflow.from_yaml(file.read_text(encoding="utf-8"))
    except ConfigurationError as e:
        _fail("workflow", file, e)
        return

    console.print(f"[green]✓ Valid workflow[/green] [bold]{workflow.id}[/bold] ({len(workflow.steps)} steps)")
    for step in workflow.steps:
        deps = ", ".join(step.depends_on) or "-"
        console.print(f"  • {step.id} [dim]({step.kind.value}; after: {deps})[/dim]")


@app.command("trigger")
def validate_trigger(
    file: Path = typer.Argument(..., help="Trigger YAML file"),
    preview: int = typer.Option(3, "--preview", "-n", help="Upcoming runs to show for scheduled triggers"),
) -> None:
    """Validate a trigger definition (``type`` plus ``config``)."""
    doc = load_yaml_file(file)
    if not isinstance(doc, dict) or "type" not in doc:
        err_console.print(f"[red]✗ Invalid trigger[/red] {file}: expected a mapping with a 'type' key")
        raise typer.Exit(code=1)
    try:
        trigger_type = TriggerType(doc["type"])
    except ValueError as e:
        err_console.print(f"[red]✗ Invalid trigger[/red] {file}: unknown type {doc['type']!r}")
        raise typer.Exit(code=1) from e

    config = dict(doc.get("config") or {})
    if trigger_type == TriggerType.WEBHOOK:
        config.setdefault("token", "generated-on-create")
    try:
        parsed = parse_trigger_config(trigger_type, config)
    except ConfigurationError as e:
        _fail("trigger", file, e)
        return

    name = doc.get("name", file.stem)
    console.print(f"[green]✓ Valid {trigger_type.value} trigger[/green] [bold]{name}[/bold]")
    if isinstance(parsed, ScheduleConfig) and preview > 0:
        after: datetime | None = datetime.now(UTC)
        for _ in range(preview):
            after = compute_next_run(parsed.cron_expression, after, parsed.timezone)
            if after is None:
                break
            console.print(f"  next: {after.isoformat()}")
