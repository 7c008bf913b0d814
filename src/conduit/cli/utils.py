"""
CLI utility helpers -- consoles and YAML loading.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import typer
import yaml
from rich.console import Console

console = Console()
err_console = Console(stderr=True)


def load_yaml_file(path: Path) -> Any:
    """Read and parse a YAML file, exiting with code 2 on I/O or syntax errors."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        err_console.print(f"[red]Cannot read {path}:[/red] {e}")
        raise typer.Exit(code=2) from e
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as e:
        err_console.print(f"[red]Invalid YAML in {path}:[/red] {e}")
        raise typer.Exit(code=2) from e


def print_field_errors(field_errors: list[dict[str, Any]]) -> None:
    for problem in field_errors:
        err_console.print(f"  • [yellow]{problem.get('field')}[/yellow]: {problem.get('message')}")
