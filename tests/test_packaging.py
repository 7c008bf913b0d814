"""Tests for the distribution metadata."""

from __future__ import annotations

import ast
import re
import sys
import tomllib
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]

# import name -> distribution name, where they differ
DISTRIBUTIONS = {"yaml": "pyyaml", "pydantic_settings": "pydantic-settings"}


def declared() -> set[str]:
    project = tomllib.loads((ROOT / "pyproject.toml").read_text(encoding="utf-8"))["project"]
    return {re.split(r"[<>=!~\[ ;]", dep, maxsplit=1)[0].lower() for dep in project["dependencies"]}


def third_party_imports() -> set[str]:
    names: set[str] = set()
    for path in (ROOT / "src").rglob("*.py"):
        tree = ast.parse(path.read_text(encoding="utf-8"))
        for node in ast.walk(tree):
            if isinstance(node, ast.Import):
                names.update(alias.name.split(".")[0] for alias in node.names)
            elif isinstance(node, ast.ImportFrom) and node.level == 0 and node.module:
                names.add(node.module.split(".")[0])
    return {n for n in names if n != "conduit" and n not in sys.stdlib_module_names}


class TestDependencies:
    """Runtime dependencies in pyproject.toml."""

    def test_every_import_is_declared(self):
        """Libraries imported under src/ are installed by ``pip install conduit-core``."""
        missing = {DISTRIBUTIONS.get(name, name) for name in third_party_imports()} - declared()
        assert missing == set()

    def test_starlette_declared_directly(self):
        """Starlette middleware is imported directly, not only through FastAPI."""
        assert "starlette" in declared()
