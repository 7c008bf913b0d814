"""
In-memory persisted-state layout.

Manifesto:
    The core does not choose a storage engine. It needs a narrow table
    abstraction with stable ids, organization scoping, and an optimistic
    version check for rows that more than one actor mutates.

Each logical table (workflows, triggers, schedules, executions, errors,
circuit breakers, dead letters, alert rules, alert events, webhook logs,
schedule runs, fire keys) is a :class:`Table` keyed by row id. Rows are
dataclasses carrying ``id``, ``organization_id`` and ``version``.

Setting ``store.available = False`` simulates loss of the persistence
layer: every table operation then raises
:class:`~conduit.core.errors.PersistenceError`.

Tags:
    conduit-core, persistence, in-memory, optimistic-locking
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from typing import Any, Generic, TypeVar

from conduit.core.errors import NotFoundError, PersistenceError, VersionConflictError

__all__ = ["Table", "InMemoryStore"]

T = TypeVar("T")


class Table(Generic[T]):
    """One logical table of rows keyed by ``row.id``."""

    def __init__(self, name: str, store: InMemoryStore) -> None:
        self.name = name
        self._store = store
        self._rows: dict[str, T] = {}

    def _check(self) -> None:
        if not self._store.available:
            raise PersistenceError(f"persistence unavailable (table {self.name})")

    def insert(self, row: T) -> T:
        self._check()
        row_id = row.id  # type: ignore[attr-defined]
        if row_id in self._rows:
            raise VersionConflictError(f"{self.name} row {row_id} already exists")
        self._rows[row_id] = row
        return row

    def get(self, row_id: str, organization_id: str | None = None) -> T | None:
        self._check()
        row = self._rows.get(row_id)
        if row is None:
            return None
        if organization_id is not None and getattr(row, "organization_id", None) != organization_id:
            return None
        return row

    def require(self, row_id: str, organization_id: str | None = None) -> T:
        row = self.get(row_id, organization_id)
        if row is None:
            raise NotFoundError(f"{self.name} {row_id} not found")
        return row

    def save(self, row: T, expected_version: int | None = None) -> T:
        """Write ``row`` back, bumping its version.

        When ``expected_version`` is given the stored row must still carry
        that version, otherwise :class:`VersionConflictError` is raised.
        """
        self._check()
        row_id = row.id  # type: ignore[attr-defined]
        current = self._rows.get(row_id)
        if expected_version is not None:
            stored_version = getattr(current, "version", None) if current is not None else None
            if stored_version != expected_version:
                raise VersionConflictError(
                    f"{self.name} row {row_id} version {stored_version} != expected {expected_version}"
                )
        row.version = getattr(row, "version", 0) + 1  # type: ignore[attr-defined]
        self._rows[row_id] = row
        return row

    def put(self, row: T) -> T:
        """Insert or overwrite without a version check."""
        self._check()
        self._rows[row.id] = row  # type: ignore[attr-defined]
        return row

    def delete(self, row_id: str) -> T | None:
        self._check()
        return self._rows.pop(row_id, None)

    def find(
        self,
        predicate: Callable[[T], bool] | None = None,
        organization_id: str | None = None,
    ) -> list[T]:
        self._check()
        rows = []
        for row in self._rows.values():
            if organization_id is not None and getattr(row, "organization_id", None) != organization_id:
                continue
            if predicate is None or predicate(row):
                rows.append(row)
        return rows

    def first(self, predicate: Callable[[T], bool]) -> T | None:
        self._check()
        for row in self._rows.values():
            if predicate(row):
                return row
        return None

    def __len__(self) -> int:
        return len(self._rows)

    def __iter__(self) -> Iterator[T]:
        self._check()
        return iter(list(self._rows.values()))


class InMemoryStore:
    """Container for every table the core persists."""

    TABLES = (
        "workflows",
        "triggers",
        "schedules",
        "schedule_runs",
        "fire_keys",
        "webhook_logs",
        "executions",
        "execution_errors",
        "circuit_breakers",
        "dead_letters",
        "alert_rules",
        "alert_events",
    )

    def __init__(self) -> None:
        self.available = True
        self._tables: dict[str, Table[Any]] = {name: Table(name, self) for name in self.TABLES}

    def table(self, name: str) -> Table[Any]:
        return self._tables[name]

    def __getattr__(self, name: str) -> Table[Any]:
        tables = self.__dict__.get("_tables")
        if tables is not None and name in tables:
            return tables[name]
        raise AttributeError(name)
