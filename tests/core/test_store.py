"""Tests for the in-memory table store and keyed locks."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import pytest

from conduit.core.errors import NotFoundError, PersistenceError, VersionConflictError
from conduit.core.locks import KeyedLock
from conduit.core.store import InMemoryStore


@dataclass
class Row:
    id: str
    organization_id: str = "default"
    name: str = ""
    version: int = 0


class TestTable:
    """Basic table operations."""

    def test_insert_and_get(self, store):
        """Inserted rows are retrievable by id."""
        store.workflows.insert(Row("r1"))
        assert store.workflows.get("r1").id == "r1"
        assert len(store.workflows) == 1

    def test_duplicate_insert_rejected(self, store):
        """Inserting an existing id is a conflict."""
        store.workflows.insert(Row("r1"))
        with pytest.raises(VersionConflictError):
            store.workflows.insert(Row("r1"))

    def test_organization_scoping(self, store):
        """Rows of another organization are invisible."""
        store.triggers.insert(Row("r1", organization_id="acme"))
        assert store.triggers.get("r1", "acme") is not None
        assert store.triggers.get("r1", "other") is None
        assert store.triggers.find(organization_id="other") == []

    def test_require_raises_not_found(self, store):
        """require() raises for missing rows."""
        with pytest.raises(NotFoundError):
            store.executions.require("missing")

    def test_find_and_first(self, store):
        """Predicates filter rows."""
        for i in range(3):
            store.alert_rules.insert(Row(f"r{i}", name="even" if i % 2 == 0 else "odd"))
        assert len(store.alert_rules.find(lambda r: r.name == "even")) == 2
        assert store.alert_rules.first(lambda r: r.name == "odd").id == "r1"
        assert store.alert_rules.first(lambda r: r.name == "none") is None

    def test_delete(self, store):
        """Deleted rows are gone; deleting twice returns None."""
        store.fire_keys.insert(Row("k"))
        assert store.fire_keys.delete("k").id == "k"
        assert store.fire_keys.delete("k") is None

    def test_unknown_table(self, store):
        """Unknown attribute names are not tables."""
        with pytest.raises(AttributeError):
            store.nonexistent


class TestOptimisticVersioning:
    """save() bumps versions and checks expectations."""

    def test_save_bumps_version(self, store):
        """Each save increments the version."""
        row = store.dead_letters.insert(Row("d1"))
        store.dead_letters.save(row)
        store.dead_letters.save(row)
        assert row.version == 2

    def test_expected_version_matches(self, store):
        """A save with the current version succeeds."""
        row = store.dead_letters.insert(Row("d1"))
        store.dead_letters.save(row, expected_version=0)
        assert row.version == 1

    def test_stale_version_rejected(self, store):
        """A save with a stale version raises."""
        row = store.dead_letters.insert(Row("d1"))
        store.dead_letters.save(row)
        with pytest.raises(VersionConflictError):
            store.dead_letters.save(Row("d1", version=0), expected_version=0)


class TestAvailability:
    """Simulated persistence loss."""

    def test_unavailable_store_raises(self, store):
        """Every operation raises PersistenceError while unavailable."""
        store.available = False
        with pytest.raises(PersistenceError):
            store.executions.get("x")
        with pytest.raises(PersistenceError):
            store.executions.insert(Row("x"))
        with pytest.raises(PersistenceError):
            store.executions.find()

    def test_recovery(self):
        """Operations work again once available."""
        store = InMemoryStore()
        store.available = False
        store.available = True
        assert store.executions.find() == []


class TestKeyedLock:
    """Per-key serialization."""

    @pytest.mark.asyncio
    async def test_same_key_serialized(self):
        """Holders of one key run one at a time."""
        lock = KeyedLock()
        order: list[str] = []

        async def worker(name: str) -> None:
            async with lock.hold("k"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])

    @pytest.mark.asyncio
    async def test_locks_released_when_idle(self):
        """No lock objects remain after use."""
        lock = KeyedLock()
        async with lock.hold("k"):
            assert lock.locked("k")
            assert len(lock) == 1
        assert not lock.locked("k")
        assert len(lock) == 0

    @pytest.mark.asyncio
    async def test_different_keys_independent(self):
        """Unrelated keys do not block each other."""
        lock = KeyedLock()
        async with lock.hold("a"):
            async with lock.hold("b"):
                assert lock.locked("a") and lock.locked("b")
