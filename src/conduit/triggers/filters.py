"""Filter predicates for event and document triggers.

A predicate is ``(field, operator, value)`` where ``field`` is a dotted
path into the event payload (``client.id``, ``invoice.amount``). A
trigger matches when every predicate holds. Evaluation is total: a
missing field or a value of the wrong type is simply "no match".

Example::

    predicates = [
        FilterPredicate("client_id", FilterOperator.EQ, "c-42"),
        FilterPredicate("amount", FilterOperator.BETWEEN, [1000, 5000]),
    ]
    matches_all({"client_id": "c-42", "amount": 1500}, predicates)   # True
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

_MISSING = object()


class FilterOperator(str, Enum):
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    NOT_IN = "not_in"
    CONTAINS = "contains"
    EXISTS = "exists"
    BETWEEN = "between"


@dataclass(frozen=True)
class FilterPredicate:
    field: str
    operator: FilterOperator
    value: Any = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FilterPredicate:
        return cls(field=data["field"], operator=FilterOperator(data.get("operator", "eq")), value=data.get("value"))

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "operator": self.operator.value, "value": self.value}


def resolve_path(payload: Any, path: str) -> Any:
    """Walk a dotted path through nested mappings; ``_MISSING`` if absent."""
    current = payload
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def evaluate_predicate(payload: Any, predicate: FilterPredicate) -> bool:
    actual = resolve_path(payload, predicate.field)
    expected = predicate.value
    op = predicate.operator
    if op == FilterOperator.EXISTS:
        present = actual is not _MISSING and actual is not None
        return present if expected is None else present == bool(expected)
    if actual is _MISSING:
        return False
    try:
        match op:
            case FilterOperator.EQ:
                return actual == expected
            case FilterOperator.NE:
                return actual != expected
            case FilterOperator.GT:
                return actual > expected
            case FilterOperator.GTE:
                return actual >= expected
            case FilterOperator.LT:
                return actual < expected
            case FilterOperator.LTE:
                return actual <= expected
            case FilterOperator.IN:
                return actual in expected
            case FilterOperator.NOT_IN:
                return actual not in expected
            case FilterOperator.CONTAINS:
                return expected in actual
            case FilterOperator.BETWEEN:
                low, high = expected
                return low <= actual <= high
    except (TypeError, ValueError):
        return False
    return False


def matches_all(payload: Any, predicates: tuple[FilterPredicate, ...] | list[FilterPredicate]) -> bool:
    return all(evaluate_predicate(payload, p) for p in predicates)


def event_type_matches(event_type: str, pattern: str) -> bool:
    """Same wildcard rules as :meth:`conduit.core.events.Event.matches`."""
    if pattern == "*":
        return True
    if pattern.endswith(".*"):
        return event_type.startswith(pattern[:-2] + ".")
    return event_type == pattern


__all__ = [
    "FilterOperator",
    "FilterPredicate",
    "resolve_path",
    "evaluate_predicate",
    "matches_all",
    "event_type_matches",
]
