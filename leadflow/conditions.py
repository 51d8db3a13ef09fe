"""Evaluation of step conditions against a lead."""

from __future__ import annotations

from typing import Any, Callable, Iterable

from .contracts import Lead
from .persistence.models import (
    FieldCondition,
    HasAnyTagCondition,
    SourceInCondition,
    StatusInCondition,
    StepCondition,
)


def _status_in(condition: StatusInCondition, lead: Lead) -> bool:
    return lead.status in condition.values


def _source_in(condition: SourceInCondition, lead: Lead) -> bool:
    return lead.source in condition.values


def _has_any_tag(condition: HasAnyTagCondition, lead: Lead) -> bool:
    return any(tag in lead.tags for tag in condition.tags)


def as_number(value: Any) -> float | None:
    """Parse ``value`` as a float, ``None`` when it is not numeric."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _field(condition: FieldCondition, lead: Lead) -> bool:
    actual = lead.attribute(condition.field)
    if actual is None:
        return False
    op = condition.operator
    if op == "eq":
        return str(actual) == condition.value
    if op == "ne":
        return str(actual) != condition.value
    if op == "contains":
        if isinstance(actual, (list, tuple, set)):
            return condition.value in {str(item) for item in actual}
        return condition.value in str(actual)
    left, right = as_number(actual), as_number(condition.value)
    if left is None or right is None:
        return False
    return left > right if op == "gt" else left < right


_EVALUATORS: dict[str, Callable[[Any, Lead], bool]] = {
    "status_in": _status_in,
    "source_in": _source_in,
    "has_any_tag": _has_any_tag,
    "field": _field,
}


def condition_matches(condition: StepCondition, lead: Lead) -> bool:
    return _EVALUATORS[condition.kind](condition, lead)


def conditions_match(conditions: Iterable[StepCondition], lead: Lead) -> bool:
    """Return ``True`` when every condition holds (vacuously for none)."""
    return all(condition_matches(c, lead) for c in conditions)
