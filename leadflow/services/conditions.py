from __future__ import annotations

from typing import Any, Iterable, Mapping

from leadflow.models import (
    Composite,
    Condition,
    FieldCompare,
    FieldContains,
    FieldEquals,
    FieldIn,
    LeadRecord,
)

_CORE_FACTS = ("name", "phone", "email", "source", "stage", "budget", "location", "property_type")


def lead_facts(lead: LeadRecord) -> dict[str, Any]:
    """Flatten a lead into the fact mapping rules are evaluated against."""
    facts: dict[str, Any] = dict(lead.attributes)
    for name in _CORE_FACTS:
        value = getattr(lead, name)
        if value is not None:
            facts[name] = value
    facts["assignment_priority"] = lead.assignment_priority.value
    facts["company_id"] = lead.company_id
    return facts


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _as_float(value: Any):
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _normalize(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().casefold()
    if _is_number(value):
        return float(value)
    return value


def _values_equal(fact: Any, expected: Any) -> bool:
    if isinstance(fact, (list, tuple, set)) and isinstance(expected, (list, tuple, set)):
        return {_normalize(item) for item in fact} == {_normalize(item) for item in expected}
    if _is_number(fact) or _is_number(expected):
        left, right = _as_float(fact), _as_float(expected)
        return left is not None and right is not None and left == right
    return _normalize(fact) == _normalize(expected)


def _contains(fact: Any, needle: Any) -> bool:
    if isinstance(fact, str):
        return str(needle).strip().casefold() in fact.casefold()
    if isinstance(fact, (list, tuple, set)):
        return any(_values_equal(item, needle) for item in fact)
    return False


def _compare(fact: Any, op: str, bound: float) -> bool:
    value = _as_float(fact)
    if value is None:
        return False
    if op == "gt":
        return value > bound
    if op == "gte":
        return value >= bound
    if op == "lt":
        return value < bound
    return value <= bound


def evaluate_condition(condition: Condition, facts: Mapping[str, Any]) -> bool:
    if isinstance(condition, Composite):
        results = (evaluate_condition(child, facts) for child in condition.conditions)
        return all(results) if condition.op == "and" else any(results)

    fact = facts.get(condition.field)
    if fact is None:
        return False
    if isinstance(condition, FieldEquals):
        return _values_equal(fact, condition.value)
    if isinstance(condition, FieldIn):
        if isinstance(fact, (list, tuple, set)):
            return any(_values_equal(item, value) for item in fact for value in condition.values)
        return any(_values_equal(fact, value) for value in condition.values)
    if isinstance(condition, FieldContains):
        return _contains(fact, condition.value)
    if isinstance(condition, FieldCompare):
        return _compare(fact, condition.op, condition.value)
    raise TypeError(f"unsupported condition: {condition!r}")


def evaluate_all(
    conditions: Iterable[Condition], facts: Mapping[str, Any], *, match_all: bool
) -> bool:
    conditions = list(conditions)
    if not conditions:
        return True
    results = (evaluate_condition(condition, facts) for condition in conditions)
    return all(results) if match_all else any(results)
