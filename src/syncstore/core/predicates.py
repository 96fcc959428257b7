"""Record predicates and mutation conditions.

Predicates use the same shape as the backend's condition/filter inputs,
so a condition given to save() can be checked locally before it is
queued and sent verbatim with the mutation:

    {"rating": {"gt": 4}}
    {"and": [{"title": {"beginsWith": "Hello"}}, {"status": {"ne": "DRAFT"}}]}
    {"not": {"tags": {"contains": "archived"}}}

Several field keys at the same level are combined with AND. A plain
callable taking the record is accepted wherever a predicate is.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from syncstore.core.schema import ValidationError

Predicate = dict[str, Any] | Callable[[dict[str, Any]], bool]

_GROUP_OPERATORS = frozenset({"and", "or", "not"})


def _contains(value: Any, operand: Any) -> bool:
    if isinstance(value, (str, list, tuple)):
        return operand in value
    return False


def _between(value: Any, operand: Any) -> bool:
    if not isinstance(operand, (list, tuple)) or len(operand) != 2:
        raise ValidationError("between expects a [low, high] pair")
    low, high = operand
    return low <= value <= high


# operator -> (value, operand) -> bool; value is never None here
_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda v, o: v == o,
    "ne": lambda v, o: v != o,
    "gt": lambda v, o: v > o,
    "ge": lambda v, o: v >= o,
    "lt": lambda v, o: v < o,
    "le": lambda v, o: v <= o,
    "contains": _contains,
    "notContains": lambda v, o: not _contains(v, o),
    "beginsWith": lambda v, o: isinstance(v, str) and v.startswith(o),
    "between": _between,
}


def _match_field(value: Any, comparisons: dict[str, Any]) -> bool:
    if not isinstance(comparisons, dict):
        raise ValidationError(f"Invalid comparison: {comparisons!r}")

    for operator, operand in comparisons.items():
        if operator == "attributeExists":
            if (value is not None) != bool(operand):
                return False
            continue

        comparator = _COMPARATORS.get(operator)
        if comparator is None:
            raise ValidationError(f"Unknown operator: {operator}")

        if value is None:
            # Only equality can hold against a missing value
            if operator == "eq" and operand is None:
                continue
            if operator in ("ne", "notContains") and operand is not None:
                continue
            return False

        try:
            if not comparator(value, operand):
                return False
        except TypeError:
            return False
    return True


def matches(record: dict[str, Any], predicate: Predicate | None) -> bool:
    """Check whether a record satisfies a predicate.

    Args:
        record: The record to test.
        predicate: Condition dict, callable, or None (matches everything).

    Returns:
        True if the record matches.

    Raises:
        ValidationError: If the predicate is malformed.
    """
    if predicate is None:
        return True
    if callable(predicate):
        return bool(predicate(record))
    if not isinstance(predicate, dict):
        raise ValidationError(f"Invalid predicate: {predicate!r}")

    for key, operand in predicate.items():
        if key == "and":
            if not all(matches(record, p) for p in operand):
                return False
        elif key == "or":
            if not any(matches(record, p) for p in operand):
                return False
        elif key == "not":
            if matches(record, operand):
                return False
        elif not _match_field(record.get(key), operand):
            return False
    return True


def validate_predicate(predicate: dict[str, Any], fields: set[str]) -> None:
    """Check that a condition only references known fields and operators.

    Raises:
        ValidationError: On unknown fields or operators.
    """
    for key, operand in predicate.items():
        if key in ("and", "or"):
            for sub in operand:
                validate_predicate(sub, fields)
        elif key == "not":
            validate_predicate(operand, fields)
        else:
            if key not in fields:
                raise ValidationError(f"Unknown field in condition: {key}")
            if not isinstance(operand, dict):
                raise ValidationError(f"Invalid comparison for {key}: {operand!r}")
            for operator in operand:
                if operator != "attributeExists" and operator not in _COMPARATORS:
                    raise ValidationError(f"Unknown operator: {operator}")
