"""
Boolean rule evaluation for approval policies.

A rule set has two optional lists of conditions, ``all`` and ``any``::

    {
        "all": [{"field": "amount", "operator": "gt", "value": 1000}],
        "any": [
            {"field": "vendor.country", "operator": "neq", "value": "DE"},
            {"field": "tags", "operator": "contains", "value": "urgent"},
        ],
    }

``evaluate()`` is pure and deterministic. Conditions that cannot be applied
(wrong operand types, missing fields) are false rather than raising.
"""

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from gatehouse.exceptions import ValidationError

_MISSING = object()


class Operator(str, Enum):
    """Supported condition operators."""

    EXISTS = "exists"
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    CONTAINS = "contains"


@dataclass(frozen=True)
class Condition:
    """A single ``{field, operator, value}`` test against a payload."""

    field: str
    operator: Operator
    value: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "operator": self.operator.value, "value": self.value}


@dataclass(frozen=True)
class RuleSet:
    """Conditions that must all match, and conditions of which one must match."""

    all_of: tuple[Condition, ...] = ()
    any_of: tuple[Condition, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "all": [c.to_dict() for c in self.all_of],
            "any": [c.to_dict() for c in self.any_of],
        }


def parse_rules(raw: "Mapping[str, Any] | RuleSet | None") -> RuleSet | None:
    """
    Convert a JSON-like rule tree into a typed ``RuleSet``.

    Args:
        raw: Mapping with optional ``all`` / ``any`` lists, an existing
            ``RuleSet``, or None

    Returns:
        RuleSet, or None when ``raw`` is None

    Raises:
        ValidationError: If the tree is malformed or names an unknown operator
    """
    if raw is None or isinstance(raw, RuleSet):
        return raw
    if not isinstance(raw, Mapping):
        raise ValidationError("rules must be an object with optional 'all' and 'any' lists")

    unknown_keys = set(raw) - {"all", "any"}
    if unknown_keys:
        raise ValidationError(f"Unknown rule keys: {sorted(unknown_keys)}")

    return RuleSet(
        all_of=_parse_conditions(raw.get("all"), "all"),
        any_of=_parse_conditions(raw.get("any"), "any"),
    )


def _parse_conditions(items: Any, group: str) -> tuple[Condition, ...]:
    if items is None:
        return ()
    if isinstance(items, (str, bytes)) or not isinstance(items, Sequence):
        raise ValidationError(f"rules.{group} must be a list")

    conditions = []
    for index, item in enumerate(items):
        if not isinstance(item, Mapping):
            raise ValidationError(f"rules.{group}[{index}] must be an object")
        field = item.get("field")
        if not isinstance(field, str) or not field:
            raise ValidationError(f"rules.{group}[{index}].field must be a non-empty string")
        try:
            operator = Operator(item.get("operator"))
        except ValueError:
            raise ValidationError(
                f"rules.{group}[{index}].operator {item.get('operator')!r} is not supported"
            ) from None
        conditions.append(Condition(field=field, operator=operator, value=item.get("value")))
    return tuple(conditions)


def evaluate(rules: "RuleSet | Mapping[str, Any]", payload: Mapping[str, Any]) -> bool:
    """
    Evaluate a rule set against a payload.

    Empty or missing ``all`` / ``any`` groups are vacuously true. The result is
    ``all_match and any_match``. A raw mapping that cannot be parsed evaluates
    to False.
    """
    if not isinstance(rules, RuleSet):
        try:
            parsed = parse_rules(rules)
        except ValidationError:
            return False
        if parsed is None:
            return True
        rules = parsed

    all_match = all(match_condition(c, payload) for c in rules.all_of)
    any_match = not rules.any_of or any(match_condition(c, payload) for c in rules.any_of)
    return all_match and any_match


def match_condition(condition: Condition, payload: Mapping[str, Any]) -> bool:
    """Apply one condition to a payload (fail-closed)."""
    actual = get_value_by_path(payload, condition.field)
    expected = condition.value
    op = condition.operator

    if op is Operator.EXISTS:
        return actual is not _MISSING and actual is not None
    if actual is _MISSING:
        # A missing field only differs from everything
        return op is Operator.NEQ
    if op is Operator.EQ:
        return _strict_equals(actual, expected)
    if op is Operator.NEQ:
        return not _strict_equals(actual, expected)
    if op in (Operator.GT, Operator.GTE, Operator.LT, Operator.LTE):
        if not (_is_number(actual) and _is_number(expected)):
            return False
        if op is Operator.GT:
            return actual > expected
        if op is Operator.GTE:
            return actual >= expected
        if op is Operator.LT:
            return actual < expected
        return actual <= expected
    if op is Operator.IN:
        if not isinstance(expected, (list, tuple)):
            return False
        return any(_strict_equals(actual, candidate) for candidate in expected)
    if op is Operator.CONTAINS:
        if isinstance(actual, (list, tuple)):
            return any(_strict_equals(item, expected) for item in actual)
        if isinstance(actual, str) and isinstance(expected, str):
            return expected in actual
        return False
    return False


def get_value_by_path(payload: Any, path: str) -> Any:
    """
    Resolve a dot-path such as ``"vendor.address.country"`` or ``"lines.0.sku"``.

    Returns a private sentinel when any segment is missing.
    """
    current = payload
    for key in path.split("."):
        if isinstance(current, Mapping):
            if key not in current:
                return _MISSING
            current = current[key]
        elif isinstance(current, (list, tuple)) and key.isdigit():
            index = int(key)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return not math.isnan(value)


def _strict_equals(left: Any, right: Any) -> bool:
    # bool is a subclass of int; True must not equal 1
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left is right
    if _is_number(left) and _is_number(right):
        return left == right
    if type(left) is not type(right):
        return False
    return left == right
