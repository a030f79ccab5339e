"""
Condition evaluator for chatbot CONDITION_NODE branches.

Evaluates RuleCondition objects against the flow's evaluation context
(``{"message": ..., "variables": {...}}``). Supports nested dot-notation
field access and numeric coercion of string values.
"""
from __future__ import annotations

import re
import operator as op
from typing import Any

from models.schemas import RuleCondition


def _as_text(v: Any) -> str:
    return "" if v is None else str(v)


OPERATORS: dict[str, Any] = {
    "eq": op.eq,
    "neq": op.ne,
    "gt": op.gt,
    "gte": op.ge,
    "lt": op.lt,
    "lte": op.le,
    "in": lambda a, b: a in b,
    "contains": lambda a, b: _as_text(b) in _as_text(a),
    "icontains": lambda a, b: _as_text(b).lower() in _as_text(a).lower(),
    "iequals": lambda a, b: _as_text(a).strip().lower() == _as_text(b).strip().lower(),
    "starts_with": lambda a, b: _as_text(a).lower().startswith(_as_text(b).lower()),
    "regex": lambda a, b: bool(re.search(_as_text(b), _as_text(a), re.IGNORECASE)),
    "exists": lambda a, b: a is not None and a != "",
    "not_exists": lambda a, b: a is None or a == "",
}


def get_nested_value(data: dict, field: str) -> Any:
    """Get a value from nested dict using dot notation. e.g. 'variables.api.status'"""
    current = data
    for part in field.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        else:
            return None
    return current


def evaluate_condition(condition: RuleCondition, data: dict[str, Any]) -> bool:
    """Evaluate a single condition against data. Unknown operators never match."""
    val = get_nested_value(data, condition.field)
    fn = OPERATORS.get(condition.operator)
    if fn is None:
        return False
    try:
        numeric = isinstance(condition.value, (int, float)) and not isinstance(condition.value, bool)
        if numeric and isinstance(val, str):
            val = float(val.strip())
        return bool(fn(val, condition.value))
    except (TypeError, ValueError, re.error):
        return False


def evaluate_conditions(conditions: list[RuleCondition], data: dict[str, Any]) -> bool:
    """Evaluate all conditions (AND logic). An empty list passes."""
    if not conditions:
        return True
    return all(evaluate_condition(c, data) for c in conditions)
