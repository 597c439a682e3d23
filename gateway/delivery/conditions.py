"""
Declarative action conditions for multi-action rules.

A condition is ``{"field": "payload.status", "operator": "equals",
"value": "CONFIRMED"}`` or a list of such dicts (all must hold). Fields are
dot paths into ``{"event_type", "org_id", "org_unit_id", "payload"}``.
A missing or empty condition always holds.
"""

import logging
from typing import Any, Dict

from gateway.transformers.paths import MISSING, get_path

logger = logging.getLogger(__name__)


def _compare(actual: Any, operator: str, expected: Any) -> bool:
    if operator in ("exists",):
        return actual is not MISSING and actual is not None
    if operator in ("not_exists",):
        return actual is MISSING or actual is None
    if actual is MISSING:
        return operator in ("not_equals", "not_in")

    if operator in ("equals", "eq"):
        return actual == expected
    if operator in ("not_equals", "ne"):
        return actual != expected
    if operator == "in":
        return isinstance(expected, (list, tuple)) and actual in expected
    if operator == "not_in":
        return isinstance(expected, (list, tuple)) and actual not in expected
    if operator == "contains":
        if isinstance(actual, (list, tuple, str)):
            try:
                return expected in actual
            except TypeError:
                return False
        return False
    if operator in ("gt", "gte", "lt", "lte"):
        try:
            left, right = float(actual), float(expected)
        except (TypeError, ValueError):
            return False
        return {
            "gt": left > right,
            "gte": left >= right,
            "lt": left < right,
            "lte": left <= right,
        }[operator]

    logger.warning(f"Unknown condition operator '{operator}', treating as not met")
    return False


def evaluate_condition(condition: Any, context: Dict[str, Any]) -> bool:
    if not condition:
        return True
    if isinstance(condition, list):
        return all(evaluate_condition(c, context) for c in condition)
    if not isinstance(condition, dict) or not condition.get("field"):
        logger.warning(f"Ignoring malformed condition: {condition!r}")
        return True

    operator = str(condition.get("operator") or "equals").lower()
    actual = get_path(context, condition["field"])
    return _compare(actual, operator, condition.get("value"))
