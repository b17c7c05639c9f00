# =====================================================
# FILE: app/services/condition_matcher.py
# Threshold and field-condition evaluation for workflow triggers
# =====================================================

import logging
import math
from decimal import Decimal
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

THRESHOLD_OPERATORS = {"gt", "gte", "lt", "lte", "eq", "ne"}
FIELD_OPERATORS = THRESHOLD_OPERATORS | {"contains", "not_contains", "in", "not_in"}

# Older templates spell the equality operators out
OPERATOR_ALIASES = {
    "equals": "eq",
    "not_equals": "ne",
}

_MISSING = object()


class ConditionMatcher:
    """
    Pure evaluation of stored trigger/step conditions against an
    entity data snapshot. Never raises: anything it cannot evaluate
    is treated as "does not match".
    """

    @staticmethod
    def matches(
        conditions: Optional[Dict[str, Any]],
        snapshot: Optional[Dict[str, Any]],
        entity_type: Optional[str] = None,
    ) -> bool:
        try:
            return ConditionMatcher._evaluate(conditions, snapshot or {}, entity_type)
        except Exception as e:
            logger.warning(f"Condition evaluation failed, treating as no match: {str(e)}")
            return False

    @staticmethod
    def normalize(conditions: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Canonical snake_case form of a condition set.

        Accepts camelCase keys and the legacy flat threshold
        ({"threshold": 5000, "operator": "gt"}).
        """
        if not conditions:
            return {}
        if not isinstance(conditions, dict):
            raise TypeError(f"Conditions must be an object, got {type(conditions).__name__}")

        normalized: Dict[str, Any] = {}

        threshold = conditions.get("threshold")
        if threshold is not None and threshold != {}:
            if isinstance(threshold, dict):
                normalized["threshold"] = {
                    "field": threshold.get("field") or "amount",
                    "operator": threshold.get("operator", "gt"),
                    "value": threshold.get("value"),
                    "currency": threshold.get("currency"),
                }
            else:
                normalized["threshold"] = {
                    "field": conditions.get("field") or "amount",
                    "operator": conditions.get("operator", "gt"),
                    "value": threshold,
                    "currency": conditions.get("currency"),
                }

        field_conditions = conditions.get("field_conditions")
        if field_conditions is None:
            field_conditions = conditions.get("fieldConditions")
        if field_conditions:
            normalized["field_conditions"] = list(field_conditions)

        entity_type = conditions.get("entity_type") or conditions.get("entityType")
        if entity_type:
            normalized["entity_type"] = entity_type
        if conditions.get("priority"):
            normalized["priority"] = conditions["priority"]

        return normalized

    @staticmethod
    def _evaluate(conditions, snapshot: Dict[str, Any], entity_type: Optional[str]) -> bool:
        normalized = ConditionMatcher.normalize(conditions)
        if not normalized:
            return True

        if "entity_type" in normalized and entity_type is not None:
            if normalized["entity_type"] != entity_type:
                return False

        if "priority" in normalized:
            actual = snapshot.get("priority")
            if actual is None or str(actual).lower() != str(normalized["priority"]).lower():
                return False

        threshold = normalized.get("threshold")
        if threshold and not ConditionMatcher._threshold_matches(threshold, snapshot):
            return False

        for condition in normalized.get("field_conditions", []):
            if not ConditionMatcher._field_matches(condition, snapshot):
                return False

        return True

    @staticmethod
    def _threshold_matches(threshold: Dict[str, Any], snapshot: Dict[str, Any]) -> bool:
        operator = OPERATOR_ALIASES.get(threshold.get("operator"), threshold.get("operator"))
        if operator not in THRESHOLD_OPERATORS:
            logger.warning(f"Unsupported threshold operator '{operator}'")
            return False

        currency = threshold.get("currency")
        snapshot_currency = snapshot.get("currency")
        if currency and snapshot_currency and str(snapshot_currency).upper() != str(currency).upper():
            logger.info(
                f"Threshold currency {currency} does not match snapshot currency {snapshot_currency}"
            )
            return False

        actual = resolve_field(snapshot, threshold.get("field") or "amount")
        if actual is _MISSING:
            return False

        left = to_number(actual)
        right = to_number(threshold.get("value"))
        if left is None or right is None:
            return False
        return _compare(operator, left, right)

    @staticmethod
    def _field_matches(condition: Dict[str, Any], snapshot: Dict[str, Any]) -> bool:
        field = condition.get("field")
        operator = OPERATOR_ALIASES.get(condition.get("operator"), condition.get("operator"))
        expected = condition.get("value")

        if not field or operator not in FIELD_OPERATORS:
            logger.warning(f"Malformed field condition: {condition}")
            return False

        actual = resolve_field(snapshot, field)
        if actual is _MISSING or actual is None:
            return False

        if operator in ("contains", "not_contains"):
            if isinstance(actual, (list, tuple, set)):
                found = any(_equals(item, expected) for item in actual)
            elif isinstance(actual, str):
                found = str(expected) in actual
            else:
                return False
            return found if operator == "contains" else not found

        if operator in ("in", "not_in"):
            if not isinstance(expected, (list, tuple, set)):
                return False
            found = any(_equals(actual, item) for item in expected)
            return found if operator == "in" else not found

        if operator == "eq":
            return _equals(actual, expected)
        if operator == "ne":
            return not _equals(actual, expected)

        left, right = to_number(actual), to_number(expected)
        if left is None or right is None:
            return False
        return _compare(operator, left, right)


def resolve_field(snapshot: Dict[str, Any], path: str):
    """Look up a possibly dotted field path; returns _MISSING when absent"""
    current: Any = snapshot
    for part in str(path).split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


def to_number(value) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _as_text(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _equals(left, right) -> bool:
    left_number, right_number = to_number(left), to_number(right)
    if left_number is not None and right_number is not None:
        return left_number == right_number
    if left is None or right is None:
        return left is right
    return _as_text(left) == _as_text(right)


def _compare(operator: str, left: float, right: float) -> bool:
    if operator == "gt":
        return left > right
    if operator == "gte":
        return left >= right
    if operator == "lt":
        return left < right
    if operator == "lte":
        return left <= right
    if operator == "eq":
        return left == right
    if operator == "ne":
        return left != right
    return False
