"""Structured predicate evaluation for custom segments.

Predicates only reference whitelisted customer attributes and a fixed operator
table; nothing an administrator supplies is turned into a query string.
"""

from __future__ import annotations

import operator
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Iterable

from loyalty_engine.core.clock import ensure_utc
from loyalty_engine.models.customer import Customer
from loyalty_engine.schemas.segment import CustomCriteria, Predicate

_NUMERIC_FIELDS = {
    "points_balance",
    "coins_balance",
    "app_opens",
    "email_open_rate",
    "email_click_rate",
    "push_open_rate",
}
_DATETIME_FIELDS = {"last_active_at", "created_at"}


def _contains(actual: Any, expected: Any) -> bool:
    if actual is None:
        return False
    if isinstance(actual, (list, tuple, set)):
        return expected in actual
    return str(expected).lower() in str(actual).lower()


def _in(actual: Any, expected: Any) -> bool:
    return actual in expected


def _not_in(actual: Any, expected: Any) -> bool:
    return actual not in expected


def _ordered(compare: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def _apply(actual: Any, expected: Any) -> bool:
        if actual is None or expected is None:
            return False
        try:
            return compare(actual, expected)
        except TypeError:
            return False

    return _apply


_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": operator.eq,
    "ne": operator.ne,
    "gt": _ordered(operator.gt),
    "gte": _ordered(operator.ge),
    "lt": _ordered(operator.lt),
    "lte": _ordered(operator.le),
    "in": _in,
    "not_in": _not_in,
    "contains": _contains,
    "is_null": lambda actual, _expected: actual is None,
    "not_null": lambda actual, _expected: actual is not None,
}


def _coerce(field: str, value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, list):
        return [_coerce(field, item) for item in value]
    if isinstance(value, Enum):
        return value.value
    if field in _NUMERIC_FIELDS:
        try:
            return Decimal(str(value))
        except (InvalidOperation, ValueError):
            return None
    if field in _DATETIME_FIELDS:
        if isinstance(value, str):
            try:
                value = datetime.fromisoformat(value)
            except ValueError:
                return None
        return ensure_utc(value)
    return value


def customer_value(customer: Customer, field: str) -> Any:
    value = getattr(customer, field)
    if field == "app_types":
        return list(value or [])
    return _coerce(field, value)


def evaluate_predicate(customer: Customer, predicate: Predicate) -> bool:
    actual = customer_value(customer, predicate.field)
    if predicate.field == "app_types" and predicate.operator in {"eq", "in", "contains"}:
        expected = predicate.value if isinstance(predicate.value, list) else [predicate.value]
        return any(item in actual for item in expected)
    expected = _coerce(predicate.field, predicate.value)
    return _OPERATORS[predicate.operator](actual, expected)


def matches(customer: Customer, criteria: CustomCriteria) -> bool:
    results: Iterable[bool] = (evaluate_predicate(customer, predicate) for predicate in criteria.predicates)
    return all(results) if criteria.match == "all" else any(results)


__all__ = ["customer_value", "evaluate_predicate", "matches"]
