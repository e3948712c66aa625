"""Condition operators used by workflow condition nodes and action queries."""
from __future__ import annotations

import logging
import math
import re
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from ..errors import ConditionEvaluationError, NotFoundError, ValidationError
from ..tables.geojson import validate_any_geometry
from ..tables.spatial import INTERSECTS
from .graph import GEO_WITHIN, Condition, ConditionNode
from .templates import is_missing, lookup, resolve_value, to_text

logger = logging.getLogger(__name__)

_NUMBER_PATTERN = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")


def to_number(value: Any) -> Decimal:
    """Coerce ``value`` to ``Decimal`` or raise ``ConditionEvaluationError``."""

    if isinstance(value, bool) or value is None:
        raise ConditionEvaluationError(f"{value!r} is not numeric")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ConditionEvaluationError(f"{value!r} is not a finite number")
        return Decimal(str(value))
    if isinstance(value, str) and _NUMBER_PATTERN.match(value.strip()):
        try:
            return Decimal(value.strip())
        except InvalidOperation as exc:
            raise ConditionEvaluationError(f"{value!r} is not numeric") from exc
    raise ConditionEvaluationError(f"{value!r} is not numeric")


def _is_number(value: Any) -> bool:
    try:
        to_number(value)
    except ConditionEvaluationError:
        return False
    return True


def _equals(actual: Any, expected: Any) -> bool:
    if _is_number(actual) and _is_number(expected):
        return to_number(actual) == to_number(expected)
    return to_text(actual) == to_text(expected)


def _contains(actual: Any, expected: Any) -> bool:
    if actual is None:
        return False
    if isinstance(actual, (list, tuple)):
        return any(_equals(item, expected) for item in actual)
    return to_text(expected) in to_text(actual)


def compare(actual: Any, operator: str, expected: Any) -> bool:
    """Apply ``operator``; ordering operators require both sides to be numeric."""

    if operator == "equals":
        return _equals(actual, expected)
    if operator == "not_equals":
        return not _equals(actual, expected)
    if operator == "contains":
        return _contains(actual, expected)

    left, right = to_number(actual), to_number(expected)
    if operator == "gt":
        return left > right
    if operator == "gte":
        return left >= right
    if operator == "lt":
        return left < right
    if operator == "lte":
        return left <= right
    raise ConditionEvaluationError(f"unsupported operator {operator!r}")


class Geofence:
    """Check whether a GeoJSON value intersects any active feature of a table.

    The target is ``"table"`` or ``"table.field"``; without a field the
    table's first geometry field is used.
    """

    def __init__(self, data_service: Any) -> None:
        self._data_service = data_service

    def __call__(self, target: Any, value: Any) -> bool:
        table_name, _, field_name = to_text(target).strip().partition(".")
        if not table_name:
            raise ConditionEvaluationError("geo_within requires a target table")
        try:
            geometry = validate_any_geometry(value)
        except ValueError as exc:
            raise ConditionEvaluationError(f"invalid geometry: {exc}") from exc

        try:
            definition = self._data_service.table_by_name(table_name)
            if not field_name:
                candidates = definition.geometry_fields
                if not candidates:
                    raise ConditionEvaluationError(f"table {table_name!r} has no geometry field")
                field_name = candidates[0].name
            matches = self._data_service.spatial_query(
                definition, field_name, INTERSECTS, geometry=geometry
            )
        except (NotFoundError, ValidationError, SQLAlchemyError) as exc:
            raise ConditionEvaluationError(f"geofence {target!r} failed: {exc}") from exc
        return bool(matches)


@dataclass(frozen=True)
class ConditionOutcome:
    field: str
    operator: str
    actual: Any
    expected: Any
    matched: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "operator": self.operator,
            "actual": to_text(self.actual),
            "expected": to_text(self.expected),
            "matched": self.matched,
            "error": self.error,
        }


def field_value(variables: dict[str, Any], field: str) -> Any:
    """Read a condition field from the trigger record or a dotted variable path."""

    if "." in field:
        value = lookup(variables, field)
    else:
        value = lookup(variables, f"trigger.{field}")
        if is_missing(value):
            value = lookup(variables, field)
    return None if is_missing(value) else value


def evaluate_condition(
    condition: Condition,
    variables: dict[str, Any],
    geofence: Callable[[Any, Any], bool] | None = None,
) -> ConditionOutcome:
    """Evaluate one condition, failing closed on coercion and lookup errors."""

    actual = field_value(variables, condition.field)
    expected = resolve_value(condition.value, variables)
    try:
        if condition.operator != GEO_WITHIN:
            matched = compare(actual, condition.operator, expected)
        elif geofence is None:
            raise ConditionEvaluationError("spatial conditions are not available")
        else:
            matched = geofence(expected, actual)
    except ConditionEvaluationError as exc:
        logger.warning(
            "Condition %s %s %r could not be evaluated: %s",
            condition.field,
            condition.operator,
            expected,
            exc,
        )
        return ConditionOutcome(
            condition.field, condition.operator, actual, expected, False, str(exc)
        )
    return ConditionOutcome(condition.field, condition.operator, actual, expected, matched)


def evaluate_node(
    node: ConditionNode,
    variables: dict[str, Any],
    geofence: Callable[[Any, Any], bool] | None = None,
) -> tuple[bool, list[ConditionOutcome]]:
    outcomes = [
        evaluate_condition(condition, variables, geofence) for condition in node.conditions
    ]
    if not outcomes:
        return False, outcomes
    if node.logic == "OR":
        return any(item.matched for item in outcomes), outcomes
    return all(item.matched for item in outcomes), outcomes
