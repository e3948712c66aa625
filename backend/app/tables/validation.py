"""Record payload validation and normalisation for custom tables."""
from __future__ import annotations

import json
import math
import re
import uuid
from datetime import UTC, date, datetime, time
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any

from ..errors import FieldError, ValidationError
from .data_types import get_data_type
from .definitions import SYSTEM_COLUMNS, FieldDefinition, TableDefinition
from .geojson import validate_geometry

SCALE_POLICIES = ("reject", "truncate")

_INTEGER_RE = re.compile(r"^[+-]?\d+$")
_DECIMAL_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)$")
_FLOAT_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")
_UUID_RE = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)

_INTEGER_BOUNDS = {
    "INTEGER": (-(2**31), 2**31 - 1),
    "BIGINT": (-(2**63), 2**63 - 1),
}


def _coerce_integer(value: Any, type_name: str) -> int:
    if isinstance(value, bool):
        raise ValueError("expected an integer, got a boolean")
    if isinstance(value, int):
        result = value
    elif isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"{value!r} is not a whole number")
        result = int(value)
    elif isinstance(value, str) and _INTEGER_RE.match(value.strip()):
        result = int(value.strip())
    else:
        raise ValueError(f"{value!r} is not a valid integer")

    lower, upper = _INTEGER_BOUNDS[type_name]
    if not lower <= result <= upper:
        raise ValueError(f"{result} is out of range for {type_name}")
    return result


def _coerce_decimal(
    value: Any, precision: int | None, scale: int | None, policy: str
) -> Decimal:
    if isinstance(value, bool):
        raise ValueError("expected a decimal number, got a boolean")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError("decimal values must be finite")
        result = Decimal(str(value))
    elif isinstance(value, str) and _DECIMAL_RE.match(value.strip()):
        result = Decimal(value.strip())
    else:
        raise ValueError(f"{value!r} is not a valid decimal number")

    if not result.is_finite():
        raise ValueError("decimal values must be finite")

    precision = precision or 10
    scale = 2 if scale is None else scale
    exponent = result.as_tuple().exponent
    places = -exponent if isinstance(exponent, int) and exponent < 0 else 0
    if places > scale:
        if policy != "truncate":
            raise ValueError(f"{value!r} has more than {scale} decimal places")
        result = result.quantize(Decimal(1).scaleb(-scale), rounding=ROUND_DOWN)

    integer_digits = max(result.adjusted() + 1, 0) if result else 0
    if integer_digits > precision - scale:
        raise ValueError(f"{value!r} exceeds precision {precision} with scale {scale}")
    return result


def _coerce_float(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError("expected a number, got a boolean")
    if isinstance(value, (int, float, Decimal)):
        result = float(value)
    elif isinstance(value, str) and _FLOAT_RE.match(value.strip()):
        result = float(value.strip())
    else:
        raise ValueError(f"{value!r} is not a valid number")
    if not math.isfinite(result):
        raise ValueError("numbers must be finite")
    return result


def _coerce_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise ValueError(f"{value!r} is not a valid boolean")


def _coerce_text(value: Any, max_length: int | None, label: str) -> str:
    if isinstance(value, bool):
        raise ValueError(f"expected {label}, got a boolean")
    if isinstance(value, (int, float, Decimal)):
        value = str(value)
    if not isinstance(value, str):
        raise ValueError(f"expected {label}")
    if max_length is not None and len(value) > max_length:
        raise ValueError(f"must be at most {max_length} characters")
    return value


def _select_options(item: FieldDefinition) -> list[str]:
    options = item.validation.get("options") or []
    values = []
    for option in options:
        if isinstance(option, dict):
            values.append(str(option.get("value")))
        else:
            values.append(str(option))
    return values


def _coerce_temporal(value: Any, type_name: str) -> date | time | datetime:
    try:
        if type_name == "DATE":
            if isinstance(value, datetime):
                return value.date()
            if isinstance(value, date):
                return value
            return date.fromisoformat(value)
        if type_name == "TIME":
            if isinstance(value, time):
                return value
            return time.fromisoformat(value)
        parsed = value if isinstance(value, datetime) else datetime.fromisoformat(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{value!r} is not a valid ISO 8601 {type_name.lower()}") from exc

    if type_name == "TIMESTAMPTZ" and parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _coerce_json(value: Any, type_name: str) -> Any:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError as exc:
            raise ValueError("must be a valid JSON document") from exc
    if type_name == "IOT_SENSOR" and not isinstance(value, dict):
        raise ValueError("sensor readings must be JSON objects")
    try:
        json.dumps(value)
    except (TypeError, ValueError) as exc:
        raise ValueError("must be JSON serialisable") from exc
    return value


def _coerce_tags(value: Any) -> list[str]:
    if isinstance(value, str):
        return [tag.strip() for tag in value.split(",") if tag.strip()]
    if isinstance(value, list) and all(isinstance(tag, str) for tag in value):
        return list(value)
    raise ValueError("tags must be a list of strings")


def _coerce_uuid(value: Any) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    if isinstance(value, str) and _UUID_RE.match(value.strip()):
        return uuid.UUID(value.strip())
    raise ValueError(f"{value!r} is not a valid UUID")


def _apply_rules(item: FieldDefinition, value: Any) -> None:
    rules = item.validation or {}
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        minimum = rules.get("min")
        maximum = rules.get("max")
        if minimum is not None and value < minimum:
            raise ValueError(f"must be at least {minimum}")
        if maximum is not None and value > maximum:
            raise ValueError(f"must be at most {maximum}")
    pattern = rules.get("pattern")
    if pattern and isinstance(value, str) and not re.fullmatch(pattern, value):
        raise ValueError(f"does not match pattern {pattern!r}")


def coerce_field_value(item: FieldDefinition, value: Any, scale_policy: str = "reject") -> Any:
    """Coerce a single non-empty value for a field, raising ``ValueError`` on failure."""

    entry = get_data_type(item.data_type)
    name = entry.name

    if entry.is_geometry:
        return validate_geometry(value, item.geometry_kind)

    if name in _INTEGER_BOUNDS:
        result: Any = _coerce_integer(value, name)
    elif name in ("DECIMAL", "NUMERIC"):
        result = _coerce_decimal(value, item.precision, item.scale, scale_policy)
    elif name in ("FLOAT", "DOUBLE PRECISION"):
        result = _coerce_float(value)
    elif name == "BOOLEAN":
        result = _coerce_boolean(value)
    elif name in ("TEXT", "VARCHAR", "CHAR"):
        result = _coerce_text(value, item.max_length if name != "TEXT" else None, "text")
    elif name == "SELECT":
        result = _coerce_text(value, None, "an option")
        options = _select_options(item)
        if result not in options:
            raise ValueError(f"must be one of {', '.join(options)}")
    elif name in ("DATE", "TIME", "TIMESTAMP", "TIMESTAMPTZ"):
        result = _coerce_temporal(value, name)
    elif name in ("JSON", "JSONB", "IOT_SENSOR"):
        result = _coerce_json(value, name)
    elif name == "TAGS":
        result = _coerce_tags(value)
    elif name in ("UUID", "RELATION"):
        result = _coerce_uuid(value)
    else:  # pragma: no cover - registry and coercion table are kept in sync
        raise ValueError(f"no coercion for {name}")

    _apply_rules(item, result)
    return result


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class RecordValidator:
    """Validate record payloads against a table definition."""

    def __init__(self, scale_policy: str = "reject") -> None:
        if scale_policy not in SCALE_POLICIES:
            raise ValueError(f"scale_policy must be one of {', '.join(SCALE_POLICIES)}")
        self.scale_policy = scale_policy

    def coerce(self, item: FieldDefinition, value: Any) -> Any:
        return coerce_field_value(item, value, self.scale_policy)

    def validate(
        self,
        definition: TableDefinition,
        payload: Any,
        *,
        partial: bool = False,
    ) -> dict[str, Any]:
        """Return the normalised record or raise ``ValidationError``."""

        if not isinstance(payload, dict):
            raise ValidationError([FieldError(None, "payload must be an object")])

        errors: list[FieldError] = []
        for key in payload:
            if key in SYSTEM_COLUMNS:
                errors.append(FieldError(key, "system column is read-only"))
            elif definition.field(key) is None:
                errors.append(FieldError(key, "unknown field"))

        record: dict[str, Any] = {}
        for item in definition.fields:
            has_default = item.default_value is not None
            if item.name not in payload:
                if partial:
                    continue
                if has_default:
                    record[item.name] = self._coerce_default(item, errors)
                elif item.is_required:
                    errors.append(FieldError(item.name, "is required"))
                continue

            value = payload[item.name]
            if _is_empty(value):
                if not item.is_required:
                    record[item.name] = None
                elif has_default and not partial:
                    record[item.name] = self._coerce_default(item, errors)
                else:
                    errors.append(FieldError(item.name, "is required"))
                continue

            try:
                record[item.name] = self.coerce(item, value)
            except ValueError as exc:
                errors.append(FieldError(item.name, str(exc)))

        if errors:
            raise ValidationError(errors)
        return record

    def _coerce_default(self, item: FieldDefinition, errors: list[FieldError]) -> Any:
        try:
            return self.coerce(item, item.default_value)
        except ValueError as exc:
            errors.append(FieldError(item.name, f"invalid default value: {exc}"))
            return None
