"""``{{ placeholder }}`` rendering against a workflow's trigger variables."""
from __future__ import annotations

import json
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any

PLACEHOLDER_PATTERN = re.compile(r"{{\s*([\w.]+)\s*}}")

_MISSING = object()


def build_variables(
    record: dict[str, Any] | None,
    *,
    event: dict[str, Any] | None = None,
    workflow: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Return the variable namespace exposed to conditions and templates.

    Record fields are available both bare (``{{price}}``) and under the
    ``trigger`` namespace (``{{trigger.price}}``).
    """

    record = dict(record or {})
    variables: dict[str, Any] = dict(record)
    variables["trigger"] = record
    variables["event"] = dict(event or {})
    variables["workflow"] = dict(workflow or {})
    return variables


def lookup(variables: dict[str, Any], path: str) -> Any:
    """Resolve a dotted path, returning ``_MISSING`` when any segment is absent."""

    current: Any = variables
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


def is_missing(value: Any) -> bool:
    return value is _MISSING


def to_text(value: Any) -> str:
    if value is None or value is _MISSING:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def resolve_template(text: Any, variables: dict[str, Any]) -> Any:
    """Render placeholders in ``text``.

    A string consisting of exactly one placeholder yields the raw resolved value
    so numbers and booleans keep their type. Unresolvable placeholders render as
    an empty string.
    """

    if not isinstance(text, str):
        return text

    whole = PLACEHOLDER_PATTERN.fullmatch(text.strip())
    if whole is not None:
        value = lookup(variables, whole.group(1))
        return "" if value is _MISSING else value

    return PLACEHOLDER_PATTERN.sub(
        lambda match: to_text(lookup(variables, match.group(1))), text
    )


def resolve_value(value: Any, variables: dict[str, Any]) -> Any:
    if isinstance(value, str):
        return resolve_template(value, variables)
    if isinstance(value, list):
        return [resolve_value(item, variables) for item in value]
    if isinstance(value, dict):
        return {key: resolve_value(item, variables) for key, item in value.items()}
    return value
