"""Logical table and field definitions for custom tables."""
from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import Any

from ..errors import SchemaError, UnsupportedTypeError
from . import data_types

IDENTIFIER_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")
MAX_IDENTIFIER_LENGTH = 63
TABLE_PREFIX = "custom_"
HISTORY_SUFFIX = "_history"

SYSTEM_COLUMNS = ("id", "created_at", "updated_at", "deleted_at", "created_by", "updated_by")
HISTORY_COLUMNS = ("history_id", "record_id", "operation", "changed_by", "changed_at")
ON_DELETE_POLICIES = ("CASCADE", "SET NULL", "RESTRICT", "NO ACTION")


def is_valid_identifier(value: Any) -> bool:
    return (
        isinstance(value, str)
        and bool(IDENTIFIER_PATTERN.match(value))
        and len(value) <= MAX_IDENTIFIER_LENGTH
    )


def ensure_identifier(value: Any, kind: str = "identifier") -> str:
    """Return the identifier unchanged or raise when it fails the allow-list."""

    if not is_valid_identifier(value):
        raise SchemaError(
            f"{kind} {value!r} must match {IDENTIFIER_PATTERN.pattern} "
            f"and be at most {MAX_IDENTIFIER_LENGTH} characters"
        )
    return value


def physical_table_name(name: str) -> str:
    return f"{TABLE_PREFIX}{name}"


def history_table_name(name: str) -> str:
    return f"{TABLE_PREFIX}{name}{HISTORY_SUFFIX}"


@dataclass(frozen=True)
class FieldDefinition:
    """A single column of a logical table."""

    name: str
    data_type: str
    display_name: str = ""
    description: str | None = None
    is_required: bool = False
    is_unique: bool = False
    is_timeseries: bool = False
    default_value: Any = None
    max_length: int | None = None
    precision: int | None = None
    scale: int | None = None
    srid: int | None = None
    geometry_type: str | None = None
    relation_table: str | None = None
    relation_field: str | None = None
    on_delete: str | None = None
    validation: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    order: int = 0

    @property
    def is_geometry(self) -> bool:
        return data_types.is_geometry_type(self.data_type)

    @property
    def is_relation(self) -> bool:
        return bool(self.relation_table) or data_types.is_known_type(self.data_type) and (
            data_types.get_data_type(self.data_type).name == "RELATION"
        )

    @property
    def category(self) -> str:
        """Tagged union discriminator: ``scalar``, ``geometry`` or ``relation``."""

        if self.is_geometry:
            return "geometry"
        if self.is_relation:
            return "relation"
        return "scalar"

    @property
    def type_name(self) -> str:
        return data_types.get_data_type(self.data_type).name

    @property
    def geometry_kind(self) -> str:
        return data_types.geometry_kind(self.data_type, self.geometry_type)

    def column_type(self, *, spatial: bool = True):
        return data_types.physical_type(
            self.data_type,
            max_length=self.max_length,
            precision=self.precision,
            scale=self.scale,
            geometry_type=self.geometry_type,
            srid=self.srid,
            spatial=spatial,
        )

    @classmethod
    def from_payload(cls, payload: Any, order: int = 0) -> FieldDefinition:
        if not isinstance(payload, dict):
            raise SchemaError("each field must be an object")
        name = payload.get("name")
        return cls(
            name=name if isinstance(name, str) else "",
            data_type=str(payload.get("dataType") or ""),
            display_name=str(payload.get("displayName") or name or ""),
            description=payload.get("description"),
            is_required=bool(payload.get("isRequired", False)),
            is_unique=bool(payload.get("isUnique", False)),
            is_timeseries=bool(payload.get("isTimeseries", False)),
            default_value=payload.get("defaultValue"),
            max_length=_optional_int(payload.get("maxLength"), "maxLength"),
            precision=_optional_int(payload.get("precision"), "precision"),
            scale=_optional_int(payload.get("scale"), "scale"),
            srid=_optional_int(payload.get("srid"), "srid"),
            geometry_type=payload.get("geometryType") or None,
            relation_table=payload.get("relationTable") or None,
            relation_field=payload.get("relationField") or None,
            on_delete=payload.get("onDelete") or None,
            validation=dict(payload.get("validation") or {}),
            order=_optional_int(payload.get("order"), "order") or order,
        )

    @classmethod
    def from_model(cls, model: Any) -> FieldDefinition:
        return cls(
            name=model.name,
            data_type=model.data_type,
            display_name=model.display_name,
            description=model.description,
            is_required=model.is_required,
            is_unique=model.is_unique,
            is_timeseries=model.is_timeseries,
            default_value=model.default_value,
            max_length=model.max_length,
            precision=model.precision,
            scale=model.scale,
            srid=model.srid,
            geometry_type=model.geometry_type,
            relation_table=model.relation_table,
            relation_field=model.relation_field,
            on_delete=model.on_delete,
            validation=dict(model.validation or {}),
            order=model.order or 0,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "displayName": self.display_name,
            "description": self.description,
            "dataType": self.data_type,
            "isRequired": self.is_required,
            "isUnique": self.is_unique,
            "isTimeseries": self.is_timeseries,
            "defaultValue": self.default_value,
            "maxLength": self.max_length,
            "precision": self.precision,
            "scale": self.scale,
            "srid": self.srid,
            "geometryType": self.geometry_type,
            "relationTable": self.relation_table,
            "relationField": self.relation_field,
            "onDelete": self.on_delete,
            "validation": self.validation,
            "order": self.order,
        }


@dataclass(frozen=True)
class TableDefinition:
    """A user defined table and its ordered fields."""

    name: str
    display_name: str
    fields: tuple[FieldDefinition, ...] = ()
    description: str | None = None
    icon: str | None = None
    id: int | None = None

    @property
    def physical_name(self) -> str:
        return physical_table_name(self.name)

    @property
    def history_name(self) -> str:
        return history_table_name(self.name)

    @property
    def geometry_fields(self) -> tuple[FieldDefinition, ...]:
        return tuple(item for item in self.fields if item.is_geometry)

    def field(self, name: str) -> FieldDefinition | None:
        for item in self.fields:
            if item.name == name:
                return item
        return None

    def with_field(self, new_field: FieldDefinition) -> TableDefinition:
        return replace(self, fields=self.fields + (new_field,))

    @classmethod
    def from_payload(cls, payload: Any) -> TableDefinition:
        if not isinstance(payload, dict):
            raise SchemaError("table definition must be an object")
        raw_fields = payload.get("fields") or []
        if not isinstance(raw_fields, list):
            raise SchemaError("fields must be a list")
        name = payload.get("name")
        return cls(
            name=name if isinstance(name, str) else "",
            display_name=str(payload.get("displayName") or "").strip(),
            description=payload.get("description"),
            icon=payload.get("icon"),
            fields=tuple(
                FieldDefinition.from_payload(item, order=index)
                for index, item in enumerate(raw_fields)
            ),
        )

    @classmethod
    def from_model(cls, model: Any) -> TableDefinition:
        fields = sorted(model.fields, key=lambda item: (item.order or 0, item.id or 0))
        return cls(
            id=model.id,
            name=model.name,
            display_name=model.display_name,
            description=model.description,
            icon=model.icon,
            fields=tuple(FieldDefinition.from_model(item) for item in fields),
        )


def _optional_int(value: Any, label: str) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise SchemaError(f"{label} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise SchemaError(f"{label} must be an integer") from exc


def _index_names(definition: TableDefinition, item: FieldDefinition) -> list[str]:
    names = []
    if item.is_geometry:
        names.append(f"idx_{definition.physical_name}_{item.name}_gist")
    if item.is_timeseries:
        names.append(f"idx_{definition.physical_name}_{item.name}")
    return names


def validate_field(
    item: FieldDefinition,
    *,
    default_srid: int = data_types.DEFAULT_SRID,
) -> tuple[FieldDefinition, list[str]]:
    """Validate a single field, returning it with defaults applied and any errors."""

    errors: list[str] = []
    label = f"field {item.name!r}"

    if not is_valid_identifier(item.name):
        errors.append(
            f"{label}: name must match {IDENTIFIER_PATTERN.pattern} "
            f"and be at most {MAX_IDENTIFIER_LENGTH} characters"
        )
    elif item.name in SYSTEM_COLUMNS or item.name in HISTORY_COLUMNS:
        errors.append(f"{label}: name is reserved")

    try:
        entry = data_types.get_data_type(item.data_type)
    except UnsupportedTypeError as exc:
        errors.append(f"{label}: {exc}")
        return item, errors

    updates: dict[str, Any] = {}

    if entry.requires_length and (item.max_length is None or item.max_length <= 0):
        errors.append(f"{label}: {entry.name} requires a positive maxLength")
    if entry.requires_precision:
        if item.precision is None or item.precision <= 0:
            errors.append(f"{label}: {entry.name} requires a positive precision")
        elif item.scale is None and item.precision < 2:
            errors.append(f"{label}: default scale 2 exceeds precision {item.precision}")
        elif item.scale is not None and not 0 <= item.scale <= item.precision:
            errors.append(f"{label}: scale must be between 0 and precision")

    if entry.name == "SELECT":
        options = item.validation.get("options")
        if not isinstance(options, list) or not options:
            errors.append(f"{label}: SELECT requires validation.options")

    if entry.name == "IOT_SENSOR":
        minimum = item.validation.get("min")
        maximum = item.validation.get("max")
        if minimum is not None and maximum is not None and minimum >= maximum:
            errors.append(f"{label}: validation.min must be less than validation.max")

    if entry.is_geometry:
        try:
            kind = data_types.geometry_kind(item.data_type, item.geometry_type)
        except SchemaError as exc:
            errors.extend(f"{label}: {message}" for message in exc.errors)
        else:
            updates["geometry_type"] = kind
        srid = item.srid if item.srid is not None else default_srid
        if not data_types.is_valid_srid(srid):
            errors.append(f"{label}: invalid SRID {srid!r}")
        updates["srid"] = srid
        if item.default_value is not None:
            errors.append(f"{label}: geometry fields cannot declare a default value")
        if item.is_unique:
            errors.append(f"{label}: geometry fields cannot be unique")
    elif item.srid is not None or item.geometry_type:
        errors.append(f"{label}: srid and geometryType are only allowed on geometry fields")

    if entry.name == "RELATION" and not item.relation_table:
        errors.append(f"{label}: RELATION requires relationTable")
    if item.relation_table:
        if entry.name not in ("RELATION", "UUID"):
            errors.append(f"{label}: relations must use the RELATION or UUID type")
        if not is_valid_identifier(item.relation_table):
            errors.append(f"{label}: relationTable {item.relation_table!r} is not a valid name")
        relation_field = item.relation_field or "id"
        if not is_valid_identifier(relation_field):
            errors.append(f"{label}: relationField {relation_field!r} is not a valid name")
        updates["relation_field"] = relation_field
        if item.on_delete is not None:
            policy = str(item.on_delete).upper()
            if policy not in ON_DELETE_POLICIES:
                errors.append(f"{label}: onDelete must be one of {', '.join(ON_DELETE_POLICIES)}")
            updates["on_delete"] = policy
        else:
            updates["on_delete"] = "SET NULL"
    elif item.relation_field or item.on_delete:
        errors.append(f"{label}: relationField and onDelete require relationTable")

    pattern = item.validation.get("pattern")
    if pattern is not None:
        try:
            re.compile(pattern)
        except (re.error, TypeError):
            errors.append(f"{label}: validation.pattern is not a valid regular expression")

    normalized = replace(item, **updates) if updates else item

    if item.default_value is not None and not entry.is_geometry and not errors:
        from .validation import coerce_field_value

        try:
            coerce_field_value(normalized, item.default_value)
        except ValueError as exc:
            errors.append(f"{label}: invalid defaultValue ({exc})")

    return normalized, errors


def validate_definition(
    definition: TableDefinition,
    *,
    default_srid: int = data_types.DEFAULT_SRID,
) -> TableDefinition:
    """Validate a table definition and return it with defaults applied."""

    errors: list[str] = []

    if not is_valid_identifier(definition.name):
        errors.append(
            f"table name {definition.name!r} must match {IDENTIFIER_PATTERN.pattern}"
        )
    elif len(f"idx_{definition.history_name}_record_id") > MAX_IDENTIFIER_LENGTH:
        errors.append(f"table name {definition.name!r} is too long")

    if not definition.display_name:
        errors.append("displayName is required")
    if not definition.fields:
        errors.append("at least one field is required")

    seen: set[str] = set()
    normalized_fields: list[FieldDefinition] = []
    for item in definition.fields:
        if item.name in seen:
            errors.append(f"duplicate field name {item.name!r}")
        seen.add(item.name)

        normalized, field_errors = validate_field(item, default_srid=default_srid)
        errors.extend(field_errors)
        normalized_fields.append(normalized)

        for index_name in _index_names(definition, item):
            if len(index_name) > MAX_IDENTIFIER_LENGTH:
                errors.append(f"field {item.name!r}: generated index name {index_name!r} is too long")

    if errors:
        raise SchemaError(errors)

    return replace(definition, fields=tuple(normalized_fields))
