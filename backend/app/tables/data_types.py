"""Registry of logical field types supported by custom tables."""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from sqlalchemy import (
    BIGINT,
    CHAR,
    DECIMAL,
    DOUBLE_PRECISION,
    JSON,
    NUMERIC,
    Boolean,
    Date,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    Time,
    Uuid,
)
from sqlalchemy.dialects import postgresql
from sqlalchemy.types import TypeEngine

from ..errors import InvalidGeometryTypeError, SuspiciousTypeError, UnsupportedTypeError
from .spatial import GeoJSONText, Geometry

GEOMETRY_KINDS = ("POINT", "POLYGON", "LINESTRING", "MULTIPOINT", "MULTIPOLYGON")
DEFAULT_SRID = 4326
_SUSPICIOUS_MARKERS = ("GEO", "POINT", "POLYGON", "LINESTRING")


@dataclass(frozen=True)
class DataType:
    """Metadata describing a logical field type."""

    name: str
    label: str
    category: str
    description: str
    requires_length: bool = False
    requires_precision: bool = False
    geometry_kind: str | None = None

    @property
    def is_geometry(self) -> bool:
        return self.category == "GIS"

    def to_dict(self) -> dict[str, Any]:
        return {
            "value": self.name,
            "label": self.label,
            "category": self.category,
            "description": self.description,
            "requiresLength": self.requires_length,
            "requiresPrecision": self.requires_precision,
            "isGeometry": self.is_geometry,
            "geometryKind": self.geometry_kind,
        }


_TYPES: list[DataType] = [
    DataType("TEXT", "Text", "String", "Unlimited length text"),
    DataType("VARCHAR", "Varchar", "String", "Text with a maximum length", requires_length=True),
    DataType("CHAR", "Char", "String", "Fixed length text", requires_length=True),
    DataType("SELECT", "Select", "String", "One value out of a configured option list"),
    DataType("INTEGER", "Integer", "Number", "32-bit whole number"),
    DataType("BIGINT", "Big Integer", "Number", "64-bit whole number"),
    DataType("DECIMAL", "Decimal", "Number", "Exact decimal number", requires_precision=True),
    DataType("NUMERIC", "Numeric", "Number", "Exact numeric value", requires_precision=True),
    DataType("FLOAT", "Float", "Number", "Floating point number"),
    DataType("DOUBLE PRECISION", "Double", "Number", "Double precision floating point"),
    DataType("BOOLEAN", "Boolean", "Boolean", "True or false"),
    DataType("DATE", "Date", "Date/Time", "Calendar date"),
    DataType("TIME", "Time", "Date/Time", "Time of day"),
    DataType("TIMESTAMP", "Timestamp", "Date/Time", "Date and time without time zone"),
    DataType("TIMESTAMPTZ", "Timestamp (TZ)", "Date/Time", "Date and time with time zone"),
    DataType("JSON", "JSON", "JSON", "Arbitrary JSON document"),
    DataType("JSONB", "JSONB", "JSON", "Binary JSON document"),
    DataType("GEOMETRY_POINT", "Point", "GIS", "Single location", geometry_kind="POINT"),
    DataType("GEOMETRY_POLYGON", "Polygon", "GIS", "Closed area", geometry_kind="POLYGON"),
    DataType("GEOMETRY_LINESTRING", "Line", "GIS", "Path or route", geometry_kind="LINESTRING"),
    DataType(
        "GEOMETRY_MULTIPOINT", "Multi Point", "GIS", "Several locations", geometry_kind="MULTIPOINT"
    ),
    DataType(
        "GEOMETRY_MULTIPOLYGON",
        "Multi Polygon",
        "GIS",
        "Several closed areas",
        geometry_kind="MULTIPOLYGON",
    ),
    DataType("GEOMETRY", "Geometry", "GIS", "Geometry with an explicitly configured kind"),
    DataType("IOT_SENSOR", "IoT Sensor", "IoT", "Sensor reading stored as JSON"),
    DataType("TAGS", "Tags", "Other", "List of text labels"),
    DataType("UUID", "UUID", "Other", "Universally unique identifier"),
    DataType("RELATION", "Relation", "Other", "Reference to a record in another table"),
]

_REGISTRY: dict[str, DataType] = {data_type.name: data_type for data_type in _TYPES}

# Bare OGC names map straight onto their kind.
_BARE_GEOMETRY_NAMES = {kind: kind for kind in GEOMETRY_KINDS}


def _normalize_name(data_type: str) -> str:
    return " ".join(str(data_type or "").strip().upper().split())


def get_data_type(data_type: str) -> DataType:
    """Return the registry entry for a logical type or raise."""

    name = _normalize_name(data_type)
    if name in _REGISTRY:
        return _REGISTRY[name]
    if name in _BARE_GEOMETRY_NAMES:
        return DataType(name, name.title(), "GIS", "Bare geometry type", geometry_kind=name)
    if is_suspicious_type(name):
        raise SuspiciousTypeError(data_type)
    raise UnsupportedTypeError(data_type)


def is_known_type(data_type: str) -> bool:
    name = _normalize_name(data_type)
    return name in _REGISTRY or name in _BARE_GEOMETRY_NAMES


def is_geometry_type(data_type: str) -> bool:
    """Return whether the logical type denotes a geometry column."""

    name = _normalize_name(data_type)
    if name in _BARE_GEOMETRY_NAMES:
        return True
    entry = _REGISTRY.get(name)
    return entry is not None and entry.is_geometry


def is_suspicious_type(data_type: str) -> bool:
    """Return whether an unknown type name looks like a geometry declaration."""

    name = _normalize_name(data_type)
    if not name or is_known_type(name):
        return False
    return any(marker in name for marker in _SUSPICIOUS_MARKERS)


def geometry_kind(data_type: str, geometry_type: str | None = None) -> str:
    """Resolve the geometry kind stored by a geometry typed field."""

    entry = get_data_type(data_type)
    if not entry.is_geometry:
        raise UnsupportedTypeError(data_type, f"data type {data_type!r} is not a geometry type")

    declared = _normalize_name(geometry_type) if geometry_type else None
    if entry.geometry_kind is not None:
        if declared and declared != entry.geometry_kind:
            raise InvalidGeometryTypeError(
                f"geometryType {geometry_type!r} does not match data type {entry.name}"
            )
        return entry.geometry_kind

    if declared in GEOMETRY_KINDS:
        return declared
    if declared:
        raise InvalidGeometryTypeError(f"unsupported geometryType {geometry_type!r}")
    raise InvalidGeometryTypeError(f"data type {entry.name} requires a geometryType")


def is_valid_srid(srid: Any) -> bool:
    if isinstance(srid, bool) or not isinstance(srid, int):
        return False
    return srid in (4326, 3857) or 0 < srid < 999999


def physical_type(
    data_type: str,
    *,
    max_length: int | None = None,
    precision: int | None = None,
    scale: int | None = None,
    geometry_type: str | None = None,
    srid: int | None = None,
    spatial: bool = True,
) -> TypeEngine:
    """Return the SQLAlchemy column type backing a logical type."""

    entry = get_data_type(data_type)
    name = entry.name

    if entry.is_geometry:
        kind = geometry_kind(data_type, geometry_type)
        if not spatial:
            return GeoJSONText()
        return Geometry(kind, srid or DEFAULT_SRID)

    if name in ("TEXT", "SELECT"):
        return Text()
    if name == "VARCHAR":
        return String(max_length or 255)
    if name == "CHAR":
        return CHAR(max_length or 1)
    if name == "INTEGER":
        return Integer()
    if name == "BIGINT":
        return BIGINT()
    if name in ("DECIMAL", "NUMERIC"):
        factory = DECIMAL if name == "DECIMAL" else NUMERIC
        return factory(precision or 10, 2 if scale is None else scale)
    if name == "FLOAT":
        return Float()
    if name == "DOUBLE PRECISION":
        return DOUBLE_PRECISION()
    if name == "BOOLEAN":
        return Boolean()
    if name == "DATE":
        return Date()
    if name == "TIME":
        return Time()
    if name == "TIMESTAMP":
        return DateTime()
    if name == "TIMESTAMPTZ":
        return DateTime(timezone=True)
    if name == "JSON":
        return JSON()
    if name in ("JSONB", "IOT_SENSOR"):
        return JSON().with_variant(postgresql.JSONB(), "postgresql")
    if name == "TAGS":
        return JSON().with_variant(postgresql.ARRAY(Text()), "postgresql")
    if name in ("UUID", "RELATION"):
        return Uuid()
    raise UnsupportedTypeError(data_type)


def data_type_catalog() -> list[dict[str, Any]]:
    """Return the registry in a JSON serialisable form."""

    return [data_type.to_dict() for data_type in _TYPES]


@dataclass(frozen=True)
class SuspiciousType:
    """A registered field whose declared type is ambiguous."""

    table: str
    field: str
    data_type: str

    def to_dict(self) -> dict[str, str]:
        return {"table": self.table, "field": self.field, "dataType": self.data_type}


def scan_suspicious_types(definitions: Iterable[Any]) -> list[SuspiciousType]:
    """Enumerate fields whose type looks like, but is not, a geometry type."""

    found: list[SuspiciousType] = []
    for definition in definitions:
        for field in definition.fields:
            if is_suspicious_type(field.data_type):
                found.append(SuspiciousType(definition.name, field.name, field.data_type))
    return found
