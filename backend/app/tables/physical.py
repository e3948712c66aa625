"""SQLAlchemy Core tables backing custom table definitions."""
from __future__ import annotations

import uuid
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any

from sqlalchemy import Column, DateTime, ForeignKey, MetaData, String, Table, Uuid, func, text

from .definitions import FieldDefinition, TableDefinition, physical_table_name
from .validation import coerce_field_value


def _system_columns(dialect: str) -> list[Column]:
    id_default = text("gen_random_uuid()") if dialect == "postgresql" else None
    return [
        Column("id", Uuid(), primary_key=True, default=uuid.uuid4, server_default=id_default),
        Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
        Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
        Column("deleted_at", DateTime(timezone=True), nullable=True),
        Column("created_by", String(255), nullable=True),
        Column("updated_by", String(255), nullable=True),
    ]


def _mirrored_system_columns() -> list[Column]:
    return [
        Column("created_at", DateTime(timezone=True), nullable=True),
        Column("updated_at", DateTime(timezone=True), nullable=True),
        Column("deleted_at", DateTime(timezone=True), nullable=True),
        Column("created_by", String(255), nullable=True),
        Column("updated_by", String(255), nullable=True),
    ]


def server_default(item: FieldDefinition, dialect: str) -> Any:
    """Render a field's default as a DDL default clause, if representable."""

    if item.default_value is None or item.is_geometry:
        return None
    value = coerce_field_value(item, item.default_value)
    if isinstance(value, bool):
        if dialect == "postgresql":
            return text("true" if value else "false")
        return text("1" if value else "0")
    if isinstance(value, (int, float, Decimal)):
        return text(str(value))
    if isinstance(value, (date, time, datetime)):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, str):
        return value
    return None


def field_column(
    item: FieldDefinition,
    *,
    dialect: str = "postgresql",
    with_constraints: bool = False,
    mirror: bool = False,
) -> Column:
    """Build the column for a field; mirrored columns carry no constraints."""

    args: list[Any] = []
    constrained = with_constraints and not mirror
    if constrained and item.relation_table:
        target = f"{physical_table_name(item.relation_table)}.{item.relation_field or 'id'}"
        args.append(ForeignKey(target, ondelete=item.on_delete))

    return Column(
        item.name,
        item.column_type(spatial=dialect == "postgresql"),
        *args,
        nullable=mirror or not item.is_required,
        unique=constrained and item.is_unique,
        server_default=server_default(item, dialect) if constrained else None,
    )


def _ensure_relation_targets(definition: TableDefinition, metadata: MetaData) -> None:
    for item in definition.fields:
        if not item.relation_table or item.relation_table == definition.name:
            continue
        name = physical_table_name(item.relation_table)
        if name not in metadata.tables:
            Table(name, metadata, Column(item.relation_field or "id", Uuid(), primary_key=True))


def build_table(
    definition: TableDefinition,
    metadata: MetaData | None = None,
    *,
    dialect: str = "postgresql",
    include_geometry: bool = True,
    with_constraints: bool = False,
) -> Table:
    """Return the base physical table for a definition."""

    metadata = metadata if metadata is not None else MetaData()
    if with_constraints:
        _ensure_relation_targets(definition, metadata)

    columns = _system_columns(dialect)
    for item in definition.fields:
        if item.is_geometry and not include_geometry:
            continue
        columns.append(
            field_column(item, dialect=dialect, with_constraints=with_constraints)
        )
    return Table(definition.physical_name, metadata, *columns)


def build_history_table(
    definition: TableDefinition,
    metadata: MetaData | None = None,
    *,
    dialect: str = "postgresql",
    include_geometry: bool = True,
) -> Table:
    """Return the audit table mirroring a definition's base table."""

    metadata = metadata if metadata is not None else MetaData()
    columns = [
        Column("history_id", Uuid(), primary_key=True, default=uuid.uuid4),
        Column("record_id", Uuid(), nullable=False),
        Column("operation", String(10), nullable=False),
        *_mirrored_system_columns(),
    ]
    for item in definition.fields:
        if item.is_geometry and not include_geometry:
            continue
        columns.append(field_column(item, dialect=dialect, mirror=True))
    columns.extend(
        [
            Column("changed_by", String(255), nullable=True),
            Column(
                "changed_at", DateTime(timezone=True), nullable=False, server_default=func.now()
            ),
        ]
    )
    return Table(definition.history_name, metadata, *columns)
