"""Translate logical table definitions into ordered DDL operations.

Generation is a pure function of the definition and the target dialect; nothing
in this module touches a live connection. Identifiers are checked against the
allow-list before they are interpolated into any statement.
"""
from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Column, Index, MetaData, Table, Uuid
from sqlalchemy.dialects import registry
from sqlalchemy.engine import Dialect
from sqlalchemy.schema import CreateColumn, CreateIndex, CreateTable, DropTable

from ..errors import SchemaDriftError, SchemaError
from .data_types import GEOMETRY_KINDS, is_valid_srid
from .definitions import (
    ON_DELETE_POLICIES,
    FieldDefinition,
    TableDefinition,
    ensure_identifier,
    physical_table_name,
)
from .physical import build_history_table, build_table

CREATE_TABLE = "create_table"
ADD_COLUMN = "add_column"
ADD_GEOMETRY_COLUMN = "add_geometry_column"
SET_NOT_NULL = "set_not_null"
CREATE_INDEX = "create_index"
ADD_CONSTRAINT = "add_constraint"


@dataclass(frozen=True)
class DdlOperation:
    """One generated DDL statement and the structure it creates."""

    kind: str
    table: str
    sql: str
    column: str | None = None
    index: str | None = None
    columns: tuple[str, ...] = ()

    def describe(self) -> str:
        target = self.index or self.column
        return f"{self.kind} {self.table}" + (f".{target}" if target else "")


@dataclass(frozen=True)
class DdlPlan:
    definition: TableDefinition
    dialect: str
    operations: tuple[DdlOperation, ...]

    def __iter__(self) -> Iterator[DdlOperation]:
        return iter(self.operations)

    def __len__(self) -> int:
        return len(self.operations)

    @property
    def statements(self) -> list[str]:
        return [operation.sql for operation in self.operations]


def resolve_dialect(dialect: str | Dialect) -> Dialect:
    if isinstance(dialect, str):
        return registry.load(dialect)()
    return dialect


def _compile(construct: Any, dialect: Dialect) -> str:
    return str(construct.compile(dialect=dialect)).strip()


def _check_identifiers(definition: TableDefinition, schema: str) -> None:
    ensure_identifier(schema, "schema")
    ensure_identifier(definition.name, "table name")
    for item in definition.fields:
        _check_field_identifiers(item)


def _check_field_identifiers(item: FieldDefinition) -> None:
    ensure_identifier(item.name, "field name")
    if item.relation_table:
        ensure_identifier(item.relation_table, "relation table")
        ensure_identifier(item.relation_field or "id", "relation field")
        if item.on_delete is not None and item.on_delete not in ON_DELETE_POLICIES:
            raise SchemaError(f"onDelete {item.on_delete!r} is not supported")


def _geometry_spec(item: FieldDefinition) -> tuple[str, int]:
    kind = item.geometry_kind
    if kind not in GEOMETRY_KINDS:
        raise SchemaError(f"field {item.name!r}: unsupported geometry kind {kind!r}")
    srid = item.srid if item.srid is not None else 4326
    if not is_valid_srid(srid):
        raise SchemaError(f"field {item.name!r}: invalid SRID {srid!r}")
    return kind, srid


def _add_geometry_column(schema: str, table: str, item: FieldDefinition) -> DdlOperation:
    kind, srid = _geometry_spec(item)
    return DdlOperation(
        ADD_GEOMETRY_COLUMN,
        table,
        f"SELECT AddGeometryColumn('{schema}', '{table}', '{item.name}', {srid}, '{kind}', 2)",
        column=item.name,
    )


def _set_not_null(table: str, column: str) -> DdlOperation:
    return DdlOperation(
        SET_NOT_NULL,
        table,
        f'ALTER TABLE "{table}" ALTER COLUMN "{column}" SET NOT NULL',
        column=column,
    )


def _gist_index(table: str, column: str) -> DdlOperation:
    index = f"idx_{table}_{column}_gist"
    return DdlOperation(
        CREATE_INDEX,
        table,
        f'CREATE INDEX IF NOT EXISTS "{index}" ON "{table}" USING GIST ("{column}")',
        column=column,
        index=index,
    )


def _timeseries_index(table, column: str, dialect: Dialect) -> DdlOperation:
    index = f"idx_{table.name}_{column}"
    construct = CreateIndex(Index(index, table.c[column].desc()), if_not_exists=True)
    return DdlOperation(
        CREATE_INDEX, table.name, _compile(construct, dialect), column=column, index=index
    )


def _create_table(table, dialect: Dialect) -> DdlOperation:
    return DdlOperation(
        CREATE_TABLE,
        table.name,
        _compile(CreateTable(table, if_not_exists=True), dialect),
        columns=tuple(column.name for column in table.columns),
    )


def translate(
    definition: TableDefinition,
    dialect: str | Dialect = "postgresql",
    *,
    schema: str = "public",
) -> DdlPlan:
    """Return the ordered DDL needed to materialise a table definition.

    On PostgreSQL geometry columns are registered through PostGIS after the base
    table exists; the NOT NULL constraint and the GIST index follow the
    registration. Other dialects store geometries inline as GeoJSON text.
    """

    _check_identifiers(definition, schema)
    sa_dialect = resolve_dialect(dialect)
    spatial = sa_dialect.name == "postgresql"

    base = build_table(
        definition,
        MetaData(),
        dialect=sa_dialect.name,
        include_geometry=not spatial,
        with_constraints=True,
    )
    history = build_history_table(
        definition, MetaData(), dialect=sa_dialect.name, include_geometry=not spatial
    )
    geometry_fields = definition.geometry_fields if spatial else ()

    operations: list[DdlOperation] = [_create_table(base, sa_dialect)]

    for item in geometry_fields:
        operations.append(_add_geometry_column(schema, base.name, item))
        if item.is_required:
            operations.append(_set_not_null(base.name, item.name))

    for item in definition.fields:
        if item.is_timeseries and item.name in base.c:
            operations.append(_timeseries_index(base, item.name, sa_dialect))

    for item in geometry_fields:
        operations.append(_gist_index(base.name, item.name))

    operations.append(_create_table(history, sa_dialect))
    for item in geometry_fields:
        operations.append(_add_geometry_column(schema, history.name, item))

    history_index = f"idx_{history.name}_record_id"
    operations.append(
        DdlOperation(
            CREATE_INDEX,
            history.name,
            _compile(
                CreateIndex(Index(history_index, history.c.record_id), if_not_exists=True),
                sa_dialect,
            ),
            column="record_id",
            index=history_index,
        )
    )

    return DdlPlan(definition, sa_dialect.name, tuple(operations))


def translate_add_field(
    definition: TableDefinition,
    item: FieldDefinition,
    dialect: str | Dialect = "postgresql",
    *,
    schema: str = "public",
) -> DdlPlan:
    """Return the DDL adding one field to an already materialised table."""

    ensure_identifier(schema, "schema")
    ensure_identifier(definition.name, "table name")
    _check_field_identifiers(item)
    sa_dialect = resolve_dialect(dialect)
    spatial = sa_dialect.name == "postgresql"
    extended = definition.with_field(item)
    base_name = definition.physical_name
    history_name = definition.history_name
    operations: list[DdlOperation] = []

    if item.is_geometry and spatial:
        operations.append(_add_geometry_column(schema, base_name, item))
        if item.is_required:
            operations.append(_set_not_null(base_name, item.name))
        operations.append(_gist_index(base_name, item.name))
        operations.append(_add_geometry_column(schema, history_name, item))
        return DdlPlan(extended, sa_dialect.name, tuple(operations))

    base = build_table(extended, MetaData(), dialect=sa_dialect.name, with_constraints=True)
    history = build_history_table(extended, MetaData(), dialect=sa_dialect.name)

    column_sql = _compile(CreateColumn(base.c[item.name]), sa_dialect)
    operations.append(
        DdlOperation(
            ADD_COLUMN,
            base_name,
            f'ALTER TABLE "{base_name}" ADD COLUMN {column_sql}',
            column=item.name,
        )
    )

    if item.relation_table and spatial:
        constraint = f"fk_{base_name}_{item.name}"
        target = physical_table_name(item.relation_table)
        operations.append(
            DdlOperation(
                ADD_CONSTRAINT,
                base_name,
                f'ALTER TABLE "{base_name}" ADD CONSTRAINT "{constraint}" '
                f'FOREIGN KEY ("{item.name}") REFERENCES "{target}" '
                f'("{item.relation_field or "id"}") ON DELETE {item.on_delete or "SET NULL"}',
                column=item.name,
                index=constraint,
            )
        )

    if item.is_unique:
        unique_index = f"uq_{base_name}_{item.name}"
        construct = CreateIndex(
            Index(unique_index, base.c[item.name], unique=True), if_not_exists=True
        )
        operations.append(
            DdlOperation(
                CREATE_INDEX,
                base_name,
                _compile(construct, sa_dialect),
                column=item.name,
                index=unique_index,
            )
        )

    if item.is_timeseries:
        operations.append(_timeseries_index(base, item.name, sa_dialect))

    history_sql = _compile(CreateColumn(history.c[item.name]), sa_dialect)
    operations.append(
        DdlOperation(
            ADD_COLUMN,
            history_name,
            f'ALTER TABLE "{history_name}" ADD COLUMN {history_sql}',
            column=item.name,
        )
    )
    return DdlPlan(extended, sa_dialect.name, tuple(operations))


def drop_statements(
    definition: TableDefinition, dialect: str | Dialect = "postgresql"
) -> list[str]:
    """Return statements dropping a definition's history and base tables."""

    ensure_identifier(definition.name, "table name")
    return [
        drop_table_statement(name, dialect)
        for name in (definition.history_name, definition.physical_name)
    ]


def drop_table_statement(table: str, dialect: str | Dialect = "postgresql") -> str:
    if not table.startswith(physical_table_name("")):
        raise SchemaError(f"refusing to drop non custom table {table!r}")
    ensure_identifier(table, "table name")
    sa_dialect = resolve_dialect(dialect)
    if sa_dialect.name == "postgresql":
        return f'DROP TABLE IF EXISTS "{table}" CASCADE'
    stub = Table(table, MetaData(), Column("id", Uuid(), primary_key=True))
    return _compile(DropTable(stub, if_exists=True), sa_dialect)


def pending_operations(plan: DdlPlan, inspector: Any) -> list[DdlOperation]:
    """Filter a plan down to the operations whose structures do not exist yet.

    Raises ``SchemaDriftError`` when an existing table lacks declared columns.
    """

    existing_tables = set(inspector.get_table_names())
    columns: dict[str, dict[str, dict[str, Any]]] = {}
    indexes: dict[str, set[str]] = {}

    def _columns(table: str) -> dict[str, dict[str, Any]]:
        if table not in columns:
            columns[table] = (
                {column["name"]: column for column in inspector.get_columns(table)}
                if table in existing_tables
                else {}
            )
        return columns[table]

    def _indexes(table: str) -> set[str]:
        if table not in indexes:
            names: set[str] = set()
            if table in existing_tables:
                names.update(index["name"] for index in inspector.get_indexes(table))
                names.update(
                    key["name"] for key in inspector.get_foreign_keys(table) if key.get("name")
                )
            indexes[table] = names
        return indexes[table]

    pending: list[DdlOperation] = []
    for operation in plan.operations:
        if operation.kind == CREATE_TABLE:
            if operation.table in existing_tables:
                missing = [name for name in operation.columns if name not in _columns(operation.table)]
                if missing:
                    raise SchemaDriftError(
                        f"table {operation.table!r} exists but lacks columns: {', '.join(missing)}"
                    )
                continue
        elif operation.kind in (ADD_COLUMN, ADD_GEOMETRY_COLUMN):
            if operation.column in _columns(operation.table):
                continue
        elif operation.kind == SET_NOT_NULL:
            column = _columns(operation.table).get(operation.column)
            if column is not None and not column.get("nullable", True):
                continue
        elif operation.kind in (CREATE_INDEX, ADD_CONSTRAINT):
            if operation.index in _indexes(operation.table):
                continue
        pending.append(operation)
    return pending
