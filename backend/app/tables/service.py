"""Logical table registry and physical schema management."""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace

from sqlalchemy import inspect
from sqlalchemy.engine import Dialect
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import ConcurrencyError, NotFoundError, SchemaError
from ..models.custom_table import CustomField, CustomTable
from .data_types import DEFAULT_SRID, SuspiciousType, scan_suspicious_types
from .ddl import (
    CREATE_TABLE,
    DdlOperation,
    DdlPlan,
    drop_statements,
    drop_table_statement,
    pending_operations,
    translate,
    translate_add_field,
)
from .definitions import FieldDefinition, TableDefinition, validate_definition

logger = logging.getLogger(__name__)

RunLogHook = Callable[[str, str], None]


def _field_model(item: FieldDefinition) -> CustomField:
    return CustomField(
        name=item.name,
        display_name=item.display_name or item.name,
        description=item.description,
        data_type=item.data_type,
        is_required=item.is_required,
        is_unique=item.is_unique,
        is_timeseries=item.is_timeseries,
        default_value=item.default_value,
        max_length=item.max_length,
        precision=item.precision,
        scale=item.scale,
        srid=item.srid,
        geometry_type=item.geometry_type,
        relation_table=item.relation_table,
        relation_field=item.relation_field,
        on_delete=item.on_delete,
        validation=item.validation or None,
        order=item.order,
    )


class TableRegistry:
    """Create, inspect and drop custom tables and their physical storage."""

    def __init__(
        self,
        session: Session,
        *,
        dialect: str | Dialect | None = None,
        schema: str = "public",
        default_srid: int = DEFAULT_SRID,
        run_log: RunLogHook | None = None,
    ) -> None:
        self._session = session
        self._dialect = dialect
        self._schema = schema
        self._default_srid = default_srid
        self._run_log = run_log

    @property
    def dialect(self) -> str | Dialect:
        if self._dialect is None:
            self._dialect = self._session.get_bind().dialect
        return self._dialect

    def list(self) -> list[CustomTable]:
        return self._session.query(CustomTable).order_by(CustomTable.name.asc()).all()

    def get_by_name(self, name: str) -> CustomTable | None:
        return self._session.query(CustomTable).filter_by(name=name).first()

    def get(self, key: int | str) -> CustomTable:
        """Return a table by numeric id or by name."""

        table = None
        if isinstance(key, int) or (isinstance(key, str) and key.isdigit()):
            table = self._session.get(CustomTable, int(key))
        if table is None and isinstance(key, str):
            table = self.get_by_name(key)
        if table is None:
            raise NotFoundError(f"table {key!r} not found")
        return table

    def definition_of(self, key: int | str) -> TableDefinition:
        return TableDefinition.from_model(self.get(key))

    def definitions(self) -> list[TableDefinition]:
        return [TableDefinition.from_model(table) for table in self.list()]

    def suspicious_types(self) -> list[SuspiciousType]:
        return scan_suspicious_types(self.definitions())

    def create(self, definition: TableDefinition, actor: str | None = None) -> CustomTable:
        """Register a table and materialise it in one transaction.

        The registry's unique constraint on ``name`` decides concurrent creations;
        the loser receives ``ConcurrencyError`` before any DDL is executed.
        """

        definition = validate_definition(definition, default_srid=self._default_srid)
        self._check_relations(definition)
        plan = translate(definition, self.dialect, schema=self._schema)

        table = CustomTable(
            name=definition.name,
            display_name=definition.display_name,
            description=definition.description,
            icon=definition.icon,
            created_by=actor,
            fields=[_field_model(item) for item in definition.fields],
        )
        self._session.add(table)
        try:
            self._session.flush()
        except IntegrityError as exc:
            self._session.rollback()
            raise ConcurrencyError(f"table {definition.name!r} already exists") from exc

        created: list[str] = []
        try:
            self._apply(plan, created)
            self._session.commit()
        except (SQLAlchemyError, SchemaError) as exc:
            self._session.rollback()
            self._compensate(created)
            if isinstance(exc, SchemaError):
                raise
            raise SchemaError(
                f"failed to materialise table {definition.name!r}: {exc.__class__.__name__}"
            ) from exc

        self._log(f"table {definition.name} created ({len(plan)} DDL operations)")
        return table

    def add_field(self, key: int | str, item: FieldDefinition) -> CustomTable:
        """Add a field to a registered table and its physical storage."""

        table = self.get(key)
        current = TableDefinition.from_model(table)
        if current.field(item.name) is not None:
            raise SchemaError(f"field {item.name!r} already exists on table {current.name!r}")
        if not item.order:
            item = replace(item, order=max((field.order for field in current.fields), default=-1) + 1)

        extended = validate_definition(current.with_field(item), default_srid=self._default_srid)
        normalized = extended.field(item.name)
        self._check_relations(replace(current, fields=(normalized,)))
        plan = translate_add_field(current, normalized, self.dialect, schema=self._schema)

        table.fields.append(_field_model(normalized))
        try:
            self._session.flush()
            self._apply(plan, [])
            self._session.commit()
        except SQLAlchemyError as exc:
            self._session.rollback()
            raise SchemaError(
                f"failed to add field {item.name!r} to {current.name!r}: {exc.__class__.__name__}"
            ) from exc

        self._log(f"field {item.name} added to table {current.name}")
        return table

    def materialize(self, key: int | str) -> list[DdlOperation]:
        """Re-run the schema translation, applying only missing structures."""

        definition = validate_definition(
            self.definition_of(key), default_srid=self._default_srid
        )
        plan = translate(definition, self.dialect, schema=self._schema)
        try:
            applied = self._apply(plan, [])
            self._session.commit()
        except SQLAlchemyError as exc:
            self._session.rollback()
            raise SchemaError(
                f"failed to materialise table {definition.name!r}: {exc.__class__.__name__}"
            ) from exc

        if applied:
            self._log(f"table {definition.name} materialised ({len(applied)} DDL operations)")
        return applied

    def delete(self, key: int | str) -> None:
        """Drop a table's physical storage and remove its registration."""

        table = self.get(key)
        definition = TableDefinition.from_model(table)
        connection = self._session.connection()
        try:
            for statement in drop_statements(definition, self.dialect):
                connection.exec_driver_sql(statement)
            self._session.delete(table)
            self._session.commit()
        except SQLAlchemyError:
            self._session.rollback()
            raise

        self._log(f"table {definition.name} dropped")

    def _check_relations(self, definition: TableDefinition) -> None:
        errors: list[str] = []
        for item in definition.fields:
            if not item.relation_table:
                continue
            if item.relation_table == definition.name:
                continue
            target = self.get_by_name(item.relation_table)
            if target is None:
                errors.append(
                    f"field {item.name!r}: relation table {item.relation_table!r} is not registered"
                )
                continue
            relation_field = item.relation_field or "id"
            if relation_field != "id":
                target_field = TableDefinition.from_model(target).field(relation_field)
                if target_field is None or target_field.type_name not in ("UUID", "RELATION"):
                    errors.append(
                        f"field {item.name!r}: {item.relation_table}.{relation_field} "
                        "is not a UUID field"
                    )
        if errors:
            raise SchemaError(errors)

    def _apply(self, plan: DdlPlan, created: list[str]) -> list[DdlOperation]:
        connection = self._session.connection()
        operations = pending_operations(plan, inspect(connection))
        skipped = len(plan) - len(operations)
        if skipped:
            logger.info(
                "Skipping %s existing structures for table %s", skipped, plan.definition.name
            )
        for operation in operations:
            logger.debug("Applying %s", operation.describe())
            connection.exec_driver_sql(operation.sql)
            if operation.kind == CREATE_TABLE:
                created.append(operation.table)
        return operations

    def _compensate(self, created: list[str]) -> None:
        if not created:
            return
        try:
            connection = self._session.connection()
            for name in reversed(created):
                connection.exec_driver_sql(drop_table_statement(name, self.dialect))
            self._session.commit()
        except SQLAlchemyError:
            self._session.rollback()
            logger.exception("Failed to drop partially created tables %s", ", ".join(created))

    def _log(self, message: str) -> None:
        logger.info(message)
        if self._run_log is not None:
            self._run_log("table", message)

