"""Generic CRUD over the physical tables of custom table definitions."""
from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime, time
from typing import Any

from sqlalchemy import MetaData, String, Table, Text, delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import FieldError, NotFoundError, ValidationError
from ..models.custom_table import CustomTable
from ..workflow.events import DELETE, INSERT, UPDATE, EventDispatcher, RecordChangeEvent
from .data_types import DEFAULT_SRID
from .definitions import TableDefinition
from .geojson import to_feature_collection, validate_any_geometry, validate_geometry
from .physical import build_history_table, build_table
from .spatial import SPATIAL_QUERY_TYPES, spatial_predicate
from .validation import RecordValidator

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "SYSTEM"

_FILTER_OPERATORS = {
    "eq": "eq",
    "equals": "eq",
    "ne": "ne",
    "not_equals": "ne",
    "gt": "gt",
    "gte": "gte",
    "lt": "lt",
    "lte": "lte",
    "contains": "contains",
}


@dataclass(frozen=True)
class RecordPage:
    records: list[dict[str, Any]]
    total: int
    limit: int
    offset: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "data": self.records,
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
        }


def _now() -> datetime:
    return datetime.now(UTC)


def _serialize_value(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    return value


def serialize_row(row: dict[str, Any]) -> dict[str, Any]:
    return {key: _serialize_value(value) for key, value in row.items()}


def _parse_record_id(record_id: Any) -> uuid.UUID:
    if isinstance(record_id, uuid.UUID):
        return record_id
    try:
        return uuid.UUID(str(record_id))
    except (TypeError, ValueError) as exc:
        raise NotFoundError(f"record {record_id!r} not found") from exc


class CustomDataService:
    """Create, read, update and delete records of custom tables.

    Every write is mirrored into the table's history shadow within the same
    transaction. Change events are emitted only after the commit succeeded.
    """

    def __init__(
        self,
        session: Session,
        *,
        dispatcher: EventDispatcher | None = None,
        dialect: str | None = None,
        scale_policy: str = "reject",
        page_limit: int = 50,
        max_page_limit: int = 500,
        run_log: Callable[[str, str], None] | None = None,
    ) -> None:
        self._session = session
        self._dispatcher = dispatcher
        self._dialect = dialect
        self._validator = RecordValidator(scale_policy)
        self._page_limit = page_limit
        self._max_page_limit = max_page_limit
        self._run_log = run_log

    @property
    def dialect(self) -> str:
        if self._dialect is None:
            self._dialect = self._session.get_bind().dialect.name
        return self._dialect

    def table_by_name(self, name: str) -> TableDefinition:
        table = self._session.query(CustomTable).filter_by(name=name).first()
        if table is None:
            raise NotFoundError(f"table {name!r} not found")
        return TableDefinition.from_model(table)

    def _tables(self, definition: TableDefinition) -> tuple[Table, Table]:
        metadata = MetaData()
        return (
            build_table(definition, metadata, dialect=self.dialect),
            build_history_table(definition, metadata, dialect=self.dialect),
        )

    def _fetch_row(
        self, table: Table, record_id: uuid.UUID, *, include_deleted: bool = False
    ) -> dict[str, Any] | None:
        statement = select(table).where(table.c.id == record_id)
        if not include_deleted:
            statement = statement.where(table.c.deleted_at.is_(None))
        row = self._session.execute(statement).mappings().first()
        return dict(row) if row is not None else None

    def _write_history(
        self,
        history: Table,
        row: dict[str, Any],
        operation: str,
        actor: str | None,
        changed_at: datetime,
    ) -> None:
        values = {
            key: value for key, value in row.items() if key != "id" and key in history.c
        }
        values.update(
            history_id=uuid.uuid4(),
            record_id=row["id"],
            operation=operation,
            changed_by=actor or SYSTEM_ACTOR,
            changed_at=changed_at,
        )
        self._session.execute(insert(history).values(**values))

    def _run_write(self, write) -> Any:
        try:
            result = write()
            self._session.commit()
            return result
        except IntegrityError as exc:
            self._session.rollback()
            raise ValidationError(
                [FieldError(None, "record violates a unique or relation constraint")]
            ) from exc
        except SQLAlchemyError:
            self._session.rollback()
            raise

    def _emit(
        self,
        definition: TableDefinition,
        operation: str,
        record_id: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
        actor: str | None,
        depth: int,
    ) -> None:
        if self._dispatcher is None:
            return
        event = RecordChangeEvent(
            table_id=definition.id,
            table_name=definition.name,
            operation=operation,
            record_id=record_id,
            before=before,
            after=after,
            actor=actor,
            depth=depth,
        )
        try:
            self._dispatcher.emit(event)
        except Exception:
            logger.exception("Failed to emit %s event for %s", operation, definition.name)

    def create(
        self,
        definition: TableDefinition,
        payload: Any,
        actor: str | None = None,
        *,
        depth: int = 0,
    ) -> dict[str, Any]:
        """Validate and insert a record, returning its stored representation."""

        record = self._validator.validate(definition, payload)
        base, history = self._tables(definition)
        now = _now()
        record_id = uuid.uuid4()

        def _write() -> dict[str, Any]:
            self._session.execute(
                insert(base).values(
                    **record,
                    id=record_id,
                    created_at=now,
                    updated_at=now,
                    created_by=actor,
                    updated_by=actor,
                )
            )
            row = self._fetch_row(base, record_id, include_deleted=True)
            self._write_history(history, row, INSERT, actor, now)
            return row

        after = serialize_row(self._run_write(_write))
        self._emit(definition, INSERT, after["id"], None, after, actor, depth)
        return after

    def update(
        self,
        definition: TableDefinition,
        record_id: Any,
        payload: Any,
        actor: str | None = None,
        *,
        depth: int = 0,
    ) -> dict[str, Any]:
        """Apply a partial update to an active record."""

        changes = self._validator.validate(definition, payload, partial=True)
        base, history = self._tables(definition)
        key = _parse_record_id(record_id)
        before_row = self._fetch_row(base, key)
        if before_row is None:
            raise NotFoundError(f"record {record_id!r} not found")
        if not changes:
            return serialize_row(before_row)
        now = _now()

        def _write() -> dict[str, Any]:
            self._session.execute(
                update(base)
                .where(base.c.id == key)
                .values(**changes, updated_at=now, updated_by=actor)
            )
            row = self._fetch_row(base, key, include_deleted=True)
            self._write_history(history, row, UPDATE, actor, now)
            return row

        after = serialize_row(self._run_write(_write))
        before = serialize_row(before_row)
        self._emit(definition, UPDATE, after["id"], before, after, actor, depth)
        return after

    def soft_delete(
        self,
        definition: TableDefinition,
        record_id: Any,
        actor: str | None = None,
        *,
        depth: int = 0,
    ) -> dict[str, Any]:
        """Mark an active record as deleted without removing it."""

        base, history = self._tables(definition)
        key = _parse_record_id(record_id)
        before_row = self._fetch_row(base, key)
        if before_row is None:
            raise NotFoundError(f"record {record_id!r} not found")
        now = _now()

        def _write() -> dict[str, Any]:
            self._session.execute(
                update(base)
                .where(base.c.id == key)
                .values(deleted_at=now, updated_at=now, updated_by=actor)
            )
            row = self._fetch_row(base, key, include_deleted=True)
            self._write_history(history, row, DELETE, actor, now)
            return row

        deleted = serialize_row(self._run_write(_write))
        self._emit(
            definition, DELETE, deleted["id"], serialize_row(before_row), None, actor, depth
        )
        return deleted

    def hard_delete(
        self,
        definition: TableDefinition,
        record_id: Any,
        actor: str | None = None,
        *,
        depth: int = 0,
    ) -> None:
        """Physically remove a record; the history keeps its last state."""

        base, history = self._tables(definition)
        key = _parse_record_id(record_id)
        row = self._fetch_row(base, key, include_deleted=True)
        if row is None:
            raise NotFoundError(f"record {record_id!r} not found")

        def _write() -> None:
            self._write_history(history, row, DELETE, actor, _now())
            self._session.execute(delete(base).where(base.c.id == key))

        self._run_write(_write)
        before = serialize_row(row)
        if self._run_log is not None:
            self._run_log(
                "record", f"record {before['id']} of table {definition.name} permanently deleted"
            )
        if row.get("deleted_at") is None:
            self._emit(definition, DELETE, before["id"], before, None, actor, depth)

    def get_by_id(
        self,
        definition: TableDefinition,
        record_id: Any,
        *,
        include_deleted: bool = False,
    ) -> dict[str, Any] | None:
        base, _ = self._tables(definition)
        try:
            key = _parse_record_id(record_id)
        except NotFoundError:
            return None
        row = self._fetch_row(base, key, include_deleted=include_deleted)
        return serialize_row(row) if row is not None else None

    def _filter_value(self, definition: TableDefinition, column: str, value: Any) -> Any:
        if value is None:
            return None
        item = definition.field(column)
        try:
            if item is not None:
                return self._validator.coerce(item, value)
            if column == "id":
                return _parse_record_id(value)
            if column in ("created_at", "updated_at", "deleted_at"):
                return value if isinstance(value, datetime) else datetime.fromisoformat(value)
        except (TypeError, ValueError, NotFoundError) as exc:
            raise ValidationError([FieldError(column, f"invalid filter value: {exc}")]) from exc
        return value

    def _conditions(
        self, definition: TableDefinition, table: Table, filters: dict[str, Any] | None
    ) -> list[Any]:
        conditions: list[Any] = []
        errors: list[FieldError] = []
        for name, condition in (filters or {}).items():
            item = definition.field(name)
            if name not in table.c or (item is not None and item.is_geometry):
                errors.append(FieldError(name, "cannot filter on this column"))
                continue
            if isinstance(condition, dict) and "op" in condition:
                operator = _FILTER_OPERATORS.get(str(condition["op"]).lower())
                value = condition.get("value")
            else:
                operator, value = "eq", condition
            if operator is None:
                errors.append(FieldError(name, f"unsupported filter operator {condition['op']!r}"))
                continue

            column = table.c[name]
            if operator == "contains":
                if not isinstance(column.type, (String, Text)):
                    errors.append(FieldError(name, "contains requires a text column"))
                    continue
                conditions.append(column.contains(str(value), autoescape=True))
                continue

            value = self._filter_value(definition, name, value)
            if value is None:
                if operator in ("eq", "ne"):
                    conditions.append(column.is_(None) if operator == "eq" else column.is_not(None))
                    continue
                errors.append(FieldError(name, "comparison with null is not supported"))
                continue
            conditions.append(
                {
                    "eq": column == value,
                    "ne": column != value,
                    "gt": column > value,
                    "gte": column >= value,
                    "lt": column < value,
                    "lte": column <= value,
                }[operator]
            )
        if errors:
            raise ValidationError(errors)
        return conditions

    def list(
        self,
        definition: TableDefinition,
        *,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
        order_dir: str = "desc",
        limit: int | None = None,
        offset: int = 0,
        include_deleted: bool = False,
    ) -> RecordPage:
        """Return a page of records matching the filters."""

        base, _ = self._tables(definition)
        conditions = self._conditions(definition, base, filters)
        if not include_deleted:
            conditions.append(base.c.deleted_at.is_(None))

        order_by = order_by or "created_at"
        sort_field = definition.field(order_by)
        if order_by not in base.c or (sort_field is not None and sort_field.is_geometry):
            raise ValidationError([FieldError(order_by, "cannot sort by this column")])
        direction = (order_dir or "desc").lower()
        if direction not in ("asc", "desc"):
            raise ValidationError([FieldError("orderDir", "must be asc or desc")])

        limit = self._page_limit if limit is None else max(1, min(int(limit), self._max_page_limit))
        offset = max(0, int(offset or 0))

        column = base.c[order_by]
        ordering = column.asc() if direction == "asc" else column.desc()
        total = self._session.execute(
            select(func.count()).select_from(base).where(*conditions)
        ).scalar_one()
        rows = self._session.execute(
            select(base)
            .where(*conditions)
            .order_by(ordering, base.c.id.asc())
            .limit(limit)
            .offset(offset)
        ).mappings()
        return RecordPage([serialize_row(dict(row)) for row in rows], total, limit, offset)

    def history(self, definition: TableDefinition, record_id: Any) -> list[dict[str, Any]]:
        """Return the audit trail of a record, newest first."""

        _, history = self._tables(definition)
        key = _parse_record_id(record_id)
        rows = self._session.execute(
            select(history)
            .where(history.c.record_id == key)
            .order_by(history.c.changed_at.desc())
        ).mappings()
        return [serialize_row(dict(row)) for row in rows]

    def history_at(
        self, definition: TableDefinition, record_id: Any, at: datetime
    ) -> dict[str, Any] | None:
        """Return the history entry describing the record as it was at ``at``."""

        _, history = self._tables(definition)
        key = _parse_record_id(record_id)
        at = at.astimezone(UTC) if at.tzinfo is not None else at.replace(tzinfo=UTC)
        row = (
            self._session.execute(
                select(history)
                .where(history.c.record_id == key, history.c.changed_at <= at)
                .order_by(history.c.changed_at.desc())
                .limit(1)
            )
            .mappings()
            .first()
        )
        return serialize_row(dict(row)) if row is not None else None

    def stats(self, definition: TableDefinition) -> dict[str, Any]:
        base, _ = self._tables(definition)
        total, deleted, last_updated = self._session.execute(
            select(
                func.count(),
                func.count(base.c.deleted_at),
                func.max(base.c.updated_at),
            ).select_from(base)
        ).one()
        return {
            "table": definition.name,
            "total": total,
            "active": total - deleted,
            "deleted": deleted,
            "lastUpdated": _serialize_value(last_updated),
        }

    def feature_collection(
        self, definition: TableDefinition, geometry_field: str | None = None
    ) -> dict[str, Any]:
        """Return active records with a geometry as a GeoJSON FeatureCollection."""

        if geometry_field is None:
            candidates = definition.geometry_fields
            if not candidates:
                raise ValidationError([FieldError(None, "table has no geometry field")])
            geometry_field = candidates[0].name
        item = definition.field(geometry_field)
        if item is None or not item.is_geometry:
            raise ValidationError([FieldError(geometry_field, "is not a geometry field")])

        page = self.list(definition, limit=self._max_page_limit)
        return to_feature_collection(page.records, geometry_field)

    def spatial_query(
        self,
        definition: TableDefinition,
        geometry_field: str,
        query_type: str,
        *,
        geometry: Any = None,
        point: Any = None,
        distance: Any = None,
    ) -> list[dict[str, Any]]:
        """Return active records whose geometry matches a PostGIS predicate."""

        errors: list[FieldError] = []
        item = definition.field(geometry_field)
        if item is None or not item.is_geometry:
            errors.append(FieldError(geometry_field, "is not a geometry field"))
        if query_type not in SPATIAL_QUERY_TYPES:
            errors.append(
                FieldError("queryType", f"must be one of {', '.join(SPATIAL_QUERY_TYPES)}")
            )
        for name, value in (("geometry", geometry), ("point", point)):
            if value is None:
                continue
            try:
                if name == "point":
                    point = validate_geometry(value, "POINT")
                else:
                    geometry = validate_any_geometry(value)
            except ValueError as exc:
                errors.append(FieldError(name, str(exc)))
        if distance is not None:
            if isinstance(distance, bool) or not isinstance(distance, (int, float)) or distance < 0:
                errors.append(FieldError("distance", "must be a non-negative number of meters"))
        if errors:
            raise ValidationError(errors)

        base, _ = self._tables(definition)
        try:
            predicate = spatial_predicate(
                base.c[geometry_field],
                query_type,
                geometry=geometry,
                point=point,
                distance=distance,
                srid=item.srid or DEFAULT_SRID,
            )
        except ValueError as exc:
            raise ValidationError([FieldError(None, str(exc))]) from exc
        if self.dialect != "postgresql":
            raise ValidationError([FieldError(None, "spatial queries require PostGIS")])

        rows = self._session.execute(
            select(base)
            .where(base.c.deleted_at.is_(None), predicate)
            .order_by(base.c.created_at.desc(), base.c.id.asc())
            .limit(self._max_page_limit)
        ).mappings()
        return [serialize_row(dict(row)) for row in rows]


__all__ = ["CustomDataService", "RecordPage", "serialize_row"]
