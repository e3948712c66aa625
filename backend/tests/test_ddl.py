"""Tests for translating table definitions into DDL."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from backend.app.errors import SchemaDriftError, SchemaError
from backend.app.tables import ddl
from backend.app.tables.definitions import FieldDefinition, TableDefinition, validate_definition


def _sites(**overrides) -> TableDefinition:
    location = FieldDefinition(
        name="location", data_type="GEOMETRY_POINT", is_required=overrides.pop("required", True)
    )
    definition = TableDefinition(
        name=overrides.pop("name", "sites"),
        display_name="Sites",
        fields=(
            FieldDefinition(name="label", data_type="TEXT", is_required=True),
            FieldDefinition(name="reading_at", data_type="TIMESTAMPTZ", is_timeseries=True),
            location,
        ),
    )
    return validate_definition(definition)


def _inspector(tables: dict[str, list[dict]], indexes: dict[str, list[str]] | None = None):
    indexes = indexes or {}
    return SimpleNamespace(
        get_table_names=lambda: list(tables),
        get_columns=lambda table: tables[table],
        get_indexes=lambda table: [{"name": name} for name in indexes.get(table, [])],
        get_foreign_keys=lambda table: [],
    )


def test_postgres_plan_registers_geometry_before_constraints_and_indexes():
    plan = ddl.translate(_sites(), "postgresql")

    assert [(op.kind, op.table) for op in plan] == [
        (ddl.CREATE_TABLE, "custom_sites"),
        (ddl.ADD_GEOMETRY_COLUMN, "custom_sites"),
        (ddl.SET_NOT_NULL, "custom_sites"),
        (ddl.CREATE_INDEX, "custom_sites"),
        (ddl.CREATE_INDEX, "custom_sites"),
        (ddl.CREATE_TABLE, "custom_sites_history"),
        (ddl.ADD_GEOMETRY_COLUMN, "custom_sites_history"),
        (ddl.CREATE_INDEX, "custom_sites_history"),
    ]

    create_base, add_geometry, not_null, timeseries, gist = plan.operations[:5]
    assert "location" not in create_base.sql
    assert add_geometry.sql == (
        "SELECT AddGeometryColumn('public', 'custom_sites', 'location', 4326, 'POINT', 2)"
    )
    assert not_null.sql == 'ALTER TABLE "custom_sites" ALTER COLUMN "location" SET NOT NULL'
    assert timeseries.index == "idx_custom_sites_reading_at"
    assert gist.index == "idx_custom_sites_location_gist"
    assert "USING GIST" in gist.sql


def test_optional_geometry_has_no_not_null_step():
    plan = ddl.translate(_sites(required=False), "postgresql")

    assert ddl.SET_NOT_NULL not in [op.kind for op in plan]


def test_sqlite_plan_stores_geometry_inline():
    plan = ddl.translate(_sites(), "sqlite")
    kinds = [op.kind for op in plan]

    assert ddl.ADD_GEOMETRY_COLUMN not in kinds
    assert kinds[0] == ddl.CREATE_TABLE
    assert "location" in plan.operations[0].sql
    assert "GIST" not in " ".join(plan.statements)


def test_invalid_identifiers_never_reach_sql():
    definition = TableDefinition(
        name="sites; DROP TABLE users",
        display_name="Sites",
        fields=(FieldDefinition(name="label", data_type="TEXT"),),
    )

    with pytest.raises(SchemaError):
        ddl.translate(definition, "postgresql")


def test_add_geometry_field_follows_the_same_order():
    current = _sites()
    item = FieldDefinition(
        name="area", data_type="GEOMETRY_POLYGON", is_required=True, srid=4326
    )

    plan = ddl.translate_add_field(current, item, "postgresql")

    assert [op.kind for op in plan] == [
        ddl.ADD_GEOMETRY_COLUMN,
        ddl.SET_NOT_NULL,
        ddl.CREATE_INDEX,
        ddl.ADD_GEOMETRY_COLUMN,
    ]
    assert plan.operations[-1].table == "custom_sites_history"


def test_pending_operations_skips_existing_structures():
    plan = ddl.translate(_sites(), "postgresql")
    base_columns = [
        {"name": name, "nullable": True} for name in plan.operations[0].columns
    ] + [{"name": "location", "nullable": False}]
    history_columns = [{"name": name} for name in plan.operations[5].columns] + [
        {"name": "location"}
    ]
    inspector = _inspector(
        {"custom_sites": base_columns, "custom_sites_history": history_columns},
        {"custom_sites": ["idx_custom_sites_reading_at"]},
    )

    pending = ddl.pending_operations(plan, inspector)

    assert [op.describe() for op in pending] == [
        "create_index custom_sites.idx_custom_sites_location_gist",
        "create_index custom_sites_history.idx_custom_sites_history_record_id",
    ]


def test_pending_operations_applies_everything_on_an_empty_database():
    plan = ddl.translate(_sites(), "postgresql")

    assert ddl.pending_operations(plan, _inspector({})) == list(plan.operations)


def test_pending_operations_detects_drift():
    plan = ddl.translate(_sites(), "postgresql")
    inspector = _inspector({"custom_sites": [{"name": "id"}]})

    with pytest.raises(SchemaDriftError):
        ddl.pending_operations(plan, inspector)


def test_drop_refuses_tables_outside_the_custom_namespace():
    with pytest.raises(SchemaError):
        ddl.drop_table_statement("custom_tables_registry_backup; --")

    with pytest.raises(SchemaError):
        ddl.drop_table_statement("users")

    assert ddl.drop_statements(_sites(), "postgresql") == [
        'DROP TABLE IF EXISTS "custom_sites_history" CASCADE',
        'DROP TABLE IF EXISTS "custom_sites" CASCADE',
    ]
