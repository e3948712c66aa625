"""Tests for schema changes that fail part way through."""

from __future__ import annotations

from dataclasses import replace

import pytest
from sqlalchemy import inspect

from backend.app.errors import SchemaError
from backend.app.extensions import db
from backend.app.models.custom_table import CustomTable
from backend.app.services import get_table_registry
from backend.app.tables import service as table_service
from backend.app.tables.ddl import CREATE_TABLE
from backend.app.tables.definitions import TableDefinition


@pytest.fixture()
def failing_history_ddl(monkeypatch):
    pending = table_service.pending_operations

    def _pending(plan, inspector):
        return [
            replace(operation, sql=f'CREATE TABLE "{operation.table}" (')
            if operation.kind == CREATE_TABLE and operation.table.endswith("_history")
            else operation
            for operation in pending(plan, inspector)
        ]

    monkeypatch.setattr(table_service, "pending_operations", _pending)


def test_failed_creation_leaves_no_tables_or_registration(
    app, inventory_payload, failing_history_ddl
):
    definition = TableDefinition.from_payload(inventory_payload("fragile"))

    with pytest.raises(SchemaError, match="failed to materialise table 'fragile'"):
        get_table_registry().create(definition, actor="tester")

    names = inspect(db.session.connection()).get_table_names()
    assert not [name for name in names if name.startswith("custom_fragile")]
    assert db.session.query(CustomTable).filter_by(name="fragile").count() == 0


def test_table_can_be_created_after_a_failed_attempt(app, inventory_payload, monkeypatch):
    definition = TableDefinition.from_payload(inventory_payload("retried"))
    pending = table_service.pending_operations

    def _fail_on_history(plan, inspector):
        operations = pending(plan, inspector)
        return [
            replace(operation, sql="CREATE TABLE (")
            if operation.table.endswith("_history")
            else operation
            for operation in operations
        ]

    monkeypatch.setattr(table_service, "pending_operations", _fail_on_history)
    with pytest.raises(SchemaError):
        get_table_registry().create(definition)
    monkeypatch.setattr(table_service, "pending_operations", pending)

    table = get_table_registry().create(definition)

    assert table.name == "retried"
    names = inspect(db.session.connection()).get_table_names()
    assert {"custom_retried", "custom_retried_history"} <= set(names)
