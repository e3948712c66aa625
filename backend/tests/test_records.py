"""Tests for the record service backed by SQLite."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import inspect

from backend.app.errors import NotFoundError, ValidationError
from backend.app.extensions import db
from backend.app.services import get_table_registry
from backend.app.tables.definitions import TableDefinition
from backend.app.tables.records import CustomDataService
from backend.app.workflow.events import DELETE, INSERT, UPDATE, EventDispatcher


@pytest.fixture()
def events():
    return []


@pytest.fixture()
def service(app, events):
    dispatcher = EventDispatcher()
    dispatcher.subscribe(events.append)
    return CustomDataService(db.session, dispatcher=dispatcher, page_limit=2, max_page_limit=3)


def _register(payload):
    table = get_table_registry().create(TableDefinition.from_payload(payload), actor="tester")
    return TableDefinition.from_model(table)


def test_registered_table_is_materialised(app, inventory_payload):
    definition = _register(inventory_payload("warehouse"))

    names = inspect(db.session.connection()).get_table_names()
    assert "custom_warehouse" in names
    assert "custom_warehouse_history" in names
    assert definition.field("status").default_value == "instock"


def test_writes_are_mirrored_into_history(service, events, inventory_payload):
    definition = _register(inventory_payload("gadgets"))

    created = service.create(definition, {"item_name": "Widget", "price": "1500"}, "alice")
    assert created["price"] == 1500
    assert created["status"] == "instock"
    assert created["created_by"] == "alice"

    updated = service.update(definition, created["id"], {"stock": 3}, "bob")
    assert updated["stock"] == 3
    assert updated["updated_by"] == "bob"

    service.soft_delete(definition, created["id"], "carol")
    assert service.get_by_id(definition, created["id"]) is None
    assert service.get_by_id(definition, created["id"], include_deleted=True)["deleted_at"]

    history = service.history(definition, created["id"])
    assert [entry["operation"] for entry in history] == [DELETE, UPDATE, INSERT]
    assert [entry["changed_by"] for entry in history] == ["carol", "bob", "alice"]
    assert history[1]["stock"] == 3

    assert [event.operation for event in events] == [INSERT, UPDATE, DELETE]
    assert events[0].before is None and events[0].after["item_name"] == "Widget"
    assert events[1].before["stock"] is None and events[1].after["stock"] == 3
    assert events[2].after is None and events[2].current["item_name"] == "Widget"
    assert {event.table_name for event in events} == {"gadgets"}


def test_invalid_payloads_do_not_write_anything(service, events, inventory_payload):
    definition = _register(inventory_payload("tools"))

    with pytest.raises(ValidationError) as excinfo:
        service.create(definition, {"price": "cheap"}, "alice")

    fields = {error.field for error in excinfo.value.errors}
    assert fields == {"item_name", "price"}
    assert service.stats(definition)["total"] == 0
    assert events == []


def test_missing_records_raise_not_found(service, inventory_payload):
    definition = _register(inventory_payload("spares"))

    with pytest.raises(NotFoundError):
        service.update(definition, "00000000-0000-0000-0000-000000000000", {"stock": 1})
    with pytest.raises(NotFoundError):
        service.soft_delete(definition, "not-a-uuid")
    assert service.get_by_id(definition, "not-a-uuid") is None


def test_list_filters_sorts_and_pages(service, inventory_payload):
    definition = _register(inventory_payload("catalog"))
    for name, price in (("Anvil", 300), ("Bench", 1200), ("Chisel", 45), ("Drill", 2500)):
        service.create(definition, {"item_name": name, "price": price})
    removed = service.create(definition, {"item_name": "Easel", "price": 5000})
    service.soft_delete(definition, removed["id"])

    page = service.list(definition, order_by="price", order_dir="asc")
    assert page.total == 4
    assert page.limit == 2
    assert [record["item_name"] for record in page.records] == ["Chisel", "Anvil"]

    expensive = service.list(definition, filters={"price": {"op": "gte", "value": "1200"}})
    assert expensive.total == 2

    named = service.list(definition, filters={"item_name": {"op": "contains", "value": "ill"}})
    assert [record["item_name"] for record in named.records] == ["Drill"]

    everything = service.list(definition, include_deleted=True, limit=100)
    assert everything.total == 5
    assert everything.limit == 3

    assert service.list(definition, filters={"item_name": "Bench"}).to_dict()["total"] == 1


def test_list_rejects_unknown_columns(service, inventory_payload):
    definition = _register(inventory_payload("ledger"))

    with pytest.raises(ValidationError):
        service.list(definition, filters={"colour": "red"})
    with pytest.raises(ValidationError):
        service.list(definition, order_by="colour")
    with pytest.raises(ValidationError):
        service.list(definition, order_dir="sideways")


def test_hard_delete_keeps_the_audit_trail(service, events, inventory_payload):
    definition = _register(inventory_payload("archive"))
    record = service.create(definition, {"item_name": "Crate"})
    service.soft_delete(definition, record["id"])
    events.clear()

    service.hard_delete(definition, record["id"])

    assert service.get_by_id(definition, record["id"], include_deleted=True) is None
    assert [entry["operation"] for entry in service.history(definition, record["id"])] == [
        DELETE,
        DELETE,
        INSERT,
    ]
    assert events == []


def test_stats_count_active_and_deleted(service, inventory_payload):
    definition = _register(inventory_payload("metrics"))
    first = service.create(definition, {"item_name": "One"})
    service.create(definition, {"item_name": "Two"})
    service.soft_delete(definition, first["id"])

    stats = service.stats(definition)

    assert stats["table"] == "metrics"
    assert (stats["total"], stats["active"], stats["deleted"]) == (2, 1, 1)
    assert stats["lastUpdated"] is not None


def test_unique_violations_become_validation_errors(service):
    definition = _register(
        {
            "name": "badges",
            "displayName": "Badges",
            "fields": [{"name": "code", "dataType": "TEXT", "isUnique": True}],
        }
    )
    service.create(definition, {"code": "A1"})

    with pytest.raises(ValidationError) as excinfo:
        service.create(definition, {"code": "A1"})

    assert excinfo.value.errors[0].reason == "record violates a unique or relation constraint"


def test_geometry_records_form_a_feature_collection(service):
    definition = _register(
        {
            "name": "depots",
            "displayName": "Depots",
            "fields": [
                {"name": "label", "dataType": "TEXT", "isRequired": True},
                {"name": "location", "dataType": "GEOMETRY_POINT"},
            ],
        }
    )
    placed = service.create(
        definition,
        {"label": "North", "location": {"type": "Point", "coordinates": [11.5, 48.1]}},
    )
    service.create(definition, {"label": "Unplaced"})

    assert placed["location"] == {"type": "Point", "coordinates": [11.5, 48.1]}
    collection = service.feature_collection(definition)
    assert [feature["id"] for feature in collection["features"]] == [placed["id"]]
    assert definition.field("location").srid == 4326

    with pytest.raises(ValidationError):
        service.feature_collection(definition, "label")


def test_history_at_returns_the_state_at_a_moment(service, inventory_payload):
    definition = _register(inventory_payload("timeline"))
    record = service.create(definition, {"item_name": "Lamp", "stock": 1}, "alice")
    between = datetime.now(UTC)
    service.update(definition, record["id"], {"stock": 9}, "bob")

    assert service.history_at(definition, record["id"], between)["stock"] == 1
    assert service.history_at(definition, record["id"], datetime.now(UTC))["stock"] == 9
    naive = datetime.now(UTC).replace(tzinfo=None)
    assert service.history_at(definition, record["id"], naive)["changed_by"] == "bob"
    assert service.history_at(definition, record["id"], between - timedelta(days=1)) is None


def test_spatial_queries_validate_their_operands(service):
    definition = _register(
        {
            "name": "yards",
            "displayName": "Yards",
            "fields": [
                {"name": "label", "dataType": "TEXT"},
                {"name": "boundary", "dataType": "POLYGON"},
            ],
        }
    )

    with pytest.raises(ValidationError) as excinfo:
        service.spatial_query(
            definition,
            "label",
            "nearest",
            geometry={"type": "Point"},
            point={"type": "Polygon", "coordinates": []},
            distance=-5,
        )

    assert {error.field for error in excinfo.value.errors} == {
        "label",
        "queryType",
        "geometry",
        "point",
        "distance",
    }

    with pytest.raises(ValidationError) as excinfo:
        service.spatial_query(definition, "boundary", "within")
    assert excinfo.value.errors[0].reason == "geometry is required for within queries"


def test_spatial_queries_require_postgis(service):
    definition = _register(
        {
            "name": "fences",
            "displayName": "Fences",
            "fields": [{"name": "area", "dataType": "POLYGON"}],
        }
    )

    with pytest.raises(ValidationError) as excinfo:
        service.spatial_query(
            definition,
            "area",
            "intersects",
            geometry={"type": "Point", "coordinates": [8.6, 50.1]},
        )

    assert excinfo.value.errors[0].reason == "spatial queries require PostGIS"
