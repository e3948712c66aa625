"""Tests for the record API of custom tables."""

from __future__ import annotations

import pytest


@pytest.fixture()
def inventory(create_table, inventory_payload):
    created = {}

    def factory(name: str) -> str:
        if name not in created:
            created[name] = create_table(inventory_payload(name))
        return name

    return factory


def test_record_lifecycle(client, inventory):
    table = inventory("stock_items")
    headers = {"X-Actor": "alice"}

    created = client.post(
        f"/api/custom-data/{table}",
        json={"item_name": "Widget", "category": "Tools", "price": 1500},
        headers=headers,
    )
    assert created.status_code == 201
    record = created.get_json()
    assert record["status"] == "instock"
    assert record["created_by"] == "alice"

    fetched = client.get(f"/api/custom-data/{table}/{record['id']}")
    assert fetched.status_code == 200
    assert fetched.get_json()["item_name"] == "Widget"

    updated = client.put(
        f"/api/custom-data/{table}/{record['id']}", json={"stock": 12}, headers={"X-Actor": "bob"}
    )
    assert updated.status_code == 200
    assert updated.get_json()["stock"] == 12

    deleted = client.delete(f"/api/custom-data/{table}/{record['id']}")
    assert deleted.status_code == 204
    assert client.get(f"/api/custom-data/{table}/{record['id']}").status_code == 404
    assert (
        client.get(f"/api/custom-data/{table}/{record['id']}?includeDeleted=true").status_code
        == 200
    )

    history = client.get(f"/api/custom-data/{table}/{record['id']}/history").get_json()
    assert [entry["operation"] for entry in history] == ["DELETE", "UPDATE", "INSERT"]


def test_validation_errors_are_reported_per_field(client, inventory):
    table = inventory("checked_items")

    response = client.post(f"/api/custom-data/{table}", json={"price": "lots", "colour": "red"})

    assert response.status_code == 422
    errors = {error["field"]: error["reason"] for error in response.get_json()["errors"]}
    assert errors["item_name"] == "is required"
    assert errors["colour"] == "unknown field"
    assert "price" in errors


def test_list_with_filters_and_paging(client, inventory):
    table = inventory("listed_items")
    for name, price in (("Anvil", 300), ("Bench", 1200), ("Chisel", 45)):
        client.post(f"/api/custom-data/{table}", json={"item_name": name, "price": price})

    response = client.get(f"/api/custom-data/{table}?orderBy=price&orderDir=asc&limit=2")
    body = response.get_json()
    assert response.status_code == 200
    assert body["total"] == 3
    assert body["limit"] == 2
    assert body["offset"] == 0
    assert [record["item_name"] for record in body["data"]] == ["Chisel", "Anvil"]

    filtered = client.get(f"/api/custom-data/{table}?item_name=Bench").get_json()
    assert [record["price"] for record in filtered["data"]] == [1200]

    invalid = client.get(f"/api/custom-data/{table}?colour=red")
    assert invalid.status_code == 422


def test_stats_and_hard_delete(client, inventory):
    table = inventory("counted_items")
    first = client.post(f"/api/custom-data/{table}", json={"item_name": "One"}).get_json()
    client.post(f"/api/custom-data/{table}", json={"item_name": "Two"})

    response = client.delete(f"/api/custom-data/{table}/{first['id']}?hard=true")
    assert response.status_code == 204

    stats = client.get(f"/api/custom-data/{table}/stats").get_json()
    assert (stats["total"], stats["active"], stats["deleted"]) == (1, 1, 0)


def test_unknown_tables_and_records_return_404(client, inventory):
    table = inventory("lookup_items")

    assert client.get("/api/custom-data/nowhere").status_code == 404
    missing = client.put(
        f"/api/custom-data/{table}/00000000-0000-0000-0000-000000000000", json={"stock": 1}
    )
    assert missing.status_code == 404
    assert client.delete(f"/api/custom-data/{table}/not-a-uuid").status_code == 404


def test_geojson_endpoint(client, create_table):
    create_table(
        {
            "name": "stations",
            "displayName": "Stations",
            "fields": [
                {"name": "label", "dataType": "TEXT"},
                {"name": "position", "dataType": "POINT"},
            ],
        }
    )
    client.post(
        "/api/custom-data/stations",
        json={"label": "Hub", "position": {"type": "Point", "coordinates": [8.6, 50.1]}},
    )

    response = client.get("/api/custom-data/stations/geojson")

    assert response.status_code == 200
    body = response.get_json()
    assert body["type"] == "FeatureCollection"
    assert body["features"][0]["geometry"] == {"type": "Point", "coordinates": [8.6, 50.1]}
    assert body["features"][0]["properties"]["label"] == "Hub"

    invalid = client.post(
        "/api/custom-data/stations",
        json={"label": "Bad", "position": {"type": "Point", "coordinates": [8.6]}},
    )
    assert invalid.status_code == 422


def test_spatial_query_endpoint_validates_requests(client, create_table):
    create_table(
        {
            "name": "regions",
            "displayName": "Regions",
            "fields": [{"name": "boundary", "dataType": "POLYGON"}],
        }
    )

    missing = client.post("/api/custom-data/regions/spatial-query", json={"queryType": "within"})
    assert missing.status_code == 400
    assert missing.get_json() == {"error": "geometryField and queryType are required"}

    invalid = client.post(
        "/api/custom-data/regions/spatial-query",
        json={"geometryField": "boundary", "queryType": "distance", "distance": "far"},
    )
    assert invalid.status_code == 422
    assert invalid.get_json()["errors"] == [
        {"field": "distance", "reason": "must be a non-negative number of meters"}
    ]

    unsupported = client.post(
        "/api/custom-data/regions/spatial-query",
        json={
            "geometryColumn": "boundary",
            "queryType": "INTERSECTS",
            "geometry": {"type": "Point", "coordinates": [8.6, 50.1]},
        },
    )
    assert unsupported.status_code == 422
    assert unsupported.get_json()["errors"][0]["reason"] == "spatial queries require PostGIS"


def test_history_at_a_point_in_time(client, inventory):
    table = inventory("dated_items")
    record = client.post(f"/api/custom-data/{table}", json={"item_name": "Clock"}).get_json()
    client.put(f"/api/custom-data/{table}/{record['id']}", json={"stock": 4})
    url = f"/api/custom-data/{table}/{record['id']}/history"

    latest = client.get(url, query_string={"at": "2999-01-01T00:00:00Z"})
    assert latest.status_code == 200
    assert latest.get_json()["operation"] == "UPDATE"
    assert latest.get_json()["stock"] == 4

    before = client.get(url, query_string={"at": "2000-01-01T00:00:00+00:00"})
    assert before.status_code == 404

    invalid = client.get(url, query_string={"at": "yesterday"})
    assert invalid.status_code == 400
