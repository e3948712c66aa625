"""Tests for the run log API."""

from __future__ import annotations

import json

from backend.scripts.seed import example_graph


def test_schema_changes_are_logged(client, create_table, inventory_payload):
    create_table(inventory_payload("logged_items"))

    response = client.get("/api/logs", query_string={"source": "table", "limit": 5})

    assert response.status_code == 200
    messages = [entry["message"] for entry in response.get_json()]
    assert any(message.startswith("table logged_items created") for message in messages)
    assert {entry["source"] for entry in response.get_json()} == {"table"}


def test_hard_deletes_are_logged(client, create_table, inventory_payload):
    create_table(inventory_payload("purged_items"))
    record = client.post("/api/custom-data/purged_items", json={"item_name": "Gone"}).get_json()

    client.delete(f"/api/custom-data/purged_items/{record['id']}?hard=true")

    entries = client.get("/api/logs", query_string={"source": "record"}).get_json()
    assert entries[0]["message"] == (
        f"record {record['id']} of table purged_items permanently deleted"
    )


def test_workflow_runs_are_logged(client, create_table, inventory_payload, notifications_payload):
    table = create_table(inventory_payload("audited_items"))
    create_table(notifications_payload())
    nodes, edges = example_graph()
    client.post(
        "/api/workflows",
        json={
            "name": "Audited",
            "tableId": table["id"],
            "isActive": True,
            "nodes": nodes,
            "edges": edges,
        },
    )

    client.post("/api/custom-data/audited_items", json={"item_name": "Lamp", "price": 10})

    entries = client.get("/api/logs", query_string={"source": "workflow"}).get_json()
    assert entries[0]["message"] == "workflow Audited completed for INSERT on audited_items"


def test_invalid_source_is_rejected(client):
    response = client.get("/api/logs", query_string={"source": "billing"})

    assert response.status_code == 400


def test_download_returns_ndjson(client):
    response = client.get("/api/logs/download")

    assert response.status_code == 200
    assert response.mimetype == "application/x-ndjson"
    assert "attachment" in response.headers["Content-Disposition"]
    lines = [json.loads(line) for line in response.get_data(as_text=True).splitlines()]
    assert lines
    assert [line["id"] for line in lines] == sorted(line["id"] for line in lines)
