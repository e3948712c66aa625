"""Seed the database with demo tables and an example workflow."""
from __future__ import annotations

import pathlib
import sys
from typing import Any

ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.app import create_app
from backend.app.extensions import db
from backend.app.models.workflow import Workflow
from backend.app.services import get_table_registry
from backend.app.tables.definitions import TableDefinition

SEED_ACTOR = "system"
EXAMPLE_WORKFLOW_NAME = "High Value Inventory Processor"

INVENTORY_TABLE: dict[str, Any] = {
    "name": "inventory",
    "displayName": "Inventory",
    "description": "Product inventory tracking",
    "icon": "Box",
    "fields": [
        {"name": "item_name", "displayName": "Item Name", "dataType": "TEXT", "isRequired": True},
        {"name": "category", "displayName": "Category", "dataType": "TEXT"},
        {"name": "price", "displayName": "Price", "dataType": "INTEGER"},
        {"name": "stock", "displayName": "Stock Level", "dataType": "INTEGER"},
        {
            "name": "status",
            "displayName": "Status",
            "dataType": "TEXT",
            "defaultValue": "instock",
        },
    ],
}

NOTIFICATIONS_TABLE: dict[str, Any] = {
    "name": "notifications",
    "displayName": "System Notifications",
    "description": "Automated system alerts",
    "icon": "Bell",
    "fields": [
        {"name": "message", "displayName": "Message", "dataType": "TEXT", "isRequired": True},
        {"name": "priority", "displayName": "Priority", "dataType": "TEXT", "defaultValue": "INFO"},
        {
            "name": "is_read",
            "displayName": "Read Status",
            "dataType": "BOOLEAN",
            "defaultValue": "false",
        },
    ],
}


def _notification_action(node_id: str, label: str, message: str, priority: str) -> dict[str, Any]:
    return {
        "id": node_id,
        "type": "action",
        "data": {
            "label": label,
            "actionType": "CREATE",
            "tableName": "notifications",
            "fields": [
                {"key": "message", "value": message},
                {"key": "priority", "value": priority},
            ],
        },
    }


def example_graph() -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    """Return the nodes and edges of the high value inventory workflow."""

    nodes = [
        {
            "id": "trigger-1",
            "type": "trigger",
            "data": {"label": "New Inventory Item", "tableName": "inventory"},
        },
        {
            "id": "condition-1",
            "type": "condition",
            "data": {"label": "Price > 1000", "field": "price", "operator": "gt", "value": "1000"},
        },
        _notification_action(
            "action-true",
            "Create High Priority Alert",
            "High Value Item Added: {{trigger.item_name}} (Category: {{trigger.category}})",
            "HIGH",
        ),
        _notification_action(
            "action-false",
            "Log Standard Info",
            "Standard Item Added: {{trigger.item_name}}",
            "LOW",
        ),
    ]
    edges = [
        {"id": "e1-2", "source": "trigger-1", "target": "condition-1"},
        {"id": "e2-true", "source": "condition-1", "sourceHandle": "true", "target": "action-true"},
        {
            "id": "e2-false",
            "source": "condition-1",
            "sourceHandle": "false",
            "target": "action-false",
        },
    ]
    return nodes, edges


def _ensure_table(payload: dict[str, Any]):
    registry = get_table_registry()
    existing = registry.get_by_name(payload["name"])
    if existing is not None:
        registry.materialize(existing.id)
        return existing, False
    return registry.create(TableDefinition.from_payload(payload), actor=SEED_ACTOR), True


def _ensure_example_workflow(table_id: int) -> tuple[bool, bool]:
    nodes, edges = example_graph()
    workflow = Workflow.query.filter_by(name=EXAMPLE_WORKFLOW_NAME).first()
    created = False
    updated = False

    if workflow is None:
        workflow = Workflow(
            name=EXAMPLE_WORKFLOW_NAME,
            description="Automatically flags items over $1000",
            trigger_type="RECORD_CREATED",
            table_id=table_id,
            is_active=True,
            nodes=nodes,
            edges=edges,
            created_by=SEED_ACTOR,
        )
        db.session.add(workflow)
        created = True
    elif workflow.nodes != nodes or workflow.edges != edges or workflow.table_id != table_id:
        workflow.nodes = nodes
        workflow.edges = edges
        workflow.table_id = table_id
        updated = True
    return created, updated


def main() -> None:
    app = create_app()
    with app.app_context():
        inventory, inventory_created = _ensure_table(INVENTORY_TABLE)
        _, notifications_created = _ensure_table(NOTIFICATIONS_TABLE)
        created_workflow, updated_workflow = _ensure_example_workflow(inventory.id)
        db.session.commit()

        print(
            "Seed completed",
            f"tables created={int(inventory_created) + int(notifications_created)}",
            f"workflows created={int(created_workflow)}",
            f"workflows updated={int(updated_workflow)}",
        )


if __name__ == "__main__":
    main()
