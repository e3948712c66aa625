"""REST API endpoints for storing, running and auditing workflows."""

from __future__ import annotations

import json
from http import HTTPStatus
from typing import Any

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..extensions import db, limiter
from ..models.custom_table import CustomTable
from ..models.workflow import Workflow, WorkflowExecution
from ..services import build_evaluator
from ..workflow.events import MANUAL, RecordChangeEvent
from ..workflow.graph import MANUAL_TRIGGER, TRIGGER_TYPES, WorkflowGraph
from ..workflow.runner import WorkflowSnapshot

bp = Blueprint("workflows", __name__)


def _timestamp(value) -> str | None:
    return value.isoformat() + "Z" if value is not None else None


def _serialize_workflow(workflow: Workflow) -> dict[str, Any]:
    """Return a JSON serialisable representation of a workflow."""

    return {
        "id": workflow.id,
        "name": workflow.name,
        "description": workflow.description,
        "triggerType": workflow.trigger_type,
        "tableId": workflow.table_id,
        "tableName": workflow.table.name if workflow.table is not None else None,
        "isActive": workflow.is_active,
        "nodes": workflow.nodes or [],
        "edges": workflow.edges or [],
        "createdBy": workflow.created_by,
        "createdAt": _timestamp(workflow.created_at),
        "updatedAt": _timestamp(workflow.updated_at),
    }


def _serialize_execution(execution: WorkflowExecution) -> dict[str, Any]:
    return {
        "id": execution.id,
        "workflowId": execution.workflow_id,
        "tableId": execution.table_id,
        "recordId": execution.record_id,
        "eventId": execution.event_id,
        "operation": execution.operation,
        "status": execution.status,
        "path": execution.path or [],
        "nodeResults": execution.node_results or [],
        "error": execution.error,
        "startedAt": _timestamp(execution.started_at),
        "completedAt": _timestamp(execution.completed_at),
    }


def _is_name_unique(name: str, workflow_id: int | None = None) -> bool:
    """Check whether the workflow name is unique."""

    query = Workflow.query.filter(func.lower(Workflow.name) == name.lower())
    if workflow_id is not None:
        query = query.filter(Workflow.id != workflow_id)
    return not db.session.query(query.exists()).scalar()


def _name_conflict() -> tuple[object, int]:
    return jsonify({"error": "workflow with this name already exists"}), HTTPStatus.CONFLICT


def _commit_workflow() -> bool:
    """Commit pending workflow changes, returning False on a name collision."""

    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return False
    return True


def _validate_graph(nodes: Any, edges: Any) -> list[str]:
    """Check the graph size and structure, returning errors if present."""

    try:
        graph_text = json.dumps({"nodes": nodes, "edges": edges})
    except (TypeError, ValueError):
        return ["nodes and edges must be JSON serialisable"]

    if len(graph_text.encode("utf-8")) > int(current_app.config.get("MAX_GRAPH_BYTES", 500_000)):
        return ["workflow graph exceeds the maximum size"]

    WorkflowGraph.build(nodes, edges)
    return []


def _validate_binding(trigger_type: Any, table_id: Any) -> list[str]:
    errors: list[str] = []
    if trigger_type not in TRIGGER_TYPES:
        errors.append(f"triggerType must be one of {', '.join(TRIGGER_TYPES)}")
    if table_id is None:
        if trigger_type != MANUAL_TRIGGER:
            errors.append("tableId is required for record triggers")
    elif not isinstance(table_id, int) or isinstance(table_id, bool):
        errors.append("tableId must be an integer")
    elif db.session.get(CustomTable, table_id) is None:
        errors.append(f"table {table_id} does not exist")
    return errors


@bp.post("/workflows")
def create_workflow() -> tuple[object, int]:
    payload = request.get_json(silent=True, force=True) or {}
    name = payload.get("name")
    if name is not None and not isinstance(name, str):
        return jsonify({"error": "name must be a string"}), HTTPStatus.BAD_REQUEST
    name = (name or "").strip()

    if not name:
        return jsonify({"error": "name is required"}), HTTPStatus.BAD_REQUEST

    if not _is_name_unique(name):
        return _name_conflict()

    trigger_type = payload.get("triggerType") or "RECORD_CREATED"
    table_id = payload.get("tableId")
    nodes = payload.get("nodes") or []
    edges = payload.get("edges") or []

    errors = _validate_binding(trigger_type, table_id)
    if errors:
        return jsonify({"errors": errors}), HTTPStatus.BAD_REQUEST
    errors = _validate_graph(nodes, edges)
    if errors:
        return jsonify({"errors": errors}), HTTPStatus.BAD_REQUEST

    workflow = Workflow(
        name=name,
        description=payload.get("description"),
        trigger_type=trigger_type,
        table_id=table_id,
        is_active=bool(payload.get("isActive", False)),
        nodes=nodes,
        edges=edges,
        created_by=payload.get("createdBy") or request.headers.get("X-Actor"),
    )
    db.session.add(workflow)
    if not _commit_workflow():
        return _name_conflict()

    return jsonify(_serialize_workflow(workflow)), HTTPStatus.CREATED


@bp.get("/workflows")
def list_workflows() -> tuple[object, int]:
    query = Workflow.query
    table_id = request.args.get("tableId", type=int)
    if table_id is not None:
        query = query.filter(Workflow.table_id == table_id)
    trigger_type = request.args.get("triggerType")
    if trigger_type:
        query = query.filter(Workflow.trigger_type == trigger_type)
    workflows = query.order_by(Workflow.created_at.desc(), Workflow.id.desc()).all()
    return jsonify([_serialize_workflow(workflow) for workflow in workflows]), HTTPStatus.OK


@bp.get("/workflows/<int:workflow_id>")
def get_workflow(workflow_id: int) -> tuple[object, int]:
    workflow = Workflow.query.get_or_404(workflow_id)
    return jsonify(_serialize_workflow(workflow)), HTTPStatus.OK


@bp.put("/workflows/<int:workflow_id>")
def update_workflow(workflow_id: int) -> tuple[object, int]:
    workflow = Workflow.query.get_or_404(workflow_id)
    payload = request.get_json(silent=True, force=True) or {}

    name = payload.get("name")
    if name is not None:
        if not isinstance(name, str):
            return jsonify({"error": "name must be a string"}), HTTPStatus.BAD_REQUEST
        name = name.strip()
        if not name:
            return jsonify({"error": "name must not be empty"}), HTTPStatus.BAD_REQUEST
        if not _is_name_unique(name, workflow_id):
            return _name_conflict()

    trigger_type = payload.get("triggerType", workflow.trigger_type)
    table_id = payload.get("tableId", workflow.table_id)
    nodes = payload.get("nodes", workflow.nodes) or []
    edges = payload.get("edges", workflow.edges) or []

    errors = _validate_binding(trigger_type, table_id)
    if errors:
        return jsonify({"errors": errors}), HTTPStatus.BAD_REQUEST
    errors = _validate_graph(nodes, edges)
    if errors:
        return jsonify({"errors": errors}), HTTPStatus.BAD_REQUEST

    if name is not None:
        workflow.name = name
    if "description" in payload:
        workflow.description = payload.get("description")
    if "isActive" in payload:
        workflow.is_active = bool(payload.get("isActive"))
    workflow.trigger_type = trigger_type
    workflow.table_id = table_id
    workflow.nodes = nodes
    workflow.edges = edges
    if not _commit_workflow():
        return _name_conflict()

    return jsonify(_serialize_workflow(workflow)), HTTPStatus.OK


@bp.delete("/workflows/<int:workflow_id>")
def delete_workflow(workflow_id: int) -> tuple[object, int]:
    workflow = Workflow.query.get_or_404(workflow_id)
    db.session.delete(workflow)
    db.session.commit()
    return "", HTTPStatus.NO_CONTENT


@bp.post("/workflows/<int:workflow_id>/execute")
@limiter.limit("10 per minute")
def execute_workflow(workflow_id: int) -> tuple[object, int]:
    workflow = Workflow.query.get_or_404(workflow_id)
    payload = request.get_json(silent=True, force=True) or {}
    record = payload.get("record") or {}
    if not isinstance(record, dict):
        return jsonify({"error": "record must be an object"}), HTTPStatus.BAD_REQUEST

    snapshot = WorkflowSnapshot.from_model(workflow)
    event = RecordChangeEvent(
        table_id=workflow.table_id,
        table_name=workflow.table.name if workflow.table is not None else "",
        operation=MANUAL,
        record_id=str(record["id"]) if record.get("id") is not None else None,
        after=record,
        actor=request.headers.get("X-Actor") or None,
    )
    result = build_evaluator(current_app).run(snapshot, event)
    return jsonify(result.to_dict()), HTTPStatus.OK


@bp.get("/workflows/<int:workflow_id>/executions")
def list_executions(workflow_id: int) -> tuple[object, int]:
    Workflow.query.get_or_404(workflow_id)
    limit = request.args.get("limit", type=int) or 50
    limit = max(1, min(limit, 200))
    executions = (
        WorkflowExecution.query.filter_by(workflow_id=workflow_id)
        .order_by(WorkflowExecution.started_at.desc(), WorkflowExecution.id.desc())
        .limit(limit)
        .all()
    )
    return jsonify([_serialize_execution(execution) for execution in executions]), HTTPStatus.OK
