"""REST API endpoints for custom table definitions."""

from __future__ import annotations

from http import HTTPStatus
from typing import Any

from flask import Blueprint, jsonify, request

from ..extensions import limiter
from ..models.custom_table import CustomTable
from ..services import get_table_registry
from ..tables.data_types import data_type_catalog
from ..tables.definitions import FieldDefinition, TableDefinition

bp = Blueprint("custom_tables", __name__)


def _serialize_table(table: CustomTable) -> dict[str, Any]:
    definition = TableDefinition.from_model(table)
    return {
        "id": table.id,
        "name": table.name,
        "displayName": table.display_name,
        "description": table.description,
        "icon": table.icon,
        "isActive": table.is_active,
        "physicalName": definition.physical_name,
        "createdBy": table.created_by,
        "createdAt": table.created_at.isoformat() + "Z" if table.created_at else None,
        "updatedAt": table.updated_at.isoformat() + "Z" if table.updated_at else None,
        "fields": [item.to_dict() for item in definition.fields],
    }


def _actor() -> str | None:
    return request.headers.get("X-Actor") or None


def _json_object() -> dict[str, Any] | None:
    payload = request.get_json(silent=True, force=True)
    return payload if isinstance(payload, dict) else None


@bp.get("/custom-tables/data-types")
def list_data_types() -> tuple[object, int]:
    return jsonify(data_type_catalog()), HTTPStatus.OK


@bp.get("/custom-tables/diagnostics/geometry")
def geometry_diagnostics() -> tuple[object, int]:
    findings = get_table_registry().suspicious_types()
    return jsonify([finding.to_dict() for finding in findings]), HTTPStatus.OK


@bp.get("/custom-tables")
def list_tables() -> tuple[object, int]:
    tables = get_table_registry().list()
    return jsonify([_serialize_table(table) for table in tables]), HTTPStatus.OK


@bp.post("/custom-tables")
@limiter.limit("10 per minute")
def create_table() -> tuple[object, int]:
    payload = _json_object()
    if payload is None:
        return jsonify({"error": "request body must be a JSON object"}), HTTPStatus.BAD_REQUEST

    definition = TableDefinition.from_payload(payload)
    table = get_table_registry().create(definition, actor=_actor())
    return jsonify(_serialize_table(table)), HTTPStatus.CREATED


@bp.get("/custom-tables/<name>")
def get_table(name: str) -> tuple[object, int]:
    return jsonify(_serialize_table(get_table_registry().get(name))), HTTPStatus.OK


@bp.delete("/custom-tables/<name>")
def delete_table(name: str) -> tuple[object, int]:
    get_table_registry().delete(name)
    return "", HTTPStatus.NO_CONTENT


@bp.post("/custom-tables/<name>/fields")
def add_field(name: str) -> tuple[object, int]:
    payload = _json_object()
    if payload is None:
        return jsonify({"error": "request body must be a JSON object"}), HTTPStatus.BAD_REQUEST

    table = get_table_registry().add_field(name, FieldDefinition.from_payload(payload))
    return jsonify(_serialize_table(table)), HTTPStatus.CREATED


@bp.post("/custom-tables/<name>/materialize")
def materialize_table(name: str) -> tuple[object, int]:
    applied = get_table_registry().materialize(name)
    return (
        jsonify({"table": name, "applied": [operation.describe() for operation in applied]}),
        HTTPStatus.OK,
    )
