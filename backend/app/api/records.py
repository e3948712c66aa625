"""REST API endpoints for records stored in custom tables."""

from __future__ import annotations

from datetime import datetime
from http import HTTPStatus

from flask import Blueprint, jsonify, request

from ..services import get_data_service

bp = Blueprint("custom_data", __name__)

_RESERVED_ARGS = {"limit", "offset", "orderBy", "orderDir", "includeDeleted"}


def _actor() -> str | None:
    return request.headers.get("X-Actor") or None


def _flag(name: str) -> bool:
    return (request.args.get(name) or "").strip().lower() in ("1", "true", "yes")


def _record_not_found(record_id: str) -> tuple[object, int]:
    return jsonify({"error": f"record {record_id!r} not found"}), HTTPStatus.NOT_FOUND


@bp.get("/custom-data/<table>")
def list_records(table: str) -> tuple[object, int]:
    service = get_data_service()
    definition = service.table_by_name(table)
    filters = {
        key: value for key, value in request.args.items() if key not in _RESERVED_ARGS
    }
    page = service.list(
        definition,
        filters=filters,
        order_by=request.args.get("orderBy"),
        order_dir=request.args.get("orderDir", "desc"),
        limit=request.args.get("limit", type=int),
        offset=request.args.get("offset", type=int) or 0,
        include_deleted=_flag("includeDeleted"),
    )
    return jsonify(page.to_dict()), HTTPStatus.OK


@bp.post("/custom-data/<table>")
def create_record(table: str) -> tuple[object, int]:
    service = get_data_service()
    definition = service.table_by_name(table)
    payload = request.get_json(silent=True, force=True)
    record = service.create(definition, payload, _actor())
    return jsonify(record), HTTPStatus.CREATED


@bp.get("/custom-data/<table>/stats")
def table_stats(table: str) -> tuple[object, int]:
    service = get_data_service()
    return jsonify(service.stats(service.table_by_name(table))), HTTPStatus.OK


@bp.get("/custom-data/<table>/geojson")
def table_geojson(table: str) -> tuple[object, int]:
    service = get_data_service()
    definition = service.table_by_name(table)
    collection = service.feature_collection(definition, request.args.get("field") or None)
    return jsonify(collection), HTTPStatus.OK


@bp.post("/custom-data/<table>/spatial-query")
def spatial_query(table: str) -> tuple[object, int]:
    service = get_data_service()
    definition = service.table_by_name(table)
    payload = request.get_json(silent=True, force=True)
    if not isinstance(payload, dict):
        return jsonify({"error": "request body must be a JSON object"}), HTTPStatus.BAD_REQUEST

    geometry_field = payload.get("geometryField") or payload.get("geometryColumn")
    query_type = payload.get("queryType")
    if not geometry_field or not query_type:
        return (
            jsonify({"error": "geometryField and queryType are required"}),
            HTTPStatus.BAD_REQUEST,
        )

    records = service.spatial_query(
        definition,
        str(geometry_field),
        str(query_type).lower(),
        geometry=payload.get("geometry"),
        point=payload.get("point"),
        distance=payload.get("distance"),
    )
    return jsonify({"data": records}), HTTPStatus.OK


@bp.get("/custom-data/<table>/<record_id>")
def get_record(table: str, record_id: str) -> tuple[object, int]:
    service = get_data_service()
    definition = service.table_by_name(table)
    record = service.get_by_id(definition, record_id, include_deleted=_flag("includeDeleted"))
    if record is None:
        return _record_not_found(record_id)
    return jsonify(record), HTTPStatus.OK


@bp.put("/custom-data/<table>/<record_id>")
def update_record(table: str, record_id: str) -> tuple[object, int]:
    service = get_data_service()
    definition = service.table_by_name(table)
    payload = request.get_json(silent=True, force=True)
    record = service.update(definition, record_id, payload, _actor())
    return jsonify(record), HTTPStatus.OK


@bp.delete("/custom-data/<table>/<record_id>")
def delete_record(table: str, record_id: str) -> tuple[object, int]:
    service = get_data_service()
    definition = service.table_by_name(table)
    if _flag("hard"):
        service.hard_delete(definition, record_id, _actor())
    else:
        service.soft_delete(definition, record_id, _actor())
    return "", HTTPStatus.NO_CONTENT


@bp.get("/custom-data/<table>/<record_id>/history")
def record_history(table: str, record_id: str) -> tuple[object, int]:
    service = get_data_service()
    definition = service.table_by_name(table)
    at = request.args.get("at")
    if not at:
        return jsonify(service.history(definition, record_id)), HTTPStatus.OK

    try:
        moment = datetime.fromisoformat(at.replace("Z", "+00:00"))
    except ValueError:
        return jsonify({"error": "at must be an ISO 8601 timestamp"}), HTTPStatus.BAD_REQUEST
    entry = service.history_at(definition, record_id, moment)
    if entry is None:
        return _record_not_found(record_id)
    return jsonify(entry), HTTPStatus.OK
