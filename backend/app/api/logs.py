"""API endpoints exposing schema and workflow run log entries."""

from __future__ import annotations

import json
from http import HTTPStatus

from flask import Blueprint, Response, jsonify, request

from ..models.logs import RUN_LOG_SOURCES, RunLog

bp = Blueprint("logs", __name__)


def _serialize_entry(entry: RunLog) -> dict[str, object]:
    return {
        "id": entry.id,
        "source": entry.source,
        "message": entry.message,
        "createdAt": entry.created_at.isoformat() + "Z",
    }


def _query_entries(max_limit: int) -> list[RunLog] | None:
    """Return the newest entries for the request's filters, or None for a bad source."""

    source = request.args.get("source")
    limit = request.args.get("limit", type=int) or 200
    limit = max(1, min(limit, max_limit))

    query = RunLog.query
    if source:
        if source not in RUN_LOG_SOURCES:
            return None
        query = query.filter_by(source=source)
    return query.order_by(RunLog.created_at.desc(), RunLog.id.desc()).limit(limit).all()


def _invalid_source() -> tuple[object, int]:
    return (
        jsonify({"error": f"invalid source, expected one of {', '.join(RUN_LOG_SOURCES)}"}),
        HTTPStatus.BAD_REQUEST,
    )


@bp.get("/logs")
def get_logs() -> tuple[object, int]:
    entries = _query_entries(200)
    if entries is None:
        return _invalid_source()
    return jsonify([_serialize_entry(entry) for entry in entries]), HTTPStatus.OK


@bp.get("/logs/download")
def download_logs() -> Response | tuple[object, int]:
    entries = _query_entries(1000)
    if entries is None:
        return _invalid_source()

    payload = "\n".join(json.dumps(_serialize_entry(entry)) for entry in reversed(entries))
    response = Response(payload, mimetype="application/x-ndjson")
    response.headers["Content-Disposition"] = "attachment; filename=run-logs.ndjson"
    return response
