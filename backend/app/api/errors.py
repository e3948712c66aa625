"""JSON error responses for service exceptions."""

from __future__ import annotations

from http import HTTPStatus

from flask import Flask, jsonify, request
from werkzeug.exceptions import NotFound

from ..errors import (
    ConcurrencyError,
    NotFoundError,
    SchemaError,
    ValidationError,
    WorkflowGraphError,
)
from ..extensions import db


def register_error_handlers(app: Flask) -> None:
    """Map the service exception hierarchy onto HTTP responses."""

    @app.errorhandler(SchemaError)
    def _schema_error(exc: SchemaError):
        db.session.rollback()
        return jsonify({"errors": exc.errors}), HTTPStatus.BAD_REQUEST

    @app.errorhandler(WorkflowGraphError)
    def _graph_error(exc: WorkflowGraphError):
        return jsonify({"errors": exc.errors}), HTTPStatus.BAD_REQUEST

    @app.errorhandler(ValidationError)
    def _validation_error(exc: ValidationError):
        return (
            jsonify({"errors": [error.to_dict() for error in exc.errors]}),
            HTTPStatus.UNPROCESSABLE_ENTITY,
        )

    @app.errorhandler(ConcurrencyError)
    def _concurrency_error(exc: ConcurrencyError):
        return jsonify({"error": str(exc)}), HTTPStatus.CONFLICT

    @app.errorhandler(NotFoundError)
    def _not_found_error(exc: NotFoundError):
        return jsonify({"error": str(exc)}), HTTPStatus.NOT_FOUND

    @app.errorhandler(NotFound)
    def _route_not_found(exc: NotFound):
        if request.path.startswith("/api/"):
            return jsonify({"error": "not found"}), HTTPStatus.NOT_FOUND
        return exc
