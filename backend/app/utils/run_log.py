"""Helpers for persisting run log entries."""

from __future__ import annotations

from flask import Flask, current_app

from ..extensions import db
from ..models.logs import RunLog


def persist_run_log(source: str, message: str) -> None:
    """Persist a run log entry and suppress database errors."""

    if not message:
        return

    try:
        entry = RunLog(source=source, message=message)
        db.session.add(entry)
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to persist run log entry")


def persist_run_log_in_app(app: Flask, source: str, message: str) -> None:
    """Persist a run log entry from outside of an application context."""

    with app.app_context():
        persist_run_log(source, message)
