"""Request scoped construction of the table, record and workflow services."""
from __future__ import annotations

from flask import Flask, current_app

from .extensions import db
from .tables.records import CustomDataService
from .tables.service import TableRegistry
from .utils.run_log import persist_run_log
from .workflow.dispatch import app_context_wrapper, get_runtime
from .workflow.runner import WorkflowEvaluator
from .workflow.store import SqlWorkflowStore


def get_table_registry() -> TableRegistry:
    config = current_app.config
    return TableRegistry(
        db.session,
        schema=config.get("SPATIAL_SCHEMA", "public"),
        default_srid=int(config.get("DEFAULT_SRID", 4326)),
        run_log=persist_run_log,
    )


def get_data_service() -> CustomDataService:
    config = current_app.config
    runtime = get_runtime(current_app)
    return CustomDataService(
        db.session,
        dispatcher=runtime.dispatcher if runtime is not None else None,
        scale_policy=config.get("DECIMAL_SCALE_POLICY", "reject"),
        page_limit=int(config.get("RECORD_PAGE_LIMIT", 50)),
        max_page_limit=int(config.get("RECORD_PAGE_MAX_LIMIT", 500)),
        run_log=persist_run_log,
    )


def build_evaluator(app: Flask) -> WorkflowEvaluator:
    """Build an evaluator bound to the session of the active app context."""

    runtime = get_runtime(app)
    return WorkflowEvaluator(
        SqlWorkflowStore(db.session, run_log=persist_run_log),
        get_data_service(),
        broadcaster=runtime.broadcaster if runtime is not None else None,
        action_timeout=float(app.config.get("WORKFLOW_ACTION_TIMEOUT", 5.0)),
        max_chain_depth=int(app.config.get("WORKFLOW_MAX_CHAIN_DEPTH", 3)),
        context_wrapper=app_context_wrapper(app),
    )
