"""Workflow and workflow execution models."""

from __future__ import annotations

from datetime import datetime

from ..extensions import db


class Workflow(db.Model):
    """An automation graph reacting to record changes of one table."""

    __tablename__ = "workflows"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), unique=True, nullable=False)
    description = db.Column(db.Text, nullable=True)
    trigger_type = db.Column(db.String(32), nullable=False)
    table_id = db.Column(
        db.Integer, db.ForeignKey("custom_tables.id", ondelete="CASCADE"), nullable=True
    )
    is_active = db.Column(db.Boolean, default=False, nullable=False)
    nodes = db.Column(db.JSON, nullable=False, default=list)
    edges = db.Column(db.JSON, nullable=False, default=list)
    created_by = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(
        db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    table = db.relationship("CustomTable", back_populates="workflows")
    executions = db.relationship(
        "WorkflowExecution",
        back_populates="workflow",
        cascade="all, delete-orphan",
        order_by="WorkflowExecution.id.desc()",
    )

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<Workflow {self.name!r}>"


class WorkflowExecution(db.Model):
    """Append-only audit record of one workflow run."""

    __tablename__ = "workflow_executions"

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False
    )
    table_id = db.Column(db.Integer, nullable=True)
    record_id = db.Column(db.String(36), nullable=True)
    event_id = db.Column(db.String(36), nullable=True)
    operation = db.Column(db.String(16), nullable=True)
    status = db.Column(
        db.Enum("completed", "partial_failure", "failed", name="workflow_execution_status"),
        nullable=False,
    )
    path = db.Column(db.JSON, nullable=False, default=list)
    node_results = db.Column(db.JSON, nullable=False, default=list)
    error = db.Column(db.Text, nullable=True)
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    workflow = db.relationship("Workflow", back_populates="executions")

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<WorkflowExecution {self.id} {self.status}>"
