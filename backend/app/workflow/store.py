"""SQLAlchemy-backed workflow snapshots and execution audit trail."""
from __future__ import annotations

import logging
from collections.abc import Callable

from sqlalchemy.orm import Session

from ..models.workflow import Workflow, WorkflowExecution
from .runner import ExecutionResult, WorkflowSnapshot

logger = logging.getLogger(__name__)


class SqlWorkflowStore:
    def __init__(
        self, session: Session, run_log: Callable[[str, str], None] | None = None
    ) -> None:
        self._session = session
        self._run_log = run_log

    def active_workflows(self, table_id: int | None, trigger_type: str) -> list[WorkflowSnapshot]:
        if table_id is None:
            return []
        workflows = (
            self._session.query(Workflow)
            .filter(
                Workflow.table_id == table_id,
                Workflow.trigger_type == trigger_type,
                Workflow.is_active.is_(True),
            )
            .order_by(Workflow.id.asc())
            .all()
        )
        return [WorkflowSnapshot.from_model(workflow) for workflow in workflows]

    def record_execution(self, result: ExecutionResult) -> WorkflowExecution | None:
        """Persist the execution and a run log summary; failures are rolled back."""

        if self._session.get(Workflow, result.workflow_id) is None:
            logger.info(
                "Workflow %s was deleted before its execution could be recorded",
                result.workflow_id,
            )
            return None

        execution = WorkflowExecution(
            workflow_id=result.workflow_id,
            table_id=result.event.table_id,
            record_id=result.event.record_id,
            event_id=result.event.event_id,
            operation=result.event.operation,
            status=result.status,
            path=list(result.path),
            node_results=[node.to_dict() for node in result.node_results],
            error=result.error,
            started_at=result.started_at.replace(tzinfo=None),
            completed_at=result.completed_at.replace(tzinfo=None),
        )
        try:
            self._session.add(execution)
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise

        failed = sum(1 for node in result.node_results if node.status == "failed")
        summary = (
            f"workflow {result.workflow_name} {result.status} for "
            f"{result.event.operation} on {result.event.table_name}"
        )
        if failed:
            summary += f" ({failed} failed actions)"
        if self._run_log is not None:
            self._run_log("workflow", summary)
        return execution
