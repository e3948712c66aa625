"""Workflow evaluation for record change events."""
from __future__ import annotations

import copy
import json
import logging
from collections import deque
from collections.abc import Callable
from concurrent.futures import Executor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from ..errors import ActionExecutionError, NotFoundError, WorkflowGraphError
from .conditions import Geofence, evaluate_node
from .events import MANUAL, RecordChangeEvent
from .graph import (
    MANUAL_TRIGGER,
    OPERATION_TRIGGERS,
    ActionNode,
    ConditionNode,
    TriggerNode,
    WorkflowGraph,
)
from .templates import build_variables, resolve_template, resolve_value, to_text

logger = logging.getLogger(__name__)

COMPLETED = "completed"
PARTIAL_FAILURE = "partial_failure"
FAILED = "failed"

NODE_MATCHED = "matched"
NODE_SUCCEEDED = "succeeded"
NODE_FAILED = "failed"
NODE_SKIPPED = "skipped"

ACTION_QUERY_LIMIT = 100
SYSTEM_ACTOR = "SYSTEM"

Broadcaster = Callable[[str, dict[str, Any]], None]
ContextWrapper = Callable[[Callable[[], Any]], Callable[[], Any]]


def _now() -> datetime:
    return datetime.now(UTC)


def trigger_type_for(operation: str) -> str:
    if operation == MANUAL:
        return MANUAL_TRIGGER
    return OPERATION_TRIGGERS[operation]


@dataclass(frozen=True)
class WorkflowSnapshot:
    """Immutable copy of a workflow definition taken when a run is scheduled."""

    id: int
    name: str
    trigger_type: str
    table_id: int | None
    nodes: list[dict[str, Any]]
    edges: list[dict[str, Any]]

    @classmethod
    def from_model(cls, workflow: Any) -> WorkflowSnapshot:
        return cls(
            id=workflow.id,
            name=workflow.name,
            trigger_type=workflow.trigger_type,
            table_id=workflow.table_id,
            nodes=copy.deepcopy(list(workflow.nodes or [])),
            edges=copy.deepcopy(list(workflow.edges or [])),
        )


@dataclass
class NodeResult:
    node_id: str
    node_type: str
    status: str
    detail: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "type": self.node_type,
            "status": self.status,
            "detail": self.detail,
            "error": self.error,
        }


@dataclass
class ExecutionResult:
    workflow_id: int
    workflow_name: str
    event: RecordChangeEvent
    status: str
    path: list[str] = field(default_factory=list)
    node_results: list[NodeResult] = field(default_factory=list)
    error: str | None = None
    started_at: datetime = field(default_factory=_now)
    completed_at: datetime = field(default_factory=_now)

    def node(self, node_id: str) -> NodeResult | None:
        for result in self.node_results:
            if result.node_id == node_id:
                return result
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflowId": self.workflow_id,
            "workflow": self.workflow_name,
            "eventId": self.event.event_id,
            "operation": self.event.operation,
            "recordId": self.event.record_id,
            "status": self.status,
            "path": list(self.path),
            "nodeResults": [result.to_dict() for result in self.node_results],
            "error": self.error,
            "startedAt": self.started_at.isoformat(),
            "completedAt": self.completed_at.isoformat(),
        }


class WorkflowStore(Protocol):
    def active_workflows(self, table_id: int | None, trigger_type: str) -> list[WorkflowSnapshot]:
        ...

    def record_execution(self, result: ExecutionResult) -> Any:
        ...


def _node_type(node: Any) -> str:
    if isinstance(node, TriggerNode):
        return "trigger"
    if isinstance(node, ConditionNode):
        return "condition"
    return "action"


class WorkflowEvaluator:
    """Run workflow graphs against record change events.

    Collaborators are injected: ``store`` loads snapshots and persists
    executions, ``data_service`` performs record actions and ``broadcaster``
    publishes BROADCAST actions. ``context_wrapper`` wraps the callable that
    runs on the action worker thread, e.g. to push an application context.
    """

    def __init__(
        self,
        store: WorkflowStore,
        data_service: Any,
        *,
        broadcaster: Broadcaster | None = None,
        action_timeout: float | None = 5.0,
        max_chain_depth: int = 3,
        context_wrapper: ContextWrapper | None = None,
        action_executor: Executor | None = None,
    ) -> None:
        self._store = store
        self._data_service = data_service
        self._geofence = Geofence(data_service)
        self._broadcaster = broadcaster
        self._action_timeout = action_timeout
        self._max_chain_depth = max_chain_depth
        self._context_wrapper = context_wrapper
        self._action_executor = action_executor

    def matching_workflows(self, event: RecordChangeEvent) -> list[WorkflowSnapshot]:
        if event.depth > self._max_chain_depth:
            logger.warning(
                "Not evaluating workflows for event %s: chain depth %s exceeds %s",
                event.event_id,
                event.depth,
                self._max_chain_depth,
            )
            return []
        trigger_type = trigger_type_for(event.operation)
        if trigger_type == MANUAL_TRIGGER:
            return []
        return self._store.active_workflows(event.table_id, trigger_type)

    def handle_event(self, event: RecordChangeEvent) -> list[ExecutionResult]:
        """Evaluate every matching workflow for ``event`` one after another."""

        return [self.run(snapshot, event) for snapshot in self.matching_workflows(event)]

    def run(self, snapshot: WorkflowSnapshot, event: RecordChangeEvent) -> ExecutionResult:
        """Execute one workflow snapshot and persist its execution record."""

        result = ExecutionResult(snapshot.id, snapshot.name, event, COMPLETED)
        try:
            graph = WorkflowGraph.build(snapshot.nodes, snapshot.edges)
        except WorkflowGraphError as exc:
            logger.error("Workflow %s has an invalid graph: %s", snapshot.name, exc)
            result.status = FAILED
            result.error = str(exc)
        else:
            self._traverse(graph, snapshot, event, result)

        result.completed_at = _now()
        try:
            self._store.record_execution(result)
        except Exception:
            logger.exception("Failed to record execution of workflow %s", snapshot.name)
        return result

    def _variables(self, snapshot: WorkflowSnapshot, event: RecordChangeEvent) -> dict[str, Any]:
        return build_variables(
            event.current,
            event={
                "id": event.event_id,
                "operation": event.operation,
                "table": event.table_name,
                "tableId": event.table_id,
                "recordId": event.record_id,
                "actor": event.actor,
            },
            workflow={"id": snapshot.id, "name": snapshot.name},
        )

    def _traverse(
        self,
        graph: WorkflowGraph,
        snapshot: WorkflowSnapshot,
        event: RecordChangeEvent,
        result: ExecutionResult,
    ) -> None:
        variables = self._variables(snapshot, event)
        outcomes: dict[str, NodeResult] = {}
        queued = {graph.trigger.id}
        queue = deque([graph.trigger.id])

        while queue:
            node_id = queue.popleft()
            node = graph.nodes[node_id]
            result.path.append(node_id)

            if isinstance(node, TriggerNode):
                outcomes[node_id] = NodeResult(
                    node_id, "trigger", NODE_MATCHED, {"operation": event.operation}
                )
                following = graph.successors(node_id)
            elif isinstance(node, ConditionNode):
                matched, checks = evaluate_node(node, variables, self._geofence)
                branch = "true" if matched else "false"
                outcomes[node_id] = NodeResult(
                    node_id,
                    "condition",
                    NODE_MATCHED,
                    {
                        "result": matched,
                        "branch": branch,
                        "logic": node.logic,
                        "conditions": [check.to_dict() for check in checks],
                    },
                )
                following = graph.successors(node_id, branch)
            else:
                outcome = self._run_action(node, variables, snapshot, event)
                outcomes[node_id] = outcome
                if outcome.status == NODE_FAILED:
                    result.status = PARTIAL_FAILURE
                    continue
                following = graph.successors(node_id)

            for child in following:
                if child not in queued:
                    queued.add(child)
                    queue.append(child)

        for node_id, node in graph.nodes.items():
            if node_id not in outcomes:
                outcomes[node_id] = NodeResult(node_id, _node_type(node), NODE_SKIPPED)
        result.node_results = [outcomes[node_id] for node_id in result.path] + [
            outcome for node_id, outcome in outcomes.items() if node_id not in result.path
        ]

    def _run_action(
        self,
        node: ActionNode,
        variables: dict[str, Any],
        snapshot: WorkflowSnapshot,
        event: RecordChangeEvent,
    ) -> NodeResult:
        def _invoke() -> dict[str, Any]:
            return self._execute_action(node, variables, snapshot, event)

        try:
            detail = self._call_with_timeout(_invoke)
        except FutureTimeoutError:
            message = f"action timed out after {self._action_timeout}s"
            logger.warning("Workflow %s node %s: %s", snapshot.name, node.id, message)
            return NodeResult(
                node.id, "action", NODE_FAILED, {"actionType": node.action_type}, message
            )
        except Exception as exc:
            logger.warning(
                "Workflow %s node %s failed: %s", snapshot.name, node.id, exc, exc_info=True
            )
            return NodeResult(
                node.id,
                "action",
                NODE_FAILED,
                {"actionType": node.action_type},
                str(exc) or exc.__class__.__name__,
            )
        return NodeResult(node.id, "action", NODE_SUCCEEDED, detail)

    def _call_with_timeout(self, call: Callable[[], Any]) -> Any:
        if self._context_wrapper is not None:
            call = self._context_wrapper(call)
        if not self._action_timeout:
            return call()

        executor = self._action_executor
        owned = executor is None
        if owned:
            executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="workflow-action")
        try:
            future = executor.submit(call)
            try:
                return future.result(timeout=self._action_timeout)
            except FutureTimeoutError:
                future.cancel()
                raise
        finally:
            if owned:
                executor.shutdown(wait=False)

    def _execute_action(
        self,
        node: ActionNode,
        variables: dict[str, Any],
        snapshot: WorkflowSnapshot,
        event: RecordChangeEvent,
    ) -> dict[str, Any]:
        detail: dict[str, Any] = {"actionType": node.action_type}

        if node.action_type == "LOG":
            message = to_text(resolve_template(node.message, variables))
            logger.info("Workflow %s: %s", snapshot.name, message)
            detail["message"] = message
            return detail

        payload = {item.key: resolve_value(item.value, variables) for item in node.fields}

        if node.action_type == "BROADCAST":
            if self._broadcaster is None:
                raise ActionExecutionError("no broadcaster is configured")
            message = {
                "workflow": {"id": snapshot.id, "name": snapshot.name},
                "event": event.to_dict(),
                "record": variables["trigger"],
                "data": payload,
            }
            self._broadcaster(node.channel, message)
            detail["channel"] = node.channel
            return detail

        try:
            definition = self._data_service.table_by_name(node.table_name)
        except NotFoundError as exc:
            raise ActionExecutionError(f"target table {node.table_name!r} not found") from exc
        actor = event.actor or SYSTEM_ACTOR
        depth = event.depth + 1
        detail["table"] = node.table_name

        if node.action_type == "CREATE":
            if node.payload is not None and not payload:
                try:
                    payload = json.loads(to_text(resolve_template(node.payload, variables)))
                except ValueError as exc:
                    raise ActionExecutionError(f"payload is not valid JSON: {exc}") from exc
            record = self._data_service.create(definition, payload, actor, depth=depth)
            detail["recordId"] = record["id"]
            detail["payload"] = payload
            return detail

        query_value = resolve_value(node.query_value, variables)
        page = self._data_service.list(
            definition,
            filters={node.query_field: {"op": node.query_operator, "value": query_value}},
            limit=ACTION_QUERY_LIMIT,
        )
        record_ids = [record["id"] for record in page.records]
        for record_id in record_ids:
            if node.action_type == "DELETE":
                self._data_service.soft_delete(definition, record_id, actor, depth=depth)
            else:
                self._data_service.update(definition, record_id, payload, actor, depth=depth)
        detail["recordIds"] = record_ids
        if node.action_type == "UPDATE":
            detail["payload"] = payload
        return detail
