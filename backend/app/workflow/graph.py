"""Typed workflow graphs built from stored node and edge payloads."""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Union

from ..errors import WorkflowGraphError
from .events import DELETE, INSERT, UPDATE

RECORD_CREATED = "RECORD_CREATED"
RECORD_UPDATED = "RECORD_UPDATED"
RECORD_DELETED = "RECORD_DELETED"
MANUAL_TRIGGER = "MANUAL"
TRIGGER_TYPES = (RECORD_CREATED, RECORD_UPDATED, RECORD_DELETED, MANUAL_TRIGGER)
OPERATION_TRIGGERS = {
    INSERT: RECORD_CREATED,
    UPDATE: RECORD_UPDATED,
    DELETE: RECORD_DELETED,
}

QUERY_OPERATORS = ("equals", "not_equals", "gt", "gte", "lt", "lte", "contains")
GEO_WITHIN = "geo_within"
CONDITION_OPERATORS = QUERY_OPERATORS + (GEO_WITHIN,)
ACTION_TYPES = ("CREATE", "UPDATE", "DELETE", "LOG", "BROADCAST")
TABLE_ACTIONS = ("CREATE", "UPDATE", "DELETE")
LEGACY_ACTION_NODES = {"action_log": "LOG", "action_create_record": "CREATE"}
BRANCHES = ("true", "false")


@dataclass(frozen=True)
class TriggerNode:
    id: str
    label: str = ""


@dataclass(frozen=True)
class Condition:
    field: str
    operator: str
    value: Any = None


@dataclass(frozen=True)
class ConditionNode:
    id: str
    conditions: tuple[Condition, ...]
    logic: str = "AND"
    label: str = ""


@dataclass(frozen=True)
class FieldTemplate:
    key: str
    value: Any = None


@dataclass(frozen=True)
class ActionNode:
    id: str
    action_type: str
    table_name: str | None = None
    fields: tuple[FieldTemplate, ...] = ()
    query_field: str | None = None
    query_operator: str = "equals"
    query_value: Any = None
    message: str = ""
    channel: str = "workflow"
    payload: str | None = None
    label: str = ""


Node = Union[TriggerNode, ConditionNode, ActionNode]


@dataclass(frozen=True)
class Edge:
    source: str
    target: str
    branch: str | None = None
    id: str | None = None


def _node_data(raw: dict[str, Any]) -> dict[str, Any]:
    data = raw.get("data")
    return data if isinstance(data, dict) else {}


def _parse_condition(raw: Any, node_id: str, errors: list[str]) -> Condition | None:
    if not isinstance(raw, dict):
        errors.append(f"node {node_id}: conditions must be objects")
        return None
    field = raw.get("field")
    operator = str(raw.get("operator") or "").strip().lower()
    if not isinstance(field, str) or not field.strip():
        errors.append(f"node {node_id}: condition field is required")
        return None
    if operator not in CONDITION_OPERATORS:
        errors.append(f"node {node_id}: unsupported operator {raw.get('operator')!r}")
        return None
    return Condition(field.strip(), operator, raw.get("value"))


def _parse_fields(raw: Any, node_id: str, errors: list[str]) -> tuple[FieldTemplate, ...]:
    if raw is None:
        return ()
    if isinstance(raw, dict):
        raw = [{"key": key, "value": value} for key, value in raw.items()]
    if not isinstance(raw, list):
        errors.append(f"node {node_id}: fields must be a list of {{key, value}} objects")
        return ()
    templates = []
    for item in raw:
        key = item.get("key") if isinstance(item, dict) else None
        if not isinstance(key, str) or not key.strip():
            errors.append(f"node {node_id}: every field requires a key")
            continue
        templates.append(FieldTemplate(key.strip(), item.get("value")))
    return tuple(templates)


def _parse_action(
    node_id: str, node_type: str, data: dict[str, Any], errors: list[str]
) -> ActionNode:
    if node_type in LEGACY_ACTION_NODES:
        action_type = LEGACY_ACTION_NODES[node_type]
    else:
        action_type = str(data.get("actionType") or "CREATE").strip().upper()
    if action_type not in ACTION_TYPES:
        errors.append(f"node {node_id}: unsupported actionType {data.get('actionType')!r}")

    table_name = data.get("tableName") or None
    payload = None
    if node_type == "action_create_record":
        table_name = table_name or data.get("tableId") or None
        payload = data.get("payload") if isinstance(data.get("payload"), str) else None
    if action_type in TABLE_ACTIONS and not isinstance(table_name, str):
        errors.append(f"node {node_id}: {action_type} actions require a tableName")

    query_field = data.get("queryField") or None
    query_operator = str(data.get("queryOperator") or "equals").strip().lower()
    if action_type in ("UPDATE", "DELETE"):
        if not isinstance(query_field, str):
            errors.append(f"node {node_id}: {action_type} actions require a queryField")
        if query_operator not in QUERY_OPERATORS:
            errors.append(f"node {node_id}: unsupported queryOperator {query_operator!r}")

    fields = _parse_fields(data.get("fields"), node_id, errors)
    if action_type == "UPDATE" and not fields:
        errors.append(f"node {node_id}: UPDATE actions require at least one field")

    return ActionNode(
        id=node_id,
        action_type=action_type,
        table_name=table_name,
        fields=fields,
        query_field=query_field,
        query_operator=query_operator,
        query_value=data.get("queryValue"),
        message=str(data.get("message") or ""),
        channel=str(data.get("channel") or "workflow"),
        payload=payload,
        label=str(data.get("label") or ""),
    )


def _parse_node(raw: Any, errors: list[str]) -> Node | None:
    if not isinstance(raw, dict) or raw.get("id") in (None, ""):
        errors.append("every node requires an id")
        return None
    node_id = str(raw["id"])
    node_type = str(raw.get("type") or "").strip().lower()
    data = _node_data(raw)
    label = str(data.get("label") or "")

    if node_type == "trigger":
        return TriggerNode(node_id, label)

    if node_type == "condition":
        raw_conditions = data.get("conditions")
        if isinstance(raw_conditions, list) and raw_conditions:
            parsed = [_parse_condition(item, node_id, errors) for item in raw_conditions]
        else:
            parsed = [_parse_condition(data, node_id, errors)]
        logic = str(data.get("logic") or "AND").strip().upper()
        if logic not in ("AND", "OR"):
            errors.append(f"node {node_id}: logic must be AND or OR")
        conditions = tuple(item for item in parsed if item is not None)
        return ConditionNode(node_id, conditions, logic, label)

    if node_type == "action" or node_type in LEGACY_ACTION_NODES:
        return _parse_action(node_id, node_type, data, errors)

    errors.append(f"node {node_id}: unsupported node type {raw.get('type')!r}")
    return None


def _parse_edge(raw: Any, errors: list[str]) -> Edge | None:
    if not isinstance(raw, dict) or raw.get("source") in (None, "") or raw.get("target") in (
        None,
        "",
    ):
        errors.append("every edge requires a source and a target")
        return None
    handle = raw.get("sourceHandle") or raw.get("branch")
    branch = str(handle).strip().lower() if handle is not None else None
    return Edge(
        source=str(raw["source"]),
        target=str(raw["target"]),
        branch=branch if branch in BRANCHES else None,
        id=str(raw["id"]) if raw.get("id") is not None else None,
    )


class WorkflowGraph:
    """A validated, acyclic workflow graph rooted at a single trigger."""

    def __init__(self, nodes: dict[str, Node], edges: tuple[Edge, ...], trigger: TriggerNode):
        self.nodes = nodes
        self.edges = edges
        self.trigger = trigger
        self._outgoing: dict[str, list[Edge]] = {node_id: [] for node_id in nodes}
        for edge in edges:
            self._outgoing[edge.source].append(edge)

    def successors(self, node_id: str, branch: str | None = None) -> list[str]:
        return [
            edge.target
            for edge in self._outgoing.get(node_id, [])
            if branch is None or edge.branch == branch
        ]

    @classmethod
    def build(cls, nodes: Any, edges: Any) -> WorkflowGraph:
        """Parse and validate raw node/edge payloads, raising ``WorkflowGraphError``."""

        errors: list[str] = []
        if not isinstance(nodes, list):
            raise WorkflowGraphError("nodes must be a list")
        if edges is None:
            edges = []
        if not isinstance(edges, list):
            raise WorkflowGraphError("edges must be a list")

        parsed: dict[str, Node] = {}
        for raw in nodes:
            node = _parse_node(raw, errors)
            if node is None:
                continue
            if node.id in parsed:
                errors.append(f"duplicate node id {node.id!r}")
                continue
            parsed[node.id] = node

        parsed_edges = tuple(
            edge for edge in (_parse_edge(raw, errors) for raw in edges) if edge is not None
        )
        if errors:
            raise WorkflowGraphError(errors)

        triggers = [node for node in parsed.values() if isinstance(node, TriggerNode)]
        if len(triggers) != 1:
            raise WorkflowGraphError(
                f"workflow requires exactly one trigger node, found {len(triggers)}"
            )
        trigger = triggers[0]

        for edge in parsed_edges:
            for end in (edge.source, edge.target):
                if end not in parsed:
                    errors.append(f"edge {edge.source}->{edge.target} references unknown node {end!r}")
            if edge.target == trigger.id:
                errors.append("the trigger node cannot have incoming edges")
        if errors:
            raise WorkflowGraphError(errors)

        graph = cls(parsed, parsed_edges, trigger)
        graph._check_branches()
        graph._check_acyclic()
        graph._check_reachable()
        return graph

    def _check_branches(self) -> None:
        errors = []
        for node in self.nodes.values():
            if not isinstance(node, ConditionNode):
                continue
            branches = sorted(edge.branch or "" for edge in self._outgoing[node.id])
            if branches != ["false", "true"]:
                errors.append(
                    f"condition node {node.id} requires exactly one 'true' and one 'false' edge"
                )
        if errors:
            raise WorkflowGraphError(errors)

    def _check_acyclic(self) -> None:
        visiting: set[str] = set()
        visited: set[str] = set()

        for root in self.nodes:
            if root in visited:
                continue
            stack: list[tuple[str, Iterable[str]]] = [(root, iter(self.successors(root)))]
            visiting.add(root)
            while stack:
                node_id, children = stack[-1]
                child = next(children, None)
                if child is None:
                    stack.pop()
                    visiting.discard(node_id)
                    visited.add(node_id)
                    continue
                if child in visiting:
                    raise WorkflowGraphError(f"cycle detected in workflow graph at node {child}")
                if child not in visited:
                    visiting.add(child)
                    stack.append((child, iter(self.successors(child))))

    def _check_reachable(self) -> None:
        seen = {self.trigger.id}
        queue = [self.trigger.id]
        while queue:
            for child in self.successors(queue.pop()):
                if child not in seen:
                    seen.add(child)
                    queue.append(child)
        unreachable = sorted(set(self.nodes) - seen)
        if unreachable:
            raise WorkflowGraphError(
                f"nodes not reachable from the trigger: {', '.join(unreachable)}"
            )
