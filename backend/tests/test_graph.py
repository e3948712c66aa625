"""Tests for parsing and validating workflow graphs."""

from __future__ import annotations

import pytest

from backend.app.errors import WorkflowGraphError
from backend.app.workflow.graph import ActionNode, ConditionNode, WorkflowGraph


def _trigger(node_id: str = "trigger") -> dict:
    return {"id": node_id, "type": "trigger", "data": {"label": "Start"}}


def _log(node_id: str, message: str = "hello") -> dict:
    return {"id": node_id, "type": "action", "data": {"actionType": "LOG", "message": message}}


def _condition(node_id: str = "check") -> dict:
    return {
        "id": node_id,
        "type": "condition",
        "data": {"field": "price", "operator": "gt", "value": "1000"},
    }


def _edge(source: str, target: str, handle: str | None = None) -> dict:
    edge = {"id": f"{source}-{target}", "source": source, "target": target}
    if handle is not None:
        edge["sourceHandle"] = handle
    return edge


def test_build_returns_typed_nodes_and_branch_successors():
    graph = WorkflowGraph.build(
        [_trigger(), _condition(), _log("high"), _log("low")],
        [
            _edge("trigger", "check"),
            _edge("check", "high", "true"),
            _edge("check", "low", "FALSE"),
        ],
    )

    assert graph.trigger.id == "trigger"
    assert isinstance(graph.nodes["check"], ConditionNode)
    assert graph.nodes["check"].conditions[0].operator == "gt"
    assert graph.successors("check", "true") == ["high"]
    assert graph.successors("check", "false") == ["low"]



def test_branch_key_is_used_when_source_handle_is_null():
    graph = WorkflowGraph.build(
        [_trigger(), _condition(), _log("high"), _log("low")],
        [
            _edge("trigger", "check"),
            {"source": "check", "target": "high", "sourceHandle": None, "branch": "true"},
            {"source": "check", "target": "low", "sourceHandle": "", "branch": "false"},
        ],
    )

    assert graph.successors("check", "true") == ["high"]
    assert graph.successors("check", "false") == ["low"]

def test_cycles_are_rejected():
    with pytest.raises(WorkflowGraphError, match="cycle detected"):
        WorkflowGraph.build(
            [_trigger(), _log("a"), _log("b")],
            [_edge("trigger", "a"), _edge("a", "b"), _edge("b", "a")],
        )


def test_exactly_one_trigger_is_required():
    with pytest.raises(WorkflowGraphError, match="exactly one trigger"):
        WorkflowGraph.build([_log("a")], [])

    with pytest.raises(WorkflowGraphError, match="exactly one trigger"):
        WorkflowGraph.build([_trigger("t1"), _trigger("t2")], [])


def test_condition_nodes_need_both_branches():
    with pytest.raises(WorkflowGraphError) as excinfo:
        WorkflowGraph.build(
            [_trigger(), _condition(), _log("high")],
            [_edge("trigger", "check"), _edge("check", "high", "true")],
        )

    assert excinfo.value.errors == [
        "condition node check requires exactly one 'true' and one 'false' edge"
    ]


def test_unknown_edge_targets_and_unreachable_nodes_are_rejected():
    with pytest.raises(WorkflowGraphError, match="unknown node"):
        WorkflowGraph.build([_trigger()], [_edge("trigger", "missing")])

    with pytest.raises(WorkflowGraphError, match="not reachable"):
        WorkflowGraph.build([_trigger(), _log("orphan")], [])


def test_invalid_node_payloads_are_collected():
    with pytest.raises(WorkflowGraphError) as excinfo:
        WorkflowGraph.build(
            [
                _trigger(),
                {"id": "x", "type": "mystery"},
                {"id": "upd", "type": "action", "data": {"actionType": "UPDATE"}},
            ],
            [],
        )

    errors = excinfo.value.errors
    assert "node x: unsupported node type 'mystery'" in errors
    assert "node upd: UPDATE actions require a tableName" in errors
    assert "node upd: UPDATE actions require a queryField" in errors


def test_legacy_action_nodes_are_understood():
    graph = WorkflowGraph.build(
        [
            _trigger(),
            {"id": "log", "type": "action_log", "data": {"message": "created {{id}}"}},
            {
                "id": "copy",
                "type": "action_create_record",
                "data": {"tableId": "audit", "payload": '{"note": "{{item_name}}"}'},
            },
        ],
        [_edge("trigger", "log"), _edge("log", "copy")],
    )

    log = graph.nodes["log"]
    copy = graph.nodes["copy"]
    assert isinstance(log, ActionNode) and log.action_type == "LOG"
    assert copy.action_type == "CREATE"
    assert copy.table_name == "audit"
    assert copy.payload == '{"note": "{{item_name}}"}'


def test_geo_within_is_a_condition_but_not_a_query_operator():
    geofence = {
        "id": "check",
        "type": "condition",
        "data": {"field": "location", "operator": "GEO_WITHIN", "value": "zones"},
    }
    graph = WorkflowGraph.build(
        [_trigger(), geofence, _log("inside"), _log("outside")],
        [
            _edge("trigger", "check"),
            _edge("check", "inside", "true"),
            _edge("check", "outside", "false"),
        ],
    )

    assert graph.nodes["check"].conditions[0].operator == "geo_within"

    archive = {
        "id": "archive",
        "type": "action",
        "data": {
            "actionType": "DELETE",
            "tableName": "zones",
            "queryField": "boundary",
            "queryOperator": "geo_within",
        },
    }
    with pytest.raises(WorkflowGraphError, match="unsupported queryOperator 'geo_within'"):
        WorkflowGraph.build([_trigger(), archive], [_edge("trigger", "archive")])
