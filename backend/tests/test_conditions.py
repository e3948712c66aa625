"""Tests for workflow condition evaluation and template rendering."""

from __future__ import annotations

import logging
from decimal import Decimal
from types import SimpleNamespace

import pytest

from backend.app.errors import FieldError, NotFoundError, ValidationError
from backend.app.workflow.conditions import Geofence, compare, evaluate_condition, evaluate_node
from backend.app.workflow.graph import Condition, ConditionNode
from backend.app.workflow.templates import build_variables, resolve_template, resolve_value


def _variables(**record):
    return build_variables(record, event={"operation": "INSERT"}, workflow={"name": "Demo"})


@pytest.mark.parametrize(("price", "expected"), [(1500, True), (900, False), ("1000.5", True)])
def test_numeric_comparison_coerces_both_sides(price, expected):
    outcome = evaluate_condition(Condition("price", "gt", "1000"), _variables(price=price))

    assert outcome.matched is expected
    assert outcome.error is None


def test_non_numeric_values_fail_closed(caplog):
    with caplog.at_level(logging.WARNING, logger="backend.app.workflow.conditions"):
        outcome = evaluate_condition(Condition("price", "gt", "1000"), _variables(price="abc"))

    assert outcome.matched is False
    assert outcome.error == "'abc' is not numeric"
    assert "could not be evaluated" in caplog.text


def test_missing_field_fails_closed():
    outcome = evaluate_condition(Condition("price", "lt", 5), _variables())

    assert outcome.matched is False
    assert outcome.to_dict()["actual"] == ""


@pytest.mark.parametrize(
    ("actual", "operator", "expected", "result"),
    [
        ("10", "equals", 10, True),
        (Decimal("10.0"), "equals", "10", True),
        ("open", "equals", "OPEN", False),
        ("open", "not_equals", "closed", True),
        ("Widget Pro", "contains", "Pro", True),
        (["red", "blue"], "contains", "blue", True),
        (None, "contains", "x", False),
        (5, "gte", "5", True),
        (5, "lte", 4, False),
        (True, "equals", "true", True),
    ],
)
def test_compare(actual, operator, expected, result):
    assert compare(actual, operator, expected) is result


def test_condition_values_may_reference_other_fields():
    outcome = evaluate_condition(
        Condition("stock", "lt", "{{trigger.reorder_level}}"),
        _variables(stock=3, reorder_level=10),
    )

    assert outcome.matched is True


def test_node_logic():
    variables = _variables(price=1500, category="tools")
    conditions = (
        Condition("price", "gt", 1000),
        Condition("category", "equals", "garden"),
    )

    assert evaluate_node(ConditionNode("c", conditions, "AND"), variables)[0] is False
    assert evaluate_node(ConditionNode("c", conditions, "OR"), variables)[0] is True
    assert evaluate_node(ConditionNode("c", (), "AND"), variables) == (False, [])


def test_templates_render_trigger_fields():
    variables = _variables(item_name="Widget", category="Tools")

    assert (
        resolve_template("High Value Item Added: {{trigger.item_name}}", variables)
        == "High Value Item Added: Widget"
    )
    assert resolve_template("{{ item_name }} in {{category}}", variables) == "Widget in Tools"


def test_missing_placeholders_render_empty():
    variables = _variables(category="Tools")

    assert (
        resolve_template("High Value Item Added: {{trigger.item_name}}", variables)
        == "High Value Item Added: "
    )
    assert resolve_template("{{trigger.item_name}}", variables) == ""


def test_single_placeholder_keeps_the_value_type():
    variables = _variables(price=1500, flags={"new": True})

    assert resolve_template("{{trigger.price}}", variables) == 1500
    assert resolve_value(
        {"total": "{{price}}", "notes": ["{{workflow.name}}: {{flags.new}}"]}, variables
    ) == {"total": 1500, "notes": ["Demo: true"]}


POINT = {"type": "Point", "coordinates": [8.6, 50.1]}


class _Zones:
    def __init__(self, matches=None, error=None):
        self.matches = matches or []
        self.error = error
        self.queries = []

    def table_by_name(self, name):
        if name != "zones":
            raise NotFoundError(f"table {name!r} not found")
        return SimpleNamespace(name=name, geometry_fields=[SimpleNamespace(name="boundary")])

    def spatial_query(self, definition, field, query_type, *, geometry):
        self.queries.append((definition.name, field, query_type, geometry))
        if self.error is not None:
            raise self.error
        return self.matches


def test_geo_within_matches_when_a_zone_intersects():
    zones = _Zones(matches=[{"id": "depot"}])

    outcome = evaluate_condition(
        Condition("location", "geo_within", "zones"), _variables(location=POINT), Geofence(zones)
    )

    assert outcome.matched is True
    assert zones.queries == [("zones", "boundary", "intersects", POINT)]


def test_geo_within_uses_an_explicit_geometry_field():
    zones = _Zones()

    outcome = evaluate_condition(
        Condition("location", "geo_within", "zones.area"),
        _variables(location='{"type": "Point", "coordinates": [8.6, 50.1]}'),
        Geofence(zones),
    )

    assert outcome.matched is False
    assert outcome.error is None
    assert zones.queries[0][1] == "area"


@pytest.mark.parametrize(
    ("target", "location", "zones", "error"),
    [
        ("zones", {"type": "Point"}, _Zones(), "invalid geometry"),
        ("zones", None, _Zones(), "invalid geometry"),
        ("parks", POINT, _Zones(), "geofence 'parks' failed"),
        (
            "zones",
            POINT,
            _Zones(error=ValidationError([FieldError(None, "spatial queries require PostGIS")])),
            "geofence 'zones' failed: spatial queries require PostGIS",
        ),
    ],
)
def test_geo_within_fails_closed(target, location, zones, error):
    outcome = evaluate_condition(
        Condition("location", "geo_within", target), _variables(location=location), Geofence(zones)
    )

    assert outcome.matched is False
    assert outcome.error.startswith(error)


def test_geo_within_without_a_geofence_fails_closed():
    outcome = evaluate_condition(
        Condition("location", "geo_within", "zones"), _variables(location=POINT)
    )

    assert outcome.matched is False
    assert outcome.error == "spatial conditions are not available"
