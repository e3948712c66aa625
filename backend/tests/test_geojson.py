from __future__ import annotations

import pytest
from sqlalchemy import column
from sqlalchemy.dialects import postgresql

from backend.app.tables.geojson import (
    to_feature_collection,
    validate_any_geometry,
    validate_geometry,
)
from backend.app.tables.spatial import spatial_predicate

SQUARE = [[[0, 0], [1, 0], [1, 1], [0, 1], [0, 0]]]


def test_point_accepts_json_text():
    assert validate_geometry('{"type": "Point", "coordinates": [11.5, 48.1]}', "POINT") == {
        "type": "Point",
        "coordinates": [11.5, 48.1],
    }


def test_polygon_must_be_closed():
    assert validate_geometry({"type": "Polygon", "coordinates": SQUARE}, "POLYGON")["type"] == (
        "Polygon"
    )

    with pytest.raises(ValueError, match="is not closed"):
        validate_geometry(
            {"type": "Polygon", "coordinates": [[[0, 0], [1, 0], [1, 1], [0, 1]]]}, "POLYGON"
        )


@pytest.mark.parametrize(
    ("value", "kind"),
    [
        ({"type": "Point", "coordinates": [1]}, "POINT"),
        ({"type": "Point", "coordinates": [1, "2"]}, "POINT"),
        ({"type": "LineString", "coordinates": [[0, 0]]}, "LINESTRING"),
        ({"type": "MultiPolygon", "coordinates": []}, "MULTIPOLYGON"),
        ({"type": "Point", "coordinates": [0, 0]}, "LINESTRING"),
        ("not json", "POINT"),
    ],
)
def test_invalid_geometries_are_rejected(value, kind):
    with pytest.raises(ValueError):
        validate_geometry(value, kind)


def test_feature_collection_skips_records_without_geometry():
    records = [
        {"id": "a", "name": "Depot", "location": {"type": "Point", "coordinates": [1, 2]}},
        {"id": "b", "name": "Unplaced", "location": None},
    ]

    collection = to_feature_collection(records, "location")

    assert collection == {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "id": "a",
                "geometry": {"type": "Point", "coordinates": [1, 2]},
                "properties": {"id": "a", "name": "Depot"},
            }
        ],
    }


def test_any_geometry_detects_the_kind():
    assert validate_any_geometry({"type": "Polygon", "coordinates": SQUARE})["type"] == "Polygon"

    with pytest.raises(ValueError, match="geometry type must be one of"):
        validate_any_geometry({"type": "GeometryCollection", "geometries": []})


@pytest.mark.parametrize(
    ("query_type", "operands", "function"),
    [
        ("within", {"geometry": {"type": "Polygon", "coordinates": SQUARE}}, "ST_Within"),
        ("intersects", {"geometry": {"type": "Point", "coordinates": [0, 0]}}, "ST_Intersects"),
        (
            "distance",
            {"point": {"type": "Point", "coordinates": [0, 0]}, "distance": 250},
            "ST_DWithin(geography(boundary)",
        ),
    ],
)
def test_spatial_predicates_render_postgis_functions(query_type, operands, function):
    predicate = spatial_predicate(column("boundary"), query_type, srid=3857, **operands)

    sql = str(predicate.compile(dialect=postgresql.dialect()))

    assert function in sql
    assert "ST_SetSRID(ST_GeomFromGeoJSON(" in sql


@pytest.mark.parametrize(
    ("query_type", "operands", "message"),
    [
        ("within", {}, "geometry is required for within queries"),
        ("distance", {"point": {"type": "Point", "coordinates": [0, 0]}}, "point and distance"),
        ("nearest", {}, "queryType must be one of within, distance, intersects"),
    ],
)
def test_spatial_predicates_require_their_operands(query_type, operands, message):
    with pytest.raises(ValueError, match=message):
        spatial_predicate(column("boundary"), query_type, **operands)
