"""Structural GeoJSON checks for geometry fields."""
from __future__ import annotations

import json
import math
from typing import Any

_GEOJSON_TYPES = {
    "POINT": "Point",
    "LINESTRING": "LineString",
    "POLYGON": "Polygon",
    "MULTIPOINT": "MultiPoint",
    "MULTIPOLYGON": "MultiPolygon",
}


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def _check_position(position: Any, where: str) -> None:
    if not isinstance(position, list) or len(position) not in (2, 3):
        raise ValueError(f"{where} must be a position of 2 or 3 numbers")
    if not all(_is_number(item) for item in position):
        raise ValueError(f"{where} must contain only finite numbers")


def _check_positions(positions: Any, minimum: int, where: str) -> None:
    if not isinstance(positions, list) or len(positions) < minimum:
        raise ValueError(f"{where} requires at least {minimum} positions")
    for index, position in enumerate(positions):
        _check_position(position, f"{where}[{index}]")


def _check_polygon(rings: Any, where: str) -> None:
    if not isinstance(rings, list) or not rings:
        raise ValueError(f"{where} requires at least one linear ring")
    for index, ring in enumerate(rings):
        ring_where = f"{where} ring {index}"
        _check_positions(ring, 4, ring_where)
        if ring[0] != ring[-1]:
            raise ValueError(f"{ring_where} is not closed")


def validate_geometry(value: Any, kind: str) -> dict[str, Any]:
    """Return the GeoJSON geometry as a mapping or raise ``ValueError``."""

    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError as exc:
            raise ValueError("geometry must be valid GeoJSON") from exc

    if not isinstance(value, dict):
        raise ValueError("geometry must be a GeoJSON object")

    expected = _GEOJSON_TYPES.get(kind)
    if expected is None:
        raise ValueError(f"unsupported geometry kind {kind!r}")
    if value.get("type") != expected:
        raise ValueError(f"geometry type must be {expected}, got {value.get('type')!r}")

    coordinates = value.get("coordinates")
    if expected == "Point":
        _check_position(coordinates, "Point coordinates")
    elif expected == "LineString":
        _check_positions(coordinates, 2, "LineString")
    elif expected == "Polygon":
        _check_polygon(coordinates, "Polygon")
    elif expected == "MultiPoint":
        _check_positions(coordinates, 1, "MultiPoint")
    else:
        if not isinstance(coordinates, list) or not coordinates:
            raise ValueError("MultiPolygon requires at least one polygon")
        for index, polygon in enumerate(coordinates):
            _check_polygon(polygon, f"MultiPolygon[{index}]")

    return {"type": expected, "coordinates": coordinates}


def validate_any_geometry(value: Any) -> dict[str, Any]:
    """Validate a GeoJSON geometry of any supported type."""

    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError as exc:
            raise ValueError("geometry must be valid GeoJSON") from exc
    kinds = {geojson_type: kind for kind, geojson_type in _GEOJSON_TYPES.items()}
    kind = kinds.get(value.get("type")) if isinstance(value, dict) else None
    if kind is None:
        raise ValueError(f"geometry type must be one of {', '.join(kinds)}")
    return validate_geometry(value, kind)


def to_feature(record: dict[str, Any], geometry_field: str) -> dict[str, Any]:
    """Wrap a record as a GeoJSON feature keyed by its id."""

    properties = {key: value for key, value in record.items() if key != geometry_field}
    return {
        "type": "Feature",
        "id": record.get("id"),
        "geometry": record.get(geometry_field),
        "properties": properties,
    }


def to_feature_collection(
    records: list[dict[str, Any]], geometry_field: str
) -> dict[str, Any]:
    return {
        "type": "FeatureCollection",
        "features": [
            to_feature(record, geometry_field)
            for record in records
            if record.get(geometry_field) is not None
        ],
    }
