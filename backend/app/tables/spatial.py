"""Column types used to store GeoJSON geometries."""
from __future__ import annotations

import json
from typing import Any

from sqlalchemy import Text, func
from sqlalchemy.types import TypeDecorator, UserDefinedType


class Geometry(UserDefinedType):
    """PostGIS geometry column exchanged with Python as GeoJSON mappings."""

    cache_ok = True

    def __init__(self, kind: str = "GEOMETRY", srid: int = 4326) -> None:
        self.kind = kind
        self.srid = srid

    def get_col_spec(self, **kw: Any) -> str:
        return f"geometry({self.kind},{self.srid})"

    def bind_expression(self, bindvalue):
        return func.ST_SetSRID(func.ST_GeomFromGeoJSON(bindvalue), self.srid)

    def column_expression(self, col):
        return func.ST_AsGeoJSON(col, type_=self)

    def bind_processor(self, dialect):
        def process(value: Any) -> str | None:
            if value is None or isinstance(value, str):
                return value
            return json.dumps(value)

        return process

    def result_processor(self, dialect, coltype):
        def process(value: Any) -> Any:
            if value is None or not isinstance(value, str):
                return value
            return json.loads(value)

        return process


class GeoJSONText(TypeDecorator):
    """Stores GeoJSON as text on engines without a spatial extension."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Any, dialect) -> str | None:
        if value is None or isinstance(value, str):
            return value
        return json.dumps(value)

    def process_result_value(self, value: Any, dialect) -> Any:
        if value is None:
            return None
        return json.loads(value)


WITHIN = "within"
DISTANCE = "distance"
INTERSECTS = "intersects"
SPATIAL_QUERY_TYPES = (WITHIN, DISTANCE, INTERSECTS)


def _geometry_literal(value: dict[str, Any], srid: int):
    return func.ST_SetSRID(func.ST_GeomFromGeoJSON(json.dumps(value)), srid)


def spatial_predicate(
    column,
    query_type: str,
    *,
    geometry: dict[str, Any] | None = None,
    point: dict[str, Any] | None = None,
    distance: float | None = None,
    srid: int = 4326,
):
    """Build a PostGIS predicate comparing ``column`` with a GeoJSON operand.

    ``distance`` is measured in meters on the geography of both operands.
    """

    if query_type == WITHIN:
        if geometry is None:
            raise ValueError("geometry is required for within queries")
        return func.ST_Within(column, _geometry_literal(geometry, srid))
    if query_type == INTERSECTS:
        if geometry is None:
            raise ValueError("geometry is required for intersects queries")
        return func.ST_Intersects(column, _geometry_literal(geometry, srid))
    if query_type == DISTANCE:
        if point is None or distance is None:
            raise ValueError("point and distance are required for distance queries")
        return func.ST_DWithin(
            func.geography(column), func.geography(_geometry_literal(point, srid)), distance
        )
    raise ValueError(f"queryType must be one of {', '.join(SPATIAL_QUERY_TYPES)}")
