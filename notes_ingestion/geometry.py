"""
Geometry helpers for boundary polygons.
"""

import logging
from typing import Any, Dict, List

from shapely import make_valid
from shapely.geometry import GeometryCollection, LineString, MultiPolygon, Polygon
from shapely.geometry.base import BaseGeometry
from shapely.ops import polygonize, unary_union

from .errors import ValidationFailure

logger = logging.getLogger(__name__)


def _polygonal_part(geom: BaseGeometry) -> BaseGeometry:
    if isinstance(geom, (Polygon, MultiPolygon)):
        return geom
    if isinstance(geom, GeometryCollection):
        parts = [part for part in geom.geoms if isinstance(part, (Polygon, MultiPolygon))]
        if parts:
            return unary_union(parts)
    return Polygon()


def repair_geometry(geom: BaseGeometry) -> BaseGeometry:
    """
    Return a valid, non-empty polygonal version of `geom`.

    Strategies:
    1. buffer(0) - removes self-intersections
    2. make_valid() - more aggressive repair

    Raises:
        ValidationFailure: No polygonal geometry could be recovered
    """
    if geom.is_valid and not geom.is_empty and isinstance(geom, (Polygon, MultiPolygon)):
        return geom

    repaired = _polygonal_part(geom.buffer(0))
    if not repaired.is_valid or repaired.is_empty:
        repaired = _polygonal_part(make_valid(geom))

    if repaired.is_empty or not repaired.is_valid:
        raise ValidationFailure(f"Geometry cannot be repaired into a polygon ({geom.geom_type})")
    return repaired


def _member_line(member: Dict[str, Any]):
    coordinates = [(point['lon'], point['lat'])
                   for point in member.get('geometry') or [] if point]
    if len(coordinates) < 2:
        return None
    return LineString(coordinates)


def assemble_relation(element: Dict[str, Any]) -> BaseGeometry:
    """
    Build the polygon of a boundary relation returned with `out geom`.

    Outer (or unlabeled) way members are noded and polygonized; inner
    members are cut out as holes.

    Raises:
        ValidationFailure: The members do not close into a polygon
    """
    outer_lines: List[LineString] = []
    inner_lines: List[LineString] = []
    for member in element.get('members', []):
        if member.get('type') != 'way':
            continue
        line = _member_line(member)
        if line is None:
            continue
        if member.get('role') == 'inner':
            inner_lines.append(line)
        else:
            outer_lines.append(line)

    if not outer_lines:
        raise ValidationFailure(f"Relation {element.get('id')} has no outer ways")

    outer = unary_union(list(polygonize(unary_union(outer_lines))))
    if outer.is_empty:
        raise ValidationFailure(f"Outer ways of relation {element.get('id')} do not close")

    if inner_lines:
        holes = unary_union(list(polygonize(unary_union(inner_lines))))
        if not holes.is_empty:
            outer = outer.difference(holes)

    return repair_geometry(outer)
