"""
Boundary Store Module

In-memory set of region polygons with point-in-region lookups through an
STRtree. A store is immutable once built; refreshes build a new store and
swap it in.
"""

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from shapely import STRtree
from shapely.geometry import Point

from .models import NO_REGION, Region, RegionKind

logger = logging.getLogger(__name__)


class BoundaryStore:
    """Polygons keyed by region id."""

    def __init__(self, regions: Iterable[Region] = (),
                 special_points: Sequence[Sequence[float]] = ()):
        """
        Args:
            regions: Regions to index; a later duplicate id replaces an earlier one
            special_points: (lon, lat, tolerance) locations that belong to no region
        """
        self._regions: Dict[int, Region] = {}
        for region in regions:
            self._regions[region.region_id] = region

        self._ids: List[int] = sorted(self._regions)
        self._geometries = [self._regions[region_id].geometry for region_id in self._ids]
        self._tree = STRtree(self._geometries) if self._geometries else None
        self.special_points: List[Tuple[float, float, float]] = [
            (float(lon), float(lat), float(tolerance)) for lon, lat, tolerance in special_points
        ]

    def __len__(self) -> int:
        return len(self._regions)

    def __contains__(self, region_id: int) -> bool:
        return region_id in self._regions

    @property
    def region_ids(self) -> List[int]:
        return list(self._ids)

    @property
    def regions(self) -> List[Region]:
        return [self._regions[region_id] for region_id in self._ids]

    def get(self, region_id: int) -> Optional[Region]:
        return self._regions.get(region_id)

    def regions_of_kind(self, kind: RegionKind) -> List[Region]:
        return [region for region in self.regions if region.kind == kind]

    def is_special_point(self, lon: float, lat: float) -> bool:
        return any(abs(lon - s_lon) <= tol and abs(lat - s_lat) <= tol
                   for s_lon, s_lat, tol in self.special_points)

    def contains(self, region_id: int, lon: float, lat: float) -> bool:
        """Whether the region covers the point; points on the boundary count."""
        region = self._regions.get(region_id)
        if region is None:
            return False
        return region.geometry.covers(Point(lon, lat))

    def candidates(self, lon: float, lat: float) -> List[int]:
        """All region ids whose geometry covers the point, ascending."""
        if self._tree is None:
            return []
        point = Point(lon, lat)
        indices = self._tree.query(point, predicate='intersects')
        return sorted(self._ids[int(index)] for index in indices)

    def resolve(self, lon: float, lat: float, previous_region: Optional[int] = None) -> int:
        """
        Find the region containing a point.

        Args:
            lon: Longitude in degrees
            lat: Latitude in degrees
            previous_region: Region assigned earlier, checked first

        Returns:
            Region id, or -1 when no region contains the point. The previous
            region is kept while the point lies in its interior; otherwise a
            point covered by several regions (e.g. on a shared edge) belongs
            to the lowest region id.
        """
        if self.is_special_point(lon, lat):
            return NO_REGION

        if previous_region is not None and previous_region in self._regions:
            if self._regions[previous_region].geometry.contains(Point(lon, lat)):
                return previous_region

        matches = self.candidates(lon, lat)
        return matches[0] if matches else NO_REGION

    def bounds(self, region_id: int) -> Optional[Tuple[float, float, float, float]]:
        region = self._regions.get(region_id)
        return tuple(region.geometry.bounds) if region else None
