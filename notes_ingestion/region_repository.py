"""
Region Repository Module

Loads and persists region geometries (WKB) in the regions table.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Set, Tuple

import psycopg2
from psycopg2.extras import execute_values
from shapely import wkb

from .models import Region, RegionKind

logger = logging.getLogger(__name__)


class RegionRepository:
    """Reads and atomically replaces the stored regions."""

    def __init__(self, connection):
        self.connection = connection

    def load_regions(self) -> List[Region]:
        with self.connection.cursor() as cursor:
            cursor.execute("""
                SELECT region_id, name, kind, geometry FROM regions ORDER BY region_id
            """)
            rows = cursor.fetchall()
        return [
            Region(region_id=region_id, name=name, kind=RegionKind(kind),
                   geometry=wkb.loads(bytes(geometry)))
            for region_id, name, kind, geometry in rows
        ]

    def regions_version(self) -> Tuple[int, Optional[datetime]]:
        """Region count and latest refresh time; changes whenever replace_all stores a new set."""
        with self.connection.cursor() as cursor:
            cursor.execute("SELECT COUNT(*), MAX(refreshed_at) FROM regions")
            count, refreshed_at = cursor.fetchone()
        return count, refreshed_at

    def replace_all(self, regions: Iterable[Region], changed_ids: Set[int]) -> int:
        """
        Replace the stored regions in one transaction.

        Args:
            regions: Complete new region set
            changed_ids: Regions whose geometry is new or changed; they get
                the `updated` flag so their notes can be re-assigned

        Returns:
            Number of stored regions
        """
        rows = []
        for region in regions:
            min_lon, min_lat, max_lon, max_lat = region.geometry.bounds
            rows.append((
                region.region_id, region.name, region.kind.value,
                psycopg2.Binary(region.geometry.wkb),
                min_lon, min_lat, max_lon, max_lat,
                region.region_id in changed_ids,
            ))

        try:
            with self.connection.cursor() as cursor:
                cursor.execute("DELETE FROM regions")
                execute_values(cursor, """
                    INSERT INTO regions (region_id, name, kind, geometry,
                                         min_lon, min_lat, max_lon, max_lat, updated)
                    VALUES %s
                """, rows)
            self.connection.commit()
        except Exception:
            self.connection.rollback()
            raise

        logger.info(f"Stored {len(rows)} regions ({len(changed_ids)} changed)")
        return len(rows)

    def clear_updated_flags(self) -> None:
        with self.connection.cursor() as cursor:
            cursor.execute("UPDATE regions SET updated = FALSE WHERE updated")
        self.connection.commit()
