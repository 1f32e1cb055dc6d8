"""
Spatial Verifier Module

Assigns regions to stored notes in fixed-size note-id batches processed by
a bounded thread pool. Every batch runs on its own connection and commits
on its own, so an interrupted run can simply be started again.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from psycopg2.extras import execute_values

from .boundary_store import BoundaryStore
from .database import connect

logger = logging.getLogger(__name__)

Bounds = Tuple[float, float, float, float]


class VerificationMode(Enum):
    MISSING = "missing"       # notes without a region
    FULL = "full"             # every note
    WITHIN = "within"         # notes inside given bounding boxes


@dataclass
class BatchResult:
    start_id: int
    end_id: int
    examined: int = 0
    reassigned: int = 0
    error: Optional[str] = None


@dataclass
class VerificationResult:
    mode: VerificationMode
    batches: int = 0
    examined: int = 0
    reassigned: int = 0
    failed_batches: List[BatchResult] = field(default_factory=list)
    processing_time: float = 0.0

    @property
    def success(self) -> bool:
        return not self.failed_batches


class NoteLocationStore:
    """Reads and updates note regions for one batch on a private connection."""

    def __init__(self, db_config: Dict[str, Any]):
        self.db_config = db_config
        self.connection = None

    def __enter__(self):
        self.connection = connect(self.db_config)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.connection:
            if exc_type is None:
                self.connection.commit()
            else:
                self.connection.rollback()
            self.connection.close()
            self.connection = None

    def id_range(self) -> Tuple[int, int]:
        with self.connection.cursor() as cursor:
            cursor.execute("SELECT COALESCE(MIN(note_id), 0), COALESCE(MAX(note_id), -1) FROM notes")
            low, high = cursor.fetchone()
        return low, high

    def fetch_batch(self, start_id: int, end_id: int, mode: VerificationMode,
                    bounds: Sequence[Bounds] = ()) -> List[Tuple[int, float, float, Optional[int]]]:
        """Notes with start_id <= note_id < end_id selected by `mode`, locked for update."""
        sql = """
            SELECT note_id, longitude, latitude, id_country FROM notes
            WHERE note_id >= %s AND note_id < %s
        """
        params: List[Any] = [start_id, end_id]
        if mode == VerificationMode.MISSING:
            sql += " AND id_country IS NULL"
        elif mode == VerificationMode.WITHIN:
            boxes = []
            for min_lon, min_lat, max_lon, max_lat in bounds:
                boxes.append("(longitude BETWEEN %s AND %s AND latitude BETWEEN %s AND %s)")
                params.extend([min_lon, max_lon, min_lat, max_lat])
            sql += " AND (" + " OR ".join(boxes) + ")"
        # FULL and WITHIN wait for rows the daemon holds. MISSING skips them;
        # the next check run fills those in.
        sql += " ORDER BY note_id FOR UPDATE"
        if mode == VerificationMode.MISSING:
            sql += " SKIP LOCKED"

        with self.connection.cursor() as cursor:
            cursor.execute(sql, params)
            return [(row[0], float(row[1]), float(row[2]), row[3]) for row in cursor.fetchall()]

    def apply(self, assignments: List[Tuple[int, int]]) -> int:
        if not assignments:
            return 0
        with self.connection.cursor() as cursor:
            execute_values(cursor, """
                UPDATE notes SET id_country = v.region_id
                FROM (VALUES %s) AS v (note_id, region_id)
                WHERE notes.note_id = v.note_id
            """, assignments)
        return len(assignments)


class SpatialVerifier:
    """Batched, parallel region assignment of stored notes."""

    def __init__(self, store: BoundaryStore,
                 location_store_factory: Callable[[], NoteLocationStore],
                 batch_size: int = 10000, max_workers: int = 4):
        """
        Args:
            store: Boundaries used for resolution
            location_store_factory: Returns a fresh batch context per call
            batch_size: Width of each note-id range
            max_workers: Threads processing batches concurrently
        """
        self.store = store
        self.location_store_factory = location_store_factory
        self.batch_size = batch_size
        self.max_workers = max_workers

    def assign_missing(self) -> VerificationResult:
        """Assign a region to every note that has none."""
        return self._run(VerificationMode.MISSING)

    def verify_all(self) -> VerificationResult:
        """Re-validate the region of every note."""
        return self._run(VerificationMode.FULL)

    def reassign_within(self, bounds: Sequence[Bounds],
                        store: Optional[BoundaryStore] = None) -> VerificationResult:
        """Re-validate notes inside the given bounding boxes."""
        if store is not None:
            self.store = store
        if not bounds:
            return VerificationResult(mode=VerificationMode.WITHIN)
        return self._run(VerificationMode.WITHIN, list(bounds))

    def batches(self, low: int, high: int) -> List[Tuple[int, int]]:
        """Half-open id ranges covering low..high inclusive."""
        return [(start, min(start + self.batch_size, high + 1))
                for start in range(low, high + 1, self.batch_size)]

    def _run(self, mode: VerificationMode, bounds: Sequence[Bounds] = ()) -> VerificationResult:
        start_time = time.time()
        result = VerificationResult(mode=mode)

        with self.location_store_factory() as locations:
            low, high = locations.id_range()
        ranges = self.batches(low, high)
        result.batches = len(ranges)
        logger.info(f"Spatial verification ({mode.value}): {len(ranges)} batches, "
                    f"{self.max_workers} workers")

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = [executor.submit(self._process_batch, start, end, mode, bounds)
                       for start, end in ranges]
            for future in as_completed(futures):
                batch = future.result()
                result.examined += batch.examined
                result.reassigned += batch.reassigned
                if batch.error:
                    result.failed_batches.append(batch)

        result.processing_time = time.time() - start_time
        logger.info(f"Spatial verification ({mode.value}) done in {result.processing_time:.1f}s: "
                    f"{result.examined} examined, {result.reassigned} reassigned, "
                    f"{len(result.failed_batches)} failed batches")
        return result

    def _process_batch(self, start_id: int, end_id: int, mode: VerificationMode,
                       bounds: Sequence[Bounds]) -> BatchResult:
        batch = BatchResult(start_id=start_id, end_id=end_id)
        try:
            with self.location_store_factory() as locations:
                rows = locations.fetch_batch(start_id, end_id, mode, bounds)
                batch.examined = len(rows)
                assignments = []
                for note_id, lon, lat, current in rows:
                    region = self.store.resolve(lon, lat, current)
                    if region != current:
                        assignments.append((note_id, region))
                batch.reassigned = locations.apply(assignments)
        except Exception as e:
            batch.error = str(e)
            batch.reassigned = 0
            logger.error(f"Batch {start_id}-{end_id} failed: {e}")
        return batch
