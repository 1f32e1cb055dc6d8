"""
Conditional table maintenance.

ANALYZE and comment-id sequence synchronization are expensive, so they run
only when the cached "last performed" timestamp is older than the configured
interval or when a cycle touched enough rows.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from .properties import PropertyStore, SEQUENCE_SYNC_KEY, analyze_key
from .timing import StageTimer

logger = logging.getLogger(__name__)

ANALYZED_TABLES = ('notes', 'note_comments', 'note_comments_text')


@dataclass
class MaintenanceResult:
    analyzed_tables: List[str] = field(default_factory=list)
    sequence_synced: bool = False


class MaintenanceManager:
    """Decides and performs statistics refresh and sequence synchronization."""

    def __init__(self, connection, properties: PropertyStore,
                 analyze_interval_hours: float = 6, analyze_row_threshold: int = 100,
                 sequence_sync_interval_hours: float = 1,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.connection = connection
        self.properties = properties
        self.analyze_interval = timedelta(hours=analyze_interval_hours)
        self.analyze_row_threshold = analyze_row_threshold
        self.sequence_sync_interval = timedelta(hours=sequence_sync_interval_hours)
        self._clock = clock

    def analyze_due(self, table: str, touched_rows: int, timer: StageTimer) -> bool:
        """Whether `table` needs ANALYZE; the cached lookup is timed."""
        with timer.stage(f"maintenance check {table}"):
            last_run = self.properties.get_timestamp(analyze_key(table))

        if touched_rows > self.analyze_row_threshold:
            return True
        return last_run is None or self._clock() - last_run >= self.analyze_interval

    def run_if_due(self, touched: Dict[str, int], timer: StageTimer) -> MaintenanceResult:
        """
        Run the maintenance that is due and commit it.

        Args:
            touched: Rows written per table during the cycle
            timer: Stage timer of the current cycle
        """
        result = MaintenanceResult()

        for table in ANALYZED_TABLES:
            if not self.analyze_due(table, touched.get(table, 0), timer):
                continue
            with timer.stage(f"analyze {table}"):
                with self.connection.cursor() as cursor:
                    cursor.execute(f"ANALYZE {table}")
                self.properties.set_timestamp(analyze_key(table), self._clock())
            result.analyzed_tables.append(table)

        with timer.stage("maintenance check sequence"):
            last_sync = self.properties.get_timestamp(SEQUENCE_SYNC_KEY)
        if last_sync is None or self._clock() - last_sync >= self.sequence_sync_interval:
            with timer.stage("sequence sync"):
                self.sync_comment_sequence()
                self.properties.set_timestamp(SEQUENCE_SYNC_KEY, self._clock())
            result.sequence_synced = True

        self.connection.commit()
        if result.analyzed_tables:
            logger.info(f"Analyzed tables: {', '.join(result.analyzed_tables)}")
        return result

    def sync_comment_sequence(self) -> Optional[int]:
        """
        Move the note_comments id sequence past the highest stored id.

        Returns:
            New sequence value, or None when it was already ahead
        """
        with self.connection.cursor() as cursor:
            cursor.execute("SELECT COALESCE(MAX(id), 0) FROM note_comments")
            max_id = cursor.fetchone()[0]
            cursor.execute("""
                SELECT last_value FROM pg_sequences
                WHERE schemaname = current_schema() AND sequencename = 'note_comments_id_seq'
            """)
            row = cursor.fetchone()
            last_value = row[0] if row and row[0] is not None else 0
            if last_value >= max_id:
                return None
            cursor.execute("SELECT setval('note_comments_id_seq', %s)", (max_id,))
        logger.info(f"note_comments_id_seq moved from {last_value} to {max_id}")
        return max_id
