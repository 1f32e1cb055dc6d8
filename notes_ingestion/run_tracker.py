"""
Run Tracker Module

Records daemon cycles, reconciliation runs and boundary refreshes in the
process_runs table and answers status queries about them.
"""

import json
import logging
import uuid
from typing import Any, Dict, List, Optional

from psycopg2.extras import RealDictCursor

from .database import connect
from .models import RepairEntity

logger = logging.getLogger(__name__)


class RunTracker:
    """Persists one record per processing run on its own connection."""

    def __init__(self, db_config: Dict[str, Any]):
        """
        Initialize run tracker with database configuration.

        Args:
            db_config: Database connection configuration
        """
        self.db_config = db_config
        self.connection = None

    def connect(self) -> None:
        """Establish database connection."""
        self.connection = connect(self.db_config)

    def disconnect(self) -> None:
        """Close database connection."""
        if self.connection:
            self.connection.close()
            self.connection = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()

    def start_run(self, kind: str, details: Optional[Dict[str, Any]] = None) -> str:
        """
        Create a new run record in RUNNING state.

        Args:
            kind: Run kind ('cycle', 'base', 'check', 'boundaries')
            details: Free-form parameters of the run

        Returns:
            str: UUID of the created run
        """
        run_id = str(uuid.uuid4())

        try:
            with self.connection.cursor() as cursor:
                cursor.execute("""
                    INSERT INTO process_runs (run_id, kind, status, details)
                    VALUES (%s, %s, %s, %s)
                """, (run_id, kind, 'RUNNING', json.dumps(details or {}, default=str)))
            self.connection.commit()
            logger.debug(f"Started {kind} run: {run_id}")
            return run_id

        except Exception as e:
            self.connection.rollback()
            logger.error(f"Failed to create run record: {e}")
            raise

    def complete_run(self, run_id: str, status: str = 'COMPLETED',
                     counts: Optional[Dict[str, Any]] = None,
                     stage_timings: Optional[List[Dict[str, Any]]] = None,
                     error_message: Optional[str] = None) -> None:
        """
        Mark a run as finished with its statistics.

        Args:
            run_id: UUID of the run
            status: Final status ('COMPLETED', 'FAILED', 'SKIPPED')
            counts: Per-entity counters of the run
            stage_timings: Timing records collected by a StageTimer
            error_message: Error message if status is 'FAILED'
        """
        try:
            with self.connection.cursor() as cursor:
                cursor.execute("""
                    UPDATE process_runs
                    SET completed_at = CURRENT_TIMESTAMP,
                        status = %s,
                        counts = %s,
                        stage_timings = %s,
                        error_message = %s
                    WHERE run_id = %s
                """, (status, json.dumps(counts or {}, default=str),
                      json.dumps(stage_timings or [], default=str), error_message, run_id))
            self.connection.commit()
            logger.debug(f"Run {run_id} completed with status: {status}")

        except Exception as e:
            self.connection.rollback()
            logger.error(f"Failed to complete run record: {e}")
            raise

    def get_run_status(self, run_id: str) -> Optional[Dict[str, Any]]:
        """Get the record of one run, or None if not found."""
        with self.connection.cursor(cursor_factory=RealDictCursor) as cursor:
            cursor.execute("SELECT * FROM process_runs WHERE run_id = %s", (run_id,))
            result = cursor.fetchone()
            return dict(result) if result else None

    def get_recent_runs(self, kind: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
        """
        Get the most recent runs, newest first.

        Args:
            kind: Restrict to one run kind
            limit: Maximum number of runs to return
        """
        with self.connection.cursor(cursor_factory=RealDictCursor) as cursor:
            if kind:
                cursor.execute("""
                    SELECT * FROM process_runs WHERE kind = %s
                    ORDER BY started_at DESC LIMIT %s
                """, (kind, limit))
            else:
                cursor.execute("""
                    SELECT * FROM process_runs ORDER BY started_at DESC LIMIT %s
                """, (limit,))
            return [dict(row) for row in cursor.fetchall()]

    def get_repair_summary(self, days: int = 30) -> Dict[str, Dict[str, int]]:
        """
        Count detected and inserted records in the repair history tables.

        Returns:
            Mapping of history table name to {'detected': n, 'inserted': n}
        """
        summary = {}
        with self.connection.cursor() as cursor:
            for entity in RepairEntity:
                cursor.execute(f"""
                    SELECT COUNT(*), COUNT(*) FILTER (WHERE inserted)
                    FROM {entity.value}
                    WHERE detected_at >= CURRENT_TIMESTAMP - make_interval(days => %s)
                """, (days,))
                detected, inserted = cursor.fetchone()
                summary[entity.value] = {'detected': detected, 'inserted': inserted}
        return summary
