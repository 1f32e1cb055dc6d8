"""
Key/value process state stored in the properties table.

Callers own the transaction: values written here become visible when the
caller commits, so the ingestion cursor advances together with the rows it
covers.
"""

import logging
from datetime import datetime
from typing import Optional

logger = logging.getLogger(__name__)

CURSOR_KEY = 'last_processed_timestamp'
SEQUENCE_SYNC_KEY = 'last_sequence_sync'
SNAPSHOT_CUTOFF_KEY = 'planet_cutoff'


def analyze_key(table: str) -> str:
    return f'last_analyze_{table}'


class PropertyStore:
    """Single-row lookups and upserts against the properties table."""

    def __init__(self, connection):
        self.connection = connection

    def get(self, key: str) -> Optional[str]:
        with self.connection.cursor() as cursor:
            cursor.execute("SELECT value FROM properties WHERE key = %s", (key,))
            row = cursor.fetchone()
            return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        with self.connection.cursor() as cursor:
            cursor.execute("""
                INSERT INTO properties (key, value, updated_at)
                VALUES (%s, %s, CURRENT_TIMESTAMP)
                ON CONFLICT (key) DO UPDATE
                SET value = EXCLUDED.value, updated_at = EXCLUDED.updated_at
            """, (key, value))
        logger.debug(f"Property {key} set to {value}")

    def get_timestamp(self, key: str) -> Optional[datetime]:
        value = self.get(key)
        return datetime.fromisoformat(value) if value else None

    def set_timestamp(self, key: str, value: datetime) -> None:
        self.set(key, value.isoformat())
