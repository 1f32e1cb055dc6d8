"""
Note Repository Module

Bulk writes of API batches into the live tables. Every statement is an
upsert or a conflict-safe insert so it can interleave with reconciliation.
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple

from psycopg2.extras import execute_values

from .models import Comment, CommentText, Note, User

logger = logging.getLogger(__name__)


class NoteRepository:
    """Writes notes, comments, texts and users on one connection."""

    def __init__(self, connection, page_size: int = 1000):
        self.connection = connection
        self.page_size = page_size

    def commit(self) -> None:
        self.connection.commit()

    def rollback(self) -> None:
        self.connection.rollback()

    def is_empty(self) -> bool:
        """Whether the live notes table holds no note at all."""
        with self.connection.cursor() as cursor:
            cursor.execute("SELECT NOT EXISTS (SELECT 1 FROM notes)")
            return bool(cursor.fetchone()[0])

    def existing_regions(self, note_ids: Iterable[int]) -> Dict[int, Optional[int]]:
        """Current region of every already stored note among `note_ids`."""
        ids = list(note_ids)
        if not ids:
            return {}
        with self.connection.cursor() as cursor:
            cursor.execute("""
                SELECT note_id, id_country FROM notes WHERE note_id = ANY(%s)
            """, (ids,))
            return {note_id: region for note_id, region in cursor.fetchall()}

    def known_user_ids(self, user_ids: Iterable[int]) -> Set[int]:
        ids = list(user_ids)
        if not ids:
            return set()
        with self.connection.cursor() as cursor:
            cursor.execute("SELECT user_id FROM users WHERE user_id = ANY(%s)", (ids,))
            return {row[0] for row in cursor.fetchall()}

    def upsert_users(self, users: List[User]) -> int:
        """Insert users, overwriting the username of existing ones."""
        if not users:
            return 0
        with self.connection.cursor() as cursor:
            execute_values(cursor, """
                INSERT INTO users (user_id, username) VALUES %s
                ON CONFLICT (user_id) DO UPDATE SET username = EXCLUDED.username
            """, [(user.user_id, user.username) for user in users], page_size=self.page_size)
        return len(users)

    def upsert_notes(self, notes: List[Note]) -> Tuple[int, int]:
        """
        Insert notes; existing notes get their mutable fields overwritten.

        A region computed for this batch replaces the stored one, an
        unresolved (NULL) region keeps what is stored.

        Returns:
            Tuple of (inserted, updated) counts
        """
        if not notes:
            return 0, 0
        rows = [
            (note.note_id, note.latitude, note.longitude, note.created_at,
             note.status.value, note.closed_at, note.id_country)
            for note in notes
        ]
        with self.connection.cursor() as cursor:
            results = execute_values(cursor, """
                INSERT INTO notes (note_id, latitude, longitude, created_at, status, closed_at, id_country)
                VALUES %s
                ON CONFLICT (note_id) DO UPDATE
                SET status = EXCLUDED.status,
                    closed_at = EXCLUDED.closed_at,
                    id_country = COALESCE(EXCLUDED.id_country, notes.id_country),
                    update_time = CURRENT_TIMESTAMP
                RETURNING (xmax = 0) AS inserted
            """, rows, template="(%s, %s, %s, %s, %s::note_status_enum, %s, %s)",
                page_size=self.page_size, fetch=True)
        inserted = sum(1 for (was_inserted,) in results if was_inserted)
        return inserted, len(results) - inserted

    def insert_comments(self, comments: List[Comment]) -> int:
        """Insert comments not yet stored under their natural key."""
        if not comments:
            return 0
        rows = [
            (comment.note_id, comment.sequence_action, comment.event.value,
             comment.created_at, comment.id_user)
            for comment in comments
        ]
        with self.connection.cursor() as cursor:
            results = execute_values(cursor, """
                INSERT INTO note_comments (note_id, sequence_action, event, created_at, id_user)
                VALUES %s
                ON CONFLICT (note_id, sequence_action) DO NOTHING
                RETURNING id
            """, rows, template="(%s, %s, %s::note_event_enum, %s, %s)",
                page_size=self.page_size, fetch=True)
        return len(results)

    def insert_texts(self, texts: List[CommentText]) -> int:
        """Insert comment texts whose owning comment is stored."""
        if not texts:
            return 0
        rows = [(text.note_id, text.sequence_action, text.body) for text in texts]
        with self.connection.cursor() as cursor:
            results = execute_values(cursor, """
                INSERT INTO note_comments_text (note_id, sequence_action, body)
                SELECT v.note_id, v.sequence_action, v.body
                FROM (VALUES %s) AS v (note_id, sequence_action, body)
                WHERE EXISTS (
                    SELECT 1 FROM note_comments c
                    WHERE c.note_id = v.note_id AND c.sequence_action = v.sequence_action
                )
                ON CONFLICT (note_id, sequence_action) DO NOTHING
                RETURNING id
            """, rows, template="(%s::integer, %s::integer, %s::text)",
                page_size=self.page_size, fetch=True)
        return len(results)

    def notes_without_comments(self, note_ids: Iterable[int], created_before: datetime) -> List[int]:
        """Notes among `note_ids` created before the given time that have no comment."""
        ids = list(note_ids)
        if not ids:
            return []
        with self.connection.cursor() as cursor:
            cursor.execute("""
                SELECT n.note_id FROM notes n
                WHERE n.note_id = ANY(%s)
                  AND n.created_at < %s
                  AND NOT EXISTS (SELECT 1 FROM note_comments c WHERE c.note_id = n.note_id)
                ORDER BY n.note_id
            """, (ids, created_before))
            return [row[0] for row in cursor.fetchall()]

    def record_gap(self, gap_type: str, gap_note_ids: List[int], total_count: int) -> None:
        percentage = round(len(gap_note_ids) * 100.0 / total_count, 2) if total_count else 0
        with self.connection.cursor() as cursor:
            cursor.execute("""
                INSERT INTO data_gaps (gap_type, gap_count, total_count, gap_percentage, note_ids)
                VALUES (%s, %s, %s, %s, %s)
            """, (gap_type, len(gap_note_ids), total_count, percentage, gap_note_ids))
        logger.warning(f"Recorded data gap '{gap_type}': {len(gap_note_ids)}/{total_count} notes")
