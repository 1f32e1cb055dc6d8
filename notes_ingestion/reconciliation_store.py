"""
Reconciliation Store Module

SQL access used by the reconciliation engine: key-ordered streams over the
live and shadow tables, conflict-safe repair statements and the repair
history tables.
"""

import logging
from datetime import datetime
from typing import Iterator, Optional, Sequence

from .errors import RepairConflict
from .models import (
    Comment,
    CommentEvent,
    CommentText,
    Note,
    NoteStatus,
    RepairEntity,
    User,
)
from .properties import PropertyStore, SNAPSHOT_CUTOFF_KEY

logger = logging.getLogger(__name__)

LIVE = 'live'
SNAPSHOT = 'snapshot'

_TABLES = {
    LIVE: {'notes': 'notes', 'comments': 'note_comments', 'texts': 'note_comments_text'},
    SNAPSHOT: {'notes': 'notes_check', 'comments': 'note_comments_check',
               'texts': 'note_comments_text_check'},
}


class ReconciliationStore:
    """Reads both sides in natural-key order and applies single repairs."""

    def __init__(self, connection, itersize: int = 10000):
        self.connection = connection
        self.itersize = itersize
        self.properties = PropertyStore(connection)

    def commit(self) -> None:
        self.connection.commit()

    def rollback(self) -> None:
        self.connection.rollback()

    def snapshot_cutoff(self) -> Optional[datetime]:
        return self.properties.get_timestamp(SNAPSHOT_CUTOFF_KEY)

    # Ordered streams

    def _stream(self, name: str, sql: str, params: Sequence) -> Iterator[tuple]:
        with self.connection.cursor(name=name) as cursor:
            cursor.itersize = self.itersize
            cursor.execute(sql, params)
            for row in cursor:
                yield row

    def iter_notes(self, side: str, before: datetime) -> Iterator[Note]:
        table = _TABLES[side]['notes']
        sql = f"""
            SELECT note_id, latitude, longitude, created_at, status, closed_at
            FROM {table}
            WHERE created_at < %s
            ORDER BY note_id
        """
        for note_id, lat, lon, created_at, status, closed_at in self._stream(
                f"reconcile_{side}_notes", sql, (before,)):
            yield Note(note_id=note_id, latitude=float(lat), longitude=float(lon),
                       created_at=created_at, status=NoteStatus(status), closed_at=closed_at)

    def iter_comments(self, side: str, before: datetime) -> Iterator[Comment]:
        table = _TABLES[side]['comments']
        username = "username" if side == SNAPSHOT else "NULL"
        sql = f"""
            SELECT note_id, sequence_action, event, created_at, id_user, {username}
            FROM {table}
            WHERE created_at < %s
            ORDER BY note_id, sequence_action
        """
        for note_id, sequence, event, created_at, id_user, name in self._stream(
                f"reconcile_{side}_comments", sql, (before,)):
            yield Comment(note_id=note_id, sequence_action=sequence, event=CommentEvent(event),
                          created_at=created_at, id_user=id_user, username=name)

    def iter_texts(self, side: str, before: datetime) -> Iterator[CommentText]:
        tables = _TABLES[side]
        sql = f"""
            SELECT t.note_id, t.sequence_action, t.body
            FROM {tables['texts']} t
            JOIN {tables['comments']} c
              ON c.note_id = t.note_id AND c.sequence_action = t.sequence_action
            WHERE c.created_at < %s
            ORDER BY t.note_id, t.sequence_action
        """
        for note_id, sequence, body in self._stream(f"reconcile_{side}_texts", sql, (before,)):
            yield CommentText(note_id=note_id, sequence_action=sequence, body=body)

    # Repair history

    def append_history(self, entity: RepairEntity, note_id: int,
                       sequence_action: Optional[int] = None) -> int:
        with self.connection.cursor() as cursor:
            cursor.execute(f"""
                INSERT INTO {entity.value} (note_id, sequence_action, detected_at, inserted)
                VALUES (%s, %s, CURRENT_TIMESTAMP, FALSE)
                RETURNING id
            """, (note_id, sequence_action))
            return cursor.fetchone()[0]

    def mark_inserted(self, entity: RepairEntity, history_id: int) -> None:
        with self.connection.cursor() as cursor:
            cursor.execute(f"""
                UPDATE {entity.value}
                SET inserted = TRUE, inserted_at = CURRENT_TIMESTAMP
                WHERE id = %s
            """, (history_id,))

    # Notes

    def insert_note(self, note: Note) -> None:
        """Insert a note missing from the live table; RepairConflict if it exists."""
        with self.connection.cursor() as cursor:
            cursor.execute("""
                INSERT INTO notes (note_id, latitude, longitude, created_at, status, closed_at)
                VALUES (%s, %s, %s, %s, %s::note_status_enum, %s)
                ON CONFLICT (note_id) DO NOTHING
                RETURNING note_id
            """, (note.note_id, note.latitude, note.longitude, note.created_at,
                  note.status.value, note.closed_at))
            if cursor.fetchone() is None:
                raise RepairConflict(f"Note {note.note_id} already exists")

    def hide_note(self, note_id: int) -> bool:
        with self.connection.cursor() as cursor:
            cursor.execute("""
                UPDATE notes
                SET status = 'hidden',
                    closed_at = COALESCE(closed_at, CURRENT_TIMESTAMP),
                    update_time = CURRENT_TIMESTAMP
                WHERE note_id = %s AND status <> 'hidden'
            """, (note_id,))
            return cursor.rowcount > 0

    def repair_note_position(self, note: Note) -> bool:
        """Copy position and creation time from the snapshot record."""
        with self.connection.cursor() as cursor:
            cursor.execute("""
                UPDATE notes
                SET latitude = %s, longitude = %s, created_at = %s,
                    id_country = NULL, update_time = CURRENT_TIMESTAMP
                WHERE note_id = %s
            """, (note.latitude, note.longitude, note.created_at, note.note_id))
            return cursor.rowcount > 0

    def note_exists(self, note_id: int) -> bool:
        with self.connection.cursor() as cursor:
            cursor.execute("SELECT 1 FROM notes WHERE note_id = %s", (note_id,))
            return cursor.fetchone() is not None

    # Users, comments and texts

    def user_exists(self, user_id: int) -> bool:
        with self.connection.cursor() as cursor:
            cursor.execute("SELECT 1 FROM users WHERE user_id = %s", (user_id,))
            return cursor.fetchone() is not None

    def insert_user(self, user: User) -> None:
        with self.connection.cursor() as cursor:
            cursor.execute("""
                INSERT INTO users (user_id, username) VALUES (%s, %s)
                ON CONFLICT (user_id) DO NOTHING
            """, (user.user_id, user.username))

    def comment_exists(self, note_id: int, sequence_action: int) -> bool:
        with self.connection.cursor() as cursor:
            cursor.execute("""
                SELECT 1 FROM note_comments WHERE note_id = %s AND sequence_action = %s
            """, (note_id, sequence_action))
            return cursor.fetchone() is not None

    def insert_comment(self, comment: Comment) -> None:
        with self.connection.cursor() as cursor:
            cursor.execute("""
                INSERT INTO note_comments (note_id, sequence_action, event, created_at, id_user)
                VALUES (%s, %s, %s::note_event_enum, %s, %s)
                ON CONFLICT (note_id, sequence_action) DO NOTHING
                RETURNING id
            """, (comment.note_id, comment.sequence_action, comment.event.value,
                  comment.created_at, comment.id_user))
            if cursor.fetchone() is None:
                raise RepairConflict(f"Comment {comment.natural_key} already exists")

    def insert_text(self, text: CommentText) -> None:
        with self.connection.cursor() as cursor:
            cursor.execute("""
                INSERT INTO note_comments_text (note_id, sequence_action, body)
                VALUES (%s, %s, %s)
                ON CONFLICT (note_id, sequence_action) DO NOTHING
                RETURNING id
            """, (text.note_id, text.sequence_action, text.body))
            if cursor.fetchone() is None:
                raise RepairConflict(f"Text {text.natural_key} already exists")

    def analyze(self, tables: Sequence[str]) -> None:
        with self.connection.cursor() as cursor:
            for table in tables:
                cursor.execute(f"ANALYZE {table}")
        self.connection.commit()
