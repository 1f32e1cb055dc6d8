"""
Snapshot Loader Module

Streams the planet notes dump (XML, optionally bz2/gzip compressed) into
the shadow tables notes_check, note_comments_check and
note_comments_text_check. The tables are truncated and reloaded in a single
transaction, so a reconciliation never sees a partial snapshot.

On a fresh database the same dump is copied straight into the live tables
(base load), which also seeds the ingestion cursor.
"""

import bz2
import csv
import gzip
import io
import logging
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import IO, Iterable, Iterator, List, Optional, Sequence, Tuple

from .models import (
    Comment,
    CommentEvent,
    CommentText,
    Note,
    NoteStatus,
    parse_osm_timestamp,
)
from .boundary_store import BoundaryStore
from .properties import CURSOR_KEY, PropertyStore, SNAPSHOT_CUTOFF_KEY

logger = logging.getLogger(__name__)

CHECK_TABLES = ('notes_check', 'note_comments_check', 'note_comments_text_check')

NOTE_COLUMNS = ('note_id', 'latitude', 'longitude', 'created_at', 'status', 'closed_at')
COMMENT_COLUMNS = ('note_id', 'sequence_action', 'event', 'created_at', 'id_user', 'username')
TEXT_COLUMNS = ('note_id', 'sequence_action', 'body')

PlanetNote = Tuple[Note, List[Comment], List[CommentText]]


def open_planet_file(path: str) -> IO[bytes]:
    """Open a dump file, decompressing by extension."""
    suffix = Path(path).suffix.lower()
    if suffix == '.bz2':
        return bz2.open(path, 'rb')
    if suffix == '.gz':
        return gzip.open(path, 'rb')
    return open(path, 'rb')


def parse_note_element(element: ET.Element) -> PlanetNote:
    """Convert one <note> element with its <comment> children."""
    note_id = int(element.get('id'))
    closed_at = parse_osm_timestamp(element.get('closed_at'))
    note = Note(
        note_id=note_id,
        latitude=float(element.get('lat')),
        longitude=float(element.get('lon')),
        created_at=parse_osm_timestamp(element.get('created_at')),
        status=NoteStatus.CLOSED if closed_at else NoteStatus.OPEN,
        closed_at=closed_at,
    )

    comments = []
    texts = []
    for sequence, child in enumerate(element.findall('comment'), start=1):
        uid = child.get('uid')
        comments.append(Comment(
            note_id=note_id,
            sequence_action=sequence,
            event=CommentEvent(child.get('action')),
            created_at=parse_osm_timestamp(child.get('timestamp')),
            id_user=int(uid) if uid else None,
            username=child.get('user'),
        ))
        if child.text is not None:
            texts.append(CommentText(note_id, sequence, child.text))
    return note, comments, texts


def parse_planet_notes(stream: IO[bytes]) -> Iterator[PlanetNote]:
    """
    Yield notes from a dump stream without holding the whole tree.

    Finished notes are detached from the root element, so memory use stays
    flat however many notes the dump holds.
    """
    root = None
    for event, element in ET.iterparse(stream, events=('start', 'end')):
        if root is None:
            root = element
        if event != 'end' or element.tag != 'note':
            continue
        yield parse_note_element(element)
        root.clear()


@dataclass
class SnapshotLoadResult:
    file_path: str
    notes: int = 0
    comments: int = 0
    texts: int = 0
    cutoff: Optional[datetime] = None
    processing_time: float = 0.0


class _CopyBuffer:
    """Accumulates CSV rows and flushes them with COPY."""

    def __init__(self, cursor, table: str, columns: Sequence[str], chunk_size: int,
                 depends_on: Sequence["_CopyBuffer"] = ()):
        self.cursor = cursor
        self.depends_on = depends_on
        self.sql = f"COPY {table} ({', '.join(columns)}) FROM STDIN WITH (FORMAT csv)"
        self.chunk_size = chunk_size
        self.buffer = io.StringIO()
        self.writer = csv.writer(self.buffer)
        self.pending = 0
        self.total = 0

    def add(self, row: Iterable) -> None:
        self.writer.writerow(['' if value is None else value for value in row])
        self.pending += 1
        if self.pending >= self.chunk_size:
            self.flush()

    def flush(self) -> None:
        if not self.pending:
            return
        # Referenced rows have to be in the table before the referencing ones.
        for buffer in self.depends_on:
            buffer.flush()
        self.buffer.seek(0)
        self.cursor.copy_expert(self.sql, self.buffer)
        self.total += self.pending
        self.pending = 0
        self.buffer = io.StringIO()
        self.writer = csv.writer(self.buffer)


class SnapshotLoader:
    """Loads the planet dump into the shadow tables."""

    def __init__(self, connection, chunk_size: int = 50000):
        self.connection = connection
        self.chunk_size = chunk_size

    def load(self, file_path: str) -> SnapshotLoadResult:
        """
        Replace the shadow tables with the contents of a dump file.

        The snapshot cutoff (latest timestamp in the dump) is stored with
        the data, in the same transaction.
        """
        start_time = time.time()
        result = SnapshotLoadResult(file_path=file_path)
        logger.info(f"Loading planet snapshot: {file_path}")

        try:
            with self.connection.cursor() as cursor:
                cursor.execute(f"TRUNCATE {', '.join(CHECK_TABLES)}")

                notes = _CopyBuffer(cursor, 'notes_check', NOTE_COLUMNS, self.chunk_size)
                comments = _CopyBuffer(cursor, 'note_comments_check', COMMENT_COLUMNS, self.chunk_size)
                texts = _CopyBuffer(cursor, 'note_comments_text_check', TEXT_COLUMNS, self.chunk_size)

                with open_planet_file(file_path) as stream:
                    for note, note_comments, note_texts in parse_planet_notes(stream):
                        notes.add((note.note_id, note.latitude, note.longitude,
                                   note.created_at.isoformat(), note.status.value,
                                   note.closed_at.isoformat() if note.closed_at else None))
                        latest = note.latest_timestamp
                        for comment in note_comments:
                            comments.add((comment.note_id, comment.sequence_action,
                                          comment.event.value, comment.created_at.isoformat(),
                                          comment.id_user, comment.username))
                            latest = max(latest, comment.created_at)
                        for text in note_texts:
                            texts.add((text.note_id, text.sequence_action, text.body))

                        if result.cutoff is None or latest > result.cutoff:
                            result.cutoff = latest
                        if (notes.total + notes.pending) % 500000 == 0:
                            logger.info(f"Snapshot progress: {notes.total + notes.pending:,} notes")

                for buffer in (notes, comments, texts):
                    buffer.flush()

            if result.cutoff is not None:
                PropertyStore(self.connection).set_timestamp(SNAPSHOT_CUTOFF_KEY, result.cutoff)
            self.connection.commit()

        except Exception:
            self.connection.rollback()
            logger.error(f"Snapshot load failed, shadow tables left unchanged: {file_path}")
            raise

        result.notes = notes.total
        result.comments = comments.total
        result.texts = texts.total
        result.processing_time = time.time() - start_time
        logger.info(
            f"Snapshot loaded in {result.processing_time:.1f}s: {result.notes:,} notes, "
            f"{result.comments:,} comments, {result.texts:,} texts (cutoff {result.cutoff})"
        )
        return result


LIVE_TABLES = ('notes', 'users', 'note_comments', 'note_comments_text')

LIVE_NOTE_COLUMNS = NOTE_COLUMNS + ('id_country',)
LIVE_COMMENT_COLUMNS = ('note_id', 'sequence_action', 'event', 'created_at', 'id_user')
USER_COLUMNS = ('user_id', 'username')


@dataclass
class BaseLoadResult:
    file_path: str
    notes: int = 0
    users: int = 0
    comments: int = 0
    texts: int = 0
    regions_assigned: bool = False
    cutoff: Optional[datetime] = None
    processing_time: float = 0.0


class BaseLoader:
    """Fills empty live tables straight from the planet dump."""

    def __init__(self, connection, chunk_size: int = 50000,
                 boundary_store: Optional[BoundaryStore] = None):
        """
        Args:
            connection: psycopg2 connection; the load commits on it
            chunk_size: Rows per COPY statement
            boundary_store: Regions for the loaded notes; without any the
                notes are stored with a NULL region
        """
        self.connection = connection
        self.chunk_size = chunk_size
        self.boundary_store = boundary_store or BoundaryStore()

    def live_tables_empty(self) -> bool:
        with self.connection.cursor() as cursor:
            cursor.execute("SELECT NOT EXISTS (SELECT 1 FROM notes)")
            return bool(cursor.fetchone()[0])

    def load(self, file_path: str) -> BaseLoadResult:
        """
        Copy a dump file into the live tables and seed the ingestion cursor.

        Everything, the cursor included, is written in one transaction. The
        cursor is set to the latest timestamp in the dump, so the daemon
        picks up the API from there.

        Raises:
            ValueError: The live notes table already holds data
        """
        start_time = time.time()
        result = BaseLoadResult(file_path=file_path, regions_assigned=len(self.boundary_store) > 0)
        logger.info(f"Base load from planet dump: {file_path}")

        try:
            if not self.live_tables_empty():
                raise ValueError("Live notes table is not empty, base load refused")

            with self.connection.cursor() as cursor:
                notes = _CopyBuffer(cursor, 'notes', LIVE_NOTE_COLUMNS, self.chunk_size)
                users = _CopyBuffer(cursor, 'users', USER_COLUMNS, self.chunk_size)
                comments = _CopyBuffer(cursor, 'note_comments', LIVE_COMMENT_COLUMNS,
                                       self.chunk_size, depends_on=(notes, users))
                texts = _CopyBuffer(cursor, 'note_comments_text', TEXT_COLUMNS, self.chunk_size)
                seen_users = set()

                with open_planet_file(file_path) as stream:
                    for note, note_comments, note_texts in parse_planet_notes(stream):
                        region = None
                        if result.regions_assigned:
                            region = self.boundary_store.resolve(note.longitude, note.latitude)
                        notes.add((note.note_id, note.latitude, note.longitude,
                                   note.created_at.isoformat(), note.status.value,
                                   note.closed_at.isoformat() if note.closed_at else None,
                                   region))
                        latest = note.latest_timestamp
                        for comment in note_comments:
                            if comment.id_user is not None and comment.id_user not in seen_users:
                                seen_users.add(comment.id_user)
                                users.add((comment.id_user, comment.username or str(comment.id_user)))
                            comments.add((comment.note_id, comment.sequence_action,
                                          comment.event.value, comment.created_at.isoformat(),
                                          comment.id_user))
                            latest = max(latest, comment.created_at)
                        for text in note_texts:
                            texts.add((text.note_id, text.sequence_action, text.body))

                        if result.cutoff is None or latest > result.cutoff:
                            result.cutoff = latest
                        if (notes.total + notes.pending) % 500000 == 0:
                            logger.info(f"Base load progress: {notes.total + notes.pending:,} notes")

                for buffer in (notes, users, comments, texts):
                    buffer.flush()

            if result.cutoff is not None:
                PropertyStore(self.connection).set_timestamp(CURSOR_KEY, result.cutoff)
            self.connection.commit()

        except Exception:
            self.connection.rollback()
            logger.error(f"Base load failed, live tables left unchanged: {file_path}")
            raise

        with self.connection.cursor() as cursor:
            cursor.execute(f"ANALYZE {', '.join(LIVE_TABLES)}")
        self.connection.commit()

        result.notes = notes.total
        result.users = users.total
        result.comments = comments.total
        result.texts = texts.total
        result.processing_time = time.time() - start_time
        logger.info(
            f"Base load finished in {result.processing_time:.1f}s: {result.notes:,} notes, "
            f"{result.users:,} users, {result.comments:,} comments, {result.texts:,} texts "
            f"(cursor {result.cutoff})"
        )
        return result
