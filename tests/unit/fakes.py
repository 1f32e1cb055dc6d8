"""
In-memory stand-ins for the database-backed collaborators.

FakeDatabase keeps a committed and a pending copy of its tables so tests can
check what a component leaves behind after commit or rollback.
"""

import copy
from datetime import datetime, timezone

from notes_ingestion.errors import LockContention, RepairConflict, UpstreamUnavailable
from notes_ingestion.maintenance import MaintenanceResult
from notes_ingestion.models import NoteStatus
from notes_ingestion.reconciliation_store import LIVE, SNAPSHOT


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


class FakeDatabase:
    """Tables as dictionaries, with transactional semantics."""

    TABLES = ('notes', 'comments', 'texts', 'users', 'properties', 'gaps',
              'notes_check', 'comments_check', 'texts_check', 'history')

    def __init__(self):
        self.committed = {name: {} for name in self.TABLES}
        self.committed['gaps'] = []
        self.committed['history'] = []
        self.pending = copy.deepcopy(self.committed)
        self.commits = 0
        self.rollbacks = 0

    def __getitem__(self, table):
        return self.pending[table]

    def commit(self):
        self.committed = copy.deepcopy(self.pending)
        self.commits += 1

    def rollback(self):
        self.pending = copy.deepcopy(self.committed)
        self.rollbacks += 1


class FakeProperties:
    def __init__(self, db):
        self.db = db

    def get(self, key):
        return self.db['properties'].get(key)

    def set(self, key, value):
        self.db['properties'][key] = value

    def get_timestamp(self, key):
        value = self.get(key)
        return datetime.fromisoformat(value) if value else None

    def set_timestamp(self, key, value):
        self.set(key, value.isoformat())


class FakeNoteRepository:
    """Same interface as NoteRepository over a FakeDatabase."""

    def __init__(self, db, fail_on_upsert=None):
        self.db = db
        self.fail_on_upsert = fail_on_upsert
        self.writes = 0

    def commit(self):
        self.db.commit()

    def rollback(self):
        self.db.rollback()

    def is_empty(self):
        return not self.db['notes']

    def existing_regions(self, note_ids):
        return {nid: self.db['notes'][nid].id_country for nid in note_ids if nid in self.db['notes']}

    def known_user_ids(self, user_ids):
        return {uid for uid in user_ids if uid in self.db['users']}

    def upsert_users(self, users):
        for user in users:
            self.db['users'][user.user_id] = user.username
        self.writes += len(users)
        return len(users)

    def upsert_notes(self, notes):
        if self.fail_on_upsert:
            raise self.fail_on_upsert
        inserted = updated = 0
        for note in notes:
            stored = self.db['notes'].get(note.note_id)
            if stored is None:
                self.db['notes'][note.note_id] = copy.copy(note)
                inserted += 1
            else:
                stored.status = note.status
                stored.closed_at = note.closed_at
                if note.id_country is not None:
                    stored.id_country = note.id_country
                updated += 1
        self.writes += len(notes)
        return inserted, updated

    def insert_comments(self, comments):
        count = 0
        for comment in comments:
            if comment.natural_key not in self.db['comments']:
                self.db['comments'][comment.natural_key] = copy.copy(comment)
                count += 1
        self.writes += count
        return count

    def insert_texts(self, texts):
        count = 0
        for text in texts:
            key = text.natural_key
            if key in self.db['comments'] and key not in self.db['texts']:
                self.db['texts'][key] = copy.copy(text)
                count += 1
        self.writes += count
        return count

    def notes_without_comments(self, note_ids, created_before):
        with_comments = {note_id for note_id, _ in self.db['comments']}
        return sorted(nid for nid in note_ids
                      if nid in self.db['notes']
                      and self.db['notes'][nid].created_at < created_before
                      and nid not in with_comments)

    def record_gap(self, gap_type, gap_note_ids, total_count):
        self.db['gaps'].append((gap_type, list(gap_note_ids), total_count))


class FakeApiClient:
    """Returns scripted batches; an exception in the script is raised."""

    def __init__(self, responses, page_limit=10000):
        self.responses = list(responses)
        self.page_limit = page_limit
        self.calls = []

    def fetch_changes(self, since):
        self.calls.append(since)
        if not self.responses:
            from notes_ingestion.models import NoteBatch
            return NoteBatch()
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def unavailable():
    return UpstreamUnavailable('notes API', 3, 'connection refused')


class FakeLockRegistry:
    """Shared lock table for several FakeLock instances."""

    def __init__(self):
        self.holders = {}


class FakeLock:
    def __init__(self, registry, owner, lock_name='daemon'):
        self.registry = registry
        self.owner = owner
        self.lock_name = lock_name
        self.held = False

    def acquire(self):
        holder = self.registry.holders.get(self.lock_name)
        if holder is not None and holder != self.owner:
            raise LockContention(self.lock_name, holder)
        self.registry.holders[self.lock_name] = self.owner
        self.held = True

    def release(self):
        if self.held and self.registry.holders.get(self.lock_name) == self.owner:
            del self.registry.holders[self.lock_name]
        self.held = False


class FakeMaintenance:
    def __init__(self):
        self.calls = []

    def run_if_due(self, touched, timer):
        self.calls.append(dict(touched))
        return MaintenanceResult()


class FakeReconciliationStore:
    """ReconciliationStore over a FakeDatabase."""

    SIDES = {
        LIVE: ('notes', 'comments', 'texts'),
        SNAPSHOT: ('notes_check', 'comments_check', 'texts_check'),
    }

    def __init__(self, db, cutoff=None, conflict_on=()):
        self.db = db
        self.cutoff = cutoff
        self.conflict_on = set(conflict_on)
        self.analyzed = []
        self._next_history_id = 1

    def commit(self):
        self.db.commit()

    def rollback(self):
        self.db.rollback()

    def snapshot_cutoff(self):
        return self.cutoff

    def iter_notes(self, side, before):
        table = self.db[self.SIDES[side][0]]
        for note_id in sorted(table):
            if table[note_id].created_at < before:
                yield copy.copy(table[note_id])

    def iter_comments(self, side, before):
        table = self.db[self.SIDES[side][1]]
        for key in sorted(table):
            if table[key].created_at < before:
                yield copy.copy(table[key])

    def iter_texts(self, side, before):
        comments = self.db[self.SIDES[side][1]]
        table = self.db[self.SIDES[side][2]]
        for key in sorted(table):
            if key in comments and comments[key].created_at < before:
                yield copy.copy(table[key])

    def append_history(self, entity, note_id, sequence_action=None):
        history_id = self._next_history_id
        self._next_history_id += 1
        self.db['history'].append({'id': history_id, 'entity': entity, 'note_id': note_id,
                                   'sequence_action': sequence_action, 'inserted': False})
        return history_id

    def mark_inserted(self, entity, history_id):
        for row in self.db['history']:
            if row['id'] == history_id:
                row['inserted'] = True

    def insert_note(self, note):
        if note.note_id in self.conflict_on:
            self.db['notes'][note.note_id] = copy.copy(note)
            raise RepairConflict(f"Note {note.note_id} already exists")
        if note.note_id in self.db['notes']:
            raise RepairConflict(f"Note {note.note_id} already exists")
        self.db['notes'][note.note_id] = copy.copy(note)

    def hide_note(self, note_id):
        note = self.db['notes'].get(note_id)
        if note is None or note.status == NoteStatus.HIDDEN:
            return False
        note.status = NoteStatus.HIDDEN
        return True

    def repair_note_position(self, note):
        stored = self.db['notes'].get(note.note_id)
        if stored is None:
            return False
        stored.latitude = note.latitude
        stored.longitude = note.longitude
        stored.created_at = note.created_at
        stored.id_country = None
        return True

    def note_exists(self, note_id):
        return note_id in self.db['notes']

    def user_exists(self, user_id):
        return user_id in self.db['users']

    def insert_user(self, user):
        self.db['users'].setdefault(user.user_id, user.username)

    def comment_exists(self, note_id, sequence_action):
        return (note_id, sequence_action) in self.db['comments']

    def insert_comment(self, comment):
        if comment.natural_key in self.db['comments']:
            raise RepairConflict(f"Comment {comment.natural_key} already exists")
        self.db['comments'][comment.natural_key] = copy.copy(comment)

    def insert_text(self, text):
        if text.natural_key in self.db['texts']:
            raise RepairConflict(f"Text {text.natural_key} already exists")
        self.db['texts'][text.natural_key] = copy.copy(text)

    def analyze(self, tables):
        self.analyzed.append(list(tables))


class FakeLocationStore:
    """NoteLocationStore over a shared dict of note_id -> [lon, lat, region]."""

    def __init__(self, rows, fail_ranges=()):
        self.rows = rows
        self.fail_ranges = set(fail_ranges)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        return False

    def id_range(self):
        if not self.rows:
            return 0, -1
        return min(self.rows), max(self.rows)

    def fetch_batch(self, start_id, end_id, mode, bounds=()):
        if (start_id, end_id) in self.fail_ranges:
            raise RuntimeError("batch failed")
        selected = []
        for note_id in sorted(self.rows):
            if not start_id <= note_id < end_id:
                continue
            lon, lat, region = self.rows[note_id]
            if mode.value == 'missing' and region is not None:
                continue
            if mode.value == 'within' and not any(
                    b[0] <= lon <= b[2] and b[1] <= lat <= b[3] for b in bounds):
                continue
            selected.append((note_id, lon, lat, region))
        return selected

    def apply(self, assignments):
        for note_id, region in assignments:
            self.rows[note_id][2] = region
        return len(assignments)


class FakeRegionRepository:
    """Stored regions with the version stamp the daemon polls."""

    def __init__(self, regions=(), refreshed_at=None):
        self.regions = list(regions)
        self.refreshed_at = refreshed_at
        self.loads = 0

    def regions_version(self):
        return len(self.regions), self.refreshed_at

    def load_regions(self):
        self.loads += 1
        return list(self.regions)
