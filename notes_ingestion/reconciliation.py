"""
Reconciliation Engine Module

Compares the live tables with the planet snapshot loaded into the shadow
tables and repairs the live side:

- notes, comments and texts present only in the snapshot are inserted and
  recorded in the repair history tables
- closed notes present only in the live tables are marked hidden
- position or creation time drift is corrected from the snapshot, status
  drift is only reported

Each repair is its own transaction, and running the engine twice in a row
performs no repairs the second time.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time, timezone
from typing import Callable, Dict, List, Optional

from .differences import (
    Difference,
    DifferenceKind,
    NOTE_COMPARED_FIELDS,
    merge_differences,
)
from .errors import ReferentialGap, RepairConflict
from .models import Comment, CommentText, Note, NoteStatus, RepairEntity, User
from .reconciliation_store import LIVE, SNAPSHOT, ReconciliationStore
from .spatial_verifier import SpatialVerifier, VerificationResult
from .timing import StageTimer, StageTiming

logger = logging.getLogger(__name__)

POSITION_FIELDS = ('latitude', 'longitude', 'created_at')


@dataclass
class DifferenceReport:
    """Classified differences between the live tables and the snapshot."""
    horizon: datetime
    missing_notes: List[Note] = field(default_factory=list)
    hide_candidates: List[Note] = field(default_factory=list)
    kept_live_only: List[int] = field(default_factory=list)
    position_drift: List[Difference] = field(default_factory=list)
    status_drift: List[Difference] = field(default_factory=list)
    missing_comments: List[Comment] = field(default_factory=list)
    live_only_comments: int = 0
    missing_texts: List[CommentText] = field(default_factory=list)

    def summary(self) -> Dict[str, int]:
        return {
            'missing_notes': len(self.missing_notes),
            'hide_candidates': len(self.hide_candidates),
            'kept_live_only': len(self.kept_live_only),
            'position_drift': len(self.position_drift),
            'status_drift': len(self.status_drift),
            'missing_comments': len(self.missing_comments),
            'live_only_comments': self.live_only_comments,
            'missing_texts': len(self.missing_texts),
        }


@dataclass
class ReconciliationResult:
    """Result of one reconciliation run."""
    started_at: datetime
    horizon: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    success: bool = False
    differences: Dict[str, int] = field(default_factory=dict)
    notes_inserted: int = 0
    notes_hidden: int = 0
    notes_repaired: int = 0
    status_mismatches: int = 0
    users_inserted: int = 0
    comments_inserted: int = 0
    texts_inserted: int = 0
    conflicts: int = 0
    skipped: int = 0
    failed: int = 0
    analyzed_tables: List[str] = field(default_factory=list)
    verification: Optional[VerificationResult] = None
    full_verification: Optional[VerificationResult] = None
    error_messages: List[str] = field(default_factory=list)
    stage_timings: List[StageTiming] = field(default_factory=list)

    @property
    def total_repairs(self) -> int:
        return (self.notes_inserted + self.notes_hidden + self.notes_repaired
                + self.users_inserted + self.comments_inserted + self.texts_inserted)

    def counts(self) -> Dict[str, int]:
        return {
            'notes_inserted': self.notes_inserted,
            'notes_hidden': self.notes_hidden,
            'notes_repaired': self.notes_repaired,
            'status_mismatches': self.status_mismatches,
            'users_inserted': self.users_inserted,
            'comments_inserted': self.comments_inserted,
            'texts_inserted': self.texts_inserted,
            'conflicts': self.conflicts,
            'skipped': self.skipped,
            'failed': self.failed,
        }


def start_of_day(day: date) -> datetime:
    return datetime.combine(day, dt_time.min, tzinfo=timezone.utc)


def compute_horizon(today: date, snapshot_cutoff: Optional[datetime]) -> datetime:
    """Records dated at or after the horizon are not compared."""
    horizon = start_of_day(today)
    if snapshot_cutoff is not None and snapshot_cutoff < horizon:
        return snapshot_cutoff
    return horizon


class ReconciliationEngine:
    """Detects and repairs drift between live data and the snapshot."""

    def __init__(self, store: ReconciliationStore,
                 spatial_verifier: Optional[SpatialVerifier] = None,
                 full_verification: bool = False,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.store = store
        self.spatial_verifier = spatial_verifier
        self.full_verification = full_verification
        self._clock = clock

    # Detection

    def detect(self, horizon: datetime, today_start: datetime) -> DifferenceReport:
        """Stream both sides and classify every difference."""
        report = DifferenceReport(horizon=horizon)

        for diff in merge_differences(self.store.iter_notes(LIVE, horizon),
                                      self.store.iter_notes(SNAPSHOT, horizon),
                                      key=lambda note: note.note_id,
                                      compared_fields=NOTE_COMPARED_FIELDS):
            if diff.kind == DifferenceKind.MISSING_IN_LIVE:
                report.missing_notes.append(diff.snapshot)
            elif diff.kind == DifferenceKind.MISSING_IN_SNAPSHOT:
                note = diff.live
                if note.status == NoteStatus.HIDDEN:
                    continue
                if note.closed_at is None or note.closed_at >= today_start:
                    report.kept_live_only.append(note.note_id)
                else:
                    report.hide_candidates.append(note)
            else:
                if any(name in POSITION_FIELDS for name in diff.changed_fields):
                    report.position_drift.append(diff)
                if 'status' in diff.changed_fields:
                    report.status_drift.append(diff)

        for diff in merge_differences(self.store.iter_comments(LIVE, horizon),
                                      self.store.iter_comments(SNAPSHOT, horizon),
                                      key=lambda comment: comment.natural_key):
            if diff.kind == DifferenceKind.MISSING_IN_LIVE:
                report.missing_comments.append(diff.snapshot)
            else:
                report.live_only_comments += 1

        for diff in merge_differences(self.store.iter_texts(LIVE, horizon),
                                      self.store.iter_texts(SNAPSHOT, horizon),
                                      key=lambda text: text.natural_key):
            if diff.kind == DifferenceKind.MISSING_IN_LIVE:
                report.missing_texts.append(diff.snapshot)

        # Close the server-side cursors before repairs start committing
        self.store.commit()
        logger.info(f"Differences before {horizon.isoformat()}: {report.summary()}")
        return report

    # Repairs

    def _insert_with_history(self, entity: RepairEntity, note_id: int,
                             sequence_action: Optional[int], insert: Callable[[], None],
                             result: ReconciliationResult) -> bool:
        """
        Record a missing record, insert it and flip its history entry.

        Returns:
            True if the record is now stored (inserted or already present)
        """
        key = note_id if sequence_action is None else (note_id, sequence_action)
        try:
            history_id = self.store.append_history(entity, note_id, sequence_action)
            self.store.commit()

            inserted = True
            try:
                insert()
            except RepairConflict as e:
                inserted = False
                result.conflicts += 1
                logger.info(f"Concurrent insert of {entity.name.lower()} {key}: {e}")

            self.store.mark_inserted(entity, history_id)
            self.store.commit()
            return inserted

        except Exception as e:
            self.store.rollback()
            result.failed += 1
            result.error_messages.append(f"{entity.name.lower()} {key}: {e}")
            logger.warning(f"Repair of {entity.name.lower()} {key} failed: {e}")
            return False

    def _repair_notes(self, report: DifferenceReport, result: ReconciliationResult) -> None:
        for note in report.missing_notes:
            if self._insert_with_history(RepairEntity.NOTE, note.note_id, None,
                                         lambda note=note: self.store.insert_note(note), result):
                result.notes_inserted += 1

        for note in report.hide_candidates:
            try:
                if self.store.hide_note(note.note_id):
                    result.notes_hidden += 1
                self.store.commit()
            except Exception as e:
                self.store.rollback()
                result.failed += 1
                result.error_messages.append(f"hide note {note.note_id}: {e}")
                logger.warning(f"Hiding note {note.note_id} failed: {e}")

        for diff in report.position_drift:
            try:
                if self.store.repair_note_position(diff.snapshot):
                    result.notes_repaired += 1
                self.store.commit()
                logger.info(f"Note {diff.key} {', '.join(diff.changed_fields)} taken from snapshot")
            except Exception as e:
                self.store.rollback()
                result.failed += 1
                result.error_messages.append(f"repair note {diff.key}: {e}")
                logger.warning(f"Repairing note {diff.key} failed: {e}")

        result.status_mismatches = len(report.status_drift)
        for diff in report.status_drift:
            logger.info(f"Note {diff.key} status differs: live={diff.live.status.value} "
                        f"snapshot={diff.snapshot.status.value}")

    def _ensure_users(self, comments: List[Comment], result: ReconciliationResult) -> set:
        """Insert authors of missing comments; return ids that stay unresolved."""
        names: Dict[int, Optional[str]] = {}
        for comment in comments:
            if comment.id_user is not None and not names.get(comment.id_user):
                names[comment.id_user] = comment.username

        unresolved = set()
        for user_id, username in sorted(names.items()):
            try:
                if self.store.user_exists(user_id):
                    continue
                if not username:
                    unresolved.add(user_id)
                    continue
                self.store.insert_user(User(user_id=user_id, username=username))
                self.store.commit()
                result.users_inserted += 1
            except Exception as e:
                self.store.rollback()
                unresolved.add(user_id)
                result.failed += 1
                logger.warning(f"Inserting user {user_id} failed: {e}")
        return unresolved

    def _check_comment_parents(self, comment: Comment, unresolved_users: set) -> None:
        if comment.id_user is not None and comment.id_user in unresolved_users:
            raise ReferentialGap(f"user {comment.id_user} of comment {comment.natural_key} is unknown")
        if not self.store.note_exists(comment.note_id):
            raise ReferentialGap(f"note {comment.note_id} of comment {comment.natural_key} is missing")

    def _repair_comments(self, report: DifferenceReport, result: ReconciliationResult) -> None:
        unresolved = self._ensure_users(report.missing_comments, result)

        for comment in report.missing_comments:
            try:
                self._check_comment_parents(comment, unresolved)
            except ReferentialGap as e:
                result.skipped += 1
                logger.warning(f"Skipping comment: {e}")
                continue
            except Exception as e:
                self.store.rollback()
                result.failed += 1
                logger.warning(f"Checking comment {comment.natural_key} failed: {e}")
                continue
            if self._insert_with_history(RepairEntity.COMMENT, comment.note_id,
                                         comment.sequence_action,
                                         lambda c=comment: self.store.insert_comment(c), result):
                result.comments_inserted += 1

        for text in report.missing_texts:
            try:
                if not self.store.comment_exists(text.note_id, text.sequence_action):
                    raise ReferentialGap(f"comment {text.natural_key} of text is missing")
            except ReferentialGap as e:
                result.skipped += 1
                logger.warning(f"Skipping text: {e}")
                continue
            except Exception as e:
                self.store.rollback()
                result.failed += 1
                logger.warning(f"Checking text {text.natural_key} failed: {e}")
                continue
            if self._insert_with_history(RepairEntity.TEXT, text.note_id, text.sequence_action,
                                         lambda t=text: self.store.insert_text(t), result):
                result.texts_inserted += 1

    def _mutated_tables(self, result: ReconciliationResult) -> List[str]:
        tables = []
        if result.notes_inserted or result.notes_hidden or result.notes_repaired:
            tables.append('notes')
        if result.users_inserted:
            tables.append('users')
        if result.comments_inserted:
            tables.append('note_comments')
        if result.texts_inserted:
            tables.append('note_comments_text')
        return tables

    def run(self, today: Optional[date] = None) -> ReconciliationResult:
        """
        Reconcile the live tables against the loaded snapshot.

        Args:
            today: Current UTC date, defaults to the clock's date
        """
        start_time = time.time()
        now = self._clock()
        today = today or now.date()
        result = ReconciliationResult(started_at=now)
        timer = StageTimer(log=logger)

        today_start = start_of_day(today)
        result.horizon = compute_horizon(today, self.store.snapshot_cutoff())

        with timer.stage("detect differences"):
            report = self.detect(result.horizon, today_start)
        result.differences = report.summary()

        with timer.stage("repair notes"):
            self._repair_notes(report, result)
        with timer.stage("repair comments"):
            self._repair_comments(report, result)

        result.analyzed_tables = self._mutated_tables(result)
        if result.analyzed_tables:
            with timer.stage("analyze"):
                self.store.analyze(result.analyzed_tables)

        # Every run, repaired or not: the daemon may have stored notes without a region.
        if self.spatial_verifier is not None:
            if self.full_verification:
                with timer.stage("full verification"):
                    result.full_verification = self.spatial_verifier.verify_all()
            else:
                with timer.stage("assign regions"):
                    result.verification = self.spatial_verifier.assign_missing()

        result.success = result.failed == 0
        result.completed_at = self._clock()
        result.stage_timings = list(timer.timings)
        logger.info(f"Reconciliation finished in {time.time() - start_time:.1f}s: {result.counts()}")
        return result
