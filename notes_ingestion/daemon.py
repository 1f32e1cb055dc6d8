"""
Ingestion Daemon Module

Long-running loop that pulls note changes from the API, writes them into
the live tables and keeps table statistics fresh. One cycle runs at a time
across all processes thanks to the persisted lock. An empty database is
filled from the planet dump before the first cycle, and the boundary set is
reloaded whenever a refresh stored new regions.
"""

import logging
import os
import signal
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from .api_client import NotesApiClient
from .boundary_store import BoundaryStore
from .config import AppConfig, DaemonConfig, load_config
from .database import connect
from .errors import LockContention, UpstreamUnavailable
from .maintenance import MaintenanceManager, MaintenanceResult
from .models import Comment, NoteBatch
from .note_repository import NoteRepository
from .orchestrator import OrchestrationResult, Orchestrator
from .process_lock import ProcessLock
from .properties import CURSOR_KEY, PropertyStore
from .region_repository import RegionRepository
from .run_tracker import RunTracker
from .timing import StageTimer, StageTiming

logger = logging.getLogger(__name__)


class CycleState(Enum):
    """Where the daemon currently is within a cycle."""
    IDLE = "idle"
    LOCK_ACQUIRING = "lock_acquiring"
    FETCHING = "fetching"
    UPSERTING = "upserting"
    MAINTENANCE_CHECK = "maintenance_check"
    MAINTAINING = "maintaining"
    LOCK_RELEASING = "lock_releasing"


@dataclass
class CycleResult:
    """Outcome of one ingestion cycle."""
    cycle_number: int
    started_at: datetime
    completed_at: Optional[datetime] = None
    status: str = "running"
    pages: int = 0
    notes_inserted: int = 0
    notes_updated: int = 0
    comments_inserted: int = 0
    comments_skipped: int = 0
    users_upserted: int = 0
    texts_inserted: int = 0
    cursor_before: Optional[datetime] = None
    cursor_after: Optional[datetime] = None
    gap_note_ids: List[int] = field(default_factory=list)
    cursor_held_back: bool = False
    maintenance: Optional[MaintenanceResult] = None
    stage_timings: List[StageTiming] = field(default_factory=list)
    error_message: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        if not self.completed_at:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()

    @property
    def total_changes(self) -> int:
        return (self.notes_inserted + self.notes_updated + self.comments_inserted
                + self.texts_inserted)

    def counts(self) -> Dict[str, Any]:
        return {
            'pages': self.pages,
            'notes_inserted': self.notes_inserted,
            'notes_updated': self.notes_updated,
            'comments_inserted': self.comments_inserted,
            'comments_skipped': self.comments_skipped,
            'users_upserted': self.users_upserted,
            'texts_inserted': self.texts_inserted,
            'gap_notes': len(self.gap_note_ids),
        }


class IngestionDaemon:
    """Runs ingestion cycles until asked to stop."""

    def __init__(self, config: DaemonConfig, api_client: NotesApiClient,
                 repository: NoteRepository, properties: PropertyStore,
                 lock: ProcessLock, maintenance: MaintenanceManager,
                 boundary_store: Optional[BoundaryStore] = None,
                 regions: Optional[RegionRepository] = None,
                 special_points: Sequence[Sequence[float]] = (),
                 tracker: Optional[RunTracker] = None,
                 config_loader: Optional[Callable[[], DaemonConfig]] = None,
                 base_loader: Optional[Callable[[], OrchestrationResult]] = None,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.config = config
        self.api_client = api_client
        self.repository = repository
        self.properties = properties
        self.lock = lock
        self.maintenance = maintenance
        self.boundary_store = boundary_store or BoundaryStore()
        self.regions = regions
        self.special_points = special_points
        self.tracker = tracker
        self.config_loader = config_loader
        self.base_loader = base_loader
        self._regions_version = None
        self._clock = clock

        self.state = CycleState.IDLE
        self.cycle_count = 0
        self.consecutive_errors = 0
        self.last_result: Optional[CycleResult] = None
        self.started_at = clock()

        self._stop_event = threading.Event()
        self._reload_requested = False
        self._status_requested = False

    @classmethod
    def from_config(cls, app_config: AppConfig, config_path: Optional[str] = None,
                    track_runs: bool = True) -> "IngestionDaemon":
        """Wire a daemon against the configured database and API."""
        daemon_config = app_config.daemon
        connection = connect(app_config.db_config)
        properties = PropertyStore(connection)

        tracker = None
        if track_runs:
            tracker = RunTracker(app_config.db_config)
            tracker.connect()

        loader = None
        if config_path:
            loader = lambda: load_config(config_path).daemon

        base_loader = None
        if daemon_config.base_load_when_empty:
            base_loader = lambda: Orchestrator(app_config, track_runs).execute_base_load()

        return cls(
            config=daemon_config,
            api_client=NotesApiClient(
                daemon_config.api_url,
                page_limit=daemon_config.api_page_limit,
                timeout=daemon_config.api_timeout,
                max_attempts=daemon_config.api_max_attempts,
                backoff_seconds=daemon_config.api_backoff_seconds,
                deadline_seconds=daemon_config.api_deadline_seconds,
            ),
            repository=NoteRepository(connection),
            properties=properties,
            lock=ProcessLock(connect(app_config.db_config), 'daemon', daemon_config.lock_ttl_seconds),
            maintenance=MaintenanceManager(
                connection, properties,
                analyze_interval_hours=daemon_config.analyze_interval_hours,
                analyze_row_threshold=daemon_config.analyze_row_threshold,
                sequence_sync_interval_hours=daemon_config.sequence_sync_interval_hours,
            ),
            regions=RegionRepository(connection),
            special_points=app_config.boundaries.special_points,
            tracker=tracker,
            config_loader=loader,
            base_loader=base_loader,
        )

    # Boundaries

    def refresh_boundaries(self, force: bool = False) -> bool:
        """
        Reload the boundary store when the stored regions changed.

        Args:
            force: Reload even when the stored regions look unchanged

        Returns:
            True when the store was reloaded
        """
        if self.regions is None:
            return False
        version = self.regions.regions_version()
        if not force and version == self._regions_version:
            return False

        self.boundary_store = BoundaryStore(self.regions.load_regions(), self.special_points)
        self.repository.commit()
        self._regions_version = version
        logger.info(f"Loaded {len(self.boundary_store)} regions for note assignment")
        return True

    # Cycle

    def run_cycle(self) -> CycleResult:
        """
        Run one ingestion cycle.

        Returns:
            CycleResult with counts and stage timings

        Raises:
            LockContention: Another instance holds the lock; nothing was done
            UpstreamUnavailable: The API could not be reached; the cursor
                was not advanced past unprocessed data
        """
        self.cycle_count += 1
        result = CycleResult(cycle_number=self.cycle_count, started_at=self._clock())
        run_id = self.tracker.start_run('cycle', {'cycle': self.cycle_count}) if self.tracker else None
        timer = StageTimer(run_id=run_id, log=logger)

        self.state = CycleState.LOCK_ACQUIRING
        try:
            with timer.stage("acquire lock"):
                self.lock.acquire()
        except LockContention as e:
            self.state = CycleState.IDLE
            result.status = "skipped"
            result.error_message = str(e)
            self._finish(result, timer, run_id)
            logger.info(f"Cycle {self.cycle_count} skipped: {e}")
            raise

        try:
            self.refresh_boundaries()
            self._ingest_pages(result, timer)

            self.state = CycleState.MAINTENANCE_CHECK
            touched = {
                'notes': result.notes_inserted + result.notes_updated,
                'note_comments': result.comments_inserted,
                'note_comments_text': result.texts_inserted,
            }
            self.state = CycleState.MAINTAINING
            result.maintenance = self.maintenance.run_if_due(touched, timer)
            result.status = "completed"

        except Exception as e:
            self.repository.rollback()
            result.status = "failed"
            result.error_message = str(e)
            raise

        finally:
            self.state = CycleState.LOCK_RELEASING
            with timer.stage("release lock"):
                self.lock.release()
            self.state = CycleState.IDLE
            self._finish(result, timer, run_id)

        logger.info(
            f"Cycle {result.cycle_number} completed in {result.duration_seconds:.2f}s: "
            f"{result.notes_inserted} new notes, {result.notes_updated} updated, "
            f"{result.comments_inserted} comments, {result.texts_inserted} texts"
        )
        return result

    def _finish(self, result: CycleResult, timer: StageTimer, run_id: Optional[str]) -> None:
        result.completed_at = self._clock()
        result.stage_timings = list(timer.timings)
        self.last_result = result
        if self.tracker and run_id:
            self.tracker.complete_run(
                run_id,
                status=result.status.upper(),
                counts=result.counts(),
                stage_timings=timer.as_dicts(),
                error_message=result.error_message,
            )

    def _ingest_pages(self, result: CycleResult, timer: StageTimer) -> None:
        cursor = self.properties.get_timestamp(CURSOR_KEY)
        result.cursor_before = cursor
        result.cursor_after = cursor

        for _ in range(self.config.max_pages_per_cycle):
            self.state = CycleState.FETCHING
            with timer.stage("fetch") as stage:
                batch = self.api_client.fetch_changes(cursor)
                stage.rows = len(batch)
            result.pages += 1
            if not batch.notes:
                break

            self.state = CycleState.UPSERTING
            with timer.stage("upsert", rows=len(batch)):
                self._apply_batch(batch, result)

            with timer.stage("gap check"):
                advance = self._check_gaps(batch, result)

            new_cursor = batch.max_timestamp
            moved = new_cursor is not None and (cursor is None or new_cursor > cursor)
            if advance and moved:
                self.properties.set_timestamp(CURSOR_KEY, new_cursor)
                cursor = new_cursor
                result.cursor_after = new_cursor
            self.repository.commit()

            if not advance or not moved or len(batch) < self.api_client.page_limit:
                break

    def _apply_batch(self, batch: NoteBatch, result: CycleResult) -> None:
        # Ascending ids: the row lock order of the spatial verifier
        notes = sorted({note.note_id: note for note in batch.notes}.values(),
                       key=lambda note: note.note_id)

        if len(self.boundary_store):
            previous = self.repository.existing_regions(note.note_id for note in notes)
            for note in notes:
                note.id_country = self.boundary_store.resolve(
                    note.longitude, note.latitude, previous.get(note.note_id))

        users = batch.users
        result.users_upserted += self.repository.upsert_users(users)

        inserted, updated = self.repository.upsert_notes(notes)
        result.notes_inserted += inserted
        result.notes_updated += updated

        comments = self._resolvable_comments(batch.comments, {user.user_id for user in users})
        result.comments_skipped += len(batch.comments) - len(comments)
        result.comments_inserted += self.repository.insert_comments(comments)
        result.texts_inserted += self.repository.insert_texts(batch.texts)

    def _resolvable_comments(self, comments: List[Comment], batch_user_ids) -> List[Comment]:
        """Drop comments whose author is neither in the batch nor stored."""
        unknown = {c.id_user for c in comments
                   if c.id_user is not None and c.id_user not in batch_user_ids}
        if not unknown:
            return comments
        missing = unknown - self.repository.known_user_ids(unknown)
        if not missing:
            return comments

        kept = []
        for comment in comments:
            if comment.id_user in missing:
                logger.warning(f"Skipping comment {comment.natural_key}: unknown user {comment.id_user}")
                continue
            kept.append(comment)
        return kept

    def _check_gaps(self, batch: NoteBatch, result: CycleResult) -> bool:
        """
        Record notes that should have comments by now but have none.

        Returns:
            False when the gap is large enough to hold the cursor back
        """
        threshold = self._clock() - timedelta(minutes=self.config.gap_min_age_minutes)
        eligible = [note.note_id for note in batch.notes if note.created_at < threshold]
        if not eligible:
            return True

        gap_ids = self.repository.notes_without_comments(eligible, threshold)
        if not gap_ids:
            return True

        self.repository.record_gap('notes_without_comments', gap_ids, len(eligible))
        result.gap_note_ids.extend(gap_ids)

        ratio = len(gap_ids) / len(eligible)
        if len(eligible) >= self.config.gap_min_sample and ratio > self.config.gap_max_ratio:
            result.cursor_held_back = True
            logger.error(
                f"{len(gap_ids)}/{len(eligible)} notes ({ratio:.1%}) have no comments; "
                f"cursor not advanced"
            )
            return False
        return True

    # Loop

    def compute_sleep(self, result: Optional[CycleResult], elapsed: float) -> float:
        """Seconds to sleep after a cycle that took `elapsed` seconds."""
        interval = float(self.config.sleep_interval)
        if result is not None and result.status == "completed" and result.total_changes > 0:
            return max(0.0, interval - elapsed)
        return interval

    def request_shutdown(self) -> None:
        self._stop_event.set()

    @property
    def shutdown_requested(self) -> bool:
        if self._stop_event.is_set():
            return True
        flag = self.config.shutdown_flag_file
        if flag and os.path.exists(flag):
            logger.info(f"Shutdown flag file found: {flag}")
            os.remove(flag)
            self._stop_event.set()
            return True
        return False

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGTERM, self._handle_stop_signal)
        signal.signal(signal.SIGINT, self._handle_stop_signal)
        if hasattr(signal, 'SIGHUP'):
            signal.signal(signal.SIGHUP, self._handle_reload_signal)
        if hasattr(signal, 'SIGUSR1'):
            signal.signal(signal.SIGUSR1, self._handle_status_signal)

    def _handle_stop_signal(self, signum, frame):
        self._stop_event.set()

    def _handle_reload_signal(self, signum, frame):
        self._reload_requested = True

    def _handle_status_signal(self, signum, frame):
        self._status_requested = True

    def reload_config(self) -> None:
        if not self.config_loader:
            logger.warning("Configuration reload requested but no configuration file is in use")
            return
        try:
            new_config = self.config_loader()
            new_config.validate()
        except (OSError, ValueError) as e:
            logger.error(f"Configuration reload failed, keeping current settings: {e}")
            return
        self.config = new_config
        logger.info(f"Configuration reloaded (sleep interval {new_config.sleep_interval}s)")

    def status(self) -> Dict[str, Any]:
        last = self.last_result
        return {
            'state': self.state.value,
            'uptime_seconds': (self._clock() - self.started_at).total_seconds(),
            'cycles': self.cycle_count,
            'consecutive_errors': self.consecutive_errors,
            'last_status': last.status if last else None,
            'last_cursor': last.cursor_after.isoformat() if last and last.cursor_after else None,
        }

    def _handle_pending_requests(self) -> None:
        if self._reload_requested:
            self._reload_requested = False
            self.reload_config()
            try:
                self.refresh_boundaries(force=True)
            except Exception as e:
                self.repository.rollback()
                logger.error(f"Boundary reload failed, keeping current regions: {e}")
        if self._status_requested:
            self._status_requested = False
            logger.info(f"Daemon status: {self.status()}")

    def needs_base_load(self) -> bool:
        """Whether no note was ever stored and the cursor was never set."""
        empty = self.properties.get_timestamp(CURSOR_KEY) is None and self.repository.is_empty()
        self.repository.commit()
        return empty

    def bootstrap(self) -> None:
        """Fill an empty database from the planet dump before the first cycle."""
        if self.base_loader is None or not self.config.base_load_when_empty:
            return
        try:
            if not self.needs_base_load():
                return
            logger.info("Live tables are empty, starting base load from the planet dump")
            outcome = self.base_loader()
        except Exception as e:
            self.repository.rollback()
            logger.exception(f"Base load failed, ingesting from the API instead: {e}")
            return

        if outcome.success:
            logger.info(f"Base load completed: {outcome.counts}")
        else:
            logger.error(f"Base load {outcome.status.lower()}, ingesting from the API instead")

    def run_forever(self) -> int:
        """
        Run cycles until shutdown or too many consecutive failures.

        Returns:
            Process exit code: 0 after a requested shutdown, 1 after the
            failure budget is exhausted
        """
        logger.info(f"Ingestion daemon started (interval {self.config.sleep_interval}s)")
        self.bootstrap()

        while not self.shutdown_requested:
            self._handle_pending_requests()
            started = time.monotonic()
            result = None
            try:
                result = self.run_cycle()
                self.consecutive_errors = 0
            except LockContention:
                pass
            except UpstreamUnavailable as e:
                self.consecutive_errors += 1
                logger.error(f"Cycle failed ({self.consecutive_errors}/"
                             f"{self.config.max_consecutive_errors}): {e}")
            except Exception as e:
                self.consecutive_errors += 1
                logger.exception(f"Cycle failed ({self.consecutive_errors}/"
                                 f"{self.config.max_consecutive_errors}): {e}")

            if self.consecutive_errors >= self.config.max_consecutive_errors:
                logger.error("Too many consecutive errors, stopping daemon")
                return 1

            delay = self.compute_sleep(result, time.monotonic() - started)
            if delay > 0:
                self._stop_event.wait(delay)

        logger.info(f"Ingestion daemon stopped after {self.cycle_count} cycles")
        return 0
