"""
Orchestrator Module

Runs the batch workflows around the live tables:

- check: download the planet notes dump (or use a local file), load it into
  the shadow tables, reconcile the live tables against it and assign
  regions to every note still without one
- base: copy the dump straight into empty live tables and seed the
  ingestion cursor, under the daemon lock
- boundaries: refresh country and maritime boundaries from Overpass and
  re-assign the notes around changed regions

Each workflow holds its own named lock, so it never runs twice at the same
time, and is recorded in process_runs.
"""

import logging
import time
from contextlib import ExitStack
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .boundary_resolver import BoundaryResolver
from .boundary_store import BoundaryStore
from .config import AppConfig, BoundaryConfig
from .data_source_manager import DataSourceManager
from .database import connect
from .errors import BoundaryRefreshError, LockContention
from .overpass import OverpassClient
from .planet_loader import BaseLoader, SnapshotLoader
from .process_lock import ProcessLock
from .reconciliation import ReconciliationEngine
from .reconciliation_store import ReconciliationStore
from .region_repository import RegionRepository
from .run_tracker import RunTracker
from .spatial_verifier import NoteLocationStore, SpatialVerifier
from .timing import StageTimer

logger = logging.getLogger(__name__)


@dataclass
class OrchestrationResult:
    """Result of one batch workflow."""
    kind: str
    started_at: datetime
    run_id: Optional[str] = None
    completed_at: Optional[datetime] = None
    success: bool = False
    lock_contention: bool = False
    total_changes: int = 0
    processing_time: float = 0.0
    counts: Dict[str, Any] = field(default_factory=dict)
    phase_results: Dict[str, Any] = field(default_factory=dict)
    stage_timings: List[Dict[str, Any]] = field(default_factory=list)
    error_messages: List[str] = field(default_factory=list)
    warning_messages: List[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        if self.lock_contention:
            return 'SKIPPED'
        return 'COMPLETED' if self.success else 'FAILED'


class Orchestrator:
    """Central controller for the check and boundary workflows."""

    def __init__(self, config: AppConfig, track_runs: bool = True):
        """
        Initialize the orchestrator.

        Args:
            config: Application configuration
            track_runs: Record each workflow in process_runs
        """
        self.config = config
        self.track_runs = track_runs

    # Wiring

    def build_spatial_verifier(self, store: BoundaryStore,
                               batch_size: Optional[int] = None) -> SpatialVerifier:
        db_config = self.config.db_config
        return SpatialVerifier(
            store,
            lambda: NoteLocationStore(db_config),
            batch_size=batch_size or self.config.check.verification_batch_size,
            max_workers=self.config.check.max_threads,
        )

    def build_boundary_resolver(self, connection,
                                config: Optional[BoundaryConfig] = None) -> BoundaryResolver:
        config = config or self.config.boundaries
        overpass = OverpassClient(
            config.endpoints,
            retries_per_endpoint=config.effective_retries,
            backoff_seconds=config.backoff_seconds,
            request_timeout=config.request_timeout,
            deadline_seconds=config.deadline_seconds,
        )
        return BoundaryResolver(
            config,
            overpass,
            region_repository=RegionRepository(connection),
            spatial_verifier=self.build_spatial_verifier(
                BoundaryStore(special_points=config.special_points),
                batch_size=config.reassign_batch_size),
        )

    def load_boundary_store(self, connection) -> BoundaryStore:
        regions = RegionRepository(connection).load_regions()
        connection.commit()
        return BoundaryStore(regions, self.config.boundaries.special_points)

    # Workflows

    def execute_check_workflow(self, planet_file: Optional[str] = None) -> OrchestrationResult:
        """
        Load the planet snapshot and reconcile the live tables against it.

        Args:
            planet_file: Local dump to use instead of downloading one

        Returns:
            OrchestrationResult of the run
        """
        check = self.config.check
        planet_file = planet_file or check.planet_file
        result = OrchestrationResult(kind='check', started_at=datetime.now(timezone.utc))
        start_time = time.time()

        with ExitStack() as stack:
            tracker = self._open_tracker(stack)
            if tracker:
                result.run_id = tracker.start_run('check', {'planet_file': planet_file})
            timer = StageTimer(run_id=result.run_id, log=logger)

            try:
                connection = self._open_connection(stack)
                lock = ProcessLock(self._open_connection(stack), 'check', check.lock_ttl_seconds)
                with timer.stage("acquire lock"):
                    lock.acquire()
                stack.callback(lock.release)

                if not planet_file:
                    dsm = stack.enter_context(DataSourceManager({
                        'planet_url': check.planet_url,
                        'download_timeout': check.download_timeout,
                        'max_retries': check.max_retries,
                        'verify_md5': check.verify_md5,
                    }))
                    with timer.stage("download"):
                        planet_file, file_hash, file_size = dsm.download_planet_notes()
                    result.phase_results['download'] = {
                        'file_hash': file_hash,
                        'file_size': file_size,
                    }

                with timer.stage("load snapshot") as stage:
                    load = SnapshotLoader(connection, check.copy_chunk_size).load(planet_file)
                    stage.rows = load.notes
                result.phase_results['snapshot'] = {
                    'notes': load.notes,
                    'comments': load.comments,
                    'texts': load.texts,
                    'cutoff': load.cutoff.isoformat() if load.cutoff else None,
                }

                store = self.load_boundary_store(connection)
                verifier = None
                if len(store):
                    verifier = self.build_spatial_verifier(store)
                else:
                    result.warning_messages.append("No regions loaded, region assignment skipped")

                engine = ReconciliationEngine(ReconciliationStore(connection), verifier,
                                              full_verification=check.full_verification)
                reconciliation = engine.run()

                result.counts = reconciliation.counts()
                result.phase_results['differences'] = reconciliation.differences
                for name, verification in (('verification', reconciliation.verification),
                                           ('full_verification', reconciliation.full_verification)):
                    if verification is not None:
                        result.phase_results[name] = {
                            'examined': verification.examined,
                            'reassigned': verification.reassigned,
                            'failed_batches': len(verification.failed_batches),
                        }
                        if not verification.success:
                            result.warning_messages.append(
                                f"{len(verification.failed_batches)} {name} batches failed")
                result.error_messages.extend(reconciliation.error_messages)
                result.stage_timings.extend(t.to_dict() for t in reconciliation.stage_timings)
                result.total_changes = reconciliation.total_repairs
                result.success = reconciliation.success

            except LockContention as e:
                result.lock_contention = True
                result.warning_messages.append(str(e))
                logger.warning(f"Check skipped: {e}")

            except Exception as e:
                error_msg = f"Check failed: {e}"
                logger.error(error_msg)
                result.error_messages.append(error_msg)
                result.success = False

            finally:
                result.stage_timings = timer.as_dicts() + result.stage_timings
                self._finalize_result(result, start_time, tracker)

        return result

    def execute_base_load(self, planet_file: Optional[str] = None) -> OrchestrationResult:
        """
        Fill empty live tables from the planet dump and seed the cursor.

        Holds the daemon lock, so no ingestion cycle writes while the dump
        is copied in.

        Args:
            planet_file: Local dump to use instead of downloading one

        Returns:
            OrchestrationResult of the run; FAILED when the live tables
            already hold notes
        """
        check = self.config.check
        planet_file = planet_file or check.planet_file
        result = OrchestrationResult(kind='base', started_at=datetime.now(timezone.utc))
        start_time = time.time()

        with ExitStack() as stack:
            tracker = self._open_tracker(stack)
            if tracker:
                result.run_id = tracker.start_run('base', {'planet_file': planet_file})
            timer = StageTimer(run_id=result.run_id, log=logger)

            try:
                connection = self._open_connection(stack)
                lock = ProcessLock(self._open_connection(stack), 'daemon', check.lock_ttl_seconds)
                with timer.stage("acquire lock"):
                    lock.acquire()
                stack.callback(lock.release)

                loader = BaseLoader(connection, check.copy_chunk_size,
                                    self.load_boundary_store(connection))
                if not loader.live_tables_empty():
                    raise ValueError("Live notes table is not empty, base load refused")
                connection.commit()

                if not planet_file:
                    dsm = stack.enter_context(DataSourceManager({
                        'planet_url': check.planet_url,
                        'download_timeout': check.download_timeout,
                        'max_retries': check.max_retries,
                        'verify_md5': check.verify_md5,
                    }))
                    with timer.stage("download"):
                        planet_file, file_hash, file_size = dsm.download_planet_notes()
                    result.phase_results['download'] = {
                        'file_hash': file_hash,
                        'file_size': file_size,
                    }

                with timer.stage("base load") as stage:
                    load = loader.load(planet_file)
                    stage.rows = load.notes

                result.counts = {
                    'notes': load.notes,
                    'users': load.users,
                    'comments': load.comments,
                    'texts': load.texts,
                }
                result.phase_results['cursor'] = load.cutoff.isoformat() if load.cutoff else None
                if not load.regions_assigned:
                    result.warning_messages.append(
                        "No regions loaded, notes are assigned on the next check")
                result.total_changes = load.notes + load.comments + load.texts
                result.success = True

            except LockContention as e:
                result.lock_contention = True
                result.warning_messages.append(str(e))
                logger.warning(f"Base load skipped: {e}")

            except Exception as e:
                error_msg = f"Base load failed: {e}"
                logger.error(error_msg)
                result.error_messages.append(error_msg)
                result.success = False

            finally:
                result.stage_timings = timer.as_dicts()
                self._finalize_result(result, start_time, tracker)

        return result

    def execute_boundary_refresh(self, force_rebuild: bool = False,
                                 strict: Optional[bool] = None) -> OrchestrationResult:
        """
        Refresh the country and maritime boundaries.

        Args:
            force_rebuild: Download every boundary even when a backup exists
            strict: Abort on the first unavailable boundary; None keeps the
                configured mode

        Returns:
            OrchestrationResult of the run
        """
        config = self.config.boundaries
        if strict is not None:
            config = replace(config, continue_on_error=not strict)
        result = OrchestrationResult(kind='boundaries', started_at=datetime.now(timezone.utc))
        start_time = time.time()

        with ExitStack() as stack:
            tracker = self._open_tracker(stack)
            if tracker:
                result.run_id = tracker.start_run('boundaries', {
                    'force_rebuild': force_rebuild,
                    'strict': not config.continue_on_error,
                })

            try:
                connection = self._open_connection(stack)
                lock = ProcessLock(self._open_connection(stack), 'boundaries',
                                   int(config.deadline_seconds))
                lock.acquire()
                stack.callback(lock.release)

                resolver = self.build_boundary_resolver(connection, config)
                resolver.load()
                connection.commit()
                refresh = resolver.refresh(force_rebuild=force_rebuild)

                result.counts = refresh.summary()
                result.counts['regions'] = refresh.regions_total
                result.counts['changed'] = len(refresh.changed_region_ids)
                result.counts['removed'] = len(refresh.removed_region_ids)
                result.counts['reassigned_notes'] = refresh.reassigned_notes
                result.phase_results['failed_region_ids'] = refresh.failed_region_ids
                result.stage_timings = [t.to_dict() for t in refresh.stage_timings]
                result.warning_messages.extend(refresh.error_messages)
                result.total_changes = len(refresh.changed_region_ids) + len(refresh.removed_region_ids)
                result.success = refresh.success

            except LockContention as e:
                result.lock_contention = True
                result.warning_messages.append(str(e))
                logger.warning(f"Boundary refresh skipped: {e}")

            except BoundaryRefreshError as e:
                error_msg = f"Boundary refresh aborted, active boundaries kept: {e}"
                logger.error(error_msg)
                result.error_messages.append(error_msg)

            except Exception as e:
                error_msg = f"Boundary refresh failed: {e}"
                logger.error(error_msg)
                result.error_messages.append(error_msg)

            finally:
                self._finalize_result(result, start_time, tracker)

        return result

    # Helpers

    def _open_connection(self, stack: ExitStack):
        connection = connect(self.config.db_config)
        stack.callback(connection.close)
        return connection

    def _open_tracker(self, stack: ExitStack) -> Optional[RunTracker]:
        if not self.track_runs:
            return None
        return stack.enter_context(RunTracker(self.config.db_config))

    def _finalize_result(self, result: OrchestrationResult, start_time: float,
                         tracker: Optional[RunTracker]) -> None:
        result.completed_at = datetime.now(timezone.utc)
        result.processing_time = time.time() - start_time

        if tracker and result.run_id:
            try:
                tracker.complete_run(
                    result.run_id,
                    status=result.status,
                    counts=result.counts,
                    stage_timings=result.stage_timings,
                    error_message='; '.join(result.error_messages) or None,
                )
            except Exception as e:
                logger.warning(f"Could not record {result.kind} run {result.run_id}: {e}")

        logger.info(
            f"{result.kind} workflow {result.status.lower()} in {result.processing_time:.1f}s: "
            f"{result.total_changes} changes"
        )
