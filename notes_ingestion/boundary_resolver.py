"""
Boundary Resolver Module

Owns the active BoundaryStore and refreshes it from Overpass. A refresh
prefers the local backup, downloads only what the backup lacks, and either
aborts (strict mode) or keeps the best geometry available per boundary
(continue-on-error mode). The new store is persisted and swapped in as a
whole; a failed refresh leaves the active store untouched.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

from .boundary_backup import BoundaryBackup
from .boundary_store import BoundaryStore
from .config import BoundaryConfig
from .errors import BoundaryRefreshError, UpstreamUnavailable, ValidationFailure
from .models import Region, RegionKind
from .overpass import OverpassClient
from .region_repository import RegionRepository
from .timing import StageTimer, StageTiming

logger = logging.getLogger(__name__)


class BoundarySource(Enum):
    """Where the geometry of a boundary came from in a refresh."""
    BACKUP = "backup"
    DOWNLOADED = "downloaded"
    FALLBACK = "fallback"
    FAILED = "failed"


@dataclass
class BoundaryOutcome:
    region_id: int
    kind: RegionKind
    source: BoundarySource
    error: Optional[str] = None


@dataclass
class RefreshResult:
    """Result of one boundary refresh."""
    started_at: datetime
    force_rebuild: bool
    strict: bool
    completed_at: Optional[datetime] = None
    success: bool = False
    outcomes: List[BoundaryOutcome] = field(default_factory=list)
    changed_region_ids: Set[int] = field(default_factory=set)
    removed_region_ids: Set[int] = field(default_factory=set)
    regions_total: int = 0
    reassigned_notes: int = 0
    error_messages: List[str] = field(default_factory=list)
    stage_timings: List[StageTiming] = field(default_factory=list)

    def summary(self) -> Dict[str, int]:
        counts = {source.value: 0 for source in BoundarySource}
        for outcome in self.outcomes:
            counts[outcome.source.value] += 1
        return counts

    @property
    def failed_region_ids(self) -> List[int]:
        return [o.region_id for o in self.outcomes if o.source == BoundarySource.FAILED]


class BoundaryResolver:
    """Point-to-region resolution plus boundary refresh."""

    KINDS = (RegionKind.COUNTRY, RegionKind.MARITIME)

    def __init__(self, config: BoundaryConfig, overpass: OverpassClient,
                 backups: Optional[Dict[RegionKind, BoundaryBackup]] = None,
                 store: Optional[BoundaryStore] = None,
                 region_repository: Optional[RegionRepository] = None,
                 spatial_verifier=None):
        """
        Args:
            config: Boundary refresh configuration
            overpass: Client used for id lists and boundary geometries
            backups: Local backup per region kind, defaults to config.backup_dir
            store: Initially active store
            region_repository: Persists refreshed regions when given
            spatial_verifier: Re-assigns notes around changed regions when given
        """
        self.config = config
        self.overpass = overpass
        self.backups = backups if backups is not None else {
            kind: BoundaryBackup(config.backup_dir, kind) for kind in self.KINDS
        }
        self._store = store or BoundaryStore(special_points=config.special_points)
        self.region_repository = region_repository
        self.spatial_verifier = spatial_verifier

    @property
    def store(self) -> BoundaryStore:
        return self._store

    def resolve(self, lon: float, lat: float, previous_region: Optional[int] = None) -> int:
        """Region id containing the point, or -1."""
        return self._store.resolve(lon, lat, previous_region)

    def load(self) -> BoundaryStore:
        """Activate the stored regions, or the backups when none are stored."""
        regions: List[Region] = []
        if self.region_repository is not None:
            regions = self.region_repository.load_regions()
        if not regions:
            for kind in self.KINDS:
                regions.extend(self._load_backup(kind).values())
        self._store = BoundaryStore(regions, self.config.special_points)
        logger.info(f"Activated {len(self._store)} regions")
        return self._store

    def _load_backup(self, kind: RegionKind) -> Dict[int, Region]:
        backup = self.backups.get(kind)
        if backup is None or not backup.exists():
            return {}
        try:
            return {region.region_id: region for region in backup.load()}
        except (OSError, ValidationFailure) as e:
            logger.warning(f"Ignoring unusable {backup.name} backup: {e}")
            return {}

    def refresh(self, force_rebuild: bool = False) -> RefreshResult:
        """
        Refresh all boundaries.

        Args:
            force_rebuild: Download every boundary even when a backup exists

        Returns:
            RefreshResult with one outcome per boundary

        Raises:
            BoundaryRefreshError: Strict mode and a boundary could not be
                obtained; the active store is unchanged
        """
        strict = not self.config.continue_on_error
        result = RefreshResult(started_at=datetime.now(timezone.utc),
                               force_rebuild=force_rebuild, strict=strict)
        timer = StageTimer(log=logger)
        deadline = self.overpass.new_deadline()
        start = time.time()

        new_regions: Dict[int, Region] = {}
        for kind in self.KINDS:
            with timer.stage(f"refresh {kind.value}"):
                regions, outcomes = self._refresh_kind(kind, force_rebuild, strict, deadline, result)
            new_regions.update(regions)
            result.outcomes.extend(outcomes)

        if not new_regions:
            result.error_messages.append("No boundaries available, keeping active store")
            result.completed_at = datetime.now(timezone.utc)
            result.stage_timings = list(timer.timings)
            logger.error("Boundary refresh produced no regions; active store kept")
            return result

        old_store = self._store
        result.changed_region_ids = {
            region_id for region_id, region in new_regions.items()
            if region_id not in old_store
            or not old_store.get(region_id).geometry.equals(region.geometry)
        }
        result.removed_region_ids = set(old_store.region_ids) - set(new_regions)
        new_store = BoundaryStore(new_regions.values(), self.config.special_points)

        if self.region_repository is not None:
            with timer.stage("persist regions"):
                self.region_repository.replace_all(new_store.regions, result.changed_region_ids)
        self._store = new_store
        result.regions_total = len(new_store)

        if self.config.update_backup_after_refresh and not result.failed_region_ids:
            with timer.stage("update backups"):
                self._update_backups(result)

        affected = [new_store.bounds(rid) for rid in sorted(result.changed_region_ids)]
        affected.extend(old_store.bounds(rid) for rid in sorted(result.removed_region_ids))
        if self.spatial_verifier is not None and affected:
            with timer.stage("reassign notes"):
                verification = self.spatial_verifier.reassign_within(affected, new_store)
                result.reassigned_notes = verification.reassigned
            if self.region_repository is not None:
                self.region_repository.clear_updated_flags()

        result.success = not result.failed_region_ids and not result.error_messages
        result.completed_at = datetime.now(timezone.utc)
        result.stage_timings = list(timer.timings)
        logger.info(
            f"Boundary refresh finished in {time.time() - start:.1f}s: {result.summary()}, "
            f"{len(result.changed_region_ids)} changed, {result.reassigned_notes} notes reassigned"
        )
        return result

    def _refresh_kind(self, kind: RegionKind, force_rebuild: bool, strict: bool,
                      deadline: float, result: RefreshResult
                      ) -> Tuple[Dict[int, Region], List[BoundaryOutcome]]:
        current = {region.region_id: region for region in self._store.regions_of_kind(kind)}
        backup_regions = self._load_backup(kind)

        try:
            upstream_ids = self.overpass.fetch_region_ids(kind, deadline)
        except UpstreamUnavailable as e:
            message = f"Could not list {kind.value} boundaries: {e}"
            if strict:
                raise BoundaryRefreshError(message) from e
            result.error_messages.append(message)
            logger.error(message)
            if backup_regions:
                return backup_regions, [BoundaryOutcome(rid, kind, BoundarySource.BACKUP)
                                        for rid in sorted(backup_regions)]
            return current, [BoundaryOutcome(rid, kind, BoundarySource.FALLBACK, str(e))
                             for rid in sorted(current)]

        if not force_rebuild and backup_regions and set(backup_regions) == upstream_ids:
            logger.info(f"{kind.value} backup matches Overpass ids, skipping download")
            return backup_regions, [BoundaryOutcome(rid, kind, BoundarySource.BACKUP)
                                    for rid in sorted(backup_regions)]

        regions: Dict[int, Region] = {}
        outcomes: List[BoundaryOutcome] = []
        for region_id in sorted(upstream_ids):
            if not force_rebuild and region_id in backup_regions:
                regions[region_id] = backup_regions[region_id]
                outcomes.append(BoundaryOutcome(region_id, kind, BoundarySource.BACKUP))
                continue

            try:
                regions[region_id] = self.overpass.fetch_region(region_id, kind, deadline)
                outcomes.append(BoundaryOutcome(region_id, kind, BoundarySource.DOWNLOADED))
            except UpstreamUnavailable as e:
                if strict:
                    raise BoundaryRefreshError(
                        f"Boundary {region_id} could not be downloaded: {e}", region_id) from e
                fallback = backup_regions.get(region_id) or current.get(region_id)
                if fallback is not None:
                    regions[region_id] = fallback
                    outcomes.append(BoundaryOutcome(region_id, kind, BoundarySource.FALLBACK, str(e)))
                    logger.warning(f"Boundary {region_id} kept from last good geometry: {e}")
                else:
                    outcomes.append(BoundaryOutcome(region_id, kind, BoundarySource.FAILED, str(e)))
                    logger.error(f"Boundary {region_id} failed: {e}")

        return regions, outcomes

    def _update_backups(self, result: RefreshResult) -> None:
        downloaded_kinds = {o.kind for o in result.outcomes if o.source == BoundarySource.DOWNLOADED}
        for kind in downloaded_kinds:
            backup = self.backups.get(kind)
            if backup is not None:
                backup.save(self._store.regions_of_kind(kind))
