"""
Boundary Backup Module

Reads and writes the cached boundary geometries (GeoJSON, optionally
gzip-compressed) together with a metadata file holding the region ids and
the SHA-256 of the data file.
"""

import gzip
import hashlib
import json
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from shapely.geometry import mapping, shape

from .errors import ValidationFailure
from .geometry import repair_geometry
from .models import Region, RegionKind

logger = logging.getLogger(__name__)

BACKUP_NAMES = {
    RegionKind.COUNTRY: 'countries',
    RegionKind.MARITIME: 'maritimes',
}


@dataclass
class BackupMetadata:
    """Backup metadata information."""
    name: str
    kind: str
    created_at: datetime
    file_name: str
    file_size_bytes: int
    file_hash: str
    region_count: int
    region_ids: List[int]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['created_at'] = self.created_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackupMetadata":
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        return cls(**data)


def calculate_file_hash(file_path: Path) -> str:
    """Calculate SHA256 hash of a file."""
    hash_sha256 = hashlib.sha256()
    with open(file_path, 'rb') as f:
        for chunk in iter(lambda: f.read(65536), b""):
            hash_sha256.update(chunk)
    return hash_sha256.hexdigest()


class BoundaryBackup:
    """Backup of one region kind inside a backup directory."""

    def __init__(self, backup_dir: str, kind: RegionKind, compress: bool = True):
        self.backup_dir = Path(backup_dir)
        self.kind = kind
        self.name = BACKUP_NAMES[kind]
        self.compress = compress

    @property
    def metadata_path(self) -> Path:
        return self.backup_dir / f"{self.name}_metadata.json"

    @property
    def data_path(self) -> Optional[Path]:
        """Existing data file, compressed preferred."""
        for candidate in (self.backup_dir / f"{self.name}.geojson.gz",
                          self.backup_dir / f"{self.name}.geojson"):
            if candidate.exists():
                return candidate
        return None

    def exists(self) -> bool:
        return self.data_path is not None

    def read_metadata(self) -> Optional[BackupMetadata]:
        if not self.metadata_path.exists():
            return None
        with open(self.metadata_path, 'r') as f:
            return BackupMetadata.from_dict(json.load(f))

    def _open(self, path: Path, mode: str):
        if path.suffix == '.gz':
            return gzip.open(path, mode + 't', encoding='utf-8')
        return open(path, mode, encoding='utf-8')

    def load(self) -> List[Region]:
        """
        Load all regions of the backup.

        Raises:
            FileNotFoundError: No backup file exists
            ValidationFailure: The file does not match its recorded hash or
                is not a usable FeatureCollection
        """
        path = self.data_path
        if path is None:
            raise FileNotFoundError(f"No {self.name} backup in {self.backup_dir}")

        metadata = self.read_metadata()
        if metadata and metadata.file_name == path.name:
            actual = calculate_file_hash(path)
            if actual != metadata.file_hash:
                raise ValidationFailure(
                    f"Backup {path} hash mismatch: expected {metadata.file_hash}, got {actual}")

        with self._open(path, 'r') as f:
            try:
                collection = json.load(f)
            except ValueError as e:
                raise ValidationFailure(f"Backup {path} is not valid JSON: {e}") from e

        if collection.get('type') != 'FeatureCollection':
            raise ValidationFailure(f"Backup {path} is not a FeatureCollection")

        regions = []
        for feature in collection.get('features', []):
            properties = feature.get('properties') or {}
            try:
                geometry = repair_geometry(shape(feature['geometry']))
                regions.append(Region(
                    region_id=int(properties['id']),
                    name=properties.get('name') or '',
                    kind=self.kind,
                    geometry=geometry,
                ))
            except (KeyError, TypeError, ValueError, ValidationFailure) as e:
                logger.warning(f"Skipping unusable feature in {path}: {e}")

        logger.info(f"Loaded {len(regions)} {self.name} from backup {path}")
        return regions

    def region_ids(self) -> Set[int]:
        """Region ids of the backup, from metadata when available."""
        metadata = self.read_metadata()
        if metadata is not None:
            return set(metadata.region_ids)
        return {region.region_id for region in self.load()}

    def save(self, regions: List[Region]) -> BackupMetadata:
        """Write regions and metadata, replacing any previous backup."""
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        file_name = f"{self.name}.geojson.gz" if self.compress else f"{self.name}.geojson"
        path = self.backup_dir / file_name
        tmp_path = path.with_name(path.name + '.tmp')

        collection = {
            'type': 'FeatureCollection',
            'features': [
                {
                    'type': 'Feature',
                    'properties': {'id': region.region_id, 'name': region.name},
                    'geometry': mapping(region.geometry),
                }
                for region in sorted(regions, key=lambda r: r.region_id)
            ],
        }

        if self.compress:
            with gzip.open(tmp_path, 'wt', encoding='utf-8') as f:
                json.dump(collection, f)
        else:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(collection, f)
        tmp_path.replace(path)

        # Only one data file per backup name
        for stale in (self.backup_dir / f"{self.name}.geojson.gz",
                      self.backup_dir / f"{self.name}.geojson"):
            if stale != path and stale.exists():
                stale.unlink()

        metadata = BackupMetadata(
            name=self.name,
            kind=self.kind.value,
            created_at=datetime.now(timezone.utc),
            file_name=file_name,
            file_size_bytes=path.stat().st_size,
            file_hash=calculate_file_hash(path),
            region_count=len(regions),
            region_ids=sorted(region.region_id for region in regions),
        )
        with open(self.metadata_path, 'w') as f:
            json.dump(metadata.to_dict(), f, indent=2)

        logger.info(f"Saved {len(regions)} {self.name} to backup {path}")
        return metadata
