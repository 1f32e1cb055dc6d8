"""
Record types for notes, comments, users and regions.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class NoteStatus(Enum):
    """Lifecycle status of a note as stored in the database."""
    OPEN = "open"
    CLOSED = "close"
    HIDDEN = "hidden"

    @classmethod
    def from_upstream(cls, value: str) -> "NoteStatus":
        """Map the status strings used by the API and planet dump."""
        normalized = (value or "").strip().lower()
        if normalized in ("closed", "close"):
            return cls.CLOSED
        if normalized == "hidden":
            return cls.HIDDEN
        if normalized == "open":
            return cls.OPEN
        raise ValueError(f"Unknown note status: {value!r}")


class CommentEvent(Enum):
    """Action recorded by a note comment."""
    OPENED = "opened"
    COMMENTED = "commented"
    CLOSED = "closed"
    REOPENED = "reopened"
    HIDDEN = "hidden"


class RegionKind(Enum):
    COUNTRY = "country"
    MARITIME = "maritime"


class RepairEntity(Enum):
    """Entity kinds with their own repair history table."""
    NOTE = "missing_notes_history"
    COMMENT = "missing_comments_history"
    TEXT = "missing_text_comments_history"


NO_REGION = -1


_TIMESTAMP_FORMATS = (
    "%Y-%m-%d %H:%M:%S UTC",
    "%Y-%m-%dT%H:%M:%SZ",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
)


def parse_osm_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a timestamp in any of the formats used by the notes sources.

    Args:
        value: Timestamp string, e.g. "2013-04-24 08:07:02 UTC" (API) or
            "2013-04-24T08:07:02Z" (planet dump)

    Returns:
        Timezone-aware UTC datetime, or None for an empty value
    """
    if not value:
        return None
    text = value.strip()
    for fmt in _TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    raise ValueError(f"Unrecognized timestamp: {value!r}")


def format_osm_timestamp(value: datetime) -> str:
    """Format a datetime the way the API expects for its `from` parameter."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class Note:
    note_id: int
    latitude: float
    longitude: float
    created_at: datetime
    status: NoteStatus = NoteStatus.OPEN
    closed_at: Optional[datetime] = None
    id_country: Optional[int] = None

    @property
    def latest_timestamp(self) -> datetime:
        if self.closed_at and self.closed_at > self.created_at:
            return self.closed_at
        return self.created_at


@dataclass
class Comment:
    note_id: int
    sequence_action: int
    event: CommentEvent
    created_at: datetime
    id_user: Optional[int] = None
    username: Optional[str] = None

    @property
    def natural_key(self) -> Tuple[int, int]:
        return (self.note_id, self.sequence_action)


@dataclass
class CommentText:
    note_id: int
    sequence_action: int
    body: str

    @property
    def natural_key(self) -> Tuple[int, int]:
        return (self.note_id, self.sequence_action)


@dataclass
class User:
    user_id: int
    username: str


@dataclass
class Region:
    region_id: int
    name: str
    kind: RegionKind
    geometry: Any  # shapely Polygon / MultiPolygon


@dataclass
class NoteBatch:
    """Notes with their comments and texts as delivered by one fetch."""
    notes: List[Note] = field(default_factory=list)
    comments: List[Comment] = field(default_factory=list)
    texts: List[CommentText] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.notes)

    @property
    def users(self) -> List[User]:
        """Distinct users referenced by the comments, last name seen wins."""
        by_id: Dict[int, str] = {}
        for comment in self.comments:
            if comment.id_user is not None and comment.username:
                by_id[comment.id_user] = comment.username
        return [User(user_id=uid, username=name) for uid, name in sorted(by_id.items())]

    @property
    def max_timestamp(self) -> Optional[datetime]:
        """Latest note or comment timestamp contained in the batch."""
        timestamps = [note.latest_timestamp for note in self.notes]
        timestamps.extend(comment.created_at for comment in self.comments)
        return max(timestamps) if timestamps else None
