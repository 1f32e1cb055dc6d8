"""
Error types shared by the ingestion daemon, the reconciliation engine and
the boundary resolver.
"""

from typing import Optional


class NotesIngestionError(Exception):
    """Base class for all errors raised by this package."""


class LockContention(NotesIngestionError):
    """Another process currently holds the ingestion lock."""

    def __init__(self, lock_name: str, owner: Optional[str] = None):
        self.lock_name = lock_name
        self.owner = owner
        holder = f" (held by {owner})" if owner else ""
        super().__init__(f"Lock '{lock_name}' is not available{holder}")


class UpstreamUnavailable(NotesIngestionError):
    """An external source could not be reached within the attempt budget."""

    def __init__(self, source: str, attempts: int, last_error: Optional[str] = None):
        self.source = source
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"{source} unavailable after {attempts} attempts{detail}")


class ValidationFailure(NotesIngestionError):
    """A payload from an external source is malformed or unusable."""


class ReferentialGap(NotesIngestionError):
    """A record references a parent that is not stored (yet)."""


class RepairConflict(NotesIngestionError):
    """A repair insert collided with a row written concurrently."""


class BoundaryRefreshError(NotesIngestionError):
    """A boundary refresh was aborted; the previous boundaries stay active."""

    def __init__(self, message: str, region_id: Optional[int] = None):
        self.region_id = region_id
        super().__init__(message)
