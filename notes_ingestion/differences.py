"""
Sorted-merge comparison of two record streams.

Both inputs must be ordered ascending by the same key. The merge walks them
in lockstep, so memory use does not depend on the table sizes.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, List, Optional, Sequence

# Note attributes compared between live data and the snapshot; closed_at is
# left out because it legitimately moves while a note is reopened and closed
NOTE_COMPARED_FIELDS = ('latitude', 'longitude', 'created_at', 'status')

COORDINATE_TOLERANCE = 1e-7


class DifferenceKind(Enum):
    MISSING_IN_LIVE = "missing_in_live"
    MISSING_IN_SNAPSHOT = "missing_in_snapshot"
    ATTRIBUTE_MISMATCH = "attribute_mismatch"


@dataclass
class Difference:
    kind: DifferenceKind
    key: Any
    live: Any = None
    snapshot: Any = None
    changed_fields: List[str] = field(default_factory=list)


def _values_differ(left: Any, right: Any) -> bool:
    if isinstance(left, (float, Decimal)) and isinstance(right, (float, Decimal)):
        return abs(float(left) - float(right)) > COORDINATE_TOLERANCE
    return left != right


def changed_fields(live: Any, snapshot: Any, fields: Sequence[str]) -> List[str]:
    """Names of the compared attributes whose values differ."""
    return [name for name in fields
            if _values_differ(getattr(live, name), getattr(snapshot, name))]


def _ordered(records: Iterable[Any], key: Callable[[Any], Any], side: str) -> Iterator[Any]:
    previous = None
    for record in records:
        current = key(record)
        if previous is not None and current <= previous:
            raise ValueError(f"{side} records are not strictly ordered: {current} after {previous}")
        previous = current
        yield record


def merge_differences(live: Iterable[Any], snapshot: Iterable[Any],
                      key: Callable[[Any], Any],
                      compared_fields: Optional[Sequence[str]] = None) -> Iterator[Difference]:
    """
    Yield the differences between two key-ordered record streams.

    Args:
        live: Records from the live tables, ascending by key
        snapshot: Records from the snapshot tables, ascending by key
        key: Natural key of a record
        compared_fields: Attributes checked on records present on both
            sides; None skips the attribute comparison

    Raises:
        ValueError: A stream is not strictly ascending
    """
    live_iter = _ordered(live, key, 'live')
    snap_iter = _ordered(snapshot, key, 'snapshot')
    live_record = next(live_iter, None)
    snap_record = next(snap_iter, None)

    while live_record is not None or snap_record is not None:
        if snap_record is None or (live_record is not None and key(live_record) < key(snap_record)):
            yield Difference(DifferenceKind.MISSING_IN_SNAPSHOT, key(live_record), live=live_record)
            live_record = next(live_iter, None)
        elif live_record is None or key(snap_record) < key(live_record):
            yield Difference(DifferenceKind.MISSING_IN_LIVE, key(snap_record), snapshot=snap_record)
            snap_record = next(snap_iter, None)
        else:
            if compared_fields:
                changed = changed_fields(live_record, snap_record, compared_fields)
                if changed:
                    yield Difference(DifferenceKind.ATTRIBUTE_MISMATCH, key(live_record),
                                     live=live_record, snapshot=snap_record,
                                     changed_fields=changed)
            live_record = next(live_iter, None)
            snap_record = next(snap_iter, None)
