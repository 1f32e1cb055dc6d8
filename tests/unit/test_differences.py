"""
Unit tests for the sorted-merge comparison.
"""

import os
import sys
import unittest
from datetime import datetime, timezone
from decimal import Decimal

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from notes_ingestion.differences import (
    DifferenceKind,
    NOTE_COMPARED_FIELDS,
    changed_fields,
    merge_differences,
)
from notes_ingestion.models import Note, NoteStatus

CREATED = datetime(2024, 1, 1, tzinfo=timezone.utc)


def note(note_id, lat=50.0, status=NoteStatus.OPEN):
    return Note(note_id=note_id, latitude=lat, longitude=4.0, created_at=CREATED, status=status)


def by_id(record):
    return record.note_id


class TestMergeDifferences(unittest.TestCase):

    def test_missing_on_either_side(self):
        diffs = list(merge_differences([note(1), note(2), note(4)],
                                       [note(2), note(3), note(4), note(5)], key=by_id))

        self.assertEqual([(d.kind, d.key) for d in diffs], [
            (DifferenceKind.MISSING_IN_SNAPSHOT, 1),
            (DifferenceKind.MISSING_IN_LIVE, 3),
            (DifferenceKind.MISSING_IN_LIVE, 5),
        ])

    def test_empty_streams(self):
        self.assertEqual(list(merge_differences([], [], key=by_id)), [])
        diffs = list(merge_differences([], [note(1)], key=by_id))
        self.assertEqual(diffs[0].kind, DifferenceKind.MISSING_IN_LIVE)
        self.assertIs(diffs[0].live, None)

    def test_attribute_mismatch_lists_changed_fields(self):
        diffs = list(merge_differences([note(1, lat=10.0, status=NoteStatus.OPEN)],
                                       [note(1, lat=11.0, status=NoteStatus.CLOSED)],
                                       key=by_id, compared_fields=NOTE_COMPARED_FIELDS))

        self.assertEqual(len(diffs), 1)
        self.assertEqual(diffs[0].kind, DifferenceKind.ATTRIBUTE_MISMATCH)
        self.assertEqual(diffs[0].changed_fields, ['latitude', 'status'])

    def test_attributes_ignored_without_compared_fields(self):
        diffs = list(merge_differences([note(1, lat=10.0)], [note(1, lat=11.0)], key=by_id))
        self.assertEqual(diffs, [])

    def test_coordinate_tolerance(self):
        live = note(1, lat=50.1234567)
        snapshot = note(1)
        snapshot.latitude = Decimal('50.12345670')
        self.assertEqual(changed_fields(live, snapshot, ['latitude']), [])

    def test_unordered_input_is_rejected(self):
        with self.assertRaises(ValueError):
            list(merge_differences([note(2), note(1)], [], key=by_id))

    def test_duplicate_keys_are_rejected(self):
        with self.assertRaises(ValueError):
            list(merge_differences([], [note(1), note(1)], key=by_id))

    def test_composite_keys(self):
        live = [(1, 1), (1, 2), (2, 1)]
        snapshot = [(1, 1), (1, 3), (2, 1)]
        diffs = list(merge_differences(live, snapshot, key=lambda k: k))
        self.assertEqual([(d.kind, d.key) for d in diffs], [
            (DifferenceKind.MISSING_IN_SNAPSHOT, (1, 2)),
            (DifferenceKind.MISSING_IN_LIVE, (1, 3)),
        ])


if __name__ == '__main__':
    unittest.main()
