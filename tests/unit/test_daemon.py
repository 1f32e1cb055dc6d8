"""
Unit Tests for the Ingestion Daemon
===================================

Cycles run against in-memory repositories, a scripted API client and a
shared fake lock.
"""

import os
import sys
import tempfile
import unittest
from datetime import timedelta
from unittest.mock import Mock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from shapely.geometry import box

from fakes import (
    FakeApiClient,
    FakeDatabase,
    FakeLock,
    FakeLockRegistry,
    FakeMaintenance,
    FakeNoteRepository,
    FakeProperties,
    FakeRegionRepository,
    unavailable,
    utc,
)
from notes_ingestion.boundary_store import BoundaryStore
from notes_ingestion.config import DaemonConfig
from notes_ingestion.daemon import CycleResult, IngestionDaemon
from notes_ingestion.orchestrator import OrchestrationResult
from notes_ingestion.errors import LockContention, UpstreamUnavailable
from notes_ingestion.models import (
    Comment,
    CommentEvent,
    CommentText,
    Note,
    NoteBatch,
    Region,
    RegionKind,
)
from notes_ingestion.properties import CURSOR_KEY

NOW = utc(2024, 5, 10, 12, 0)
TS1 = utc(2024, 5, 10, 10, 0)
TS2 = utc(2024, 5, 10, 10, 5)
TS3 = utc(2024, 5, 10, 10, 10)


def make_batch(note_ids, ts, with_comments=True, user=7, username='alice', lon=4.0, lat=50.0):
    batch = NoteBatch(notes=[Note(note_id=nid, latitude=lat, longitude=lon, created_at=ts)
                             for nid in note_ids])
    if with_comments:
        for nid in note_ids:
            batch.comments.append(Comment(nid, 1, CommentEvent.OPENED, ts, user, username))
            batch.texts.append(CommentText(nid, 1, f"note {nid}"))
    return batch


class DaemonTestCase(unittest.TestCase):

    def setUp(self):
        self.db = FakeDatabase()
        self.registry = FakeLockRegistry()

    def make_daemon(self, responses, owner='a', config=None, page_limit=10000,
                    boundary_store=None, db=None, regions=None, base_loader=None):
        db = db or self.db
        config = config or DaemonConfig(sleep_interval=60, shutdown_flag_file=None)
        return IngestionDaemon(
            config=config,
            api_client=FakeApiClient(responses, page_limit=page_limit),
            repository=FakeNoteRepository(db),
            properties=FakeProperties(db),
            lock=FakeLock(self.registry, owner),
            maintenance=FakeMaintenance(),
            boundary_store=boundary_store,
            regions=regions,
            base_loader=base_loader,
            clock=lambda: NOW,
        )

    def committed_cursor(self):
        return self.db.committed['properties'].get(CURSOR_KEY)


class TestRunCycle(DaemonTestCase):

    def test_cycle_upserts_and_advances_cursor(self):
        daemon = self.make_daemon([make_batch([1, 2], TS1)])

        result = daemon.run_cycle()

        self.assertEqual(result.status, "completed")
        self.assertEqual((result.notes_inserted, result.comments_inserted, result.texts_inserted),
                         (2, 2, 2))
        self.assertEqual(result.users_upserted, 1)
        self.assertEqual(sorted(self.db.committed['notes']), [1, 2])
        self.assertEqual(self.committed_cursor(), TS1.isoformat())
        self.assertEqual(self.registry.holders, {})
        self.assertEqual(len(daemon.maintenance.calls), 1)

    def test_next_cycle_starts_from_cursor(self):
        daemon = self.make_daemon([make_batch([1], TS1), make_batch([1], TS2)])

        daemon.run_cycle()
        second = daemon.run_cycle()

        self.assertEqual(daemon.api_client.calls, [None, TS1])
        self.assertEqual(second.notes_updated, 1)
        self.assertEqual(self.committed_cursor(), TS2.isoformat())

    def test_stage_timings_are_recorded(self):
        daemon = self.make_daemon([make_batch([1], TS1)])

        result = daemon.run_cycle()

        stages = [timing.stage for timing in result.stage_timings]
        self.assertEqual(stages[0], "acquire lock")
        self.assertIn("fetch", stages)
        self.assertIn("upsert", stages)
        self.assertEqual(stages[-1], "release lock")

    def test_upstream_failure_keeps_cursor(self):
        self.db['properties'][CURSOR_KEY] = TS1.isoformat()
        self.db.commit()
        daemon = self.make_daemon([unavailable()])

        with self.assertRaises(UpstreamUnavailable):
            daemon.run_cycle()

        self.assertEqual(self.committed_cursor(), TS1.isoformat())
        self.assertEqual(daemon.last_result.status, "failed")
        self.assertEqual(self.registry.holders, {})

    def test_failure_on_later_page_keeps_earlier_pages(self):
        daemon = self.make_daemon([make_batch([1, 2], TS1), unavailable()], page_limit=2)

        with self.assertRaises(UpstreamUnavailable):
            daemon.run_cycle()

        self.assertEqual(sorted(self.db.committed['notes']), [1, 2])
        self.assertEqual(self.committed_cursor(), TS1.isoformat())

    def test_lock_held_elsewhere_skips_cycle_without_writes(self):
        FakeLock(self.registry, 'other').acquire()
        daemon = self.make_daemon([make_batch([1], TS1)], owner='b')

        with self.assertRaises(LockContention):
            daemon.run_cycle()

        self.assertEqual(daemon.api_client.calls, [])
        self.assertEqual(daemon.repository.writes, 0)
        self.assertEqual(daemon.last_result.status, "skipped")
        self.assertEqual(self.registry.holders, {'daemon': 'other'})

    def test_two_daemons_started_together_only_one_writes(self):
        daemon_b = self.make_daemon([make_batch([2], TS2)], owner='b')
        contention = []

        class ApiStartingSecondDaemon(FakeApiClient):
            def fetch_changes(self, since):
                try:
                    daemon_b.run_cycle()
                except LockContention as e:
                    contention.append(e)
                return super().fetch_changes(since)

        daemon_a = self.make_daemon([], owner='a')
        daemon_a.api_client = ApiStartingSecondDaemon([make_batch([1], TS1)])

        daemon_a.run_cycle()

        self.assertEqual(len(contention), 1)
        self.assertEqual(sorted(self.db.committed['notes']), [1])
        self.assertEqual(daemon_b.repository.writes, 0)

    def test_full_pages_are_followed(self):
        daemon = self.make_daemon([make_batch([1, 2], TS1), make_batch([3], TS2)], page_limit=2)

        result = daemon.run_cycle()

        self.assertEqual(result.pages, 2)
        self.assertEqual(daemon.api_client.calls, [None, TS1])
        self.assertEqual(self.committed_cursor(), TS2.isoformat())

    def test_pages_per_cycle_are_capped(self):
        config = DaemonConfig(max_pages_per_cycle=2, shutdown_flag_file=None)
        daemon = self.make_daemon(
            [make_batch([1], TS1), make_batch([2], TS2), make_batch([3], TS3)],
            config=config, page_limit=1)

        result = daemon.run_cycle()

        self.assertEqual(result.pages, 2)
        self.assertEqual(self.committed_cursor(), TS2.isoformat())

    def test_large_comment_gap_holds_cursor_back(self):
        daemon = self.make_daemon([make_batch(range(1, 11), TS1, with_comments=False)])

        result = daemon.run_cycle()

        self.assertTrue(result.cursor_held_back)
        self.assertEqual(len(result.gap_note_ids), 10)
        self.assertIsNone(self.committed_cursor())
        self.assertEqual(len(self.db.committed['notes']), 10)
        self.assertEqual(self.db.committed['gaps'][0][2], 10)

    def test_small_sample_gap_does_not_hold_cursor(self):
        daemon = self.make_daemon([make_batch([1, 2], TS1, with_comments=False)])

        result = daemon.run_cycle()

        self.assertFalse(result.cursor_held_back)
        self.assertEqual(self.committed_cursor(), TS1.isoformat())

    def test_comment_of_unknown_user_is_skipped(self):
        batch = make_batch([1], TS1, user=5, username=None)

        result = self.make_daemon([batch]).run_cycle()

        self.assertEqual(result.comments_skipped, 1)
        self.assertEqual(self.db.committed['comments'], {})
        self.assertEqual(result.notes_inserted, 1)

    def test_notes_written_in_ascending_id_order(self):
        daemon = self.make_daemon([make_batch([3, 1, 2], TS1)])
        upsert = daemon.repository.upsert_notes = Mock(wraps=daemon.repository.upsert_notes)

        daemon.run_cycle()

        self.assertEqual([note.note_id for note in upsert.call_args.args[0]], [1, 2, 3])

    def test_regions_assigned_from_boundary_store(self):
        store = BoundaryStore([Region(1, 'Square', RegionKind.COUNTRY, box(0, 40, 10, 60))])
        batch = make_batch([1], TS1)
        batch.notes.append(Note(note_id=2, latitude=10.0, longitude=100.0, created_at=TS1))

        self.make_daemon([batch], boundary_store=store).run_cycle()

        self.assertEqual(self.db.committed['notes'][1].id_country, 1)
        self.assertEqual(self.db.committed['notes'][2].id_country, -1)


class TestDaemonLoop(DaemonTestCase):

    def test_adaptive_sleep(self):
        daemon = self.make_daemon([])
        busy = CycleResult(cycle_number=1, started_at=NOW, status="completed", notes_inserted=3)
        idle = CycleResult(cycle_number=2, started_at=NOW, status="completed")

        self.assertEqual(daemon.compute_sleep(busy, 10.0), 50.0)
        self.assertEqual(daemon.compute_sleep(busy, 75.0), 0.0)
        self.assertEqual(daemon.compute_sleep(idle, 10.0), 60.0)
        self.assertEqual(daemon.compute_sleep(None, 10.0), 60.0)

    def test_stops_after_consecutive_failures(self):
        config = DaemonConfig(sleep_interval=0, max_consecutive_errors=2, shutdown_flag_file=None)
        daemon = self.make_daemon([unavailable(), unavailable(), unavailable()], config=config)

        self.assertEqual(daemon.run_forever(), 1)
        self.assertEqual(daemon.cycle_count, 2)

    def test_success_resets_failure_count(self):
        config = DaemonConfig(sleep_interval=0, max_consecutive_errors=2, shutdown_flag_file=None)
        daemon = self.make_daemon([unavailable(), make_batch([1], TS1), unavailable(), unavailable()],
                                  config=config)

        self.assertEqual(daemon.run_forever(), 1)
        self.assertEqual(daemon.cycle_count, 4)

    def test_lock_contention_does_not_count_as_failure(self):
        config = DaemonConfig(sleep_interval=0, max_consecutive_errors=1, shutdown_flag_file=None)
        daemon = self.make_daemon([], config=config)
        attempts = []

        def contended():
            attempts.append(1)
            if len(attempts) >= 3:
                daemon.request_shutdown()
            raise LockContention('daemon', 'other')

        daemon.lock = Mock(acquire=Mock(side_effect=contended))

        self.assertEqual(daemon.run_forever(), 0)
        self.assertEqual(len(attempts), 3)
        self.assertEqual(daemon.consecutive_errors, 0)

    def test_shutdown_flag_file_stops_loop(self):
        with tempfile.TemporaryDirectory() as tmp:
            flag = os.path.join(tmp, 'shutdown')
            open(flag, 'w').close()
            config = DaemonConfig(shutdown_flag_file=flag)
            daemon = self.make_daemon([make_batch([1], TS1)], config=config)

            self.assertEqual(daemon.run_forever(), 0)
            self.assertEqual(daemon.cycle_count, 0)
            self.assertFalse(os.path.exists(flag))

    def test_reload_config(self):
        daemon = self.make_daemon([])
        daemon.config_loader = lambda: DaemonConfig(sleep_interval=5, shutdown_flag_file=None)

        daemon.reload_config()

        self.assertEqual(daemon.config.sleep_interval, 5)

    def test_invalid_reload_keeps_current_config(self):
        daemon = self.make_daemon([])
        daemon.config_loader = lambda: DaemonConfig(sleep_interval=-1)

        daemon.reload_config()

        self.assertEqual(daemon.config.sleep_interval, 60)

    def test_status(self):
        daemon = self.make_daemon([make_batch([1], TS1)])
        daemon.started_at = NOW - timedelta(minutes=5)
        daemon.run_cycle()

        status = daemon.status()

        self.assertEqual(status['state'], 'idle')
        self.assertEqual(status['cycles'], 1)
        self.assertEqual(status['uptime_seconds'], 300.0)
        self.assertEqual(status['last_cursor'], TS1.isoformat())


class TestBoundaryReload(DaemonTestCase):

    def square(self):
        return Region(1, 'Square', RegionKind.COUNTRY, box(0, 40, 10, 60))

    def test_regions_stored_after_start_are_picked_up(self):
        regions = FakeRegionRepository()
        daemon = self.make_daemon([make_batch([1], TS1), make_batch([2], TS2), make_batch([3], TS3)],
                                  regions=regions)

        daemon.run_cycle()
        regions.regions = [self.square()]
        regions.refreshed_at = NOW
        daemon.run_cycle()
        daemon.run_cycle()

        notes = self.db.committed['notes']
        self.assertIsNone(notes[1].id_country)
        self.assertEqual(notes[2].id_country, 1)
        self.assertEqual(notes[3].id_country, 1)
        self.assertEqual(regions.loads, 2)

    def test_reload_signal_reloads_regions(self):
        regions = FakeRegionRepository([self.square()], refreshed_at=NOW)
        daemon = self.make_daemon([make_batch([1], TS1)], regions=regions)
        daemon.run_cycle()

        daemon._handle_reload_signal(None, None)
        daemon._handle_pending_requests()

        self.assertEqual(regions.loads, 2)
        self.assertEqual(len(daemon.boundary_store), 1)

    def test_failed_region_reload_keeps_current_regions(self):
        regions = FakeRegionRepository([self.square()], refreshed_at=NOW)
        daemon = self.make_daemon([], regions=regions)
        daemon.refresh_boundaries()
        regions.regions_version = Mock(side_effect=RuntimeError("connection lost"))

        daemon._handle_reload_signal(None, None)
        daemon._handle_pending_requests()

        self.assertEqual(len(daemon.boundary_store), 1)


class TestBaseLoadOnStart(DaemonTestCase):

    def test_empty_database_is_loaded_before_the_first_cycle(self):
        cycles_seen = []

        def base_loader():
            cycles_seen.append(daemon.cycle_count)
            daemon.request_shutdown()
            return OrchestrationResult(kind='base', started_at=NOW, success=True)

        config = DaemonConfig(sleep_interval=0, shutdown_flag_file=None)
        daemon = self.make_daemon([], config=config, base_loader=base_loader)

        self.assertEqual(daemon.run_forever(), 0)
        self.assertEqual(cycles_seen, [0])

    def test_populated_database_is_not_loaded(self):
        self.db['notes'][1] = Note(note_id=1, latitude=50.0, longitude=4.0, created_at=TS1)
        self.db.commit()
        base_loader = Mock()

        self.make_daemon([], base_loader=base_loader).bootstrap()

        base_loader.assert_not_called()

    def test_stored_cursor_prevents_base_load(self):
        self.db['properties'][CURSOR_KEY] = TS1.isoformat()
        self.db.commit()
        base_loader = Mock()

        self.make_daemon([], base_loader=base_loader).bootstrap()

        base_loader.assert_not_called()

    def test_disabled_base_load(self):
        base_loader = Mock()
        config = DaemonConfig(base_load_when_empty=False, shutdown_flag_file=None)

        self.make_daemon([], config=config, base_loader=base_loader).bootstrap()

        base_loader.assert_not_called()

    def test_failed_base_load_falls_back_to_the_api(self):
        base_loader = Mock(return_value=OrchestrationResult(
            kind='base', started_at=NOW, error_messages=["Base load failed: disk full"]))
        config = DaemonConfig(sleep_interval=0, max_consecutive_errors=1, shutdown_flag_file=None)
        daemon = self.make_daemon([make_batch([1], TS1), unavailable()], config=config,
                                  base_loader=base_loader)

        self.assertEqual(daemon.run_forever(), 1)
        base_loader.assert_called_once_with()
        self.assertIn(1, self.db.committed['notes'])


if __name__ == '__main__':
    unittest.main()
