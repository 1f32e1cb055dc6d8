"""
Unit tests for the persisted process lock, using a mocked connection.
"""

import os
import sys
import unittest
from unittest.mock import MagicMock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from notes_ingestion.errors import LockContention
from notes_ingestion.process_lock import ProcessLock


class TestProcessLock(unittest.TestCase):

    def setUp(self):
        self.connection = MagicMock()
        self.cursor = MagicMock()
        self.connection.cursor.return_value.__enter__.return_value = self.cursor
        self.lock = ProcessLock(self.connection, 'daemon', ttl_seconds=60, owner='me')

    def executed_sql(self):
        return [c.args[0] for c in self.cursor.execute.call_args_list]

    def test_acquire(self):
        self.cursor.fetchone.return_value = ('me',)

        self.lock.acquire()

        self.assertTrue(self.lock.held)
        params = self.cursor.execute.call_args.args[1]
        self.assertEqual(params[0], 'daemon')
        self.assertEqual(params[1], 'me')
        self.assertEqual(params[-1], 60)
        self.connection.commit.assert_called()

    def test_held_by_other_host(self):
        self.cursor.fetchone.side_effect = [None, ('other', 4242, 'elsewhere')]

        with patch('notes_ingestion.process_lock.psutil.pid_exists') as pid_exists:
            with self.assertRaises(LockContention) as ctx:
                self.lock.acquire()
            pid_exists.assert_not_called()

        self.assertEqual(ctx.exception.owner, 'other')
        self.assertFalse(self.lock.held)

    def test_held_by_live_local_process(self):
        self.cursor.fetchone.side_effect = [None, ('other', 4242, self.lock.hostname)]

        with patch('notes_ingestion.process_lock.psutil.pid_exists', return_value=True):
            with self.assertRaises(LockContention):
                self.lock.acquire()

    def test_stale_local_lock_is_taken_over(self):
        self.cursor.fetchone.side_effect = [None, ('dead', 4242, self.lock.hostname), ('me',)]

        with patch('notes_ingestion.process_lock.psutil.pid_exists', return_value=False):
            self.lock.acquire()

        self.assertTrue(self.lock.held)
        self.assertIn('UPDATE process_locks', self.executed_sql()[-1])
        self.assertEqual(self.cursor.execute.call_args.args[1][-1], 'dead')

    def test_takeover_lost_to_another_process(self):
        self.cursor.fetchone.side_effect = [
            None, ('dead', 4242, self.lock.hostname), None, ('winner', 77, 'elsewhere')]

        with patch('notes_ingestion.process_lock.psutil.pid_exists', return_value=False):
            with self.assertRaises(LockContention) as ctx:
                self.lock.acquire()

        self.assertEqual(ctx.exception.owner, 'winner')

    def test_database_error_rolls_back(self):
        self.cursor.execute.side_effect = RuntimeError("connection lost")

        with self.assertRaises(RuntimeError):
            self.lock.acquire()

        self.connection.rollback.assert_called_once_with()
        self.assertFalse(self.lock.held)

    def test_release_deletes_own_row(self):
        self.cursor.fetchone.return_value = ('me',)
        self.lock.acquire()

        self.lock.release()

        self.assertIn('DELETE FROM process_locks', self.executed_sql()[-1])
        self.assertEqual(self.cursor.execute.call_args.args[1], ('daemon', 'me'))
        self.assertFalse(self.lock.held)

    def test_release_without_acquire_does_nothing(self):
        self.lock.release()
        self.cursor.execute.assert_not_called()

    def test_context_manager(self):
        self.cursor.fetchone.return_value = ('me',)

        with self.lock as lock:
            self.assertTrue(lock.held)

        self.assertFalse(self.lock.held)

    def test_default_owner_is_unique(self):
        first = ProcessLock(self.connection)
        second = ProcessLock(self.connection)
        self.assertNotEqual(first.owner, second.owner)
        self.assertTrue(first.owner.startswith(f"{first.hostname}:{first.pid}:"))


if __name__ == '__main__':
    unittest.main()
