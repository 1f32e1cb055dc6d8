"""
Unit tests for the command line interface.
"""

import io
import json
import os
import sys
import tempfile
import unittest
from contextlib import redirect_stdout
from datetime import datetime, timezone
from unittest.mock import patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

import notes_ingestion_cli as cli
from notes_ingestion.config import load_config
from notes_ingestion.errors import LockContention, UpstreamUnavailable
from notes_ingestion.orchestrator import OrchestrationResult

NOW = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)


def run(argv):
    output = io.StringIO()
    with redirect_stdout(output), patch('notes_ingestion_cli.setup_logging'):
        code = cli.main(argv)
    return code, output.getvalue()


class TestParser(unittest.TestCase):

    def test_subcommand_options(self):
        args = cli.build_parser().parse_args(
            ['--db-name', 'notes_test', 'boundaries', '--force-rebuild', '--strict'])
        self.assertEqual(args.command, 'boundaries')
        self.assertTrue(args.force_rebuild)
        self.assertTrue(args.strict)
        self.assertEqual(args.db_name, 'notes_test')

    def test_schedule_defaults(self):
        args = cli.build_parser().parse_args(['schedule'])
        self.assertEqual(args.check_time, '03:00')
        self.assertEqual(args.boundaries_day, 'sunday')

    def test_exit_codes(self):
        result = OrchestrationResult(kind='check', started_at=NOW)
        self.assertEqual(cli.exit_code_for(result), cli.EXIT_FAILURE)
        result.success = True
        self.assertEqual(cli.exit_code_for(result), cli.EXIT_OK)
        result.lock_contention = True
        self.assertEqual(cli.exit_code_for(result), cli.EXIT_LOCKED)


class TestMain(unittest.TestCase):

    def test_no_command_prints_help(self):
        code, output = run([])
        self.assertEqual(code, cli.EXIT_FAILURE)
        self.assertIn('usage', output)

    def test_missing_config_file(self):
        code, output = run(['--config', '/nonexistent/notes.json', 'status'])
        self.assertEqual(code, cli.EXIT_FAILURE)
        self.assertIn('Invalid configuration', output)

    def test_create_config_round_trip(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, 'config.json')

            code, _ = run(['--db-name', 'notes_test', 'create-config', '--output', path])

            self.assertEqual(code, cli.EXIT_OK)
            with open(path) as f:
                data = json.load(f)
            self.assertEqual(data['database']['database'], 'notes_test')
            self.assertEqual(data['database']['password'], '')
            config = load_config(path, environ={})
            self.assertEqual(config.db_config['database'], 'notes_test')

    def test_check_lock_contention_exit_code(self):
        skipped = OrchestrationResult(kind='check', started_at=NOW, lock_contention=True)
        with patch('notes_ingestion_cli.Orchestrator') as orchestrator:
            orchestrator.return_value.execute_check_workflow.return_value = skipped
            code, output = run(['check', '--planet-file', 'planet.osn', '--full-verification'])

        self.assertEqual(code, cli.EXIT_LOCKED)
        self.assertIn('Status: SKIPPED', output)
        config = orchestrator.call_args.args[0]
        self.assertTrue(config.check.full_verification)
        orchestrator.return_value.execute_check_workflow.assert_called_once_with('planet.osn')

    def test_base_load_reports_refusal(self):
        refused = OrchestrationResult(kind='base', started_at=NOW,
                                      error_messages=["Base load failed: Live notes table is not empty"])
        with patch('notes_ingestion_cli.Orchestrator') as orchestrator:
            orchestrator.return_value.execute_base_load.return_value = refused
            code, output = run(['base', '--planet-file', 'planet.osn'])

        self.assertEqual(code, cli.EXIT_FAILURE)
        self.assertIn('BASE LOAD RESULTS', output)
        self.assertIn('not empty', output)
        orchestrator.return_value.execute_base_load.assert_called_once_with('planet.osn')

    def test_boundaries_strict(self):
        done = OrchestrationResult(kind='boundaries', started_at=NOW, success=True)
        with patch('notes_ingestion_cli.Orchestrator') as orchestrator:
            orchestrator.return_value.execute_boundary_refresh.return_value = done
            code, _ = run(['boundaries', '--strict'])

        self.assertEqual(code, cli.EXIT_OK)
        orchestrator.return_value.execute_boundary_refresh.assert_called_once_with(
            force_rebuild=False, strict=True)

    def test_cycle_exit_codes(self):
        with patch('notes_ingestion_cli.IngestionDaemon') as daemon_class:
            daemon = daemon_class.from_config.return_value

            daemon.run_cycle.side_effect = LockContention('daemon', 'other')
            self.assertEqual(run(['cycle'])[0], cli.EXIT_LOCKED)

            daemon.run_cycle.side_effect = UpstreamUnavailable('notes API', 3)
            self.assertEqual(run(['cycle'])[0], cli.EXIT_FAILURE)


if __name__ == '__main__':
    unittest.main()
