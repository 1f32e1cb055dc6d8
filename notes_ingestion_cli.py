#!/usr/bin/env python3
"""
OSM Notes Ingestion CLI

Command-line interface for the notes ingestion system.

Usage:
    python3 notes_ingestion_cli.py --help
    python3 notes_ingestion_cli.py daemon --config config.json
    python3 notes_ingestion_cli.py base --planet-file planet-notes-latest.osn.bz2
    python3 notes_ingestion_cli.py check --planet-file planet-notes-latest.osn.bz2
    python3 notes_ingestion_cli.py boundaries --strict
    python3 notes_ingestion_cli.py status

Exit codes: 0 success, 1 failure, 2 another instance holds the lock.
"""

import argparse
import json
import logging
import sys

from notes_ingestion import __version__
from notes_ingestion.config import AppConfig, load_config
from notes_ingestion.daemon import IngestionDaemon
from notes_ingestion.database import connect, install_schema
from notes_ingestion.errors import LockContention, UpstreamUnavailable
from notes_ingestion.orchestrator import OrchestrationResult, Orchestrator
from notes_ingestion.properties import CURSOR_KEY, SNAPSHOT_CUTOFF_KEY, PropertyStore
from notes_ingestion.run_tracker import RunTracker
from notes_ingestion.scheduler import (
    JobScheduler,
    create_daily_check_schedule,
    create_weekly_boundary_schedule,
    job_log_handler,
)
from notes_ingestion.timing import setup_logging

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_LOCKED = 2


def build_config(args) -> AppConfig:
    """Configuration file and environment, then command line overrides."""
    config = load_config(args.config)

    if args.db_host:
        config.db_config['host'] = args.db_host
    if args.db_port:
        config.db_config['port'] = int(args.db_port)
    if args.db_name:
        config.db_config['database'] = args.db_name
    if args.db_user:
        config.db_config['user'] = args.db_user
    if args.db_password:
        config.db_config['password'] = args.db_password
    if args.json_logs:
        config.json_logs = True
    if args.log_file:
        config.log_file = args.log_file

    config.validate()
    return config


def print_result(title: str, result: OrchestrationResult) -> None:
    print("\n" + "=" * 50)
    print(title)
    print("=" * 50)

    print(f"Run ID: {result.run_id}")
    print(f"Started: {result.started_at}")
    print(f"Completed: {result.completed_at}")
    print(f"Duration: {result.processing_time:.2f} seconds")
    print(f"Status: {result.status}")
    print(f"Total Changes: {result.total_changes}")

    if result.counts:
        print("\nCounts:")
        for name, value in result.counts.items():
            print(f"  {name}: {value}")

    if result.error_messages:
        print("\nErrors:")
        for error in result.error_messages:
            print(f"  - {error}")

    if result.warning_messages:
        print("\nWarnings:")
        for warning in result.warning_messages:
            print(f"  - {warning}")


def exit_code_for(result: OrchestrationResult) -> int:
    if result.lock_contention:
        return EXIT_LOCKED
    return EXIT_OK if result.success else EXIT_FAILURE


def cmd_daemon(args, config: AppConfig) -> int:
    """Run the ingestion daemon until it is stopped."""
    daemon = IngestionDaemon.from_config(config, config_path=args.config)
    daemon.install_signal_handlers()
    return daemon.run_forever()


def cmd_cycle(args, config: AppConfig) -> int:
    """Run a single ingestion cycle."""
    daemon = IngestionDaemon.from_config(config, config_path=args.config)
    try:
        result = daemon.run_cycle()
    except LockContention as e:
        print(f"Cycle skipped: {e}")
        return EXIT_LOCKED
    except UpstreamUnavailable as e:
        print(f"Cycle failed: {e}")
        return EXIT_FAILURE

    print(f"Cycle completed in {result.duration_seconds:.2f}s")
    for name, value in result.counts().items():
        print(f"  {name}: {value}")
    if result.cursor_after:
        print(f"  cursor: {result.cursor_after.isoformat()}")
    return EXIT_OK


def cmd_check(args, config: AppConfig) -> int:
    """Load the planet snapshot and reconcile the live tables."""
    if args.full_verification:
        config.check.full_verification = True
    result = Orchestrator(config).execute_check_workflow(args.planet_file)
    print_result("RECONCILIATION RESULTS", result)
    return exit_code_for(result)


def cmd_base(args, config: AppConfig) -> int:
    """Fill empty live tables from the planet dump."""
    result = Orchestrator(config).execute_base_load(args.planet_file)
    print_result("BASE LOAD RESULTS", result)
    return exit_code_for(result)


def cmd_boundaries(args, config: AppConfig) -> int:
    """Refresh the country and maritime boundaries."""
    strict = True if args.strict else None
    result = Orchestrator(config).execute_boundary_refresh(
        force_rebuild=args.force_rebuild, strict=strict)
    print_result("BOUNDARY REFRESH RESULTS", result)
    return exit_code_for(result)


def cmd_schedule(args, config: AppConfig) -> int:
    """Run the periodic check and boundary jobs in the foreground."""
    scheduler = JobScheduler(Orchestrator(config))
    scheduler.add_notification_handler(job_log_handler)
    scheduler.add_scheduled_job(create_daily_check_schedule(args.check_time))
    scheduler.add_scheduled_job(create_weekly_boundary_schedule(args.boundaries_day,
                                                                args.boundaries_time))
    for name in scheduler.scheduled_jobs:
        status = scheduler.get_job_status(name)
        print(f"  {name}: next run {status['next_run']}")

    try:
        scheduler.run_forever()
    except KeyboardInterrupt:
        scheduler.stop()
    return EXIT_OK


def cmd_init_db(args, config: AppConfig) -> int:
    """Create the database schema."""
    install_schema(config.db_config)
    print(f"Schema installed in database {config.db_config['database']}")
    return EXIT_OK


def cmd_status(args, config: AppConfig) -> int:
    """Show cursor, recent runs and repair counts."""
    print("OSM Notes Ingestion Status")
    print("=" * 50)

    connection = connect(config.db_config)
    try:
        properties = PropertyStore(connection)
        cursor = properties.get_timestamp(CURSOR_KEY)
        cutoff = properties.get_timestamp(SNAPSHOT_CUTOFF_KEY)
        connection.commit()
    finally:
        connection.close()

    print(f"Database: {config.db_config['database']}")
    print(f"Cursor: {cursor.isoformat() if cursor else 'None'}")
    print(f"Snapshot cutoff: {cutoff.isoformat() if cutoff else 'None'}")

    with RunTracker(config.db_config) as tracker:
        runs = tracker.get_recent_runs(limit=args.limit)
        repairs = tracker.get_repair_summary(days=args.days)

    print("\nRecent Runs:")
    if not runs:
        print("  None")
    for run in runs:
        print(f"  {run['started_at']} {run['kind']:<10} {run['status']:<10} "
              f"{json.dumps(run.get('counts') or {}, default=str)}")

    print(f"\nRepairs ({args.days} days):")
    for table, counts in repairs.items():
        print(f"  {table}: {counts['detected']} detected, {counts['inserted']} inserted")
    return EXIT_OK


def create_sample_config(args, config: AppConfig) -> int:
    """Write the effective configuration as a starting point."""
    data = config.to_dict()
    sample = {
        'database': data['db_config'],
        'daemon': data['daemon'],
        'check': data['check'],
        'boundaries': data['boundaries'],
        'log_file': data['log_file'],
        'json_logs': data['json_logs'],
    }
    sample['database']['password'] = ''

    config_path = args.output or 'notes_ingestion_config.json'
    with open(config_path, 'w') as f:
        json.dump(sample, f, indent=2)

    print(f"Sample configuration created: {config_path}")
    return EXIT_OK


COMMANDS = {
    'daemon': cmd_daemon,
    'cycle': cmd_cycle,
    'base': cmd_base,
    'check': cmd_check,
    'boundaries': cmd_boundaries,
    'schedule': cmd_schedule,
    'init-db': cmd_init_db,
    'status': cmd_status,
    'create-config': create_sample_config,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='OSM Notes Ingestion System CLI',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Continuous ingestion
  python3 notes_ingestion_cli.py daemon --config config.json

  # First load of an empty database
  python3 notes_ingestion_cli.py base --planet-file planet-notes-latest.osn.bz2

  # Reconcile against a local planet dump
  python3 notes_ingestion_cli.py check --planet-file planet-notes-latest.osn.bz2

  # Rebuild every boundary, failing on the first unavailable one
  python3 notes_ingestion_cli.py boundaries --force-rebuild --strict

  # Daily check and weekly boundary refresh
  python3 notes_ingestion_cli.py schedule --check-time 03:00
        """
    )

    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose logging')
    parser.add_argument('--config', help='Configuration file path (JSON)')
    parser.add_argument('--json-logs', action='store_true', help='Emit JSON log lines')
    parser.add_argument('--log-file', help='Also write logs to this file')

    db_group = parser.add_argument_group('database connection')
    db_group.add_argument('--db-host', help='Database host')
    db_group.add_argument('--db-port', help='Database port')
    db_group.add_argument('--db-name', help='Database name')
    db_group.add_argument('--db-user', help='Database user')
    db_group.add_argument('--db-password', help='Database password')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    subparsers.add_parser('daemon', help='Run the ingestion daemon')
    subparsers.add_parser('cycle', help='Run a single ingestion cycle')

    check_parser = subparsers.add_parser('check', help='Reconcile against the planet snapshot')
    check_parser.add_argument('--planet-file', help='Local planet notes dump (skips download)')
    check_parser.add_argument('--full-verification', action='store_true',
                              help='Re-validate the region of every note')

    base_parser = subparsers.add_parser('base', help='Load the planet dump into empty live tables')
    base_parser.add_argument('--planet-file', help='Local planet notes dump (skips download)')

    boundaries_parser = subparsers.add_parser('boundaries', help='Refresh boundaries')
    boundaries_parser.add_argument('--force-rebuild', action='store_true',
                                   help='Download every boundary even when a backup exists')
    boundaries_parser.add_argument('--strict', action='store_true',
                                   help='Abort when a boundary cannot be downloaded')

    schedule_parser = subparsers.add_parser('schedule', help='Run periodic jobs')
    schedule_parser.add_argument('--check-time', default=create_daily_check_schedule().daily_time,
                                 help='Daily check time (HH:MM)')
    schedule_parser.add_argument('--boundaries-day',
                                 default=create_weekly_boundary_schedule().weekly_day,
                                 help='Weekday of the boundary refresh')
    schedule_parser.add_argument('--boundaries-time',
                                 default=create_weekly_boundary_schedule().weekly_time,
                                 help='Time of the boundary refresh (HH:MM)')

    subparsers.add_parser('init-db', help='Create the database schema')

    status_parser = subparsers.add_parser('status', help='Show system status')
    status_parser.add_argument('--limit', type=int, default=10, help='Recent runs to show')
    status_parser.add_argument('--days', type=int, default=30, help='Repair summary window')

    config_parser = subparsers.add_parser('create-config', help='Write a sample configuration')
    config_parser.add_argument('--output', help='Output file path')

    return parser


def main(argv=None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command not in COMMANDS:
        parser.print_help()
        return EXIT_FAILURE

    try:
        config = build_config(args)
    except (OSError, ValueError) as e:
        print(f"Invalid configuration: {e}")
        return EXIT_FAILURE

    setup_logging(args.verbose, config.json_logs, config.log_file)
    return COMMANDS[args.command](args, config)


if __name__ == '__main__':
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nOperation cancelled by user")
        sys.exit(130)
    except Exception as e:
        print(f"\nUnexpected error: {e}")
        logging.exception("Unexpected error in CLI")
        sys.exit(1)
