"""
OSM Notes Ingestion System

Keeps a PostgreSQL copy of the OpenStreetMap notes dataset in sync with
the upstream sources and assigns every note to a country or maritime area.

Modules:
    daemon: Continuous ingestion cycle against the notes API
    reconciliation: Planet snapshot comparison and repair of the live tables
    boundary_resolver: Country/maritime boundary refresh with endpoint retry
    boundary_store: Point-in-region lookups over the loaded boundaries
    spatial_verifier: Batched region assignment of stored notes
    scheduler: Periodic execution of reconciliation and boundary jobs
"""

__version__ = "1.0.0"
__author__ = "OSM Notes Team"

# Upstream data sources
OSM_SOURCES = {
    "api_url": "https://api.openstreetmap.org/api/0.6",
    "planet_url": "https://planet.openstreetmap.org/notes/planet-notes-latest.osn.bz2",
    "planet_file_name": "planet-notes-latest.osn.bz2",
    "overpass_endpoints": [
        "https://overpass-api.de/api/interpreter",
        "https://overpass.kumi.systems/api/interpreter",
    ],
}

# Database configuration defaults
DEFAULT_DB_CONFIG = {
    "host": "localhost",
    "port": 5432,
    "database": "notes",
    "user": "notes",
    "password": "",
}

# Ingestion daemon configuration
DAEMON_CONFIG = {
    "sleep_interval": 60,
    "max_consecutive_errors": 5,
    "api_page_limit": 10000,
    "max_pages_per_cycle": 5,
    "api_timeout": 60,
    "api_max_attempts": 3,
    "api_backoff_seconds": 5,
    "api_deadline_seconds": 300,
    "lock_ttl_seconds": 900,
    "analyze_interval_hours": 6,
    "analyze_row_threshold": 100,
    "sequence_sync_interval_hours": 1,
    "gap_min_age_minutes": 30,
    "gap_min_sample": 10,
    "gap_max_ratio": 0.05,
    "shutdown_flag_file": "/tmp/notes_ingestion_shutdown",
    "base_load_when_empty": True,
}

# Reconciliation ("check") configuration
CHECK_CONFIG = {
    "download_timeout": 3600,
    "max_retries": 3,
    "copy_chunk_size": 50000,
    "verification_batch_size": 10000,
    "max_threads": 4,
    "full_verification": False,
    "verify_md5": True,
    "lock_ttl_seconds": 12 * 3600,
}

# Boundary refresh configuration
BOUNDARY_CONFIG = {
    "backup_dir": "data/boundaries",
    "retries_per_endpoint": 7,
    "backoff_seconds": 20,
    "reduced_retries": 3,
    "request_timeout": 300,
    "deadline_seconds": 6 * 3600,
    "continue_on_error": True,
    "update_backup_after_refresh": False,
    "reassign_batch_size": 5000,
    # Points with no sovereign owner that would otherwise hit a shared
    # edge or a sliver polygon: (lon, lat, tolerance in degrees)
    "special_points": [
        (0.0, 0.0, 0.001),
    ],
}

# Periodic jobs run by the scheduler
SCHEDULE_CONFIG = {
    "check_daily_time": "03:00",
    "boundaries_weekly_day": "sunday",
    "boundaries_weekly_time": "05:00",
    "max_consecutive_failures": 3,
    "poll_seconds": 60,
    "history_size": 100,
}
