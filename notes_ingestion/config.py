"""
Configuration Module

Dataclass configuration objects built from the package defaults, a JSON
configuration file and environment overrides.
"""

import json
import logging
import os
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from . import (
    BOUNDARY_CONFIG,
    CHECK_CONFIG,
    DAEMON_CONFIG,
    DEFAULT_DB_CONFIG,
    OSM_SOURCES,
)

logger = logging.getLogger(__name__)


@dataclass
class DaemonConfig:
    """Configuration of the continuous ingestion daemon."""
    api_url: str = OSM_SOURCES["api_url"]
    sleep_interval: int = DAEMON_CONFIG["sleep_interval"]
    max_consecutive_errors: int = DAEMON_CONFIG["max_consecutive_errors"]

    # API paging and retry
    api_page_limit: int = DAEMON_CONFIG["api_page_limit"]
    max_pages_per_cycle: int = DAEMON_CONFIG["max_pages_per_cycle"]
    api_timeout: int = DAEMON_CONFIG["api_timeout"]
    api_max_attempts: int = DAEMON_CONFIG["api_max_attempts"]
    api_backoff_seconds: float = DAEMON_CONFIG["api_backoff_seconds"]
    api_deadline_seconds: float = DAEMON_CONFIG["api_deadline_seconds"]

    # Locking
    lock_ttl_seconds: int = DAEMON_CONFIG["lock_ttl_seconds"]

    # Conditional maintenance
    analyze_interval_hours: float = DAEMON_CONFIG["analyze_interval_hours"]
    analyze_row_threshold: int = DAEMON_CONFIG["analyze_row_threshold"]
    sequence_sync_interval_hours: float = DAEMON_CONFIG["sequence_sync_interval_hours"]

    # Gap detection
    gap_min_age_minutes: int = DAEMON_CONFIG["gap_min_age_minutes"]
    gap_min_sample: int = DAEMON_CONFIG["gap_min_sample"]
    gap_max_ratio: float = DAEMON_CONFIG["gap_max_ratio"]

    shutdown_flag_file: Optional[str] = DAEMON_CONFIG["shutdown_flag_file"]

    # Fill empty live tables from the planet dump before the first cycle
    base_load_when_empty: bool = DAEMON_CONFIG["base_load_when_empty"]

    def validate(self) -> None:
        if self.sleep_interval < 0:
            raise ValueError("sleep_interval must not be negative")
        if self.max_consecutive_errors < 1:
            raise ValueError("max_consecutive_errors must be at least 1")
        if self.api_page_limit < 1 or self.api_page_limit > 10000:
            raise ValueError("api_page_limit must be between 1 and 10000")
        if self.max_pages_per_cycle < 1:
            raise ValueError("max_pages_per_cycle must be at least 1")
        if self.api_max_attempts < 1:
            raise ValueError("api_max_attempts must be at least 1")
        if self.lock_ttl_seconds <= 0:
            raise ValueError("lock_ttl_seconds must be positive")
        if not 0 <= self.gap_max_ratio <= 1:
            raise ValueError("gap_max_ratio must be between 0 and 1")


@dataclass
class ReconciliationConfig:
    """Configuration of the snapshot load and reconciliation run."""
    planet_url: str = OSM_SOURCES["planet_url"]
    planet_file: Optional[str] = None
    download_timeout: int = CHECK_CONFIG["download_timeout"]
    max_retries: int = CHECK_CONFIG["max_retries"]
    copy_chunk_size: int = CHECK_CONFIG["copy_chunk_size"]
    verification_batch_size: int = CHECK_CONFIG["verification_batch_size"]
    max_threads: int = CHECK_CONFIG["max_threads"]
    full_verification: bool = CHECK_CONFIG["full_verification"]
    verify_md5: bool = CHECK_CONFIG["verify_md5"]
    lock_ttl_seconds: int = CHECK_CONFIG["lock_ttl_seconds"]

    def validate(self) -> None:
        if self.verification_batch_size < 1:
            raise ValueError("verification_batch_size must be at least 1")
        if self.max_threads < 1:
            raise ValueError("max_threads must be at least 1")
        if self.copy_chunk_size < 1:
            raise ValueError("copy_chunk_size must be at least 1")
        if self.lock_ttl_seconds <= 0:
            raise ValueError("lock_ttl_seconds must be positive")


@dataclass
class BoundaryConfig:
    """Configuration of the boundary refresh and its Overpass retry loop."""
    endpoints: List[str] = field(default_factory=lambda: list(OSM_SOURCES["overpass_endpoints"]))
    backup_dir: str = BOUNDARY_CONFIG["backup_dir"]
    retries_per_endpoint: int = BOUNDARY_CONFIG["retries_per_endpoint"]
    backoff_seconds: float = BOUNDARY_CONFIG["backoff_seconds"]
    reduced_retries: int = BOUNDARY_CONFIG["reduced_retries"]
    request_timeout: int = BOUNDARY_CONFIG["request_timeout"]
    deadline_seconds: float = BOUNDARY_CONFIG["deadline_seconds"]
    continue_on_error: bool = BOUNDARY_CONFIG["continue_on_error"]
    update_backup_after_refresh: bool = BOUNDARY_CONFIG["update_backup_after_refresh"]
    reassign_batch_size: int = BOUNDARY_CONFIG["reassign_batch_size"]
    special_points: List[List[float]] = field(
        default_factory=lambda: [list(point) for point in BOUNDARY_CONFIG["special_points"]])

    @property
    def effective_retries(self) -> int:
        """Attempts per endpoint; fewer when failures are tolerated."""
        if self.continue_on_error:
            return min(self.retries_per_endpoint, self.reduced_retries)
        return self.retries_per_endpoint

    def validate(self) -> None:
        if not self.endpoints:
            raise ValueError("At least one Overpass endpoint is required")
        if self.retries_per_endpoint < 1:
            raise ValueError("retries_per_endpoint must be at least 1")
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds must not be negative")
        if self.deadline_seconds <= 0:
            raise ValueError("deadline_seconds must be positive")
        for point in self.special_points:
            if len(point) != 3:
                raise ValueError(f"Special point needs lon, lat and tolerance: {point}")


@dataclass
class AppConfig:
    """Complete application configuration."""
    db_config: Dict[str, Any]
    daemon: DaemonConfig = field(default_factory=DaemonConfig)
    check: ReconciliationConfig = field(default_factory=ReconciliationConfig)
    boundaries: BoundaryConfig = field(default_factory=BoundaryConfig)
    log_file: Optional[str] = None
    json_logs: bool = False

    def validate(self) -> None:
        for key in ("host", "port", "database", "user"):
            if not self.db_config.get(key):
                raise ValueError(f"Database setting '{key}' is required")
        self.daemon.validate()
        self.check.validate()
        self.boundaries.validate()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if data["db_config"].get("password"):
            data["db_config"]["password"] = "***"
        return data


def create_default_config(db_config: Optional[Dict[str, Any]] = None) -> AppConfig:
    """Create the default application configuration."""
    return AppConfig(
        db_config=dict(db_config or DEFAULT_DB_CONFIG),
        daemon=DaemonConfig(),
        check=ReconciliationConfig(),
        boundaries=BoundaryConfig(),
    )


def _merge_section(target, values: Dict[str, Any], section: str) -> None:
    for key, value in values.items():
        if not hasattr(target, key):
            raise ValueError(f"Unknown setting '{section}.{key}'")
        setattr(target, key, value)


def config_from_dict(data: Dict[str, Any]) -> AppConfig:
    """
    Build a configuration from a (possibly partial) dictionary.

    Args:
        data: Mapping with optional "database", "daemon", "check",
            "boundaries", "log_file" and "json_logs" entries

    Returns:
        AppConfig with the given values applied over the defaults
    """
    config = create_default_config()
    config.db_config.update(data.get("database", {}))
    _merge_section(config.daemon, data.get("daemon", {}), "daemon")
    _merge_section(config.check, data.get("check", {}), "check")
    _merge_section(config.boundaries, data.get("boundaries", {}), "boundaries")
    if "log_file" in data:
        config.log_file = data["log_file"]
    if "json_logs" in data:
        config.json_logs = bool(data["json_logs"])
    return config


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


# environment variable -> (section, attribute, converter)
ENV_OVERRIDES = {
    "DBNAME": ("db", "database", str),
    "DB_HOST": ("db", "host", str),
    "DB_PORT": ("db", "port", int),
    "DB_USER": ("db", "user", str),
    "DB_PASSWORD": ("db", "password", str),
    "DAEMON_SLEEP_INTERVAL": ("daemon", "sleep_interval", int),
    "MAX_CONSECUTIVE_ERRORS": ("daemon", "max_consecutive_errors", int),
    "OSM_API_URL": ("daemon", "api_url", str),
    "PLANET_URL": ("check", "planet_url", str),
    "MAX_THREADS": ("check", "max_threads", int),
    "OVERPASS_ENDPOINTS": ("boundaries", "endpoints",
                           lambda v: [item.strip() for item in v.split(",") if item.strip()]),
    "OVERPASS_RETRIES_PER_ENDPOINT": ("boundaries", "retries_per_endpoint", int),
    "OVERPASS_BACKOFF_SECONDS": ("boundaries", "backoff_seconds", float),
    "CONTINUE_ON_OVERPASS_ERROR": ("boundaries", "continue_on_error", _env_bool),
    "BOUNDARY_BACKUP_DIR": ("boundaries", "backup_dir", str),
}


def apply_env_overrides(config: AppConfig, environ: Optional[Dict[str, str]] = None) -> AppConfig:
    """
    Apply environment variable overrides to a configuration in place.

    Args:
        config: Configuration to update
        environ: Environment mapping, defaults to os.environ

    Returns:
        The updated configuration
    """
    environ = os.environ if environ is None else environ
    for variable, (section, attribute, convert) in ENV_OVERRIDES.items():
        raw = environ.get(variable)
        if raw is None or raw == "":
            continue
        try:
            value = convert(raw)
        except ValueError as e:
            raise ValueError(f"Invalid value for {variable}: {raw!r}") from e

        if section == "db":
            config.db_config[attribute] = value
        else:
            setattr(getattr(config, section), attribute, value)
        logger.debug(f"Applied environment override {variable}")
    return config


def load_config(config_path: Optional[str] = None,
                environ: Optional[Dict[str, str]] = None) -> AppConfig:
    """
    Load configuration from an optional JSON file plus environment overrides.

    Args:
        config_path: Path to a JSON configuration file, or None for defaults
        environ: Environment mapping, defaults to os.environ

    Returns:
        Validated AppConfig
    """
    if config_path:
        with open(config_path, 'r') as f:
            data = json.load(f)
        config = config_from_dict(data)
        logger.info(f"Loaded configuration from {config_path}")
    else:
        config = create_default_config()

    apply_env_overrides(config, environ)
    config.validate()
    return config
