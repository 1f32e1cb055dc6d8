"""
Database connection helpers and schema installation.
"""

import logging
from pathlib import Path
from typing import Any, Dict

import psycopg2

logger = logging.getLogger(__name__)

SCHEMA_FILE = Path(__file__).parent / "sql" / "schema.sql"


def connect(db_config: Dict[str, Any], autocommit: bool = False):
    """
    Open a psycopg2 connection with the session pinned to UTC.

    Args:
        db_config: Mapping with host, port, database, user and password
        autocommit: Whether every statement commits on its own

    Returns:
        psycopg2 connection
    """
    try:
        connection = psycopg2.connect(
            host=db_config['host'],
            port=db_config['port'],
            database=db_config['database'],
            user=db_config['user'],
            password=db_config.get('password', ''),
            options='-c timezone=UTC',
            application_name=db_config.get('application_name', 'notes_ingestion'),
        )
        connection.autocommit = autocommit
        logger.debug(f"Connected to database: {db_config['database']}")
        return connection
    except psycopg2.Error as e:
        logger.error(f"Failed to connect to database {db_config.get('database')}: {e}")
        raise


def install_schema(db_config: Dict[str, Any]) -> None:
    """Create all tables, types and indexes if they are missing."""
    sql = SCHEMA_FILE.read_text(encoding='utf-8')
    connection = connect(db_config)
    try:
        with connection.cursor() as cursor:
            cursor.execute(sql)
        connection.commit()
        logger.info(f"Schema installed in database {db_config['database']}")
    except psycopg2.Error:
        connection.rollback()
        raise
    finally:
        connection.close()
