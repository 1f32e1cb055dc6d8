"""
Persisted single-instance lock.

The lock is a row in process_locks with an owner and an expiry. Acquisition
is one conditional upsert, so two processes starting at the same moment
cannot both win. A lock past its expiry, or held by a process that no longer
exists on this host, is taken over.
"""

import logging
import os
import socket
import uuid
from typing import Optional, Tuple

import psutil

from .errors import LockContention

logger = logging.getLogger(__name__)


class ProcessLock:
    """Named lock shared through the database."""

    def __init__(self, connection, lock_name: str = 'daemon', ttl_seconds: int = 900,
                 owner: Optional[str] = None):
        """
        Args:
            connection: psycopg2 connection; the lock commits on it
            lock_name: Name of the lock row
            ttl_seconds: Lifetime of an acquisition before others may take it
            owner: Owner identity, defaults to host/pid/random suffix
        """
        self.connection = connection
        self.lock_name = lock_name
        self.ttl_seconds = ttl_seconds
        self.hostname = socket.gethostname()
        self.pid = os.getpid()
        self.owner = owner or f"{self.hostname}:{self.pid}:{uuid.uuid4().hex[:8]}"
        self.held = False

    def acquire(self) -> None:
        """
        Acquire or renew the lock.

        Raises:
            LockContention: The lock is held by another live owner
        """
        try:
            with self.connection.cursor() as cursor:
                cursor.execute("""
                    INSERT INTO process_locks (lock_name, owner, pid, hostname, acquired_at, expires_at)
                    VALUES (%s, %s, %s, %s, CURRENT_TIMESTAMP,
                            CURRENT_TIMESTAMP + make_interval(secs => %s))
                    ON CONFLICT (lock_name) DO UPDATE
                    SET owner = EXCLUDED.owner,
                        pid = EXCLUDED.pid,
                        hostname = EXCLUDED.hostname,
                        acquired_at = EXCLUDED.acquired_at,
                        expires_at = EXCLUDED.expires_at
                    WHERE process_locks.expires_at < CURRENT_TIMESTAMP
                       OR process_locks.owner = EXCLUDED.owner
                    RETURNING owner
                """, (self.lock_name, self.owner, self.pid, self.hostname, self.ttl_seconds))
                acquired = cursor.fetchone() is not None
            self.connection.commit()
        except Exception:
            self.connection.rollback()
            raise

        if acquired:
            self.held = True
            logger.debug(f"Lock '{self.lock_name}' acquired by {self.owner}")
            return

        holder = self._current_holder()
        if holder and self._is_stale(holder):
            if self._take_over(holder[0]):
                self.held = True
                logger.warning(f"Took over stale lock '{self.lock_name}' from {holder[0]}")
                return
            holder = self._current_holder()

        self.held = False
        raise LockContention(self.lock_name, holder[0] if holder else None)

    def release(self) -> None:
        """Release the lock if this instance owns it."""
        if not self.held:
            return
        try:
            with self.connection.cursor() as cursor:
                cursor.execute("""
                    DELETE FROM process_locks WHERE lock_name = %s AND owner = %s
                """, (self.lock_name, self.owner))
            self.connection.commit()
            logger.debug(f"Lock '{self.lock_name}' released by {self.owner}")
        except Exception:
            self.connection.rollback()
            raise
        finally:
            self.held = False

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()

    def _current_holder(self) -> Optional[Tuple[str, int, str]]:
        with self.connection.cursor() as cursor:
            cursor.execute("""
                SELECT owner, pid, hostname FROM process_locks WHERE lock_name = %s
            """, (self.lock_name,))
            row = cursor.fetchone()
        self.connection.commit()
        return tuple(row) if row else None

    def _is_stale(self, holder: Tuple[str, int, str]) -> bool:
        _, pid, hostname = holder
        # PIDs are only meaningful on the host that wrote them
        return hostname == self.hostname and not psutil.pid_exists(pid)

    def _take_over(self, previous_owner: str) -> bool:
        try:
            with self.connection.cursor() as cursor:
                cursor.execute("""
                    UPDATE process_locks
                    SET owner = %s, pid = %s, hostname = %s,
                        acquired_at = CURRENT_TIMESTAMP,
                        expires_at = CURRENT_TIMESTAMP + make_interval(secs => %s)
                    WHERE lock_name = %s AND owner = %s
                    RETURNING owner
                """, (self.owner, self.pid, self.hostname, self.ttl_seconds,
                      self.lock_name, previous_owner))
                taken = cursor.fetchone() is not None
            self.connection.commit()
            return taken
        except Exception:
            self.connection.rollback()
            raise
