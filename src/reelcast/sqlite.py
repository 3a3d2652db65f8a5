"""Thread-local SQLite access shared by the queue and the record store."""

import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, List

from sqlite_utils import Database

from .errors import StorageUnavailable


class ThreadLocalSQLite:
    """Gives every thread its own sqlite-utils Database on one file.

    Connections run in autocommit mode; multi-statement writes go through
    ``_transaction()`` (BEGIN IMMEDIATE) and every storage call through
    ``_with_retry()`` so lock contention and I/O failures surface as
    StorageUnavailable rather than raw sqlite3 errors.
    """

    def __init__(self, db_path: str, busy_timeout_s: float = 5.0):
        self.db_path = Path(db_path)
        self.busy_timeout_s = busy_timeout_s
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageUnavailable(f"Cannot create database directory: {e}") from e

    @property
    def db(self) -> Database:
        """Per-thread sqlite-utils Database."""
        db = getattr(self._local, "db", None)
        if db is None:
            try:
                conn = sqlite3.connect(
                    str(self.db_path),
                    timeout=self.busy_timeout_s,
                    isolation_level=None,  # Transactions are explicit
                    check_same_thread=False,
                )
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe
            except sqlite3.Error as e:
                raise StorageUnavailable(f"Cannot open database {self.db_path}: {e}") from e
            with self._connections_lock:
                self._connections.append(conn)
            db = Database(conn)
            self._local.db = db
        return db

    @contextmanager
    def _transaction(self):
        """BEGIN IMMEDIATE ... COMMIT, rolled back on any error.

        BEGIN IMMEDIATE takes the write lock at transaction start, so a
        read-then-update inside it cannot race another connection.
        """
        conn = self.db.conn
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    def _with_retry(self, operation: Callable[[], Any], max_retries: int = 3) -> Any:
        """Run a storage operation with exponential backoff on SQLITE_BUSY.

        Backoff: 100ms, 200ms, 400ms. Anything else, or a lock that outlasts
        the retries, is raised as StorageUnavailable.
        """
        for attempt in range(max_retries):
            try:
                return operation()
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e).lower() and attempt < max_retries - 1:
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise StorageUnavailable(f"{self.db_path}: {e}") from e
            except sqlite3.DatabaseError as e:
                raise StorageUnavailable(f"{self.db_path}: {e}") from e
        raise StorageUnavailable(f"{self.db_path}: retries exhausted")

    def close(self) -> None:
        """Close every connection opened through this object."""
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()
