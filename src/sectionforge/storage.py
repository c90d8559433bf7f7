"""
Shared SQLite plumbing for the session-scoped stores.

Each store owns one connection guarded by a re-entrant lock. Every ``with
store._connection()`` block is one transaction: it commits on success and
rolls back on any error, so a write is either a complete record or nothing.
``sqlite3.Error`` never leaves a store; it is re-raised as ``StorageError``.
"""
from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path

from .config import DB_PATH
from .db_migrations import SqliteMigration, apply_sqlite_migrations
from .errors import StorageError
from .observability import get_logger

logger = get_logger(__name__)


class SqliteStore:
    """Base class: connection lifecycle, transactions and migrations for one component."""

    component = "base"
    migrations: list[SqliteMigration] = []

    def __init__(self, db_path: str | Path | None = None):
        self.db_path = Path(db_path) if db_path else Path(DB_PATH)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = self._connect()
        try:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
        except sqlite3.Error as exc:
            logger.warning("storage_pragma_failed", component=self.component, db_path=str(self.db_path), error=str(exc))
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
        except sqlite3.Error as exc:
            raise StorageError(f"cannot open {self.component} store at {self.db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connection(self):
        with self._lock:
            if self._conn is None:
                raise StorageError(f"{self.component} store connection is closed")
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                logger.error("storage_operation_failed", component=self.component, error=str(exc))
                raise StorageError(f"{self.component} store operation failed: {exc}") from exc
            except Exception:
                self._conn.rollback()
                raise

    def _ensure_schema(self):
        with self._connection() as conn:
            applied = apply_sqlite_migrations(
                conn,
                component=self.component,
                migrations=list(self.migrations),
            )
        if applied:
            logger.info("store_schema_upgraded", component=self.component, db_path=str(self.db_path), versions=applied)

    def close(self):
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.commit()
            except sqlite3.Error as exc:
                logger.warning("storage_close_commit_failed", component=self.component, error=str(exc))
            self._conn.close()
            self._conn = None

    def __del__(self):
        try:
            self.close()
        except Exception:
            pass

    @staticmethod
    def _placeholders(values: list) -> str:
        return ",".join("?" for _ in values)
