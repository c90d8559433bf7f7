"""
Session lifecycle: registration on first heartbeat, TTL-based expiry and the
background sweep that evicts every trace of an expired session.

Eviction deletes chunks, outlines and ledger rows before the session row, so an
eviction that fails half-way leaves the session registered and expired and the
next sweep retries it to completion.
"""
from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Literal

from .config import HEARTBEAT_TIMEOUT_S, SESSION_TTL_S, SWEEP_INTERVAL_S
from .db_migrations import SqliteMigration
from .errors import InputValidationError, SectionForgeError
from .models import CleanupStats, SessionMetadata
from .observability import get_logger
from .storage import SqliteStore

logger = get_logger(__name__)

SessionStatus = Literal["unregistered", "active", "inactive", "expired"]


class SessionRegistry(SqliteStore):
    """Persistent session rows: created/last-accessed epoch seconds and TTL."""

    component = "sessions"
    migrations = [
        SqliteMigration(
            version=1,
            name="create_sessions_table",
            statements=(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    session_id TEXT PRIMARY KEY,
                    created_at REAL NOT NULL,
                    last_accessed REAL NOT NULL,
                    ttl_seconds REAL NOT NULL,
                    user_id TEXT
                )
                """,
                "CREATE INDEX IF NOT EXISTS idx_sessions_last_accessed ON sessions(last_accessed)",
            ),
        ),
    ]

    @staticmethod
    def _row_to_metadata(row) -> SessionMetadata:
        return SessionMetadata(
            session_id=row["session_id"],
            created_at=float(row["created_at"]),
            last_accessed=float(row["last_accessed"]),
            ttl_seconds=float(row["ttl_seconds"]),
            user_id=row["user_id"],
        )

    def register(
        self,
        session_id: str,
        *,
        now: float,
        ttl_seconds: float = SESSION_TTL_S,
        user_id: str | None = None,
    ) -> SessionMetadata:
        """Inserts the session or refreshes ``last_accessed``; ``created_at`` never moves."""
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO sessions (session_id, created_at, last_accessed, ttl_seconds, user_id)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                    last_accessed = excluded.last_accessed,
                    user_id = COALESCE(excluded.user_id, sessions.user_id)
                """,
                (session_id, float(now), float(now), float(ttl_seconds), user_id),
            )
            row = conn.execute("SELECT * FROM sessions WHERE session_id = ?", (session_id,)).fetchone()
        return self._row_to_metadata(row)

    def touch(self, session_id: str, *, now: float) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                "UPDATE sessions SET last_accessed = ? WHERE session_id = ?",
                (float(now), session_id),
            )
        return bool(cursor.rowcount)

    def get(self, session_id: str) -> SessionMetadata | None:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM sessions WHERE session_id = ?", (session_id,)).fetchone()
        return self._row_to_metadata(row) if row else None

    def expired_session_ids(self, now: float) -> list[str]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT session_id FROM sessions WHERE (? - last_accessed) > ttl_seconds ORDER BY last_accessed ASC",
                (float(now),),
            ).fetchall()
        return [str(row["session_id"]) for row in rows]

    def delete(self, session_id: str) -> bool:
        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))
        return bool(cursor.rowcount)

    def list_sessions(self) -> list[SessionMetadata]:
        with self._connection() as conn:
            rows = conn.execute("SELECT * FROM sessions ORDER BY created_at ASC").fetchall()
        return [self._row_to_metadata(row) for row in rows]

    def session_ids(self) -> set[str]:
        with self._connection() as conn:
            rows = conn.execute("SELECT session_id FROM sessions").fetchall()
        return {str(row["session_id"]) for row in rows}


class LivenessTracker:
    """
    In-process heartbeat map (session id -> last heartbeat, epoch seconds).
    Only decides "active" vs "inactive"; expiry is always read from the registry.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._last_seen: dict[str, float] = {}

    def reset(self):
        with self._lock:
            self._last_seen.clear()

    def heartbeat(self, session_id: str, now: float):
        with self._lock:
            self._last_seen[session_id] = float(now)

    def is_active(self, session_id: str, now: float, timeout_s: float) -> bool:
        with self._lock:
            last_seen = self._last_seen.get(session_id)
        return last_seen is not None and (float(now) - last_seen) <= timeout_s

    def remove(self, session_id: str):
        with self._lock:
            self._last_seen.pop(session_id, None)

    def purge_stale(self, now: float, timeout_s: float) -> list[str]:
        with self._lock:
            stale = [sid for sid, seen in self._last_seen.items() if (float(now) - seen) > timeout_s]
            for session_id in stale:
                del self._last_seen[session_id]
        return stale

    def active_session_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._last_seen)


class SessionLifecycleManager:
    """Owns session state transitions and the periodic cleanup sweep."""

    def __init__(
        self,
        registry: SessionRegistry,
        chunk_store,
        outline_store,
        ledger,
        *,
        liveness: LivenessTracker | None = None,
        ttl_seconds: float = SESSION_TTL_S,
        heartbeat_timeout_s: float = HEARTBEAT_TIMEOUT_S,
        sweep_interval_s: float = SWEEP_INTERVAL_S,
        clock: Callable[[], float] = time.time,
        metrics=None,
    ):
        self.registry = registry
        self.chunk_store = chunk_store
        self.outline_store = outline_store
        self.ledger = ledger
        self.liveness = liveness or LivenessTracker()
        self.ttl_seconds = float(ttl_seconds)
        self.heartbeat_timeout_s = float(heartbeat_timeout_s)
        self.sweep_interval_s = float(sweep_interval_s)
        self.clock = clock
        self.metrics = metrics
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._sweep_lock = threading.Lock()
        self.last_stats: CleanupStats | None = None

    # --- request path -------------------------------------------------------

    def heartbeat(self, session_id: str, user_id: str | None = None) -> SessionMetadata:
        session_id = str(session_id or "").strip()
        if not session_id:
            raise InputValidationError("session_id is required")
        now = self.clock()
        metadata = self.registry.register(session_id, now=now, ttl_seconds=self.ttl_seconds, user_id=user_id)
        self.liveness.heartbeat(session_id, now)
        return metadata

    def status(self, session_id: str) -> SessionStatus:
        metadata = self.registry.get(session_id)
        if metadata is None:
            return "unregistered"
        now = self.clock()
        if metadata.is_expired(now):
            return "expired"
        if self.liveness.is_active(session_id, now, self.heartbeat_timeout_s):
            return "active"
        return "inactive"

    def teardown(self, session_id: str) -> CleanupStats:
        """Explicit end of a session: evicts immediately."""
        stats = CleanupStats(sessions_checked=1, last_cleanup=self.clock())
        self._evict_into(session_id, stats)
        return stats

    # --- eviction -----------------------------------------------------------

    def evict(self, session_id: str) -> dict[str, int]:
        """Deletes every row of the session; running it twice is a no-op the second time."""
        chunks = self.chunk_store.delete_session(session_id)
        outlines = self.outline_store.delete_session(session_id)
        ledger_rows = self.ledger.delete_session(session_id)
        self.liveness.remove(session_id)
        session_row = self.registry.delete(session_id)
        logger.info(
            "session_evicted",
            session_id=session_id,
            chunks=chunks,
            outlines=outlines,
            ledger_rows=ledger_rows,
            registered=session_row,
        )
        return {"chunks": chunks, "outlines": outlines, "ledger_rows": ledger_rows}

    def _evict_into(self, session_id: str, stats: CleanupStats):
        try:
            removed = self.evict(session_id)
        except SectionForgeError as exc:
            logger.error("session_eviction_failed", session_id=session_id, error=str(exc))
            stats.failed_sessions.append(session_id)
            return
        stats.sessions_cleaned += 1
        stats.chunks_deleted += removed["chunks"]
        stats.outlines_deleted += removed["outlines"]
        stats.ledger_rows_deleted += removed["ledger_rows"]

    def _candidates(self, now: float) -> list[str]:
        # Stored ids are read before registered ids: a session registers before it
        # writes anything, so a live session can never look like an orphan.
        stored = self.chunk_store.session_ids() | self.outline_store.session_ids() | self.ledger.session_ids()
        expired = self.registry.expired_session_ids(now)
        registered = self.registry.session_ids()
        orphans = sorted(stored - registered)
        return expired + [sid for sid in orphans if sid not in expired]

    def _still_evictable(self, session_id: str, now: float) -> bool:
        """False when a heartbeat registered or refreshed the session after candidates were read."""
        metadata = self.registry.get(session_id)
        return metadata is None or metadata.is_expired(now)

    def sweep(self, now: float | None = None, dry_run: bool = False) -> CleanupStats:
        """
        Evicts expired and orphaned sessions and purges stale heartbeats.
        With ``dry_run`` nothing is deleted; the stats list what would be evicted.
        """
        now = self.clock() if now is None else float(now)
        with self._sweep_lock:
            candidates = self._candidates(now)
            stats = CleanupStats(sessions_checked=len(self.registry.session_ids()), dry_run=dry_run, last_cleanup=now)
            if dry_run:
                stats.sessions_cleaned = len(candidates)
                for session_id in candidates:
                    stats.chunks_deleted += self.chunk_store.count_chunks(session_id)
                logger.info("session_sweep_dry_run", candidates=candidates)
            else:
                for session_id in candidates:
                    if not self._still_evictable(session_id, now):
                        logger.info("session_eviction_skipped", session_id=session_id, reason="refreshed")
                        continue
                    self._evict_into(session_id, stats)
                stats.stale_heartbeats_purged = len(self.liveness.purge_stale(now, self.heartbeat_timeout_s))
        self.last_stats = stats
        logger.info(
            "session_sweep_completed",
            checked=stats.sessions_checked,
            cleaned=stats.sessions_cleaned,
            failed=len(stats.failed_sessions),
            dry_run=dry_run,
        )
        return stats

    # --- background sweep ---------------------------------------------------

    def _run(self):
        while not self._stop_event.wait(self.sweep_interval_s):
            try:
                if self.metrics is None:
                    self.sweep()
                else:
                    with self.metrics.track("sweep"):
                        self.sweep()
            except SectionForgeError as exc:
                logger.error("session_sweep_failed", error=str(exc))

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="session-sweep", daemon=True)
        self._thread.start()
        logger.info("session_sweep_started", interval_s=self.sweep_interval_s)

    def stop(self, timeout: float | None = 5.0):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("session_sweep_stopped")
