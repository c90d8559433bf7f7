# /sectionforge/outline_store.py
"""
Per-document outlines and the unified per-session outline.

Document outlines are upserted by (session_id, content_fingerprint); the session
outline is a derived aggregate that is always recomputed in full from whatever
document outlines are stored at the time of the call.
"""
import hashlib
import json
from collections.abc import Sequence
from datetime import datetime, timezone

from langchain_core.documents import Document
from pydantic import TypeAdapter, ValidationError

from .config import ENABLE_SMART_GROUPING, GROUPING_MODE, SIMILARITY_THRESHOLD
from .db_migrations import SqliteMigration
from .errors import StorageError
from .models import DocumentOutline, NormalizedSection, SessionOutline, UnifiedSection
from .observability import get_logger
from .storage import SqliteStore
from .unifier import build_session_outline

logger = get_logger(__name__)

_SECTIONS_ADAPTER = TypeAdapter(list[NormalizedSection])
_UNIFIED_ADAPTER = TypeAdapter(list[UnifiedSection])


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def generate_file_hash(content: str, filename: str) -> str:
    """sha256 over the document text followed by its filename."""
    return hashlib.sha256((str(content or "") + str(filename or "")).encode("utf-8")).hexdigest()


def document_fingerprint(chunks: Sequence[Document], filename: str) -> str:
    return generate_file_hash("\n".join(str(doc.page_content or "") for doc in chunks), filename)


class OutlineStore(SqliteStore):
    """Stores document outlines and keeps the session outline consistent with them."""

    component = "outlines"
    migrations = [
        SqliteMigration(
            version=1,
            name="create_document_outline_table",
            statements=(
                """
                CREATE TABLE IF NOT EXISTS document_outline (
                    session_id TEXT NOT NULL,
                    filename TEXT NOT NULL,
                    content_fingerprint TEXT NOT NULL,
                    sections_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE(session_id, content_fingerprint)
                )
                """,
                "CREATE INDEX IF NOT EXISTS idx_document_outline_session_file ON document_outline(session_id, filename)",
            ),
        ),
        SqliteMigration(
            version=2,
            name="create_session_outline_table",
            statements=(
                """
                CREATE TABLE IF NOT EXISTS session_outline (
                    session_id TEXT PRIMARY KEY,
                    unified_sections_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """,
            ),
        ),
    ]

    def __init__(
        self,
        db_path=None,
        *,
        similarity_threshold: float = SIMILARITY_THRESHOLD,
        grouping_mode: str = GROUPING_MODE,
        enable_grouping: bool = ENABLE_SMART_GROUPING,
    ):
        self.similarity_threshold = float(similarity_threshold)
        self.grouping_mode = grouping_mode
        self.enable_grouping = bool(enable_grouping)
        super().__init__(db_path)

    # --- row decoding -------------------------------------------------------

    def _row_to_document_outline(self, row) -> DocumentOutline:
        try:
            sections = _SECTIONS_ADAPTER.validate_json(row["sections_json"])
        except ValidationError as exc:
            raise StorageError(f"corrupt outline row for {row['filename']}: {exc}") from exc
        return DocumentOutline(
            session_id=str(row["session_id"]),
            filename=str(row["filename"]),
            content_fingerprint=str(row["content_fingerprint"]),
            sections=sections,
            created_at=str(row["created_at"]),
            updated_at=str(row["updated_at"]),
        )

    def _row_to_session_outline(self, row) -> SessionOutline:
        try:
            sections = _UNIFIED_ADAPTER.validate_json(row["unified_sections_json"])
        except ValidationError as exc:
            raise StorageError(f"corrupt session outline row for {row['session_id']}: {exc}") from exc
        return SessionOutline(
            session_id=str(row["session_id"]),
            unified_sections=sections,
            created_at=str(row["created_at"]),
            updated_at=str(row["updated_at"]),
        )

    # --- document outlines --------------------------------------------------

    def upsert_document_outline(
        self,
        session_id: str,
        filename: str,
        chunks: Sequence[Document],
        sections: Sequence[NormalizedSection],
    ) -> DocumentOutline:
        """
        Replaces the outline for this document wholesale.
        Same fingerprint updates the row in place; a different fingerprint for the
        same filename supersedes the older row inside the same transaction.
        """
        fingerprint = document_fingerprint(chunks, filename)
        sections_json = json.dumps(
            [section.model_dump(mode="json") for section in sections],
            ensure_ascii=True,
        )
        now = _utcnow_iso()
        with self._connection() as conn:
            conn.execute(
                """
                DELETE FROM document_outline
                WHERE session_id = ? AND filename = ? AND content_fingerprint != ?
                """,
                (session_id, filename, fingerprint),
            )
            conn.execute(
                """
                INSERT INTO document_outline (session_id, filename, content_fingerprint, sections_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(session_id, content_fingerprint) DO UPDATE SET
                    filename = excluded.filename,
                    sections_json = excluded.sections_json,
                    updated_at = excluded.updated_at
                """,
                (session_id, filename, fingerprint, sections_json, now, now),
            )
            row = conn.execute(
                "SELECT * FROM document_outline WHERE session_id = ? AND content_fingerprint = ?",
                (session_id, fingerprint),
            ).fetchone()
        logger.info(
            "document_outline_stored",
            session_id=session_id,
            filename=filename,
            sections=len(sections),
            fingerprint=fingerprint[:12],
        )
        return self._row_to_document_outline(row)

    def get_document_outline(self, session_id: str, filename: str) -> DocumentOutline | None:
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM document_outline
                WHERE session_id = ? AND filename = ?
                ORDER BY updated_at DESC
                LIMIT 1
                """,
                (session_id, filename),
            ).fetchone()
        return self._row_to_document_outline(row) if row else None

    def list_document_outlines(self, session_id: str) -> list[DocumentOutline]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM document_outline
                WHERE session_id = ?
                ORDER BY filename ASC, content_fingerprint ASC
                """,
                (session_id,),
            ).fetchall()
        return [self._row_to_document_outline(row) for row in rows]

    def delete_document_outline(self, session_id: str, filename: str) -> bool:
        """Deletes a document's outline and recomputes the session outline, found or not."""
        with self._connection() as conn:
            cursor = conn.execute(
                "DELETE FROM document_outline WHERE session_id = ? AND filename = ?",
                (session_id, filename),
            )
        removed = bool(cursor.rowcount)
        self.refresh_session_outline(session_id)
        logger.info("document_outline_deleted", session_id=session_id, filename=filename, removed=removed)
        return removed

    # --- session outline ----------------------------------------------------

    def refresh_session_outline(self, session_id: str) -> SessionOutline:
        """Full recompute of the unified outline from every stored document outline."""
        existing = self.get_session_outline(session_id)
        outline = build_session_outline(
            session_id,
            self.list_document_outlines(session_id),
            threshold=self.similarity_threshold,
            mode=self.grouping_mode,
            enable_grouping=self.enable_grouping,
            created_at=existing.created_at if existing else None,
        )
        return self.upsert_session_outline(outline)

    def upsert_session_outline(self, outline: SessionOutline) -> SessionOutline:
        payload = json.dumps(
            [section.model_dump(mode="json") for section in outline.unified_sections],
            ensure_ascii=True,
        )
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO session_outline (session_id, unified_sections_json, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                    unified_sections_json = excluded.unified_sections_json,
                    updated_at = excluded.updated_at
                """,
                (outline.session_id, payload, outline.created_at, outline.updated_at),
            )
            row = conn.execute(
                "SELECT * FROM session_outline WHERE session_id = ?",
                (outline.session_id,),
            ).fetchone()
        return self._row_to_session_outline(row)

    def get_session_outline(self, session_id: str) -> SessionOutline | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM session_outline WHERE session_id = ?",
                (session_id,),
            ).fetchone()
        return self._row_to_session_outline(row) if row else None

    def delete_session(self, session_id: str) -> int:
        """Drops both outline tables' rows for a session; returns the number of rows removed."""
        with self._connection() as conn:
            documents = conn.execute("DELETE FROM document_outline WHERE session_id = ?", (session_id,))
            unified = conn.execute("DELETE FROM session_outline WHERE session_id = ?", (session_id,))
            removed = int(documents.rowcount or 0) + int(unified.rowcount or 0)
        if removed:
            logger.info("session_outlines_deleted", session_id=session_id, rows=removed)
        return removed

    def session_ids(self) -> set[str]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT session_id FROM document_outline UNION SELECT session_id FROM session_outline"
            ).fetchall()
        return {str(row["session_id"]) for row in rows}
