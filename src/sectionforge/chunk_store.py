# /sectionforge/chunk_store.py
"""
Persists section-tagged chunks per (session, document).
Every query is scoped by session id; there is no cross-session read path.
"""
from collections import OrderedDict
from typing import Any

from langchain_core.documents import Document

from .db_migrations import SqliteMigration
from .observability import get_logger
from .storage import SqliteStore

logger = get_logger(__name__)

_CHUNK_COLUMNS = (
    "session_id, filename, chunk_index, total_chunks, section_id, section_title, section_level, page, content"
)


class SectionChunkStore(SqliteStore):
    """Session-scoped chunk rows keyed by (session_id, filename, chunk_index)."""

    component = "section_chunks"
    migrations = [
        SqliteMigration(
            version=1,
            name="create_section_chunks_table",
            statements=(
                """
                CREATE TABLE IF NOT EXISTS section_chunks (
                    session_id TEXT NOT NULL,
                    filename TEXT NOT NULL,
                    chunk_index INTEGER NOT NULL,
                    total_chunks INTEGER NOT NULL,
                    section_id TEXT NOT NULL,
                    section_title TEXT NOT NULL,
                    section_level INTEGER NOT NULL,
                    page INTEGER,
                    content TEXT NOT NULL,
                    PRIMARY KEY(session_id, filename, chunk_index)
                )
                """,
                "CREATE INDEX IF NOT EXISTS idx_section_chunks_session_section ON section_chunks(session_id, section_id)",
            ),
        ),
    ]

    @staticmethod
    def _safe_optional_int(value: Any) -> int | None:
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _row_to_document(row: Any) -> Document:
        data = dict(row)
        metadata = {
            "session_id": data.get("session_id"),
            "filename": data.get("filename"),
            "chunk_index": data.get("chunk_index", -1),
            "total_chunks": data.get("total_chunks", 0),
            "section_id": data.get("section_id"),
            "section_title": data.get("section_title"),
            "section_level": data.get("section_level"),
            "page": data.get("page"),
        }
        return Document(page_content=str(data.get("content", "")), metadata=metadata)

    def replace_document_chunks(self, session_id: str, filename: str, tagged_docs: list[Document]) -> int:
        """Swaps a document's chunk rows in one transaction; re-ingestion never appends."""
        rows = []
        for position, doc in enumerate(tagged_docs):
            metadata = dict(doc.metadata or {})
            section_id = str(metadata.get("section_id") or "").strip()
            if not section_id:
                raise ValueError(f"chunk {position} of {filename} has no section tag")
            chunk_index = self._safe_optional_int(metadata.get("chunk_index"))
            rows.append(
                (
                    session_id,
                    filename,
                    position if chunk_index is None else chunk_index,
                    self._safe_optional_int(metadata.get("total_chunks")) or len(tagged_docs),
                    section_id,
                    str(metadata.get("section_title") or ""),
                    self._safe_optional_int(metadata.get("section_level")) or 1,
                    self._safe_optional_int(metadata.get("page")),
                    str(doc.page_content or ""),
                )
            )

        with self._connection() as conn:
            conn.execute(
                "DELETE FROM section_chunks WHERE session_id = ? AND filename = ?",
                (session_id, filename),
            )
            conn.executemany(
                f"INSERT INTO section_chunks ({_CHUNK_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                rows,
            )
        logger.info("document_chunks_stored", session_id=session_id, filename=filename, chunks=len(rows))
        return len(rows)

    def get_session_chunks(
        self,
        session_id: str,
        section_ids: list[str] | None = None,
        limit: int | None = None,
    ) -> list[Document]:
        """
        Returns a session's chunks in (filename, chunk_index) order.
        ``section_ids`` restricts to chunks tagged with one of those ids.
        """
        session_id = str(session_id or "").strip()
        if not session_id:
            return []
        sql = f"SELECT {_CHUNK_COLUMNS} FROM section_chunks WHERE session_id = ?"
        params: list[Any] = [session_id]
        wanted = list(OrderedDict.fromkeys(str(sid) for sid in (section_ids or []) if str(sid or "").strip()))
        if wanted:
            sql += f" AND section_id IN ({self._placeholders(wanted)})"
            params.extend(wanted)
        sql += " ORDER BY filename ASC, chunk_index ASC"
        if limit is not None and int(limit) > 0:
            sql += " LIMIT ?"
            params.append(int(limit))

        with self._connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_document(row) for row in rows]

    def get_document_chunks(self, session_id: str, filename: str) -> list[Document]:
        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_CHUNK_COLUMNS} FROM section_chunks
                WHERE session_id = ? AND filename = ?
                ORDER BY chunk_index ASC
                """,
                (session_id, filename),
            ).fetchall()
        return [self._row_to_document(row) for row in rows]

    def get_section_content(self, session_id: str, section_id: str) -> str:
        """Raw joined text of one section; empty string when nothing is tagged with it."""
        docs = self.get_session_chunks(session_id, [section_id])
        return "\n".join(doc.page_content for doc in docs)

    def count_chunks(self, session_id: str) -> int:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM section_chunks WHERE session_id = ?",
                (session_id,),
            ).fetchone()
        return int(row["n"]) if row else 0

    def delete_document(self, session_id: str, filename: str) -> int:
        with self._connection() as conn:
            cursor = conn.execute(
                "DELETE FROM section_chunks WHERE session_id = ? AND filename = ?",
                (session_id, filename),
            )
        return int(cursor.rowcount or 0)

    def delete_session(self, session_id: str) -> int:
        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM section_chunks WHERE session_id = ?", (session_id,))
        deleted = int(cursor.rowcount or 0)
        if deleted:
            logger.info("session_chunks_deleted", session_id=session_id, chunks=deleted)
        return deleted

    def session_ids(self) -> set[str]:
        with self._connection() as conn:
            rows = conn.execute("SELECT DISTINCT session_id FROM section_chunks").fetchall()
        return {str(row["session_id"]) for row in rows}
