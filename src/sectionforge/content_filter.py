"""
Section-aware retrieval over the session chunk store.

With no section ids the retriever returns the whole session's chunks ranked by
lexical overlap with the query; with section ids it only returns chunks tagged
with one of them. A failed scoped query degrades to unscoped retrieval for chat
(``strict=False``) and to nothing for quiz generation (``strict=True``).
"""
from __future__ import annotations

from typing import Any

from langchain_core.documents import Document
from langchain_core.retrievers import BaseRetriever
from pydantic import ConfigDict

from .config import RETRIEVER_K
from .errors import StorageError
from .observability import get_logger
from .tokenization import lexical_overlap

logger = get_logger(__name__)


class SectionScopedRetriever(BaseRetriever):
    """
    Constrains results to one session and, optionally, to a set of sections.
    Ranking is stable: equal overlap keeps (filename, chunk_index) order.
    ``k=None`` returns every matching chunk.
    """

    chunk_store: Any
    session_id: str
    section_ids: list[str] = []
    k: int | None = RETRIEVER_K * 2
    strict: bool = False
    model_config = ConfigDict(arbitrary_types_allowed=True)

    def _scoped_ids(self) -> list[str]:
        return [str(sid).strip() for sid in (self.section_ids or []) if str(sid or "").strip()]

    def _fetch(self) -> list[Document]:
        section_ids = self._scoped_ids()
        if not section_ids:
            return self.chunk_store.get_session_chunks(self.session_id)
        try:
            return self.chunk_store.get_session_chunks(self.session_id, section_ids)
        except StorageError as exc:
            if self.strict:
                logger.warning(
                    "scoped_retrieval_failed",
                    session_id=self.session_id,
                    section_ids=section_ids,
                    fallback="empty",
                    error=str(exc),
                )
                return []
            logger.warning(
                "scoped_retrieval_failed",
                session_id=self.session_id,
                section_ids=section_ids,
                fallback="unscoped",
                error=str(exc),
            )
            return self.chunk_store.get_session_chunks(self.session_id)

    def _rank(self, query: str, docs: list[Document]) -> list[Document]:
        if not str(query or "").strip():
            return docs
        scored = [(lexical_overlap(query, doc.page_content), position, doc) for position, doc in enumerate(docs)]
        scored.sort(key=lambda item: (-item[0], item[1]))
        return [doc for _, _, doc in scored]

    def _get_relevant_documents(self, query: str, *, run_manager=None) -> list[Document]:
        docs = self._fetch()
        # Never hand out another session's chunks, whatever the store returned.
        docs = [doc for doc in docs if (doc.metadata or {}).get("session_id") == self.session_id]
        ranked = self._rank(query, docs)
        if self.k is None:
            return ranked
        return ranked[: max(1, int(self.k))]


def section_content(docs: list[Document]) -> str:
    """Joins retrieved chunk text for the content-sufficiency policy."""
    return "\n\n".join(str(doc.page_content or "") for doc in docs if str(doc.page_content or "").strip())
