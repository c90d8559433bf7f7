# /sectionforge/ingestion.py
"""
Document ingestion: validate -> extract boundaries -> normalize -> tag -> store -> unify.

Extraction failures degrade to the page-grouped outline; storage failures
propagate as ``StorageError``. In a batch, one failing document is reported in
its own result and never aborts its siblings.
"""
import time
from collections.abc import Sequence
from contextlib import closing
from pathlib import Path

import fitz
from langchain_core.documents import Document
from langchain_text_splitters import RecursiveCharacterTextSplitter

from .capabilities import BoundaryExtractor, SectionSummarizer, render_chunks_for_extraction
from .config import (
    ALLOWED_CONTENT_TYPES,
    CHUNK_OVERLAP,
    CHUNK_SIZE,
    GENERATE_SECTION_SUMMARIES,
    MAX_FILES_PER_BATCH,
    MAX_SECTION_DEPTH,
    MAX_SECTIONS,
    MAX_UPLOAD_BYTES,
)
from .errors import InputValidationError
from .models import IngestionResult, NormalizedSection
from .observability import get_logger
from .sectioning import normalize_sections, section_texts, tag_chunks

logger = get_logger(__name__)


def validate_upload(
    session_id: str,
    filename: str,
    *,
    content_type: str | None = None,
    size: int | None = None,
):
    """Rejects uploads that are not PDFs, are too large, or lack a session/filename."""
    if not str(session_id or "").strip():
        raise InputValidationError("session_id is required")
    name = str(filename or "").strip()
    if not name:
        raise InputValidationError("filename is required")
    if not name.lower().endswith(".pdf"):
        raise InputValidationError(f"{name}: only PDF files are supported")
    if content_type is not None and content_type not in ALLOWED_CONTENT_TYPES:
        raise InputValidationError(f"{name}: unsupported content type {content_type!r}")
    if size is not None and int(size) > MAX_UPLOAD_BYTES:
        limit_mb = MAX_UPLOAD_BYTES / (1024 * 1024)
        raise InputValidationError(f"{name}: file exceeds the {limit_mb:.0f} MB limit")


def load_pdf_chunks(path: str | Path) -> list[Document]:
    """Extracts page text with PyMuPDF and splits it into indexed chunks (pages are 1-based)."""
    path = Path(path)
    pages = []
    with closing(fitz.open(str(path))) as pdf_doc:
        for pdf_page in pdf_doc:
            text = pdf_page.get_text("text")
            if not str(text or "").strip():
                continue
            pages.append(
                Document(
                    page_content=text,
                    metadata={"source": str(path), "filename": path.name, "page": int(pdf_page.number) + 1},
                )
            )

    text_splitter = RecursiveCharacterTextSplitter(chunk_size=CHUNK_SIZE, chunk_overlap=CHUNK_OVERLAP)
    chunks = text_splitter.split_documents(pages)
    for index, chunk in enumerate(chunks):
        chunk.metadata["chunk_index"] = index
    return chunks


class DocumentIngestor:
    """Builds and persists a document's outline and section-tagged chunks."""

    def __init__(
        self,
        chunk_store,
        outline_store,
        extractor: BoundaryExtractor,
        *,
        summarizer: SectionSummarizer | None = None,
        lifecycle=None,
        metrics=None,
        generate_summaries: bool = GENERATE_SECTION_SUMMARIES,
        max_depth: int = MAX_SECTION_DEPTH,
        max_sections: int = MAX_SECTIONS,
    ):
        self.chunk_store = chunk_store
        self.outline_store = outline_store
        self.extractor = extractor
        self.summarizer = summarizer
        self.lifecycle = lifecycle
        self.metrics = metrics
        self.generate_summaries = bool(generate_summaries)
        self.max_depth = max_depth
        self.max_sections = max_sections

    def _propose(self, filename: str, chunks: Sequence[Document]):
        try:
            proposals = self.extractor.extract(render_chunks_for_extraction(chunks), len(chunks))
        except Exception as exc:
            logger.warning(
                "boundary_extraction_failed", filename=filename, error_type=type(exc).__name__, error=str(exc)
            )
            return None
        if not proposals:
            logger.info("boundary_extraction_empty", filename=filename)
            return None
        return proposals

    def _summarize(self, sections: list[NormalizedSection], tagged: Sequence[Document]) -> list[NormalizedSection]:
        texts = section_texts(tagged)
        summarized = []
        for section in sections:
            summary = None
            content = texts.get(section.id, "")
            if content.strip():
                try:
                    summary = self.summarizer.summarize(section.title, content)
                except Exception as exc:
                    logger.warning("section_summary_failed", section_id=section.id, error_type=type(exc).__name__, error=str(exc))
            summarized.append(section.model_copy(update={"summary": summary}))
        return summarized

    def ingest_document(self, session_id: str, filename: str, chunks: Sequence[Document]) -> IngestionResult:
        validate_upload(session_id, filename)
        if not chunks:
            raise InputValidationError(f"{filename}: no text chunks to ingest")
        started = time.perf_counter()
        if self.lifecycle is not None:
            self.lifecycle.heartbeat(session_id)

        chunks = [
            Document(
                page_content=str(chunk.page_content or ""),
                metadata={**(chunk.metadata or {}), "filename": filename, "chunk_index": index},
            )
            for index, chunk in enumerate(chunks)
        ]
        proposals = self._propose(filename, chunks)
        sections = normalize_sections(
            proposals,
            chunks,
            filename,
            max_depth=self.max_depth,
            max_sections=self.max_sections,
        )
        tagged = tag_chunks(chunks, sections, session_id=session_id)
        if self.generate_summaries and self.summarizer is not None:
            sections = self._summarize(sections, tagged)

        self.chunk_store.replace_document_chunks(session_id, filename, tagged)
        outline = self.outline_store.upsert_document_outline(session_id, filename, chunks, sections)
        self.outline_store.refresh_session_outline(session_id)

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        logger.info(
            "document_ingested",
            session_id=session_id,
            filename=filename,
            chunks=len(chunks),
            sections=len(sections),
            fallback=proposals is None,
            elapsed_ms=round(elapsed_ms, 1),
        )
        return IngestionResult(
            session_id=session_id,
            filename=filename,
            chunk_count=len(chunks),
            sections=sections,
            content_fingerprint=outline.content_fingerprint,
            used_fallback=proposals is None,
            toc_generated=proposals is not None,
        )

    def _failed(self, session_id: str, filename: str, exc: Exception) -> IngestionResult:
        logger.error("document_ingest_failed", session_id=session_id, filename=filename, error=str(exc))
        return IngestionResult(session_id=session_id, filename=filename, error=str(exc))

    def _check_batch_size(self, count: int):
        if count > MAX_FILES_PER_BATCH:
            raise InputValidationError(f"at most {MAX_FILES_PER_BATCH} files can be ingested at once")

    def ingest_batch(self, session_id: str, documents: Sequence[tuple[str, Sequence[Document]]]) -> list[IngestionResult]:
        """Ingests (filename, chunks) pairs; returns one result per document, failures included."""
        self._check_batch_size(len(documents))
        results = []
        for filename, chunks in documents:
            try:
                results.append(self.ingest_document(session_id, filename, chunks))
            except Exception as exc:
                results.append(self._failed(session_id, filename, exc))
        return results

    def ingest_file(self, session_id: str, path: str | Path, *, content_type: str | None = None) -> IngestionResult:
        path = Path(path)
        size = path.stat().st_size if path.exists() else None
        validate_upload(session_id, path.name, content_type=content_type, size=size)
        if self.metrics is None:
            return self.ingest_document(session_id, path.name, load_pdf_chunks(path))
        with self.metrics.track("ingest"):
            return self.ingest_document(session_id, path.name, load_pdf_chunks(path))

    def ingest_files(self, session_id: str, paths: Sequence[str | Path]) -> list[IngestionResult]:
        self._check_batch_size(len(paths))
        results = []
        for path in paths:
            try:
                results.append(self.ingest_file(session_id, path))
            except Exception as exc:
                results.append(self._failed(session_id, Path(path).name, exc))
        return results

    def remove_document(self, session_id: str, filename: str) -> int:
        """Drops a document's chunks and outline, then recomputes the session outline."""
        removed_chunks = self.chunk_store.delete_document(session_id, filename)
        self.outline_store.delete_document_outline(session_id, filename)
        logger.info("document_removed", session_id=session_id, filename=filename, chunks=removed_chunks)
        return removed_chunks
