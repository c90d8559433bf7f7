"""
Pydantic records for outlines, quiz ledger rows and session bookkeeping.

Chunks themselves are ``langchain_core.documents.Document`` objects; the
metadata keys used on them are listed in ``CHUNK_METADATA_KEYS``.
"""
from __future__ import annotations

import uuid
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

CHUNK_METADATA_KEYS = (
    "session_id",
    "filename",
    "page",
    "chunk_index",
    "total_chunks",
    "section_id",
    "section_title",
    "section_level",
)

QuestionOrigin = Literal["document", "external"]


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


# ---------------------------------------------------------------------------
# Boundary extraction
# ---------------------------------------------------------------------------

class RawSectionProposal(BaseModel):
    """One untrusted section proposal from the boundary extractor."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str | None = None
    title: str | None = None
    level: int | None = None
    page_number: int | None = Field(default=None, validation_alias=_alias("page_number", "pageNumber", "page"))
    start_index: int | None = Field(default=None, validation_alias=_alias("start_index", "startIndex", "start"))
    end_index: int | None = Field(default=None, validation_alias=_alias("end_index", "endIndex", "end"))
    parent_id: str | None = Field(default=None, validation_alias=_alias("parent_id", "parentId"))

    @field_validator("id", "parent_id", mode="before")
    @classmethod
    def _stringify_ids(cls, value):
        if value is None:
            return None
        text = str(value).strip()
        return text or None


class BoundaryProposal(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sections: list[RawSectionProposal] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Outlines
# ---------------------------------------------------------------------------

class NormalizedSection(BaseModel):
    """A repaired section whose range is bounded by the document's chunk count."""

    id: str
    title: str
    level: int = Field(ge=1)
    page_number: int | None = None
    start_index: int = Field(ge=0)
    end_index: int = Field(ge=0)
    parent_id: str | None = None
    filename: str
    original_id: str
    group_id: str | None = None
    summary: str | None = None

    @property
    def chunk_count(self) -> int:
        return self.end_index - self.start_index + 1

    def covers(self, chunk_index: int) -> bool:
        return self.start_index <= int(chunk_index) <= self.end_index


class UnifiedSection(NormalizedSection):
    related_sections: list[NormalizedSection] = Field(default_factory=list)
    is_grouped: bool = False

    def member_ids(self) -> list[str]:
        return [self.id, *(section.id for section in self.related_sections)]


class DocumentOutline(BaseModel):
    session_id: str
    filename: str
    content_fingerprint: str
    sections: list[NormalizedSection] = Field(default_factory=list)
    created_at: str
    updated_at: str


class SessionOutline(BaseModel):
    session_id: str
    unified_sections: list[UnifiedSection] = Field(default_factory=list)
    created_at: str
    updated_at: str

    def find_section(self, section_id: str) -> UnifiedSection | None:
        """Looks a section up by its own id or by the id of a related member."""
        for section in self.unified_sections:
            if section.id == section_id:
                return section
        for section in self.unified_sections:
            if any(related.id == section_id for related in section.related_sections):
                return section
        return None

    def filenames(self) -> set[str]:
        names = set()
        for section in self.unified_sections:
            names.add(section.filename)
            names.update(related.filename for related in section.related_sections)
        return names


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

class SessionMetadata(BaseModel):
    session_id: str
    created_at: float
    last_accessed: float
    ttl_seconds: float = 3600.0
    user_id: str | None = None

    def is_expired(self, now: float) -> bool:
        return (float(now) - self.last_accessed) > self.ttl_seconds


class CleanupStats(BaseModel):
    sessions_checked: int = 0
    sessions_cleaned: int = 0
    chunks_deleted: int = 0
    outlines_deleted: int = 0
    ledger_rows_deleted: int = 0
    failed_sessions: list[str] = Field(default_factory=list)
    stale_heartbeats_purged: int = 0
    dry_run: bool = False
    last_cleanup: float = 0.0


# ---------------------------------------------------------------------------
# Quiz
# ---------------------------------------------------------------------------

class QuizQuestion(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(default_factory=lambda: f"q_{uuid.uuid4().hex[:12]}")
    question: str = Field(min_length=1, validation_alias=_alias("question", "prompt"))
    options: list[str] = Field(min_length=4, max_length=4)
    correct_answer: int = Field(ge=0, le=3, validation_alias=_alias("correct_answer", "correctAnswer", "correct_index"))
    explanation: str = ""
    source: str | None = None
    origin: QuestionOrigin = "document"
    content_fingerprint: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value):
        text = str(value or "").strip()
        return text or f"q_{uuid.uuid4().hex[:12]}"


class QuizBatch(BaseModel):
    model_config = ConfigDict(extra="ignore")

    questions: list[QuizQuestion] = Field(default_factory=list)


class QuizSession(BaseModel):
    id: str
    session_id: str
    section_ids: list[str]
    num_questions: int
    difficulty: str
    questions_used: list[str]
    created_at: str


class ContentAnalysis(BaseModel):
    content_length: int
    estimated_questions: int
    needs_external_questions: bool
    external_question_count: int


class QuizResult(BaseModel):
    session_id: str
    section_ids: list[str]
    difficulty: str
    questions: list[QuizQuestion]
    analysis: ContentAnalysis
    document_question_count: int = 0
    external_question_count: int = 0
    topic: str | None = None


class IngestionResult(BaseModel):
    session_id: str
    filename: str
    chunk_count: int = 0
    sections: list[NormalizedSection] = Field(default_factory=list)
    content_fingerprint: str | None = None
    used_fallback: bool = False
    toc_generated: bool = False
    error: str | None = None
