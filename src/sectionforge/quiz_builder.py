"""
Quiz generation over selected sections.

Flow per request: load the ids already served for these sections, retrieve the
scoped content, estimate how many questions it supports, generate document
questions, top up from raw section text when nothing usable came back, cover
the remaining shortfall with topic-seeded external questions, then record the
served ids. A request that still cannot reach the requested count raises
``InsufficientContentError`` and records nothing.
"""
from __future__ import annotations

import re
from collections import OrderedDict
from collections.abc import Sequence

from .capabilities import AnswerExplainer, QuestionGenerator, TopicQuestionGenerator
from .config import MAX_QUIZ_QUESTIONS, QUIZ_DIFFICULTIES, RETRIEVER_K
from .content_filter import SectionScopedRetriever, section_content
from .errors import InputValidationError, InsufficientContentError, StorageError
from .models import ContentAnalysis, QuizQuestion, QuizResult, SessionOutline
from .observability import get_logger
from .quiz_ledger import analyze_content_for_questions, analyze_content_length, content_fingerprint, question_key

logger = get_logger(__name__)

# Ledger key for quizzes requested without a section selection.
SESSION_WIDE_SECTION = "*"
_PLACEHOLDER_TITLE_RE = re.compile(r"^section[_\s]?\d*$", flags=re.IGNORECASE)


def _section_title(outline: SessionOutline | None, section_id: str) -> str | None:
    if outline is None:
        return None
    for section in outline.unified_sections:
        if section.id == section_id:
            return section.title
        for related in section.related_sections:
            if related.id == section_id:
                return related.title
    return None


def derive_topic(
    outline: SessionOutline | None,
    section_ids: Sequence[str],
    query: str = "",
) -> str:
    """Section titles, else raw section ids, else the free-text query, else "general knowledge"."""
    titles = []
    for section_id in section_ids:
        title = (_section_title(outline, section_id) or "").strip()
        if title and not title.lower().startswith("section_") and not _PLACEHOLDER_TITLE_RE.match(title):
            titles.append(title)
    titles = list(OrderedDict.fromkeys(titles))
    if titles:
        return " and ".join(titles)
    if section_ids:
        return " and ".join(section_ids)
    if str(query or "").strip():
        return str(query).strip()
    return "general knowledge"


class QuizBuilder:
    """Coordinates the content filter, quiz ledger and question capabilities."""

    def __init__(
        self,
        chunk_store,
        outline_store,
        ledger,
        question_generator: QuestionGenerator,
        topic_generator: TopicQuestionGenerator,
        explainer: AnswerExplainer | None = None,
        *,
        retriever_k: int = RETRIEVER_K * 2,
        max_questions: int = MAX_QUIZ_QUESTIONS,
    ):
        self.chunk_store = chunk_store
        self.outline_store = outline_store
        self.ledger = ledger
        self.question_generator = question_generator
        self.topic_generator = topic_generator
        self.explainer = explainer
        self.retriever_k = retriever_k
        self.max_questions = max_questions

    def _validate(self, session_id: str, num_questions: int, difficulty: str):
        if not str(session_id or "").strip():
            raise InputValidationError("session_id is required")
        if not isinstance(num_questions, int) or isinstance(num_questions, bool):
            raise InputValidationError("num_questions must be an integer")
        if not 1 <= num_questions <= self.max_questions:
            raise InputValidationError(f"num_questions must be between 1 and {self.max_questions}")
        if difficulty not in QUIZ_DIFFICULTIES:
            raise InputValidationError(f"difficulty must be one of {', '.join(QUIZ_DIFFICULTIES)}")

    @staticmethod
    def _call_generator(step: str, generate, *args) -> list[QuizQuestion]:
        try:
            return list(generate(*args) or [])
        except Exception as exc:
            logger.warning("quiz_generation_step_failed", step=step, error_type=type(exc).__name__, error=str(exc))
            return []

    @staticmethod
    def _usable(questions: Sequence[QuizQuestion], used: set[str], seen: set[str]) -> list[QuizQuestion]:
        """Re-keys questions by their text and drops served ids and in-request duplicates."""
        kept = []
        for question in questions:
            keyed = question.model_copy(update={"id": question_key(question.question)})
            if keyed.id in used or keyed.id in seen:
                continue
            seen.add(keyed.id)
            kept.append(keyed)
        return kept

    def _raw_section_content(self, session_id: str, section_ids: Sequence[str]) -> str:
        """Unranked text of the selected sections, or of the whole session when none are selected."""
        if not section_ids:
            try:
                docs = self.chunk_store.get_session_chunks(session_id)
            except StorageError as exc:
                logger.warning(
                    "section_content_unavailable", session_id=session_id, section_id=SESSION_WIDE_SECTION, error=str(exc)
                )
                return ""
            return "\n".join(str(doc.page_content or "") for doc in docs if str(doc.page_content or "").strip())
        parts = []
        for section_id in section_ids:
            try:
                text = self.chunk_store.get_section_content(session_id, section_id)
            except StorageError as exc:
                logger.warning("section_content_unavailable", session_id=session_id, section_id=section_id, error=str(exc))
                continue
            if text.strip():
                parts.append(text)
        return "\n".join(parts)

    def generate(
        self,
        session_id: str,
        section_ids: Sequence[str] | None,
        num_questions: int,
        difficulty: str = "medium",
        query: str = "",
    ) -> QuizResult:
        self._validate(session_id, num_questions, difficulty)
        section_ids = list(OrderedDict.fromkeys(str(sid).strip() for sid in (section_ids or []) if str(sid or "").strip()))
        ledger_sections = section_ids or [SESSION_WIDE_SECTION]

        used = self.ledger.used_question_ids(session_id, ledger_sections)
        retriever = SectionScopedRetriever(
            chunk_store=self.chunk_store,
            session_id=session_id,
            section_ids=section_ids,
            k=None,
            strict=True,
        )
        scoped_docs = retriever.invoke(query or "")
        # The estimate covers every scoped chunk; only the prompt payload is capped.
        scoped_length = len(section_content(scoped_docs))
        content = section_content(scoped_docs[: max(1, int(self.retriever_k))])

        if content.strip():
            analysis = analyze_content_length(scoped_length, num_questions)
        else:
            analysis = ContentAnalysis(
                content_length=0,
                estimated_questions=0,
                needs_external_questions=True,
                external_question_count=num_questions,
            )

        seen: set[str] = set()
        fingerprint = content_fingerprint(content, ",".join(ledger_sections)) if content.strip() else None
        document_target = min(num_questions, analysis.estimated_questions)
        document_questions: list[QuizQuestion] = []
        if document_target > 0:
            generated = self._call_generator(
                "document", self.question_generator.generate, content, document_target, difficulty
            )
            document_questions = self._usable(generated, used, seen)

        if not document_questions:
            raw_content = self._raw_section_content(session_id, section_ids)
            if raw_content.strip():
                top_up_target = min(num_questions, analyze_content_for_questions(raw_content, num_questions).estimated_questions)
                generated = self._call_generator(
                    "top_up", self.question_generator.generate, raw_content, top_up_target, difficulty
                )
                document_questions = self._usable(generated, used, seen)[:top_up_target]
                fingerprint = content_fingerprint(raw_content, ",".join(ledger_sections))
        document_questions = [
            question.model_copy(update={"origin": "document", "content_fingerprint": fingerprint})
            for question in document_questions[:num_questions]
        ]

        external_questions: list[QuizQuestion] = []
        topic = None
        shortfall = num_questions - len(document_questions)
        if shortfall > 0:
            topic = derive_topic(self._session_outline(session_id), section_ids, query)
            generated = self._call_generator("external", self.topic_generator.generate, topic, shortfall, difficulty)
            external_questions = [
                question.model_copy(update={"origin": "external", "content_fingerprint": None})
                for question in self._usable(generated, used, seen)[:shortfall]
            ]

        questions = (document_questions + external_questions)[:num_questions]
        if len(questions) < num_questions:
            logger.warning(
                "quiz_shortfall",
                session_id=session_id,
                section_ids=section_ids,
                requested=num_questions,
                available=len(questions),
            )
            raise InsufficientContentError(
                f"only {len(questions)} of {num_questions} questions could be generated",
                requested=num_questions,
                available=len(questions),
            )

        for section_id in ledger_sections:
            self.ledger.store_questions(session_id, section_id, document_questions, difficulty, "document", fingerprint)
            self.ledger.store_questions(session_id, section_id, external_questions, difficulty, "external")
        self.ledger.record_quiz_session(
            session_id,
            ledger_sections,
            num_questions,
            difficulty,
            [question.id for question in questions],
        )
        logger.info(
            "quiz_generated",
            session_id=session_id,
            sections=len(section_ids),
            requested=num_questions,
            document_questions=len(document_questions),
            external_questions=len(external_questions),
            estimated_questions=analysis.estimated_questions,
        )
        return QuizResult(
            session_id=session_id,
            section_ids=section_ids,
            difficulty=difficulty,
            questions=questions,
            analysis=analysis,
            document_question_count=len(document_questions),
            external_question_count=len(external_questions),
            topic=topic,
        )

    def _session_outline(self, session_id: str) -> SessionOutline | None:
        try:
            return self.outline_store.get_session_outline(session_id)
        except StorageError as exc:
            logger.warning("session_outline_unavailable", session_id=session_id, error=str(exc))
            return None

    def explain_answer(self, question: QuizQuestion, user_answer: int) -> str:
        """Tutor-style explanation; falls back to the stored explanation when no explainer answers."""
        if self.explainer is not None:
            try:
                explanation = self.explainer.explain(question, user_answer)
                if explanation.strip():
                    return explanation
            except Exception as exc:
                logger.warning(
                    "answer_explanation_failed", question_id=question.id, error_type=type(exc).__name__, error=str(exc)
                )
        return question.explanation or f"The correct answer is: {question.options[question.correct_answer]}"
