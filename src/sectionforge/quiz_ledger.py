# /sectionforge/quiz_ledger.py
"""
Quiz ledger: every question served per (session, section) and every quiz
request served per session, plus the content-sufficiency estimate.

A question id present in the ledger is never served again to the same session
for the same section.
"""
import hashlib
import json
import uuid
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from typing import Any

from .config import CHARS_PER_QUESTION
from .db_migrations import SqliteMigration
from .models import ContentAnalysis, QuestionOrigin, QuizQuestion, QuizSession
from .observability import get_logger
from .storage import SqliteStore

logger = get_logger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _json_loads_or_default(raw: str | None, default: Any):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


def analyze_content_for_questions(
    content: str,
    requested: int,
    chars_per_question: int = CHARS_PER_QUESTION,
) -> ContentAnalysis:
    """
    Estimates how many questions the content can support (one per
    ``chars_per_question`` characters, at least one) and the external shortfall.
    """
    return analyze_content_length(len(content or ""), requested, chars_per_question)


def analyze_content_length(
    content_length: int,
    requested: int,
    chars_per_question: int = CHARS_PER_QUESTION,
) -> ContentAnalysis:
    content_length = max(0, int(content_length))
    estimated = max(1, content_length // max(1, int(chars_per_question)))
    requested = max(0, int(requested))
    needs_external = estimated < requested
    return ContentAnalysis(
        content_length=content_length,
        estimated_questions=estimated,
        needs_external_questions=needs_external,
        external_question_count=max(0, requested - estimated) if needs_external else 0,
    )


def content_fingerprint(content: str, section_key: str) -> str:
    """First 16 hex chars of sha256("<section_key>:<content>")."""
    combined = f"{section_key}:{content or ''}"
    return hashlib.sha256(combined.encode("utf-8")).hexdigest()[:16]


class QuizLedger(SqliteStore):
    """SQLite-backed record of stored questions and served quiz requests."""

    component = "quiz_ledger"
    migrations = [
        SqliteMigration(
            version=1,
            name="create_quiz_questions_table",
            statements=(
                """
                CREATE TABLE IF NOT EXISTS quiz_questions (
                    session_id TEXT NOT NULL,
                    section_id TEXT NOT NULL,
                    question_id TEXT NOT NULL,
                    question_text TEXT NOT NULL,
                    options_json TEXT NOT NULL,
                    correct_answer INTEGER NOT NULL,
                    explanation TEXT NOT NULL DEFAULT '',
                    source TEXT,
                    difficulty TEXT NOT NULL,
                    question_type TEXT NOT NULL,
                    content_hash TEXT,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY(session_id, section_id, question_id)
                )
                """,
            ),
        ),
        SqliteMigration(
            version=2,
            name="create_quiz_sessions_table",
            statements=(
                """
                CREATE TABLE IF NOT EXISTS quiz_sessions (
                    id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    section_ids_json TEXT NOT NULL,
                    num_questions INTEGER NOT NULL,
                    difficulty TEXT NOT NULL,
                    questions_used_json TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """,
                "CREATE INDEX IF NOT EXISTS idx_quiz_sessions_session ON quiz_sessions(session_id, created_at)",
            ),
        ),
    ]

    @staticmethod
    def _row_to_question(row) -> QuizQuestion:
        return QuizQuestion(
            id=row["question_id"],
            question=row["question_text"],
            options=_json_loads_or_default(row["options_json"], []),
            correct_answer=int(row["correct_answer"]),
            explanation=row["explanation"] or "",
            source=row["source"],
            origin="external" if row["question_type"] == "external" else "document",
            content_fingerprint=row["content_hash"],
        )

    @staticmethod
    def _row_to_quiz_session(row) -> QuizSession:
        return QuizSession(
            id=row["id"],
            session_id=row["session_id"],
            section_ids=_json_loads_or_default(row["section_ids_json"], []),
            num_questions=int(row["num_questions"]),
            difficulty=row["difficulty"],
            questions_used=_json_loads_or_default(row["questions_used_json"], []),
            created_at=row["created_at"],
        )

    def store_questions(
        self,
        session_id: str,
        section_id: str,
        questions: Sequence[QuizQuestion],
        difficulty: str,
        question_type: QuestionOrigin = "document",
        content_hash: str | None = None,
    ) -> int:
        """Upserts questions on (session_id, section_id, question_id)."""
        if not questions:
            return 0
        now = _utcnow_iso()
        rows = [
            (
                session_id,
                section_id,
                question.id,
                question.question,
                json.dumps(list(question.options), ensure_ascii=True),
                int(question.correct_answer),
                question.explanation or "",
                question.source,
                difficulty,
                question_type,
                content_hash or question.content_fingerprint,
                now,
            )
            for question in questions
        ]
        with self._connection() as conn:
            conn.executemany(
                """
                INSERT INTO quiz_questions (
                    session_id, section_id, question_id, question_text, options_json, correct_answer,
                    explanation, source, difficulty, question_type, content_hash, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(session_id, section_id, question_id) DO UPDATE SET
                    question_text = excluded.question_text,
                    options_json = excluded.options_json,
                    correct_answer = excluded.correct_answer,
                    explanation = excluded.explanation,
                    source = excluded.source,
                    difficulty = excluded.difficulty,
                    question_type = excluded.question_type,
                    content_hash = excluded.content_hash
                """,
                rows,
            )
        return len(rows)

    def used_question_ids(self, session_id: str, section_ids: Iterable[str]) -> set[str]:
        """
        Ids already stored for any of the sections, plus ids served by any
        recorded quiz request that touched one of them.
        """
        wanted = sorted({str(sid) for sid in section_ids if str(sid or "").strip()})
        if not wanted:
            return set()
        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT question_id FROM quiz_questions
                WHERE session_id = ? AND section_id IN ({self._placeholders(wanted)})
                """,
                [session_id, *wanted],
            ).fetchall()
            session_rows = conn.execute(
                "SELECT section_ids_json, questions_used_json FROM quiz_sessions WHERE session_id = ?",
                (session_id,),
            ).fetchall()

        used = {str(row["question_id"]) for row in rows}
        wanted_set = set(wanted)
        for row in session_rows:
            served_sections = set(_json_loads_or_default(row["section_ids_json"], []))
            if served_sections & wanted_set:
                used.update(str(qid) for qid in _json_loads_or_default(row["questions_used_json"], []))
        return used

    def record_quiz_session(
        self,
        session_id: str,
        section_ids: Sequence[str],
        num_questions: int,
        difficulty: str,
        questions_used: Sequence[str],
    ) -> QuizSession:
        quiz_session = QuizSession(
            id=str(uuid.uuid4()),
            session_id=session_id,
            section_ids=list(section_ids),
            num_questions=int(num_questions),
            difficulty=difficulty,
            questions_used=list(questions_used),
            created_at=_utcnow_iso(),
        )
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO quiz_sessions (id, session_id, section_ids_json, num_questions, difficulty, questions_used_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    quiz_session.id,
                    quiz_session.session_id,
                    json.dumps(quiz_session.section_ids, ensure_ascii=True),
                    quiz_session.num_questions,
                    quiz_session.difficulty,
                    json.dumps(quiz_session.questions_used, ensure_ascii=True),
                    quiz_session.created_at,
                ),
            )
        logger.info(
            "quiz_session_recorded",
            session_id=session_id,
            quiz_session_id=quiz_session.id,
            sections=len(quiz_session.section_ids),
            questions=len(quiz_session.questions_used),
        )
        return quiz_session

    def get_available_questions(
        self,
        session_id: str,
        section_id: str,
        difficulty: str,
        limit: int = 10,
    ) -> list[QuizQuestion]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM quiz_questions
                WHERE session_id = ? AND section_id = ? AND difficulty = ?
                ORDER BY created_at ASC, question_id ASC
                LIMIT ?
                """,
                (session_id, section_id, difficulty, max(1, int(limit))),
            ).fetchall()
        return [self._row_to_question(row) for row in rows]

    def list_quiz_sessions(self, session_id: str) -> list[QuizSession]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM quiz_sessions WHERE session_id = ? ORDER BY created_at ASC",
                (session_id,),
            ).fetchall()
        return [self._row_to_quiz_session(row) for row in rows]

    def delete_session(self, session_id: str) -> int:
        with self._connection() as conn:
            questions = conn.execute("DELETE FROM quiz_questions WHERE session_id = ?", (session_id,))
            sessions = conn.execute("DELETE FROM quiz_sessions WHERE session_id = ?", (session_id,))
            removed = int(questions.rowcount or 0) + int(sessions.rowcount or 0)
        if removed:
            logger.info("session_ledger_deleted", session_id=session_id, rows=removed)
        return removed

    def session_ids(self) -> set[str]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT session_id FROM quiz_questions UNION SELECT session_id FROM quiz_sessions"
            ).fetchall()
        return {str(row["session_id"]) for row in rows}


def question_key(question_text: str) -> str:
    """Stable question id derived from the normalized question text."""
    normalized = " ".join(str(question_text or "").lower().split())
    return f"q_{hashlib.sha256(normalized.encode('utf-8')).hexdigest()[:16]}"
