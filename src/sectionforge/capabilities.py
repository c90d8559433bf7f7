"""
External capability contracts and their LLM-backed implementations.

Callers depend on the Protocols only. The LLM implementations treat every model
response as untrusted: the JSON payload is extracted, validated against the
pydantic schemas and rejected with ``CapabilityError`` when it does not fit.
"""
from __future__ import annotations

import json
import os
import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from langchain_core.documents import Document
from langchain_core.output_parsers import StrOutputParser
from langchain_groq import ChatGroq
from langchain_ollama import OllamaLLM
from pydantic import ValidationError

from .config import (
    API_MODEL_NAME,
    EXTRACTOR_CONTENT_CHAR_LIMIT,
    LLM_MAX_TOKENS,
    LLM_TEMPERATURE,
    LOCAL_MODEL_NAME,
    MAX_SECTION_DEPTH,
    MAX_SECTIONS,
    USE_API_LLM,
    console,
)
from .errors import CapabilityError
from .models import BoundaryProposal, QuizBatch, QuizQuestion, RawSectionProposal
from .observability import get_logger
from .prompts import (
    ANSWER_EXPLANATION_PROMPT,
    BOUNDARY_PROMPT,
    EXTERNAL_QUIZ_PROMPT,
    SECTION_QUIZ_PROMPT,
    SECTION_SUMMARY_PROMPT,
)

logger = get_logger(__name__)

_THINK_RE = re.compile(r"<think>.*?</think>", flags=re.DOTALL | re.IGNORECASE)
_FENCE_RE = re.compile(r"^\s*`{3}[a-zA-Z0-9_-]*\s*|\s*`{3}\s*$")


# --- Contracts ----------------------------------------------------------------

@runtime_checkable
class BoundaryExtractor(Protocol):
    def extract(self, document_text: str, chunk_count: int) -> list[RawSectionProposal]: ...


@runtime_checkable
class QuestionGenerator(Protocol):
    def generate(self, content: str, count: int, difficulty: str) -> list[QuizQuestion]: ...


@runtime_checkable
class TopicQuestionGenerator(Protocol):
    def generate(self, topic: str, count: int, difficulty: str) -> list[QuizQuestion]: ...


@runtime_checkable
class SectionSummarizer(Protocol):
    def summarize(self, title: str, content: str) -> str: ...


@runtime_checkable
class AnswerExplainer(Protocol):
    def explain(self, question: QuizQuestion, user_answer: int) -> str: ...


# --- Response parsing ---------------------------------------------------------

def clean_llm_text(raw: Any) -> str:
    """Drops reasoning blocks and markdown fences around a model response."""
    text = str(getattr(raw, "content", raw) or "")
    text = _THINK_RE.sub("", text)
    return _FENCE_RE.sub("", text.strip()).strip()


def extract_json_object(raw: Any) -> dict:
    """Parses the outermost JSON object in a model response."""
    text = clean_llm_text(raw)
    start, end = text.find("{"), text.rfind("}")
    if start < 0 or end <= start:
        raise CapabilityError("model response contained no JSON object")
    try:
        payload = json.loads(text[start : end + 1])
    except json.JSONDecodeError as exc:
        raise CapabilityError(f"model response was not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise CapabilityError("model response JSON was not an object")
    return payload


def render_chunks_for_extraction(chunks: Sequence[Document], char_limit: int = EXTRACTOR_CONTENT_CHAR_LIMIT) -> str:
    """Labels each chunk with its index so the extractor can answer in chunk ranges."""
    parts = []
    used = 0
    for index, chunk in enumerate(chunks):
        page = (chunk.metadata or {}).get("page")
        header = f"[chunk {index}" + (f", page {page}]" if page is not None else "]")
        block = f"{header}\n{str(chunk.page_content or '').strip()}"
        remaining = char_limit - used
        if remaining <= 0:
            break
        parts.append(block[:remaining])
        used += len(block) + 2
    return "\n\n".join(parts)


# --- LLM-backed implementations ----------------------------------------------

class _LLMCapability:
    def __init__(self, llm):
        self.llm = llm

    def _invoke(self, prompt, variables: dict) -> str:
        if self.llm is None:
            raise CapabilityError("no language model is configured")
        chain = prompt | self.llm | StrOutputParser()
        try:
            return chain.invoke(variables)
        except Exception as exc:
            raise CapabilityError(f"language model call failed: {exc}") from exc


class LLMBoundaryExtractor(_LLMCapability):
    def __init__(self, llm, *, max_sections: int = MAX_SECTIONS, max_depth: int = MAX_SECTION_DEPTH):
        super().__init__(llm)
        self.max_sections = max_sections
        self.max_depth = max_depth

    def extract(self, document_text: str, chunk_count: int) -> list[RawSectionProposal]:
        raw = self._invoke(
            BOUNDARY_PROMPT,
            {
                "chunk_count": chunk_count,
                "max_index": max(0, chunk_count - 1),
                "max_sections": self.max_sections,
                "max_depth": self.max_depth,
                "document_content": document_text,
            },
        )
        try:
            proposal = BoundaryProposal.model_validate(extract_json_object(raw))
        except ValidationError as exc:
            raise CapabilityError(f"boundary proposal failed validation: {exc.error_count()} error(s)") from exc
        return proposal.sections


def _validate_questions(payload: dict, *, origin: str, limit: int) -> list[QuizQuestion]:
    try:
        batch = QuizBatch.model_validate(payload)
    except ValidationError as exc:
        raise CapabilityError(f"quiz payload failed validation: {exc.error_count()} error(s)") from exc
    return [question.model_copy(update={"origin": origin}) for question in batch.questions[: max(0, limit)]]


class LLMQuestionGenerator(_LLMCapability):
    def generate(self, content: str, count: int, difficulty: str) -> list[QuizQuestion]:
        if count <= 0 or not str(content or "").strip():
            return []
        raw = self._invoke(
            SECTION_QUIZ_PROMPT,
            {"content": content, "num_questions": count, "difficulty": difficulty},
        )
        return _validate_questions(extract_json_object(raw), origin="document", limit=count)


class LLMTopicQuestionGenerator(_LLMCapability):
    def generate(self, topic: str, count: int, difficulty: str) -> list[QuizQuestion]:
        if count <= 0:
            return []
        raw = self._invoke(
            EXTERNAL_QUIZ_PROMPT,
            {"topic": topic, "num_questions": count, "difficulty": difficulty},
        )
        return _validate_questions(extract_json_object(raw), origin="external", limit=count)


class LLMSectionSummarizer(_LLMCapability):
    def summarize(self, title: str, content: str) -> str:
        summary = clean_llm_text(
            self._invoke(SECTION_SUMMARY_PROMPT, {"section_title": title, "section_content": content})
        )
        if not summary:
            raise CapabilityError("summarizer returned an empty summary")
        return summary


class LLMAnswerExplainer(_LLMCapability):
    def explain(self, question: QuizQuestion, user_answer: int) -> str:
        options = "\n".join(f"{index}. {option}" for index, option in enumerate(question.options))
        selected = question.options[user_answer] if 0 <= user_answer < len(question.options) else "(no answer)"
        return clean_llm_text(
            self._invoke(
                ANSWER_EXPLANATION_PROMPT,
                {
                    "question": question.question,
                    "options": options,
                    "user_answer": selected,
                    "correct_answer": question.options[question.correct_answer],
                    "reference_explanation": question.explanation or "(none)",
                },
            )
        )


@dataclass
class Capabilities:
    extractor: BoundaryExtractor
    question_generator: QuestionGenerator
    topic_generator: TopicQuestionGenerator
    summarizer: SectionSummarizer
    explainer: AnswerExplainer


def initialize_llm():
    """Builds the configured chat model, or None when the API model has no key."""
    if USE_API_LLM:
        api_key = os.getenv("GROQ_API_KEY")
        if not api_key:
            console.print("[bold red]GROQ_API_KEY not set. LLM capabilities disabled.[/bold red]")
            logger.warning("llm_unavailable", provider="groq", reason="missing_api_key")
            return None
        console.print(f"[green]Using API Model: {API_MODEL_NAME}[/green]")
        return ChatGroq(
            model_name=API_MODEL_NAME,
            temperature=LLM_TEMPERATURE,
            max_tokens=LLM_MAX_TOKENS,
            groq_api_key=api_key,
        )
    console.print(f"[green]Using Local Model: {LOCAL_MODEL_NAME}[/green]")
    return OllamaLLM(
        model=LOCAL_MODEL_NAME,
        temperature=LLM_TEMPERATURE,
        num_predict=LLM_MAX_TOKENS,
    )


def build_llm_capabilities(llm=None) -> Capabilities:
    llm = llm if llm is not None else initialize_llm()
    return Capabilities(
        extractor=LLMBoundaryExtractor(llm),
        question_generator=LLMQuestionGenerator(llm),
        topic_generator=LLMTopicQuestionGenerator(llm),
        summarizer=LLMSectionSummarizer(llm),
        explainer=LLMAnswerExplainer(llm),
    )
