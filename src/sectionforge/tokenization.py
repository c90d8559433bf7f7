"""
Shared tokenization helpers for title matching and lexical scoring.
"""
from __future__ import annotations

import re

_UNICODE_WORD_RE = re.compile(r"\w+", flags=re.UNICODE)
_TITLE_PUNCT_RE = re.compile(r"[^\w\s]", flags=re.UNICODE)


def tokenize_for_matching(text: str, *, min_len: int = 1, limit: int | None = None) -> list[str]:
    """
    Tokenizes text with Unicode-aware word boundaries.
    Keeps letters/numbers from non-Latin scripts and normalizes via casefold().
    """
    safe_min_len = max(1, int(min_len))
    max_tokens = int(limit) if limit is not None else None

    out: list[str] = []
    for raw in _UNICODE_WORD_RE.findall(str(text or "").casefold()):
        token = raw.strip("_")
        if not token:
            continue
        if len(token) < safe_min_len:
            continue
        if not any(ch.isalnum() for ch in token):
            continue
        out.append(token)
        if max_tokens is not None and len(out) >= max_tokens:
            break
    return out


def normalize_title(title: str) -> str:
    """Lowercases a section title and strips punctuation (hyphens and dots join their neighbours)."""
    return _TITLE_PUNCT_RE.sub("", str(title or "").lower()).strip()


def title_token_set(title: str) -> set[str]:
    normalized = normalize_title(title)
    return set(normalized.split()) if normalized else set()


def jaccard_similarity(left: set[str], right: set[str]) -> float:
    union = left | right
    if not union:
        return 0.0
    return len(left & right) / len(union)


def title_similarity(title_a: str, title_b: str) -> float:
    """
    Token-set Jaccard overlap of two normalized titles.
    Identical normalized titles score 1.0 even when both are empty.
    """
    norm_a = normalize_title(title_a)
    norm_b = normalize_title(title_b)
    if norm_a == norm_b:
        return 1.0
    return jaccard_similarity(title_token_set(norm_a), title_token_set(norm_b))


def lexical_overlap(query: str, text: str, *, min_len: int = 3) -> int:
    query_tokens = set(tokenize_for_matching(query, min_len=min_len))
    if not query_tokens:
        return 0
    return len(query_tokens.intersection(tokenize_for_matching(text, min_len=min_len)))
