"""
Cross-document outline unification.

The session outline is always rebuilt from the complete set of stored document
outlines; nothing here patches a previous result. Given the same outlines the
output has the same membership and grouping, only the random group ids differ.
"""
from __future__ import annotations

import uuid
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone

from .config import ENABLE_SMART_GROUPING, GROUPING_MODE, SIMILARITY_THRESHOLD
from .models import DocumentOutline, NormalizedSection, SessionOutline, UnifiedSection
from .observability import get_logger
from .tokenization import title_similarity

logger = get_logger(__name__)

GROUPING_MODES = ("seed", "transitive")


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _seed_groups(sections: Sequence[NormalizedSection], threshold: float) -> list[list[int]]:
    """Each unclaimed section seeds a group and claims every later unclaimed section similar to it."""
    claimed: set[int] = set()
    groups: list[list[int]] = []
    for seed_index, seed in enumerate(sections):
        if seed_index in claimed:
            continue
        claimed.add(seed_index)
        members = [seed_index]
        for other_index in range(seed_index + 1, len(sections)):
            if other_index in claimed:
                continue
            if title_similarity(seed.title, sections[other_index].title) >= threshold:
                members.append(other_index)
                claimed.add(other_index)
        if len(members) > 1:
            groups.append(members)
    return groups


def _transitive_groups(sections: Sequence[NormalizedSection], threshold: float) -> list[list[int]]:
    """Union-find closure of the similarity relation; groups ordered by their first member."""
    parent = list(range(len(sections)))

    def find(index: int) -> int:
        while parent[index] != index:
            parent[index] = parent[parent[index]]
            index = parent[index]
        return index

    for left in range(len(sections)):
        for right in range(left + 1, len(sections)):
            if title_similarity(sections[left].title, sections[right].title) >= threshold:
                root_left, root_right = find(left), find(right)
                if root_left != root_right:
                    parent[max(root_left, root_right)] = min(root_left, root_right)

    members: dict[int, list[int]] = {}
    for index in range(len(sections)):
        members.setdefault(find(index), []).append(index)
    return [group for _, group in sorted(members.items()) if len(group) > 1]


def detect_section_overlaps(
    sections: Sequence[NormalizedSection],
    *,
    threshold: float = SIMILARITY_THRESHOLD,
    mode: str = GROUPING_MODE,
) -> list[list[NormalizedSection]]:
    """
    Groups sections whose titles are similar enough, tagging each member with a fresh group id.
    The first member of every group is its representative.
    """
    if mode not in GROUPING_MODES:
        raise ValueError(f"unknown grouping mode: {mode!r}")
    index_groups = _seed_groups(sections, threshold) if mode == "seed" else _transitive_groups(sections, threshold)

    groups = []
    for index_group in index_groups:
        group_id = str(uuid.uuid4())
        groups.append([sections[index].model_copy(update={"group_id": group_id}) for index in index_group])
    return groups


def _page_level_key(section: UnifiedSection) -> tuple[int, int]:
    return (section.page_number or 0, section.level)


def unify_sections(
    sections: Sequence[NormalizedSection],
    *,
    threshold: float = SIMILARITY_THRESHOLD,
    mode: str = GROUPING_MODE,
    enable_grouping: bool = ENABLE_SMART_GROUPING,
) -> list[UnifiedSection]:
    """Collapses each group to its representative and sorts by page then level."""
    unified: list[UnifiedSection] = []
    grouped_ids: set[str] = set()

    if enable_grouping:
        for group in detect_section_overlaps(sections, threshold=threshold, mode=mode):
            representative, related = group[0], group[1:]
            unified.append(
                UnifiedSection(
                    **representative.model_dump(),
                    related_sections=[section.model_copy() for section in related],
                    is_grouped=True,
                )
            )
            grouped_ids.update(section.id for section in group)

    for section in sections:
        if section.id in grouped_ids:
            continue
        unified.append(UnifiedSection(**section.model_dump(), related_sections=[], is_grouped=False))

    # sorted() is stable, so equal (page, level) keys keep discovery order.
    return sorted(unified, key=_page_level_key)


def flatten_outlines(document_outlines: Iterable[DocumentOutline]) -> list[NormalizedSection]:
    """Flattens outlines in filename order, re-stamping each section with its document's filename."""
    flattened = []
    for outline in sorted(document_outlines, key=lambda item: (item.filename, item.content_fingerprint)):
        for section in outline.sections:
            flattened.append(section.model_copy(update={"filename": outline.filename, "group_id": None}))
    return flattened


def build_session_outline(
    session_id: str,
    document_outlines: Iterable[DocumentOutline],
    *,
    threshold: float = SIMILARITY_THRESHOLD,
    mode: str = GROUPING_MODE,
    enable_grouping: bool = ENABLE_SMART_GROUPING,
    created_at: str | None = None,
) -> SessionOutline:
    outlines = list(document_outlines)
    sections = flatten_outlines(outlines)
    unified = unify_sections(sections, threshold=threshold, mode=mode, enable_grouping=enable_grouping)
    now = _utcnow_iso()
    logger.info(
        "session_outline_built",
        session_id=session_id,
        documents=len(outlines),
        sections=len(sections),
        unified_sections=len(unified),
        groups=sum(1 for section in unified if section.is_grouped),
        mode=mode,
    )
    return SessionOutline(
        session_id=session_id,
        unified_sections=unified,
        created_at=created_at or now,
        updated_at=now,
    )


def grouping_signature(outline: SessionOutline) -> list[tuple[str, tuple[str, ...]]]:
    """Group-id-free view of an outline: (representative id, related ids) in outline order."""
    return [
        (section.id, tuple(related.id for related in section.related_sections))
        for section in outline.unified_sections
    ]
