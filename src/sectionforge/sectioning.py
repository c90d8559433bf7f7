"""
Section normalization and chunk tagging.

Turns an untrusted boundary proposal into an ordered list of sections that
partition a document's chunk indices ``[0, N-1]`` without gaps, then stamps
every chunk with the section that owns it.
"""
from __future__ import annotations

import hashlib
from bisect import bisect_right
from collections.abc import Sequence

from langchain_core.documents import Document

from .config import MAX_SECTION_DEPTH, MAX_SECTIONS
from .models import NormalizedSection, RawSectionProposal
from .observability import get_logger

logger = get_logger(__name__)


def document_key(filename: str) -> str:
    """Short stable key used to namespace section ids per document."""
    return hashlib.sha1(str(filename or "").encode("utf-8")).hexdigest()[:8]


def _clamp_level(level: int | None, max_depth: int) -> int:
    try:
        value = int(level) if level is not None else 1
    except (TypeError, ValueError):
        value = 1
    return min(max(value, 1), max(1, int(max_depth)))


def _chunk_page(chunk: Document) -> int | None:
    page = (getattr(chunk, "metadata", None) or {}).get("page")
    try:
        return int(page) if page not in (None, "") else None
    except (TypeError, ValueError):
        return None


def extract_title_from_content(content: str) -> str | None:
    """Picks the first short, sentence-free line among the first five non-empty lines."""
    lines = [line.strip() for line in str(content or "").split("\n")]
    lines = [line for line in lines if line]
    for line in lines[:5]:
        if 10 < len(line) < 100 and "." not in line:
            return line
    return None


def equal_share_bounds(total: int, count: int) -> list[tuple[int, int]]:
    """
    Splits ``total`` chunks into ``count`` contiguous ranges.
    The remainder goes to the last sections, one extra chunk each.
    """
    if total <= 0 or count <= 0:
        return []
    count = min(count, total)
    base, remainder = divmod(total, count)
    bounds = []
    cursor = 0
    for index in range(count):
        size = base + (1 if index >= count - remainder else 0)
        bounds.append((cursor, cursor + size - 1))
        cursor += size
    return bounds


def page_grouped_sections(
    chunks: Sequence[Document],
    filename: str,
    *,
    max_depth: int = MAX_SECTION_DEPTH,
) -> list[NormalizedSection]:
    """
    Fallback outline: one section per run of chunks sharing a page number.
    Chunks without a page join the current run. No pages at all gives one
    section spanning the whole document.
    """
    total = len(chunks)
    if total == 0:
        return []
    key = document_key(filename)

    runs: list[tuple[int | None, int, int]] = []
    for index, chunk in enumerate(chunks):
        page = _chunk_page(chunk)
        if runs and (page is None or page == runs[-1][0]):
            runs[-1] = (runs[-1][0], runs[-1][1], index)
            continue
        if runs and runs[-1][0] is None:
            runs[-1] = (page, runs[-1][1], index)
            continue
        runs.append((page, index, index))

    sections = []
    for position, (page, start, end) in enumerate(runs):
        title = extract_title_from_content(chunks[start].page_content) or f"Section {position + 1}"
        sections.append(
            NormalizedSection(
                id=f"{key}:page_{position + 1}",
                title=title,
                level=_clamp_level(1, max_depth),
                page_number=page,
                start_index=start,
                end_index=end,
                parent_id=None,
                filename=filename,
                original_id=f"section_{position}",
            )
        )
    return sections


def _has_valid_bounds(proposal: RawSectionProposal, total: int) -> bool:
    start, end = proposal.start_index, proposal.end_index
    if start is None or end is None:
        return False
    return 0 <= start <= end <= total - 1


def _stitch(sections: list[NormalizedSection], total: int) -> list[NormalizedSection]:
    """
    Orders sections by start and closes gaps/overlaps so adjacent ranges touch.
    A section ends where the next one starts; ties on start keep the first proposal.
    """
    ordered = sorted(enumerate(sections), key=lambda item: (item[1].start_index, item[0]))
    kept: list[NormalizedSection] = []
    for _, section in ordered:
        if kept and section.start_index == kept[-1].start_index:
            continue
        kept.append(section)

    stitched = []
    for position, section in enumerate(kept):
        start = 0 if position == 0 else section.start_index
        end = kept[position + 1].start_index - 1 if position + 1 < len(kept) else total - 1
        stitched.append(section.model_copy(update={"start_index": start, "end_index": end}))
    return stitched


def normalize_sections(
    proposals: Sequence[RawSectionProposal] | None,
    chunks: Sequence[Document],
    filename: str,
    *,
    max_depth: int = MAX_SECTION_DEPTH,
    max_sections: int = MAX_SECTIONS,
) -> list[NormalizedSection]:
    """Repairs raw proposals into a gap-free partition of the document's chunks."""
    total = len(chunks)
    if total == 0:
        return []
    if not proposals:
        return page_grouped_sections(chunks, filename, max_depth=max_depth)

    usable = list(proposals)[: max(1, int(max_sections))][:total]
    shares = equal_share_bounds(total, len(usable))
    key = document_key(filename)

    raw_ids = {}
    for proposal in usable:
        if proposal.id and proposal.id not in raw_ids:
            raw_ids[proposal.id] = f"{key}:{proposal.id}"

    repaired = []
    repaired_count = 0
    seen_ids = set()
    for index, proposal in enumerate(usable):
        if _has_valid_bounds(proposal, total):
            start, end = int(proposal.start_index), int(proposal.end_index)
        else:
            start, end = shares[index]
            repaired_count += 1

        section_id = raw_ids.get(proposal.id) if proposal.id else None
        if not section_id or section_id in seen_ids:
            section_id = f"{key}:section_{index + 1}"
            while section_id in seen_ids:
                section_id = f"{section_id}_dup"
        seen_ids.add(section_id)

        page_number = proposal.page_number
        if page_number is None:
            page_number = _chunk_page(chunks[start])

        repaired.append(
            NormalizedSection(
                id=section_id,
                title=(proposal.title or "").strip() or f"Section {index + 1}",
                level=_clamp_level(proposal.level, max_depth),
                page_number=page_number,
                start_index=start,
                end_index=end,
                parent_id=raw_ids.get(proposal.parent_id) if proposal.parent_id else None,
                filename=filename,
                original_id=f"section_{index}",
            )
        )

    if repaired_count:
        logger.warning(
            "section_bounds_repaired",
            filename=filename,
            chunk_count=total,
            proposals=len(usable),
            repaired=repaired_count,
        )
    return _stitch(repaired, total)


def find_section_for_index(
    chunk_index: int,
    ordered_sections: Sequence[NormalizedSection],
    starts: Sequence[int] | None = None,
) -> NormalizedSection:
    """
    Returns the section covering ``chunk_index``. Sections must be sorted by start.
    When ranges overlap the last match wins; an uncovered index maps to the first section.
    """
    if not ordered_sections:
        raise ValueError("cannot resolve a section from an empty outline")
    starts = starts if starts is not None else [section.start_index for section in ordered_sections]
    position = bisect_right(starts, chunk_index)
    for candidate in reversed(ordered_sections[:position]):
        if candidate.covers(chunk_index):
            return candidate
    return ordered_sections[0]


def tag_chunks(
    chunks: Sequence[Document],
    sections: Sequence[NormalizedSection],
    *,
    session_id: str,
) -> list[Document]:
    """Copies every chunk with the id, title and level of its owning section."""
    if not sections:
        raise ValueError("tag_chunks requires at least one section")
    ordered = sorted(sections, key=lambda section: section.start_index)
    starts = [section.start_index for section in ordered]
    total = len(chunks)

    tagged = []
    for index, chunk in enumerate(chunks):
        section = find_section_for_index(index, ordered, starts)
        metadata = dict(getattr(chunk, "metadata", None) or {})
        metadata.update(
            {
                "session_id": session_id,
                "filename": metadata.get("filename") or section.filename,
                "section_id": section.id,
                "section_title": section.title,
                "section_level": section.level,
                "chunk_index": index,
                "total_chunks": total,
            }
        )
        tagged.append(Document(page_content=str(chunk.page_content or ""), metadata=metadata))
    return tagged


def section_texts(tagged_chunks: Sequence[Document]) -> dict[str, str]:
    """Joins tagged chunk text per section id, in chunk order."""
    grouped: dict[str, list[str]] = {}
    for chunk in tagged_chunks:
        section_id = str(chunk.metadata.get("section_id") or "")
        grouped.setdefault(section_id, []).append(str(chunk.page_content or ""))
    return {section_id: "\n".join(parts) for section_id, parts in grouped.items()}
