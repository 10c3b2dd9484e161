"""
Boundary detection helpers for the chunker.

All helpers work on character offsets into the original text so chunks can
be expressed as exact `[start, end)` spans.  A boundary is the offset at
which a new unit (sentence or paragraph) begins.
"""
from __future__ import annotations

import re
from bisect import bisect_left, bisect_right
from typing import Optional

from ragcore.schemas import StructuralType

_SENTENCE_END = re.compile(r"[.!?]+\s+")
_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")

SENTENCE_SNAP_WINDOW = 100
PARAGRAPH_SNAP_WINDOW = 200


def paragraph_boundaries(text: str) -> list[int]:
    """Offsets where paragraphs start (always includes 0)."""
    boundaries = [0]
    boundaries.extend(m.end() for m in _PARAGRAPH_BREAK.finditer(text))
    return sorted(set(b for b in boundaries if b < len(text) or b == 0))


def sentence_boundaries(text: str) -> list[int]:
    """Offsets where sentences start.  Paragraph starts count as sentence starts."""
    boundaries = set(paragraph_boundaries(text))
    boundaries.update(m.end() for m in _SENTENCE_END.finditer(text))
    return sorted(b for b in boundaries if b < len(text) or b == 0)


def unit_boundaries(
    text: str,
    respect_sentences: bool,
    respect_paragraphs: bool,
) -> Optional[list[int]]:
    """
    Unit start offsets plus `len(text)` as the terminal boundary.

    Returns None when neither boundary type is respected (pure character
    windows).
    """
    if respect_sentences:
        found = sentence_boundaries(text)
    elif respect_paragraphs:
        found = paragraph_boundaries(text)
    else:
        return None
    if not found or found[-1] != len(text):
        found.append(len(text))
    return found


def snap_to_boundary(
    boundaries: list[int],
    target: int,
    window: int,
    lo: int,
    hi: int,
) -> Optional[int]:
    """
    Nearest boundary to `target` within `target ± window`, restricted to
    `(lo, hi]`.  Ties go to the smaller offset.  None when nothing qualifies.
    """
    left = bisect_left(boundaries, max(lo + 1, target - window))
    right = bisect_right(boundaries, min(hi, target + window))
    best: Optional[int] = None
    for b in boundaries[left:right]:
        if best is None or abs(b - target) < abs(best - target):
            best = b
    return best


def boundaries_within(boundaries: list[int], start: int, end: int) -> list[int]:
    """Boundaries strictly inside `(start, end)`, framed by `start` and `end`."""
    left = bisect_right(boundaries, start)
    right = bisect_left(boundaries, end)
    return [start, *boundaries[left:right], end]


# --- Structural typing --------------------------------------------------------

_HEADING = re.compile(r"^#{1,6}\s+")
_LIST_ITEM = re.compile(r"^\s*(?:[-*+]|\d+\.)\s+")
_FENCE = re.compile(r"^(?:```|~~~)")
_TABLE_ROW = re.compile(r"\|.*\|")


def detect_structural_type(text: str) -> StructuralType:
    """Classify a chunk by its leading structure (markdown-ish heuristics)."""
    stripped = text.strip()
    if not stripped:
        return StructuralType.PARAGRAPH
    if _HEADING.match(stripped):
        return StructuralType.HEADING
    if _LIST_ITEM.match(stripped):
        return StructuralType.LIST
    lines = [line for line in text.splitlines() if line.strip()]
    if _FENCE.match(stripped) or all(line.startswith(("    ", "\t")) for line in lines):
        return StructuralType.CODE
    if _TABLE_ROW.search(stripped):
        return StructuralType.TABLE
    return StructuralType.PARAGRAPH
