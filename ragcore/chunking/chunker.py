"""
RAG Context Core - Overlapping Chunker
----------------------------------------
Splits raw document text into overlapping, boundary-respecting chunks sized
for embedding and retrieval.

Algorithm:
  1. Walk the text left to right, accumulating sentence (or paragraph) units
     until the next unit would push the chunk past `chunk_size_tokens`.
     A chunk always holds at least one unit, so units are never cut.
  2. The next chunk starts `overlap_tokens` worth of characters before the
     previous end, snapped to the nearest boundary within ±100 characters
     (sentences) or ±200 (paragraphs).  Ties go to the earlier offset.
     Starts strictly increase, which bounds the chunk count by the text length.
  3. Post-processing:
       - chunks under `min_chunk_tokens` (except the last) borrow leading
         content from the following text
       - chunks over `max_chunk_tokens` are split again on sentence
         boundaries into sub-chunks (is_sub_chunk=True, parent_index=...)
       - indices are renumbered and the realised overlap with the previous
         chunk is recomputed from offsets.

Every chunk's text is the exact slice `text[start_offset:end_offset]` with
surrounding whitespace trimmed away, so offsets always round-trip.
"""
from __future__ import annotations

import math
from bisect import bisect_right
from dataclasses import dataclass
from typing import Optional

from loguru import logger

from ragcore.chunking.boundaries import (
    PARAGRAPH_SNAP_WINDOW,
    SENTENCE_SNAP_WINDOW,
    boundaries_within,
    detect_structural_type,
    sentence_boundaries,
    snap_to_boundary,
    unit_boundaries,
)
from ragcore.config import ChunkingOptions
from ragcore.schemas import Chunk
from ragcore.tokens import TokenEstimator, ratio_estimator


@dataclass(slots=True)
class _Span:
    start: int
    end: int
    is_sub_chunk: bool = False
    parent_index: Optional[int] = None


@dataclass
class OverlapQuality:
    average_overlap: float
    overlap_consistency: float
    context_preservation: float
    quality_score: float


def _trim(text: str, start: int, end: int) -> Optional[_Span]:
    """Shrink `[start, end)` to exclude surrounding whitespace; None if blank."""
    segment = text[start:end]
    stripped = segment.strip()
    if not stripped:
        return None
    lead = len(segment) - len(segment.lstrip())
    tail = len(segment) - len(segment.rstrip())
    return _Span(start + lead, end - tail)


def realised_overlap(prev_start: int, prev_end: int, start: int, end: int) -> int:
    return max(0, min(prev_end, end) - max(prev_start, start))


# --- Main Chunker -------------------------------------------------------------

class OverlappingChunker:
    """
    Boundary-aware sliding-window chunker.

    Usage:
        chunker = OverlappingChunker(ChunkingOptions(chunk_size_tokens=200, overlap_tokens=50))
        chunks = chunker.chunk(text, document_id="doc-1")

    `estimator` overrides token counting; by default tokens are estimated as
    ceil(len / options.chars_per_token).
    """

    def __init__(
        self,
        options: Optional[ChunkingOptions] = None,
        estimator: Optional[TokenEstimator] = None,
    ) -> None:
        self.options = options or ChunkingOptions()
        self._estimator = estimator

    def chunk(
        self,
        text: str,
        options: Optional[ChunkingOptions] = None,
        document_id: str = "doc",
    ) -> list[Chunk]:
        """
        Chunk `text` into overlapping spans.

        Args:
            text: Raw document text.
            options: Per-call override of the chunker's options.
            document_id: Parent document id stamped on every chunk.

        Returns:
            Chunks in document order, indices renumbered from 0.
        """
        opts = options or self.options
        if not text or not text.strip():
            logger.debug(f"[Chunker] {document_id} | empty document -> 0 chunks")
            return []

        count = self._counter(opts)
        boundaries = unit_boundaries(
            text,
            opts.respect_sentence_boundaries,
            opts.respect_paragraph_boundaries,
        )

        spans = self._primary_spans(text, opts, boundaries, count)
        spans = self._extend_small(text, spans, opts, boundaries, count)
        spans = self._split_oversized(text, spans, opts, count)
        chunks = self._finalise(text, spans, document_id, count)

        logger.debug(
            f"[Chunker] {document_id} | {len(text)} chars | "
            f"size={opts.chunk_size_tokens} overlap={opts.overlap_tokens} -> {len(chunks)} chunk(s)"
        )
        return chunks

    # --- Token counting -------------------------------------------------------

    def _counter(self, opts: ChunkingOptions) -> TokenEstimator:
        if self._estimator is not None:
            return self._estimator
        return ratio_estimator(opts.chars_per_token)

    # --- Step 1: Primary walk -------------------------------------------------

    def _primary_spans(
        self,
        text: str,
        opts: ChunkingOptions,
        boundaries: Optional[list[int]],
        count: TokenEstimator,
    ) -> list[_Span]:
        n = len(text)
        spans: list[_Span] = []
        start = 0

        while start < n:
            if boundaries is None:
                end = min(n, start + opts.chunk_chars)
            else:
                end = self._accumulate(text, start, boundaries, opts.chunk_size_tokens, count)

            span = _trim(text, start, end)
            if span is not None:
                spans.append(span)

            if end >= n:
                break

            next_start = self._next_start(start, end, opts, boundaries)
            if next_start <= start:
                # Guaranteed progress even for degenerate single-boundary input
                next_start = start + 1
            start = next_start

        return spans

    @staticmethod
    def _accumulate(
        text: str,
        start: int,
        boundaries: list[int],
        limit_tokens: int,
        count: TokenEstimator,
    ) -> int:
        """End offset after packing whole units from `start` up to `limit_tokens`."""
        i = bisect_right(boundaries, start)
        if i >= len(boundaries):
            return len(text)
        end = boundaries[i]                      # first unit is always taken
        while i + 1 < len(boundaries):
            candidate = boundaries[i + 1]
            if count(text[start:candidate].strip()) > limit_tokens:
                break
            i += 1
            end = candidate
        return end

    @staticmethod
    def _next_start(
        start: int,
        end: int,
        opts: ChunkingOptions,
        boundaries: Optional[list[int]],
    ) -> int:
        overlap = opts.overlap_chars
        target = end - overlap
        if overlap <= 0 or target <= start:
            return end
        if boundaries is None:
            return target

        window = SENTENCE_SNAP_WINDOW if opts.respect_sentence_boundaries else PARAGRAPH_SNAP_WINDOW
        snapped = snap_to_boundary(boundaries, target, window, lo=start, hi=end)
        return snapped if snapped is not None else target

    # --- Step 2: Undersized chunks --------------------------------------------

    def _extend_small(
        self,
        text: str,
        spans: list[_Span],
        opts: ChunkingOptions,
        boundaries: Optional[list[int]],
        count: TokenEstimator,
    ) -> list[_Span]:
        for i in range(len(spans) - 1):
            span, following = spans[i], spans[i + 1]
            tokens = count(text[span.start:span.end])
            if tokens >= opts.min_chunk_tokens:
                continue

            needed_chars = math.ceil((opts.min_chunk_tokens - tokens) * opts.chars_per_token)
            cap = span.end + (following.end - span.end) // 2    # at most half of what follows
            ideal = min(span.end + needed_chars, cap)
            if ideal <= span.end:
                continue

            if boundaries is None:
                new_end = ideal
            else:
                reachable = boundaries_within(boundaries, span.end, cap + 1)[1:-1]
                if not reachable:
                    continue
                enough = [b for b in reachable if b >= ideal]
                new_end = enough[0] if enough else reachable[-1]

            extended = _trim(text, span.start, new_end)
            if extended is None or extended.end <= span.end:
                continue
            if count(text[extended.start:extended.end]) > opts.max_chunk_tokens:
                continue

            logger.debug(
                f"[Chunker] Extended undersized chunk {i} ({tokens} tokens) "
                f"by {extended.end - span.end} chars"
            )
            span.end = extended.end
        return spans

    # --- Step 3: Oversized chunks ---------------------------------------------

    def _split_oversized(
        self,
        text: str,
        spans: list[_Span],
        opts: ChunkingOptions,
        count: TokenEstimator,
    ) -> list[_Span]:
        result: list[_Span] = []
        sentence_starts: Optional[list[int]] = None

        for index, span in enumerate(spans):
            if count(text[span.start:span.end]) <= opts.max_chunk_tokens:
                result.append(span)
                continue

            if sentence_starts is None:
                sentence_starts = sentence_boundaries(text)
            local = boundaries_within(sentence_starts, span.start, span.end)

            pieces: list[_Span] = []
            cursor = span.start
            while cursor < span.end:
                end = self._accumulate(text, cursor, local, opts.chunk_size_tokens, count)
                piece = _trim(text, cursor, end)
                if piece is not None:
                    pieces.extend(self._resize_piece(text, piece, opts, count))
                cursor = max(end, cursor + 1)

            for piece in pieces:
                piece.is_sub_chunk = True
                piece.parent_index = index
            logger.debug(f"[Chunker] Split oversized chunk {index} into {len(pieces)} sub-chunks")
            result.extend(pieces)

        return result

    @staticmethod
    def _resize_piece(
        text: str,
        piece: _Span,
        opts: ChunkingOptions,
        count: TokenEstimator,
    ) -> list[_Span]:
        """Re-run sizing on a sub-chunk: hard-cut only when sentences may be split."""
        if count(text[piece.start:piece.end]) <= opts.max_chunk_tokens:
            return [piece]
        if opts.respect_sentence_boundaries:
            logger.warning(
                f"[Chunker] Single sentence at offset {piece.start} exceeds "
                f"max_chunk_tokens={opts.max_chunk_tokens}; kept whole"
            )
            return [piece]

        out: list[_Span] = []
        for s in range(piece.start, piece.end, opts.chunk_chars):
            cut = _trim(text, s, min(piece.end, s + opts.chunk_chars))
            if cut is not None:
                out.append(cut)
        return out

    # --- Step 4: Renumber & materialise ---------------------------------------

    @staticmethod
    def _finalise(
        text: str,
        spans: list[_Span],
        document_id: str,
        count: TokenEstimator,
    ) -> list[Chunk]:
        chunks: list[Chunk] = []
        prev: Optional[_Span] = None
        for index, span in enumerate(spans):
            body = text[span.start:span.end]
            overlap = 0 if prev is None else realised_overlap(prev.start, prev.end, span.start, span.end)
            chunks.append(
                Chunk(
                    chunk_id=f"{document_id}-chunk-{index:04d}",
                    document_id=document_id,
                    chunk_index=index,
                    text=body,
                    start_offset=span.start,
                    end_offset=span.end,
                    token_count=count(body),
                    overlap_with_previous=overlap,
                    structural_type=detect_structural_type(body),
                    is_sub_chunk=span.is_sub_chunk,
                    parent_index=span.parent_index,
                )
            )
            prev = span
        return chunks


# --- Quality checks -----------------------------------------------------------

_SENTENCE_TERMINALS = (".", "!", "?", '."', '!"', '?"', ".)", ":")


def validate_chunks(chunks: list[Chunk], options: ChunkingOptions) -> list[str]:
    """
    Return human-readable issues for a chunk list and log them.

    Issues never fail chunking; they are diagnostics for tuning options.
    """
    issues: list[str] = []
    for i, chunk in enumerate(chunks):
        is_last = i == len(chunks) - 1
        if chunk.token_count < options.min_chunk_tokens and not is_last:
            issues.append(f"Chunk {chunk.chunk_index} is too small ({chunk.token_count} tokens)")
        if chunk.token_count > options.max_chunk_tokens:
            issues.append(f"Chunk {chunk.chunk_index} is too large ({chunk.token_count} tokens)")
        if not chunk.text.strip():
            issues.append(f"Chunk {chunk.chunk_index} is empty")
        if (
            options.respect_sentence_boundaries
            and not is_last
            and not chunk.text.rstrip().endswith(_SENTENCE_TERMINALS)
        ):
            issues.append(f"Chunk {chunk.chunk_index} doesn't end with a complete sentence")

    if issues:
        logger.warning(f"[Chunker] Validation issues: {issues}")
    return issues


def analyze_overlap_quality(chunks: list[Chunk]) -> OverlapQuality:
    """Summarise how consistent and useful the realised overlaps are."""
    if len(chunks) < 2:
        return OverlapQuality(0.0, 1.0, 1.0, 1.0)

    overlaps = [c.overlap_with_previous for c in chunks[1:]]
    average = sum(overlaps) / len(overlaps)
    variance = sum((o - average) ** 2 for o in overlaps) / len(overlaps)
    consistency = max(0.0, 1 - variance / (average + 1))
    preservation = min(1.0, average / 100)
    return OverlapQuality(
        average_overlap=average,
        overlap_consistency=consistency,
        context_preservation=preservation,
        quality_score=(consistency + preservation) / 2,
    )
