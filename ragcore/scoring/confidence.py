"""
Confidence Aggregator
----------------------
Collapses a retrieval result's sources into one trust signal plus a
per-source score.

    overall = mean(source.relevance_score for source in sources)

Pure and synchronous: no I/O, no weighting by recency or diversity.
Subclass and override `overall()` to add such weighting.
"""
from __future__ import annotations

from typing import Any, Mapping, Sequence, Union

from loguru import logger

from ragcore.schemas import ConfidenceScore, RetrievedSource, SourceScore

SourceLike = Union[RetrievedSource, Mapping[str, Any]]


def _id_and_score(source: SourceLike) -> tuple[str, float]:
    if isinstance(source, Mapping):
        score = source.get("relevance_score", source.get("relevanceScore", 0.0))
        return str(source["id"]), float(score)
    return str(source.id), float(source.relevance_score)


class ConfidenceAggregator:
    def score(self, sources: Sequence[SourceLike]) -> ConfidenceScore:
        if not sources:
            return ConfidenceScore(overall=0.0, sources=[])

        scored = [SourceScore(id=sid, score=s) for sid, s in map(_id_and_score, sources)]
        result = ConfidenceScore(overall=self.overall(scored), sources=scored)
        logger.debug(f"[Confidence] {len(scored)} source(s) -> overall={result.overall:.4f}")
        return result

    def overall(self, scored: Sequence[SourceScore]) -> float:
        return sum(s.score for s in scored) / len(scored)
