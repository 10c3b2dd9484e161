"""
Context Retriever
------------------
Turns a user query into ranked context chunks with source provenance.

    query -> EmbeddingService.embed() -> NearestNeighborService.search(top_k)
          -> ContextChunk[] -> per-document sources -> RetrievalResult

Strategies:
  semantic  -- dense vector search only (always available)
  keyword   -- BM25-style keyword search (search service must implement
               search_keyword)
  hybrid    -- both, fused with Reciprocal Rank Fusion

No retries happen here: a failed embedding or search surfaces as a
RetrievalError and the caller decides whether to retry the whole turn.
An empty result set is a normal outcome ("no knowledge base match").
"""
from __future__ import annotations

import time
from typing import Literal, Optional, Sequence

from langsmith import traceable
from loguru import logger
from pydantic import BaseModel

from ragcore.errors import ConfigurationError, RetrievalError
from ragcore.providers.errors import normalize_error
from ragcore.retrieval.interfaces import (
    EmbeddingService,
    KeywordSearchService,
    NearestNeighborService,
    RetrievalLogEntry,
    RetrievalLogSink,
)
from ragcore.schemas import ContextChunk, RetrievalResult, RetrievedSource, SearchHit

Strategy = Literal["semantic", "keyword", "hybrid"]

RRF_K = 60


class RetrieveOptions(BaseModel):
    max_chunks: Optional[int] = None
    include_metadata: bool = False
    strategy: Optional[Strategy] = None


def rrf_fuse(
    dense: Sequence[SearchHit],
    sparse: Sequence[SearchHit],
    top_k: int,
    dense_weight: float = 0.7,
    sparse_weight: float = 0.3,
) -> list[SearchHit]:
    """
    Reciprocal Rank Fusion: score = sum(weight / (rank + 60)).

    Robust to the scale mismatch between cosine and BM25 scores.
    """
    scores: dict[str, float] = {}
    hits: dict[str, SearchHit] = {}
    for weight, ranked in ((dense_weight, dense), (sparse_weight, sparse)):
        for rank, hit in enumerate(ranked):
            scores[hit.id] = scores.get(hit.id, 0.0) + weight / (rank + RRF_K)
            hits.setdefault(hit.id, hit)

    fused = sorted(scores.items(), key=lambda x: x[1], reverse=True)[:top_k]
    return [hits[hid].model_copy(update={"score": score}) for hid, score in fused]


def dedupe_sources(chunks: Sequence[ContextChunk]) -> list[RetrievedSource]:
    """One source per document, keeping the excerpt of its best-scoring chunk."""
    best: dict[str, ContextChunk] = {}
    for chunk in chunks:
        current = best.get(chunk.document_id)
        if current is None or chunk.score > current.score:
            best[chunk.document_id] = chunk

    sources = [
        RetrievedSource(
            id=c.id,
            document_id=c.document_id,
            relevance_score=c.score,
            excerpt=c.text,
        )
        for c in best.values()
    ]
    sources.sort(key=lambda s: s.relevance_score, reverse=True)
    return sources


class LoguruRetrievalLog:
    """Default analytics sink: one structured log line per retrieval."""

    async def record(self, entry: RetrievalLogEntry) -> None:
        logger.bind(analytics="retrieval").info(
            f"[RetrievalLog] tenant={entry.tenant_id} strategy={entry.strategy} "
            f"results={entry.results_count} latency={entry.latency_ms:.1f}ms "
            f"history={entry.history_size} query={entry.query[:80]!r}"
        )


class ContextRetriever:
    """
    Stateless per query -- call retrieve_context() as often as you like
    from the same instance.
    """

    def __init__(
        self,
        embedder: EmbeddingService,
        search: NearestNeighborService,
        log_sink: Optional[RetrievalLogSink] = None,
        default_max_chunks: int = 5,
        default_strategy: Strategy = "semantic",
        dense_weight: float = 0.7,
        sparse_weight: float = 0.3,
    ) -> None:
        self.embedder = embedder
        self.search = search
        self.log_sink = log_sink if log_sink is not None else LoguruRetrievalLog()
        self.default_max_chunks = default_max_chunks
        self.default_strategy = default_strategy
        self.dense_weight = dense_weight
        self.sparse_weight = sparse_weight

    @traceable(name="retrieve_context", run_type="retriever")
    async def retrieve_context(
        self,
        query: str,
        tenant_id: str,
        conversation_history: Optional[Sequence[str]] = None,
        options: Optional[RetrieveOptions] = None,
    ) -> RetrievalResult:
        """
        Retrieve ranked context for `query` within `tenant_id`'s corpus.

        Raises:
            RetrievalError: embedding or search failed (no partial results).
            ConfigurationError: keyword/hybrid requested without keyword search.
        """
        opts = options or RetrieveOptions()
        strategy: Strategy = opts.strategy or self.default_strategy
        top_k = opts.max_chunks or self.default_max_chunks
        history = conversation_history or []

        if not query or not query.strip():
            logger.info("[Retriever] Empty query -> empty result")
            return RetrievalResult(strategy=strategy)

        logger.debug(f"[Retriever] {strategy} | tenant={tenant_id} | top_k={top_k} | query={query[:80]!r}")
        start = time.perf_counter()

        if strategy == "semantic":
            hits = await self._dense(query, tenant_id, top_k)
        elif strategy == "keyword":
            hits = await self._keyword(query, tenant_id, top_k)
        else:
            candidates = max(top_k * 5, RRF_K)
            dense = await self._dense(query, tenant_id, candidates)
            sparse = await self._keyword(query, tenant_id, candidates)
            hits = rrf_fuse(dense, sparse, top_k, self.dense_weight, self.sparse_weight)

        chunks = [self._to_chunk(hit, opts.include_metadata) for hit in hits[:top_k]]
        result = RetrievalResult(
            chunks=chunks,
            sources=dedupe_sources(chunks),
            total_score=sum(c.score for c in chunks),
            strategy=strategy,
        )
        latency_ms = (time.perf_counter() - start) * 1000

        logger.info(
            f"[Retriever] Retrieved {len(chunks)} chunk(s) from {len(result.sources)} document(s) "
            f"in {latency_ms:.0f}ms"
            + (f" (top score: {chunks[0].score:.4f})" if chunks else " -- no knowledge base match")
        )

        await self._log(
            RetrievalLogEntry(
                tenant_id=tenant_id,
                query=query,
                strategy=strategy,
                results_count=len(chunks),
                latency_ms=latency_ms,
                history_size=len(history),
            )
        )
        return result

    # --- Search paths -----------------------------------------------------------

    async def _dense(self, query: str, tenant_id: str, top_k: int) -> list[SearchHit]:
        try:
            vector = await self.embedder.embed(query, tenant_id)
        except Exception as exc:
            raise RetrievalError(
                f"Embedding failed: {exc}",
                stage="embedding",
                retryable=normalize_error(exc).retryable,
            ) from exc

        try:
            return list(await self.search.search(tenant_id, vector, top_k))
        except Exception as exc:
            raise RetrievalError(
                f"Nearest-neighbour search failed: {exc}",
                stage="search",
                retryable=normalize_error(exc).retryable,
            ) from exc

    async def _keyword(self, query: str, tenant_id: str, top_k: int) -> list[SearchHit]:
        if not isinstance(self.search, KeywordSearchService):
            raise ConfigurationError(
                f"{type(self.search).__name__} does not support keyword search"
            )
        try:
            return list(await self.search.search_keyword(tenant_id, query, top_k))
        except Exception as exc:
            raise RetrievalError(
                f"Keyword search failed: {exc}",
                stage="search",
                retryable=normalize_error(exc).retryable,
            ) from exc

    # --- Mapping & logging ------------------------------------------------------

    @staticmethod
    def _to_chunk(hit: SearchHit, include_metadata: bool) -> ContextChunk:
        payload = hit.payload or {}
        return ContextChunk(
            id=hit.id,
            text=str(payload.get("content") or payload.get("text") or ""),
            score=hit.score,
            document_id=str(payload.get("document_id") or payload.get("documentId") or hit.id),
            metadata=dict(payload) if include_metadata else None,
        )

    async def _log(self, entry: RetrievalLogEntry) -> None:
        """Analytics write; failures are logged and never fail the retrieval."""
        try:
            await self.log_sink.record(entry)
        except Exception as exc:
            logger.warning(f"[Retriever] Retrieval log write failed (ignored): {exc}")
