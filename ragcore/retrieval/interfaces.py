"""
Collaborator interfaces consumed by the retriever.

The embedding model and the nearest-neighbour engine are black boxes; any
object with these async methods can be plugged in.
"""
from __future__ import annotations

from datetime import datetime
from typing import Protocol, Sequence, runtime_checkable

from pydantic import BaseModel, Field

from ragcore.schemas import SearchHit, utcnow


class EmbeddingService(Protocol):
    async def embed(self, text: str, tenant_id: str) -> list[float]:
        ...


class NearestNeighborService(Protocol):
    async def search(self, tenant_id: str, vector: Sequence[float], top_k: int) -> list[SearchHit]:
        """Hits ordered by score, best first."""
        ...


@runtime_checkable
class KeywordSearchService(Protocol):
    async def search_keyword(self, tenant_id: str, query: str, top_k: int) -> list[SearchHit]:
        ...


class RetrievalLogEntry(BaseModel):
    tenant_id: str
    query: str
    strategy: str
    results_count: int
    latency_ms: float
    history_size: int
    created_at: datetime = Field(default_factory=utcnow)


class RetrievalLogSink(Protocol):
    async def record(self, entry: RetrievalLogEntry) -> None:
        ...
