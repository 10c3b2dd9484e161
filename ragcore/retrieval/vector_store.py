"""
FAISS Vector Store
-------------------
Per-tenant dual index implementing NearestNeighborService and
KeywordSearchService:

  - faiss.IndexFlatIP for dense search (inner product == cosine similarity
    after L2 normalisation)
  - rank_bm25.BM25Okapi for keyword search
  - a parallel list of chunk payloads (same ordering as FAISS row ids)

Tenants never share an index, so a search can only ever return the
calling tenant's chunks.

Persistence (one directory per tenant):
  <index_dir>/tenants/<slug>/faiss.index
  <index_dir>/tenants/<slug>/records.json
  <index_dir>/tenants/<slug>/bm25_corpus.json
  <index_dir>/manifest.json

<slug> is derived from the tenant id (safe characters plus a hash), never
taken from it verbatim, so no tenant id can address a path outside
<index_dir>/tenants.
"""
from __future__ import annotations

import hashlib
import re
import threading
from pathlib import Path
from typing import Any, Optional, Sequence

import faiss
import numpy as np
from loguru import logger
from rank_bm25 import BM25Okapi

from ragcore.schemas import Chunk, SearchHit
from ragcore.utils.helpers import ensure_dirs, load_json, save_json

INDEX_DIR = Path("data/index")


def tenant_dirname(tenant_id: str) -> str:
    """Filesystem-safe, collision-resistant directory name for a tenant."""
    readable = re.sub(r"[^A-Za-z0-9_-]+", "_", tenant_id)[:40].strip("_") or "tenant"
    digest = hashlib.sha256(tenant_id.encode("utf-8")).hexdigest()[:12]
    return f"{readable}-{digest}"


def _bm25_tokens(text: str) -> list[str]:
    """Lowercase, strip punctuation, split on whitespace, drop 1-char tokens."""
    normalised = re.sub(r"[^a-z0-9\s]", " ", text.lower())
    return [t for t in normalised.split() if len(t) > 1]


def chunk_payload(chunk: Chunk) -> dict[str, Any]:
    return {
        "content": chunk.text,
        "document_id": chunk.document_id,
        "chunk_index": chunk.chunk_index,
        "start_offset": chunk.start_offset,
        "end_offset": chunk.end_offset,
        "structural_type": chunk.structural_type.value,
        **chunk.metadata,
    }


class _TenantIndex:
    def __init__(self, dimensions: int) -> None:
        self.faiss_index = faiss.IndexFlatIP(dimensions)
        self.ids: list[str] = []
        self.payloads: list[dict[str, Any]] = []
        self.corpus_tokens: list[list[str]] = []
        self.bm25: Optional[BM25Okapi] = None

    def rebuild_bm25(self) -> None:
        self.bm25 = BM25Okapi(self.corpus_tokens) if self.corpus_tokens else None


class FAISSVectorStore:
    """
    Usage:
        store = FAISSVectorStore(dimensions=1536)
        store.add_chunks("tenant-a", chunks, embeddings)
        hits = await store.search("tenant-a", query_vec, top_k=5)
        store.save()
    """

    def __init__(self, dimensions: int = 1536) -> None:
        self.dimensions = dimensions
        self._tenants: dict[str, _TenantIndex] = {}
        self._lock = threading.Lock()

    # --- Build ----------------------------------------------------------------

    def add_chunks(self, tenant_id: str, chunks: Sequence[Chunk], embeddings: np.ndarray) -> int:
        """
        Append chunks and their pre-computed, L2-normalised embeddings to
        the tenant's index.  Returns the tenant's new vector count.
        """
        if len(chunks) != len(embeddings):
            raise ValueError(f"Mismatch: {len(chunks)} chunks vs {len(embeddings)} embeddings")
        if len(chunks) == 0:
            return self.size(tenant_id)

        matrix = np.ascontiguousarray(embeddings, dtype=np.float32)
        if matrix.ndim != 2 or matrix.shape[1] != self.dimensions:
            raise ValueError(f"Expected embeddings of shape (n, {self.dimensions}), got {matrix.shape}")

        with self._lock:
            index = self._tenants.setdefault(tenant_id, _TenantIndex(self.dimensions))
            index.faiss_index.add(matrix)
            for chunk in chunks:
                index.ids.append(chunk.chunk_id)
                index.payloads.append(chunk_payload(chunk))
                index.corpus_tokens.append(_bm25_tokens(chunk.text))
            index.rebuild_bm25()
            total = index.faiss_index.ntotal

        logger.info(f"[VectorStore] {tenant_id}: +{len(chunks)} chunks | {total} vectors total")
        return total

    def size(self, tenant_id: str) -> int:
        index = self._tenants.get(tenant_id)
        return index.faiss_index.ntotal if index else 0

    def tenants(self) -> list[str]:
        return sorted(self._tenants)

    # --- Search ---------------------------------------------------------------

    async def search(self, tenant_id: str, vector: Sequence[float], top_k: int) -> list[SearchHit]:
        """Dense search; hits sorted by cosine score, best first."""
        index = self._tenants.get(tenant_id)
        if index is None or index.faiss_index.ntotal == 0 or top_k <= 0:
            return []

        qv = np.ascontiguousarray(np.asarray(vector, dtype=np.float32).reshape(1, -1))
        scores, rows = index.faiss_index.search(qv, min(top_k, index.faiss_index.ntotal))
        return [
            SearchHit(id=index.ids[row], score=float(score), payload=dict(index.payloads[row]))
            for score, row in zip(scores[0], rows[0])
            if row >= 0
        ]

    async def search_keyword(self, tenant_id: str, query: str, top_k: int) -> list[SearchHit]:
        """BM25 search; documents with a zero score are omitted."""
        index = self._tenants.get(tenant_id)
        if index is None or index.bm25 is None or top_k <= 0:
            return []

        scores = index.bm25.get_scores(_bm25_tokens(query))
        top_rows = np.argsort(scores)[::-1][:top_k]
        return [
            SearchHit(id=index.ids[row], score=float(scores[row]), payload=dict(index.payloads[row]))
            for row in top_rows
            if scores[row] > 0
        ]

    # --- Persistence ----------------------------------------------------------

    def save(self, index_dir: Path = INDEX_DIR) -> None:
        index_dir = Path(index_dir)
        ensure_dirs(index_dir)
        with self._lock:
            for tenant_id, index in self._tenants.items():
                tenant_dir = index_dir / "tenants" / tenant_dirname(tenant_id)
                ensure_dirs(tenant_dir)
                faiss.write_index(index.faiss_index, str(tenant_dir / "faiss.index"))
                save_json(
                    [{"id": i, "payload": p} for i, p in zip(index.ids, index.payloads)],
                    tenant_dir / "records.json",
                )
                save_json(index.corpus_tokens, tenant_dir / "bm25_corpus.json")

            save_json(
                {
                    "dimensions": self.dimensions,
                    "tenants": {t: idx.faiss_index.ntotal for t, idx in self._tenants.items()},
                },
                index_dir / "manifest.json",
            )
        logger.info(f"[VectorStore] Saved {len(self._tenants)} tenant index(es) -> {index_dir}")

    @classmethod
    def load(cls, index_dir: Path = INDEX_DIR) -> "FAISSVectorStore":
        index_dir = Path(index_dir)
        manifest = load_json(index_dir / "manifest.json")
        store = cls(dimensions=int(manifest["dimensions"]))

        for tenant_id in manifest.get("tenants", {}):
            tenant_dir = index_dir / "tenants" / tenant_dirname(tenant_id)
            index = _TenantIndex(store.dimensions)
            index.faiss_index = faiss.read_index(str(tenant_dir / "faiss.index"))
            records = load_json(tenant_dir / "records.json")
            index.ids = [r["id"] for r in records]
            index.payloads = [r["payload"] for r in records]
            index.corpus_tokens = load_json(tenant_dir / "bm25_corpus.json")
            index.rebuild_bm25()
            store._tenants[tenant_id] = index

        logger.info(
            f"[VectorStore] Loaded {len(store._tenants)} tenant index(es) from {index_dir}"
        )
        return store
