"""
OpenAI Embedding Service
-------------------------
Async wrapper around the OpenAI embeddings API that satisfies the
EmbeddingService protocol:

  - Batching for index builds (embed_texts)
  - L2-normalised vectors, so cosine similarity == inner product
  - LangSmith run tracing
  - Token usage accounting

The SDK is built with max_retries=0: retrieval has no built-in retry, a
failed call surfaces to the retriever as-is.
"""
from __future__ import annotations

import time
from typing import Any, Optional

import numpy as np
from langsmith import traceable
from loguru import logger

MODEL = "text-embedding-3-small"
DIMENSIONS = 1536          # text-embedding-3-small native dimensions
BATCH_SIZE = 512           # keeps each request under ~1 MB
EMBEDDING_PRICE_PER_M = 0.020


def l2_normalise(matrix: np.ndarray) -> np.ndarray:
    matrix = np.asarray(matrix, dtype=np.float32)
    norms = np.linalg.norm(matrix, axis=-1, keepdims=True)
    norms = np.where(norms == 0, 1, norms)
    return (matrix / norms).astype(np.float32)


class OpenAIEmbeddingService:
    """
    Generates L2-normalised embeddings with text-embedding-3-small.

    Pass `client` to reuse an existing AsyncOpenAI instance (or a fake in
    tests); otherwise one is created from OPENAI_API_KEY on first use.
    """

    def __init__(
        self,
        model: str = MODEL,
        batch_size: int = BATCH_SIZE,
        timeout_seconds: float = 30.0,
        client: Optional[Any] = None,
    ) -> None:
        self.model = model
        self.batch_size = batch_size
        self.timeout_seconds = timeout_seconds
        self._client = client
        self.total_tokens_used: int = 0
        self.total_api_calls: int = 0

    @property
    def client(self) -> Any:
        if self._client is None:
            from openai import AsyncOpenAI  # lazy import keeps import graph clean
            self._client = AsyncOpenAI(timeout=self.timeout_seconds, max_retries=0)
        return self._client

    async def embed(self, text: str, tenant_id: str) -> list[float]:
        """Embed a single query.  tenant_id is accepted for interface parity."""
        matrix = await self.embed_texts([text])
        return matrix[0].tolist()

    @traceable(name="embed_texts", run_type="embedding")
    async def embed_texts(self, texts: list[str]) -> np.ndarray:
        """Embed a list of strings and return an (N, d) float32 array."""
        if not texts:
            return np.empty((0, DIMENSIONS), dtype=np.float32)

        all_embeddings: list[list[float]] = []
        for i in range(0, len(texts), self.batch_size):
            batch = texts[i: i + self.batch_size]
            embeddings, tokens = await self._embed_batch(batch)
            all_embeddings.extend(embeddings)
            self.total_tokens_used += tokens
            self.total_api_calls += 1

            logger.debug(
                f"[Embedder] Batch {i // self.batch_size + 1} | "
                f"{len(batch)} texts | {tokens} tokens | "
                f"Running total: {self.total_tokens_used} tokens"
            )

        return l2_normalise(np.array(all_embeddings, dtype=np.float32))

    async def _embed_batch(self, texts: list[str]) -> tuple[list[list[float]], int]:
        # Empty strings are rejected by the API
        safe_texts = [t if t.strip() else " " for t in texts]
        start = time.perf_counter()
        response = await self.client.embeddings.create(model=self.model, input=safe_texts)
        elapsed = time.perf_counter() - start

        embeddings = [item.embedding for item in sorted(response.data, key=lambda x: x.index)]
        tokens_used = response.usage.total_tokens if response.usage else 0
        logger.debug(f"[Embedder] API call: {len(texts)} texts, {tokens_used} tokens, {elapsed:.2f}s")
        return embeddings, tokens_used

    def usage_summary(self) -> dict:
        return {
            "model": self.model,
            "total_api_calls": self.total_api_calls,
            "total_tokens_used": self.total_tokens_used,
            "estimated_cost_usd": round(self.total_tokens_used / 1_000_000 * EMBEDDING_PRICE_PER_M, 6),
        }
