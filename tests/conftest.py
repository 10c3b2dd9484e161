"""Shared fakes for unit and integration tests."""
from __future__ import annotations

import hashlib
import random
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Optional, Sequence

import pytest

from ragcore.config import ContextConfig, ProviderSettings
from ragcore.context.store import StoredMessage
from ragcore.providers.base import BaseProvider, Completion, PreparedRequest
from ragcore.retrieval.interfaces import RetrievalLogEntry
from ragcore.schemas import (
    ModerationResult,
    ProviderCredentials,
    Role,
    SearchHit,
    StreamChunk,
    Usage,
)

BASE_TIME = datetime(2025, 1, 1, tzinfo=timezone.utc)

_WORDS = (
    "retrieval context window token budget tenant document embedding chunk "
    "overlap sentence paragraph provider stream cache eviction latency score "
    "source citation summary message history answer query model vector"
).split()


def make_document(target_chars: int = 10_000, seed: int = 7) -> str:
    """Deterministic prose: sentences of 40-120 chars, a paragraph break every ~6 sentences."""
    rng = random.Random(seed)
    parts: list[str] = []
    length = 0
    sentence_no = 0
    while length < target_chars:
        goal = rng.randint(40, 120)
        words = [rng.choice(_WORDS).capitalize()]
        while len(" ".join(words)) < goal - 1:
            words.append(rng.choice(_WORDS))
        sentence = " ".join(words) + rng.choice([".", ".", ".", "!", "?"])
        sentence_no += 1
        sep = "\n\n" if sentence_no % 6 == 0 else " "
        parts.append(sentence + sep)
        length += len(sentence) + len(sep)
    return "".join(parts).rstrip()


def stored(n: int, prefix: str = "m", chars: int = 40) -> list[StoredMessage]:
    """n alternating user/assistant messages, one minute apart."""
    return [
        StoredMessage(
            id=f"{prefix}{i}",
            role=Role.USER if i % 2 == 0 else Role.ASSISTANT,
            content=f"{prefix}{i} " + "x" * chars,
            created_at=BASE_TIME + timedelta(minutes=i),
        )
        for i in range(n)
    ]


# --- Retrieval fakes ----------------------------------------------------------

class FakeEmbedder:
    def __init__(self, fail_with: Optional[BaseException] = None) -> None:
        self.fail_with = fail_with
        self.calls: list[tuple[str, str]] = []

    async def embed(self, text: str, tenant_id: str) -> list[float]:
        self.calls.append((text, tenant_id))
        if self.fail_with is not None:
            raise self.fail_with
        digest = hashlib.sha256(text.encode()).digest()
        return [b / 255 for b in digest[:8]]


class FakeSearch:
    """NearestNeighborService returning canned hits per tenant."""

    def __init__(
        self,
        hits: Optional[dict[str, list[SearchHit]]] = None,
        fail_with: Optional[BaseException] = None,
    ) -> None:
        self.hits = hits or {}
        self.fail_with = fail_with
        self.calls: list[tuple[str, int]] = []

    async def search(self, tenant_id: str, vector: Sequence[float], top_k: int) -> list[SearchHit]:
        self.calls.append((tenant_id, top_k))
        if self.fail_with is not None:
            raise self.fail_with
        return list(self.hits.get(tenant_id, []))[:top_k]


class FakeHybridSearch(FakeSearch):
    def __init__(self, hits=None, keyword_hits=None, fail_with=None) -> None:
        super().__init__(hits, fail_with)
        self.keyword_hits = keyword_hits or {}

    async def search_keyword(self, tenant_id: str, query: str, top_k: int) -> list[SearchHit]:
        return list(self.keyword_hits.get(tenant_id, []))[:top_k]


class RecordingLogSink:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.entries: list[RetrievalLogEntry] = []

    async def record(self, entry: RetrievalLogEntry) -> None:
        if self.fail:
            raise RuntimeError("analytics table unavailable")
        self.entries.append(entry)


def hit(hid: str, score: float, document_id: str, text: Optional[str] = None) -> SearchHit:
    return SearchHit(id=hid, score=score, payload={"content": text or f"text of {hid}", "document_id": document_id})


# --- Provider fakes -----------------------------------------------------------

class ScriptedProvider(BaseProvider):
    """
    BaseProvider whose backend calls follow a script: each entry is either
    an exception to raise or a value to return.  Streams yield `stream_parts`
    and may raise `stream_error` after `fail_after` parts.
    """

    name = "openai"

    def __init__(
        self,
        script: Optional[list[Any]] = None,
        stream_parts: Sequence[str] = ("Hello", " world"),
        stream_error: Optional[BaseException] = None,
        fail_after: int = 0,
        flagged: bool = False,
        settings: Optional[ProviderSettings] = None,
    ) -> None:
        super().__init__(settings or ProviderSettings(backoff_min_seconds=0, backoff_max_seconds=0))
        self.script = list(script or [])
        self.stream_parts = list(stream_parts)
        self.stream_error = stream_error
        self.fail_after = fail_after
        self.flagged = flagged
        self.models_called: list[str] = []
        self.prepared: list[PreparedRequest] = []
        self.stream_opened = 0
        self.stream_closed = 0

    def _make_client(self, credentials: ProviderCredentials) -> Any:
        return object()

    async def _complete(self, client: Any, prepared: PreparedRequest, model: str) -> Completion:
        self.models_called.append(model)
        self.prepared.append(prepared)
        step = self.script.pop(0) if self.script else "ok"
        if isinstance(step, BaseException):
            raise step
        return Completion(id="resp-1", content=f"answer from {model}", model=model, usage=Usage.of(10, 5))

    async def _stream(self, client: Any, prepared: PreparedRequest, model: str) -> AsyncIterator[StreamChunk]:
        self.models_called.append(model)
        self.prepared.append(prepared)
        self.stream_opened += 1
        try:
            step = self.script.pop(0) if self.script else "ok"
            if isinstance(step, BaseException):
                raise step
            content = ""
            for i, part in enumerate(self.stream_parts):
                if self.stream_error is not None and i == self.fail_after:
                    raise self.stream_error
                content += part
                yield StreamChunk(id="s-1", content=content, delta=part)
            yield StreamChunk(id="s-1", content=content, delta="", finish_reason="stop")
        finally:
            self.stream_closed += 1

    async def moderate_content(self, text: str, credentials: ProviderCredentials, tenant_id: str) -> ModerationResult:
        return ModerationResult(flagged=self.flagged)


# --- Fixtures -----------------------------------------------------------------

@pytest.fixture
def credentials() -> ProviderCredentials:
    return ProviderCredentials(tenant_id="tenant-a", provider="openai", api_key="sk-test-123456789")


@pytest.fixture
def context_config() -> ContextConfig:
    return ContextConfig(content_filtering=False)


@pytest.fixture
def document() -> str:
    return make_document()
