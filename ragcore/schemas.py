"""
Core Pydantic schemas for the RAG context core.

Chunker, context manager, retriever, confidence aggregator and provider
adapters all exchange these models, so the assembled payload stays
type-checked from raw document text to the final provider response.
"""
from __future__ import annotations

import hashlib
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

from ragcore.providers.pricing import cost_usd


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Enumerations ------------------------------------------------------------

class StructuralType(str, Enum):
    PARAGRAPH = "paragraph"
    HEADING = "heading"
    LIST = "list"
    TABLE = "table"
    CODE = "code"


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


# --- Chunking ----------------------------------------------------------------

class Chunk(BaseModel):
    """
    A bounded span of document text prepared for embedding.

    `text` is always exactly `source[start_offset:end_offset]`, so offsets
    can be used to reconstruct the document and to measure overlap.
    """

    model_config = ConfigDict(frozen=True)

    chunk_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    document_id: str
    chunk_index: int

    text: str
    start_offset: int
    end_offset: int
    token_count: int
    overlap_with_previous: int = 0       # Characters shared with the previous chunk
    structural_type: StructuralType = StructuralType.PARAGRAPH

    # Oversize splitting provenance
    is_sub_chunk: bool = False
    parent_index: Optional[int] = None

    metadata: dict[str, Any] = Field(default_factory=dict)


# --- Conversation context ----------------------------------------------------

class MessageMetadata(BaseModel):
    """Explicit optional fields instead of a free-form metadata dict."""

    kind: Literal["system_prompt", "summary", "message"] = "message"
    user_id: Optional[str] = None
    model: Optional[str] = None
    provider: Optional[str] = None
    original_message_count: Optional[int] = None


class ContextMessage(BaseModel):
    id: str = Field(default_factory=lambda: f"msg_{uuid.uuid4().hex}")
    role: Role
    content: str
    token_count: int = 0
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: MessageMetadata = Field(default_factory=MessageMetadata)


class ConversationContext(BaseModel):
    """
    Rolling window of prior turns for one conversation of one tenant.

    total_tokens always equals the sum of message token counts; callers that
    mutate `messages` directly must call recompute_total().
    """

    conversation_id: str
    tenant_id: str
    messages: list[ContextMessage] = Field(default_factory=list)
    total_tokens: int = 0
    max_context_tokens: int
    system_prompt: str = ""
    last_activity: datetime = Field(default_factory=utcnow)
    loaded_at: datetime = Field(default_factory=utcnow)

    def recompute_total(self) -> int:
        self.total_tokens = sum(m.token_count for m in self.messages)
        return self.total_tokens

    @property
    def system_messages(self) -> list[ContextMessage]:
        return [m for m in self.messages if m.role == Role.SYSTEM]


# --- Retrieval ----------------------------------------------------------------

class SearchHit(BaseModel):
    """A single nearest-neighbour result as returned by the search service."""

    id: str
    score: float
    payload: dict[str, Any] = Field(default_factory=dict)


class ContextChunk(BaseModel):
    id: str
    text: str
    score: float
    document_id: str
    metadata: Optional[dict[str, Any]] = None


class RetrievedSource(BaseModel):
    """Provenance record: one per document, best-scoring excerpt kept."""

    id: str
    document_id: str
    relevance_score: float
    excerpt: str


class RetrievalResult(BaseModel):
    chunks: list[ContextChunk] = Field(default_factory=list)
    sources: list[RetrievedSource] = Field(default_factory=list)
    total_score: float = 0.0
    strategy: str = "semantic"

    @property
    def has_knowledge_base(self) -> bool:
        """False means "no knowledge base match": answer from general knowledge."""
        return len(self.chunks) > 0


class SourceScore(BaseModel):
    id: str
    score: float


class ConfidenceScore(BaseModel):
    overall: float = 0.0
    sources: list[SourceScore] = Field(default_factory=list)

    @property
    def per_source(self) -> dict[str, float]:
        return {s.id: s.score for s in self.sources}


# --- Provider envelopes -------------------------------------------------------

class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def of(cls, prompt_tokens: int, completion_tokens: int) -> "Usage":
        return cls(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )


class ProviderRequest(BaseModel):
    conversation_id: str
    tenant_id: str
    user_id: Optional[str] = None
    message: str
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    context: list[ContextMessage] = Field(default_factory=list)


class ProviderResponse(BaseModel):
    id: str
    content: str
    model: str
    provider: str
    usage: Usage
    finish_reason: str = "stop"
    processing_ms: float = 0.0
    created_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def estimated_cost_usd(self) -> float:
        return cost_usd(self.model, self.usage.prompt_tokens, self.usage.completion_tokens)


class StreamChunk(BaseModel):
    """One streaming increment: `content` is cumulative, `delta` is new text only."""

    id: str
    content: str
    delta: str
    finish_reason: Optional[str] = None
    usage: Optional[Usage] = None


class ModerationCategories(BaseModel):
    hate: bool = False
    hate_threatening: bool = False
    harassment: bool = False
    harassment_threatening: bool = False
    self_harm: bool = False
    self_harm_intent: bool = False
    self_harm_instructions: bool = False
    sexual: bool = False
    sexual_minors: bool = False
    violence: bool = False
    violence_graphic: bool = False


class ModerationResult(BaseModel):
    flagged: bool = False
    categories: ModerationCategories = Field(default_factory=ModerationCategories)
    scores: dict[str, float] = Field(default_factory=dict)


class ProviderCredentials(BaseModel):
    tenant_id: str
    provider: Literal["openai", "anthropic"]
    api_key: str
    organization_id: Optional[str] = None
    base_url: Optional[str] = None

    @property
    def fingerprint(self) -> str:
        """Stable, non-reversible identity of the credential for client memoisation."""
        material = f"{self.api_key}|{self.organization_id or ''}|{self.base_url or ''}"
        return hashlib.sha256(material.encode("utf-8")).hexdigest()[:16]
