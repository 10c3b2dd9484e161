"""
RAG Serving Pipeline
---------------------
Orchestrates one conversational turn:

    user query
        |
        v
    Provider moderation (when config.content_filtering)
        |
        v
    ContextWindowManager.get_context (rolling, token-bounded history)
        |
        v
    ContextRetriever (embed + nearest-neighbour search -> sources)
        |
        v
    ConfidenceAggregator (mean relevance of the sources)
        |
        v
    Provider (grounded system prompt + history + user message)
        |
        v
    ContextWindowManager.add_message (user turn, assistant turn)
        |
        v
    QueryResult (answer + sources + confidence + timings + token cost)

query() returns a finished QueryResult.  stream() is an async generator of
tagged events, SourcesEvent, ContentEvent..., then CompleteEvent or
ErrorEvent; closing it early (aclose()) closes the provider stream.

Retrieval and provider failures never escape as exceptions: they become a
QueryResult / ErrorEvent carrying `error_code` and a fixed user-facing
answer, distinct from the "no knowledge base match" path.  A turn that was
generated but could not be saved keeps its answer and is tagged
PERSISTENCE_ERROR.
"""
from __future__ import annotations

import time
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Optional, Union

from langsmith import traceable
from loguru import logger

from ragcore.config import ContextConfig
from ragcore.context.manager import ContextWindowManager
from ragcore.errors import ProviderError, RetrievalError
from ragcore.providers.base import BaseProvider
from ragcore.providers.pricing import cost_usd
from ragcore.providers.registry import credentials_from_env, get_provider
from ragcore.retrieval.retriever import ContextRetriever, RetrieveOptions
from ragcore.schemas import (
    ConfidenceScore,
    ContextMessage,
    ConversationContext,
    MessageMetadata,
    ProviderCredentials,
    ProviderRequest,
    RetrievalResult,
    RetrievedSource,
    Role,
    Usage,
)
from ragcore.scoring.confidence import ConfidenceAggregator
from ragcore.serving.prompts import (
    FAILURE_ANSWER,
    MODERATION_REFUSAL,
    NOT_SAVED_NOTICE,
    build_system_prompt,
)

RETRIEVAL_ERROR_CODE = "RETRIEVAL_ERROR"
PERSISTENCE_ERROR_CODE = "PERSISTENCE_ERROR"

CredentialsLookup = Callable[[str, str], ProviderCredentials]
ProviderFactory = Callable[[str], BaseProvider]


# ---------------------------------------------------------------------------
# Result schema
# ---------------------------------------------------------------------------

@dataclass
class QueryResult:
    """
    Full output from a single RAG turn.

    Timing fields are in milliseconds.  `error_code` is set when retrieval
    or generation failed, and `answer` then holds FAILURE_ANSWER.  The one
    exception is PERSISTENCE_ERROR: the answer is real but the turn is
    missing from the conversation history.
    """

    query: str
    answer: str
    sources: list[RetrievedSource] = field(default_factory=list)
    citations: list[dict] = field(default_factory=list)
    confidence: ConfidenceScore = field(default_factory=ConfidenceScore)
    has_knowledge_base: bool = False
    strategy: str = "semantic"

    # Moderation / failure
    blocked: bool = False
    error_code: Optional[str] = None
    retryable: bool = False

    # Latency breakdown
    retrieval_ms: float = 0.0
    generation_ms: float = 0.0

    # Token stats
    model: str = ""
    provider: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_ms(self) -> float:
        return self.retrieval_ms + self.generation_ms

    @property
    def ok(self) -> bool:
        return self.error_code is None and not self.blocked

    @property
    def estimated_cost_usd(self) -> float:
        return cost_usd(self.model, self.prompt_tokens, self.completion_tokens)

    def to_dict(self) -> dict:
        return {
            "query": self.query,
            "answer": self.answer,
            "sources": [s.model_dump() for s in self.sources],
            "citations": self.citations,
            "confidence": self.confidence.model_dump(),
            "has_knowledge_base": self.has_knowledge_base,
            "strategy": self.strategy,
            "blocked": self.blocked,
            "error_code": self.error_code,
            "retryable": self.retryable,
            "latency_ms": {
                "retrieval": round(self.retrieval_ms, 1),
                "generation": round(self.generation_ms, 1),
                "total": round(self.total_ms, 1),
            },
            "tokens": {
                "prompt": self.prompt_tokens,
                "completion": self.completion_tokens,
                "total": self.prompt_tokens + self.completion_tokens,
            },
            "model": self.model,
            "provider": self.provider,
            "estimated_cost_usd": round(self.estimated_cost_usd, 6),
        }


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------

@dataclass
class SourcesEvent:
    sources: list[RetrievedSource]
    type: str = "sources"


@dataclass
class ContentEvent:
    delta: str
    content: str
    type: str = "content"


@dataclass
class CompleteEvent:
    result: QueryResult
    type: str = "complete"


@dataclass
class ErrorEvent:
    code: str
    message: str
    retryable: bool = False
    type: str = "error"


StreamEvent = Union[SourcesEvent, ContentEvent, CompleteEvent, ErrorEvent]


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

@dataclass
class _Turn:
    """Everything assembled before the provider call."""

    context: ConversationContext
    retrieval: RetrievalResult
    confidence: ConfidenceScore
    request: ProviderRequest
    citations: list[dict]
    retrieval_ms: float


class RAGPipeline:
    """
    End-to-end conversational RAG turn.

    Usage:
        pipeline = RAGPipeline(manager, retriever)
        result = await pipeline.query("What is our refund policy?", "conv-1", "tenant-a", config)
        print(result.answer)

        async for event in pipeline.stream("...", "conv-1", "tenant-a", config):
            ...
    """

    def __init__(
        self,
        context_manager: ContextWindowManager,
        retriever: ContextRetriever,
        aggregator: Optional[ConfidenceAggregator] = None,
        credentials: CredentialsLookup = credentials_from_env,
        provider_factory: ProviderFactory = get_provider,
        max_sources: int = 5,
    ) -> None:
        self.context_manager = context_manager
        self.retriever = retriever
        self.aggregator = aggregator or ConfidenceAggregator()
        self.credentials = credentials
        self.provider_factory = provider_factory
        self.max_sources = max_sources

    @traceable(name="rag_query", run_type="chain")
    async def query(
        self,
        user_query: str,
        conversation_id: str,
        tenant_id: str,
        config: ContextConfig,
        user_id: Optional[str] = None,
        options: Optional[RetrieveOptions] = None,
    ) -> QueryResult:
        """Run one full turn and return the finished result."""
        logger.info(f"[RAGPipeline] Query {conversation_id}:{tenant_id} | {user_query[:100]!r}")
        provider = self.provider_factory(config.provider)
        credentials = self.credentials(tenant_id, config.provider)

        if await self._flagged(provider, user_query, credentials, tenant_id, config):
            return QueryResult(query=user_query, answer=MODERATION_REFUSAL, blocked=True)

        try:
            turn = await self._prepare(user_query, conversation_id, tenant_id, config, user_id, options)
        except RetrievalError as err:
            return self._failure(user_query, RETRIEVAL_ERROR_CODE, err.retryable)

        t0 = time.perf_counter()
        try:
            response = await provider.generate_response(turn.request, credentials, config)
        except ProviderError as err:
            return self._failure(user_query, err.code.value, err.retryable, turn)
        generation_ms = (time.perf_counter() - t0) * 1000

        saved = await self._remember(
            conversation_id, tenant_id, config, user_query, user_id,
            response.content, response.model, provider.name,
        )
        result = self._result(
            user_query, turn, response.content, response.model, provider.name,
            response.usage, generation_ms,
        )
        if not saved:
            result.error_code = PERSISTENCE_ERROR_CODE
        logger.info(
            f"[RAGPipeline] Complete | retrieve={result.retrieval_ms:.0f}ms "
            f"generate={generation_ms:.0f}ms | tokens={response.usage.total_tokens} | "
            f"confidence={result.confidence.overall:.3f}"
        )
        return result

    async def stream(
        self,
        user_query: str,
        conversation_id: str,
        tenant_id: str,
        config: ContextConfig,
        user_id: Optional[str] = None,
        options: Optional[RetrieveOptions] = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Async generator of StreamEvent.  Sources come first, then content
        deltas, then exactly one CompleteEvent or ErrorEvent.
        """
        provider = self.provider_factory(config.provider)
        credentials = self.credentials(tenant_id, config.provider)

        if await self._flagged(provider, user_query, credentials, tenant_id, config):
            yield CompleteEvent(QueryResult(query=user_query, answer=MODERATION_REFUSAL, blocked=True))
            return

        try:
            turn = await self._prepare(user_query, conversation_id, tenant_id, config, user_id, options)
        except RetrievalError as err:
            yield ErrorEvent(RETRIEVAL_ERROR_CODE, FAILURE_ANSWER, err.retryable)
            return

        yield SourcesEvent(turn.retrieval.sources[: self.max_sources])

        t0 = time.perf_counter()
        final = None
        try:
            chunks = provider.generate_streaming_response(turn.request, credentials, config)
            async with aclosing(chunks):
                async for chunk in chunks:
                    if chunk.delta:
                        yield ContentEvent(delta=chunk.delta, content=chunk.content)
                    if chunk.finish_reason is not None:
                        final = chunk
        except ProviderError as err:
            yield ErrorEvent(err.code.value, FAILURE_ANSWER, err.retryable)
            return
        generation_ms = (time.perf_counter() - t0) * 1000

        content = final.content if final else ""
        model = turn.request.model or config.model
        saved = await self._remember(
            conversation_id, tenant_id, config, user_query, user_id, content, model, provider.name,
        )
        if not saved:
            yield ErrorEvent(PERSISTENCE_ERROR_CODE, NOT_SAVED_NOTICE)
            return
        usage = final.usage if final and final.usage else Usage()
        yield CompleteEvent(
            self._result(user_query, turn, content, model, provider.name, usage, generation_ms)
        )

    # --- Steps -----------------------------------------------------------------

    async def _flagged(
        self,
        provider: BaseProvider,
        text: str,
        credentials: ProviderCredentials,
        tenant_id: str,
        config: ContextConfig,
    ) -> bool:
        if not config.content_filtering:
            return False
        moderation = await provider.moderate_content(text, credentials, tenant_id)
        if moderation.flagged:
            logger.warning(f"[RAGPipeline] Input flagged by moderation for tenant {tenant_id}")
        return moderation.flagged

    async def _prepare(
        self,
        user_query: str,
        conversation_id: str,
        tenant_id: str,
        config: ContextConfig,
        user_id: Optional[str],
        options: Optional[RetrieveOptions],
    ) -> _Turn:
        context = await self.context_manager.get_context(conversation_id, tenant_id, config)
        history = [m.content for m in context.messages if m.role != Role.SYSTEM]

        t0 = time.perf_counter()
        opts = options or RetrieveOptions(max_chunks=self.max_sources)
        retrieval = await self.retriever.retrieve_context(user_query, tenant_id, history, opts)
        retrieval_ms = (time.perf_counter() - t0) * 1000

        sources = retrieval.sources[: self.max_sources]
        confidence = self.aggregator.score(sources)

        base_prompt = context.system_messages[-1].content if context.system_messages else config.system_prompt
        system_prompt, citations = build_system_prompt(base_prompt, retrieval.chunks)
        prompt_message = ContextMessage(
            role=Role.SYSTEM,
            content=system_prompt,
            metadata=MessageMetadata(kind="system_prompt"),
        )
        request = ProviderRequest(
            conversation_id=conversation_id,
            tenant_id=tenant_id,
            user_id=user_id,
            message=user_query,
            model=config.model,
            context=[*context.messages, prompt_message],
        )
        return _Turn(context, retrieval, confidence, request, citations, retrieval_ms)

    async def _remember(
        self,
        conversation_id: str,
        tenant_id: str,
        config: ContextConfig,
        user_query: str,
        user_id: Optional[str],
        answer: str,
        model: str,
        provider_name: str,
    ) -> bool:
        """Persist the user turn and the assistant turn, in that order.  False if the store failed."""
        try:
            await self.context_manager.add_message(
                conversation_id,
                tenant_id,
                ContextMessage(role=Role.USER, content=user_query, metadata=MessageMetadata(user_id=user_id)),
                config,
            )
            await self.context_manager.add_message(
                conversation_id,
                tenant_id,
                ContextMessage(
                    role=Role.ASSISTANT,
                    content=answer,
                    metadata=MessageMetadata(model=model, provider=provider_name),
                ),
                config,
            )
        except Exception as exc:
            logger.error(f"[RAGPipeline] Could not save turn for {conversation_id}:{tenant_id}: {exc}")
            return False
        return True

    def _result(
        self,
        user_query: str,
        turn: _Turn,
        answer: str,
        model: str,
        provider_name: str,
        usage: Usage,
        generation_ms: float,
    ) -> QueryResult:
        return QueryResult(
            query=user_query,
            answer=answer,
            sources=turn.retrieval.sources[: self.max_sources],
            citations=turn.citations,
            confidence=turn.confidence,
            has_knowledge_base=turn.retrieval.has_knowledge_base,
            strategy=turn.retrieval.strategy,
            retrieval_ms=turn.retrieval_ms,
            generation_ms=generation_ms,
            model=model,
            provider=provider_name,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
        )

    @staticmethod
    def _failure(
        user_query: str,
        code: str,
        retryable: bool,
        turn: Optional[_Turn] = None,
    ) -> QueryResult:
        logger.error(f"[RAGPipeline] Turn failed with {code} (retryable={retryable})")
        return QueryResult(
            query=user_query,
            answer=FAILURE_ANSWER,
            sources=turn.retrieval.sources if turn else [],
            has_knowledge_base=turn.retrieval.has_knowledge_base if turn else False,
            error_code=code,
            retryable=retryable,
            retrieval_ms=turn.retrieval_ms if turn else 0.0,
        )
