import asyncio

import pytest

from conftest import FakeEmbedder, FakeSearch, ScriptedProvider, hit
from ragcore.context.manager import ContextWindowManager
from ragcore.context.store import InMemoryMessageStore
from ragcore.errors import ErrorCode, ProviderError
from ragcore.retrieval.retriever import ContextRetriever
from ragcore.serving.pipeline import RAGPipeline
from ragcore.serving.prompts import FAILURE_ANSWER, MODERATION_REFUSAL, NOT_SAVED_NOTICE

QUESTION = "How long do customers have to request a refund?"


class UnwritableStore(InMemoryMessageStore):
    async def save_messages(self, conversation_id, tenant_id, messages):
        raise RuntimeError("db down")


def _hits() -> dict:
    return {
        "tenant-a": [
            hit("c1", 0.9, "policy", "Refunds are accepted within thirty days."),
            hit("c2", 0.5, "faq", "Contact support to start a refund."),
            hit("c3", 0.4, "policy", "Refunds go back to the original card."),
        ]
    }


def _pipeline(provider, credentials, hits=None, embedder=None, store=None):
    store = store or InMemoryMessageStore()
    search = FakeSearch(_hits() if hits is None else hits)
    retriever = ContextRetriever(embedder or FakeEmbedder(), search)
    pipeline = RAGPipeline(
        ContextWindowManager(store),
        retriever,
        credentials=lambda tenant_id, name: credentials,
        provider_factory=lambda name: provider,
    )
    return pipeline, store, search


async def _events(pipeline, config, question: str = QUESTION) -> list:
    return [e async for e in pipeline.stream(question, "conv-1", "tenant-a", config)]


# --- query() ------------------------------------------------------------------

def test_grounded_answer_with_sources_confidence_and_history(credentials, context_config) -> None:
    provider = ScriptedProvider()
    pipeline, store, _ = _pipeline(provider, credentials)

    result = asyncio.run(pipeline.query(QUESTION, "conv-1", "tenant-a", context_config, user_id="u-1"))

    assert result.ok
    assert result.answer == "answer from gpt-4o-mini"
    assert result.has_knowledge_base is True
    assert [s.document_id for s in result.sources] == ["policy", "faq"]
    assert result.confidence.overall == pytest.approx(0.7)
    assert [c["index"] for c in result.citations] == [1, 2, 3]
    assert (result.prompt_tokens, result.completion_tokens) == (10, 5)
    assert store.count("conv-1", "tenant-a") == 2

    prepared = provider.prepared[0]
    assert "RETRIEVED CONTEXT" in prepared.system
    assert "[1] Refunds are accepted within thirty days." in prepared.system
    assert prepared.system.startswith(context_config.system_prompt)
    assert prepared.messages[-1] == {"role": "user", "content": QUESTION}


def test_no_match_answers_from_general_knowledge(credentials, context_config) -> None:
    provider = ScriptedProvider()
    pipeline, _, _ = _pipeline(provider, credentials, hits={})

    result = asyncio.run(pipeline.query(QUESTION, "conv-1", "tenant-a", context_config))

    assert result.ok
    assert result.has_knowledge_base is False
    assert result.sources == []
    assert result.confidence.overall == 0.0
    assert "No documents in the knowledge base matched" in provider.prepared[0].system


def test_follow_up_turn_sees_previous_exchange(credentials, context_config) -> None:
    provider = ScriptedProvider()
    pipeline, store, _ = _pipeline(provider, credentials)

    async def two_turns():
        await pipeline.query(QUESTION, "conv-1", "tenant-a", context_config)
        return await pipeline.query("And for sale items?", "conv-1", "tenant-a", context_config)

    asyncio.run(two_turns())

    contents = [m["content"] for m in provider.prepared[1].messages]
    assert contents == [QUESTION, "answer from gpt-4o-mini", "And for sale items?"]
    assert store.count("conv-1", "tenant-a") == 4


def test_provider_failure_returns_fixed_answer_and_persists_nothing(credentials, context_config) -> None:
    provider = ScriptedProvider(script=[ProviderError(ErrorCode.INVALID_API_KEY, "bad key", False)])
    pipeline, store, _ = _pipeline(provider, credentials)

    result = asyncio.run(pipeline.query(QUESTION, "conv-1", "tenant-a", context_config))

    assert result.error_code == "INVALID_API_KEY"
    assert result.retryable is False
    assert result.answer == FAILURE_ANSWER
    assert result.has_knowledge_base is True
    assert not result.ok
    assert store.count("conv-1", "tenant-a") == 0


def test_retrieval_failure_is_distinct_from_no_match(credentials, context_config) -> None:
    provider = ScriptedProvider()
    pipeline, _, _ = _pipeline(provider, credentials, embedder=FakeEmbedder(fail_with=ConnectionResetError("reset")))

    result = asyncio.run(pipeline.query(QUESTION, "conv-1", "tenant-a", context_config))

    assert result.error_code == "RETRIEVAL_ERROR"
    assert result.retryable is True
    assert result.answer == FAILURE_ANSWER
    assert provider.models_called == []


def test_flagged_input_is_refused_before_retrieval(credentials, context_config) -> None:
    provider = ScriptedProvider(flagged=True)
    pipeline, _, search = _pipeline(provider, credentials)
    config = context_config.model_copy(update={"content_filtering": True})

    result = asyncio.run(pipeline.query("something awful", "conv-1", "tenant-a", config))

    assert result.blocked is True
    assert result.answer == MODERATION_REFUSAL
    assert search.calls == []
    assert provider.models_called == []


def test_result_serialises_to_dict(credentials, context_config) -> None:
    pipeline, _, _ = _pipeline(ScriptedProvider(), credentials)

    data = asyncio.run(pipeline.query(QUESTION, "conv-1", "tenant-a", context_config)).to_dict()

    assert data["tokens"] == {"prompt": 10, "completion": 5, "total": 15}
    assert data["error_code"] is None
    assert data["sources"][0]["document_id"] == "policy"
    assert set(data["latency_ms"]) == {"retrieval", "generation", "total"}


# --- stream() -----------------------------------------------------------------

def test_stream_emits_sources_then_content_then_complete(credentials, context_config) -> None:
    provider = ScriptedProvider(stream_parts=["Thirty ", "days."])
    pipeline, store, _ = _pipeline(provider, credentials)

    events = asyncio.run(_events(pipeline, context_config))

    assert [e.type for e in events] == ["sources", "content", "content", "complete"]
    assert [s.document_id for s in events[0].sources] == ["policy", "faq"]
    assert events[2].content == "Thirty days."
    result = events[-1].result
    assert result.answer == "Thirty days."
    assert result.completion_tokens > 0
    assert store.count("conv-1", "tenant-a") == 2
    assert provider.stream_closed == 1


def test_stream_failure_ends_with_error_event(credentials, context_config) -> None:
    provider = ScriptedProvider(
        stream_parts=["Thirty ", "days."],
        stream_error=ProviderError(ErrorCode.SERVER_ERROR, "upstream dropped", True),
        fail_after=1,
    )
    pipeline, store, _ = _pipeline(provider, credentials)

    events = asyncio.run(_events(pipeline, context_config))

    assert [e.type for e in events] == ["sources", "content", "error"]
    assert events[-1].code == "SERVER_ERROR"
    assert events[-1].retryable is True
    assert events[-1].message == FAILURE_ANSWER
    assert store.count("conv-1", "tenant-a") == 0


def test_stream_retrieval_failure_is_a_single_error_event(credentials, context_config) -> None:
    pipeline, _, _ = _pipeline(ScriptedProvider(), credentials, embedder=FakeEmbedder(fail_with=ValueError("bad")))

    events = asyncio.run(_events(pipeline, context_config))

    assert [e.type for e in events] == ["error"]
    assert events[0].code == "RETRIEVAL_ERROR"


def test_closing_the_event_stream_closes_the_provider_stream(credentials, context_config) -> None:
    provider = ScriptedProvider(stream_parts=["a", "b", "c"])
    pipeline, store, _ = _pipeline(provider, credentials)

    async def first_content() -> str:
        stream = pipeline.stream(QUESTION, "conv-1", "tenant-a", context_config)
        async for event in stream:
            if event.type == "content":
                await stream.aclose()
                return event.delta
        return ""

    assert asyncio.run(first_content()) == "a"
    assert provider.stream_closed == 1
    assert store.count("conv-1", "tenant-a") == 0


# --- persistence failures -----------------------------------------------------

def test_unsaved_turn_still_returns_the_answer(credentials, context_config) -> None:
    provider = ScriptedProvider()
    pipeline, store, _ = _pipeline(provider, credentials, store=UnwritableStore())

    result = asyncio.run(pipeline.query(QUESTION, "conv-1", "tenant-a", context_config))

    assert result.error_code == "PERSISTENCE_ERROR"
    assert result.answer == "answer from gpt-4o-mini"
    assert result.retryable is False
    assert not result.ok
    assert [s.document_id for s in result.sources] == ["policy", "faq"]
    assert store.count("conv-1", "tenant-a") == 0


def test_stream_ends_with_error_event_when_turn_cannot_be_saved(credentials, context_config) -> None:
    provider = ScriptedProvider(stream_parts=["Thirty ", "days."])
    pipeline, _, _ = _pipeline(provider, credentials, store=UnwritableStore())

    events = asyncio.run(_events(pipeline, context_config))

    assert [e.type for e in events] == ["sources", "content", "content", "error"]
    assert events[2].content == "Thirty days."
    assert events[-1].code == "PERSISTENCE_ERROR"
    assert events[-1].message == NOT_SAVED_NOTICE
    assert events[-1].retryable is False
