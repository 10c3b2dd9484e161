import asyncio
from datetime import timedelta

import pytest
from loguru import logger

from conftest import BASE_TIME, stored
from ragcore import tokens
from ragcore.config import CacheSettings, ContextConfig
from ragcore.context.cache import ContextCache
from ragcore.context.manager import SYSTEM_PROMPT_MESSAGE_ID, ContextWindowManager
from ragcore.context.store import InMemoryMessageStore
from ragcore.schemas import ContextMessage, ConversationContext, Role
from ragcore.tokens import register_estimator


def _msg(mid: str, tokens: int, minute: int, role: Role = Role.USER) -> ContextMessage:
    return ContextMessage(
        id=mid,
        role=role,
        content="x" * (tokens * 4),
        token_count=tokens,
        timestamp=BASE_TIME + timedelta(minutes=minute),
    )


def _context(messages: list[ContextMessage], max_tokens: int = 100) -> ConversationContext:
    ctx = ConversationContext(
        conversation_id="conv-1",
        tenant_id="tenant-a",
        messages=messages,
        max_context_tokens=max_tokens,
    )
    ctx.recompute_total()
    return ctx


class FailingStore(InMemoryMessageStore):
    def __init__(self, fail_load: bool = False, fail_save: bool = False) -> None:
        super().__init__()
        self.fail_load = fail_load
        self.fail_save = fail_save

    async def list_recent_messages(self, conversation_id, tenant_id, limit):
        if self.fail_load:
            raise ConnectionError("database unavailable")
        return await super().list_recent_messages(conversation_id, tenant_id, limit)

    async def save_messages(self, conversation_id, tenant_id, messages):
        if self.fail_save:
            raise RuntimeError("write rejected")
        await super().save_messages(conversation_id, tenant_id, messages)


class GatedStore(InMemoryMessageStore):
    """The first history read takes its snapshot, then waits for `gate` before returning it."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()
        self.reads = 0

    async def list_recent_messages(self, conversation_id, tenant_id, limit):
        self.reads += 1
        snapshot = await super().list_recent_messages(conversation_id, tenant_id, limit)
        if self.reads == 1:
            await self.gate.wait()
        return snapshot


# --- trim ---------------------------------------------------------------------

def test_trim_keeps_most_recent_messages_within_budget() -> None:
    manager = ContextWindowManager(InMemoryMessageStore())
    config = ContextConfig(max_context_tokens=100, response_reserve_tokens=20)
    ctx = _context(
        [_msg("sys", 10, 0, Role.SYSTEM)] + [_msg(f"m{i}", 15, i + 1) for i in range(8)]
    )

    trimmed = manager.trim(ctx, config)

    assert trimmed.total_tokens <= config.max_context_tokens
    assert [m.id for m in trimmed.messages] == ["sys", "m4", "m5", "m6", "m7"]
    assert trimmed.total_tokens == sum(m.token_count for m in trimmed.messages)
    stamps = [m.timestamp for m in trimmed.messages]
    assert stamps == sorted(stamps)


def test_trim_is_idempotent() -> None:
    manager = ContextWindowManager(InMemoryMessageStore())
    config = ContextConfig(max_context_tokens=100, response_reserve_tokens=20)
    ctx = _context([_msg(f"m{i}", 15, i) for i in range(10)])

    once = manager.trim(ctx, config)
    twice = manager.trim(once, config)

    assert twice is once


def test_trim_stops_at_first_message_that_does_not_fit() -> None:
    manager = ContextWindowManager(InMemoryMessageStore())
    config = ContextConfig(max_context_tokens=40, response_reserve_tokens=10)
    ctx = _context([_msg("old", 10, 0), _msg("big", 50, 1), _msg("new", 10, 2)], max_tokens=40)

    trimmed = manager.trim(ctx, config)

    # "old" would fit on its own but is older than the message that overflowed
    assert [m.id for m in trimmed.messages] == ["new"]


def test_system_overflow_keeps_only_latest_system_message() -> None:
    manager = ContextWindowManager(InMemoryMessageStore())
    config = ContextConfig(max_context_tokens=100, response_reserve_tokens=0)
    ctx = _context(
        [
            _msg("sys-old", 80, 0, Role.SYSTEM),
            _msg("m1", 5, 1),
            _msg("sys-new", 80, 2, Role.SYSTEM),
        ]
    )
    warnings: list[str] = []
    sink = logger.add(lambda m: warnings.append(str(m)), level="WARNING")
    try:
        trimmed = manager.trim(ctx, config)
    finally:
        logger.remove(sink)

    assert [m.id for m in trimmed.messages] == ["sys-new"]
    assert trimmed.total_tokens == 80
    assert any("keeping only the most recent system message" in w for w in warnings)


# --- load / add ---------------------------------------------------------------

def test_load_prepends_configured_system_prompt() -> None:
    store = InMemoryMessageStore()
    store.seed("conv-1", "tenant-a", stored(4))
    manager = ContextWindowManager(store)
    config = ContextConfig(system_prompt="Be brief.")

    ctx = asyncio.run(manager.get_context("conv-1", "tenant-a", config))

    assert ctx.messages[0].id == SYSTEM_PROMPT_MESSAGE_ID
    assert ctx.messages[0].content == "Be brief."
    assert ctx.messages[0].timestamp == BASE_TIME
    assert [m.id for m in ctx.messages[1:]] == ["m0", "m1", "m2", "m3"]
    assert ctx.total_tokens == sum(m.token_count for m in ctx.messages)


def test_load_falls_back_to_stored_system_prompt() -> None:
    store = InMemoryMessageStore()
    store.set_system_prompt("conv-1", "Stored prompt.")
    manager = ContextWindowManager(store)

    ctx = asyncio.run(manager.get_context("conv-1", "tenant-a", ContextConfig(system_prompt="")))

    assert ctx.system_prompt == "Stored prompt."
    assert ctx.messages[0].content == "Stored prompt."


def test_load_respects_history_limit() -> None:
    store = InMemoryMessageStore()
    store.seed("conv-1", "tenant-a", stored(20))
    manager = ContextWindowManager(store)

    ctx = asyncio.run(manager.get_context("conv-1", "tenant-a", ContextConfig(history_load_limit=5)))

    assert [m.id for m in ctx.messages if m.role != Role.SYSTEM] == ["m15", "m16", "m17", "m18", "m19"]


def test_store_failure_yields_minimal_context() -> None:
    manager = ContextWindowManager(FailingStore(fail_load=True))

    ctx = asyncio.run(manager.get_context("conv-1", "tenant-a", ContextConfig()))

    assert [m.role for m in ctx.messages] == [Role.SYSTEM]


def test_get_context_is_served_from_cache() -> None:
    store = InMemoryMessageStore()
    manager = ContextWindowManager(store)
    config = ContextConfig()

    first = asyncio.run(manager.get_context("conv-1", "tenant-a", config))
    store.seed("conv-1", "tenant-a", stored(2))
    second = asyncio.run(manager.get_context("conv-1", "tenant-a", config))

    assert second is first


def test_add_message_persists_and_caches() -> None:
    store = InMemoryMessageStore()
    manager = ContextWindowManager(store)
    config = ContextConfig()
    message = ContextMessage(role=Role.USER, content="What is our refund policy?")

    ctx = asyncio.run(manager.add_message("conv-1", "tenant-a", message, config))

    assert ctx.messages[-1].id == message.id
    assert ctx.messages[-1].token_count > 0
    assert store.count("conv-1", "tenant-a") == 1
    assert manager.cache.get("conv-1", "tenant-a") is ctx


def test_add_message_with_same_id_replaces_previous_copy() -> None:
    manager = ContextWindowManager(InMemoryMessageStore())
    config = ContextConfig()

    async def scenario() -> ConversationContext:
        await manager.add_message("conv-1", "tenant-a", ContextMessage(id="dup", role=Role.USER, content="first"), config)
        return await manager.add_message(
            "conv-1", "tenant-a", ContextMessage(id="dup", role=Role.USER, content="second"), config
        )

    ctx = asyncio.run(scenario())

    dups = [m for m in ctx.messages if m.id == "dup"]
    assert len(dups) == 1
    assert dups[0].content == "second"


def test_add_message_trims_to_budget() -> None:
    manager = ContextWindowManager(InMemoryMessageStore())
    config = ContextConfig(max_context_tokens=120, response_reserve_tokens=20, system_prompt="")

    async def scenario() -> ConversationContext:
        ctx = None
        for i in range(10):
            ctx = await manager.add_message(
                "conv-1", "tenant-a", ContextMessage(id=f"m{i}", role=Role.USER, content="y" * 80), config
            )
        return ctx

    ctx = asyncio.run(scenario())

    assert ctx.total_tokens <= 120
    assert ctx.messages[-1].id == "m9"


def test_save_failure_propagates_and_leaves_cache_untouched() -> None:
    manager = ContextWindowManager(FailingStore(fail_save=True))
    config = ContextConfig()
    message = ContextMessage(id="lost", role=Role.USER, content="hello")

    with pytest.raises(RuntimeError):
        asyncio.run(manager.add_message("conv-1", "tenant-a", message, config))

    cached = manager.cache.get("conv-1", "tenant-a")
    assert cached is not None
    assert all(m.id != "lost" for m in cached.messages)


def test_concurrent_adds_to_one_conversation_are_all_kept() -> None:
    store = InMemoryMessageStore()
    manager = ContextWindowManager(store)
    config = ContextConfig(max_context_tokens=100_000)

    async def scenario() -> ConversationContext:
        await asyncio.gather(
            *(
                manager.add_message("conv-1", "tenant-a", ContextMessage(id=f"m{i}", role=Role.USER, content=f"hello {i}"), config)
                for i in range(100)
            )
        )
        return await manager.get_context("conv-1", "tenant-a", config)

    ctx = asyncio.run(scenario())

    assert {m.id for m in ctx.messages if m.role == Role.USER} == {f"m{i}" for i in range(100)}
    assert store.count("conv-1", "tenant-a") == 100


def test_concurrent_conversations_keep_the_newest_entries() -> None:
    cache = ContextCache(CacheSettings(max_entries=10))
    manager = ContextWindowManager(InMemoryMessageStore(), cache)
    config = ContextConfig()

    def add(i: int):
        message = ContextMessage(id=f"msg-{i}", role=Role.USER, content=f"hi from {i}")
        return manager.add_message(f"conv-{i}", "tenant-a", message, config)

    async def scenario() -> None:
        await asyncio.gather(*(add(i) for i in range(90)))
        await asyncio.gather(*(add(i) for i in range(90, 100)))

    asyncio.run(scenario())

    assert len(cache) == 10
    assert manager.cache_stats()["size"] == 10
    assert manager.cache_stats()["evictions"] >= 90
    assert {conversation_id for conversation_id, _ in cache.keys()} == {f"conv-{i}" for i in range(90, 100)}
    for i in range(90, 100):
        ctx = cache.get(f"conv-{i}", "tenant-a")
        assert [(m.id, m.content) for m in ctx.messages if m.role == Role.USER] == [(f"msg-{i}", f"hi from {i}")]


def test_slow_reload_cannot_overwrite_a_newer_write() -> None:
    config = ContextConfig()

    async def scenario() -> tuple[GatedStore, ContextWindowManager]:
        store = GatedStore()
        manager = ContextWindowManager(store)
        reader = asyncio.create_task(manager.get_context("conv-1", "tenant-a", config))
        await asyncio.sleep(0)
        writer = asyncio.create_task(
            manager.add_message("conv-1", "tenant-a", ContextMessage(id="new", role=Role.USER, content="hello"), config)
        )
        for _ in range(5):
            await asyncio.sleep(0)
        store.gate.set()
        await asyncio.gather(reader, writer)
        return store, manager

    store, manager = asyncio.run(scenario())

    cached = manager.cache.get("conv-1", "tenant-a")
    assert "new" in [m.id for m in cached.messages]
    assert store.count("conv-1", "tenant-a") == 1
    # the writer reused the reader's load instead of racing it
    assert store.reads == 1


def test_registered_estimator_changes_trimming(monkeypatch) -> None:
    monkeypatch.setattr(tokens, "_ESTIMATORS", dict(tokens._ESTIMATORS))
    store = InMemoryMessageStore()
    store.seed("conv-1", "tenant-a", stored(4))
    config = ContextConfig(provider="anthropic", system_prompt="", max_context_tokens=250, response_reserve_tokens=0)

    by_ratio = asyncio.run(ContextWindowManager(store).get_context("conv-1", "tenant-a", config))
    register_estimator("anthropic", lambda text: 50 * len(text.split()))
    by_words = asyncio.run(ContextWindowManager(store).get_context("conv-1", "tenant-a", config))

    assert [m.id for m in by_ratio.messages] == ["m0", "m1", "m2", "m3"]
    assert [m.id for m in by_words.messages] == ["m2", "m3"]
    assert by_words.total_tokens == 200


def test_summarize_describes_window() -> None:
    manager = ContextWindowManager(InMemoryMessageStore())
    ctx = _context([_msg(f"m{i}", 5, i) for i in range(3)])

    summary = manager.summarize(ctx)

    assert summary.role == Role.SYSTEM
    assert "3 messages" in summary.content
    assert summary.metadata.kind == "summary"
    assert summary.metadata.original_message_count == 3
    assert summary.token_count > 0


def test_expired_cache_entry_is_reloaded_from_store() -> None:
    clock = {"now": 0.0}
    cache = ContextCache(CacheSettings(ttl_seconds=60), clock=lambda: clock["now"])
    store = InMemoryMessageStore()
    manager = ContextWindowManager(store, cache)
    config = ContextConfig()

    first = asyncio.run(manager.get_context("conv-1", "tenant-a", config))
    store.seed("conv-1", "tenant-a", stored(2))
    clock["now"] = 61.0
    reloaded = asyncio.run(manager.get_context("conv-1", "tenant-a", config))

    assert reloaded is not first
    assert [m.id for m in reloaded.messages if m.role != Role.SYSTEM] == ["m0", "m1"]
