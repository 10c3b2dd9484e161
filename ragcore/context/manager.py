"""
Context Window Manager
-----------------------
Maintains the rolling, token-bounded window of prior turns for each
conversation.

    get_context()  -> cache hit, or reload last N messages from the store
    add_message()  -> append, trim, persist delta, write back to cache
    trim()         -> pure function enforcing the token budget

Trimming keeps system messages, reserves room for the model response and
then keeps the most recent non-system messages that fit, strictly
newest-first and all-or-nothing per message.  The kept set is re-sorted by
timestamp so the window stays chronological.

Mutations of one conversation, including the cache write after a reload,
are serialised by a per-conversation asyncio.Lock; different conversations
proceed in parallel.  Cache hits never take the lock.
"""
from __future__ import annotations

import asyncio
import threading
import weakref
from typing import Optional

from langsmith import traceable
from loguru import logger

from ragcore.config import ContextConfig
from ragcore.context.cache import CacheKey, ContextCache
from ragcore.context.store import MessageStore
from ragcore.schemas import (
    ContextMessage,
    ConversationContext,
    MessageMetadata,
    Role,
    utcnow,
)
from ragcore.tokens import TokenEstimator, get_estimator

SYSTEM_PROMPT_MESSAGE_ID = "system_prompt"


class ContextWindowManager:
    """
    Usage:
        cache = ContextCache()                       # one per process
        manager = ContextWindowManager(store, cache)
        ctx = await manager.add_message(conv_id, tenant_id, msg, config)
    """

    def __init__(
        self,
        store: MessageStore,
        cache: Optional[ContextCache] = None,
        estimator: Optional[TokenEstimator] = None,
    ) -> None:
        self.store = store
        self.cache = cache if cache is not None else ContextCache()
        self._estimator = estimator
        self._locks: weakref.WeakValueDictionary[CacheKey, asyncio.Lock] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    # --- Public API -------------------------------------------------------------

    async def get_context(
        self,
        conversation_id: str,
        tenant_id: str,
        config: ContextConfig,
    ) -> ConversationContext:
        cached = self.cache.get(conversation_id, tenant_id)
        if cached is not None:
            return cached

        async with self._lock_for(conversation_id, tenant_id):
            return await self._get_or_load(conversation_id, tenant_id, config)

    @traceable(name="add_message", run_type="chain")
    async def add_message(
        self,
        conversation_id: str,
        tenant_id: str,
        message: ContextMessage,
        config: ContextConfig,
    ) -> ConversationContext:
        """Append `message`, trim to budget, persist it and refresh the cache."""
        async with self._lock_for(conversation_id, tenant_id):
            current = await self._get_or_load(conversation_id, tenant_id, config)

            if message.token_count <= 0 and message.content:
                message = message.model_copy(
                    update={"token_count": self._count(config)(message.content)}
                )

            # ids are unique within a window: a re-sent message replaces the old copy
            messages = [m for m in current.messages if m.id != message.id]
            messages.append(message)

            updated = current.model_copy(update={"messages": messages})
            updated.recompute_total()
            updated = self.trim(updated, config)
            updated.last_activity = utcnow()

            try:
                await self.store.save_messages(conversation_id, tenant_id, [message])
            except Exception as exc:
                logger.error(
                    f"[ContextManager] Failed to persist message {message.id} for "
                    f"{conversation_id}:{tenant_id}: {exc}"
                )
                raise

            self.cache.set(updated)
            return updated

    def trim(self, context: ConversationContext, config: ContextConfig) -> ConversationContext:
        """
        Return a context whose total_tokens fits `config.max_context_tokens`.

        Already-fitting contexts are returned unchanged, which makes trim()
        idempotent.  When system messages alone exceed the budget, only the
        most recent system message survives (logged as a warning) and the
        result may still exceed the limit.
        """
        max_tokens = config.max_context_tokens
        if context.total_tokens <= max_tokens:
            return context

        logger.info(
            f"[ContextManager] Trimming {context.conversation_id} | "
            f"{context.total_tokens} tokens > max {max_tokens}"
        )

        system = [m for m in context.messages if m.role == Role.SYSTEM]
        non_system = [m for m in context.messages if m.role != Role.SYSTEM]
        system_tokens = sum(m.token_count for m in system)
        available = max_tokens - config.response_reserve_tokens - system_tokens

        if available < 0:
            latest = max(enumerate(system), key=lambda p: (p[1].timestamp, p[0]))[1] if system else None
            dropped = len(context.messages) - (1 if latest else 0)
            logger.warning(
                f"[ContextManager] System messages ({system_tokens} tokens) exceed budget "
                f"{max_tokens - config.response_reserve_tokens} for {context.conversation_id}; "
                f"keeping only the most recent system message, dropping {dropped} message(s)"
            )
            kept = [latest] if latest else []
            return context.model_copy(
                update={
                    "messages": kept,
                    "total_tokens": latest.token_count if latest else 0,
                    "max_context_tokens": max_tokens,
                }
            )

        kept_recent: list[ContextMessage] = []
        used = 0
        for message in reversed(non_system):
            if used + message.token_count > available:
                break
            kept_recent.append(message)
            used += message.token_count

        position = {id(m): i for i, m in enumerate(context.messages)}
        kept = sorted(system + kept_recent, key=lambda m: (m.timestamp, position[id(m)]))
        logger.debug(
            f"[ContextManager] Kept {len(kept_recent)}/{len(non_system)} non-system messages "
            f"({system_tokens + used} tokens)"
        )
        return context.model_copy(
            update={
                "messages": kept,
                "total_tokens": system_tokens + used,
                "max_context_tokens": max_tokens,
            }
        )

    def summarize(self, context: ConversationContext, config: Optional[ContextConfig] = None) -> ContextMessage:
        """Build a summary system message describing the current window."""
        count = len(context.messages)
        summary = (
            f"Previous conversation summary: {count} messages exchanged. "
            "Key topics and context preserved."
        )
        estimate = self._count(config)
        return ContextMessage(
            id=f"summary_{context.conversation_id}_{int(utcnow().timestamp() * 1000)}",
            role=Role.SYSTEM,
            content=summary,
            token_count=estimate(summary),
            metadata=MessageMetadata(kind="summary", original_message_count=count),
        )

    def invalidate(self, conversation_id: str, tenant_id: str) -> bool:
        return self.cache.invalidate(conversation_id, tenant_id)

    def clear_all(self) -> None:
        self.cache.clear()

    def cache_stats(self) -> dict:
        return self.cache.stats()

    # --- Internals --------------------------------------------------------------

    def _lock_for(self, conversation_id: str, tenant_id: str) -> asyncio.Lock:
        key = ContextCache.key(conversation_id, tenant_id)
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
            return lock

    async def _get_or_load(
        self,
        conversation_id: str,
        tenant_id: str,
        config: ContextConfig,
    ) -> ConversationContext:
        # caller holds the conversation lock; a writer may have refreshed the entry meanwhile
        cached = self.cache.get(conversation_id, tenant_id)
        if cached is not None:
            return cached

        context = self.trim(await self._load(conversation_id, tenant_id, config), config)
        self.cache.set(context)
        return context

    def _count(self, config: Optional[ContextConfig]) -> TokenEstimator:
        if self._estimator is not None:
            return self._estimator
        return get_estimator(config.provider if config else None)

    async def _load(
        self,
        conversation_id: str,
        tenant_id: str,
        config: ContextConfig,
    ) -> ConversationContext:
        estimate = self._count(config)
        try:
            stored = await self.store.list_recent_messages(
                conversation_id, tenant_id, config.history_load_limit
            )
            prompt = config.system_prompt or await self.store.get_system_prompt_for(conversation_id) or ""
        except Exception as exc:
            logger.error(
                f"[ContextManager] Failed to load {conversation_id}:{tenant_id} from store: {exc}"
            )
            stored, prompt = [], config.system_prompt

        messages: list[ContextMessage] = []
        if prompt:
            messages.append(
                ContextMessage(
                    id=SYSTEM_PROMPT_MESSAGE_ID,
                    role=Role.SYSTEM,
                    content=prompt,
                    token_count=estimate(prompt),
                    timestamp=stored[0].created_at if stored else utcnow(),
                    metadata=MessageMetadata(kind="system_prompt"),
                )
            )

        for record in stored:
            messages.append(
                ContextMessage(
                    id=record.id,
                    role=record.role,
                    content=record.content,
                    token_count=estimate(record.content),
                    timestamp=record.created_at,
                    metadata=MessageMetadata(user_id=record.user_id),
                )
            )

        context = ConversationContext(
            conversation_id=conversation_id,
            tenant_id=tenant_id,
            messages=messages,
            max_context_tokens=config.max_context_tokens,
            system_prompt=prompt,
        )
        context.recompute_total()
        logger.debug(
            f"[ContextManager] Loaded {conversation_id}:{tenant_id} | "
            f"{len(stored)} stored message(s) | {context.total_tokens} tokens"
        )
        return context
