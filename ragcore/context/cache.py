"""
Conversation Context Cache
---------------------------
Capacity-bounded, TTL-checked map of ConversationContext keyed by
(conversation_id, tenant_id).

Eviction is insertion-order (FIFO): when full, the entry that was inserted
first goes, regardless of how recently it was read (not LRU).  Re-writing an
existing key refreshes its TTL but keeps its place in the queue.

The OrderedDict doubles as the map and the FIFO key queue, and every
operation runs under one lock, so eviction is atomic with insertion even
when many conversation handlers write concurrently.
"""
from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Callable, Optional

from loguru import logger

from ragcore.config import CacheSettings
from ragcore.schemas import ConversationContext

CacheKey = tuple[str, str]


class ContextCache:
    """
    Shared, thread-safe context cache.

    Construct one per process and inject it into every ContextWindowManager
    that should share state.
    """

    def __init__(
        self,
        settings: Optional[CacheSettings] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or CacheSettings()
        self._clock = clock
        self._entries: OrderedDict[CacheKey, tuple[ConversationContext, float]] = OrderedDict()
        self._lock = threading.Lock()
        self.evictions: int = 0

    @staticmethod
    def key(conversation_id: str, tenant_id: str) -> CacheKey:
        # tenant is always part of the key so colliding conversation ids never share state
        return (conversation_id, tenant_id)

    def get(self, conversation_id: str, tenant_id: str) -> Optional[ConversationContext]:
        """Return the cached context, or None when absent or older than the TTL."""
        k = self.key(conversation_id, tenant_id)
        with self._lock:
            entry = self._entries.get(k)
            if entry is None:
                return None
            context, written_at = entry
            if self._clock() - written_at >= self.settings.ttl_seconds:
                del self._entries[k]
                logger.debug(f"[ContextCache] Expired {conversation_id}:{tenant_id}")
                return None
            return context

    def set(self, context: ConversationContext) -> None:
        k = self.key(context.conversation_id, context.tenant_id)
        with self._lock:
            now = self._clock()
            if k in self._entries:
                self._entries[k] = (context, now)       # position unchanged
                return
            while len(self._entries) >= self.settings.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                self.evictions += 1
                logger.debug(f"[ContextCache] Evicted oldest entry {evicted[0]}:{evicted[1]}")
            self._entries[k] = (context, now)

    def invalidate(self, conversation_id: str, tenant_id: str) -> bool:
        with self._lock:
            return self._entries.pop(self.key(conversation_id, tenant_id), None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def keys(self) -> list[CacheKey]:
        """Keys in eviction order (oldest first)."""
        with self._lock:
            return list(self._entries)

    def stats(self) -> dict:
        with self._lock:
            return {
                "size": len(self._entries),
                "max_size": self.settings.max_entries,
                "ttl_seconds": self.settings.ttl_seconds,
                "evictions": self.evictions,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: CacheKey) -> bool:
        with self._lock:
            return key in self._entries
