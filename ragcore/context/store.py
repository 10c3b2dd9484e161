"""
Durable message store interface.

The relational persistence layer lives outside this package; the context
manager only needs the three calls below.  InMemoryMessageStore is a
complete implementation used by tests, the CLI and local development.
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional, Protocol

from pydantic import BaseModel

from ragcore.schemas import ContextMessage, Role, utcnow


class StoredMessage(BaseModel):
    id: str
    role: Role
    content: str
    created_at: datetime
    user_id: Optional[str] = None


class MessageStore(Protocol):
    async def list_recent_messages(
        self, conversation_id: str, tenant_id: str, limit: int
    ) -> list[StoredMessage]:
        """Most recent `limit` messages, oldest first."""
        ...

    async def get_system_prompt_for(self, conversation_id: str) -> Optional[str]:
        ...

    async def save_messages(
        self, conversation_id: str, tenant_id: str, messages: list[ContextMessage]
    ) -> None:
        """Upsert non-system messages by id."""
        ...


class InMemoryMessageStore:
    """Dictionary-backed MessageStore.  Safe for concurrent asyncio tasks."""

    def __init__(self) -> None:
        self._messages: dict[tuple[str, str], dict[str, StoredMessage]] = {}
        self._system_prompts: dict[str, str] = {}
        self._lock = asyncio.Lock()
        self.save_calls: int = 0

    def seed(
        self,
        conversation_id: str,
        tenant_id: str,
        messages: list[StoredMessage],
    ) -> None:
        bucket = self._messages.setdefault((conversation_id, tenant_id), {})
        for m in messages:
            bucket[m.id] = m

    def set_system_prompt(self, conversation_id: str, prompt: str) -> None:
        self._system_prompts[conversation_id] = prompt

    async def list_recent_messages(
        self, conversation_id: str, tenant_id: str, limit: int
    ) -> list[StoredMessage]:
        async with self._lock:
            bucket = self._messages.get((conversation_id, tenant_id), {})
            ordered = sorted(bucket.values(), key=lambda m: m.created_at)
        return ordered[-limit:] if limit > 0 else []

    async def get_system_prompt_for(self, conversation_id: str) -> Optional[str]:
        return self._system_prompts.get(conversation_id)

    async def save_messages(
        self, conversation_id: str, tenant_id: str, messages: list[ContextMessage]
    ) -> None:
        async with self._lock:
            self.save_calls += 1
            bucket = self._messages.setdefault((conversation_id, tenant_id), {})
            for m in messages:
                if m.role == Role.SYSTEM:
                    continue
                bucket[m.id] = StoredMessage(
                    id=m.id,
                    role=m.role,
                    content=m.content,
                    created_at=m.timestamp or utcnow(),
                    user_id=m.metadata.user_id,
                )

    def count(self, conversation_id: str, tenant_id: str) -> int:
        return len(self._messages.get((conversation_id, tenant_id), {}))
