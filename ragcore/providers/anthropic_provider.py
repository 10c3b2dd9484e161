"""
Anthropic Provider
-------------------
Messages API through the async Anthropic SDK.

The Anthropic SDK takes the system prompt as a separate `system`
parameter rather than inside the messages list.  There is no moderation
endpoint, so moderation is a keyword screen.
"""
from __future__ import annotations

import re
from typing import Any, AsyncIterator

from anthropic import AsyncAnthropic
from langsmith import traceable
from loguru import logger

from ragcore.providers.base import BaseProvider, Completion, PreparedRequest
from ragcore.schemas import (
    ModerationResult,
    ProviderCredentials,
    StreamChunk,
    Usage,
)

FLAGGED_PATTERNS = [
    re.compile(r"\b(hate|violence|harassment|self-harm|sexual)\b", re.IGNORECASE),
]


class AnthropicProvider(BaseProvider):
    name = "anthropic"

    def _make_client(self, credentials: ProviderCredentials) -> AsyncAnthropic:
        return AsyncAnthropic(
            api_key=credentials.api_key,
            base_url=credentials.base_url,
            timeout=self.settings.timeout_seconds,
            max_retries=0,
        )

    def _payload(self, prepared: PreparedRequest, model: str) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "messages": prepared.messages,
            "max_tokens": prepared.max_tokens,
            "temperature": prepared.temperature,
        }
        if prepared.system:
            payload["system"] = prepared.system
        if prepared.top_p != 1.0:
            payload["top_p"] = prepared.top_p
        if prepared.stop:
            payload["stop_sequences"] = prepared.stop
        return payload

    @traceable(name="anthropic_complete", run_type="llm")
    async def _complete(self, client: Any, prepared: PreparedRequest, model: str) -> Completion:
        logger.debug(f"[AnthropicProvider] {model} | {len(prepared.messages)} message(s)")
        response = await client.messages.create(**self._payload(prepared, model))
        if not response.content:
            raise self._empty_response(model)

        text = "".join(block.text for block in response.content if block.type == "text")
        usage = None
        if response.usage is not None:
            usage = Usage.of(response.usage.input_tokens or 0, response.usage.output_tokens or 0)
        return Completion(
            id=response.id,
            content=text,
            model=response.model or model,
            finish_reason=response.stop_reason or "stop",
            usage=usage,
        )

    async def _stream(self, client: Any, prepared: PreparedRequest, model: str) -> AsyncIterator[StreamChunk]:
        response_id = ""
        content = ""
        stop_reason = None
        input_tokens = 0
        output_tokens = 0

        async with client.messages.stream(**self._payload(prepared, model)) as stream:
            async for event in stream:
                if event.type == "message_start":
                    response_id = event.message.id
                    if event.message.usage is not None:
                        input_tokens = event.message.usage.input_tokens or 0
                elif event.type == "content_block_delta":
                    delta = getattr(event.delta, "text", "") or ""
                    if delta:
                        content += delta
                        yield StreamChunk(id=response_id, content=content, delta=delta)
                elif event.type == "message_delta":
                    stop_reason = event.delta.stop_reason or stop_reason
                    if event.usage is not None:
                        output_tokens = event.usage.output_tokens or 0

        usage = Usage.of(input_tokens, output_tokens) if input_tokens or output_tokens else None
        yield StreamChunk(
            id=response_id,
            content=content,
            delta="",
            finish_reason=stop_reason or "end_turn",
            usage=usage,
        )

    async def moderate_content(
        self,
        text: str,
        credentials: ProviderCredentials,
        tenant_id: str,
    ) -> ModerationResult:
        flagged = any(p.search(text) for p in FLAGGED_PATTERNS)
        if flagged:
            logger.info(f"[AnthropicProvider] Content flagged by keyword screen for tenant {tenant_id}")
        return ModerationResult(flagged=flagged)
