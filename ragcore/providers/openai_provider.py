"""
OpenAI Provider
----------------
Chat completions, streaming and moderation through the async OpenAI SDK.

The SDK's own retry loop is disabled (max_retries=0); BaseProvider retries
with tenacity so every backend follows the same {code, retryable} policy.
"""
from __future__ import annotations

from typing import Any, AsyncIterator

from langsmith import traceable
from loguru import logger
from openai import AsyncOpenAI

from ragcore.providers.base import BaseProvider, Completion, PreparedRequest
from ragcore.schemas import (
    ModerationCategories,
    ModerationResult,
    ProviderCredentials,
    StreamChunk,
    Usage,
)


def _usage(raw: Any) -> Usage | None:
    if raw is None:
        return None
    return Usage.of(raw.prompt_tokens or 0, raw.completion_tokens or 0)


class OpenAIProvider(BaseProvider):
    name = "openai"

    def _make_client(self, credentials: ProviderCredentials) -> AsyncOpenAI:
        return AsyncOpenAI(
            api_key=credentials.api_key,
            organization=credentials.organization_id,
            base_url=credentials.base_url,
            timeout=self.settings.timeout_seconds,
            max_retries=0,
        )

    def _payload(self, prepared: PreparedRequest, model: str) -> dict[str, Any]:
        messages = list(prepared.messages)
        if prepared.system:
            messages.insert(0, {"role": "system", "content": prepared.system})
        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": prepared.max_tokens,
            "temperature": prepared.temperature,
            "top_p": prepared.top_p,
        }
        if prepared.stop:
            payload["stop"] = prepared.stop
        return payload

    @traceable(name="openai_complete", run_type="llm")
    async def _complete(self, client: Any, prepared: PreparedRequest, model: str) -> Completion:
        logger.debug(f"[OpenAIProvider] {model} | {len(prepared.messages)} message(s)")
        response = await client.chat.completions.create(**self._payload(prepared, model))
        if not response.choices:
            raise self._empty_response(model)

        choice = response.choices[0]
        return Completion(
            id=response.id,
            content=choice.message.content or "",
            model=response.model or model,
            finish_reason=choice.finish_reason or "stop",
            usage=_usage(response.usage),
        )

    async def _stream(self, client: Any, prepared: PreparedRequest, model: str) -> AsyncIterator[StreamChunk]:
        stream = await client.chat.completions.create(
            **self._payload(prepared, model),
            stream=True,
            stream_options={"include_usage": True},
        )
        response_id = ""
        content = ""
        finish_reason = None
        usage = None

        # usage arrives on a trailing choice-less event, after finish_reason
        async with stream:
            async for event in stream:
                response_id = event.id or response_id
                if event.usage is not None:
                    usage = _usage(event.usage)
                if not event.choices:
                    continue
                choice = event.choices[0]
                delta = choice.delta.content if choice.delta else None
                if delta:
                    content += delta
                    yield StreamChunk(id=response_id, content=content, delta=delta)
                if choice.finish_reason:
                    finish_reason = choice.finish_reason

        yield StreamChunk(
            id=response_id,
            content=content,
            delta="",
            finish_reason=finish_reason or "stop",
            usage=usage,
        )

    async def moderate_content(
        self,
        text: str,
        credentials: ProviderCredentials,
        tenant_id: str,
    ) -> ModerationResult:
        """OpenAI moderation endpoint.  Failures are logged and read as not flagged."""
        try:
            client = self.get_client(credentials)
            response = await client.moderations.create(input=text)
            result = response.results[0]
            flags = result.categories.model_dump()
            fields = ModerationCategories.model_fields
            return ModerationResult(
                flagged=bool(result.flagged),
                categories=ModerationCategories(**{k: bool(v) for k, v in flags.items() if k in fields}),
                scores={k: float(v) for k, v in result.category_scores.model_dump().items() if v is not None},
            )
        except Exception as exc:
            logger.error(f"[OpenAIProvider] Moderation failed for tenant {tenant_id}: {exc}")
            return ModerationResult()
