"""
Provider Adapter Base
----------------------
Shared behaviour for every LLM backend:

  - one SDK client per (tenant_id, credential fingerprint), memoised for
    the life of the process
  - request assembly: system prompt + prior turns + current user message
  - usage accounting: provider-reported usage, else a local estimate
  - retries via tenacity, on ProviderError.retryable only
  - one fallback-model attempt after a retryable failure of the primary

Streaming is retried only until the first chunk arrives; once content has
been yielded a failure surfaces immediately, since partial output cannot
be retracted.  Closing the stream (aclose()) closes the SDK stream.

Subclasses implement _make_client, _complete, _stream and moderate_content.
"""
from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ragcore.config import ContextConfig, ProviderSettings
from ragcore.errors import ConfigurationError, ErrorCode, ProviderError
from ragcore.providers.errors import normalize_error
from ragcore.schemas import (
    ModerationResult,
    ProviderCredentials,
    ProviderRequest,
    ProviderResponse,
    Role,
    StreamChunk,
    Usage,
)
from ragcore.tokens import get_estimator

T = TypeVar("T")


@dataclass
class PreparedRequest:
    """Backend-neutral call arguments produced by prepare_messages()."""

    system: str
    messages: list[dict[str, str]]
    max_tokens: int
    temperature: float
    top_p: float
    stop: list[str] = field(default_factory=list)


@dataclass
class Completion:
    """Raw result of one non-streaming backend call."""

    id: str
    content: str
    model: str
    finish_reason: str = "stop"
    usage: Optional[Usage] = None


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable


class BaseProvider(ABC):
    name: str = "base"

    def __init__(self, settings: Optional[ProviderSettings] = None) -> None:
        self.settings = settings or ProviderSettings()
        self._clients: dict[tuple[str, str], Any] = {}
        self._clients_lock = threading.Lock()

    # --- Public API -------------------------------------------------------------

    async def generate_response(
        self,
        request: ProviderRequest,
        credentials: ProviderCredentials,
        config: ContextConfig,
    ) -> ProviderResponse:
        client = self.get_client(credentials)
        prepared = self.prepare_messages(request, config)
        start = time.perf_counter()

        async def call(model: str) -> Completion:
            try:
                return await self._complete(client, prepared, model)
            except ProviderError:
                raise
            except Exception as exc:
                raise self._normalize(exc, request, model) from exc

        completion, model = await self._with_fallback(call, request, config)
        usage = self._usage_or_estimate(completion.usage, prepared, completion.content)
        response = ProviderResponse(
            id=completion.id,
            content=completion.content,
            model=completion.model or model,
            provider=self.name,
            usage=usage,
            finish_reason=completion.finish_reason or "stop",
            processing_ms=(time.perf_counter() - start) * 1000,
        )
        logger.info(
            f"[{self._tag}] Done | model={response.model} | prompt={usage.prompt_tokens} "
            f"completion={usage.completion_tokens} | cost=${response.estimated_cost_usd:.5f} | "
            f"{response.processing_ms:.0f}ms"
        )
        return response

    async def generate_streaming_response(
        self,
        request: ProviderRequest,
        credentials: ProviderCredentials,
        config: ContextConfig,
    ) -> AsyncIterator[StreamChunk]:
        """
        Async generator of StreamChunk.  `content` is cumulative, `delta` is
        the new fragment; only the final chunk carries finish_reason and usage.
        """
        client = self.get_client(credentials)
        prepared = self.prepare_messages(request, config)

        async def open_stream(model: str) -> tuple[AsyncIterator[StreamChunk], Optional[StreamChunk]]:
            stream = self._stream(client, prepared, model)
            try:
                first = await anext(stream, None)
            except Exception as exc:
                await stream.aclose()
                if isinstance(exc, ProviderError):
                    raise
                raise self._normalize(exc, request, model) from exc
            return stream, first

        (stream, first), model = await self._with_fallback(open_stream, request, config)

        async with aclosing(stream):
            if first is None:
                return
            yield self._finalise_chunk(first, prepared)
            try:
                async for chunk in stream:
                    yield self._finalise_chunk(chunk, prepared)
            except ProviderError:
                raise
            except Exception as exc:
                raise self._normalize(exc, request, model) from exc

    @abstractmethod
    async def moderate_content(
        self,
        text: str,
        credentials: ProviderCredentials,
        tenant_id: str,
    ) -> ModerationResult:
        ...

    # --- Client memo ------------------------------------------------------------

    def get_client(self, credentials: ProviderCredentials) -> Any:
        """Return the memoised client for (tenant, credential fingerprint)."""
        if not credentials.api_key:
            raise ConfigurationError(
                f"No {self.name} API key configured for tenant {credentials.tenant_id}"
            )
        key = (credentials.tenant_id, credentials.fingerprint)
        with self._clients_lock:
            client = self._clients.get(key)
            if client is None:
                client = self._make_client(credentials)
                self._clients[key] = client
                logger.debug(f"[{self._tag}] New client for tenant {credentials.tenant_id}")
            return client

    @property
    def client_count(self) -> int:
        with self._clients_lock:
            return len(self._clients)

    # --- Request assembly & accounting -----------------------------------------

    def prepare_messages(self, request: ProviderRequest, config: ContextConfig) -> PreparedRequest:
        """
        System prompt comes from config unless a system message in the
        request context overrides it (the last one wins).  Non-system turns
        keep their order; the current user message goes last.
        """
        system = config.system_prompt or ""
        messages: list[dict[str, str]] = []
        for message in request.context:
            if message.role == Role.SYSTEM:
                system = message.content
            else:
                messages.append({"role": message.role.value, "content": message.content})
        messages.append({"role": Role.USER.value, "content": request.message})

        return PreparedRequest(
            system=system,
            messages=messages,
            max_tokens=request.max_tokens if request.max_tokens is not None else config.max_tokens,
            temperature=request.temperature if request.temperature is not None else config.temperature,
            top_p=config.top_p,
            stop=list(config.stop_sequences),
        )

    def estimate_tokens(self, text: str) -> int:
        return get_estimator(self.name)(text)

    def _usage_or_estimate(
        self,
        reported: Optional[Usage],
        prepared: PreparedRequest,
        content: str,
    ) -> Usage:
        prompt = reported.prompt_tokens if reported and reported.prompt_tokens else 0
        completion = reported.completion_tokens if reported and reported.completion_tokens else 0
        if not prompt:
            prompt = self.estimate_tokens(prepared.system + "".join(m["content"] for m in prepared.messages))
        if not completion:
            completion = self.estimate_tokens(content)
        return Usage.of(prompt, completion)

    def _finalise_chunk(self, chunk: StreamChunk, prepared: PreparedRequest) -> StreamChunk:
        if chunk.finish_reason is None:
            return chunk
        return chunk.model_copy(update={"usage": self._usage_or_estimate(chunk.usage, prepared, chunk.content)})

    # --- Retry & fallback ------------------------------------------------------

    def _retrying(self) -> AsyncRetrying:
        s = self.settings
        return AsyncRetrying(
            stop=stop_after_attempt(s.max_attempts),
            wait=wait_exponential(
                multiplier=s.backoff_multiplier,
                min=s.backoff_min_seconds,
                max=s.backoff_max_seconds,
            ),
            retry=retry_if_exception(_is_retryable),
            before_sleep=self._log_retry,
            reraise=True,
        )

    def _log_retry(self, state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        logger.warning(
            f"[{self._tag}] Attempt {state.attempt_number}/{self.settings.max_attempts} failed "
            f"({exc!r}); retrying"
        )

    async def _with_retry(self, call: Callable[[str], Awaitable[T]], model: str) -> T:
        async for attempt in self._retrying():
            with attempt:
                result = await call(model)
        return result

    async def _with_fallback(
        self,
        call: Callable[[str], Awaitable[T]],
        request: ProviderRequest,
        config: ContextConfig,
    ) -> tuple[T, str]:
        model = request.model or config.model
        try:
            return await self._with_retry(call, model), model
        except ProviderError as err:
            fallback = config.fallback_model
            if not (err.retryable and fallback and fallback != model):
                raise
            logger.warning(
                f"[{self._tag}] {model} failed with {err.code.value}; falling back to {fallback}"
            )
            return await self._with_retry(call, fallback), fallback

    def _normalize(self, exc: BaseException, request: ProviderRequest, model: str) -> ProviderError:
        err = normalize_error(exc, provider=self.name, model=model)
        logger.error(
            f"[{self._tag}] {err.code.value} (retryable={err.retryable}) | "
            f"tenant={request.tenant_id} model={model} | {err.message}"
        )
        return err

    def _empty_response(self, model: str) -> ProviderError:
        return ProviderError(
            ErrorCode.UNKNOWN_ERROR,
            f"No response content received from {self.name}",
            False,
            provider=self.name,
            model=model,
        )

    @property
    def _tag(self) -> str:
        return type(self).__name__

    # --- Backend hooks ----------------------------------------------------------

    @abstractmethod
    def _make_client(self, credentials: ProviderCredentials) -> Any:
        ...

    @abstractmethod
    async def _complete(self, client: Any, prepared: PreparedRequest, model: str) -> Completion:
        ...

    @abstractmethod
    def _stream(self, client: Any, prepared: PreparedRequest, model: str) -> AsyncIterator[StreamChunk]:
        ...
