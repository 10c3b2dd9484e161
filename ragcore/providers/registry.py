"""
Provider registry.

One adapter instance per backend name for the life of the process, so
each adapter's client memo is shared by every request.
"""
from __future__ import annotations

import os
import threading
from typing import Optional

from ragcore.config import ProviderSettings
from ragcore.errors import ConfigurationError
from ragcore.providers.anthropic_provider import AnthropicProvider
from ragcore.providers.base import BaseProvider
from ragcore.providers.openai_provider import OpenAIProvider
from ragcore.schemas import ProviderCredentials

_PROVIDER_CLASSES: dict[str, type[BaseProvider]] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
}

_instances: dict[str, BaseProvider] = {}
_lock = threading.Lock()


def available_providers() -> list[str]:
    return sorted(_PROVIDER_CLASSES)


def get_provider(name: str, settings: Optional[ProviderSettings] = None) -> BaseProvider:
    """
    Return the shared adapter for `name`.  `settings` only applies the first
    time a given provider is requested.

    Raises:
        ConfigurationError: unknown provider name.
    """
    key = name.lower()
    cls = _PROVIDER_CLASSES.get(key)
    if cls is None:
        raise ConfigurationError(
            f"Unsupported provider {name!r}; expected one of {available_providers()}"
        )
    with _lock:
        provider = _instances.get(key)
        if provider is None:
            provider = cls(settings)
            _instances[key] = provider
        return provider


_API_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}


def credentials_from_env(tenant_id: str, provider: str) -> ProviderCredentials:
    """
    Single-tenant credential lookup from the environment (OPENAI_API_KEY,
    ANTHROPIC_API_KEY, optional OPENAI_ORG_ID).

    Raises:
        ConfigurationError: unknown provider or key not set.
    """
    env_var = _API_KEY_ENV.get(provider.lower())
    if env_var is None:
        raise ConfigurationError(f"Unsupported provider {provider!r}")
    api_key = os.getenv(env_var)
    if not api_key:
        raise ConfigurationError(f"{env_var} is not set")
    return ProviderCredentials(
        tenant_id=tenant_id,
        provider=provider.lower(),
        api_key=api_key,
        organization_id=os.getenv("OPENAI_ORG_ID") if provider.lower() == "openai" else None,
    )
