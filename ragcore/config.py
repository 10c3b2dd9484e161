"""
Typed configuration for the RAG context core.

Every option bag from the service layer becomes a pydantic model with named,
typed, defaulted fields.  Settings are loaded from a YAML file
(config/config.yaml by default); secrets stay in the environment.
"""
from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

import yaml
from loguru import logger
from pydantic import BaseModel, Field, model_validator

from ragcore.errors import ConfigurationError


class ChunkingOptions(BaseModel):
    """Sizing and boundary rules for OverlappingChunker."""

    chunk_size_tokens: int = 1000
    overlap_tokens: int = 200
    min_chunk_tokens: int = 100
    max_chunk_tokens: int = 2000
    respect_sentence_boundaries: bool = True
    respect_paragraph_boundaries: bool = True
    chars_per_token: float = 4.0     # Converts token budgets into character offsets

    @model_validator(mode="after")
    def _check_sizes(self) -> "ChunkingOptions":
        # ConfigurationError is not a ValueError, so pydantic lets it through as-is
        if self.chunk_size_tokens <= 0:
            raise ConfigurationError("chunk_size_tokens must be positive")
        if self.overlap_tokens < 0:
            raise ConfigurationError("overlap_tokens must not be negative")
        if self.overlap_tokens >= self.chunk_size_tokens:
            raise ConfigurationError(
                f"overlap_tokens ({self.overlap_tokens}) must be less than "
                f"chunk_size_tokens ({self.chunk_size_tokens})"
            )
        if self.min_chunk_tokens < 0 or self.min_chunk_tokens > self.max_chunk_tokens:
            raise ConfigurationError(
                f"min_chunk_tokens ({self.min_chunk_tokens}) must be between 0 and "
                f"max_chunk_tokens ({self.max_chunk_tokens})"
            )
        if self.max_chunk_tokens < self.chunk_size_tokens:
            raise ConfigurationError(
                f"max_chunk_tokens ({self.max_chunk_tokens}) must be at least "
                f"chunk_size_tokens ({self.chunk_size_tokens})"
            )
        if self.chars_per_token <= 0:
            raise ConfigurationError("chars_per_token must be positive")
        return self

    @property
    def overlap_chars(self) -> int:
        return int(self.overlap_tokens * self.chars_per_token)

    @property
    def chunk_chars(self) -> int:
        return max(1, int(self.chunk_size_tokens * self.chars_per_token))


class ContextConfig(BaseModel):
    """Per-tenant AI configuration used by the context manager and providers."""

    provider: Literal["openai", "anthropic"] = "openai"
    model: str = "gpt-4o-mini"
    system_prompt: str = "You are a helpful AI assistant."
    max_context_tokens: int = Field(default=4096, gt=0)
    response_reserve_tokens: int = Field(default=500, ge=0)
    history_load_limit: int = Field(default=50, gt=0)
    temperature: float = 0.7
    max_tokens: int = 1024
    top_p: float = 1.0
    stop_sequences: list[str] = Field(default_factory=list)
    fallback_model: Optional[str] = None
    content_filtering: bool = True


class CacheSettings(BaseModel):
    max_entries: int = Field(default=1000, gt=0)
    ttl_seconds: float = Field(default=30 * 60, gt=0)


class ProviderSettings(BaseModel):
    timeout_seconds: float = 30.0
    max_attempts: int = Field(default=3, ge=1)
    backoff_multiplier: float = 1.0
    backoff_min_seconds: float = 0.5
    backoff_max_seconds: float = 8.0


class RetrievalSettings(BaseModel):
    default_max_chunks: int = Field(default=5, gt=0)
    strategy: Literal["semantic", "keyword", "hybrid"] = "semantic"
    dense_weight: float = 0.7
    sparse_weight: float = 0.3


class LoggingSettings(BaseModel):
    level: str = "INFO"
    file: Optional[str] = "logs/ragcore.log"


class Settings(BaseModel):
    chunking: ChunkingOptions = Field(default_factory=ChunkingOptions)
    context: ContextConfig = Field(default_factory=ContextConfig)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    providers: ProviderSettings = Field(default_factory=ProviderSettings)
    retrieval: RetrievalSettings = Field(default_factory=RetrievalSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_settings(path: str | Path = "config/config.yaml") -> Settings:
    """Load Settings from YAML.  A missing file yields the defaults."""
    p = Path(path)
    if not p.exists():
        logger.debug(f"[Config] {p} not found, using defaults")
        return Settings()

    with open(p, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ConfigurationError(f"{p} must contain a mapping at the top level")

    settings = Settings.model_validate(raw)
    logger.info(f"[Config] Loaded settings from {p}")
    return settings
