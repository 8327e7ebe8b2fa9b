"""Configuration models for the context engine."""

from __future__ import annotations

import os
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, model_validator

DEFAULT_ALWAYS_WHOLE = [
    "CLAUDE.md",
    "README.md",
    "readme.md",
    "package.json",
    "wrangler.toml",
    "wrangler.jsonc",
    "pyproject.toml",
    "Cargo.toml",
    "go.mod",
]

DEFAULT_SYSTEM_INSTRUCTION = (
    "Be extremely concise. Answer in 1-3 sentences maximum. No markdown formatting, "
    "no bullet points, no headers. Just the direct answer."
)


class ChunkingConfig(BaseModel):
    """Configures boundary-aware chunking with a fixed-window fallback."""

    target_tokens: int = Field(default=400, ge=1)
    overlap_tokens: int = Field(default=50, ge=0)
    max_tokens: int = Field(default=600, ge=1)
    always_whole: list[str] = Field(default_factory=lambda: list(DEFAULT_ALWAYS_WHOLE))

    @model_validator(mode="after")
    def _check_window(self) -> "ChunkingConfig":
        if self.overlap_tokens >= self.target_tokens:
            raise ValueError("overlap_tokens must be less than target_tokens")
        if self.target_tokens > self.max_tokens:
            raise ValueError("target_tokens must not exceed max_tokens")
        return self


class RetrievalConfig(BaseModel):
    """Configures local retrieval and confidence scoring."""

    semantic_k: int = Field(default=20, ge=1)
    metadata_k: int = Field(default=20, ge=1)
    final_k: int = Field(default=10, ge=1)
    rrf_k: int = Field(default=60, ge=1)
    score_threshold: float = Field(default=0.0, ge=0.0, le=1.0)
    confidence_weights: list[float] = Field(default_factory=lambda: [0.5, 0.3, 0.2])
    tail_weight: float = Field(default=0.1, ge=0.0)


class TieredQueryConfig(BaseModel):
    """Configures the retrieval-first query strategy."""

    confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    max_rag_chunks: int = Field(default=10, ge=1, le=50)
    max_output_tokens: int = Field(default=2000, ge=1)
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    retrieval_timeout_seconds: float = Field(default=30.0, gt=0.0)
    synthesis_timeout_seconds: float = Field(default=120.0, gt=0.0)
    fallback_provider: str = "gemini"


class FallbackConfig(BaseModel):
    """Configures escalation from the primary to the fallback provider."""

    auto_fallback_for_large_context: bool = True
    context_headroom: float = Field(default=0.9, gt=0.0, le=1.0)


class LocalProviderConfig(BaseModel):
    """OpenAI-compatible endpoint serving the bounded-context model."""

    base_url: str = "http://localhost:8000"
    model: str = "nemotron-3-nano"
    api_key: str | None = None
    max_context_tokens: int = Field(default=131072, ge=1)
    request_timeout_seconds: float = Field(default=120.0, gt=0.0)
    health_timeout_seconds: float = Field(default=5.0, gt=0.0)


class GeminiProviderConfig(BaseModel):
    """Gemini REST endpoint serving the expandable-context model."""

    base_url: str = "https://generativelanguage.googleapis.com"
    api_version: str = "v1beta"
    model: str = "gemini-2.0-flash-001"
    api_key: str | None = None
    max_context_tokens: int = Field(default=1_000_000, ge=1)
    request_timeout_seconds: float = Field(default=120.0, gt=0.0)
    health_timeout_seconds: float = Field(default=5.0, gt=0.0)


class CacheConfig(BaseModel):
    """Defaults applied by cache lifecycle operations."""

    default_ttl_seconds: int = Field(default=3600, ge=60, le=604800)
    system_instruction: str = DEFAULT_SYSTEM_INSTRUCTION
    composite_separator: str = " + "


class HistoryLoaderConfig(BaseModel):
    """Selects which conversation sessions are read from a history directory."""

    include_agents: bool = False
    include_temp: bool = False
    project_filter: list[str] | None = None
    since: datetime | None = None
    max_content_per_message: int = Field(default=2000, ge=1)


class LoaderConfig(BaseModel):
    """Limits applied when reading sources from disk or the network."""

    max_tokens: int = Field(default=900_000, ge=1)
    max_file_bytes: int = Field(default=500_000, ge=1)
    history: HistoryLoaderConfig = Field(default_factory=HistoryLoaderConfig)
    github_api_url: str = "https://api.github.com"
    github_token: str | None = None
    remote_timeout_seconds: float = Field(default=60.0, gt=0)


class Settings(BaseModel):
    """Top-level settings consumed by the composition root."""

    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    tiered: TieredQueryConfig = Field(default_factory=TieredQueryConfig)
    fallback: FallbackConfig = Field(default_factory=FallbackConfig)
    local: LocalProviderConfig = Field(default_factory=LocalProviderConfig)
    gemini: GeminiProviderConfig = Field(default_factory=GeminiProviderConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    loader: LoaderConfig = Field(default_factory=LoaderConfig)
    synthesis_base_url: str | None = None
    synthesis_model: str = "nemotron-3-nano"
    storage_path: str | None = None
    vector_store: Literal["memory", "faiss"] = "memory"

    @classmethod
    def from_env(cls) -> "Settings":
        local = LocalProviderConfig(
            base_url=os.getenv("MNEMO_LOCAL_URL", LocalProviderConfig().base_url),
            model=os.getenv("MNEMO_LOCAL_MODEL", LocalProviderConfig().model),
            api_key=os.getenv("MNEMO_LOCAL_API_KEY"),
        )
        gemini = GeminiProviderConfig(
            model=os.getenv("MNEMO_GEMINI_MODEL", GeminiProviderConfig().model),
            api_key=os.getenv("GEMINI_API_KEY"),
        )
        return cls(
            local=local,
            gemini=gemini,
            loader=LoaderConfig(github_token=os.getenv("GITHUB_TOKEN")),
            synthesis_base_url=os.getenv("MNEMO_SYNTHESIS_URL", local.base_url),
            synthesis_model=os.getenv("MNEMO_SYNTHESIS_MODEL", local.model),
            storage_path=os.getenv("MNEMO_STORAGE_PATH"),
            vector_store=os.getenv("MNEMO_VECTOR_STORE", "memory"),
        )
