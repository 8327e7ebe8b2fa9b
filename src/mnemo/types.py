"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal


@dataclass(slots=True)
class CodeChunk:
    """A bounded slice of one file prepared for independent retrieval."""

    id: str
    alias: str
    file_path: str
    file_type: str
    chunk_index: int
    content: str
    start_line: int
    end_line: int
    token_estimate: int
    exports: list[str] | None = None


@dataclass(slots=True, frozen=True)
class CacheHandle:
    """Provider identity carried alongside an opaque cache name."""

    provider: str
    name: str


@dataclass(slots=True)
class CacheRecord:
    """Persisted metadata for one named cache, keyed by alias."""

    name: str
    alias: str
    token_count: int
    created_at: datetime
    expires_at: datetime
    source: str
    model: str
    provider: str = ""
    system_instruction: str | None = None
    # TTL requested at creation; `expires_at` may come from a remote clock.
    ttl_seconds: int | None = None

    @property
    def handle(self) -> CacheHandle:
        return CacheHandle(provider=self.provider, name=self.name)

    @property
    def effective_ttl_seconds(self) -> int:
        if self.ttl_seconds is not None:
            return self.ttl_seconds
        return int((self.expires_at - self.created_at).total_seconds())

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(slots=True)
class QueryResult:
    """A model response with token accounting."""

    response: str
    tokens_used: int
    cached_tokens_used: int
    model: str
    provider: str = ""


class FallbackReason(str, Enum):
    LOCAL_UNAVAILABLE = "local_unavailable"
    CONTEXT_TOO_LARGE = "context_too_large"
    LOCAL_ERROR = "local_error"
    TIMEOUT = "timeout"


@dataclass(slots=True)
class FallbackEvent:
    """Describes why escalation to the fallback provider is being requested."""

    reason: FallbackReason
    primary_model: str
    fallback_model: str
    detail: str = ""


Tier = Literal["rag", "context", "fallback"]


@dataclass(slots=True)
class TieredQueryResult:
    """Answer produced by the tiered query strategy."""

    response: str
    tier: Tier
    model: str
    tokens_used: int
    confidence: float | None = None
    chunk_count: int | None = None
    cached_tokens_used: int | None = None


@dataclass(slots=True)
class CacheExpired:
    """Recoverable outcome for a query against an expired cache."""

    alias: str
    expired_at: datetime
    status: Literal["expired"] = "expired"
    action_required: Literal["context_refresh"] = "context_refresh"
    message: str = ""

    def __post_init__(self) -> None:
        if not self.message:
            self.message = (
                f"Cache '{self.alias}' has expired. Call context_refresh(\"{self.alias}\") "
                "to reload it. DO NOT attempt to load content directly."
            )


@dataclass(slots=True)
class LoadedFile:
    path: str
    content: str
    size: int
    token_estimate: int
    mime_type: str = "text/plain"


@dataclass(slots=True)
class LoadedSource:
    """Uniform output of every source loader."""

    content: str
    files: list[LoadedFile]
    total_tokens: int
    file_count: int
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def source(self) -> str:
        return str(self.metadata.get("source", ""))


@dataclass(slots=True)
class RetrievedChunk:
    """One ranked match returned by a retrieval collaborator."""

    content: str
    score: float
    filename: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class RetrievalResult:
    chunks: list[RetrievedChunk]
    confidence: float
    rewritten_query: str | None = None

    @property
    def count(self) -> int:
        return len(self.chunks)


@dataclass(slots=True)
class GeneratedAnswer:
    """Answer produced by a retrieval collaborator that can also generate."""

    response: str
    sources: list[RetrievedChunk]
    model: str


@dataclass(slots=True)
class UsageEvent:
    cache_name: str
    operation: str
    tokens_used: int
    cached_tokens_used: int = 0
    model: str = ""
    timestamp: datetime | None = None


@dataclass(slots=True)
class UsageStats:
    total_operations: int
    total_tokens: int
    total_cached_tokens: int
    estimated_cost_usd: float
    by_operation: dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class ScoredChunk:
    """A chunk with a route score, used inside local retrieval."""

    chunk: CodeChunk
    score: float
    route: str
    rank: int = 0


@dataclass(slots=True)
class ToolTrace:
    """Trace record for an executed tool call."""

    name: str
    input_payload: dict[str, Any]
    output_preview: str
    latency_ms: float
    error_code: str | None = None
