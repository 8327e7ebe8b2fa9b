"""Context tools exposed to agents and the HTTP API."""

from __future__ import annotations

import logging
from dataclasses import asdict
from time import perf_counter
from typing import Any

from pydantic import BaseModel, Field, model_validator

from mnemo.cache.lifecycle import CacheLifecycle
from mnemo.errors import CacheNotFoundError
from mnemo.ingest.pipeline import IndexPipeline
from mnemo.query.tiered import TieredQueryHandler, TieredQueryOptions
from mnemo.tools.registry import ToolRegistry, ToolSpec
from mnemo.types import CacheExpired

logger = logging.getLogger(__name__)

MIN_TTL_SECONDS = 60
MAX_TTL_SECONDS = 604800


class _SourcesInput(BaseModel):
    source: str | None = Field(default=None, description="Local file or directory")
    sources: list[str] | None = Field(default=None, description="Several sources combined under one alias")
    alias: str = Field(min_length=1, max_length=64)

    @model_validator(mode="after")
    def _require_source(self) -> "_SourcesInput":
        if not self.source and not self.sources:
            raise ValueError("Either source or sources must be provided")
        return self

    def source_list(self) -> list[str]:
        return list(self.sources) if self.sources else [self.source or ""]


class ContextLoadInput(_SourcesInput):
    ttl: int | None = Field(default=None, ge=MIN_TTL_SECONDS, le=MAX_TTL_SECONDS)
    system_instruction: str | None = None


class ContextQueryInput(BaseModel):
    alias: str = Field(min_length=1, max_length=64)
    query: str = Field(min_length=1)
    max_tokens: int = Field(default=1024, ge=1)
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    force_full_context: bool = False


class ContextListInput(BaseModel):
    pass


class ContextEvictInput(BaseModel):
    alias: str = Field(min_length=1, max_length=64)


class ContextStatsInput(BaseModel):
    alias: str | None = None


class ContextRefreshInput(BaseModel):
    alias: str = Field(min_length=1, max_length=64)
    ttl: int | None = Field(default=None, ge=MIN_TTL_SECONDS, le=MAX_TTL_SECONDS)
    system_instruction: str | None = None


class ContextIndexInput(_SourcesInput):
    pass


def register_context_tools(
    registry: ToolRegistry,
    *,
    lifecycle: CacheLifecycle,
    tiered: TieredQueryHandler,
    indexer: IndexPipeline | None = None,
) -> None:
    """Register the context tool set.

    Tools:
    - `context_load`: load sources into a named cache.
    - `context_query`: tiered query against an alias.
    - `context_list`: caches and retrieval indexes with expiry flags.
    - `context_evict`: drop a cache and its index.
    - `context_refresh`: reload a cache from its recorded sources.
    - `context_stats`: token totals and usage.
    - `context_index`: chunk and embed sources for retrieval.
    """

    async def _load(data: ContextLoadInput) -> dict[str, Any]:
        result = await lifecycle.load(
            data.alias,
            data.source_list(),
            ttl_seconds=data.ttl,
            system_instruction=data.system_instruction,
        )
        return {
            "success": True,
            "cache": asdict(result.record),
            "sources_loaded": result.sources_loaded,
            "timing": asdict(result.timing),
        }

    async def _query(data: ContextQueryInput) -> dict[str, Any]:
        start = perf_counter()
        outcome = await tiered.query(
            data.alias,
            data.query,
            TieredQueryOptions(
                force_full_context=data.force_full_context,
                max_output_tokens=data.max_tokens,
                temperature=data.temperature,
            ),
        )
        query_ms = (perf_counter() - start) * 1000.0
        if isinstance(outcome, CacheExpired):
            return {**asdict(outcome), "timing": {"query_ms": query_ms}}

        cached = outcome.cached_tokens_used or 0
        output_tokens = outcome.tokens_used - cached
        return {
            **asdict(outcome),
            "timing": {
                "query_ms": query_ms,
                "context_tokens": cached,
                "output_tokens": output_tokens,
                "tokens_per_second": round(output_tokens / query_ms * 1000) if query_ms > 0 else 0,
            },
        }

    async def _list(data: ContextListInput) -> dict[str, Any]:
        listing: dict[str, Any] = {"caches": [asdict(item) for item in await lifecycle.list()]}
        if indexer is not None:
            listing["indexes"] = [asdict(item) for item in indexer.list_indexes()]
        return listing

    async def _evict(data: ContextEvictInput) -> dict[str, Any]:
        evicted: dict[str, Any] = {}
        try:
            await lifecycle.evict(data.alias)
            evicted["cache"] = True
        except CacheNotFoundError:
            if indexer is None:
                raise
        if indexer is not None:
            dropped = indexer.drop(data.alias)
            if dropped is not None:
                evicted["index"] = True
                evicted["chunks"] = dropped
        if not evicted:
            raise CacheNotFoundError(data.alias)
        return {"success": True, "alias": data.alias, "evicted": evicted}

    async def _refresh(data: ContextRefreshInput) -> dict[str, Any]:
        result = await lifecycle.refresh(
            data.alias,
            ttl_seconds=data.ttl,
            system_instruction=data.system_instruction,
        )
        return {
            "success": True,
            "cache": asdict(result.record),
            "previous_token_count": result.previous_token_count,
            "new_token_count": result.new_token_count,
        }

    async def _stats(data: ContextStatsInput) -> dict[str, Any]:
        return asdict(await lifecycle.stats(data.alias))

    async def _index(data: ContextIndexInput) -> dict[str, Any]:
        if indexer is None:
            raise RuntimeError("Retrieval indexing is not configured")
        result = await indexer.index_sources(data.alias, data.source_list())
        return {"success": True, "index": asdict(result)}

    registry.register(
        ToolSpec(
            name="context_load",
            description=(
                "Load local files or directories into a named context cache. "
                "Use `sources` to combine several into one cache."
            ),
            args_schema=ContextLoadInput,
            handler=_load,
            tags=["cache", "write"],
        )
    )
    registry.register(
        ToolSpec(
            name="context_query",
            description=(
                "Query a loaded context. Answers from retrieved chunks when confident, "
                "otherwise from the full cached context."
            ),
            args_schema=ContextQueryInput,
            handler=_query,
            tags=["cache", "query"],
        )
    )
    registry.register(
        ToolSpec(
            name="context_list",
            description="List caches and retrieval indexes with expiry status.",
            args_schema=ContextListInput,
            handler=_list,
            tags=["cache"],
        )
    )
    registry.register(
        ToolSpec(
            name="context_evict",
            description="Remove a cache and any retrieval index under the same alias.",
            args_schema=ContextEvictInput,
            handler=_evict,
            tags=["cache", "write"],
        )
    )
    registry.register(
        ToolSpec(
            name="context_refresh",
            description="Reload a cache from its recorded sources, keeping its alias.",
            args_schema=ContextRefreshInput,
            handler=_refresh,
            tags=["cache", "write"],
        )
    )
    registry.register(
        ToolSpec(
            name="context_stats",
            description="Token totals and usage for one cache or all caches.",
            args_schema=ContextStatsInput,
            handler=_stats,
            tags=["cache", "usage"],
        )
    )
    registry.register(
        ToolSpec(
            name="context_index",
            description="Chunk and embed sources so queries can be answered from retrieval.",
            args_schema=ContextIndexInput,
            handler=_index,
            tags=["retrieval", "write"],
        )
    )
