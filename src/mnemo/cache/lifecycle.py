"""Named-cache lifecycle: load, query, list, evict, refresh, stats."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from mnemo.cache.storage import CacheStorage
from mnemo.config import CacheConfig
from mnemo.errors import CacheNotFoundError, SourceLoadError
from mnemo.ingest.loader import LoaderRegistry
from mnemo.obs.usage import Timer, UsageLogger
from mnemo.providers.base import CacheCreateOptions, HandleRoutingProvider, ModelProvider, QueryOptions
from mnemo.types import CacheExpired, CacheRecord, LoadedSource, QueryResult, UsageEvent, UsageStats

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LoadTiming:
    load_ms: float
    tokens_loaded: int
    tokens_per_second: int


@dataclass(slots=True)
class LoadResult:
    record: CacheRecord
    sources_loaded: int
    timing: LoadTiming


@dataclass(slots=True)
class RefreshResult:
    record: CacheRecord
    previous_token_count: int
    new_token_count: int


@dataclass(slots=True)
class CacheListing:
    alias: str
    token_count: int
    expires_at: datetime
    source: str
    model: str
    provider: str
    expired: bool


@dataclass(slots=True)
class CacheStats:
    total_caches: int
    total_tokens: int
    caches: list[dict[str, int | str]] = field(default_factory=list)
    usage: UsageStats | None = None


def combine_sources(loaded: list[LoadedSource], names: list[str], *, separator: str = " + ") -> LoadedSource:
    """Merge several loaded sources into one document with per-source headers."""

    file_count = sum(source.file_count for source in loaded)
    lines = [
        "# Combined Context",
        f"# Sources: {', '.join(names)}",
        f"# Total Files: {file_count}",
        f"# Generated: {datetime.now(timezone.utc).isoformat()}",
        "",
    ]
    for i, (source, name) in enumerate(zip(loaded, names, strict=True), start=1):
        lines.extend([f"## Source {i}: {name}", "", source.content, ""])

    return LoadedSource(
        content="\n".join(lines),
        files=[f for source in loaded for f in source.files],
        total_tokens=sum(source.total_tokens for source in loaded),
        file_count=file_count,
        metadata={"source": separator.join(names), "loaded_at": datetime.now(timezone.utc)},
    )


class CacheLifecycle:
    """Owns the alias -> cache record mapping and the provider calls behind it.

    Cleanup of superseded provider caches is best effort: failures are logged
    and the operation carries on. Everything else propagates.
    """

    def __init__(
        self,
        provider: ModelProvider,
        storage: CacheStorage,
        loaders: LoaderRegistry,
        usage_logger: UsageLogger | None = None,
        config: CacheConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.provider = provider
        self.storage = storage
        self.loaders = loaders
        self.usage_logger = usage_logger
        self.config = config or CacheConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def load(
        self,
        alias: str,
        sources: list[str],
        *,
        ttl_seconds: int | None = None,
        system_instruction: str | None = None,
    ) -> LoadResult:
        if not sources:
            raise SourceLoadError(alias, "No sources provided")

        with Timer() as timer:
            existing = await self.storage.get_by_alias(alias)
            if existing is not None:
                await self._discard_provider_cache(existing)
                await self.storage.delete_by_alias(alias)

            loaded = await self._resolve(sources)
            record = await self._create(
                alias,
                loaded,
                ttl_seconds or self.config.default_ttl_seconds,
                system_instruction or self.config.system_instruction,
            )
            await self.storage.save(record)

        self._log(record.name, "load", loaded.total_tokens, 0, record.model)
        seconds = timer.elapsed_ms / 1000.0
        logger.info("Loaded %s (%d tokens) into %s", alias, record.token_count, record.name)
        return LoadResult(
            record=record,
            sources_loaded=len(sources),
            timing=LoadTiming(
                load_ms=timer.elapsed_ms,
                tokens_loaded=loaded.total_tokens,
                tokens_per_second=round(loaded.total_tokens / seconds) if seconds > 0 else 0,
            ),
        )

    async def query(
        self,
        alias: str,
        query: str,
        options: QueryOptions | None = None,
    ) -> QueryResult | CacheExpired:
        record = await self.storage.get_by_alias(alias)
        if record is None:
            raise CacheNotFoundError(alias)
        if record.is_expired(self._clock()):
            # The record stays so refresh can find the source.
            return CacheExpired(alias=alias, expired_at=record.expires_at)

        options = options or QueryOptions()
        if isinstance(self.provider, HandleRoutingProvider):
            result = await self.provider.query_handle(record.handle, query, options)
        else:
            result = await self.provider.query_cache(record.name, query, options)
        self._log(record.name, "query", result.tokens_used, result.cached_tokens_used, result.model)
        return result

    async def list(self) -> list[CacheListing]:
        now = self._clock()
        return [
            CacheListing(
                alias=record.alias,
                token_count=record.token_count,
                expires_at=record.expires_at,
                source=record.source,
                model=record.model,
                provider=record.provider,
                expired=record.is_expired(now),
            )
            for record in await self.storage.list()
        ]

    async def evict(self, alias: str) -> CacheRecord:
        record = await self.storage.get_by_alias(alias)
        if record is None:
            raise CacheNotFoundError(alias)
        await self._discard_provider_cache(record)
        self._log(record.name, "evict", 0, 0, record.model)
        await self.storage.delete_by_alias(alias)
        return record

    async def refresh(
        self,
        alias: str,
        *,
        ttl_seconds: int | None = None,
        system_instruction: str | None = None,
    ) -> RefreshResult:
        existing = await self.storage.get_by_alias(alias)
        if existing is None:
            raise CacheNotFoundError(alias)

        sources = existing.source.split(self.config.composite_separator)
        ttl = ttl_seconds or existing.effective_ttl_seconds
        instruction = system_instruction or existing.system_instruction or self.config.system_instruction

        loaded = await self._resolve(sources)
        await self._discard_provider_cache(existing)
        record = await self._create(alias, loaded, ttl, instruction)
        await self.storage.update(alias, record)

        self._log(record.name, "refresh", loaded.total_tokens, 0, record.model)
        logger.info("Refreshed %s: %d -> %d tokens", alias, existing.token_count, record.token_count)
        return RefreshResult(
            record=record,
            previous_token_count=existing.token_count,
            new_token_count=record.token_count,
        )

    async def stats(self, alias: str | None = None) -> CacheStats:
        records = await self.storage.list()
        if alias is not None:
            records = [r for r in records if r.alias == alias]
            if not records:
                raise CacheNotFoundError(alias)
        usage = self.usage_logger.stats() if self.usage_logger is not None else None
        return CacheStats(
            total_caches=len(records),
            total_tokens=sum(r.token_count for r in records),
            caches=[{"alias": r.alias, "token_count": r.token_count} for r in records],
            usage=usage,
        )

    async def _resolve(self, sources: list[str]) -> LoadedSource:
        if len(sources) == 1:
            loaded = await self.loaders.load(sources[0])
            loaded.metadata["source"] = sources[0]
            return loaded
        parts = await asyncio.gather(*(self.loaders.load(source) for source in sources))
        return combine_sources(list(parts), sources, separator=self.config.composite_separator)

    async def _create(
        self,
        alias: str,
        loaded: LoadedSource,
        ttl_seconds: int,
        system_instruction: str | None,
    ) -> CacheRecord:
        record = await self.provider.create_cache(
            loaded.content,
            alias,
            CacheCreateOptions(
                ttl_seconds=ttl_seconds,
                system_instruction=system_instruction,
                source=loaded.source,
            ),
        )
        record.source = loaded.source
        record.token_count = loaded.total_tokens
        record.system_instruction = system_instruction
        return record

    async def _discard_provider_cache(self, record: CacheRecord) -> None:
        try:
            if isinstance(self.provider, HandleRoutingProvider):
                await self.provider.delete_handle(record.handle)
            else:
                await self.provider.delete_cache(record.name)
        except Exception as exc:
            logger.warning("Ignoring failed delete of %s for %s: %s", record.name, record.alias, exc)

    def _log(self, cache_name: str, operation: str, tokens: int, cached: int, model: str) -> None:
        if self.usage_logger is None:
            return
        self.usage_logger.log(
            UsageEvent(
                cache_name=cache_name,
                operation=operation,
                tokens_used=tokens,
                cached_tokens_used=cached,
                model=model,
                timestamp=self._clock(),
            )
        )
