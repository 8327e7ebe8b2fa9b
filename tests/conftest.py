"""Shared fake model providers."""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone

import pytest

from mnemo.errors import CacheNotFoundError
from mnemo.providers.base import CacheCreateOptions, QueryOptions
from mnemo.types import CacheRecord, QueryResult


class FakeProvider:
    """In-process model provider that records every call."""

    def __init__(
        self,
        provider: str = "local",
        model: str = "fake-model",
        max_context_tokens: int = 1000,
    ) -> None:
        self.provider = provider
        self.model = model
        self.max_context_tokens = max_context_tokens
        self.available = True
        self.create_error: Exception | None = None
        self.query_error: Exception | None = None
        self.caches: dict[str, str] = {}
        self.created: list[str] = []
        self.deleted: list[str] = []
        self.queried: list[tuple[str, str]] = []

    def estimate_tokens(self, text: str) -> int:
        return math.ceil(len(text) / 4)

    async def create_cache(self, content: str, alias: str, options: CacheCreateOptions) -> CacheRecord:
        if self.create_error is not None:
            raise self.create_error
        name = f"{self.provider}:{alias}:{len(self.created) + 1}"
        self.caches[name] = content
        self.created.append(name)
        now = datetime.now(timezone.utc)
        return CacheRecord(
            name=name,
            alias=alias,
            token_count=self.estimate_tokens(content),
            created_at=now,
            expires_at=now + timedelta(seconds=options.ttl_seconds),
            source=options.source or alias,
            model=self.model,
            provider=self.provider,
            system_instruction=options.system_instruction,
            ttl_seconds=options.ttl_seconds,
        )

    async def query_cache(self, name: str, query: str, options: QueryOptions) -> QueryResult:
        if name not in self.caches:
            raise CacheNotFoundError(name)
        self.queried.append((name, query))
        return QueryResult(
            response=f"{self.provider} answer",
            tokens_used=120,
            cached_tokens_used=100,
            model=self.model,
            provider=self.provider,
        )

    async def delete_cache(self, name: str) -> None:
        if self.caches.pop(name, None) is None:
            raise CacheNotFoundError(name)
        self.deleted.append(name)

    async def is_available(self) -> bool:
        return self.available

    async def query(
        self,
        query: str,
        options: QueryOptions,
        *,
        context: str | None = None,
        system_instruction: str | None = None,
    ) -> QueryResult:
        if self.query_error is not None:
            raise self.query_error
        self.queried.append(("", query))
        return QueryResult(
            response=f"{self.provider} direct answer",
            tokens_used=10,
            cached_tokens_used=0,
            model=self.model,
            provider=self.provider,
        )


@pytest.fixture
def primary() -> FakeProvider:
    return FakeProvider(provider="local", model="nemotron-3-nano", max_context_tokens=1000)


@pytest.fixture
def fallback() -> FakeProvider:
    return FakeProvider(provider="gemini", model="gemini-2.0-flash-001", max_context_tokens=1_000_000)
