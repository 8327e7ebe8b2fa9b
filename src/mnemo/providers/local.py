"""Bounded-context provider for OpenAI-compatible chat endpoints."""

from __future__ import annotations

import logging
import math
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

import httpx

from mnemo.config import LocalProviderConfig
from mnemo.errors import CacheNotFoundError, ContextTooLargeError
from mnemo.providers.base import CacheCreateOptions, QueryOptions, send_json, is_reachable
from mnemo.types import CacheRecord, QueryResult

logger = logging.getLogger(__name__)

LOCAL_PREFIX = "local:"
DEFAULT_MAX_OUTPUT_TOKENS = 4096
DEFAULT_TEMPERATURE = 0.7


class ContentStore(Protocol):
    """Holds cached context for providers without native caching."""

    async def set(self, key: str, content: str, ttl_seconds: int) -> None:
        ...

    async def get(self, key: str) -> str | None:
        ...

    async def delete(self, key: str) -> bool:
        ...


@dataclass(slots=True)
class _StoredContent:
    content: str
    expires_at: float


class InMemoryContentStore:
    """Process-local content store; entries vanish at TTL."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, _StoredContent] = {}

    async def set(self, key: str, content: str, ttl_seconds: int) -> None:
        self.sweep()
        self._entries[key] = _StoredContent(content=content, expires_at=self._clock() + ttl_seconds)

    async def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() > entry.expires_at:
            del self._entries[key]
            return None
        return entry.content

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def sweep(self) -> int:
        """Drop expired entries that were never read or deleted."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now > entry.expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class LocalProvider:
    """Serves cached context by re-sending it as the system message.

    Cache handles look like `local:<alias>:<hex>`.
    """

    provider = "local"

    def __init__(
        self,
        config: LocalProviderConfig | None = None,
        *,
        content_store: ContentStore | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or LocalProviderConfig()
        self.model = self.config.model
        self.max_context_tokens = self.config.max_context_tokens
        self._store = content_store or InMemoryContentStore()
        self._client = client or httpx.AsyncClient(base_url=self.config.base_url)

    def estimate_tokens(self, text: str) -> int:
        return math.ceil(len(text) / 3.5)

    async def create_cache(self, content: str, alias: str, options: CacheCreateOptions) -> CacheRecord:
        token_count = self.estimate_tokens(content)
        limit = math.floor(self.max_context_tokens * 0.9)
        if token_count > limit:
            raise ContextTooLargeError(token_count, limit, provider=self.provider)

        name = f"{LOCAL_PREFIX}{alias}:{secrets.token_hex(6)}"
        stored = content
        if options.system_instruction:
            stored = f"<system>\n{options.system_instruction}\n</system>\n\n{content}"
        await self._store.set(name, stored, options.ttl_seconds)

        now = datetime.now(timezone.utc)
        return CacheRecord(
            name=name,
            alias=alias,
            token_count=token_count,
            created_at=now,
            expires_at=now + timedelta(seconds=options.ttl_seconds),
            source=options.source or alias,
            model=self.model,
            provider=self.provider,
            system_instruction=options.system_instruction,
            ttl_seconds=options.ttl_seconds,
        )

    async def query_cache(self, name: str, query: str, options: QueryOptions) -> QueryResult:
        cached = await self._store.get(name)
        if cached is None:
            raise CacheNotFoundError(name, f"Local cache not found or expired: {name}")

        messages = [
            {
                "role": "system",
                "content": (
                    "You are a helpful assistant. The user has provided the following "
                    f"context for you to reference:\n\n{cached}"
                ),
            },
            {"role": "user", "content": query},
        ]
        data = await self._chat(messages, options)
        result = self._to_result(data, prompt=cached + query)
        result.cached_tokens_used = self.estimate_tokens(cached)
        return result

    async def query(
        self,
        query: str,
        options: QueryOptions,
        *,
        context: str | None = None,
        system_instruction: str | None = None,
    ) -> QueryResult:
        messages: list[dict[str, str]] = []
        if system_instruction:
            messages.append({"role": "system", "content": system_instruction})
        user = f"Context:\n{context}\n\nQuestion: {query}" if context else query
        messages.append({"role": "user", "content": user})
        data = await self._chat(messages, options)
        return self._to_result(data, prompt=(context or "") + query)

    async def delete_cache(self, name: str) -> None:
        if not await self._store.delete(name):
            raise CacheNotFoundError(name, f"Local cache not found: {name}")

    async def is_available(self) -> bool:
        return await is_reachable(
            self._client,
            "/v1/models",
            timeout=self.config.health_timeout_seconds,
            headers=self._headers(),
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _chat(self, messages: list[dict[str, str]], options: QueryOptions) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": options.max_output_tokens or DEFAULT_MAX_OUTPUT_TOKENS,
            "temperature": DEFAULT_TEMPERATURE if options.temperature is None else options.temperature,
        }
        if options.stop_sequences:
            body["stop"] = options.stop_sequences
        return await send_json(
            self._client,
            "POST",
            "/v1/chat/completions",
            provider=self.provider,
            timeout=self.config.request_timeout_seconds,
            json=body,
            headers=self._headers(),
        )

    def _to_result(self, data: dict[str, Any], *, prompt: str) -> QueryResult:
        choices = data.get("choices") or [{}]
        text = (choices[0].get("message") or {}).get("content") or ""
        usage = data.get("usage") or {}
        prompt_tokens = usage.get("prompt_tokens", self.estimate_tokens(prompt))
        completion_tokens = usage.get("completion_tokens", self.estimate_tokens(text))
        return QueryResult(
            response=text,
            tokens_used=prompt_tokens + completion_tokens,
            cached_tokens_used=0,
            model=self.model,
            provider=self.provider,
        )

    def _headers(self) -> dict[str, str]:
        if not self.config.api_key:
            return {}
        return {"Authorization": f"Bearer {self.config.api_key}"}
