"""Expandable-context provider backed by Gemini context caching."""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from mnemo.config import GeminiProviderConfig
from mnemo.errors import CacheNotFoundError, ContextTooLargeError, UpstreamError
from mnemo.providers.base import CacheCreateOptions, QueryOptions, is_reachable, send_json
from mnemo.types import CacheRecord, QueryResult

logger = logging.getLogger(__name__)


class GeminiProvider:
    """Creates `cachedContents` once and references them by name.

    Handles are the resource names Gemini returns, `cachedContents/<id>`.
    """

    provider = "gemini"

    def __init__(
        self,
        config: GeminiProviderConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or GeminiProviderConfig()
        self.model = self.config.model
        self.max_context_tokens = self.config.max_context_tokens
        base_url = f"{self.config.base_url.rstrip('/')}/{self.config.api_version}/"
        self._client = client or httpx.AsyncClient(base_url=base_url)

    def estimate_tokens(self, text: str) -> int:
        return math.ceil(len(text) / 4)

    async def create_cache(self, content: str, alias: str, options: CacheCreateOptions) -> CacheRecord:
        token_count = self.estimate_tokens(content)
        if token_count > self.max_context_tokens:
            raise ContextTooLargeError(token_count, self.max_context_tokens, provider=self.provider)

        model = options.model or self.model
        body: dict[str, Any] = {
            "model": f"models/{model}",
            "displayName": alias,
            "contents": [{"role": "user", "parts": [{"text": content}]}],
            "ttl": f"{options.ttl_seconds}s",
        }
        if options.system_instruction:
            body["systemInstruction"] = {"parts": [{"text": options.system_instruction}]}

        data = await self._send("POST", "cachedContents", json=body)
        name = data.get("name")
        if not name:
            raise UpstreamError("Gemini did not return a cache name", provider=self.provider, body=str(data))

        usage = data.get("usageMetadata") or {}
        now = datetime.now(timezone.utc)
        logger.info("Created Gemini cache %s for %s", name, alias)
        return CacheRecord(
            name=name,
            alias=alias,
            token_count=usage.get("totalTokenCount", token_count),
            created_at=now,
            expires_at=_parse_expiry(data.get("expireTime")) or now + timedelta(seconds=options.ttl_seconds),
            source=options.source or alias,
            model=model,
            provider=self.provider,
            system_instruction=options.system_instruction,
            ttl_seconds=options.ttl_seconds,
        )

    async def query_cache(self, name: str, query: str, options: QueryOptions) -> QueryResult:
        body = {
            "cachedContent": name,
            "contents": [{"role": "user", "parts": [{"text": query}]}],
            "generationConfig": self._generation_config(options),
        }
        try:
            data = await self._send("POST", f"models/{self.model}:generateContent", json=body)
        except UpstreamError as exc:
            if exc.status == 404:
                raise CacheNotFoundError(name, f"Gemini cache not found or expired: {name}") from exc
            raise
        return self._to_result(data)

    async def query(
        self,
        query: str,
        options: QueryOptions,
        *,
        context: str | None = None,
        system_instruction: str | None = None,
    ) -> QueryResult:
        text = f"Context:\n{context}\n\nQuestion: {query}" if context else query
        body: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": text}]}],
            "generationConfig": self._generation_config(options),
        }
        if system_instruction:
            body["systemInstruction"] = {"parts": [{"text": system_instruction}]}
        data = await self._send("POST", f"models/{self.model}:generateContent", json=body)
        return self._to_result(data)

    async def delete_cache(self, name: str) -> None:
        try:
            await self._send("DELETE", name)
        except UpstreamError as exc:
            if exc.status == 404:
                raise CacheNotFoundError(name, f"Gemini cache not found: {name}") from exc
            raise

    async def is_available(self) -> bool:
        return await is_reachable(
            self._client,
            "models",
            timeout=self.config.health_timeout_seconds,
            headers=self._headers(),
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _send(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        return await send_json(
            self._client,
            method,
            path,
            provider=self.provider,
            timeout=self.config.request_timeout_seconds,
            headers=self._headers(),
            **kwargs,
        )

    def _headers(self) -> dict[str, str]:
        if not self.config.api_key:
            return {}
        return {"x-goog-api-key": self.config.api_key}

    @staticmethod
    def _generation_config(options: QueryOptions) -> dict[str, Any]:
        config: dict[str, Any] = {}
        if options.max_output_tokens is not None:
            config["maxOutputTokens"] = options.max_output_tokens
        if options.temperature is not None:
            config["temperature"] = options.temperature
        if options.stop_sequences:
            config["stopSequences"] = options.stop_sequences
        return config

    def _to_result(self, data: dict[str, Any]) -> QueryResult:
        candidates = data.get("candidates") or []
        parts = (candidates[0].get("content") or {}).get("parts", []) if candidates else []
        text = "".join(part.get("text", "") for part in parts)
        usage = data.get("usageMetadata") or {}
        total = usage.get(
            "totalTokenCount",
            usage.get("promptTokenCount", 0) + usage.get("candidatesTokenCount", 0),
        )
        return QueryResult(
            response=text,
            tokens_used=total,
            cached_tokens_used=usage.get("cachedContentTokenCount", 0),
            model=data.get("modelVersion") or self.model,
            provider=self.provider,
        )


def _parse_expiry(value: str | None) -> datetime | None:
    if not value:
        return None
    # Gemini returns RFC 3339 with nanoseconds and a Z suffix.
    head, _, fraction = value.rstrip("Z").partition(".")
    parsed = datetime.fromisoformat(head).replace(tzinfo=timezone.utc)
    if fraction:
        parsed += timedelta(microseconds=int(fraction[:6].ljust(6, "0")))
    return parsed
