"""Primary/fallback provider composition with permissioned escalation."""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

from mnemo.config import FallbackConfig
from mnemo.errors import ContextTooLargeError, FallbackDeniedError, ProviderTimeoutError
from mnemo.providers.base import CacheCreateOptions, ModelProvider, QueryOptions
from mnemo.providers.local import LOCAL_PREFIX
from mnemo.types import CacheHandle, CacheRecord, FallbackEvent, FallbackReason, QueryResult

logger = logging.getLogger(__name__)

FallbackPermission = Callable[[FallbackEvent], Awaitable[bool]]


class FallbackClient:
    """Presents a bounded-context primary and an expandable fallback as one provider.

    Cache creation escalates to the fallback only with permission from
    `on_fallback_needed`. Without a callback, escalation is allowed.
    A primary that times out asks with reason `timeout`; any other runtime
    failure asks with `local_error`.
    Queries and deletes always go to the provider that owns the cache and are
    never retried on the other one. Owners of expired caches are forgotten
    on the next create.
    """

    def __init__(
        self,
        primary: ModelProvider,
        fallback: ModelProvider,
        *,
        on_fallback_needed: FallbackPermission | None = None,
        config: FallbackConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.primary = primary
        self.fallback = fallback
        self.config = config or FallbackConfig()
        self._on_fallback_needed = on_fallback_needed
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._owners: dict[str, tuple[str, datetime]] = {}

        self.provider = f"{primary.provider}+{fallback.provider}"
        self.model = primary.model
        self.max_context_tokens = fallback.max_context_tokens

    def estimate_tokens(self, text: str) -> int:
        return self.primary.estimate_tokens(text)

    async def create_cache(self, content: str, alias: str, options: CacheCreateOptions) -> CacheRecord:
        estimated = self.primary.estimate_tokens(content)
        limit = math.floor(self.primary.max_context_tokens * self.config.context_headroom)

        if estimated > limit:
            if not self.config.auto_fallback_for_large_context:
                raise ContextTooLargeError(estimated, limit, provider=self.primary.provider)
            return await self._escalate(
                FallbackReason.CONTEXT_TOO_LARGE,
                f"Content has ~{estimated} tokens, exceeds {self.primary.provider} limit of {limit}. "
                f"{self.fallback.provider} can handle up to {self.fallback.max_context_tokens} tokens.",
                content,
                alias,
                options,
            )

        if not await self.primary.is_available():
            return await self._escalate(
                FallbackReason.LOCAL_UNAVAILABLE,
                f"{self.primary.provider} model {self.primary.model} is not responding",
                content,
                alias,
                options,
            )

        try:
            record = await self.primary.create_cache(content, alias, options)
        except ProviderTimeoutError as exc:
            return await self._escalate(FallbackReason.TIMEOUT, str(exc), content, alias, options)
        except Exception as exc:
            logger.warning("Primary cache creation for %s failed: %s", alias, exc)
            return await self._escalate(
                FallbackReason.LOCAL_ERROR,
                f"{self.primary.provider} error: {exc}",
                content,
                alias,
                options,
            )

        self._remember(record, self.primary)
        return record

    async def query_cache(self, name: str, query: str, options: QueryOptions) -> QueryResult:
        return await self.query_handle(CacheHandle(provider="", name=name), query, options)

    async def query_handle(self, handle: CacheHandle, query: str, options: QueryOptions) -> QueryResult:
        return await self._route(handle).query_cache(handle.name, query, options)

    async def delete_cache(self, name: str) -> None:
        await self.delete_handle(CacheHandle(provider="", name=name))

    async def delete_handle(self, handle: CacheHandle) -> None:
        try:
            await self._route(handle).delete_cache(handle.name)
        finally:
            self._owners.pop(handle.name, None)

    async def query(
        self,
        query: str,
        options: QueryOptions,
        *,
        context: str | None = None,
        system_instruction: str | None = None,
    ) -> QueryResult:
        kwargs: dict[str, Any] = {"context": context, "system_instruction": system_instruction}

        if not await self.primary.is_available():
            await self._require_permission(
                FallbackReason.LOCAL_UNAVAILABLE, "Local model not responding for query"
            )
            return await self.fallback.query(query, options, **kwargs)

        try:
            return await self.primary.query(query, options, **kwargs)
        except ProviderTimeoutError as exc:
            reason, detail = FallbackReason.TIMEOUT, str(exc)
        except Exception as exc:
            reason, detail = FallbackReason.LOCAL_ERROR, f"Query error: {exc}"
        await self._require_permission(reason, detail)
        return await self.fallback.query(query, options, **kwargs)

    async def is_available(self) -> bool:
        primary_ok, fallback_ok = await asyncio.gather(
            self.primary.is_available(), self.fallback.is_available()
        )
        return primary_ok or fallback_ok

    async def provider_status(self) -> dict[str, dict[str, Any]]:
        primary_ok, fallback_ok = await asyncio.gather(
            self.primary.is_available(), self.fallback.is_available()
        )
        return {
            "primary": {
                "provider": self.primary.provider,
                "available": primary_ok,
                "model": self.primary.model,
                "max_tokens": self.primary.max_context_tokens,
            },
            "fallback": {
                "provider": self.fallback.provider,
                "available": fallback_ok,
                "model": self.fallback.model,
                "max_tokens": self.fallback.max_context_tokens,
            },
        }

    async def _escalate(
        self,
        reason: FallbackReason,
        detail: str,
        content: str,
        alias: str,
        options: CacheCreateOptions,
    ) -> CacheRecord:
        await self._require_permission(reason, detail)
        record = await self.fallback.create_cache(content, alias, options)
        self._remember(record, self.fallback)
        return record

    async def _require_permission(self, reason: FallbackReason, detail: str) -> None:
        event = FallbackEvent(
            reason=reason,
            primary_model=self.primary.model,
            fallback_model=self.fallback.model,
            detail=detail,
        )
        if self._on_fallback_needed is None:
            logger.warning("Escalating to %s without a permission callback: %s", self.fallback.provider, detail)
            return
        if not await self._on_fallback_needed(event):
            logger.info("Fallback to %s denied (%s)", self.fallback.provider, reason.value)
            raise FallbackDeniedError(reason)
        logger.warning("Escalating to %s (%s): %s", self.fallback.provider, reason.value, detail)

    def _remember(self, record: CacheRecord, owner: ModelProvider) -> None:
        record.provider = owner.provider
        now = self._clock()
        for name in [name for name, (_, expires_at) in self._owners.items() if now >= expires_at]:
            del self._owners[name]
        self._owners[record.name] = (owner.provider, record.expires_at)

    def known_owners(self) -> dict[str, str]:
        return {name: provider for name, (provider, _) in self._owners.items()}

    def _route(self, handle: CacheHandle) -> ModelProvider:
        remembered = self._owners.get(handle.name)
        owner = handle.provider or (remembered[0] if remembered else None)
        if owner == self.primary.provider:
            return self.primary
        if owner == self.fallback.provider:
            return self.fallback
        # Handles persisted without an owner.
        target = self.primary if handle.name.startswith(LOCAL_PREFIX) else self.fallback
        logger.debug("Routing untagged handle %s to %s", handle.name, target.provider)
        return target
