"""Provider contract shared by every model backend."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx

from mnemo.errors import ProviderTimeoutError, UpstreamError
from mnemo.types import CacheHandle, CacheRecord, QueryResult


@dataclass(slots=True)
class CacheCreateOptions:
    ttl_seconds: int = 3600
    system_instruction: str | None = None
    model: str | None = None
    source: str | None = None


@dataclass(slots=True)
class QueryOptions:
    max_output_tokens: int | None = None
    temperature: float | None = None
    stop_sequences: list[str] = field(default_factory=list)


@runtime_checkable
class ModelProvider(Protocol):
    """A model backend able to hold a named context and answer against it.

    `create_cache` returns a record whose `name` is opaque to callers and
    whose `provider` identifies the backend that owns it.
    """

    provider: str
    model: str
    max_context_tokens: int

    async def create_cache(self, content: str, alias: str, options: CacheCreateOptions) -> CacheRecord:
        ...

    async def query_cache(self, name: str, query: str, options: QueryOptions) -> QueryResult:
        ...

    async def delete_cache(self, name: str) -> None:
        ...

    def estimate_tokens(self, text: str) -> int:
        ...

    async def is_available(self) -> bool:
        ...

    async def query(
        self,
        query: str,
        options: QueryOptions,
        *,
        context: str | None = None,
        system_instruction: str | None = None,
    ) -> QueryResult:
        ...


async def send_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    provider: str,
    timeout: float,
    **kwargs: Any,
) -> dict[str, Any]:
    """Issue one request and map transport failures onto the error taxonomy."""

    try:
        response = await client.request(method, url, timeout=timeout, **kwargs)
    except httpx.TimeoutException as exc:
        raise ProviderTimeoutError(provider, timeout) from exc
    except httpx.RequestError as exc:
        raise UpstreamError(f"{provider} request failed: {exc}", provider=provider) from exc

    if response.is_error:
        raise UpstreamError(
            f"{provider} API error: {response.status_code} {response.reason_phrase}",
            provider=provider,
            status=response.status_code,
            body=response.text,
        )
    if not response.content:
        return {}
    return response.json()


async def is_reachable(client: httpx.AsyncClient, url: str, *, timeout: float, **kwargs: Any) -> bool:
    """Health check that never raises."""

    try:
        response = await client.get(url, timeout=timeout, **kwargs)
    except httpx.HTTPError:
        return False
    return response.is_success


@runtime_checkable
class HandleRoutingProvider(ModelProvider, Protocol):
    """A provider fronting several backends that routes by `CacheHandle`."""

    async def query_handle(self, handle: CacheHandle, query: str, options: QueryOptions) -> QueryResult:
        ...

    async def delete_handle(self, handle: CacheHandle) -> None:
        ...
