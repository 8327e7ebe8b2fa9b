"""FastAPI entrypoint and composition root."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from mnemo.cache.lifecycle import CacheLifecycle
from mnemo.cache.storage import CacheStorage, InMemoryCacheStorage, SqliteCacheStorage
from mnemo.config import Settings
from mnemo.errors import (
    CacheNotFoundError,
    ContextTooLargeError,
    FallbackDeniedError,
    MnemoError,
    ProviderTimeoutError,
    SourceLoadError,
    TokenLimitError,
    UpstreamError,
)
from mnemo.ingest.chunker import CodeChunker
from mnemo.ingest.embedder import HashingEmbedder
from mnemo.ingest.sources import default_loader_registry
from mnemo.ingest.pipeline import IndexPipeline
from mnemo.obs.usage import InMemoryUsageLogger
from mnemo.providers.fallback import FallbackClient, FallbackPermission
from mnemo.providers.gemini import GeminiProvider
from mnemo.providers.local import LocalProvider
from mnemo.query.synthesis import ChunkSynthesizer
from mnemo.query.tiered import TieredQueryHandler
from mnemo.retrieval.fusion import FusionLayer
from mnemo.retrieval.retriever import ChunkRetriever
from mnemo.retrieval.vector_store import FaissVectorStore, InMemoryVectorStore, VectorStore
from mnemo.tools.context_tools import register_context_tools
from mnemo.tools.registry import ToolRegistry
from mnemo.types import ToolTrace

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: list[tuple[type[MnemoError], int]] = [
    (CacheNotFoundError, 404),
    (ContextTooLargeError, 409),
    (TokenLimitError, 409),
    (FallbackDeniedError, 403),
    (SourceLoadError, 400),
    (UpstreamError, 502),
    (ProviderTimeoutError, 504),
]


def status_for(exc: MnemoError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


@dataclass(slots=True)
class Services:
    registry: ToolRegistry
    lifecycle: CacheLifecycle
    provider: FallbackClient
    traces: list[ToolTrace]


def _create_synthesizer(settings: Settings) -> ChunkSynthesizer:
    from langchain_openai import ChatOpenAI

    llm = ChatOpenAI(
        model=settings.synthesis_model,
        base_url=f"{(settings.synthesis_base_url or settings.local.base_url).rstrip('/')}/v1",
        api_key=settings.local.api_key or "not-needed",
        timeout=settings.tiered.synthesis_timeout_seconds,
    )
    return ChunkSynthesizer(llm, model_name=settings.synthesis_model)


def build_services(
    settings: Settings | None = None,
    *,
    on_fallback_needed: FallbackPermission | None = None,
    synthesizer: ChunkSynthesizer | None = None,
    local: LocalProvider | None = None,
    gemini: GeminiProvider | None = None,
) -> Services:
    """Wire every component from settings. Nothing is created at import time."""

    settings = settings or Settings.from_env()
    storage: CacheStorage = (
        SqliteCacheStorage(settings.storage_path) if settings.storage_path else InMemoryCacheStorage()
    )
    loaders = default_loader_registry(settings.loader)
    provider = FallbackClient(
        local or LocalProvider(settings.local),
        gemini or GeminiProvider(settings.gemini),
        on_fallback_needed=on_fallback_needed,
        config=settings.fallback,
    )
    lifecycle = CacheLifecycle(
        provider,
        storage,
        loaders,
        usage_logger=InMemoryUsageLogger(),
        config=settings.cache,
    )

    embedder = HashingEmbedder()
    vector_store: VectorStore = (
        FaissVectorStore(embedder) if settings.vector_store == "faiss" else InMemoryVectorStore()
    )
    indexer = IndexPipeline(loaders, CodeChunker(settings.chunking), embedder, vector_store)
    retriever = ChunkRetriever(vector_store, embedder, FusionLayer(settings.retrieval), settings.retrieval)
    tiered = TieredQueryHandler(
        retriever,
        lifecycle,
        synthesizer or _create_synthesizer(settings),
        settings.tiered,
    )

    registry = ToolRegistry()
    register_context_tools(registry, lifecycle=lifecycle, tiered=tiered, indexer=indexer)
    traces: list[ToolTrace] = []
    registry.set_observer(traces.append)
    return Services(registry=registry, lifecycle=lifecycle, provider=provider, traces=traces)


def create_app(services: Services | None = None) -> FastAPI:
    services = services or build_services()
    app = FastAPI(title="Mnemo Context Engine", version="0.1.0")

    @app.exception_handler(MnemoError)
    async def _mnemo_error(request: Request, exc: MnemoError) -> JSONResponse:
        status = status_for(exc)
        if status >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=status, content=jsonable_encoder(exc.to_dict()))

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "providers": await services.provider.provider_status(),
            "tools": len(services.registry.specs()),
            "trace_count": len(services.traces),
        }

    @app.get("/tools")
    def tools() -> dict[str, Any]:
        return {"items": services.registry.describe()}

    @app.post("/tools/{name}")
    async def run_tool(name: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            output = await services.registry.execute(name, payload or {})
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValidationError as exc:
            raise HTTPException(
                status_code=422,
                detail=jsonable_encoder(exc.errors(include_url=False, include_context=False)),
            ) from exc
        return jsonable_encoder(output)

    @app.get("/traces")
    def traces(limit: int = 20) -> dict[str, Any]:
        return {"items": jsonable_encoder(services.traces[-limit:])}

    return app
