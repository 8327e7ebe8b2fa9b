"""Retrieval-first query strategy with full-context escalation."""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass

from mnemo.cache.lifecycle import CacheLifecycle
from mnemo.config import TieredQueryConfig
from mnemo.errors import ProviderTimeoutError
from mnemo.providers.base import QueryOptions
from mnemo.query.synthesis import ChunkSynthesizer
from mnemo.retrieval.retriever import GeneratingRetrieval, RetrievalCollaborator, SearchOptions
from mnemo.types import CacheExpired, RetrievalResult, RetrievedChunk, TieredQueryResult

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TieredQueryOptions:
    """Per-call overrides; `None` means use the handler's configuration."""

    confidence_threshold: float | None = None
    force_full_context: bool = False
    max_rag_chunks: int | None = None
    max_output_tokens: int | None = None
    temperature: float | None = None
    system_prompt: str | None = None


def estimate_rag_tokens(chunks: list[RetrievedChunk], response: str) -> int:
    context_tokens = sum(math.ceil(len(chunk.content) / 4) for chunk in chunks)
    return context_tokens + math.ceil(len(response) / 4)


class TieredQueryHandler:
    """Answers from retrieved chunks when confident, else from the full cache.

    Per call: retrieval (scoped to the alias, bounded by a timeout) produces
    a confidence. At or above the threshold, with at least one chunk, the
    answer is synthesized from those chunks alone. Anything else (low
    confidence, retrieval failure, synthesis failure, no retrieval configured)
    escalates to the named cache via the lifecycle.
    """

    def __init__(
        self,
        retrieval: RetrievalCollaborator | None,
        lifecycle: CacheLifecycle,
        synthesizer: ChunkSynthesizer | None = None,
        config: TieredQueryConfig | None = None,
    ) -> None:
        self.retrieval = retrieval
        self.lifecycle = lifecycle
        self.synthesizer = synthesizer
        self.config = config or TieredQueryConfig()

    async def query(
        self,
        alias: str,
        query: str,
        options: TieredQueryOptions | None = None,
    ) -> TieredQueryResult | CacheExpired:
        options = options or TieredQueryOptions()
        max_output_tokens = options.max_output_tokens or self.config.max_output_tokens
        temperature = self.config.temperature if options.temperature is None else options.temperature

        if not options.force_full_context and self.retrieval is not None:
            answer = await self._try_rag(
                self.retrieval, alias, query, options, max_output_tokens, temperature
            )
            if answer is not None:
                return answer

        return await self._full_context(alias, query, max_output_tokens, temperature)

    async def _try_rag(
        self,
        retrieval: RetrievalCollaborator,
        alias: str,
        query: str,
        options: TieredQueryOptions,
        max_output_tokens: int,
        temperature: float,
    ) -> TieredQueryResult | None:
        threshold = (
            self.config.confidence_threshold
            if options.confidence_threshold is None
            else options.confidence_threshold
        )
        search = SearchOptions(
            scope=alias,
            max_results=options.max_rag_chunks or self.config.max_rag_chunks,
            rewrite_query=True,
        )

        result = await self._search(retrieval, query, search)
        if result.confidence < threshold or not result.chunks:
            logger.info(
                "Retrieval confidence %.2f < %.2f for %s, escalating to full context",
                result.confidence,
                threshold,
                alias,
            )
            return None

        try:
            response, model = await self._synthesize(
                retrieval,
                query,
                result.chunks,
                search,
                max_output_tokens,
                temperature,
                options.system_prompt,
            )
        except Exception as exc:
            logger.warning("Synthesis failed for %s, escalating to full context: %s", alias, exc)
            return None

        return TieredQueryResult(
            response=response,
            tier="rag",
            model=model,
            tokens_used=estimate_rag_tokens(result.chunks, response),
            confidence=result.confidence,
            chunk_count=len(result.chunks),
        )

    async def _search(
        self, retrieval: RetrievalCollaborator, query: str, search: SearchOptions
    ) -> RetrievalResult:
        try:
            return await asyncio.wait_for(
                retrieval.search(query, search),
                timeout=self.config.retrieval_timeout_seconds,
            )
        except Exception as exc:
            logger.warning("Retrieval unavailable for %s: %r", search.scope, exc)
            return RetrievalResult(chunks=[], confidence=0.0)

    async def _synthesize(
        self,
        retrieval: RetrievalCollaborator,
        query: str,
        chunks: list[RetrievedChunk],
        search: SearchOptions,
        max_output_tokens: int,
        temperature: float,
        system_prompt: str | None,
    ) -> tuple[str, str]:
        if self.synthesizer is None:
            if not isinstance(retrieval, GeneratingRetrieval) or not retrieval.supports_generation:
                raise RuntimeError("No synthesizer configured and retrieval cannot generate")
            generated = await retrieval.generate(query, search)
            return generated.response, generated.model

        timeout = self.config.synthesis_timeout_seconds
        try:
            response = await asyncio.wait_for(
                self.synthesizer.synthesize(
                    query,
                    chunks,
                    max_output_tokens=max_output_tokens,
                    temperature=temperature,
                    system_prompt=system_prompt,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ProviderTimeoutError("synthesis", timeout) from exc
        return response, self.synthesizer.model_name

    async def _full_context(
        self,
        alias: str,
        query: str,
        max_output_tokens: int,
        temperature: float,
    ) -> TieredQueryResult | CacheExpired:
        outcome = await self.lifecycle.query(
            alias,
            query,
            QueryOptions(max_output_tokens=max_output_tokens, temperature=temperature),
        )
        if isinstance(outcome, CacheExpired):
            return outcome

        fallback = self.config.fallback_provider
        served_by_fallback = outcome.provider == fallback or fallback in outcome.model.lower()
        return TieredQueryResult(
            response=outcome.response,
            tier="fallback" if served_by_fallback else "context",
            model=outcome.model,
            tokens_used=outcome.tokens_used,
            cached_tokens_used=outcome.cached_tokens_used,
        )
