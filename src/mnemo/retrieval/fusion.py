"""Rank fusion for the semantic and lexical retrieval routes."""

from __future__ import annotations

from abc import ABC, abstractmethod

from mnemo.config import RetrievalConfig
from mnemo.ingest.embedder import code_terms
from mnemo.types import ScoredChunk


class Reranker(ABC):
    """Reranker interface applied after fusion."""

    @abstractmethod
    def rerank(self, query: str, candidates: list[ScoredChunk]) -> list[ScoredChunk]:
        """Return candidates in the final ranking order."""


class ExportMatchReranker(Reranker):
    """Boosts chunks that declare a symbol named in the query."""

    def __init__(self, boost: float = 0.2) -> None:
        self.boost = boost

    def rerank(self, query: str, candidates: list[ScoredChunk]) -> list[ScoredChunk]:
        query_terms = set(code_terms(query))
        rescored: list[ScoredChunk] = []
        for item in candidates:
            exports = {name.lower() for name in item.chunk.exports or []}
            bonus = self.boost if exports & query_terms else 0.0
            rescored.append(
                ScoredChunk(
                    chunk=item.chunk,
                    score=item.score * (1 - self.boost) + bonus,
                    route=item.route,
                    rank=item.rank,
                )
            )
        return sorted(rescored, key=lambda x: x.score, reverse=True)


class FusionLayer:
    """Orders route outputs by reciprocal rank fusion, then reranks.

    Fused scores are ordering keys only and are not comparable across
    queries.
    """

    def __init__(
        self,
        config: RetrievalConfig | None = None,
        reranker: Reranker | None = None,
    ) -> None:
        self.config = config or RetrievalConfig()
        self.reranker = reranker or ExportMatchReranker()

    def fuse(
        self,
        query: str,
        route_results: dict[str, list[ScoredChunk]],
        *,
        top_k: int | None = None,
        rerank: bool = True,
    ) -> list[ScoredChunk]:
        if not route_results:
            return []

        rrf_scores: dict[str, float] = {}
        merged: dict[str, ScoredChunk] = {}
        for route_name, items in route_results.items():
            for rank, item in enumerate(items, start=1):
                chunk_id = item.chunk.id
                rrf_scores[chunk_id] = rrf_scores.get(chunk_id, 0.0) + 1.0 / (
                    self.config.rrf_k + rank
                )
                merged.setdefault(chunk_id, ScoredChunk(chunk=item.chunk, score=0.0, route=route_name))

        # RRF scores are tiny; scale them so the reranker bonus is comparable.
        ceiling = max(rrf_scores.values(), default=0.0) or 1.0
        fused = [
            ScoredChunk(
                chunk=item.chunk,
                score=rrf_scores[chunk_id] / ceiling,
                route=item.route,
            )
            for chunk_id, item in merged.items()
        ]

        if rerank:
            reranked = self.reranker.rerank(query, fused)
        else:
            reranked = sorted(fused, key=lambda x: x.score, reverse=True)
        limit = top_k or self.config.final_k
        return [
            ScoredChunk(chunk=item.chunk, score=item.score, route=item.route, rank=i + 1)
            for i, item in enumerate(reranked[:limit])
        ]
