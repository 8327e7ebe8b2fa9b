"""Dual-route chunk retriever and retrieval confidence."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from mnemo.config import RetrievalConfig
from mnemo.errors import RetrievalUnavailableError
from mnemo.ingest.chunker import chunk_to_vector_metadata
from mnemo.ingest.embedder import Embedder
from mnemo.retrieval.fusion import FusionLayer
from mnemo.retrieval.vector_store import VectorStore
from mnemo.types import GeneratedAnswer, RetrievalResult, RetrievedChunk

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE_WEIGHTS = (0.5, 0.3, 0.2)

_QUESTION_WORDS = frozenset(
    {
        "a", "an", "and", "are", "can", "could", "do", "does", "explain", "find",
        "for", "how", "i", "in", "is", "it", "me", "of", "on", "or", "please",
        "show", "tell", "the", "this", "to", "what", "where", "which", "who",
        "why", "with", "work", "works",
    }
)


@dataclass(slots=True)
class SearchOptions:
    scope: str | None = None
    max_results: int = 10
    score_threshold: float | None = None
    rewrite_query: bool = False
    rerank: bool = True


@runtime_checkable
class RetrievalCollaborator(Protocol):
    """Anything that can rank stored chunks for a query."""

    supports_generation: bool

    async def search(self, query: str, options: SearchOptions) -> RetrievalResult:
        ...

    async def is_available(self) -> bool:
        ...


@runtime_checkable
class GeneratingRetrieval(RetrievalCollaborator, Protocol):
    """A collaborator that can also answer from its own matches."""

    async def generate(self, query: str, options: SearchOptions) -> GeneratedAnswer:
        ...


def rewrite_query(query: str) -> str:
    """Drop question scaffolding so identifiers and domain terms dominate.

    Returns the query unchanged when nothing but scaffolding remains.
    """

    words = (word.strip("?!.,:;\"'`") for word in query.split())
    kept = [word for word in words if word and word.lower() not in _QUESTION_WORDS]
    return " ".join(kept) or query


def compute_confidence(
    scores: Sequence[float],
    weights: Sequence[float] = DEFAULT_CONFIDENCE_WEIGHTS,
    tail_weight: float = 0.1,
) -> float:
    """Weighted average of ranked match scores; 0.0 when nothing matched.

    The first scores take `weights` in order, every later one `tail_weight`.
    With scores in [0, 1] the result stays in [0, 1].
    """

    if not scores:
        return 0.0
    total = 0.0
    weight_sum = 0.0
    for i, score in enumerate(scores):
        weight = weights[i] if i < len(weights) else tail_weight
        total += score * weight
        weight_sum += weight
    return total / weight_sum if weight_sum > 0 else 0.0


class ChunkRetriever:
    """Combines semantic and lexical routes over indexed code chunks.

    Route candidates are oversampled before fusion so relevant chunks survive
    to the final cut. Fusion decides the order; reported scores are the
    semantic similarities clipped to [0, 1].
    """

    supports_generation = False

    def __init__(
        self,
        vector_store: VectorStore,
        embedder: Embedder,
        fusion_layer: FusionLayer | None = None,
        config: RetrievalConfig | None = None,
    ) -> None:
        self.vector_store = vector_store
        self.embedder = embedder
        self.config = config or RetrievalConfig()
        self.fusion_layer = fusion_layer or FusionLayer(self.config)

    async def is_available(self) -> bool:
        return self.vector_store.count() > 0

    async def search(self, query: str, options: SearchOptions) -> RetrievalResult:
        scope = {"alias": options.scope} if options.scope else None
        if options.rewrite_query:
            query = rewrite_query(query)
        threshold = (
            self.config.score_threshold if options.score_threshold is None else options.score_threshold
        )
        if self.vector_store.count(options.scope) == 0:
            raise RetrievalUnavailableError(f"No indexed chunks for scope {options.scope!r}")

        final_k = options.max_results
        semantic_k = max(self.config.semantic_k, final_k * 4)
        metadata_k = max(self.config.metadata_k, final_k * 4)

        semantic = self.vector_store.semantic_search(
            query_embedding=self.embedder.embed_query(query),
            k=semantic_k,
            metadata_filter=scope,
        )
        lexical = self.vector_store.metadata_search(query_text=query, k=metadata_k, metadata_filter=scope)
        fused = self.fusion_layer.fuse(
            query,
            {"semantic": semantic, "metadata": lexical},
            top_k=final_k,
            rerank=options.rerank,
        )

        similarity = {item.chunk.id: item.score for item in semantic}
        chunks: list[RetrievedChunk] = []
        for item in fused:
            score = min(1.0, max(0.0, similarity.get(item.chunk.id, 0.0)))
            if score < threshold:
                continue
            metadata = {
                **chunk_to_vector_metadata(item.chunk),
                "chunk_id": item.chunk.id,
                "exports": item.chunk.exports or [],
                "route": item.route,
            }
            chunks.append(
                RetrievedChunk(
                    content=item.chunk.content,
                    score=score,
                    filename=item.chunk.file_path,
                    metadata=metadata,
                )
            )

        confidence = compute_confidence(
            [chunk.score for chunk in chunks],
            self.config.confidence_weights,
            self.config.tail_weight,
        )
        logger.debug("Retrieved %d chunks for scope %s (confidence %.3f)", len(chunks), options.scope, confidence)
        return RetrievalResult(chunks=chunks, confidence=confidence)
