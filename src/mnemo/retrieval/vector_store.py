"""Chunk vector store contract and the in-process implementation."""

from __future__ import annotations

from dataclasses import dataclass
from math import sqrt
from typing import Any, Protocol

from mnemo.ingest.embedder import Embedder, code_terms
from mnemo.types import CodeChunk, ScoredChunk


class VectorStore(Protocol):
    """Minimal vector store contract for chunk retrieval."""

    def upsert(self, chunks: list[CodeChunk], embeddings: list[list[float]]) -> None:
        """Insert or update chunk vectors."""

    def delete_alias(self, alias: str) -> int:
        """Drop every chunk indexed under an alias; return how many were removed."""

    def count(self, alias: str | None = None) -> int:
        """Number of stored chunks, optionally scoped to an alias."""

    def semantic_search(
        self,
        query_embedding: list[float],
        k: int,
        metadata_filter: dict[str, Any] | None = None,
    ) -> list[ScoredChunk]:
        """Search by vector similarity."""

    def metadata_search(
        self,
        query_text: str,
        k: int,
        metadata_filter: dict[str, Any] | None = None,
    ) -> list[ScoredChunk]:
        """Search by lexical overlap with chunk content, path and exports."""


@dataclass(slots=True)
class _StoredVector:
    chunk: CodeChunk
    embedding: list[float]
    terms: frozenset[str]


class InMemoryVectorStore:
    """Process-local vector store keyed by chunk id."""

    def __init__(self) -> None:
        self._store: dict[str, _StoredVector] = {}

    def upsert(self, chunks: list[CodeChunk], embeddings: list[list[float]]) -> None:
        if len(chunks) != len(embeddings):
            raise ValueError("chunks and embeddings must have the same length")
        for chunk, embedding in zip(chunks, embeddings, strict=True):
            searchable = " ".join([chunk.file_path, *(chunk.exports or []), chunk.content])
            self._store[chunk.id] = _StoredVector(
                chunk=chunk,
                embedding=embedding,
                terms=frozenset(code_terms(searchable)),
            )

    def delete_alias(self, alias: str) -> int:
        doomed = [chunk_id for chunk_id, rec in self._store.items() if rec.chunk.alias == alias]
        for chunk_id in doomed:
            del self._store[chunk_id]
        return len(doomed)

    def count(self, alias: str | None = None) -> int:
        if alias is None:
            return len(self._store)
        return sum(1 for rec in self._store.values() if rec.chunk.alias == alias)

    def semantic_search(
        self,
        query_embedding: list[float],
        k: int,
        metadata_filter: dict[str, Any] | None = None,
    ) -> list[ScoredChunk]:
        ranked = sorted(
            (
                ScoredChunk(
                    chunk=record.chunk,
                    score=_cosine_similarity(query_embedding, record.embedding),
                    route="semantic",
                )
                for record in self._candidates(metadata_filter)
            ),
            key=lambda item: item.score,
            reverse=True,
        )
        return _ranked(ranked[:k])

    def metadata_search(
        self,
        query_text: str,
        k: int,
        metadata_filter: dict[str, Any] | None = None,
    ) -> list[ScoredChunk]:
        return _lexical_search(
            query_text,
            [(rec.chunk, rec.terms) for rec in self._candidates(metadata_filter)],
            k,
        )

    def _candidates(self, metadata_filter: dict[str, Any] | None) -> list[_StoredVector]:
        return [rec for rec in self._store.values() if _metadata_match(rec.chunk, metadata_filter)]


class FaissVectorStore:
    """FAISS-backed store via the LangChain community integration.

    Keeps the `VectorStore` contract so it can replace `InMemoryVectorStore`
    for large indexes. Vectors are compared by inner product, which equals
    cosine similarity for the normalised embeddings `Embedder`s produce.
    The lexical route runs over an in-process term index.
    """

    def __init__(self, embedder: Embedder) -> None:
        from langchain_community.vectorstores import FAISS
        from langchain_community.vectorstores.utils import DistanceStrategy
        from langchain_core.embeddings import Embeddings

        class _EmbeddingAdapter(Embeddings):
            def __init__(self, adapter_embedder: Embedder) -> None:
                self._embedder = adapter_embedder

            def embed_documents(self, texts: list[str]) -> list[list[float]]:
                return self._embedder.embed_documents(texts)

            def embed_query(self, text: str) -> list[float]:
                return self._embedder.embed_query(text)

        self._faiss_cls = FAISS
        self._distance = DistanceStrategy.MAX_INNER_PRODUCT
        self._embeddings = _EmbeddingAdapter(embedder)
        self._index: Any | None = None
        self._chunks: dict[str, tuple[CodeChunk, frozenset[str]]] = {}

    def upsert(self, chunks: list[CodeChunk], embeddings: list[list[float]]) -> None:
        if len(chunks) != len(embeddings):
            raise ValueError("chunks and embeddings must have the same length")
        if not chunks:
            return
        existing = [chunk.id for chunk in chunks if chunk.id in self._chunks]
        if existing and self._index is not None:
            self._index.delete(existing)

        text_embeddings = list(zip([chunk.content for chunk in chunks], embeddings, strict=True))
        metadatas = [{"chunk_id": chunk.id, "alias": chunk.alias} for chunk in chunks]
        ids = [chunk.id for chunk in chunks]
        if self._index is None:
            self._index = self._faiss_cls.from_embeddings(
                text_embeddings=text_embeddings,
                embedding=self._embeddings,
                metadatas=metadatas,
                ids=ids,
                distance_strategy=self._distance,
            )
        else:
            self._index.add_embeddings(text_embeddings=text_embeddings, metadatas=metadatas, ids=ids)

        for chunk in chunks:
            searchable = " ".join([chunk.file_path, *(chunk.exports or []), chunk.content])
            self._chunks[chunk.id] = (chunk, frozenset(code_terms(searchable)))

    def delete_alias(self, alias: str) -> int:
        doomed = [chunk_id for chunk_id, (chunk, _) in self._chunks.items() if chunk.alias == alias]
        if doomed and self._index is not None:
            self._index.delete(doomed)
        for chunk_id in doomed:
            del self._chunks[chunk_id]
        return len(doomed)

    def count(self, alias: str | None = None) -> int:
        if alias is None:
            return len(self._chunks)
        return sum(1 for chunk, _ in self._chunks.values() if chunk.alias == alias)

    def semantic_search(
        self,
        query_embedding: list[float],
        k: int,
        metadata_filter: dict[str, Any] | None = None,
    ) -> list[ScoredChunk]:
        if self._index is None or not self._chunks:
            return []
        docs_and_scores = self._index.similarity_search_with_score_by_vector(
            embedding=query_embedding,
            k=k,
            filter=metadata_filter,
            fetch_k=len(self._chunks),
        )
        results: list[ScoredChunk] = []
        for doc, score in docs_and_scores:
            stored = self._chunks.get(str(doc.metadata.get("chunk_id")))
            if stored is None:
                continue
            results.append(ScoredChunk(chunk=stored[0], score=float(score), route="semantic"))
        return _ranked(results)

    def metadata_search(
        self,
        query_text: str,
        k: int,
        metadata_filter: dict[str, Any] | None = None,
    ) -> list[ScoredChunk]:
        candidates = [
            (chunk, terms)
            for chunk, terms in self._chunks.values()
            if _metadata_match(chunk, metadata_filter)
        ]
        return _lexical_search(query_text, candidates, k)


def _lexical_search(
    query_text: str,
    candidates: list[tuple[CodeChunk, frozenset[str]]],
    k: int,
) -> list[ScoredChunk]:
    """Score candidates by the share of query terms they contain."""

    query_terms = set(code_terms(query_text))
    denom = max(1, len(query_terms))
    scored = [
        ScoredChunk(chunk=chunk, score=len(query_terms & terms) / denom, route="metadata")
        for chunk, terms in candidates
    ]
    ranked = sorted(scored, key=lambda item: item.score, reverse=True)
    return _ranked(ranked[:k])


def _ranked(items: list[ScoredChunk]) -> list[ScoredChunk]:
    return [
        ScoredChunk(chunk=item.chunk, score=item.score, route=item.route, rank=i + 1)
        for i, item in enumerate(items)
    ]


def _metadata_match(chunk: CodeChunk, metadata_filter: dict[str, Any] | None) -> bool:
    if not metadata_filter:
        return True
    for key, value in metadata_filter.items():
        if getattr(chunk, key, None) != value:
            return False
    return True


def _cosine_similarity(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    numerator = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return numerator / (norm_a * norm_b)
