"""Index pipeline: load -> chunk -> embed -> upsert."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from mnemo.ingest.chunker import CodeChunker, prepare_chunk_for_embedding
from mnemo.ingest.embedder import Embedder
from mnemo.ingest.loader import LoaderRegistry
from mnemo.retrieval.vector_store import VectorStore
from mnemo.types import CodeChunk, LoadedFile

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class IndexResult:
    alias: str
    source: str
    file_count: int
    chunk_count: int
    total_tokens: int
    replaced_chunks: int = 0
    indexed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class IndexPipeline:
    """Coordinates loader, chunker, embedder and vector store stages.

    Indexing is separate from cache loading so retrieval can be prepared
    independently; re-indexing an alias replaces its previous chunks.
    """

    def __init__(
        self,
        loaders: LoaderRegistry,
        chunker: CodeChunker,
        embedder: Embedder,
        vector_store: VectorStore,
        *,
        separator: str = " + ",
    ) -> None:
        self._loaders = loaders
        self._chunker = chunker
        self._embedder = embedder
        self._vector_store = vector_store
        self._separator = separator
        self._indexes: dict[str, IndexResult] = {}

    async def index_sources(self, alias: str, sources: list[str]) -> IndexResult:
        """Index every file of the given sources under one alias."""

        loaded = await asyncio.gather(*(self._loaders.load(source) for source in sources))
        files = [f for source in loaded for f in source.files]
        return self.index_files(alias, files, source=self._separator.join(sources))

    def index_files(self, alias: str, files: list[LoadedFile], *, source: str) -> IndexResult:
        chunks = self._chunker.chunk_files(files, alias)
        replaced = self._vector_store.delete_alias(alias)
        self._upsert(chunks)

        result = IndexResult(
            alias=alias,
            source=source,
            file_count=len(files),
            chunk_count=len(chunks),
            total_tokens=sum(chunk.token_estimate for chunk in chunks),
            replaced_chunks=replaced,
        )
        self._indexes[alias] = result
        logger.info("Indexed %d chunks from %d files under %s", len(chunks), len(files), alias)
        return result

    def list_indexes(self) -> list[IndexResult]:
        return sorted(self._indexes.values(), key=lambda r: r.indexed_at, reverse=True)

    def drop(self, alias: str) -> int | None:
        """Remove an alias's chunks; `None` when nothing was indexed under it."""

        if self._indexes.pop(alias, None) is None:
            return None
        return self._vector_store.delete_alias(alias)

    def _upsert(self, chunks: list[CodeChunk]) -> None:
        if not chunks:
            return
        embeddings = self._embedder.embed_documents([prepare_chunk_for_embedding(c) for c in chunks])
        self._vector_store.upsert(chunks, embeddings)
