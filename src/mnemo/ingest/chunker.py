"""Boundary-aware chunking with a fixed-window fallback."""

from __future__ import annotations

import logging
import math
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from fnmatch import fnmatch
from pathlib import PurePosixPath

from mnemo.config import ChunkingConfig
from mnemo.ingest.boundaries import Boundary, scanner_for
from mnemo.types import CodeChunk, LoadedFile

logger = logging.getLogger(__name__)

_FILE_TYPES: dict[str, str] = {
    ".ts": "typescript",
    ".tsx": "typescript",
    ".mts": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".py": "python",
    ".pyi": "python",
    ".md": "markdown",
    ".mdx": "markdown",
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".toml": "toml",
    ".rs": "rust",
    ".go": "go",
    ".java": "java",
    ".kt": "kotlin",
    ".swift": "swift",
    ".c": "c",
    ".cpp": "cpp",
    ".h": "c",
    ".hpp": "cpp",
    ".cs": "csharp",
    ".rb": "ruby",
    ".php": "php",
    ".sql": "sql",
    ".sh": "shell",
    ".bash": "shell",
    ".zsh": "shell",
    ".css": "css",
    ".scss": "scss",
    ".less": "less",
    ".html": "html",
    ".vue": "vue",
    ".svelte": "svelte",
}


def estimate_tokens(text: str) -> int:
    """Approximate token count at ~4 characters per token."""
    return math.ceil(len(text) / 4)


def detect_file_type(file_path: str) -> str:
    return _FILE_TYPES.get(PurePosixPath(file_path).suffix.lower(), "text")


@dataclass(slots=True)
class _Segment:
    start: int
    end: int
    symbols: list[tuple[int, str]] = field(default_factory=list)


class _LineSpans:
    """O(1) token estimates for inclusive line ranges."""

    def __init__(self, lines: list[str]) -> None:
        self._prefix = [0]
        for line in lines:
            self._prefix.append(self._prefix[-1] + len(line))

    def tokens(self, start: int, end: int) -> int:
        chars = self._prefix[end + 1] - self._prefix[start] + (end - start)
        return math.ceil(chars / 4)


class CodeChunker:
    """Splits files into ordered chunks that respect structural boundaries.

    Design notes:
    1. Boundaries first.
       A scanner for the file's language family reports top-level
       declarations. They are normalised into a contiguous partition of the
       file so that lines between declarations (comments, blank lines,
       statements) ride along with the following declaration.

    2. Greedy packing second.
       Consecutive segments are packed while the packed estimate stays within
       `max_tokens`. On overflow the chunk is closed and a new one started.

    3. Oversized segments.
       A segment that alone exceeds `max_tokens` is cut by a fixed window that
       grows to `target_tokens` and advances by `target_tokens -
       overlap_tokens`, so adjacent windows share a tail. Windows never exceed
       `max_tokens` unless a single line does.

    Files without a scanner, or whose structure the scanner cannot track,
    are cut by the fixed window alone. Chunking never raises on content.
    """

    def __init__(self, config: ChunkingConfig | None = None) -> None:
        self.config = config or ChunkingConfig()

    def chunk_file(self, file_path: str, content: str, alias: str) -> list[CodeChunk]:
        file_type = detect_file_type(file_path)
        lines = content.split("\n")
        scanner = scanner_for(file_type)
        boundaries = scanner.find_boundaries(lines) if scanner is not None else []

        if self._keep_whole(file_path) or estimate_tokens(content) <= self.config.max_tokens:
            exports = [b.name for b in boundaries if b.name and b.kind != "import"]
            return [
                CodeChunk(
                    id=str(uuid.uuid4()),
                    alias=alias,
                    file_path=file_path,
                    file_type=file_type,
                    chunk_index=0,
                    content=content,
                    start_line=1,
                    end_line=len(lines),
                    token_estimate=estimate_tokens(content),
                    exports=exports or None,
                )
            ]

        spans = _LineSpans(lines)
        segments = _partition(boundaries, len(lines))
        if not segments:
            logger.debug("No usable boundaries in %s (%s); using fixed windows", file_path, file_type)
            segments = [_Segment(start=0, end=len(lines) - 1)]

        ranges = self._pack(segments, spans)
        chunks: list[CodeChunk] = []
        for index, (start, end, symbols) in enumerate(ranges):
            text = "\n".join(lines[start : end + 1])
            chunks.append(
                CodeChunk(
                    id=str(uuid.uuid4()),
                    alias=alias,
                    file_path=file_path,
                    file_type=file_type,
                    chunk_index=index,
                    content=text,
                    start_line=start + 1,
                    end_line=end + 1,
                    token_estimate=estimate_tokens(text),
                    exports=symbols or None,
                )
            )
        return chunks

    def chunk_files(self, files: Iterable[LoadedFile], alias: str) -> list[CodeChunk]:
        all_chunks: list[CodeChunk] = []
        for loaded in files:
            all_chunks.extend(self.chunk_file(loaded.path, loaded.content, alias))
        return all_chunks

    def _keep_whole(self, file_path: str) -> bool:
        name = PurePosixPath(file_path).name
        return any(
            file_path.endswith(pattern) or fnmatch(name, pattern)
            for pattern in self.config.always_whole
        )

    def _pack(
        self, segments: list[_Segment], spans: _LineSpans
    ) -> list[tuple[int, int, list[str]]]:
        output: list[tuple[int, int, list[str]]] = []
        current: _Segment | None = None

        for segment in segments:
            if current is not None:
                if spans.tokens(current.start, segment.end) <= self.config.max_tokens:
                    current.end = segment.end
                    current.symbols.extend(segment.symbols)
                    continue
                output.append(_closed(current))
                current = None

            if spans.tokens(segment.start, segment.end) > self.config.max_tokens:
                output.extend(self._fixed_windows(segment, spans))
            else:
                current = _Segment(segment.start, segment.end, list(segment.symbols))

        if current is not None:
            output.append(_closed(current))
        return output

    def _fixed_windows(
        self, segment: _Segment, spans: _LineSpans
    ) -> list[tuple[int, int, list[str]]]:
        target = self.config.target_tokens
        cap = self.config.max_tokens
        stride = target - self.config.overlap_tokens
        windows: list[tuple[int, int, list[str]]] = []
        start = segment.start

        while True:
            end = start
            while (
                end < segment.end
                and spans.tokens(start, end) < target
                and spans.tokens(start, end + 1) <= cap
            ):
                end += 1
            symbols = [name for line, name in segment.symbols if start <= line <= end]
            windows.append((start, end, symbols))
            if end >= segment.end:
                return windows

            # Advance by `stride` tokens but never past end + 1, so no line is skipped.
            following = start + 1
            while following <= end and spans.tokens(start, following - 1) < stride:
                following += 1
            start = following


def _closed(segment: _Segment) -> tuple[int, int, list[str]]:
    return segment.start, segment.end, [name for _, name in segment.symbols]


def _partition(boundaries: list[Boundary], line_count: int) -> list[_Segment]:
    """Turn possibly gappy, possibly nested boundaries into contiguous segments."""

    segments: list[_Segment] = []
    cursor = 0
    last_line = line_count - 1

    for boundary in sorted(boundaries, key=lambda b: (b.start_line, -b.end_line)):
        start_line = max(0, boundary.start_line)
        end_line = min(last_line, boundary.end_line)
        symbol = (start_line, boundary.name) if boundary.name and boundary.kind != "import" else None

        if end_line < cursor:
            # Nested inside an earlier segment.
            if symbol is not None and segments:
                segments[-1].symbols.append(symbol)
            continue

        segment = _Segment(start=cursor, end=max(end_line, cursor))
        if symbol is not None:
            segment.symbols.append(symbol)
        segments.append(segment)
        cursor = segment.end + 1

    if segments and cursor <= last_line:
        segments[-1].end = last_line
    return segments


def chunk_file(
    file_path: str,
    content: str,
    alias: str,
    config: ChunkingConfig | None = None,
) -> list[CodeChunk]:
    """Chunk one file into ordered pieces covering every line."""
    return CodeChunker(config).chunk_file(file_path, content, alias)


def chunk_loaded_source(
    files: Iterable[LoadedFile],
    alias: str,
    config: ChunkingConfig | None = None,
) -> list[CodeChunk]:
    """Chunk every file of a loaded source, preserving file order."""
    return CodeChunker(config).chunk_files(files, alias)


def chunk_header(chunk: CodeChunk) -> str:
    return f"### {chunk.file_path} (lines {chunk.start_line}-{chunk.end_line})\n\n"


def prepare_chunk_for_embedding(chunk: CodeChunk) -> str:
    """Prefix chunk content with its location so embeddings carry file context."""
    return chunk_header(chunk) + chunk.content


def chunk_to_vector_metadata(chunk: CodeChunk) -> dict[str, str | int]:
    return {
        "alias": chunk.alias,
        "file_path": chunk.file_path,
        "file_type": chunk.file_type,
        "chunk_index": chunk.chunk_index,
        "start_line": chunk.start_line,
        "end_line": chunk.end_line,
    }
