"""Source loaders: turn a source descriptor into a `LoadedSource`."""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime, timezone
from fnmatch import fnmatch
from pathlib import Path
from typing import Protocol, runtime_checkable

from mnemo.config import LoaderConfig
from mnemo.errors import SourceLoadError, TokenLimitError
from mnemo.types import LoadedFile, LoadedSource

logger = logging.getLogger(__name__)

DEFAULT_INCLUDE_EXTENSIONS = frozenset(
    {
        ".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs",
        ".py", ".pyi",
        ".go",
        ".rs",
        ".java", ".kt", ".scala",
        ".c", ".cpp", ".h", ".hpp",
        ".rb",
        ".php",
        ".swift",
        ".cs",
        ".vue", ".svelte",
        ".json", ".jsonc", ".yaml", ".yml", ".toml",
        ".md", ".mdx", ".txt", ".rst",
        ".html", ".css", ".scss", ".sass", ".less",
        ".sql", ".graphql", ".prisma",
        ".sh", ".bash", ".zsh",
        ".xml", ".svg",
    }
)

INCLUDE_FILENAMES = frozenset({"Dockerfile", "Makefile"})

ALWAYS_EXCLUDE = (
    "node_modules",
    ".git",
    "dist",
    "build",
    ".next",
    ".nuxt",
    ".output",
    "coverage",
    "__pycache__",
    ".pytest_cache",
    "venv",
    ".venv",
    "vendor",
    ".idea",
    ".vscode",
    "*.lock",
    "package-lock.json",
    "yarn.lock",
    "pnpm-lock.yaml",
    "bun.lockb",
    "*.min.js",
    "*.min.css",
    "*.map",
    "*.d.ts",
    ".DS_Store",
    "Thumbs.db",
)

IGNORE_FILES = (".gitignore", ".mnemoignore")

_MIME_TYPES = {
    ".ts": "text/typescript",
    ".tsx": "text/typescript",
    ".js": "text/javascript",
    ".jsx": "text/javascript",
    ".json": "application/json",
    ".md": "text/markdown",
    ".py": "text/x-python",
    ".go": "text/x-go",
    ".rs": "text/x-rust",
    ".html": "text/html",
    ".css": "text/css",
    ".yaml": "text/yaml",
    ".yml": "text/yaml",
    ".sql": "text/x-sql",
}


def estimate_source_tokens(content: str) -> int:
    """Loader-side estimate at ~3.5 characters per token for code."""
    return math.ceil(len(content) / 3.5)


def mime_type_for(path: str) -> str:
    return _MIME_TYPES.get(Path(path).suffix.lower(), "text/plain")


@runtime_checkable
class SourceLoader(Protocol):
    """Loads one kind of source descriptor."""

    def supports(self, source: str) -> bool:
        ...

    async def load(self, source: str) -> LoadedSource:
        ...


class FileSystemLoader:
    """Loads a single file or walks a local directory.

    Directory walks skip `ALWAYS_EXCLUDE`, patterns from `.gitignore` and
    `.mnemoignore`, binary files and files above `max_file_bytes`.
    """

    def __init__(
        self,
        config: LoaderConfig | None = None,
        *,
        include_extensions: frozenset[str] = DEFAULT_INCLUDE_EXTENSIONS,
        exclude_patterns: tuple[str, ...] = (),
    ) -> None:
        self.config = config or LoaderConfig()
        self._include_extensions = include_extensions
        self._exclude_patterns = exclude_patterns

    def supports(self, source: str) -> bool:
        return not source.startswith(("http://", "https://"))

    async def load(self, source: str) -> LoadedSource:
        return await asyncio.to_thread(self.load_sync, source)

    def load_sync(self, source: str) -> LoadedSource:
        path = Path(source).expanduser()
        if not path.exists():
            raise SourceLoadError(source, "Path not found")
        if path.is_dir():
            return self.load_directory(path, source)
        if path.is_file():
            return self._load_file(path, source)
        raise SourceLoadError(source, "Path is neither a file nor a directory")

    def _load_file(self, path: Path, source: str) -> LoadedSource:
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise SourceLoadError(source, f"Failed to read: {exc}") from exc

        tokens = estimate_source_tokens(content)
        if tokens > self.config.max_tokens:
            raise TokenLimitError(tokens, self.config.max_tokens)

        loaded = LoadedFile(
            path=path.name,
            content=content,
            size=path.stat().st_size,
            token_estimate=tokens,
            mime_type=mime_type_for(path.name),
        )
        return LoadedSource(
            content=f"# {loaded.path}\n# Tokens: ~{tokens}\n\n{content}",
            files=[loaded],
            total_tokens=tokens,
            file_count=1,
            metadata={"source": source, "loaded_at": _now()},
        )

    def load_directory(self, root: Path, source: str) -> LoadedSource:
        """Walk `root`, labelling the result with `source`."""
        patterns = ALWAYS_EXCLUDE + self._exclude_patterns + _read_ignore_files(root)
        files = sorted(self._walk(root, patterns), key=lambda f: f.path)
        total = sum(f.token_estimate for f in files)
        if total > self.config.max_tokens:
            raise TokenLimitError(total, self.config.max_tokens)

        logger.info("Loaded %d files (~%d tokens) from %s", len(files), total, source)
        metadata: dict[str, object] = {"source": source, "loaded_at": _now()}
        metadata.update(_git_info(root))
        return LoadedSource(
            content=_repository_content(files, source),
            files=files,
            total_tokens=total,
            file_count=len(files),
            metadata=metadata,
        )

    def _walk(self, root: Path, patterns: tuple[str, ...]) -> list[LoadedFile]:
        collected: list[LoadedFile] = []
        pending = [root]
        while pending:
            directory = pending.pop()
            for entry in sorted(directory.iterdir()):
                relative = entry.relative_to(root).as_posix()
                if _is_excluded(relative, entry.name, patterns):
                    continue
                if entry.is_dir():
                    pending.append(entry)
                elif entry.is_file() and self._wants(entry):
                    loaded = self._read_candidate(entry, relative)
                    if loaded is not None:
                        collected.append(loaded)
        return collected

    def _wants(self, path: Path) -> bool:
        return path.suffix.lower() in self._include_extensions or path.name in INCLUDE_FILENAMES

    def _read_candidate(self, path: Path, relative: str) -> LoadedFile | None:
        size = path.stat().st_size
        if size > self.config.max_file_bytes:
            logger.debug("Skipping %s: %d bytes", relative, size)
            return None
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            logger.debug("Skipping unreadable file %s", relative)
            return None
        if "\0" in content:
            return None
        return LoadedFile(
            path=relative,
            content=content,
            size=size,
            token_estimate=estimate_source_tokens(content),
            mime_type=mime_type_for(relative),
        )


class LoaderRegistry:
    """Dispatches a source to the first loader that supports it."""

    def __init__(self, loaders: list[SourceLoader] | None = None) -> None:
        self._loaders: list[SourceLoader] = list(loaders or [FileSystemLoader()])

    def register(self, loader: SourceLoader) -> None:
        self._loaders.insert(0, loader)

    def resolve(self, source: str) -> SourceLoader:
        for loader in self._loaders:
            if loader.supports(source):
                return loader
        raise SourceLoadError(source, "No loader supports this source")

    async def load(self, source: str) -> LoadedSource:
        return await self.resolve(source).load(source)


def _is_excluded(relative: str, name: str, patterns: tuple[str, ...]) -> bool:
    for pattern in patterns:
        pattern = pattern.rstrip("/")
        if "/" in pattern:
            if fnmatch(relative, pattern.lstrip("/")):
                return True
        elif fnmatch(name, pattern):
            return True
    return False


def _read_ignore_files(root: Path) -> tuple[str, ...]:
    patterns: list[str] = []
    for filename in IGNORE_FILES:
        ignore_file = root / filename
        if not ignore_file.is_file():
            continue
        for line in ignore_file.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            # Negations are not supported.
            if line and not line.startswith(("#", "!")):
                patterns.append(line)
    return tuple(patterns)


def _git_info(root: Path) -> dict[str, str]:
    head = root / ".git" / "HEAD"
    if not head.is_file():
        return {}
    value = head.read_text(encoding="utf-8").strip()
    if not value.startswith("ref: "):
        return {"git_commit": value}
    ref = value[5:]
    info = {"branch": ref.removeprefix("refs/heads/")}
    ref_file = root / ".git" / ref
    if ref_file.is_file():
        info["git_commit"] = ref_file.read_text(encoding="utf-8").strip()
    return info


def _repository_content(files: list[LoadedFile], source: str) -> str:
    lines = [
        "# Repository Context",
        f"# Source: {source}",
        f"# Files: {len(files)}",
        f"# Generated: {_now().isoformat()}",
        "",
        "## File Structure",
        "```",
        *(f.path for f in files),
        "```",
        "",
        "## File Contents",
        "",
    ]
    for loaded in files:
        extension = Path(loaded.path).suffix.lstrip(".") or "txt"
        lines.extend([f"### {loaded.path}", f"```{extension}", loaded.content, "```", ""])
    return "\n".join(lines)


def _now() -> datetime:
    return datetime.now(timezone.utc)
