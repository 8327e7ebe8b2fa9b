"""Network loaders: GitHub repositories and single documents over HTTP."""

from __future__ import annotations

import asyncio
import io
import logging
import re
import tarfile
import tempfile
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from urllib.parse import urlsplit

import httpx

from mnemo.config import LoaderConfig
from mnemo.errors import SourceLoadError, TokenLimitError
from mnemo.ingest.loader import FileSystemLoader, estimate_source_tokens, mime_type_for
from mnemo.types import LoadedFile, LoadedSource

logger = logging.getLogger(__name__)

_GITHUB_URL = re.compile(
    r"^https?://(?:www\.)?github\.com/(?P<owner>[^/]+)/(?P<repo>[^/#?]+)(?:/tree/(?P<ref>[^#?]+))?"
)

_TEXT_TYPES = ("text/", "application/json", "application/xml", "application/x-yaml", "application/yaml")


def is_url(source: str) -> bool:
    return source.startswith(("http://", "https://"))


def is_github_url(source: str) -> bool:
    return _GITHUB_URL.match(source) is not None


class GitHubLoader:
    """Downloads a repository tarball and loads it like a local directory.

    Only regular files are extracted, and only beneath the archive's
    top-level folder. The walk applies the same exclusions and limits as
    `FileSystemLoader`.
    """

    def __init__(
        self,
        config: LoaderConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or LoaderConfig()
        self._headers = {"Accept": "application/vnd.github+json"}
        if self.config.github_token:
            self._headers["Authorization"] = f"Bearer {self.config.github_token}"
        self._client = client or httpx.AsyncClient(
            timeout=self.config.remote_timeout_seconds,
            follow_redirects=True,
        )
        self._files = FileSystemLoader(self.config)

    def supports(self, source: str) -> bool:
        return is_github_url(source)

    async def load(self, source: str) -> LoadedSource:
        match = _GITHUB_URL.match(source)
        if match is None:
            raise SourceLoadError(source, "Invalid GitHub URL")
        owner, repo, ref = match["owner"], match["repo"].removesuffix(".git"), match["ref"]

        url = f"{self.config.github_api_url.rstrip('/')}/repos/{owner}/{repo}/tarball"
        if ref:
            url += f"/{ref}"
        try:
            response = await self._client.get(url, headers=self._headers, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise SourceLoadError(source, f"GitHub returned {exc.response.status_code}") from exc
        except httpx.RequestError as exc:
            raise SourceLoadError(source, f"Download failed: {exc!r}") from exc

        loaded = await asyncio.to_thread(self._load_archive, response.content, source)
        loaded.metadata["cloned_from"] = f"{owner}/{repo}"
        if ref:
            loaded.metadata["branch"] = ref
        logger.info("Loaded %s/%s from GitHub (%d files)", owner, repo, loaded.file_count)
        return loaded

    async def aclose(self) -> None:
        await self._client.aclose()

    def _load_archive(self, archive: bytes, source: str) -> LoadedSource:
        with tempfile.TemporaryDirectory(prefix="mnemo-") as workdir:
            root = Path(workdir)
            try:
                _extract(archive, root)
            except tarfile.TarError as exc:
                raise SourceLoadError(source, f"Unreadable archive: {exc}") from exc
            return self._files.load_directory(root, source)


def _extract(archive: bytes, root: Path) -> None:
    with tarfile.open(fileobj=io.BytesIO(archive), mode="r:*") as tar:
        for member in tar.getmembers():
            if not member.isfile():
                continue
            # Archives wrap everything in `<owner>-<repo>-<sha>/`.
            name = PurePosixPath(member.name)
            parts = name.parts[1:]
            if name.is_absolute() or not parts or ".." in parts:
                continue
            extracted = tar.extractfile(member)
            if extracted is None:
                continue
            target = root.joinpath(*parts)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(extracted.read())


class UrlLoader:
    """Fetches one text document over HTTP(S)."""

    def __init__(
        self,
        config: LoaderConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or LoaderConfig()
        self._client = client or httpx.AsyncClient(
            timeout=self.config.remote_timeout_seconds,
            follow_redirects=True,
        )

    def supports(self, source: str) -> bool:
        return is_url(source) and not is_github_url(source)

    async def load(self, source: str) -> LoadedSource:
        try:
            response = await self._client.get(source, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise SourceLoadError(source, f"HTTP {exc.response.status_code}") from exc
        except httpx.RequestError as exc:
            raise SourceLoadError(source, f"Fetch failed: {exc!r}") from exc

        content_type = response.headers.get("content-type", "text/plain").split(";")[0].strip().lower()
        if not content_type.startswith(_TEXT_TYPES):
            raise SourceLoadError(source, f"Unsupported content type {content_type}")
        if len(response.content) > self.config.max_file_bytes:
            raise SourceLoadError(source, f"Document exceeds {self.config.max_file_bytes} bytes")

        text = response.text
        tokens = estimate_source_tokens(text)
        if tokens > self.config.max_tokens:
            raise TokenLimitError(tokens, self.config.max_tokens)

        name = PurePosixPath(urlsplit(source).path).name or urlsplit(source).netloc
        loaded = LoadedFile(
            path=name,
            content=text,
            size=len(response.content),
            token_estimate=tokens,
            mime_type=content_type if content_type != "text/plain" else mime_type_for(name),
        )
        return LoadedSource(
            content=f"# {source}\n# Tokens: ~{tokens}\n\n{text}",
            files=[loaded],
            total_tokens=tokens,
            file_count=1,
            metadata={"source": source, "loaded_at": datetime.now(timezone.utc)},
        )

    async def aclose(self) -> None:
        await self._client.aclose()
