"""Default loader chain for every source kind the engine understands."""

from __future__ import annotations

import httpx

from mnemo.config import LoaderConfig
from mnemo.ingest.history import HistoryLoader
from mnemo.ingest.loader import FileSystemLoader, LoaderRegistry
from mnemo.ingest.remote import GitHubLoader, UrlLoader


def default_loader_registry(
    config: LoaderConfig | None = None,
    *,
    client: httpx.AsyncClient | None = None,
) -> LoaderRegistry:
    """History first, then GitHub, then other URLs, then the local filesystem.

    `client` replaces the HTTP client of both network loaders.
    """

    config = config or LoaderConfig()
    return LoaderRegistry(
        [
            HistoryLoader(config),
            GitHubLoader(config, client=client),
            UrlLoader(config, client=client),
            FileSystemLoader(config),
        ]
    )
