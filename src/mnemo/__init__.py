"""Mnemo context engine package."""

from .config import ChunkingConfig, Settings, TieredQueryConfig
from .ingest.chunker import chunk_file, chunk_loaded_source

__all__ = ["ChunkingConfig", "Settings", "TieredQueryConfig", "chunk_file", "chunk_loaded_source"]
