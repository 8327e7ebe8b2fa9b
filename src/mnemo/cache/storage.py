"""Persistence for cache records, keyed by alias."""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Protocol

from mnemo.types import CacheRecord


class CacheStorage(Protocol):
    """Alias-keyed record store. `save` is an upsert."""

    async def save(self, record: CacheRecord) -> None:
        ...

    async def get_by_alias(self, alias: str) -> CacheRecord | None:
        ...

    async def get_by_name(self, name: str) -> CacheRecord | None:
        ...

    async def list(self) -> list[CacheRecord]:
        ...

    async def delete_by_alias(self, alias: str) -> bool:
        ...

    async def update(self, alias: str, record: CacheRecord) -> None:
        ...


class InMemoryCacheStorage:
    def __init__(self) -> None:
        self._records: dict[str, CacheRecord] = {}

    async def save(self, record: CacheRecord) -> None:
        self._records[record.alias] = record

    async def get_by_alias(self, alias: str) -> CacheRecord | None:
        return self._records.get(alias)

    async def get_by_name(self, name: str) -> CacheRecord | None:
        return next((r for r in self._records.values() if r.name == name), None)

    async def list(self) -> list[CacheRecord]:
        return sorted(self._records.values(), key=lambda r: r.created_at, reverse=True)

    async def delete_by_alias(self, alias: str) -> bool:
        return self._records.pop(alias, None) is not None

    async def update(self, alias: str, record: CacheRecord) -> None:
        self._records.pop(alias, None)
        self._records[record.alias] = record


_SCHEMA = """
CREATE TABLE IF NOT EXISTS caches (
    alias TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    provider TEXT NOT NULL DEFAULT '',
    token_count INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    source TEXT NOT NULL,
    model TEXT NOT NULL,
    system_instruction TEXT,
    ttl_seconds INTEGER
)
"""

_UPSERT = """
INSERT INTO caches (
    alias, name, provider, token_count, created_at, expires_at, source, model, system_instruction, ttl_seconds
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(alias) DO UPDATE SET
    name = excluded.name,
    provider = excluded.provider,
    token_count = excluded.token_count,
    created_at = excluded.created_at,
    expires_at = excluded.expires_at,
    source = excluded.source,
    model = excluded.model,
    system_instruction = excluded.system_instruction,
    ttl_seconds = excluded.ttl_seconds
"""

_COLUMNS = (
    "alias, name, provider, token_count, created_at, expires_at, source, model, system_instruction, ttl_seconds"
)


class SqliteCacheStorage:
    """SQLite-backed storage; blocking calls run in a worker thread."""

    def __init__(self, path: str | Path = ":memory:") -> None:
        self._conn = sqlite3.connect(str(path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute(_SCHEMA)
        columns = {row["name"] for row in self._conn.execute("PRAGMA table_info(caches)")}
        # Databases written before the requested TTL was stored.
        if "ttl_seconds" not in columns:
            self._conn.execute("ALTER TABLE caches ADD COLUMN ttl_seconds INTEGER")
        self._conn.commit()

    async def save(self, record: CacheRecord) -> None:
        await asyncio.to_thread(self._write, _UPSERT, _to_row(record))

    async def get_by_alias(self, alias: str) -> CacheRecord | None:
        return await asyncio.to_thread(self._fetch_one, "alias", alias)

    async def get_by_name(self, name: str) -> CacheRecord | None:
        return await asyncio.to_thread(self._fetch_one, "name", name)

    async def list(self) -> list[CacheRecord]:
        return await asyncio.to_thread(self._fetch_all)

    async def delete_by_alias(self, alias: str) -> bool:
        deleted = await asyncio.to_thread(self._write, "DELETE FROM caches WHERE alias = ?", (alias,))
        return deleted > 0

    async def update(self, alias: str, record: CacheRecord) -> None:
        await asyncio.to_thread(self._replace, alias, record)

    def close(self) -> None:
        self._conn.close()

    def _write(self, sql: str, params: tuple[object, ...]) -> int:
        with self._conn:
            return self._conn.execute(sql, params).rowcount

    def _replace(self, alias: str, record: CacheRecord) -> None:
        with self._conn:
            self._conn.execute("DELETE FROM caches WHERE alias = ?", (alias,))
            self._conn.execute(_UPSERT, _to_row(record))

    def _fetch_one(self, column: str, value: str) -> CacheRecord | None:
        row = self._conn.execute(
            f"SELECT {_COLUMNS} FROM caches WHERE {column} = ?", (value,)
        ).fetchone()
        return _from_row(row) if row is not None else None

    def _fetch_all(self) -> list[CacheRecord]:
        rows = self._conn.execute(f"SELECT {_COLUMNS} FROM caches ORDER BY created_at DESC").fetchall()
        return [_from_row(row) for row in rows]


def _to_row(record: CacheRecord) -> tuple[object, ...]:
    return (
        record.alias,
        record.name,
        record.provider,
        record.token_count,
        record.created_at.isoformat(),
        record.expires_at.isoformat(),
        record.source,
        record.model,
        record.system_instruction,
        record.ttl_seconds,
    )


def _from_row(row: sqlite3.Row) -> CacheRecord:
    return CacheRecord(
        name=row["name"],
        alias=row["alias"],
        token_count=row["token_count"],
        created_at=datetime.fromisoformat(row["created_at"]),
        expires_at=datetime.fromisoformat(row["expires_at"]),
        source=row["source"],
        model=row["model"],
        provider=row["provider"],
        system_instruction=row["system_instruction"],
        ttl_seconds=row["ttl_seconds"],
    )
