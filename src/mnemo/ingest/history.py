"""Conversation-history loader for assistant session transcripts.

A history root holds one directory per project. Each project directory keeps
one JSONL file per session and, optionally, a `sessions-index.json` with
summaries, dates and branch names. Every session becomes one `LoadedFile`
holding only the human-readable turns: thinking blocks, tool calls and tool
results are dropped.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from collections.abc import Iterator
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from mnemo.config import HistoryLoaderConfig, LoaderConfig
from mnemo.errors import SourceLoadError, TokenLimitError
from mnemo.types import LoadedFile, LoadedSource

logger = logging.getLogger(__name__)

HISTORY_PREFIX = "history:"
HISTORY_PATH_MARKER = ".claude/projects"
SESSIONS_INDEX = "sessions-index.json"
AGENT_PREFIX = "agent-"
TEMP_PROJECT = "-tmp"
SESSION_SEPARATOR = "\n\n---\n\n"

_SKIPPED_LINE_TYPES = frozenset({"summary", "file-history-snapshot"})


class HistoryLoader:
    """Loads session transcripts from a history root or a single project.

    Sources are either `history:<path>` or any path under `.claude/projects`.
    Sidechain sessions and agent transcripts are skipped unless
    `include_agents` is set, and the `-tmp` project unless `include_temp` is.
    """

    def __init__(self, config: LoaderConfig | None = None) -> None:
        self.config = config or LoaderConfig()

    @property
    def options(self) -> HistoryLoaderConfig:
        return self.config.history

    def supports(self, source: str) -> bool:
        return source.startswith(HISTORY_PREFIX) or HISTORY_PATH_MARKER in Path(source).as_posix()

    async def load(self, source: str) -> LoadedSource:
        return await asyncio.to_thread(self.load_sync, source)

    def load_sync(self, source: str) -> LoadedSource:
        root = Path(source.removeprefix(HISTORY_PREFIX)).expanduser()
        if not root.exists():
            raise SourceLoadError(source, "Directory not found")
        if not root.is_dir():
            raise SourceLoadError(source, "Path must be a directory")

        projects = self._project_dirs(root)
        files: list[LoadedFile] = []
        for project in projects:
            files.extend(self._load_project(project))

        total = sum(f.token_estimate for f in files)
        if total > self.config.max_tokens:
            raise TokenLimitError(total, self.config.max_tokens)

        logger.info("Loaded %d sessions from %d projects in %s", len(files), len(projects), source)
        return LoadedSource(
            content=SESSION_SEPARATOR.join(f.content for f in files),
            files=files,
            total_tokens=total,
            file_count=len(files),
            metadata={
                "source": source,
                "loaded_at": datetime.now(timezone.utc),
                "project_count": len(projects),
                "session_count": len(files),
            },
        )

    def _project_dirs(self, root: Path) -> list[Path]:
        if (root / SESSIONS_INDEX).is_file():
            return [root]
        projects = []
        for entry in sorted(root.iterdir()):
            if not entry.is_dir():
                continue
            if entry.name == TEMP_PROJECT and not self.options.include_temp:
                continue
            if self.options.project_filter is not None and entry.name not in self.options.project_filter:
                continue
            if (entry / SESSIONS_INDEX).is_file() or any(_is_session_file(p) for p in entry.glob("*.jsonl")):
                projects.append(entry)
        return projects

    def _load_project(self, project: Path) -> list[LoadedFile]:
        index = _read_index(project)
        sessions = self._indexed_sessions(project, index) if index is not None else self._scanned_sessions(project)
        files = [loaded for loaded in sessions if loaded is not None]

        if self.options.include_agents:
            for path in sorted(project.glob(f"{AGENT_PREFIX}*.jsonl")):
                header = f"# Agent Session: {path.stem}\nProject: {project.name}"
                loaded = self._session_file(project, path, header)
                if loaded is not None:
                    files.append(loaded)
        return files

    def _indexed_sessions(
        self, project: Path, index: list[dict[str, Any]]
    ) -> Iterator[LoadedFile | None]:
        for entry in index:
            if entry.get("isSidechain"):
                continue
            modified = _parse_time(entry.get("modified"))
            if self._too_old(modified):
                continue
            path = project / f"{entry.get('sessionId')}.jsonl"
            if not path.is_file():
                continue
            yield self._session_file(project, path, _session_header(entry, project.name))

    def _scanned_sessions(self, project: Path) -> Iterator[LoadedFile | None]:
        for path in sorted(project.glob("*.jsonl")):
            if not _is_session_file(path):
                continue
            modified = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
            if self._too_old(modified):
                continue
            entry = {"sessionId": path.stem, "projectPath": project.name, "summary": _first_summary(path)}
            yield self._session_file(project, path, _session_header(entry, project.name))

    def _session_file(self, project: Path, path: Path, header: str) -> LoadedFile | None:
        try:
            raw = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            logger.debug("Skipping unreadable session %s", path)
            return None
        turns = list(_turns(raw, self.options.max_content_per_message))
        if not turns:
            return None
        content = header + "\n\n" + "\n\n".join(turns)
        size = len(content.encode("utf-8"))
        return LoadedFile(
            path=f"{project.name}/{path.stem}",
            content=content,
            size=size,
            token_estimate=math.ceil(size / 4),
            mime_type="text/markdown",
        )

    def _too_old(self, modified: datetime | None) -> bool:
        since = self.options.since
        if since is None or modified is None:
            return False
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        return modified < since


def _is_session_file(path: Path) -> bool:
    return path.suffix == ".jsonl" and not path.name.startswith(AGENT_PREFIX)


def _read_index(project: Path) -> list[dict[str, Any]] | None:
    path = project / SESSIONS_INDEX
    if not path.is_file():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        logger.warning("Ignoring unreadable session index in %s", project)
        return None
    entries = data.get("entries") if isinstance(data, dict) else None
    return [e for e in entries if isinstance(e, dict)] if isinstance(entries, list) else None


def _first_summary(path: Path) -> str | None:
    with path.open(encoding="utf-8", errors="replace") as handle:
        first = handle.readline()
    try:
        parsed = json.loads(first)
    except ValueError:
        return None
    if isinstance(parsed, dict) and parsed.get("type") == "summary":
        return parsed.get("summary") or None
    return None


def _session_header(entry: dict[str, Any], project_name: str) -> str:
    title = entry.get("summary") or entry.get("firstPrompt") or "Unknown"
    location = f"Project: {project_name} | Path: {entry.get('projectPath') or 'unknown'}"
    if entry.get("gitBranch"):
        location += f" | Branch: {entry['gitBranch']}"
    dates = f"Date: {entry.get('created') or 'unknown'} - {entry.get('modified') or 'unknown'}"
    return f"# Session: {title}\n{location}\n{dates}"


def _turns(raw: str, max_chars: int) -> Iterator[str]:
    for line in raw.strip().splitlines():
        try:
            parsed = json.loads(line)
        except ValueError:
            continue
        if not isinstance(parsed, dict):
            continue
        kind = parsed.get("type")
        if kind in _SKIPPED_LINE_TYPES or kind not in ("user", "assistant"):
            continue
        text = message_text(parsed)
        if text:
            role = "User" if kind == "user" else "Assistant"
            yield f"## {role}\n{truncate(text, max_chars)}"


def message_text(line: dict[str, Any]) -> str | None:
    """Return the plain text of a transcript line; tool and thinking blocks are ignored."""
    message = line.get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = [
            block["text"]
            for block in content
            if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
        ]
        return "\n".join(texts) or None
    return None


def truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "\n[...truncated]"


def _parse_time(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
