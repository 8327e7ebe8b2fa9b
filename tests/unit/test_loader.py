import io
import json
import tarfile
from datetime import datetime, timezone

import httpx
import pytest

from mnemo.config import HistoryLoaderConfig, LoaderConfig
from mnemo.errors import SourceLoadError, TokenLimitError
from mnemo.ingest.history import HistoryLoader
from mnemo.ingest.loader import FileSystemLoader, LoaderRegistry, estimate_source_tokens
from mnemo.ingest.remote import GitHubLoader, UrlLoader
from mnemo.ingest.sources import default_loader_registry


@pytest.fixture
def repo(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("def main():\n    return 0\n", encoding="utf-8")
    (tmp_path / "src" / "app.min.js").write_text("var a=1;", encoding="utf-8")
    (tmp_path / "README.md").write_text("# Demo\n", encoding="utf-8")
    (tmp_path / "Dockerfile").write_text("FROM python:3.12\n", encoding="utf-8")
    (tmp_path / "node_modules").mkdir()
    (tmp_path / "node_modules" / "dep.js").write_text("module.exports = 1;", encoding="utf-8")
    (tmp_path / "secrets").mkdir()
    (tmp_path / "secrets" / "keys.json").write_text("{}", encoding="utf-8")
    (tmp_path / "blob.txt").write_bytes(b"abc\x00def")
    (tmp_path / "image.png").write_bytes(b"\x89PNG")
    (tmp_path / ".gitignore").write_text("# comment\nsecrets/\n!keep.txt\n", encoding="utf-8")
    git = tmp_path / ".git"
    (git / "refs" / "heads").mkdir(parents=True)
    (git / "HEAD").write_text("ref: refs/heads/main\n", encoding="utf-8")
    (git / "refs" / "heads" / "main").write_text("abc123\n", encoding="utf-8")
    return tmp_path


def test_directory_walk_filters_and_formats(repo) -> None:
    loaded = FileSystemLoader().load_sync(str(repo))

    paths = [f.path for f in loaded.files]
    assert paths == ["Dockerfile", "README.md", "src/app.py"]
    assert loaded.file_count == 3
    assert loaded.total_tokens == sum(f.token_estimate for f in loaded.files)
    assert loaded.metadata["branch"] == "main"
    assert loaded.metadata["git_commit"] == "abc123"
    assert loaded.content.startswith("# Repository Context\n")
    assert "## File Structure\n```\nDockerfile\nREADME.md\nsrc/app.py\n```" in loaded.content
    assert "### src/app.py\n```py\ndef main():" in loaded.content


def test_single_file_gets_a_header(tmp_path) -> None:
    path = tmp_path / "notes.md"
    path.write_text("hello world", encoding="utf-8")

    loaded = FileSystemLoader().load_sync(str(path))

    tokens = estimate_source_tokens("hello world")
    assert loaded.content == f"# notes.md\n# Tokens: ~{tokens}\n\nhello world"
    assert loaded.files[0].mime_type == "text/markdown"
    assert loaded.source == str(path)


def test_oversized_files_are_skipped_and_oversized_sources_rejected(tmp_path) -> None:
    (tmp_path / "big.py").write_text("x = 1\n" * 200, encoding="utf-8")
    (tmp_path / "small.py").write_text("y = 2\n", encoding="utf-8")

    skipped = FileSystemLoader(LoaderConfig(max_file_bytes=100)).load_sync(str(tmp_path))

    assert [f.path for f in skipped.files] == ["small.py"]
    with pytest.raises(TokenLimitError):
        FileSystemLoader(LoaderConfig(max_tokens=10)).load_sync(str(tmp_path))
    with pytest.raises(TokenLimitError):
        FileSystemLoader(LoaderConfig(max_tokens=10)).load_sync(str(tmp_path / "big.py"))


def test_missing_paths_raise_load_errors(tmp_path) -> None:
    with pytest.raises(SourceLoadError) as excinfo:
        FileSystemLoader().load_sync(str(tmp_path / "nope"))

    assert excinfo.value.code == "LOAD_ERROR"


@pytest.mark.asyncio
async def test_registry_dispatches_to_a_supporting_loader(repo) -> None:
    registry = LoaderRegistry()

    loaded = await registry.load(str(repo / "README.md"))

    assert loaded.file_count == 1
    with pytest.raises(SourceLoadError):
        await registry.load("https://github.com/example/repo")


def _jsonl(*lines: dict) -> str:
    return "\n".join(json.dumps(line) for line in lines)


@pytest.fixture
def history(tmp_path):
    project = tmp_path / "-home-user-projects-myapp"
    project.mkdir()
    entries = [
        {
            "sessionId": "abc-123",
            "summary": "Fixed auth token refresh bug",
            "created": "2025-12-01T10:00:00.000Z",
            "modified": "2025-12-01T11:00:00.000Z",
            "gitBranch": "main",
            "projectPath": "/home/user/projects/myapp",
            "isSidechain": False,
        },
        {
            "sessionId": "def-456",
            "firstPrompt": "old session",
            "modified": "2025-01-01T11:00:00.000Z",
            "isSidechain": False,
        },
        {"sessionId": "side-789", "summary": "Sidechain", "isSidechain": True},
    ]
    (project / "sessions-index.json").write_text(json.dumps({"version": 1, "entries": entries}), encoding="utf-8")
    (project / "abc-123.jsonl").write_text(
        _jsonl(
            {"type": "summary", "summary": "Fixed auth token refresh bug"},
            {"type": "file-history-snapshot", "messageId": "msg-1"},
            {"type": "user", "message": {"role": "user", "content": "fix the bug in auth"}},
            {
                "type": "assistant",
                "message": {
                    "content": [
                        {"type": "thinking", "text": "Let me think about this..."},
                        {"type": "text", "text": "I found the auth bug."},
                        {"type": "tool_use", "id": "tool-1", "name": "Read", "input": {}},
                    ]
                },
            },
            {
                "type": "user",
                "message": {"content": [{"tool_use_id": "tool-1", "type": "tool_result", "content": "file body"}]},
            },
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "x" * 2500}]}},
        ),
        encoding="utf-8",
    )
    (project / "def-456.jsonl").write_text(
        _jsonl({"type": "user", "message": {"content": "hello"}}), encoding="utf-8"
    )
    (project / "side-789.jsonl").write_text(
        _jsonl({"type": "user", "message": {"content": "sidechain"}}), encoding="utf-8"
    )
    (project / "agent-a1.jsonl").write_text(
        _jsonl(
            {"type": "user", "message": {"content": "agent task"}},
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "done"}]}},
        ),
        encoding="utf-8",
    )
    temp = tmp_path / "-tmp"
    temp.mkdir()
    (temp / "loose.jsonl").write_text(_jsonl({"type": "user", "message": {"content": "scratch"}}), encoding="utf-8")
    return tmp_path


def test_history_loads_one_file_per_session(history) -> None:
    loaded = HistoryLoader().load_sync(f"history:{history}")

    assert [f.path for f in loaded.files] == [
        "-home-user-projects-myapp/abc-123",
        "-home-user-projects-myapp/def-456",
    ]
    assert loaded.metadata["project_count"] == 1
    assert loaded.metadata["session_count"] == 2
    assert loaded.total_tokens == sum(f.token_estimate for f in loaded.files)
    assert loaded.content == "\n\n---\n\n".join(f.content for f in loaded.files)


def test_history_keeps_only_conversation_text(history) -> None:
    session = HistoryLoader().load_sync(f"history:{history}").files[0].content

    assert session.startswith("# Session: Fixed auth token refresh bug\n")
    assert "Project: -home-user-projects-myapp | Path: /home/user/projects/myapp | Branch: main" in session
    assert "Date: 2025-12-01T10:00:00.000Z - 2025-12-01T11:00:00.000Z" in session
    assert "## User\nfix the bug in auth" in session
    assert "## Assistant\nI found the auth bug." in session
    assert "Let me think" not in session
    assert "file body" not in session
    assert ("## Assistant\n" + "x" * 2000 + "\n[...truncated]") in session


def test_history_filters_agents_temp_projects_and_old_sessions(history) -> None:
    with_agents = HistoryLoader(
        LoaderConfig(history=HistoryLoaderConfig(include_agents=True, include_temp=True))
    ).load_sync(f"history:{history}")
    recent = HistoryLoader(
        LoaderConfig(history=HistoryLoaderConfig(since=datetime(2025, 6, 1, tzinfo=timezone.utc)))
    ).load_sync(f"history:{history}")

    paths = [f.path for f in with_agents.files]
    assert "-home-user-projects-myapp/agent-a1" in paths
    assert "-tmp/loose" in paths
    assert with_agents.metadata["project_count"] == 2
    assert [f.path for f in recent.files] == ["-home-user-projects-myapp/abc-123"]


def test_history_without_index_scans_session_files(tmp_path) -> None:
    project = tmp_path / "proj"
    project.mkdir()
    (project / "s1.jsonl").write_text(
        _jsonl(
            {"type": "summary", "summary": "Tuned the cache"},
            {"type": "user", "message": {"content": "make it faster"}},
            "not json at all",
        ),
        encoding="utf-8",
    )
    (project / "empty.jsonl").write_text(_jsonl({"type": "summary", "summary": "nothing"}), encoding="utf-8")

    loaded = HistoryLoader().load_sync(f"history:{project.parent}")

    assert [f.path for f in loaded.files] == ["proj/s1"]
    assert loaded.files[0].content.startswith("# Session: Tuned the cache\nProject: proj | Path: proj\n")


def test_history_requires_a_directory(tmp_path) -> None:
    (tmp_path / "file.jsonl").write_text("{}", encoding="utf-8")

    with pytest.raises(SourceLoadError):
        HistoryLoader().load_sync(f"history:{tmp_path / 'missing'}")
    with pytest.raises(SourceLoadError):
        HistoryLoader().load_sync(f"history:{tmp_path / 'file.jsonl'}")


def test_history_source_detection() -> None:
    loader = HistoryLoader()

    assert loader.supports("history:/anywhere")
    assert loader.supports("/home/user/.claude/projects")
    assert not loader.supports("/home/user/code")


def _tarball(files: dict[str, str]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for name, text in files.items():
            data = text.encode("utf-8")
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


@pytest.mark.asyncio
async def test_github_loader_reads_the_repository_tarball() -> None:
    requests = []
    archive = _tarball(
        {
            "octo-demo-abc1234/README.md": "# Demo\n",
            "octo-demo-abc1234/src/app.py": "def main():\n    return 0\n",
            "octo-demo-abc1234/node_modules/dep.js": "module.exports = 1;",
            "octo-demo-abc1234/../escape.py": "x = 1\n",
        }
    )

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, content=archive)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    loader = GitHubLoader(LoaderConfig(github_token="gh-token"), client=client)

    loaded = await loader.load("https://github.com/octo/demo/tree/dev")

    assert requests[0].url == "https://api.github.com/repos/octo/demo/tarball/dev"
    assert requests[0].headers["authorization"] == "Bearer gh-token"
    assert [f.path for f in loaded.files] == ["README.md", "src/app.py"]
    assert loaded.source == "https://github.com/octo/demo/tree/dev"
    assert loaded.metadata["cloned_from"] == "octo/demo"
    assert loaded.metadata["branch"] == "dev"
    assert "# Source: https://github.com/octo/demo/tree/dev" in loaded.content


@pytest.mark.asyncio
async def test_github_loader_maps_http_failures_to_load_errors() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(404)))
    loader = GitHubLoader(client=client)

    with pytest.raises(SourceLoadError) as excinfo:
        await loader.load("https://github.com/octo/missing.git")

    assert "404" in str(excinfo.value)


@pytest.mark.asyncio
async def test_url_loader_fetches_text_documents() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/logo.png":
            return httpx.Response(200, content=b"\x89PNG", headers={"content-type": "image/png"})
        return httpx.Response(200, text="# Guide\n", headers={"content-type": "text/markdown; charset=utf-8"})

    loader = UrlLoader(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    loaded = await loader.load("https://docs.example.com/guide.md")

    assert loaded.files[0].path == "guide.md"
    assert loaded.files[0].mime_type == "text/markdown"
    assert loaded.content.endswith("\n\n# Guide\n")
    with pytest.raises(SourceLoadError):
        await loader.load("https://docs.example.com/logo.png")


@pytest.mark.asyncio
async def test_default_registry_puts_history_and_remote_ahead_of_files(history) -> None:
    registry = default_loader_registry()

    assert isinstance(registry.resolve(f"history:{history}"), HistoryLoader)
    assert isinstance(registry.resolve("https://github.com/octo/demo"), GitHubLoader)
    assert isinstance(registry.resolve("https://example.com/notes.txt"), UrlLoader)
    assert isinstance(registry.resolve(str(history)), FileSystemLoader)
    loaded = await registry.load(f"history:{history}")
    assert loaded.file_count == 2
