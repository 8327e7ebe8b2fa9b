import random

import pytest
from pydantic import ValidationError

from mnemo.config import ChunkingConfig
from mnemo.ingest.chunker import (
    CodeChunker,
    chunk_file,
    chunk_header,
    chunk_loaded_source,
    chunk_to_vector_metadata,
    detect_file_type,
    estimate_tokens,
    prepare_chunk_for_embedding,
)
from mnemo.types import LoadedFile


def _function(index: int, body_lines: int = 32) -> str:
    body = "\n".join(
        f"  const value{k} = computeSomething({k}) + anotherThing({k});" for k in range(body_lines)
    )
    return f"export function fn{index}() {{\n{body}\n}}\n"


def _assert_contiguous(chunks, line_count: int) -> None:
    assert chunks[0].start_line == 1
    assert chunks[-1].end_line == line_count
    for before, after in zip(chunks, chunks[1:]):
        assert after.start_line == before.end_line + 1


def test_readme_is_kept_whole_regardless_of_size() -> None:
    content = "# Project\n\n" + ("Some long paragraph about the project. " * 400)

    chunks = chunk_file("docs/README.md", content, "demo")

    assert len(chunks) == 1
    assert chunks[0].content == content
    assert chunks[0].start_line == 1
    assert chunks[0].end_line == content.count("\n") + 1
    assert chunks[0].token_estimate > 600


def test_readme_of_5000_chars_is_exactly_one_chunk() -> None:
    chunks = chunk_file("README.md", "A" * 5000, "repo")

    assert len(chunks) == 1
    assert len(chunks[0].content) == 5000


def test_three_large_bodies_yield_several_typed_chunks() -> None:
    payload = "x" * 2000
    content = (
        f'export function first() {{\n  const payload = "{payload}";\n  return payload;\n}}\n\n'
        f'export function second() {{\n  const payload = "{payload}";\n  return payload;\n}}\n\n'
        "export class Holder {\n"
        f'  method() {{\n    const payload = "{payload}";\n    return payload;\n  }}\n'
        "}\n"
    )

    chunks = chunk_file("src/big.ts", content, "repo")

    assert len(chunks) > 1
    assert all(chunk.file_type == "typescript" for chunk in chunks)
    assert all(chunk.end_line >= chunk.start_line >= 1 for chunk in chunks)
    assert [name for chunk in chunks for name in chunk.exports or []] == ["first", "second", "Holder"]


def test_small_file_is_one_chunk_with_exports() -> None:
    content = "import x from 'y';\n\nexport function alpha() {\n  return 1;\n}\n\nexport class Beta {\n}\n"

    chunks = chunk_file("src/small.ts", content, "demo")

    assert len(chunks) == 1
    assert chunks[0].file_type == "typescript"
    assert chunks[0].exports == ["alpha", "Beta"]
    assert chunks[0].end_line == 9


def test_large_file_splits_at_function_boundaries() -> None:
    content = "\n".join(_function(i) for i in range(6))
    line_count = len(content.split("\n"))

    chunks = chunk_file("src/handlers.ts", content, "demo")

    assert len(chunks) == 6
    assert all(chunk.token_estimate <= 600 for chunk in chunks)
    assert [chunk.exports for chunk in chunks] == [[f"fn{i}"] for i in range(6)]
    assert [chunk.chunk_index for chunk in chunks] == list(range(6))
    _assert_contiguous(chunks, line_count)


def test_chunk_content_matches_reported_line_range() -> None:
    content = "\n".join(_function(i) for i in range(4))
    lines = content.split("\n")

    for chunk in chunk_file("src/handlers.ts", content, "demo"):
        assert chunk.content == "\n".join(lines[chunk.start_line - 1 : chunk.end_line])


def test_python_file_splits_at_top_level_definitions() -> None:
    functions = []
    for i in range(5):
        body = "\n".join(f"    total_{k} = helper_{k}(value) * {k}" for k in range(50))
        functions.append(f"def handler_{i}(value):\n{body}\n    return value\n")
    content = "import os\n\n\n" + "\n\n".join(functions)

    chunks = chunk_file("app/handlers.py", content, "demo")

    assert len(chunks) > 1
    assert all(chunk.token_estimate <= 600 for chunk in chunks)
    exported = [name for chunk in chunks for name in chunk.exports or []]
    assert exported == [f"handler_{i}" for i in range(5)]
    _assert_contiguous(chunks, len(content.split("\n")))


def test_malformed_file_falls_back_to_overlapping_windows() -> None:
    lines = ["export function broken() {"] + [f"  let x{i} = {i} * 2;" for i in range(400)]
    content = "\n".join(lines)

    chunks = chunk_file("src/broken.ts", content, "demo")

    assert len(chunks) > 1
    assert all(chunk.token_estimate <= 600 for chunk in chunks)
    assert chunks[0].start_line == 1
    assert chunks[-1].end_line == len(lines)
    for before, after in zip(chunks, chunks[1:]):
        assert before.start_line < after.start_line <= before.end_line


def test_unstructured_file_uses_fixed_windows() -> None:
    content = "\n".join(f"row {i}, value {i * 3}, note unstructured text" for i in range(600))

    chunks = chunk_file("data/export.txt", content, "demo")

    assert len(chunks) > 1
    assert all(chunk.file_type == "text" for chunk in chunks)
    assert chunks[-1].end_line == 600


def test_always_whole_patterns_are_configurable() -> None:
    content = "\n".join(_function(i) for i in range(6))
    config = ChunkingConfig(always_whole=["*.ts"])

    chunks = chunk_file("src/handlers.ts", content, "demo", config)

    assert len(chunks) == 1


def test_chunk_loaded_source_preserves_file_order() -> None:
    files = [
        LoadedFile(path="b.py", content="def b():\n    return 2\n", size=22, token_estimate=6),
        LoadedFile(path="a.py", content="def a():\n    return 1\n", size=22, token_estimate=6),
    ]

    chunks = chunk_loaded_source(files, "demo")

    assert [chunk.file_path for chunk in chunks] == ["b.py", "a.py"]
    assert all(chunk.alias == "demo" for chunk in chunks)
    assert len({chunk.id for chunk in chunks}) == 2


def test_embedding_text_and_vector_metadata() -> None:
    chunk = CodeChunker().chunk_file("src/util.ts", "export const id = (x) => x;\n", "demo")[0]

    assert chunk_header(chunk) == "### src/util.ts (lines 1-2)\n\n"
    assert prepare_chunk_for_embedding(chunk).endswith(chunk.content)
    assert chunk_to_vector_metadata(chunk) == {
        "alias": "demo",
        "file_path": "src/util.ts",
        "file_type": "typescript",
        "chunk_index": 0,
        "start_line": 1,
        "end_line": 2,
    }


def test_token_estimate_and_file_type_detection() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcde") == 2
    assert detect_file_type("lib/main.RS") == "rust"
    assert detect_file_type("Makefile") == "text"


def test_overlap_must_be_smaller_than_target() -> None:
    with pytest.raises(ValidationError):
        ChunkingConfig(target_tokens=100, overlap_tokens=100, max_tokens=200)
    with pytest.raises(ValidationError):
        ChunkingConfig(target_tokens=700, overlap_tokens=50, max_tokens=600)


_LINE_POOLS = {
    "ts": ["export function handler{n}() {{", "  const v{n} = compute({n});", "}}", "", "export class Box{n} {{", "// note {n}"],
    "py": ["def handler_{n}(value):", "    total = value * {n}", "class Box{n}:", "", "    return total", "# note {n}"],
    "md": ["# Heading {n}", "## Section {n}", "Some prose about item {n}.", "", "- bullet {n}"],
    "go": ["func Handler{n}() {{", "\tv := compute({n})", "}}", "", "type Box{n} struct {{"],
    "rs": ["pub fn handler_{n}() {{", "    let v = compute({n});", "}}", "", "impl Box{n} {{"],
    "java": ["public class Box{n} {{", "    int v = compute({n});", "}}", "", "    public void run{n}() {{"],
    "txt": ["plain row {n} with a few words", "", "another line of text {n}"],
}


def _random_file(rng: random.Random, extension: str) -> str:
    pool = _LINE_POOLS[extension]
    count = rng.randint(1, 900)
    return "\n".join(rng.choice(pool).format(n=rng.randint(0, 999)) for _ in range(count))


@pytest.mark.parametrize("extension", sorted(_LINE_POOLS))
def test_random_files_are_fully_covered(extension: str) -> None:
    rng = random.Random(f"chunker-{extension}")
    for _ in range(60):
        content = _random_file(rng, extension)
        lines = content.split("\n")

        chunks = chunk_file(f"src/generated.{extension}", content, "fuzz")

        assert [chunk.chunk_index for chunk in chunks] == list(range(len(chunks)))
        assert len({chunk.id for chunk in chunks}) == len(chunks)
        assert chunks[0].start_line == 1
        assert chunks[-1].end_line == len(lines)
        covered = set()
        for chunk in chunks:
            assert chunk.content == "\n".join(lines[chunk.start_line - 1 : chunk.end_line])
            assert chunk.token_estimate <= 600 or chunk.start_line == chunk.end_line
            covered.update(range(chunk.start_line, chunk.end_line + 1))
        assert covered == set(range(1, len(lines) + 1))


def test_chunk_ids_are_unique_within_a_call() -> None:
    content = "\n".join(_function(i) for i in range(10))

    chunks = chunk_file("src/handlers.ts", content, "demo")

    assert len(chunks) > 1
    assert len({chunk.id for chunk in chunks}) == len(chunks)


def test_chunk_token_estimate_is_monotonic() -> None:
    estimates = [estimate_tokens("x" * n) for n in range(200)]

    assert estimates == sorted(estimates)
    assert estimates[4] == 1
    assert estimates[5] == 2
