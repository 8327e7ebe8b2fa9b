"""Structural boundary scanners, one per language family.

A scanner reports top-level declarations as 0-indexed inclusive line spans.
Scanners never raise on malformed input: when the structure cannot be tracked
reliably (unbalanced braces, broken indentation, unterminated strings) they
return no boundaries and the chunker falls back to fixed windows.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@dataclass(slots=True)
class Boundary:
    kind: str
    start_line: int
    end_line: int
    name: str | None = None
    level: int = 0


@runtime_checkable
class BoundaryScanner(Protocol):
    """Finds structural boundaries in a file's lines."""

    def find_boundaries(self, lines: list[str]) -> list[Boundary]:
        ...


_DeclPattern = tuple[str, re.Pattern[str]]

_JS_DECLARATIONS: list[_DeclPattern] = [
    ("function", re.compile(r"^(?:export\s+)?(?:default\s+)?(?:declare\s+)?(?:async\s+)?function\*?\s*(\w+)")),
    ("class", re.compile(r"^(?:export\s+)?(?:default\s+)?(?:declare\s+)?(?:abstract\s+)?class\s+(\w+)")),
    ("interface", re.compile(r"^(?:export\s+)?(?:declare\s+)?interface\s+(\w+)")),
    ("type", re.compile(r"^(?:export\s+)?(?:declare\s+)?(?:const\s+)?enum\s+(\w+)")),
    ("type", re.compile(r"^(?:export\s+)?(?:declare\s+)?type\s+(\w+)")),
    ("function", re.compile(r"^(?:export\s+)?(?:const|let|var)\s+(\w+)\s*(?::[^=]+)?=\s*(?:async\s*)?(?:\(|function\b|\w+\s*=>)")),
]

_GO_DECLARATIONS: list[_DeclPattern] = [
    ("function", re.compile(r"^func\s+(?:\([^)]*\)\s*)?(\w+)")),
    ("type", re.compile(r"^type\s+(\w+)")),
]

_RUST_DECLARATIONS: list[_DeclPattern] = [
    ("function", re.compile(r"^(?:pub(?:\([^)]*\))?\s+)?(?:const\s+)?(?:async\s+)?(?:unsafe\s+)?(?:extern\s+\"\w+\"\s+)?fn\s+(\w+)")),
    ("class", re.compile(r"^(?:pub(?:\([^)]*\))?\s+)?(?:struct|enum|union)\s+(\w+)")),
    ("interface", re.compile(r"^(?:pub(?:\([^)]*\))?\s+)?(?:unsafe\s+)?trait\s+(\w+)")),
    ("class", re.compile(r"^(?:unsafe\s+)?impl(?:<[^>]*>)?\s+(?:[\w:<>, ]+\s+for\s+)?(\w+)")),
    ("type", re.compile(r"^(?:pub(?:\([^)]*\))?\s+)?type\s+(\w+)")),
]

_JVM_MODIFIERS = r"(?:(?:public|private|protected|internal|static|final|abstract|sealed|open|data|partial|readonly)\s+)*"

_JVM_DECLARATIONS: list[_DeclPattern] = [
    ("class", re.compile(rf"^{_JVM_MODIFIERS}(?:class|record|struct|object)\s+(\w+)")),
    ("interface", re.compile(rf"^{_JVM_MODIFIERS}interface\s+(\w+)")),
    ("type", re.compile(rf"^{_JVM_MODIFIERS}enum(?:\s+class)?\s+(\w+)")),
    ("function", re.compile(rf"^{_JVM_MODIFIERS}fun\s+(?:<[^>]*>\s*)?(?:\w+\.)?(\w+)")),
]


class BraceScanner:
    """Bounds top-level declarations by tracking brace depth.

    A declaration closes on the line where depth returns to zero after its
    first opening brace. Declarations that never open a brace (type aliases,
    one-line arrow functions) close on their first line ending with ``;``.
    The leading run of import lines is reported as one ``import`` boundary.
    """

    def __init__(
        self,
        declarations: list[_DeclPattern],
        import_prefixes: tuple[str, ...],
    ) -> None:
        self._declarations = declarations
        self._import_prefixes = import_prefixes

    def find_boundaries(self, lines: list[str]) -> list[Boundary]:
        boundaries: list[Boundary] = []
        depth = 0
        current: Boundary | None = None
        opened = False
        import_start: int | None = None
        import_end: int | None = None
        imports_done = False

        for i, line in enumerate(lines):
            trimmed = line.strip()

            if depth == 0 and current is None and not imports_done:
                if trimmed.startswith(self._import_prefixes):
                    if import_start is None:
                        import_start = i
                    import_end = i
                elif import_start is not None and trimmed and not trimmed.startswith(("//", "/*", "*")):
                    if not line[:1].isspace() and not trimmed.startswith((")", "}")):
                        imports_done = True
                    else:
                        import_end = i

            if depth == 0:
                match = self._match_declaration(trimmed) if not line[:1].isspace() else None
                if match is not None:
                    if current is not None:
                        current.end_line = i - 1
                        boundaries.append(current)
                    kind, name = match
                    current = Boundary(kind=kind, start_line=i, end_line=i, name=name)
                    opened = False

            for char in line:
                if char == "{":
                    depth += 1
                    if current is not None:
                        opened = True
                elif char == "}":
                    depth -= 1
                    if depth < 0:
                        return []

            if current is None or depth != 0:
                continue
            if opened or trimmed.endswith(";"):
                current.end_line = i
                boundaries.append(current)
                current = None

        if depth != 0:
            return []
        if current is not None:
            if opened:
                return []
            current.end_line = len(lines) - 1
            boundaries.append(current)
        if import_start is not None and import_end is not None:
            boundaries.append(Boundary(kind="import", start_line=import_start, end_line=import_end))

        return sorted(boundaries, key=lambda b: b.start_line)

    def _match_declaration(self, trimmed: str) -> tuple[str, str] | None:
        for kind, pattern in self._declarations:
            match = pattern.match(trimmed)
            if match:
                return kind, match.group(1)
        return None


_PY_DEF = re.compile(r"^(?:async\s+)?def\s+(\w+)")
_PY_CLASS = re.compile(r"^class\s+(\w+)")
_TRIPLE_QUOTE = re.compile(r'"""|\'\'\'')


class IndentScanner:
    """Bounds top-level ``def``/``class`` blocks by indentation depth.

    Bracket continuations and triple-quoted strings are tracked so that a
    column-0 line inside them does not end the enclosing block. Decorators are
    folded into the declaration they precede.
    """

    def find_boundaries(self, lines: list[str]) -> list[Boundary]:
        boundaries: list[Boundary] = []
        current: Boundary | None = None
        last_body_line = -1
        awaiting_body = False
        pending_decorator: int | None = None
        import_start: int | None = None
        import_end = -1
        imports_done = False
        bracket_depth = 0
        in_string: str | None = None
        seen_code = False

        for i, line in enumerate(lines):
            stripped = line.strip()
            continuation = bracket_depth > 0 or in_string is not None

            bracket_depth, in_string = _scan_python_line(line, bracket_depth, in_string)
            if bracket_depth < 0:
                return []

            if continuation:
                if current is not None:
                    last_body_line = i
                elif import_start is not None and not imports_done:
                    import_end = i
                continue
            if not stripped or stripped.startswith("#"):
                continue

            indent = len(line) - len(line.lstrip())
            if indent > 0:
                if not seen_code:
                    # The first statement of a module cannot be indented.
                    return []
                if current is not None:
                    last_body_line = i
                    awaiting_body = False
                elif import_start is not None and not imports_done:
                    import_end = i
                continue

            seen_code = True
            if awaiting_body:
                return []
            if current is not None:
                current.end_line = last_body_line
                boundaries.append(current)
                current = None

            if stripped.startswith(("import ", "from ")) and not imports_done and not boundaries:
                if import_start is None:
                    import_start = i
                import_end = i
                continue
            if import_start is not None:
                imports_done = True

            if stripped.startswith("@"):
                if pending_decorator is None:
                    pending_decorator = i
                continue

            declaration = _match_python_declaration(stripped)
            if declaration is not None:
                kind, name = declaration
                current = Boundary(
                    kind=kind,
                    start_line=pending_decorator if pending_decorator is not None else i,
                    end_line=i,
                    name=name,
                )
                last_body_line = i
                awaiting_body = _opens_block(stripped) and bracket_depth == 0 and in_string is None
            pending_decorator = None

        if bracket_depth != 0 or in_string is not None or awaiting_body:
            return []
        if current is not None:
            current.end_line = last_body_line
            boundaries.append(current)
        if import_start is not None:
            boundaries.append(Boundary(kind="import", start_line=import_start, end_line=import_end))

        return sorted(boundaries, key=lambda b: b.start_line)


def _match_python_declaration(stripped: str) -> tuple[str, str] | None:
    match = _PY_CLASS.match(stripped)
    if match:
        return "class", match.group(1)
    match = _PY_DEF.match(stripped)
    if match:
        return "function", match.group(1)
    return None


def _opens_block(stripped: str) -> bool:
    code = stripped.split("#", 1)[0].rstrip()
    return code.endswith(":")


def _scan_python_line(line: str, depth: int, in_string: str | None) -> tuple[int, str | None]:
    """Update bracket depth and triple-quote state across one line."""

    position = 0
    while position < len(line):
        if in_string is not None:
            end = line.find(in_string, position)
            if end == -1:
                return depth, in_string
            position = end + 3
            in_string = None
            continue
        char = line[position]
        if char == "#":
            break
        match = _TRIPLE_QUOTE.match(line, position)
        if match:
            in_string = match.group(0)
            position = match.end()
            continue
        if char in "\"'":
            end = line.find(char, position + 1)
            while end != -1 and line[end - 1] == "\\":
                end = line.find(char, end + 1)
            if end == -1:
                break
            position = end + 1
            continue
        if char in "([{":
            depth += 1
        elif char in ")]}":
            depth -= 1
        position += 1
    return depth, in_string


_HEADING = re.compile(r"^(#{1,6})\s+(.+)")


class HeadingScanner:
    """Splits Markdown prose at headings, ignoring fenced code blocks."""

    def find_boundaries(self, lines: list[str]) -> list[Boundary]:
        boundaries: list[Boundary] = []
        current: Boundary | None = None
        in_fence = False

        for i, line in enumerate(lines):
            if line.lstrip().startswith(("```", "~~~")):
                in_fence = not in_fence
                continue
            if in_fence:
                continue
            match = _HEADING.match(line)
            if not match:
                continue
            if current is not None:
                current.end_line = i - 1
                boundaries.append(current)
            current = Boundary(
                kind="section",
                start_line=i,
                end_line=i,
                name=match.group(2).strip(),
                level=len(match.group(1)),
            )

        if current is not None:
            current.end_line = len(lines) - 1
            boundaries.append(current)
        return boundaries


_SCANNERS: dict[str, BoundaryScanner] = {}


def _register(file_types: tuple[str, ...], scanner: BoundaryScanner) -> None:
    for file_type in file_types:
        _SCANNERS[file_type] = scanner


_register(("typescript", "javascript"), BraceScanner(_JS_DECLARATIONS, ("import ",)))
_register(("go",), BraceScanner(_GO_DECLARATIONS, ("import ", "package ")))
_register(("rust",), BraceScanner(_RUST_DECLARATIONS, ("use ", "mod ", "extern crate ")))
_register(
    ("java", "kotlin", "csharp"),
    BraceScanner(_JVM_DECLARATIONS, ("import ", "package ", "using ")),
)
_register(("python",), IndentScanner())
_register(("markdown",), HeadingScanner())


def scanner_for(file_type: str) -> BoundaryScanner | None:
    """Return the scanner for a file type, or ``None`` for unstructured types."""
    return _SCANNERS.get(file_type)
