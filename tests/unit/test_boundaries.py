from mnemo.ingest.boundaries import BoundaryScanner, HeadingScanner, IndentScanner, scanner_for


def _spans(boundaries):
    return [(b.kind, b.name, b.start_line, b.end_line) for b in boundaries]


def test_python_scanner_folds_decorators_and_imports() -> None:
    source = """import os
from x import y


@decorator
def alpha():
    return 1


class Beta:
    def method(self):
        pass
"""

    boundaries = IndentScanner().find_boundaries(source.split("\n"))

    assert _spans(boundaries) == [
        ("import", None, 0, 1),
        ("function", "alpha", 4, 6),
        ("class", "Beta", 9, 11),
    ]


def test_python_scanner_keeps_multiline_strings_inside_the_block() -> None:
    source = '''def documented():
    """Docstring.

not a new block
    """
    return 1
'''

    boundaries = IndentScanner().find_boundaries(source.split("\n"))

    assert _spans(boundaries) == [("function", "documented", 0, 5)]


def test_python_scanner_gives_up_on_unbalanced_input() -> None:
    assert IndentScanner().find_boundaries(["def broken(:", "    pass"]) == []
    assert IndentScanner().find_boundaries(['x = """never closed', "def f():", "    pass"]) == []
    assert IndentScanner().find_boundaries(["    indented_first = 1"]) == []


def test_go_scanner_reports_functions_types_and_imports() -> None:
    source = 'package main\n\nimport "fmt"\n\nfunc main() {\n\tfmt.Println("hi")\n}\n\ntype Server struct {\n\tport int\n}\n'

    boundaries = scanner_for("go").find_boundaries(source.split("\n"))

    assert _spans(boundaries) == [
        ("import", None, 0, 2),
        ("function", "main", 4, 6),
        ("type", "Server", 8, 10),
    ]


def test_typescript_scanner_handles_arrow_functions_and_type_aliases() -> None:
    lines = [
        "export type Id = string;",
        "export const handler = async (req) => {",
        "  return req;",
        "};",
        "interface Options {",
        "  verbose: boolean;",
        "}",
    ]

    boundaries = scanner_for("typescript").find_boundaries(lines)

    assert _spans(boundaries) == [
        ("type", "Id", 0, 0),
        ("function", "handler", 1, 3),
        ("interface", "Options", 4, 6),
    ]


def test_rust_scanner_names_impl_blocks_after_their_type() -> None:
    lines = [
        "use std::fmt;",
        "",
        "pub struct Point {",
        "    x: i32,",
        "}",
        "",
        "impl fmt::Display for Point {",
        "    fn fmt(&self, f: &mut fmt::Formatter) -> fmt::Result { Ok(()) }",
        "}",
    ]

    boundaries = scanner_for("rust").find_boundaries(lines)

    assert [(b.kind, b.name) for b in boundaries] == [
        ("import", None),
        ("class", "Point"),
        ("class", "Point"),
    ]


def test_brace_scanner_gives_up_on_unbalanced_braces() -> None:
    scanner = scanner_for("javascript")

    assert scanner.find_boundaries(["}", "function f() {", "}"]) == []
    assert scanner.find_boundaries(["function f() {", "  return 1;"]) == []


def test_heading_scanner_ignores_fenced_code() -> None:
    lines = ["# Title", "text", "```", "# not a heading", "```", "## Section", "more"]

    boundaries = HeadingScanner().find_boundaries(lines)

    assert [(b.name, b.level, b.start_line, b.end_line) for b in boundaries] == [
        ("Title", 1, 0, 4),
        ("Section", 2, 5, 6),
    ]


def test_scanner_registry() -> None:
    assert scanner_for("text") is None
    assert scanner_for("kotlin") is scanner_for("java")
    assert isinstance(scanner_for("python"), BoundaryScanner)
