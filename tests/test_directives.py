# tests/test_directives.py
"""Inline crabshield-ignore directives."""

import pytest

from crabshield.directives import (
    SuppressionDirective,
    collect_directives,
    index_by_line,
    parse_directive,
)
from crabshield.parser import parse_source


class TestParseDirective:

    def test_blanket(self):
        assert parse_directive("// crabshield-ignore") == frozenset()

    def test_single_id(self):
        assert parse_directive("// crabshield-ignore[SOL-003]") == frozenset({"SOL-003"})

    def test_id_list_with_spaces_and_reason(self):
        ids = parse_directive("/* crabshield-ignore[ SOL-003 , CUSTOM-001, ] reviewed by ops */")
        assert ids == frozenset({"SOL-003", "CUSTOM-001"})

    def test_trailing_reason_after_blanket(self):
        assert parse_directive("// crabshield-ignore fee bounded upstream") == frozenset()

    @pytest.mark.parametrize("text", [
        "// nothing to see",
        "// crabshield-ignore[",
        "// crabshield-ignore[]",
        "// crabshield-ignored",
        "// crabshield-ignore[SOL 003]",
    ])
    def test_not_a_directive(self, text):
        assert parse_directive(text) is None


class TestSuppressionDirective:

    def test_matching(self):
        blanket = SuppressionDirective("a.rs", 3)
        scoped = SuppressionDirective("a.rs", 3, frozenset({"SOL-003"}))
        assert blanket.is_blanket and blanket.matches("NEAR-001")
        assert scoped.matches("SOL-003")
        assert not scoped.matches("SOL-020")


class TestCollectDirectives:

    def test_lines_of_comments(self):
        src = (
            b"fn f(a: u64, b: u64) -> u64 {\n"
            b"    let c = a - b; // crabshield-ignore[SOL-003]\n"
            b"    /* crabshield-ignore */ let d = a * b;\n"
            b"    // unrelated\n"
            b"    c + d\n"
            b"}\n"
        )
        parsed = parse_source("src/lib.rs", src)
        directives = collect_directives("src/lib.rs", parsed.root)
        by_line = index_by_line(directives)
        assert sorted(by_line) == [2, 3]
        assert by_line[2][0].ids == frozenset({"SOL-003"})
        assert by_line[3][0].is_blanket
        assert all(d.file == "src/lib.rs" for d in directives)
