"""
crabshield.parser
=================

Turns Rust source bytes into a tree-sitter syntax tree plus the original
text.  Later stages inspect both: detectors match tree shapes and then look
at the text of the spans they matched.

Parsing is pure.  A fresh :class:`tree_sitter.Parser` is built for every
call, so worker threads never share parser state; the compiled
:class:`tree_sitter.Language` is immutable and shared.

Typical usage::

    from crabshield.parser import parse_source

    parsed = parse_source("src/lib.rs", data)
    for node in parsed.tree.root_node.named_children:
        print(node.type, parsed.line_text(node.start_point[0] + 1))
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Union

import tree_sitter_rust
from tree_sitter import Language, Node, Parser, Tree

from crabshield.errors import ParseFailure

RUST_LANGUAGE = Language(tree_sitter_rust.language())


@dataclass(frozen=True)
class ParsedSource:
    """A parsed file: syntax tree and the exact text it was built from."""
    path: str
    source: bytes
    text: str
    tree: Tree
    lines: List[str] = field(default_factory=list, repr=False)

    @property
    def root(self) -> Node:
        return self.tree.root_node

    def line_text(self, line: int) -> str:
        """Return 1-based ``line`` without its newline ('' if out of range)."""
        if 1 <= line <= len(self.lines):
            return self.lines[line - 1]
        return ""


def _first_error(node: Node) -> Node:
    """Locate the first ERROR/MISSING node for diagnostics."""
    stack = [node]
    while stack:
        cur = stack.pop()
        if cur.type == "ERROR" or cur.is_missing:
            return cur
        if cur.has_error:
            stack.extend(reversed(cur.children))
    return node


def parse_source(path: Union[str, Path], data: bytes) -> ParsedSource:
    """Parse ``data`` as Rust.

    Raises
    ------
    ParseFailure
        If the bytes are not UTF-8 or the tree contains syntax errors.
    """
    path = str(path)
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ParseFailure(path, f"not valid UTF-8 ({exc.reason})") from exc

    parser = Parser(RUST_LANGUAGE)
    tree = parser.parse(data)
    if tree.root_node.has_error:
        bad = _first_error(tree.root_node)
        row, col = bad.start_point
        raise ParseFailure(path, f"syntax error at line {row + 1}, column {col + 1}")

    return ParsedSource(
        path=path,
        source=data,
        text=text,
        tree=tree,
        lines=text.splitlines(),
    )
