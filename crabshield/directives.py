"""
crabshield/directives.py
════════════════════════

Inline suppression directives embedded in source comments.

    let x = a - b; // crabshield-ignore
    let y = a - b; // crabshield-ignore[SOL-003]
    let z = a - b; /* crabshield-ignore[SOL-003, CUSTOM-001] reviewed */

A directive applies to the line its comment starts on.  Without a bracket
list it silences every finding on that line; with one it silences only
the listed identifiers.

The directive text is parsed with a Parsimonious PEG grammar.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional

from parsimonious.exceptions import ParseError, VisitationError
from parsimonious.grammar import Grammar
from parsimonious.nodes import NodeVisitor

from crabshield.syntax import COMMENT_TYPES, line_of, node_text, walk

logger = logging.getLogger(__name__)

MARKER = "crabshield-ignore"

DIRECTIVE_GRAMMAR = Grammar(r'''
    directive   = marker ids? trailing
    marker      = "crabshield-ignore"
    ids         = "[" _ id_list _ "]"
    id_list     = ident (_ "," _ ident)* (_ ",")?
    ident       = ~r"[A-Za-z0-9_.:\-]+"
    trailing    = ~r"(\s.*)?"s
    _           = ~r"[ \t]*"
''')


class DirectiveSource(Enum):
    INLINE = "inline"
    CONFIG = "config"


@dataclass(frozen=True)
class SuppressionDirective:
    """Suppress findings on ``line`` of ``file``; ``ids`` empty = all."""
    file: str
    line: int
    ids: FrozenSet[str] = frozenset()
    source: DirectiveSource = DirectiveSource.INLINE

    @property
    def is_blanket(self) -> bool:
        return not self.ids

    def matches(self, detector_id: str) -> bool:
        return self.is_blanket or detector_id in self.ids


class _DirectiveVisitor(NodeVisitor):
    """Parse tree → tuple of identifiers (empty for a blanket directive)."""

    def generic_visit(self, node, visited_children):
        return visited_children or node

    def visit_directive(self, node, visited_children):
        _, ids, _ = visited_children
        if isinstance(ids, list) and ids:
            return tuple(ids[0])
        return ()

    def visit_ids(self, node, visited_children):
        _, _, id_list, _, _ = visited_children
        return id_list

    def visit_id_list(self, node, visited_children):
        first, rest, _ = visited_children
        names = [first]
        if isinstance(rest, list):
            for item in rest:
                names.append(item[-1])
        return names

    def visit_ident(self, node, visited_children):
        return node.text


def parse_directive(comment_text: str) -> Optional[FrozenSet[str]]:
    """Identifiers named by the directive in ``comment_text``.

    Returns ``None`` when there is no (well-formed) directive, an empty set
    for a blanket directive.
    """
    idx = comment_text.find(MARKER)
    if idx < 0:
        return None
    fragment = comment_text[idx:]
    if fragment.endswith("*/"):
        fragment = fragment[:-2].rstrip()
    try:
        tree = DIRECTIVE_GRAMMAR.parse(fragment)
        ids = _DirectiveVisitor().visit(tree)
    except (ParseError, VisitationError) as exc:
        logger.debug("Ignoring malformed directive %r: %s", fragment, exc)
        return None
    return frozenset(ids)


def collect_directives(path: str, root) -> List[SuppressionDirective]:
    """All inline directives in a parsed file."""
    out: List[SuppressionDirective] = []
    for node in walk(root):
        if node.type not in COMMENT_TYPES:
            continue
        ids = parse_directive(node_text(node))
        if ids is None:
            continue
        out.append(SuppressionDirective(file=path, line=line_of(node), ids=ids))
    return out


def index_by_line(directives: Iterable[SuppressionDirective]
                  ) -> Dict[int, List[SuppressionDirective]]:
    by_line: Dict[int, List[SuppressionDirective]] = {}
    for d in directives:
        by_line.setdefault(d.line, []).append(d)
    return by_line
