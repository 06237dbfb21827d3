"""
Shared search for unchecked integer arithmetic.

SOL-003, CW-001 and INK-002 differ in which operand types they care about
and in how they grade a hit, but agree on what an unchecked arithmetic
expression looks like and on the shapes that are known to be safe.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

from tree_sitter import Node

from crabshield.detectors import predicates as P
from crabshield.parser import ParsedSource
from crabshield.syntax import FunctionInfo, line_of, node_text, operator_of, walk_body


@dataclass(frozen=True)
class ArithmeticSite:
    node: Node
    operator: str
    left: Node
    right: Node

    @property
    def text(self) -> str:
        return node_text(self.node)

    @property
    def is_division(self) -> bool:
        return self.operator.startswith("/")


def _candidate(node: Node) -> Optional[Tuple[str, Node, Node]]:
    if node.type == "binary_expression":
        op = operator_of(node)
        if op not in P.ARITHMETIC_OPERATORS:
            return None
    elif node.type == "compound_assignment_expr":
        op = operator_of(node)
        if op not in P.COMPOUND_ARITHMETIC_OPERATORS:
            return None
    else:
        return None
    left = node.child_by_field_name("left")
    right = node.child_by_field_name("right")
    if left is None or right is None:
        return None
    return op, left, right


def is_excluded(node: Node, left: Node, right: Node, line: str) -> bool:
    text = node_text(node)
    return (
        P.is_constant_operand(left)
        or P.is_constant_operand(right)
        or P.uses_safe_arithmetic(line)
        or P.is_string_concat(text)
        or P.is_length_arithmetic(line)
        or P.both_widening_casts(node)
        or P.is_bounded_percentage(node)
    )


def unchecked_arithmetic(
    parsed: ParsedSource, fn: FunctionInfo
) -> Iterator[ArithmeticSite]:
    """Outermost unchecked arithmetic expressions in ``fn``'s body."""
    if fn.body is None:
        return
    reported: List[Tuple[int, int]] = []
    for node in walk_body(fn.body):
        cand = _candidate(node)
        if cand is None:
            continue
        op, left, right = cand
        if any(s <= node.start_byte and node.end_byte <= e for s, e in reported):
            continue
        if is_excluded(node, left, right, parsed.line_text(line_of(node))):
            continue
        reported.append((node.start_byte, node.end_byte))
        yield ArithmeticSite(node, op, left, right)
