"""
patterns.py: structural patterns over Rust syntax trees
=========================================================

A small tree-pattern language used by declarative rules.  Patterns are
written as S-expressions and parsed with the ``sexpdata`` library, then
compiled into a :class:`PatternNode` tree and matched against tree-sitter
nodes.

Forms
-----
- ``_``                      wildcard
- ``?name``                  capture (a repeated name must match equal text)
- ``?...name``               capture the remaining children (last position only)
- ``"text"``                 node text equals ``text``
- ``symbol``                 node type equals ``symbol``
- ``(TYPE p1 p2 ...)``       node of TYPE whose named children match p1, p2, ...
- ``(deep p)``               p matches the node or any descendant
- ``(or p1 p2 ...)``         alternation
- ``(not p)``                negation
- ``(any-of "a" "b" ...)``   node text is one of the literals
- ``(bind name p)``          match p, bind the node to ``name``
- ``(field NAME p)``         the child in field NAME matches p
- ``(text "REGEX")``         regular-expression search on node text
- ``(attr "TEXT")``          a fn item carrying an attribute that contains TEXT

Example::

    (call_expression (text "^invoke(_signed)?$") arguments)

Depends on:
    - sexpdata          (S-expression parsing)
    - tree-sitter       (syntax trees)
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

import sexpdata
from tree_sitter import Node

from crabshield.errors import PatternError
from crabshield.syntax import COMMENT_TYPES, attributes_of, node_text, walk

logger = logging.getLogger(__name__)


# ===================================================================
#  PART 1: S-EXPRESSION PARSING LAYER
# ===================================================================

def _parse_sexp(text: str) -> Any:
    """Parse an S-expression string with ``sexpdata.loads``.

    Raises
    ------
    PatternError
        If the input is malformed.
    """
    try:
        return sexpdata.loads(text, true=None, false=None, nil=None)
    except Exception as e:
        raise PatternError(f"Failed to parse S-expression: {e}") from e


def _is_symbol(obj: Any) -> bool:
    return isinstance(obj, sexpdata.Symbol)


def _symbol_name(obj: Any) -> str:
    return obj.value() if hasattr(obj, "value") and callable(obj.value) else str(obj)


def _sexp_to_string(obj: Any) -> str:
    try:
        return sexpdata.dumps(obj)
    except Exception:
        return str(obj)


# ===================================================================
#  PART 2: PATTERN AST
# ===================================================================

class PatternNodeKind(enum.Enum):
    WILDCARD = "wildcard"
    CAPTURE = "capture"
    REST_CAPTURE = "rest"
    TEXT = "text"              # exact node text
    TYPE = "type"              # node type only
    NODE = "node"              # (TYPE children...)
    DEEP = "deep"
    ALTERNATION = "alternation"
    NEGATION = "negation"
    ANY_OF = "any_of"
    BIND = "bind"
    FIELD = "field"
    REGEX = "regex"
    ATTR = "attr"


@dataclass
class PatternNode:
    kind: PatternNodeKind
    value: Any = None
    name: Optional[str] = None
    children: List["PatternNode"] = field(default_factory=list)
    source: Optional[str] = None

    def pretty(self, indent: int = 0) -> str:
        prefix = "  " * indent
        parts = [f"{prefix}{self.kind.value}"]
        if self.value is not None:
            parts.append(f" value={self.value!r}")
        if self.name:
            parts.append(f" name={self.name}")
        result = "".join(parts)
        for child in self.children:
            result += "\n" + child.pretty(indent + 1)
        return result


# ===================================================================
#  PART 3: PATTERN COMPILER
# ===================================================================

class PatternCompiler:
    """Compiles S-expressions into ``PatternNode`` trees."""

    def compile_from_string(self, text: str) -> PatternNode:
        return self._compile(_parse_sexp(text))

    def _compile(self, sexp: Any) -> PatternNode:
        if _is_symbol(sexp):
            return self._compile_symbol(_symbol_name(sexp))
        if isinstance(sexp, str):
            return PatternNode(PatternNodeKind.TEXT, value=sexp, source=repr(sexp))
        if isinstance(sexp, (int, float)) and not isinstance(sexp, bool):
            return PatternNode(PatternNodeKind.TEXT, value=str(sexp), source=str(sexp))
        if isinstance(sexp, list):
            return self._compile_list(sexp)
        raise PatternError(f"Unsupported pattern element: {sexp!r}")

    def _compile_symbol(self, s: str) -> PatternNode:
        if s == "_":
            return PatternNode(PatternNodeKind.WILDCARD, source=s)
        if s.startswith("?...") and len(s) > 4:
            return PatternNode(PatternNodeKind.REST_CAPTURE, name=s[4:], source=s)
        if s.startswith("?") and len(s) > 1:
            return PatternNode(PatternNodeKind.CAPTURE, name=s[1:], source=s)
        return PatternNode(PatternNodeKind.TYPE, value=s, source=s)

    def _compile_list(self, sexp: List[Any]) -> PatternNode:
        if not sexp or not _is_symbol(sexp[0]):
            raise PatternError(
                f"Pattern list must start with a symbol: {_sexp_to_string(sexp)}")
        head = _symbol_name(sexp[0])
        args = sexp[1:]
        source = _sexp_to_string(sexp)

        if head == "or":
            if len(args) < 2:
                raise PatternError(f"(or ...) needs at least two branches: {source}")
            return PatternNode(PatternNodeKind.ALTERNATION,
                               children=[self._compile(a) for a in args],
                               source=source)
        if head == "not":
            self._arity(head, args, 1, source)
            return PatternNode(PatternNodeKind.NEGATION,
                               children=[self._compile(args[0])], source=source)
        if head == "deep":
            self._arity(head, args, 1, source)
            return PatternNode(PatternNodeKind.DEEP,
                               children=[self._compile(args[0])], source=source)
        if head == "any-of":
            if not args:
                raise PatternError(f"(any-of ...) needs values: {source}")
            values = [_symbol_name(a) if _is_symbol(a) else str(a) for a in args]
            return PatternNode(PatternNodeKind.ANY_OF, value=frozenset(values),
                               source=source)
        if head == "bind":
            self._arity(head, args, 2, source)
            return PatternNode(PatternNodeKind.BIND, name=self._name(args[0]),
                               children=[self._compile(args[1])], source=source)
        if head == "field":
            self._arity(head, args, 2, source)
            return PatternNode(PatternNodeKind.FIELD, name=self._name(args[0]),
                               children=[self._compile(args[1])], source=source)
        if head == "text":
            self._arity(head, args, 1, source)
            try:
                regex = re.compile(str(args[0]))
            except re.error as e:
                raise PatternError(f"Bad regular expression in {source}: {e}") from e
            return PatternNode(PatternNodeKind.REGEX, value=regex, source=source)
        if head == "attr":
            self._arity(head, args, 1, source)
            return PatternNode(PatternNodeKind.ATTR, value=str(args[0]), source=source)

        children = [self._compile(a) for a in args]
        for idx, child in enumerate(children):
            if child.kind is PatternNodeKind.REST_CAPTURE and idx != len(children) - 1:
                raise PatternError(f"?...{child.name} must be the last child: {source}")
        return PatternNode(PatternNodeKind.NODE, value=head, children=children,
                           source=source)

    @staticmethod
    def _arity(head: str, args: List[Any], n: int, source: str) -> None:
        if len(args) != n:
            raise PatternError(f"({head} ...) takes {n} argument(s): {source}")

    @staticmethod
    def _name(obj: Any) -> str:
        return _symbol_name(obj) if _is_symbol(obj) else str(obj)


def compile_pattern(text: str) -> PatternNode:
    return PatternCompiler().compile_from_string(text)


# ===================================================================
#  PART 4: MATCHER
# ===================================================================

Bindings = Dict[str, Any]


def _children(node: Node) -> List[Node]:
    return [c for c in node.named_children if c.type not in COMMENT_TYPES]


class PatternMatcher:
    """Matches a compiled ``PatternNode`` against tree-sitter nodes."""

    def match(self, pattern: PatternNode, node: Node,
              bindings: Optional[Bindings] = None) -> Optional[Bindings]:
        """Return bindings on success, ``None`` on failure. Input is not mutated."""
        return self._match(pattern, node, dict(bindings) if bindings else {})

    def find_all(self, pattern: PatternNode, root: Node) -> Iterator[Tuple[Node, Bindings]]:
        """Every node below ``root`` (pre-order) that matches ``pattern``."""
        for node in walk(root):
            result = self._match(pattern, node, {})
            if result is not None:
                yield node, result

    def _match(self, pat: PatternNode, node: Node,
               bindings: Bindings) -> Optional[Bindings]:
        kind = pat.kind

        if kind is PatternNodeKind.WILDCARD:
            return bindings

        if kind in (PatternNodeKind.CAPTURE, PatternNodeKind.REST_CAPTURE):
            return self._capture(pat.name, node, bindings)

        if kind is PatternNodeKind.TEXT:
            return bindings if node_text(node) == pat.value else None

        if kind is PatternNodeKind.TYPE:
            return bindings if node.type == pat.value else None

        if kind is PatternNodeKind.NODE:
            if node.type != pat.value:
                return None
            return self._match_children(pat.children, _children(node), bindings)

        if kind is PatternNodeKind.DEEP:
            for inner in walk(node):
                result = self._match(pat.children[0], inner, dict(bindings))
                if result is not None:
                    return result
            return None

        if kind is PatternNodeKind.ALTERNATION:
            for child in pat.children:
                result = self._match(child, node, dict(bindings))
                if result is not None:
                    return result
            return None

        if kind is PatternNodeKind.NEGATION:
            if self._match(pat.children[0], node, dict(bindings)) is None:
                return bindings
            return None

        if kind is PatternNodeKind.ANY_OF:
            return bindings if node_text(node) in pat.value else None

        if kind is PatternNodeKind.BIND:
            result = self._match(pat.children[0], node, dict(bindings))
            if result is not None:
                result[pat.name] = node
            return result

        if kind is PatternNodeKind.FIELD:
            child = node.child_by_field_name(pat.name)
            if child is None:
                return None
            return self._match(pat.children[0], child, bindings)

        if kind is PatternNodeKind.REGEX:
            return bindings if pat.value.search(node_text(node)) else None

        if kind is PatternNodeKind.ATTR:
            if node.type != "function_item":
                return None
            if any(pat.value in attr for attr in attributes_of(node)):
                return bindings
            return None

        return None

    @staticmethod
    def _capture(name: str, node: Any, bindings: Bindings) -> Optional[Bindings]:
        existing = bindings.get(name)
        if existing is not None:
            if _binding_text(existing) != _binding_text(node):
                return None
            return bindings
        bindings[name] = node
        return bindings

    def _match_children(self, patterns: List[PatternNode], nodes: List[Node],
                        bindings: Bindings) -> Optional[Bindings]:
        if patterns and patterns[-1].kind is PatternNodeKind.REST_CAPTURE:
            fixed = patterns[:-1]
            if len(nodes) < len(fixed):
                return None
            rest = nodes[len(fixed):]
        else:
            fixed = patterns
            if len(nodes) != len(fixed):
                return None
            rest = None

        for pat, node in zip(fixed, nodes):
            result = self._match(pat, node, bindings)
            if result is None:
                return None
            bindings = result
        if rest is not None:
            bindings = self._capture(patterns[-1].name, list(rest), bindings)
        return bindings


def _binding_text(value: Any) -> str:
    if isinstance(value, list):
        return " ".join(node_text(n) for n in value)
    return node_text(value)


def binding_text(value: Any) -> str:
    """Source text of a captured node (or list of nodes)."""
    return _binding_text(value)
