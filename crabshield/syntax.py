"""
crabshield.syntax
=================

Small helpers over tree-sitter nodes, and the per-file function inventory
that detectors, rules and the call graph all start from.

Everything here is read-only: nodes are never edited.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence, Tuple

from tree_sitter import Node

# Node types that hold a statement-level expression inside a block.
STATEMENT_TYPES = frozenset({
    "expression_statement",
    "let_declaration",
    "macro_invocation",
})

COMMENT_TYPES = frozenset({"line_comment", "block_comment"})

_NESTED_FN_TYPES = frozenset({"function_item"})


# ---------------------------------------------------------------------------
# Node helpers
# ---------------------------------------------------------------------------

def node_text(node: Optional[Node]) -> str:
    if node is None or node.text is None:
        return ""
    return node.text.decode("utf-8", "replace")


def line_of(node: Node) -> int:
    """1-based start line."""
    return node.start_point[0] + 1


def end_line_of(node: Node) -> int:
    return node.end_point[0] + 1


def column_of(node: Node) -> int:
    """1-based start column (bytes)."""
    return node.start_point[1] + 1


def walk(node: Node, named_only: bool = True) -> Iterator[Node]:
    """Pre-order traversal of ``node`` and its descendants."""
    stack = [node]
    while stack:
        cur = stack.pop()
        if not named_only or cur.is_named:
            yield cur
        children = cur.named_children if named_only else cur.children
        stack.extend(reversed(children))


def walk_body(node: Node) -> Iterator[Node]:
    """Like :func:`walk` but does not descend into nested ``fn`` items."""
    stack = list(reversed(node.named_children))
    while stack:
        cur = stack.pop()
        yield cur
        if cur.type in _NESTED_FN_TYPES:
            continue
        stack.extend(reversed(cur.named_children))


def strip_parens(node: Node) -> Node:
    while node.type == "parenthesized_expression" and node.named_child_count == 1:
        node = node.named_children[0]
    return node


def unwrap_parent(node: Node) -> Optional[Node]:
    """Parent of ``node``, skipping parentheses."""
    parent = node.parent
    while parent is not None and parent.type == "parenthesized_expression":
        parent = parent.parent
    return parent


def operator_of(node: Node) -> str:
    """Operator token of a binary / compound assignment expression."""
    op = node.child_by_field_name("operator")
    return node_text(op)


def call_name(node: Node) -> Optional[str]:
    """Last path segment of the callee of a ``call_expression``."""
    fn = node.child_by_field_name("function")
    while fn is not None and fn.type == "generic_function":
        fn = fn.child_by_field_name("function")
    if fn is None:
        return None
    if fn.type == "identifier":
        return node_text(fn)
    if fn.type == "scoped_identifier":
        return node_text(fn.child_by_field_name("name"))
    if fn.type == "field_expression":
        return node_text(fn.child_by_field_name("field"))
    return None


def call_path(node: Node) -> str:
    """Full callee text of a ``call_expression`` (e.g. ``CpiContext::new``)."""
    return node_text(node.child_by_field_name("function"))


def method_receiver(node: Node) -> Optional[Node]:
    """Receiver of a method call ``recv.name(..)``, else ``None``."""
    fn = node.child_by_field_name("function")
    if fn is not None and fn.type == "field_expression":
        return fn.child_by_field_name("value")
    return None


def macro_name(node: Node) -> str:
    """Name of a ``macro_invocation`` without the bang."""
    macro = node.child_by_field_name("macro")
    if macro is None:
        return ""
    if macro.type == "scoped_identifier":
        return node_text(macro.child_by_field_name("name"))
    return node_text(macro)


def token_tree_calls(token_tree: Node) -> Iterator[Tuple[str, Node]]:
    """``name(...)`` sequences inside an unparsed macro token tree."""
    for tt in walk(token_tree):
        if tt.type != "token_tree":
            continue
        children = tt.named_children
        for prev, nxt in zip(children, children[1:]):
            if (prev.type == "identifier" and nxt.type == "token_tree"
                    and node_text(nxt).startswith("(")):
                yield node_text(prev), prev


def enclosing_statement(node: Node) -> Node:
    """Nearest ancestor (or self) whose parent is a block."""
    cur = node
    while cur.parent is not None and cur.parent.type not in ("block", "source_file"):
        cur = cur.parent
    return cur


def is_literal(node: Node) -> bool:
    node = strip_parens(node)
    if node.type in ("integer_literal", "float_literal"):
        return True
    if node.type == "unary_expression" and node.named_child_count == 1:
        return is_literal(node.named_children[0])
    return False


# ---------------------------------------------------------------------------
# Function inventory
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Param:
    name: str
    type_text: str


@dataclass(frozen=True, eq=False)
class FunctionInfo:
    """A ``fn`` item with the context detectors need."""
    name: str
    node: Node
    body: Optional[Node]
    params: Tuple[Param, ...] = ()
    attributes: Tuple[str, ...] = ()
    is_pub: bool = False
    impl_type: Optional[str] = None
    impl_trait: Optional[str] = None
    takes_mut_self: bool = False
    in_test_code: bool = False
    in_impl: bool = False

    @property
    def line(self) -> int:
        return line_of(self.node)

    @property
    def text(self) -> str:
        return node_text(self.node)

    @property
    def body_text(self) -> str:
        return node_text(self.body)

    @property
    def start_byte(self) -> int:
        return self.node.start_byte

    @property
    def end_byte(self) -> int:
        return self.node.end_byte

    def has_attribute(self, needle: str) -> bool:
        return any(needle in attr for attr in self.attributes)

    def param_types(self) -> str:
        return " ".join(p.type_text for p in self.params)

    def contains(self, node: Node) -> bool:
        return self.start_byte <= node.start_byte and node.end_byte <= self.end_byte


def attributes_of(node: Node) -> List[str]:
    """Texts of the ``#[...]`` items directly preceding ``node`` (brackets stripped)."""
    attrs: List[str] = []
    sib = node.prev_named_sibling
    while sib is not None and (sib.type == "attribute_item" or sib.type in COMMENT_TYPES):
        if sib.type == "attribute_item":
            text = node_text(sib)
            if text.startswith("#[") and text.endswith("]"):
                text = text[2:-1]
            attrs.append(text.strip())
        sib = sib.prev_named_sibling
    attrs.reverse()
    return attrs


def _params(fn: Node) -> Tuple[Tuple[Param, ...], bool]:
    params_node = fn.child_by_field_name("parameters")
    out: List[Param] = []
    mut_self = False
    if params_node is None:
        return (), False
    for p in params_node.named_children:
        if p.type == "self_parameter":
            text = node_text(p).replace(" ", "")
            mut_self = text.startswith("&mut") or (text.startswith("&'") and "mut" in text)
        elif p.type == "parameter":
            out.append(Param(
                name=node_text(p.child_by_field_name("pattern")),
                type_text=node_text(p.child_by_field_name("type")),
            ))
    return tuple(out), mut_self


def _is_test_container(node: Node) -> bool:
    if node.type != "mod_item":
        return False
    name = node_text(node.child_by_field_name("name"))
    if name in ("tests", "test"):
        return True
    return any("cfg(test)" in a.replace(" ", "") for a in attributes_of(node))


def _context(fn: Node) -> Tuple[Optional[str], Optional[str], bool, bool]:
    impl_type = impl_trait = None
    in_impl = False
    in_test = False
    parent = fn.parent
    while parent is not None:
        if parent.type == "impl_item" and not in_impl:
            in_impl = True
            impl_type = node_text(parent.child_by_field_name("type")) or None
            impl_trait = node_text(parent.child_by_field_name("trait")) or None
        if _is_test_container(parent):
            in_test = True
        parent = parent.parent
    return impl_type, impl_trait, in_impl, in_test


def collect_functions(root: Node) -> List[FunctionInfo]:
    """Every ``function_item`` below ``root`` in source order."""
    functions: List[FunctionInfo] = []
    for node in walk(root):
        if node.type != "function_item":
            continue
        attrs = attributes_of(node)
        params, mut_self = _params(node)
        impl_type, impl_trait, in_impl, in_test = _context(node)
        is_pub = any(c.type == "visibility_modifier" for c in node.named_children)
        test_attr = any(a == "test" or a.endswith("::test") or "cfg(test)" in a
                        for a in attrs)
        functions.append(FunctionInfo(
            name=node_text(node.child_by_field_name("name")),
            node=node,
            body=node.child_by_field_name("body"),
            params=params,
            attributes=tuple(attrs),
            is_pub=is_pub,
            impl_type=impl_type,
            impl_trait=impl_trait,
            takes_mut_self=mut_self,
            in_test_code=in_test or test_attr,
            in_impl=in_impl,
        ))
    return functions


def enclosing_function(
    functions: Sequence[FunctionInfo], node: Node
) -> Optional[FunctionInfo]:
    """Innermost function whose span contains ``node``."""
    best: Optional[FunctionInfo] = None
    for fn in functions:
        if fn.contains(node):
            if best is None or fn.start_byte >= best.start_byte:
                best = fn
    return best


def local_types(fn: FunctionInfo) -> dict:
    """Identifier → declared type text from parameters and typed ``let`` bindings."""
    types = {p.name.replace("mut ", "").strip(): p.type_text for p in fn.params}
    if fn.body is None:
        return types
    for node in walk_body(fn.body):
        if node.type == "let_declaration":
            ty = node.child_by_field_name("type")
            pat = node.child_by_field_name("pattern")
            if ty is not None and pat is not None:
                types[node_text(pat).replace("mut ", "").strip()] = node_text(ty)
    return types
