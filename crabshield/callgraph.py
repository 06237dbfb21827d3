"""
crabshield.callgraph
====================

Builds the intra-file call graph used by call-graph suppression.

The call graph is a directed graph where:
- **Nodes** are functions defined in the file, keyed by simple name.
- **Edges** are call sites, annotated with the byte offset and line of the
  call expression and with the definition the call is made from.

Calls whose callee is not defined in the same file are dropped; the graph
is intentionally conservative, not complete.  Each node also records the
*security-check sites* of its function: where it verifies a signer or
sender (authorization), an account owner (ownership), or an invariant via
an assertion / early-return guard (input validation).

The only query the suppression engine needs is one hop deep::

    cg = build_callgraph(functions)
    cg.every_caller_checks("apply_fee", CheckCategory.INPUT_VALIDATION)

Check sites are kept per definition, so two methods sharing a name never
lend each other their guards.  Cycles are ordinary edges; nothing here
recurses over the graph.

Public API
----------
    CallGraphNode    - a function in the file
    CallGraphEdge    - a call site
    CheckSite        - a security check inside a function
    CallGraph        - the per-file graph
    build_callgraph  - build from a function inventory
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

from tree_sitter import Node

from crabshield.findings import CheckCategory
from crabshield.syntax import (
    FunctionInfo,
    call_name,
    enclosing_statement,
    line_of,
    macro_name,
    node_text,
    token_tree_calls,
    walk,
    walk_body,
)

AUTHORIZATION_IDENTIFIERS: FrozenSet[str] = frozenset({
    "is_signer",
    "has_signer",
    "sender",
    "predecessor_account_id",
    "caller",
    "require_auth",
    "only_owner",
})

GUARD_MACROS: FrozenSet[str] = frozenset({
    "assert",
    "assert_eq",
    "assert_ne",
    "require",
    "require_eq",
    "require_neq",
    "require_keys_eq",
    "require_gt",
    "require_gte",
    "ensure",
    "ensure_eq",
})

_ABORT_MACROS = frozenset({"panic", "unreachable", "revert", "bail"})


# ---------------------------------------------------------------------------
# Check sites
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CheckSite:
    category: CheckCategory
    end_byte: int
    line: int


def _is_guard_if(node: Node) -> bool:
    """``if cond { return ..; }`` / ``{ panic!(..) }`` / ``{ Err(..) }``."""
    consequence = node.child_by_field_name("consequence")
    if consequence is None:
        return False
    for inner in walk(consequence):
        if inner.type == "return_expression":
            return True
        if inner.type == "macro_invocation" and macro_name(inner) in _ABORT_MACROS:
            return True
        if inner.type == "call_expression" and call_name(inner) == "Err":
            return True
    return False


def find_check_sites(fn: FunctionInfo) -> List[CheckSite]:
    """Security checks performed inside ``fn`` in source order."""
    sites: List[CheckSite] = []
    if fn.body is None:
        return sites
    for node in walk_body(fn.body):
        ntype = node.type
        if ntype in ("identifier", "field_identifier"):
            text = node_text(node)
            if text in AUTHORIZATION_IDENTIFIERS:
                sites.append(CheckSite(CheckCategory.AUTHORIZATION,
                                       node.end_byte, line_of(node)))
            elif text == "owner":
                stmt = node_text(enclosing_statement(node))
                if "program_id" in stmt or "key" in stmt:
                    sites.append(CheckSite(CheckCategory.OWNERSHIP,
                                           node.end_byte, line_of(node)))
        elif ntype == "macro_invocation" and macro_name(node) in GUARD_MACROS:
            sites.append(CheckSite(CheckCategory.INPUT_VALIDATION,
                                   node.end_byte, line_of(node)))
        elif ntype == "if_expression" and _is_guard_if(node):
            sites.append(CheckSite(CheckCategory.INPUT_VALIDATION,
                                   node.end_byte, line_of(node)))
    sites.sort(key=lambda s: s.end_byte)
    return sites


def definition_key(fn: FunctionInfo) -> Tuple[int, int]:
    return (fn.start_byte, fn.end_byte)


# ---------------------------------------------------------------------------
# CallGraphNode
# ---------------------------------------------------------------------------

class CallGraphNode:
    """A function in the call graph.

    Attributes
    ----------
    name : str
        Function identity (simple name).
    functions : list[FunctionInfo]
        Definitions sharing this name (methods of different impls merge).
    checks : list[CheckSite]
        Security-check sites across those definitions.
    definition_checks : dict[(int, int), list[CheckSite]]
        Check sites of each definition, keyed by :func:`definition_key`.
    out_edges : list[CallGraphEdge]
        Calls made by this function.
    in_edges : list[CallGraphEdge]
        Calls made to this function.
    """

    __slots__ = ("name", "functions", "checks", "definition_checks",
                 "out_edges", "in_edges")

    def __init__(self, name: str) -> None:
        self.name: str = name
        self.functions: List[FunctionInfo] = []
        self.checks: List[CheckSite] = []
        self.definition_checks: Dict[Tuple[int, int], List[CheckSite]] = {}
        self.out_edges: List[CallGraphEdge] = []
        self.in_edges: List[CallGraphEdge] = []

    @property
    def callees(self) -> List[CallGraphNode]:
        return [e.callee for e in self.out_edges]

    @property
    def callers(self) -> List[CallGraphNode]:
        return [e.caller for e in self.in_edges]

    @property
    def is_root(self) -> bool:
        return len(self.in_edges) == 0

    @property
    def is_recursive(self) -> bool:
        return any(e.callee is self for e in self.out_edges)

    def checks_before(self, category: CheckCategory, offset: int,
                      definition: Optional[FunctionInfo] = None) -> bool:
        """Does this function perform a ``category`` check ending before ``offset``?

        With ``definition``, only that definition's check sites count.
        """
        sites = self.checks
        if definition is not None:
            sites = self.definition_checks.get(definition_key(definition), [])
        return any(
            s.category is category and s.end_byte <= offset for s in sites
        )

    def __repr__(self) -> str:
        return f"CallGraphNode({self.name!r})"

    def __hash__(self) -> int:
        return hash(self.name)

    def __eq__(self, other) -> bool:
        if isinstance(other, CallGraphNode):
            return self.name == other.name
        return NotImplemented


# ---------------------------------------------------------------------------
# CallGraphEdge
# ---------------------------------------------------------------------------

class CallGraphEdge:
    """A call site ``caller → callee``.

    ``caller_fn`` is the definition whose body contains the call; it tells
    same-named callers apart.
    """

    __slots__ = ("caller", "callee", "offset", "line", "caller_fn")

    def __init__(self, caller: CallGraphNode, callee: CallGraphNode,
                 offset: int, line: int,
                 caller_fn: Optional[FunctionInfo] = None) -> None:
        self.caller = caller
        self.callee = callee
        self.offset = offset
        self.line = line
        self.caller_fn = caller_fn

    @property
    def is_self_call(self) -> bool:
        """Recursive call of a name that has a single definition."""
        return self.caller is self.callee and len(self.callee.functions) == 1

    def __repr__(self) -> str:
        return (
            f"CallGraphEdge({self.caller.name} -> {self.callee.name} "
            f"@ line {self.line})"
        )

    def __hash__(self) -> int:
        return hash((self.caller.name, self.callee.name, self.offset))

    def __eq__(self, other) -> bool:
        if isinstance(other, CallGraphEdge):
            return (
                self.caller.name == other.caller.name
                and self.callee.name == other.callee.name
                and self.offset == other.offset
            )
        return NotImplemented


# ---------------------------------------------------------------------------
# CallGraph
# ---------------------------------------------------------------------------

class CallGraph:
    """Per-file call graph.

    Attributes
    ----------
    nodes : OrderedDict[str, CallGraphNode]
        All functions, keyed by name, in definition order.
    edges : list[CallGraphEdge]
        All resolved call sites.
    """

    def __init__(self) -> None:
        self.nodes: OrderedDict[str, CallGraphNode] = OrderedDict()
        self.edges: List[CallGraphEdge] = []

    def get_or_create_node(self, name: str) -> CallGraphNode:
        node = self.nodes.get(name)
        if node is None:
            node = CallGraphNode(name)
            self.nodes[name] = node
        return node

    def add_edge(self, caller: CallGraphNode, callee: CallGraphNode,
                 offset: int, line: int,
                 caller_fn: Optional[FunctionInfo] = None) -> CallGraphEdge:
        edge = CallGraphEdge(caller, callee, offset, line, caller_fn)
        caller.out_edges.append(edge)
        callee.in_edges.append(edge)
        self.edges.append(edge)
        return edge

    def __contains__(self, name: str) -> bool:
        return name in self.nodes

    def callers_of(self, name: str) -> List[str]:
        node = self.nodes.get(name)
        if node is None:
            return []
        return sorted({e.caller.name for e in node.in_edges})

    def callees_of(self, name: str) -> List[str]:
        node = self.nodes.get(name)
        if node is None:
            return []
        return sorted({e.callee.name for e in node.out_edges})

    def every_caller_checks(self, name: str, category: CheckCategory) -> bool:
        """True iff ``name`` has callers and each call site is preceded by a
        ``category`` check in the calling definition.

        A function with no recorded callers may be an entry point and is
        never considered covered.  A function's calls into itself are not
        callers: reached only that way, it is still an entry point.
        """
        node = self.nodes.get(name)
        if node is None:
            return False
        edges = [e for e in node.in_edges if not e.is_self_call]
        if not edges:
            return False
        return all(
            edge.caller.checks_before(category, edge.offset, edge.caller_fn)
            for edge in edges
        )

    def statistics(self) -> Dict[str, int]:
        return {
            "functions": len(self.nodes),
            "call_sites": len(self.edges),
            "roots": sum(1 for n in self.nodes.values() if n.is_root),
            "recursive": sum(1 for n in self.nodes.values() if n.is_recursive),
        }

    def to_dot(self, title: Optional[str] = None) -> str:
        """Render as Graphviz DOT."""
        lines = [f'digraph "{title or "callgraph"}" {{']
        lines.append("  node [shape=box, fontname=monospace];")
        for node in self.nodes.values():
            label = node.name
            if node.checks:
                cats = sorted({s.category.value for s in node.checks})
                label += "\\n[" + ", ".join(cats) + "]"
            lines.append(f'  "{node.name}" [label="{label}"];')
        seen: Set[tuple] = set()
        for edge in self.edges:
            key = (edge.caller.name, edge.callee.name)
            if key in seen:
                continue
            seen.add(key)
            lines.append(f'  "{edge.caller.name}" -> "{edge.callee.name}";')
        lines.append("}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"CallGraph(functions={len(self.nodes)}, edges={len(self.edges)})"


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

class _CallGraphBuilder:
    """Three phases: create nodes, record check sites, resolve call sites."""

    def __init__(self, functions: Sequence[FunctionInfo]) -> None:
        self._functions = functions
        self._cg = CallGraph()

    def build(self) -> CallGraph:
        self._create_function_nodes()
        self._record_checks()
        self._process_call_sites()
        return self._cg

    def _create_function_nodes(self) -> None:
        for fn in self._functions:
            if fn.name:
                self._cg.get_or_create_node(fn.name).functions.append(fn)

    def _record_checks(self) -> None:
        for node in self._cg.nodes.values():
            for fn in node.functions:
                sites = find_check_sites(fn)
                node.definition_checks[definition_key(fn)] = sites
                node.checks.extend(sites)
            node.checks.sort(key=lambda s: s.end_byte)

    def _process_call_sites(self) -> None:
        for fn in self._functions:
            if not fn.name or fn.body is None:
                continue
            caller = self._cg.nodes[fn.name]
            for name, site in self._call_sites(fn.body):
                callee = self._cg.nodes.get(name)
                if callee is None:
                    continue
                self._cg.add_edge(caller, callee, site.start_byte,
                                  line_of(site), caller_fn=fn)

    @staticmethod
    def _call_sites(body: Node) -> Iterable[tuple]:
        for node in walk_body(body):
            if node.type == "call_expression":
                name = call_name(node)
                if name:
                    yield name, node
            elif node.type == "macro_invocation":
                for child in node.named_children:
                    if child.type == "token_tree":
                        yield from token_tree_calls(child)


def build_callgraph(functions: Sequence[FunctionInfo]) -> CallGraph:
    """Build the call graph of one file from its function inventory."""
    return _CallGraphBuilder(functions).build()


def callgraph_summary(cg: CallGraph) -> str:
    """Human-readable dump, one line per function."""
    out = []
    for node in cg.nodes.values():
        callees = ", ".join(sorted({c.name for c in node.callees})) or "-"
        callers = ", ".join(sorted({c.name for c in node.callers})) or "-"
        out.append(f"{node.name}: calls [{callees}] called-by [{callers}]")
    return "\n".join(out)
