"""
crabshield/detectors/cosmwasm.py
════════════════════════════════

Built-in detectors for CosmWasm contracts.

  CW-001  cosmwasm-integer-overflow   unchecked arithmetic on contract numbers
  CW-002  cosmwasm-reentrancy         storage saved before a message in an IBC or reply path
  CW-003  missing-sender-check        execute handler writes storage without checking info.sender
  CW-004  storage-collision           two storage items declared with one namespace key
  CW-010  unguarded-migrate-entry     migrate entry point with no admin or version guard

CosmWasm's ``Uint128``/``Uint256``/``Decimal`` family aborts the transaction
on overflow instead of wrapping.  CW-001 keeps reporting those sites but
grades them Low/Low; primitive integer math keeps the default grade, and
operands whose type cannot be told from the source get Low confidence.
"""

from __future__ import annotations

import re
from typing import Dict, Iterable, List, Optional

from crabshield.chains import Chain
from crabshield.detectors import predicates as P
from crabshield.detectors.arithmetic import unchecked_arithmetic
from crabshield.detectors.base import Detector, FileContext
from crabshield.findings import CheckCategory, Confidence, Finding, Severity
from crabshield.syntax import (
    call_name,
    call_path,
    line_of,
    local_types,
    node_text,
    walk,
    walk_body,
)

_COSMWASM = frozenset({Chain.COSMWASM})

_DISPATCH_RE = re.compile(r"add_message|add_submessage|WasmMsg::Execute")
_IBC_OR_REPLY_RE = re.compile(r"ibc|Ibc|reply|Reply|SubMsg")
_STORAGE_TYPES = frozenset({
    "Item", "Map", "Deque", "SnapshotItem", "SnapshotMap", "IndexedMap",
    "IndexedSnapshotMap",
})

_STORAGE_WRITES = frozenset({"save", "update", "remove"})
_MIGRATE_GUARD_RE = re.compile(
    r"sender|admin|get_contract_version|set_contract_version"
    r"|ensure_from_older_version|cw2::|ensure!|ensure_eq!|assert"
)


class CosmWasmIntegerOverflowDetector(Detector):
    id = "CW-001"
    name = "cosmwasm-integer-overflow"
    description = "Unchecked arithmetic in contract code."
    chains = _COSMWASM
    severity = Severity.MEDIUM
    confidence = Confidence.MEDIUM
    check_category = CheckCategory.INPUT_VALIDATION
    recommendation = (
        "Use checked_add/checked_sub/checked_mul and map the error into a "
        "ContractError."
    )

    # Types that abort the transaction on overflow.
    safe_type_severity = Severity.LOW
    safe_type_confidence = Confidence.LOW
    unknown_type_confidence = Confidence.LOW

    def detect(self, ctx: FileContext) -> Iterable[Finding]:
        for fn in self.candidate_functions(ctx):
            if P.is_test_function(fn):
                continue
            types = local_types(fn)
            for site in unchecked_arithmetic(ctx.parsed, fn):
                operand_types = [P.operand_type(site.left, types),
                                 P.operand_type(site.right, types)]
                if P.any_type_in(operand_types, P.SAFE_NUMERIC_TYPES):
                    yield self.finding(
                        ctx, site.node,
                        f"Unchecked arithmetic on overflow-safe type panics: {site.text}",
                        function=fn,
                        severity=self.safe_type_severity,
                        confidence=self.safe_type_confidence,
                    )
                elif P.any_type_in(operand_types, P.PRIMITIVE_INTEGER_TYPES):
                    yield self.finding(
                        ctx, site.node,
                        f"Unchecked arithmetic operation: {site.text}",
                        function=fn,
                    )
                else:
                    yield self.finding(
                        ctx, site.node,
                        f"Unchecked arithmetic operation: {site.text}",
                        function=fn,
                        confidence=self.unknown_type_confidence,
                    )


class CosmWasmReentrancyDetector(Detector):
    """
    CosmWasm dispatches messages only after the handler returns, so plain
    execute handlers are safe.  Only IBC and reply paths, where a failing
    message does not roll back the saved state, are reported.
    """

    id = "CW-002"
    name = "cosmwasm-reentrancy"
    description = "Storage written before an external message in an IBC or reply path."
    chains = _COSMWASM
    severity = Severity.LOW
    confidence = Confidence.LOW
    recommendation = (
        "Dispatch the message as a SubMsg with reply_on_error and restore "
        "state in the reply handler, or save state only once the reply succeeds."
    )

    @staticmethod
    def _is_test_like(name: str) -> bool:
        return name.endswith(("_works", "_mock")) or "_should" in name

    def detect(self, ctx: FileContext) -> Iterable[Finding]:
        for fn in self.candidate_functions(ctx):
            if P.is_test_function(fn) or self._is_test_like(fn.name):
                continue
            body = fn.body_text
            if ".save(" not in body or not _DISPATCH_RE.search(body):
                continue
            if not _IBC_OR_REPLY_RE.search(fn.text):
                continue
            statements = [s for s in fn.body.named_children
                          if s.type not in ("line_comment", "block_comment")]
            for idx, stmt in enumerate(statements):
                if ".save(" not in node_text(stmt):
                    continue
                if any(_DISPATCH_RE.search(node_text(s)) for s in statements[idx + 1:]):
                    yield self.finding(
                        ctx, stmt,
                        f"Function '{fn.name}' writes to storage before "
                        f"dispatching an external message",
                        function=fn,
                    )
                    break


class StorageCollisionDetector(Detector):
    id = "CW-004"
    name = "storage-collision"
    description = "Two storage items share the same namespace key."
    chains = _COSMWASM
    severity = Severity.HIGH
    confidence = Confidence.HIGH
    recommendation = "Give every storage item a unique namespace key."

    @staticmethod
    def _namespace(node) -> Optional[str]:
        path = call_path(node)
        if not path.endswith("::new"):
            return None
        if path.split("::")[0].split("<")[0] not in _STORAGE_TYPES:
            return None
        args = node.child_by_field_name("arguments")
        if args is None or not args.named_children:
            return None
        first = args.named_children[0]
        if first.type != "string_literal":
            return None
        return node_text(first)[1:-1]

    def detect(self, ctx: FileContext) -> Iterable[Finding]:
        first_seen: Dict[str, int] = {}
        for node in walk(ctx.root):
            if node.type != "call_expression":
                continue
            namespace = self._namespace(node)
            if namespace is None:
                continue
            fn = ctx.function_at(node)
            if fn is not None and P.is_test_function(fn):
                continue
            line = line_of(node)
            if namespace not in first_seen:
                first_seen[namespace] = line
                continue
            yield self.finding(
                ctx, node,
                f"Duplicate storage namespace '{namespace}' (also used at "
                f"line {first_seen[namespace]})",
            )


class MissingSenderCheckDetector(Detector):
    id = "CW-003"
    name = "missing-sender-check"
    description = "Execute handler modifies storage without authorizing info.sender."
    chains = _COSMWASM
    severity = Severity.CRITICAL
    confidence = Confidence.MEDIUM
    check_category = CheckCategory.AUTHORIZATION
    recommendation = (
        "Compare `info.sender` against the stored owner/admin before "
        "writing state."
    )

    def detect(self, ctx: FileContext) -> Iterable[Finding]:
        for fn in self.candidate_functions(ctx):
            if P.is_test_function(fn) or not fn.name.startswith("execute"):
                continue
            if not any("MessageInfo" in p.type_text for p in fn.params):
                continue
            if "sender" in fn.body_text:
                continue
            for node in walk_body(fn.body):
                if node.type == "call_expression" and call_name(node) in _STORAGE_WRITES:
                    yield self.finding(
                        ctx, fn.node.child_by_field_name("name") or fn.node,
                        f"Execute handler '{fn.name}' writes storage without "
                        f"checking info.sender",
                        function=fn,
                    )
                    break


class UnguardedMigrateDetector(Detector):
    id = "CW-010"
    name = "unguarded-migrate-entry"
    description = "migrate() performs state changes without an admin or version check."
    chains = _COSMWASM
    severity = Severity.MEDIUM
    confidence = Confidence.MEDIUM
    recommendation = (
        "Validate the stored contract version with cw2 (and the sender when "
        "migration is permissioned) before migrating state."
    )

    min_body_chars = 60

    def detect(self, ctx: FileContext) -> Iterable[Finding]:
        for fn in self.candidate_functions(ctx):
            if fn.name != "migrate" or P.is_test_function(fn):
                continue
            body = fn.body_text
            if _MIGRATE_GUARD_RE.search(body):
                continue
            if len(re.sub(r"\s+", "", body)) < self.min_body_chars:
                continue
            yield self.finding(
                ctx, fn.node.child_by_field_name("name") or fn.node,
                "migrate entry point has no admin or contract-version guard",
                function=fn,
            )


COSMWASM_DETECTORS: List[type] = [
    CosmWasmIntegerOverflowDetector,
    CosmWasmReentrancyDetector,
    MissingSenderCheckDetector,
    StorageCollisionDetector,
    UnguardedMigrateDetector,
]
