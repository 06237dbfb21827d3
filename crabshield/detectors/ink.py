"""
crabshield/detectors/ink.py
═══════════════════════════

Built-in detectors for ink! (Polkadot / Substrate) contracts.

  INK-001  ink-reentrancy-enabled     set_allow_reentry(true) on a cross-contract call
  INK-002  ink-integer-overflow       unchecked Balance / u128 arithmetic
  INK-003  ink-missing-caller-check   #[ink(message)] writes storage without checking the caller
  INK-004  ink-timestamp-dependence   block_timestamp drives a comparison or modulo
  INK-009  ink-unsafe-delegate-call   delegate call to a code hash taken from the caller

cargo-contract builds with overflow checks on, so an overflow aborts the
call instead of wrapping; INK-002 therefore defaults to Low severity.
"""

from __future__ import annotations

import re
from typing import Dict, Iterable, List, Optional, Tuple

from tree_sitter import Node

from crabshield.chains import Chain
from crabshield.detectors import predicates as P
from crabshield.detectors.arithmetic import unchecked_arithmetic
from crabshield.detectors.base import Detector, FileContext
from crabshield.findings import CheckCategory, Confidence, Finding, Severity
from crabshield.syntax import (
    FunctionInfo,
    call_name,
    enclosing_statement,
    local_types,
    node_text,
    walk,
    walk_body,
)

_INK = frozenset({Chain.INK})

_BALANCE_TYPES = frozenset({"Balance", "u128"})
_SELF_FIELD_WRITE_RE = re.compile(
    r"self\.(\w+)\s*(?:[+\-*/]?=)(?!=)|self\.(\w+)\.(?:insert|remove|push|set)\("
)
_GUARD_MACRO_RE = re.compile(r"\b(assert|assert_eq|assert_ne|ensure|require)!")
_COMPARISON_RE = re.compile(r"(<=|>=|==|!=|[^-=]>|<(?!\w+>)|%)")
_DELEGATE_RE = re.compile(r"\.delegate\(|DelegateCall|delegate_call")
_HASH_GUARD_RE = re.compile(
    r"assert_eq!|KNOWN_HASH|ALLOWED_HASH|whitelist|allowlist|allowed_hashes"
)


def _is_ink_message(fn: FunctionInfo) -> bool:
    return any(a.replace(" ", "").startswith("ink(message") for a in fn.attributes)


def _is_payable(fn: FunctionInfo) -> bool:
    return any("payable" in a for a in fn.attributes if a.replace(" ", "").startswith("ink("))


def _storage_field_types(root: Node) -> Dict[str, str]:
    """``self.<field>`` → type for fields of ``#[ink(storage)]`` structs."""
    types: Dict[str, str] = {}
    for node in walk(root):
        if node.type != "field_declaration":
            continue
        name = node_text(node.child_by_field_name("name"))
        ty = node_text(node.child_by_field_name("type"))
        if name and ty:
            types[f"self.{name}"] = ty
    return types


class InkReentrancyDetector(Detector):
    id = "INK-001"
    name = "ink-reentrancy-enabled"
    description = "Cross-contract call explicitly allows re-entry."
    chains = _INK
    severity = Severity.CRITICAL
    confidence = Confidence.HIGH
    recommendation = (
        "Leave re-entry disabled, or finish all state changes before the call "
        "and guard the message against re-entrant execution."
    )

    def detect(self, ctx: FileContext) -> Iterable[Finding]:
        for fn in self.candidate_functions(ctx):
            for node in walk_body(fn.body):
                if node.type != "call_expression" or call_name(node) != "set_allow_reentry":
                    continue
                args = node_text(node.child_by_field_name("arguments")).replace(" ", "")
                if args == "(true)":
                    yield self.finding(
                        ctx, node,
                        f"Re-entrancy explicitly enabled in '{fn.name}'",
                        function=fn,
                    )


class InkIntegerOverflowDetector(Detector):
    id = "INK-002"
    name = "ink-integer-overflow"
    description = "Unchecked arithmetic on balances."
    chains = _INK
    severity = Severity.LOW
    confidence = Confidence.MEDIUM
    check_category = CheckCategory.INPUT_VALIDATION
    recommendation = "Use checked_* arithmetic and return an error on overflow."

    def detect(self, ctx: FileContext) -> Iterable[Finding]:
        field_types = _storage_field_types(ctx.root)
        for fn in self.candidate_functions(ctx):
            if P.is_test_function(fn):
                continue
            types = dict(field_types)
            types.update(local_types(fn))
            for site in unchecked_arithmetic(ctx.parsed, fn):
                operand_types = [P.operand_type(site.left, types),
                                 P.operand_type(site.right, types)]
                if not P.any_type_in(operand_types, _BALANCE_TYPES):
                    continue
                yield self.finding(
                    ctx, site.node,
                    f"Unchecked arithmetic on balance: {site.text}",
                    function=fn,
                )


class InkMissingCallerCheckDetector(Detector):
    """
    Grading
    ───────
      value transfer out of the contract        Critical / High
      write to a sensitive field (owner, fee…)  Critical / High
      write keyed by the caller, or payable     Medium   / Low
      any other storage write                   High     / Medium
    """

    id = "INK-003"
    name = "ink-missing-caller-check"
    description = "#[ink(message)] mutates storage without verifying the caller."
    chains = _INK
    severity = Severity.HIGH
    confidence = Confidence.MEDIUM
    check_category = CheckCategory.AUTHORIZATION
    recommendation = (
        "Compare `self.env().caller()` against the authorized account before "
        "changing storage."
    )

    @staticmethod
    def _written_fields(body: str) -> List[str]:
        fields = []
        for match in _SELF_FIELD_WRITE_RE.finditer(body):
            fields.append(match.group(1) or match.group(2))
        return fields

    def _grade(self, fn: FunctionInfo, fields: List[str]
               ) -> Tuple[Severity, Confidence, str]:
        body = fn.body_text
        if re.search(r"\.transfer\(|terminate_contract", body):
            return Severity.CRITICAL, Confidence.HIGH, "transfers value"
        sensitive = [f for f in fields if P.is_sensitive_field(f)]
        if sensitive:
            return Severity.CRITICAL, Confidence.HIGH, f"writes '{sensitive[0]}'"
        if "caller()" in body or _is_payable(fn):
            return Severity.MEDIUM, Confidence.LOW, "writes caller-scoped storage"
        return self.severity, self.confidence, f"writes '{fields[0]}'"

    def detect(self, ctx: FileContext) -> Iterable[Finding]:
        for fn in self.candidate_functions(ctx):
            if not _is_ink_message(fn) or not fn.takes_mut_self:
                continue
            if P.is_test_function(fn) or P.is_permissionless_ink_method(fn.name):
                continue
            body = fn.body_text
            fields = self._written_fields(body)
            if not fields:
                continue
            if P.has_caller_check(body) or _GUARD_MACRO_RE.search(body) or "owner ==" in body:
                continue
            severity, confidence, what = self._grade(fn, fields)
            yield self.finding(
                ctx, fn.node.child_by_field_name("name") or fn.node,
                f"Message '{fn.name}' {what} without checking the caller",
                function=fn,
                severity=severity,
                confidence=confidence,
            )


class InkTimestampDependenceDetector(Detector):
    id = "INK-004"
    name = "ink-timestamp-dependence"
    description = "Block timestamps can be nudged by block authors."
    chains = _INK
    severity = Severity.MEDIUM
    confidence = Confidence.MEDIUM
    recommendation = (
        "Avoid using block_timestamp for randomness or tight deadlines; "
        "prefer block numbers with generous margins."
    )

    def detect(self, ctx: FileContext) -> Iterable[Finding]:
        for fn in self.candidate_functions(ctx):
            if P.is_test_function(fn):
                continue
            seen: Optional[int] = None
            for node in walk_body(fn.body):
                if node.type != "call_expression" or call_name(node) != "block_timestamp":
                    continue
                stmt = enclosing_statement(node)
                if seen == stmt.start_byte:
                    continue
                if _COMPARISON_RE.search(node_text(stmt).replace("->", "")):
                    seen = stmt.start_byte
                    yield self.finding(
                        ctx, node,
                        f"block_timestamp used in a comparison or modulo in '{fn.name}'",
                        function=fn,
                    )


class InkUnsafeDelegateCallDetector(Detector):
    id = "INK-009"
    name = "ink-unsafe-delegate-call"
    description = "delegate_call runs code chosen by the caller against this contract's storage."
    chains = _INK
    severity = Severity.CRITICAL
    confidence = Confidence.HIGH
    check_category = CheckCategory.AUTHORIZATION
    recommendation = (
        "Only delegate to code hashes from a stored allow-list, checked "
        "before the call."
    )

    @staticmethod
    def _hash_param(fn: FunctionInfo) -> Optional[str]:
        for p in fn.params:
            if "Hash" in p.type_text or "code_hash" in p.name or "target" in p.name:
                return p.name
        return None

    def detect(self, ctx: FileContext) -> Iterable[Finding]:
        for fn in self.candidate_functions(ctx):
            if not fn.in_impl or P.is_test_function(fn):
                continue
            body = fn.body_text
            if not _DELEGATE_RE.search(body):
                continue
            param = self._hash_param(fn)
            if param is None or _HASH_GUARD_RE.search(body):
                continue
            yield self.finding(
                ctx, fn.node.child_by_field_name("name") or fn.node,
                f"Method '{fn.name}' delegates to caller-supplied code hash '{param}'",
                function=fn,
            )


INK_DETECTORS: List[type] = [
    InkReentrancyDetector,
    InkIntegerOverflowDetector,
    InkMissingCallerCheckDetector,
    InkTimestampDependenceDetector,
    InkUnsafeDelegateCallDetector,
]
