"""
crabshield/detectors/near.py
════════════════════════════

Built-in detectors for NEAR contracts (near-sdk).

  NEAR-001  promise-reentrancy          state written before a cross-contract promise
  NEAR-002  signer-vs-predecessor       signer_account_id used for access control
  NEAR-004  callback-unwrap-usage       #[callback_unwrap] panics on a failed promise
  NEAR-005  near-wrapping-arithmetic    wrapping_/saturating_ math on balances
  NEAR-006  missing-private-callback    public callback without #[private]
  NEAR-010  missing-deposit-check       #[payable] method ignores attached_deposit
"""

from __future__ import annotations

import re
from typing import Iterable, List, Optional

from tree_sitter import Node

from crabshield.chains import Chain
from crabshield.detectors import predicates as P
from crabshield.detectors.base import Detector, FileContext
from crabshield.findings import CheckCategory, Confidence, Finding, Severity
from crabshield.syntax import call_name, enclosing_statement, node_text, walk, walk_body

_NEAR = frozenset({Chain.NEAR})

_SELF_WRITE_RE = re.compile(r"^\s*self\.[\w.]+\s*([+\-*/]?=)(?!=)")
_PROMISE_RE = re.compile(r"Promise::new|\bext_\w+|ext_contract|\.then\(")
_NEAR_MARKERS = ("near_sdk", "near_bindgen", "#[near(")


def _is_near_source(text: str) -> bool:
    return any(marker in text for marker in _NEAR_MARKERS)


class PromiseReentrancyDetector(Detector):
    id = "NEAR-001"
    name = "promise-reentrancy"
    description = "Contract state is changed before a cross-contract call whose callback may not roll it back."
    chains = _NEAR
    severity = Severity.CRITICAL
    confidence = Confidence.MEDIUM
    recommendation = (
        "Update state in the callback after checking the promise result, or "
        "roll the change back when the promise fails."
    )

    def detect(self, ctx: FileContext) -> Iterable[Finding]:
        for fn in self.candidate_functions(ctx):
            if P.is_test_function(fn) or P.is_callback_name(fn.name):
                continue
            statements = [s for s in fn.body.named_children if s.type not in ("line_comment", "block_comment")]
            for idx, stmt in enumerate(statements):
                if not _SELF_WRITE_RE.match(node_text(stmt)):
                    continue
                later = " ".join(node_text(s) for s in statements[idx + 1:])
                if _PROMISE_RE.search(later):
                    yield self.finding(
                        ctx, stmt,
                        f"State mutated before cross-contract call in '{fn.name}'",
                        function=fn,
                    )
                    break


class SignerVsPredecessorDetector(Detector):
    id = "NEAR-002"
    name = "signer-vs-predecessor"
    description = "signer_account_id identifies the transaction signer, not the immediate caller."
    chains = _NEAR
    severity = Severity.HIGH
    confidence = Confidence.HIGH
    recommendation = "Use `env::predecessor_account_id()` for access control."

    def detect(self, ctx: FileContext) -> Iterable[Finding]:
        for fn in self.candidate_functions(ctx):
            if P.is_test_function(fn):
                continue
            for node in walk_body(fn.body):
                if node.type not in ("identifier", "field_identifier"):
                    continue
                if node_text(node) != "signer_account_id":
                    continue
                stmt = node_text(enclosing_statement(node))
                if ("==" in stmt or "!=" in stmt or "assert" in stmt
                        or "require" in stmt or "owner" in stmt):
                    yield self.finding(
                        ctx, node,
                        f"signer_account_id used for access control in '{fn.name}'",
                        function=fn,
                    )


class CallbackUnwrapDetector(Detector):
    id = "NEAR-004"
    name = "callback-unwrap-usage"
    description = "#[callback_unwrap] panics when the awaited promise failed."
    chains = _NEAR
    severity = Severity.HIGH
    confidence = Confidence.HIGH
    recommendation = (
        "Take the result with `#[callback_result] result: Result<T, PromiseError>` "
        "and handle the failure branch."
    )

    @staticmethod
    def _callback_unwrap_attribute(fn) -> Optional[Node]:
        params = fn.node.child_by_field_name("parameters")
        if params is not None:
            for node in walk(params):
                if node.type == "attribute_item" and "callback_unwrap" in node_text(node):
                    return node
        return None

    def detect(self, ctx: FileContext) -> Iterable[Finding]:
        if not _is_near_source(ctx.text):
            return
        for fn in self.candidate_functions(ctx):
            if P.is_test_function(fn):
                continue
            anchor = self._callback_unwrap_attribute(fn)
            if anchor is None and fn.has_attribute("callback_unwrap"):
                anchor = fn.node.child_by_field_name("name") or fn.node
            if anchor is None:
                continue
            yield self.finding(
                ctx, anchor,
                f"Callback '{fn.name}' uses #[callback_unwrap] and panics on a "
                f"failed promise",
                function=fn,
            )


class WrappingArithmeticDetector(Detector):
    id = "NEAR-005"
    name = "near-wrapping-arithmetic"
    description = "wrapping_* / saturating_* silently produce wrong balances."
    chains = _NEAR
    severity = Severity.CRITICAL
    confidence = Confidence.MEDIUM
    recommendation = "Use checked_* arithmetic and fail the call on overflow."

    def detect(self, ctx: FileContext) -> Iterable[Finding]:
        for fn in self.candidate_functions(ctx):
            if P.is_test_function(fn):
                continue
            for node in walk_body(fn.body):
                if node.type != "call_expression":
                    continue
                method = call_name(node) or ""
                if not method.startswith(("wrapping_", "saturating_")):
                    continue
                if P.mentions_balance(node_text(node)):
                    yield self.finding(
                        ctx, node,
                        f"'{method}' on a balance value in '{fn.name}' hides overflow",
                        function=fn,
                    )


class MissingPrivateCallbackDetector(Detector):
    id = "NEAR-006"
    name = "missing-private-callback"
    description = "Callback methods callable by anyone can forge promise results."
    chains = _NEAR
    severity = Severity.CRITICAL
    confidence = Confidence.HIGH
    check_category = CheckCategory.AUTHORIZATION
    recommendation = (
        "Mark callbacks with `#[private]` or assert "
        "`env::predecessor_account_id() == env::current_account_id()`."
    )

    def detect(self, ctx: FileContext) -> Iterable[Finding]:
        if not _is_near_source(ctx.text):
            return
        for fn in self.candidate_functions(ctx):
            if not (fn.in_impl and fn.is_pub) or P.is_test_function(fn):
                continue
            if not P.is_callback_name(fn.name):
                continue
            if fn.has_attribute("private"):
                continue
            if "current_account_id" in fn.body_text and "predecessor_account_id" in fn.body_text:
                continue
            yield self.finding(
                ctx, fn.node.child_by_field_name("name") or fn.node,
                f"Callback '{fn.name}' is public without #[private]",
                function=fn,
            )


class MissingDepositCheckDetector(Detector):
    id = "NEAR-010"
    name = "missing-deposit-check"
    description = "#[payable] methods should inspect the attached deposit."
    chains = _NEAR
    severity = Severity.HIGH
    confidence = Confidence.HIGH
    recommendation = "Validate `env::attached_deposit()` against the expected amount."

    def detect(self, ctx: FileContext) -> Iterable[Finding]:
        for fn in self.candidate_functions(ctx):
            if not fn.has_attribute("payable") or P.is_test_function(fn):
                continue
            if P.is_nep_standard_method(fn.name):
                continue
            if "attached_deposit" in fn.body_text:
                continue
            yield self.finding(
                ctx, fn.node.child_by_field_name("name") or fn.node,
                f"Payable method '{fn.name}' never reads attached_deposit",
                function=fn,
            )


NEAR_DETECTORS: List[type] = [
    PromiseReentrancyDetector,
    SignerVsPredecessorDetector,
    CallbackUnwrapDetector,
    WrappingArithmeticDetector,
    MissingPrivateCallbackDetector,
    MissingDepositCheckDetector,
]
