"""
crabshield/detectors/solana.py
══════════════════════════════

Built-in detectors for Solana programs (native and Anchor).

  SOL-001  missing-signer-check        AccountInfo mutated without is_signer
  SOL-002  missing-owner-check         account data deserialized without owner check
  SOL-003  integer-overflow            unchecked +, -, *, / on integers
  SOL-004  account-confusion           account data decoded without a discriminator check
  SOL-005  insecure-account-close      lamports drained while account data survives
  SOL-006  arbitrary-cpi               CPI target program not validated
  SOL-007  pda-bump-misuse             create_program_address with a caller-supplied bump
  SOL-009  cpi-reentrancy              account state written after a CPI
  SOL-020  checked-arithmetic-unwrap   checked_*() immediately unwrapped

Solana programs are compiled in release mode where integer overflow wraps
silently, which is why SOL-003 is graded Critical.
"""

from __future__ import annotations

import re
from typing import Iterable, List

from crabshield.chains import Chain
from crabshield.detectors import predicates as P
from crabshield.detectors.arithmetic import unchecked_arithmetic
from crabshield.detectors.base import Detector, FileContext
from crabshield.findings import CheckCategory, Confidence, Finding, Severity
from crabshield.syntax import (
    call_name,
    call_path,
    enclosing_statement,
    node_text,
    walk_body,
)

_SOLANA = frozenset({Chain.SOLANA})

_MUTATION_MARKERS = ("serialize(", "try_borrow_mut", "borrow_mut", "invoke(", "invoke_signed(")
_DESERIALIZE_CALLS = frozenset({
    "deserialize", "try_from_slice", "unpack", "unpack_unchecked",
    "try_deserialize", "try_borrow_data",
})
_CPI_CALLS = frozenset({"invoke", "invoke_signed"})
_SOLANA_MARKERS = ("solana_program", "AccountInfo", "anchor_lang", "Pubkey")

_DECODE_CALLS = frozenset({"try_from_slice", "deserialize", "unpack"})
_TYPE_TAG_RE = re.compile(
    r"discriminator|\[\.\.8\]|account_type|is_initialized|IsInitialized|assert_initialized",
    re.IGNORECASE,
)
_DATA_WIPE_MARKERS = ("fill(0)", "sol_memset", "CLOSED_ACCOUNT_DISCRIMINATOR", "realloc(0")


def _is_solana_source(text: str) -> bool:
    return any(marker in text for marker in _SOLANA_MARKERS)


class MissingSignerCheckDetector(Detector):
    id = "SOL-001"
    name = "missing-signer-check"
    description = "AccountInfo parameters are used for state changes without verifying is_signer."
    chains = _SOLANA
    severity = Severity.CRITICAL
    confidence = Confidence.HIGH
    check_category = CheckCategory.AUTHORIZATION
    recommendation = (
        "Verify `account.is_signer` before acting on behalf of the account, "
        "or use Anchor's `Signer<'info>` type."
    )

    def detect(self, ctx: FileContext) -> Iterable[Finding]:
        for fn in self.candidate_functions(ctx):
            if (P.is_test_function(fn) or P.is_helper_name(fn.name)
                    or P.is_cpi_wrapper_name(fn.name) or P.is_utility_name(fn.name)):
                continue
            text = fn.text
            if P.has_signer_evidence(text):
                continue
            accounts = [
                p.name for p in fn.params
                if P.is_account_info_param(p.type_text)
                and not P.is_excluded_account_param(p.name)
            ]
            if not accounts:
                continue
            if not any(marker in fn.body_text for marker in _MUTATION_MARKERS):
                continue
            yield self.finding(
                ctx, fn.node.child_by_field_name("name") or fn.node,
                f"Function '{fn.name}' accepts AccountInfo {', '.join(accounts)} "
                f"without verifying is_signer",
                function=fn,
            )


class MissingOwnerCheckDetector(Detector):
    id = "SOL-002"
    name = "missing-owner-check"
    description = "Account data is deserialized without checking the owning program."
    chains = _SOLANA
    severity = Severity.CRITICAL
    confidence = Confidence.HIGH
    check_category = CheckCategory.OWNERSHIP
    recommendation = (
        "Check `account.owner == program_id` before deserializing, or use "
        "Anchor's `Account<'info, T>` which validates ownership."
    )

    def detect(self, ctx: FileContext) -> Iterable[Finding]:
        if not _is_solana_source(ctx.text):
            return
        for fn in self.candidate_functions(ctx):
            if P.is_test_function(fn) or P.is_serialization_name(fn.name):
                continue
            text = fn.text
            if "Account<" in text and "AccountInfo" not in text:
                continue
            if P.has_owner_check(text):
                continue
            for node in walk_body(fn.body):
                if node.type == "call_expression" and call_name(node) in _DESERIALIZE_CALLS:
                    yield self.finding(
                        ctx, node,
                        f"Account data deserialized via '{call_name(node)}' in "
                        f"'{fn.name}' without an owner check",
                        function=fn,
                    )
                    break


class IntegerOverflowDetector(Detector):
    id = "SOL-003"
    name = "integer-overflow"
    description = "Unchecked arithmetic wraps silently in release builds."
    chains = _SOLANA
    severity = Severity.CRITICAL
    confidence = Confidence.MEDIUM
    check_category = CheckCategory.INPUT_VALIDATION
    recommendation = (
        "Use checked_add/checked_sub/checked_mul/checked_div and handle the "
        "None case, or enable overflow-checks in the release profile."
    )

    def detect(self, ctx: FileContext) -> Iterable[Finding]:
        for fn in self.candidate_functions(ctx):
            if P.is_test_function(fn) or P.is_serialization_name(fn.name):
                continue
            for site in unchecked_arithmetic(ctx.parsed, fn):
                yield self.finding(
                    ctx, site.node,
                    f"Unchecked arithmetic operation: {site.text}",
                    function=fn,
                    confidence=Confidence.LOW if site.is_division else None,
                )


class AccountConfusionDetector(Detector):
    id = "SOL-004"
    name = "account-confusion"
    description = "Account data is decoded without checking which account type it holds."
    chains = _SOLANA
    severity = Severity.HIGH
    confidence = Confidence.MEDIUM
    recommendation = (
        "Check an account discriminator (or an is_initialized / account_type "
        "tag) before decoding, or use Anchor's `Account<'info, T>`."
    )

    def detect(self, ctx: FileContext) -> Iterable[Finding]:
        if "Account<" in ctx.text and "Context" in ctx.text:
            return
        for fn in self.candidate_functions(ctx):
            if (P.is_test_function(fn) or P.is_serialization_name(fn.name)
                    or fn.name.startswith(("gen_", "generate_"))):
                continue
            if _TYPE_TAG_RE.search(fn.body_text):
                continue
            for node in walk_body(fn.body):
                if node.type == "call_expression" and call_name(node) in _DECODE_CALLS:
                    yield self.finding(
                        ctx, fn.node.child_by_field_name("name") or fn.node,
                        f"Function '{fn.name}' decodes account data via "
                        f"'{call_name(node)}' without a discriminator check",
                        function=fn,
                    )
                    break


class InsecureAccountCloseDetector(Detector):
    id = "SOL-005"
    name = "insecure-account-close"
    description = "Account closed by draining lamports while its data stays intact."
    chains = _SOLANA
    severity = Severity.HIGH
    confidence = Confidence.MEDIUM
    recommendation = (
        "Zero the account data and write CLOSED_ACCOUNT_DISCRIMINATOR after "
        "moving the lamports, or use Anchor's `close = recipient` constraint."
    )

    @staticmethod
    def _zeroes_lamports(node) -> bool:
        if node.type == "assignment_expression":
            left = node.child_by_field_name("left")
            right = node.child_by_field_name("right")
            return "lamports" in node_text(left) and node_text(right) in ("0", "0u64")
        if node.type == "call_expression" and call_name(node) == "set_lamports":
            args = node_text(node.child_by_field_name("arguments")).replace(" ", "")
            return args in ("(0)", "(0u64)")
        return False

    def detect(self, ctx: FileContext) -> Iterable[Finding]:
        for fn in self.candidate_functions(ctx):
            if P.is_test_function(fn) or "close =" in fn.text:
                continue
            if any(marker in fn.body_text for marker in _DATA_WIPE_MARKERS):
                continue
            for node in walk_body(fn.body):
                if self._zeroes_lamports(node):
                    yield self.finding(
                        ctx, node,
                        f"Function '{fn.name}' closes an account by zeroing "
                        f"lamports without clearing its data",
                        function=fn,
                    )
                    break


class PdaBumpMisuseDetector(Detector):
    id = "SOL-007"
    name = "pda-bump-misuse"
    description = "PDA derived with a caller-supplied bump instead of the canonical one."
    chains = _SOLANA
    severity = Severity.HIGH
    confidence = Confidence.HIGH
    recommendation = (
        "Derive the address with `find_program_address` (or Anchor's "
        "`bump` constraint) so only the canonical bump is accepted."
    )

    def detect(self, ctx: FileContext) -> Iterable[Finding]:
        for fn in self.candidate_functions(ctx):
            if P.is_test_function(fn) or "find_program_address" in fn.body_text:
                continue
            for node in walk_body(fn.body):
                if node.type == "call_expression" and call_name(node) == "create_program_address":
                    yield self.finding(
                        ctx, node,
                        f"Function '{fn.name}' uses create_program_address without "
                        f"find_program_address; the bump may be user-supplied",
                        function=fn,
                    )
                    break


class ArbitraryCpiDetector(Detector):
    id = "SOL-006"
    name = "arbitrary-cpi"
    description = "Cross-program invocation target is not validated."
    chains = _SOLANA
    severity = Severity.CRITICAL
    confidence = Confidence.MEDIUM
    recommendation = (
        "Compare the target program's key against the expected program id "
        "before invoking, or use Anchor's `Program<'info, T>`."
    )

    def detect(self, ctx: FileContext) -> Iterable[Finding]:
        for fn in self.candidate_functions(ctx):
            if P.is_test_function(fn) or P.is_cpi_wrapper_name(fn.name):
                continue
            text = fn.text
            if "Program<" in text or P.has_program_id_check(text):
                continue
            for node in walk_body(fn.body):
                if node.type != "call_expression":
                    continue
                path = call_path(node)
                if call_name(node) in _CPI_CALLS or path.startswith("CpiContext::new"):
                    yield self.finding(
                        ctx, node,
                        f"CPI via '{path}' in '{fn.name}' without validating "
                        f"the target program id",
                        function=fn,
                    )
                    break


class CpiReentrancyDetector(Detector):
    id = "SOL-009"
    name = "cpi-reentrancy"
    description = "Account state is written after a cross-program invocation."
    chains = _SOLANA
    severity = Severity.MEDIUM
    confidence = Confidence.LOW
    recommendation = (
        "Write account state before the CPI (checks-effects-interactions), "
        "or reload the account after it."
    )

    @staticmethod
    def _is_state_write(stmt_text: str) -> bool:
        return (
            "serialize(" in stmt_text
            or "borrow_mut" in stmt_text
            or ".data =" in stmt_text
            or "data.borrow_mut" in stmt_text
        )

    def detect(self, ctx: FileContext) -> Iterable[Finding]:
        for fn in self.candidate_functions(ctx):
            if P.is_test_function(fn):
                continue
            cpi_end = None
            for node in walk_body(fn.body):
                if node.type != "call_expression":
                    continue
                if cpi_end is None and call_name(node) in _CPI_CALLS:
                    cpi_end = enclosing_statement(node).end_byte
            if cpi_end is None:
                continue
            for stmt in fn.body.named_children:
                if stmt.start_byte < cpi_end:
                    continue
                if self._is_state_write(node_text(stmt)):
                    yield self.finding(
                        ctx, stmt,
                        f"Account state modified after CPI in '{fn.name}'",
                        function=fn,
                    )
                    break


class CheckedArithmeticUnwrapDetector(Detector):
    id = "SOL-020"
    name = "checked-arithmetic-unwrap"
    description = "checked_* arithmetic immediately unwrapped turns overflow into a panic."
    chains = _SOLANA
    severity = Severity.MEDIUM
    confidence = Confidence.HIGH
    recommendation = (
        "Propagate the overflow as a program error, e.g. "
        "`.checked_add(x).ok_or(ErrorCode::Overflow)?`."
    )

    def detect(self, ctx: FileContext) -> Iterable[Finding]:
        for fn in self.candidate_functions(ctx):
            if P.is_test_function(fn):
                continue
            for node in walk_body(fn.body):
                if node.type != "call_expression" or call_name(node) not in ("unwrap", "expect"):
                    continue
                receiver = node.child_by_field_name("function").child_by_field_name("value")
                if receiver is None or receiver.type != "call_expression":
                    continue
                inner = call_name(receiver) or ""
                if inner.startswith("checked_"):
                    yield self.finding(
                        ctx, node,
                        f"'{inner}' result is unwrapped in '{fn.name}'; overflow "
                        f"aborts the transaction with an opaque panic",
                        function=fn,
                    )


SOLANA_DETECTORS: List[type] = [
    MissingSignerCheckDetector,
    MissingOwnerCheckDetector,
    IntegerOverflowDetector,
    AccountConfusionDetector,
    InsecureAccountCloseDetector,
    ArbitraryCpiDetector,
    PdaBumpMisuseDetector,
    CpiReentrancyDetector,
    CheckedArithmeticUnwrapDetector,
]
