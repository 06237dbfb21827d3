"""
crabshield/detectors/predicates.py
══════════════════════════════════

Exclusion predicates used by the built-in detectors.

Each heuristic that makes a detector stay quiet lives here as a named,
side-effect-free function, so every exclusion can be unit-tested on its
own and detectors read as "flag X unless <predicate>".
"""

from __future__ import annotations

import re
from typing import Iterable, Mapping, Optional

from tree_sitter import Node

from crabshield.syntax import (
    FunctionInfo,
    is_literal,
    node_text,
    operator_of,
    strip_parens,
    unwrap_parent,
)

# ---------------------------------------------------------------------------
# Names
# ---------------------------------------------------------------------------

_HELPER_PREFIXES = ("_", "inner_", "do_", "impl_", "handle_", "execute_")
_CPI_WRAPPER_PREFIXES = ("invoke_", "cpi_", "transfer_", "call_", "make_")
_CPI_WRAPPER_SUFFIXES = ("_cpi", "_invoke", "_transfer")
_UTILITY_WORDS = ("serialize", "pack", "parse", "validate", "verify", "check")

_NEP_STANDARD_METHODS = frozenset({
    "ft_transfer", "ft_transfer_call", "nft_transfer", "nft_transfer_call",
    "storage_deposit", "storage_withdraw", "storage_unregister",
    "nft_approve", "nft_revoke", "nft_revoke_all", "nft_mint",
    "ft_on_transfer", "nft_on_transfer", "mt_transfer", "mt_transfer_call",
})

_PERMISSIONLESS_INK_METHODS = frozenset({
    "transfer", "transfer_from", "approve", "increase_allowance",
    "decrease_allowance", "psp22_transfer", "psp22_transfer_from",
    "psp22_approve", "psp34_transfer", "psp34_approve",
    "vote", "register", "deposit", "stake", "claim",
})

_SENSITIVE_FIELD_WORDS = (
    "owner", "admin", "paused", "fee", "authority", "operator",
    "code_hash", "treasury", "minter", "governance", "whitelist",
)

_EXCLUDED_ACCOUNT_PARAM_WORDS = (
    "program", "system", "rent", "clock", "token", "mint", "metadata",
    "associated", "sysvar", "pda", "vault", "pool", "config", "state",
    "data", "dest", "source",
)

_BALANCE_WORDS = ("balance", "amount", "deposit", "stake", "token", "reward")


def is_test_function(fn: FunctionInfo) -> bool:
    return fn.in_test_code or "test" in fn.name.lower()


def is_helper_name(name: str) -> bool:
    """Internal helpers whose callers own the signer check."""
    if name.startswith("process_") and name != "process_instruction":
        return True
    return name.startswith(_HELPER_PREFIXES)


def is_cpi_wrapper_name(name: str) -> bool:
    return name.startswith(_CPI_WRAPPER_PREFIXES) or name.endswith(_CPI_WRAPPER_SUFFIXES)


def is_utility_name(name: str) -> bool:
    lowered = name.lower()
    return any(word in lowered for word in _UTILITY_WORDS)


def is_serialization_name(name: str) -> bool:
    lowered = name.lower()
    return "pack" in lowered or "serialize" in lowered


def is_nep_standard_method(name: str) -> bool:
    return name in _NEP_STANDARD_METHODS


def is_permissionless_ink_method(name: str) -> bool:
    return name in _PERMISSIONLESS_INK_METHODS


def is_sensitive_field(field_name: str) -> bool:
    lowered = field_name.lower()
    return any(word in lowered for word in _SENSITIVE_FIELD_WORDS)


def is_excluded_account_param(param_name: str) -> bool:
    lowered = param_name.lower()
    return any(word in lowered for word in _EXCLUDED_ACCOUNT_PARAM_WORDS)


def mentions_balance(text: str) -> bool:
    lowered = text.lower()
    return any(word in lowered for word in _BALANCE_WORDS)


def is_callback_name(name: str) -> bool:
    return (
        name.startswith("on_")
        or name.endswith("_callback")
        or "callback" in name
        or name.startswith("resolve_")
    )


# ---------------------------------------------------------------------------
# Account / access checks (text level)
# ---------------------------------------------------------------------------

_PROGRAM_CHECK_RE = re.compile(
    r"(program_id|program\.key|::id\(\)|::ID)\s*(==|!=)"
    r"|(==|!=)\s*&?\s*[\w:.]*(program_id|::id\(\)|::ID)"
    r"|require_keys_eq!|check_program_account|check_id\("
)

_CALLER_CHECK_RE = re.compile(
    r"caller\(\)\s*(==|!=)|(==|!=)\s*[\w.()]*caller"
    r"|ensure_owner|only_owner|ensure_caller|check_owner"
)


def has_program_id_check(text: str) -> bool:
    return bool(_PROGRAM_CHECK_RE.search(text))


def has_owner_check(text: str) -> bool:
    return ".owner" in text or "owner ==" in text or "check_owner" in text


def has_signer_evidence(text: str) -> bool:
    return "is_signer" in text or "Signer<" in text or "Context<" in text


def has_caller_check(text: str) -> bool:
    return bool(_CALLER_CHECK_RE.search(text))


def is_account_info_param(type_text: str) -> bool:
    compact = type_text.replace(" ", "")
    if "AccountInfo" not in compact:
        return False
    return not (compact.startswith("&[") or compact.startswith("[")
                or "Vec<" in compact or "Iter" in compact)


# ---------------------------------------------------------------------------
# Arithmetic shapes
# ---------------------------------------------------------------------------

ARITHMETIC_OPERATORS = frozenset({"+", "-", "*", "/"})
COMPOUND_ARITHMETIC_OPERATORS = frozenset({"+=", "-=", "*=", "/="})

_SAFE_ARITH_RE = re.compile(r"\b(checked|saturating|wrapping|overflowing)_\w+")
_WIDE_TYPES = frozenset({"u128", "i128", "u64", "i64", "U256", "U512"})
_PERCENT_DENOMINATORS = frozenset({"100", "1000", "10000", "10_000", "1_000", "100_000", "100000"})
_CONSTANT_RE = re.compile(r"^[A-Z][A-Z0-9_]*$")
_INT_SUFFIX_RE = re.compile(r"_?[ui](8|16|32|64|128|size)$")

SAFE_NUMERIC_TYPES = frozenset({
    "Uint64", "Uint128", "Uint256", "Uint512",
    "Int64", "Int128", "Int256", "Int512",
    "U128", "U256", "U512",
    "Decimal", "Decimal256", "SignedDecimal", "SignedDecimal256",
})

PRIMITIVE_INTEGER_TYPES = frozenset({
    "u8", "u16", "u32", "u64", "u128", "usize",
    "i8", "i16", "i32", "i64", "i128", "isize",
})


def is_constant_operand(node: Node) -> bool:
    """Literal, or an ALL_CAPS constant path segment."""
    node = strip_parens(node)
    if is_literal(node):
        return True
    if node.type in ("identifier", "scoped_identifier"):
        last = node_text(node).split("::")[-1]
        return bool(_CONSTANT_RE.match(last))
    return False


def uses_safe_arithmetic(line: str) -> bool:
    return bool(_SAFE_ARITH_RE.search(line))


def is_string_concat(expr_text: str) -> bool:
    return (
        '"' in expr_text
        or "to_string()" in expr_text
        or "format!" in expr_text
        or "String" in expr_text
        or "&str" in expr_text
    )


def is_length_arithmetic(line: str) -> bool:
    return ".len()" in line or "as usize" in line


def is_widening_cast(node: Node) -> bool:
    node = strip_parens(node)
    if node.type != "type_cast_expression":
        return False
    return node_text(node.child_by_field_name("type")) in _WIDE_TYPES


def both_widening_casts(expr: Node) -> bool:
    left = expr.child_by_field_name("left")
    right = expr.child_by_field_name("right")
    return (left is not None and right is not None
            and is_widening_cast(left) and is_widening_cast(right))


def is_bounded_percentage(expr: Node) -> bool:
    """``a * b / 100`` style: multiplication directly divided by a small literal base."""
    if operator_of(expr) != "*":
        return False
    parent = unwrap_parent(expr)
    if parent is None or parent.type != "binary_expression" or operator_of(parent) != "/":
        return False
    right = parent.child_by_field_name("right")
    if right is None:
        return False
    denom = _INT_SUFFIX_RE.sub("", node_text(strip_parens(right)))
    return denom in _PERCENT_DENOMINATORS or bool(re.search(r"BPS|PERCENT|DENOM", denom))


def operand_type(node: Node, types: Mapping[str, str]) -> Optional[str]:
    """Best-effort syntactic type of an arithmetic operand."""
    node = strip_parens(node)
    if node.type == "identifier":
        return _base_type(types.get(node_text(node)))
    if node.type == "type_cast_expression":
        return _base_type(node_text(node.child_by_field_name("type")))
    if node.type == "call_expression":
        fn = node_text(node.child_by_field_name("function"))
        head = fn.split("::")[0]
        if head in SAFE_NUMERIC_TYPES:
            return head
    if node.type == "field_expression":
        field_name = node_text(node.child_by_field_name("field"))
        return _base_type(types.get(f"self.{field_name}"))
    return None


def _base_type(type_text: Optional[str]) -> Optional[str]:
    if not type_text:
        return None
    text = type_text.replace("&", "").replace("mut ", "").strip()
    return text.split("::")[-1] or None


def any_type_in(types: Iterable[Optional[str]], family: frozenset) -> bool:
    return any(t in family for t in types if t)
