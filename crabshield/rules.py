"""
crabshield/rules.py
═══════════════════

User-declared rules loaded from a TOML file.

A rule is a :class:`~crabshield.detectors.base.FindingProducer` just like a
built-in detector: it registers in the same registry, runs through the same
dispatcher and its findings pass through the same suppression stages.

File format
───────────

    [[rules]]
    id = "CUSTOM-001"
    name = "no-unwrap-in-handlers"
    severity = "medium"
    confidence = "high"
    chain = "solana"                 # optional, default: every chain
    regex = '\\.unwrap\\(\\)'        # or: pattern = "..." / structural = "(...)"
    message = "unwrap() in handler"  # {function}, {match}, capture names
    recommendation = "Return an error instead."
    safe_patterns = ["// checked"]
    exclude_tests = true
    scope = "function"               # or "file" (textual rules only)

A file that cannot be read or is not valid TOML is a configuration error.
A single invalid rule is skipped with a warning.
"""

from __future__ import annotations

import hashlib
import logging
import re
import tomllib
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from string import Formatter
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from crabshield.chains import ALL_CHAINS, Chain
from crabshield.detectors.base import FileContext, FindingProducer
from crabshield.errors import PatternError, RuleFileError
from crabshield.findings import Confidence, Finding, Severity
from crabshield.patterns import PatternMatcher, PatternNode, binding_text, compile_pattern
from crabshield.syntax import FunctionInfo, column_of, line_of, node_text

logger = logging.getLogger(__name__)

_KNOWN_KEYS = frozenset({
    "id", "name", "severity", "confidence", "chain", "pattern", "regex",
    "structural", "message", "recommendation", "exclude_tests",
    "safe_patterns", "scope",
})


class PatternKind(Enum):
    SUBSTRING = "pattern"
    REGEX = "regex"
    STRUCTURAL = "structural"


class RuleScope(Enum):
    FUNCTION = "function"
    FILE = "file"


class InvalidRule(ValueError):
    """One rule record is malformed (skipped, not fatal)."""
    pass


# ═════════════════════════════════════════════════════════════════════════
#  PART 1: RULE
# ═════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Rule:
    id: str
    name: str
    severity: Severity
    confidence: Confidence
    message: str
    pattern_kind: PatternKind
    pattern: str
    chain: Optional[Chain] = None
    recommendation: str = ""
    exclude_tests: bool = True
    safe_patterns: Tuple[str, ...] = ()
    scope: RuleScope = RuleScope.FUNCTION


def _require_str(raw: Mapping[str, Any], key: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InvalidRule(f"missing or empty '{key}'")
    return value


def _check_template(template: str) -> None:
    try:
        for _, fname, _, _ in Formatter().parse(template):
            if fname is not None and not re.match(r"^[A-Za-z_]\w*$", fname):
                raise InvalidRule(f"unsupported placeholder '{{{fname}}}' in message")
    except ValueError as exc:
        raise InvalidRule(f"bad message template: {exc}") from exc


def parse_rule(raw: Mapping[str, Any]) -> Rule:
    """Validate one ``[[rules]]`` table.

    Raises
    ------
    InvalidRule
    """
    if not isinstance(raw, dict):
        raise InvalidRule("rule entry is not a table")
    rule_id = _require_str(raw, "id").strip()
    name = _require_str(raw, "name")
    message = _require_str(raw, "message")
    _check_template(message)

    try:
        severity = Severity.parse(_require_str(raw, "severity"))
        confidence = Confidence.parse(_require_str(raw, "confidence"))
    except ValueError as exc:
        raise InvalidRule(str(exc)) from exc

    chain = None
    if raw.get("chain") is not None:
        chain = Chain.from_str_loose(str(raw["chain"]))
        if chain is None:
            raise InvalidRule(f"unknown chain '{raw['chain']}'")

    kinds = [k for k in PatternKind if k.value in raw]
    if len(kinds) != 1:
        raise InvalidRule("exactly one of 'pattern', 'regex', 'structural' is required")
    kind = kinds[0]
    pattern = _require_str(raw, kind.value)
    if kind is PatternKind.REGEX:
        try:
            re.compile(pattern)
        except re.error as exc:
            raise InvalidRule(f"bad regex: {exc}") from exc
    elif kind is PatternKind.STRUCTURAL:
        try:
            compile_pattern(pattern)
        except PatternError as exc:
            raise InvalidRule(str(exc)) from exc

    safe = raw.get("safe_patterns", [])
    if not isinstance(safe, list) or not all(isinstance(s, str) for s in safe):
        raise InvalidRule("'safe_patterns' must be a list of strings")

    exclude_tests = raw.get("exclude_tests", True)
    if not isinstance(exclude_tests, bool):
        raise InvalidRule("'exclude_tests' must be a boolean")

    try:
        scope = RuleScope(str(raw.get("scope", "function")).lower())
    except ValueError:
        raise InvalidRule(f"unknown scope '{raw.get('scope')}'") from None

    unknown = set(raw) - _KNOWN_KEYS
    if unknown:
        logger.warning("Rule %s: ignoring unknown keys %s", rule_id, ", ".join(sorted(unknown)))

    return Rule(
        id=rule_id,
        name=name,
        severity=severity,
        confidence=confidence,
        message=message,
        pattern_kind=kind,
        pattern=pattern,
        chain=chain,
        recommendation=str(raw.get("recommendation", "")),
        exclude_tests=exclude_tests,
        safe_patterns=tuple(safe),
        scope=scope,
    )


# ═════════════════════════════════════════════════════════════════════════
#  PART 2: LOADING
# ═════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RuleSet:
    rules: Tuple[Rule, ...] = ()
    skipped: Tuple[str, ...] = ()
    digest: str = ""

    def producers(self) -> List["RuleProducer"]:
        return [RuleProducer(r) for r in self.rules]


def parse_rules(text: str, source: str = "<rules>") -> RuleSet:
    """Parse rule-file contents.

    Raises
    ------
    RuleFileError
        Invalid TOML, or no ``rules`` array of tables.
    """
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise RuleFileError(f"invalid TOML: {exc}", path=source) from exc
    entries = data.get("rules")
    if not isinstance(entries, list):
        raise RuleFileError("expected a [[rules]] array", path=source)

    rules: List[Rule] = []
    skipped: List[str] = []
    seen = set()
    for idx, raw in enumerate(entries):
        label = raw.get("id", f"#{idx + 1}") if isinstance(raw, dict) else f"#{idx + 1}"
        try:
            rule = parse_rule(raw)
        except InvalidRule as exc:
            logger.warning("%s: skipping rule %s: %s", source, label, exc)
            skipped.append(str(label))
            continue
        if rule.id in seen:
            logger.warning("%s: skipping rule %s: duplicate id in rule file", source, rule.id)
            skipped.append(rule.id)
            continue
        seen.add(rule.id)
        rules.append(rule)

    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]
    logger.info("Loaded %d rule(s) from %s (%d skipped)", len(rules), source, len(skipped))
    return RuleSet(rules=tuple(rules), skipped=tuple(skipped), digest=digest)


def load_rules(path: Path) -> RuleSet:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise RuleFileError(f"cannot read rule file: {exc}", path=str(path)) from exc
    return parse_rules(text, source=str(path))


# ═════════════════════════════════════════════════════════════════════════
#  PART 3: RULE PRODUCER
# ═════════════════════════════════════════════════════════════════════════

class _SafeDict(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class RuleProducer(FindingProducer):
    """Evaluates one :class:`Rule` against a file."""

    def __init__(self, rule: Rule) -> None:
        self.rule = rule
        self.id = rule.id
        self.name = rule.name
        self.severity = rule.severity
        self.confidence = rule.confidence
        self.chains: FrozenSet[Chain] = (
            frozenset({rule.chain}) if rule.chain is not None else ALL_CHAINS
        )
        self._structural: Optional[PatternNode] = None
        self._regex: Optional[re.Pattern] = None
        if rule.pattern_kind is PatternKind.STRUCTURAL:
            self._structural = compile_pattern(rule.pattern)
        elif rule.pattern_kind is PatternKind.REGEX:
            self._regex = re.compile(rule.pattern)

    # ── evaluation ───────────────────────────────────────────────────

    def produce(self, ctx: FileContext) -> List[Finding]:
        if self._structural is not None:
            return list(self._produce_structural(ctx))
        return list(self._produce_textual(ctx))

    def _excluded_function(self, fn: Optional[FunctionInfo]) -> bool:
        if fn is None or not self.rule.exclude_tests:
            return False
        return fn.in_test_code or "test" in fn.name.lower()

    def _is_safe(self, text: str) -> bool:
        return any(s in text for s in self.rule.safe_patterns)

    def _line_matches(self, line: str) -> Optional[Tuple[int, str]]:
        if self._regex is not None:
            m = self._regex.search(line)
            return (m.start(), m.group(0)) if m else None
        idx = line.find(self.rule.pattern)
        return (idx, self.rule.pattern) if idx >= 0 else None

    def _produce_textual(self, ctx: FileContext) -> Iterable[Finding]:
        lines = ctx.parsed.lines
        if self.rule.scope is RuleScope.FILE:
            ranges = [(1, len(lines), None)]
        else:
            ranges = []
            for fn in ctx.functions:
                if fn.body is None or self._excluded_function(fn):
                    continue
                ranges.append((line_of(fn.body), fn.body.end_point[0] + 1, fn))
        reported = set()
        for start, end, fn in ranges:
            for lineno in range(start, end + 1):
                line = ctx.parsed.line_text(lineno)
                hit = self._line_matches(line)
                if hit is None or self._is_safe(line):
                    continue
                owner = fn
                if owner is None:
                    owner = _function_at_line(ctx, lineno)
                    if self._excluded_function(owner):
                        continue
                elif _function_at_line(ctx, lineno) is not fn:
                    continue
                if lineno in reported:
                    continue
                reported.add(lineno)
                col, matched = hit
                yield self._finding(ctx, lineno, col + 1, lineno, matched, owner, {})

    def _produce_structural(self, ctx: FileContext) -> Iterable[Finding]:
        matcher = PatternMatcher()
        for node, bindings in matcher.find_all(self._structural, ctx.root):
            fn = ctx.function_at(node)
            if self._excluded_function(fn):
                continue
            text = node_text(node)
            if self._is_safe(text):
                continue
            captures = {name: binding_text(v) for name, v in bindings.items()}
            yield self._finding(
                ctx, line_of(node), column_of(node), node.end_point[0] + 1,
                text, fn, captures,
            )

    def _finding(self, ctx: FileContext, line: int, column: int, end_line: int,
                 matched: str, fn: Optional[FunctionInfo],
                 captures: Dict[str, str]) -> Finding:
        fn_name = fn.name if fn is not None else None
        values = _SafeDict(captures)
        values["function"] = fn_name or "<module>"
        values["match"] = matched.splitlines()[0][:80] if matched else ""
        message = self.rule.message.format_map(values)
        if fn_name and "{function}" not in self.rule.message:
            message = f"{message} (in function '{fn_name}')"
        return Finding(
            detector_id=self.rule.id,
            name=self.rule.name,
            severity=self.rule.severity,
            confidence=self.rule.confidence,
            file=ctx.path,
            line=line,
            column=column,
            end_line=end_line,
            message=message,
            chain=self.rule.chain.value if self.rule.chain is not None else "",
            snippet=ctx.snippet(line),
            recommendation=self.rule.recommendation,
            function=fn_name,
        )


def _function_at_line(ctx: FileContext, lineno: int) -> Optional[FunctionInfo]:
    best = None
    for fn in ctx.functions:
        if line_of(fn.node) <= lineno <= fn.node.end_point[0] + 1:
            if best is None or fn.start_byte >= best.start_byte:
                best = fn
    return best
