"""
crabshield/detectors/base.py
════════════════════════════

Finding-producer framework shared by built-in detectors and declarative
rules.

Architecture
────────────

  ┌──────────────────────────────────────────────────────────┐
  │                  DetectorRegistry.run()                  │
  │  ┌──────────────┐  ┌──────────────┐  ┌──────────────┐    │
  │  │  Detector    │  │  Detector    │  │ RuleProducer │ …  │
  │  │  (SOL-003)   │  │  (NEAR-006)  │  │ (CUSTOM-001) │    │
  │  └──────┬───────┘  └──────┬───────┘  └──────┬───────┘    │
  │         │                 │                 │            │
  │  ┌──────▼─────────────────▼─────────────────▼─────────┐  │
  │  │   FileContext: parsed tree · functions · callgraph │  │
  │  └────────────────────────────────────────────────────┘  │
  └──────────────────────────────────────────────────────────┘

A producer sees one :class:`FileContext`, reads it, and returns findings.
Producers never mutate the context and never share state, so the order in
which the registry runs them cannot change the result.  A producer that
raises is reported as a :class:`ProducerError`; the others still run.

:class:`ManifestDetector` subclasses see a :class:`ManifestContext` (one
crate's Cargo.toml) instead and are dispatched by
:meth:`DetectorRegistry.run_manifest`, once per manifest.

The registry is built once, frozen, and handed to every worker.
"""

from __future__ import annotations

import logging
import re
import time
import tomllib
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import (
    Any,
    ClassVar,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Union,
)

from tree_sitter import Node

from crabshield.callgraph import CallGraph
from crabshield.chains import ALL_CHAINS, Chain
from crabshield.errors import DuplicateDetectorError, ProducerError
from crabshield.findings import CheckCategory, Confidence, Finding, Severity
from crabshield.parser import ParsedSource
from crabshield.syntax import (
    FunctionInfo,
    column_of,
    end_line_of,
    enclosing_function,
    line_of,
)

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════
#  PART 1: FILE CONTEXT
# ═════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class FileContext:
    """
    Everything a producer may look at for one file.

    Attributes
    ----------
    path      : Project-relative POSIX path (used in findings)
    parsed    : Syntax tree and original text
    chains    : Chains this file's crate belongs to
    functions : Function inventory, source order
    callgraph : Intra-file call graph
    """
    path: str
    parsed: ParsedSource
    chains: FrozenSet[Chain]
    functions: Sequence[FunctionInfo]
    callgraph: CallGraph

    @property
    def text(self) -> str:
        return self.parsed.text

    @property
    def root(self) -> Node:
        return self.parsed.root

    def snippet(self, line: int) -> str:
        return self.parsed.line_text(line).strip()

    def function_at(self, node: Node) -> Optional[FunctionInfo]:
        return enclosing_function(self.functions, node)


@dataclass(frozen=True)
class ManifestContext:
    """
    One crate's Cargo.toml.

    Attributes
    ----------
    path     : Project-relative POSIX path of the manifest
    text     : Raw TOML text (for line lookup)
    manifest : Decoded TOML document
    chains   : Chains of the crate the manifest declares
    """
    path: str
    text: str
    manifest: Mapping[str, Any]
    chains: FrozenSet[Chain]

    @classmethod
    def parse(cls, path: str, text: str,
              chains: Iterable[Chain]) -> "ManifestContext":
        """Decode ``text``; raises :class:`tomllib.TOMLDecodeError`."""
        return cls(path, text, tomllib.loads(text), frozenset(chains))

    def line_of_key(self, key: str) -> int:
        """First line declaring ``key`` (``key = ..``, ``key.x = ..`` or
        ``[section.key]``), else 1."""
        pattern = re.compile(
            r"^[ \t]*(?:\[[^\]\n]*\.)?[\"']?" + re.escape(key) + r"[\"']?[ \t]*[=.\]]",
            re.MULTILINE,
        )
        match = pattern.search(self.text)
        if match is None:
            return 1
        return self.text.count("\n", 0, match.start()) + 1

    def snippet(self, line: int) -> str:
        lines = self.text.splitlines()
        if 1 <= line <= len(lines):
            return lines[line - 1].strip()
        return ""


# ═════════════════════════════════════════════════════════════════════════
#  PART 2: PRODUCERS
# ═════════════════════════════════════════════════════════════════════════

class FindingProducer(ABC):
    """Anything that turns a :class:`FileContext` into findings."""

    id: str = ""
    name: str = ""
    chains: FrozenSet[Chain] = ALL_CHAINS
    severity: Severity = Severity.MEDIUM
    confidence: Confidence = Confidence.MEDIUM

    def applies_to(self, chains: FrozenSet[Chain]) -> bool:
        return bool(self.chains & chains)

    @abstractmethod
    def produce(self, ctx: FileContext) -> List[Finding]:
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.id}'>"


class Detector(FindingProducer):
    """
    Base class for built-in detectors.

    Subclass Contract
    ─────────────────
      - Set ``id``, ``name``, ``description``, ``chains``, ``severity``,
        ``confidence`` and ``recommendation``
      - Set ``check_category`` when callers performing that check make the
        finding moot (call-graph suppression)
      - Implement ``detect()`` as a generator of findings built with
        :meth:`finding`
    """

    id: ClassVar[str] = ""
    name: ClassVar[str] = ""
    description: ClassVar[str] = ""
    chains: ClassVar[FrozenSet[Chain]] = ALL_CHAINS
    severity: ClassVar[Severity] = Severity.MEDIUM
    confidence: ClassVar[Confidence] = Confidence.MEDIUM
    check_category: ClassVar[Optional[CheckCategory]] = None
    recommendation: ClassVar[str] = ""

    def produce(self, ctx: FileContext) -> List[Finding]:
        return list(self.detect(ctx))

    @abstractmethod
    def detect(self, ctx: FileContext) -> Iterable[Finding]:
        ...

    def finding(
        self,
        ctx: FileContext,
        node: Node,
        message: str,
        *,
        function: Optional[FunctionInfo] = None,
        severity: Optional[Severity] = None,
        confidence: Optional[Confidence] = None,
        line: Optional[int] = None,
    ) -> Finding:
        """Build a finding anchored at ``node`` with this detector's metadata.

        ``line`` moves the anchor to another line.  The span of ``node`` is
        kept when ``line`` is the node's own start line; otherwise the
        finding covers the whole of ``line`` (column 0).
        """
        if function is None:
            function = ctx.function_at(node)
        node_line = line_of(node)
        start = line if line is not None else node_line
        on_node = start == node_line
        chain = ""
        if len(self.chains) == 1:
            chain = next(iter(self.chains)).value
        return Finding(
            detector_id=self.id,
            name=self.name,
            severity=severity or self.severity,
            confidence=confidence or self.confidence,
            file=ctx.path,
            line=start,
            column=column_of(node) if on_node else 0,
            end_line=max(start, end_line_of(node)) if on_node else start,
            message=message,
            chain=chain,
            snippet=ctx.snippet(start),
            recommendation=self.recommendation,
            function=function.name if function is not None else None,
            check_category=self.check_category,
        )

    def candidate_functions(self, ctx: FileContext) -> Iterable[FunctionInfo]:
        """Non-test functions with a body."""
        for fn in ctx.functions:
            if fn.body is not None and not fn.in_test_code:
                yield fn


class ManifestDetector(FindingProducer):
    """
    Base class for detectors that read a crate's Cargo.toml.

    Same metadata as :class:`Detector`; ``detect()`` receives a
    :class:`ManifestContext` and findings are anchored at the line that
    declares a dependency key.
    """

    id: ClassVar[str] = ""
    name: ClassVar[str] = ""
    description: ClassVar[str] = ""
    chains: ClassVar[FrozenSet[Chain]] = ALL_CHAINS
    severity: ClassVar[Severity] = Severity.MEDIUM
    confidence: ClassVar[Confidence] = Confidence.MEDIUM
    recommendation: ClassVar[str] = ""

    def produce(self, ctx: ManifestContext) -> List[Finding]:
        return list(self.detect(ctx))

    @abstractmethod
    def detect(self, ctx: ManifestContext) -> Iterable[Finding]:
        ...

    def finding(
        self,
        ctx: ManifestContext,
        key: str,
        message: str,
        *,
        severity: Optional[Severity] = None,
        confidence: Optional[Confidence] = None,
        recommendation: Optional[str] = None,
        chain: Optional[Chain] = None,
    ) -> Finding:
        line = ctx.line_of_key(key)
        return Finding(
            detector_id=self.id,
            name=self.name,
            severity=severity or self.severity,
            confidence=confidence or self.confidence,
            file=ctx.path,
            line=line,
            column=0,
            end_line=line,
            message=message,
            chain=chain.value if chain is not None else "",
            snippet=ctx.snippet(line),
            recommendation=recommendation or self.recommendation,
        )


# ═════════════════════════════════════════════════════════════════════════
#  PART 3: REGISTRY & DISPATCH
# ═════════════════════════════════════════════════════════════════════════

@dataclass
class DispatchResult:
    """Findings and failures from running every applicable producer on a file."""
    findings: List[Finding] = field(default_factory=list)
    errors: List[ProducerError] = field(default_factory=list)
    elapsed_ms: Dict[str, float] = field(default_factory=dict)


class DetectorRegistry:
    """
    Ordered registry of finding producers keyed by identifier.

    Usage
    -----
    >>> registry = DetectorRegistry()
    >>> registry.register(IntegerOverflowDetector())
    >>> registry.freeze()
    >>> result = registry.run(ctx)
    """

    def __init__(self, producers: Iterable[FindingProducer] = ()) -> None:
        self._producers: "OrderedDict[str, FindingProducer]" = OrderedDict()
        self._frozen = False
        for producer in producers:
            self.register(producer)

    def register(self, producer: FindingProducer) -> None:
        """Add ``producer``; a second producer with the same id is a config error."""
        if self._frozen:
            raise RuntimeError("registry is frozen")
        if not producer.id:
            raise ValueError(f"{producer!r} has no identifier")
        if producer.id in self._producers:
            raise DuplicateDetectorError(producer.id)
        self._producers[producer.id] = producer

    def freeze(self) -> "DetectorRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, producer_id: str) -> Optional[FindingProducer]:
        return self._producers.get(producer_id)

    def __contains__(self, producer_id: str) -> bool:
        return producer_id in self._producers

    def __iter__(self):
        return iter(self._producers.values())

    def __len__(self) -> int:
        return len(self._producers)

    @property
    def ids(self) -> List[str]:
        return list(self._producers)

    def for_chains(self, chains: FrozenSet[Chain]) -> List[FindingProducer]:
        return [p for p in self._producers.values() if p.applies_to(chains)]

    def run(self, ctx: FileContext) -> DispatchResult:
        """Run every source producer whose chains intersect ``ctx.chains``."""
        producers = [p for p in self.for_chains(ctx.chains)
                     if not isinstance(p, ManifestDetector)]
        return self._dispatch(producers, ctx)

    def run_manifest(self, ctx: ManifestContext) -> DispatchResult:
        """Run every manifest detector whose chains intersect ``ctx.chains``."""
        producers = [p for p in self.for_chains(ctx.chains)
                     if isinstance(p, ManifestDetector)]
        return self._dispatch(producers, ctx)

    def _dispatch(self, producers: Sequence[FindingProducer],
                  ctx: Union[FileContext, ManifestContext]) -> DispatchResult:
        result = DispatchResult()
        for producer in producers:
            t0 = time.monotonic()
            try:
                findings = producer.produce(ctx)
            except Exception as exc:
                logger.warning("%s failed on %s: %s", producer.id, ctx.path, exc)
                logger.debug("Traceback for %s", producer.id, exc_info=True)
                result.errors.append(
                    ProducerError(ctx.path, producer.id, f"{type(exc).__name__}: {exc}")
                )
                findings = []
            result.elapsed_ms[producer.id] = (time.monotonic() - t0) * 1000.0
            result.findings.extend(findings)
        return result
