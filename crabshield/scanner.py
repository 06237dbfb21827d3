"""
crabshield/scanner.py
═════════════════════

File discovery, per-file pipeline, worker pool and aggregation.

Pipeline
────────

  setup (once, main thread)
    config → rules → registry (frozen) → ChainSet → cache → file list

  per file (one worker, no shared mutable state except cache/counters)
    chains → read → cache lookup ─hit──────────────────────────┐
                                └miss→ parse → functions →     │
                                       callgraph → producers → │
                                       inline + callgraph      │
                                       suppression → store     │
                                                               ▼
  per manifest (main thread, directory targets only)
    Cargo.toml of each classified crate → manifest detectors

  aggregate (main thread)
    config filter → --detector filter → sort → dedupe
    → baseline diff / save → cache commit

Worker completion order is irrelevant: the aggregate is sorted by
severity (highest first), path, line, column and identifier.
"""

from __future__ import annotations

import logging
import os
import time
import tomllib
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, Iterator, List, Optional, Sequence, Tuple

from crabshield.baseline import Baseline, BaselineDiff
from crabshield.cache import (
    CACHE_FILENAME,
    IncrementalCache,
    compute_version,
    content_fingerprint,
)
from crabshield.callgraph import build_callgraph
from crabshield.chains import Chain, ChainSet, classify_project
from crabshield.config import ProjectConfig, discover_config
from crabshield.detectors import build_registry
from crabshield.detectors.base import DetectorRegistry, FileContext, ManifestContext
from crabshield.directives import collect_directives
from crabshield.errors import ConfigError, FileError, ParseFailure, ProducerError
from crabshield.findings import Confidence, Finding, Severity, dedupe, sort_findings
from crabshield.parser import parse_source
from crabshield.rules import RuleSet, load_rules
from crabshield.suppression import SuppressionEngine, SuppressionStats
from crabshield.syntax import collect_functions

logger = logging.getLogger(__name__)

SKIP_DIRS = frozenset({"target", "tests", "test", "fuzz", "node_modules"})


# ═════════════════════════════════════════════════════════════════════════
#  PART 1: DISCOVERY
# ═════════════════════════════════════════════════════════════════════════

def is_skipped_file(name: str) -> bool:
    return not name.endswith(".rs") or name.endswith("_test.rs") or name == "tests.rs"


def discover_files(root: Path) -> List[Path]:
    """Rust sources below ``root`` in sorted order, minus build and test trees."""
    if root.is_file():
        return [root] if root.suffix == ".rs" else []
    found: List[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            d for d in dirnames if d not in SKIP_DIRS and not d.startswith(".")
        )
        for name in sorted(filenames):
            if not is_skipped_file(name):
                found.append(Path(dirpath) / name)
    return found


def enclosing_crate(path: Path) -> Path:
    """Nearest ancestor of a single file holding a Cargo.toml, else its directory."""
    for parent in path.parents:
        if (parent / "Cargo.toml").is_file():
            return parent
    return path.parent


def relative_path(path: Path, root: Path) -> str:
    try:
        return path.relative_to(root).as_posix()
    except ValueError:
        return path.as_posix()


# ═════════════════════════════════════════════════════════════════════════
#  PART 2: OPTIONS & RESULTS
# ═════════════════════════════════════════════════════════════════════════

@dataclass
class ScanOptions:
    """
    Inputs of one scan.

    Attributes
    ----------
    root           : Project directory (or a single .rs file)
    chains         : Ecosystem override for every crate (``--chain``)
    config_path    : Explicit configuration file (default: discover)
    rules_path     : Declarative rule file
    detectors      : Only keep findings from these identifiers
    min_severity   : Tightens the configured minimum
    min_confidence : Tightens the configured minimum
    incremental    : Use the incremental cache
    cache_path     : Cache location (default ``<root>/.crabshield.cache.json``)
    baseline       : Report only findings missing from this baseline
    save_baseline  : Write the surviving findings as a baseline
    jobs           : Worker count (None = executor default)
    """
    root: Path
    chains: Optional[FrozenSet[Chain]] = None
    config_path: Optional[Path] = None
    rules_path: Optional[Path] = None
    detectors: Sequence[str] = ()
    min_severity: Optional[Severity] = None
    min_confidence: Optional[Confidence] = None
    incremental: bool = False
    cache_path: Optional[Path] = None
    baseline: Optional[Path] = None
    save_baseline: Optional[Path] = None
    jobs: Optional[int] = None


@dataclass
class ScanResult:
    """
    Outcome of a scan.

    ``findings`` holds every finding that survived suppression and filters;
    ``reported`` narrows it to findings missing from the baseline when one
    was given.
    """
    findings: List[Finding] = field(default_factory=list)
    files_scanned: int = 0
    skipped: List[str] = field(default_factory=list)
    file_errors: List[FileError] = field(default_factory=list)
    producer_errors: List[ProducerError] = field(default_factory=list)
    suppressed: SuppressionStats = field(default_factory=SuppressionStats)
    cache_hits: int = 0
    cache_misses: int = 0
    baseline_diff: Optional[BaselineDiff] = None
    elapsed: float = 0.0

    @property
    def reported(self) -> List[Finding]:
        if self.baseline_diff is not None:
            return self.baseline_diff.new
        return self.findings

    def summary(self) -> str:
        parts = [
            f"{len(self.reported)} finding(s)",
            f"{self.files_scanned} file(s) scanned",
        ]
        if self.skipped:
            parts.append(f"{len(self.skipped)} skipped (no chain)")
        if self.file_errors:
            parts.append(f"{len(self.file_errors)} file error(s)")
        if self.producer_errors:
            parts.append(f"{len(self.producer_errors)} detector error(s)")
        if self.suppressed.total:
            parts.append(f"{self.suppressed.total} suppressed")
        if self.baseline_diff is not None:
            parts.append(f"{self.baseline_diff.matched} in baseline")
        if self.cache_hits or self.cache_misses:
            parts.append(f"cache {self.cache_hits} hit / {self.cache_misses} miss")
        return ", ".join(parts) + f" in {self.elapsed:.2f}s"


@dataclass
class _FileOutcome:
    rel_path: str
    findings: List[Finding] = field(default_factory=list)
    skipped: bool = False
    error: Optional[FileError] = None
    producer_errors: List[ProducerError] = field(default_factory=list)


# ═════════════════════════════════════════════════════════════════════════
#  PART 3: SCANNER
# ═════════════════════════════════════════════════════════════════════════

class Scanner:
    """
    Runs the per-file pipeline over a project.

    Usage
    -----
    >>> scanner = Scanner(ScanOptions(root=Path("my-program")))
    >>> result = scanner.run()
    >>> for f in result.reported:
    ...     print(f)

    Construction performs every startup step and raises
    :class:`~crabshield.errors.ConfigError` on bad configuration, duplicate
    identifiers or an unreadable rule file.
    """

    def __init__(self, options: ScanOptions,
                 registry: Optional[DetectorRegistry] = None) -> None:
        self.options = options
        root = Path(options.root)
        if not root.exists():
            raise ConfigError(f"project path does not exist: {root}")
        self.target = root.resolve()
        self.root = self.target if self.target.is_dir() else enclosing_crate(self.target)

        config = discover_config(self.root, options.config_path)
        self.config: ProjectConfig = config.tightened(
            options.min_severity, options.min_confidence)

        self.rules = RuleSet()
        if options.rules_path is not None:
            self.rules = load_rules(options.rules_path)
        self.registry = registry or build_registry(self.rules.producers())

        self.only: FrozenSet[str] = frozenset(options.detectors)
        unknown = sorted(self.only - set(self.registry.ids))
        if unknown:
            raise ConfigError(f"unknown detector id(s): {', '.join(unknown)}")

        self.chainset: ChainSet = classify_project(self.root, options.chains)
        self.engine = SuppressionEngine(self.config)
        self.cache: Optional[IncrementalCache] = None
        if options.incremental:
            from crabshield import __version__
            version = compute_version(__version__, self.registry.ids, self.rules.digest)
            cache_path = options.cache_path or self.root / CACHE_FILENAME
            self.cache = IncrementalCache.load(cache_path, version)

    # ── per file ─────────────────────────────────────────────────────

    def scan_file(self, path: Path) -> _FileOutcome:
        rel = relative_path(path, self.root)
        chains = self.chainset.chains_for(path)
        if not chains:
            logger.info("Skipping %s: crate belongs to no supported chain", rel)
            return _FileOutcome(rel, skipped=True)

        try:
            data = path.read_bytes()
        except OSError as exc:
            logger.warning("Cannot read %s: %s", rel, exc)
            return _FileOutcome(rel, error=FileError(rel, "read", str(exc)))

        fingerprint = content_fingerprint(data, chains)
        if self.cache is not None:
            cached = self.cache.lookup(rel, fingerprint)
            if cached is not None:
                logger.debug("Cache hit for %s", rel)
                return _FileOutcome(rel, findings=cached)

        try:
            parsed = parse_source(rel, data)
        except ParseFailure as exc:
            logger.warning("Skipping %s: %s", rel, exc.reason)
            return _FileOutcome(rel, error=FileError(rel, "parse", exc.reason))

        functions = collect_functions(parsed.root)
        callgraph = build_callgraph(functions)
        ctx = FileContext(rel, parsed, chains, functions, callgraph)
        dispatch = self.registry.run(ctx)

        directives = collect_directives(rel, parsed.root)
        kept = self.engine.filter_intrinsic(dispatch.findings, directives, callgraph)

        if self.cache is not None and not dispatch.errors:
            self.cache.store(rel, fingerprint, chains, kept)
        return _FileOutcome(rel, findings=kept, producer_errors=dispatch.errors)

    # ── per manifest ─────────────────────────────────────────────────

    def manifests(self) -> List[Tuple[Path, FrozenSet[Chain]]]:
        """Cargo.toml of every crate with a chain, plus a virtual workspace root."""
        if not self.target.is_dir():
            return []
        found: List[Tuple[Path, FrozenSet[Chain]]] = []
        for crate in sorted(self.chainset.units):
            chains = self.chainset.chains_for(crate)
            if chains:
                found.append((crate / "Cargo.toml", chains))
        root_manifest = self.root / "Cargo.toml"
        if self.root not in self.chainset.units and root_manifest.is_file():
            if self.chainset.all_chains:
                found.append((root_manifest, self.chainset.all_chains))
        return found

    def scan_manifest(self, path: Path, chains: FrozenSet[Chain]) -> _FileOutcome:
        rel = relative_path(path, self.root)
        try:
            ctx = ManifestContext.parse(rel, path.read_text(encoding="utf-8"), chains)
        except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
            logger.warning("Cannot read manifest %s: %s", rel, exc)
            return _FileOutcome(rel, error=FileError(rel, "manifest", str(exc)))
        dispatch = self.registry.run_manifest(ctx)
        kept = self.engine.filter_intrinsic(dispatch.findings, (), None)
        return _FileOutcome(rel, findings=kept, producer_errors=dispatch.errors)

    # ── whole project ────────────────────────────────────────────────

    def _outcomes(self, files: Sequence[Path]) -> Iterator[_FileOutcome]:
        if self.options.jobs == 1 or len(files) <= 1:
            for path in files:
                yield self.scan_file(path)
            return
        executor = ThreadPoolExecutor(max_workers=self.options.jobs,
                                      thread_name_prefix="crabshield")
        try:
            yield from executor.map(self.scan_file, files)
        except BaseException:
            executor.shutdown(wait=False, cancel_futures=True)
            raise
        executor.shutdown(wait=True)

    def run(self) -> ScanResult:
        t0 = time.monotonic()
        files = discover_files(self.target)
        logger.info("Scanning %d file(s) under %s", len(files), self.root)

        result = ScanResult()
        collected: List[Finding] = []
        for outcome in self._outcomes(files):
            if outcome.skipped:
                result.skipped.append(outcome.rel_path)
                continue
            if outcome.error is not None:
                result.file_errors.append(outcome.error)
                continue
            result.files_scanned += 1
            result.producer_errors.extend(outcome.producer_errors)
            collected.extend(outcome.findings)

        for manifest, chains in self.manifests():
            outcome = self.scan_manifest(manifest, chains)
            if outcome.error is not None:
                result.file_errors.append(outcome.error)
                continue
            result.producer_errors.extend(outcome.producer_errors)
            collected.extend(outcome.findings)

        result.findings = self.aggregate(collected)
        result.suppressed = self.engine.stats

        if self.options.baseline is not None:
            result.baseline_diff = Baseline.load(self.options.baseline).diff(result.findings)
        if self.options.save_baseline is not None:
            previous = Baseline.load(self.options.save_baseline)
            Baseline.from_findings(result.findings, previous).save(self.options.save_baseline)

        if self.cache is not None:
            result.cache_hits = self.cache.hits
            result.cache_misses = self.cache.misses
            try:
                self.cache.save()
            except OSError as exc:
                logger.warning("Cannot write cache %s: %s", self.cache.path, exc)

        result.elapsed = time.monotonic() - t0
        logger.info("%s", result.summary())
        return result

    def aggregate(self, findings: Sequence[Finding]) -> List[Finding]:
        kept = self.engine.filter_config(findings)
        if self.only:
            kept = [f for f in kept if f.detector_id in self.only]
        return dedupe(sort_findings(kept))


def scan(root: Path, **kwargs) -> ScanResult:
    """Convenience wrapper: ``Scanner(ScanOptions(root, **kwargs)).run()``."""
    return Scanner(ScanOptions(root=Path(root), **kwargs)).run()
