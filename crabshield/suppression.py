"""
crabshield/suppression.py
═════════════════════════

Three-stage finding filter.

  ┌──────────────┐    ┌──────────────┐    ┌──────────────┐
  │ 1. inline    │ →  │ 2. callgraph │ →  │ 3. config    │
  │  directives  │    │  (one hop)   │    │  ignore/min  │
  └──────────────┘    └──────────────┘    └──────────────┘

Stages 1 and 2 depend only on the file itself and run inside the worker,
before the result is cached.  Stage 3 depends on the project configuration
and runs at aggregation time, so a configuration change never invalidates
the cache.

Every stage is a pure filter.  The surviving set is the same whatever the
order; the order only decides which stage is credited with a drop.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from crabshield.callgraph import CallGraph
from crabshield.config import ProjectConfig
from crabshield.directives import SuppressionDirective, index_by_line
from crabshield.findings import Finding

logger = logging.getLogger(__name__)


@dataclass
class SuppressionStats:
    """Per-stage drop counters."""
    inline: int = 0
    callgraph: int = 0
    config: int = 0

    @property
    def total(self) -> int:
        return self.inline + self.callgraph + self.config

    def merge(self, other: "SuppressionStats") -> None:
        self.inline += other.inline
        self.callgraph += other.callgraph
        self.config += other.config

    def to_dict(self) -> Dict[str, int]:
        return {"inline": self.inline, "callgraph": self.callgraph,
                "config": self.config}


def suppressed_inline(finding: Finding,
                      by_line: Dict[int, List[SuppressionDirective]]) -> bool:
    return any(d.matches(finding.detector_id) for d in by_line.get(finding.line, ()))


def suppressed_by_callers(finding: Finding, callgraph: Optional[CallGraph]) -> bool:
    if callgraph is None or finding.check_category is None or not finding.function:
        return False
    return callgraph.every_caller_checks(finding.function, finding.check_category)


def suppressed_by_config(finding: Finding, config: ProjectConfig) -> bool:
    return (config.is_ignored_id(finding.detector_id)
            or config.is_ignored_file(finding.file)
            or config.below_threshold(finding))


class SuppressionEngine:
    """
    Applies the suppression stages and keeps drop counters.

    One engine is shared by all workers; counters are guarded by a lock.
    """

    def __init__(self, config: Optional[ProjectConfig] = None) -> None:
        self.config = config or ProjectConfig()
        self.stats = SuppressionStats()
        self._lock = threading.Lock()

    def filter_intrinsic(
        self,
        findings: Iterable[Finding],
        directives: Sequence[SuppressionDirective],
        callgraph: Optional[CallGraph],
    ) -> List[Finding]:
        """Stages 1 and 2: inline directives, then call-graph checks."""
        by_line = index_by_line(directives)
        local = SuppressionStats()
        kept: List[Finding] = []
        for f in findings:
            if suppressed_inline(f, by_line):
                local.inline += 1
                logger.debug("inline directive drops %s at %s:%d",
                             f.detector_id, f.file, f.line)
                continue
            if suppressed_by_callers(f, callgraph):
                local.callgraph += 1
                logger.debug("every caller of %s checks %s; dropping %s",
                             f.function, f.check_category.value, f.detector_id)
                continue
            kept.append(f)
        with self._lock:
            self.stats.merge(local)
        return kept

    def filter_config(self, findings: Iterable[Finding]) -> List[Finding]:
        """Stage 3: project configuration."""
        kept: List[Finding] = []
        dropped = 0
        for f in findings:
            if suppressed_by_config(f, self.config):
                dropped += 1
                continue
            kept.append(f)
        with self._lock:
            self.stats.config += dropped
        return kept

    def apply(
        self,
        findings: Iterable[Finding],
        directives: Sequence[SuppressionDirective] = (),
        callgraph: Optional[CallGraph] = None,
    ) -> List[Finding]:
        """All three stages."""
        return self.filter_config(self.filter_intrinsic(findings, directives, callgraph))
