"""
crabshield/findings.py
══════════════════════

The finding model shared by every stage of a scan.

A :class:`Finding` is produced by a detector or a declarative rule, filtered
by the suppression engine, optionally cached, fingerprinted by the baseline
differ and finally rendered by a reporter.  Findings are immutable once
created.

Ordering
────────

  Severity   : CRITICAL > HIGH > MEDIUM > LOW
  Confidence : HIGH > MEDIUM > LOW

Aggregated findings are sorted by severity (highest first), then path,
line, column and identifier, which makes the output independent of the
order in which parallel workers finish.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple


# ═════════════════════════════════════════════════════════════════════════
#  PART 1: ORDERED ENUMS
# ═════════════════════════════════════════════════════════════════════════

class Severity(Enum):
    """Impact of a finding."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @property
    def label(self) -> str:
        return self.value.capitalize()

    @classmethod
    def parse(cls, text: str) -> "Severity":
        try:
            return cls(text.strip().lower())
        except ValueError:
            choices = ", ".join(s.value for s in cls)
            raise ValueError(
                f"unknown severity '{text}' (expected one of: {choices})"
            ) from None

    def __lt__(self, other: "Severity") -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: "Severity") -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank <= other.rank


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class Confidence(Enum):
    """
    How certain we are that the finding is a true positive.

    HIGH: the construct matches the vulnerable shape with little ambiguity
    MEDIUM: the shape matches but context could make it safe
    LOW: heuristic; safety could not be determined syntactically
    """
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _CONFIDENCE_RANK[self]

    @property
    def label(self) -> str:
        return self.value.capitalize()

    @classmethod
    def parse(cls, text: str) -> "Confidence":
        try:
            return cls(text.strip().lower())
        except ValueError:
            choices = ", ".join(c.value for c in cls)
            raise ValueError(
                f"unknown confidence '{text}' (expected one of: {choices})"
            ) from None

    def __lt__(self, other: "Confidence") -> bool:
        if not isinstance(other, Confidence):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: "Confidence") -> bool:
        if not isinstance(other, Confidence):
            return NotImplemented
        return self.rank <= other.rank


_CONFIDENCE_RANK = {
    Confidence.LOW: 0,
    Confidence.MEDIUM: 1,
    Confidence.HIGH: 2,
}


class CheckCategory(Enum):
    """Security check a finding is about, used by call-graph suppression."""
    AUTHORIZATION = "authorization"
    OWNERSHIP = "ownership"
    INPUT_VALIDATION = "input_validation"


# ═════════════════════════════════════════════════════════════════════════
#  PART 2: FINDING
# ═════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Finding:
    """
    One reported potential issue.

    Attributes
    ----------
    detector_id    : Detector or rule identifier (e.g. "SOL-003")
    name           : Short kebab-case name of the vulnerability class
    severity       : Severity
    confidence     : Confidence
    file           : Project-relative POSIX path
    line, column   : 1-based start position
    message        : Human-readable description
    chain          : Ecosystem name the producing detector targets ("" = any)
    end_line       : 1-based end line of the flagged span
    snippet        : Trimmed source line at ``line``
    recommendation : Remediation text
    function       : Enclosing function name, if any
    check_category : Security check the finding is about (call-graph suppression)
    """
    detector_id: str
    name: str
    severity: Severity
    confidence: Confidence
    file: str
    line: int
    message: str
    column: int = 0
    chain: str = ""
    end_line: int = 0
    snippet: str = ""
    recommendation: str = ""
    function: Optional[str] = None
    check_category: Optional[CheckCategory] = None

    @property
    def identity(self) -> Tuple[str, str, int, int, int, str]:
        """Deduplication key: identifier, file, span and message hash."""
        digest = hashlib.sha1(self.message.encode("utf-8")).hexdigest()
        return (
            self.detector_id, self.file, self.line, self.column,
            self.end_line or self.line, digest,
        )

    @property
    def sort_key(self) -> Tuple[int, str, int, int, str, str]:
        return (
            -self.severity.rank, self.file, self.line, self.column,
            self.detector_id, self.message,
        )

    def with_file(self, file: str) -> "Finding":
        return replace(self, file=file)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the finding record used by JSON output and the cache."""
        result: Dict[str, Any] = {
            "detector_id": self.detector_id,
            "name": self.name,
            "severity": self.severity.value,
            "confidence": self.confidence.value,
            "chain": self.chain,
            "file": self.file,
            "line": self.line,
            "column": self.column,
            "end_line": self.end_line or self.line,
            "message": self.message,
            "snippet": self.snippet,
            "recommendation": self.recommendation,
            "function": self.function,
        }
        if self.check_category is not None:
            result["check_category"] = self.check_category.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Finding":
        category = data.get("check_category")
        return cls(
            detector_id=str(data["detector_id"]),
            name=str(data["name"]),
            severity=Severity(data["severity"]),
            confidence=Confidence(data["confidence"]),
            file=str(data["file"]),
            line=int(data["line"]),
            message=str(data["message"]),
            column=int(data.get("column") or 0),
            chain=str(data.get("chain") or ""),
            end_line=int(data.get("end_line") or 0),
            snippet=str(data.get("snippet") or ""),
            recommendation=str(data.get("recommendation") or ""),
            function=data.get("function"),
            check_category=CheckCategory(category) if category else None,
        )

    def __str__(self) -> str:
        loc = f"{self.file}:{self.line}"
        if self.column:
            loc += f":{self.column}"
        return (
            f"{loc}: {self.severity.value}: {self.message} "
            f"[{self.detector_id}]"
        )


# ═════════════════════════════════════════════════════════════════════════
#  PART 3: AGGREGATION HELPERS
# ═════════════════════════════════════════════════════════════════════════

def dedupe(findings: Iterable[Finding]) -> List[Finding]:
    """Drop findings whose identity was already seen, keeping first occurrence."""
    seen = set()
    out: List[Finding] = []
    for f in findings:
        key = f.identity
        if key in seen:
            continue
        seen.add(key)
        out.append(f)
    return out


def sort_findings(findings: Iterable[Finding]) -> List[Finding]:
    return sorted(findings, key=lambda f: f.sort_key)
