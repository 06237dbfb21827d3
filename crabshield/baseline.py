"""
crabshield/baseline.py
══════════════════════

Baseline of accepted findings, used to report only what is new.

A fingerprint must survive edits that merely shift line numbers, so it is
built from

  - the detector or rule identifier
  - the message with digit runs replaced by ``N``
  - the project-relative path
  - an anchor: the whitespace-normalized flagged source line plus the
    enclosing function name

and never from the line or column.  Identical fingerprints are counted:
two identical findings against a baseline holding one produce one new
finding.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import tempfile
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List

from crabshield.findings import Finding

logger = logging.getLogger(__name__)

BASELINE_VERSION = 2

_DIGITS_RE = re.compile(r"\d+")
_WS_RE = re.compile(r"\s+")


def normalize_message(message: str) -> str:
    return _DIGITS_RE.sub("N", message)


def anchor(finding: Finding) -> str:
    snippet = _WS_RE.sub(" ", finding.snippet).strip()
    return f"{finding.function or ''}|{snippet}"


def fingerprint(finding: Finding) -> str:
    """Line-independent identity of ``finding``."""
    h = hashlib.sha256()
    for part in (finding.detector_id, normalize_message(finding.message),
                 finding.file, anchor(finding)):
        h.update(part.encode("utf-8"))
        h.update(b"\0")
    return h.hexdigest()


def _now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


@dataclass(frozen=True)
class BaselineRecord:
    fingerprint: str
    detector_id: str
    file: str
    message: str
    first_seen: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "fingerprint": self.fingerprint,
            "detector_id": self.detector_id,
            "file": self.file,
            "message": self.message,
            "first_seen": self.first_seen,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BaselineRecord":
        return cls(
            fingerprint=str(data["fingerprint"]),
            detector_id=str(data.get("detector_id", "")),
            file=str(data.get("file", "")),
            message=str(data.get("message", "")),
            first_seen=str(data.get("first_seen", "")),
        )


@dataclass
class BaselineDiff:
    new: List[Finding] = field(default_factory=list)
    matched: int = 0
    resolved: List[BaselineRecord] = field(default_factory=list)


class Baseline:
    """An ordered multiset of :class:`BaselineRecord`."""

    def __init__(self, records: Iterable[BaselineRecord] = ()) -> None:
        self.records: List[BaselineRecord] = list(records)

    def __len__(self) -> int:
        return len(self.records)

    def counts(self) -> Counter:
        return Counter(r.fingerprint for r in self.records)

    @classmethod
    def from_findings(cls, findings: Iterable[Finding],
                      previous: "Baseline | None" = None) -> "Baseline":
        """Records for ``findings``, keeping ``first_seen`` from ``previous``."""
        earlier: Dict[str, List[str]] = {}
        if previous is not None:
            for r in previous.records:
                earlier.setdefault(r.fingerprint, []).append(r.first_seen)
        now = _now()
        records = []
        for f in findings:
            fp = fingerprint(f)
            stamps = earlier.get(fp)
            first_seen = stamps.pop(0) if stamps else now
            records.append(BaselineRecord(fp, f.detector_id, f.file, f.message,
                                          first_seen))
        return cls(records)

    def diff(self, findings: Iterable[Finding]) -> BaselineDiff:
        """Split ``findings`` into new ones and ones already in the baseline."""
        remaining = self.counts()
        result = BaselineDiff()
        for f in findings:
            fp = fingerprint(f)
            if remaining[fp] > 0:
                remaining[fp] -= 1
                result.matched += 1
            else:
                result.new.append(f)
        for r in self.records:
            if remaining[r.fingerprint] > 0:
                remaining[r.fingerprint] -= 1
                result.resolved.append(r)
        return result

    # ── persistence ──────────────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": BASELINE_VERSION,
            "generated": _now(),
            "records": [r.to_dict() for r in self.records],
        }

    @classmethod
    def load(cls, path: Path) -> "Baseline":
        """Missing file → empty baseline; corrupt file → empty with a warning."""
        try:
            raw = Path(path).read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info("No baseline at %s; every finding is new", path)
            return cls()
        except OSError as exc:
            logger.warning("Cannot read baseline %s: %s", path, exc)
            return cls()
        try:
            data = json.loads(raw)
            if data.get("version") != BASELINE_VERSION:
                logger.warning("Baseline %s has unsupported version %r; ignoring it",
                               path, data.get("version"))
                return cls()
            return cls(BaselineRecord.from_dict(r) for r in data["records"])
        except (json.JSONDecodeError, AttributeError, KeyError, TypeError) as exc:
            logger.warning("Baseline %s is corrupt (%s); ignoring it", path, exc)
            return cls()

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=path.name + ".", suffix=".tmp",
                                   dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(self.to_dict(), fh, indent=2)
                fh.write("\n")
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        logger.info("Saved %d baseline records to %s", len(self.records), path)
