"""
crabshield/cache.py
═══════════════════

Incremental scan cache.

File format (JSON)::

    {
      "version": "<stamp>",
      "schema": 2,
      "entries": {
        "src/lib.rs": {
          "fingerprint": "<sha256 of content + chain set>",
          "chains": ["solana"],
          "findings": [ {finding record}, ... ]
        }
      }
    }

``version`` is derived from the package version, the registered producer
identifiers and the rule-file digest; any difference empties the cache.
Cached findings are the output of the file-intrinsic suppression stages
(inline directives, call graph).

Lookups are lock-free reads of a dict populated before workers start.
Stores go through a lock.  :meth:`IncrementalCache.save` writes a temporary
file in the same directory and renames it over the old one, so a crash
never leaves a partial cache behind.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from crabshield.chains import Chain
from crabshield.findings import Finding

logger = logging.getLogger(__name__)

CACHE_FILENAME = ".crabshield.cache.json"
CACHE_SCHEMA = 2


def content_fingerprint(data: bytes, chains: FrozenSet[Chain]) -> str:
    h = hashlib.sha256(data)
    h.update(b"\0")
    h.update(",".join(sorted(c.value for c in chains)).encode("ascii"))
    return h.hexdigest()


def compute_version(package_version: str, producer_ids: Iterable[str],
                    rules_digest: str = "") -> str:
    h = hashlib.sha256()
    h.update(package_version.encode("utf-8"))
    for pid in sorted(producer_ids):
        h.update(b"\0" + pid.encode("utf-8"))
    h.update(b"\0" + rules_digest.encode("utf-8"))
    return f"{package_version}+{h.hexdigest()[:16]}"


@dataclass
class CacheEntry:
    fingerprint: str
    chains: List[str]
    findings: List[Finding]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "chains": list(self.chains),
            "findings": [f.to_dict() for f in self.findings],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        return cls(
            fingerprint=str(data["fingerprint"]),
            chains=[str(c) for c in data.get("chains", [])],
            findings=[Finding.from_dict(f) for f in data["findings"]],
        )


class IncrementalCache:
    """
    Per-file findings keyed by content fingerprint.

    Usage
    -----
    >>> cache = IncrementalCache.load(path, version)
    >>> hit = cache.lookup("src/lib.rs", fingerprint)
    >>> cache.store("src/lib.rs", fingerprint, chains, findings)
    >>> cache.save()
    """

    def __init__(self, path: Path, version: str) -> None:
        self.path = Path(path)
        self.version = version
        self._entries: Dict[str, CacheEntry] = {}
        self._touched: set = set()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    # ── loading ──────────────────────────────────────────────────────

    @classmethod
    def load(cls, path: Path, version: str) -> "IncrementalCache":
        """Read ``path``; absent, unreadable or stale files yield an empty cache."""
        cache = cls(path, version)
        try:
            raw = Path(path).read_text(encoding="utf-8")
        except FileNotFoundError:
            return cache
        except OSError as exc:
            logger.warning("Cannot read cache %s: %s", path, exc)
            return cache
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("Cache %s is corrupt (%s); starting fresh", path, exc)
            return cache
        if not isinstance(data, dict) or data.get("schema") != CACHE_SCHEMA \
                or data.get("version") != version:
            logger.info("Cache %s was written by a different version; ignoring it", path)
            return cache
        entries = data.get("entries")
        if not isinstance(entries, dict):
            logger.warning("Cache %s has no entry table; starting fresh", path)
            return cache
        for rel, raw_entry in entries.items():
            try:
                cache._entries[rel] = CacheEntry.from_dict(raw_entry)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Dropping corrupt cache entry for %s: %s", rel, exc)
        logger.info("Loaded %d cache entries from %s", len(cache._entries), path)
        return cache

    # ── access ───────────────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, rel_path: str) -> bool:
        return rel_path in self._entries

    def lookup(self, rel_path: str, fingerprint: str) -> Optional[List[Finding]]:
        """Cached findings when the stored fingerprint matches exactly."""
        entry = self._entries.get(rel_path)
        with self._lock:
            self._touched.add(rel_path)
            if entry is None or entry.fingerprint != fingerprint:
                self.misses += 1
                return None
            self.hits += 1
        return list(entry.findings)

    def store(self, rel_path: str, fingerprint: str, chains: FrozenSet[Chain],
              findings: Iterable[Finding]) -> None:
        entry = CacheEntry(
            fingerprint=fingerprint,
            chains=sorted(c.value for c in chains),
            findings=list(findings),
        )
        with self._lock:
            self._entries[rel_path] = entry
            self._touched.add(rel_path)

    # ── persistence ──────────────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            keep = self._touched or set(self._entries)
            entries = {
                rel: self._entries[rel].to_dict()
                for rel in sorted(keep) if rel in self._entries
            }
        return {"version": self.version, "schema": CACHE_SCHEMA, "entries": entries}

    def save(self) -> None:
        """Atomically replace the cache file; only files seen this scan are kept."""
        payload = json.dumps(self.to_dict(), indent=1, sort_keys=True)
        directory = self.path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=self.path.name + ".", suffix=".tmp",
                                   dir=str(directory))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        logger.info("Wrote %d cache entries to %s", len(self._entries), self.path)
