"""
crabshield/config.py
════════════════════

Project configuration read from ``.crabshield.toml``.

    ignore         = ["SOL-020", "CUSTOM-001"]   # identifiers suppressed project-wide
    ignore_files   = ["**/generated/*.rs"]      # project-relative globs
    min_severity   = "medium"
    min_confidence = "low"

A missing file means defaults.  A file that is not valid TOML, or a key of
the wrong type, is a :class:`~crabshield.errors.ConfigError`.
"""

from __future__ import annotations

import fnmatch
import logging
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, FrozenSet, Mapping, Optional, Tuple

from crabshield.errors import ConfigError
from crabshield.findings import Confidence, Finding, Severity

logger = logging.getLogger(__name__)

CONFIG_FILENAME = ".crabshield.toml"

_KNOWN_KEYS = frozenset({"ignore", "ignore_files", "min_severity", "min_confidence"})


@dataclass(frozen=True)
class ProjectConfig:
    ignore: FrozenSet[str] = frozenset()
    ignore_files: Tuple[str, ...] = ()
    min_severity: Optional[Severity] = None
    min_confidence: Optional[Confidence] = None

    # ── filters ──────────────────────────────────────────────────────

    def is_ignored_id(self, detector_id: str) -> bool:
        return detector_id in self.ignore

    def is_ignored_file(self, rel_path: str) -> bool:
        return any(glob_match(rel_path, pattern) for pattern in self.ignore_files)

    def below_threshold(self, finding: Finding) -> bool:
        if self.min_severity is not None and finding.severity < self.min_severity:
            return True
        if self.min_confidence is not None and finding.confidence < self.min_confidence:
            return True
        return False

    def tightened(
        self,
        min_severity: Optional[Severity] = None,
        min_confidence: Optional[Confidence] = None,
    ) -> "ProjectConfig":
        """Copy with the stricter of the configured and given minimums."""
        sev = self.min_severity
        if min_severity is not None and (sev is None or sev < min_severity):
            sev = min_severity
        conf = self.min_confidence
        if min_confidence is not None and (conf is None or conf < min_confidence):
            conf = min_confidence
        return replace(self, min_severity=sev, min_confidence=conf)


def glob_match(rel_path: str, pattern: str) -> bool:
    """fnmatch on a POSIX relative path; a leading ``**/`` also matches at the root."""
    rel_path = rel_path.replace("\\", "/")
    if fnmatch.fnmatch(rel_path, pattern):
        return True
    if pattern.startswith("**/") and fnmatch.fnmatch(rel_path, pattern[3:]):
        return True
    return False


def _string_list(data: Mapping[str, Any], key: str, path: str) -> Tuple[str, ...]:
    value = data.get(key, [])
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"'{key}' must be a list of strings", path=path)
    return tuple(value)


def parse_config(data: Mapping[str, Any], path: str = CONFIG_FILENAME) -> ProjectConfig:
    unknown = set(data) - _KNOWN_KEYS
    if unknown:
        logger.warning("%s: ignoring unknown keys %s", path, ", ".join(sorted(unknown)))

    min_severity = min_confidence = None
    try:
        if data.get("min_severity") is not None:
            min_severity = Severity.parse(str(data["min_severity"]))
        if data.get("min_confidence") is not None:
            min_confidence = Confidence.parse(str(data["min_confidence"]))
    except ValueError as exc:
        raise ConfigError(str(exc), path=path) from exc

    return ProjectConfig(
        ignore=frozenset(_string_list(data, "ignore", path)),
        ignore_files=_string_list(data, "ignore_files", path),
        min_severity=min_severity,
        min_confidence=min_confidence,
    )


def load_config(path: Path) -> ProjectConfig:
    """Load an explicit configuration file.

    Raises
    ------
    ConfigError
        Unreadable file, invalid TOML or invalid values.
    """
    try:
        with open(path, "rb") as fh:
            data = tomllib.load(fh)
    except OSError as exc:
        raise ConfigError(f"cannot read configuration: {exc}", path=str(path)) from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"invalid TOML: {exc}", path=str(path)) from exc
    config = parse_config(data, str(path))
    logger.info("Loaded configuration from %s", path)
    return config


def discover_config(root: Path, explicit: Optional[Path] = None) -> ProjectConfig:
    """``explicit`` if given, else ``<root>/.crabshield.toml`` if present, else defaults."""
    if explicit is not None:
        return load_config(explicit)
    candidate = root / CONFIG_FILENAME
    if candidate.is_file():
        return load_config(candidate)
    return ProjectConfig()
