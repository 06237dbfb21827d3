# crabshield/errors.py
"""
Error types raised and recorded by the scanner.

Hierarchy
─────────
┌──────────────────────────────────────────────────────────────────┐
│  CrabshieldError (base)                                          │
│  ├── ConfigError            - fatal at startup, scan never runs  │
│  │   ├── DuplicateDetectorError                                  │
│  │   └── RuleFileError                                           │
│  ├── ParseFailure           - one file; scan continues           │
│  └── PatternError           - one structural rule; rule skipped  │
└──────────────────────────────────────────────────────────────────┘

Per-file and per-producer problems do not propagate: the scanner records
them as :class:`FileError` / :class:`ProducerError` and keeps going.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


class CrabshieldError(Exception):
    """Base exception for all crabshield errors."""
    pass


class ConfigError(CrabshieldError):
    """Malformed configuration; reported once, the scan does not proceed."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        self.path = path
        if path:
            message = f"{path}: {message}"
        super().__init__(message)


class DuplicateDetectorError(ConfigError):
    """Two finding producers registered under the same identifier."""

    def __init__(self, detector_id: str) -> None:
        self.detector_id = detector_id
        super().__init__(f"duplicate detector identifier '{detector_id}'")


class RuleFileError(ConfigError):
    """The rule file as a whole is unreadable or structurally invalid."""
    pass


class ParseFailure(CrabshieldError):
    """A source file could not be parsed into a syntax tree."""

    def __init__(self, path: str, reason: str) -> None:
        self.file_path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}")


class PatternError(CrabshieldError):
    """A structural pattern is malformed."""
    pass


@dataclass(frozen=True)
class FileError:
    """A recoverable, file-scoped failure (read or parse)."""
    path: str
    stage: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.stage}: {self.message}"


@dataclass(frozen=True)
class ProducerError:
    """A detector or rule raised while scanning one file."""
    path: str
    producer_id: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.producer_id} failed: {self.message}"
