"""
crabshield: Static security analysis for Rust smart contracts
==============================================================

Scans Rust sources of Solana, CosmWasm, NEAR and ink! programs for known
vulnerability shapes and reports findings with severity and confidence.

Core modules
------------
chains
    Ecosystem classification from Cargo manifests.
parser, syntax
    tree-sitter parsing and the per-file function inventory.
callgraph
    Intra-file call graph and security-check sites.
detectors
    Built-in detectors and the producer registry.
rules, patterns
    Declarative TOML rules and the structural pattern language.
suppression, directives, config
    Inline, call-graph and project-level suppression.
cache, baseline
    Incremental re-scans and baseline diffing.
scanner, report, cli
    The scan pipeline, output formats and command line.

Quick start
-----------
>>> from crabshield import scan
>>> result = scan("programs/vault")
>>> for finding in result.reported:
...     print(finding)
"""

from __future__ import annotations

__version__ = "0.1.0"

from crabshield.chains import Chain, ChainSet, classify_project
from crabshield.errors import (
    ConfigError,
    CrabshieldError,
    DuplicateDetectorError,
    ParseFailure,
    PatternError,
    RuleFileError,
)
from crabshield.findings import CheckCategory, Confidence, Finding, Severity
from crabshield.scanner import ScanOptions, ScanResult, Scanner, scan

__all__ = [
    "__version__",
    "Chain",
    "ChainSet",
    "CheckCategory",
    "Confidence",
    "ConfigError",
    "CrabshieldError",
    "DuplicateDetectorError",
    "Finding",
    "ParseFailure",
    "PatternError",
    "RuleFileError",
    "ScanOptions",
    "ScanResult",
    "Scanner",
    "Severity",
    "classify_project",
    "scan",
]
