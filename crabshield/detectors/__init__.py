"""
crabshield.detectors
====================

Built-in detector library and registry construction.

Typical usage::

    from crabshield.detectors import build_registry

    registry = build_registry(extra=rules)   # rules: List[RuleProducer]
    result = registry.run(ctx)
"""

from __future__ import annotations

from typing import Iterable, List

from crabshield.detectors.base import (
    Detector,
    DetectorRegistry,
    DispatchResult,
    FileContext,
    FindingProducer,
    ManifestContext,
    ManifestDetector,
)
from crabshield.detectors.cosmwasm import COSMWASM_DETECTORS
from crabshield.detectors.dependencies import DEPENDENCY_DETECTORS
from crabshield.detectors.ink import INK_DETECTORS
from crabshield.detectors.near import NEAR_DETECTORS
from crabshield.detectors.solana import SOLANA_DETECTORS

BUILTIN_DETECTORS: List[type] = (
    SOLANA_DETECTORS + COSMWASM_DETECTORS + NEAR_DETECTORS + INK_DETECTORS
    + DEPENDENCY_DETECTORS
)


def builtin_detectors() -> List[FindingProducer]:
    """Fresh instances of every built-in detector."""
    return [cls() for cls in BUILTIN_DETECTORS]


def build_registry(extra: Iterable[FindingProducer] = ()) -> DetectorRegistry:
    """Registry of built-ins plus ``extra`` producers (e.g. rules), frozen.

    Raises
    ------
    DuplicateDetectorError
        If two producers share an identifier.
    """
    registry = DetectorRegistry(builtin_detectors())
    for producer in extra:
        registry.register(producer)
    return registry.freeze()


__all__ = [
    "BUILTIN_DETECTORS",
    "Detector",
    "DetectorRegistry",
    "DispatchResult",
    "FileContext",
    "FindingProducer",
    "ManifestContext",
    "ManifestDetector",
    "build_registry",
    "builtin_detectors",
]
