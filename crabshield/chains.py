"""
crabshield/chains.py
════════════════════

Chain (ecosystem) classification from Cargo manifests.

Each compilation unit (crate) is assigned the set of chains whose
signature dependencies it declares.  Workspaces are expanded member by
member, so a repository holding a Solana program next to a CosmWasm
contract gets two independent classifications and neither crate is ever
scanned with the other's detectors.

The resulting :class:`ChainSet` is computed once before workers start and
is read-only afterwards.
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional

logger = logging.getLogger(__name__)


class Chain(Enum):
    SOLANA = "solana"
    COSMWASM = "cosmwasm"
    NEAR = "near"
    INK = "ink"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @classmethod
    def from_str_loose(cls, text: str) -> Optional["Chain"]:
        """Resolve user input such as ``"sol"``, ``"cw"`` or ``"ink!"``."""
        return _ALIASES.get(text.strip().lower())


_DISPLAY_NAMES = {
    Chain.SOLANA: "Solana",
    Chain.COSMWASM: "CosmWasm",
    Chain.NEAR: "NEAR",
    Chain.INK: "ink!",
}

_ALIASES = {
    "solana": Chain.SOLANA,
    "sol": Chain.SOLANA,
    "cosmwasm": Chain.COSMWASM,
    "cw": Chain.COSMWASM,
    "cosmos": Chain.COSMWASM,
    "near": Chain.NEAR,
    "ink": Chain.INK,
    "ink!": Chain.INK,
    "polkadot": Chain.INK,
}

ALL_CHAINS: FrozenSet[Chain] = frozenset(Chain)

# Dependency names that identify each ecosystem.
CHAIN_SIGNATURES: Mapping[Chain, FrozenSet[str]] = {
    Chain.SOLANA: frozenset({
        "anchor-lang", "anchor-spl", "solana-program", "solana-sdk",
    }),
    Chain.COSMWASM: frozenset({
        "cosmwasm-std", "cosmwasm-storage", "cw-storage-plus", "sylvia",
    }),
    Chain.NEAR: frozenset({
        "near-sdk", "near-contract-standards",
    }),
    Chain.INK: frozenset({
        "ink", "ink_lang", "ink_storage", "ink_env",
    }),
}

_DEPENDENCY_TABLES = ("dependencies", "dev-dependencies")

_SKIP_DIRS = frozenset({"target", ".git", "node_modules"})


# ═════════════════════════════════════════════════════════════════════════
#  PART 1: MANIFEST CLASSIFICATION
# ═════════════════════════════════════════════════════════════════════════

def _dependency_names(manifest: Mapping[str, Any]) -> List[str]:
    """Collect declared dependency names, honouring ``package = "..."`` renames."""
    names: List[str] = []
    tables: List[Mapping[str, Any]] = []
    for key in _DEPENDENCY_TABLES:
        table = manifest.get(key)
        if isinstance(table, dict):
            tables.append(table)
    workspace = manifest.get("workspace")
    if isinstance(workspace, dict) and isinstance(workspace.get("dependencies"), dict):
        tables.append(workspace["dependencies"])

    for table in tables:
        for dep_name, spec in table.items():
            names.append(dep_name)
            if isinstance(spec, dict) and isinstance(spec.get("package"), str):
                names.append(spec["package"])
    return names


def detect_chains(manifest: Mapping[str, Any]) -> FrozenSet[Chain]:
    """Return the chains whose signature dependencies appear in ``manifest``."""
    deps = {name.strip() for name in _dependency_names(manifest)}
    found = set()
    for chain, signatures in CHAIN_SIGNATURES.items():
        if deps & signatures:
            found.add(chain)
    return frozenset(found)


def load_manifest(path: Path) -> Optional[Dict[str, Any]]:
    """Read a Cargo.toml; unreadable or malformed manifests yield ``None``."""
    try:
        with open(path, "rb") as fh:
            return tomllib.load(fh)
    except (OSError, tomllib.TOMLDecodeError) as exc:
        logger.warning("Cannot read manifest %s: %s", path, exc)
        return None


# ═════════════════════════════════════════════════════════════════════════
#  PART 2: CHAIN SET
# ═════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ChainSet:
    """
    Mapping from crate directory to the chains it belongs to.

    ``override`` (from ``--chain``) replaces every unit's classification.
    A file outside every known crate belongs to no chain.
    """
    units: Mapping[Path, FrozenSet[Chain]] = field(default_factory=dict)
    override: Optional[FrozenSet[Chain]] = None

    def chains_for(self, path: Path) -> FrozenSet[Chain]:
        if self.override is not None:
            return self.override
        crate = self.crate_for(path)
        if crate is None:
            return frozenset()
        return self.units[crate]

    def crate_for(self, path: Path) -> Optional[Path]:
        """Nearest crate directory that contains ``path``."""
        best: Optional[Path] = None
        for crate in self.units:
            if path == crate or crate in path.parents:
                if best is None or len(crate.parts) > len(best.parts):
                    best = crate
        return best

    @property
    def all_chains(self) -> FrozenSet[Chain]:
        if self.override is not None:
            return self.override
        out: FrozenSet[Chain] = frozenset()
        for chains in self.units.values():
            out = out | chains
        return out


def _expand_members(root: Path, members: Iterable[Any]) -> List[Path]:
    found: List[Path] = []
    for member in members:
        if not isinstance(member, str):
            continue
        if any(ch in member for ch in "*?["):
            candidates = sorted(root.glob(member))
        else:
            candidates = [root / member]
        for candidate in candidates:
            if (candidate / "Cargo.toml").is_file():
                found.append(candidate.resolve())
    return found


def _find_nested_manifests(root: Path) -> List[Path]:
    crates: List[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            d for d in dirnames if d not in _SKIP_DIRS and not d.startswith(".")
        )
        if "Cargo.toml" in filenames:
            crates.append(Path(dirpath).resolve())
    return crates


def classify_project(
    root: Path,
    override: Optional[Iterable[Chain]] = None,
) -> ChainSet:
    """Classify every compilation unit below ``root``.

    Root manifest with ``[workspace] members`` → each member is a unit (glob
    patterns expanded); a root ``[package]`` is a unit too.  A root manifest
    with neither is treated as a single crate.  Without a root manifest,
    every nested Cargo.toml (outside ``target/``) is a unit.
    """
    root = root.resolve()
    units: Dict[Path, FrozenSet[Chain]] = {}
    root_manifest_path = root / "Cargo.toml"

    if root_manifest_path.is_file():
        manifest = load_manifest(root_manifest_path) or {}
        workspace = manifest.get("workspace")
        members: List[Path] = []
        if isinstance(workspace, dict):
            members = _expand_members(root, workspace.get("members") or [])
        for member in members:
            member_manifest = load_manifest(member / "Cargo.toml") or {}
            units[member] = detect_chains(member_manifest)
        if "package" in manifest or not members:
            units[root] = detect_chains(manifest)
    else:
        for crate in _find_nested_manifests(root):
            units[crate] = detect_chains(load_manifest(crate / "Cargo.toml") or {})

    for crate, chains in sorted(units.items()):
        logger.info(
            "Crate %s: %s", crate,
            ", ".join(sorted(c.display_name for c in chains)) or "no chain",
        )

    return ChainSet(
        units=units,
        override=frozenset(override) if override is not None else None,
    )
