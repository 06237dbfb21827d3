# tests/conftest.py
"""Shared fixtures: on-disk Cargo projects and in-memory file contexts."""

import os
import sys
import textwrap
from pathlib import Path

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from crabshield.callgraph import build_callgraph
from crabshield.chains import Chain
from crabshield.detectors.base import FileContext
from crabshield.parser import parse_source
from crabshield.syntax import collect_functions


DEPENDENCIES = {
    Chain.SOLANA: 'solana-program = "1.18"',
    Chain.COSMWASM: 'cosmwasm-std = "1.5"',
    Chain.NEAR: 'near-sdk = "5.0"',
    Chain.INK: 'ink = { version = "5.0", default-features = false }',
}


def cargo_toml(name, *chains):
    deps = "\n".join(DEPENDENCIES[c] for c in chains)
    return textwrap.dedent(f"""\
        [package]
        name = "{name}"
        version = "0.1.0"
        edition = "2021"

        [dependencies]
        """) + deps + "\n"


def make_context(source, chains=(Chain.SOLANA,), path="src/lib.rs"):
    """Parse ``source`` (dedented) into a FileContext."""
    text = textwrap.dedent(source)
    parsed = parse_source(path, text.encode("utf-8"))
    functions = collect_functions(parsed.root)
    return FileContext(
        path=path,
        parsed=parsed,
        chains=frozenset(chains),
        functions=functions,
        callgraph=build_callgraph(functions),
    )


def run_detector(detector_cls, source, chains=None):
    chains = chains if chains is not None else tuple(detector_cls.chains)
    ctx = make_context(source, chains)
    return detector_cls().produce(ctx)


class ProjectBuilder:
    """Writes a small Cargo project below ``root``."""

    def __init__(self, root: Path):
        self.root = root

    def crate(self, rel_dir, name, *chains):
        crate_dir = self.root / rel_dir if rel_dir else self.root
        crate_dir.mkdir(parents=True, exist_ok=True)
        (crate_dir / "Cargo.toml").write_text(cargo_toml(name, *chains), encoding="utf-8")
        return crate_dir

    def source(self, rel_path, text):
        path = self.root / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(text), encoding="utf-8")
        return path

    def workspace(self, *members):
        quoted = ", ".join(f'"{m}"' for m in members)
        (self.root / "Cargo.toml").write_text(
            f"[workspace]\nmembers = [{quoted}]\n", encoding="utf-8")


@pytest.fixture
def project(tmp_path):
    root = tmp_path / "project"
    root.mkdir()
    return ProjectBuilder(root)


@pytest.fixture
def ctx_factory():
    return make_context
