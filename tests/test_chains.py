# tests/test_chains.py
"""Chain classification from Cargo manifests."""

from pathlib import Path

from crabshield.chains import (
    ALL_CHAINS,
    Chain,
    ChainSet,
    classify_project,
    detect_chains,
    load_manifest,
)


class TestDetectChains:

    def test_single_signature(self):
        manifest = {"dependencies": {"anchor-lang": "0.30"}}
        assert detect_chains(manifest) == frozenset({Chain.SOLANA})

    def test_no_signature(self):
        assert detect_chains({"dependencies": {"serde": "1"}}) == frozenset()

    def test_multiple_chains(self):
        manifest = {"dependencies": {"near-sdk": "5", "cosmwasm-std": "1.5"}}
        assert detect_chains(manifest) == frozenset({Chain.NEAR, Chain.COSMWASM})

    def test_dev_dependencies_count(self):
        manifest = {"dev-dependencies": {"ink": "5"}}
        assert Chain.INK in detect_chains(manifest)

    def test_renamed_dependency(self):
        manifest = {"dependencies": {"sdk": {"package": "solana-program", "version": "1"}}}
        assert detect_chains(manifest) == frozenset({Chain.SOLANA})


class TestChainAliases:

    def test_loose_names(self):
        assert Chain.from_str_loose("sol") is Chain.SOLANA
        assert Chain.from_str_loose("CW") is Chain.COSMWASM
        assert Chain.from_str_loose("ink!") is Chain.INK
        assert Chain.from_str_loose("ethereum") is None

    def test_display_name(self):
        assert Chain.INK.display_name == "ink!"


class TestLoadManifest:

    def test_invalid_toml_returns_none(self, tmp_path):
        bad = tmp_path / "Cargo.toml"
        bad.write_text("[package\nname = ", encoding="utf-8")
        assert load_manifest(bad) is None


class TestClassifyProject:

    def test_single_crate(self, project):
        project.crate("", "vault", Chain.SOLANA)
        chainset = classify_project(project.root)
        src = (project.root / "src" / "lib.rs").resolve()
        assert chainset.chains_for(src) == frozenset({Chain.SOLANA})

    def test_workspace_members_are_independent(self, project):
        project.workspace("programs/*", "contracts/cw")
        project.crate("programs/vault", "vault", Chain.SOLANA)
        project.crate("contracts/cw", "cw", Chain.COSMWASM)
        chainset = classify_project(project.root)
        root = project.root.resolve()
        assert chainset.chains_for(root / "programs/vault/src/lib.rs") == {Chain.SOLANA}
        assert chainset.chains_for(root / "contracts/cw/src/contract.rs") == {Chain.COSMWASM}
        assert chainset.all_chains == frozenset({Chain.SOLANA, Chain.COSMWASM})

    def test_unclassified_crate_has_no_chains(self, project):
        project.crate("", "plain")
        chainset = classify_project(project.root)
        assert chainset.chains_for(project.root.resolve() / "src/main.rs") == frozenset()

    def test_nested_manifests_without_root(self, project):
        project.crate("near-app", "near_app", Chain.NEAR)
        project.crate("target/debug/junk", "junk", Chain.SOLANA)
        chainset = classify_project(project.root)
        crates = {p.name for p in chainset.units}
        assert crates == {"near-app"}

    def test_override_replaces_everything(self, project):
        project.crate("", "plain")
        chainset = classify_project(project.root, override=[Chain.INK])
        assert chainset.chains_for(project.root / "src/lib.rs") == frozenset({Chain.INK})
        assert chainset.all_chains == frozenset({Chain.INK})

    def test_deterministic(self, project):
        project.workspace("a", "b")
        project.crate("a", "a", Chain.NEAR)
        project.crate("b", "b", Chain.INK)
        assert classify_project(project.root) == classify_project(project.root)


class TestChainSet:

    def test_nearest_crate_wins(self):
        outer = Path("/repo")
        inner = Path("/repo/programs/vault")
        cs = ChainSet(units={outer: frozenset({Chain.NEAR}),
                             inner: frozenset({Chain.SOLANA})})
        assert cs.chains_for(Path("/repo/programs/vault/src/lib.rs")) == {Chain.SOLANA}
        assert cs.chains_for(Path("/repo/src/lib.rs")) == {Chain.NEAR}
        assert cs.chains_for(Path("/elsewhere/lib.rs")) == frozenset()

    def test_all_chains_constant(self):
        assert len(ALL_CHAINS) == 4
