# tests/test_scanner.py
"""End-to-end scans over on-disk Cargo projects."""

import textwrap

import pytest

from crabshield.cache import CACHE_FILENAME
from crabshield.chains import Chain
from crabshield.config import CONFIG_FILENAME
from crabshield.detectors.base import DetectorRegistry, FindingProducer
from crabshield.detectors.solana import IntegerOverflowDetector
from crabshield.errors import ConfigError
from crabshield.scanner import (
    ScanOptions,
    Scanner,
    discover_files,
    is_skipped_file,
    scan,
)


WITHDRAW = """\
    use solana_program::account_info::AccountInfo;

    pub fn withdraw(balance: u64, amount: u64) -> u64 {
        balance - amount
    }
"""

WITHDRAW_CHECKED = """\
    use solana_program::account_info::AccountInfo;

    pub fn withdraw(balance: u64, amount: u64) -> u64 {
        balance.saturating_sub(amount)
    }
"""

GUARDED_HELPER = """\
    use solana_program::account_info::AccountInfo;

    fn apply_fee(balance: u64, fee: u64) -> u64 {
        balance - fee
    }

    pub fn charge(balance: u64, fee: u64) -> u64 {
        assert!(fee <= balance);
        apply_fee(balance, fee)
    }
"""

SECOND_CALLER = """\

    pub fn charge_unchecked(balance: u64, fee: u64) -> u64 {
        apply_fee(balance, fee)
    }
"""

RULES = """\
    [[rules]]
    id = "CUSTOM-001"
    name = "balance-subtraction"
    severity = "high"
    confidence = "medium"
    pattern = "balance - "
    message = "raw balance subtraction"
"""


def _solana_project(project, source=WITHDRAW):
    project.crate("", "vault", Chain.SOLANA)
    project.source("src/lib.rs", source)
    return project


class _Boom(FindingProducer):
    id = "BOOM-001"
    name = "boom"

    def produce(self, ctx):
        raise RuntimeError("detector bug")


class TestDiscovery:

    def test_skips_build_and_test_trees(self, project):
        project.source("src/lib.rs", "fn a() {}\n")
        project.source("src/util_test.rs", "fn a() {}\n")
        project.source("src/tests.rs", "fn a() {}\n")
        project.source("tests/it.rs", "fn a() {}\n")
        project.source("target/debug/build.rs", "fn a() {}\n")
        project.source(".git/hooks.rs", "fn a() {}\n")
        project.source("README.md", "docs\n")
        files = discover_files(project.root)
        assert [p.relative_to(project.root).as_posix() for p in files] == ["src/lib.rs"]

    def test_skipped_names(self):
        assert is_skipped_file("lib_test.rs")
        assert is_skipped_file("Cargo.toml")
        assert not is_skipped_file("lib.rs")


class TestScenarios:

    def test_unchecked_subtraction(self, project):
        _solana_project(project)
        result = scan(project.root)
        assert [(f.detector_id, f.file, f.line) for f in result.reported] == [
            ("SOL-003", "src/lib.rs", 4)]

    def test_checked_subtraction(self, project):
        _solana_project(project, WITHDRAW_CHECKED)
        assert scan(project.root).reported == []

    def test_guarded_helper_is_suppressed(self, project):
        _solana_project(project, GUARDED_HELPER)
        result = scan(project.root)
        assert result.reported == []
        assert result.suppressed.callgraph == 1

    def test_second_unguarded_caller_restores_finding(self, project):
        _solana_project(project, GUARDED_HELPER + SECOND_CALLER)
        result = scan(project.root)
        assert [(f.detector_id, f.function) for f in result.reported] == [
            ("SOL-003", "apply_fee")]

    def test_inline_directives(self, project, tmp_path):
        _solana_project(project, """\
            use solana_program::account_info::AccountInfo;

            pub fn a(balance: u64, amount: u64) -> u64 {
                balance - amount // crabshield-ignore
            }

            pub fn b(balance: u64, amount: u64) -> u64 {
                balance - amount // crabshield-ignore[SOL-003]
            }
        """)
        rules = tmp_path / "rules.toml"
        rules.write_text(textwrap.dedent(RULES), encoding="utf-8")
        result = scan(project.root, rules_path=rules)
        assert [(f.detector_id, f.line) for f in result.reported] == [("CUSTOM-001", 8)]
        assert result.suppressed.inline == 3

    def test_baseline_round_trip(self, project, tmp_path):
        _solana_project(project)
        baseline = tmp_path / "baseline.json"
        first = scan(project.root, save_baseline=baseline)
        assert len(first.findings) == 1

        again = scan(project.root, baseline=baseline)
        assert again.reported == []
        assert again.baseline_diff.matched == 1

        project.source("src/lib.rs", WITHDRAW + """\

            pub fn scale(a: u64, b: u64) -> u64 {
                a * b
            }
        """)
        changed = scan(project.root, baseline=baseline)
        assert [f.function for f in changed.reported] == ["scale"]
        assert len(changed.findings) == 2


class TestProjectShapes:

    def test_chains_are_isolated_per_crate(self, project):
        project.workspace("programs/vault", "contracts/market")
        project.crate("programs/vault", "vault", Chain.SOLANA)
        project.crate("contracts/market", "market", Chain.NEAR)
        project.source("programs/vault/src/lib.rs", WITHDRAW)
        project.source("contracts/market/src/lib.rs", """\
            pub fn withdraw(balance: u64, amount: u64) -> u64 {
                balance - amount
            }
        """)
        result = scan(project.root)
        assert [(f.detector_id, f.file) for f in result.reported] == [
            ("SOL-003", "programs/vault/src/lib.rs")]
        assert result.files_scanned == 2

    def test_chain_override(self, project):
        project.crate("", "plain")
        project.source("src/lib.rs", WITHDRAW)
        assert scan(project.root).skipped == ["src/lib.rs"]
        result = scan(project.root, chains=frozenset({Chain.SOLANA}))
        assert [f.detector_id for f in result.reported] == ["SOL-003"]

    def test_parse_failure_is_isolated(self, project):
        _solana_project(project)
        project.source("src/broken.rs", "fn broken( {\n")
        result = scan(project.root)
        assert [(e.path, e.stage) for e in result.file_errors] == [("src/broken.rs", "parse")]
        assert result.files_scanned == 1
        assert len(result.reported) == 1

    def test_single_file_target(self, project):
        _solana_project(project)
        result = scan(project.root / "src" / "lib.rs")
        assert [f.file for f in result.reported] == ["src/lib.rs"]

    def test_missing_path(self, tmp_path):
        with pytest.raises(ConfigError):
            Scanner(ScanOptions(root=tmp_path / "nope"))


class TestManifests:

    def test_outdated_sdk_in_crate_manifest(self, project):
        _solana_project(project, WITHDRAW_CHECKED)
        (project.root / "Cargo.toml").write_text(textwrap.dedent("""\
            [package]
            name = "vault"
            version = "0.1.0"

            [dependencies]
            solana-program = "1.14.0"
            serde_derive = "1"
        """), encoding="utf-8")
        result = scan(project.root)
        assert [(f.detector_id, f.file, f.line) for f in result.reported] == [
            ("DEP-001", "Cargo.toml", 6), ("DEP-004", "Cargo.toml", 7)]
        assert result.files_scanned == 1

    def test_virtual_workspace_root_is_checked(self, project):
        project.crate("programs/vault", "vault", Chain.SOLANA)
        project.source("programs/vault/src/lib.rs", WITHDRAW_CHECKED)
        (project.root / "Cargo.toml").write_text(textwrap.dedent("""\
            [workspace]
            members = ["programs/vault"]

            [workspace.dependencies]
            borsh = "*"
        """), encoding="utf-8")
        result = scan(project.root)
        assert [(f.detector_id, f.file, f.line) for f in result.reported] == [
            ("DEP-002", "Cargo.toml", 5)]

    def test_manifests_follow_filters_and_single_file_targets(self, project):
        _solana_project(project, WITHDRAW_CHECKED)
        with open(project.root / "Cargo.toml", "a", encoding="utf-8") as fh:
            fh.write('anchor-lang = "0.26.0"\n')
        assert [f.detector_id for f in scan(project.root).reported] == ["DEP-001"]
        assert scan(project.root, detectors=["SOL-003"]).reported == []
        assert scan(project.root / "src" / "lib.rs").reported == []

    def test_crates_without_a_chain_are_not_checked(self, project):
        project.crate("", "plain")
        with open(project.root / "Cargo.toml", "a", encoding="utf-8") as fh:
            fh.write('borsh = "*"\n')
        assert scan(project.root).reported == []


class TestFiltering:

    def test_project_config(self, project):
        _solana_project(project)
        (project.root / CONFIG_FILENAME).write_text('ignore = ["SOL-003"]\n', encoding="utf-8")
        result = scan(project.root)
        assert result.reported == []
        assert result.suppressed.config == 1

    def test_cli_thresholds_tighten(self, project):
        from crabshield.findings import Confidence
        _solana_project(project)
        assert scan(project.root, min_confidence=Confidence.HIGH).reported == []

    def test_detector_filter(self, project):
        _solana_project(project)
        assert scan(project.root, detectors=["SOL-020"]).reported == []
        assert len(scan(project.root, detectors=["SOL-003"]).reported) == 1

    def test_unknown_detector_is_config_error(self, project):
        _solana_project(project)
        with pytest.raises(ConfigError, match="SOL-999"):
            Scanner(ScanOptions(root=project.root, detectors=["SOL-999"]))


class TestDeterminism:

    def test_worker_count_does_not_change_output(self, project):
        project.crate("", "vault", Chain.SOLANA)
        for i in range(6):
            project.source(f"src/m{i}.rs", WITHDRAW + SECOND_CALLER.replace("apply_fee", "withdraw"))
        serial = scan(project.root, jobs=1)
        parallel = scan(project.root, jobs=4)
        assert serial.reported == parallel.reported
        assert len(serial.reported) == 6


class TestProducerFailures:

    def test_failing_producer_does_not_stop_others(self, project):
        _solana_project(project)
        registry = DetectorRegistry([_Boom(), IntegerOverflowDetector()]).freeze()
        result = Scanner(ScanOptions(root=project.root), registry=registry).run()
        assert [e.producer_id for e in result.producer_errors] == ["BOOM-001"]
        assert [f.detector_id for f in result.reported] == ["SOL-003"]


class TestIncremental:

    def test_hits_on_unchanged_files(self, project):
        _solana_project(project)
        first = scan(project.root, incremental=True)
        assert (first.cache_hits, first.cache_misses) == (0, 1)
        assert (project.root / CACHE_FILENAME).is_file()

        second = scan(project.root, incremental=True)
        assert (second.cache_hits, second.cache_misses) == (1, 0)
        assert second.reported == first.reported

    def test_edit_invalidates_entry(self, project):
        _solana_project(project)
        scan(project.root, incremental=True)
        project.source("src/lib.rs", WITHDRAW_CHECKED)
        result = scan(project.root, incremental=True)
        assert result.cache_misses == 1
        assert result.reported == []

    def test_config_change_reuses_cache(self, project):
        _solana_project(project)
        scan(project.root, incremental=True)
        (project.root / CONFIG_FILENAME).write_text('ignore = ["SOL-003"]\n', encoding="utf-8")
        result = scan(project.root, incremental=True)
        assert result.cache_hits == 1
        assert result.reported == []

    def test_producer_error_is_not_cached(self, project, tmp_path):
        _solana_project(project)
        cache = tmp_path / "cache.json"

        def run():
            registry = DetectorRegistry([_Boom(), IntegerOverflowDetector()]).freeze()
            options = ScanOptions(root=project.root, incremental=True, cache_path=cache)
            return Scanner(options, registry=registry).run()

        run()
        assert run().cache_misses == 1
