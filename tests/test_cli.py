# tests/test_cli.py
"""Command-line entry point: exit codes, formats, listing."""

import json
import logging
import textwrap

import pytest

from crabshield.chains import Chain
from crabshield.cli import EXIT_FINDINGS, EXIT_INFRA, EXIT_OK, main


VULNERABLE = """\
    pub fn withdraw(balance: u64, amount: u64) -> u64 {
        balance - amount
    }
"""

CLEAN = """\
    pub fn withdraw(balance: u64, amount: u64) -> Option<u64> {
        balance.checked_sub(amount)
    }
"""


@pytest.fixture(autouse=True)
def _reset_cli_logging():
    yield
    logger = logging.getLogger("crabshield")
    for handler in list(logger.handlers):
        if getattr(handler, "_crabshield_cli", False):
            logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


def _vault(project, source=VULNERABLE):
    project.crate("", "vault", Chain.SOLANA)
    project.source("src/lib.rs", source)
    return str(project.root)


class TestScanExitCodes:

    def test_clean(self, project, capsys):
        assert main(["scan", _vault(project, CLEAN)]) == EXIT_OK
        out = capsys.readouterr().out
        assert out.startswith("0 finding(s), 1 file(s) scanned")

    def test_findings(self, project, capsys):
        assert main(["scan", _vault(project)]) == EXIT_FINDINGS
        out = capsys.readouterr().out
        assert out.startswith("[Critical] SOL-003 integer-overflow\n")
        assert "  --> src/lib.rs:2:5\n" in out

    def test_quiet_clean_prints_nothing(self, project, capsys):
        assert main(["scan", "-q", _vault(project, CLEAN)]) == EXIT_OK
        assert capsys.readouterr().out == ""

    def test_missing_path(self, tmp_path, capsys):
        assert main(["scan", str(tmp_path / "nope")]) == EXIT_INFRA
        assert "does not exist" in capsys.readouterr().err

    @pytest.mark.parametrize("extra", [
        ["--chain", "ethereum"],
        ["--severity", "extreme"],
        ["--confidence", "certain"],
        ["--detector", "SOL-999"],
        ["--jobs", "0"],
    ])
    def test_bad_arguments(self, project, extra):
        assert main(["scan", _vault(project), *extra]) == EXIT_INFRA

    def test_malformed_config(self, project):
        root = _vault(project)
        (project.root / ".crabshield.toml").write_text("ignore = [", encoding="utf-8")
        assert main(["scan", root]) == EXIT_INFRA

    def test_missing_rule_file(self, project, tmp_path):
        assert main(["scan", _vault(project), "--rules", str(tmp_path / "r.toml")]) == EXIT_INFRA

    def test_no_command(self):
        assert main([]) == EXIT_INFRA


class TestScanOptions:

    def test_chain_override(self, project, capsys):
        project.crate("", "plain")
        project.source("src/lib.rs", VULNERABLE)
        assert main(["scan", str(project.root)]) == EXIT_OK
        assert main(["scan", str(project.root), "--chain", "solana"]) == EXIT_FINDINGS

    def test_severity_threshold(self, project):
        assert main(["scan", _vault(project), "--severity", "critical"]) == EXIT_FINDINGS
        assert main(["scan", str(project.root), "--confidence", "high"]) == EXIT_OK

    def test_detector_filter(self, project):
        root = _vault(project)
        assert main(["scan", root, "--detector", "SOL-020,SOL-006"]) == EXIT_OK
        assert main(["scan", root, "--detector", "SOL-003"]) == EXIT_FINDINGS

    def test_baseline_flow(self, project, tmp_path):
        root = _vault(project)
        baseline = tmp_path / "baseline.json"
        assert main(["scan", root, "--save-baseline", str(baseline)]) == EXIT_FINDINGS
        assert baseline.is_file()
        assert main(["scan", root, "--baseline", str(baseline)]) == EXIT_OK

    def test_cache_path_implies_incremental(self, project, tmp_path):
        cache = tmp_path / "cache.json"
        assert main(["scan", _vault(project), "--cache-path", str(cache), "-j", "2"]) == EXIT_FINDINGS
        assert cache.is_file()


class TestFormats:

    def test_json_to_file(self, project, tmp_path):
        out = tmp_path / "reports" / "findings.json"
        assert main(["scan", _vault(project), "-f", "json", "-o", str(out)]) == EXIT_FINDINGS
        records = json.loads(out.read_text(encoding="utf-8"))
        assert [(r["detector_id"], r["file"], r["line"]) for r in records] == [
            ("SOL-003", "src/lib.rs", 2)]

    def test_sarif_to_stdout(self, project, capsys):
        assert main(["scan", _vault(project), "--format", "sarif"]) == EXIT_FINDINGS
        doc = json.loads(capsys.readouterr().out)
        assert doc["runs"][0]["results"][0]["ruleId"] == "SOL-003"

    def test_html(self, project, capsys):
        assert main(["scan", _vault(project), "-f", "html"]) == EXIT_FINDINGS
        assert "crabshield report" in capsys.readouterr().out


class TestListDetectors:

    def test_filtered_by_chain(self, capsys):
        assert main(["list-detectors", "--chain", "near"]) == EXIT_OK
        lines = capsys.readouterr().out.splitlines()
        assert any(line.startswith("NEAR-") for line in lines)
        assert all(line.startswith("NEAR-") or line.split()[3] == "any" for line in lines)
        assert not any(line.startswith("SOL-") for line in lines)

    def test_all(self, capsys):
        assert main(["list-detectors"]) == EXIT_OK
        ids = [line.split()[0] for line in capsys.readouterr().out.splitlines()]
        assert {"SOL-003", "CW-001", "NEAR-006", "INK-002"} <= set(ids)

    def test_includes_rules(self, tmp_path, capsys):
        rules = tmp_path / "rules.toml"
        rules.write_text(textwrap.dedent("""\
            [[rules]]
            id = "CUSTOM-001"
            name = "no-unwrap"
            severity = "medium"
            confidence = "high"
            regex = '\\.unwrap\\(\\)'
            message = "unwrap() in handler"
        """), encoding="utf-8")
        assert main(["list-detectors", "--rules", str(rules)]) == EXIT_OK
        (line,) = [l for l in capsys.readouterr().out.splitlines() if l.startswith("CUSTOM-001")]
        assert line.split()[1:] == ["Medium", "High", "any", "no-unwrap"]
