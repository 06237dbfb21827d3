# tests/test_report.py
"""Text, JSON, SARIF and HTML rendering."""

import json

import pytest

from crabshield.findings import CheckCategory, Confidence, Finding, Severity
from crabshield.report import (
    FORMATS,
    SARIF_VERSION,
    build_sarif,
    render,
    render_html,
    render_json,
    render_text,
    sarif_level,
)


def _overflow(**overrides):
    base = dict(detector_id="SOL-003", name="integer-overflow",
                severity=Severity.CRITICAL, confidence=Confidence.MEDIUM,
                file="src/lib.rs", line=4, message="Unchecked arithmetic operation: a - b",
                column=5, chain="solana", end_line=4, snippet="a - b",
                recommendation="Use checked_sub.", function="withdraw",
                check_category=CheckCategory.INPUT_VALIDATION)
    base.update(overrides)
    return Finding(**base)


def _deposit():
    return Finding("NEAR-010", "missing-deposit-check", Severity.HIGH, Confidence.HIGH,
                   "src/market.rs", 12, "payable method ignores deposit",
                   chain="near", end_line=14)


class TestText:

    def test_block_layout(self):
        text = render_text([_overflow()])
        lines = text.splitlines()
        assert lines[:7] == [
            "[Critical] SOL-003 integer-overflow",
            "  --> src/lib.rs:4:5",
            "  in fn withdraw",
            "  confidence: Medium",
            "  Unchecked arithmetic operation: a - b",
            "   | a - b",
            "  = help: Use checked_sub.",
        ]
        assert lines[-1] == "1 finding(s): 1 critical"

    def test_counts_by_severity(self):
        text = render_text([_overflow(), _deposit(), _overflow(line=9)])
        assert text.rstrip().endswith("3 finding(s): 2 critical, 1 high")

    def test_empty(self):
        assert render_text([]) == "No findings.\n"
        assert render_text([], summary="") == ""

    def test_custom_summary(self):
        text = render_text([_deposit()], summary="1 finding(s), 3 file(s) scanned")
        assert text.endswith("1 finding(s), 3 file(s) scanned\n")
        assert "  --> src/market.rs:12\n" in text


class TestJson:

    def test_records(self):
        data = json.loads(render_json([_overflow(), _deposit()]))
        assert [r["detector_id"] for r in data] == ["SOL-003", "NEAR-010"]
        first = data[0]
        assert first["severity"] == "critical"
        assert first["confidence"] == "medium"
        assert first["function"] == "withdraw"
        assert "check_category" not in first
        assert data[1]["function"] is None

    def test_empty(self):
        assert json.loads(render_json([])) == []


class TestSarif:

    def test_levels(self):
        assert sarif_level(Severity.CRITICAL) == "error"
        assert sarif_level(Severity.HIGH) == "error"
        assert sarif_level(Severity.MEDIUM) == "warning"
        assert sarif_level(Severity.LOW) == "note"

    def test_document(self):
        doc = build_sarif([_overflow(), _deposit(), _overflow(line=9)], "1.2.3")
        assert doc["version"] == SARIF_VERSION
        assert "$schema" in doc
        (run,) = doc["runs"]
        driver = run["tool"]["driver"]
        assert (driver["name"], driver["version"]) == ("crabshield", "1.2.3")
        assert [r["id"] for r in driver["rules"]] == ["SOL-003", "NEAR-010"]
        assert driver["rules"][0]["help"] == {"text": "Use checked_sub."}
        assert driver["rules"][1]["properties"] == {"chain": "near"}

        results = run["results"]
        assert [r["ruleIndex"] for r in results] == [0, 1, 0]
        first = results[0]
        assert first["level"] == "error"
        assert first["message"] == {"text": "Unchecked arithmetic operation: a - b"}
        location = first["locations"][0]["physicalLocation"]
        assert location["artifactLocation"] == {"uri": "src/lib.rs"}
        assert location["region"] == {"startLine": 4, "startColumn": 5,
                                      "snippet": {"text": "a - b"}}
        region = results[1]["locations"][0]["physicalLocation"]["region"]
        assert region == {"startLine": 12, "endLine": 14}

    def test_empty_run(self):
        doc = build_sarif([], "0.1.0")
        assert doc["runs"][0]["results"] == []
        assert doc["runs"][0]["tool"]["driver"]["rules"] == []


class TestHtml:

    def test_cards_and_escaping(self):
        page = render_html([_overflow(message="a < b <script>"), _deposit()])
        assert page.startswith("<!DOCTYPE html>")
        assert 'class="card sev-critical"' in page
        assert 'class="card sev-high"' in page
        assert "&lt;script&gt;" in page
        assert "<script>" not in page
        assert "2 findings." in page

    def test_single_finding_wording(self):
        assert "1 finding." in render_html([_deposit()])


class TestDispatch:

    @pytest.mark.parametrize("fmt", FORMATS)
    def test_every_format_renders(self, fmt):
        out = render([_overflow()], fmt, "0.1.0", summary="")
        assert "SOL-003" in out

    def test_unknown_format(self):
        with pytest.raises(ValueError):
            render([], "xml", "0.1.0")
