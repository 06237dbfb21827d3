# tests/test_findings.py
"""Finding model: ordering, identity, serialization."""

import pytest

from crabshield.errors import ConfigError, DuplicateDetectorError, FileError, ParseFailure
from crabshield.findings import (
    CheckCategory,
    Confidence,
    Finding,
    Severity,
    dedupe,
    sort_findings,
)


def _finding(**overrides):
    base = dict(
        detector_id="SOL-003",
        name="integer-overflow",
        severity=Severity.CRITICAL,
        confidence=Confidence.MEDIUM,
        file="src/lib.rs",
        line=10,
        message="Unchecked arithmetic operation: a - b",
        column=5,
    )
    base.update(overrides)
    return Finding(**base)


class TestSeverity:

    def test_ordering(self):
        assert Severity.LOW < Severity.MEDIUM < Severity.HIGH < Severity.CRITICAL
        assert Severity.HIGH <= Severity.HIGH
        assert max([Severity.MEDIUM, Severity.CRITICAL, Severity.LOW]) is Severity.CRITICAL

    def test_parse_is_case_insensitive(self):
        assert Severity.parse("High") is Severity.HIGH
        assert Severity.parse(" critical ") is Severity.CRITICAL

    def test_parse_rejects_unknown(self):
        with pytest.raises(ValueError, match="unknown severity"):
            Severity.parse("severe")

    def test_label(self):
        assert Severity.CRITICAL.label == "Critical"


class TestConfidence:

    def test_ordering(self):
        assert Confidence.LOW < Confidence.MEDIUM < Confidence.HIGH

    def test_parse(self):
        assert Confidence.parse("LOW") is Confidence.LOW
        with pytest.raises(ValueError):
            Confidence.parse("certain")


class TestFinding:

    def test_immutable(self):
        f = _finding()
        with pytest.raises(AttributeError):
            f.line = 3

    def test_identity_uses_message_hash(self):
        a = _finding()
        b = _finding(message="something else")
        assert a.identity != b.identity
        assert a.identity == _finding().identity

    def test_identity_defaults_end_line_to_line(self):
        assert _finding().identity == _finding(end_line=10).identity

    def test_dict_round_trip_keeps_category(self):
        f = _finding(function="withdraw", check_category=CheckCategory.INPUT_VALIDATION,
                     snippet="a - b", recommendation="use checked_sub", chain="solana")
        assert Finding.from_dict(f.to_dict()) == Finding.from_dict(f.to_dict())
        back = Finding.from_dict(f.to_dict())
        assert back.check_category is CheckCategory.INPUT_VALIDATION
        assert back.function == "withdraw"
        assert back.end_line == 10

    def test_to_dict_contract_fields(self):
        d = _finding().to_dict()
        for key in ("detector_id", "name", "severity", "confidence", "chain",
                    "file", "line", "column", "message", "snippet", "recommendation"):
            assert key in d
        assert d["severity"] == "critical"
        assert "check_category" not in d

    def test_str(self):
        assert str(_finding()) == (
            "src/lib.rs:10:5: critical: Unchecked arithmetic operation: a - b [SOL-003]"
        )


class TestAggregationHelpers:

    def test_sort_severity_then_location(self):
        low = _finding(severity=Severity.LOW, file="a.rs", line=1)
        crit_b = _finding(file="b.rs", line=1)
        crit_a2 = _finding(file="a.rs", line=2)
        crit_a1 = _finding(file="a.rs", line=1, detector_id="SOL-020")
        ordered = sort_findings([low, crit_b, crit_a2, crit_a1])
        assert ordered == [crit_a1, crit_a2, crit_b, low]

    def test_sort_is_input_order_independent(self):
        items = [_finding(line=i, severity=s)
                 for i, s in enumerate([Severity.LOW, Severity.HIGH, Severity.MEDIUM], 1)]
        assert sort_findings(items) == sort_findings(list(reversed(items)))

    def test_dedupe_keeps_first(self):
        a = _finding()
        b = _finding(snippet="different snippet, same identity")
        c = _finding(line=11)
        assert dedupe([a, b, c]) == [a, c]


class TestErrors:

    def test_duplicate_detector_is_config_error(self):
        err = DuplicateDetectorError("SOL-003")
        assert isinstance(err, ConfigError)
        assert "SOL-003" in str(err)

    def test_parse_failure_carries_reason(self):
        err = ParseFailure("src/lib.rs", "syntax error at line 3, column 1")
        assert err.reason.startswith("syntax error")
        assert "src/lib.rs" in str(err)

    def test_file_error_str(self):
        assert str(FileError("a.rs", "parse", "boom")) == "a.rs: parse: boom"
