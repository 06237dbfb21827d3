# tests/test_baseline.py
"""Baselines: line-independent fingerprints and multiset diffs."""

import json
from dataclasses import replace

from crabshield.baseline import (
    BASELINE_VERSION,
    Baseline,
    BaselineRecord,
    fingerprint,
    normalize_message,
)
from crabshield.findings import Confidence, Finding, Severity


def _finding(**overrides):
    base = dict(detector_id="SOL-003", name="integer-overflow",
                severity=Severity.CRITICAL, confidence=Confidence.MEDIUM,
                file="src/lib.rs", line=4, message="Unchecked arithmetic operation: a + b",
                snippet="a + b", function="add")
    base.update(overrides)
    return Finding(**base)


class TestFingerprint:

    def test_line_shift_is_stable(self):
        assert fingerprint(_finding()) == fingerprint(_finding(line=40, column=9))

    def test_whitespace_in_snippet_is_ignored(self):
        assert fingerprint(_finding()) == fingerprint(_finding(snippet="a  +\tb"))

    def test_numbers_in_message_are_normalized(self):
        assert normalize_message("value 1000 at 3") == "value N at N"
        a = _finding(message="shift by 3")
        b = _finding(message="shift by 4")
        assert fingerprint(a) == fingerprint(b)

    def test_identity_parts_matter(self):
        f = _finding()
        assert fingerprint(f) != fingerprint(_finding(detector_id="SOL-020"))
        assert fingerprint(f) != fingerprint(_finding(file="src/other.rs"))
        assert fingerprint(f) != fingerprint(_finding(function="sub"))


class TestDiff:

    def test_new_matched_resolved(self):
        old = _finding()
        gone = _finding(function="legacy", snippet="x - y")
        baseline = Baseline.from_findings([old, gone])
        fresh = _finding(detector_id="SOL-020")
        diff = baseline.diff([replace(old, line=9), fresh])
        assert diff.new == [fresh]
        assert diff.matched == 1
        assert [r.fingerprint for r in diff.resolved] == [fingerprint(gone)]

    def test_duplicates_counted(self):
        f = _finding()
        baseline = Baseline.from_findings([f])
        diff = baseline.diff([f, replace(f, line=20)])
        assert diff.matched == 1
        assert len(diff.new) == 1

    def test_empty_baseline_everything_new(self):
        diff = Baseline().diff([_finding()])
        assert len(diff.new) == 1
        assert diff.resolved == []


class TestPersistence:

    def test_round_trip(self, tmp_path):
        path = tmp_path / "baseline.json"
        Baseline.from_findings([_finding()]).save(path)
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["version"] == BASELINE_VERSION
        loaded = Baseline.load(path)
        assert len(loaded) == 1
        assert loaded.diff([_finding(line=99)]).new == []

    def test_first_seen_is_preserved(self):
        old = Baseline([BaselineRecord(fingerprint(_finding()), "SOL-003", "src/lib.rs",
                                       "m", "2020-01-01T00:00:00+00:00")])
        again = Baseline.from_findings([_finding()], previous=old)
        assert again.records[0].first_seen == "2020-01-01T00:00:00+00:00"

    def test_missing_file_is_empty(self, tmp_path):
        assert len(Baseline.load(tmp_path / "nope.json")) == 0

    def test_corrupt_or_foreign_file_is_empty(self, tmp_path):
        path = tmp_path / "baseline.json"
        path.write_text("[1, 2", encoding="utf-8")
        assert len(Baseline.load(path)) == 0
        path.write_text(json.dumps({"version": 99, "records": []}), encoding="utf-8")
        assert len(Baseline.load(path)) == 0
        path.write_text(json.dumps([1, 2]), encoding="utf-8")
        assert len(Baseline.load(path)) == 0
