# tests/test_detector_base.py
"""Detector.finding: anchoring findings on nodes and lines."""

from conftest import make_context

from crabshield.chains import Chain
from crabshield.detectors.base import Detector


SOURCE = """\
    pub fn settle(balance: u64, fee: u64) -> u64 {
        let net = balance
            - fee;
        net
    }
"""


class _FunctionAnchor(Detector):
    id = "TEST-001"
    name = "function-anchor"
    chains = frozenset({Chain.SOLANA})

    def __init__(self, line=None):
        self.line = line

    def detect(self, ctx):
        for fn in ctx.functions:
            yield self.finding(ctx, fn.node, "anchored", line=self.line)


def _anchor(line=None):
    ctx = make_context(SOURCE)
    [finding] = _FunctionAnchor(line).produce(ctx)
    return finding


class TestFindingAnchor:

    def test_node_span(self):
        f = _anchor()
        assert (f.line, f.column, f.end_line) == (1, 1, 5)
        assert f.function == "settle"
        assert f.chain == "solana"

    def test_own_start_line_keeps_span(self):
        f = _anchor(line=1)
        assert (f.line, f.column, f.end_line) == (1, 1, 5)

    def test_other_line_covers_that_line(self):
        f = _anchor(line=3)
        assert (f.line, f.column, f.end_line) == (3, 0, 3)
        assert f.snippet == "- fee;"
