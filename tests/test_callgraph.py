# tests/test_callgraph.py
"""Intra-file call graph and security-check sites."""

from conftest import make_context

from crabshield.callgraph import (
    callgraph_summary,
    find_check_sites,
)
from crabshield.findings import CheckCategory


GUARDED = """\
    fn apply_fee(balance: u64, fee: u64) -> u64 {
        balance - fee
    }

    pub fn checked_entry(balance: u64, fee: u64) -> u64 {
        assert!(fee <= balance);
        apply_fee(balance, fee)
    }
"""

UNGUARDED_SECOND_CALLER = GUARDED + """\

    pub fn raw_entry(balance: u64, fee: u64) -> u64 {
        apply_fee(balance, fee)
    }
"""


def _graph(source):
    ctx = make_context(source)
    return ctx.callgraph, {f.name: f for f in ctx.functions}


class TestCheckSites:

    def test_guard_macro_is_input_validation(self):
        _, fns = _graph(GUARDED)
        sites = find_check_sites(fns["checked_entry"])
        assert [s.category for s in sites] == [CheckCategory.INPUT_VALIDATION]
        assert sites[0].line == 6

    def test_early_return_if_is_a_guard(self):
        _, fns = _graph("""\
            fn f(a: u64, b: u64) -> u64 {
                if b > a {
                    return 0;
                }
                a - b
            }
        """)
        assert [s.category for s in find_check_sites(fns["f"])] == [
            CheckCategory.INPUT_VALIDATION]

    def test_err_branch_is_a_guard(self):
        _, fns = _graph("""\
            fn f(a: u64) -> Result<u64, String> {
                if a == 0 {
                    Err(String::from("zero"))
                } else {
                    Ok(a)
                }
            }
        """)
        assert find_check_sites(fns["f"])

    def test_plain_if_is_not_a_guard(self):
        _, fns = _graph("""\
            fn f(a: u64) -> u64 {
                if a > 1 { a } else { 1 }
            }
        """)
        assert find_check_sites(fns["f"]) == []

    def test_signer_is_authorization(self):
        _, fns = _graph("""\
            fn f(account: &AccountInfo) -> bool {
                account.is_signer
            }
        """)
        assert [s.category for s in find_check_sites(fns["f"])] == [
            CheckCategory.AUTHORIZATION]

    def test_owner_against_program_id_is_ownership(self):
        _, fns = _graph("""\
            fn f(account: &AccountInfo, program_id: &Pubkey) -> bool {
                account.owner == program_id
            }
        """)
        cats = {s.category for s in find_check_sites(fns["f"])}
        assert CheckCategory.OWNERSHIP in cats


class TestCallGraph:

    def test_edges_and_callers(self):
        cg, _ = _graph(UNGUARDED_SECOND_CALLER)
        assert "apply_fee" in cg
        assert cg.callers_of("apply_fee") == ["checked_entry", "raw_entry"]
        assert cg.callees_of("raw_entry") == ["apply_fee"]

    def test_unknown_callees_are_ignored(self):
        cg, _ = _graph("""\
            fn f() {
                external_crate::g();
                h();
            }
        """)
        assert cg.callees_of("f") == []

    def test_calls_inside_macros(self):
        cg, _ = _graph("""\
            fn amount() -> u64 { 1 }
            fn f() {
                msg!("{}", amount());
            }
        """)
        assert cg.callers_of("amount") == ["f"]

    def test_statistics(self):
        cg, _ = _graph(UNGUARDED_SECOND_CALLER)
        stats = cg.statistics()
        assert stats["functions"] == 3
        assert stats["call_sites"] == 2

    def test_summary_and_dot(self):
        cg, _ = _graph(GUARDED)
        assert "apply_fee: calls [-] called-by [checked_entry]" in callgraph_summary(cg)
        assert cg.to_dot().startswith('digraph "callgraph"')


class TestEveryCallerChecks:

    def test_single_guarded_caller(self):
        cg, _ = _graph(GUARDED)
        assert cg.every_caller_checks("apply_fee", CheckCategory.INPUT_VALIDATION)

    def test_wrong_category(self):
        cg, _ = _graph(GUARDED)
        assert not cg.every_caller_checks("apply_fee", CheckCategory.AUTHORIZATION)

    def test_one_unguarded_caller_breaks_it(self):
        cg, _ = _graph(UNGUARDED_SECOND_CALLER)
        assert not cg.every_caller_checks("apply_fee", CheckCategory.INPUT_VALIDATION)

    def test_no_callers_never_checks(self):
        cg, _ = _graph(GUARDED)
        assert not cg.every_caller_checks("checked_entry", CheckCategory.INPUT_VALIDATION)
        assert not cg.every_caller_checks("missing", CheckCategory.INPUT_VALIDATION)

    def test_check_after_call_does_not_count(self):
        cg, _ = _graph("""\
            fn apply_fee(balance: u64, fee: u64) -> u64 {
                balance - fee
            }

            fn late(balance: u64, fee: u64) -> u64 {
                let r = apply_fee(balance, fee);
                assert!(fee <= balance);
                r
            }
        """)
        assert not cg.every_caller_checks("apply_fee", CheckCategory.INPUT_VALIDATION)

    def test_guards_are_per_definition(self):
        cg, _ = _graph("""\
            fn apply_fee(balance: u64, fee: u64) -> u64 {
                balance - fee
            }

            impl A {
                fn run(&self, balance: u64, fee: u64) -> u64 {
                    assert!(fee <= balance);
                    0
                }
            }

            impl B {
                fn run(&self, balance: u64, fee: u64) -> u64 {
                    apply_fee(balance, fee)
                }
            }
        """)
        assert cg.callers_of("apply_fee") == ["run"]
        (edge,) = cg.nodes["apply_fee"].in_edges
        assert edge.caller_fn.impl_type == "B"
        assert not cg.every_caller_checks("apply_fee", CheckCategory.INPUT_VALIDATION)

    def test_guarded_same_named_caller_still_counts(self):
        cg, _ = _graph("""\
            fn apply_fee(balance: u64, fee: u64) -> u64 {
                balance - fee
            }

            impl A {
                fn run(&self, balance: u64, fee: u64) -> u64 {
                    0
                }
            }

            impl B {
                fn run(&self, balance: u64, fee: u64) -> u64 {
                    assert!(fee <= balance);
                    apply_fee(balance, fee)
                }
            }
        """)
        assert cg.every_caller_checks("apply_fee", CheckCategory.INPUT_VALIDATION)

    def test_self_calls_are_not_callers(self):
        cg, _ = _graph("""\
            pub fn drain(balance: u64, fee: u64, n: u64) -> u64 {
                let left = balance - fee;
                if n == 0 {
                    return left;
                }
                drain(left, fee, n - 1)
            }
        """)
        assert cg.callers_of("drain") == ["drain"]
        assert cg.nodes["drain"].in_edges[0].is_self_call
        assert not cg.every_caller_checks("drain", CheckCategory.INPUT_VALIDATION)

    def test_recursion_terminates(self):
        cg, _ = _graph("""\
            fn ping(n: u64) -> u64 {
                assert!(n < 10);
                pong(n)
            }

            fn pong(n: u64) -> u64 {
                ping(n)
            }
        """)
        assert cg.every_caller_checks("pong", CheckCategory.INPUT_VALIDATION)
        assert not cg.every_caller_checks("ping", CheckCategory.INPUT_VALIDATION)
