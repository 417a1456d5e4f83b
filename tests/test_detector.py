# tests/test_detector.py
"""
End-to-end tests for the double-lock checker and :func:`analyze_module`.
"""

import pytest

from conftest import (
    INTERPROCEDURAL,
    NESTED_DROP,
    SAME_BLOCK_DOUBLE,
    SHARED_READS,
    STD_MUTEX_DOUBLE,
    WRAPPER,
    chains,
    load,
    scan,
)
from irlock.config import AnalysisConfig
from irlock.detector import (
    CWE_DOUBLE_LOCK,
    DOUBLE_LOCK,
    Checker,
    DoubleLockChecker,
    analyze_module,
)
from irlock.diagnostics import Confidence, DiagnosticSeverity, SuppressionManager
from irlock.errors import (
    ANALYSIS_TRUNCATED,
    CHECKER_INTERNAL_ERROR,
    MISSING_TYPE_INFO,
    UNPARSEABLE_LOCK_SITE,
)
from irlock.ir import OpKind
from irlock.patterns import ShareMode


class TestDetection:
    """Which programs produce which reports."""

    def test_same_block(self):
        result = scan(SAME_BLOCK_DOUBLE)
        assert chains(result) == [("app::double",)]
        assert result.has_errors

    def test_released_before_relock(self):
        result = scan(NESTED_DROP)
        assert result.reports == []
        assert not result.has_errors

    def test_interprocedural(self):
        result = scan(INTERPROCEDURAL)
        assert chains(result) == [("app::outer", "app::inner")]
        assert len(result.reports[0].call_sites) == 1

    def test_shared_reads(self):
        assert scan(SHARED_READS).reports == []

    def test_std_mutex_with_unwrap(self):
        result = scan(STD_MUTEX_DOUBLE)
        assert chains(result) == [("app::std_double",)]

    def test_wrapper_function(self):
        result = scan(WRAPPER)
        (report,) = result.reports
        assert report.first.synthetic
        assert report.first.op.callee_name == "app::get"
        assert not report.second.synthetic
        assert report.chain_names == ("app::caller",)

    def test_wrapper_propagation_disabled(self):
        result = scan(WRAPPER, AnalysisConfig(propagate_wrappers=False))
        assert result.reports == []
        assert all(not s.synthetic for s in result.sites)

    def test_lock_in_loop_is_not_its_own_double(self):
        result = scan("""
            (function "app::spin" (params (s (ptr State)) (c i1))
              (block entry
                (gep m (ptr Mutex) s 0 0)
                (br head))
              (block head
                (call g (ptr i8) {PL_LOCK} m)
                (call _ void "ext::work" s)
                (condbr c head exit))
              (block exit (ret)))
        """)
        assert result.reports == []

    def test_repeatable(self):
        m = load(INTERPROCEDURAL)
        first = analyze_module(m)
        second = analyze_module(m)
        assert [r.key for r in first.reports] == [r.key for r in second.reports]
        assert first.diagnostics == second.diagnostics


class TestLockShapes:
    """Acquisition modes, invoke edges and guards kept in memory."""

    def test_read_then_write(self):
        result = scan("""
            (function "app::upgrade" (params (l (ptr Mutex)))
              (block entry
                (call r1 (ptr i8) {STD_READ} l (at "src/rw.rs" 4 "/work"))
                (call g1 (ptr i8) {UNWRAP} r1)
                (alloca r2 i8)
                (call _ void {STD_WRITE} r2 l (at "src/rw.rs" 5 "/work"))
                (alloca g2 i8)
                (call _ void {UNWRAP} g2 r2)
                (call _ void {DROP} g2)
                (call _ void {DROP} g1)
                (ret)))
        """)
        (report,) = result.reports
        assert report.chain_names == ("app::upgrade",)
        assert report.first.share_mode is ShareMode.SHARED
        assert report.second.share_mode is ShareMode.EXCLUSIVE
        assert str(report.second.location) == "src/rw.rs:5"

    def test_invoke_edges(self):
        result = scan("""
            (function "app::outer" (params (s (ptr State)))
              (block entry
                (gep m (ptr Mutex) s 0 0)
                (call g (ptr i8) {PL_LOCK} m (at "src/outer.rs" 6 "/work"))
                (invoke _ void "app::inner" (s) cont cleanup (at "src/outer.rs" 7 "/work")))
              (block cont
                (call _ void {DROP} g)
                (ret))
              (block cleanup
                (call _ void {DROP} g)
                (resume)))
            (function "app::inner" (params (s (ptr State)))
              (block entry
                (gep m (ptr Mutex) s 0 0)
                (invoke g (ptr i8) {PL_LOCK} (m) ok unwind (at "src/inner.rs" 20 "/work")))
              (block ok
                (call _ void {DROP} g)
                (ret))
              (block unwind (resume)))
        """)
        (report,) = result.reports
        assert report.chain_names == ("app::outer", "app::inner")
        assert [op.kind for op in report.call_sites] == [OpKind.INVOKE]
        assert report.second.op.kind is OpKind.INVOKE
        assert [str(loc) for loc in report.locations] == \
            ["src/outer.rs:6", "src/outer.rs:7", "src/inner.rs:20"]

    def test_guard_dropped_through_slot(self):
        result = scan("""
            (function "app::slot" (params (s (ptr State)))
              (block entry
                (gep m (ptr Mutex) s 0 0)
                (alloca slot (ptr i8))
                (call g1 (ptr i8) {PL_LOCK} m)
                (store g1 slot)
                (call _ void {DROP} slot)
                (call g2 (ptr i8) {PL_LOCK} m)
                (call _ void {DROP} g2)
                (ret)))
        """)
        assert len(result.sites) == 2
        assert result.reports == []

    def test_guard_kept_in_slot(self):
        result = scan("""
            (function "app::slot" (params (s (ptr State)))
              (block entry
                (gep m (ptr Mutex) s 0 0)
                (alloca slot (ptr i8))
                (call g1 (ptr i8) {PL_LOCK} m)
                (store g1 slot)
                (call g2 (ptr i8) {PL_LOCK} m)
                (call _ void {DROP} g2)
                (call _ void {DROP} slot)
                (ret)))
        """)
        assert chains(result) == [("app::slot",)]


class TestNotes:

    def test_unparseable_site(self):
        result = scan("""
            (function "app::f" (params (m (ptr Mutex)))
              (block entry
                (call r (ptr i8) {STD_LOCK} m)
                (ret)))
        """)
        assert [n.code for n in result.notes] == [UNPARSEABLE_LOCK_SITE]
        assert result.sites == []

    def test_missing_type(self):
        result = scan("""
            (function "app::f" (params (m ?))
              (block entry
                (call g (ptr i8) {PL_LOCK} m)
                (call h (ptr i8) {PL_LOCK} m)
                (ret)))
        """)
        assert {n.code for n in result.notes} == {MISSING_TYPE_INFO}
        assert result.reports == []

    def test_truncated_query(self):
        result = scan(INTERPROCEDURAL, AnalysisConfig(max_steps_per_query=1))
        codes = [n.code for n in result.notes]
        assert codes == [ANALYSIS_TRUNCATED]
        assert result.reports == []

    def test_failing_checker_does_not_abort(self):
        class Broken(Checker):
            name = "broken"

            def collect_evidence(self, ctx):
                raise RuntimeError("boom")

            def diagnose(self, ctx):
                pass

        result = analyze_module(load(SAME_BLOCK_DOUBLE),
                                checkers=(Broken, DoubleLockChecker))
        assert result.notes[0].code == CHECKER_INTERNAL_ERROR
        assert "boom" in result.notes[0].message
        assert len(result.reports) == 1
        assert "broken_elapsed_ms" in result.stats


class TestDiagnostics:

    def test_same_block_diagnostic(self):
        (diag,) = scan(SAME_BLOCK_DOUBLE).diagnostics
        assert diag.error_id == DOUBLE_LOCK
        assert diag.cwe == CWE_DOUBLE_LOCK
        assert diag.severity is DiagnosticSeverity.ERROR
        assert diag.confidence is Confidence.MEDIUM
        assert str(diag.location) == "src/lib.rs:12"
        assert diag.function == "app::double"
        assert diag.message.startswith("possible double lock:")
        (first,) = diag.secondary
        assert first.location.line == 11
        assert first.message.startswith("first acquired here:")
        assert diag.evidence["first"]["pattern"] == "lock-api-mutex-lock"

    def test_interprocedural_diagnostic(self):
        (diag,) = scan(INTERPROCEDURAL).diagnostics
        assert diag.function == "app::inner"
        assert diag.call_chain == ("app::outer", "app::inner")
        messages = [r.message for r in diag.secondary]
        assert messages[1] == "calls app::inner"
        assert str(diag.secondary[1].location) == "src/outer.rs:7"

    def test_synthetic_lowers_confidence(self):
        (diag,) = scan(WRAPPER).diagnostics
        assert diag.confidence is Confidence.LOW
        assert diag.evidence["first"]["synthetic"] is True
        assert "via app::get" in diag.message

    def test_json_lines(self):
        result = scan(SAME_BLOCK_DOUBLE)
        assert '"errorId": "doubleLock"' in result.to_json_lines()

    def test_summary(self):
        summary = scan(SAME_BLOCK_DOUBLE).summary()
        assert "2 lock site(s)" in summary
        assert "1 double lock(s)" in summary


class TestSuppressions:

    @pytest.mark.parametrize("spec", [
        "doubleLock",
        "*",
        "doubleLock:src/inner.rs",
        "doubleLock:*.rs",
        "doubleLock@app::outer",
        "doubleLock@app::*",
    ])
    def test_suppressed(self, spec):
        sm = SuppressionManager()
        sm.add_from_spec(spec)
        result = scan(INTERPROCEDURAL, suppressions=sm)
        assert len(result.reports) == 1
        assert result.diagnostics == []
        assert not result.has_errors

    @pytest.mark.parametrize("spec", [
        "otherId",
        "doubleLock:src/outer.rs",
        "doubleLock@lib::*",
    ])
    def test_not_suppressed(self, spec):
        sm = SuppressionManager()
        sm.add_from_spec(spec)
        result = scan(INTERPROCEDURAL, suppressions=sm)
        assert len(result.diagnostics) == 1
