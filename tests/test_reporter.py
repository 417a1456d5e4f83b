# tests/test_reporter.py
"""
Tests for text / JSON / GCC rendering.
"""

import io
import json

import pytest

from conftest import INTERPROCEDURAL, scan
from irlock.diagnostics import DiagnosticSeverity
from irlock.reporter import Reporter, ReporterStats


@pytest.fixture(scope="module")
def diagnostics():
    return scan(INTERPROCEDURAL).diagnostics


def _render(diags, fmt, colour=False):
    buf = io.StringIO()
    with Reporter(buf, fmt=fmt, colour=colour) as rep:
        rep.emit_all(diags)
    return buf.getvalue()


class TestTextFormat:

    def test_layout(self, diagnostics):
        out = _render(diagnostics, "text")
        lines = out.splitlines()
        assert lines[0].startswith("error[doubleLock]: possible double lock:")
        assert lines[1] == "  --> src/inner.rs:20"
        assert "  = call chain: app::outer -> app::inner" in lines
        assert "    --> src/outer.rs:7" in lines
        assert "  = confidence: medium" in lines
        assert any("cwe.mitre.org/data/definitions/764.html" in ln for ln in lines)
        assert lines[-1] == "1 error (1 total)"

    def test_no_escape_codes_without_colour(self, diagnostics):
        assert "\x1b[" not in _render(diagnostics, "text")

    def test_colour(self, diagnostics):
        assert "\x1b[" in _render(diagnostics, "text", colour=True)

    def test_stringio_is_not_a_tty(self, diagnostics):
        assert "\x1b[" not in _render(diagnostics, "text", colour=None)

    def test_empty_run(self):
        assert _render([], "text") == "no double locks found\n"


class TestMachineFormats:

    def test_json(self, diagnostics):
        out = _render(diagnostics, "json")
        (line,) = out.splitlines()
        obj = json.loads(line)
        assert obj["errorId"] == "doubleLock"
        assert obj["callChain"] == ["app::outer", "app::inner"]

    def test_json_has_no_summary(self):
        assert _render([], "json") == ""

    def test_gcc(self, diagnostics):
        lines = _render(diagnostics, "gcc").splitlines()
        assert lines[0].startswith("src/inner.rs:20: error: possible double lock")
        assert lines[0].endswith("[doubleLock]")
        assert lines[1].startswith("src/outer.rs:6: note: first acquired here")
        assert lines[2] == "src/outer.rs:7: note: calls app::inner"


class TestReporter:

    def test_unknown_format(self):
        with pytest.raises(ValueError):
            Reporter(io.StringIO(), fmt="xml")

    def test_finish_once(self, diagnostics):
        buf = io.StringIO()
        rep = Reporter(buf, fmt="text", colour=False)
        rep.emit_all(diagnostics)
        stats = rep.finish()
        rep.finish()
        assert stats.error == 1
        assert buf.getvalue().count("1 error") == 1


class TestReporterStats:

    def test_summary_line(self):
        stats = ReporterStats()
        stats.record(DiagnosticSeverity.ERROR)
        stats.record(DiagnosticSeverity.ERROR)
        stats.record(DiagnosticSeverity.WARNING)
        assert stats.summary_line() == "2 errors; 1 warning (3 total)"
