# tests/test_cli.py
"""
Tests for the ``irlock`` command line.
"""

import json

import pytest

from conftest import INTERPROCEDURAL, NESTED_DROP, WRAPPER, ir
from irlock.cli import EXIT_ERROR, EXIT_INFRA, EXIT_OK, main


@pytest.fixture
def write_ir(tmp_path):
    def _write(body, name="prog.ir"):
        path = tmp_path / name
        path.write_text(ir(body), encoding="utf-8")
        return str(path)
    return _write


class TestScan:

    def test_clean_program(self, write_ir, capsys):
        assert main(["scan", write_ir(NESTED_DROP)]) == EXIT_OK
        assert "no double locks found" in capsys.readouterr().out

    def test_double_lock(self, write_ir, capsys):
        assert main(["scan", "--no-color", write_ir(INTERPROCEDURAL)]) == EXIT_ERROR
        out = capsys.readouterr().out
        assert "error[doubleLock]" in out
        assert "app::outer -> app::inner" in out

    def test_json_to_file(self, write_ir, tmp_path):
        dest = tmp_path / "out" / "findings.jsonl"
        rc = main(["scan", write_ir(INTERPROCEDURAL), "-f", "json", "-o", str(dest)])
        assert rc == EXIT_ERROR
        (line,) = dest.read_text(encoding="utf-8").splitlines()
        assert json.loads(line)["errorId"] == "doubleLock"

    def test_gcc(self, write_ir, capsys):
        main(["scan", write_ir(INTERPROCEDURAL), "-f", "gcc"])
        out = capsys.readouterr().out
        assert out.startswith("src/inner.rs:20: error:")

    def test_suppress(self, write_ir, capsys):
        rc = main(["scan", write_ir(INTERPROCEDURAL), "--suppress", "doubleLock@app::outer"])
        assert rc == EXIT_OK

    def test_no_wrappers(self, write_ir):
        path = write_ir(WRAPPER)
        assert main(["scan", path]) == EXIT_ERROR
        assert main(["scan", path, "--no-wrappers"]) == EXIT_OK

    def test_step_budget(self, write_ir):
        assert main(["scan", write_ir(INTERPROCEDURAL), "--max-steps", "1"]) == EXIT_OK

    def test_custom_patterns(self, write_ir, tmp_path):
        table = tmp_path / "locks.sexp"
        table.write_text(
            '(patterns (lock other (match exact "vendor::Lock::acquire")))',
            encoding="utf-8",
        )
        rc = main(["scan", write_ir(INTERPROCEDURAL), "--patterns", str(table)])
        assert rc == EXIT_OK


class TestInfrastructureErrors:

    def test_missing_file(self, tmp_path):
        assert main(["scan", str(tmp_path / "absent.ir")]) == EXIT_INFRA

    def test_unparseable_ir(self, tmp_path):
        path = tmp_path / "bad.ir"
        path.write_text("(module broken (function", encoding="utf-8")
        assert main(["scan", str(path)]) == EXIT_INFRA

    def test_bad_pattern_table(self, write_ir, tmp_path):
        table = tmp_path / "locks.sexp"
        table.write_text("(locks)", encoding="utf-8")
        assert main(["scan", write_ir(NESTED_DROP), "--patterns", str(table)]) == EXIT_INFRA

    def test_no_command(self, capsys):
        assert main([]) == EXIT_INFRA

    def test_bad_option(self, capsys):
        assert main(["scan", "--format", "xml", "x.ir"]) == EXIT_INFRA

    def test_version(self, capsys):
        assert main(["--version"]) == EXIT_OK
        assert "irlock" in capsys.readouterr().out


class TestLocks:

    def test_text(self, write_ir, capsys):
        assert main(["locks", write_ir(WRAPPER)]) == EXIT_OK
        out = capsys.readouterr().out.splitlines()
        assert out[-1] == "3 lock site(s)"
        assert any("[exclusive, synthetic]" in ln and "app::caller" in ln for ln in out)
        assert any(ln.startswith("src/get.rs:3: app::get:") for ln in out)

    def test_json(self, write_ir, capsys):
        assert main(["locks", write_ir(INTERPROCEDURAL), "-f", "json"]) == EXIT_OK
        records = [json.loads(ln) for ln in capsys.readouterr().out.splitlines()]
        assert [r["function"] for r in records] == ["app::outer", "app::inner"]
        assert all(r["aliases"] == 1 and r["kill"] == 1 for r in records)


class TestCallgraph:

    def test_statistics(self, write_ir, capsys):
        assert main(["callgraph", write_ir(INTERPROCEDURAL)]) == EXIT_OK
        out = capsys.readouterr().out
        assert "functions: 2" in out
        assert "total_edges: 5" in out

    def test_dot(self, write_ir, capsys):
        assert main(["callgraph", write_ir(INTERPROCEDURAL), "--dot"]) == EXIT_OK
        out = capsys.readouterr().out
        assert out.startswith("digraph CallGraph {")
        assert 'label="test";' in out
