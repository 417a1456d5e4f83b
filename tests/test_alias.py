# tests/test_alias.py
"""
Tests for the structural must-alias oracle and provenance helpers.
"""

from conftest import load
from irlock.alias import BasicAliasOracle, same_owner, strip_casts, underlying_object

PROGRAM = """
(global G (ptr Mutex))
(function "app::f" (params (s (ptr State)) (p (ptr Mutex)))
  (block entry
    (cast c1 (ptr i8) s)
    (cast c2 (ptr State) c1)
    (gep a (ptr Mutex) s 0 0)
    (gep b (ptr Mutex) c2 0 0)
    (gep d (ptr Mutex) s 0 1)
    (gep dyn (ptr Mutex) s 0 p)
    (alloca once (ptr Mutex))
    (store p once)
    (load l1 (ptr Mutex) once)
    (load l2 (ptr Mutex) once)
    (alloca twice (ptr Mutex))
    (store p twice)
    (load t1 (ptr Mutex) twice)
    (store a twice)
    (load t2 (ptr Mutex) twice)
    (ret)))
(function "app::g" (params (s (ptr State)))
  (block entry (ret)))
"""


def _values():
    m = load(PROGRAM)
    fn = m.function("app::f")
    vals = {p.name: p for p in fn.params}
    for op in fn.iter_ops():
        if op.result is not None:
            vals[op.result.name] = op.result
    vals["G"] = m.globals["G"]
    vals["other_s"] = m.function("app::g").params[0]
    return vals


class TestHelpers:

    def test_strip_casts(self):
        v = _values()
        assert strip_casts(v["c2"]) is v["s"]
        assert strip_casts(v["a"]) is v["a"]

    def test_underlying_object(self):
        v = _values()
        assert underlying_object(v["b"]) is v["s"]
        assert underlying_object(v["l1"]) is v["once"]

    def test_same_owner(self):
        v = _values()
        assert same_owner(v["a"], v["l1"]) is True
        assert same_owner(v["s"], v["other_s"]) is False
        assert same_owner(v["G"], v["s"]) is None


class TestBasicAliasOracle:

    def setup_method(self):
        self.v = _values()
        self.oracle = BasicAliasOracle()

    def alias(self, a, b):
        return self.oracle.must_alias(self.v[a], self.v[b])

    def test_identical_and_cast(self):
        assert self.alias("s", "s")
        assert self.alias("s", "c2")

    def test_same_field_through_casts(self):
        assert self.alias("a", "b")
        assert self.alias("b", "a")

    def test_different_fields(self):
        assert not self.alias("a", "d")

    def test_dynamic_index(self):
        assert self.alias("dyn", "dyn")
        assert not self.alias("a", "dyn")

    def test_loads_from_slot_written_once(self):
        assert self.alias("l1", "l2")

    def test_loads_from_rewritten_slot(self):
        assert not self.alias("t1", "t2")

    def test_distinct_parameters(self):
        assert not self.alias("s", "p")
        assert not self.alias("s", "other_s")
