# tests/test_callgraph.py
"""
Tests for the call graph.
"""

from conftest import INTERPROCEDURAL, load
from irlock.callgraph import NodeKind, build_callgraph

RECURSIVE = """
(function "app::main" (params (s (ptr State)) (fp (ptr i8)))
  (block entry
    (call _ void "app::ping" s (at "src/main.rs" 3 "/work"))
    (call _ void fp s)
    (ret)))
(function "app::ping" (params (s (ptr State)))
  (block entry
    (call _ void "app::pong" s)
    (ret)))
(function "app::pong" (params (s (ptr State)))
  (block entry
    (call _ void "app::ping" s)
    (call _ void "app::pong" s)
    (call _ void "ext::log" s)
    (ret)))
"""


class TestBuildCallgraph:

    def test_nodes_and_edges(self):
        m = load(INTERPROCEDURAL)
        cg = build_callgraph(m)
        outer = cg.node(m.function("app::outer"))
        assert outer.kind is NodeKind.FUNCTION
        assert [n.name for n in outer.callees] == [
            "lock_api::mutex::Mutex<R,T>::lock", "app::inner", "core::ptr::drop_in_place",
        ]
        lock = cg.node(m.function("lock_api::mutex::Mutex<R,T>::lock"))
        assert lock.kind is NodeKind.EXTERNAL
        assert [n.name for n in lock.callers] == ["app::outer", "app::inner"]

    def test_call_sites_of(self):
        m = load(INTERPROCEDURAL)
        cg = build_callgraph(m)
        (call,) = cg.call_sites_of(m.function("app::inner"))
        assert call.function.name == "app::outer"
        assert cg.edge_for(call).callee.name == "app::inner"

    def test_unresolved_calls(self):
        m = load(RECURSIVE)
        cg = build_callgraph(m)
        (edge,) = cg.unknown.in_edges
        assert not edge.resolved
        assert edge.caller.name == "app::main"

    def test_transitive_callees(self):
        m = load(RECURSIVE)
        cg = build_callgraph(m)
        names = [f.name for f in cg.transitive_callees(m.function("app::main"))]
        assert names == ["app::ping", "app::pong", "ext::log"]


class TestRecursion:

    def test_sccs(self):
        cg = build_callgraph(load(RECURSIVE))
        sccs = [sorted(n.name for n in scc) for scc in cg.strongly_connected_components()]
        assert ["app::ping", "app::pong"] in sccs
        assert sccs.index(["ext::log"]) < sccs.index(["app::ping", "app::pong"])
        assert sccs.index(["app::ping", "app::pong"]) < sccs.index(["app::main"])

    def test_self_recursion(self):
        m = load(RECURSIVE)
        cg = build_callgraph(m)
        assert cg.node(m.function("app::pong")).is_recursive
        assert not cg.node(m.function("app::ping")).is_recursive

    def test_statistics(self):
        stats = build_callgraph(load(RECURSIVE)).statistics()
        assert stats == {
            "functions": 3,
            "external_functions": 1,
            "total_edges": 6,
            "resolved_calls": 5,
            "unresolved_calls": 1,
            "recursive_sccs": 1,
            "self_recursive_functions": 1,
        }


class TestDot:

    def test_to_dot(self):
        cg = build_callgraph(load(RECURSIVE))
        dot = cg.to_dot(title="demo")
        assert dot.startswith("digraph CallGraph {")
        assert 'label="demo";' in dot
        assert 'label="app::ping"' in dot
        assert 'label="<unknown>"' in dot
        assert 'label="3"' in dot
        assert "style=dotted, color=red" in dot
        assert dot.rstrip().endswith("}")
