"""
irlock.callgraph
================

Call graph over the statically resolved call sites of a :class:`~irlock.ir.Module`.

The call graph is a directed graph where:
- **Nodes** are :class:`~irlock.ir.Function` objects, definitions and
  declarations alike, plus one synthetic node that collects unresolved
  (indirect) calls.
- **Edges** are individual call sites ``(caller, call op, callee)``.  Two
  calls from ``f`` to ``g`` are two edges.

Edges and node lists keep module order, so every traversal built on
them is deterministic.

Public API
----------
    CallGraphNode       - a node in the call graph
    CallGraphEdge       - a directed edge (call site)
    CallGraph           - the whole-program call graph
    NodeKind            - defined / external / unknown
    build_callgraph     - build from a Module

Typical usage::

    from irlock.loader import load_module_file
    from irlock.callgraph import build_callgraph

    cg = build_callgraph(load_module_file("app.ir"))
    for node in cg.nodes.values():
        print(node.name, [e.callee.name for e in node.out_edges])
    print(cg.to_dot())
"""

from __future__ import annotations

import enum
import logging
from collections import OrderedDict, deque
from typing import Any, Deque, Dict, List, Optional, Set

from .ir import Function, Module, Operation

logger = logging.getLogger(__name__)


class NodeKind(enum.Enum):
    """Classification of a call-graph node."""

    FUNCTION = "function"      # defined in the module
    EXTERNAL = "external"      # declaration only
    UNKNOWN  = "unknown"       # synthetic sink for unresolved calls


# ---------------------------------------------------------------------------
# CallGraphNode
# ---------------------------------------------------------------------------

class CallGraphNode:
    """A node in the call graph.

    Attributes
    ----------
    id : int
        ``Function.id``, or 0 for the unknown sink.
    name : str
    kind : NodeKind
    function : Function or None
    out_edges : list[CallGraphEdge]
    in_edges : list[CallGraphEdge]
    """

    __slots__ = ("id", "name", "kind", "function", "out_edges", "in_edges")

    def __init__(
        self,
        node_id: int,
        name: str,
        kind: NodeKind = NodeKind.FUNCTION,
        function: Optional[Function] = None,
    ) -> None:
        self.id = node_id
        self.name = name
        self.kind = kind
        self.function = function
        self.out_edges: List[CallGraphEdge] = []
        self.in_edges: List[CallGraphEdge] = []

    @property
    def callees(self) -> List[CallGraphNode]:
        """Distinct direct callees, in first-call order."""
        seen: "OrderedDict[int, CallGraphNode]" = OrderedDict()
        for e in self.out_edges:
            seen.setdefault(e.callee.id, e.callee)
        return list(seen.values())

    @property
    def callers(self) -> List[CallGraphNode]:
        seen: "OrderedDict[int, CallGraphNode]" = OrderedDict()
        for e in self.in_edges:
            seen.setdefault(e.caller.id, e.caller)
        return list(seen.values())

    @property
    def is_recursive(self) -> bool:
        """Does this function call itself (directly)?"""
        return any(e.callee is self for e in self.out_edges)

    def __repr__(self) -> str:
        return f"CallGraphNode({self.name!r}, kind={self.kind.value})"


# ---------------------------------------------------------------------------
# CallGraphEdge
# ---------------------------------------------------------------------------

class CallGraphEdge:
    """One call site."""

    __slots__ = ("caller", "callee", "call_op")

    def __init__(self, caller: CallGraphNode, callee: CallGraphNode,
                 call_op: Operation) -> None:
        self.caller = caller
        self.callee = callee
        self.call_op = call_op

    @property
    def resolved(self) -> bool:
        return self.callee.kind is not NodeKind.UNKNOWN

    def __repr__(self) -> str:
        loc = f" @ {self.call_op.location}" if self.call_op.location else ""
        return f"CallGraphEdge({self.caller.name} -> {self.callee.name}{loc})"


# ---------------------------------------------------------------------------
# CallGraph
# ---------------------------------------------------------------------------

class CallGraph:
    """Whole-module call graph.

    Attributes
    ----------
    nodes : OrderedDict[int, CallGraphNode]
        Keyed by function id, in module order; the unknown sink is last.
    edges : list[CallGraphEdge]
    unknown : CallGraphNode
    """

    def __init__(self, module: Module) -> None:
        self.module = module
        self.nodes: "OrderedDict[int, CallGraphNode]" = OrderedDict()
        self.edges: List[CallGraphEdge] = []
        self.unknown = CallGraphNode(0, "<unknown>", NodeKind.UNKNOWN)
        self._by_op: Dict[int, CallGraphEdge] = {}

    # ----- construction -----------------------------------------------------

    def add_function(self, fn: Function) -> CallGraphNode:
        node = self.nodes.get(fn.id)
        if node is None:
            kind = NodeKind.EXTERNAL if fn.is_declaration else NodeKind.FUNCTION
            node = CallGraphNode(fn.id, fn.name, kind, fn)
            self.nodes[fn.id] = node
        return node

    def add_edge(self, caller: CallGraphNode, callee: CallGraphNode,
                 call_op: Operation) -> CallGraphEdge:
        edge = CallGraphEdge(caller, callee, call_op)
        self.edges.append(edge)
        caller.out_edges.append(edge)
        callee.in_edges.append(edge)
        self._by_op[call_op.id] = edge
        return edge

    # ----- lookups ----------------------------------------------------------

    def node(self, fn: Function) -> Optional[CallGraphNode]:
        return self.nodes.get(fn.id)

    def edge_for(self, call_op: Operation) -> Optional[CallGraphEdge]:
        return self._by_op.get(call_op.id)

    def callees_of(self, fn: Function) -> List[Function]:
        node = self.node(fn)
        if node is None:
            return []
        return [n.function for n in node.callees if n.function is not None]

    def call_sites_of(self, fn: Function) -> List[Operation]:
        """Resolved call operations targeting *fn*, in module order."""
        node = self.node(fn)
        if node is None:
            return []
        return [e.call_op for e in node.in_edges]

    # ----- whole-graph queries ----------------------------------------------

    def transitive_callees(self, fn: Function) -> List[Function]:
        """Functions reachable from *fn* through resolved calls, BFS order."""
        start = self.node(fn)
        if start is None:
            return []
        visited: Set[int] = {start.id}
        order: List[Function] = []
        worklist: Deque[CallGraphNode] = deque([start])
        while worklist:
            n = worklist.popleft()
            for callee in n.callees:
                if callee.id in visited or callee.function is None:
                    continue
                visited.add(callee.id)
                order.append(callee.function)
                worklist.append(callee)
        return order

    def strongly_connected_components(self) -> List[List[CallGraphNode]]:
        """Tarjan's SCCs, callees before callers."""
        counter = 0
        stack: List[CallGraphNode] = []
        lowlink: Dict[int, int] = {}
        index: Dict[int, int] = {}
        on_stack: Set[int] = set()
        result: List[List[CallGraphNode]] = []

        def strongconnect(v: CallGraphNode) -> None:
            nonlocal counter
            index[v.id] = lowlink[v.id] = counter
            counter += 1
            stack.append(v)
            on_stack.add(v.id)
            for w in v.callees:
                if w.id not in index:
                    strongconnect(w)
                    lowlink[v.id] = min(lowlink[v.id], lowlink[w.id])
                elif w.id in on_stack:
                    lowlink[v.id] = min(lowlink[v.id], index[w.id])
            if lowlink[v.id] == index[v.id]:
                scc: List[CallGraphNode] = []
                while True:
                    w = stack.pop()
                    on_stack.discard(w.id)
                    scc.append(w)
                    if w.id == v.id:
                        break
                result.append(scc)

        for v in self.nodes.values():
            if v.id not in index:
                strongconnect(v)
        return result

    # ----- statistics -------------------------------------------------------

    def statistics(self) -> Dict[str, Any]:
        """Return a dict with summary statistics."""
        sccs = self.strongly_connected_components()
        return {
            "functions": sum(1 for n in self.nodes.values()
                             if n.kind is NodeKind.FUNCTION),
            "external_functions": sum(1 for n in self.nodes.values()
                                      if n.kind is NodeKind.EXTERNAL),
            "total_edges": len(self.edges),
            "resolved_calls": sum(1 for e in self.edges if e.resolved),
            "unresolved_calls": sum(1 for e in self.edges if not e.resolved),
            "recursive_sccs": sum(1 for scc in sccs if len(scc) > 1),
            "self_recursive_functions": sum(1 for n in self.nodes.values()
                                            if n.is_recursive),
        }

    # ----- serialisation ----------------------------------------------------

    def to_dot(self, title: Optional[str] = None) -> str:
        """Return a Graphviz DOT representation."""
        lines = ["digraph CallGraph {", "  rankdir=TB;"]
        if title:
            lines.append(f'  label="{title}";')
        lines.append('  node [shape=box, fontname="Helvetica", fontsize=10];')
        kind_attrs = {
            NodeKind.FUNCTION: 'style=filled, fillcolor="#ddeeff"',
            NodeKind.EXTERNAL: 'style=filled, fillcolor="#fff3cd", shape=ellipse',
            NodeKind.UNKNOWN:  'style=filled, fillcolor="#ffcccc", shape=diamond',
        }
        nodes = list(self.nodes.values())
        if self.unknown.in_edges:
            nodes.append(self.unknown)
        for n in nodes:
            escaped = n.name.replace('"', '\\"')
            lines.append(f'  "n{n.id}" [label="{escaped}", {kind_attrs[n.kind]}];')
        for e in self.edges:
            attrs: List[str] = []
            if e.call_op.location is not None:
                attrs.append(f'label="{e.call_op.location.line}"')
            if not e.resolved:
                attrs.append("style=dotted, color=red")
            suffix = f" [{', '.join(attrs)}]" if attrs else ""
            lines.append(f'  "n{e.caller.id}" -> "n{e.callee.id}"{suffix};')
        lines.append("}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"CallGraph(nodes={len(self.nodes)}, edges={len(self.edges)})"


def build_callgraph(module: Module) -> CallGraph:
    """Build the call graph of *module*."""
    cg = CallGraph(module)
    for fn in module.functions.values():
        cg.add_function(fn)
    for fn in module.defined_functions():
        caller = cg.nodes[fn.id]
        for op in fn.call_ops():
            if op.callee is not None:
                cg.add_edge(caller, cg.add_function(op.callee), op)
            else:
                cg.add_edge(caller, cg.unknown, op)
    logger.debug("call graph: %d nodes, %d edges", len(cg.nodes), len(cg.edges))
    return cg
