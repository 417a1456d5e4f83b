"""
irlock/reachability.py
══════════════════════

Interprocedural search for a second acquisition while a lock is held.

One query starts right after a lock site ``L`` and walks forward over the
control-flow graph of ``L``'s function.  Operations are visited in
program order inside each block:

* an operation where a member of ``L``'s alias group acquires the lock
  is a double lock: it is reported and that path ends;
* an operation in ``L``'s kill set ends the path silently;
* a call with a resolved, defined callee enters the callee's body under
  the same rules (depth first, each function at most once per query).  A
  detection inside the callee ends the caller's path at that call;
* anything else lets the walk go on.

The descent uses an explicit frame stack, so deep call chains do not
consume Python stack.  A ``callee → (caller, call op)`` parent map is kept
alongside and walked back to rebuild the call chain of every report.

Public API
──────────
    DoubleLockReport
    QueryResult
    ReachabilityTracker(call_graph, config).track(site, group, kill_set)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Sequence, Set, Tuple

from .callgraph import CallGraph
from .classifier import LockSite
from .config import AnalysisConfig
from .errors import GraphError
from .ir import BasicBlock, DebugLocation, Function, Operation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DoubleLockReport:
    """A path on which ``second`` acquires the lock ``first`` still holds.

    ``call_chain`` runs from ``first``'s function down to the function
    containing ``second``; ``call_sites`` are the calls linking them, so
    ``len(call_sites) == len(call_chain) - 1``.  ``locations`` lists the
    first lock, every call site, then the second lock.
    """

    first: LockSite
    second: LockSite
    call_chain: Tuple[Function, ...]
    call_sites: Tuple[Operation, ...] = ()

    @property
    def locations(self) -> Tuple[Optional[DebugLocation], ...]:
        return (self.first.location,) + \
            tuple(op.location for op in self.call_sites) + \
            (self.second.location,)

    @property
    def key(self) -> Tuple:
        return (self.first.key, self.second.key,
                tuple(f.id for f in self.call_chain),
                tuple(op.id for op in self.call_sites))

    @property
    def chain_names(self) -> Tuple[str, ...]:
        return tuple(f.name for f in self.call_chain)

    def __lt__(self, other: "DoubleLockReport") -> bool:
        return self.key < other.key


@dataclass
class QueryResult:
    site: LockSite
    reports: List[DoubleLockReport] = field(default_factory=list)
    truncated: bool = False
    steps: int = 0


class _Frame:
    """Traversal state of one function body inside a query."""

    __slots__ = ("fn", "pending", "cursor", "found")

    def __init__(self, fn: Function, start: BasicBlock, index: int = 0) -> None:
        self.fn = fn
        self.pending: List[Tuple[BasicBlock, int]] = [(start, index)]
        self.cursor: Optional[Tuple[BasicBlock, int]] = None
        self.found = False


class ReachabilityTracker:
    """Runs independent per-site queries over finalized facts."""

    def __init__(self, call_graph: CallGraph, config: Optional[AnalysisConfig] = None) -> None:
        self.call_graph = call_graph
        self.config = config or AnalysisConfig()

    # ----- helpers -----------------------------------------------------------

    def _enterable(self, op: Operation, visited_fns: Set[int]) -> Optional[Function]:
        callee = op.callee
        if callee is None or callee.is_declaration or callee.id in visited_fns:
            return None
        if not self.config.descend_into_library and \
                self.config.patterns.is_library(callee.name):
            return None
        return callee

    @staticmethod
    def _chain(
        root: Function,
        fn: Function,
        parents: Dict[int, Tuple[Function, Operation]],
    ) -> Tuple[Tuple[Function, ...], Tuple[Operation, ...]]:
        funcs: List[Function] = [fn]
        calls: List[Operation] = []
        seen: Set[int] = {fn.id}
        cur = fn
        while cur is not root and cur.id in parents:
            caller, call_op = parents[cur.id]
            if caller.id in seen:
                logger.warning("cycle in parent map at %s; chain cut", caller.name)
                break
            seen.add(caller.id)
            funcs.append(caller)
            calls.append(call_op)
            cur = caller
        funcs.reverse()
        calls.reverse()
        return tuple(funcs), tuple(calls)

    # ----- query -------------------------------------------------------------

    def track(
        self,
        site: LockSite,
        group: Sequence[LockSite],
        kill_set: FrozenSet[Operation],
    ) -> QueryResult:
        """Search forward from *site* for members of *group*."""
        result = QueryResult(site)
        if not group:
            return result

        members: Dict[int, LockSite] = {}
        for other in sorted(group):
            members.setdefault(other.op.id, other)

        root = site.function
        block = site.op.block
        if block is None:
            raise GraphError(f"lock call #{site.op.id} is not attached to a block")
        budget = self.config.max_steps_per_query
        visited_blocks: Set[int] = set()
        visited_fns: Set[int] = {root.id}
        parents: Dict[int, Tuple[Function, Operation]] = {}
        stack: List[_Frame] = [_Frame(root, block, block.index_of(site.op) + 1)]

        while stack:
            frame = stack[-1]
            if frame.cursor is None:
                if not frame.pending:
                    stack.pop()
                    if stack and frame.found:
                        # The caller's path ends at the call that led here.
                        stack[-1].found = True
                        stack[-1].cursor = None
                    continue
                frame.cursor = frame.pending.pop()

            bb, idx = frame.cursor
            if idx >= len(bb.ops):
                for succ in reversed(bb.successors):
                    if succ.id not in visited_blocks:
                        visited_blocks.add(succ.id)
                        frame.pending.append((succ, 0))
                frame.cursor = None
                continue

            op = bb.ops[idx]
            frame.cursor = (bb, idx + 1)
            result.steps += 1
            if result.steps > budget:
                result.truncated = True
                logger.warning("%r: query stopped after %d steps", site, budget)
                break

            second = members.get(op.id)
            if second is not None:
                chain, calls = self._chain(root, frame.fn, parents)
                report = DoubleLockReport(site, second, chain, calls)
                logger.debug("double lock: %r -> %r via %s", site, second,
                             " -> ".join(report.chain_names))
                result.reports.append(report)
                frame.found = True
                frame.cursor = None
                continue
            if op in kill_set:
                frame.cursor = None
                continue
            if op.is_resolved_call:
                callee = self._enterable(op, visited_fns)
                if callee is not None and callee.entry is not None:
                    visited_fns.add(callee.id)
                    parents[callee.id] = (frame.fn, op)
                    visited_blocks.add(callee.entry.id)
                    stack.append(_Frame(callee, callee.entry))

        return result
