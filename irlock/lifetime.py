"""
irlock/lifetime.py
══════════════════

Guard-lifetime automaton.

For every lock site the value produced by the acquisition is followed
along its use-edges until each branch reaches a terminal state.  Wrapped
sites start in the *result* automaton (a ``LockResult``-like value that
must be unwrapped); the unwrap call hands over to the *guard* automaton.

Transition table (one entry per consuming operation)::

    consumer                    result walk            guard walk
    ------------------------    -------------------    -------------------
    call unwrap API             UNWRAPPED → guard      MOVED_TO_OPAQUE_CALL
    call pass-through API       continue (result)      MOVED_TO_OPAQUE_CALL
    call deref API              MOVED_TO_OPAQUE_CALL   DEREFERENCED
    call auto-drop API          AUTO_DROPPED           AUTO_DROPPED
    call manual-drop API        MANUAL_DROPPED         MANUAL_DROPPED
    any other call / invoke     MOVED_TO_OPAQUE_CALL   MOVED_TO_OPAQUE_CALL
    memcpy, value is dest       OVERWRITTEN            OVERWRITTEN
    memcpy, value is source     continue (dest obj)    continue (dest obj)
    memset                      OVERWRITTEN            OVERWRITTEN
    store, value is pointer     OVERWRITTEN            OVERWRITTEN
    store, value is stored      continue (slot obj)    continue (slot obj)
    load/cast/gep/extract/
    insert/phi                  continue (result)      continue (result)
    ret                         RETURNED               RETURNED
    anything else               UNKNOWN                UNKNOWN

The kill set of a site is AUTO_DROPPED ∪ MANUAL_DROPPED ∪
MOVED_TO_OPAQUE_CALL over both walks.  RETURNED drives wrapper
propagation: every call site of the enclosing function is re-seeded as a
synthetic lock site.

Public API
──────────
    WalkKind, ResultState, GuardState, Transition
    step(walk, use, table)                        -> Transition
    GuardLifetime
    compute_lifetime(site, table)                 -> GuardLifetime
    propagate_wrappers(sites, lifetimes, cg, cfg) -> (new sites, lifetimes)
"""

from __future__ import annotations

import enum
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, FrozenSet, List, Optional, Set, Tuple, Union

from .alias import underlying_object
from .callgraph import CallGraph
from .classifier import LockSite
from .config import AnalysisConfig
from .ir import OpKind, Operation, Use, Value
from .patterns import ApiKind, PatternTable

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# States
# ---------------------------------------------------------------------------

class WalkKind(enum.Enum):
    RESULT = "result"
    GUARD  = "guard"


class ResultState(enum.Enum):
    MOVED_TO_OTHER_OPERATION = "moved-to-other-operation"
    UNWRAPPED                = "unwrapped"
    AUTO_DROPPED             = "auto-dropped"
    MANUAL_DROPPED           = "manual-dropped"
    MOVED_TO_OPAQUE_CALL     = "moved-to-opaque-call"
    RETURNED                 = "returned"
    OVERWRITTEN              = "overwritten"
    UNKNOWN                  = "unknown"


class GuardState(enum.Enum):
    MOVED_TO_OTHER_OPERATION = "moved-to-other-operation"
    DEREFERENCED             = "dereferenced"
    AUTO_DROPPED             = "auto-dropped"
    MANUAL_DROPPED           = "manual-dropped"
    MOVED_TO_OPAQUE_CALL     = "moved-to-opaque-call"
    RETURNED                 = "returned"
    OVERWRITTEN              = "overwritten"
    UNKNOWN                  = "unknown"


State = Union[ResultState, GuardState]

_STATES = {WalkKind.RESULT: ResultState, WalkKind.GUARD: GuardState}
_KILL_NAMES = ("AUTO_DROPPED", "MANUAL_DROPPED", "MOVED_TO_OPAQUE_CALL")


@dataclass(frozen=True)
class Transition:
    """Outcome of classifying one use-edge.

    ``next_value`` is set for non-terminal transitions (the walk goes on
    from it) and for ``UNWRAPPED`` (the guard walk starts from it).
    """

    state: State
    op: Operation
    next_value: Optional[Value] = None

    @property
    def continues(self) -> bool:
        return self.state.name == "MOVED_TO_OTHER_OPERATION"


# ---------------------------------------------------------------------------
# Transition function
# ---------------------------------------------------------------------------

def _to(walk: WalkKind, name: str, op: Operation,
        next_value: Optional[Value] = None) -> Transition:
    return Transition(_STATES[walk][name], op, next_value)


def _continue(walk: WalkKind, op: Operation, nxt: Optional[Value]) -> Transition:
    if nxt is None:
        return _to(walk, "UNKNOWN", op)
    return _to(walk, "MOVED_TO_OTHER_OPERATION", op, nxt)


def _on_call(walk: WalkKind, use: Use, table: PatternTable) -> Transition:
    op = use.op
    if op.callee is None:
        return _to(walk, "MOVED_TO_OPAQUE_CALL", op)
    api = table.api_kind(op.callee_name)
    if api is ApiKind.UNWRAP and walk is WalkKind.RESULT:
        seed = op.result
        if seed is None or (seed.type is not None and seed.type.is_void):
            seed = underlying_object(op.operands[0]) if op.operands else None
        if seed is None:
            return _to(walk, "UNKNOWN", op)
        return Transition(ResultState.UNWRAPPED, op, seed)
    if api is ApiKind.PASSTHROUGH and walk is WalkKind.RESULT:
        return _continue(walk, op, op.result)
    if api is ApiKind.DEREF and walk is WalkKind.GUARD:
        return Transition(GuardState.DEREFERENCED, op)
    if api is ApiKind.AUTO_DROP:
        return _to(walk, "AUTO_DROPPED", op)
    if api is ApiKind.MANUAL_DROP:
        return _to(walk, "MANUAL_DROPPED", op)
    return _to(walk, "MOVED_TO_OPAQUE_CALL", op)


def _on_memcpy(walk: WalkKind, use: Use, table: PatternTable) -> Transition:
    op = use.op
    if use.index == 0:
        return _to(walk, "OVERWRITTEN", op)
    return _continue(walk, op, underlying_object(op.operands[0]))


def _on_store(walk: WalkKind, use: Use, table: PatternTable) -> Transition:
    op = use.op
    if use.index == 1:
        return _to(walk, "OVERWRITTEN", op)
    return _continue(walk, op, underlying_object(op.operands[1]))


def _on_memset(walk: WalkKind, use: Use, table: PatternTable) -> Transition:
    return _to(walk, "OVERWRITTEN", use.op)


def _on_forward(walk: WalkKind, use: Use, table: PatternTable) -> Transition:
    return _continue(walk, use.op, use.op.result)


def _on_ret(walk: WalkKind, use: Use, table: PatternTable) -> Transition:
    return _to(walk, "RETURNED", use.op)


_Handler = Callable[[WalkKind, Use, PatternTable], Transition]

_DISPATCH: Dict[OpKind, _Handler] = {
    OpKind.CALL:    _on_call,
    OpKind.INVOKE:  _on_call,
    OpKind.MEMCPY:  _on_memcpy,
    OpKind.MEMSET:  _on_memset,
    OpKind.STORE:   _on_store,
    OpKind.LOAD:    _on_forward,
    OpKind.CAST:    _on_forward,
    OpKind.GEP:     _on_forward,
    OpKind.EXTRACT: _on_forward,
    OpKind.INSERT:  _on_forward,
    OpKind.PHI:     _on_forward,
    OpKind.RET:     _on_ret,
}


def step(walk: WalkKind, use: Use, table: PatternTable) -> Transition:
    """Classify the use-edge *use* of the value currently being followed."""
    handler = _DISPATCH.get(use.op.kind)
    if handler is None:
        return _to(walk, "UNKNOWN", use.op)
    return handler(walk, use, table)


# ---------------------------------------------------------------------------
# Walks
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GuardLifetime:
    """Terminal buckets of both walks for one lock site."""

    site: LockSite
    result_states: Dict[ResultState, FrozenSet[Operation]] = field(default_factory=dict)
    guard_states: Dict[GuardState, FrozenSet[Operation]] = field(default_factory=dict)
    unwrapped_values: Tuple[Value, ...] = ()

    def _union(self, name: str) -> FrozenSet[Operation]:
        return self.result_states.get(ResultState[name], frozenset()) | \
            self.guard_states.get(GuardState[name], frozenset())

    @property
    def kill_set(self) -> FrozenSet[Operation]:
        out: FrozenSet[Operation] = frozenset()
        for name in _KILL_NAMES:
            out |= self._union(name)
        return out

    @property
    def auto_dropped(self) -> FrozenSet[Operation]:
        return self._union("AUTO_DROPPED")

    @property
    def manual_dropped(self) -> FrozenSet[Operation]:
        return self._union("MANUAL_DROPPED")

    @property
    def moved_to_opaque(self) -> FrozenSet[Operation]:
        return self._union("MOVED_TO_OPAQUE_CALL")

    @property
    def returned(self) -> FrozenSet[Operation]:
        return self._union("RETURNED")

    @property
    def overwritten(self) -> FrozenSet[Operation]:
        return self._union("OVERWRITTEN")

    @property
    def unknown(self) -> FrozenSet[Operation]:
        return self._union("UNKNOWN")

    @property
    def dereferenced(self) -> FrozenSet[Operation]:
        return self.guard_states.get(GuardState.DEREFERENCED, frozenset())

    @property
    def returned_state(self) -> Optional[WalkKind]:
        """Which walk reached ``ret``: the result takes precedence."""
        if self.result_states.get(ResultState.RETURNED):
            return WalkKind.RESULT
        if self.guard_states.get(GuardState.RETURNED):
            return WalkKind.GUARD
        return None


def _walk(
    walk: WalkKind,
    seeds: List[Value],
    skip: FrozenSet[Operation],
    table: PatternTable,
) -> Tuple[Dict[State, FrozenSet[Operation]], List[Value]]:
    """Breadth-first walk over use-edges from *seeds*.

    Uses by an operation in *skip* (the acquisition itself, and for the
    guard walk the unwrap calls that produced the seeds) are not edges.
    """
    buckets: Dict[State, Set[Operation]] = {}
    handoff: List[Value] = []
    visited: Set[int] = set()
    queue: Deque[Value] = deque(seeds)
    while queue:
        val = queue.popleft()
        if val.id in visited:
            continue
        visited.add(val.id)
        for use in val.uses:
            if use.op in skip:
                continue
            t = step(walk, use, table)
            buckets.setdefault(t.state, set()).add(t.op)
            if t.next_value is None:
                continue
            if t.continues:
                queue.append(t.next_value)
            else:
                handoff.append(t.next_value)
    return {k: frozenset(v) for k, v in buckets.items()}, handoff


def compute_lifetime(site: LockSite, table: PatternTable) -> GuardLifetime:
    """Run the automaton for *site*."""
    result_states: Dict = {}
    seeds = [site.guard]
    skip = frozenset((site.op,))
    if site.wrapped:
        result_states, seeds = _walk(WalkKind.RESULT, [site.guard], skip, table)
        skip = skip | result_states.get(ResultState.UNWRAPPED, frozenset())
    guard_states, _ = _walk(WalkKind.GUARD, seeds, skip, table)
    lifetime = GuardLifetime(site, result_states, guard_states, tuple(seeds) if site.wrapped else ())
    logger.debug(
        "%r: kill=%d returned=%s unknown=%d", site, len(lifetime.kill_set),
        lifetime.returned_state.value if lifetime.returned_state else "-",
        len(lifetime.unknown),
    )
    return lifetime


# ---------------------------------------------------------------------------
# Wrapper propagation
# ---------------------------------------------------------------------------

def propagate_wrappers(
    sites: List[LockSite],
    lifetimes: Dict[LockSite, GuardLifetime],
    call_graph: CallGraph,
    config: Optional[AnalysisConfig] = None,
) -> Tuple[List[LockSite], Dict[LockSite, GuardLifetime]]:
    """Seed synthetic lock sites at call sites of guard-returning functions.

    Returns the synthetic sites (in discovery order) and their lifetimes.
    A synthetic site whose own guard is returned again is propagated one
    level further, up to ``config.max_wrapper_depth`` levels.
    """
    config = config or AnalysisConfig()
    new_sites: List[LockSite] = []
    new_lifetimes: Dict[LockSite, GuardLifetime] = {}
    seen: Set[Tuple[int, ...]] = set()
    worklist: Deque[Tuple[LockSite, int]] = deque((s, 0) for s in sites)

    while worklist:
        site, depth = worklist.popleft()
        lifetime = lifetimes.get(site) or new_lifetimes.get(site)
        if lifetime is None or lifetime.returned_state is None:
            continue
        if depth >= config.max_wrapper_depth:
            logger.info("%r: wrapper depth limit %d reached", site, config.max_wrapper_depth)
            continue
        for call in call_graph.call_sites_of(site.function):
            if call.result is None:
                logger.debug("%r: result of %r discarded", site, call)
                continue
            if config.local_only and (call.location is None or not call.location.is_local):
                continue
            synthetic = LockSite(
                op=call,
                guard=call.result,
                resource=site.resource,
                share_mode=site.share_mode,
                wrapped=lifetime.returned_state is WalkKind.RESULT,
                pattern_name=site.pattern_name,
                synthetic=True,
                origin=site,
            )
            if synthetic.key in seen:
                continue
            seen.add(synthetic.key)
            new_sites.append(synthetic)
            new_lifetimes[synthetic] = compute_lifetime(synthetic, config.patterns)
            worklist.append((synthetic, depth + 1))

    if new_sites:
        logger.info("seeded %d synthetic lock site(s) through wrappers", len(new_sites))
    return new_sites, new_lifetimes
