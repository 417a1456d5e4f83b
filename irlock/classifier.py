"""
irlock/classifier.py
════════════════════

Recognise lock acquisitions among call sites.

A call whose resolved callee matches a :class:`~irlock.patterns.LockPattern`
becomes a :class:`LockSite` carrying the guard value (call result or
out-parameter), the resource value (the lock object) and the share mode.
A matching call whose argument list is too short for its pattern cannot
be interpreted; it yields an ``unparseableLockSite`` note instead and takes
no further part in the analysis.

Public API
──────────
    LockSite
    classify_call(op, table)                -> LockSite | AnalysisNote | None
    find_lock_sites(module, config)         -> (sites, notes)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

from .config import AnalysisConfig
from .errors import UNPARSEABLE_LOCK_SITE, AnalysisNote, GraphError
from .ir import DebugLocation, Function, Module, Operation, Value
from .patterns import PatternTable, ShareMode

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class LockSite:
    """A recognised lock acquisition.

    ``synthetic`` sites stand at call sites of wrapper functions that
    return a guard; ``origin`` is the site inside the wrapper they stand
    for, and ``resource`` / ``share_mode`` are inherited from it.
    """

    op: Operation
    guard: Value
    resource: Value
    share_mode: ShareMode
    wrapped: bool
    pattern_name: str
    synthetic: bool = False
    origin: Optional["LockSite"] = None

    @property
    def key(self) -> Tuple[int, ...]:
        if self.origin is None:
            return (self.op.id,)
        return (self.op.id,) + self.origin.key

    @property
    def function(self) -> Function:
        fn = self.op.function
        if fn is None:
            raise GraphError(f"lock call #{self.op.id} is not attached to a function")
        return fn

    @property
    def location(self) -> Optional[DebugLocation]:
        return self.op.location

    @property
    def root(self) -> "LockSite":
        """The real acquisition behind a chain of synthetic sites."""
        site = self
        while site.origin is not None:
            site = site.origin
        return site

    @property
    def is_shared(self) -> bool:
        return self.share_mode is ShareMode.SHARED

    def describe(self) -> str:
        via = f" via {self.op.callee_name}" if self.synthetic else ""
        return f"{self.root.op.callee_name}{via} in {self.function.name}"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, LockSite):
            return self.key == other.key
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.key)

    def __lt__(self, other: "LockSite") -> bool:
        return self.key < other.key

    def __repr__(self) -> str:
        tag = "synthetic " if self.synthetic else ""
        return (f"LockSite({tag}{self.pattern_name} @ {self.function.name}"
                f"#{self.op.id}, {self.share_mode.value})")


ClassifyOutcome = Union[LockSite, AnalysisNote, None]


def classify_call(op: Operation, table: PatternTable) -> ClassifyOutcome:
    """Classify one operation against the lock pattern table."""
    if not op.is_resolved_call:
        return None
    pat = table.match_lock(op.callee_name)
    if pat is None:
        return None

    args = op.args
    fn_name = op.function.name if op.function is not None else ""

    def bad(reason: str) -> AnalysisNote:
        return AnalysisNote(
            UNPARSEABLE_LOCK_SITE,
            f"could not parse lock site {op.callee_name} ({pat.name}): {reason}",
            op.location,
            fn_name,
        )

    if len(args) < pat.min_args:
        return bad(f"expected at least {pat.min_args} argument(s), got {len(args)}")
    if pat.resource_arg >= len(args):
        return bad(f"no argument {pat.resource_arg} for the lock object")
    if pat.guard_arg is None:
        guard = op.result
        if guard is None:
            return bad("the guard result is discarded")
    elif pat.guard_arg >= len(args):
        return bad(f"no argument {pat.guard_arg} for the guard slot")
    else:
        guard = args[pat.guard_arg]

    return LockSite(
        op=op,
        guard=guard,
        resource=args[pat.resource_arg],
        share_mode=pat.share_mode,
        wrapped=pat.wrapped,
        pattern_name=pat.name,
    )


def find_lock_sites(
    module: Module,
    config: Optional[AnalysisConfig] = None,
) -> Tuple[List[LockSite], List[AnalysisNote]]:
    """All lock sites of *module* in program order, plus parse notes."""
    config = config or AnalysisConfig()
    sites: List[LockSite] = []
    notes: List[AnalysisNote] = []
    for fn in module.defined_functions():
        for op in fn.iter_ops():
            if not op.is_resolved_call:
                continue
            if config.local_only and (op.location is None or not op.location.is_local):
                continue
            outcome = classify_call(op, config.patterns)
            if isinstance(outcome, LockSite):
                logger.debug("lock site: %r", outcome)
                sites.append(outcome)
            elif isinstance(outcome, AnalysisNote):
                logger.warning("%s", outcome)
                notes.append(outcome)
    logger.info("found %d lock site(s) in %d function(s)",
                len(sites), len(module.defined_functions()))
    return sites, notes
