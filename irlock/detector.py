"""
irlock/detector.py
══════════════════

The double-lock detector: phases wired together as a checker.

Pipeline
────────
  1. ``find_lock_sites``      classify every resolved call
  2. ``compute_lifetime``     guard-lifetime automaton per site
  3. ``build_callgraph``      resolved call edges
  4. ``propagate_wrappers``   synthetic sites at callers of guard-returning functions
  5. ``build_alias_groups``   may-be-the-same-lock relation
  6. ``ReachabilityTracker``  one query per site, sequential

Every phase result is stored in the :class:`CheckerContext` so other
checkers (and the ``locks`` / ``callgraph`` CLI commands) can reuse it.

Lifecycle
─────────
A :class:`Checker` goes through ``configure → collect_evidence →
diagnose → report``.  :func:`analyze_module` runs checkers through that
lifecycle; an unexpected exception in one of them is recorded as a
``checkerInternalError`` note and does not abort the run.

Public API
──────────
    Checker, CheckerContext
    DoubleLockChecker
    DetectionResult
    analyze_module(module, config, oracle, suppressions) -> DetectionResult
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, FrozenSet, List, Optional, Sequence, Tuple, Type

from .alias import AliasOracle, BasicAliasOracle
from .callgraph import CallGraph, build_callgraph
from .classifier import LockSite, find_lock_sites
from .config import AnalysisConfig
from .diagnostics import (
    Confidence,
    Diagnostic,
    DiagnosticSeverity,
    RelatedLocation,
    SourceLocation,
    SuppressionManager,
)
from .errors import ANALYSIS_TRUNCATED, CHECKER_INTERNAL_ERROR, AnalysisNote
from .grouping import AliasGroups, build_alias_groups
from .ir import DebugLocation, Module
from .lifetime import GuardLifetime, compute_lifetime, propagate_wrappers
from .reachability import DoubleLockReport, ReachabilityTracker

logger = logging.getLogger(__name__)

DOUBLE_LOCK = "doubleLock"
CWE_DOUBLE_LOCK = 764


def source_location(loc: Optional[DebugLocation]) -> SourceLocation:
    if loc is None:
        return SourceLocation()
    return SourceLocation(file=loc.file, line=loc.line)


# ═════════════════════════════════════════════════════════════════════════
#  CHECKER BASE CLASS
# ═════════════════════════════════════════════════════════════════════════

@dataclass
class CheckerContext:
    """
    Shared context passed to every checker during execution.

    Attributes
    ----------
    module       : the program graph under analysis
    config       : AnalysisConfig
    oracle       : AliasOracle used for same-function alias questions
    suppressions : SuppressionManager
    analyses     : phase results keyed by name (``sites``, ``lifetimes``,
                   ``call_graph``, ``groups``, ``reports``)
    notes        : recoverable conditions met so far
    stats        : timing and counting statistics
    """
    module: Module
    config: AnalysisConfig = field(default_factory=AnalysisConfig)
    oracle: AliasOracle = field(default_factory=BasicAliasOracle)
    suppressions: SuppressionManager = field(default_factory=SuppressionManager)
    analyses: Dict[str, Any] = field(default_factory=dict)
    notes: List[AnalysisNote] = field(default_factory=list)
    stats: Dict[str, Any] = field(default_factory=dict)

    def get_analysis(self, name: str, default: Any = None) -> Any:
        return self.analyses.get(name, default)

    def set_analysis(self, name: str, result: Any) -> None:
        self.analyses[name] = result

    def note(self, note: AnalysisNote) -> None:
        logger.warning("%s", note)
        self.notes.append(note)


class Checker(ABC):
    """
    Abstract base class for checkers.

    Subclasses set ``name``, ``error_ids`` and ``cwe_ids`` and implement
    ``collect_evidence()`` and ``diagnose()``.
    """

    name: ClassVar[str] = "base-checker"
    description: ClassVar[str] = ""
    error_ids: ClassVar[FrozenSet[str]] = frozenset()
    default_severity: ClassVar[DiagnosticSeverity] = DiagnosticSeverity.WARNING
    cwe_ids: ClassVar[Dict[str, int]] = {}

    def __init__(self) -> None:
        self._diagnostics: List[Diagnostic] = []

    @property
    def diagnostics(self) -> List[Diagnostic]:
        return list(self._diagnostics)

    def configure(self, ctx: CheckerContext) -> None:
        """Called before evidence collection.  Default does nothing."""

    @abstractmethod
    def collect_evidence(self, ctx: CheckerContext) -> None:
        ...

    @abstractmethod
    def diagnose(self, ctx: CheckerContext) -> None:
        ...

    def report(self, ctx: CheckerContext) -> List[Diagnostic]:
        """Final diagnostics, filtered by suppressions."""
        return ctx.suppressions.filter_diagnostics(self._diagnostics)

    def _emit(
        self,
        error_id: str,
        message: str,
        location: Optional[DebugLocation],
        severity: Optional[DiagnosticSeverity] = None,
        confidence: Confidence = Confidence.MEDIUM,
        function: str = "",
        call_chain: Tuple[str, ...] = (),
        secondary: Tuple[RelatedLocation, ...] = (),
        evidence: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._diagnostics.append(Diagnostic(
            error_id=error_id,
            message=message,
            severity=severity or self.default_severity,
            location=source_location(location),
            confidence=confidence,
            cwe=self.cwe_ids.get(error_id, 0),
            checker_name=self.name,
            function=function,
            call_chain=call_chain,
            secondary=secondary,
            evidence=evidence or {},
        ))

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.name}'>"


# ═════════════════════════════════════════════════════════════════════════
#  DOUBLE-LOCK CHECKER (CWE-764)
# ═════════════════════════════════════════════════════════════════════════

class DoubleLockChecker(Checker):
    """
    Flags a lock that is acquired again, directly or through a chain of
    calls, while a guard for the same lock is still alive.
    """

    name = "double-lock"
    description = "Lock acquired again while it is already held"
    error_ids = frozenset({DOUBLE_LOCK})
    default_severity = DiagnosticSeverity.ERROR
    cwe_ids = {DOUBLE_LOCK: CWE_DOUBLE_LOCK}

    def __init__(self) -> None:
        super().__init__()
        self._reports: List[DoubleLockReport] = []

    # ----- evidence ----------------------------------------------------------

    def collect_evidence(self, ctx: CheckerContext) -> None:
        config = ctx.config
        sites, notes = find_lock_sites(ctx.module, config)
        ctx.notes.extend(notes)

        lifetimes: Dict[LockSite, GuardLifetime] = {
            s: compute_lifetime(s, config.patterns) for s in sites
        }
        call_graph = build_callgraph(ctx.module)
        ctx.set_analysis("call_graph", call_graph)

        if config.propagate_wrappers:
            extra, extra_lifetimes = propagate_wrappers(sites, lifetimes, call_graph, config)
            sites = sites + extra
            lifetimes.update(extra_lifetimes)
        sites = sorted(sites)
        ctx.set_analysis("sites", sites)
        ctx.set_analysis("lifetimes", lifetimes)

        groups, notes = build_alias_groups(sites, ctx.oracle)
        ctx.notes.extend(notes)
        ctx.set_analysis("groups", groups)

        self._reports = self._run_queries(ctx, sites, lifetimes, groups, call_graph)
        ctx.set_analysis("reports", self._reports)

    def _run_queries(
        self,
        ctx: CheckerContext,
        sites: Sequence[LockSite],
        lifetimes: Dict[LockSite, GuardLifetime],
        groups: AliasGroups,
        call_graph: CallGraph,
    ) -> List[DoubleLockReport]:
        tracker = ReachabilityTracker(call_graph, ctx.config)
        found: Dict[Tuple, DoubleLockReport] = {}
        steps = 0
        for site in sites:
            group = groups.group(site)
            if not group:
                continue
            try:
                result = tracker.track(site, group, lifetimes[site].kill_set)
            except Exception as exc:
                logger.exception("query for %r failed", site)
                ctx.note(AnalysisNote(
                    CHECKER_INTERNAL_ERROR,
                    f"reachability query for {site.describe()} failed: {exc}",
                    site.location,
                    site.function.name,
                ))
                continue
            steps += result.steps
            if result.truncated:
                ctx.note(AnalysisNote(
                    ANALYSIS_TRUNCATED,
                    f"search from {site.describe()} stopped after "
                    f"{ctx.config.max_steps_per_query} steps; results may be incomplete",
                    site.location,
                    site.function.name,
                ))
            for report in result.reports:
                found.setdefault(report.key, report)
        ctx.stats["query_steps"] = steps
        reports = sorted(found.values())
        logger.info("%d double lock(s) in %d queried site(s)", len(reports), len(sites))
        return reports

    # ----- diagnostics -------------------------------------------------------

    def diagnose(self, ctx: CheckerContext) -> None:
        for report in self._reports:
            first, second = report.first, report.second
            secondary: List[RelatedLocation] = [
                RelatedLocation(source_location(first.location),
                                f"first acquired here: {first.describe()}"),
            ]
            for call in report.call_sites:
                secondary.append(RelatedLocation(source_location(call.location),
                                                 f"calls {call.callee_name}"))
            synthetic = first.synthetic or second.synthetic
            self._emit(
                DOUBLE_LOCK,
                f"possible double lock: {second.describe()} acquires a lock "
                f"already held by {first.describe()}",
                second.location,
                confidence=Confidence.LOW if synthetic else Confidence.MEDIUM,
                function=second.function.name,
                call_chain=report.chain_names,
                secondary=tuple(secondary),
                evidence={
                    "first": {"op": first.op.id, "pattern": first.pattern_name,
                              "mode": first.share_mode.value,
                              "synthetic": first.synthetic},
                    "second": {"op": second.op.id, "pattern": second.pattern_name,
                               "mode": second.share_mode.value,
                               "synthetic": second.synthetic},
                },
            )


# ═════════════════════════════════════════════════════════════════════════
#  RUNNER
# ═════════════════════════════════════════════════════════════════════════

@dataclass
class DetectionResult:
    """Everything one run produced.

    ``reports`` are sorted and free of duplicates; ``diagnostics`` are the
    reports after suppressions, in the same order.
    """
    reports: List[DoubleLockReport] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    notes: List[AnalysisNote] = field(default_factory=list)
    sites: List[LockSite] = field(default_factory=list)
    groups: Optional[AliasGroups] = None
    lifetimes: Dict[LockSite, GuardLifetime] = field(default_factory=dict)
    call_graph: Optional[CallGraph] = None
    stats: Dict[str, Any] = field(default_factory=dict)

    @property
    def error_count(self) -> int:
        return sum(1 for d in self.diagnostics if d.severity is DiagnosticSeverity.ERROR)

    @property
    def has_errors(self) -> bool:
        return self.error_count > 0

    def to_json_lines(self) -> str:
        return "\n".join(d.to_json_str() for d in self.diagnostics)

    def summary(self) -> str:
        return (f"{len(self.sites)} lock site(s), {len(self.reports)} double lock(s), "
                f"{len(self.diagnostics)} diagnostic(s) after suppressions, "
                f"{len(self.notes)} note(s)")


def analyze_module(
    module: Module,
    config: Optional[AnalysisConfig] = None,
    oracle: Optional[AliasOracle] = None,
    suppressions: Optional[SuppressionManager] = None,
    checkers: Sequence[Type[Checker]] = (DoubleLockChecker,),
) -> DetectionResult:
    """Run *checkers* over *module* and collect their results."""
    ctx = CheckerContext(
        module=module,
        config=config or AnalysisConfig(),
        oracle=oracle or BasicAliasOracle(),
        suppressions=suppressions or SuppressionManager(),
    )
    diagnostics: List[Diagnostic] = []
    for cls in checkers:
        checker = cls()
        t0 = time.monotonic()
        try:
            checker.configure(ctx)
            checker.collect_evidence(ctx)
            checker.diagnose(ctx)
            diagnostics.extend(checker.report(ctx))
        except Exception as exc:
            logger.exception("checker %s failed", cls.name)
            ctx.notes.append(AnalysisNote(
                CHECKER_INTERNAL_ERROR, f"checker '{cls.name}' failed: {exc}",
            ))
        ctx.stats[f"{cls.name}_elapsed_ms"] = (time.monotonic() - t0) * 1000.0

    result = DetectionResult(
        reports=list(ctx.get_analysis("reports", [])),
        diagnostics=diagnostics,
        notes=ctx.notes,
        sites=list(ctx.get_analysis("sites", [])),
        groups=ctx.get_analysis("groups"),
        lifetimes=dict(ctx.get_analysis("lifetimes", {})),
        call_graph=ctx.get_analysis("call_graph"),
        stats=ctx.stats,
    )
    logger.info("%s: %s", module.name, result.summary())
    return result
