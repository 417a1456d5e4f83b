"""
irlock: interprocedural double-lock detection over a textual IR
================================================================

Finds control-flow paths, possibly spanning several functions, on which
a mutex or rwlock that is already held is acquired again before its
guard is released.

Core modules
------------
ir
    Program graph: modules, functions, blocks, operations, values.
loader
    S-expression IR text → program graph.
patterns
    Declarative table of lock acquisitions and guard APIs.
classifier
    Lock-site recognition.
lifetime
    Guard-lifetime automaton, kill sets, wrapper propagation.
identity / alias / grouping
    Which lock sites may denote the same lock.
callgraph
    Resolved call edges, SCCs, DOT output.
reachability
    Per-site interprocedural search for a second acquisition.
detector
    The pipeline as a checker; :func:`analyze_module`.
diagnostics / reporter
    Diagnostic model, suppressions, text/json/gcc output.

Quick start
-----------
>>> from irlock import load_module_file, analyze_module
>>> result = analyze_module(load_module_file("app.ir"))
>>> for report in result.reports:
...     print(" -> ".join(report.chain_names))
"""

from __future__ import annotations

import importlib
import logging
import sys
from typing import Dict, List

# ---------------------------------------------------------------------------
# Package metadata
# ---------------------------------------------------------------------------

__version__ = "0.4.0"
__all__: List[str] = []          # populated below

_log = logging.getLogger(__name__)
_log.addHandler(logging.NullHandler())

# ---------------------------------------------------------------------------
# Public surface, by submodule
# ---------------------------------------------------------------------------

_CORE_MODULES: Dict[str, List[str]] = {
    "errors": [
        "IrlockError", "IRParseError", "UnknownValueError", "PatternConfigError",
        "AnalysisNote",
    ],
    "ir": [
        "Module", "Function", "BasicBlock", "Operation", "Value", "Use",
        "IRType", "DebugLocation", "OpKind", "TypeKind", "ValueKind",
    ],
    "loader": ["load_module", "load_module_file"],
    "patterns": [
        "ShareMode", "MatchKind", "ApiKind", "NameMatcher", "LockPattern",
        "ApiPattern", "PatternTable", "default_patterns", "load_patterns",
        "load_patterns_file",
    ],
    "config": ["AnalysisConfig"],
    "classifier": ["LockSite", "classify_call", "find_lock_sites"],
    "lifetime": [
        "ResultState", "GuardState", "GuardLifetime", "compute_lifetime",
        "propagate_wrappers",
    ],
    "alias": ["AliasOracle", "BasicAliasOracle"],
    "identity": ["IdentityKind", "ResourceIdentity", "resolve_identity"],
    "grouping": ["AliasGroups", "build_alias_groups"],
    "callgraph": ["CallGraph", "CallGraphNode", "CallGraphEdge", "build_callgraph"],
    "reachability": ["DoubleLockReport", "QueryResult", "ReachabilityTracker"],
    "diagnostics": [
        "Diagnostic", "DiagnosticSeverity", "Confidence", "SourceLocation",
        "SuppressionManager",
    ],
    "detector": [
        "Checker", "CheckerContext", "DoubleLockChecker", "DetectionResult",
        "analyze_module",
    ],
    "reporter": ["Reporter"],
}


def _import_names(module_rel_name: str, names: List[str]) -> None:
    """Import *names* from a submodule and bind them in the package namespace.

    A missing name is a packaging bug and raises ``AttributeError``.
    """
    mod = importlib.import_module(f"{__name__}.{module_rel_name}")
    current_module = sys.modules[__name__]
    for name in names:
        obj = getattr(mod, name, None)
        if obj is None:
            raise AttributeError(f"irlock.{module_rel_name} does not export '{name}'")
        setattr(current_module, name, obj)
        __all__.append(name)
    setattr(current_module, module_rel_name, mod)
    if module_rel_name not in __all__:
        __all__.append(module_rel_name)


for _mod, _names in _CORE_MODULES.items():
    _import_names(_mod, _names)

del _mod, _names

__all__ += ["__version__"]
