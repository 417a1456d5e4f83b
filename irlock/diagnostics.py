"""
irlock/diagnostics.py
═════════════════════

Diagnostic model shared by the detector, the reporter and the CLI.

A :class:`Diagnostic` is the user-facing form of a finding: a primary
location, a message, a severity, a CWE tag and secondary locations (the
call chain for a double lock).  :class:`SuppressionManager` filters
diagnostics by error id globally, by file pattern, or by function name
anywhere on the reported call chain.
"""

from __future__ import annotations

import json
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum, auto
from fnmatch import fnmatch
from typing import Any, Dict, Iterable, List, Set, Tuple


class DiagnosticSeverity(Enum):
    ERROR = "error"
    WARNING = "warning"
    INFORMATION = "information"


class Confidence(Enum):
    """
    How certain we are that the diagnostic is a true positive.

    MEDIUM - both acquisitions are direct lock calls
    LOW    - one side was inferred through a guard-returning wrapper
    """
    MEDIUM = auto()
    LOW = auto()


@dataclass(frozen=True)
class SourceLocation:
    """A specific point in source code."""
    file: str = ""
    line: int = 0
    column: int = 0

    def __str__(self) -> str:
        if not self.file:
            return "<unknown>"
        if self.column:
            return f"{self.file}:{self.line}:{self.column}"
        return f"{self.file}:{self.line}"


@dataclass(frozen=True)
class RelatedLocation:
    location: SourceLocation
    message: str


@dataclass(frozen=True)
class Diagnostic:
    """
    A single diagnostic finding.

    Attributes
    ----------
    error_id     : Unique identifier (e.g., "doubleLock")
    message      : Human-readable description
    severity     : DiagnosticSeverity
    location     : Primary source location (the second acquisition)
    confidence   : Confidence level
    cwe          : CWE identifier (0 = none)
    checker_name : Name of the checker that produced this
    function     : Function containing the primary location
    call_chain   : Function names from the first lock down to the second
    secondary    : Related locations (first lock, intermediate calls)
    evidence     : Machine-readable evidence dict for downstream tooling
    """
    error_id: str
    message: str
    severity: DiagnosticSeverity
    location: SourceLocation
    confidence: Confidence = Confidence.MEDIUM
    cwe: int = 0
    checker_name: str = ""
    function: str = ""
    call_chain: Tuple[str, ...] = ()
    secondary: Tuple[RelatedLocation, ...] = ()
    evidence: Dict[str, Any] = field(default_factory=dict, compare=False)

    def to_json_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "file": self.location.file,
            "linenr": self.location.line,
            "column": self.location.column,
            "severity": self.severity.value,
            "message": self.message,
            "errorId": self.error_id,
            "confidence": self.confidence.name.lower(),
        }
        if self.cwe:
            result["cwe"] = self.cwe
        if self.function:
            result["function"] = self.function
        if self.call_chain:
            result["callChain"] = list(self.call_chain)
        if self.secondary:
            result["related"] = [
                {"file": r.location.file, "linenr": r.location.line, "message": r.message}
                for r in self.secondary
            ]
        if self.evidence:
            result["evidence"] = self.evidence
        return result

    def to_json_str(self) -> str:
        """Single-line JSON string."""
        return json.dumps(self.to_json_dict(), sort_keys=True)

    def to_gcc_format(self) -> str:
        """GCC-style diagnostic string: file:line:col: severity: message."""
        return f"{self.location}: {self.severity.value}: {self.message} [{self.error_id}]"


class SuppressionManager:
    """
    Manages diagnostic suppressions from multiple sources.

    Sources:
      1. Global suppressions: ``doubleLock``
      2. File-level suppressions: ``doubleLock`` in files matching a glob
      3. Function-level suppressions: ``doubleLock`` when any function on
         the reported call chain matches a glob

    Usage
    -----
    >>> sm = SuppressionManager()
    >>> sm.add_global_suppression("missingTypeInfo")
    >>> sm.add_file_suppression("doubleLock", "vendor/*")
    >>> sm.add_function_suppression("doubleLock", "*::tests::*")
    >>> kept = sm.filter_diagnostics(diags)
    """

    def __init__(self) -> None:
        self._global: Set[str] = set()
        self._file_level: Dict[str, Set[str]] = defaultdict(set)
        self._function_level: Dict[str, Set[str]] = defaultdict(set)

    def add_global_suppression(self, error_id: str) -> None:
        self._global.add(error_id)

    def add_file_suppression(self, error_id: str, file_pattern: str) -> None:
        self._file_level[file_pattern].add(error_id)

    def add_function_suppression(self, error_id: str, function_pattern: str) -> None:
        self._function_level[function_pattern].add(error_id)

    def add_from_spec(self, spec: str) -> None:
        """Parse ``ID``, ``ID:FILEGLOB`` or ``ID@FUNCGLOB``."""
        if "@" in spec:
            eid, pattern = spec.split("@", 1)
            self.add_function_suppression(eid, pattern)
        elif ":" in spec:
            eid, pattern = spec.split(":", 1)
            self.add_file_suppression(eid, pattern)
        else:
            self.add_global_suppression(spec)

    def is_suppressed(self, diag: Diagnostic) -> bool:
        """Check whether a diagnostic should be suppressed."""
        eid = diag.error_id
        if eid in self._global or "*" in self._global:
            return True

        path = diag.location.file
        for pattern, ids in self._file_level.items():
            if (eid in ids or "*" in ids) and path and \
                    (pattern == path or path.endswith(pattern) or fnmatch(path, pattern)):
                return True

        functions = diag.call_chain or ((diag.function,) if diag.function else ())
        for pattern, ids in self._function_level.items():
            if eid in ids or "*" in ids:
                if any(fnmatch(name, pattern) for name in functions):
                    return True
        return False

    def filter_diagnostics(self, diagnostics: Iterable[Diagnostic]) -> List[Diagnostic]:
        """Return only non-suppressed diagnostics."""
        return [d for d in diagnostics if not self.is_suppressed(d)]
