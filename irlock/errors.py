"""irlock/errors.py: exception hierarchy and recoverable analysis notes.

Two kinds of failure exist:

* **Input errors** (bad IR text, bad pattern table) raise a subclass of
  :class:`IrlockError`.  They abort processing of that one input.
* **Analysis conditions** (a lock call with an unexpected shape, a
  resource without a static type, a query that ran out of budget) are
  never raised.  They are recorded as :class:`AnalysisNote` values next
  to the results and logged at WARNING.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .ir import DebugLocation

# Note codes ------------------------------------------------------------------

UNPARSEABLE_LOCK_SITE = "unparseableLockSite"
MISSING_TYPE_INFO = "missingTypeInfo"
ANALYSIS_TRUNCATED = "analysisTruncated"
CHECKER_INTERNAL_ERROR = "checkerInternalError"


class IrlockError(Exception):
    """Base class for all errors raised by irlock."""


@dataclass(frozen=True)
class IRParseError(IrlockError):
    """Raised when IR text cannot be mapped onto the program graph."""

    message: str
    context: Optional[str] = None

    def __str__(self) -> str:
        if self.context:
            return f"{self.context}: {self.message}"
        return self.message


class UnknownValueError(IRParseError):
    """A reference to a value, block, type or function that does not exist."""


class GraphError(IrlockError):
    """Raised when the program graph is internally inconsistent."""


@dataclass(frozen=True)
class PatternConfigError(IrlockError):
    """Raised for a malformed lock-pattern table."""

    message: str
    source: str = "<patterns>"

    def __str__(self) -> str:
        return f"{self.source}: {self.message}"


@dataclass(frozen=True)
class AnalysisNote:
    """A recoverable condition met during analysis."""

    code: str
    message: str
    location: Optional[DebugLocation] = None
    function: str = ""

    def __str__(self) -> str:
        where = f" [{self.location}]" if self.location is not None else ""
        return f"{self.code}{where}: {self.message}"
