"""irlock/config.py: analysis tuning knobs."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any

from .patterns import PatternTable, default_patterns


@dataclass(frozen=True)
class AnalysisConfig:
    """Settings shared by every phase of one detection run.

    Attributes
    ----------
    max_steps_per_query : int
        Upper bound on operations visited by a single reachability query.
        A query that hits it stops and records ``analysisTruncated``.
    max_wrapper_depth : int
        How many wrapper levels a returned guard is followed through.
    propagate_wrappers : bool
        Seed synthetic lock sites at call sites of functions that return a
        guard or lock result.
    local_only : bool
        Ignore lock sites whose debug location has no directory, i.e. code
        that was not compiled from the crate under analysis.
    descend_into_library : bool
        Let the tracker enter bodies of functions matched by the pattern
        table.  Off by default: their internals are the lock itself.
    patterns : PatternTable
    """

    max_steps_per_query: int = 200_000
    max_wrapper_depth: int = 8
    propagate_wrappers: bool = True
    local_only: bool = False
    descend_into_library: bool = False
    patterns: PatternTable = field(default_factory=default_patterns, compare=False)

    def __post_init__(self) -> None:
        if self.max_steps_per_query <= 0:
            raise ValueError("max_steps_per_query must be positive")
        if self.max_wrapper_depth < 0:
            raise ValueError("max_wrapper_depth must be non-negative")

    def merged(self, **overrides: Any) -> "AnalysisConfig":
        """Copy with *overrides* applied; ``None`` values are ignored."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return dataclasses.replace(self, **changes)
