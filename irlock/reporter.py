"""
irlock/reporter.py
══════════════════

Render diagnostics for people and for tools.

Output formats
──────────────
  • text : Rust-style rendering, coloured with termcolor on a TTY
  • json : one JSON object per line
  • gcc  : ``file:line: severity: message [id]``

Usage
─────
    with Reporter(sys.stdout, fmt="text") as rep:
        for diag in result.diagnostics:
            rep.emit(diag)
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, TextIO, Union

from termcolor import colored

from .diagnostics import Diagnostic, DiagnosticSeverity

FORMATS = ("text", "json", "gcc")

_SEVERITY_COLOURS: Dict[DiagnosticSeverity, str] = {
    DiagnosticSeverity.ERROR: "red",
    DiagnosticSeverity.WARNING: "yellow",
    DiagnosticSeverity.INFORMATION: "cyan",
}


@dataclass
class ReporterStats:
    """Aggregate counts per severity."""
    error: int = 0
    warning: int = 0
    information: int = 0

    def record(self, severity: DiagnosticSeverity) -> None:
        attr = severity.value
        setattr(self, attr, getattr(self, attr) + 1)

    @property
    def total(self) -> int:
        return self.error + self.warning + self.information

    def summary_line(self) -> str:
        parts: List[str] = []
        if self.error:
            parts.append(f"{self.error} error{'s' if self.error != 1 else ''}")
        if self.warning:
            parts.append(f"{self.warning} warning{'s' if self.warning != 1 else ''}")
        if self.information:
            parts.append(f"{self.information} info")
        if not parts:
            return "no double locks found"
        return "; ".join(parts) + f" ({self.total} total)"


# ═════════════════════════════════════════════════════════════════════════
#  RENDERERS
# ═════════════════════════════════════════════════════════════════════════

class _TextRenderer:
    """Multi-line rendering with call-chain notes.

    With ``colour=False`` the same layout is written without escape codes.
    """

    def __init__(self, stream: TextIO, colour: bool) -> None:
        self._stream = stream
        self._colour = colour

    def _c(self, text: str, color: Optional[str] = None,
           attrs: Optional[List[str]] = None) -> str:
        if not self._colour:
            return text
        return colored(text, color, attrs=attrs, force_color=True)

    def render(self, diag: Diagnostic) -> None:
        lines: List[str] = []
        colour = _SEVERITY_COLOURS[diag.severity]
        head = self._c(f"{diag.severity.value}[{diag.error_id}]", colour, ["bold"])
        lines.append(f"{head}: {self._c(diag.message, attrs=['bold'])}")

        arrow = self._c("-->", "blue", ["bold"])
        lines.append(f"  {arrow} {diag.location}")

        if len(diag.call_chain) > 1:
            chain = " -> ".join(diag.call_chain)
            lines.append(f"  = {self._c('call chain', 'cyan', ['bold'])}: {chain}")
        for rel in diag.secondary:
            lines.append(f"  = {self._c('note', 'cyan', ['bold'])}: {rel.message}")
            lines.append(f"    {arrow} {rel.location}")

        if diag.cwe:
            cwe = self._c(f"CWE-{diag.cwe}", "blue", ["underline"])
            lines.append(f"  = {cwe}: https://cwe.mitre.org/data/definitions/{diag.cwe}.html")
        lines.append(f"  = confidence: {diag.confidence.name.lower()}")
        lines.append("")
        self._stream.write("\n".join(lines) + "\n")

    def finish(self, stats: ReporterStats) -> None:
        summary = stats.summary_line()
        if not self._colour:
            self._stream.write(f"{summary}\n")
            return
        colour = "red" if stats.error else "yellow" if stats.total else "green"
        self._stream.write(colored(summary, colour, attrs=["bold"], force_color=True) + "\n")


class _JsonRenderer:
    def __init__(self, stream: TextIO) -> None:
        self._stream = stream

    def render(self, diag: Diagnostic) -> None:
        self._stream.write(diag.to_json_str() + "\n")

    def finish(self, stats: ReporterStats) -> None:
        pass


class _GccRenderer:
    def __init__(self, stream: TextIO) -> None:
        self._stream = stream

    def render(self, diag: Diagnostic) -> None:
        self._stream.write(diag.to_gcc_format() + "\n")
        for rel in diag.secondary:
            self._stream.write(f"{rel.location}: note: {rel.message}\n")

    def finish(self, stats: ReporterStats) -> None:
        pass


_Renderer = Union[_TextRenderer, _JsonRenderer, _GccRenderer]


# ═════════════════════════════════════════════════════════════════════════
#  REPORTER
# ═════════════════════════════════════════════════════════════════════════

class Reporter:
    """
    Write diagnostics to *stream* in one of :data:`FORMATS`.

    ``colour=None`` colours text output only when *stream* is a TTY.
    """

    def __init__(
        self,
        stream: TextIO = sys.stdout,
        fmt: str = "text",
        colour: Optional[bool] = None,
    ) -> None:
        if fmt not in FORMATS:
            raise ValueError(f"unknown output format {fmt!r}; expected one of {FORMATS}")
        self.fmt = fmt
        self.stats = ReporterStats()
        self._finished = False
        if fmt == "json":
            self._renderer: _Renderer = _JsonRenderer(stream)
        elif fmt == "gcc":
            self._renderer = _GccRenderer(stream)
        else:
            use_colour = colour if colour is not None else \
                hasattr(stream, "isatty") and stream.isatty()
            self._renderer = _TextRenderer(stream, use_colour)

    def __enter__(self) -> "Reporter":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if exc_type is None:
            self.finish()

    def emit(self, diag: Diagnostic) -> None:
        self.stats.record(diag.severity)
        self._renderer.render(diag)

    def emit_all(self, diagnostics: Iterable[Diagnostic]) -> None:
        for diag in diagnostics:
            self.emit(diag)

    def finish(self) -> ReporterStats:
        """Write the summary line (text format only)."""
        if not self._finished:
            self._finished = True
            self._renderer.finish(self.stats)
        return self.stats
