#!/usr/bin/env python3
"""irlock/cli.py: command-line entry point.

Usage examples
--------------
    # Look for double locks
    irlock scan app.ir

    # Same, with a custom pattern table and machine-readable output
    irlock scan app.ir --patterns locks.sexp -f json -o findings.jsonl

    # Silence findings whose call chain runs through test code
    irlock scan app.ir --suppress 'doubleLock@*::tests::*'

    # List every recognised lock acquisition
    irlock locks app.ir

    # Call-graph statistics, or Graphviz DOT
    irlock callgraph app.ir --dot -o app.dot

Exit codes
----------
    0   Success, no double lock reported.
    1   One or more double locks were reported.
    2   Infrastructure failure (missing file, unparseable IR or pattern
        table, bad usage, internal error).

The module doubles as ``python -m irlock`` via ``irlock/__main__.py``.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import textwrap
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, TextIO, Tuple

from . import __version__
from .callgraph import build_callgraph
from .config import AnalysisConfig
from .detector import DetectionResult, analyze_module, source_location
from .diagnostics import SuppressionManager
from .errors import IrlockError
from .ir import Module
from .loader import load_module_file
from .patterns import load_patterns_file
from .reporter import FORMATS, Reporter

_log = logging.getLogger("irlock")

# Exit codes ----------------------------------------------------------------

EXIT_OK: int = 0
EXIT_ERROR: int = 1
EXIT_INFRA: int = 2


# ===========================================================================
# Utility helpers
# ===========================================================================

def _configure_logging(verbosity: int) -> None:
    """Set up the ``irlock`` logger.

    Parameters
    ----------
    verbosity:
        0 → WARNING, 1 → INFO, 2+ → DEBUG.
    """
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s [%(levelname)-5.5s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )
    )
    root = logging.getLogger("irlock")
    root.setLevel(level)
    # Repeated main() calls in one process replace the handler.
    root.handlers[:] = [handler]


def _resolve_path(raw: str, label: str = "file") -> Path:
    """Resolve *raw* to an absolute ``Path``, raising on missing files."""
    p = Path(raw).expanduser().resolve()
    if not p.exists():
        _log.error("%s not found: %s", label, p)
        raise SystemExit(EXIT_INFRA)
    return p


def _open_output(dest: Optional[str]) -> TextIO:
    """Return a writable text stream.

    *dest* ``None`` or ``"-"`` → ``sys.stdout``; otherwise open the path
    for writing (creating parent directories as needed).
    """
    if dest is None or dest == "-":
        return sys.stdout
    p = Path(dest).expanduser().resolve()
    p.parent.mkdir(parents=True, exist_ok=True)
    return open(p, "w", encoding="utf-8")


def _close_output(stream: TextIO) -> None:
    if stream is not sys.stdout:
        stream.close()


def _load_inputs(args: argparse.Namespace) -> Tuple[Module, AnalysisConfig]:
    """Load the IR file and build the analysis config from flags."""
    ir_path = _resolve_path(args.ir_file, "IR file")
    config = AnalysisConfig()
    if getattr(args, "patterns", None):
        patterns_path = _resolve_path(args.patterns, "pattern table")
        try:
            config = config.merged(patterns=load_patterns_file(patterns_path))
        except IrlockError as exc:
            _log.error("Failed to load pattern table: %s", exc)
            raise SystemExit(EXIT_INFRA)

    config = config.merged(
        max_steps_per_query=getattr(args, "max_steps", None),
        max_wrapper_depth=getattr(args, "max_wrapper_depth", None),
        propagate_wrappers=False if getattr(args, "no_wrappers", False) else None,
        local_only=True if getattr(args, "local_only", False) else None,
        descend_into_library=True if getattr(args, "descend_into_library", False) else None,
    )

    _log.info("Loading IR: %s", ir_path)
    try:
        module = load_module_file(ir_path)
    except IrlockError as exc:
        _log.error("Failed to parse IR: %s", exc)
        raise SystemExit(EXIT_INFRA)
    return module, config


# ===========================================================================
# Sub-command implementations
# ===========================================================================

def cmd_scan(args: argparse.Namespace) -> int:
    """Run double-lock detection and report the findings."""
    module, config = _load_inputs(args)

    suppressions = SuppressionManager()
    for spec in args.suppress or ():
        suppressions.add_from_spec(spec)

    result = analyze_module(module, config, suppressions=suppressions)
    for note in result.notes:
        _log.info("note: %s", note)

    stream = _open_output(args.output)
    try:
        with Reporter(stream, fmt=args.format, colour=args.colour) as rep:
            rep.emit_all(result.diagnostics)
    finally:
        _close_output(stream)

    _log.info("%s", result.summary())
    return EXIT_ERROR if result.has_errors else EXIT_OK


def _site_record(result: DetectionResult, site: Any) -> Dict[str, Any]:
    lifetime = result.lifetimes.get(site)
    group = result.groups.group(site) if result.groups is not None else ()
    loc = source_location(site.location)
    return {
        "function": site.function.name,
        "callee": site.op.callee_name,
        "pattern": site.pattern_name,
        "mode": site.share_mode.value,
        "wrapped": site.wrapped,
        "synthetic": site.synthetic,
        "file": loc.file,
        "line": loc.line,
        "kill": len(lifetime.kill_set) if lifetime is not None else 0,
        "aliases": len(group),
    }


def cmd_locks(args: argparse.Namespace) -> int:
    """List every recognised lock site, synthetic wrapper sites included."""
    module, config = _load_inputs(args)
    result = analyze_module(module, config)

    stream = _open_output(args.output)
    try:
        records = [_site_record(result, s) for s in result.sites]
        if args.format == "json":
            for rec in records:
                stream.write(json.dumps(rec, sort_keys=True) + "\n")
        else:
            for rec in records:
                where = f"{rec['file']}:{rec['line']}" if rec["file"] else "<unknown>"
                flags = [rec["mode"]]
                if rec["wrapped"]:
                    flags.append("wrapped")
                if rec["synthetic"]:
                    flags.append("synthetic")
                stream.write(
                    f"{where}: {rec['function']}: {rec['callee']} "
                    f"[{', '.join(flags)}] kill={rec['kill']} aliases={rec['aliases']}\n"
                )
            stream.write(f"{len(records)} lock site(s)\n")
    finally:
        _close_output(stream)
    return EXIT_OK


def cmd_callgraph(args: argparse.Namespace) -> int:
    """Print call-graph statistics or a Graphviz DOT rendering."""
    module, _ = _load_inputs(args)
    cg = build_callgraph(module)
    stream = _open_output(args.output)
    try:
        if args.dot:
            stream.write(cg.to_dot(title=module.name) + "\n")
        else:
            for key, val in cg.statistics().items():
                stream.write(f"{key}: {val}\n")
    finally:
        _close_output(stream)
    return EXIT_OK


# ===========================================================================
# Argument parser
# ===========================================================================

def _build_parser() -> argparse.ArgumentParser:
    """Construct the full CLI argument parser with subcommands."""

    parser = argparse.ArgumentParser(
        prog="irlock",
        description=(
            "irlock: interprocedural double-lock detection over a textual IR.\n\n"
            "Finds paths on which a mutex or rwlock that is already held is\n"
            "acquired again, possibly several calls deeper."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            examples:
              irlock scan app.ir
              irlock scan app.ir --patterns locks.sexp -f json
              irlock locks app.ir -f json
              irlock callgraph app.ir --dot -o app.dot
        """),
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v info, -vv debug).",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        metavar="<command>",
    )

    # Shared argument groups ------------------------------------------------

    def _add_input_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("ir_file", metavar="IR_FILE", help="Textual IR module.")
        p.add_argument(
            "--patterns",
            default=None,
            metavar="FILE",
            help="Lock/API pattern table (S-expression).",
        )

    def _add_output_arg(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "-o", "--output",
            default=None,
            metavar="FILE",
            help='Output file ("-" or omit for stdout).',
        )

    def _add_analysis_args(p: argparse.ArgumentParser) -> None:
        g = p.add_argument_group("analysis tuning")
        g.add_argument(
            "--max-steps",
            type=int,
            default=None,
            metavar="N",
            help="Operations visited per reachability query before giving up.",
        )
        g.add_argument(
            "--max-wrapper-depth",
            type=int,
            default=None,
            metavar="N",
            help="Wrapper levels a returned guard is followed through.",
        )
        g.add_argument(
            "--no-wrappers",
            action="store_true",
            help="Do not follow guards returned from wrapper functions.",
        )
        g.add_argument(
            "--local-only",
            action="store_true",
            help="Only consider code with a local debug location.",
        )
        g.add_argument(
            "--descend-into-library",
            action="store_true",
            help="Enter bodies of functions matched by the pattern table.",
        )

    # scan -------------------------------------------------------------------

    p_scan = subparsers.add_parser(
        "scan",
        help="Detect double locks.",
        description="Detect double locks in an IR module.",
    )
    _add_input_args(p_scan)
    _add_analysis_args(p_scan)
    _add_output_arg(p_scan)
    p_scan.add_argument(
        "-f", "--format",
        choices=list(FORMATS),
        default="text",
        help="Output format (default: text).",
    )
    p_scan.add_argument(
        "--suppress",
        action="append",
        default=[],
        metavar="ID[:FILEGLOB|@FUNCGLOB]",
        help="Suppress an error id, optionally by file or function glob (repeatable).",
    )
    colour = p_scan.add_mutually_exclusive_group()
    colour.add_argument(
        "--color", dest="colour", action="store_const", const=True, default=None,
        help="Always colour text output.",
    )
    colour.add_argument(
        "--no-color", dest="colour", action="store_const", const=False,
        help="Never colour text output.",
    )
    p_scan.set_defaults(func=cmd_scan)

    # locks ------------------------------------------------------------------

    p_locks = subparsers.add_parser(
        "locks",
        help="List recognised lock sites.",
        description="List every lock acquisition, synthetic wrapper sites included.",
    )
    _add_input_args(p_locks)
    _add_analysis_args(p_locks)
    _add_output_arg(p_locks)
    p_locks.add_argument(
        "-f", "--format",
        choices=["text", "json"],
        default="text",
        help="Output format (default: text).",
    )
    p_locks.set_defaults(func=cmd_locks)

    # callgraph --------------------------------------------------------------

    p_cg = subparsers.add_parser(
        "callgraph",
        help="Show the call graph.",
        description="Print call-graph statistics, or Graphviz DOT with --dot.",
    )
    _add_input_args(p_cg)
    _add_output_arg(p_cg)
    p_cg.add_argument("--dot", action="store_true", help="Emit Graphviz DOT.")
    p_cg.set_defaults(func=cmd_callgraph)

    return parser


# ===========================================================================
# Main entry-point
# ===========================================================================

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the irlock CLI.

    Parameters
    ----------
    argv:
        Command-line arguments.  ``None`` → ``sys.argv[1:]``.

    Returns
    -------
    int
        Exit code (see module docstring for semantics).
    """
    parser = _build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as exc:
        # --help / --version exit 0; usage errors exit 2.
        return exc.code if isinstance(exc.code, int) else EXIT_INFRA

    _configure_logging(args.verbose)

    if not hasattr(args, "func"):
        parser.print_help(sys.stderr)
        return EXIT_INFRA

    try:
        return args.func(args)
    except KeyboardInterrupt:
        _log.info("Interrupted by user.")
        return 130
    except SystemExit as exc:
        return exc.code if isinstance(exc.code, int) else EXIT_INFRA
    except Exception as exc:
        _log.error("Unhandled exception: %s", exc, exc_info=True)
        return EXIT_INFRA


if __name__ == "__main__":
    raise SystemExit(main())
