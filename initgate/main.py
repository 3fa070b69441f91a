#!/usr/bin/env python3
"""initgate/main.py - CLI entry-point for the initgate checker.

Usage examples
--------------
    # Check a program description written as S-expressions
    python -m initgate check program.sexp

    # Check a Cppcheck dump, naming the roles
    python -m initgate check foo.c.dump --init lib_init --gated lib_send

    # Same, settings taken from a JSON file, JSON diagnostics
    python -m initgate check foo.c.dump --config initgate.json --output json

    # Call graph statistics and Graphviz output
    python -m initgate callgraph program.sexp --dot

    # Print the lowered program model (useful on dumps)
    python -m initgate model foo.c.dump --init lib_init --gated lib_send

    # Show version and exit
    python -m initgate --version

Exit codes
----------
    0   Success (no gated call can run before the initializer).
    1   One or more violations were reported.
    2   Infrastructure failure (bad input file, missing dependency,
        invalid configuration, etc.).

The module doubles as ``python -m initgate`` via the companion
``initgate/__main__.py`` which simply calls :func:`main`.
"""

from __future__ import annotations

import argparse
import logging
import sys
import textwrap
from pathlib import Path
from typing import Any, List, Optional, Sequence, TextIO, Tuple

from . import __version__
from .callgraph import CallGraph, callgraph_summary
from .checkers import CheckerRunner, SuppressionManager
from .config import OUTPUT_FORMATS, AnalysisConfig, load_config
from .dataflow_engine import WorklistStrategy
from .errors import InitGateError
from .program_model import ProgramModel

_log = logging.getLogger("initgate")

# Exit codes ----------------------------------------------------------------

EXIT_OK: int = 0
EXIT_ERROR: int = 1
EXIT_INFRA: int = 2

INPUT_FORMATS = ("sexp", "dump")


# ===========================================================================
# Utility helpers
# ===========================================================================

def _configure_logging(verbosity: int) -> None:
    """Set up the ``initgate`` logger.

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

    root = logging.getLogger("initgate")
    root.setLevel(level)
    if any(getattr(h, "_initgate_cli", False) for h in root.handlers):
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s [%(levelname)-5.5s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )
    )
    handler._initgate_cli = True  # type: ignore[attr-defined]
    root.addHandler(handler)


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


def _input_format(path: Path, requested: Optional[str]) -> str:
    if requested:
        return requested
    return "dump" if path.suffix == ".dump" else "sexp"


def _build_config(args: argparse.Namespace) -> AnalysisConfig:
    """Configuration file (if any) overridden by command-line flags."""
    config_file = getattr(args, "config", None)
    config = load_config(_resolve_path(config_file, "config file")) if config_file else AnalysisConfig()
    config = config.merged(
        entry_points=getattr(args, "entry", None),
        initializers=getattr(args, "init", None),
        gated=getattr(args, "gated", None),
        memoize=getattr(args, "memoize", None),
        worklist=getattr(args, "worklist", None),
        max_iterations=getattr(args, "max_iterations", None),
        suppress=getattr(args, "suppress", None),
        output=getattr(args, "output_format", None),
    )
    problems = config.validate()
    if problems:
        for problem in problems:
            _log.error("Invalid configuration: %s", problem)
        raise SystemExit(EXIT_INFRA)
    return config


def _load_program(
    args: argparse.Namespace, config: AnalysisConfig,
) -> Tuple[ProgramModel, List[Any]]:
    """Read the input file; returns the program and dump suppressions."""
    path = _resolve_path(args.input_file, "input file")
    fmt = _input_format(path, args.format)
    _log.info("Loading %s (%s)", path, fmt)

    if fmt == "dump":
        from .cppcheck_frontend import load_dump
        return load_dump(
            path,
            entry_points=config.entry_points or ["main"],
            initializers=config.initializers,
            gated=config.gated,
            configuration=getattr(args, "configuration", None),
        )

    from .sexp_frontend import load_program
    program = load_program(path)
    program = program.retag(config.entry_points, config.initializers, config.gated)
    return program.validate(), []


# ===========================================================================
# Sub-command implementations
# ===========================================================================

def cmd_check(args: argparse.Namespace) -> int:
    """Run the init-before-gated check and emit diagnostics."""
    try:
        config = _build_config(args)
        program, dump_suppressions = _load_program(args, config)
    except InitGateError as exc:
        _log.error("%s", exc)
        return EXIT_INFRA

    suppressions = SuppressionManager()
    suppressions.load_dump_suppressions(dump_suppressions)
    for spec in config.suppress:
        suppressions.add_from_spec(spec)

    stats = program.statistics()
    _log.info(
        "Program %s: %d function(s), %d call site(s)",
        program.name or "<unnamed>", stats["functions"], stats["call_sites"],
    )

    runner = CheckerRunner(suppressions=suppressions, options=config.analysis_options())
    results = runner.run(program)

    out = _open_output(args.output_file)
    try:
        text = results.render(config.output)
        if text:
            out.write(text + "\n")
    finally:
        if out is not sys.stdout:
            out.close()

    if any(d.error_id == "checkerInternalError" for d in results.diagnostics):
        return EXIT_INFRA
    return EXIT_ERROR if results.error_count > 0 else EXIT_OK


def cmd_callgraph(args: argparse.Namespace) -> int:
    """Print call graph statistics, recursive cycles and optionally DOT."""
    try:
        config = _build_config(args)
        program, _ = _load_program(args, config)
    except InitGateError as exc:
        _log.error("%s", exc)
        return EXIT_INFRA

    cg = CallGraph.from_program(program)
    out = _open_output(args.output_file)
    try:
        if args.dot:
            out.write(cg.to_dot(title=program.name or None) + "\n")
        else:
            out.write(callgraph_summary(cg) + "\n")
            cycles = cg.recursive_cycles()
            if cycles:
                out.write("\nRecursive cycles:\n")
                for cycle in cycles:
                    out.write("  " + " -> ".join(program.display_name(f) for f in cycle) + "\n")
    finally:
        if out is not sys.stdout:
            out.close()
    return EXIT_OK


def cmd_model(args: argparse.Namespace) -> int:
    """Print the program model as an S-expression description."""
    from .sexp_frontend import to_sexp

    try:
        config = _build_config(args)
        program, _ = _load_program(args, config)
    except InitGateError as exc:
        _log.error("%s", exc)
        return EXIT_INFRA

    out = _open_output(args.output_file)
    try:
        out.write(to_sexp(program) + "\n")
    finally:
        if out is not sys.stdout:
            out.close()
    return EXIT_OK


# ===========================================================================
# Argument parser construction
# ===========================================================================

def _build_parser() -> argparse.ArgumentParser:
    """Construct the full CLI argument parser with subcommands."""

    # --- Top-level parser --------------------------------------------------
    parser = argparse.ArgumentParser(
        prog="initgate",
        description=(
            "initgate - report calls to gated functions that may run before\n"
            "the library initializer on some path from an entry point."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            examples:
              initgate check program.sexp
              initgate check foo.c.dump --init lib_init --gated lib_send
              initgate callgraph program.sexp --dot
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

    # Shared argument groups (reusable) ------------------------------------

    def _add_input_args(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "input_file",
            help="Program description (.sexp) or Cppcheck dump (.dump).",
        )
        p.add_argument(
            "--format",
            choices=INPUT_FORMATS,
            default=None,
            help="Input format (default: by file suffix, .dump → dump).",
        )
        p.add_argument(
            "--configuration",
            default=None,
            metavar="NAME",
            help="Preprocessor configuration to use from a dump (default: first).",
        )
        p.add_argument(
            "--config",
            default=None,
            metavar="FILE",
            help="JSON settings file; flags override its values.",
        )
        g = p.add_argument_group("roles")
        g.add_argument(
            "--entry", action="append", default=None, metavar="NAME",
            help="Entry-point function (repeatable; dumps default to main).",
        )
        g.add_argument(
            "--init", action="append", default=None, metavar="NAME",
            help="Initializer function (repeatable).",
        )
        g.add_argument(
            "--gated", action="append", default=None, metavar="NAME",
            help="Gated function (repeatable).",
        )

    def _add_output_args(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "-o", "--output-file",
            dest="output_file",
            default=None,
            metavar="PATH",
            help="Write results to PATH instead of stdout.",
        )

    # check ----------------------------------------------------------------
    p_check = subparsers.add_parser(
        "check",
        help="Report gated calls that may precede the initializer.",
    )
    _add_input_args(p_check)
    _add_output_args(p_check)
    p_check.add_argument(
        "--output",
        dest="output_format",
        choices=OUTPUT_FORMATS,
        default=None,
        help="Diagnostic format (default: gcc).",
    )
    p_check.add_argument(
        "--suppress",
        action="append",
        default=None,
        metavar="ID[:FILE[:LINE]]",
        help="Suppress an error id, optionally per file pattern or line.",
    )
    g = p_check.add_argument_group("analysis tuning")
    g.add_argument(
        "--memoize",
        action="store_true",
        default=None,
        help="Cache verdicts per (function, call stack).",
    )
    g.add_argument(
        "--worklist",
        choices=[s.value for s in WorklistStrategy],
        default=None,
        help="Worklist order of the intraprocedural solver (default: rpo).",
    )
    g.add_argument(
        "--max-iterations",
        dest="max_iterations",
        type=int,
        default=None,
        metavar="N",
        help="Iteration cap of the intraprocedural solver.",
    )
    p_check.set_defaults(func=cmd_check)

    # callgraph ------------------------------------------------------------
    p_cg = subparsers.add_parser(
        "callgraph",
        help="Show call graph statistics and recursive cycles.",
    )
    _add_input_args(p_cg)
    _add_output_args(p_cg)
    p_cg.add_argument(
        "--dot",
        action="store_true",
        help="Emit Graphviz DOT instead of the text summary.",
    )
    p_cg.set_defaults(func=cmd_callgraph)

    # model ----------------------------------------------------------------
    p_model = subparsers.add_parser(
        "model",
        help="Print the program model as an S-expression description.",
    )
    _add_input_args(p_model)
    _add_output_args(p_model)
    p_model.set_defaults(func=cmd_model)

    return parser


# ===========================================================================
# Main entry point
# ===========================================================================

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the initgate CLI.

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
    args = parser.parse_args(argv)

    _configure_logging(args.verbose)

    # No subcommand given → print help.
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
