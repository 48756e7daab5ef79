#!/usr/bin/env python3
"""ghihorn/__main__.py — headless driver for GhiHorn.

Usage examples
--------------
    # Is the exit of `check` reachable with in.x > 10?
    python -m ghihorn path prog.sexp --target check --condition "x > 10"

    # Is a block reachable when starting from another block?
    python -m ghihorn path prog.sexp --target 0x1040 --start 0x1010

    # Can malloc's result reach free twice along one path?
    python -m ghihorn api prog.sexp --sequence malloc:capture free:arg0 free:arg0

    # List entry points
    python -m ghihorn entries prog.sexp

    # Print the clause set of a query as SMT-LIB2
    python -m ghihorn dump prog.sexp --target check

Exit codes
----------
    0   Unreachable, or the command succeeded.
    1   The run failed (bad query, generation or solver fault).
    2   Infrastructure failure (bad file, bad configuration, ...).
    3   Reachable (a witness was found).
    4   Unknown (timeout or incomplete search).
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Dict, List, Optional, Sequence

from . import __version__
from .config import DECOMPILER_STRATEGIES, GhiHornConfig
from .errors import ConfigError, GhiHornError, ProgramFormatError, QueryError
from .hornifier import ApiOrderQuery, ApiStep, Hornifier, PathQuery, Query
from .interpreter import VerdictStatus
from .loader import load_program_file
from .program import Address, ProgramImage

_log = logging.getLogger("ghihorn")
_handler: Optional[logging.Handler] = None

EXIT_OK: int = 0
EXIT_ERROR: int = 1
EXIT_INFRA: int = 2
EXIT_REACHABLE: int = 3
EXIT_UNKNOWN: int = 4

_STATUS_EXIT = {
    VerdictStatus.SAT: EXIT_REACHABLE,
    VerdictStatus.UNSAT: EXIT_OK,
    VerdictStatus.UNKNOWN: EXIT_UNKNOWN,
}


# ===========================================================================
# Utility helpers
# ===========================================================================

def _configure_logging(verbosity: int) -> None:
    """Set up the ``ghihorn`` logger.

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
    global _handler
    root = logging.getLogger("ghihorn")
    if _handler is not None:
        root.removeHandler(_handler)
    _handler = handler
    root.setLevel(level)
    root.addHandler(handler)


def _load_config(args: argparse.Namespace) -> GhiHornConfig:
    """defaults → --config file → GHIHORN_* environment → flags."""
    config = GhiHornConfig(headless=True)
    if args.config:
        config = GhiHornConfig.from_file(args.config, base=config)
    config = GhiHornConfig.from_env(base=config)
    overrides: Dict[str, Any] = {
        "solver_timeout": args.timeout,
        "workers": args.workers,
        "decompiler": args.decompiler,
        "smt_output_dir": args.smt_output_dir,
    }
    if args.api_library:
        overrides["api_libraries"] = list(config.api_libraries) + list(args.api_library)
    if args.no_builtin_apis:
        overrides["builtin_apis"] = False
    return config.merged(overrides)


def _entries(image: ProgramImage, raw: Optional[List[str]]) -> List[Address]:
    if not raw:
        return image.entry_points()
    return [image.resolve(r) for r in raw]


def _path_query(image: ProgramImage, args: argparse.Namespace) -> PathQuery:
    start = image.resolve(args.start) if args.start else None
    return PathQuery(image.resolve(args.target), args.condition, start)


def _api_query(args: argparse.Namespace) -> ApiOrderQuery:
    return ApiOrderQuery(tuple(ApiStep.parse(s) for s in args.sequence))


def _run(args: argparse.Namespace, kind: str, query: Query) -> int:
    from .controllers import AnalysisService

    config = _load_config(args)
    image = load_program_file(args.program)
    with AnalysisService(image, config) as service:
        handle = service.start_run(kind, _entries(image, args.entry), query, background=False)
        verdict = service.get_verdict(handle)

    if args.format == "json":
        out = verdict.to_dict()
        out["state"] = handle.state.value
        if handle.error is not None:
            out["error"] = (handle.error.to_dict() if isinstance(handle.error, GhiHornError)
                            else {"message": str(handle.error)})
        sys.stdout.write(json.dumps(out, indent=2) + "\n")
    else:
        if handle.error is not None:
            _log.error("%s", handle.error)
        for line in verdict.report or [verdict.reason]:
            sys.stdout.write(line + "\n")

    if handle.error is not None:
        return EXIT_ERROR
    return _STATUS_EXIT[verdict.status]


# ===========================================================================
# Sub-command implementations
# ===========================================================================

def cmd_path(args: argparse.Namespace) -> int:
    """Path reachability for a function exit or a block."""
    image = load_program_file(args.program)
    return _run(args, "path", _path_query(image, args))


def cmd_api(args: argparse.Namespace) -> int:
    """Ordered API-call reachability."""
    return _run(args, "api", _api_query(args))


def cmd_entries(args: argparse.Namespace) -> int:
    """List the program's entry points and functions."""
    image = load_program_file(args.program)
    entries = image.entry_points()
    if args.format == "json":
        out = {
            "program": image.name,
            "entry_points": [{"address": str(a), "name": image.name_of(a)} for a in entries],
            "functions": [{"address": str(a), "name": image.name_of(a)}
                          for a in sorted(image.functions)],
            "imports": {str(a): n for a, n in sorted(image.imports.items())},
        }
        sys.stdout.write(json.dumps(out, indent=2) + "\n")
        return EXIT_OK
    for a in entries:
        sys.stdout.write(f"{a}  {image.name_of(a)}\n")
    return EXIT_OK


def cmd_dump(args: argparse.Namespace) -> int:
    """Print the clause set of a query without solving it."""
    from .controllers import (
        ApiAnalyzerController,
        PathAnalyzerController,
        RunRequest,
        load_api_database,
    )
    from .decompiler import CancellationToken, ImageDecompiler, SimpleDecompiler

    config = _load_config(args)
    image = load_program_file(args.program)
    if args.sequence:
        query: Query = _api_query(args)
        cls = ApiAnalyzerController
    elif args.target:
        query = _path_query(image, args)
        cls = PathAnalyzerController
    else:
        raise QueryError("dump needs --target or --sequence")

    apidb = load_api_database(config)
    ctl = cls(image, SimpleDecompiler(ImageDecompiler(image)), apidb, config)
    request = RunRequest(tuple(_entries(image, args.entry)), query, config.solver_timeout)
    token = CancellationToken()
    try:
        functions, gaps = ctl.collect_working_set(request, token)
        ctl.synthesize_apis(functions, token)
        hz = Hornifier(functions, image, apidb, monitor=query.monitor())
        clauses = hz.generate(request.entry_points, query)
    finally:
        apidb.release()
    for addr, reason in sorted(gaps.items()):
        sys.stdout.write(f"; coverage gap {addr}: {reason}\n")
    sys.stdout.write(clauses.to_smt2(hz.goal_predicate()))
    return EXIT_OK


# ===========================================================================
# Parser
# ===========================================================================

def _add_run_options(p: argparse.ArgumentParser) -> None:
    p.add_argument("program", help="Program description (s-expression file).")
    p.add_argument("--entry", action="append", metavar="ADDR",
                   help="Entry point (name or address); repeatable. Default: exported entries.")
    p.add_argument("--timeout", type=float, default=None, metavar="SECONDS",
                   help="Solver budget per run.")
    p.add_argument("--workers", type=int, default=None, help="Parallel decompiler pool size.")
    p.add_argument("--decompiler", choices=DECOMPILER_STRATEGIES, default=None,
                   help="Decompilation strategy.")
    p.add_argument("--api-library", action="append", metavar="FILE",
                   help="Library program whose bodies may be used to synthesize API summaries.")
    p.add_argument("--no-builtin-apis", action="store_true",
                   help="Do not load the packaged API summaries.")
    p.add_argument("--smt-output-dir", default=None, metavar="DIR",
                   help="Write every solved clause set to DIR as SMT-LIB2.")


def _build_parser() -> argparse.ArgumentParser:
    """Construct the CLI argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="ghihorn",
        description="Reachability questions about decompiled programs, answered with Horn clauses.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="Increase log verbosity (-v INFO, -vv DEBUG).")
    parser.add_argument("--config", default=None, metavar="FILE",
                        help="JSON configuration file.")
    parser.add_argument("--format", choices=("text", "json"), default="text",
                        help="Output format.")

    subparsers = parser.add_subparsers(dest="command", title="commands", metavar="<command>")

    p_path = subparsers.add_parser("path", help="Path reachability query.")
    _add_run_options(p_path)
    p_path.add_argument("--target", required=True, metavar="ADDR",
                        help="Target function (its exit) or block address.")
    p_path.add_argument("--condition", default=None, metavar="EXPR",
                        help="Condition that must hold at the target.")
    p_path.add_argument("--start", default=None, metavar="ADDR",
                        help="Start block instead of the entry points.")
    p_path.set_defaults(func=cmd_path)

    p_api = subparsers.add_parser("api", help="Ordered API-call query.")
    _add_run_options(p_api)
    p_api.add_argument("--sequence", nargs="+", required=True, metavar="STEP",
                       help="API steps in order: NAME, NAME:capture or NAME:argN.")
    p_api.set_defaults(func=cmd_api)

    p_entries = subparsers.add_parser("entries", help="List entry points.")
    p_entries.add_argument("program", help="Program description (s-expression file).")
    p_entries.set_defaults(func=cmd_entries)

    p_dump = subparsers.add_parser("dump", help="Print a query's clause set as SMT-LIB2.")
    _add_run_options(p_dump)
    p_dump.add_argument("--target", default=None, metavar="ADDR")
    p_dump.add_argument("--condition", default=None, metavar="EXPR")
    p_dump.add_argument("--start", default=None, metavar="ADDR")
    p_dump.add_argument("--sequence", nargs="+", default=None, metavar="STEP")
    p_dump.set_defaults(func=cmd_dump)

    return parser


# ===========================================================================
# Main entry point
# ===========================================================================

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the GhiHorn CLI.

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

    if not hasattr(args, "func"):
        parser.print_help(sys.stderr)
        return EXIT_INFRA

    try:
        return args.func(args)
    except (ProgramFormatError, ConfigError, OSError) as exc:
        _log.error("%s", exc)
        return EXIT_INFRA
    except GhiHornError as exc:
        _log.error("%s", exc)
        return EXIT_ERROR
    except KeyboardInterrupt:
        _log.info("Interrupted by user.")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
