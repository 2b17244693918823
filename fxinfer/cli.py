#!/usr/bin/env python3
"""fxinfer/cli.py: command line for the fixed-point format analysis.

Usage examples
--------------
    # Analyse a program with interval ranges and rounding
    fxinfer analyze filter.json --round --guard

    # Affine ranges, JSON output to a file
    fxinfer analyze filter.json --mode affine --format json -o filter.out.json

    # Treat possible overflows as errors
    fxinfer analyze filter.json --Werror possible-overflow

    # List the plugin option keys
    fxinfer options

Exit codes
----------
    0   Success.
    1   A statement has no feasible format, or a diagnostic was promoted
        to an error with ``--Werror``.
    2   Input or infrastructure failure (bad file, bad option, missing
        dependency).
    3   No fixpoint (pass ceiling reached or formats left unresolved).
  130   Interrupted.

``python -m fxinfer`` runs the same entry point.
"""

from __future__ import annotations

import argparse
import logging
import sys
import textwrap
from pathlib import Path
from typing import Optional, Sequence, TextIO

from fxinfer import __version__
from fxinfer.config import MAX_PASSES, OPTION_KEYS, FxConfig, RangeMode
from fxinfer.driver import analyze
from fxinfer.errors import ConfigError, ConvergenceError, FxError, ProgramError
from fxinfer.program import load_program
from fxinfer.report import FORMATS, render

_log = logging.getLogger("fxinfer")

# Exit codes ----------------------------------------------------------------

EXIT_OK: int = 0
EXIT_ERROR: int = 1
EXIT_INFRA: int = 2
EXIT_NO_FIXPOINT: int = 3
EXIT_INTERRUPTED: int = 130

_OPTION_HELP = {
    "round": "round to nearest before discarding fraction bits",
    "round-positive": "round ties toward +infinity (implies round)",
    "guard": "reserve a guard bit when rounding could overflow",
    "dpmult": "allow double-width multiplication",
    "div2mult": "turn division by a constant into multiplication",
    "interval": "interval range tracking",
    "affine": "affine range tracking (implies interval)",
}


# ===========================================================================
# Utility helpers
# ===========================================================================

def _configure_logging(verbosity: int) -> None:
    """Set up the ``fxinfer`` logger: 0 → WARNING, 1 → INFO, 2+ → DEBUG."""
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
    root = logging.getLogger("fxinfer")
    root.setLevel(level)
    root.addHandler(handler)


def _open_output(dest: Optional[str]) -> TextIO:
    """``None`` or ``"-"`` → ``sys.stdout``; otherwise open the path."""
    if dest is None or dest == "-":
        return sys.stdout
    p = Path(dest).expanduser().resolve()
    p.parent.mkdir(parents=True, exist_ok=True)
    return open(p, "w", encoding="utf-8")


def config_from_args(args: argparse.Namespace) -> FxConfig:
    return FxConfig(
        mode=RangeMode(args.mode),
        rounding=args.round,
        round_positive=args.round_positive,
        guarding=args.guard,
        double_precision_mults=args.dpmult,
        const_div_to_mult=args.div2mult,
        max_passes=args.max_passes,
        fatal_warnings=frozenset(args.werror or ()),
    )


# ===========================================================================
# Sub-commands
# ===========================================================================

def cmd_analyze(args: argparse.Namespace) -> int:
    try:
        cfg = config_from_args(args)
        program = load_program(args.program)
    except (ConfigError, ProgramError) as exc:
        _log.error("%s", exc)
        return EXIT_INFRA

    try:
        result = analyze(program, cfg)
    except ConvergenceError as exc:
        _log.error("%s", exc)
        return EXIT_NO_FIXPOINT
    except (ConfigError, ProgramError) as exc:
        _log.error("%s", exc)
        return EXIT_INFRA
    except FxError as exc:
        _log.error("%s", exc)
        return EXIT_ERROR

    try:
        text = render(result, args.format, color=args.color and args.output in (None, "-"))
    except ConfigError as exc:
        _log.error("%s", exc)
        return EXIT_INFRA

    stream = _open_output(args.output)
    try:
        stream.write(text)
        if not text.endswith("\n"):
            stream.write("\n")
    finally:
        if stream is not sys.stdout:
            stream.close()
    return EXIT_OK


def cmd_options(args: argparse.Namespace) -> int:
    for key in OPTION_KEYS:
        sys.stdout.write(f"{key:<16}{_OPTION_HELP[key]}\n")
    return EXIT_OK


# ===========================================================================
# Argument parser
# ===========================================================================

def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fxinfer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Fixed-point format inference and range analysis.",
        epilog=textwrap.dedent("""\
            examples:
              fxinfer analyze filter.json --round --guard
              fxinfer analyze filter.json --mode affine --format json
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

    # --- analyze -----------------------------------------------------------
    p_analyze = subparsers.add_parser(
        "analyze",
        aliases=["analyse"],
        help="Infer formats for a program.",
        description="Load a JSON program and infer a fixed-point format for every value.",
    )
    p_analyze.add_argument(
        "program",
        metavar="PROGRAM",
        help="Path to the JSON program.",
    )
    g = p_analyze.add_argument_group("analysis options")
    g.add_argument(
        "--mode",
        choices=[m.value for m in RangeMode],
        default=RangeMode.INTERVAL.value,
        help="Range tracking (default: interval).",
    )
    g.add_argument("--round", action="store_true", help=_OPTION_HELP["round"] + ".")
    g.add_argument("--round-positive", action="store_true",
                   help=_OPTION_HELP["round-positive"] + ".")
    g.add_argument("--guard", action="store_true", help=_OPTION_HELP["guard"] + ".")
    g.add_argument("--dpmult", action="store_true", help=_OPTION_HELP["dpmult"] + ".")
    g.add_argument("--div2mult", action="store_true", help=_OPTION_HELP["div2mult"] + ".")
    g.add_argument(
        "--max-passes",
        type=int,
        default=MAX_PASSES,
        metavar="N",
        help=f"Pass ceiling (default: {MAX_PASSES}).",
    )
    g.add_argument(
        "--Werror",
        dest="werror",
        action="append",
        metavar="CODE",
        help="Promote a diagnostic (FXI-NNNN or its name) to an error; repeatable.",
    )
    o = p_analyze.add_argument_group("output")
    o.add_argument(
        "-f", "--format",
        choices=list(FORMATS),
        default="text",
        help="Output format (default: text).",
    )
    o.add_argument(
        "-o", "--output",
        default=None,
        metavar="FILE",
        help='Output file ("-" or omit for stdout).',
    )
    o.add_argument(
        "--no-color",
        dest="color",
        action="store_false",
        help="Plain text output.",
    )
    p_analyze.set_defaults(func=cmd_analyze)

    # --- options -----------------------------------------------------------
    p_options = subparsers.add_parser(
        "options",
        help="List the plugin option keys.",
    )
    p_options.set_defaults(func=cmd_options)

    return parser


# ===========================================================================
# Main entry point
# ===========================================================================

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the fxinfer CLI and return its exit code."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    _configure_logging(args.verbose)

    if not hasattr(args, "func"):
        parser.print_help(sys.stderr)
        return EXIT_INFRA

    try:
        return args.func(args)
    except KeyboardInterrupt:
        _log.info("Interrupted by user.")
        return EXIT_INTERRUPTED
    except OSError as exc:
        _log.error("%s", exc)
        return EXIT_INFRA


if __name__ == "__main__":
    raise SystemExit(main())
