"""fxinfer: fixed-point format inference and range analysis.

Given a program of scalar arithmetic over real numbers, fxinfer derives a
fixed-width integer format (sign/integer/fraction/empty bit split) and a
sound value range for every value, and plans the shifts, rounding, guard
bits and saturation an all-integer implementation needs.

Submodules
----------
config
    ``FxConfig`` and the plugin option keys.
errors
    Exception hierarchy, ``FXI-NNNN`` diagnostic codes, ``DiagnosticSink``.
formats
    ``FixedPointFormat`` records, shift bookkeeping, constant classification.
ranges, affine
    Interval and affine range tracking.
program
    Input model (declarations, statements, blocks) and the JSON loader.
store
    Versioned format records, alias merging, consistency checks.
rules, planner
    Per-opcode format rules and the correction planner.
driver
    The fixpoint driver.
report, cli
    Rendering and the ``fxinfer`` command.

Usage
-----
Command-line::

    fxinfer analyze filter.json --round --mode affine
    python -m fxinfer --help

Programmatic::

    from fxinfer import FxConfig, analyze, load_program

    result = analyze(load_program("filter.json"), FxConfig.from_options(["round"]))
    print(result.format_of("y"))
"""

from __future__ import annotations

import logging

__version__: str = "0.1.0"

from fxinfer.config import FxConfig, RangeMode  # noqa: E402
from fxinfer.driver import DriverResult, FixpointDriver, analyze  # noqa: E402
from fxinfer.errors import (  # noqa: E402
    ConfigError,
    ConvergenceError,
    FxError,
    InfeasibleFormatError,
    InvalidShiftError,
    ProgramError,
)
from fxinfer.formats import FixedPointFormat, PinnedFormat  # noqa: E402
from fxinfer.program import Program, load_program  # noqa: E402

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__: list[str] = [
    "__version__",
    "ConfigError",
    "ConvergenceError",
    "DriverResult",
    "FixedPointFormat",
    "FixpointDriver",
    "FxConfig",
    "FxError",
    "InfeasibleFormatError",
    "InvalidShiftError",
    "PinnedFormat",
    "Program",
    "ProgramError",
    "RangeMode",
    "analyze",
    "load_program",
]
