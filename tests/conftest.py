# tests/conftest.py
"""
Shared builders for the fxinfer test suite.

Formats are built directly with :func:`make_fmt`; small programs with
:func:`make_program`, which accepts the same dict layout as the JSON
loader.
"""

from typing import Any, Dict, List, Optional

import pytest

from fxinfer.config import FxConfig, RangeMode
from fxinfer.errors import DiagnosticSink
from fxinfer.formats import SCALAR, FixedPointFormat, FormatKey, mask
from fxinfer.program import Program, Statement, parse_operand, Opcode


def make_fmt(S: int, I: int, F: int, E: int = 0, width: Optional[int] = None,
             signed: bool = True, lo: Optional[int] = None, hi: Optional[int] = None,
             name: str = "v", index: int = SCALAR) -> FixedPointFormat:
    """An initialized format; the range defaults to the full span."""
    fmt = FixedPointFormat(
        key=FormatKey(name, 0, index, 1),
        S=S, I=I, F=F, E=E,
        width=S + I + F + E if width is None else width,
        signed=signed,
    )
    span = mask(I + F) << E
    fmt.hi = span if hi is None else hi
    fmt.lo = (-span if signed else 0) if lo is None else lo
    fmt.original_f = F
    return fmt


def make_dest(width: int, signed: bool = True, name: str = "r") -> FixedPointFormat:
    """An uninitialized destination of ``width`` bits."""
    return FixedPointFormat(key=FormatKey(name, 0, SCALAR, 1), width=width, signed=signed)


def make_stmt(op: str, result: Optional[str], *operands: Any) -> Statement:
    return Statement(
        opcode=Opcode(op),
        result=None if result is None else parse_operand(result),
        operands=tuple(parse_operand(o) for o in operands),
    )


def make_program(values: List[Dict[str, Any]], statements: List[Dict[str, Any]],
                 name: str = "test") -> Program:
    return Program.from_dict({"name": name, "values": values, "statements": statements})


def pin16(name: str, S: int = 1, I: int = 0, F: int = 15, **extra: Any) -> Dict[str, Any]:
    """Declaration of a 16-bit value pinned to ``S/I/F``."""
    decl = {"name": name, "width": 16, "pinned": {"S": S, "I": I, "F": F}}
    decl.update(extra)
    return decl


INTERVAL = FxConfig(mode=RangeMode.INTERVAL)
AFFINE = FxConfig(mode=RangeMode.AFFINE)
BITS = FxConfig(mode=RangeMode.BITS)


@pytest.fixture
def sink() -> DiagnosticSink:
    return DiagnosticSink()


@pytest.fixture
def cfg() -> FxConfig:
    return INTERVAL
