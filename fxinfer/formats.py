# fxinfer/formats.py
"""
Fixed-point format records.

A :class:`FixedPointFormat` splits a ``width``-bit integer into

    S  redundant sign bits
    I  integer bits
    F  fraction bits
    E  empty (always zero) low bits

with ``S + I + F + E == width`` once the format is initialized.  The value
of the stored integer ``v`` is ``v * 2**-(F+E)``.  ``hi``/``lo`` hold the
range of ``v`` in the same units; ``lo > hi`` marks an undefined range.

``shift`` is a pending operand shift that a statement wants applied before
the operation (positive is right).  The shift primitives here only update
the bookkeeping; the range engine and the correction planner read it.

Constant classification
-----------------------
:func:`real_constant_format` and :func:`int_constant_format` build the
formats of literal operands.  A real constant picks the smallest integer
bit count for its magnitude, one sign bit, and fraction bits for the rest;
trailing zero bits of the rounded value become empty bits.
"""

from __future__ import annotations

import copy
import math
from dataclasses import dataclass, field
from fractions import Fraction
from typing import TYPE_CHECKING, NamedTuple, Optional, Tuple, Union

from fxinfer.errors import InfeasibleFormatError, InvalidShiftError

if TYPE_CHECKING:
    from fxinfer.affine import AffineList

#: Index used for scalars and for "the whole aggregate".
SCALAR = -1

Number = Union[int, float, Fraction]


# ═══════════════════════════════════════════════════════════════════════════════
# BIT HELPERS
# ═══════════════════════════════════════════════════════════════════════════════

def mask(bits: int) -> int:
    """``2**bits - 1``, or 0 for non-positive ``bits``."""
    return (1 << bits) - 1 if bits > 0 else 0


def sext(value: int, bits: int) -> int:
    """Sign-extend the low ``bits`` of ``value`` (two's complement)."""
    if bits <= 0:
        return 0
    value &= (1 << bits) - 1
    if value >> (bits - 1):
        value -= 1 << bits
    return value


def ctz(value: int, limit: int) -> int:
    """Count trailing zero bits of ``value``, capped at ``limit``."""
    if value == 0:
        return limit
    value = abs(value)
    return min((value & -value).bit_length() - 1, limit)


def arith_shift(value: int, count: int) -> int:
    """Arithmetic shift; positive counts shift right, negative left."""
    if count >= 0:
        return value >> count
    return value << -count


def round_shift(value: int, count: int, rounding: bool = True,
                round_positive: bool = False) -> int:
    """Right shift by ``count`` adding ``2**(count-1)`` first when rounding.

    The rounding constant is one less for negative values unless rounding
    toward positive infinity.  Non-positive counts shift left exactly.
    """
    if count <= 0:
        return value << -count
    if rounding:
        constant = 1 << (count - 1)
        if value < 0 and not round_positive:
            constant -= 1
        value += constant
    return value >> count


# ═══════════════════════════════════════════════════════════════════════════════
# KEYS
# ═══════════════════════════════════════════════════════════════════════════════

class FormatKey(NamedTuple):
    """Identity of one format record: value × version × element × pass."""
    identity: str
    version: int = 0
    index: int = SCALAR
    pass_no: int = 0

    @property
    def value(self) -> Tuple[str, int]:
        return (self.identity, self.version)

    @property
    def slot(self) -> Tuple[str, int, int]:
        """The key without its pass number."""
        return (self.identity, self.version, self.index)

    def at_pass(self, pass_no: int) -> "FormatKey":
        return self._replace(pass_no=pass_no)

    def at_index(self, index: int) -> "FormatKey":
        return self._replace(index=index)

    def __str__(self) -> str:
        name = self.identity if not self.version else f"{self.identity}.{self.version}"
        if self.index != SCALAR:
            name += f"[{self.index}]"
        return f"{name}@{self.pass_no}"


@dataclass(frozen=True)
class PinnedFormat:
    """Format fixed by an annotation: S, I, F bits and optional bounds.

    Bounds are real values; ``None`` means "derive from the bit split".
    """
    S: int
    I: int
    F: int
    max: Optional[Number] = None
    min: Optional[Number] = None


# ═══════════════════════════════════════════════════════════════════════════════
# FORMAT RECORD
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class FixedPointFormat:
    key: Optional[FormatKey] = None
    S: int = 0
    I: int = 0
    F: int = 0
    E: int = 0
    width: int = 0
    signed: bool = False
    hi: int = 0
    lo: int = 1
    shift: int = 0
    original_f: int = 0
    pointee_width: int = 0
    alias: Optional[Tuple[str, int]] = None
    induction: bool = False
    iterative: bool = False
    pinned: Optional[PinnedFormat] = None
    aa: Optional["AffineList"] = None
    constant: Optional[int] = None

    # ── predicates ───────────────────────────────────────────────────

    @property
    def initialized(self) -> bool:
        return self.I != 0 or self.F != 0

    @property
    def undefined(self) -> bool:
        return self.lo > self.hi

    @property
    def is_pointer(self) -> bool:
        return self.pointee_width != 0

    @property
    def is_constant(self) -> bool:
        return self.constant is not None

    @property
    def binary_point(self) -> int:
        return self.F + self.E

    @property
    def info_bits(self) -> int:
        return self.I + self.F

    @property
    def lost_f_bits(self) -> int:
        return self.original_f - self.F

    @property
    def sign_floor(self) -> int:
        """Minimum number of sign bits: 1 if signed, else 0."""
        return 1 if self.signed else 0

    @property
    def precision(self) -> int:
        return self.I + self.F + self.E + self.sign_floor

    @property
    def consistent(self) -> bool:
        return not self.initialized or self.S + self.I + self.F + self.E == self.width

    # ── lifecycle ────────────────────────────────────────────────────

    def initialize(self) -> None:
        """Reset to the uninitialized state with an undefined range."""
        self.key = None
        self.S = self.I = self.F = self.E = 0
        self.width = 0
        self.signed = False
        self.hi, self.lo = 0, 1
        self.shift = 0
        self.original_f = 0
        self.pointee_width = 0
        self.alias = None
        self.induction = self.iterative = False
        self.pinned = None
        self.aa = None
        self.constant = None

    def copy(self) -> "FixedPointFormat":
        """Full copy, including width, signedness and annotation."""
        other = copy.copy(self)
        other.aa = self.aa.copy() if self.aa is not None else None
        return other

    def assign_format(self, other: "FixedPointFormat") -> None:
        """Copy only S/I/F/E, range, induction flag and affine list."""
        self.S, self.I, self.F, self.E = other.S, other.I, other.F, other.E
        self.hi, self.lo = other.hi, other.lo
        self.induction = other.induction
        self.aa = other.aa.copy() if other.aa is not None else None

    def fill_empty_bits(self) -> None:
        """Recompute E so the bit split covers the width."""
        self.E = self.width - self.S - self.I - self.F

    def full_range(self) -> Tuple[int, int]:
        """Span representable by the information bits, in stored units."""
        span = mask(self.I + self.F) << self.E
        return (-span if self.signed else 0), span

    def sif(self) -> Tuple[int, int, int, int]:
        return (self.S, self.I, self.F, self.E)

    # ── shifting ─────────────────────────────────────────────────────

    def shift_right(self, count: int) -> None:
        """Add ``count`` sign bits on the left, discarding E then F bits."""
        if count == 0:
            return
        self.shift += count
        self.S += count
        if count <= self.E:
            self.E -= count
        else:
            self.F = self.F + self.E - count
            self.E = 0
        self._refit_constant()

    def shift_left(self, count: int) -> None:
        """Discard sign bits; restore lost F bits before adding E bits."""
        if count == 0:
            return
        self.shift -= count
        self.S -= count
        if self.original_f - self.F > count:
            self.F += count
        else:
            self.E += count - (self.original_f - self.F)
            self.F = self.original_f
        self._refit_constant()

    def _refit_constant(self) -> None:
        # a shifted constant may gain empty bits
        if self.constant is None:
            return
        total = self.F + self.E
        if total < 0:
            return
        folded = round_shift(self.constant, self.shift)
        self.E = ctz(folded, total)
        self.F = total - self.E
        self.original_f = self.F

    def check_shift(self) -> None:
        """Raise :class:`InvalidShiftError` if shifting lost I or S bits."""
        if not self.initialized:
            return
        if self.F < 0:
            raise InvalidShiftError("invalid right shift, lost integer bits", key=self.key)
        if self.I < 0:
            raise InvalidShiftError("invalid shift, negative integer bits", key=self.key)
        if self.signed and self.S < 1:
            raise InvalidShiftError("invalid left shift, signed operand", key=self.key)
        if not self.signed and self.S < 0:
            raise InvalidShiftError("invalid left shift, unsigned operand", key=self.key)

    # ── presentation ─────────────────────────────────────────────────

    def real_bounds(self) -> Tuple[float, float]:
        scale = 2.0 ** -(self.F + self.E)
        return self.lo * scale, self.hi * scale

    def describe(self) -> str:
        text = f"({self.S:2d}/{self.I:2d}/{self.F:2d}/{self.E:2d})"
        if self.shift:
            text += f" shft {self.shift:+d}"
        if not self.undefined and self.initialized:
            lo, hi = self.real_bounds()
            text += f" [{lo:+.6g},{hi:+.6g}]"
        return text

    def __str__(self) -> str:
        return f"{self.key or '<anon>'} {self.describe()}"


# ═══════════════════════════════════════════════════════════════════════════════
# CONSTANT CLASSIFICATION
# ═══════════════════════════════════════════════════════════════════════════════

def _round_half_away(value: Fraction) -> int:
    magnitude = math.floor(abs(value) + Fraction(1, 2))
    return -magnitude if value < 0 else magnitude


def real_constant_format(value: Number, width: int = 32) -> FixedPointFormat:
    """Classify a real-valued literal at ``width`` bits."""
    exact = Fraction(value)
    fmt = FixedPointFormat(width=width, signed=True, S=1)
    if exact == 0:
        fmt.I = 1
    else:
        fmt.I = max(math.frexp(float(exact))[1], 0)
    fmt.F = width - fmt.S - fmt.I
    if fmt.S + fmt.I > width:
        raise InfeasibleFormatError(f"real constant {value} is too big for {width} bits")

    scaled = _round_half_away(exact * (1 << fmt.F))
    fmt.E = ctz(scaled, fmt.F)
    fmt.F -= fmt.E
    if fmt.F == 0:
        # exact integer, right justify it
        fmt.S += fmt.E
        fmt.E = 0
        scaled = int(exact)

    _seal_constant(fmt, scaled)
    return fmt


def int_constant_format(value: int) -> FixedPointFormat:
    """Classify an integer literal as an exact-width integer."""
    if value == 0:
        bits = 1
    elif value > 0:
        bits = value.bit_length()
    else:
        bits = max((~value).bit_length(), 1)
    signed = value < 0
    fmt = FixedPointFormat(I=bits, S=1 if signed else 0, signed=signed)
    fmt.width = fmt.I + fmt.S
    _seal_constant(fmt, value)
    return fmt


def inverted_constant_format(value: Number, width: int = 32) -> FixedPointFormat:
    """Classify ``1 / value`` as a real constant."""
    if value == 0:
        raise InfeasibleFormatError("cannot invert a zero divisor constant")
    return real_constant_format(1 / Fraction(value), width)


def constant_format(value: Number, width: int = 32) -> FixedPointFormat:
    if isinstance(value, bool):
        value = int(value)
    if isinstance(value, int):
        return int_constant_format(value)
    return real_constant_format(value, width)


def _seal_constant(fmt: FixedPointFormat, stored: int) -> None:
    # local import: affine depends on this module
    from fxinfer.affine import CENTER, AffineList

    fmt.hi = fmt.lo = stored
    fmt.constant = stored
    fmt.original_f = fmt.F
    fmt.aa = AffineList()
    fmt.aa.append(CENTER, stored, fmt.F + fmt.E)


def to_stored(value: Number, fmt: FixedPointFormat) -> int:
    """Convert a real value to the stored integer of ``fmt`` (rounded)."""
    return _round_half_away(Fraction(value) * Fraction(2) ** (fmt.F + fmt.E))
