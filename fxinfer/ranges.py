# fxinfer/ranges.py
"""
Range engine.

Every bound handled here is an integer in the stored units of a format,
that is scaled by ``2**-(F+E)`` of the format it belongs to.  A format's
``hi``/``lo`` are kept at the binary point the value had *before* its
pending ``shift``; the ``shifted_*`` helpers apply the shift (and the
configured rounding) without touching the record.

In affine mode the bounds derived from the affine list are consulted as
well and the tighter of the two is used.

Public API
----------
    shifted_max / shifted_min / shifted_range
    ceil_log2_range      - bits needed for the range magnitude
    log2_if_pow2         - exponent of a ±2**k constant, else -1
    rounding_may_overflow
    check_range          - post-statement hazard warnings
    range_compare / range_max / range_min
    pessimism            - spare integer bits in a format
    max_is_most_negative
    operand_affine       - affine list of an operand after its shift
    add_range / mul_range / div_range
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

from fxinfer.affine import (
    AffineList,
    NoiseAllocator,
    affine_add,
    affine_divide,
    affine_multiply,
)
from fxinfer.config import FxConfig
from fxinfer.errors import Codes, DiagnosticSink, FxError
from fxinfer.formats import FixedPointFormat, ctz, mask, round_shift, sext

logger = logging.getLogger(__name__)

Bounds = Tuple[int, int, Optional[AffineList]]


# ═══════════════════════════════════════════════════════════════════════════════
# SHIFTED BOUNDS
# ═══════════════════════════════════════════════════════════════════════════════

def _shift_bound(value: int, shift: int, cfg: FxConfig) -> int:
    if shift > 0:
        return round_shift(value, shift, cfg.rounding, cfg.round_positive)
    return value << -shift


def _affine_bounds(fmt: FixedPointFormat, cfg: FxConfig) -> Optional[Tuple[int, int]]:
    if fmt.aa is None or fmt.aa.destroyed or not len(fmt.aa):
        return None
    unshifted_bp = fmt.binary_point + fmt.shift
    aa = fmt.aa
    if aa.binary_point() != unshifted_bp:
        aa = aa.renormalized(unshifted_bp, cfg.rounding, cfg.round_positive)
    return (_shift_bound(aa.max(), fmt.shift, cfg),
            _shift_bound(aa.min(), fmt.shift, cfg))


def shifted_max(fmt: FixedPointFormat, cfg: FxConfig) -> int:
    """Upper bound after the pending shift."""
    value = fmt.hi
    if value == 0 or fmt.shift == 0:
        return value
    value = _shift_bound(value, fmt.shift, cfg)
    if cfg.affine:
        bounds = _affine_bounds(fmt, cfg)
        if bounds is not None and bounds[0] < value:
            value = bounds[0]
    return value


def shifted_min(fmt: FixedPointFormat, cfg: FxConfig) -> int:
    """Lower bound after the pending shift."""
    value = fmt.lo
    if value == 0 or fmt.shift == 0:
        return value
    value = _shift_bound(value, fmt.shift, cfg)
    if cfg.affine:
        bounds = _affine_bounds(fmt, cfg)
        if bounds is not None and bounds[1] > value:
            value = bounds[1]
    return value


def shifted_range(fmt: FixedPointFormat, cfg: FxConfig) -> FixedPointFormat:
    """Copy of ``fmt`` whose bounds have the pending shift applied."""
    out = fmt.copy()
    out.hi = shifted_max(fmt, cfg)
    out.lo = shifted_min(fmt, cfg)
    return out


# ═══════════════════════════════════════════════════════════════════════════════
# PREDICATES
# ═══════════════════════════════════════════════════════════════════════════════

def ceil_log2_range(fmt: FixedPointFormat) -> int:
    """Number of bits needed for ``max(|hi|, |lo|)``."""
    return (abs(fmt.hi) | abs(fmt.lo)).bit_length()


def log2_if_pow2(fmt: FixedPointFormat) -> int:
    """``k`` if the range is the single value ``2**k`` or ``-2**k``, else -1.

    The test is on the stored integer; the binary point is not considered.
    """
    if fmt.hi != fmt.lo:
        return -1
    value = abs(sext(fmt.hi, fmt.width)) if fmt.width else abs(fmt.hi)
    if value == 0 or value & (value - 1):
        return -1
    return ctz(value, value.bit_length())


def rounding_may_overflow(fmt: FixedPointFormat, cfg: FxConfig) -> bool:
    """Whether adding the rounding constant before the shift could flip sign."""
    if fmt.E >= fmt.shift:
        return False
    precision = fmt.precision
    view = fmt.copy()
    view.hi = sext(fmt.hi, precision + fmt.shift)
    view.lo = sext(fmt.lo, precision + fmt.shift)
    new_hi = sext(shifted_max(view, cfg), precision)
    new_lo = sext(shifted_min(view, cfg), precision)
    return (view.hi > 0 and new_hi < 0) or (view.lo < 0 and new_lo > 0)


def pessimism(fmt: FixedPointFormat, cfg: FxConfig) -> int:
    """Integer bits the format carries beyond what its shifted range needs."""
    if fmt.I == 0:
        return 0
    if fmt.hi == 0 and fmt.lo == 0:
        return 0
    needed = ceil_log2_range(shifted_range(fmt, cfg))
    return max(0, fmt.I + fmt.F + fmt.E - needed)


def max_is_most_negative(fmt: FixedPointFormat, cfg: FxConfig) -> bool:
    """Whether the shifted maximum equals the most negative width-bit value."""
    return shifted_max(fmt, cfg) == 1 << (fmt.width - 1)


def check_range(fmt: FixedPointFormat, cfg: FxConfig, sink: DiagnosticSink) -> None:
    """Warn if the range no longer fits the format after its shift."""
    if (fmt.undefined or fmt.induction or fmt.is_pointer
            or fmt.pinned is not None or not fmt.initialized):
        return
    guarded = "guarded" if cfg.guarding else "not guarded"
    needed = ceil_log2_range(fmt)
    widened = ceil_log2_range(shifted_range(fmt, cfg))

    hi = sext(shifted_max(fmt, cfg), fmt.width)
    if hi != fmt.hi:
        sink.warning(Codes.ROUNDING_SIGN_FLIP,
                     f"maximum value flipped sign when extended, {guarded}", key=fmt.key)
    elif widened > needed:
        sink.warning(Codes.POSSIBLE_OVERFLOW,
                     "maximum value too big for operand size", key=fmt.key)

    lo = sext(shifted_min(fmt, cfg), fmt.width)
    if lo != fmt.lo:
        sink.warning(Codes.ROUNDING_SIGN_FLIP,
                     f"minimum value flipped sign when extended, {guarded}", key=fmt.key)
    elif widened > needed:
        sink.warning(Codes.POSSIBLE_OVERFLOW,
                     "minimum value too big for operand size", key=fmt.key)

    if pessimism(fmt, cfg):
        sink.info(Codes.PESSIMISTIC_FORMAT, "result format is pessimistic", key=fmt.key)


# ═══════════════════════════════════════════════════════════════════════════════
# COMPARISON
# ═══════════════════════════════════════════════════════════════════════════════

def _aligned(fmt1: FixedPointFormat, fmt2: FixedPointFormat, attr: str) -> Tuple[int, int]:
    v1, v2 = getattr(fmt1, attr), getattr(fmt2, attr)
    bp1, bp2 = fmt1.binary_point, fmt2.binary_point
    if bp1 > bp2:
        v2 <<= bp1 - bp2
    elif bp2 > bp1:
        v1 <<= bp2 - bp1
    return v1, v2


def _require_defined(*formats: FixedPointFormat) -> None:
    for fmt in formats:
        if fmt.undefined:
            raise FxError("comparing an undefined range", key=fmt.key)


def range_compare(fmt1: FixedPointFormat, fmt2: FixedPointFormat) -> int:
    """Compare ranges after aligning binary points.

    Returns 1 if range 1 is at least partly outside range 2, -1 if it is
    strictly inside, 0 if the ranges are equal.
    """
    _require_defined(fmt1, fmt2)
    max1, max2 = _aligned(fmt1, fmt2, "hi")
    min1, min2 = _aligned(fmt1, fmt2, "lo")
    if max1 > max2 or min2 > min1:
        return 1
    if max1 < max2 or min2 < min1:
        return -1
    return 0


def _rescale_to(value: int, drop: int, cfg: FxConfig) -> int:
    return round_shift(value, drop, cfg.rounding, cfg.round_positive)


def rescale(value: int, from_bp: int, to_bp: int, cfg: FxConfig) -> int:
    """Re-express a stored bound at another binary point."""
    return _rescale_to(value, from_bp - to_bp, cfg)


def range_max(fmt1: FixedPointFormat, fmt2: FixedPointFormat, cfg: FxConfig) -> int:
    """Larger of the two maxima, expressed at ``fmt1``'s binary point."""
    _require_defined(fmt1, fmt2)
    max1, max2 = _aligned(fmt1, fmt2, "hi")
    if max1 >= max2:
        return fmt1.hi
    bp1, bp2 = fmt1.binary_point, fmt2.binary_point
    if bp1 >= bp2:
        return max2
    return _rescale_to(fmt2.hi, bp2 - bp1, cfg)


def range_min(fmt1: FixedPointFormat, fmt2: FixedPointFormat, cfg: FxConfig) -> int:
    """Smaller of the two minima, expressed at ``fmt1``'s binary point."""
    _require_defined(fmt1, fmt2)
    min1, min2 = _aligned(fmt1, fmt2, "lo")
    if min2 >= min1:
        return fmt1.lo
    bp1, bp2 = fmt1.binary_point, fmt2.binary_point
    if bp1 >= bp2:
        return min2
    return _rescale_to(fmt2.lo, bp2 - bp1, cfg)


# ═══════════════════════════════════════════════════════════════════════════════
# ARITHMETIC
# ═══════════════════════════════════════════════════════════════════════════════

def operand_affine(fmt: FixedPointFormat, cfg: FxConfig) -> AffineList:
    """Affine list of an operand re-expressed after its pending shift.

    An operand without a list gets one built from its interval, keyed on
    its own identity so that later uses stay correlated.
    """
    if fmt.aa is None or fmt.aa.destroyed:
        key = fmt.key.slot if fmt.key is not None else ("<anon>", 0, -1)
        aa = AffineList.from_range(fmt.lo, fmt.hi, fmt.binary_point + fmt.shift, key)
    else:
        aa = fmt.aa
    return aa.renormalized(fmt.binary_point, cfg.rounding, cfg.round_positive)


def add_range(op1: FixedPointFormat, op2: FixedPointFormat, cfg: FxConfig,
              subtract: bool = False, sink: Optional[DiagnosticSink] = None) -> Bounds:
    """Range of ``op1 ± op2`` with both pending shifts applied."""
    if cfg.affine:
        aa = affine_add(operand_affine(op1, cfg), operand_affine(op2, cfg), subtract, sink)
        return aa.max(), aa.min(), aa
    if subtract:
        return (shifted_max(op1, cfg) - shifted_min(op2, cfg),
                shifted_min(op1, cfg) - shifted_max(op2, cfg), None)
    return (shifted_max(op1, cfg) + shifted_max(op2, cfg),
            shifted_min(op1, cfg) + shifted_min(op2, cfg), None)


def mul_range(op1: FixedPointFormat, op2: FixedPointFormat, cfg: FxConfig,
              noise: NoiseAllocator, sink: Optional[DiagnosticSink] = None) -> Bounds:
    """Range of ``op1 * op2``; four corner products or the affine product."""
    if cfg.affine:
        aa = affine_multiply(operand_affine(op1, cfg), operand_affine(op2, cfg), noise, sink)
        return aa.max(), aa.min(), aa
    corners = [a * b
               for a in (shifted_max(op1, cfg), shifted_min(op1, cfg))
               for b in (shifted_max(op2, cfg), shifted_min(op2, cfg))]
    return max(corners), min(corners), None


def _trunc_div(a: int, b: int) -> int:
    q = abs(a) // abs(b)
    return q if (a < 0) == (b < 0) else -q


def div_range(op1: FixedPointFormat, op2: FixedPointFormat, result: FixedPointFormat,
              cfg: FxConfig, noise: NoiseAllocator,
              sink: Optional[DiagnosticSink] = None) -> Bounds:
    """Range of ``op1 / op2`` in the result's units.

    A divisor range that touches zero yields a divide-by-zero warning and
    the full signed span of the result width.
    """
    max1 = sext(shifted_max(op1, cfg), op1.width)
    min1 = sext(shifted_min(op1, cfg), op1.width)
    max2 = sext(shifted_max(op2, cfg), op2.width)
    min2 = sext(shifted_min(op2, cfg), op2.width)

    if min2 == 0 or max2 == 0 or (max2 > 0 and min2 < 0):
        message = "divide by zero possible"
        if sink is not None:
            sink.warning(Codes.DIVIDE_BY_ZERO, message, key=result.key)
        else:
            logger.warning(message)
        hi = mask(result.width - 1)
        return hi, ~hi, None

    if cfg.affine:
        aa = affine_divide(operand_affine(op1, cfg), operand_affine(op2, cfg), noise, sink)
        aa = aa.renormalized(result.binary_point, cfg.rounding, cfg.round_positive)
        return aa.max(), aa.min(), aa

    corners = [_trunc_div(a, b) for a in (max1, min1) for b in (max2, min2)]
    return max(corners), min(corners), None
