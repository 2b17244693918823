# fxinfer/planner.py
"""
Correction planner.

Turns the shifts the operation rules recorded on operand views, and the
gap between a result format and its destination, into an ordered list of
:class:`CorrectionOp`.  Plans are only kept in the rewrite pass but
:func:`plan_result` runs in every pass because the narrowed, saturated
result is what gets stored.

Operand corrections, in order:

    CONST_FOLD        pending shift folded into a literal at compile time
    OFFSET_RESCALE    byte offset of a dereference rescaled at compile time
    SHIFT_LEFT
    GUARD             extra right shift by one when rounding could overflow
    ROUND / SIGNED_ROUND
    SHIFT_RIGHT

Result narrowing, in order:

    GUARD, ROUND / SIGNED_ROUND, SHIFT_RIGHT (or SHIFT_LEFT),
    SATURATE_MAX, SATURATE_MIN, CAST

Steps that the current range proves unnecessary are left out.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from fxinfer.config import FxConfig
from fxinfer.formats import FixedPointFormat, arith_shift, mask, round_shift
from fxinfer.program import Operand
from fxinfer.ranges import rounding_may_overflow, shifted_max, shifted_min

logger = logging.getLogger(__name__)


class CorrectionKind(enum.Enum):
    SHIFT_LEFT = "shl"
    SHIFT_RIGHT = "shr"
    GUARD = "guard"
    ROUND = "round"
    SIGNED_ROUND = "sround"
    SATURATE_MAX = "satmax"
    SATURATE_MIN = "satmin"
    CAST = "cast"
    CONST_FOLD = "fold"
    OFFSET_RESCALE = "offset"


@dataclass(frozen=True)
class CorrectionOp:
    """One inserted operation.

    ``target`` is ``"op1"``/``"op2"`` for operand corrections and
    ``"result"`` for narrowing.  ``amount`` is a shift count, ``constant``
    a rounding/saturation constant or a folded literal, ``width`` the
    cast width.
    """
    kind: CorrectionKind
    target: str
    amount: int = 0
    constant: Optional[int] = None
    width: int = 0

    def __str__(self) -> str:
        text = f"{self.target}: {self.kind.value}"
        if self.amount:
            text += f" {self.amount}"
        if self.constant is not None:
            text += f" #{self.constant}"
        if self.width:
            text += f" to {self.width} bits"
        return text


def _rounding_op(target: str, lo: int, hi: int, shift: int,
                 cfg: FxConfig) -> CorrectionOp:
    half = 1 << (shift - 1)
    if lo < 0 < hi and not cfg.round_positive:
        return CorrectionOp(CorrectionKind.SIGNED_ROUND, target, shift, half)
    if hi > 0:
        return CorrectionOp(CorrectionKind.ROUND, target, shift, half)
    return CorrectionOp(CorrectionKind.ROUND, target, shift, half - 1)


# ═══════════════════════════════════════════════════════════════════════════════
# OPERANDS
# ═══════════════════════════════════════════════════════════════════════════════

def plan_offset(position: int, operand: Operand, shift: int) -> List[CorrectionOp]:
    """Rescale the byte offset of a dereference by ``2**-shift``."""
    if not shift or not operand.offset:
        return []
    return [CorrectionOp(CorrectionKind.OFFSET_RESCALE, f"op{position + 1}",
                         shift, arith_shift(operand.offset, shift))]


def plan_operand(position: int, fmt: FixedPointFormat, cfg: FxConfig,
                 exact: bool = False) -> List[CorrectionOp]:
    """Operations realizing the pending shift of one operand.

    ``exact`` marks integer offsets, which are shifted without rounding.
    Raises :class:`~fxinfer.errors.InvalidShiftError` if the shift lost
    integer or sign bits.
    """
    if fmt.shift == 0:
        return []
    fmt.check_shift()
    target = f"op{position + 1}"

    if fmt.is_constant:
        folded = round_shift(fmt.constant, fmt.shift, not exact, cfg.round_positive)
        return [CorrectionOp(CorrectionKind.CONST_FOLD, target, fmt.shift, folded)]

    if fmt.shift < 0:
        return [CorrectionOp(CorrectionKind.SHIFT_LEFT, target, -fmt.shift)]

    ops: List[CorrectionOp] = []
    shift = fmt.shift
    if cfg.rounding and not exact and fmt.original_f > fmt.F:
        if cfg.guarding and rounding_may_overflow(fmt, cfg):
            ops.append(CorrectionOp(CorrectionKind.GUARD, target, 1))
            shift -= 1
        if shift > 0:
            ops.append(_rounding_op(target, fmt.lo, fmt.hi, shift, cfg))
    if shift > 0:
        ops.append(CorrectionOp(CorrectionKind.SHIFT_RIGHT, target, shift))
    return ops


# ═══════════════════════════════════════════════════════════════════════════════
# RESULT
# ═══════════════════════════════════════════════════════════════════════════════

def _needs_fixing(fmt: FixedPointFormat, dest: FixedPointFormat) -> bool:
    if fmt.width > dest.width:
        return True
    if not dest.initialized or not (dest.pinned is not None or dest.is_pointer):
        return False
    return (fmt.S, fmt.I) != (dest.S, dest.I)


def plan_result(result: FixedPointFormat, dest: FixedPointFormat,
                cfg: FxConfig) -> Tuple[FixedPointFormat, List[CorrectionOp]]:
    """Fit ``result`` into ``dest``; returns the stored format and the plan.

    A wide product is shifted down to one sign bit in the destination
    width and cast.  A pinned or pointer destination keeps its S/I split:
    extra integer bits are saturated away, missing ones are made by
    shifting right.
    """
    fmt = result.copy()
    ops: List[CorrectionOp] = []
    if not fmt.initialized or not _needs_fixing(fmt, dest):
        return fmt, ops

    narrowing = fmt.width > dest.width
    keep_split = dest.initialized and (dest.pinned is not None or dest.is_pointer)

    if narrowing and cfg.rounding and cfg.guarding and fmt.S == 1:
        ops.append(CorrectionOp(CorrectionKind.GUARD, "result", 1))
        fmt.S += 1
        if fmt.E > 0:
            fmt.E -= 1
        else:
            fmt.F -= 1
        fmt.hi >>= 1
        fmt.lo >>= 1

    excess = fmt.width - dest.width
    saturation: Optional[int] = None
    if keep_split and dest.I < fmt.I:
        drop = fmt.I - dest.I
        saturation = mask(dest.I + fmt.F + fmt.E)
        fmt.S += drop
        fmt.I -= drop
    relabel = max(dest.I - fmt.I, 0) if keep_split else 0

    if keep_split:
        target_s = dest.S
    elif narrowing:
        target_s = 1
    else:
        target_s = fmt.S
    shift = target_s + excess + relabel - fmt.S

    if saturation is not None:
        if shift > 0:
            saturation &= ~mask(shift)
        if fmt.E > 0:
            saturation &= ~mask(fmt.E)

    if shift > fmt.E and cfg.rounding:
        ops.append(_rounding_op("result", fmt.lo, fmt.hi, shift, cfg))
    if shift > 0:
        ops.append(CorrectionOp(CorrectionKind.SHIFT_RIGHT, "result", shift))
    elif shift < 0:
        ops.append(CorrectionOp(CorrectionKind.SHIFT_LEFT, "result", -shift))

    if shift >= 0:
        if shift > fmt.E:
            fmt.F = fmt.F + fmt.E - shift
            fmt.E = 0
        else:
            fmt.E -= shift
    else:
        fmt.E -= shift
    fmt.shift = shift
    hi, lo = shifted_max(fmt, cfg), shifted_min(fmt, cfg)
    if saturation is not None:
        limit = arith_shift(saturation, shift)
        if hi > limit:
            ops.append(CorrectionOp(CorrectionKind.SATURATE_MAX, "result", constant=limit))
            hi = limit
        floor = -limit if dest.signed else 0
        if lo < floor:
            ops.append(CorrectionOp(CorrectionKind.SATURATE_MIN, "result", constant=floor))
            lo = floor
        # a clamped range is no longer described by the old affine form
        fmt.aa = None
    if narrowing:
        ops.append(CorrectionOp(CorrectionKind.CAST, "result", width=dest.width))

    fmt.S = target_s
    fmt.I += relabel
    if keep_split:
        fmt.signed = dest.signed
    fmt.width = dest.width
    fmt.hi, fmt.lo = hi, lo
    fmt.shift = 0
    fmt.original_f = fmt.F
    if fmt.aa is not None:
        fmt.aa = fmt.aa.renormalized(fmt.binary_point, cfg.rounding, cfg.round_positive)
    fmt.check_shift()
    if ops:
        logger.debug("  result fitted to %s: %s", fmt.describe(),
                     ", ".join(str(op) for op in ops))
    return fmt, ops
