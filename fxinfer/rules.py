# fxinfer/rules.py
"""
Operation rules.

Each rule takes the destination view and the operand views of one
statement and returns the result format.  Rules record the shifts they
want on their operands in ``operand.shift``; the correction planner turns
those into concrete operations in the rewrite pass.  A rule returns an
uninitialized result when an operand format is not known yet; the driver
retries the statement in the next pass.

Summary
-------
    assignment   copy / cast / negate / load / store, pointer binary point
                 preservation, whole-aggregate broadcast
    dereference  load through a pointer, byte offset rescaling
    pointer      pointer + offset
    addition     sign-bit reservation, binary point alignment, guard bit
    multiply     virtual shift by ±2**k, fraction-bit budgeting,
                 double-precision widening, most-negative-number reserve
    division     constant inversion, virtual shift, dividend/divisor
                 fitting
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Dict, List, Optional, Sequence

from fxinfer.affine import NoiseAllocator
from fxinfer.config import FxConfig
from fxinfer.errors import Codes, DiagnosticSink, InfeasibleFormatError, ProgramError
from fxinfer.formats import FixedPointFormat, Number, inverted_constant_format
from fxinfer.program import Opcode, Statement
from fxinfer.ranges import (
    add_range,
    ceil_log2_range,
    div_range,
    log2_if_pow2,
    max_is_most_negative,
    mul_range,
    operand_affine,
    pessimism,
    rounding_may_overflow,
    shifted_max,
    shifted_min,
)

logger = logging.getLogger(__name__)


@dataclass
class RuleResult:
    """Outcome of one operation rule.

    ``operands`` are the operand views in statement order, carrying their
    pending shifts.  ``opcode`` is the operation the rewrite should emit,
    which differs from the statement's when a multiply becomes a copy,
    a negation or a widening multiply.
    """
    result: FixedPointFormat
    operands: List[FixedPointFormat]
    opcode: Opcode
    virtual_shift: Optional[int] = None
    dropped: Optional[int] = None
    offset_shift: int = 0
    replaced: Dict[int, Number] = field(default_factory=dict)
    broadcast: bool = False

    @property
    def defined(self) -> bool:
        return self.result.initialized


def constant_value(fmt: FixedPointFormat) -> Fraction:
    """Real value of a constant operand (before any pending shift)."""
    return Fraction(fmt.constant) / Fraction(2) ** fmt.binary_point


def pointee_shift(fmt: FixedPointFormat) -> int:
    """log2 of the ratio between a pointer's original and fixed-point
    element widths; positive when the original element was wider."""
    wide, narrow = fmt.pointee_width, fmt.width
    if wide == narrow:
        return 0
    big, small = max(wide, narrow), min(wide, narrow)
    ratio = big // small
    if big % small or ratio & (ratio - 1):
        raise InfeasibleFormatError(
            f"element widths {wide} and {narrow} are not a power of two apart",
            key=fmt.key)
    k = ratio.bit_length() - 1
    return k if wide > narrow else -k


class OperationRules:
    """Format rules for every opcode, bound to one configuration."""

    def __init__(self, cfg: FxConfig, sink: DiagnosticSink,
                 noise: Optional[NoiseAllocator] = None) -> None:
        self.cfg = cfg
        self.sink = sink
        self.noise = noise or NoiseAllocator()
        self._dispatch = {
            Opcode.COPY: self.assignment,
            Opcode.CAST: self.assignment,
            Opcode.NEGATE: self.assignment,
            Opcode.LOAD: self.assignment,
            Opcode.STORE: self.assignment,
            Opcode.POINTER_OFFSET: self.pointer_offset,
            Opcode.ADD: self.addition,
            Opcode.SUB: self.addition,
            Opcode.MUL: self.multiplication,
            Opcode.WIDEN_MUL: self.multiplication,
            Opcode.DIV: self.division,
        }

    def apply(self, stmt: Statement, dest: FixedPointFormat,
              operands: Sequence[FixedPointFormat], aggregate: bool = False) -> RuleResult:
        try:
            rule = self._dispatch[stmt.opcode]
        except KeyError:
            raise ProgramError(f"no format rule for {stmt.opcode.value}",
                               key=stmt.name) from None
        outcome = rule(stmt, dest, list(operands))
        outcome.broadcast = aggregate and outcome.defined
        return outcome

    # ── helpers ──────────────────────────────────────────────────────

    @staticmethod
    def _undefined(stmt: Statement, dest: FixedPointFormat,
                   ops: List[FixedPointFormat]) -> RuleResult:
        blank = FixedPointFormat(key=dest.key, width=dest.width, signed=dest.signed,
                                 pointee_width=dest.pointee_width, pinned=dest.pinned,
                                 iterative=dest.iterative)
        return RuleResult(blank, ops, stmt.opcode)

    @staticmethod
    def _base(dest: FixedPointFormat) -> FixedPointFormat:
        result = dest.copy()
        result.shift = 0
        result.aa = None
        result.alias = None
        result.constant = None
        result.induction = False
        result.hi, result.lo = 0, 1
        return result

    def _affine(self, op: FixedPointFormat):
        return operand_affine(op, self.cfg) if self.cfg.affine else None

    @staticmethod
    def _fit_constant(op: FixedPointFormat, width: int) -> None:
        # a literal takes the width of its partner, spare bits become sign bits
        if not op.is_constant or op.width == width:
            return
        sign_bits = width - op.I - op.F - op.E
        if sign_bits < op.sign_floor:
            raise InfeasibleFormatError(
                f"constant {constant_value(op)} does not fit {width} bits", key=op.key)
        op.S, op.width = sign_bits, width

    # ── assignment ───────────────────────────────────────────────────

    def assignment(self, stmt: Statement, dest: FixedPointFormat,
                   ops: List[FixedPointFormat]) -> RuleResult:
        """Copy, cast, negate, load and store.

        The result takes the operand's format.  Unsigned to signed costs a
        right shift by one; a value stored through a pointer is shifted so
        that the pointee keeps its binary point.
        """
        op = ops[0]
        if not op.initialized:
            return self._undefined(stmt, dest, ops)
        if stmt.operands[0].deref:
            return self.dereference(stmt, dest, ops)

        result = self._base(dest)
        if op.is_constant:
            result.assign_format(op)
            result.S = dest.width - op.I - op.F - op.E
            if result.S < result.sign_floor:
                raise InfeasibleFormatError(
                    f"constant {constant_value(op)} does not fit {dest.width} bits",
                    key=dest.key)
        elif op.width != dest.width:
            raise InfeasibleFormatError(
                f"{stmt.opcode.value} from {op.width} to {dest.width} bits",
                code=Codes.WIDTH_MISMATCH, key=dest.key)
        elif (stmt.opcode is Opcode.CAST or op.signed == dest.signed
              or (dest.signed and op.is_pointer and not dest.is_pointer)
              or (op.signed and dest.is_pointer and not op.is_pointer)):
            result.assign_format(op)
        elif op.signed:
            self.sink.warning(Codes.SIGNEDNESS_CHANGE,
                              "signed value reinterpreted as unsigned", key=dest.key)
            result.assign_format(op)
        else:
            self.sink.warning(Codes.SIGNEDNESS_CHANGE,
                              "unsigned value needs a sign bit, shifting right by 1",
                              key=dest.key)
            op.shift_right(1)
            result.assign_format(op)
            result.hi, result.lo = shifted_max(op, self.cfg), shifted_min(op, self.cfg)

        if dest.is_pointer and not op.is_pointer and dest.initialized:
            self._preserve_pointee(dest, op, result)

        if op.is_pointer and dest.is_pointer:
            result.alias = op.alias or op.key.value

        result.aa = self._affine(op)
        result.fill_empty_bits()

        opcode = stmt.opcode
        if opcode is Opcode.NEGATE:
            result.hi, result.lo = -result.lo, -result.hi
            if result.aa is not None:
                result.aa = result.aa.negated()
        logger.debug("  %s: result %s", opcode.value, result.describe())
        return RuleResult(result, ops, opcode)

    def _preserve_pointee(self, dest: FixedPointFormat, op: FixedPointFormat,
                          result: FixedPointFormat) -> None:
        bp_diff = (dest.S + dest.I) - (result.S + result.I)
        if bp_diff == 0:
            return
        if bp_diff > 0:
            op.shift_right(bp_diff)
        elif op.S + bp_diff >= op.sign_floor:
            op.shift_left(-bp_diff)
        else:
            raise InfeasibleFormatError("could not preserve pointer format",
                                        key=dest.key,
                                        hint="the stored value has too few sign bits")
        logger.debug("  pointer store shifted by %+d", bp_diff)
        result.S, result.I, result.F, result.E = op.sif()
        result.hi, result.lo = shifted_max(op, self.cfg), shifted_min(op, self.cfg)

    # ── pointers ─────────────────────────────────────────────────────

    def dereference(self, stmt: Statement, dest: FixedPointFormat,
                    ops: List[FixedPointFormat]) -> RuleResult:
        """Load through a pointer; the result is the pointee's format."""
        op = ops[0]
        if op.width != dest.width:
            raise InfeasibleFormatError(
                f"load of {op.width}-bit element into {dest.width} bits",
                code=Codes.WIDTH_MISMATCH, key=dest.key)
        result = self._base(dest)
        result.assign_format(op)
        result.aa = self._affine(op)
        result.fill_empty_bits()
        shift = pointee_shift(op) if stmt.operands[0].offset else 0
        return RuleResult(result, ops, stmt.opcode, offset_shift=shift)

    def pointer_offset(self, stmt: Statement, dest: FixedPointFormat,
                       ops: List[FixedPointFormat]) -> RuleResult:
        """``q = p + offset``: q aliases what p points to."""
        pointer, offset = ops
        if not (pointer.initialized and offset.initialized):
            return self._undefined(stmt, dest, ops)
        if not pointer.is_pointer:
            raise ProgramError("pointer offset needs a pointer as first operand",
                               key=stmt.name)
        # byte offsets scale with the element width, no rounding involved
        offset.shift = pointee_shift(pointer)
        result = self._base(dest)
        result.assign_format(pointer)
        result.aa = None
        result.alias = pointer.alias or pointer.key.value
        result.fill_empty_bits()
        return RuleResult(result, ops, stmt.opcode)

    # ── addition ─────────────────────────────────────────────────────

    def _align(self, op1: FixedPointFormat, op2: FixedPointFormat, min_s: int) -> None:
        # shift the finer operand left while it has spare sign bits,
        # then the coarser one right
        for fine, coarse in ((op2, op1), (op1, op2)):
            if coarse.binary_point > fine.binary_point:
                diff = coarse.binary_point - fine.binary_point
                if fine.S > min_s:
                    fine.shift_left(min(fine.S - min_s, diff))
                if coarse.binary_point > fine.binary_point:
                    coarse.shift_right(coarse.binary_point - fine.binary_point)

    def addition(self, stmt: Statement, dest: FixedPointFormat,
                 ops: List[FixedPointFormat]) -> RuleResult:
        op1, op2 = ops
        if op1.is_constant and op2.initialized:
            self._fit_constant(op1, op2.width)
        if op2.is_constant and op1.initialized:
            self._fit_constant(op2, op1.width)
        if not (op1.initialized and op2.initialized):
            return self._undefined(stmt, dest, ops)

        subtract = stmt.opcode is Opcode.SUB
        result = self._base(dest)
        # one sign bit for the carry, plus one if signed
        min_s = dest.sign_floor + 1
        for n, op in enumerate((op1, op2), 1):
            if op.S < min_s:
                logger.debug("  op%d needs another sign bit", n)
                op.shift_right(1)

        self._align(op1, op2, min_s)

        if self.cfg.rounding and self.cfg.guarding and (
                rounding_may_overflow(op1, self.cfg) or rounding_may_overflow(op2, self.cfg)):
            logger.debug("  rounding may overflow, adding a sign bit")
            op1.shift_right(1)
            op2.shift_right(1)

        result.S = min(op1.S, op2.S) - 1
        result.I = max(op1.I, op2.I) + 1
        result.F = max(op1.F, op2.F)
        result.fill_empty_bits()
        result.hi, result.lo, _ = add_range(op1, op2, self.cfg, subtract, self.sink)

        if pessimism(result, self.cfg) and not dest.is_pointer:
            if op1.shift > 0 and op2.shift > 0:
                logger.debug("  pessimistic addition, giving back a right shift")
                result.I -= 1
                if op1.lost_f_bits > 0 or op2.lost_f_bits > 0:
                    result.F += 1
                else:
                    result.E += 1
                op1.shift_left(1)
                op2.shift_left(1)
            else:
                logger.debug("  pessimistic addition, converting an I bit to S")
                result.S += 1
                result.I -= 1

        result.hi, result.lo, aa = add_range(op1, op2, self.cfg, subtract, self.sink)
        result.aa = aa
        return RuleResult(result, ops, stmt.opcode)

    # ── multiplication ───────────────────────────────────────────────

    def multiplication(self, stmt: Statement, dest: FixedPointFormat,
                       ops: List[FixedPointFormat]) -> RuleResult:
        if not (ops[0].initialized and ops[1].initialized):
            return self._undefined(stmt, dest, ops)

        swapped = ops[0].is_constant and not ops[1].is_constant
        op1, op2 = (ops[1], ops[0]) if swapped else (ops[0], ops[1])

        k = log2_if_pow2(op2) if op2.is_constant else -1
        if k >= 0:
            outcome = self._scale_multiply(stmt, dest, op1, op2, k)
            outcome.operands = ops
            outcome.dropped = 0 if swapped else 1
            return outcome

        outcome = self._multiply(stmt, dest, op1, op2)
        outcome.operands = ops
        return outcome

    def _scale_multiply(self, stmt: Statement, dest: FixedPointFormat,
                        op1: FixedPointFormat, op2: FixedPointFormat,
                        k: int) -> RuleResult:
        # multiply by ±2**k only moves the binary point
        if op2.I == 0 and op2.F != 0:
            k -= op2.F + op2.E
            self._absorb_in_sign_bits(op1, k)
        if k > op1.F + op1.E:
            raise InfeasibleFormatError(
                f"multiply by 2**{k}: only {op1.F + op1.E} fraction bits",
                key=dest.key)
        logger.debug("  virtual shift, binary point moved %d bits", k)
        return self._virtual_shift(stmt, dest, op1, op2, k)

    @staticmethod
    def _absorb_in_sign_bits(op: FixedPointFormat, k: int) -> None:
        # scaling below the integer bits needs a real right shift first
        if k + op.I < 0:
            logger.debug("  operand shifted right %d for 2**%d", -(k + op.I), k)
            op.shift_right(-(k + op.I))

    def _virtual_shift(self, stmt: Statement, dest: FixedPointFormat,
                       op1: FixedPointFormat, op2: FixedPointFormat,
                       k: int) -> RuleResult:
        result = self._base(dest)
        total = op1.binary_point - k
        result.I = max(op1.I + k, 0)
        result.F = max(0, min(op1.F - k, total))
        result.E = total - result.F
        result.S = dest.width - result.I - result.F - result.E
        if result.S < result.sign_floor:
            raise InfeasibleFormatError("virtual shift leaves no sign bit", key=dest.key)
        result.hi = shifted_max(op1, self.cfg)
        result.lo = shifted_min(op1, self.cfg)
        aa = self._affine(op1)
        result.aa = aa.shifted(k) if aa is not None else None

        opcode = Opcode.COPY
        if constant_value(op2) < 0:
            opcode = Opcode.NEGATE
            result.hi, result.lo = -result.lo, -result.hi
            if result.aa is not None:
                result.aa = result.aa.negated()
        return RuleResult(result, [op1, op2], opcode, virtual_shift=k)

    def _fraction_zeros(self, op1: FixedPointFormat, op2: FixedPointFormat) -> int:
        # known sign bits right of the binary point in an operand below 1
        zeros = 0
        if op1.I > 0 and op2.I == 0:
            zeros = min(op2.F + op2.E - ceil_log2_range(op2), op1.I)
        if op2.I > 0 and op1.I == 0:
            zeros = min(op1.F + op1.E - ceil_log2_range(op1), op2.I)
        return max(zeros, 0)

    def _multiply(self, stmt: Statement, dest: FixedPointFormat,
                  op1: FixedPointFormat, op2: FixedPointFormat) -> RuleResult:
        cfg = self.cfg
        result = self._base(dest)
        opcode = Opcode.MUL
        zeros = self._fraction_zeros(op1, op2)
        if zeros:
            logger.debug("  %d fraction zero(s), I bits become S bits", zeros)

        result_info = result.width - result.sign_floor + zeros
        operand_info = op1.info_bits + op2.info_bits
        hi, lo, _ = mul_range(op1, op2, cfg, self.noise, self.sink)
        product_bits = (abs(hi) | abs(lo)).bit_length()

        if cfg.double_precision_mults:
            if (not cfg.interval and operand_info > result_info) or \
                    (cfg.interval and product_bits > result_info):
                result.width = 2 * dest.width
                result_info = result.width - result.sign_floor + zeros
                for op in (op1, op2):
                    op.S += op.width
                    op.width *= 2
                opcode = Opcode.WIDEN_MUL
            else:
                logger.info("double-precision multiply unnecessary for %s", stmt.name)
        else:
            if op1.I + op2.I > result_info:
                raise InfeasibleFormatError(
                    "multiplication impossible, too many integer bits", key=dest.key)
            # sacrifice fraction bits, one at a time, from the wider operand
            while (op1.info_bits + op2.info_bits > result_info
                   and (op1.F > 0 or op2.F > 0)):
                wider, other = (op1, op2) if op1.info_bits > op2.info_bits else (op2, op1)
                (wider if wider.F > 0 else other).shift_right(1)
            if op1.info_bits + op2.info_bits < result_info:
                # a shifted constant can gain an empty bit, give one back
                if op1.info_bits < op2.info_bits and op1.lost_f_bits > 0:
                    op1.shift_left(1)
                elif op2.lost_f_bits > 0:
                    op2.shift_left(1)
                elif op1.lost_f_bits > 0:
                    op1.shift_left(1)

        # right-justify: drop empty bits, larger count first
        while (op1.info_bits + op1.E + op2.info_bits + op2.E > result_info
               and (op1.E > 0 or op2.E > 0)):
            if op1.E > op2.E:
                op1.shift_right(op1.E)
            else:
                op2.shift_right(op2.E)

        self._product_format(result, op1, op2, zeros)
        result.hi, result.lo, _ = mul_range(op1, op2, cfg, self.noise, self.sink)

        if (cfg.interval and max_is_most_negative(result, cfg)) or \
                (not cfg.interval and cfg.rounding and result.S == 1):
            logger.debug("  adding a sign bit to avoid the most negative number")
            if op1.info_bits > op2.info_bits and op1.binary_point > 0:
                op1.shift_right(1)
            elif op2.binary_point > 0:
                op2.shift_right(1)
            else:
                self.sink.warning(Codes.MNN_RESERVE_FAILED,
                                  "failed to add a sign bit to the product", key=dest.key)

        self._product_format(result, op1, op2, zeros)
        if result.S < result.sign_floor:
            raise InfeasibleFormatError("multiplication failed, sign bit is lost",
                                        key=dest.key)

        result.hi, result.lo, _ = mul_range(op1, op2, cfg, self.noise, self.sink)
        if pessimism(result, cfg) > zeros and result.I > 0:
            if op1.info_bits < op2.info_bits and op1.shift > 0:
                op1.shift_left(1)
            elif op2.shift > 0:
                op2.shift_left(1)
            elif op1.shift > 0:
                op1.shift_left(1)
            self._product_format(result, op1, op2, zeros)
            result.I -= 1
            result.S += 1

        result.hi, result.lo, aa = mul_range(op1, op2, cfg, self.noise, self.sink)
        result.aa = aa
        result.shift = 0
        return RuleResult(result, [op1, op2], opcode)

    @staticmethod
    def _product_format(result: FixedPointFormat, op1: FixedPointFormat,
                        op2: FixedPointFormat, zeros: int) -> None:
        result.I = op1.I + op2.I - zeros
        result.F = op1.F + op2.F
        result.E = op1.E + op2.E
        result.S = result.width - result.I - result.F - result.E

    # ── division ─────────────────────────────────────────────────────

    def division(self, stmt: Statement, dest: FixedPointFormat,
                 ops: List[FixedPointFormat]) -> RuleResult:
        op1, op2 = ops
        if not (op1.initialized and op2.initialized):
            return self._undefined(stmt, dest, ops)

        if self.cfg.const_div_to_mult and op2.is_constant:
            divisor = constant_value(op2)
            inverse = inverted_constant_format(divisor, dest.width)
            inverse.key = op2.key
            self._fit_constant(inverse, op1.width)
            logger.debug("  division by %s becomes multiplication", divisor)
            outcome = self.multiplication(stmt, dest, [op1, inverse])
            outcome.replaced[1] = 1 / divisor
            return outcome

        k = log2_if_pow2(op2) if op2.is_constant else -1
        if k >= 0:
            k -= op2.F + op2.E
            self._absorb_in_sign_bits(op1, -k)
            if k + op1.F + op1.E < 0:
                raise InfeasibleFormatError(f"divide by 2**{k}: too few fraction bits",
                                            key=dest.key)
            logger.debug("  virtual shift, binary point moved %d bits", -k)
            outcome = self._virtual_shift(stmt, dest, op1, op2, -k)
            outcome.dropped = 1
            return outcome

        return self._divide(stmt, dest, op1, op2)

    def _divide(self, stmt: Statement, dest: FixedPointFormat,
                op1: FixedPointFormat, op2: FixedPointFormat) -> RuleResult:
        cfg = self.cfg
        width = dest.width
        # extra sign bits in the dividend only become sign bits of the quotient
        if op1.S > 1:
            op1.shift_left(op1.S - 1)
        # count fraction bit positions, not information bits
        if op1.F != op1.width - op1.S - op1.I:
            op1.F = op1.width - op1.S - op1.I
            op1.E = 0
            logger.debug("  dividend cast to %s", op1.describe())

        op2.shift_right(op2.E)
        half = (op1.F + op1.I) // 2
        if op2.F + op2.I > half:
            op2.shift_right(min(op2.F + op2.I - half, op2.F))
        if op2.F > op1.F:
            op2.shift_right(op2.F - op1.F)
        if op1.I + op2.F >= width:
            shift = op1.I + op2.F - width + 1
            if not 0 < shift <= op2.F:
                raise InfeasibleFormatError("could not fit the division result",
                                            key=dest.key)
            op2.shift_right(shift)

        result = self._base(dest)
        result.I = op1.I + op2.F
        result.F = op1.F - op2.F
        result.S = op1.S
        result.fill_empty_bits()
        result.hi, result.lo, result.aa = div_range(op1, op2, result, cfg,
                                                    self.noise, self.sink)

        if pessimism(result, cfg):
            extra = result.I + result.F + result.E - ceil_log2_range(result)
            extra = min(result.I, extra)
            logger.debug("  %d I bit(s) changed to S bits", extra)
            result.S += extra
            result.I -= extra

        if max_is_most_negative(result, cfg):
            if result.S - 1 >= result.sign_floor:
                result.S -= 1
                result.I += 1
            else:
                self.sink.warning(Codes.MNN_RESERVE_FAILED,
                                  "quotient may be the most negative number", key=dest.key)
        return RuleResult(result, [op1, op2], stmt.opcode)
