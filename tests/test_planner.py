# tests/test_planner.py
"""Tests for the correction planner."""

import pytest

from fxinfer.config import FxConfig
from fxinfer.errors import InvalidShiftError
from fxinfer.formats import PinnedFormat, int_constant_format, real_constant_format
from fxinfer.planner import (
    CorrectionKind,
    CorrectionOp,
    plan_offset,
    plan_operand,
    plan_result,
)
from fxinfer.program import parse_operand
from tests.conftest import INTERVAL, make_dest, make_fmt

ROUNDING = FxConfig(rounding=True)
GUARDED = FxConfig(rounding=True, guarding=True)


def _kinds(ops):
    return [op.kind for op in ops]


def _pinned_dest(S, I, F, E=0):
    dest = make_fmt(S, I, F, E, name="r")
    dest.pinned = PinnedFormat(S, I, F)
    return dest


class TestCorrectionOp:

    def test_str(self):
        assert str(CorrectionOp(CorrectionKind.SHIFT_RIGHT, "op1", 2)) == "op1: shr 2"
        assert str(CorrectionOp(CorrectionKind.CAST, "result", width=16)) == \
            "result: cast to 16 bits"
        assert str(CorrectionOp(CorrectionKind.SATURATE_MAX, "result", constant=124)) == \
            "result: satmax #124"


# ── Operands ─────────────────────────────────────────────────────

class TestPlanOperand:

    def test_no_shift(self):
        assert plan_operand(0, make_fmt(1, 3, 4), ROUNDING) == []

    def test_right_shift(self):
        fmt = make_fmt(1, 3, 4)
        fmt.shift_right(2)
        ops = plan_operand(0, fmt, INTERVAL)
        assert ops == [CorrectionOp(CorrectionKind.SHIFT_RIGHT, "op1", 2)]

    def test_right_shift_rounds(self):
        fmt = make_fmt(1, 3, 4)
        fmt.shift_right(2)
        ops = plan_operand(0, fmt, ROUNDING)
        assert _kinds(ops) == [CorrectionKind.SIGNED_ROUND, CorrectionKind.SHIFT_RIGHT]
        assert ops[0].constant == 2

    def test_rounding_skipped_for_empty_bits(self):
        fmt = make_fmt(1, 2, 3, 2)
        fmt.shift_right(1)
        assert _kinds(plan_operand(0, fmt, ROUNDING)) == [CorrectionKind.SHIFT_RIGHT]

    def test_guard_replaces_one_shift(self):
        fmt = make_fmt(1, 0, 7, hi=127, lo=-127)
        fmt.shift_right(1)
        assert plan_operand(0, fmt, GUARDED) == [
            CorrectionOp(CorrectionKind.GUARD, "op1", 1)]

    def test_left_shift(self):
        fmt = make_fmt(3, 2, 3)
        fmt.shift_left(2)
        assert plan_operand(1, fmt, ROUNDING) == [
            CorrectionOp(CorrectionKind.SHIFT_LEFT, "op2", 2)]

    def test_constant_is_folded(self):
        fmt = real_constant_format(0.5, 8)
        fmt.shift_right(3)
        assert plan_operand(1, fmt, INTERVAL) == [
            CorrectionOp(CorrectionKind.CONST_FOLD, "op2", 3, 8)]

    def test_exact_offset_is_truncated(self):
        offset = int_constant_format(9)
        offset.shift = 1
        ops = plan_operand(1, offset, ROUNDING, exact=True)
        assert ops == [CorrectionOp(CorrectionKind.CONST_FOLD, "op2", 1, 4)]

    def test_lost_integer_bits(self):
        fmt = make_fmt(1, 3, 1)
        fmt.shift_right(2)
        with pytest.raises(InvalidShiftError):
            plan_operand(0, fmt, INTERVAL)


class TestPlanOffset:

    def test_rescale(self):
        operand = parse_operand("*p+8")
        assert plan_offset(0, operand, 1) == [
            CorrectionOp(CorrectionKind.OFFSET_RESCALE, "op1", 1, 4)]
        assert plan_offset(0, operand, -1)[0].constant == 16

    def test_nothing_to_do(self):
        assert plan_offset(0, parse_operand("*p+8"), 0) == []
        assert plan_offset(0, parse_operand("*p"), 2) == []


# ── Result ───────────────────────────────────────────────────────

class TestPlanResult:

    def _wide_product(self):
        fmt = make_fmt(2, 0, 30, width=32, hi=1073676289, lo=-1073676289)
        return fmt

    def test_fits(self):
        result = make_fmt(1, 3, 4)
        fmt, ops = plan_result(result, make_dest(8), ROUNDING)
        assert ops == []
        assert fmt.sif() == (1, 3, 4, 0)

    def test_uninitialized(self):
        fmt, ops = plan_result(make_dest(32), make_dest(16), INTERVAL)
        assert ops == [] and not fmt.initialized

    def test_narrowing(self):
        fmt, ops = plan_result(self._wide_product(), make_dest(16), INTERVAL)
        assert ops == [
            CorrectionOp(CorrectionKind.SHIFT_RIGHT, "result", 15),
            CorrectionOp(CorrectionKind.CAST, "result", width=16),
        ]
        assert fmt.sif() == (1, 0, 15, 0)
        assert fmt.width == 16
        assert (fmt.hi, fmt.lo) == (32766, -32767)

    def test_narrowing_rounds(self):
        _, ops = plan_result(self._wide_product(), make_dest(16), ROUNDING)
        assert _kinds(ops) == [CorrectionKind.SIGNED_ROUND, CorrectionKind.SHIFT_RIGHT,
                               CorrectionKind.CAST]
        assert ops[0].constant == 1 << 14

    def test_narrowing_guards_single_sign_bit(self):
        result = make_fmt(1, 0, 31, width=32)
        fmt, ops = plan_result(result, make_dest(16), GUARDED)
        assert _kinds(ops) == [CorrectionKind.GUARD, CorrectionKind.SIGNED_ROUND,
                               CorrectionKind.SHIFT_RIGHT, CorrectionKind.CAST]
        assert fmt.sif() == (1, 0, 15, 0)

    def test_pinned_destination_saturates(self):
        result = make_fmt(1, 4, 3, hi=94, lo=-96)
        fmt, ops = plan_result(result, _pinned_dest(1, 2, 5), INTERVAL)
        assert ops == [
            CorrectionOp(CorrectionKind.SHIFT_LEFT, "result", 2),
            CorrectionOp(CorrectionKind.SATURATE_MAX, "result", constant=124),
            CorrectionOp(CorrectionKind.SATURATE_MIN, "result", constant=-124),
        ]
        assert fmt.sif() == (1, 2, 3, 2)
        assert (fmt.hi, fmt.lo) == (124, -124)

    def test_unsigned_pinned_destination_saturates_at_zero(self):
        result = make_fmt(1, 4, 3, hi=94, lo=-96)
        dest = make_fmt(0, 3, 5, signed=False, name="r")
        dest.pinned = PinnedFormat(0, 3, 5)
        fmt, ops = plan_result(result, dest, INTERVAL)
        assert ops == [
            CorrectionOp(CorrectionKind.SHIFT_LEFT, "result", 2),
            CorrectionOp(CorrectionKind.SATURATE_MAX, "result", constant=252),
            CorrectionOp(CorrectionKind.SATURATE_MIN, "result", constant=0),
        ]
        assert fmt.sif() == (0, 3, 3, 2)
        assert (fmt.hi, fmt.lo) == (252, 0)
        assert not fmt.signed

    def test_pinned_destination_relabels_sign_bits(self):
        result = make_fmt(3, 2, 3, hi=20, lo=-20)
        fmt, ops = plan_result(result, _pinned_dest(1, 4, 3), INTERVAL)
        assert ops == []
        assert fmt.sif() == (1, 4, 3, 0)
        assert (fmt.hi, fmt.lo) == (20, -20)

    def test_result_is_a_copy(self):
        result = self._wide_product()
        plan_result(result, make_dest(16), INTERVAL)
        assert result.width == 32
        assert result.sif() == (2, 0, 30, 0)
