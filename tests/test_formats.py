# tests/test_formats.py
"""Tests for the format records, bit helpers and constant classification."""

from fractions import Fraction

import pytest

from fxinfer.errors import InfeasibleFormatError, InvalidShiftError
from fxinfer.formats import (
    SCALAR,
    FixedPointFormat,
    FormatKey,
    arith_shift,
    constant_format,
    ctz,
    int_constant_format,
    inverted_constant_format,
    mask,
    real_constant_format,
    round_shift,
    sext,
    to_stored,
)
from tests.conftest import make_fmt


# ── Bit helpers ──────────────────────────────────────────────────

class TestBitHelpers:

    def test_mask(self):
        assert mask(0) == 0
        assert mask(-3) == 0
        assert mask(8) == 255

    def test_sext(self):
        assert sext(0xFF, 8) == -1
        assert sext(0x7F, 8) == 127
        assert sext(0x180, 8) == -128
        assert sext(5, 0) == 0

    def test_ctz(self):
        assert ctz(8, 10) == 3
        assert ctz(-8, 10) == 3
        assert ctz(0, 5) == 5
        assert ctz(1 << 20, 4) == 4

    def test_arith_shift(self):
        assert arith_shift(-8, 2) == -2
        assert arith_shift(3, -1) == 6

    def test_round_shift_nearest(self):
        assert round_shift(5, 1) == 3
        assert round_shift(4, 1) == 2
        # ties of negative values round toward zero unless rounding positive
        assert round_shift(-5, 1) == -3
        assert round_shift(-5, 1, round_positive=True) == -2

    def test_round_shift_truncates_without_rounding(self):
        assert round_shift(7, 2, rounding=False) == 1
        assert round_shift(-7, 2, rounding=False) == -2

    def test_round_shift_left(self):
        assert round_shift(3, -2) == 12
        assert round_shift(3, 0) == 3


# ── Keys ─────────────────────────────────────────────────────────

class TestFormatKey:

    def test_slot_and_value(self):
        key = FormatKey("x", 2, 3, 7)
        assert key.slot == ("x", 2, 3)
        assert key.value == ("x", 2)

    def test_at_pass(self):
        assert FormatKey("x").at_pass(4) == FormatKey("x", 0, SCALAR, 4)

    def test_str(self):
        assert str(FormatKey("x", 0, SCALAR, 2)) == "x@2"
        assert str(FormatKey("a", 1, 3, 0)) == "a.1[3]@0"


# ── Format records ───────────────────────────────────────────────

class TestFixedPointFormat:

    def test_new_record_is_uninitialized_and_undefined(self):
        fmt = FixedPointFormat()
        assert not fmt.initialized
        assert fmt.undefined

    def test_predicates(self):
        fmt = make_fmt(1, 3, 4)
        assert fmt.initialized and not fmt.undefined
        assert fmt.binary_point == 4
        assert fmt.sign_floor == 1
        assert fmt.consistent
        assert not fmt.is_pointer

    def test_initialize_resets(self):
        fmt = make_fmt(1, 3, 4)
        fmt.initialize()
        assert not fmt.initialized
        assert fmt.undefined
        assert fmt.width == 0

    def test_full_range(self):
        assert make_fmt(1, 3, 4).full_range() == (-127, 127)
        assert make_fmt(0, 8, 0, signed=False).full_range() == (0, 255)
        assert make_fmt(1, 2, 3, 2).full_range() == (-124, 124)

    def test_fill_empty_bits(self):
        fmt = FixedPointFormat(S=1, I=2, F=3, width=8)
        fmt.fill_empty_bits()
        assert fmt.E == 2

    def test_copy_is_deep_for_affine(self):
        from fxinfer.affine import AffineList
        fmt = make_fmt(1, 3, 4)
        fmt.aa = AffineList.from_range(-127, 127, 4, ("v", 0, SCALAR))
        other = fmt.copy()
        other.aa.accumulate(0, 5, 4)
        assert fmt.aa.center == 0

    def test_assign_format(self):
        target = make_fmt(1, 0, 7, name="t")
        target.alias = ("p", 0)
        source = make_fmt(2, 3, 3, hi=20, lo=-10, name="s")
        target.assign_format(source)
        assert target.sif() == (2, 3, 3, 0)
        assert (target.hi, target.lo) == (20, -10)
        assert target.key.identity == "t"
        assert target.alias == ("p", 0)


class TestShifting:

    def test_shift_right_consumes_empty_bits_first(self):
        fmt = make_fmt(1, 2, 3, 2)
        fmt.shift_right(1)
        assert fmt.sif() == (2, 2, 3, 1)
        assert fmt.shift == 1

    def test_shift_right_drops_fraction_bits(self):
        fmt = make_fmt(1, 3, 4)
        fmt.shift_right(2)
        assert fmt.sif() == (3, 3, 2, 0)
        assert fmt.lost_f_bits == 2

    def test_shift_left_restores_fraction_bits(self):
        fmt = make_fmt(1, 3, 4)
        fmt.shift_right(2)
        fmt.shift_left(1)
        assert fmt.sif() == (2, 3, 3, 0)
        fmt.shift_left(1)
        assert fmt.sif() == (1, 3, 4, 0)
        assert fmt.shift == 0

    def test_shift_left_adds_empty_bits(self):
        fmt = make_fmt(3, 2, 3)
        fmt.shift_left(2)
        assert fmt.sif() == (1, 2, 3, 2)
        assert fmt.shift == -2

    def test_check_shift_lost_integer_bits(self):
        fmt = make_fmt(1, 3, 1)
        fmt.shift_right(2)
        with pytest.raises(InvalidShiftError):
            fmt.check_shift()

    def test_check_shift_lost_sign_bit(self):
        fmt = make_fmt(1, 3, 4)
        fmt.shift_left(1)
        with pytest.raises(InvalidShiftError):
            fmt.check_shift()

    def test_check_shift_unsigned(self):
        fmt = make_fmt(0, 4, 4, signed=False)
        fmt.check_shift()
        fmt.shift_left(1)
        with pytest.raises(InvalidShiftError):
            fmt.check_shift()

    def test_shifted_constant_refits_empty_bits(self):
        fmt = real_constant_format(0.25, 16)
        fmt.shift_right(1)
        assert fmt.F + fmt.E == 14
        assert fmt.E == 12


class TestDescribe:

    def test_describe(self):
        text = make_fmt(1, 0, 15).describe()
        assert "( 1/ 0/15/ 0)" in text
        assert "[" in text

    def test_describe_shift(self):
        fmt = make_fmt(1, 3, 4)
        fmt.shift_right(1)
        assert "shft +1" in fmt.describe()

    def test_real_bounds(self):
        assert make_fmt(1, 3, 4, hi=24, lo=-8).real_bounds() == (-0.5, 1.5)


# ── Constants ────────────────────────────────────────────────────

class TestConstants:

    def test_real_half(self):
        fmt = real_constant_format(0.5, 16)
        assert fmt.sif() == (1, 0, 1, 14)
        assert fmt.constant == 1 << 14
        assert fmt.hi == fmt.lo == fmt.constant

    def test_real_negative(self):
        fmt = real_constant_format(-0.75, 16)
        assert fmt.sif() == (1, 0, 2, 13)
        assert fmt.constant == -24576

    def test_real_integer_valued_is_right_justified(self):
        fmt = real_constant_format(3.0, 16)
        assert fmt.sif() == (14, 2, 0, 0)
        assert fmt.constant == 3

    def test_real_one(self):
        fmt = real_constant_format(1.0, 16)
        assert fmt.sif() == (15, 1, 0, 0)

    def test_real_too_big(self):
        with pytest.raises(InfeasibleFormatError):
            real_constant_format(1000.0, 8)

    def test_real_keeps_width(self):
        fmt = real_constant_format(Fraction(1, 3), 16)
        assert fmt.width == 16
        assert fmt.S + fmt.I + fmt.F + fmt.E == 16

    def test_int_constants(self):
        five = int_constant_format(5)
        assert (five.S, five.I, five.width, five.signed) == (0, 3, 3, False)
        minus = int_constant_format(-4)
        assert (minus.S, minus.I, minus.width, minus.signed) == (1, 2, 3, True)
        zero = int_constant_format(0)
        assert zero.I == 1 and zero.constant == 0

    def test_inverted(self):
        fmt = inverted_constant_format(4, 16)
        assert fmt.sif() == (1, 0, 2, 13)
        assert fmt.constant == 8192

    def test_inverted_zero(self):
        with pytest.raises(InfeasibleFormatError):
            inverted_constant_format(0)

    def test_constant_format_dispatch(self):
        assert constant_format(True).constant == 1
        assert constant_format(7).F == 0
        assert constant_format(0.5, 16).F == 1

    def test_constant_carries_affine_center(self):
        fmt = real_constant_format(0.5, 16)
        assert fmt.aa.center == fmt.constant
        assert fmt.aa.radius == 0

    def test_to_stored(self):
        assert to_stored(0.5, make_fmt(1, 0, 15)) == 16384
        assert to_stored(-0.3, make_fmt(1, 0, 7)) == -38
        assert to_stored(Fraction(3, 2), make_fmt(1, 2, 3, 2)) == 48
