# tests/test_store.py
"""Tests for the versioned format store."""

import pytest

from fxinfer.config import FxConfig
from fxinfer.errors import Codes, DiagnosticSink, InfeasibleFormatError, ProgramError
from fxinfer.formats import SCALAR
from fxinfer.store import FormatStore, slot_label
from tests.conftest import INTERVAL, make_fmt, make_program, pin16

VALUES = [
    pin16("x", role="parameter"),
    {"name": "y", "width": 16},
    {"name": "acc", "width": 16, "iterative": True},
    {"name": "n", "width": 8, "integer": True},
    {"name": "c", "width": 16, "kind": "array", "initializer": [0.5, 0.25]},
    {"name": "a", "width": 16, "kind": "array", "elements": 2},
    {"name": "p", "width": 16, "kind": "pointer"},
    {"name": "h", "width": 16, "pinned": {"S": 1, "I": 0, "F": 15, "max": 0.5}},
]


def _store(values=VALUES, cfg=INTERVAL, sink=None):
    store = FormatStore(make_program(values, []), cfg,
                        sink if sink is not None else DiagnosticSink())
    store.declare_all()
    return store


def _fmt16(S, I, F, **kwargs):
    return make_fmt(S, I, F, **kwargs)


def test_slot_label():
    assert slot_label(("y", 0, SCALAR)) == "y"
    assert slot_label(("a", 1, 2)) == "a.1[2]"


# ── Declarations ─────────────────────────────────────────────────

class TestDeclarations:

    def test_pinned(self):
        rec = _store().latest(("x", 0, SCALAR))
        assert rec.sif() == (1, 0, 15, 0)
        assert (rec.hi, rec.lo) == (32767, -32767)
        assert rec.key.pass_no == 0

    def test_pinned_bounds(self):
        rec = _store().latest(("h", 0, SCALAR))
        assert (rec.hi, rec.lo) == (16384, -32767)

    def test_iterative_starts_fractional(self):
        rec = _store().latest(("acc", 0, SCALAR))
        assert rec.sif() == (1, 0, 15, 0)
        assert rec.iterative

    def test_integer(self):
        rec = _store().latest(("n", 0, SCALAR))
        assert rec.sif() == (1, 7, 0, 0)
        assert (rec.hi, rec.lo) == (127, -127)

    def test_initializer_per_element(self):
        store = _store()
        first = store.latest(("c", 0, 0))
        second = store.latest(("c", 0, 1))
        assert first.sif() == (1, 0, 1, 14)
        assert first.hi == first.lo == 1 << 14
        assert second.sif() == (1, 0, 2, 13)
        assert not store.latest(("c", 0, SCALAR)).initialized

    def test_plain_value_is_uninitialized(self):
        assert not _store().latest(("y", 0, SCALAR)).initialized

    def test_pin_too_wide(self):
        with pytest.raises(ProgramError, match="does not fit"):
            _store([pin16("x", I=8)])

    def test_too_many_elements(self):
        with pytest.raises(ProgramError, match="limit"):
            _store(cfg=FxConfig(max_elements=1))

    def test_initializer_too_big(self):
        with pytest.raises(InfeasibleFormatError):
            _store([{"name": "k", "width": 8, "initializer": 1000.0}])


# ── Reads ────────────────────────────────────────────────────────

class TestLookup:

    def test_view_is_a_copy_at_current_pass(self):
        store = _store()
        store.pass_no = 3
        view = store.lookup(("x", 0, SCALAR))
        assert view.key.pass_no == 3
        view.shift_right(2)
        assert store.latest(("x", 0, SCALAR)).shift == 0

    def test_unwritten_value_is_uninitialized(self):
        store = _store()
        store.pass_no = 1
        assert not store.lookup(("y", 1, SCALAR)).initialized

    def test_element_falls_back_to_scalar(self):
        store = _store()
        store.pass_no = 1
        store.write(("a", 0, SCALAR), _fmt16(1, 3, 12, name="a"))
        assert store.lookup(("a", 0, 1)).sif() == (1, 3, 12, 0)

    def test_pointer_reads_its_target(self):
        store = _store()
        store.pass_no = 1
        store.write(("a", 0, SCALAR), _fmt16(1, 3, 12, name="a"))
        pointer = _fmt16(1, 0, 15, name="p")
        pointer.alias = ("a", 0)
        store.write(("p", 0, SCALAR), pointer)
        assert store.alias_of("p", 0) == ("a", 0)
        assert store.lookup(("p", 0, SCALAR)).sif() == (1, 3, 12, 0)
        assert store.lookup(("p", 0, SCALAR), follow_alias=False).sif() == (1, 0, 15, 0)

    def test_dest_view_of_pinned_value(self):
        store = _store()
        store.pass_no = 1
        store.write(("x", 0, SCALAR), _fmt16(1, 3, 12, name="x"))
        view = store.dest_view(("x", 0, SCALAR))
        assert view.sif() == (1, 0, 15, 0)
        assert view.pinned is not None

    def test_versions_are_kept_per_pass(self):
        store = _store()
        slot = ("y", 0, SCALAR)
        store.pass_no = 1
        store.write(slot, _fmt16(1, 3, 12, name="y"))
        store.pass_no = 2
        store.write(slot, _fmt16(1, 4, 11, name="y"))
        assert store.latest(slot, 1).sif() == (1, 3, 12, 0)
        assert store.latest(slot).sif() == (1, 4, 11, 0)
        assert store.latest(slot, 0) is not None
        assert not store.latest(slot, 0).initialized


# ── Writes ───────────────────────────────────────────────────────

class TestWrite:

    def test_modified(self):
        store = _store()
        store.pass_no = 1
        slot = ("y", 0, SCALAR)
        assert store.write(slot, _fmt16(1, 3, 12, name="y")).modified
        store.pass_no = 2
        outcome = store.write(slot, _fmt16(1, 3, 12, name="y"))
        assert not outcome.modified and not outcome.widened

    def test_negative_fraction_bits(self):
        store = _store()
        fmt = _fmt16(1, 3, 12, name="y")
        fmt.F = -1
        with pytest.raises(InfeasibleFormatError):
            store.write(("y", 0, SCALAR), fmt)

    def test_wider_result(self):
        store = _store()
        with pytest.raises(InfeasibleFormatError) as info:
            store.write(("y", 0, SCALAR), make_fmt(1, 0, 31, name="y"))
        assert info.value.code == Codes.WIDTH_MISMATCH

    def test_parameter_change_warns(self):
        sink = DiagnosticSink()
        store = _store([{"name": "x", "width": 16, "role": "parameter"}], sink=sink)
        store.pass_no = 1
        store.write(("x", 0, SCALAR), _fmt16(1, 3, 12, name="x"))
        store.write(("x", 0, SCALAR), _fmt16(1, 4, 11, name="x"))
        assert sink.with_code(Codes.PARAMETER_FORMAT_CHANGE)

    def test_iterative_widens(self):
        sink = DiagnosticSink()
        store = _store(sink=sink)
        store.pass_no = 1
        outcome = store.write(("acc", 0, SCALAR), _fmt16(1, 1, 14, name="acc"))
        assert outcome.widened
        assert sink.with_code(Codes.RANGE_EXPANSION)

    def test_iterative_same_range_does_not_widen(self):
        store = _store()
        store.pass_no = 1
        outcome = store.write(("acc", 0, SCALAR), _fmt16(1, 0, 15, hi=100, lo=-100, name="acc"))
        assert not outcome.widened
        rec = store.latest(("acc", 0, SCALAR))
        assert (rec.hi, rec.lo) == (32767, -32767)

    def test_induction_lives_in_pass_zero(self):
        store = _store()
        store.pass_no = 4
        fmt = make_fmt(1, 7, 0, name="n")
        fmt.induction = True
        store.write(("n", 0, SCALAR), fmt)
        assert store.latest(("n", 0, SCALAR)).key.pass_no == 0
        assert store.latest(("n", 0, SCALAR)).induction

    def test_seed(self):
        store = _store()
        store.seed(("y", 2, SCALAR), _fmt16(1, 2, 13, name="y"))
        assert store.latest(("y", 2, SCALAR), 0).sif() == (1, 2, 13, 0)

    def test_restore_pinned(self):
        store = _store()
        store.pass_no = 1
        store.write(("x", 0, SCALAR), _fmt16(1, 3, 12, name="x"))
        assert store.restore_pinned() == 3
        assert store.latest(("x", 0, SCALAR)).sif() == (1, 0, 15, 0)


# ── Merge ────────────────────────────────────────────────────────

class TestMerge:

    def _pointer(self, hi, lo, index=SCALAR):
        fmt = make_fmt(1, 0, 15, hi=hi, lo=lo, name="p", index=index)
        fmt.alias = ("a", 0)
        return fmt

    def test_pointer_write_reaches_target(self):
        store = _store()
        store.pass_no = 1
        store.write(("p", 0, SCALAR), self._pointer(100, -50))
        store.merge()
        target = store.latest(("a", 0, SCALAR))
        assert target.sif() == (1, 0, 15, 0)
        assert (target.hi, target.lo) == (100, -50)

    def test_merge_only_widens(self):
        store = _store()
        store.pass_no = 1
        store.write(("p", 0, SCALAR), self._pointer(100, -50))
        store.merge()
        store.write(("p", 0, SCALAR), self._pointer(200, -10))
        store.merge()
        target = store.latest(("a", 0, SCALAR))
        assert (target.hi, target.lo) == (200, -50)

    def test_elements_share_a_range(self):
        store = _store()
        store.pass_no = 1
        store.write(("p", 0, 0), self._pointer(100, 0, index=0))
        store.write(("p", 0, 1), self._pointer(20, -40, index=1))
        store.merge()
        for index in (0, 1):
            rec = store.latest(("a", 0, index))
            assert (rec.hi, rec.lo) == (100, -40)

    def test_nothing_pending(self):
        store = _store()
        store.merge()
        assert not store.latest(("a", 0, SCALAR)).initialized


# ── Results ──────────────────────────────────────────────────────

class TestResults:

    def test_final_formats(self):
        store = _store()
        store.pass_no = 1
        store.write(("y", 1, SCALAR), _fmt16(1, 3, 12, name="y"))
        labels = store.final_formats()
        assert labels["y.1"].sif() == (1, 3, 12, 0)
        assert "y" not in labels
        assert "x" in labels

    def test_representative_prefers_latest(self):
        store = _store()
        store.pass_no = 1
        store.write(("y", 0, SCALAR), _fmt16(1, 3, 12, name="y"))
        store.write(("y", 1, SCALAR), _fmt16(1, 4, 11, name="y"))
        assert store.representative("y").sif() == (1, 4, 11, 0)
        assert store.representative("nothing") is None

    def test_snapshot(self):
        store = _store()
        snap = store.snapshot()
        assert snap[("x", 0, SCALAR)][:4] == (1, 0, 15, 0)
        assert ("y", 0, SCALAR) not in snap

    def test_inconsistent_parameter(self):
        sink = DiagnosticSink()
        store = _store([{"name": "x", "width": 16, "role": "parameter"},
                        {"name": "y", "width": 16}], sink=sink)
        store.pass_no = 1
        store.write(("x", 0, SCALAR), _fmt16(1, 0, 15, name="x"))
        store.write(("x", 1, SCALAR), _fmt16(1, 3, 12, name="x"))
        store.write(("y", 0, SCALAR), _fmt16(1, 0, 15, name="y"))
        store.write(("y", 1, SCALAR), _fmt16(1, 3, 12, name="y"))
        assert store.check_consistency() == 1
        [diag] = sink.with_code(Codes.INCONSISTENT_FORMAT)
        assert "function parameter 'x'" in diag.message
