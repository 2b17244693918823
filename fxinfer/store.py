# fxinfer/store.py
"""
Versioned format store.

Records are keyed by ``(identity, version, element, pass)``.  A read in
pass *p* sees the newest record whose pass is at most *p*; a write in pass
*p* creates the pass-*p* record from the one before it, so earlier passes
stay untouched.  Induction values always live in pass 0.

Reads through a pointer resolve to the records of the value it aliases.
Writes through a pointer land on the pointer's own records and are merged
into the aliased value at the next block end (:meth:`FormatStore.merge`),
always widening, never narrowing, the target range.

Public API
----------
    FormatStore.declare_all()      seed records from the declarations
    FormatStore.lookup(slot)       operand view (alias, scalar fallback)
    FormatStore.dest_view(slot)    destination view for a write
    FormatStore.write(slot, fmt)   commit a statement result
    FormatStore.restore_pinned()   re-apply annotations
    FormatStore.merge()            fold pointer writes into their targets
    FormatStore.check_consistency()
    FormatStore.final_formats() / snapshot()
"""

from __future__ import annotations

import bisect
import logging
from typing import Dict, Iterator, List, NamedTuple, Optional, Set, Tuple

from fxinfer.affine import AffineList
from fxinfer.config import FxConfig
from fxinfer.errors import Codes, DiagnosticSink, InfeasibleFormatError, ProgramError
from fxinfer.formats import (
    SCALAR,
    FixedPointFormat,
    FormatKey,
    constant_format,
    to_stored,
)
from fxinfer.program import Program, ValueDecl
from fxinfer.ranges import range_compare, range_max, range_min, rescale

logger = logging.getLogger(__name__)

Slot = Tuple[str, int, int]


def slot_label(slot: Slot) -> str:
    name, version, index = slot
    text = name if not version else f"{name}.{version}"
    if index != SCALAR:
        text += f"[{index}]"
    return text


class WriteResult(NamedTuple):
    modified: bool      # differs from what was last written to the slot
    widened: bool       # an iterative value had to grow


def _signature(fmt: FixedPointFormat) -> Tuple[int, ...]:
    return (fmt.S, fmt.I, fmt.F, fmt.E, fmt.width, fmt.hi, fmt.lo)


class FormatStore:
    """All format records of one analysis unit."""

    def __init__(self, program: Program, cfg: FxConfig, sink: DiagnosticSink) -> None:
        self.program = program
        self.cfg = cfg
        self.sink = sink
        self.pass_no = 0
        self._records: Dict[FormatKey, FixedPointFormat] = {}
        self._history: Dict[Slot, List[int]] = {}
        self._written: Dict[Slot, Tuple[int, ...]] = {}
        self._pending: List[FormatKey] = []

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, slot: Slot) -> bool:
        return slot in self._history

    def slots(self) -> Iterator[Slot]:
        return iter(self._history)

    # ── raw access ───────────────────────────────────────────────────

    def _put(self, rec: FixedPointFormat) -> FixedPointFormat:
        key = rec.key
        if key not in self._records:
            bisect.insort(self._history.setdefault(key.slot, []), key.pass_no)
        self._records[key] = rec
        return rec

    def get(self, key: FormatKey) -> Optional[FixedPointFormat]:
        return self._records.get(key)

    def latest(self, slot: Slot, pass_no: Optional[int] = None) -> Optional[FixedPointFormat]:
        """Newest record of ``slot`` not later than ``pass_no``."""
        passes = self._history.get(slot)
        if not passes:
            return None
        limit = self.pass_no if pass_no is None else pass_no
        pos = bisect.bisect_right(passes, limit)
        if pos == 0:
            return None
        return self._records[FormatKey(*slot, pass_no=passes[pos - 1])]

    # ── declarations ─────────────────────────────────────────────────

    def declare_all(self) -> None:
        for decl in self.program.values.values():
            self.declare(decl)

    def declare(self, decl: ValueDecl) -> None:
        """Create the pass-0 records of version 0 of ``decl``."""
        if decl.elements > self.cfg.max_elements:
            raise ProgramError(
                f"'{decl.name}' has {decl.elements} elements, "
                f"more than the limit of {self.cfg.max_elements}")
        for index in decl.indices():
            rec = self.template((decl.name, 0, index))
            self._put(rec)
            if rec.initialized:
                logger.debug("seeded %s %s", slot_label(rec.key.slot), rec.describe())

    def template(self, slot: Slot) -> FixedPointFormat:
        """Fresh record for ``slot`` carrying the declaration's attributes.

        Pinned, iterative and integer values start initialized; version 0
        of a value with an initializer starts at the initializer's format.
        """
        decl = self.program.decl(slot[0])
        rec = FixedPointFormat(
            key=FormatKey(*slot, pass_no=0),
            width=decl.width,
            signed=decl.signed,
            pointee_width=decl.pointee_width if decl.is_pointer else 0,
            iterative=decl.iterative,
            pinned=decl.pinned,
        )
        if decl.pinned is not None:
            self._apply_pin(rec)
        elif decl.iterative:
            rec.S, rec.I, rec.F, rec.E = 1, 0, decl.width - 1, 0
            rec.lo, rec.hi = rec.full_range()
        elif decl.integer:
            rec.S = rec.sign_floor
            rec.I = decl.width - rec.S
            rec.lo, rec.hi = rec.full_range()
        elif slot[1] == 0 and decl.initial_value(slot[2]) is not None:
            self._apply_initializer(rec, decl.initial_value(slot[2]))
        rec.original_f = rec.F
        return rec

    def _apply_pin(self, rec: FixedPointFormat) -> None:
        pin = rec.pinned
        rec.S, rec.I, rec.F = pin.S, pin.I, pin.F
        rec.fill_empty_bits()
        if rec.E < 0 or min(pin.S, pin.I, pin.F) < 0:
            raise ProgramError(
                f"pinned format {pin.S}/{pin.I}/{pin.F} does not fit {rec.width} bits",
                key=rec.key)
        rec.lo, rec.hi = rec.full_range()
        if pin.max is not None:
            rec.hi = to_stored(pin.max, rec)
        if pin.min is not None:
            rec.lo = to_stored(pin.min, rec)
        rec.shift = 0
        rec.original_f = rec.F
        rec.aa = (AffineList.from_range(rec.lo, rec.hi, rec.binary_point, rec.key.slot)
                  if self.cfg.affine else None)

    def _apply_initializer(self, rec: FixedPointFormat, value) -> None:
        const = constant_format(value, rec.width)
        rec.I, rec.F, rec.E = const.I, const.F, const.E
        rec.S = rec.width - rec.I - rec.F - rec.E
        if rec.S < rec.sign_floor:
            raise InfeasibleFormatError(
                f"initializer {value} does not fit {rec.width} bits", key=rec.key)
        rec.hi = rec.lo = const.constant
        if self.cfg.affine:
            rec.aa = AffineList.constant(const.constant, rec.binary_point)

    # ── reads ────────────────────────────────────────────────────────

    def alias_of(self, name: str, version: int) -> Optional[Tuple[str, int]]:
        rec = self.latest((name, version, SCALAR))
        return rec.alias if rec is not None else None

    def _view(self, rec: FixedPointFormat) -> FixedPointFormat:
        view = rec.copy()
        view.key = rec.key.at_pass(self.pass_no)
        view.shift = 0
        return view

    def lookup(self, slot: Slot, follow_alias: bool = True) -> FixedPointFormat:
        """Operand view of ``slot`` in the current pass.

        Tries the aliased value first (for pointers), then the slot, then
        the scalar slot of the same value.  Falls back to the declaration
        template, which is uninitialized for plain values.
        """
        name, version, index = slot
        candidates: List[Slot] = []
        if follow_alias:
            alias = self.alias_of(name, version)
            if alias is not None:
                candidates.append((alias[0], alias[1], index))
        candidates.append(slot)
        if index != SCALAR:
            candidates.append((name, version, SCALAR))

        for candidate in candidates:
            rec = self.latest(candidate)
            if rec is not None and rec.initialized:
                return self._view(rec)
        return self._view(self.template(slot))

    def dest_view(self, slot: Slot) -> FixedPointFormat:
        """Format a write to ``slot`` has to respect.

        Pinned values always present their annotation.  An uninitialized
        pointer destination borrows the format of what it aliases.
        """
        decl = self.program.decl(slot[0])
        if decl.pinned is not None:
            return self._view(self.template(slot))
        view = self.lookup(slot, follow_alias=False)
        if not view.initialized and decl.is_pointer:
            view = self.lookup(slot, follow_alias=True)
            view.key = FormatKey(*slot, pass_no=self.pass_no)
        view.pinned = decl.pinned
        return view

    # ── writes ───────────────────────────────────────────────────────

    def seed(self, slot: Slot, fmt: FixedPointFormat) -> FixedPointFormat:
        """Install ``fmt`` as the pass-0 record of ``slot``."""
        rec = fmt.copy()
        rec.key = FormatKey(*slot, pass_no=0)
        return self._put(rec)

    def _current(self, slot: Slot, pass_no: int) -> FixedPointFormat:
        """Record of ``slot`` at ``pass_no``, created from its predecessor."""
        key = FormatKey(*slot, pass_no=pass_no)
        rec = self._records.get(key)
        if rec is not None:
            return rec
        prior = self.latest(slot, pass_no)
        rec = prior.copy() if prior is not None else self.template(slot)
        rec.key = key
        return self._put(rec)

    def write(self, slot: Slot, result: FixedPointFormat) -> WriteResult:
        """Commit ``result`` as the new format of ``slot``.

        Pointer and iterative records keep the union of every range they
        were assigned; an iterative value whose S/I split or (in interval
        mode) range grows reports ``widened``.
        """
        if result.F < 0:
            raise InfeasibleFormatError("result format has negative fraction bits",
                                        key=slot_label(slot))
        if result.I < 0:
            raise InfeasibleFormatError("result format has negative integer bits",
                                        key=slot_label(slot))

        decl = self.program.decl(slot[0])
        rec = self._current(slot, 0 if result.induction else self.pass_no)
        if result.width > rec.width:
            raise InfeasibleFormatError(
                f"new format has {result.width} bits, {slot_label(slot)} has {rec.width}",
                code=Codes.WIDTH_MISMATCH, key=rec.key)

        if decl.role == "parameter" and rec.initialized and \
                (rec.S, rec.I) != (result.S, result.I):
            self.sink.warning(Codes.PARAMETER_FORMAT_CHANGE,
                              f"format of parameter '{decl.name}' changed", key=rec.key)

        widened = False
        result = result.copy()
        if rec.initialized and (rec.is_pointer or rec.iterative):
            if (rec.S, rec.I) != (result.S, result.I):
                widened = rec.iterative
            if self.cfg.interval and not result.undefined and not rec.undefined:
                if range_compare(result, rec) == 1:
                    self.sink.warning(Codes.RANGE_EXPANSION,
                                      f"range of {slot_label(slot)} expanded", key=rec.key)
                    widened = rec.iterative
                result.hi, result.lo = (range_max(result, rec, self.cfg),
                                        range_min(result, rec, self.cfg))
                if self.cfg.affine:
                    result.aa = AffineList.from_range(
                        result.lo, result.hi, result.binary_point, slot)

        rec.assign_format(result)
        rec.shift = 0
        rec.original_f = rec.F
        rec.alias = result.alias
        rec.induction = result.induction

        signature = _signature(rec)
        modified = self._written.get(slot) != signature
        self._written[slot] = signature
        if rec.alias is not None or rec.is_pointer:
            self._pending.append(rec.key)
        logger.debug("pass %d: %s := %s%s", self.pass_no, slot_label(slot),
                     rec.describe(), " (widened)" if widened else "")
        return WriteResult(modified, widened)

    # ── pass maintenance ─────────────────────────────────────────────

    def restore_pinned(self) -> int:
        """Re-apply annotations to every pinned record; returns the count."""
        count = 0
        for rec in self._records.values():
            if rec.pinned is not None:
                self._apply_pin(rec)
                count += 1
        return count

    def _widen_to(self, target: FixedPointFormat, source: FixedPointFormat) -> None:
        if source.undefined:
            return
        if not target.initialized or target.undefined:
            if not target.initialized:
                target.S, target.I, target.F, target.E = source.sif()
            target.hi = rescale(source.hi, source.binary_point, target.binary_point, self.cfg)
            target.lo = rescale(source.lo, source.binary_point, target.binary_point, self.cfg)
        else:
            target.hi, target.lo = (range_max(target, source, self.cfg),
                                    range_min(target, source, self.cfg))
        if self.cfg.affine:
            target.aa = AffineList.from_range(target.lo, target.hi,
                                              target.binary_point, target.key.slot)

    def merge(self) -> None:
        """Block-end merge point: fold pointer writes into aliased values.

        Writes are processed in program order.  Afterwards every element
        of each touched pointer target is widened to the union of the
        element ranges.
        """
        pending, self._pending = self._pending, []
        touched: Set[Tuple[str, int]] = set()
        for key in pending:
            rec = self._records[key]
            if rec.alias is not None:
                target = self._current((rec.alias[0], rec.alias[1], key.index), key.pass_no)
                self._widen_to(target, rec)
                touched.add(rec.alias)
            elif rec.is_pointer:
                touched.add(key.value)

        for name, version in sorted(touched):
            decl = self.program.decl(name)
            elements = [self._records.get(FormatKey(name, version, index, self.pass_no))
                        for index in decl.indices() if index != SCALAR]
            elements = [e for e in elements if e is not None and e.initialized
                        and not e.undefined]
            for rec in elements:
                for other in elements:
                    if other is not rec:
                        rec.hi = range_max(rec, other, self.cfg)
                        rec.lo = range_min(rec, other, self.cfg)
                if self.cfg.affine and len(elements) > 1:
                    rec.aa = AffineList.from_range(rec.lo, rec.hi, rec.binary_point,
                                                   rec.key.slot)
            if elements:
                logger.debug("merged %d element(s) of %s", len(elements),
                             slot_label((name, version, SCALAR)))

    # ── results ──────────────────────────────────────────────────────

    def final(self, slot: Slot) -> Optional[FixedPointFormat]:
        rec = self.latest(slot, max(self._history.get(slot, [0])))
        return rec if rec is not None and rec.initialized else None

    def final_formats(self) -> Dict[str, FixedPointFormat]:
        """Most recent initialized format of every slot, by label."""
        out: Dict[str, FixedPointFormat] = {}
        for slot in sorted(self._history):
            rec = self.final(slot)
            if rec is not None:
                out[slot_label(slot)] = rec
        return out

    def representative(self, name: str, index: int = SCALAR) -> Optional[FixedPointFormat]:
        """Most recent format of element ``index`` over all versions."""
        best: Optional[FixedPointFormat] = None
        for slot in self._history:
            if slot[0] != name or slot[2] != index:
                continue
            rec = self.final(slot)
            if rec is None:
                continue
            if best is None or (rec.key.pass_no, slot[1]) > (best.key.pass_no, best.key.version):
                best = rec
        return best

    def snapshot(self) -> Dict[Slot, Tuple[int, ...]]:
        return {slot: _signature(self.final(slot))
                for slot in self._history if self.final(slot) is not None}

    def check_consistency(self) -> int:
        """Warn about parameters, return values, pinned values and pointers
        whose versions or elements ended up in different formats.

        Returns the number of warnings issued.
        """
        by_name: Dict[str, Set[Tuple[int, int, int, int]]] = {}
        for slot in self._history:
            rec = self.final(slot)
            if rec is not None and not rec.induction:
                by_name.setdefault(slot[0], set()).add(rec.sif())

        issued = 0
        for name, formats in sorted(by_name.items()):
            if len(formats) < 2:
                continue
            decl = self.program.decl(name)
            if decl.role == "parameter":
                what = "function parameter"
            elif decl.role == "return":
                what = "return value"
            elif decl.pinned is not None:
                what = "pinned value"
            elif decl.is_pointer:
                what = "pointer"
            else:
                continue
            self.sink.warning(Codes.INCONSISTENT_FORMAT,
                              f"inconsistent format of {what} '{name}': "
                              f"{len(formats)} formats, using the most recent",
                              key=name)
            issued += 1
        return issued
