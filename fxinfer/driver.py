# fxinfer/driver.py
"""
Fixpoint driver.

Runs the analysis of one program through its phases::

    Discover ─► MarkInduction ─► Measure ─► RewriteStatements
                                   ▲  │              │
                                   └──┘              ▼
                               (until fixpoint)  RewriteDeclarations ─► Done

Theory
------
Every Measure pass visits all statements in program order.  A statement
whose operand formats are not known yet leaves its result undefined and
is retried in the next pass.  Iterative (loop-carried) values only ever
widen: each time one grows the pass counts as unsettled.  The loop stops
when a pass leaves nothing undefined and writes nothing new.  A pass that
leaves results undefined without writing anything new can never make
progress, and the pass ceiling bounds the widening.

RewriteStatements is one more pass that also keeps the correction plans;
RewriteDeclarations builds the final representation of every declared
value and the function signature.

Any :class:`~fxinfer.errors.FxError` moves the driver to
:attr:`Phase.FAILED` and is re-raised.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from fxinfer.affine import AffineList, NoiseAllocator
from fxinfer.config import FxConfig
from fxinfer.errors import (
    Codes,
    ConfigError,
    ConvergenceError,
    Diagnostic,
    DiagnosticSink,
    FxError,
)
from fxinfer.formats import (
    SCALAR,
    FixedPointFormat,
    FormatKey,
    Number,
    constant_format,
    int_constant_format,
    mask,
    to_stored,
)
from fxinfer.planner import CorrectionOp, plan_offset, plan_operand, plan_result
from fxinfer.program import Opcode, Operand, Program, Statement, ValueDecl
from fxinfer.ranges import check_range, range_max, range_min
from fxinfer.rules import OperationRules, RuleResult
from fxinfer.store import FormatStore, slot_label

logger = logging.getLogger(__name__)


class Phase(enum.Enum):
    DISCOVER = "discover"
    MARK_INDUCTION = "mark-induction"
    MEASURE = "measure"
    REWRITE_STATEMENTS = "rewrite-statements"
    REWRITE_DECLARATIONS = "rewrite-declarations"
    DONE = "done"
    FAILED = "failed"


# ═══════════════════════════════════════════════════════════════════════════════
# RESULTS
# ═══════════════════════════════════════════════════════════════════════════════

def format_dict(fmt: Optional[FixedPointFormat]) -> Optional[Dict[str, Any]]:
    if fmt is None:
        return None
    out: Dict[str, Any] = {
        "S": fmt.S, "I": fmt.I, "F": fmt.F, "E": fmt.E,
        "width": fmt.width, "signed": fmt.signed,
    }
    if not fmt.undefined:
        lo, hi = fmt.real_bounds()
        out["range"] = [lo, hi]
    return out


@dataclass
class PassStats:
    pass_no: int
    undefined: int = 0
    updated: int = 0
    widened: int = 0

    @property
    def settled(self) -> bool:
        return self.undefined == 0 and self.updated == 0


@dataclass
class StatementPlan:
    """Rewrite of one statement: corrections around the new operation."""
    statement: Statement
    opcode: Opcode
    result: FixedPointFormat
    operand_ops: List[CorrectionOp] = field(default_factory=list)
    result_ops: List[CorrectionOp] = field(default_factory=list)
    virtual_shift: Optional[int] = None
    replaced: Dict[int, Number] = field(default_factory=dict)

    @property
    def corrections(self) -> List[CorrectionOp]:
        return self.operand_ops + self.result_ops

    def to_dict(self) -> Dict[str, Any]:
        return {
            "statement": self.statement.name,
            "opcode": self.opcode.value,
            "result": format_dict(self.result),
            "operand_ops": [str(op) for op in self.operand_ops],
            "result_ops": [str(op) for op in self.result_ops],
            "virtual_shift": self.virtual_shift,
            "replaced": {str(k): str(v) for k, v in self.replaced.items()},
        }


@dataclass
class Representation:
    """Final storage format of a declared value and its converted initializer."""
    decl: ValueDecl
    format: Optional[FixedPointFormat]
    elements: Dict[int, FixedPointFormat] = field(default_factory=dict)
    initial: Union[None, int, List[Optional[int]]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.decl.name,
            "kind": self.decl.kind,
            "format": format_dict(self.format),
            "elements": {str(i): format_dict(f) for i, f in self.elements.items()},
            "initial": self.initial,
        }


@dataclass
class Signature:
    parameters: Dict[str, Optional[FixedPointFormat]] = field(default_factory=dict)
    returns: Dict[str, Optional[FixedPointFormat]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parameters": {k: format_dict(v) for k, v in self.parameters.items()},
            "returns": {k: format_dict(v) for k, v in self.returns.items()},
        }


@dataclass
class DriverResult:
    program: Program
    config: FxConfig
    formats: Dict[str, FixedPointFormat]
    plans: List[StatementPlan]
    representations: Dict[str, Representation]
    signature: Signature
    diagnostics: List[Diagnostic]
    history: List[PassStats]
    elapsed: float = 0.0

    @property
    def passes(self) -> int:
        return len(self.history)

    def format_of(self, label: str) -> FixedPointFormat:
        return self.formats[label]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "program": self.program.name,
            "options": self.config.options(),
            "passes": self.passes,
            "elapsed": round(self.elapsed, 6),
            "formats": {k: format_dict(v) for k, v in self.formats.items()},
            "plans": [p.to_dict() for p in self.plans],
            "representations": {k: r.to_dict() for k, r in self.representations.items()},
            "signature": self.signature.to_dict(),
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }


# ═══════════════════════════════════════════════════════════════════════════════
# DRIVER
# ═══════════════════════════════════════════════════════════════════════════════

class FixpointDriver:
    """Drives one program from discovery to the rewritten declarations."""

    def __init__(self, program: Program, cfg: Optional[FxConfig] = None,
                 sink: Optional[DiagnosticSink] = None) -> None:
        self.program = program
        self.cfg = cfg or FxConfig()
        if self.cfg.max_passes <= 0:
            raise ConfigError("max_passes must be positive")
        for problem in self.cfg.validate():
            logger.warning("configuration: %s", problem)
        if sink is None:
            sink = DiagnosticSink(fatal=self.cfg.fatal_warnings)
        else:
            sink.fatal = frozenset(sink.fatal) | frozenset(self.cfg.fatal_warnings)
        self.sink = sink
        self.noise = NoiseAllocator()
        self.store = FormatStore(program, self.cfg, self.sink)
        self.rules = OperationRules(self.cfg, self.sink, self.noise)
        self.phase = Phase.DISCOVER
        self.pass_no = 0
        self.history: List[PassStats] = []
        self._statements: List[Statement] = list(program.statements())
        self._induction: Set[int] = set()
        self._returns: Dict[str, FixedPointFormat] = {}

    def _enter(self, phase: Phase) -> None:
        logger.info("%s: %s", self.program.name, phase.value)
        self.phase = phase

    # ── entry point ──────────────────────────────────────────────────

    def run(self) -> DriverResult:
        started = time.monotonic()
        try:
            self.discover()
            self.mark_induction()
            self.measure()
            plans = self.rewrite_statements()
            representations, signature = self.rewrite_declarations()
        except FxError as exc:
            self.phase = Phase.FAILED
            logger.error("analysis of %s failed in pass %d: %s",
                         self.program.name, self.pass_no, exc)
            raise
        self._enter(Phase.DONE)
        return DriverResult(
            program=self.program,
            config=self.cfg,
            formats=self.store.final_formats(),
            plans=plans,
            representations=representations,
            signature=signature,
            diagnostics=list(self.sink),
            history=list(self.history),
            elapsed=time.monotonic() - started,
        )

    # ── phases ───────────────────────────────────────────────────────

    def discover(self) -> None:
        """Seed records for every declaration (pins, iterative defaults)."""
        self._enter(Phase.DISCOVER)
        self.store.declare_all()

    def mark_induction(self) -> None:
        """Tag loop counters compared against integer constants, and the
        values that only propagate them."""
        self._enter(Phase.MARK_INDUCTION)
        for stmt in self._statements:
            if stmt.opcode is not Opcode.COMPARE:
                continue
            names = [o for o in stmt.operands if not o.is_constant]
            consts = [o.const for o in stmt.operands
                      if o.is_constant and isinstance(o.const, int)]
            if len(names) != 1 or len(consts) != 1:
                continue
            operand, bound = names[0], consts[0]
            decl = self.program.decl(operand.name)
            if decl.is_pointer or decl.pinned is not None:
                continue
            fmt = int_constant_format(bound)
            fmt.width, fmt.signed = decl.width, decl.signed
            fmt.S = decl.width - fmt.I
            if fmt.S < fmt.sign_floor:
                continue
            fmt.hi, fmt.lo = max(bound, 0), min(bound, 0)
            fmt.constant = None
            fmt.aa = None
            fmt.induction = True
            self.store.seed((operand.name, operand.version, SCALAR), fmt)
            logger.debug("induction value %s bounded by %d", operand, bound)

        changed = True
        while changed:
            changed = False
            for n, stmt in enumerate(self._statements):
                if n in self._induction or not stmt.opcode.has_result:
                    continue
                seeded = self.store.latest(stmt.result.slot, 0)
                if seeded is not None and seeded.induction:
                    self._induction.add(n)
                    changed = True
                    continue
                first = stmt.operands[0]
                if first.is_constant or stmt.result.deref or not self._steps(stmt):
                    continue
                dest_decl = self.program.decl(stmt.result.name)
                if dest_decl.is_pointer:
                    continue
                source = self.store.latest(first.slot, 0)
                if source is None or not source.induction:
                    continue
                fmt = source.copy()
                fmt.width, fmt.signed = dest_decl.width, dest_decl.signed
                fmt.S = dest_decl.width - fmt.I - fmt.F - fmt.E
                self.store.seed(stmt.result.slot, fmt)
                self._induction.add(n)
                changed = True
        if self._induction:
            logger.info("%d induction statement(s) skipped", len(self._induction))

    @staticmethod
    def _steps(stmt: Statement) -> bool:
        # copies of a counter, or the counter plus/minus an integer
        if stmt.opcode in (Opcode.COPY, Opcode.CAST):
            return True
        if stmt.opcode in (Opcode.ADD, Opcode.SUB):
            second = stmt.operands[1]
            return second.is_constant and isinstance(second.const, int)
        return False

    def measure(self) -> None:
        self._enter(Phase.MEASURE)
        self._iterate(emit=False)

    def rewrite_statements(self) -> List[StatementPlan]:
        self._enter(Phase.REWRITE_STATEMENTS)
        return self._iterate(emit=True)

    def rewrite_declarations(self) -> Tuple[Dict[str, Representation], Signature]:
        """Final formats of declared values, converted initializers, signature."""
        self._enter(Phase.REWRITE_DECLARATIONS)
        self.sink.statement = None
        self.store.check_consistency()

        representations: Dict[str, Representation] = {}
        for decl in self.program.values.values():
            rep = Representation(decl, self.store.representative(decl.name))
            for index in range(decl.elements):
                fmt = self.store.representative(decl.name, index)
                if fmt is not None:
                    rep.elements[index] = fmt
            rep.initial = self._convert_initializer(decl, rep)
            representations[decl.name] = rep

        signature = Signature()
        for decl in self.program.parameters():
            signature.parameters[decl.name] = representations[decl.name].format
        for decl in self.program.returns():
            signature.returns[decl.name] = representations[decl.name].format
        signature.returns.update(self._returns)
        return representations, signature

    @staticmethod
    def _convert_initializer(decl: ValueDecl, rep: Representation):
        if decl.initializer is None:
            return None
        if isinstance(decl.initializer, list):
            out: List[Optional[int]] = []
            for index, value in enumerate(decl.initializer):
                fmt = rep.elements.get(index, rep.format)
                out.append(to_stored(value, fmt) if fmt is not None else None)
            return out
        return to_stored(decl.initializer, rep.format) if rep.format is not None else None

    # ── passes ───────────────────────────────────────────────────────

    def _iterate(self, emit: bool) -> List[StatementPlan]:
        while True:
            stats, plans = self.run_pass(emit)
            if stats.settled:
                return plans
            if stats.updated == 0:
                raise ConvergenceError(
                    f"{stats.undefined} statement result(s) could not be determined",
                    code=Codes.UNRESOLVED_FORMATS, pass_no=stats.pass_no,
                    hint="an operand is never defined, or needs a pinned format")

    def run_pass(self, emit: bool = False) -> Tuple[PassStats, List[StatementPlan]]:
        """One pass over all statements; raises at the pass ceiling."""
        self.pass_no += 1
        if self.pass_no >= self.cfg.max_passes:
            raise ConvergenceError(
                f"no fixpoint after {self.pass_no} passes", pass_no=self.pass_no,
                hint="raise max_passes or pin the iterative values")
        self.store.pass_no = self.pass_no
        self.sink.pass_no = self.pass_no
        self.store.restore_pinned()

        stats = PassStats(self.pass_no)
        plans: List[StatementPlan] = []
        n = 0
        for block in self.program.blocks:
            for stmt in block:
                index, n = n, n + 1
                if index in self._induction or stmt.opcode is Opcode.COMPARE:
                    continue
                self.sink.statement = stmt.name
                if stmt.opcode is Opcode.RETURN:
                    self._record_return(stmt)
                    continue
                plan = self._process(stmt, stats, emit)
                if plan is not None:
                    plans.append(plan)
            self.store.merge()
        self.sink.statement = None
        self.history.append(stats)
        logger.info("pass %d: %d undefined, %d updated, %d widened",
                    stats.pass_no, stats.undefined, stats.updated, stats.widened)
        return stats, plans

    def _record_return(self, stmt: Statement) -> None:
        operand = stmt.operands[0]
        if operand.is_constant:
            return
        view = self.store.lookup(operand.slot)
        if view.initialized:
            self._returns[str(operand)] = view

    # ── operand views ────────────────────────────────────────────────

    def _operand_view(self, operand: Operand) -> FixedPointFormat:
        view = self.store.lookup(operand.slot)
        if not view.initialized:
            return view
        if view.undefined:
            span = mask(view.I + view.F) << view.E
            view.hi, view.lo = span, (-span if view.signed else 0)
        if not self.cfg.interval:
            span = mask(view.I + view.F + view.E)
            view.hi, view.lo = span, (-span if view.signed else 0)
        if self.cfg.affine and view.aa is not None:
            view.aa = view.aa.renormalized(view.binary_point, self.cfg.rounding,
                                           self.cfg.round_positive)
            view.hi, view.lo = view.aa.max(), view.aa.min()
        view.original_f = view.F
        view.shift = 0
        return view

    def _constant_view(self, operand: Operand, dest: FixedPointFormat) -> FixedPointFormat:
        width = dest.width or self.cfg.real_width
        fmt = constant_format(operand.const, min(width, self.cfg.real_width))
        spare = width - fmt.I - fmt.F - fmt.E
        if spare >= fmt.sign_floor:
            fmt.S, fmt.width = spare, width
        fmt.key = FormatKey(f"#{operand.const}", 0, SCALAR, self.pass_no)
        fmt.original_f = fmt.F
        return fmt

    def _aggregate_view(self, operand: Operand) -> FixedPointFormat:
        """One format for a whole array: the widest element format,
        covering the union of the element ranges."""
        decl = self.program.decl(operand.name)
        views = [self._operand_view(operand.at_index(i)) for i in range(decl.elements)]
        for view in views:
            if not view.initialized:
                return view
        base = max(views, key=lambda v: (v.I, v.binary_point)).copy()
        if any(v.sif() != base.sif() for v in views):
            self.sink.warning(Codes.INCONSISTENT_FORMAT,
                              f"elements of '{decl.name}' differ, copying with "
                              f"({base.S}/{base.I}/{base.F}/{base.E})", key=decl.name)
        for view in views:
            base.hi = range_max(base, view, self.cfg)
            base.lo = range_min(base, view, self.cfg)
        base.aa = None
        base.key = FormatKey(operand.name, operand.version, SCALAR, self.pass_no)
        return base

    # ── one statement ────────────────────────────────────────────────

    def _is_address(self, stmt: Statement, dest: FixedPointFormat,
                    views: List[FixedPointFormat]) -> bool:
        if stmt.opcode is Opcode.POINTER_OFFSET:
            return True
        target = stmt.result
        return (dest.is_pointer and not target.deref and target.index == SCALAR
                and any(v.is_pointer for v in views))

    def _process(self, stmt: Statement, stats: PassStats,
                 emit: bool) -> Optional[StatementPlan]:
        target = stmt.result
        dest_decl = self.program.decl(target.name)
        dest = self.store.dest_view(target.slot)

        aggregate = False
        views: List[FixedPointFormat] = []
        for operand in stmt.operands:
            if operand.is_constant:
                views.append(self._constant_view(operand, dest))
                continue
            decl = self.program.decl(operand.name)
            if decl.is_array and operand.index == SCALAR and stmt.opcode.is_assignment:
                aggregate = True
                views.append(self._aggregate_view(operand))
            else:
                views.append(self._operand_view(operand))

        outcome = self.rules.apply(stmt, dest, views, aggregate)
        if not outcome.defined:
            logger.debug("pass %d: %s undefined", self.pass_no, stmt.name)
            stats.undefined += 1
            return None

        result = outcome.result
        check_range(result, self.cfg, self.sink)
        result_ops: List[CorrectionOp] = []
        if not self._is_address(stmt, dest, views):
            result, result_ops = plan_result(result, dest, self.cfg)
        self._settle_affine(result, target)
        if target.deref or (dest_decl.is_pointer and target.index != SCALAR):
            result.alias = self.store.alias_of(target.name, target.version)

        slots = [target.slot]
        if outcome.broadcast and dest_decl.elements:
            slots += [(target.name, target.version, i) for i in range(dest_decl.elements)]
        for slot in slots:
            written = self.store.write(slot, result)
            if written.modified:
                stats.updated += 1
            if written.widened:
                stats.undefined += 1
                stats.widened += 1

        if not emit:
            return None
        return StatementPlan(
            statement=stmt,
            opcode=outcome.opcode,
            result=self.store.latest(target.slot).copy(),
            operand_ops=self._plan_operands(stmt, outcome),
            result_ops=result_ops,
            virtual_shift=outcome.virtual_shift,
            replaced=dict(outcome.replaced),
        )

    def _settle_affine(self, result: FixedPointFormat, target: Operand) -> None:
        # in affine mode the stored range is the one the affine form gives
        if not self.cfg.affine:
            result.aa = None
            return
        if result.aa is None or result.aa.destroyed:
            if result.undefined:
                return
            result.aa = AffineList.from_range(result.lo, result.hi,
                                              result.binary_point, target.slot)
        else:
            result.aa = result.aa.renormalized(result.binary_point, self.cfg.rounding,
                                               self.cfg.round_positive)
        result.hi, result.lo = result.aa.max(), result.aa.min()

    def _plan_operands(self, stmt: Statement, outcome: RuleResult) -> List[CorrectionOp]:
        ops: List[CorrectionOp] = []
        for position, (operand, view) in enumerate(zip(stmt.operands, outcome.operands)):
            if position == outcome.dropped:
                continue
            if operand.deref:
                ops += plan_offset(position, operand, outcome.offset_shift)
            exact = stmt.opcode is Opcode.POINTER_OFFSET and position == 1
            ops += plan_operand(position, view, self.cfg, exact=exact)
        return ops


def analyze(program: Program, cfg: Optional[FxConfig] = None,
            sink: Optional[DiagnosticSink] = None) -> DriverResult:
    """Run the whole analysis of ``program``."""
    return FixpointDriver(program, cfg, sink).run()
