# fxinfer/report.py
"""
Rendering of analysis results.

Output formats
──────────────
  • text : colourful terminal listing (default)
  • json : the whole result as one JSON document
  • dot  : data-flow graph of the statements, corrections on the edges
           (needs the ``graphviz`` package, ``pip install fxinfer[viz]``)
"""

from __future__ import annotations

import json
import sys
from typing import List, Optional, TextIO

from termcolor import colored

from fxinfer.driver import DriverResult, StatementPlan, format_dict
from fxinfer.errors import ConfigError, Severity
from fxinfer.formats import FixedPointFormat
from fxinfer.program import Operand
from fxinfer.store import slot_label

FORMATS = ("text", "json", "dot")

_SEVERITY_COLOR = {
    Severity.FATAL: "red",
    Severity.ERROR: "red",
    Severity.WARNING: "yellow",
    Severity.INFO: "cyan",
}


# ═════════════════════════════════════════════════════════════════════════
#  TEXT
# ═════════════════════════════════════════════════════════════════════════

class TextReport:
    """Render a :class:`DriverResult` for a terminal."""

    def __init__(self, color: bool = True, show_plans: bool = True) -> None:
        self.color = color
        self.show_plans = show_plans

    def _paint(self, text: str, color: Optional[str] = None,
               attrs: Optional[List[str]] = None) -> str:
        if not self.color:
            return text
        return colored(text, color, attrs=attrs)

    def _fmt(self, fmt: Optional[FixedPointFormat]) -> str:
        if fmt is None:
            return self._paint("unresolved", "red")
        text = f"{fmt.width:2d} bits " + fmt.describe()
        if not fmt.signed:
            text += " unsigned"
        return text

    def render(self, result: DriverResult) -> str:
        lines: List[str] = []
        title = f"{result.program.name}: {result.passes} pass(es), {result.elapsed:.3f}s"
        lines.append(self._paint(title, "white", attrs=["bold"]))
        lines.append(self._paint("options: " + " ".join(result.config.options()),
                                 attrs=["dark"]))

        # ── declarations ─────────────────────────────────────────────
        lines.append("")
        lines.append(self._paint("representations", "blue", attrs=["bold"]))
        width = max((len(n) for n in result.representations), default=0)
        for name, rep in result.representations.items():
            lines.append(f"  {name:<{width}}  {self._fmt(rep.format)}")
            for index, fmt in rep.elements.items():
                label = f"[{index}]"
                lines.append(f"  {label:>{width}}  {self._fmt(fmt)}")
            if rep.initial is not None:
                lines.append(f"  {'':<{width}}  = {rep.initial}")

        # ── signature ────────────────────────────────────────────────
        if result.signature.parameters or result.signature.returns:
            lines.append("")
            lines.append(self._paint("signature", "blue", attrs=["bold"]))
            for name, fmt in result.signature.parameters.items():
                lines.append(f"  param  {name}: {self._fmt(fmt)}")
            for name, fmt in result.signature.returns.items():
                lines.append(f"  return {name}: {self._fmt(fmt)}")

        # ── statements ───────────────────────────────────────────────
        if self.show_plans and result.plans:
            lines.append("")
            lines.append(self._paint("statements", "blue", attrs=["bold"]))
            for plan in result.plans:
                lines.extend(self._plan_lines(plan))

        # ── diagnostics ──────────────────────────────────────────────
        lines.append("")
        if result.diagnostics:
            for diag in result.diagnostics:
                sev = self._paint(f"{diag.severity.value}[{diag.code}]",
                                  _SEVERITY_COLOR[diag.severity], attrs=["bold"])
                where = f" ({diag.statement})" if diag.statement else ""
                lines.append(f"{sev}: {diag.message}{where}")
        else:
            lines.append(self._paint("no diagnostics", "green"))
        return "\n".join(lines) + "\n"

    def _plan_lines(self, plan: StatementPlan) -> List[str]:
        head = f"  {plan.statement.name}"
        if plan.opcode is not plan.statement.opcode:
            head += self._paint(f"  -> {plan.opcode.value}", "magenta")
        if plan.virtual_shift is not None:
            head += self._paint(f"  (scale 2**{plan.virtual_shift})", "magenta")
        lines = [head, f"      {self._fmt(plan.result)}"]
        for position, value in sorted(plan.replaced.items()):
            lines.append(f"      op{position + 1} replaced by {value}")
        for op in plan.corrections:
            lines.append("      " + self._paint(str(op), "green"))
        return lines

    def write(self, result: DriverResult, stream: TextIO = sys.stdout) -> None:
        stream.write(self.render(result))
        stream.flush()


# ═════════════════════════════════════════════════════════════════════════
#  JSON
# ═════════════════════════════════════════════════════════════════════════

def to_json(result: DriverResult, indent: Optional[int] = 2) -> str:
    return json.dumps(result.to_dict(), indent=indent)


# ═════════════════════════════════════════════════════════════════════════
#  DOT
# ═════════════════════════════════════════════════════════════════════════

def to_dot(result: DriverResult) -> str:
    """Data-flow graph: one node per value, one per statement."""
    try:
        import graphviz
    except ImportError as exc:
        raise ConfigError("DOT output needs the graphviz package",
                          hint="pip install fxinfer[viz]") from exc

    graph = graphviz.Digraph(result.program.name, node_attr={"fontname": "monospace"})
    for label, fmt in result.formats.items():
        info = format_dict(fmt)
        graph.node(f"v_{label}", f"{label}\\n({info['S']}/{info['I']}/{info['F']}/{info['E']})",
                   shape="box")
    for n, plan in enumerate(result.plans):
        node = f"s{n}"
        graph.node(node, plan.opcode.value, shape="ellipse")
        for position, operand in enumerate(plan.statement.operands):
            if operand.is_constant:
                continue
            label = _slot_node(operand, result)
            if label is None:
                continue
            ops = [str(op) for op in plan.operand_ops if op.target == f"op{position + 1}"]
            graph.edge(label, node, label="\\n".join(ops))
        target = _slot_node(plan.statement.result, result)
        if target is not None:
            ops = [str(op) for op in plan.result_ops]
            graph.edge(node, target, label="\\n".join(ops))
    return graph.source


def _slot_node(operand: Operand, result: DriverResult) -> Optional[str]:
    text = slot_label(operand.slot)
    return f"v_{text}" if text in result.formats else None


def render(result: DriverResult, fmt: str = "text", color: bool = True) -> str:
    if fmt == "text":
        return TextReport(color=color).render(result)
    if fmt == "json":
        return to_json(result)
    if fmt == "dot":
        return to_dot(result)
    raise ConfigError(f"unknown output format '{fmt}'", hint="one of " + ", ".join(FORMATS))
