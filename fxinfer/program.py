# fxinfer/program.py
"""
Input model: declared values and the statements that operate on them.

A program is a list of :class:`ValueDecl` plus an ordered list of
:class:`Block`, each holding :class:`Statement` records.  Statements are
three-address: one result operand and up to two source operands.  The end
of every block is a merge point where writes through pointers are folded
back into the values they alias.

JSON layout
-----------
::

    {
      "name": "fir",
      "values": [
        {"name": "x", "width": 16, "signed": true, "role": "parameter",
         "pinned": {"S": 1, "I": 0, "F": 15}},
        {"name": "c", "width": 16, "kind": "array", "elements": 4,
         "initializer": [0.5, 0.25, 0.125, 0.0625]},
        {"name": "acc", "width": 16, "iterative": true}
      ],
      "blocks": [
        {"name": "bb0", "statements": [
          {"op": "mul", "result": "t", "operands": ["x", "c[1]"]},
          {"op": "add", "result": "acc", "operands": ["acc", "t"]}
        ]}
      ]
    }

Operand strings have the form ``[*]name[.version][[index]][+offset]``; a leading
``*`` dereferences a pointer.  Numbers are constants.  A dict form
``{"name": ..., "version": ..., "index": ..., "deref": ..., "offset": ...}``
is accepted as well.  A top-level ``"statements"`` list is shorthand for a
single block.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from fractions import Fraction
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from fxinfer.errors import ProgramError
from fxinfer.formats import SCALAR, Number, PinnedFormat

logger = logging.getLogger(__name__)


class Opcode(Enum):
    COPY = "copy"
    CAST = "cast"
    NEGATE = "negate"
    LOAD = "load"
    STORE = "store"
    POINTER_OFFSET = "pointer_offset"
    ADD = "add"
    SUB = "sub"
    MUL = "mul"
    DIV = "div"
    COMPARE = "compare"
    RETURN = "return"
    WIDEN_MUL = "widen_mul"

    @property
    def arity(self) -> int:
        return 2 if self in _BINARY else 1

    @property
    def has_result(self) -> bool:
        return self not in (Opcode.COMPARE, Opcode.RETURN)

    @property
    def is_assignment(self) -> bool:
        return self in _ASSIGNMENTS


_BINARY = frozenset({
    Opcode.POINTER_OFFSET, Opcode.ADD, Opcode.SUB, Opcode.MUL,
    Opcode.DIV, Opcode.COMPARE, Opcode.WIDEN_MUL,
})

_ASSIGNMENTS = frozenset({
    Opcode.COPY, Opcode.CAST, Opcode.NEGATE, Opcode.LOAD, Opcode.STORE,
})

_KINDS = ("scalar", "array", "pointer")
_ROLES = ("local", "parameter", "return")


# ═══════════════════════════════════════════════════════════════════════════════
# DECLARATIONS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class ValueDecl:
    """A declared value (variable, parameter, array or pointer).

    ``width`` is the fixed-point width; for pointers it is the width of
    one element and ``pointee_width`` the width of the element the pointer
    originally addressed (used to rescale byte offsets).
    """
    name: str
    width: int
    signed: bool = True
    kind: str = "scalar"
    elements: int = 0
    pointee_width: int = 0
    pinned: Optional[PinnedFormat] = None
    iterative: bool = False
    integer: bool = False
    initializer: Union[None, Number, List[Number]] = None
    role: str = "local"

    @property
    def is_array(self) -> bool:
        return self.kind == "array"

    @property
    def is_pointer(self) -> bool:
        return self.kind == "pointer"

    def indices(self) -> List[int]:
        """Element indices that own a format record, scalar slot first."""
        return [SCALAR] + list(range(self.elements))

    def initial_value(self, index: int) -> Optional[Number]:
        if self.initializer is None:
            return None
        if isinstance(self.initializer, list):
            if index == SCALAR or index >= len(self.initializer):
                return None
            return self.initializer[index]
        return self.initializer if index == SCALAR else None


# ═══════════════════════════════════════════════════════════════════════════════
# OPERANDS AND STATEMENTS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Operand:
    """A reference to a declared value, or a literal constant."""
    name: Optional[str] = None
    version: int = 0
    index: int = SCALAR
    deref: bool = False
    offset: int = 0
    const: Optional[Number] = None

    @property
    def is_constant(self) -> bool:
        return self.const is not None

    @property
    def slot(self) -> Tuple[str, int, int]:
        if self.name is None:
            raise ProgramError("a constant has no storage slot")
        return (self.name, self.version, self.index)

    @property
    def value(self) -> Tuple[str, int]:
        return (self.name or "", self.version)

    def at_index(self, index: int) -> "Operand":
        return Operand(self.name, self.version, index, self.deref, self.offset)

    def __str__(self) -> str:
        if self.is_constant:
            return str(self.const)
        text = "*" if self.deref else ""
        text += self.name or ""
        if self.version:
            text += f".{self.version}"
        if self.index != SCALAR:
            text += f"[{self.index}]"
        if self.offset:
            text += f"+{self.offset}"
        return text


@dataclass
class Statement:
    opcode: Opcode
    result: Optional[Operand] = None
    operands: Tuple[Operand, ...] = ()
    label: str = ""

    def __str__(self) -> str:
        args = ", ".join(str(o) for o in self.operands)
        lhs = f"{self.result} = " if self.result is not None else ""
        return f"{lhs}{self.opcode.value}({args})"

    @property
    def name(self) -> str:
        return self.label or str(self)


@dataclass
class Block:
    name: str
    statements: List[Statement] = field(default_factory=list)

    def __iter__(self) -> Iterator[Statement]:
        return iter(self.statements)

    def __len__(self) -> int:
        return len(self.statements)


@dataclass
class Program:
    name: str
    values: Dict[str, ValueDecl] = field(default_factory=dict)
    blocks: List[Block] = field(default_factory=list)

    def statements(self) -> Iterator[Statement]:
        for block in self.blocks:
            yield from block

    def decl(self, name: str) -> ValueDecl:
        try:
            return self.values[name]
        except KeyError:
            raise ProgramError(f"undeclared value '{name}'") from None

    def parameters(self) -> List[ValueDecl]:
        return [d for d in self.values.values() if d.role == "parameter"]

    def returns(self) -> List[ValueDecl]:
        return [d for d in self.values.values() if d.role == "return"]

    # ── loading ──────────────────────────────────────────────────────

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Program":
        if not isinstance(data, dict):
            raise ProgramError("program must be a JSON object")
        program = cls(name=str(data.get("name", "program")))

        for raw in data.get("values", []):
            decl = _parse_decl(raw)
            if decl.name in program.values:
                raise ProgramError(f"value '{decl.name}' declared twice")
            program.values[decl.name] = decl

        blocks = data.get("blocks")
        if blocks is None:
            blocks = [{"name": "bb0", "statements": data.get("statements", [])}]
        for n, raw in enumerate(blocks):
            block = Block(name=str(raw.get("name", f"bb{n}")))
            for pos, stmt in enumerate(raw.get("statements", [])):
                block.statements.append(_parse_statement(stmt, f"{block.name}:{pos}"))
            program.blocks.append(block)

        program.validate()
        logger.debug("loaded program %s: %d values, %d blocks",
                     program.name, len(program.values), len(program.blocks))
        return program

    def validate(self) -> None:
        """Check operand references against the declarations."""
        for stmt in self.statements():
            if stmt.result is not None and stmt.result.is_constant:
                raise ProgramError("cannot assign to a constant", key=stmt.name)
            refs = [o for o in stmt.operands if not o.is_constant]
            if stmt.result is not None:
                refs.append(stmt.result)
            for ref in refs:
                decl = self.decl(ref.name)
                if ref.deref and not decl.is_pointer:
                    raise ProgramError(
                        f"'{ref}' dereferences '{decl.name}' which is not a pointer",
                        key=stmt.name)
                if ref.index != SCALAR and ref.index >= max(decl.elements, 1):
                    raise ProgramError(f"index out of bounds in '{ref}'", key=stmt.name)
            if stmt.opcode.has_result and stmt.result is None:
                raise ProgramError(f"{stmt.opcode.value} needs a result", key=stmt.name)


def load_program(path: Union[str, Path]) -> Program:
    """Read a program from a JSON file."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ProgramError(f"cannot read {path}: {exc}") from exc
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ProgramError(f"{path}: invalid JSON at line {exc.lineno}: {exc.msg}") from exc
    return Program.from_dict(data)


# ═══════════════════════════════════════════════════════════════════════════════
# PARSING HELPERS
# ═══════════════════════════════════════════════════════════════════════════════

_OPERAND_RE = re.compile(
    r"^(?P<deref>\*)?(?P<name>[A-Za-z_]\w*)"
    r"(?:\.(?P<version>\d+))?"
    r"(?:\[(?P<index>\d+)\])?"
    r"(?:\+(?P<offset>\d+))?$"
)


def _number(raw: Any, what: str) -> Number:
    if isinstance(raw, bool):
        return int(raw)
    if isinstance(raw, (int, float)):
        return raw
    if isinstance(raw, str):
        try:
            return Fraction(raw) if "/" in raw else float(raw)
        except ValueError:
            pass
    raise ProgramError(f"{what}: expected a number, got {raw!r}")


def parse_operand(raw: Any) -> Operand:
    """Parse one operand from its JSON form."""
    if isinstance(raw, bool) or isinstance(raw, (int, float)):
        return Operand(const=_number(raw, "constant"))
    if isinstance(raw, str):
        match = _OPERAND_RE.match(raw.strip())
        if match is None:
            raise ProgramError(f"malformed operand {raw!r}")
        return Operand(
            name=match.group("name"),
            version=int(match.group("version") or 0),
            index=int(match.group("index")) if match.group("index") else SCALAR,
            deref=bool(match.group("deref")),
            offset=int(match.group("offset") or 0),
        )
    if isinstance(raw, dict):
        if "const" in raw:
            return Operand(const=_number(raw["const"], "constant"))
        if "name" not in raw:
            raise ProgramError(f"operand without a name: {raw!r}")
        index = raw.get("index")
        return Operand(
            name=str(raw["name"]),
            version=int(raw.get("version", 0)),
            index=SCALAR if index is None else int(index),
            deref=bool(raw.get("deref", False)),
            offset=int(raw.get("offset", 0)),
        )
    raise ProgramError(f"malformed operand {raw!r}")


def _parse_pin(raw: Any, name: str) -> Optional[PinnedFormat]:
    if raw is None:
        return None
    try:
        return PinnedFormat(
            S=int(raw["S"]), I=int(raw["I"]), F=int(raw["F"]),
            max=None if raw.get("max") is None else _number(raw["max"], name),
            min=None if raw.get("min") is None else _number(raw["min"], name),
        )
    except (KeyError, TypeError) as exc:
        raise ProgramError(f"value '{name}': pinned format needs S, I and F") from exc


def _parse_decl(raw: Dict[str, Any]) -> ValueDecl:
    if not isinstance(raw, dict) or "name" not in raw:
        raise ProgramError(f"malformed value declaration {raw!r}")
    name = str(raw["name"])
    try:
        width = int(raw["width"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ProgramError(f"value '{name}' needs an integer width") from exc
    if width <= 0:
        raise ProgramError(f"value '{name}' has non-positive width {width}")

    kind = str(raw.get("kind", "scalar"))
    if kind not in _KINDS:
        raise ProgramError(f"value '{name}': unknown kind '{kind}'")
    role = str(raw.get("role", "local"))
    if role not in _ROLES:
        raise ProgramError(f"value '{name}': unknown role '{role}'")

    initializer = raw.get("initializer")
    if isinstance(initializer, list):
        initializer = [_number(v, name) for v in initializer]
    elif initializer is not None:
        initializer = _number(initializer, name)

    elements = int(raw.get("elements", 0))
    if kind == "array" and elements <= 0:
        elements = len(initializer) if isinstance(initializer, list) else 0
        if elements <= 0:
            raise ProgramError(f"array '{name}' needs an element count")

    pointee_width = int(raw.get("pointee_width", width if kind == "pointer" else 0))
    if kind == "pointer" and pointee_width <= 0:
        raise ProgramError(f"pointer '{name}' needs a positive pointee width")

    return ValueDecl(
        name=name,
        width=width,
        signed=bool(raw.get("signed", True)),
        kind=kind,
        elements=elements,
        pointee_width=pointee_width,
        pinned=_parse_pin(raw.get("pinned"), name),
        iterative=bool(raw.get("iterative", False)),
        integer=bool(raw.get("integer", False)),
        initializer=initializer,
        role=role,
    )


def _parse_statement(raw: Dict[str, Any], where: str) -> Statement:
    if not isinstance(raw, dict) or "op" not in raw:
        raise ProgramError(f"malformed statement {raw!r}", key=where)
    try:
        opcode = Opcode(str(raw["op"]).lower())
    except ValueError:
        raise ProgramError(f"unknown opcode '{raw['op']}'", key=where) from None

    operands = tuple(parse_operand(o) for o in raw.get("operands", []))
    if len(operands) != opcode.arity:
        raise ProgramError(
            f"{opcode.value} takes {opcode.arity} operand(s), got {len(operands)}",
            key=where)
    result = raw.get("result")
    return Statement(
        opcode=opcode,
        result=None if result is None else parse_operand(result),
        operands=operands,
        label=str(raw.get("label", "")),
    )
