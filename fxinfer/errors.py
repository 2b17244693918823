# fxinfer/errors.py
"""
Error types and the diagnostic stream.

Error Hierarchy:
────────────────
┌──────────────────────────────────────────────────────────────────────┐
│  FxError (base)                                                      │
│  ├── ConfigError            - invalid option or configuration        │
│  ├── ProgramError           - malformed input program                │
│  ├── ConvergenceError       - pass ceiling reached / stuck fixpoint  │
│  ├── InfeasibleFormatError  - result cannot fit the value width      │
│  ├── InvalidShiftError      - shift loses integer or sign bits       │
│  └── AffineListError        - misuse of an affine list               │
└──────────────────────────────────────────────────────────────────────┘

Diagnostic Codes:
─────────────────
Each diagnostic has a code ``FXI-NNNN``:
  - 1000-1999: range hazards (pessimistic format, overflow, divide by zero)
  - 2000-2999: consistency warnings (binary point, versions, signedness)
  - 3000-3999: fatal conditions (non-convergence, infeasible width)
  - 9000-9999: input and configuration errors

Non-fatal diagnostics are collected by a :class:`DiagnosticSink` and never
stop the analysis unless the caller promotes their code with
``FxConfig.fatal_warnings``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, unique
from typing import Any, Dict, Iterable, Iterator, List, Optional

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# SEVERITY
# ═══════════════════════════════════════════════════════════════════════════════

@unique
class Severity(Enum):
    """Severity levels for diagnostics."""

    FATAL = "fatal"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    def __lt__(self, other: "Severity") -> bool:
        order = [Severity.INFO, Severity.WARNING, Severity.ERROR, Severity.FATAL]
        return order.index(self) < order.index(other)

    def is_error(self) -> bool:
        return self in (Severity.FATAL, Severity.ERROR)

    @property
    def log_level(self) -> int:
        return {
            Severity.FATAL: logging.CRITICAL,
            Severity.ERROR: logging.ERROR,
            Severity.WARNING: logging.WARNING,
            Severity.INFO: logging.INFO,
        }[self]


# ═══════════════════════════════════════════════════════════════════════════════
# DIAGNOSTIC CODES
# ═══════════════════════════════════════════════════════════════════════════════

class DiagnosticCode:
    """A stable ``FXI-NNNN`` identifier with a default severity."""

    __slots__ = ("number", "name", "default_severity")

    def __init__(self, number: int, name: str,
                 default_severity: Severity = Severity.WARNING) -> None:
        self.number = number
        self.name = name
        self.default_severity = default_severity

    @property
    def code(self) -> str:
        return f"FXI-{self.number:04d}"

    def __str__(self) -> str:
        return self.code

    def __repr__(self) -> str:
        return f"DiagnosticCode({self.code!r}, {self.name})"

    def __hash__(self) -> int:
        return hash(self.number)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, DiagnosticCode):
            return self.number == other.number
        if isinstance(other, str):
            return other in (self.code, self.name)
        return False


class Codes:
    """Predefined diagnostic codes."""

    # ─── range hazards (1000-1999) ────────────────────────────────────
    PESSIMISTIC_FORMAT = DiagnosticCode(1000, "pessimistic-format", Severity.INFO)
    POSSIBLE_OVERFLOW = DiagnosticCode(1001, "possible-overflow")
    DIVIDE_BY_ZERO = DiagnosticCode(1002, "divide-by-zero")
    ROUNDING_SIGN_FLIP = DiagnosticCode(1003, "rounding-sign-flip")
    MNN_RESERVE_FAILED = DiagnosticCode(1004, "mnn-reserve-failed")

    # ─── consistency (2000-2999) ──────────────────────────────────────
    BINARY_POINT_MISMATCH = DiagnosticCode(2000, "binary-point-mismatch")
    INCONSISTENT_FORMAT = DiagnosticCode(2001, "inconsistent-format")
    RANGE_EXPANSION = DiagnosticCode(2002, "range-expansion")
    SIGNEDNESS_CHANGE = DiagnosticCode(2003, "signedness-change")
    WIDTH_MISMATCH = DiagnosticCode(2004, "width-mismatch")
    PARAMETER_FORMAT_CHANGE = DiagnosticCode(2005, "parameter-format-change")
    NEGATIVE_SHIFT = DiagnosticCode(2006, "negative-shift")

    # ─── fatal (3000-3999) ────────────────────────────────────────────
    NON_CONVERGENCE = DiagnosticCode(3000, "non-convergence", Severity.FATAL)
    UNRESOLVED_FORMATS = DiagnosticCode(3001, "unresolved-formats", Severity.FATAL)
    INFEASIBLE_WIDTH = DiagnosticCode(3002, "infeasible-width", Severity.ERROR)
    INVALID_SHIFT = DiagnosticCode(3003, "invalid-shift", Severity.ERROR)
    AFFINE_MISUSE = DiagnosticCode(3004, "affine-misuse", Severity.ERROR)

    # ─── input (9000-9999) ────────────────────────────────────────────
    INVALID_CONFIG = DiagnosticCode(9000, "invalid-config", Severity.ERROR)
    INVALID_PROGRAM = DiagnosticCode(9001, "invalid-program", Severity.ERROR)

    @classmethod
    def all(cls) -> List[DiagnosticCode]:
        return [v for v in vars(cls).values() if isinstance(v, DiagnosticCode)]

    @classmethod
    def lookup(cls, text: str) -> Optional[DiagnosticCode]:
        """Find a code by ``FXI-NNNN`` string or by its name."""
        for code in cls.all():
            if code == text:
                return code
        return None


# ═══════════════════════════════════════════════════════════════════════════════
# EXCEPTIONS
# ═══════════════════════════════════════════════════════════════════════════════

class FxError(Exception):
    """
    Base exception for all fxinfer errors.

    Carries the diagnostic code, the format key or statement it concerns,
    and an optional hint for the user.
    """

    default_code = Codes.INVALID_PROGRAM

    def __init__(
        self,
        message: str,
        code: Optional[DiagnosticCode] = None,
        key: Any = None,
        severity: Optional[Severity] = None,
        hint: str = "",
    ) -> None:
        super().__init__(message)
        self.message = message
        self._code = code
        self.key = key
        self._severity = severity
        self.hint = hint

    @property
    def code(self) -> DiagnosticCode:
        return self._code or self.default_code

    @property
    def severity(self) -> Severity:
        return self._severity or self.code.default_severity

    def __str__(self) -> str:
        text = f"{self.code}: {self.message}"
        if self.key is not None:
            text += f" [{self.key}]"
        if self.hint:
            text += f" (hint: {self.hint})"
        return text


class ConfigError(FxError):
    default_code = Codes.INVALID_CONFIG


class ProgramError(FxError):
    default_code = Codes.INVALID_PROGRAM


class ConvergenceError(FxError):
    """The Measure loop hit the pass ceiling or stalled."""

    default_code = Codes.NON_CONVERGENCE

    def __init__(self, message: str, pass_no: int = 0, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.pass_no = pass_no


class InfeasibleFormatError(FxError):
    default_code = Codes.INFEASIBLE_WIDTH


class InvalidShiftError(FxError):
    default_code = Codes.INVALID_SHIFT


class AffineListError(FxError):
    default_code = Codes.AFFINE_MISUSE


# ═══════════════════════════════════════════════════════════════════════════════
# DIAGNOSTIC STREAM
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class Diagnostic:
    """One entry of the diagnostic stream."""
    code: DiagnosticCode
    message: str
    severity: Severity = Severity.WARNING
    key: Any = None
    pass_no: Optional[int] = None
    statement: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.code,
            "name": self.code.name,
            "severity": self.severity.value,
            "message": self.message,
            "key": None if self.key is None else str(self.key),
            "pass": self.pass_no,
            "statement": self.statement,
        }

    def __str__(self) -> str:
        where = f" [{self.statement}]" if self.statement else ""
        return f"{self.severity.value}: {self.code}: {self.message}{where}"


@dataclass
class DiagnosticSink:
    """
    Ordered collector for diagnostics.

    Every report is logged through this module's logger.  Codes listed in
    ``fatal`` (by ``FXI-NNNN`` string or name) are raised as
    :class:`FxError` instead of being recorded as warnings.
    """
    fatal: Iterable[str] = field(default_factory=frozenset)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    pass_no: Optional[int] = None
    statement: Optional[str] = None

    def __post_init__(self) -> None:
        self.fatal = frozenset(self.fatal)

    def report(self, code: DiagnosticCode, message: str,
               key: Any = None, severity: Optional[Severity] = None) -> Diagnostic:
        diag = Diagnostic(
            code=code,
            message=message,
            severity=severity or code.default_severity,
            key=key,
            pass_no=self.pass_no,
            statement=self.statement,
        )
        logger.log(diag.severity.log_level, "%s", diag)
        if code.code in self.fatal or code.name in self.fatal:
            raise FxError(message, code=code, key=key, severity=Severity.ERROR,
                          hint="promoted to an error by configuration")
        self.diagnostics.append(diag)
        return diag

    def warning(self, code: DiagnosticCode, message: str, key: Any = None) -> Diagnostic:
        return self.report(code, message, key=key, severity=Severity.WARNING)

    def info(self, code: DiagnosticCode, message: str, key: Any = None) -> Diagnostic:
        return self.report(code, message, key=key, severity=Severity.INFO)

    def __iter__(self) -> Iterator[Diagnostic]:
        return iter(self.diagnostics)

    def __len__(self) -> int:
        return len(self.diagnostics)

    def with_code(self, code: DiagnosticCode) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.code == code]

    def count(self, severity: Severity) -> int:
        return sum(1 for d in self.diagnostics if d.severity is severity)

    def has_errors(self) -> bool:
        return any(d.severity.is_error() for d in self.diagnostics)
