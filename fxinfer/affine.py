# fxinfer/affine.py
"""
Affine forms over shared noise symbols.

A value is represented as

    x = c0 + c1*e1 + c2*e2 + ...        with every e_k in [-1, +1]

where ``c0`` is the center (key :data:`CENTER`), keys that name a source
value (``(identity, version, index)`` tuples) carry correlated inputs, and
:class:`NoiseSymbol` keys are independent error terms created by
non-linear operations.  Coefficients are integers scaled by ``2**-bp``;
every term records its binary point and a list is expected to use one
binary point throughout.

Operations
----------
    affine_add        sum or difference, exact
    affine_multiply   full distribution, one lumped error term
    affine_divide     numerator times a min-range reciprocal
    renormalized      move coefficients to another binary point
    affine_max / min  center ± sum of |non-center coefficients|
"""

from __future__ import annotations

import itertools
import logging
import math
from dataclasses import dataclass
from fractions import Fraction
from typing import Dict, Hashable, Iterable, Iterator, List, NamedTuple, Optional, Tuple

from fxinfer.errors import AffineListError, Codes, DiagnosticSink

logger = logging.getLogger(__name__)

#: Key of the center (constant) term.
CENTER = 0

#: Extra reciprocal precision, in bits, above the divisor magnitude.
RECIPROCAL_GUARD_BITS = 16


@dataclass(frozen=True, order=True)
class NoiseSymbol:
    """Key of an independent error term."""
    serial: int

    def __str__(self) -> str:
        return f"e{self.serial}"


class NoiseAllocator:
    """Hands out fresh :class:`NoiseSymbol` keys for one analysis run."""

    def __init__(self, start: int = 1) -> None:
        self._counter = itertools.count(start)

    def fresh(self) -> NoiseSymbol:
        return NoiseSymbol(next(self._counter))


class AffineTerm(NamedTuple):
    key: Hashable
    coeff: int
    bp: int


def _key_label(key: Hashable) -> str:
    if key == CENTER:
        return "c"
    if isinstance(key, tuple) and key:
        name, version, index = (tuple(key) + (0, -1))[:3]
        label = name if not version else f"{name}.{version}"
        return label if index == -1 else f"{label}[{index}]"
    return str(key)


# ═══════════════════════════════════════════════════════════════════════════════
# AFFINE LIST
# ═══════════════════════════════════════════════════════════════════════════════

class AffineList:
    """Ordered map from key to :class:`AffineTerm`, one entry per key."""

    __slots__ = ("_terms", "_destroyed")

    def __init__(self, terms: Iterable[AffineTerm] = ()) -> None:
        self._terms: Dict[Hashable, AffineTerm] = {}
        self._destroyed = False
        for term in terms:
            self.append(*term)

    # ── construction ─────────────────────────────────────────────────

    @classmethod
    def constant(cls, value: int, bp: int) -> "AffineList":
        return cls([AffineTerm(CENTER, value, bp)])

    @classmethod
    def from_range(cls, lo: int, hi: int, bp: int, key: Hashable) -> "AffineList":
        """Center of ``[lo, hi]`` plus one term keyed on ``key``.

        Zero coefficients are omitted.  The radius is rounded up so the
        form always covers the whole range.
        """
        center = (hi + lo) >> 1
        radius = hi - center
        out = cls()
        if center:
            out.append(CENTER, center, bp)
        if radius:
            out.append(key, radius, bp)
        return out

    def append(self, key: Hashable, coeff: int, bp: int) -> None:
        self._check_alive()
        if key in self._terms:
            raise AffineListError(f"duplicate affine key {_key_label(key)}")
        self._terms[key] = AffineTerm(key, coeff, bp)

    def accumulate(self, key: Hashable, coeff: int, bp: int) -> None:
        """Add ``coeff`` to the term for ``key``, creating it if needed."""
        self._check_alive()
        term = self._terms.get(key)
        if term is None:
            self._terms[key] = AffineTerm(key, coeff, bp)
        else:
            self._terms[key] = term._replace(coeff=term.coeff + coeff)

    # ── ownership ────────────────────────────────────────────────────

    def copy(self) -> "AffineList":
        self._check_alive()
        other = AffineList()
        other._terms = dict(self._terms)
        return other

    def destroy(self) -> None:
        """Release the terms; calling it again is harmless."""
        self._terms = {}
        self._destroyed = True

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def _check_alive(self) -> None:
        if self._destroyed:
            raise AffineListError("affine list used after it was destroyed")

    # ── access ───────────────────────────────────────────────────────

    def __contains__(self, key: Hashable) -> bool:
        return key in self._terms

    def __iter__(self) -> Iterator[AffineTerm]:
        self._check_alive()
        return iter(list(self._terms.values()))

    def __len__(self) -> int:
        return len(self._terms)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AffineList):
            return NotImplemented
        return self._terms == other._terms

    def keys(self) -> List[Hashable]:
        return list(self._terms)

    def term(self, key: Hashable) -> Optional[AffineTerm]:
        return self._terms.get(key)

    def coefficient(self, key: Hashable) -> int:
        term = self._terms.get(key)
        return term.coeff if term is not None else 0

    @property
    def center(self) -> int:
        return self.coefficient(CENTER)

    @property
    def radius(self) -> int:
        return sum(abs(t.coeff) for t in self._terms.values() if t.key != CENTER)

    def binary_point(self, sink: Optional[DiagnosticSink] = None) -> Optional[int]:
        """The shared binary point, warning if the terms disagree."""
        self._check_alive()
        points = {t.bp for t in self._terms.values()}
        if not points:
            return None
        if len(points) > 1:
            message = f"inconsistent binary point in affine list {sorted(points)}"
            if sink is not None:
                sink.warning(Codes.BINARY_POINT_MISMATCH, message)
            else:
                logger.warning(message)
        return next(iter(self._terms.values())).bp

    def max(self) -> int:
        return self.center + self.radius

    def min(self) -> int:
        return self.center - self.radius

    def real_bounds(self) -> Tuple[Fraction, Fraction]:
        """Exact bounds in real units, honoring each term's binary point."""
        center = Fraction(0)
        radius = Fraction(0)
        for t in self._terms.values():
            value = Fraction(t.coeff) / Fraction(2) ** t.bp
            if t.key == CENTER:
                center += value
            else:
                radius += abs(value)
        return center - radius, center + radius

    def evaluate(self, assignment: Dict[Hashable, Fraction]) -> Fraction:
        """Real value for noise values in ``assignment`` (missing keys are 0)."""
        total = Fraction(0)
        for t in self._terms.values():
            weight = 1 if t.key == CENTER else assignment.get(t.key, 0)
            total += Fraction(t.coeff) * weight / Fraction(2) ** t.bp
        return total

    # ── transforms ───────────────────────────────────────────────────

    def negated(self) -> "AffineList":
        return AffineList(AffineTerm(t.key, -t.coeff, t.bp) for t in self)

    def shifted(self, k: int) -> "AffineList":
        """Multiply by ``2**k`` by moving the binary point."""
        return AffineList(AffineTerm(t.key, t.coeff, t.bp - k) for t in self)

    def renormalized(self, target_bp: int, rounding: bool = False,
                     round_positive: bool = False) -> "AffineList":
        """Re-express every coefficient at ``target_bp``."""
        out = AffineList()
        for t in self:
            drop = t.bp - target_bp
            coeff = t.coeff
            if drop > 0:
                if rounding:
                    constant = 1 << (drop - 1)
                    if coeff < 0 and not round_positive:
                        constant -= 1
                    coeff += constant
                coeff >>= drop
            elif drop < 0:
                coeff <<= -drop
            out.append(t.key, coeff, target_bp)
        return out

    def __repr__(self) -> str:
        if self._destroyed:
            return "AffineList(<destroyed>)"
        body = " ".join(f"{_key_label(t.key)}:{t.coeff}@{t.bp}" for t in self._terms.values())
        return f"AffineList({body})"


def affine_max(aa: Optional[AffineList]) -> int:
    return 0 if aa is None else aa.max()


def affine_min(aa: Optional[AffineList]) -> int:
    # a missing list reads as an undefined range (min above max)
    return 1 if aa is None else aa.min()


# ═══════════════════════════════════════════════════════════════════════════════
# ARITHMETIC
# ═══════════════════════════════════════════════════════════════════════════════

def affine_add(aa1: AffineList, aa2: AffineList, subtract: bool = False,
               sink: Optional[DiagnosticSink] = None) -> AffineList:
    """Sum (or difference) of two forms; shared keys combine.

    Both operands are expected at the same binary point.  A mismatch is
    reported and the coarser term is scaled up so the sum stays exact.
    """
    sign = -1 if subtract else 1
    out = AffineList()
    for t1 in aa1:
        t2 = aa2.term(t1.key)
        if t2 is None:
            out.append(t1.key, t1.coeff, t1.bp)
            continue
        bp = t1.bp
        c1, c2 = t1.coeff, t2.coeff
        if t1.bp != t2.bp:
            message = f"binary points not equal ({t1.bp} vs {t2.bp}) for {_key_label(t1.key)}"
            if sink is not None:
                sink.warning(Codes.BINARY_POINT_MISMATCH, message)
            else:
                logger.warning(message)
            bp = max(t1.bp, t2.bp)
            c1 <<= bp - t1.bp
            c2 <<= bp - t2.bp
        out.append(t1.key, c1 + sign * c2, bp)
    for t2 in aa2:
        if t2.key not in aa1:
            out.append(t2.key, sign * t2.coeff, t2.bp)
    return out


def affine_multiply(aa1: AffineList, aa2: AffineList, noise: NoiseAllocator,
                    sink: Optional[DiagnosticSink] = None) -> AffineList:
    """Product of two forms.

    Center×term products stay affine.  A term squared contributes half its
    product to the center and the other half to the error term.  Products
    of different keys go to the error term, halved when the same pair
    appears in both orders.  One fresh error term is appended when the
    accumulated error is nonzero.
    """
    bp1 = aa1.binary_point(sink) or 0
    bp2 = aa2.binary_point(sink) or 0
    new_bp = bp1 + bp2

    out = AffineList()
    error = 0
    for t1 in aa1:
        for t2 in aa2:
            product = t1.coeff * t2.coeff
            if t1.key == CENTER:
                out.accumulate(t2.key, product, new_bp)
            elif t2.key == CENTER:
                out.accumulate(t1.key, product, new_bp)
            elif t1.key == t2.key:
                # e**2 spans [0, 1]: the error must reach both 0 and product
                half = product >> 1
                out.accumulate(CENTER, half, new_bp)
                error += max(abs(half), abs(product - half))
            else:
                other1 = aa2.term(t1.key)
                other2 = aa1.term(t2.key)
                if other1 is not None and other2 is not None:
                    pair = abs(product + other1.coeff * other2.coeff)
                    error += (pair + 1) >> 1
                else:
                    error += abs(product)
    if error:
        out.append(noise.fresh(), error, new_bp)
    return out


def affine_divide(numerator: AffineList, denominator: AffineList,
                  noise: NoiseAllocator,
                  sink: Optional[DiagnosticSink] = None) -> AffineList:
    """Quotient as numerator × (min-range affine reciprocal of denominator).

    For a denominator in ``[a, b]`` (``0 < a <= b`` after taking
    magnitudes) the reciprocal is ``alpha*x + zeta ± delta`` with
    ``alpha = -1/b**2``.  ``zeta`` is negated for a negative denominator.
    Coefficient rounding is folded into ``delta`` so the bound stays
    conservative.
    """
    den_lo, den_hi = denominator.real_bounds()
    if den_lo <= 0 <= den_hi:
        raise AffineListError("affine divisor range includes zero")

    a = min(abs(den_lo), abs(den_hi))
    b = max(abs(den_lo), abs(den_hi))
    alpha = -1 / (b * b)
    d_max = 1 / a - alpha * a
    d_min = 1 / b - alpha * b
    zeta = (d_min + d_max) / 2
    delta = (d_max - d_min) / 2
    if den_hi < 0:
        zeta = -zeta

    den_bp = denominator.binary_point(sink) or 0
    b_int = max(abs(denominator.max()), abs(denominator.min()), 1)
    rec_bp = max(den_bp, 0) + b_int.bit_length() + RECIPROCAL_GUARD_BITS
    unit = Fraction(2) ** rec_bp

    reciprocal = AffineList()
    slack = Fraction(0)
    center = zeta
    for t in denominator:
        exact = alpha * Fraction(t.coeff) / Fraction(2) ** t.bp
        if t.key == CENTER:
            center += exact
            continue
        scaled = exact * unit
        coeff = round(scaled)
        slack += abs(scaled - coeff)
        if coeff:
            reciprocal.append(t.key, coeff, rec_bp)
    scaled = center * unit
    coeff = round(scaled)
    slack += abs(scaled - coeff)
    if coeff:
        reciprocal.accumulate(CENTER, coeff, rec_bp)
    spread = math.ceil(delta * unit + slack)
    if spread:
        reciprocal.append(noise.fresh(), spread, rec_bp)

    logger.debug("affine reciprocal %r", reciprocal)
    return affine_multiply(numerator, reciprocal, noise, sink)
