"""speclock interval domain.

Integer intervals [lo, hi] with -inf/+inf for unbounded ends. Finite
bounds are always Python ints so that 64- and 128-bit values stay exact.

Galois connection to P(Z):
  alpha(S) = [min(S), max(S)]
  gamma([lo, hi]) = {n in Z | lo <= n <= hi}

Transfer functions over-approximate Python integer semantics; for a
fixed-width type the result falls back to the full type range whenever
the mathematical result may leave it (wrap-around).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Union

from speclock.types import IntType, SemType

INF = math.inf
NEG_INF = -math.inf

Bound = Union[int, float]

# Shift amounts beyond this are treated as unbounded.
_SHIFT_CAP = 1024


# ---------------------------------------------------------------------------
# Bound arithmetic (exact on ints, sign rules on infinities)
# ---------------------------------------------------------------------------

def _sign(x: Bound) -> int:
    return (x > 0) - (x < 0)


def _add(a: Bound, b: Bound) -> Bound:
    if math.isinf(a) or math.isinf(b):
        if math.isinf(a) and math.isinf(b) and a != b:
            raise ArithmeticError("inf - inf")
        return a if math.isinf(a) else b
    return a + b


def _mul(a: Bound, b: Bound) -> Bound:
    if math.isinf(a) or math.isinf(b):
        s = _sign(a) * _sign(b)
        return 0 if s == 0 else (INF if s > 0 else NEG_INF)
    return a * b


def _floordiv(a: Bound, b: Bound) -> Bound:
    """floor(a / b) for b != 0 with infinite operands."""
    if math.isinf(a) and math.isinf(b):
        raise ArithmeticError("inf / inf")
    if math.isinf(a):
        return INF if _sign(a) == _sign(b) else NEG_INF
    if math.isinf(b):
        if a == 0:
            return 0
        return 0 if _sign(a) == _sign(b) else -1
    return a // b


def _rshift(a: Bound, s: Bound) -> Bound:
    if math.isinf(s) or s > _SHIFT_CAP:
        if math.isinf(a):
            raise ArithmeticError("inf >> inf")
        return 0 if a >= 0 else -1
    if math.isinf(a):
        return a
    return a >> s


def _lshift(a: Bound, s: Bound) -> Bound:
    if a == 0:
        return 0
    if math.isinf(a) or math.isinf(s) or s > _SHIFT_CAP:
        return INF if a > 0 else NEG_INF
    return a << s


# ---------------------------------------------------------------------------
# Interval
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Interval:
    lo: Bound = NEG_INF
    hi: Bound = INF

    def __str__(self) -> str:
        if self.is_bottom():
            return "bot"
        lo_s = "-inf" if self.lo == NEG_INF else str(self.lo)
        hi_s = "+inf" if self.hi == INF else str(self.hi)
        return f"[{lo_s}, {hi_s}]"

    @classmethod
    def const(cls, v: int) -> Interval:
        return cls(v, v)

    @classmethod
    def of_type(cls, t: Optional[SemType]) -> Interval:
        if isinstance(t, IntType) and t.bounded:
            return cls(t.min_value, t.max_value)
        return TOP

    def is_bottom(self) -> bool:
        return self.lo > self.hi

    def is_top(self) -> bool:
        return self.lo == NEG_INF and self.hi == INF

    def is_const(self) -> bool:
        return self.lo == self.hi and not math.isinf(self.lo)

    def contains(self, v: int) -> bool:
        return self.lo <= v <= self.hi

    def nonneg(self) -> bool:
        return self.lo >= 0

    def join(self, other: Interval) -> Interval:
        if self.is_bottom():
            return other
        if other.is_bottom():
            return self
        return Interval(min(self.lo, other.lo), max(self.hi, other.hi))

    def meet(self, other: Interval) -> Interval:
        lo = max(self.lo, other.lo)
        hi = min(self.hi, other.hi)
        if lo > hi:
            return BOTTOM
        return Interval(lo, hi)

    def finite_points(self) -> list[int]:
        """A few representative members, for witness search."""
        if self.is_bottom():
            return []
        pts: list[int] = []
        for v in (self.lo, self.hi, 0, 1, -1):
            if not math.isinf(v) and self.contains(v):
                pts.append(int(v))
        if not math.isinf(self.lo) and not math.isinf(self.hi):
            pts.append((self.lo + self.hi) // 2)
        elif not math.isinf(self.lo):
            pts.append(self.lo + 1)
        elif not math.isinf(self.hi):
            pts.append(self.hi - 1)
        seen: list[int] = []
        for p in pts:
            if self.contains(p) and p not in seen:
                seen.append(p)
        return seen

    # -- arithmetic ------------------------------------------------------------

    def add(self, other: Interval) -> Interval:
        if self.is_bottom() or other.is_bottom():
            return BOTTOM
        try:
            return Interval(_add(self.lo, other.lo), _add(self.hi, other.hi))
        except ArithmeticError:
            return TOP

    def neg(self) -> Interval:
        if self.is_bottom():
            return BOTTOM
        return Interval(-self.hi, -self.lo)

    def sub(self, other: Interval) -> Interval:
        return self.add(other.neg())

    def mul(self, other: Interval) -> Interval:
        if self.is_bottom() or other.is_bottom():
            return BOTTOM
        products = [_mul(a, b) for a in (self.lo, self.hi) for b in (other.lo, other.hi)]
        return Interval(min(products), max(products))

    def floordiv(self, other: Interval) -> Interval:
        """Python ``//``; the divisor's zero is excluded (undefined)."""
        if self.is_bottom() or other.is_bottom():
            return BOTTOM
        out = BOTTOM
        for part in (other.meet(Interval(NEG_INF, -1)), other.meet(Interval(1, INF))):
            if part.is_bottom():
                continue
            try:
                qs = [_floordiv(a, b) for a in (self.lo, self.hi) for b in (part.lo, part.hi)]
            except ArithmeticError:
                return TOP
            out = out.join(Interval(min(qs), max(qs)))
        return out

    def mod(self, other: Interval) -> Interval:
        """Python ``%``: result takes the divisor's sign."""
        if self.is_bottom() or other.is_bottom():
            return BOTTOM
        out = BOTTOM
        pos = other.meet(Interval(1, INF))
        neg = other.meet(Interval(NEG_INF, -1))
        if not pos.is_bottom():
            if self.lo >= 0 and self.hi < pos.lo:
                out = out.join(self)
            else:
                out = out.join(Interval(0, _add(pos.hi, -1)))
        if not neg.is_bottom():
            if self.hi <= 0 and self.lo > neg.hi:
                out = out.join(self)
            else:
                out = out.join(Interval(_add(neg.lo, 1), 0))
        return out

    def rshift(self, amount: Interval) -> Interval:
        """Monotone right shift: for x >= 0 the result lies in [0, x]."""
        if self.is_bottom() or amount.is_bottom():
            return BOTTOM
        s = amount.meet(Interval(0, INF))
        if s.is_bottom():
            return BOTTOM
        out = BOTTOM
        try:
            nonneg = self.meet(Interval(0, INF))
            if not nonneg.is_bottom():
                out = out.join(Interval(_rshift(nonneg.lo, s.hi), _rshift(nonneg.hi, s.lo)))
            negative = self.meet(Interval(NEG_INF, -1))
            if not negative.is_bottom():
                out = out.join(Interval(_rshift(negative.lo, s.lo), _rshift(negative.hi, s.hi)))
        except ArithmeticError:
            return TOP
        return out

    def lshift(self, amount: Interval) -> Interval:
        if self.is_bottom() or amount.is_bottom():
            return BOTTOM
        s = amount.meet(Interval(0, INF))
        if s.is_bottom():
            return BOTTOM
        vals = [_lshift(a, b) for a in (self.lo, self.hi) for b in (s.lo, s.hi)]
        return Interval(min(vals), max(vals))

    def bitand(self, other: Interval) -> Interval:
        if self.is_bottom() or other.is_bottom():
            return BOTTOM
        if self.nonneg() and other.nonneg():
            return Interval(0, min(self.hi, other.hi))
        if self.nonneg():
            return Interval(0, self.hi)
        if other.nonneg():
            return Interval(0, other.hi)
        return TOP

    def bitor(self, other: Interval) -> Interval:
        if self.is_bottom() or other.is_bottom():
            return BOTTOM
        if self.nonneg() and other.nonneg():
            return Interval(max(self.lo, other.lo), _all_ones_above(max(self.hi, other.hi)))
        return TOP

    def bitxor(self, other: Interval) -> Interval:
        if self.is_bottom() or other.is_bottom():
            return BOTTOM
        if self.nonneg() and other.nonneg():
            return Interval(0, _all_ones_above(max(self.hi, other.hi)))
        return TOP

    def invert(self) -> Interval:
        """Python ``~x == -x - 1``."""
        return self.neg().add(Interval(-1, -1))

    def abs(self) -> Interval:
        if self.is_bottom():
            return BOTTOM
        if self.lo >= 0:
            return self
        if self.hi <= 0:
            return self.neg()
        return Interval(0, max(-self.lo, self.hi))

    def min(self, other: Interval) -> Interval:
        if self.is_bottom() or other.is_bottom():
            return BOTTOM
        return Interval(min(self.lo, other.lo), min(self.hi, other.hi))

    def max(self, other: Interval) -> Interval:
        if self.is_bottom() or other.is_bottom():
            return BOTTOM
        return Interval(max(self.lo, other.lo), max(self.hi, other.hi))

    def wrap(self, t: Optional[SemType]) -> Interval:
        """Clamp to a fixed-width type: top of the type on possible overflow."""
        if not (isinstance(t, IntType) and t.bounded) or self.is_bottom():
            return self
        full = Interval.of_type(t)
        if full.lo <= self.lo and self.hi <= full.hi:
            return self
        return full


def _all_ones_above(v: Bound) -> Bound:
    if math.isinf(v):
        return INF
    return (1 << int(v).bit_length()) - 1


TOP = Interval(NEG_INF, INF)
BOTTOM = Interval(INF, NEG_INF)


# ---------------------------------------------------------------------------
# Three-valued comparison
# ---------------------------------------------------------------------------

Tri = Optional[bool]


def compare(op: str, a: Interval, b: Interval) -> Tri:
    if a.is_bottom() or b.is_bottom():
        return None
    if op == "<":
        if a.hi < b.lo:
            return True
        if a.lo >= b.hi:
            return False
    elif op == "<=":
        if a.hi <= b.lo:
            return True
        if a.lo > b.hi:
            return False
    elif op == ">":
        return compare("<", b, a)
    elif op == ">=":
        return compare("<=", b, a)
    elif op == "==":
        if a.is_const() and b.is_const() and a.lo == b.lo:
            return True
        if a.meet(b).is_bottom():
            return False
    elif op == "!=":
        r = compare("==", a, b)
        return None if r is None else not r
    return None


def tri_and(values) -> Tri:
    values = list(values)
    if any(v is False for v in values):
        return False
    if all(v is True for v in values):
        return True
    return None


def tri_or(values) -> Tri:
    values = list(values)
    if any(v is True for v in values):
        return True
    if all(v is False for v in values):
        return False
    return None


def tri_not(v: Tri) -> Tri:
    return None if v is None else not v


def tri_implies(a: Tri, b: Tri) -> Tri:
    return tri_or([tri_not(a), b])
