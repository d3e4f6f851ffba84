"""Concrete evaluation of typed expression trees.

Fixed-width arithmetic wraps (two's complement); floor division and
modulo follow Python. Used to confirm counterexamples found by the
static checker and, for abstracted solver queries, to re-check a model.
"""

from __future__ import annotations

from typing import Mapping, Optional, Union

from speclock.expr import (
    PY_BINOPS, PY_COMPARE,
    BinOp, BoolOp, BoundVar, Call, Compare, Conditional, Expr, FreeVar,
    Literal, OldRef, ParamRef, Quantifier, ResultRef, UnaryOp,
)
from speclock.types import IntType

Value = Union[int, bool]

MAX_QUANTIFIER_RANGE = 10_000
MAX_UNBOUNDED_SHIFT = 4096


class EvaluationError(Exception):
    pass


class Undefined(EvaluationError):
    """Division by zero or negative shift amount."""


class EvaluationLimit(EvaluationError):
    """Evaluation would be unbounded, or a value is missing."""


def evaluate(e: Expr, params: Mapping[str, int], result: Optional[Value] = None,
             free: Optional[Mapping[str, Value]] = None) -> Value:
    """Evaluate ``e`` with entry values ``params``."""
    return _Evaluator(params, result, free or {}).eval(e, {})


class _Evaluator:

    def __init__(self, params, result, free) -> None:
        self.params = params
        self.result = result
        self.free = free

    def eval(self, e: Expr, bound: dict[str, int]) -> Value:
        if isinstance(e, Literal):
            return e.value
        if isinstance(e, (ParamRef, OldRef)):
            if e.name not in self.params:
                raise EvaluationLimit(f"no value for '{e.name}'")
            return self.params[e.name]
        if isinstance(e, BoundVar):
            return bound[e.name]
        if isinstance(e, ResultRef):
            if self.result is None:
                raise EvaluationLimit("no value for result")
            return self.result
        if isinstance(e, FreeVar):
            if e.name not in self.free:
                raise EvaluationLimit(f"no value for '{e.name}'")
            return self.free[e.name]
        if isinstance(e, BinOp):
            return self._binop(e, bound)
        if isinstance(e, UnaryOp):
            v = self.eval(e.operand, bound)
            if e.op == "not":
                return not v
            return _wrap(e.type, -v if e.op == "-" else ~v)
        if isinstance(e, Compare):
            return PY_COMPARE[e.op](self.eval(e.left, bound), self.eval(e.right, bound))
        if isinstance(e, BoolOp):
            return self._boolop(e, bound)
        if isinstance(e, Call):
            vals = [self.eval(a, bound) for a in e.args]
            if e.func == "abs":
                return _wrap(e.type, abs(vals[0]))
            return min(vals) if e.func == "min" else max(vals)
        if isinstance(e, Conditional):
            if self.eval(e.cond, bound):
                return self.eval(e.then, bound)
            return self.eval(e.orelse, bound)
        if isinstance(e, Quantifier):
            return self._quantifier(e, bound)
        raise EvaluationLimit(f"cannot evaluate {type(e).__name__}")

    def _binop(self, e: BinOp, bound) -> int:
        a = self.eval(e.left, bound)
        b = self.eval(e.right, bound)
        t = e.type
        if e.op in ("//", "%") and b == 0:
            raise Undefined("division by zero")
        if e.op in ("<<", ">>"):
            if b < 0:
                raise Undefined("negative shift count")
            if e.op == "<<":
                if isinstance(t, IntType) and t.bounded and b >= t.width:
                    return 0
                if b > MAX_UNBOUNDED_SHIFT:
                    raise EvaluationLimit("shift amount too large")
        try:
            return _wrap(t, PY_BINOPS[e.op](a, b))
        except (OverflowError, MemoryError) as exc:
            raise EvaluationLimit(str(exc)) from exc

    def _boolop(self, e: BoolOp, bound) -> bool:
        if e.op == "implies":
            return (not self.eval(e.operands[0], bound)) or bool(self.eval(e.operands[1], bound))
        if e.op == "and":
            return all(self.eval(o, bound) for o in e.operands)
        return any(self.eval(o, bound) for o in e.operands)

    def _quantifier(self, e: Quantifier, bound) -> bool:
        lo = self.eval(e.lo, bound)
        hi = self.eval(e.hi, bound)
        if hi - lo > MAX_QUANTIFIER_RANGE:
            raise EvaluationLimit("quantifier range too large")
        inner = dict(bound)
        for i in range(lo, hi):
            inner[e.var] = i
            v = bool(self.eval(e.body, inner))
            if e.kind == "all" and not v:
                return False
            if e.kind == "any" and v:
                return True
        return e.kind == "all"


def _wrap(t, v: int) -> int:
    if isinstance(t, IntType):
        return t.wrap(v)
    return v


def holds(e: Expr, params: Mapping[str, int], result: Optional[Value] = None,
          free: Optional[Mapping[str, Value]] = None) -> Optional[bool]:
    """Truth of ``e``; None when it cannot be evaluated or is undefined."""
    try:
        return bool(evaluate(e, params, result, free))
    except EvaluationError:
        return None
