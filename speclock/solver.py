"""speclock Solver Adapter — Z3-backed contract checking.

Each clause gets its own ``z3.Context`` and ``z3.Solver`` with a
timeout, so one slow or failing query never affects its siblings.

Encoding:
  - fixed-width integers → bit-vectors of the declared width, with
    signed or unsigned comparison, Python floor division and modulo
    rebuilt from bvsdiv/bvsmod, and shifts clamped to the width
  - unbounded ``int`` → Z3 integers; a shift by a non-constant amount
    goes through uninterpreted ``shr``/``shl`` with axioms, and
    counterexamples found that way are re-checked concretely
  - function semantics → the symbolic model when there is one,
    otherwise an unconstrained ``result`` restricted by ``@axiom`` clauses

Query for a postcondition:
    pre ∧ defined(body) ∧ ¬(defined(post) ∧ post)
UNSAT → Verified; SAT → Falsified with a counterexample; unknown,
timeout or cancellation → Unknown; adapter failure → Error.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

from speclock.errors import ContractViolation, ErrorKind, SolverError, SolverTimeout
from speclock.evaluate import EvaluationError, evaluate
from speclock.expr import (
    BinOp, BoolOp, BoundVar, Call, Compare, Conditional, Expr, FreeVar,
    Literal, OldRef, ParamRef, Quantifier, ResultRef, UnaryOp,
)
from speclock.model import (
    ClauseKind, ClauseResult, ContractClause, DecisionSource, SpecFunction, Status,
)
from speclock.semantics import FunctionModel, definedness, instantiate
from speclock.types import BOOL, IntType, SemType

logger = logging.getLogger(__name__)

try:
    import z3
    HAS_Z3 = True
except ImportError:
    z3 = None
    HAS_Z3 = False

_EXPAND_QUANTIFIER_LIMIT = 64


# ---------------------------------------------------------------------------
# Encoder
# ---------------------------------------------------------------------------

class _Encoder:
    """Typed expression tree → Z3 term, bound to one context."""

    def __init__(self, ctx) -> None:
        self.ctx = ctx
        self.symbols: dict[tuple, Any] = {}
        self.types: dict[tuple, SemType] = {}
        self.side: list = []
        self.abstracted = False
        self._fns: dict[str, Any] = {}
        self._fresh = 0

    # -- sorts and constants -------------------------------------------------

    def const(self, name: str, t: SemType):
        if t == BOOL:
            return z3.Bool(name, self.ctx)
        if isinstance(t, IntType) and t.bounded:
            return z3.BitVec(name, t.width, self.ctx)
        return z3.Int(name, self.ctx)

    def lit(self, v, t: SemType):
        if t == BOOL or isinstance(v, bool):
            return z3.BoolVal(bool(v), self.ctx)
        if isinstance(t, IntType) and t.bounded:
            return z3.BitVecVal(v % (1 << t.width), t.width, self.ctx)
        return z3.IntVal(v, self.ctx)

    def symbol(self, key: tuple, name: str, t: SemType):
        if key not in self.symbols:
            self.symbols[key] = self.const(name, t)
            self.types[key] = t
        return self.symbols[key]

    # -- expressions ---------------------------------------------------------

    def enc(self, e: Expr, bound: Optional[dict] = None):
        bound = bound or {}
        if isinstance(e, Literal):
            return self.lit(e.value, e.type)
        if isinstance(e, (ParamRef, OldRef)):
            return self.symbol(("param", e.name), e.name, e.type)
        if isinstance(e, ResultRef):
            return self.symbol(("result",), "result", e.type)
        if isinstance(e, FreeVar):
            return self.symbol(("free", e.name), e.name, e.type)
        if isinstance(e, BoundVar):
            return bound[e.name]
        if isinstance(e, BinOp):
            return self._binop(e, bound)
        if isinstance(e, UnaryOp):
            a = self.enc(e.operand, bound)
            if e.op == "not":
                return z3.Not(a)
            if e.op == "-":
                return -a
            if _bv(e.type):
                return ~a
            return -a - 1
        if isinstance(e, Compare):
            return self._compare(e.op, e.left.type, self.enc(e.left, bound),
                                 self.enc(e.right, bound))
        if isinstance(e, BoolOp):
            args = [self.enc(o, bound) for o in e.operands]
            if e.op == "and":
                return z3.And(*args)
            if e.op == "or":
                return z3.Or(*args)
            return z3.Implies(args[0], args[1])
        if isinstance(e, Call):
            return self._call(e, bound)
        if isinstance(e, Conditional):
            return z3.If(self.enc(e.cond, bound), self.enc(e.then, bound),
                         self.enc(e.orelse, bound))
        if isinstance(e, Quantifier):
            return self._quantifier(e, bound)
        raise SolverError(f"cannot encode {type(e).__name__}")

    def _compare(self, op: str, t: SemType, a, b):
        if op == "==":
            return a == b
        if op == "!=":
            return a != b
        if _unsigned(t):
            return {"<": z3.ULT, "<=": z3.ULE, ">": z3.UGT, ">=": z3.UGE}[op](a, b)
        return {"<": a < b, "<=": a <= b, ">": a > b, ">=": a >= b}[op]

    def _binop(self, e: BinOp, bound):
        a = self.enc(e.left, bound)
        t = e.type
        if e.op in ("<<", ">>"):
            return self._shift(e, a, bound)
        b = self.enc(e.right, bound)
        if e.op == "+":
            return a + b
        if e.op == "-":
            return a - b
        if e.op == "*":
            return a * b
        if e.op in ("&", "|", "^"):
            if not _bv(t):
                raise SolverError(f"bitwise '{e.op}' on unbounded integers")
            return {"&": a & b, "|": a | b, "^": a ^ b}[e.op]
        if e.op == "//":
            return self._floordiv(a, b, t)
        if e.op == "%":
            if _bv(t):
                return z3.URem(a, b) if _unsigned(t) else a % b  # bvsmod
            return a - b * self._floordiv(a, b, t)
        raise SolverError(f"unknown operator {e.op}")

    def _floordiv(self, a, b, t):
        if _bv(t):
            if _unsigned(t):
                return z3.UDiv(a, b)
            q = a / b  # bvsdiv truncates
            return z3.If(z3.And(z3.SRem(a, b) != 0, z3.Xor(a < 0, b < 0)), q - 1, q)
        return z3.If(b >= 0, a / b, (-a) / (-b))

    def _shift(self, e: BinOp, a, bound):
        t, at = e.type, e.right.type
        if _bv(t):
            amount = self._bv_amount(e.right, at, t.width, bound)
            if e.op == "<<":
                return a << amount
            return z3.LShR(a, amount) if _unsigned(t) else a >> amount
        if isinstance(e.right, Literal) and 0 <= e.right.value <= 4096:
            k = z3.IntVal(1 << int(e.right.value), self.ctx)
            return a * k if e.op == "<<" else a / k
        amount = self.enc(e.right, bound)
        if _bv(at):
            amount = z3.BV2Int(amount, is_signed=not _unsigned(at))
        self.abstracted = True
        return self._shift_fn("shl" if e.op == "<<" else "shr")(a, amount)

    def _bv_amount(self, amt: Expr, at: SemType, width: int, bound):
        if isinstance(amt, Literal):
            return z3.BitVecVal(max(0, min(int(amt.value), width)), width, self.ctx)
        v = self.enc(amt, bound)
        cap = z3.BitVecVal(width, width, self.ctx)
        if not _bv(at):
            return z3.If(v >= width, cap, z3.Int2BV(v, width))
        wa = at.width
        if wa == width:
            return v
        if wa < width:
            return z3.ZeroExt(width - wa, v)
        return z3.If(z3.UGT(v, width), cap, z3.Extract(width - 1, 0, v))

    def _shift_fn(self, name: str):
        if name in self._fns:
            return self._fns[name]
        isort = z3.IntSort(self.ctx)
        f = z3.Function(name, isort, isort, isort)
        x, s = z3.Int("shift!x", self.ctx), z3.Int("shift!s", self.ctx)
        self.side.append(z3.ForAll([x], f(x, 0) == x))
        if name == "shr":
            self.side.append(z3.ForAll([x, s], z3.Implies(s >= 0, f(x, s + 1) == f(x, s) / 2)))
            self.side.append(z3.ForAll([x, s], z3.Implies(
                z3.And(x >= 0, s >= 0), z3.And(f(x, s) >= 0, f(x, s) <= x))))
            self.side.append(z3.ForAll([x, s], z3.Implies(
                z3.And(x < 0, s >= 0), z3.And(f(x, s) < 0, f(x, s) >= x))))
        else:
            self.side.append(z3.ForAll([x, s], z3.Implies(s >= 0, f(x, s + 1) == 2 * f(x, s))))
            self.side.append(z3.ForAll([x, s], z3.Implies(
                z3.And(x >= 0, s >= 0), f(x, s) >= x)))
        self._fns[name] = f
        return f

    def _call(self, e: Call, bound):
        args = [self.enc(a, bound) for a in e.args]
        t = e.type
        if e.func == "abs":
            a = args[0]
            if _unsigned(t):
                return a
            return z3.If(a < 0, -a, a)
        out = args[0]
        for b in args[1:]:
            less = self._compare("<", t, out, b)
            out = z3.If(less, out, b) if e.func == "min" else z3.If(less, b, out)
        return out

    def _quantifier(self, e: Quantifier, bound):
        t = e.lo.type
        if isinstance(e.lo, Literal) and isinstance(e.hi, Literal) \
                and e.hi.value - e.lo.value <= _EXPAND_QUANTIFIER_LIMIT:
            parts = []
            for i in range(int(e.lo.value), int(e.hi.value)):
                inner = dict(bound)
                inner[e.var] = self.lit(i, t)
                parts.append(self.enc(e.body, inner))
            if not parts:
                return z3.BoolVal(e.kind == "all", self.ctx)
            return z3.And(*parts) if e.kind == "all" else z3.Or(*parts)
        self._fresh += 1
        var = self.const(f"{e.var}!{self._fresh}", t)
        inner = dict(bound)
        inner[e.var] = var
        lo, hi = self.enc(e.lo, bound), self.enc(e.hi, bound)
        in_range = z3.And(self._compare("<=", t, lo, var), self._compare("<", t, var, hi))
        body = self.enc(e.body, inner)
        if e.kind == "all":
            return z3.ForAll([var], z3.Implies(in_range, body))
        return z3.Exists([var], z3.And(in_range, body))

    # -- models --------------------------------------------------------------

    def value(self, model, term, t: SemType):
        v = model.eval(term, model_completion=True)
        if t == BOOL:
            return z3.is_true(v)
        if _bv(t):
            return v.as_long() if _unsigned(t) else v.as_signed_long()
        return v.as_long()


def _bv(t) -> bool:
    return isinstance(t, IntType) and t.bounded


def _unsigned(t) -> bool:
    return isinstance(t, IntType) and t.bounded and not t.signed


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

class SolverAdapter:
    """Decides clauses the fast path left Unknown."""

    def __init__(self, timeout_ms: int = 5000) -> None:
        self.timeout_ms = int(timeout_ms)

    @property
    def available(self) -> bool:
        return HAS_Z3

    def check(self, fn: SpecFunction, clause: ContractClause,
              model: Optional[FunctionModel], token=None) -> ClauseResult:
        start = time.perf_counter()

        def done(status: Status, message: str, cex=None, kind=None) -> ClauseResult:
            decided = status in (Status.VERIFIED, Status.FALSIFIED)
            return ClauseResult(
                status=status,
                kind=clause.kind,
                text=clause.text,
                counterexample=cex,
                elapsed_ms=(time.perf_counter() - start) * 1000,
                source=DecisionSource.SOLVER if decided else DecisionSource.NONE,
                message=message,
                error_kind=kind,
                line=clause.location.line,
            )

        if not HAS_Z3:
            return done(Status.UNKNOWN, "solver unavailable")
        if token is not None and token.cancelled:
            return done(Status.UNKNOWN, "cancelled")

        ctx = z3.Context()
        unregister = token.register(ctx.interrupt) if token is not None else None
        try:
            status, message, cex, kind = self._solve(ctx, fn, clause, model)
        except z3.Z3Exception as e:
            if token is not None and token.cancelled:
                return done(Status.UNKNOWN, "cancelled")
            logger.warning("%s: solver failure on %r", fn.qualname, clause.text, exc_info=True)
            status, message, cex, kind = Status.ERROR, f"solver failure: {e}", None, ErrorKind.SOLVER_ERROR
        except ContractViolation as e:
            status, message, cex, kind = Status.FALSIFIED, e.message, e.counterexample, e.kind
        except SolverTimeout as e:
            status, message, cex, kind = Status.UNKNOWN, e.message, None, e.kind
        except SolverError as e:
            status, message, cex, kind = Status.ERROR, e.message, None, e.kind
        finally:
            if unregister is not None:
                unregister()
        if status == Status.UNKNOWN and token is not None and token.cancelled:
            message = "cancelled"
        return done(status, message, cex, kind)

    # -- queries -------------------------------------------------------------

    def _solve(self, ctx, fn: SpecFunction, clause: ContractClause,
               model: Optional[FunctionModel]):
        enc = _Encoder(ctx)
        solver = z3.Solver(ctx=ctx)
        solver.set("timeout", self.timeout_ms)

        if clause.kind == ClauseKind.REQUIRES:
            upto = []
            for c in fn.preconditions:
                if c.ok:
                    upto.append(c.expr)
                if c is clause:
                    break
            for p in upto:
                solver.add(enc.enc(definedness(p)), enc.enc(p))
            solver.add(*enc.side)
            r = solver.check()
            if r == z3.sat:
                params = self._params(enc, solver.model(), fn)
                if enc.abstracted and not all(_concrete(p, params) is True for p in upto):
                    return Status.UNKNOWN, "inconclusive: shift abstraction", None, None
                return Status.VERIFIED, "satisfiable", None, None
            if r == z3.unsat:
                return Status.FALSIFIED, "preconditions are unsatisfiable", None, None
            return self._unknown(solver)

        pres = [c.expr for c in fn.preconditions if c.ok]
        for p in pres:
            solver.add(enc.enc(definedness(p)), enc.enc(p))
        axioms = []
        if model is not None:
            solver.add(enc.enc(model.defined))
        else:
            axioms = [instantiate(a.expr, fn, None, ClauseKind.AXIOM)
                      for a in fn.axioms if a.ok]
            for a in axioms:
                solver.add(enc.enc(a))
        target = instantiate(clause.expr, fn, model, clause.kind)
        target_def = definedness(target)
        solver.add(z3.Not(z3.And(enc.enc(target_def), enc.enc(target))))
        if enc.side:
            solver.add(*enc.side)

        r = solver.check()
        if r == z3.unsat:
            return Status.VERIFIED, "proved by solver", None, None
        if r != z3.sat:
            return self._unknown(solver)

        m = solver.model()
        params = self._params(enc, m, fn)
        cex: dict[str, Any] = dict(params)
        result = None
        if model is not None and model.result is not None:
            result = enc.value(m, enc.enc(model.result), model.result.type)
            cex["result"] = result
        elif ("result",) in enc.symbols:
            result = enc.value(m, enc.symbols[("result",)], enc.types[("result",)])
            cex["result"] = result
        free = {}
        for key, term in enc.symbols.items():
            if key[0] == "free":
                free[key[1]] = enc.value(m, term, enc.types[key])
        cex.update(free)

        if enc.abstracted:
            confirmed, result = self._confirm(fn, model, pres, axioms, target, target_def,
                                              params, result, free)
            if not confirmed:
                return (Status.UNKNOWN, "inconclusive: counterexample not confirmed "
                        "under shift abstraction", None, None)
            if "result" in cex:
                cex["result"] = result
        undefined = _concrete(target_def, params, result, free) is False
        message = ("clause is undefined for an admissible input" if undefined
                   else "counterexample found")
        raise ContractViolation(message, cex)

    def _params(self, enc: _Encoder, m, fn: SpecFunction) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for p in fn.params:
            if p.type is None:
                continue
            term = enc.symbol(("param", p.name), p.name, p.type)
            out[p.name] = enc.value(m, term, p.type)
        return out

    def _confirm(self, fn, model, pres, axioms, target, target_def,
                 params, result, free) -> tuple[bool, Any]:
        """Replay a model found under the shift abstraction concretely.

        Returns whether it is a real counterexample, and the result the
        body actually produces for it.
        """
        if not all(_concrete(p, params) is True for p in pres):
            return False, result
        if model is not None:
            if _concrete(model.defined, params) is not True:
                return False, result
            if model.result is not None:
                try:
                    result = evaluate(model.result, params)
                except EvaluationError:
                    return False, result
        elif not all(_concrete(a, params, result, free) is True for a in axioms):
            return False, result
        if _concrete(target_def, params, result, free) is False:
            return True, result
        return _concrete(target, params, result, free) is False, result

    def _unknown(self, solver):
        reason = solver.reason_unknown()
        if any(w in reason for w in ("timeout", "cancel", "interrupt")):
            raise SolverTimeout(f"solver {reason}")
        return Status.UNKNOWN, f"solver returned unknown ({reason})", None, None


def _concrete(e: Expr, params, result=None, free=None) -> Optional[bool]:
    try:
        return bool(evaluate(e, params, result, free))
    except EvaluationError:
        return None
