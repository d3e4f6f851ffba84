"""speclock Static Fast-Path Checker.

Sound, incomplete, fast. Preconditions (and, without a function model,
axioms) are turned into interval facts about parameters and
sub-expressions; the clause is then evaluated in the interval domain.

  - Verified: the clause and its definedness are True over the whole box.
  - Falsified: the clause is False over the whole box AND a concrete
    witness satisfying every precondition is confirmed by evaluation.
  - Unknown: anything else.

Running time depends on the size of the expressions, never on the size of
the numeric domain.

Usage:
    checker = StaticChecker()
    ctx = checker.prepare(fn, model)
    result = checker.check(ctx, clause)
"""

from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from speclock.evaluate import EvaluationError, evaluate, holds
from speclock.expr import (
    BinOp, BoolOp, BoundVar, Call, Compare, Conditional, Expr, FreeVar,
    Literal, MIRRORED_COMPARE, OldRef, ParamRef, Quantifier, ResultRef,
    UnaryOp, conjuncts, walk,
)
from speclock.intervals import (
    BOTTOM, INF, NEG_INF, Interval, Tri, compare, tri_and, tri_implies,
    tri_not, tri_or,
)
from speclock.model import (
    ClauseKind, ClauseResult, ContractClause, DecisionSource, SpecFunction, Status,
)
from speclock.semantics import FunctionModel, definedness, instantiate
from speclock.types import BOOL

logger = logging.getLogger(__name__)

MAX_WITNESS_CANDIDATES = 256
_REFINE_ROUNDS = 3


# ---------------------------------------------------------------------------
# Interval evaluation
# ---------------------------------------------------------------------------

class IntervalEvaluator:
    """Evaluate typed trees to intervals (ints) or tri-valued truth (bools).

    ``facts`` bounds individual sub-expressions (parameters, ``result``,
    compound terms); ``true_facts`` are boolean terms known to hold.
    """

    def __init__(self, facts: Optional[dict[Expr, Interval]] = None,
                 true_facts: Optional[set[Expr]] = None) -> None:
        self.facts = facts if facts is not None else {}
        self.true_facts = true_facts or set()

    def interval(self, e: Expr, bound: Optional[dict[str, Interval]] = None) -> Interval:
        bound = bound or {}
        iv = self._interval(e, bound)
        fact = self.facts.get(e)
        if fact is not None:
            iv = iv.meet(fact)
        return iv

    def _interval(self, e: Expr, bound) -> Interval:
        if isinstance(e, Literal):
            return Interval.const(int(e.value))
        if isinstance(e, BoundVar):
            return bound[e.name]
        if isinstance(e, (ParamRef, OldRef, ResultRef, FreeVar)):
            return Interval.of_type(e.type)
        if isinstance(e, BinOp):
            a = self.interval(e.left, bound)
            b = self.interval(e.right, bound)
            raw = {
                "+": a.add, "-": a.sub, "*": a.mul, "//": a.floordiv,
                "%": a.mod, ">>": a.rshift, "<<": a.lshift,
                "&": a.bitand, "|": a.bitor, "^": a.bitxor,
            }[e.op](b)
            return raw.wrap(e.type)
        if isinstance(e, UnaryOp):
            a = self.interval(e.operand, bound)
            return (a.neg() if e.op == "-" else a.invert()).wrap(e.type)
        if isinstance(e, Call):
            ivs = [self.interval(x, bound) for x in e.args]
            if e.func == "abs":
                return ivs[0].abs().wrap(e.type)
            out = ivs[0]
            for iv in ivs[1:]:
                out = out.min(iv) if e.func == "min" else out.max(iv)
            return out
        if isinstance(e, Conditional):
            c = self.truth(e.cond, bound)
            if c is True:
                return self.interval(e.then, bound)
            if c is False:
                return self.interval(e.orelse, bound)
            return self.interval(e.then, bound).join(self.interval(e.orelse, bound))
        return Interval.of_type(getattr(e, "type", None))

    def truth(self, e: Expr, bound: Optional[dict[str, Interval]] = None) -> Tri:
        bound = bound or {}
        if e in self.true_facts:
            return True
        if isinstance(e, Literal):
            return bool(e.value)
        if isinstance(e, Compare):
            if e.left.type == BOOL:
                a, b = self.truth(e.left, bound), self.truth(e.right, bound)
                if a is None or b is None:
                    return None
                return (a == b) if e.op == "==" else (a != b)
            return compare(e.op, self.interval(e.left, bound), self.interval(e.right, bound))
        if isinstance(e, UnaryOp):
            return tri_not(self.truth(e.operand, bound))
        if isinstance(e, BoolOp):
            vals = [self.truth(o, bound) for o in e.operands]
            if e.op == "and":
                return tri_and(vals)
            if e.op == "or":
                return tri_or(vals)
            return tri_implies(vals[0], vals[1])
        if isinstance(e, Conditional):
            c = self.truth(e.cond, bound)
            if c is True:
                return self.truth(e.then, bound)
            if c is False:
                return self.truth(e.orelse, bound)
            t, f = self.truth(e.then, bound), self.truth(e.orelse, bound)
            return t if t == f else None
        if isinstance(e, Quantifier):
            return self._quantifier(e, bound)
        return None

    def _quantifier(self, e: Quantifier, bound) -> Tri:
        lo = self.interval(e.lo, bound)
        hi = self.interval(e.hi, bound)
        if lo.is_bottom() or hi.is_bottom():
            return None
        if hi.hi <= lo.lo:
            return e.kind == "all"
        inner = dict(bound)
        inner[e.var] = Interval(lo.lo, hi.hi - 1 if hi.hi != INF else INF)
        body = self.truth(e.body, inner)
        nonempty = lo.hi < hi.lo
        if e.kind == "all":
            if body is True:
                return True
            if body is False and nonempty:
                return False
            return None
        if body is True and nonempty:
            return True
        if body is False:
            return False
        return None


# ---------------------------------------------------------------------------
# Fact refinement
# ---------------------------------------------------------------------------

def _bound_for(op: str, r: Interval) -> Optional[Interval]:
    """Values x may take given ``x op r``."""
    if r.is_bottom():
        return None
    if op == "<":
        return Interval(NEG_INF, r.hi - 1 if r.hi != INF else INF)
    if op == "<=":
        return Interval(NEG_INF, r.hi)
    if op == ">":
        return Interval(r.lo + 1 if r.lo != NEG_INF else NEG_INF, INF)
    if op == ">=":
        return Interval(r.lo, INF)
    if op == "==":
        return r
    return None


def _is_term(e: Expr) -> bool:
    """Integer sub-expression free of quantifier variables."""
    if e.type == BOOL or isinstance(e, Literal):
        return False
    return not any(isinstance(n, BoundVar) for n in walk(e))


def refine(assumptions: list[Expr]) -> tuple[dict[Expr, Interval], set[Expr], bool]:
    """Facts implied by a conjunction of assumptions.

    Returns (facts, true_facts, feasible).
    """
    parts: list[Expr] = []
    for a in assumptions:
        parts.extend(conjuncts(a))
    facts: dict[Expr, Interval] = {}
    ev = IntervalEvaluator(facts, set(parts))
    for _ in range(_REFINE_ROUNDS):
        changed = False
        for c in parts:
            if not isinstance(c, Compare) or c.left.type == BOOL:
                continue
            for lhs, op, rhs in ((c.left, c.op, c.right),
                                 (c.right, MIRRORED_COMPARE[c.op], c.left)):
                if not _is_term(lhs):
                    continue
                current = ev.interval(lhs)
                if op == "!=":
                    r = ev.interval(rhs)
                    new = current
                    if r.is_const() and not current.is_bottom():
                        if current.lo == r.lo:
                            new = Interval(current.lo + 1, current.hi)
                        elif current.hi == r.lo:
                            new = Interval(current.lo, current.hi - 1)
                        if new.is_bottom():
                            new = BOTTOM
                else:
                    b = _bound_for(op, ev.interval(rhs))
                    if b is None:
                        continue
                    new = current.meet(b)
                if facts.get(lhs) != new:
                    facts[lhs] = new
                    changed = True
                if new.is_bottom():
                    return facts, ev.true_facts, False
        if not changed:
            break
    for c in parts:
        if ev.truth(c) is False:
            return facts, ev.true_facts, False
    return facts, ev.true_facts, True


# ---------------------------------------------------------------------------
# Checker
# ---------------------------------------------------------------------------

@dataclass
class StaticContext:
    """Per-function analysis state shared by its postconditions."""
    fn: SpecFunction
    model: Optional[FunctionModel]
    assumptions: list[Expr] = field(default_factory=list)
    facts: dict[Expr, Interval] = field(default_factory=dict)
    true_facts: set[Expr] = field(default_factory=set)
    feasible: bool = True


class StaticChecker:

    def prepare(self, fn: SpecFunction, model: Optional[FunctionModel]) -> StaticContext:
        assumptions = [c.expr for c in fn.preconditions if c.ok]
        if model is None:
            assumptions += [instantiate(a.expr, fn, None, ClauseKind.AXIOM)
                            for a in fn.axioms if a.ok]
        facts, true_facts, feasible = refine(assumptions)
        return StaticContext(fn, model, assumptions, facts, true_facts, feasible)

    def check(self, ctx: StaticContext, clause: ContractClause) -> ClauseResult:
        start = time.perf_counter()
        if clause.kind == ClauseKind.REQUIRES:
            status, cex, msg = self._check_precondition(ctx, clause)
        else:
            status, cex, msg = self._check_postcondition(ctx, clause)
        return ClauseResult(
            status=status,
            kind=clause.kind,
            text=clause.text,
            counterexample=cex,
            elapsed_ms=(time.perf_counter() - start) * 1000,
            source=DecisionSource.STATIC if status != Status.UNKNOWN else DecisionSource.NONE,
            message=msg,
            line=clause.location.line,
        )

    # -- preconditions ---------------------------------------------------------

    def _check_precondition(self, ctx: StaticContext, clause: ContractClause):
        upto: list[Expr] = []
        for c in ctx.fn.preconditions:
            if c.ok:
                upto.append(c.expr)
            if c is clause:
                break
        facts, true_facts, feasible = refine(upto)
        if not feasible:
            return Status.FALSIFIED, None, "preconditions are unsatisfiable"
        ev = IntervalEvaluator(facts)
        if tri_and(ev.truth(p) for p in upto) is False:
            return Status.FALSIFIED, None, "preconditions are unsatisfiable"
        for params in self._candidates(ctx.fn, facts):
            if all(holds(p, params) is True for p in upto):
                return Status.VERIFIED, None, f"satisfiable, e.g. {_fmt(params)}"
        return Status.UNKNOWN, None, ""

    # -- postconditions --------------------------------------------------------

    def _check_postcondition(self, ctx: StaticContext, clause: ContractClause):
        if not ctx.feasible:
            return Status.VERIFIED, None, "vacuous: assumptions are unsatisfiable"
        target = instantiate(clause.expr, ctx.fn, ctx.model, clause.kind)
        ev = IntervalEvaluator(ctx.facts, ctx.true_facts)
        value = ev.truth(target)
        if value is True and ev.truth(definedness(target)) is True:
            return Status.VERIFIED, None, "proved by interval analysis"
        if value is False:
            witness = self._witness(ctx, target)
            if witness is not None:
                return Status.FALSIFIED, witness, "violated for every admissible input"
        return Status.UNKNOWN, None, ""

    def _witness(self, ctx: StaticContext, target: Expr) -> Optional[dict]:
        model = ctx.model
        symbolic = any(isinstance(n, (ResultRef, FreeVar)) for n in walk(target))
        if symbolic:
            return None
        pres = [c.expr for c in ctx.fn.preconditions if c.ok]
        for params in self._candidates(ctx.fn, ctx.facts):
            if not all(holds(p, params) is True for p in pres):
                continue
            if model is not None and holds(model.defined, params) is not True:
                continue
            if holds(target, params) is not False:
                continue
            cex = dict(params)
            if model is not None and model.result is not None:
                try:
                    cex["result"] = evaluate(model.result, params)
                except EvaluationError:
                    continue
            return cex
        return None

    def _candidates(self, fn: SpecFunction, facts: dict[Expr, Interval]):
        names: list[str] = []
        pools: list[list[int]] = []
        for p in fn.params:
            if p.type is None:
                continue
            if p.type == BOOL:
                names.append(p.name)
                pools.append([False, True])
                continue
            ref = ParamRef(p.name, p.type)
            iv = Interval.of_type(p.type)
            if ref in facts:
                iv = iv.meet(facts[ref])
            pts = iv.finite_points()
            if not pts:
                return
            names.append(p.name)
            pools.append(pts)
        for combo in itertools.islice(itertools.product(*pools), MAX_WITNESS_CANDIDATES):
            yield dict(zip(names, combo))


def _fmt(params: dict) -> str:
    return ", ".join(f"{k}={v}" for k, v in params.items()) or "no parameters"
