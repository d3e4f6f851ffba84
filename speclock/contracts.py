"""speclock Contract Model — clause parsing and type checking.

Clause text is parsed with Python's own ``ast`` in eval mode and
translated into the restricted expression grammar of ``speclock.expr``.
Anything outside the whitelist is rejected with UnsupportedExpression;
the clause is then reported as Error, never silently skipped.

Usage:
    from speclock.contracts import parse_clause, typecheck, Scope

    scope = Scope.for_function(fn, ClauseKind.ENSURES, constants)
    tree = typecheck(parse_clause("result >= 0", scope), scope)
"""

from __future__ import annotations

import ast
import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Mapping, Optional

from speclock.errors import (
    Defect, ParseError, SpecLockError, TypeMismatch, UnsupportedExpression,
)
from speclock.expr import (
    ARITH_OPS, BITWISE_OPS, PY_BINOPS, SHIFT_OPS,
    BinOp, BoolOp, BoundVar, Call, Compare, Conditional, Expr, FreeVar,
    Literal, OldRef, ParamRef, Quantifier, ResultRef, UnaryOp, transform,
)
from speclock.model import ClauseKind, ContractClause, SpecFunction
from speclock.types import BOOL, INT, LITERAL, IntType, SemType, is_int

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Scope
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Scope:
    """Identifiers visible to one clause."""
    params: Mapping[str, Optional[SemType]] = field(default_factory=dict)
    result_type: Optional[SemType] = None
    constants: Mapping[str, int] = field(default_factory=dict)
    allow_result: bool = False
    allow_old: bool = False
    free: Mapping[str, Optional[SemType]] = field(default_factory=dict)

    @classmethod
    def for_function(cls, fn: SpecFunction, kind: ClauseKind,
                     constants: Mapping[str, int]) -> Scope:
        post = kind in (ClauseKind.ENSURES, ClauseKind.AXIOM)
        return cls(
            params={p.name: p.type for p in fn.params},
            result_type=fn.return_type,
            constants=constants,
            allow_result=post,
            allow_old=post,
        )


_BINOPS = {
    ast.Add: "+", ast.Sub: "-", ast.Mult: "*", ast.FloorDiv: "//",
    ast.Mod: "%", ast.LShift: "<<", ast.RShift: ">>",
    ast.BitAnd: "&", ast.BitOr: "|", ast.BitXor: "^",
}

_CMPOPS = {
    ast.Eq: "==", ast.NotEq: "!=", ast.Lt: "<", ast.LtE: "<=",
    ast.Gt: ">", ast.GtE: ">=",
}

_MAX_POW_EXPONENT = 512


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def parse_clause(text: str, scope: Scope) -> Expr:
    """Parse clause text into an (untyped) expression tree."""
    try:
        tree = ast.parse(text.strip(), mode="eval")
    except SyntaxError as e:
        raise ParseError(f"invalid clause syntax: {e.msg}",
                         details={"text": text}) from e
    return Translator(_scope_resolver(scope), allow_old=scope.allow_old,
                      params=scope.params).translate(tree.body)


def _scope_resolver(scope: Scope) -> Callable[[str], Expr]:
    def resolve(name: str) -> Expr:
        if name == "result":
            if not scope.allow_result:
                raise UnsupportedExpression(
                    "'result' is only available in postconditions")
            return ResultRef()
        if name in scope.params:
            return ParamRef(name)
        if name in scope.free:
            return FreeVar(name, scope.free[name])
        if name in scope.constants:
            return Literal(scope.constants[name], name=name)
        raise UnsupportedExpression(f"unknown identifier '{name}'")
    return resolve


class Translator:
    """Python ``ast`` → speclock expression tree.

    ``resolve`` maps free names to nodes; quantifier variables are
    handled here and shadow everything else.
    """

    def __init__(self, resolve: Callable[[str], Expr], allow_old: bool = False,
                 params: Mapping[str, object] = None) -> None:
        self.resolve = resolve
        self.allow_old = allow_old
        self.params = params or {}
        self.bound: list[str] = []

    def translate(self, node: ast.AST) -> Expr:
        method = getattr(self, f"_t_{type(node).__name__}", None)
        if method is None:
            raise UnsupportedExpression(
                f"unsupported syntax: {type(node).__name__}",
                details={"source": _unparse(node)})
        return method(node)

    def _t_Constant(self, node: ast.Constant) -> Expr:
        v = node.value
        if isinstance(v, bool):
            return Literal(v)
        if isinstance(v, int):
            return Literal(v)
        raise UnsupportedExpression(f"unsupported literal {v!r}")

    def _t_Name(self, node: ast.Name) -> Expr:
        if node.id in self.bound:
            return BoundVar(node.id)
        if node.id in ("True", "False"):
            return Literal(node.id == "True")
        return self.resolve(node.id)

    def _t_BinOp(self, node: ast.BinOp) -> Expr:
        left = self.translate(node.left)
        right = self.translate(node.right)
        if isinstance(node.op, ast.Pow):
            if _int_literal(left) and _int_literal(right):
                if not 0 <= right.value <= _MAX_POW_EXPONENT:
                    raise UnsupportedExpression(
                        f"exponent {right.value} out of range")
                return Literal(left.value ** right.value)
            raise UnsupportedExpression("'**' is only supported between constants")
        if isinstance(node.op, ast.Div):
            raise UnsupportedExpression("true division '/' is not supported; use '//'")
        op = _BINOPS.get(type(node.op))
        if op is None:
            raise UnsupportedExpression(
                f"unsupported operator {type(node.op).__name__}")
        if _int_literal(left) and _int_literal(right):
            try:
                return Literal(_fold(op, left.value, right.value))
            except (ZeroDivisionError, ValueError, OverflowError) as e:
                raise UnsupportedExpression(
                    f"constant expression is undefined: {_unparse(node)}") from e
        return BinOp(op, left, right)

    def _t_UnaryOp(self, node: ast.UnaryOp) -> Expr:
        operand = self.translate(node.operand)
        if isinstance(node.op, ast.Not):
            return UnaryOp("not", operand)
        if isinstance(node.op, ast.UAdd):
            return operand
        op = "-" if isinstance(node.op, ast.USub) else "~" if isinstance(node.op, ast.Invert) else None
        if op is None:
            raise UnsupportedExpression("unsupported unary operator")
        if _int_literal(operand):
            return Literal(-operand.value if op == "-" else ~operand.value)
        return UnaryOp(op, operand)

    def _t_Compare(self, node: ast.Compare) -> Expr:
        parts: list[Expr] = []
        left = self.translate(node.left)
        for op_node, comp in zip(node.ops, node.comparators):
            op = _CMPOPS.get(type(op_node))
            if op is None:
                raise UnsupportedExpression(
                    f"unsupported comparison {type(op_node).__name__}")
            right = self.translate(comp)
            parts.append(Compare(op, left, right))
            left = right
        return parts[0] if len(parts) == 1 else BoolOp("and", tuple(parts))

    def _t_BoolOp(self, node: ast.BoolOp) -> Expr:
        op = "and" if isinstance(node.op, ast.And) else "or"
        return BoolOp(op, tuple(self.translate(v) for v in node.values))

    def _t_IfExp(self, node: ast.IfExp) -> Expr:
        return Conditional(self.translate(node.test), self.translate(node.body),
                           self.translate(node.orelse))

    def _t_Call(self, node: ast.Call) -> Expr:
        if not isinstance(node.func, ast.Name) or node.keywords:
            raise UnsupportedExpression(f"unsupported call: {_unparse(node)}")
        fname = node.func.id
        if fname in self.bound:
            raise UnsupportedExpression(f"'{fname}' is not callable")
        if fname == "old":
            return self._old(node)
        if fname == "implies":
            if len(node.args) != 2:
                raise UnsupportedExpression("implies() takes exactly two arguments")
            return BoolOp("implies", (self.translate(node.args[0]),
                                      self.translate(node.args[1])))
        if fname in ("all", "any"):
            return self._quantifier(fname, node)
        if fname == "abs":
            if len(node.args) != 1:
                raise UnsupportedExpression("abs() takes exactly one argument")
            arg = self.translate(node.args[0])
            if _int_literal(arg):
                return Literal(abs(arg.value))
            return Call("abs", (arg,))
        if fname in ("min", "max"):
            if len(node.args) < 2:
                raise UnsupportedExpression(f"{fname}() needs at least two arguments")
            return Call(fname, tuple(self.translate(a) for a in node.args))
        raise UnsupportedExpression(f"call to '{fname}' is not allowed")

    def _old(self, node: ast.Call) -> Expr:
        if not self.allow_old:
            raise UnsupportedExpression("old() is only available in postconditions")
        if len(node.args) != 1 or not isinstance(node.args[0], ast.Name):
            raise UnsupportedExpression("old() takes a single parameter name")
        name = node.args[0].id
        if name not in self.params:
            raise UnsupportedExpression(f"old() of unknown parameter '{name}'")
        return OldRef(name)

    def _quantifier(self, kind: str, node: ast.Call) -> Expr:
        if len(node.args) != 1 or not isinstance(node.args[0], ast.GeneratorExp):
            raise UnsupportedExpression(f"{kind}() needs a generator over range()")
        gen = node.args[0]
        if len(gen.generators) != 1:
            raise UnsupportedExpression("nested generators are not supported")
        comp = gen.generators[0]
        if comp.is_async or not isinstance(comp.target, ast.Name):
            raise UnsupportedExpression("quantifier target must be a plain name")
        it = comp.iter
        if not (isinstance(it, ast.Call) and isinstance(it.func, ast.Name)
                and it.func.id == "range" and 1 <= len(it.args) <= 2
                and not it.keywords):
            raise UnsupportedExpression("quantifiers range over range(lo, hi) only")
        if len(comp.ifs) > 1:
            raise UnsupportedExpression("at most one 'if' filter is supported")
        if len(it.args) == 1:
            lo: Expr = Literal(0)
            hi = self.translate(it.args[0])
        else:
            lo = self.translate(it.args[0])
            hi = self.translate(it.args[1])
        var = comp.target.id
        self.bound.append(var)
        try:
            body = self.translate(gen.elt)
            if comp.ifs:
                cond = self.translate(comp.ifs[0])
                body = BoolOp("implies" if kind == "all" else "and", (cond, body))
        finally:
            self.bound.pop()
        return Quantifier(kind, var, lo, hi, body)


def _int_literal(e: Expr) -> bool:
    return isinstance(e, Literal) and type(e.value) is int


def _fold(op: str, a: int, b: int) -> int:
    if op == "<<" and b > 4096:
        raise OverflowError("shift amount too large")
    return PY_BINOPS[op](a, b)


def _unparse(node: ast.AST) -> str:
    try:
        return ast.unparse(node)
    except (AttributeError, ValueError):
        return type(node).__name__


# ---------------------------------------------------------------------------
# Type checking
# ---------------------------------------------------------------------------

def typecheck(e: Expr, scope: Scope, expect_bool: bool = True) -> Expr:
    """Assign a semantic type to every node.

    Integer literals adopt the type of the other operand; leftover
    literal-typed subtrees default to unbounded ``int``.
    """
    typed = check_expr(e, scope)
    if expect_bool and typed.type != BOOL:
        raise TypeMismatch(f"clause must be boolean, got {typed.type}")
    return finalize(typed)


def check_expr(e: Expr, scope: Scope) -> Expr:
    """Type a tree without defaulting literal types."""
    return _Checker(scope).check(e, {})


def finalize(e: Expr) -> Expr:
    """Replace remaining polymorphic literal types with ``int``."""
    def fix(n: Expr) -> Optional[Expr]:
        if getattr(n, "type", None) == LITERAL:
            if isinstance(n, BinOp):
                _require_width(n.op, INT)
            return replace(n, type=INT)
        return None
    return transform(e, fix)


def coerce(e: Expr, t: SemType) -> Expr:
    """Push a concrete integer type into a literal-typed subtree."""
    if e.type == t:
        return e
    if e.type != LITERAL:
        raise TypeMismatch(f"expected {t}, got {e.type}")
    if not isinstance(t, IntType):
        raise TypeMismatch(f"integer used where {t} is expected")
    if isinstance(e, Literal):
        if not t.contains(e.value):
            raise TypeMismatch(f"literal {e.value} out of range for {t}")
        return replace(e, type=t)
    if isinstance(e, BinOp):
        right = e.right
        if e.op in SHIFT_OPS:
            if right.type == LITERAL:
                right = _shift_amount(right, t)
        else:
            right = coerce(right, t)
        _require_width(e.op, t)
        return replace(e, left=coerce(e.left, t), right=right, type=t)
    if isinstance(e, UnaryOp):
        return replace(e, operand=coerce(e.operand, t), type=t)
    if isinstance(e, Call):
        return replace(e, args=tuple(coerce(a, t) for a in e.args), type=t)
    if isinstance(e, Conditional):
        return replace(e, then=coerce(e.then, t), orelse=coerce(e.orelse, t), type=t)
    raise TypeMismatch(f"cannot use {type(e).__name__} as {t}")


def _shift_amount(amount: Expr, left_type: SemType) -> Expr:
    if isinstance(amount, Literal) and isinstance(left_type, IntType) \
            and left_type.contains(amount.value):
        return coerce(amount, left_type)
    return coerce(amount, INT)


def _require_width(op: str, t: SemType) -> None:
    if op in BITWISE_OPS and isinstance(t, IntType) and not t.bounded:
        raise TypeMismatch(f"bitwise '{op}' requires a fixed-width type, got {t}")


def unify(a: Expr, b: Expr) -> tuple[Expr, Expr, SemType]:
    ta, tb = a.type, b.type
    if ta == LITERAL and tb == LITERAL:
        return a, b, LITERAL
    if ta == LITERAL and is_int(tb):
        return coerce(a, tb), b, tb
    if tb == LITERAL and is_int(ta):
        return a, coerce(b, ta), ta
    if ta != tb:
        raise TypeMismatch(f"operand types differ: {ta} vs {tb}")
    return a, b, ta


class _Checker:

    def __init__(self, scope: Scope) -> None:
        self.scope = scope

    def check(self, e: Expr, bound: dict[str, SemType]) -> Expr:
        method = getattr(self, f"_c_{type(e).__name__}")
        return method(e, bound)

    def _int(self, e: Expr, bound) -> Expr:
        t = self.check(e, bound)
        if not is_int(t.type):
            raise TypeMismatch(f"expected an integer, got {t.type}")
        return t

    def _bool(self, e: Expr, bound) -> Expr:
        t = self.check(e, bound)
        if t.type != BOOL:
            raise TypeMismatch(f"expected a boolean, got {t.type}")
        return t

    def _c_Literal(self, e: Literal, bound) -> Expr:
        if e.type is not None:
            return e
        return replace(e, type=BOOL if isinstance(e.value, bool) else LITERAL)

    def _param_type(self, name: str) -> SemType:
        t = self.scope.params.get(name)
        if t is None:
            raise TypeMismatch(f"parameter '{name}' has no supported numeric type")
        return t

    def _c_ParamRef(self, e: ParamRef, bound) -> Expr:
        return replace(e, type=self._param_type(e.name))

    def _c_OldRef(self, e: OldRef, bound) -> Expr:
        return replace(e, type=self._param_type(e.name))

    def _c_ResultRef(self, e: ResultRef, bound) -> Expr:
        if self.scope.result_type is None:
            raise TypeMismatch("return value has no supported numeric type")
        return replace(e, type=self.scope.result_type)

    def _c_FreeVar(self, e: FreeVar, bound) -> Expr:
        if e.type is None:
            raise TypeMismatch(f"'{e.name}' has no supported numeric type")
        return e

    def _c_BoundVar(self, e: BoundVar, bound) -> Expr:
        return replace(e, type=bound[e.name])

    def _c_BinOp(self, e: BinOp, bound) -> Expr:
        left = self._int(e.left, bound)
        right = self._int(e.right, bound)
        if e.op in SHIFT_OPS:
            if right.type == LITERAL and left.type != LITERAL:
                right = _shift_amount(right, left.type)
            return replace(e, left=left, right=right, type=left.type)
        left, right, t = unify(left, right)
        if e.op not in ARITH_OPS and t != LITERAL:
            _require_width(e.op, t)
        return replace(e, left=left, right=right, type=t)

    def _c_UnaryOp(self, e: UnaryOp, bound) -> Expr:
        if e.op == "not":
            return replace(e, operand=self._bool(e.operand, bound), type=BOOL)
        operand = self._int(e.operand, bound)
        return replace(e, operand=operand, type=operand.type)

    def _c_Compare(self, e: Compare, bound) -> Expr:
        left = self.check(e.left, bound)
        right = self.check(e.right, bound)
        if left.type == BOOL or right.type == BOOL:
            if left.type != right.type or e.op not in ("==", "!="):
                raise TypeMismatch(f"cannot compare {left.type} {e.op} {right.type}")
            return replace(e, left=left, right=right, type=BOOL)
        left, right, _ = unify(left, right)
        return replace(e, left=left, right=right, type=BOOL)

    def _c_BoolOp(self, e: BoolOp, bound) -> Expr:
        return replace(e, operands=tuple(self._bool(o, bound) for o in e.operands),
                       type=BOOL)

    def _c_Call(self, e: Call, bound) -> Expr:
        args = [self._int(a, bound) for a in e.args]
        concrete = {a.type for a in args if a.type != LITERAL}
        if len(concrete) > 1:
            raise TypeMismatch(f"{e.func}() arguments differ in type")
        if not concrete:
            return replace(e, args=tuple(args), type=LITERAL)
        t = concrete.pop()
        return replace(e, args=tuple(coerce(a, t) for a in args), type=t)

    def _c_Conditional(self, e: Conditional, bound) -> Expr:
        cond = self._bool(e.cond, bound)
        then = self.check(e.then, bound)
        orelse = self.check(e.orelse, bound)
        if then.type == BOOL or orelse.type == BOOL:
            if then.type != orelse.type:
                raise TypeMismatch("conditional branches differ in type")
            return replace(e, cond=cond, then=then, orelse=orelse, type=BOOL)
        then, orelse, t = unify(then, orelse)
        return replace(e, cond=cond, then=then, orelse=orelse, type=t)

    def _c_Quantifier(self, e: Quantifier, bound) -> Expr:
        lo, hi, t = unify(self._int(e.lo, bound), self._int(e.hi, bound))
        if t == LITERAL:
            t = INT
            lo, hi = coerce(lo, INT), coerce(hi, INT)
        inner = dict(bound)
        inner[e.var] = t
        body = self._bool(e.body, inner)
        return replace(e, lo=lo, hi=hi, body=body, type=BOOL)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

def resolve_constants(raw: Mapping[str, str] | tuple,
                      base: Optional[Mapping[str, int]] = None) -> dict[str, int]:
    """Fold module-level constant definitions to integers.

    ``raw`` maps names to their source text in definition order; later
    definitions may refer to earlier ones and to ``base``. Definitions
    that do not fold to an integer are skipped.
    """
    items = raw.items() if isinstance(raw, Mapping) else raw
    out: dict[str, int] = dict(base or {})
    for name, text in items:
        scope = Scope(constants=dict(out))
        try:
            e = parse_clause(text, scope)
        except SpecLockError as err:
            logger.debug("constant %s not foldable: %s", name, err.message)
            continue
        if _int_literal(e):
            out[name] = e.value
        else:
            logger.debug("constant %s is not an integer expression", name)
    return out


# ---------------------------------------------------------------------------
# Function analysis
# ---------------------------------------------------------------------------

def analyze_clause(clause: ContractClause, fn: SpecFunction,
                   constants: Mapping[str, int]) -> ContractClause:
    scope = Scope.for_function(fn, clause.kind, constants)
    try:
        tree = typecheck(parse_clause(clause.text, scope), scope)
    except SpecLockError as err:
        logger.debug("%s: clause %r rejected: %s", fn.qualname, clause.text, err)
        return replace(clause, expr=None, defect=Defect.from_error(err))
    return replace(clause, expr=tree, defect=None)


def analyze_function(fn: SpecFunction,
                     constants: Optional[Mapping[str, int]] = None) -> SpecFunction:
    """Return a copy of ``fn`` whose clauses carry parsed, typed trees.

    Module constants found by discovery are folded on top of the
    configured ``constants``; definitions in the file win.
    """
    known = resolve_constants(fn.constants, constants)
    return fn.with_clauses(
        [analyze_clause(c, fn, known) for c in fn.clauses],
        [analyze_clause(a, fn, known) for a in fn.axioms],
    )


def function_constants(fn: SpecFunction,
                       constants: Optional[Mapping[str, int]] = None) -> dict[str, int]:
    return resolve_constants(fn.constants, constants)
