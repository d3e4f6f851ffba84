"""speclock function semantics.

Symbolic evaluation of a restricted Python function body into expression
trees over the parameters' entry values:

  - docstrings and ``pass``
  - ``name = expr``, ``name: T = expr``, ``name op= expr``
  - ``if`` / ``elif`` / ``else`` (the rest of the block is evaluated in
    each branch, so a branch may return early)
  - ``return expr``

Anything else raises UnsupportedBody and the caller falls back to an
uninterpreted result constrained by the function's ``@axiom`` clauses.

Also here: instantiating clauses against a model, and the definedness
side conditions (no zero divisor, no negative shift) of an expression.
"""

from __future__ import annotations

import ast
import textwrap
from dataclasses import dataclass, field
from typing import Mapping, Optional

from speclock.contracts import (
    Scope, Translator, check_expr, coerce, finalize, unify,
)
from speclock.errors import SpecLockError, UnsupportedBody
from speclock.expr import (
    BinOp, BoolOp, Compare, Conditional, Expr, FreeVar, Literal, OldRef,
    ParamRef, Quantifier, ResultRef, UnaryOp, children, substitute, walk,
)
from speclock.model import ClauseKind, SpecFunction
from speclock.types import BOOL, LITERAL, IntType, SemType, resolve_annotation

_MAX_PATHS = 64

TRUE = Literal(True, type=BOOL)


# ---------------------------------------------------------------------------
# Boolean helpers
# ---------------------------------------------------------------------------

def conj(parts) -> Expr:
    flat: list[Expr] = []
    for p in parts:
        if p == TRUE:
            continue
        if isinstance(p, BoolOp) and p.op == "and":
            flat.extend(p.operands)
        else:
            flat.append(p)
    if not flat:
        return TRUE
    if len(flat) == 1:
        return flat[0]
    return BoolOp("and", tuple(flat), type=BOOL)


def implies(a: Expr, b: Expr) -> Expr:
    if b == TRUE:
        return TRUE
    if a == TRUE:
        return b
    return BoolOp("implies", (a, b), type=BOOL)


def negate(a: Expr) -> Expr:
    if isinstance(a, UnaryOp) and a.op == "not":
        return a.operand
    return UnaryOp("not", a, type=BOOL)


# ---------------------------------------------------------------------------
# Definedness
# ---------------------------------------------------------------------------

def definedness(e: Expr) -> Expr:
    """Condition under which evaluating ``e`` raises no error."""
    return conj(_defined(e))


def _defined(e: Expr) -> list[Expr]:
    if isinstance(e, BinOp):
        out = _defined(e.left) + _defined(e.right)
        if e.op in ("//", "%"):
            if not (isinstance(e.right, Literal) and e.right.value != 0):
                out.append(Compare("!=", e.right, Literal(0, type=e.right.type), type=BOOL))
        elif e.op in ("<<", ">>"):
            t = e.right.type
            unsigned = isinstance(t, IntType) and t.bounded and not t.signed
            if not unsigned and not (isinstance(e.right, Literal) and e.right.value >= 0):
                out.append(Compare(">=", e.right, Literal(0, type=t), type=BOOL))
        return out
    if isinstance(e, BoolOp):
        ops = e.operands
        if e.op == "implies":
            return [definedness(ops[0]), implies(ops[0], definedness(ops[1]))]
        out = []
        guard: list[Expr] = []
        for o in ops:
            out.append(implies(conj(guard), definedness(o)))
            guard.append(o if e.op == "and" else negate(o))
        return out
    if isinstance(e, Conditional):
        return [
            definedness(e.cond),
            implies(e.cond, definedness(e.then)),
            implies(negate(e.cond), definedness(e.orelse)),
        ]
    if isinstance(e, Quantifier):
        out = _defined(e.lo) + _defined(e.hi)
        inner = definedness(e.body)
        if inner != TRUE:
            out.append(Quantifier("all", e.var, e.lo, e.hi, inner, type=BOOL))
        return out
    out = []
    for c in children(e):
        out.extend(_defined(c))
    return out


# ---------------------------------------------------------------------------
# Function model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FunctionModel:
    """Return value and post-state of each parameter, as trees over the
    entry values; ``defined`` is the body's own definedness condition."""
    result: Optional[Expr]
    post: Mapping[str, Expr] = field(default_factory=dict)
    defined: Expr = TRUE


@dataclass
class _Outcome:
    result: Optional[Expr]
    post: dict[str, Expr]
    defined: Expr
    paths: int = 1


class _BodyEvaluator:

    def __init__(self, fn: SpecFunction, constants: Mapping[str, int]) -> None:
        self.fn = fn
        self.constants = constants
        self.param_types = {p.name: p.type for p in fn.params}
        self.scope = Scope(params=self.param_types, result_type=fn.return_type,
                           constants=constants)

    # -- expressions ---------------------------------------------------------

    def expr(self, node: ast.AST, env: dict[str, Expr]) -> Expr:
        def resolve(name: str) -> Expr:
            if name in env:
                return env[name]
            if name in self.constants:
                return Literal(self.constants[name], name=name)
            raise UnsupportedBody(f"unknown name '{name}' in body")
        try:
            tree = Translator(resolve).translate(node)
            return check_expr(tree, self.scope)
        except UnsupportedBody:
            raise
        except SpecLockError as err:
            raise UnsupportedBody(f"line {getattr(node, 'lineno', '?')}: {err.message}") from err

    def fit(self, value: Expr, t: Optional[SemType], what: str) -> Expr:
        if t is None:
            raise UnsupportedBody(f"{what} has no supported numeric type")
        if value.type == t:
            return value
        try:
            return coerce(value, t)
        except SpecLockError as err:
            raise UnsupportedBody(f"{what}: {err.message}") from err

    # -- statements ----------------------------------------------------------

    def block(self, stmts: list[ast.stmt], env: dict[str, Expr],
              types: dict[str, SemType]) -> _Outcome:
        defs: list[Expr] = []
        for i, s in enumerate(stmts):
            if isinstance(s, ast.Pass):
                continue
            if isinstance(s, ast.Expr) and isinstance(s.value, ast.Constant) \
                    and isinstance(s.value.value, str):
                continue
            if isinstance(s, ast.Return):
                if s.value is None:
                    return _Outcome(None, self._post(env), conj(defs))
                value = self.expr(s.value, env)
                defs.append(definedness(value))
                if self.fn.return_type is not None:
                    value = self.fit(value, self.fn.return_type, "return value")
                return _Outcome(value, self._post(env), conj(defs))
            if isinstance(s, (ast.Assign, ast.AnnAssign, ast.AugAssign)):
                name, value = self._assignment(s, env, types)
                defs.append(definedness(value))
                env[name] = value
                continue
            if isinstance(s, ast.If):
                cond = self.expr(s.test, env)
                if cond.type != BOOL:
                    raise UnsupportedBody(f"line {s.lineno}: condition is not boolean")
                defs.append(definedness(cond))
                rest = stmts[i + 1:]
                then = self.block(list(s.body) + rest, dict(env), dict(types))
                other = self.block(list(s.orelse) + rest, dict(env), dict(types))
                if then.paths + other.paths > _MAX_PATHS:
                    raise UnsupportedBody("too many paths through the body")
                return self._merge(cond, then, other, defs)
            raise UnsupportedBody(
                f"line {s.lineno}: unsupported statement {type(s).__name__}")
        return _Outcome(None, self._post(env), conj(defs))

    def _assignment(self, s: ast.stmt, env, types) -> tuple[str, Expr]:
        if isinstance(s, ast.Assign):
            if len(s.targets) != 1 or not isinstance(s.targets[0], ast.Name):
                raise UnsupportedBody(f"line {s.lineno}: only single-name assignment")
            name = s.targets[0].id
            value = self.expr(s.value, env)
        elif isinstance(s, ast.AnnAssign):
            if not isinstance(s.target, ast.Name) or s.value is None:
                raise UnsupportedBody(f"line {s.lineno}: unsupported annotated assignment")
            name = s.target.id
            ann = s.annotation.id if isinstance(s.annotation, ast.Name) else None
            t = resolve_annotation(ann)
            if t is None or name in self.param_types:
                raise UnsupportedBody(f"line {s.lineno}: unsupported annotation")
            types[name] = t
            value = self.expr(s.value, env)
        else:
            if not isinstance(s.target, ast.Name):
                raise UnsupportedBody(f"line {s.lineno}: only single-name assignment")
            name = s.target.id
            if name not in env:
                raise UnsupportedBody(f"line {s.lineno}: '{name}' used before assignment")
            op_node = ast.BinOp(left=ast.Name(id=name, ctx=ast.Load()), op=s.op,
                                right=s.value)
            ast.copy_location(op_node, s)
            value = self.expr(op_node, env)
        if name == "result":
            raise UnsupportedBody(f"line {s.lineno}: 'result' is reserved")
        if name in self.param_types:
            value = self.fit(value, self.param_types[name], f"parameter '{name}'")
        elif name in types:
            value = self.fit(value, types[name], f"'{name}'")
        elif value.type != LITERAL:
            types[name] = value.type
        return name, value

    def _post(self, env: dict[str, Expr]) -> dict[str, Expr]:
        return {p: env[p] for p, t in self.param_types.items() if t is not None}

    def _merge(self, cond: Expr, a: _Outcome, b: _Outcome, defs: list[Expr]) -> _Outcome:
        if (a.result is None) != (b.result is None):
            raise UnsupportedBody("not every path returns a value")
        result = None
        if a.result is not None:
            result = _select(cond, a.result, b.result)
        post = {p: _select(cond, a.post[p], b.post[p]) for p in a.post}
        defined = conj(defs + [implies(cond, a.defined), implies(negate(cond), b.defined)])
        return _Outcome(result, post, defined, a.paths + b.paths)


def _select(cond: Expr, a: Expr, b: Expr) -> Expr:
    if a == b:
        return a
    if a.type == BOOL or b.type == BOOL:
        if a.type != b.type:
            raise UnsupportedBody("branches assign values of different types")
        return Conditional(cond, a, b, type=BOOL)
    a, b, t = unify(a, b)
    return Conditional(cond, a, b, type=t)


def build_model(fn: SpecFunction,
                constants: Optional[Mapping[str, int]] = None) -> FunctionModel:
    """Evaluate ``fn``'s body symbolically. Raises UnsupportedBody."""
    if not fn.source:
        raise UnsupportedBody("function source is unavailable")
    try:
        mod = ast.parse(textwrap.dedent(fn.source))
    except SyntaxError as e:
        raise UnsupportedBody(f"cannot parse body: {e.msg}") from e
    if not mod.body or not isinstance(mod.body[0], ast.FunctionDef):
        raise UnsupportedBody("not a plain function definition")
    ev = _BodyEvaluator(fn, dict(constants or {}))
    env: dict[str, Expr] = {
        p.name: ParamRef(p.name, p.type) for p in fn.params if p.type is not None
    }
    try:
        out = ev.block(list(mod.body[0].body), env, {})
        result = finalize(out.result) if out.result is not None else None
        post = {k: finalize(v) for k, v in out.post.items()}
        defined = finalize(out.defined)
    except UnsupportedBody:
        raise
    except SpecLockError as err:
        raise UnsupportedBody(err.message) from err
    return FunctionModel(result=result, post=post, defined=defined)


# ---------------------------------------------------------------------------
# Instantiation
# ---------------------------------------------------------------------------

def post_state_symbol(name: str) -> str:
    return f"{name}'"


def instantiate(e: Expr, fn: SpecFunction, model: Optional[FunctionModel],
                kind: ClauseKind) -> Expr:
    """Rewrite a clause over entry values.

    ``result`` and post-state parameters come from the model; without
    one, ``result`` stays symbolic and reassigned parameters become
    unconstrained symbols. ``old(p)`` is the entry value of ``p``.
    """
    if kind == ClauseKind.REQUIRES:
        return e
    mapping: dict[Expr, Expr] = {}
    for n in walk(e):
        if isinstance(n, ResultRef):
            if model is not None and model.result is not None:
                mapping[n] = model.result
        elif isinstance(n, ParamRef):
            if model is not None and n.name in model.post:
                mapping[n] = model.post[n.name]
            elif model is None and n.name in fn.assigned:
                mapping[n] = FreeVar(post_state_symbol(n.name), n.type)
        elif isinstance(n, OldRef):
            mapping[n] = ParamRef(n.name, n.type)
    return substitute(e, mapping)
