"""speclock expression trees.

Contract clauses and symbolically evaluated function bodies share one
tree representation. Nodes are frozen dataclasses, hashable, and carry
their semantic type in the trailing ``type`` field once type-checked.
"""

from __future__ import annotations

import operator
from dataclasses import dataclass, fields, replace
from typing import Callable, Iterator, Optional, Union

from speclock.types import SemType


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Expr:
    pass


@dataclass(frozen=True)
class Literal(Expr):
    value: Union[int, bool]
    name: Optional[str] = None  # constant name, for display
    type: Optional[SemType] = None


@dataclass(frozen=True)
class ParamRef(Expr):
    name: str
    type: Optional[SemType] = None


@dataclass(frozen=True)
class ResultRef(Expr):
    type: Optional[SemType] = None


@dataclass(frozen=True)
class OldRef(Expr):
    """Entry value of a parameter, ``old(name)``."""
    name: str
    type: Optional[SemType] = None


@dataclass(frozen=True)
class BoundVar(Expr):
    name: str
    type: Optional[SemType] = None


@dataclass(frozen=True)
class FreeVar(Expr):
    """Unconstrained symbol, e.g. the post-state of a parameter the body
    reassigns when the body itself could not be evaluated."""
    name: str
    type: Optional[SemType] = None


@dataclass(frozen=True)
class BinOp(Expr):
    op: str
    left: Expr
    right: Expr
    type: Optional[SemType] = None


@dataclass(frozen=True)
class UnaryOp(Expr):
    op: str  # "-" | "~" | "not"
    operand: Expr
    type: Optional[SemType] = None


@dataclass(frozen=True)
class Compare(Expr):
    op: str
    left: Expr
    right: Expr
    type: Optional[SemType] = None


@dataclass(frozen=True)
class BoolOp(Expr):
    op: str  # "and" | "or" | "implies"
    operands: tuple[Expr, ...]
    type: Optional[SemType] = None


@dataclass(frozen=True)
class Call(Expr):
    func: str  # "abs" | "min" | "max"
    args: tuple[Expr, ...]
    type: Optional[SemType] = None


@dataclass(frozen=True)
class Quantifier(Expr):
    """``all(body for var in range(lo, hi))`` or ``any(...)``."""
    kind: str  # "all" | "any"
    var: str
    lo: Expr
    hi: Expr
    body: Expr
    type: Optional[SemType] = None


@dataclass(frozen=True)
class Conditional(Expr):
    cond: Expr
    then: Expr
    orelse: Expr
    type: Optional[SemType] = None


# ---------------------------------------------------------------------------
# Operator tables
# ---------------------------------------------------------------------------

ARITH_OPS = ("+", "-", "*", "//", "%")
SHIFT_OPS = ("<<", ">>")
BITWISE_OPS = ("&", "|", "^")
COMPARE_OPS = ("==", "!=", "<", "<=", ">", ">=")

# Python semantics on mathematical integers.
PY_BINOPS: dict[str, Callable[[int, int], int]] = {
    "+": operator.add,
    "-": operator.sub,
    "*": operator.mul,
    "//": operator.floordiv,
    "%": operator.mod,
    "<<": operator.lshift,
    ">>": operator.rshift,
    "&": operator.and_,
    "|": operator.or_,
    "^": operator.xor,
}

PY_COMPARE: dict[str, Callable[[int, int], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}

NEGATED_COMPARE = {"==": "!=", "!=": "==", "<": ">=", "<=": ">", ">": "<=", ">=": "<"}
MIRRORED_COMPARE = {"==": "==", "!=": "!=", "<": ">", "<=": ">=", ">": "<", ">=": "<="}


# ---------------------------------------------------------------------------
# Traversal
# ---------------------------------------------------------------------------

def children(e: Expr) -> tuple[Expr, ...]:
    out: list[Expr] = []
    for f in fields(e):
        v = getattr(e, f.name)
        if isinstance(v, Expr):
            out.append(v)
        elif isinstance(v, tuple):
            out.extend(x for x in v if isinstance(x, Expr))
    return tuple(out)


def walk(e: Expr) -> Iterator[Expr]:
    """Pre-order traversal."""
    yield e
    for c in children(e):
        yield from walk(c)


def transform(e: Expr, fn: Callable[[Expr], Optional[Expr]]) -> Expr:
    """Rebuild bottom-up. ``fn`` returns a replacement or None to keep."""
    changes = {}
    for f in fields(e):
        v = getattr(e, f.name)
        if isinstance(v, Expr):
            nv = transform(v, fn)
            if nv is not v:
                changes[f.name] = nv
        elif isinstance(v, tuple) and v and isinstance(v[0], Expr):
            nv_t = tuple(transform(x, fn) for x in v)
            if any(a is not b for a, b in zip(nv_t, v)):
                changes[f.name] = nv_t
    node = replace(e, **changes) if changes else e
    out = fn(node)
    return node if out is None else out


def substitute(e: Expr, mapping: dict[Expr, Expr]) -> Expr:
    if not mapping:
        return e
    return transform(e, lambda n: mapping.get(n))


def conjuncts(e: Expr) -> list[Expr]:
    """Flatten nested ``and``."""
    if isinstance(e, BoolOp) and e.op == "and":
        out: list[Expr] = []
        for o in e.operands:
            out.extend(conjuncts(o))
        return out
    return [e]


def param_names(e: Expr) -> set[str]:
    return {n.name for n in walk(e) if isinstance(n, (ParamRef, OldRef))}


def mentions_result(e: Expr) -> bool:
    return any(isinstance(n, ResultRef) for n in walk(e))


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

_PRECEDENCE = {
    "or": 1, "and": 2, "not": 3, "cmp": 4,
    "|": 5, "^": 6, "&": 7, "<<": 8, ">>": 8,
    "+": 9, "-": 9, "*": 10, "//": 10, "%": 10, "unary": 11,
}


def to_source(e: Expr) -> str:
    """Render back to Python clause syntax."""
    return _render(e, 0)


def _render(e: Expr, ctx_prec: int) -> str:
    if isinstance(e, Literal):
        if e.name:
            return e.name
        return repr(e.value)
    if isinstance(e, (ParamRef, BoundVar)):
        return e.name
    if isinstance(e, FreeVar):
        return e.name
    if isinstance(e, ResultRef):
        return "result"
    if isinstance(e, OldRef):
        return f"old({e.name})"
    if isinstance(e, BinOp):
        p = _PRECEDENCE[e.op]
        s = f"{_render(e.left, p)} {e.op} {_render(e.right, p + 1)}"
        return f"({s})" if p < ctx_prec else s
    if isinstance(e, UnaryOp):
        if e.op == "not":
            s = f"not {_render(e.operand, _PRECEDENCE['not'])}"
            return f"({s})" if _PRECEDENCE["not"] < ctx_prec else s
        return f"{e.op}{_render(e.operand, _PRECEDENCE['unary'])}"
    if isinstance(e, Compare):
        p = _PRECEDENCE["cmp"]
        s = f"{_render(e.left, p + 1)} {e.op} {_render(e.right, p + 1)}"
        return f"({s})" if p < ctx_prec else s
    if isinstance(e, BoolOp):
        if e.op == "implies":
            return f"implies({to_source(e.operands[0])}, {to_source(e.operands[1])})"
        p = _PRECEDENCE[e.op]
        s = f" {e.op} ".join(_render(o, p + 1) for o in e.operands)
        return f"({s})" if p < ctx_prec else s
    if isinstance(e, Call):
        return f"{e.func}({', '.join(to_source(a) for a in e.args)})"
    if isinstance(e, Quantifier):
        return (f"{e.kind}({to_source(e.body)} for {e.var} in "
                f"range({to_source(e.lo)}, {to_source(e.hi)}))")
    if isinstance(e, Conditional):
        s = f"{_render(e.then, 1)} if {_render(e.cond, 1)} else {_render(e.orelse, 0)}"
        return f"({s})" if ctx_prec > 0 else s
    return f"<{type(e).__name__}>"
