"""speclock source markers.

Importable, runtime no-op decorators that attach a function to a
specification section and declare its contract. speclock reads them
statically; at runtime they only record metadata on ``__spec_lock__``.

Usage:
    from speclock.markers import spec_locked, requires, ensures, i64

    @spec_locked("6.1")
    @requires("height >= 0")
    @ensures("result >= 0")
    def get_block_subsidy(height: i64) -> i64:
        return INITIAL_SUBSIDY >> (height // HALVING_INTERVAL)
"""

from __future__ import annotations

from typing import Any, Callable, NewType, Optional, TypeVar

F = TypeVar("F", bound=Callable[..., Any])

ATTRIBUTE = "__spec_lock__"

# Fixed-width integer annotations
u8 = NewType("u8", int)
u16 = NewType("u16", int)
u32 = NewType("u32", int)
u64 = NewType("u64", int)
u128 = NewType("u128", int)
i8 = NewType("i8", int)
i16 = NewType("i16", int)
i32 = NewType("i32", int)
i64 = NewType("i64", int)
i128 = NewType("i128", int)
usize = NewType("usize", int)
isize = NewType("isize", int)


def _metadata(fn: Callable) -> dict[str, Any]:
    meta = getattr(fn, ATTRIBUTE, None)
    if meta is None:
        meta = {"section": None, "spec_name": None, "subsystem": None,
                "requires": [], "ensures": [], "axiom": []}
        setattr(fn, ATTRIBUTE, meta)
    return meta


def spec_locked(section: Optional[str] = None, spec_name: Optional[str] = None, *,
                name: Optional[str] = None, subsystem: Optional[str] = None) -> Callable[[F], F]:
    """Bind a function to a specification section id such as ``"6.1"``."""
    def decorate(fn: F) -> F:
        meta = _metadata(fn)
        meta["section"] = section
        meta["spec_name"] = spec_name or name
        meta["subsystem"] = subsystem
        return fn
    return decorate


def _clause(kind: str) -> Callable[[str], Callable[[F], F]]:
    def marker(expression: str) -> Callable[[F], F]:
        def decorate(fn: F) -> F:
            # Decorators apply bottom-up; keep source order.
            _metadata(fn)[kind].insert(0, expression)
            return fn
        return decorate
    marker.__name__ = kind
    marker.__qualname__ = kind
    return marker


requires = _clause("requires")
requires.__doc__ = "Precondition over the parameters."
ensures = _clause("ensures")
ensures.__doc__ = "Postcondition over the parameters, ``result`` and ``old(param)``."
axiom = _clause("axiom")
axiom.__doc__ = "Fact assumed of the result when the body cannot be evaluated."
