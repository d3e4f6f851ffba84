"""speclock semantic types.

Fixed-width integers (u8 .. u128, i8 .. i128, usize, isize), the
unbounded Python int, and bool. Annotation names in verified source
resolve to these through resolve_annotation().
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union


# ---------------------------------------------------------------------------
# Type Representations
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SemType:
    """Base type."""
    name: str = ""

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class IntType(SemType):
    width: Optional[int] = None  # None = unbounded
    signed: bool = True

    @property
    def bounded(self) -> bool:
        return self.width is not None

    @property
    def min_value(self) -> Optional[int]:
        if self.width is None:
            return None
        return -(1 << (self.width - 1)) if self.signed else 0

    @property
    def max_value(self) -> Optional[int]:
        if self.width is None:
            return None
        return (1 << (self.width - 1)) - 1 if self.signed else (1 << self.width) - 1

    def contains(self, value: int) -> bool:
        if self.width is None:
            return True
        return self.min_value <= value <= self.max_value

    def wrap(self, value: int) -> int:
        """Reduce a mathematical value to this type (two's complement)."""
        if self.width is None:
            return value
        value &= (1 << self.width) - 1
        if self.signed and value >> (self.width - 1):
            value -= 1 << self.width
        return value


@dataclass(frozen=True)
class BoolType(SemType):
    pass


Type = Union[IntType, BoolType]

BOOL = BoolType("bool")
INT = IntType("int")

U8 = IntType("u8", 8, False)
U16 = IntType("u16", 16, False)
U32 = IntType("u32", 32, False)
U64 = IntType("u64", 64, False)
U128 = IntType("u128", 128, False)
I8 = IntType("i8", 8, True)
I16 = IntType("i16", 16, True)
I32 = IntType("i32", 32, True)
I64 = IntType("i64", 64, True)
I128 = IntType("i128", 128, True)
USIZE = IntType("usize", 64, False)
ISIZE = IntType("isize", 64, True)

# Integer literal whose width is decided by the surrounding expression.
LITERAL = IntType("{integer}")

_BUILTIN_TYPES: dict[str, SemType] = {
    t.name: t for t in (
        BOOL, INT, U8, U16, U32, U64, U128, I8, I16, I32, I64, I128, USIZE, ISIZE,
    )
}

# Consensus-code aliases.
_BUILTIN_TYPES["Natural"] = U64
_BUILTIN_TYPES["Integer"] = I64


def resolve_annotation(name: Optional[str]) -> Optional[SemType]:
    """Resolve an annotation name. Missing annotations default to int."""
    if name is None or name == "":
        return INT
    return _BUILTIN_TYPES.get(name)


def is_int(t: Optional[SemType]) -> bool:
    return isinstance(t, IntType)


def is_literal(t: Optional[SemType]) -> bool:
    return t == LITERAL
