"""speclock — specification-locked verification of Python functions"""

__version__ = "0.1.0"

from speclock.markers import (  # noqa: E402
    axiom, ensures, requires, spec_locked,
    i8, i16, i32, i64, i128, isize, u8, u16, u32, u64, u128, usize,
)

__all__ = [
    "axiom", "ensures", "requires", "spec_locked",
    "i8", "i16", "i32", "i64", "i128", "isize",
    "u8", "u16", "u32", "u64", "u128", "usize",
]
