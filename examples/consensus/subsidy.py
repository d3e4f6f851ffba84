"""Block subsidy and money-range rules, locked to SPEC.md."""

from speclock import ensures, i64, requires, spec_locked, u32, u64

COIN = 100_000_000
MAX_MONEY = 21_000_000 * COIN
HALVING_INTERVAL = 210_000
INITIAL_SUBSIDY = 50 * COIN
MAX_BLOCK_WEIGHT = 4_000_000
WITNESS_SCALE_FACTOR = 4


@spec_locked("6.1")
@requires("height >= 0")
@ensures("result >= 0")
@ensures("result <= INITIAL_SUBSIDY")
def get_block_subsidy(height: i64) -> i64:
    return INITIAL_SUBSIDY >> (height // HALVING_INTERVAL)


@spec_locked("6.2", "MoneyRange")
@ensures("result == (0 <= value and value <= MAX_MONEY)")
def money_range(value: i64) -> bool:
    return 0 <= value and value <= MAX_MONEY


@spec_locked("6.3")
@requires("halvings >= 0")
@ensures("result <= INITIAL_SUBSIDY")
@ensures("halvings < 64 or result == 0")
def subsidy_after_halvings(halvings: u32) -> u64:
    if halvings >= 64:
        return 0
    return INITIAL_SUBSIDY >> halvings


@spec_locked("7.1", subsystem="block")
@requires("base_size <= total_size")
@requires("total_size <= MAX_BLOCK_WEIGHT")
@ensures("result >= base_size * WITNESS_SCALE_FACTOR")
@ensures("result <= total_size * WITNESS_SCALE_FACTOR")
def block_weight(base_size: u64, total_size: u64) -> u64:
    return base_size * (WITNESS_SCALE_FACTOR - 1) + total_size
