"""speclock Function Model Tests — SEM-001 through SEM-005.

Symbolic evaluation of restricted bodies, clause instantiation,
definedness conditions and concrete evaluation.
"""

import pytest

from speclock.contracts import analyze_function, function_constants
from speclock.discovery import discover_source
from speclock.errors import UnsupportedBody
from speclock.evaluate import EvaluationLimit, Undefined, evaluate, holds
from speclock.expr import FreeVar, ResultRef, walk
from speclock.model import ClauseKind
from speclock.semantics import TRUE, build_model, definedness, instantiate


def _model(src):
    fn = analyze_function(discover_source(src, "m.py")[0][0])
    return fn, build_model(fn, function_constants(fn))


SUBSIDY = '''
INITIAL_SUBSIDY = 50 * 100_000_000
HALVING_INTERVAL = 210_000

@spec_locked("6.1")
@requires("height >= 0")
@ensures("result >= 0")
def get_block_subsidy(height: i64) -> i64:
    return INITIAL_SUBSIDY >> (height // HALVING_INTERVAL)
'''


# ===========================================================================
# SEM-001: Straight-line bodies
# ===========================================================================

class TestSEM001:
    """SEM-001: Returns, assignments and constants."""

    def test_subsidy_result(self):
        _, model = _model(SUBSIDY)
        assert evaluate(model.result, {"height": 0}) == 5_000_000_000
        assert evaluate(model.result, {"height": 420_000}) == 1_250_000_000
        assert evaluate(model.result, {"height": 64 * 210_000}) == 0

    def test_assignment_chain(self):
        _, model = _model('''
@spec_locked("1")
def f(x: int) -> int:
    """Doc."""
    y = x * 2
    y += 1
    z: int = y - x
    pass
    return z
''')
        assert evaluate(model.result, {"x": 10}) == 11

    def test_fixed_width_wraps(self):
        _, model = _model('''
@spec_locked("1")
def f(x: u8) -> u8:
    return x + 1
''')
        assert evaluate(model.result, {"x": 255}) == 0

    def test_parameter_post_state(self):
        _, model = _model('''
@spec_locked("1")
def f(x: int) -> int:
    x = x + 5
    return 0
''')
        assert evaluate(model.post["x"], {"x": 1}) == 6


# ===========================================================================
# SEM-002: Branches
# ===========================================================================

class TestSEM002:
    """SEM-002: if / elif / else with early returns."""

    def test_early_return(self):
        _, model = _model('''
@spec_locked("1")
def clamp(x: int) -> int:
    if x > 10:
        return 10
    return x
''')
        assert evaluate(model.result, {"x": 20}) == 10
        assert evaluate(model.result, {"x": 3}) == 3

    def test_elif_chain(self):
        _, model = _model('''
@spec_locked("1")
def sign(x: i32) -> i32:
    if x > 0:
        r = 1
    elif x < 0:
        r = -1
    else:
        r = 0
    return r
''')
        assert [evaluate(model.result, {"x": v}) for v in (5, -5, 0)] == [1, -1, 0]

    def test_boolean_result(self):
        _, model = _model('''
@spec_locked("1")
def in_range(v: i64) -> bool:
    return 0 <= v and v <= 100
''')
        assert evaluate(model.result, {"v": 50}) is True
        assert evaluate(model.result, {"v": 101}) is False

    def test_missing_return_on_one_path(self):
        with pytest.raises(UnsupportedBody):
            _model('''
@spec_locked("1")
def f(x: int) -> int:
    if x > 0:
        return 1
''')


# ===========================================================================
# SEM-003: Unsupported bodies
# ===========================================================================

class TestSEM003:
    """SEM-003: Bodies outside the subset raise UnsupportedBody."""

    @pytest.mark.parametrize("body", [
        "    for i in range(x):\n        x += i\n    return x",
        "    while x > 0:\n        x -= 1\n    return x",
        "    return helper(x)",
        "    return unknown_name + x",
        "    a, b = x, x\n    return a",
        "    return x / 2",
    ])
    def test_rejected(self, body):
        with pytest.raises(UnsupportedBody):
            _model(f'@spec_locked("1")\ndef f(x: int) -> int:\n{body}\n')


# ===========================================================================
# SEM-004: Definedness
# ===========================================================================

class TestSEM004:
    """SEM-004: Division and shift side conditions."""

    def test_division_guard(self):
        _, model = _model('''
@spec_locked("1")
def f(a: int, b: int) -> int:
    return a // b
''')
        assert holds(model.defined, {"a": 1, "b": 0}) is False
        assert holds(model.defined, {"a": 1, "b": 2}) is True

    def test_guarded_by_branch(self):
        _, model = _model('''
@spec_locked("1")
def f(a: int, b: int) -> int:
    if b == 0:
        return 0
    return a // b
''')
        assert holds(model.defined, {"a": 1, "b": 0}) is True

    def test_signed_shift_amount_guard(self):
        _, model = _model(SUBSIDY)
        assert holds(model.defined, {"height": 5}) is True
        assert holds(model.defined, {"height": -210_000}) is False

    def test_constant_body_needs_no_guard(self):
        _, model = _model('''
@spec_locked("1")
def f(a: int) -> int:
    return a // 7 + (a >> 2)
''')
        assert model.defined == TRUE

    def test_definedness_of_short_circuit(self):
        fn = analyze_function(discover_source('''
@spec_locked("1")
@requires("b != 0 and a // b > 1")
def f(a: int, b: int) -> int:
    return a
''', "m.py")[0][0])
        d = definedness(fn.clauses[0].expr)
        assert holds(d, {"a": 1, "b": 0}) is True


# ===========================================================================
# SEM-005: Instantiation and evaluation
# ===========================================================================

class TestSEM005:
    """SEM-005: Clauses rewritten over entry values."""

    def test_result_replaced_by_model(self):
        fn, model = _model(SUBSIDY)
        post = fn.postconditions[0]
        target = instantiate(post.expr, fn, model, ClauseKind.ENSURES)
        assert not any(isinstance(n, ResultRef) for n in walk(target))
        assert holds(target, {"height": 1}) is True

    def test_old_refers_to_entry_value(self):
        fn, model = _model('''
@spec_locked("1")
@ensures("x == old(x) + 1")
def bump(x: int) -> int:
    x += 1
    return x
''')
        target = instantiate(fn.clauses[0].expr, fn, model, ClauseKind.ENSURES)
        assert all(holds(target, {"x": v}) for v in (-3, 0, 7))

    def test_reassigned_parameter_without_model_is_free(self):
        fn = analyze_function(discover_source('''
@spec_locked("1")
@ensures("x >= 0")
def f(x: int) -> int:
    for _ in range(3):
        x += 1
    return x
''', "m.py")[0][0])
        target = instantiate(fn.clauses[0].expr, fn, None, ClauseKind.ENSURES)
        assert any(isinstance(n, FreeVar) for n in walk(target))

    def test_preconditions_unchanged(self):
        fn, model = _model(SUBSIDY)
        pre = fn.preconditions[0]
        assert instantiate(pre.expr, fn, model, ClauseKind.REQUIRES) is pre.expr

    def test_evaluation_errors(self):
        fn, model = _model('''
@spec_locked("1")
def f(a: int, b: int) -> int:
    return a // b
''')
        with pytest.raises(Undefined):
            evaluate(model.result, {"a": 1, "b": 0})
        with pytest.raises(EvaluationLimit):
            evaluate(model.result, {"a": 1})
        assert holds(model.result, {"a": 1, "b": 0}) is None
