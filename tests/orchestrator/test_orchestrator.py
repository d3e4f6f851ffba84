"""speclock Orchestrator Tests — ORCH-001 through ORCH-008.

Tests for:
  - Filtering before scheduling
  - Per-function failure isolation
  - Solver fallback, timeouts and cancellation
  - Deterministic, idempotent reports
"""

import threading

import pytest

from speclock.config import SpecLockConfig
from speclock.discovery import discover_source
from speclock.errors import EnvironmentFailure, ErrorKind
from speclock.model import ClauseResult, DecisionSource, FilterCriteria, Status
from speclock.orchestrator import CANCELLED, CancellationToken, Orchestrator
from speclock.spec_document import SectionInfo


def _fns(src, path="m.py"):
    fns, diags = discover_source(src, path)
    assert not diags
    return fns


def _static_only(**kw):
    return Orchestrator(SpecLockConfig(solver=False, workers=1, **kw))


HALVE = '''
@spec_locked("{section}")
@ensures("result <= 127")
def {name}(x: u8) -> u8:
    return x // 2
'''

SUM = '''
@spec_locked("7.1")
@requires("x >= 0")
@requires("y >= 0")
@ensures("result >= x")
def {name}(x: int, y: int) -> int:
    return x + y
'''

NEGATIVE = '''
@spec_locked("9")
@ensures("result < 0")
def broken(x: u8) -> u8:
    return x
'''


class _ScriptedSolver:
    """Stands in for SolverAdapter; answers with ``script(fn, clause, token)``."""

    available = True

    def __init__(self, script):
        self.script = script
        self.calls = []

    def check(self, fn, clause, model, token=None):
        self.calls.append(fn.qualname)
        status, message, kind = self.script(fn, clause, token)
        return ClauseResult(
            status=status,
            kind=clause.kind,
            text=clause.text,
            source=DecisionSource.SOLVER if status == Status.VERIFIED else DecisionSource.NONE,
            message=message,
            error_kind=kind,
            line=clause.location.line,
        )


def _prove_all(fn, clause, token):
    return Status.VERIFIED, "proved by solver", None


# ===========================================================================
# ORCH-001: Filtering
# ===========================================================================

class TestORCH001:
    """ORCH-001: Only functions matching the criteria are verified."""

    def _candidates(self):
        fns = []
        sections = ["1", "2", "3", "4", "5", "6", "6.1", "6.2", "7", "8", "10"]
        for i, sid in enumerate(sections):
            fns += _fns(HALVE.format(section=sid, name=f"f{i}"), f"mod{i:02d}.py")
        return fns

    def test_section_filter(self):
        fns = self._candidates()
        assert len(fns) == 11
        report = _static_only().run(fns, FilterCriteria(sections=("6.1",)))
        assert report.summary.total == 1
        assert report.entries[0].section == "6.1"
        assert report.entries[0].verdict == Status.VERIFIED
        assert report.exit_code == 0

    def test_name_and_path_filters(self):
        fns = self._candidates()
        assert _static_only().run(fns, FilterCriteria(name="f1*")).summary.total == 2
        assert _static_only().run(fns, FilterCriteria(path_prefix="mod0")).summary.total == 10

    def test_empty_selection_passes(self):
        report = _static_only().run(self._candidates(), FilterCriteria(sections=("99",)))
        assert report.summary.total == 0
        assert report.passed

    def test_subsystem_falls_back_to_path(self):
        fns = _fns(HALVE.format(section="1", name="g"), "consensus/tx.py") + \
            _fns(HALVE.format(section="1", name="h"), "wallet/keys.py")
        report = _static_only().run(fns, FilterCriteria(subsystem="consensus"))
        assert [e.qualname for e in report.entries] == ["g"]


# ===========================================================================
# ORCH-002: Failure isolation
# ===========================================================================

class TestORCH002:
    """ORCH-002: A broken function never affects its siblings."""

    def test_unsupported_identifier(self):
        fns = _fns(HALVE.format(section="1", name="good"), "a.py") + _fns('''
@spec_locked("2")
@ensures("result >= undefined_name")
def bad(x: u8) -> u8:
    return x
''', "b.py")
        report = _static_only().run(fns)
        good, bad = report.entries
        assert good.verdict == Status.VERIFIED
        assert bad.verdict == Status.ERROR
        assert bad.clauses[0].error_kind == ErrorKind.UNSUPPORTED_EXPRESSION
        assert "undefined_name" in bad.clauses[0].message
        assert report.exit_code == 3

    def test_internal_error_contained(self):
        def script(fn, clause, token):
            if fn.qualname == "explodes":
                raise RuntimeError("boom")
            return _prove_all(fn, clause, token)

        fns = _fns(SUM.format(name="explodes"), "a.py") + _fns(SUM.format(name="fine"), "b.py")
        orch = Orchestrator(SpecLockConfig(workers=1), solver=_ScriptedSolver(script))
        report = orch.run(fns)
        explodes, fine = report.entries
        assert explodes.verdict == Status.ERROR
        assert any("boom" in n for n in explodes.notes)
        assert fine.verdict == Status.VERIFIED

    def test_unanalyzable_precondition_weakens_falsification(self):
        fns = _fns('''
@spec_locked("1")
@requires("x > mystery")
@ensures("result < 0")
def f(x: u8) -> u8:
    return x
''')
        entry = _static_only().run(fns).entries[0]
        pre, post = entry.clauses
        assert pre.status == Status.ERROR
        assert post.status == Status.UNKNOWN
        assert entry.verdict == Status.ERROR


# ===========================================================================
# ORCH-003: Static fast path and solver fallback
# ===========================================================================

class TestORCH003:
    """ORCH-003: The solver only sees clauses the fast path left Unknown."""

    def test_static_decisions_skip_solver(self):
        solver = _ScriptedSolver(_prove_all)
        fns = _fns(HALVE.format(section="1", name="f"))
        report = Orchestrator(SpecLockConfig(workers=1), solver=solver).run(fns)
        assert report.entries[0].clauses[0].source == DecisionSource.STATIC
        assert solver.calls == []

    def test_undecided_clause_goes_to_solver(self):
        solver = _ScriptedSolver(_prove_all)
        fns = _fns(SUM.format(name="add"))
        report = Orchestrator(SpecLockConfig(workers=1), solver=solver).run(fns)
        entry = report.entries[0]
        assert entry.verdict == Status.VERIFIED
        assert entry.clauses[2].source == DecisionSource.SOLVER
        assert solver.calls == ["add"]

    def test_no_solver_leaves_unknown(self):
        entry = _static_only().run(_fns(SUM.format(name="add"))).entries[0]
        assert entry.verdict == Status.UNKNOWN
        assert "solver disabled" in entry.clauses[2].message

    def test_require_solver(self):
        orch = Orchestrator(SpecLockConfig(solver=False, require_solver=True))
        with pytest.raises(EnvironmentFailure):
            orch.run([])


# ===========================================================================
# ORCH-004: Solver timeouts
# ===========================================================================

class TestORCH004:
    """ORCH-004: A timed-out clause is Unknown; other functions still run."""

    def test_one_function_times_out(self):
        def script(fn, clause, token):
            if fn.qualname == "slow":
                return Status.UNKNOWN, "solver timeout", ErrorKind.SOLVER_TIMEOUT
            return _prove_all(fn, clause, token)

        fns = _fns(SUM.format(name="fast"), "a.py") + _fns(SUM.format(name="slow"), "b.py") \
            + _fns(SUM.format(name="steady"), "c.py")
        orch = Orchestrator(SpecLockConfig(workers=3), solver=_ScriptedSolver(script))
        report = orch.run(fns)
        verdicts = {e.qualname: e.verdict for e in report.entries}
        assert verdicts == {"fast": Status.VERIFIED, "slow": Status.UNKNOWN,
                            "steady": Status.VERIFIED}
        slow = report.entries[1]
        assert slow.clauses[2].error_kind == ErrorKind.SOLVER_TIMEOUT
        assert report.exit_code == 2

    def test_run_timeout_cancels_remaining(self):
        def script(fn, clause, token):
            woke = threading.Event()
            unregister = token.register(woke.set)
            try:
                woke.wait(10)
            finally:
                unregister()
            return Status.UNKNOWN, CANCELLED, None

        fns = _fns(SUM.format(name="a"), "a.py") + _fns(SUM.format(name="b"), "b.py") \
            + _fns(SUM.format(name="c"), "c.py")
        config = SpecLockConfig(workers=1, run_timeout=0.2)
        report = Orchestrator(config, solver=_ScriptedSolver(script)).run(fns)
        assert report.timed_out
        assert not report.interrupted
        assert report.summary.total == 3
        assert all(e.verdict == Status.UNKNOWN for e in report.entries)
        assert report.exit_code == 2


# ===========================================================================
# ORCH-005: Fail-fast
# ===========================================================================

class TestORCH005:
    """ORCH-005: fail_fast stops scheduling after the first falsification."""

    def test_fail_fast(self):
        fns = _fns(NEGATIVE, "a.py") + _fns(HALVE.format(section="1", name="g"), "b.py") \
            + _fns(HALVE.format(section="1", name="h"), "c.py")
        report = _static_only(fail_fast=True).run(fns)
        first, *rest = report.entries
        assert first.verdict == Status.FALSIFIED
        assert first.counterexample == {"x": 0, "result": 0}
        for e in rest:
            assert e.verdict == Status.UNKNOWN
            assert e.notes == (CANCELLED,)
        assert report.exit_code == 1

    def test_cancelled_function_keeps_its_defects(self):
        duplicate = '''
@spec_locked("1")
@spec_locked("2")
@ensures("result <= 127")
def dup(x: u8) -> u8:
    return x // 2
'''
        fns = _fns(NEGATIVE, "a.py") + _fns(duplicate, "b.py")
        report = _static_only(fail_fast=True).run(fns)
        _, dup = report.entries
        assert dup.verdict == Status.ERROR
        assert dup.notes[-1] == CANCELLED
        assert "duplicate" in dup.notes[0]

    def test_without_fail_fast_everything_runs(self):
        fns = _fns(NEGATIVE, "a.py") + _fns(HALVE.format(section="1", name="g"), "b.py") \
            + _fns(HALVE.format(section="1", name="h"), "c.py")
        report = _static_only().run(fns)
        assert [e.verdict for e in report.entries] == \
            [Status.FALSIFIED, Status.VERIFIED, Status.VERIFIED]


# ===========================================================================
# ORCH-006: Interruption
# ===========================================================================

class TestORCH006:
    """ORCH-006: Ctrl-C yields a partial report marked interrupted."""

    def test_keyboard_interrupt(self):
        def script(fn, clause, token):
            if fn.qualname == "b":
                raise KeyboardInterrupt
            return _prove_all(fn, clause, token)

        fns = _fns(SUM.format(name="a"), "a.py") + _fns(SUM.format(name="b"), "b.py") \
            + _fns(SUM.format(name="c"), "c.py")
        report = Orchestrator(SpecLockConfig(workers=1), solver=_ScriptedSolver(script)).run(fns)
        assert report.interrupted
        assert report.exit_code == 130
        a, b, c = report.entries
        assert a.verdict == Status.VERIFIED
        assert b.verdict == Status.UNKNOWN
        assert c.verdict == Status.UNKNOWN
        assert not report.passed

    def test_token_runs_late_callbacks(self):
        token = CancellationToken()
        token.cancel("run timeout")
        hits = []
        token.register(lambda: hits.append(1))
        assert hits == [1]
        assert token.reason == "run timeout"


# ===========================================================================
# ORCH-007: Determinism
# ===========================================================================

class TestORCH007:
    """ORCH-007: Report order and content never depend on scheduling."""

    def _shuffled(self):
        fns = []
        for i in (5, 2, 7, 0, 3, 6, 1, 4):
            fns += _fns(HALVE.format(section=str(i + 1), name=f"f{i}"), f"m{i}.py")
        return fns

    def _shape(self, report):
        return [(e.qualname, e.file, e.verdict, tuple(c.status for c in e.clauses))
                for e in report.entries]

    def test_sorted_by_location(self):
        report = Orchestrator(SpecLockConfig(solver=False, workers=4)).run(self._shuffled())
        assert [e.file for e in report.entries] == [f"m{i}.py" for i in range(8)]

    def test_idempotent(self):
        fns = self._shuffled() + _fns(NEGATIVE, "z.py")
        orch = Orchestrator(SpecLockConfig(solver=False, workers=4))
        first, second = orch.run(fns), orch.run(fns)
        assert self._shape(first) == self._shape(second)
        assert first.summary == second.summary


# ===========================================================================
# ORCH-008: Section titles
# ===========================================================================

class TestORCH008:
    """ORCH-008: Section titles come from the cross-reference mapping."""

    def test_titles_filled(self):
        sections = {"6.1": SectionInfo("6.1", "Block Subsidy")}
        fns = _fns(HALVE.format(section="6.1", name="f"), "a.py") + \
            _fns(HALVE.format(section="6.9", name="g"), "b.py")
        report = _static_only().run(fns, sections=sections)
        assert report.entries[0].section_title == "Block Subsidy"
        assert report.entries[1].section_title is None
