"""speclock Verification Orchestrator — filtered, parallel clause checking.

Applies FilterCriteria before any work starts, then verifies each
retained function on a bounded thread pool. Every clause goes through
the static fast path first and falls back to the solver only when the
fast path answers Unknown.

A run timeout, Ctrl-C or fail-fast cancels queued functions and
interrupts running solver calls through a shared CancellationToken;
functions that never ran are reported Unknown ("cancelled").

Usage:
    from speclock.orchestrator import Orchestrator
    report = Orchestrator(config).run(index.functions, criteria, sections)
"""

from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import replace
from typing import Callable, Mapping, Optional, Sequence

from speclock.aggregator import aggregate
from speclock.config import SpecLockConfig
from speclock.contracts import analyze_function, function_constants
from speclock.errors import Diagnostic, EnvironmentFailure, UnsupportedBody
from speclock.model import (
    ClauseKind, ClauseResult, DecisionSource, FilterCriteria, FunctionReport,
    Report, SpecFunction, Status, combine_verdict,
)
from speclock.semantics import build_model
from speclock.solver import SolverAdapter
from speclock.static_checker import StaticChecker

logger = logging.getLogger(__name__)

CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class CancellationToken:
    """Cooperative cancellation shared by one run's tasks.

    Solver calls register an interrupt callback for their duration.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: dict[int, Callable[[], None]] = {}
        self._next = 0
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = CANCELLED) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks = list(self._callbacks.values())
        for cb in callbacks:
            try:
                cb()
            except Exception:
                logger.warning("cancellation callback failed", exc_info=True)

    def register(self, cb: Callable[[], None]) -> Callable[[], None]:
        """Call ``cb`` on cancellation; returns an unregister function."""
        with self._lock:
            key = self._next
            self._next += 1
            self._callbacks[key] = cb
            already = self._event.is_set()
        if already:
            cb()

        def unregister() -> None:
            with self._lock:
                self._callbacks.pop(key, None)
        return unregister


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class Orchestrator:
    """Runs the static → solver fallback chain over a set of functions."""

    def __init__(self, config: Optional[SpecLockConfig] = None,
                 static_checker: Optional[StaticChecker] = None,
                 solver: Optional[SolverAdapter] = None) -> None:
        self.config = config or SpecLockConfig()
        self.static = static_checker or StaticChecker()
        if solver is None and self.config.solver:
            solver = SolverAdapter(timeout_ms=self.config.timeout_ms)
        self.solver = solver
        self.token = CancellationToken()
        self.timed_out = False

    @property
    def solver_usable(self) -> bool:
        return self.solver is not None and self.solver.available

    def cancel(self, reason: str = CANCELLED) -> None:
        self.token.cancel(reason)

    def run(self, functions: Sequence[SpecFunction],
            criteria: Optional[FilterCriteria] = None,
            sections: Optional[Mapping] = None,
            diagnostics: Sequence[Diagnostic] = ()) -> Report:
        """Verify ``functions`` matching ``criteria``; returns the Report.

        Raises EnvironmentFailure when solver-backed checking is required
        but no solver is available.
        """
        if self.config.require_solver and not self.solver_usable:
            raise EnvironmentFailure(
                "solver-backed checking is required but z3 is not available")
        start = time.perf_counter()
        criteria = criteria or FilterCriteria()
        selected = [f for f in functions if criteria.matches(f)]
        logger.info("verifying %d of %d functions", len(selected), len(functions))

        self.token = CancellationToken()
        self.timed_out = False
        timer = None
        if self.config.run_timeout and self.config.run_timeout > 0:
            timer = threading.Timer(self.config.run_timeout, self._on_timeout)
            timer.daemon = True
            timer.start()

        interrupted = False
        try:
            reports = self._schedule(selected)
        except KeyboardInterrupt:
            interrupted = True
            self.token.cancel("interrupted")
            reports = {}
        finally:
            if timer is not None:
                timer.cancel()

        entries = []
        for fn in selected:
            rep = reports.get(id(fn))
            if rep is None:
                rep = self._cancelled_report(fn)
            entries.append(rep)
        if self.token.reason == "interrupted":
            interrupted = True

        return aggregate(
            entries,
            diagnostics=diagnostics,
            sections=sections,
            interrupted=interrupted,
            timed_out=self.timed_out,
            elapsed_ms=(time.perf_counter() - start) * 1000,
        )

    def _on_timeout(self) -> None:
        logger.warning("run timeout of %ss reached; cancelling", self.config.run_timeout)
        self.timed_out = True
        self.token.cancel("run timeout")

    def _schedule(self, selected: list[SpecFunction]) -> dict[int, FunctionReport]:
        reports: dict[int, FunctionReport] = {}
        workers = self.config.workers
        if workers <= 0:
            workers = min(os.cpu_count() or 1, len(selected), 8)  # Cap at 8 workers
        workers = max(1, workers)

        if workers == 1 or len(selected) <= 2:
            # Sequential for small sets
            try:
                for fn in selected:
                    if self.token.cancelled:
                        break
                    rep = self.verify_function(fn)
                    reports[id(fn)] = rep
                    self._after(rep)
            except KeyboardInterrupt:
                self.token.cancel("interrupted")
            return reports

        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="speclock")
        futures = {executor.submit(self.verify_function, fn): fn for fn in selected}
        try:
            for future in as_completed(futures):
                if future.cancelled():
                    continue
                fn = futures[future]
                rep = future.result()
                reports[id(fn)] = rep
                if self._after(rep):
                    for f in futures:
                        f.cancel()
        except KeyboardInterrupt:
            self.token.cancel("interrupted")
            for f in futures:
                f.cancel()
        finally:
            executor.shutdown(wait=True, cancel_futures=True)
        # Results that finished while the collector was unwinding.
        for future, fn in futures.items():
            if id(fn) not in reports and future.done() and not future.cancelled() \
                    and future.exception() is None:
                reports[id(fn)] = future.result()
        return reports

    def _after(self, rep: FunctionReport) -> bool:
        """Collector hook; True when remaining work should be cancelled."""
        if self.config.fail_fast and rep.verdict == Status.FALSIFIED:
            logger.info("fail-fast: %s falsified; cancelling remaining work", rep.qualname)
            self.token.cancel("fail-fast")
            return True
        return self.token.cancelled

    # -- per-function work -----------------------------------------------------

    def verify_function(self, fn: SpecFunction) -> FunctionReport:
        """Verify one function. Failures are contained in its report."""
        if self.token.cancelled:
            return self._cancelled_report(fn)
        start = time.perf_counter()
        notes = [d.message for d in fn.problems]
        try:
            results, more = self._verify_clauses(fn)
            notes.extend(more)
            verdict = combine_verdict((r.status for r in results), bool(fn.problems))
        except Exception as e:
            logger.warning("internal error verifying %s", fn.qualname, exc_info=True)
            results = []
            notes.append(f"internal error: {e}")
            verdict = Status.ERROR
        return FunctionReport(
            qualname=fn.qualname,
            file=fn.location.file,
            line=fn.location.line,
            column=fn.location.column,
            section=fn.section,
            subsystem=fn.subsystem,
            verdict=verdict,
            clauses=tuple(results),
            elapsed_ms=(time.perf_counter() - start) * 1000,
            notes=tuple(notes),
        )

    def _verify_clauses(self, fn: SpecFunction) -> tuple[list[ClauseResult], list[str]]:
        notes: list[str] = []
        analyzed = analyze_function(fn, self.config.constants)
        constants = function_constants(fn, self.config.constants)
        try:
            model = build_model(analyzed, constants)
        except UnsupportedBody as e:
            model = None
            if any(c.kind == ClauseKind.ENSURES for c in analyzed.clauses):
                notes.append(f"body not evaluated ({e.message}); "
                             f"result constrained by {len(analyzed.axioms)} axiom(s)")
            logger.debug("%s: body not evaluated: %s", fn.qualname, e.message)

        ctx = self.static.prepare(analyzed, model)
        weak_assumptions = any(not c.ok for c in analyzed.preconditions)
        if model is None:
            weak_assumptions = weak_assumptions or any(not a.ok for a in analyzed.axioms)

        results: list[ClauseResult] = []
        for clause in analyzed.axioms:
            if not clause.ok:
                results.append(_defect_result(clause))
        for clause in analyzed.clauses:
            if self.token.cancelled:
                results.append(ClauseResult(Status.UNKNOWN, clause.kind, clause.text,
                                            message=CANCELLED, line=clause.location.line))
                continue
            if not clause.ok:
                results.append(_defect_result(clause))
                continue
            result = self.static.check(ctx, clause)
            if result.status == Status.UNKNOWN:
                if self.solver_usable:
                    logger.debug("%s: %r undecided statically; trying solver",
                                 fn.qualname, clause.text)
                    solved = self.solver.check(analyzed, clause, model, self.token)
                    result = replace(solved, elapsed_ms=solved.elapsed_ms + result.elapsed_ms)
                else:
                    result = replace(result, message="undecided by static analysis; "
                                                     "solver disabled or unavailable")
            if weak_assumptions and clause.kind == ClauseKind.ENSURES \
                    and result.status == Status.FALSIFIED:
                result = replace(result, status=Status.UNKNOWN,
                                 source=DecisionSource.NONE,
                                 message="counterexample found, but an assumption "
                                         "could not be analyzed")
            results.append(result)
        return results, notes

    def _cancelled_report(self, fn: SpecFunction) -> FunctionReport:
        clauses = tuple(
            ClauseResult(Status.UNKNOWN, c.kind, c.text, message=CANCELLED,
                         line=c.location.line)
            for c in fn.clauses
        )
        # known defects still decide the verdict
        verdict = Status.ERROR if fn.problems else Status.UNKNOWN
        return FunctionReport(
            qualname=fn.qualname,
            file=fn.location.file,
            line=fn.location.line,
            column=fn.location.column,
            section=fn.section,
            subsystem=fn.subsystem,
            verdict=verdict,
            clauses=clauses,
            notes=tuple(d.message for d in fn.problems) + (CANCELLED,),
        )


def _defect_result(clause) -> ClauseResult:
    return ClauseResult(
        status=Status.ERROR,
        kind=clause.kind,
        text=clause.text,
        message=clause.defect.message,
        error_kind=clause.defect.kind,
        line=clause.location.line,
    )
