"""speclock data model.

Immutable records flowing through a verification run:

  1. SpecFunction / ContractClause — what Discovery found and the
     Contract Model parsed.
  2. ClauseResult — one decision per clause, tagged with its status and
     the tier (static or solver) that produced it.
  3. FunctionReport / Report — the aggregated, deterministically ordered
     outcome consumed by renderers.

Usage:
    from speclock.model import Status, FilterCriteria

    criteria = FilterCriteria(sections=("6.1",))
    kept = [f for f in functions if criteria.matches(f)]
"""

from __future__ import annotations

import fnmatch
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional

from speclock.errors import Defect, Diagnostic, ErrorKind, SourceLocation
from speclock.expr import Expr
from speclock.types import SemType


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class ClauseKind(str, Enum):
    REQUIRES = "requires"
    ENSURES = "ensures"
    AXIOM = "axiom"


class Status(str, Enum):
    """Outcome of checking one clause, or a function's verdict."""
    VERIFIED = "verified"    # holds for every admissible input
    FALSIFIED = "falsified"  # counterexample found
    UNKNOWN = "unknown"      # undecided (timeout, no solver, cancelled)
    ERROR = "error"          # clause could not be analyzed


class DecisionSource(str, Enum):
    STATIC = "static"
    SOLVER = "solver"
    NONE = "none"


# ---------------------------------------------------------------------------
# Discovered functions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Parameter:
    name: str
    annotation: Optional[str] = None
    type: Optional[SemType] = None


@dataclass(frozen=True)
class ContractClause:
    kind: ClauseKind
    text: str
    location: SourceLocation
    expr: Optional[Expr] = None
    defect: Optional[Defect] = None

    @property
    def ok(self) -> bool:
        return self.expr is not None and self.defect is None


@dataclass(frozen=True)
class SpecFunction:
    """One discovered function and its contract.

    ``clauses`` holds requires/ensures in declaration order; axioms are
    kept apart because they are assumptions, not obligations.
    """
    qualname: str
    location: SourceLocation
    params: tuple[Parameter, ...] = ()
    return_annotation: Optional[str] = None
    return_type: Optional[SemType] = None
    section: Optional[str] = None
    subsystem: Optional[str] = None
    spec_name: Optional[str] = None
    clauses: tuple[ContractClause, ...] = ()
    axioms: tuple[ContractClause, ...] = ()
    source: str = ""
    assigned: frozenset[str] = frozenset()
    constants: tuple[tuple[str, str], ...] = ()
    problems: tuple[Defect, ...] = ()

    @property
    def name(self) -> str:
        return self.qualname.rsplit(".", 1)[-1]

    @property
    def preconditions(self) -> tuple[ContractClause, ...]:
        return tuple(c for c in self.clauses if c.kind == ClauseKind.REQUIRES)

    @property
    def postconditions(self) -> tuple[ContractClause, ...]:
        return tuple(c for c in self.clauses if c.kind == ClauseKind.ENSURES)

    def param(self, name: str) -> Optional[Parameter]:
        for p in self.params:
            if p.name == name:
                return p
        return None

    def sort_key(self) -> tuple:
        loc = self.location
        return (loc.file, loc.line, loc.column, self.qualname)

    def with_clauses(self, clauses, axioms, problems=None) -> SpecFunction:
        return replace(
            self,
            clauses=tuple(clauses),
            axioms=tuple(axioms),
            problems=self.problems if problems is None else tuple(problems),
        )


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ClauseResult:
    status: Status
    kind: ClauseKind = ClauseKind.ENSURES
    text: str = ""
    counterexample: Optional[dict[str, Any]] = None
    elapsed_ms: float = 0.0
    source: DecisionSource = DecisionSource.NONE
    message: str = ""
    error_kind: Optional[ErrorKind] = None
    line: int = 0

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "kind": self.kind.value,
            "text": self.text,
            "line": self.line,
            "status": self.status.value,
            "source": self.source.value,
            "elapsed_ms": round(self.elapsed_ms, 3),
        }
        if self.counterexample is not None:
            d["counterexample"] = dict(self.counterexample)
        if self.message:
            d["message"] = self.message
        if self.error_kind is not None:
            d["error_kind"] = self.error_kind.value
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ClauseResult:
        ek = d.get("error_kind")
        return cls(
            status=Status(d["status"]),
            kind=ClauseKind(d.get("kind", "ensures")),
            text=d.get("text", ""),
            counterexample=d.get("counterexample"),
            elapsed_ms=float(d.get("elapsed_ms", 0.0)),
            source=DecisionSource(d.get("source", "none")),
            message=d.get("message", ""),
            error_kind=ErrorKind(ek) if ek else None,
            line=int(d.get("line", 0)),
        )


def combine_verdict(statuses, has_problem: bool = False) -> Status:
    """Fold clause statuses into a function verdict.

    Falsified dominates, then Error, then Unknown. No clauses means
    Verified. A function-level problem forces Error unless something
    was falsified.
    """
    statuses = list(statuses)
    if Status.FALSIFIED in statuses:
        return Status.FALSIFIED
    if has_problem or Status.ERROR in statuses:
        return Status.ERROR
    if Status.UNKNOWN in statuses:
        return Status.UNKNOWN
    return Status.VERIFIED


# ---------------------------------------------------------------------------
# Filtering
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FilterCriteria:
    """Conjunctive filter applied before scheduling. Empty fields match."""
    path_prefix: Optional[str] = None
    subsystem: Optional[str] = None
    name: Optional[str] = None
    sections: tuple[str, ...] = ()

    def matches(self, fn: SpecFunction) -> bool:
        if self.path_prefix and not fn.location.file.startswith(self.path_prefix):
            return False
        if self.subsystem:
            if fn.subsystem is not None:
                if fn.subsystem != self.subsystem:
                    return False
            elif self.subsystem not in fn.location.file:
                return False
        if self.name:
            if not (fnmatch.fnmatchcase(fn.qualname, self.name)
                    or fnmatch.fnmatchcase(fn.name, self.name)):
                return False
        if self.sections and fn.section not in self.sections:
            return False
        return True

    @property
    def empty(self) -> bool:
        return not (self.path_prefix or self.subsystem or self.name or self.sections)


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FunctionReport:
    qualname: str
    file: str
    line: int
    column: int = 0
    section: Optional[str] = None
    section_title: Optional[str] = None
    subsystem: Optional[str] = None
    verdict: Status = Status.UNKNOWN
    clauses: tuple[ClauseResult, ...] = ()
    elapsed_ms: float = 0.0
    notes: tuple[str, ...] = ()

    def sort_key(self) -> tuple:
        return (self.file, self.line, self.column, self.qualname)

    @property
    def counterexample(self) -> Optional[dict[str, Any]]:
        for c in self.clauses:
            if c.status == Status.FALSIFIED and c.counterexample is not None:
                return c.counterexample
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "function": self.qualname,
            "file": self.file,
            "line": self.line,
            "column": self.column,
            "section": self.section,
            "section_title": self.section_title,
            "subsystem": self.subsystem,
            "verdict": self.verdict.value,
            "elapsed_ms": round(self.elapsed_ms, 3),
            "clauses": [c.to_dict() for c in self.clauses],
            "notes": list(self.notes),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> FunctionReport:
        return cls(
            qualname=d["function"],
            file=d["file"],
            line=int(d["line"]),
            column=int(d.get("column", 0)),
            section=d.get("section"),
            section_title=d.get("section_title"),
            subsystem=d.get("subsystem"),
            verdict=Status(d["verdict"]),
            clauses=tuple(ClauseResult.from_dict(c) for c in d.get("clauses", [])),
            elapsed_ms=float(d.get("elapsed_ms", 0.0)),
            notes=tuple(d.get("notes", [])),
        )


@dataclass(frozen=True)
class Summary:
    total: int = 0
    verified: int = 0
    falsified: int = 0
    unknown: int = 0
    error: int = 0

    @classmethod
    def count(cls, entries) -> Summary:
        verdicts = [e.verdict for e in entries]
        return cls(
            total=len(verdicts),
            verified=verdicts.count(Status.VERIFIED),
            falsified=verdicts.count(Status.FALSIFIED),
            unknown=verdicts.count(Status.UNKNOWN),
            error=verdicts.count(Status.ERROR),
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "verified": self.verified,
            "falsified": self.falsified,
            "unknown": self.unknown,
            "error": self.error,
        }


@dataclass(frozen=True)
class Report:
    entries: tuple[FunctionReport, ...] = ()
    summary: Summary = field(default_factory=Summary)
    diagnostics: tuple[Diagnostic, ...] = ()
    interrupted: bool = False
    timed_out: bool = False
    elapsed_ms: float = 0.0

    @property
    def passed(self) -> bool:
        if self.interrupted or self.timed_out:
            return False
        if any(d.level == "error" for d in self.diagnostics):
            return False
        return all(e.verdict == Status.VERIFIED for e in self.entries)

    @property
    def exit_code(self) -> int:
        if self.interrupted:
            return 130
        if self.summary.falsified:
            return 1
        if self.summary.error or any(d.level == "error" for d in self.diagnostics):
            return 3
        if self.summary.unknown or self.timed_out:
            return 2
        return 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "exit_code": self.exit_code,
            "interrupted": self.interrupted,
            "timed_out": self.timed_out,
            "elapsed_ms": round(self.elapsed_ms, 3),
            "summary": self.summary.to_dict(),
            "functions": [e.to_dict() for e in self.entries],
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Report:
        entries = tuple(FunctionReport.from_dict(e) for e in d.get("functions", []))
        diags = []
        for item in d.get("diagnostics", []):
            loc = item.get("location")
            diags.append(Diagnostic(
                level=item["level"],
                kind=ErrorKind(item["kind"]),
                message=item["message"],
                location=SourceLocation(**loc) if loc else None,
                details=item.get("details", {}),
            ))
        return cls(
            entries=entries,
            summary=Summary(**d["summary"]) if "summary" in d else Summary.count(entries),
            diagnostics=tuple(diags),
            interrupted=bool(d.get("interrupted", False)),
            timed_out=bool(d.get("timed_out", False)),
            elapsed_ms=float(d.get("elapsed_ms", 0.0)),
        )
