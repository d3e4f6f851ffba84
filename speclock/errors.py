"""Structured error objects for speclock.

Every error is machine-readable. Clause- and function-level errors are
captured into results; only EnvironmentFailure aborts a run.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ErrorKind(Enum):
    DISCOVERY_ERROR = "discovery_error"
    PARSE_ERROR = "parse_error"
    UNSUPPORTED_EXPRESSION = "unsupported_expression"
    TYPE_MISMATCH = "type_mismatch"
    UNLINKED_FUNCTION = "unlinked_function"
    SOLVER_ERROR = "solver_error"
    SOLVER_TIMEOUT = "solver_timeout"
    CONTRACT_VIOLATION = "contract_violation"
    UNSUPPORTED_BODY = "unsupported_body"
    ENVIRONMENT_FAILURE = "environment_failure"
    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True)
class SourceLocation:
    file: str
    line: int
    column: int = 0

    def __str__(self) -> str:
        return f"{self.file}:{self.line}:{self.column}"

    def to_dict(self) -> dict[str, Any]:
        return {"file": self.file, "line": self.line, "column": self.column}


class SpecLockError(Exception):
    """Base class of every error speclock raises."""

    kind: ErrorKind = ErrorKind.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        location: Optional[SourceLocation] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "kind": self.kind.value,
            "message": self.message,
        }
        if self.location:
            d["location"] = self.location.to_dict()
        if self.details:
            d["details"] = self.details
        return d

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def __str__(self) -> str:
        loc = f" at {self.location}" if self.location else ""
        return f"[{self.kind.value}]{loc}: {self.message}"


class DiscoveryError(SpecLockError):
    """A spec-link marker or clause directive is malformed."""
    kind = ErrorKind.DISCOVERY_ERROR


class ParseError(SpecLockError):
    """Clause text is not a valid expression."""
    kind = ErrorKind.PARSE_ERROR


class UnsupportedExpression(SpecLockError):
    """Clause uses syntax or identifiers outside the contract grammar."""
    kind = ErrorKind.UNSUPPORTED_EXPRESSION


class TypeMismatch(SpecLockError):
    kind = ErrorKind.TYPE_MISMATCH


class UnlinkedFunction(SpecLockError):
    """A spec-link marker carries no section id."""
    kind = ErrorKind.UNLINKED_FUNCTION


class SolverError(SpecLockError):
    kind = ErrorKind.SOLVER_ERROR


class SolverTimeout(SpecLockError):
    kind = ErrorKind.SOLVER_TIMEOUT


class ContractViolation(SpecLockError):
    """A clause was falsified; carries the counterexample."""
    kind = ErrorKind.CONTRACT_VIOLATION

    def __init__(
        self,
        message: str,
        counterexample: Optional[dict[str, Any]] = None,
        location: Optional[SourceLocation] = None,
    ) -> None:
        super().__init__(message, location, {"counterexample": dict(counterexample or {})})
        self.counterexample = dict(counterexample or {})


class UnsupportedBody(SpecLockError):
    """The function body falls outside the symbolically evaluable subset."""
    kind = ErrorKind.UNSUPPORTED_BODY


class EnvironmentFailure(SpecLockError):
    """Fatal: the run cannot proceed (unreadable root, solver missing)."""
    kind = ErrorKind.ENVIRONMENT_FAILURE


@dataclass(frozen=True)
class Defect:
    """Why a clause could not be analyzed."""
    kind: ErrorKind
    message: str

    @classmethod
    def from_error(cls, err: SpecLockError) -> Defect:
        return cls(kind=err.kind, message=err.message)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message}


@dataclass(frozen=True)
class Diagnostic:
    """A run-level problem that is not attached to a verified function."""
    level: str  # "error" | "warning"
    kind: ErrorKind
    message: str
    location: Optional[SourceLocation] = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_error(cls, err: SpecLockError, level: str = "error") -> Diagnostic:
        return cls(level=level, kind=err.kind, message=err.message,
                   location=err.location, details=dict(err.details))

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "level": self.level,
            "kind": self.kind.value,
            "message": self.message,
        }
        if self.location:
            d["location"] = self.location.to_dict()
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        loc = f"{self.location}: " if self.location else ""
        return f"{loc}{self.level}: {self.message}"
