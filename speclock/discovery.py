"""speclock Discovery — static scan for spec-locked functions.

Walks source roots (respecting .gitignore), parses every ``.py`` file with
``ast`` and collects functions carrying ``@spec_locked``, together with
their ``@requires`` / ``@ensures`` / ``@axiom`` clause text, parameter
annotations, body source and the module's constant definitions. Nothing
is imported or executed.

Usage:
    from speclock.discovery import discover
    index = discover(["src/"])
    for fn in index.functions:
        print(fn.qualname, fn.section)
"""

from __future__ import annotations

import ast
import fnmatch
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from speclock.errors import (
    Defect, Diagnostic, DiscoveryError, EnvironmentFailure, SourceLocation,
    UnlinkedFunction,
)
from speclock.model import ClauseKind, ContractClause, Parameter, SpecFunction
from speclock.types import resolve_annotation

logger = logging.getLogger(__name__)

MARKER = "spec_locked"
CLAUSE_MARKERS = {
    "requires": ClauseKind.REQUIRES,
    "ensures": ClauseKind.ENSURES,
    "axiom": ClauseKind.AXIOM,
}


# ---------------------------------------------------------------------------
# Gitignore Parser
# ---------------------------------------------------------------------------

def _parse_gitignore(root: str) -> List[str]:
    """Parse .gitignore patterns from a directory."""
    patterns: List[str] = []
    gitignore_path = os.path.join(root, ".gitignore")
    if os.path.isfile(gitignore_path):
        with open(gitignore_path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and not line.startswith("!"):
                    patterns.append(line)
    # Always ignore common directories
    patterns.extend([
        ".git", "__pycache__", ".venv", "venv", ".tox", ".mypy_cache",
        ".pytest_cache", ".eggs", "*.egg-info", "dist", "build",
    ])
    return patterns


def _is_ignored(path: str, patterns: List[str], root: str) -> bool:
    """Check if a path matches any gitignore pattern."""
    rel = Path(os.path.relpath(path, root)).as_posix()
    basename = os.path.basename(path)
    for pattern in patterns:
        pattern = pattern.lstrip("/")
        if fnmatch.fnmatch(basename, pattern.rstrip("/")):
            return True
        if fnmatch.fnmatch(rel, pattern.rstrip("/")):
            return True
        if fnmatch.fnmatch(rel, pattern.rstrip("/") + "/*"):
            return True
    return False


def discover_files(root: str, ignore_patterns: Optional[List[str]] = None) -> List[str]:
    """Python source files under ``root``, sorted.

    Args:
        root: Root directory to scan
        ignore_patterns: Gitignore-style patterns to exclude, in addition
            to the root's .gitignore
    """
    root = os.path.abspath(root)
    patterns = _parse_gitignore(root) + list(ignore_patterns or [])

    files: List[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        # Filter out ignored directories (in-place to prevent os.walk descent)
        dirnames[:] = [
            d for d in dirnames
            if not _is_ignored(os.path.join(dirpath, d), patterns, root)
        ]
        for filename in filenames:
            filepath = os.path.join(dirpath, filename)
            if filename.endswith(".py") and not _is_ignored(filepath, patterns, root):
                files.append(filepath)

    return sorted(files)


def display_path(path: str) -> str:
    """Report label for a file: relative to the working directory when it
    lies below it, absolute otherwise."""
    try:
        rel = os.path.relpath(path)
    except ValueError:
        # different drive
        return Path(os.path.abspath(path)).as_posix()
    if rel == os.pardir or rel.startswith(os.pardir + os.sep):
        return Path(os.path.abspath(path)).as_posix()
    return Path(rel).as_posix()


# ---------------------------------------------------------------------------
# Index
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DiscoveryIndex:
    functions: tuple[SpecFunction, ...] = ()
    diagnostics: tuple[Diagnostic, ...] = ()
    files_scanned: int = 0


def discover(roots: Sequence[str], ignore_patterns: Optional[List[str]] = None,
             strict: bool = False) -> DiscoveryIndex:
    """Scan ``roots`` (files or directories).

    Raises EnvironmentFailure when a root does not exist or cannot be
    listed or read; problems inside individual files become diagnostics.
    """
    functions: list[SpecFunction] = []
    diagnostics: list[Diagnostic] = []
    scanned = 0
    for root in roots:
        if not os.path.exists(root):
            raise EnvironmentFailure(f"source root does not exist: {root}")
        if os.path.isdir(root):
            if not os.access(root, os.R_OK | os.X_OK):
                raise EnvironmentFailure(f"source root is not readable: {root}")
            files = discover_files(root, ignore_patterns)
        else:
            if not os.access(root, os.R_OK):
                raise EnvironmentFailure(f"source root is not readable: {root}")
            files = [os.path.abspath(root)]
        for path in files:
            rel = display_path(path)
            scanned += 1
            try:
                with open(path, "r", encoding="utf-8") as f:
                    source = f.read()
            except (OSError, UnicodeDecodeError) as e:
                logger.warning("cannot read %s: %s", path, e)
                diagnostics.append(Diagnostic(
                    level="error", kind=DiscoveryError.kind,
                    message=f"cannot read file: {e}",
                    location=SourceLocation(rel, 0)))
                continue
            fns, diags = discover_source(source, rel, strict=strict)
            functions.extend(fns)
            diagnostics.extend(diags)
    logger.debug("discovered %d spec-locked functions in %d files",
                 len(functions), scanned)
    functions.sort(key=SpecFunction.sort_key)
    return DiscoveryIndex(tuple(functions), tuple(diagnostics), scanned)


# ---------------------------------------------------------------------------
# Module scan
# ---------------------------------------------------------------------------

def discover_source(source: str, path: str = "<string>",
                    strict: bool = False) -> tuple[list[SpecFunction], list[Diagnostic]]:
    """Scan one module's source text."""
    try:
        tree = ast.parse(source, filename=path)
    except SyntaxError as e:
        return [], [Diagnostic(
            level="error", kind=DiscoveryError.kind,
            message=f"cannot parse file: {e.msg}",
            location=SourceLocation(path, e.lineno or 0, e.offset or 0))]
    scanner = _ModuleScanner(source, path, strict)
    scanner.scan(tree)
    return scanner.functions, scanner.diagnostics


def _decorator_name(dec: ast.expr) -> Optional[str]:
    node = dec.func if isinstance(dec, ast.Call) else dec
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        return node.attr
    return None


def _annotation_name(node: Optional[ast.expr]) -> Optional[str]:
    if node is None:
        return None
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        return node.attr
    if isinstance(node, ast.Constant):
        return "None" if node.value is None else str(node.value)
    return ast.unparse(node)


class _ModuleScanner:

    def __init__(self, source: str, path: str, strict: bool) -> None:
        self.source = source
        self.lines = source.splitlines(keepends=True)
        self.path = path
        self.strict = strict
        self.functions: list[SpecFunction] = []
        self.diagnostics: list[Diagnostic] = []
        self.constants: tuple[tuple[str, str], ...] = ()

    def loc(self, node: ast.AST) -> SourceLocation:
        return SourceLocation(self.path, getattr(node, "lineno", 0),
                              getattr(node, "col_offset", 0))

    def scan(self, tree: ast.Module) -> None:
        self.constants = tuple(self._constants(tree))
        self._body(tree.body, prefix="")

    def _constants(self, tree: ast.Module):
        for stmt in tree.body:
            if isinstance(stmt, ast.Assign) and len(stmt.targets) == 1 \
                    and isinstance(stmt.targets[0], ast.Name):
                name, value = stmt.targets[0].id, stmt.value
            elif isinstance(stmt, ast.AnnAssign) and isinstance(stmt.target, ast.Name) \
                    and stmt.value is not None:
                name, value = stmt.target.id, stmt.value
            else:
                continue
            text = ast.get_source_segment(self.source, value)
            if text:
                yield name, text

    def _body(self, body: list[ast.stmt], prefix: str) -> None:
        for node in body:
            if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                self._function(node, prefix)
            elif isinstance(node, ast.ClassDef):
                for dec in node.decorator_list:
                    name = _decorator_name(dec)
                    if name == MARKER or name in CLAUSE_MARKERS:
                        self.diagnostics.append(Diagnostic(
                            level="error", kind=DiscoveryError.kind,
                            message=f"@{name} is attached to class '{node.name}', "
                                    f"not a function",
                            location=self.loc(dec)))
                self._body(node.body, prefix=f"{prefix}{node.name}.")

    # -- functions -------------------------------------------------------------

    def _function(self, node, prefix: str) -> None:
        qualname = f"{prefix}{node.name}"
        problems: list[Defect] = []
        markers = []
        clauses: list[ContractClause] = []
        axioms: list[ContractClause] = []

        for dec in node.decorator_list:
            name = _decorator_name(dec)
            if name == MARKER:
                markers.append(dec)
            elif name in CLAUSE_MARKERS:
                text = self._clause_text(dec, name, problems)
                if text is None:
                    continue
                clause = ContractClause(CLAUSE_MARKERS[name], text, self.loc(dec))
                (axioms if clause.kind == ClauseKind.AXIOM else clauses).append(clause)

        if not markers:
            if clauses or axioms:
                self.diagnostics.append(Diagnostic(
                    level="warning", kind=DiscoveryError.kind,
                    message=f"'{qualname}' has contract clauses but no @{MARKER}; "
                            f"not verified",
                    location=self.loc(node)))
            return
        if len(markers) > 1:
            problems.append(Defect(DiscoveryError.kind,
                                   f"duplicate @{MARKER} on '{qualname}'"))

        section, spec_name, subsystem = self._marker_args(markers[0], problems)
        if not section:
            msg = f"'{qualname}' has no specification section id"
            if self.strict:
                problems.append(Defect(UnlinkedFunction.kind, msg))
            else:
                self.diagnostics.append(Diagnostic(
                    level="warning", kind=UnlinkedFunction.kind, message=msg,
                    location=self.loc(node)))
            section = None

        if isinstance(node, ast.AsyncFunctionDef):
            logger.debug("%s is async; body is not evaluated", qualname)

        params = self._params(node, is_method=bool(prefix))
        ret_ann = _annotation_name(node.returns)
        self.functions.append(SpecFunction(
            qualname=qualname,
            location=self.loc(node),
            params=tuple(params),
            return_annotation=ret_ann,
            return_type=resolve_annotation(ret_ann),
            section=section,
            subsystem=subsystem,
            spec_name=spec_name,
            clauses=tuple(clauses),
            axioms=tuple(axioms),
            source=self._source_of(node),
            assigned=frozenset(self._assigned(node)),
            constants=self.constants,
            problems=tuple(problems),
        ))

    def _clause_text(self, dec: ast.expr, name: str, problems: list[Defect]) -> Optional[str]:
        if not (isinstance(dec, ast.Call) and len(dec.args) == 1 and not dec.keywords
                and isinstance(dec.args[0], ast.Constant)
                and isinstance(dec.args[0].value, str)):
            problems.append(Defect(
                DiscoveryError.kind,
                f"@{name} at line {dec.lineno} must carry exactly one string literal"))
            return None
        return dec.args[0].value

    def _marker_args(self, dec: ast.expr, problems: list[Defect]):
        if not isinstance(dec, ast.Call):
            return None, None, None
        values: dict[str, Optional[str]] = {}
        positional = ("section", "spec_name")
        if len(dec.args) > len(positional):
            problems.append(Defect(DiscoveryError.kind,
                                   f"@{MARKER} takes at most two positional arguments"))
        for key, arg in zip(positional, dec.args):
            values[key] = self._string_arg(arg, key, problems)
        for kw in dec.keywords:
            key = "spec_name" if kw.arg == "name" else kw.arg
            if key not in ("section", "spec_name", "subsystem"):
                problems.append(Defect(DiscoveryError.kind,
                                       f"unknown @{MARKER} argument '{kw.arg}'"))
                continue
            if key in values:
                problems.append(Defect(DiscoveryError.kind,
                                       f"@{MARKER} argument '{key}' given twice"))
            values[key] = self._string_arg(kw.value, key, problems)
        section = values.get("section")
        return (section.strip() if section else None,
                values.get("spec_name"), values.get("subsystem"))

    def _string_arg(self, node: ast.expr, key: str, problems: list[Defect]) -> Optional[str]:
        if isinstance(node, ast.Constant) and isinstance(node.value, str):
            return node.value
        problems.append(Defect(DiscoveryError.kind,
                               f"@{MARKER} argument '{key}' must be a string literal"))
        return None

    def _params(self, node, is_method: bool) -> list[Parameter]:
        args = node.args
        all_args = list(args.posonlyargs) + list(args.args) + list(args.kwonlyargs)
        if is_method and all_args and all_args[0].arg in ("self", "cls"):
            all_args = all_args[1:]
        out = []
        for a in all_args:
            ann = _annotation_name(a.annotation)
            out.append(Parameter(a.arg, ann, resolve_annotation(ann)))
        return out

    def _source_of(self, node) -> str:
        return "".join(self.lines[node.lineno - 1:node.end_lineno])

    def _assigned(self, node) -> set[str]:
        names: set[str] = set()
        for sub in ast.walk(node):
            if isinstance(sub, ast.Name) and isinstance(sub.ctx, ast.Store):
                names.add(sub.id)
        return names
