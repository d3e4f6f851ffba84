"""speclock Coverage & Drift — how much of the specification is locked.

coverage_stats() counts annotated functions, how many carry contract
clauses, and groups them by section. detect_drift() compares the
annotated code against the specification document's section index:

    * linked sections that the document does not define
    * linked functions that carry no contract clauses
    * **Name** entries of linked sections with no implementation
    * annotated functions with no section id

Usage:
    from speclock.coverage import coverage_stats, format_coverage
    print(format_coverage(coverage_stats(index.functions)))
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from speclock.formatters import ICON_OK, ICON_WARNING, ICON_INFO, ICON_ERROR, bold, dim, green
from speclock.model import SpecFunction
from speclock.spec_document import section_sort_key


def _fn_dict(fn: SpecFunction) -> Dict[str, Any]:
    return {
        "function": fn.qualname,
        "file": fn.location.file,
        "line": fn.location.line,
        "section": fn.section,
        "has_contracts": bool(fn.clauses),
        "contract_count": len(fn.clauses),
    }


def _sorted(functions) -> List[SpecFunction]:
    return sorted(functions, key=SpecFunction.sort_key)


# ---------------------------------------------------------------------------
# Coverage
# ---------------------------------------------------------------------------

@dataclass
class CoverageStats:
    total: int = 0
    with_contracts: int = 0
    without_contracts: int = 0
    by_section: Dict[str, List[SpecFunction]] = field(default_factory=dict)
    unlinked: List[SpecFunction] = field(default_factory=list)

    @property
    def contract_coverage(self) -> float:
        if not self.total:
            return 0.0
        return self.with_contracts / self.total * 100.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "with_contracts": self.with_contracts,
            "without_contracts": self.without_contracts,
            "contract_coverage_percent": round(self.contract_coverage, 1),
            "by_section": {
                sid: {"count": len(fns), "functions": [_fn_dict(f) for f in fns]}
                for sid, fns in self.by_section.items()
            },
            "unlinked": [_fn_dict(f) for f in self.unlinked],
        }


def coverage_stats(functions: Sequence[SpecFunction]) -> CoverageStats:
    """Group annotated functions by section, numeric section order."""
    stats = CoverageStats()
    grouped: Dict[str, List[SpecFunction]] = {}
    for fn in _sorted(functions):
        stats.total += 1
        if fn.clauses:
            stats.with_contracts += 1
        else:
            stats.without_contracts += 1
        if fn.section:
            grouped.setdefault(fn.section, []).append(fn)
        else:
            stats.unlinked.append(fn)
    stats.by_section = {sid: grouped[sid] for sid in sorted(grouped, key=section_sort_key)}
    return stats


def format_coverage(stats: CoverageStats, sections: Optional[Mapping] = None) -> str:
    lines: List[str] = [f"\n {bold('speclock coverage')}", f" {dim('─' * 50)}"]
    for sid, fns in stats.by_section.items():
        info = sections.get(sid) if sections else None
        title = f" {info.title}" if info is not None else ""
        lines.append(f"   {bold('§' + sid)}{title}  {dim(f'({len(fns)} functions)')}")
        for fn in fns:
            icon = ICON_OK if fn.clauses else ICON_WARNING
            note = "" if fn.clauses else dim("  no contracts")
            lines.append(f"      {icon}  {fn.qualname}  {dim(fn.location.file)}{note}")
    if stats.unlinked:
        lines.append(f"   {bold('Unlinked')}")
        for fn in stats.unlinked:
            lines.append(f"      {ICON_WARNING}  {fn.qualname}  {dim(fn.location.file)}")
    lines.append(f" {dim('─' * 50)}")
    lines.append(
        f"   {bold('Functions:')} {stats.total}  ·  "
        f"{stats.with_contracts} with contracts  ·  "
        f"{stats.without_contracts} without  ·  "
        f"{len(stats.by_section)} sections  ·  "
        f"{stats.contract_coverage:.1f}% contract coverage\n"
    )
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Drift
# ---------------------------------------------------------------------------

def pascal_case(name: str) -> str:
    """get_block_subsidy → GetBlockSubsidy."""
    return "".join(part[:1].upper() + part[1:] for part in name.split("_") if part)


@dataclass
class DriftResult:
    unknown_sections: List[SpecFunction] = field(default_factory=list)
    missing_contracts: List[SpecFunction] = field(default_factory=list)
    missing_implementations: List[Dict[str, str]] = field(default_factory=list)
    unlinked: List[SpecFunction] = field(default_factory=list)

    @property
    def has_drift(self) -> bool:
        return bool(self.unknown_sections or self.missing_contracts
                    or self.missing_implementations)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "drift": self.has_drift,
            "unknown_sections": [_fn_dict(f) for f in self.unknown_sections],
            "missing_contracts": [_fn_dict(f) for f in self.missing_contracts],
            "missing_implementations": list(self.missing_implementations),
            "unlinked": [_fn_dict(f) for f in self.unlinked],
        }


def _implements(fn: SpecFunction, spec_function: str) -> bool:
    if fn.spec_name:
        return fn.spec_name == spec_function
    return spec_function in (fn.name, pascal_case(fn.name))


def detect_drift(functions: Sequence[SpecFunction], sections: Mapping) -> DriftResult:
    """Compare annotated functions against a parsed section index."""
    result = DriftResult()
    linked: Dict[str, List[SpecFunction]] = {}
    for fn in _sorted(functions):
        if not fn.section:
            result.unlinked.append(fn)
            continue
        linked.setdefault(fn.section, []).append(fn)
        if fn.section not in sections:
            result.unknown_sections.append(fn)
        if not fn.clauses:
            result.missing_contracts.append(fn)

    for sid in sorted(linked, key=section_sort_key):
        info = sections.get(sid)
        if info is None:
            continue
        for name in info.functions:
            if not any(_implements(fn, name) for fn in linked[sid]):
                result.missing_implementations.append({"section": sid, "function": name})
    return result


def format_drift(result: DriftResult) -> str:
    lines: List[str] = [f"\n {bold('speclock drift')}", f" {dim('─' * 50)}"]
    for fn in result.unknown_sections:
        lines.append(f"   {ICON_ERROR}  {fn.qualname}  links §{fn.section}, "
                     f"which the specification does not define  {dim(fn.location.file)}")
    for fn in result.missing_contracts:
        lines.append(f"   {ICON_WARNING}  {fn.qualname}  (§{fn.section}) has no contracts  "
                     f"{dim(fn.location.file)}")
    for item in result.missing_implementations:
        lines.append(f"   {ICON_WARNING}  §{item['section']} {item['function']} "
                     f"has no implementation")
    for fn in result.unlinked:
        lines.append(f"   {ICON_INFO}  {fn.qualname}  has no section id  {dim(fn.location.file)}")
    lines.append(f" {dim('─' * 50)}")
    if not result.has_drift:
        lines.append(f"   {green('No drift detected.')}\n")
    else:
        lines.append(
            f"   {len(result.unknown_sections)} unknown sections  ·  "
            f"{len(result.missing_contracts)} without contracts  ·  "
            f"{len(result.missing_implementations)} missing implementations  ·  "
            f"{len(result.unlinked)} unlinked\n"
        )
    return "\n".join(lines)


def to_json(obj) -> str:
    return json.dumps(obj.to_dict(), indent=2)
