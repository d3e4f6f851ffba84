"""speclock Result Aggregator.

Turns per-function reports, delivered in completion order, into the
immutable Report: entries sorted by source location, section titles
filled from the cross-reference mapping, summary counts computed.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Iterable, Mapping, Optional, Sequence

from speclock.errors import Diagnostic
from speclock.model import FunctionReport, Report, Summary


def section_title(sections: Optional[Mapping], section_id: Optional[str]) -> Optional[str]:
    if not sections or not section_id:
        return None
    info = sections.get(section_id)
    if info is None:
        return None
    return getattr(info, "title", info)


def aggregate(entries: Iterable[FunctionReport],
              diagnostics: Sequence[Diagnostic] = (),
              sections: Optional[Mapping] = None,
              interrupted: bool = False,
              timed_out: bool = False,
              elapsed_ms: float = 0.0) -> Report:
    """Build the Report. Output order never depends on arrival order."""
    ordered = []
    for e in sorted(entries, key=FunctionReport.sort_key):
        title = section_title(sections, e.section)
        if title is not None and title != e.section_title:
            e = replace(e, section_title=title)
        ordered.append(e)
    diags = sorted(
        diagnostics,
        key=lambda d: (d.location.file if d.location else "",
                       d.location.line if d.location else 0, d.message),
    )
    return Report(
        entries=tuple(ordered),
        summary=Summary.count(ordered),
        diagnostics=tuple(diags),
        interrupted=interrupted,
        timed_out=timed_out,
        elapsed_ms=elapsed_ms,
    )
