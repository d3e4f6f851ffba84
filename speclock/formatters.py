"""speclock Output Formatters — rendering a verification Report.

Provides multiple output modes:
    human    — colored, one block per function, severity icons (default)
    json     — machine-readable, lossless (report_from_json reads it back)
    junit    — JUnit XML for CI test dashboards
    markdown — for pasting into PRs / docs
"""

from __future__ import annotations

import json
import os
import sys
import xml.etree.ElementTree as ET
from typing import Any, Dict, List

from speclock.model import ClauseResult, FunctionReport, Report, Status


# ── ANSI color helpers ───────────────────────────────────────────────────

_NO_COLOR = os.environ.get("NO_COLOR") is not None or not sys.stdout.isatty()


def _c(code: str, text: str) -> str:
    if _NO_COLOR:
        return text
    return f"\033[{code}m{text}\033[0m"


def red(t: str) -> str:
    return _c("31", t)


def yellow(t: str) -> str:
    return _c("33", t)


def green(t: str) -> str:
    return _c("32", t)


def cyan(t: str) -> str:
    return _c("36", t)


def bold(t: str) -> str:
    return _c("1", t)


def dim(t: str) -> str:
    return _c("2", t)


def magenta(t: str) -> str:
    return _c("35", t)


# ── Status icons ────────────────────────────────────────────────────────

ICON_ERROR = red("✖")
ICON_WARNING = yellow("▲")
ICON_OK = green("✔")
ICON_INFO = cyan("ℹ")
ICON_UNKNOWN = magenta("?")

_STATUS_ICON = {
    Status.VERIFIED: ICON_OK,
    Status.FALSIFIED: ICON_ERROR,
    Status.UNKNOWN: ICON_UNKNOWN,
    Status.ERROR: ICON_WARNING,
}

_STATUS_COLOR = {
    Status.VERIFIED: green,
    Status.FALSIFIED: red,
    Status.UNKNOWN: magenta,
    Status.ERROR: yellow,
}

_MD_STATUS = {
    Status.VERIFIED: "✅ verified",
    Status.FALSIFIED: "❌ falsified",
    Status.UNKNOWN: "❔ unknown",
    Status.ERROR: "⚠️ error",
}


def format_counterexample(cex: Dict[str, Any]) -> str:
    return ", ".join(f"{k}={v}" for k, v in cex.items())


def _plural(n: int, word: str) -> str:
    return f"{n} {word}{'s' if n != 1 else ''}"


# ── Human formatter (default) ───────────────────────────────────────────

def _clause_line(c: ClauseResult) -> List[str]:
    color = _STATUS_COLOR[c.status]
    how = f" ({c.source.value})" if c.source.value != "none" else ""
    lines = [f"      {_STATUS_ICON[c.status]}  {dim(c.kind.value)} {c.text}  "
             f"{color(c.status.value)}{dim(how)}"]
    if c.counterexample:
        lines.append(f"         {dim('counterexample:')} {format_counterexample(c.counterexample)}")
    if c.message and c.status != Status.VERIFIED:
        lines.append(f"         {dim(c.message)}")
    return lines


def format_human(report: Report) -> str:
    """Format a Report with colors and icons."""
    lines: List[str] = [f"\n {bold('speclock verify')}", f" {dim('─' * 50)}"]

    for e in report.entries:
        section = ""
        if e.section:
            section = f"  §{e.section}"
            if e.section_title:
                section += f" {e.section_title}"
        color = _STATUS_COLOR[e.verdict]
        lines.append(f"   {_STATUS_ICON[e.verdict]}  {bold(e.qualname)}  "
                     f"{dim(f'{e.file}:{e.line}')}{cyan(section)}  {color(e.verdict.value)}")
        if e.verdict != Status.VERIFIED:
            for c in e.clauses:
                lines.extend(_clause_line(c))
        for note in e.notes:
            lines.append(f"      {ICON_INFO}  {dim(note)}")

    if report.diagnostics:
        lines.append("")
        for d in report.diagnostics:
            icon = ICON_ERROR if d.level == "error" else ICON_WARNING
            lines.append(f"   {icon}  {d}")

    s = report.summary
    lines.append(f" {dim('─' * 50)}")
    parts = [f"{bold('Functions:')} {s.total}", green(f"{s.verified} verified")]
    if s.falsified:
        parts.append(red(f"{s.falsified} falsified"))
    if s.unknown:
        parts.append(magenta(f"{s.unknown} unknown"))
    if s.error:
        parts.append(yellow(_plural(s.error, "error")))
    lines.append(f"   {'  ·  '.join(parts)}  {dim(f'({report.elapsed_ms / 1000:.2f}s)')}")
    if report.interrupted:
        lines.append(f"   {red('Interrupted; remaining functions were not checked.')}")
    elif report.timed_out:
        lines.append(f"   {yellow('Run timeout reached; remaining functions were not checked.')}")
    elif report.passed:
        lines.append(f"   {green('All contracts verified.')}")
    lines.append("")
    return "\n".join(lines)


# ── JSON formatter ──────────────────────────────────────────────────────

def format_json(report: Report) -> str:
    return json.dumps(report.to_dict(), indent=2)


def report_from_json(text: str) -> Report:
    """Parse the output of format_json back into a Report."""
    return Report.from_dict(json.loads(text))


# ── JUnit XML formatter ─────────────────────────────────────────────────

def _classname(entry: FunctionReport) -> str:
    path = entry.file[:-3] if entry.file.endswith(".py") else entry.file
    return path.replace("/", ".")


def format_junit(report: Report) -> str:
    """One testsuite, one testcase per function."""
    s = report.summary
    suite = ET.Element("testsuite", {
        "name": "speclock",
        "tests": str(s.total),
        "failures": str(s.falsified),
        "errors": str(s.error),
        "skipped": str(s.unknown),
        "time": f"{report.elapsed_ms / 1000:.3f}",
    })
    for e in report.entries:
        case = ET.SubElement(suite, "testcase", {
            "name": e.qualname,
            "classname": _classname(e),
            "file": e.file,
            "line": str(e.line),
            "time": f"{e.elapsed_ms / 1000:.3f}",
        })
        props = ET.SubElement(case, "properties")
        for key in ("section", "section_title", "subsystem"):
            value = getattr(e, key)
            if value:
                ET.SubElement(props, "property", {"name": key, "value": value})
        for i, c in enumerate(e.clauses, 1):
            ET.SubElement(props, "property", {
                "name": f"clause.{i}",
                "value": f"{c.kind.value} {c.text}: {c.status.value}",
            })

        bad = [c for c in e.clauses if c.status == e.verdict]
        first = bad[0] if bad else None
        if e.verdict == Status.FALSIFIED:
            node = ET.SubElement(case, "failure", {
                "message": f"{first.kind.value} {first.text} is falsified" if first else "falsified",
                "type": "falsified",
            })
            if first is not None and first.counterexample:
                node.text = "counterexample: " + format_counterexample(first.counterexample)
        elif e.verdict == Status.ERROR:
            message = first.message if first is not None and first.message else \
                "; ".join(e.notes) or "error"
            ET.SubElement(case, "error", {"message": message, "type": "error"})
        elif e.verdict == Status.UNKNOWN:
            message = first.message if first is not None and first.message else "unknown"
            ET.SubElement(case, "skipped", {"message": message})

        out = []
        for c in e.clauses:
            line = f"{c.kind.value} {c.text}: {c.status.value} ({c.source.value})"
            if c.counterexample:
                line += f" counterexample: {format_counterexample(c.counterexample)}"
            if c.message:
                line += f" - {c.message}"
            out.append(line)
        out.extend(e.notes)
        if out:
            ET.SubElement(case, "system-out").text = "\n".join(out)

    ET.indent(suite)
    return '<?xml version="1.0" encoding="UTF-8"?>\n' + ET.tostring(suite, encoding="unicode")


# ── Markdown formatter ──────────────────────────────────────────────────

def _md(text: str) -> str:
    return text.replace("|", "\\|")


def format_markdown(report: Report) -> str:
    """Format a Report as Markdown for PR comments / docs."""
    s = report.summary
    status = "✅ PASS" if report.passed else "❌ FAIL"
    lines = [f"## speclock verification: {status}", ""]
    lines.append(f"**{s.total}** functions  ·  **{s.verified}** verified  ·  "
                 f"**{s.falsified}** falsified  ·  **{s.unknown}** unknown  ·  "
                 f"**{s.error}** errors")
    lines.append("")
    if report.entries:
        lines.append("| Function | Location | Section | Verdict |")
        lines.append("|----------|----------|---------|---------|")
        for e in report.entries:
            section = e.section or "—"
            if e.section and e.section_title:
                section += f" {_md(e.section_title)}"
            lines.append(f"| `{e.qualname}` | `{e.file}:{e.line}` | {section} | "
                         f"{_MD_STATUS[e.verdict]} |")
        lines.append("")

    failing = [e for e in report.entries if e.verdict != Status.VERIFIED]
    if failing:
        lines.append("### Details")
        lines.append("")
        for e in failing:
            lines.append(f"#### `{e.qualname}`")
            lines.append("")
            for c in e.clauses:
                line = f"- {_MD_STATUS[c.status]} `{c.kind.value} {c.text}`"
                if c.counterexample:
                    line += f" — counterexample: `{format_counterexample(c.counterexample)}`"
                elif c.message and c.status != Status.VERIFIED:
                    line += f" — {c.message}"
                lines.append(line)
            for note in e.notes:
                lines.append(f"- {note}")
            lines.append("")

    if report.diagnostics:
        lines.append(f"### Diagnostics ({len(report.diagnostics)})")
        lines.append("")
        for d in report.diagnostics:
            lines.append(f"- **{d.level}** {_md(str(d))}")
        lines.append("")
    return "\n".join(lines)


# ── Dispatcher ──────────────────────────────────────────────────────────

FORMATS = ("human", "json", "junit", "markdown")


def format_report(report: Report, fmt: str = "human") -> str:
    """Dispatch to the appropriate formatter."""
    if fmt == "json":
        return format_json(report)
    elif fmt == "junit":
        return format_junit(report)
    elif fmt == "markdown":
        return format_markdown(report)
    return format_human(report)
