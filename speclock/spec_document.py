"""speclock specification cross-reference.

Parses the section structure of a Markdown specification document:

    ## 6.1 Block Subsidy
    The subsidy halves every 210,000 blocks.
    **GetBlockSubsidy**: $h \\mapsto 50 \\cdot C \\gg \\lfloor h / H \\rfloor$

into an immutable mapping ``section id → SectionInfo``. Formulas are not
interpreted. Parsed indexes are cached as JSON keyed by the SHA-256 of
the document, so unchanged documents are not re-parsed.

Usage:
    from speclock.spec_document import load_spec
    sections = load_spec("docs/SPEC.md", cache_dir=".speclock-cache")
    print(sections["6.1"].title)
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from speclock.errors import EnvironmentFailure

logger = logging.getLogger(__name__)

_SECTION_RE = re.compile(r"^#{2,}\s+(\d+(?:\.\d+)*)\.?\s+(.+?)\s*#*\s*$")
_FUNCTION_RE = re.compile(r"\*\*(\w+)\*\*:\s*\$?([^\$]+)\$?")

CACHE_VERSION = 1


@dataclass(frozen=True)
class SectionInfo:
    id: str
    title: str
    summary: str = ""
    functions: tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "summary": self.summary,
            "functions": list(self.functions),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> SectionInfo:
        return cls(d["id"], d["title"], d.get("summary", ""), tuple(d.get("functions", ())))


def section_sort_key(section_id: str) -> tuple:
    """Numeric order: 2 < 6.1 < 6.2 < 6.10 < 10."""
    return tuple(int(p) for p in section_id.split(".") if p.isdigit())


def parse_spec(text: str) -> Mapping[str, SectionInfo]:
    """Parse section headings, summaries and ``**Name**:`` entries."""
    raw: dict[str, dict[str, Any]] = {}
    current: Optional[dict[str, Any]] = None
    in_code = False
    for line in text.splitlines():
        if line.lstrip().startswith("```"):
            in_code = not in_code
            continue
        if in_code:
            continue
        m = _SECTION_RE.match(line)
        if m:
            sid = m.group(1)
            if sid in raw:
                logger.debug("duplicate section %s; keeping the first", sid)
                current = None
                continue
            current = {"id": sid, "title": m.group(2).strip(), "summary": "", "functions": []}
            raw[sid] = current
            continue
        if line.startswith("#"):
            current = None
            continue
        if current is None:
            continue
        for fm in _FUNCTION_RE.finditer(line):
            name = fm.group(1)
            if name not in current["functions"]:
                current["functions"].append(name)
        stripped = line.strip()
        if stripped and not current["summary"] and not stripped.startswith("**"):
            current["summary"] = stripped
    sections = {
        sid: SectionInfo(d["id"], d["title"], d["summary"], tuple(d["functions"]))
        for sid, d in sorted(raw.items(), key=lambda kv: section_sort_key(kv[0]))
    }
    return MappingProxyType(sections)


def load_spec(path: str, cache_dir: Optional[str] = None) -> Mapping[str, SectionInfo]:
    """Read and parse a specification document, using the cache if given."""
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as e:
        raise EnvironmentFailure(f"cannot read specification document {path}: {e}") from e

    digest = hashlib.sha256(data).hexdigest()
    cache_file = os.path.join(cache_dir, f"spec-{digest}.json") if cache_dir else None

    if cache_file and os.path.isfile(cache_file):
        try:
            with open(cache_file, "r", encoding="utf-8") as f:
                cached = json.load(f)
            if cached.get("version") == CACHE_VERSION:
                logger.debug("specification index loaded from cache %s", cache_file)
                return MappingProxyType({
                    s["id"]: SectionInfo.from_dict(s) for s in cached["sections"]
                })
        except (OSError, ValueError, KeyError) as e:
            logger.debug("ignoring unreadable cache %s: %s", cache_file, e)

    sections = parse_spec(data.decode("utf-8", errors="replace"))

    if cache_file:
        try:
            os.makedirs(cache_dir, exist_ok=True)
            with open(cache_file, "w", encoding="utf-8") as f:
                json.dump({
                    "version": CACHE_VERSION,
                    "source": os.path.abspath(path),
                    "sections": [s.to_dict() for s in sections.values()],
                }, f, indent=2)
        except OSError as e:
            logger.debug("cannot write cache %s: %s", cache_file, e)

    return sections
