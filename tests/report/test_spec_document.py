"""speclock Specification Cross-Reference Tests — XREF-001 through XREF-004."""

import json
import os

import pytest

from speclock.errors import EnvironmentFailure
from speclock.spec_document import CACHE_VERSION, SectionInfo, load_spec, parse_spec, section_sort_key

SPEC = """\
# Consensus Rules

Intro text is not part of any section.

## 6 Monetary Policy

Issuance rules.

### 6.10 Late Rule

Added last.

### 6.1 Block Subsidy

The subsidy halves every 210,000 blocks.

**GetBlockSubsidy**: $h \\mapsto 50 \\cdot C \\gg \\lfloor h / H \\rfloor$

### 6.2. Money Range ###

**MoneyRange**: $0 \\le v \\le M$
**MoneyRange**: duplicate entry

```
### 6.3 Inside a code fence
**NotAFunction**: x
```

## Appendix

**Orphan**: not inside a numbered section

## 6.1 Duplicate Heading

**Ignored**: y
"""


# ===========================================================================
# XREF-001: Parsing
# ===========================================================================

class TestXREF001:
    """XREF-001: Section headings, summaries and function entries."""

    def test_section_ids_in_numeric_order(self):
        sections = parse_spec(SPEC)
        assert list(sections) == ["6", "6.1", "6.2", "6.10"]

    def test_titles_and_summaries(self):
        sections = parse_spec(SPEC)
        assert sections["6"].title == "Monetary Policy"
        assert sections["6"].summary == "Issuance rules."
        assert sections["6.1"].summary == "The subsidy halves every 210,000 blocks."
        assert sections["6.2"].title == "Money Range"

    def test_function_entries(self):
        sections = parse_spec(SPEC)
        assert sections["6.1"].functions == ("GetBlockSubsidy",)
        assert sections["6.2"].functions == ("MoneyRange",)
        assert sections["6"].functions == ()

    def test_duplicate_and_fenced_headings_ignored(self):
        sections = parse_spec(SPEC)
        assert "6.3" not in sections
        assert "Ignored" not in sections["6.1"].functions
        assert all("Orphan" not in s.functions for s in sections.values())

    def test_mapping_is_read_only(self):
        sections = parse_spec(SPEC)
        with pytest.raises(TypeError):
            sections["9"] = SectionInfo("9", "Nope")


# ===========================================================================
# XREF-002: Sort key
# ===========================================================================

class TestXREF002:
    """XREF-002: Section ids compare numerically."""

    def test_sort_key(self):
        ids = ["10", "6.10", "2", "6.2", "6.1", "6"]
        assert sorted(ids, key=section_sort_key) == ["2", "6", "6.1", "6.2", "6.10", "10"]


# ===========================================================================
# XREF-003: Loading and caching
# ===========================================================================

class TestXREF003:
    """XREF-003: Parsed indexes are cached by content hash."""

    def test_cache_written_and_reused(self, tmp_path):
        doc = tmp_path / "SPEC.md"
        doc.write_text(SPEC, encoding="utf-8")
        cache = tmp_path / "cache"
        first = load_spec(str(doc), cache_dir=str(cache))
        files = list(cache.iterdir())
        assert len(files) == 1
        data = json.loads(files[0].read_text(encoding="utf-8"))
        assert data["version"] == CACHE_VERSION
        assert [s["id"] for s in data["sections"]] == ["6", "6.1", "6.2", "6.10"]
        assert dict(load_spec(str(doc), cache_dir=str(cache))) == dict(first)

    def test_cache_is_trusted_for_same_content(self, tmp_path):
        doc = tmp_path / "SPEC.md"
        doc.write_text(SPEC, encoding="utf-8")
        cache = tmp_path / "cache"
        load_spec(str(doc), cache_dir=str(cache))
        entry = next(cache.iterdir())
        data = json.loads(entry.read_text(encoding="utf-8"))
        data["sections"][0]["title"] = "From Cache"
        entry.write_text(json.dumps(data), encoding="utf-8")
        assert load_spec(str(doc), cache_dir=str(cache))["6"].title == "From Cache"

    def test_changed_document_misses_cache(self, tmp_path):
        doc = tmp_path / "SPEC.md"
        doc.write_text(SPEC, encoding="utf-8")
        cache = tmp_path / "cache"
        load_spec(str(doc), cache_dir=str(cache))
        doc.write_text(SPEC + "\n## 11 New Section\n", encoding="utf-8")
        assert "11" in load_spec(str(doc), cache_dir=str(cache))
        assert len(list(cache.iterdir())) == 2

    def test_corrupt_cache_is_ignored(self, tmp_path):
        doc = tmp_path / "SPEC.md"
        doc.write_text(SPEC, encoding="utf-8")
        cache = tmp_path / "cache"
        load_spec(str(doc), cache_dir=str(cache))
        next(cache.iterdir()).write_text("{not json", encoding="utf-8")
        assert load_spec(str(doc), cache_dir=str(cache))["6.1"].title == "Block Subsidy"

    def test_without_cache_dir(self, tmp_path):
        doc = tmp_path / "SPEC.md"
        doc.write_text(SPEC, encoding="utf-8")
        assert "6.1" in load_spec(str(doc))
        assert sorted(os.listdir(tmp_path)) == ["SPEC.md"]


# ===========================================================================
# XREF-004: Errors
# ===========================================================================

class TestXREF004:
    """XREF-004: A missing document is an environment failure."""

    def test_missing_document(self, tmp_path):
        with pytest.raises(EnvironmentFailure):
            load_spec(str(tmp_path / "absent.md"))
