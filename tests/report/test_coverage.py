"""speclock Coverage & Drift Tests — COV-001 through COV-004."""

import json

import pytest

import speclock.formatters as formatters
from speclock.coverage import (
    coverage_stats, detect_drift, format_coverage, format_drift, pascal_case, to_json,
)
from speclock.discovery import discover_source
from speclock.spec_document import parse_spec

SOURCE = '''
@spec_locked("6.10")
@ensures("result >= 0")
def late(x: u8) -> u8:
    return x

@spec_locked("6.1")
@requires("height >= 0")
@ensures("result >= 0")
def get_block_subsidy(height: i64) -> i64:
    return 5_000_000_000 >> (height // 210_000)

@spec_locked("6.2", "MoneyRange")
def check_amount(value: i64) -> bool:
    return value >= 0

@spec_locked("9.9")
@ensures("result == x")
def orphan(x: int) -> int:
    return x

@spec_locked()
def helper(x: int) -> int:
    return x
'''

SPEC = """\
## 6 Monetary Policy
### 6.1 Block Subsidy
**GetBlockSubsidy**: $h$
### 6.2 Money Range
**MoneyRange**: $v$
### 6.3 Fees
**GetMinFee**: $s$
### 6.10 Late Rule
"""


def _functions():
    fns, _ = discover_source(SOURCE, "consensus/rules.py")
    return fns


# ===========================================================================
# COV-001: Coverage statistics
# ===========================================================================

class TestCOV001:
    """COV-001: Functions are counted and grouped by section."""

    def test_counts(self):
        stats = coverage_stats(_functions())
        assert stats.total == 5
        assert stats.with_contracts == 3
        assert stats.without_contracts == 2
        assert round(stats.contract_coverage) == 60

    def test_sections_in_numeric_order(self):
        stats = coverage_stats(_functions())
        assert list(stats.by_section) == ["6.1", "6.2", "6.10", "9.9"]
        assert [f.qualname for f in stats.unlinked] == ["helper"]

    def test_empty(self):
        stats = coverage_stats([])
        assert stats.total == 0
        assert stats.contract_coverage == 0.0

    def test_json(self):
        data = json.loads(to_json(coverage_stats(_functions())))
        assert data["contract_coverage_percent"] == 60.0
        assert data["by_section"]["6.1"]["functions"][0]["function"] == "get_block_subsidy"
        assert data["unlinked"][0]["has_contracts"] is False


# ===========================================================================
# COV-002: Drift detection
# ===========================================================================

class TestCOV002:
    """COV-002: Code and specification disagreements."""

    def test_drift_categories(self):
        result = detect_drift(_functions(), parse_spec(SPEC))
        assert result.has_drift
        assert [f.qualname for f in result.unknown_sections] == ["orphan"]
        assert [f.qualname for f in result.missing_contracts] == ["check_amount"]
        assert result.missing_implementations == []
        assert [f.qualname for f in result.unlinked] == ["helper"]

    def test_unlinked_sections_are_not_drift(self):
        # 6.3 lists GetMinFee but no function links 6.3.
        result = detect_drift(_functions(), parse_spec(SPEC))
        assert {"section": "6.3", "function": "GetMinFee"} not in result.missing_implementations

    def test_missing_implementation(self):
        spec = SPEC.replace("**GetBlockSubsidy**: $h$", "**GetBlockSubsidy**: $h$\n**GetBlockReward**: $r$")
        result = detect_drift(_functions(), parse_spec(spec))
        assert result.missing_implementations == [{"section": "6.1", "function": "GetBlockReward"}]

    def test_no_drift(self):
        fns = [f for f in _functions() if f.qualname in ("late", "get_block_subsidy")]
        result = detect_drift(fns, parse_spec(SPEC))
        assert not result.has_drift


# ===========================================================================
# COV-003: Name matching
# ===========================================================================

class TestCOV003:
    """COV-003: snake_case functions implement PascalCase entries."""

    def test_pascal_case(self):
        assert pascal_case("get_block_subsidy") == "GetBlockSubsidy"
        assert pascal_case("_private_name") == "PrivateName"
        assert pascal_case("MoneyRange") == "MoneyRange"


# ===========================================================================
# COV-004: Rendering
# ===========================================================================

class TestCOV004:
    """COV-004: Human renderings mention every finding."""

    @pytest.fixture(autouse=True)
    def _plain(self, monkeypatch):
        monkeypatch.setattr(formatters, "_NO_COLOR", True)

    def test_format_coverage(self):
        text = format_coverage(coverage_stats(_functions()), parse_spec(SPEC))
        assert "§6.1" in text and "Block Subsidy" in text
        assert "no contracts" in text
        assert "Unlinked" in text
        assert "60.0% contract coverage" in text

    def test_format_drift(self):
        text = format_drift(detect_drift(_functions(), parse_spec(SPEC)))
        assert "orphan" in text and "§9.9" in text
        assert "check_amount" in text
        assert "has no section id" in text

    def test_format_no_drift(self):
        fns = [f for f in _functions() if f.qualname == "late"]
        assert "No drift detected." in format_drift(detect_drift(fns, parse_spec(SPEC)))
