import math

import pytest

from walletgraph.schemas.job import AccessTier
from walletgraph.services.priority import (
    calculate_priority_score,
    find_holdings_column,
    is_premium,
    parse_holdings_value,
)


class TestPriorityScore:
    def test_reference_value(self):
        assert calculate_priority_score(1000, 99) == pytest.approx(2000.0)

    def test_zero_holdings(self):
        assert calculate_priority_score(0, 99) == 0

    def test_missing_followers(self):
        assert calculate_priority_score(1000, None) == 0

    def test_missing_holdings(self):
        assert calculate_priority_score(None, 500) == 0

    def test_log_dampening(self):
        assert calculate_priority_score(10, 9999) == pytest.approx(10 * math.log10(10000))


class TestHoldingsColumn:
    def test_exact_match_beats_substring(self):
        assert find_holdings_column(["Wallet", "Total Balance", "Balance"]) == "Balance"

    def test_pattern_order(self):
        # "dtf value" is checked before plain "balance"
        assert find_holdings_column(["balance", "DTF Value"]) == "DTF Value"

    def test_substring_match(self):
        assert find_holdings_column(["address", "Token Holdings (USD)"]) == "Token Holdings (USD)"

    def test_no_match(self):
        assert find_holdings_column(["address", "name"]) is None


class TestParseHoldings:
    @pytest.mark.parametrize("raw,expected", [
        ("$1,234.50", 1234.5),
        (" 42 ", 42.0),
        ("1e3", 1000.0),
        (7, 7.0),
        ("12.5 tokens", 12.5),
    ])
    def test_parses(self, raw, expected):
        assert parse_holdings_value(raw) == pytest.approx(expected)

    @pytest.mark.parametrize("raw", [None, "", "n/a", float("nan"), True])
    def test_unparsable(self, raw):
        assert parse_holdings_value(raw) is None


def test_is_premium():
    assert not is_premium(AccessTier.FREE)
    assert is_premium(AccessTier.STARTER)
    assert is_premium("unlimited")
