"""
Priority scoring

priority = holdings * log10(followers + 1)

Holdings come from whichever caller-supplied column looks like a balance;
followers from the Farcaster follower count. A missing value counts as 0,
so a wallet with no holdings column or no Farcaster account scores 0.

Priority is a paid-tier feature: free jobs get the field cleared.
"""
import math
import re
from typing import Any, Iterable, Optional

from walletgraph.schemas.job import AccessTier

# Checked in order; first pattern with a matching column wins
HOLDINGS_COLUMN_PATTERNS = (
    "peak index dtf value",
    "dtf value",
    "value",
    "balance",
    "holdings",
    "amount",
    "usd",
    "usd_value",
    "usd value",
    "total",
    "total_value",
    "portfolio",
)

_STRIP_CHARS = re.compile(r"[$,\s]")
_LEADING_NUMBER = re.compile(r"^[-+]?(\d+\.?\d*|\.\d+)([eE][-+]?\d+)?")


def find_holdings_column(columns: Iterable[str]) -> Optional[str]:
    """Return the original column name that holds the wallet's holdings."""
    columns = list(columns)
    lowered = [c.lower().strip() for c in columns]

    for pattern in HOLDINGS_COLUMN_PATTERNS:
        for original, lower in zip(columns, lowered):
            if lower == pattern:
                return original
        for original, lower in zip(columns, lowered):
            if pattern in lower:
                return original
    return None


def parse_holdings_value(raw: Any) -> Optional[float]:
    """'$1,234.50' -> 1234.5. Unparsable or empty -> None."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return float(raw) if math.isfinite(raw) else None

    cleaned = _STRIP_CHARS.sub("", str(raw))
    match = _LEADING_NUMBER.match(cleaned)
    if not match:
        return None
    value = float(match.group(0))
    return value if math.isfinite(value) else None


def calculate_priority_score(holdings: Optional[float], followers: Optional[int]) -> float:
    h = holdings or 0
    f = followers or 0
    if h == 0 or f <= 0:
        return 0.0
    return h * math.log10(f + 1)


def is_premium(tier: AccessTier) -> bool:
    return AccessTier(tier).is_premium
