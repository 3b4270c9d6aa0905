"""
Core Utilities

Shared helpers used across the application.
"""
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Sequence, TypeVar

T = TypeVar("T")


def utcnow() -> datetime:
    """
    Return timezone-aware UTC datetime.

    Use this instead of datetime.utcnow() which returns naive datetime.
    """
    return datetime.now(timezone.utc)


def ensure_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes coming back from the DB as UTC."""
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def normalize_wallet(address: str) -> str:
    """Wallets are keyed lowercase, without surrounding whitespace."""
    return (address or "").strip().lower()


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """Yield consecutive slices of at most ``size`` items."""
    if size <= 0:
        raise ValueError("size must be positive")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])
