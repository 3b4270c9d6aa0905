"""
Twitter/X handle normalization.

Providers hand back handles in every shape: "@Name", "https://x.com/name/",
"twitter.com/name?s=20". Everything is reduced to the bare lowercase handle.
"""
import re
from typing import Optional

_URL_PREFIX = re.compile(r"^(https?://)?(www\.)?(twitter|x)\.com/")
_INVALID_CHARS = re.compile(r"[^a-z0-9_]")

MAX_HANDLE_LENGTH = 15


def clean_twitter_handle(raw: Optional[str]) -> Optional[str]:
    """Return the bare handle, or None when nothing valid remains."""
    if not raw:
        return None

    clean = raw.strip().lower()
    clean = clean.lstrip("@")
    clean = _URL_PREFIX.sub("", clean)
    clean = clean.split("/")[0].split("?")[0]
    clean = _INVALID_CHARS.sub("", clean)

    if not 1 <= len(clean) <= MAX_HANDLE_LENGTH:
        return None
    return clean


def twitter_url(handle: Optional[str]) -> Optional[str]:
    cleaned = clean_twitter_handle(handle)
    if not cleaned:
        return None
    return f"https://x.com/{cleaned}"
