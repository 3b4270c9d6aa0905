"""
Wallet identity schemas

PartialIdentity is what a single source knows about a wallet.
WalletIdentity is the working record the pipeline builds up per wallet by
merging partials in tier order. Merging is fill-only: a field set by an
earlier source is never overwritten by a later one.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from walletgraph.core.utils import normalize_wallet

# Every mergeable identity field, in display order
IDENTITY_FIELDS = (
    "ens_name",
    "twitter_handle",
    "twitter_url",
    "farcaster",
    "farcaster_url",
    "fc_followers",
    "fc_fid",
    "lens",
    "github",
    "linkedin",
)

# Fields that count as "we found someone" for counters and graph write-back
POSITIVE_FIELDS = ("ens_name", "twitter_handle", "farcaster", "lens", "github", "linkedin")

# Companion fields of each primary handle. When a stored graph row switches
# to a different account, its companions are replaced along with the handle.
LINKED_FIELDS = {
    "twitter_handle": ("twitter_url",),
    "farcaster": ("farcaster_url", "fc_followers", "fc_fid"),
}

# Provenance tags that describe where a record was read from, not who found it
READ_THROUGH_SOURCES = ("cache", "graph")


def _is_blank(value: Any) -> bool:
    return value is None or value == ""


class PartialIdentity(BaseModel):
    """Identity fields offered by one source. Every field is optional."""
    ens_name: Optional[str] = None
    twitter_handle: Optional[str] = None
    twitter_url: Optional[str] = None
    farcaster: Optional[str] = None
    farcaster_url: Optional[str] = None
    fc_followers: Optional[int] = None
    fc_fid: Optional[int] = None
    lens: Optional[str] = None
    github: Optional[str] = None
    linkedin: Optional[str] = None

    # Provenance carried by stored records (cache/graph rows remember who found them)
    sources: List[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return all(_is_blank(getattr(self, name)) for name in IDENTITY_FIELDS)

    def has_positive_identity(self) -> bool:
        return any(not _is_blank(getattr(self, name)) for name in POSITIVE_FIELDS)

    def identity_fields(self) -> Dict[str, Any]:
        """Only the populated identity fields."""
        return {
            name: getattr(self, name)
            for name in IDENTITY_FIELDS
            if not _is_blank(getattr(self, name))
        }


class WalletIdentity(PartialIdentity):
    """The per-wallet working record."""
    wallet: str
    holdings: Optional[float] = None
    priority_score: Optional[float] = None

    # Side-band columns supplied by the caller (CSV columns etc.), passed through untouched
    columns: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("wallet", mode="before")
    @classmethod
    def normalize(cls, v):
        return normalize_wallet(v)

    def add_source(self, source: str) -> None:
        """Append a provenance tag. Ordered, no duplicates."""
        if source and source not in self.sources:
            self.sources.append(source)

    def merge(self, partial: PartialIdentity, source: Optional[str] = None) -> List[str]:
        """
        Fill gaps from ``partial`` without touching fields already set.

        Every field is filled on its own, companions included: a follower
        count offered by a later source lands whenever the record has none.
        Returns the names of the fields that were filled.
        """
        filled: List[str] = []

        for name in IDENTITY_FIELDS:
            offered = getattr(partial, name)
            if _is_blank(offered) or not _is_blank(getattr(self, name)):
                continue
            setattr(self, name, offered)
            filled.append(name)

        if not partial.is_empty():
            for inherited in partial.sources:
                self.add_source(inherited)
            if source:
                self.add_source(source)

        return filled

    def strip_premium(self) -> None:
        """Clear fields reserved for paid tiers. Cleared, not just hidden."""
        self.priority_score = None
        self.fc_followers = None

    def provider_sources(self) -> List[str]:
        """Sources that actually discovered data (read-through tags removed)."""
        return [s for s in self.sources if s not in READ_THROUGH_SOURCES]

    def to_result(self) -> Dict[str, Any]:
        """JSON-safe dict for partial_results / history archives."""
        return self.model_dump(mode="json")
