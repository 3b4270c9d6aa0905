"""
Social graph quality scoring and trust classification

This classifier decides whether a stored social graph row is trusted as-is
(no provider calls for that wallet) or needs a fresh lookup. It is pure: no
I/O, "now" is always passed in.

Score (0-100), recomputed on every upsert:
    +20  has a Twitter/X handle
    +20  has a Farcaster account
    per distinct discovering source:
         manual +35, ens +30, neynar +25, web3bio +15, anything else +5
    +10  at least one platform verified
    capped at 100

Verification:
    twitter_verified   - handle came from ENS text records or manual entry
    farcaster_verified - account came from Neynar (verified address) or manual

Bands:
    high    score >= HIGH and stale_at in the future -> trusted, skip lookups
    medium  MEDIUM <= score < HIGH                   -> baseline, still look up
    low     below MEDIUM, missing, or high-but-stale -> full lookup
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional, Tuple

from walletgraph.core.config import settings
from walletgraph.core.utils import ensure_aware
from walletgraph.schemas.identity import READ_THROUGH_SOURCES

SOURCE_BONUS = {
    "manual": 35,
    "ens": 30,
    "ens_onchain": 30,
    "neynar": 25,
    "web3bio": 15,
}
DEFAULT_SOURCE_BONUS = 5
HANDLE_POINTS = 20
VERIFIED_BONUS = 10
MAX_SCORE = 100

TWITTER_VERIFYING_SOURCES = ("ens", "ens_onchain", "manual")
FARCASTER_VERIFYING_SOURCES = ("neynar", "manual")


class QualityBand(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class QualityAssessment:
    band: QualityBand
    needs_refresh: bool
    is_stale: bool = False

    @property
    def trusted(self) -> bool:
        """Trust-and-skip: merge the stored row and make no provider calls."""
        return self.band == QualityBand.HIGH and not self.needs_refresh

    @property
    def usable_as_baseline(self) -> bool:
        return self.band == QualityBand.MEDIUM


def discovering_sources(sources: Iterable[str]) -> Tuple[str, ...]:
    """Distinct sources minus read-through tags, order preserved."""
    seen = []
    for source in sources or ():
        if source and source not in READ_THROUGH_SOURCES and source not in seen:
            seen.append(source)
    return tuple(seen)


def verification_flags(sources: Iterable[str], has_twitter: bool, has_farcaster: bool) -> Tuple[bool, bool]:
    """(twitter_verified, farcaster_verified) implied by where the data came from."""
    found = set(discovering_sources(sources))
    twitter_verified = has_twitter and bool(found.intersection(TWITTER_VERIFYING_SOURCES))
    farcaster_verified = has_farcaster and bool(found.intersection(FARCASTER_VERIFYING_SOURCES))
    return twitter_verified, farcaster_verified


def compute_quality_score(
    sources: Iterable[str],
    has_twitter: bool,
    has_farcaster: bool,
    twitter_verified: bool = False,
    farcaster_verified: bool = False,
) -> int:
    score = 0
    if has_twitter:
        score += HANDLE_POINTS
    if has_farcaster:
        score += HANDLE_POINTS
    for source in discovering_sources(sources):
        score += SOURCE_BONUS.get(source, DEFAULT_SOURCE_BONUS)
    if twitter_verified or farcaster_verified:
        score += VERIFIED_BONUS
    return min(score, MAX_SCORE)


def band_for_score(score: Optional[int]) -> QualityBand:
    if score is None:
        return QualityBand.LOW
    if score >= settings.QUALITY_HIGH_THRESHOLD:
        return QualityBand.HIGH
    if score >= settings.QUALITY_MEDIUM_THRESHOLD:
        return QualityBand.MEDIUM
    return QualityBand.LOW


def is_stale(stale_at: Optional[datetime], now: datetime) -> bool:
    stale_at = ensure_aware(stale_at)
    return stale_at is None or stale_at <= now


def classify(record, now: datetime) -> QualityAssessment:
    """
    Classify a social graph row (anything with quality_score / stale_at).

    A missing record is low and needs a lookup.
    """
    if record is None:
        return QualityAssessment(band=QualityBand.LOW, needs_refresh=True, is_stale=True)

    stale = is_stale(getattr(record, "stale_at", None), now)
    band = band_for_score(getattr(record, "quality_score", None))

    if band == QualityBand.HIGH and not stale:
        return QualityAssessment(band=QualityBand.HIGH, needs_refresh=False, is_stale=False)
    if band == QualityBand.MEDIUM:
        return QualityAssessment(band=QualityBand.MEDIUM, needs_refresh=True, is_stale=stale)
    # High-but-stale falls to low: it has to be re-verified before it's trusted
    return QualityAssessment(band=QualityBand.LOW, needs_refresh=True, is_stale=stale)
