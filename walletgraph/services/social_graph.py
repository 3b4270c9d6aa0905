"""
Social Graph Store

Permanent wallet -> identity table shared by every job and worker. There is
no row-level locking: all writes are idempotent upserts whose merge and
quality rules converge, so two jobs racing on the same wallet can only cost
a redundant lookup, never corrupt a row.

Write path (per wallet):
- COALESCE(new, old) per field; companions (url, followers, fid) follow
  their primary handle; rows with a 'manual' source are fill-only
- sources unioned (read-through tags 'cache'/'graph' never stored)
- verification flags OR'ed
- quality recomputed; the old score is kept if higher and still fresh
- stale_at pushed out SOCIAL_GRAPH_STALE_AFTER_DAYS from now
- lookup_count + 1
- one social_graph_history row per changed field

upsert_with_retry() retries database errors per record with exponential backoff and
reports per-record failures instead of raising, so a job can finish with a
"partial" write outcome.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import case, func, select
from sqlalchemy.exc import SQLAlchemyError

from walletgraph.core.config import settings
from walletgraph.core.database import AsyncSessionLocal
from walletgraph.core.exceptions import SocialGraphWriteError, StoreError
from walletgraph.core.utils import chunked, normalize_wallet, utcnow
from walletgraph.models.social_graph import SocialGraph, SocialGraphHistory
from walletgraph.schemas.identity import IDENTITY_FIELDS, LINKED_FIELDS, PartialIdentity, WalletIdentity
from walletgraph.schemas.job import SocialGraphWriteStatus
from walletgraph.services.quality import (
    QualityBand,
    compute_quality_score,
    discovering_sources,
    is_stale,
    verification_flags,
)

logger = logging.getLogger(__name__)

MANUAL_SOURCE = "manual"
MANUAL_QUALITY = 100

_COMPANION_OF = {c: primary for primary, group in LINKED_FIELDS.items() for c in group}


@dataclass
class UpsertReport:
    succeeded: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return self.succeeded + self.failed

    @property
    def write_status(self) -> Optional[SocialGraphWriteStatus]:
        """Job-level outcome. None when there was nothing to write."""
        if self.failed == 0:
            return SocialGraphWriteStatus.SUCCESS if self.succeeded else None
        if self.succeeded > 0:
            return SocialGraphWriteStatus.PARTIAL
        return SocialGraphWriteStatus.FAILED

    def to_dict(self) -> Dict[str, Any]:
        status = self.write_status
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "errors": self.errors,
            "write_status": status.value if status else None,
        }


def graph_row_to_partial(row: SocialGraph) -> PartialIdentity:
    """Stored row -> partial identity, carrying the row's provenance."""
    return PartialIdentity(
        **{name: getattr(row, name) for name in IDENTITY_FIELDS},
        sources=list(row.sources or []),
    )


def _blank(value: Any) -> bool:
    return value is None or value == ""


def merge_into_row(
    row: SocialGraph,
    identity: PartialIdentity,
    now: datetime,
    stale_after_days: int,
    is_new: bool,
    manual: bool = False,
) -> List[Tuple[str, Any, Any]]:
    """
    Apply one resolved identity to a (new or existing) row in place.

    Returns [(field, old, new), ...] for every identity field that changed.
    """
    existing_sources = list(row.sources or [])
    fill_only = MANUAL_SOURCE in existing_sources and not manual
    was_stale = not is_new and is_stale(row.stale_at, now)
    old_quality = row.quality_score or 0

    changes: List[Tuple[str, Any, Any]] = []
    replaced_primaries = set()

    for name in IDENTITY_FIELDS:
        if name in _COMPANION_OF:
            continue
        new = getattr(identity, name)
        old = getattr(row, name)
        if _blank(new) or new == old:
            continue
        if not _blank(old) and fill_only:
            continue
        setattr(row, name, new)
        changes.append((name, old, new))
        if name in LINKED_FIELDS:
            replaced_primaries.add(name)

    for companion, primary in _COMPANION_OF.items():
        new = getattr(identity, companion)
        old = getattr(row, companion)
        if primary in replaced_primaries:
            # Different account now: its companions replace the old ones wholesale
            if new != old:
                setattr(row, companion, new)
                changes.append((companion, old, new))
            continue
        same_account = (
            not _blank(getattr(identity, primary))
            and str(getattr(identity, primary)).lower() == str(getattr(row, primary) or "").lower()
        )
        if _blank(new) or new == old or not same_account:
            continue
        if not _blank(old) and fill_only:
            continue
        setattr(row, companion, new)
        changes.append((companion, old, new))

    incoming = list(discovering_sources(identity.sources))
    if manual and MANUAL_SOURCE not in incoming:
        incoming.append(MANUAL_SOURCE)
    row.sources = list(discovering_sources(existing_sources + incoming))

    has_twitter = not _blank(row.twitter_handle)
    has_farcaster = not _blank(row.farcaster)
    twitter_verified, farcaster_verified = verification_flags(row.sources, has_twitter, has_farcaster)
    row.twitter_verified = bool(row.twitter_verified) or twitter_verified
    row.farcaster_verified = bool(row.farcaster_verified) or farcaster_verified

    if manual:
        row.quality_score = MANUAL_QUALITY
    else:
        new_quality = compute_quality_score(
            row.sources, has_twitter, has_farcaster,
            row.twitter_verified, row.farcaster_verified,
        )
        # A stale row's old score is not evidence of anything any more
        row.quality_score = new_quality if (is_new or was_stale) else max(new_quality, old_quality)

    row.stale_at = now + timedelta(days=stale_after_days)
    row.last_updated_at = now
    if is_new:
        row.first_seen_at = now
        row.lookup_count = 1
    else:
        row.lookup_count = (row.lookup_count or 0) + 1

    return changes


class SocialGraphStore:
    """
    Usage:
        store = SocialGraphStore()
        rows = await store.get_many(wallets)
        report = await store.upsert_with_retry(identities)
    """

    def __init__(
        self,
        session_factory=AsyncSessionLocal,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        batch_size: Optional[int] = None,
        stale_after_days: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.max_retries = settings.SOCIAL_GRAPH_UPSERT_MAX_RETRIES if max_retries is None else max_retries
        self.base_delay = settings.SOCIAL_GRAPH_UPSERT_BASE_DELAY if base_delay is None else base_delay
        self.batch_size = batch_size or settings.SOCIAL_GRAPH_UPSERT_BATCH_SIZE
        self.stale_after_days = stale_after_days or settings.SOCIAL_GRAPH_STALE_AFTER_DAYS

    # ----- Reads -----

    async def get_many(self, wallets: Iterable[str]) -> Dict[str, SocialGraph]:
        wallets = list({normalize_wallet(w) for w in wallets if w})
        if not wallets:
            return {}

        rows: Dict[str, SocialGraph] = {}
        try:
            async with self.session_factory() as db:
                # Keep IN lists bounded for very large chunks
                for batch in chunked(wallets, 1000):
                    result = await db.execute(select(SocialGraph).where(SocialGraph.wallet.in_(batch)))
                    for row in result.scalars().all():
                        rows[row.wallet] = row
        except SQLAlchemyError as e:
            raise StoreError(f"Social graph read failed for {len(wallets)} wallets: {e}")
        return rows

    async def get_stale_wallets(self, limit: int, min_lookup_count: int = 1) -> List[str]:
        """Most-looked-up stale wallets first; feeds the refresh cron."""
        now = utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                select(SocialGraph.wallet)
                .where(SocialGraph.stale_at <= now)
                .where(SocialGraph.lookup_count >= min_lookup_count)
                .order_by(SocialGraph.lookup_count.desc(), SocialGraph.stale_at.asc())
                .limit(limit)
            )
            return [row[0] for row in result.all()]

    async def get_stats(self) -> Dict[str, int]:
        now = utcnow()
        high = settings.QUALITY_HIGH_THRESHOLD
        medium = settings.QUALITY_MEDIUM_THRESHOLD
        async with self.session_factory() as db:
            result = await db.execute(
                select(
                    func.count(SocialGraph.wallet),
                    func.sum(case((SocialGraph.quality_score >= high, 1), else_=0)),
                    func.sum(case(((SocialGraph.quality_score >= medium) & (SocialGraph.quality_score < high), 1), else_=0)),
                    func.sum(case((SocialGraph.quality_score < medium, 1), else_=0)),
                    func.sum(case((SocialGraph.stale_at <= now, 1), else_=0)),
                    func.sum(case((SocialGraph.twitter_handle.isnot(None), 1), else_=0)),
                    func.sum(case((SocialGraph.farcaster.isnot(None), 1), else_=0)),
                )
            )
            total, high_n, medium_n, low_n, stale_n, twitter_n, farcaster_n = result.one()

        return {
            "total": total or 0,
            QualityBand.HIGH.value: high_n or 0,
            QualityBand.MEDIUM.value: medium_n or 0,
            QualityBand.LOW.value: low_n or 0,
            "stale": stale_n or 0,
            "with_twitter": twitter_n or 0,
            "with_farcaster": farcaster_n or 0,
        }

    # ----- Writes -----

    async def upsert(self, identity: WalletIdentity, manual: bool = False) -> bool:
        """
        Insert or merge one wallet. Returns True if the row was created.

        Raises SocialGraphWriteError on DB errors; upsert_with_retry() handles retries.
        """
        wallet = normalize_wallet(identity.wallet)
        now = utcnow()

        async with self.session_factory() as db:
            try:
                row = await db.get(SocialGraph, wallet)
                is_new = row is None
                if is_new:
                    row = SocialGraph(wallet=wallet, sources=[], quality_score=0, lookup_count=0)
                    db.add(row)

                changes = merge_into_row(row, identity, now, self.stale_after_days, is_new=is_new, manual=manual)

                source_label = ",".join(row.sources or [])[:100] or None
                for field_name, old, new in changes:
                    db.add(SocialGraphHistory(
                        wallet=wallet,
                        field_name=field_name,
                        old_value=None if old is None else str(old),
                        new_value=None if new is None else str(new),
                        source=source_label,
                        changed_at=now,
                    ))

                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                raise SocialGraphWriteError(f"Upsert failed for {wallet}: {e}", wallet=wallet)
            except Exception:
                await db.rollback()
                raise

        if changes:
            logger.debug(f"[SOCIAL_GRAPH] {wallet}: {len(changes)} fields changed (new={is_new})")
        return is_new

    async def upsert_with_retry(self, identities: Iterable[WalletIdentity]) -> UpsertReport:
        """Upsert every positive identity; failures are reported, not raised."""
        report = UpsertReport()
        positive = [i for i in identities if i.has_positive_identity()]
        if not positive:
            return report

        for batch_number, batch in enumerate(chunked(positive, self.batch_size), start=1):
            for identity in batch:
                await self._upsert_one_with_retry(identity, report)
            logger.debug(
                f"[SOCIAL_GRAPH] Batch {batch_number}: {report.succeeded} ok / {report.failed} failed so far"
            )

        if report.failed:
            logger.warning(
                f"[SOCIAL_GRAPH] Upsert finished with failures: {report.succeeded} succeeded, "
                f"{report.failed} failed"
            )
        else:
            logger.info(f"[SOCIAL_GRAPH] Upserted {report.succeeded} wallets")
        return report

    async def _upsert_one_with_retry(self, identity: WalletIdentity, report: UpsertReport) -> None:
        """Retry database write errors with backoff. Anything else is deterministic and fails at once."""
        attempts = self.max_retries + 1

        for attempt in range(1, attempts + 1):
            try:
                await self.upsert(identity)
                report.succeeded += 1
                return
            except SocialGraphWriteError as e:
                if attempt == attempts:
                    self._record_failure(identity, report, e, attempt)
                    return
                delay = self.base_delay * (2 ** (attempt - 1))
                logger.warning(
                    f"[SOCIAL_GRAPH] Upsert failed for {identity.wallet} "
                    f"(attempt {attempt}/{attempts}), retrying in {delay:.2f}s: {e}"
                )
                if delay > 0:
                    await asyncio.sleep(delay)
            except Exception as e:
                self._record_failure(identity, report, e, attempt)
                return

    def _record_failure(self, identity: WalletIdentity, report: UpsertReport, error: Exception, attempts: int) -> None:
        report.failed += 1
        report.errors.append({
            "wallet": identity.wallet,
            "error": f"{type(error).__name__}: {error}",
            "attempts": attempts,
        })
        logger.error(f"[SOCIAL_GRAPH] Giving up on {identity.wallet} after {attempts} attempt(s): {error}")

    async def upsert_manual(self, wallet: str, **fields) -> bool:
        """Admin seeding: trusted at full quality, never clobbered by lookups."""
        identity = WalletIdentity(wallet=wallet, sources=[MANUAL_SOURCE], **fields)
        if not identity.has_positive_identity():
            raise ValueError("Manual entry needs at least one identity field")
        return await self.upsert(identity, manual=True)
