"""
Job Ledger

The lookup_jobs row is the pipeline's checkpoint. Every invocation loads the
row, processes one chunk and persists its next state before returning.

Two workers on the same job are kept apart two ways:
1. Lease - claim_job()/claim_next_jobs() set lease_owner + lease_expires_at
   with a conditional UPDATE (same claim pattern as the pipeline checkpoints:
   UPDATE ... WHERE <claimable> RETURNING). A lapsed lease can be taken over.
2. Version - every state write is UPDATE ... WHERE id = :id AND version =
   :expected and bumps version. A writer holding a stale copy of the row gets
   JobLeaseLostError instead of silently double-counting a chunk.

Status transitions: pending -> processing -> completed | failed.
reset_job() is the only way back to pending.
"""
import logging
from datetime import timedelta
from uuid import uuid4
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import case, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from walletgraph.core.config import settings
from walletgraph.core.database import AsyncSessionLocal
from walletgraph.core.exceptions import InvalidJobError, JobLeaseLostError, JobLoadError, JobNotFoundError
from walletgraph.core.utils import normalize_wallet, utcnow
from walletgraph.models.lookup_job import LookupJob
from walletgraph.schemas.job import JobOptions, JobProgress, JobStatus, SocialGraphWriteStatus

logger = logging.getLogger(__name__)

COUNTER_FIELDS = ("twitter_found", "farcaster_found", "any_social_found", "cache_hits")

_ACTIVE_STATUSES = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)


class JobLedger:
    """
    Usage:
        ledger = JobLedger()
        job_id = await ledger.create_job(wallets, original_data, options)
        claimed = await ledger.claim_next_jobs(limit=3, owner="worker-1")
    """

    def __init__(self, session_factory=AsyncSessionLocal, lease_seconds: Optional[int] = None):
        self.session_factory = session_factory
        self.lease_seconds = lease_seconds or settings.JOB_LEASE_SECONDS

    # ----- Create / read -----

    async def create_job(
        self,
        wallets: Iterable[str],
        original_data: Optional[Dict[str, Dict[str, Any]]] = None,
        options: Optional[JobOptions] = None,
        user_id: Optional[str] = None,
    ) -> str:
        """Normalize + de-duplicate (order kept) and insert a pending job."""
        seen = set()
        normalized: List[str] = []
        for wallet in wallets:
            w = normalize_wallet(wallet)
            if w and w not in seen:
                seen.add(w)
                normalized.append(w)

        if not normalized:
            raise InvalidJobError("Job needs at least one wallet")

        options = options or JobOptions()
        side_band = {
            normalize_wallet(k): dict(v or {})
            for k, v in (original_data or {}).items()
            if normalize_wallet(k) in seen
        }

        job = LookupJob(
            id=str(uuid4()),
            user_id=user_id or options.user_id,
            status=JobStatus.PENDING.value,
            wallets=normalized,
            original_data=side_band,
            options=options.model_dump(mode="json"),
            processed_count=0,
            twitter_found=0,
            farcaster_found=0,
            any_social_found=0,
            cache_hits=0,
            retry_count=0,
            version=0,
        )
        async with self.session_factory() as db:
            db.add(job)
            await db.commit()

        logger.info(f"[JOBS] Created job {job.id} with {len(normalized)} wallets")
        return job.id

    async def get_job(self, job_id: str) -> LookupJob:
        try:
            async with self.session_factory() as db:
                job = await db.get(LookupJob, job_id)
        except SQLAlchemyError as e:
            raise JobLoadError(f"Could not load job {job_id}: {e}", job_id=job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found", job_id=job_id)
        return job

    async def get_progress(self, job_id: str) -> JobProgress:
        job = await self.get_job(job_id)
        return JobProgress(
            id=job.id,
            status=job.status,
            total_wallets=job.total_wallets,
            processed_count=job.processed_count or 0,
            current_stage=job.current_stage,
            twitter_found=job.twitter_found or 0,
            farcaster_found=job.farcaster_found or 0,
            any_social_found=job.any_social_found or 0,
            cache_hits=job.cache_hits or 0,
            social_graph_write_status=job.social_graph_write_status,
            error_message=job.error_message,
            retry_count=job.retry_count or 0,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )

    # ----- Versioned writes -----

    async def _versioned_update(self, job: LookupJob, values: Dict[str, Any], action: str) -> int:
        """
        UPDATE the row only if nobody else has written it since ``job`` was
        loaded. Refreshes job.version on success.
        """
        expected = job.version or 0
        values = dict(values)
        values["version"] = LookupJob.version + 1
        values["updated_at"] = utcnow()

        async with self.session_factory() as db:
            result = await db.execute(
                update(LookupJob)
                .where(LookupJob.id == job.id)
                .where(LookupJob.version == expected)
                .values(**values)
                .returning(LookupJob.version)
            )
            new_version = result.scalar_one_or_none()
            if new_version is None:
                await db.rollback()
                logger.warning(
                    f"[JOBS] {action} lost the race on job {job.id} (expected version {expected})"
                )
                raise JobLeaseLostError(
                    f"Job {job.id} was modified by another worker during {action}",
                    job_id=job.id,
                    expected_version=expected,
                )
            await db.commit()

        job.version = new_version
        for key, value in values.items():
            if key != "version":
                setattr(job, key, value)
        return new_version

    async def mark_processing(self, job: LookupJob) -> int:
        now = utcnow()
        return await self._versioned_update(
            job,
            {
                "status": JobStatus.PROCESSING.value,
                "started_at": job.started_at or now,
            },
            "mark_processing",
        )

    async def update_stage(self, job: LookupJob, stage: str) -> int:
        return await self._versioned_update(job, {"current_stage": stage}, f"stage:{stage}")

    async def save_progress(
        self,
        job: LookupJob,
        processed_count: int,
        partial_results: List[Dict[str, Any]],
        counters: Dict[str, int],
        stage: Optional[str] = None,
    ) -> int:
        """
        Persist the resume pointer, accumulated results and cumulative counters.

        processed_count is clamped: never below the stored value, never past
        the wallet list.
        """
        clamped = max(job.processed_count or 0, min(processed_count, job.total_wallets))
        values: Dict[str, Any] = {
            "processed_count": clamped,
            "partial_results": partial_results,
        }
        for name in COUNTER_FIELDS:
            if name in counters:
                values[name] = counters[name]
        if stage is not None:
            values["current_stage"] = stage
        return await self._versioned_update(job, values, "save_progress")

    async def mark_completed(
        self,
        job: LookupJob,
        counters: Dict[str, int],
        partial_results: Optional[List[Dict[str, Any]]] = None,
        write_status: Optional[SocialGraphWriteStatus] = None,
    ) -> int:
        values: Dict[str, Any] = {
            "status": JobStatus.COMPLETED.value,
            "processed_count": job.total_wallets,
            "current_stage": "completed",
            "completed_at": utcnow(),
            "social_graph_write_status": write_status.value if write_status else None,
            "error_message": None,
            "lease_owner": None,
            "lease_expires_at": None,
        }
        if partial_results is not None:
            values["partial_results"] = partial_results
        for name in COUNTER_FIELDS:
            if name in counters:
                values[name] = counters[name]
        return await self._versioned_update(job, values, "mark_completed")

    async def mark_failed(self, job_id: str, message: str) -> bool:
        """
        Fatal error path. Unconditional (not version-checked): a failure must
        be recorded even if our copy of the row is stale. Completed jobs are
        left alone.
        """
        async with self.session_factory() as db:
            result = await db.execute(
                update(LookupJob)
                .where(LookupJob.id == job_id)
                .where(LookupJob.status != JobStatus.COMPLETED.value)
                .values(
                    status=JobStatus.FAILED.value,
                    error_message=(message or "Unknown error")[:2000],
                    retry_count=LookupJob.retry_count + 1,
                    version=LookupJob.version + 1,
                    lease_owner=None,
                    lease_expires_at=None,
                    updated_at=utcnow(),
                )
                .returning(LookupJob.id)
            )
            updated = result.scalar_one_or_none() is not None
            await db.commit()

        if updated:
            logger.error(f"[JOBS] Job {job_id} failed: {message}")
        return updated

    # ----- Leases -----

    def _claimable(self, now):
        return or_(
            LookupJob.lease_owner.is_(None),
            LookupJob.lease_expires_at.is_(None),
            LookupJob.lease_expires_at < now,
        )

    async def claim_job(self, job_id: str, owner: str) -> bool:
        """Take (or renew) the lease on an active job. False if someone else holds it."""
        now = utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                update(LookupJob)
                .where(LookupJob.id == job_id)
                .where(LookupJob.status.in_(_ACTIVE_STATUSES))
                .where(or_(self._claimable(now), LookupJob.lease_owner == owner))
                .values(
                    lease_owner=owner,
                    lease_expires_at=now + timedelta(seconds=self.lease_seconds),
                )
                .returning(LookupJob.id)
            )
            claimed = result.scalar_one_or_none() is not None
            await db.commit()
        return claimed

    async def release_job(self, job_id: str, owner: str) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                update(LookupJob)
                .where(LookupJob.id == job_id)
                .where(LookupJob.lease_owner == owner)
                .values(lease_owner=None, lease_expires_at=None)
                .returning(LookupJob.id)
            )
            released = result.scalar_one_or_none() is not None
            await db.commit()
        return released

    async def claim_next_jobs(self, limit: int, owner: str) -> List[str]:
        """
        Pending jobs first, then processing jobs with no live lease, oldest
        first. Each candidate is claimed individually; losing a claim to
        another worker just skips that job.
        """
        now = utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                select(LookupJob.id)
                .where(LookupJob.status.in_(_ACTIVE_STATUSES))
                .where(self._claimable(now))
                .order_by(
                    case((LookupJob.status == JobStatus.PENDING.value, 0), else_=1),
                    LookupJob.created_at.asc(),
                )
                .limit(limit)
            )
            candidates = [row[0] for row in result.all()]

        claimed = []
        for job_id in candidates:
            if await self.claim_job(job_id, owner):
                claimed.append(job_id)
            else:
                logger.debug(f"[JOBS] Job {job_id} claimed by another worker, skipping")
        return claimed

    # ----- Admin -----

    async def reset_job(self, job_id: str) -> None:
        """Admin reset: back to pending with all progress cleared."""
        values: Dict[str, Any] = {
            "status": JobStatus.PENDING.value,
            "processed_count": 0,
            "partial_results": None,
            "current_stage": None,
            "error_message": None,
            "social_graph_write_status": None,
            "started_at": None,
            "completed_at": None,
            "lease_owner": None,
            "lease_expires_at": None,
            "version": LookupJob.version + 1,
            "updated_at": utcnow(),
        }
        for name in COUNTER_FIELDS:
            values[name] = 0

        async with self.session_factory() as db:
            result = await db.execute(
                update(LookupJob)
                .where(LookupJob.id == job_id)
                .values(**values)
                .returning(LookupJob.id)
            )
            found = result.scalar_one_or_none() is not None
            await db.commit()

        if not found:
            raise JobNotFoundError(f"Job {job_id} not found", job_id=job_id)
        logger.info(f"[JOBS] Job {job_id} reset to pending")
