"""
Lookup Worker

Runs every minute under ARQ. Each tick claims up to WORKER_JOBS_PER_TICK
jobs (pending first, then processing jobs whose lease lapsed), advances
each by exactly one chunk and releases the lease, so a large job is spread
across ticks and never starves newer ones.
"""
import logging
import os
import socket
from typing import Any, Dict, Optional
from uuid import uuid4

from walletgraph.core.config import settings
from walletgraph.services.lookup_pipeline import ResolutionPipeline, build_pipeline

logger = logging.getLogger(__name__)

# Lease owner for this process
WORKER_ID = f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:6]}"

_pipeline: Optional[ResolutionPipeline] = None


def get_pipeline(ctx: Optional[dict] = None) -> ResolutionPipeline:
    """Pipeline from the worker context if present, else a process-wide one."""
    global _pipeline
    if ctx and ctx.get("pipeline") is not None:
        return ctx["pipeline"]
    if _pipeline is None:
        _pipeline = build_pipeline()
    return _pipeline


async def run_lookup_worker(ctx: Optional[dict] = None) -> Dict[str, Any]:
    pipeline = get_pipeline(ctx)
    ledger = pipeline.ledger
    owner = (ctx or {}).get("worker_id") or WORKER_ID

    job_ids = await ledger.claim_next_jobs(settings.WORKER_JOBS_PER_TICK, owner)
    if not job_ids:
        return {"status": "idle", "processed": 0}

    summary: Dict[str, Any] = {"status": "complete", "processed": 0, "completed": [], "failed": [], "jobs": {}}

    for job_id in job_ids:
        try:
            result = await pipeline.process_chunk(job_id)
        finally:
            try:
                await ledger.release_job(job_id, owner)
            except Exception as e:
                logger.warning(f"[WORKER] Could not release lease on job {job_id}: {e}")

        summary["processed"] += 1
        summary["jobs"][job_id] = result.to_dict()
        if result.completed and result.error:
            summary["failed"].append(job_id)
        elif result.completed:
            summary["completed"].append(job_id)

    logger.info(
        f"[WORKER] Tick done: {summary['processed']} jobs advanced, "
        f"{len(summary['completed'])} completed, {len(summary['failed'])} failed"
    )
    return summary


async def drain_job(
    job_id: str,
    max_chunks: int = 1000,
    pipeline: Optional[ResolutionPipeline] = None,
) -> Dict[str, Any]:
    """
    Run chunks back to back until the job finishes. For scripts and admin
    use; the cron worker only ever does one chunk per job per tick.
    """
    pipeline = pipeline or get_pipeline()
    result = None
    chunks = 0

    while chunks < max_chunks:
        result = await pipeline.process_chunk(job_id)
        chunks += 1
        logger.info(f"[WORKER] {job_id}: chunk {chunks} -> {result.processed_count} processed")
        if result.completed:
            break
        if result.error:
            # Lease lost to another worker; let it finish the job
            break

    return {"job_id": job_id, "chunks": chunks, "result": result.to_dict() if result else None}
