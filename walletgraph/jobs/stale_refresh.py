"""
Stale Refresh

Daily cron. Re-queues the most looked-up social graph wallets whose
stale_at has passed, so popular wallets get re-verified before a user job
has to pay for the lookup. Runs at the top tier with ENS enabled and
without a history entry.
"""
import logging
from typing import Any, Dict, Optional

from walletgraph.core.config import settings
from walletgraph.schemas.job import AccessTier, JobOptions
from walletgraph.services.job_ledger import JobLedger
from walletgraph.services.social_graph import SocialGraphStore

logger = logging.getLogger(__name__)


async def run_stale_refresh(
    ctx: Optional[dict] = None,
    ledger: Optional[JobLedger] = None,
    graph: Optional[SocialGraphStore] = None,
) -> Dict[str, Any]:
    if not settings.STALE_REFRESH_ENABLED:
        return {"status": "disabled", "queued": 0, "job_id": None}

    ledger = ledger or JobLedger()
    graph = graph or SocialGraphStore()

    wallets = await graph.get_stale_wallets(
        limit=settings.STALE_REFRESH_LIMIT,
        min_lookup_count=settings.STALE_REFRESH_MIN_LOOKUPS,
    )
    if not wallets:
        logger.info("[STALE_REFRESH] No stale wallets to refresh")
        return {"status": "complete", "queued": 0, "job_id": None}

    options = JobOptions.for_tier(
        AccessTier.UNLIMITED,
        include_ens=True,
        save_to_history=False,
    )
    job_id = await ledger.create_job(wallets, options=options)

    logger.info(f"[STALE_REFRESH] Queued {len(wallets)} stale wallets as job {job_id}")
    return {"status": "complete", "queued": len(wallets), "job_id": job_id}
