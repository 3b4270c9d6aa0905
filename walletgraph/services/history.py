"""
Lookup history archive

Best-effort from the pipeline's point of view: archive() raises on failure
and the caller logs and moves on.
"""
import logging
from typing import Any, Dict, List, Optional

from walletgraph.core.database import get_db_session
from walletgraph.models.lookup_history import LookupHistory

logger = logging.getLogger(__name__)


class LookupArchive:
    def __init__(self, session_factory=get_db_session):
        self.session_factory = session_factory

    async def archive(
        self,
        results: List[Dict[str, Any]],
        label: Optional[str] = None,
        user_id: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> str:
        """Store a completed result set. Returns the archive id."""
        entry = LookupHistory(
            name=label,
            user_id=user_id,
            job_id=job_id,
            wallet_count=len(results),
            twitter_found=sum(1 for r in results if r.get("twitter_handle")),
            farcaster_found=sum(1 for r in results if r.get("farcaster")),
            results=results,
        )
        async with self.session_factory() as db:
            db.add(entry)
            await db.flush()

        logger.info(f"[HISTORY] Archived {len(results)} results as {entry.id} (job={job_id})")
        return entry.id
