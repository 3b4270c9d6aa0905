"""
Analytics Sink

Fire-and-forget event and API-call recording. emit() schedules the insert
as a background task and returns immediately; nothing here is allowed to
raise into, or block, the lookup pipeline. Write failures are logged at
debug level and dropped.

Workers call flush() on shutdown so in-flight writes aren't lost.
"""
import asyncio
import logging
from typing import Any, Dict, Optional, Set

from walletgraph.core.database import AsyncSessionLocal
from walletgraph.models.analytics import AnalyticsEvent, ApiCallMetric

logger = logging.getLogger(__name__)


class AnalyticsSink:
    def __init__(self, session_factory=AsyncSessionLocal, enabled: bool = True):
        self.session_factory = session_factory
        self.enabled = enabled
        self._pending: Set[asyncio.Task] = set()
        self.dropped = 0

    def _schedule(self, row) -> None:
        if not self.enabled:
            return
        try:
            task = asyncio.create_task(self._write(row))
        except RuntimeError:
            # No running loop (sync caller)
            self.dropped += 1
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, row) -> None:
        try:
            async with self.session_factory() as db:
                db.add(row)
                await db.commit()
        except Exception as e:
            self.dropped += 1
            logger.debug(f"[ANALYTICS] Dropped {type(row).__name__}: {e}")

    def emit(self, event_name: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        try:
            self._schedule(AnalyticsEvent(event_name=event_name, event_metadata=metadata or {}))
        except Exception as e:
            self.dropped += 1
            logger.debug(f"[ANALYTICS] Could not queue {event_name}: {e}")

    def track_api_call(
        self,
        provider: str,
        latency_ms: int,
        status: str,
        wallet_count: int = 0,
        job_id: Optional[str] = None,
    ) -> None:
        try:
            self._schedule(ApiCallMetric(
                provider=provider,
                latency_ms=int(latency_ms or 0),
                status=status,
                wallet_count=wallet_count,
                job_id=job_id,
            ))
        except Exception as e:
            self.dropped += 1
            logger.debug(f"[ANALYTICS] Could not queue api call metric for {provider}: {e}")

    async def flush(self) -> None:
        """Wait for every scheduled write to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


# Process-wide sink shared by workers
analytics = AnalyticsSink()
