"""
Job Queue Configuration

ARQ worker settings for the lookup pipeline.

Run with:
    arq walletgraph.core.job_queue.WorkerSettings
"""
import logging
from urllib.parse import urlparse

from arq import cron
from arq.connections import RedisSettings

from walletgraph.core.config import settings
from walletgraph.core.logging_config import configure_logging
from walletgraph.core.redis_client import close_redis
from walletgraph.jobs.lookup_worker import WORKER_ID, run_lookup_worker
from walletgraph.jobs.stale_refresh import run_stale_refresh
from walletgraph.services.analytics import analytics
from walletgraph.services.lookup_pipeline import build_pipeline, close_pipeline

logger = logging.getLogger(__name__)


def parse_redis_url(url: str) -> RedisSettings:
    """Parse Redis URL into ARQ RedisSettings."""
    if not url:
        # Default to localhost
        return RedisSettings()

    # redis://host:port/db or redis://:password@host:port/db
    parsed = urlparse(url)

    return RedisSettings(
        host=parsed.hostname or "localhost",
        port=parsed.port or 6379,
        password=parsed.password,
        database=int(parsed.path.lstrip("/") or 0) if parsed.path else 0,
        ssl=parsed.scheme == "rediss",
    )


async def on_startup(ctx: dict) -> None:
    configure_logging()
    ctx["worker_id"] = WORKER_ID
    ctx["pipeline"] = build_pipeline()
    logger.info(f"[WORKER] Started {WORKER_ID}")


async def on_shutdown(ctx: dict) -> None:
    pipeline = ctx.get("pipeline")
    if pipeline is not None:
        await close_pipeline(pipeline)
    await analytics.flush()
    await close_redis()
    logger.info(f"[WORKER] Stopped {WORKER_ID}")


class WorkerSettings:
    """
    ARQ Worker configuration.

    Schedules:
    - Lookup worker: every minute
    - Stale social graph refresh: daily at 3 AM UTC
    """

    functions = [
        run_lookup_worker,
        run_stale_refresh,
    ]

    cron_jobs = [
        # One chunk per claimed job per tick
        cron(
            run_lookup_worker,
            second=0,
            unique=True,
        ),

        # Stale refresh - daily at 3 AM UTC
        cron(
            run_stale_refresh,
            hour=3,
            minute=0,
            unique=True,
        ),
    ]

    on_startup = on_startup
    on_shutdown = on_shutdown

    # Redis connection (falls back to REDIS_URL)
    redis_settings = parse_redis_url(settings.ARQ_REDIS_URL or settings.REDIS_URL)

    # Worker settings
    max_jobs = 10
    job_timeout = max(settings.JOB_LEASE_SECONDS, 300)
    keep_result = 3600  # 1 hour

    # Lookup jobs checkpoint themselves; ARQ retries would double up
    max_tries = 1
