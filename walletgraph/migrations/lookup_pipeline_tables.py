"""
Database Migration Script for the wallet lookup pipeline

Creates the tables the pipeline needs:
- lookup_jobs: job ledger / checkpoint (lease + version columns)
- social_graph: permanent quality-scored wallet -> identity table
- social_graph_history: per-field change log for social_graph
- lookup_history: archived result sets
- analytics_events / api_call_metrics: fire-and-forget analytics

Idempotent - safe to run multiple times.

Usage:
    python -m walletgraph.migrations.lookup_pipeline_tables
    python -m walletgraph.migrations.lookup_pipeline_tables --rollback
"""
import asyncio
import logging
import sys

from sqlalchemy import text

from walletgraph.core.logging_config import configure_logging

logger = logging.getLogger(__name__)

TABLES = (
    "lookup_jobs",
    "social_graph",
    "social_graph_history",
    "lookup_history",
    "analytics_events",
    "api_call_metrics",
)


async def migrate_lookup_pipeline_tables(engine):
    """Create pipeline tables and indexes if they don't exist."""
    logger.info("Starting lookup pipeline tables migration...")

    async with engine.begin() as conn:
        # ==================== lookup_jobs ====================
        await conn.execute(text("""
            CREATE TABLE IF NOT EXISTS lookup_jobs (
                id VARCHAR(36) PRIMARY KEY,
                user_id VARCHAR(100),
                status VARCHAR(20) NOT NULL DEFAULT 'pending',
                wallets JSONB NOT NULL DEFAULT '[]'::jsonb,
                original_data JSONB NOT NULL DEFAULT '{}'::jsonb,
                options JSONB NOT NULL DEFAULT '{}'::jsonb,
                processed_count INTEGER NOT NULL DEFAULT 0,
                current_stage VARCHAR(50),
                partial_results JSONB,
                twitter_found INTEGER NOT NULL DEFAULT 0,
                farcaster_found INTEGER NOT NULL DEFAULT 0,
                any_social_found INTEGER NOT NULL DEFAULT 0,
                cache_hits INTEGER NOT NULL DEFAULT 0,
                social_graph_write_status VARCHAR(20),
                error_message TEXT,
                retry_count INTEGER NOT NULL DEFAULT 0,
                version INTEGER NOT NULL DEFAULT 0,
                lease_owner VARCHAR(100),
                lease_expires_at TIMESTAMP WITH TIME ZONE,
                created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                started_at TIMESTAMP WITH TIME ZONE,
                completed_at TIMESTAMP WITH TIME ZONE,
                updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                CONSTRAINT ck_lookup_jobs_status
                    CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
                CONSTRAINT ck_lookup_jobs_processed_count
                    CHECK (processed_count >= 0 AND processed_count <= jsonb_array_length(wallets))
            )
        """))
        await conn.execute(text(
            "CREATE INDEX IF NOT EXISTS ix_lookup_jobs_status_created ON lookup_jobs(status, created_at)"
        ))
        await conn.execute(text(
            "CREATE INDEX IF NOT EXISTS ix_lookup_jobs_user_id ON lookup_jobs(user_id)"
        ))

        # ==================== social_graph ====================
        await conn.execute(text("""
            CREATE TABLE IF NOT EXISTS social_graph (
                wallet VARCHAR(64) PRIMARY KEY,
                ens_name VARCHAR(255),
                twitter_handle VARCHAR(50),
                twitter_url VARCHAR(255),
                farcaster VARCHAR(100),
                farcaster_url VARCHAR(255),
                fc_followers INTEGER,
                fc_fid INTEGER,
                lens VARCHAR(255),
                github VARCHAR(100),
                linkedin VARCHAR(255),
                sources JSONB NOT NULL DEFAULT '[]'::jsonb,
                twitter_verified BOOLEAN NOT NULL DEFAULT FALSE,
                farcaster_verified BOOLEAN NOT NULL DEFAULT FALSE,
                quality_score INTEGER NOT NULL DEFAULT 0,
                stale_at TIMESTAMP WITH TIME ZONE NOT NULL,
                first_seen_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                last_updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                lookup_count INTEGER NOT NULL DEFAULT 1,
                CONSTRAINT ck_social_graph_quality CHECK (quality_score BETWEEN 0 AND 100)
            )
        """))
        for name, column in (
            ("ix_social_graph_twitter_handle", "twitter_handle"),
            ("ix_social_graph_farcaster", "farcaster"),
            ("ix_social_graph_stale_at", "stale_at"),
            ("ix_social_graph_quality_score", "quality_score"),
        ):
            await conn.execute(text(f"CREATE INDEX IF NOT EXISTS {name} ON social_graph({column})"))

        # ==================== social_graph_history ====================
        await conn.execute(text("""
            CREATE TABLE IF NOT EXISTS social_graph_history (
                id SERIAL PRIMARY KEY,
                wallet VARCHAR(64) NOT NULL,
                field_name VARCHAR(50) NOT NULL,
                old_value TEXT,
                new_value TEXT,
                source VARCHAR(100),
                changed_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
            )
        """))
        await conn.execute(text(
            "CREATE INDEX IF NOT EXISTS ix_social_graph_history_wallet ON social_graph_history(wallet)"
        ))
        await conn.execute(text(
            "CREATE INDEX IF NOT EXISTS ix_social_graph_history_changed_at ON social_graph_history(changed_at)"
        ))

        # ==================== lookup_history ====================
        await conn.execute(text("""
            CREATE TABLE IF NOT EXISTS lookup_history (
                id VARCHAR(36) PRIMARY KEY,
                name VARCHAR(255),
                user_id VARCHAR(100),
                job_id VARCHAR(36),
                wallet_count INTEGER NOT NULL,
                twitter_found INTEGER NOT NULL,
                farcaster_found INTEGER NOT NULL,
                results JSONB NOT NULL,
                created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
            )
        """))
        await conn.execute(text(
            "CREATE INDEX IF NOT EXISTS ix_lookup_history_created_at ON lookup_history(created_at)"
        ))
        await conn.execute(text(
            "CREATE INDEX IF NOT EXISTS ix_lookup_history_user_id ON lookup_history(user_id)"
        ))

        # ==================== analytics ====================
        await conn.execute(text("""
            CREATE TABLE IF NOT EXISTS analytics_events (
                id SERIAL PRIMARY KEY,
                event_name VARCHAR(100) NOT NULL,
                metadata JSONB,
                created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
            )
        """))
        await conn.execute(text(
            "CREATE INDEX IF NOT EXISTS ix_analytics_events_name_created ON analytics_events(event_name, created_at)"
        ))
        await conn.execute(text("""
            CREATE TABLE IF NOT EXISTS api_call_metrics (
                id SERIAL PRIMARY KEY,
                provider VARCHAR(50) NOT NULL,
                latency_ms INTEGER NOT NULL,
                status VARCHAR(20) NOT NULL,
                wallet_count INTEGER NOT NULL DEFAULT 0,
                job_id VARCHAR(36),
                created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
            )
        """))
        await conn.execute(text(
            "CREATE INDEX IF NOT EXISTS ix_api_call_metrics_provider_created "
            "ON api_call_metrics(provider, created_at)"
        ))

    logger.info("Lookup pipeline tables migration complete!")


async def rollback_lookup_pipeline_tables(engine):
    """Drop every pipeline table. Destroys the social graph - admin use only."""
    logger.warning("Rolling back lookup pipeline tables...")
    async with engine.begin() as conn:
        for table in reversed(TABLES):
            await conn.execute(text(f"DROP TABLE IF EXISTS {table}"))
    logger.warning("Lookup pipeline tables dropped")


async def run_migration():
    """Run the migration using the app's database engine."""
    from walletgraph.core.database import engine

    try:
        await migrate_lookup_pipeline_tables(engine)
    finally:
        await engine.dispose()


async def rollback_migration():
    from walletgraph.core.database import engine

    try:
        await rollback_lookup_pipeline_tables(engine)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    configure_logging()
    if "--rollback" in sys.argv:
        asyncio.run(rollback_migration())
    else:
        asyncio.run(run_migration())
