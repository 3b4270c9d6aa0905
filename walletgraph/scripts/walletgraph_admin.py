#!/usr/bin/env python3
"""
Wallet Graph Admin CLI

Operator commands over the job ledger and the social graph.

Usage:
    # Job status / progress
    python -m walletgraph.scripts.walletgraph_admin job-status <job_id>

    # Admin reset (back to pending, progress cleared) - the only way to rerun a job
    python -m walletgraph.scripts.walletgraph_admin reset-job <job_id>

    # Run a job to completion in this process
    python -m walletgraph.scripts.walletgraph_admin run-job <job_id>

    # Seed a trusted (manual) social graph entry
    python -m walletgraph.scripts.walletgraph_admin seed 0xabc... --twitter vitalik --farcaster v

    # Social graph quality breakdown
    python -m walletgraph.scripts.walletgraph_admin graph-stats

    # Queue stale wallets for refresh now (normally daily cron)
    python -m walletgraph.scripts.walletgraph_admin refresh-stale

Environment:
    DATABASE_URL, REDIS_URL, NEYNAR_API_KEY, WEB3BIO_API_KEY (see .env)
"""
import argparse
import asyncio
import json
import sys

from walletgraph.adapters.twitter import clean_twitter_handle, twitter_url
from walletgraph.core.exceptions import WalletGraphError
from walletgraph.core.logging_config import configure_logging
from walletgraph.services.job_ledger import JobLedger
from walletgraph.services.social_graph import SocialGraphStore

FARCASTER_PROFILE_URL = "https://warpcast.com/{}"


# =============================================================================
# JOB COMMANDS
# =============================================================================

async def cmd_job_status(args):
    progress = await JobLedger().get_progress(args.job_id)

    print("\n" + "=" * 60)
    print(f"JOB {progress.id}")
    print("=" * 60)
    print(f"  Status:        {progress.status.value}")
    print(f"  Stage:         {progress.current_stage or '-'}")
    print(f"  Progress:      {progress.processed_count:,}/{progress.total_wallets:,} ({progress.percent_complete}%)")
    print(f"  Twitter found: {progress.twitter_found:,}")
    print(f"  Farcaster:     {progress.farcaster_found:,}")
    print(f"  Any social:    {progress.any_social_found:,}")
    print(f"  Cache hits:    {progress.cache_hits:,}")
    if progress.social_graph_write_status:
        print(f"  Graph write:   {progress.social_graph_write_status.value}")
    if progress.error_message:
        print(f"  Error:         {progress.error_message}")
        print(f"  Retries:       {progress.retry_count}")


async def cmd_reset_job(args):
    if not args.force:
        confirm = input(f"Reset job {args.job_id}? All progress will be discarded. [y/N]: ")
        if confirm.lower() != "y":
            print("Cancelled")
            return

    await JobLedger().reset_job(args.job_id)
    print(f"Job {args.job_id} reset to pending")


async def cmd_run_job(args):
    from walletgraph.jobs.lookup_worker import drain_job
    from walletgraph.services.analytics import analytics
    from walletgraph.services.lookup_pipeline import build_pipeline, close_pipeline

    pipeline = build_pipeline()
    try:
        summary = await drain_job(args.job_id, max_chunks=args.max_chunks, pipeline=pipeline)
    finally:
        await close_pipeline(pipeline)
        await analytics.flush()
    print(json.dumps(summary, indent=2, default=str))


# =============================================================================
# SOCIAL GRAPH COMMANDS
# =============================================================================

async def cmd_seed(args):
    fields = {}
    if args.twitter:
        handle = clean_twitter_handle(args.twitter)
        if not handle:
            print(f"Invalid twitter handle: {args.twitter}")
            sys.exit(1)
        fields["twitter_handle"] = handle
        fields["twitter_url"] = twitter_url(handle)
    if args.farcaster:
        username = args.farcaster.strip().lstrip("@").lower()
        fields["farcaster"] = username
        fields["farcaster_url"] = FARCASTER_PROFILE_URL.format(username)
    if args.ens:
        fields["ens_name"] = args.ens.strip().lower()
    if args.github:
        fields["github"] = args.github.strip()

    if not fields:
        print("Nothing to seed: pass at least one of --twitter/--farcaster/--ens/--github")
        sys.exit(1)

    created = await SocialGraphStore().upsert_manual(args.wallet, **fields)
    print(f"{'Created' if created else 'Updated'} manual entry for {args.wallet.lower()}: {fields}")


async def cmd_graph_stats(args):
    stats = await SocialGraphStore().get_stats()

    print("\nSocial Graph:")
    print(f"  Total wallets:  {stats['total']:,}")
    print(f"  High quality:   {stats['high']:,}")
    print(f"  Medium quality: {stats['medium']:,}")
    print(f"  Low quality:    {stats['low']:,}")
    print(f"  Stale:          {stats['stale']:,}")
    print(f"  With twitter:   {stats['with_twitter']:,}")
    print(f"  With farcaster: {stats['with_farcaster']:,}")


async def cmd_refresh_stale(args):
    from walletgraph.jobs.stale_refresh import run_stale_refresh

    result = await run_stale_refresh()
    if result["queued"]:
        print(f"Queued {result['queued']} stale wallets as job {result['job_id']}")
    else:
        print(f"Nothing queued ({result['status']})")


def main():
    parser = argparse.ArgumentParser(
        description="Wallet Graph Admin CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s job-status <job_id>                  # Show job progress
  %(prog)s reset-job <job_id> --force           # Reset without confirmation
  %(prog)s run-job <job_id>                     # Drain a job in-process
  %(prog)s seed 0xabc --twitter foo             # Manual social graph entry
  %(prog)s graph-stats                          # Quality breakdown
        """,
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    status_parser = subparsers.add_parser("job-status", help="Show job status and counters")
    status_parser.add_argument("job_id")
    status_parser.set_defaults(func=cmd_job_status)

    reset_parser = subparsers.add_parser("reset-job", help="Reset a job to pending")
    reset_parser.add_argument("job_id")
    reset_parser.add_argument("--force", action="store_true", help="Skip confirmation")
    reset_parser.set_defaults(func=cmd_reset_job)

    run_parser = subparsers.add_parser("run-job", help="Process a job to completion")
    run_parser.add_argument("job_id")
    run_parser.add_argument("--max-chunks", type=int, default=1000, help="Safety limit on chunks")
    run_parser.set_defaults(func=cmd_run_job)

    seed_parser = subparsers.add_parser("seed", help="Seed a manual social graph entry")
    seed_parser.add_argument("wallet")
    seed_parser.add_argument("--twitter", help="Twitter/X handle or profile URL")
    seed_parser.add_argument("--farcaster", help="Farcaster username")
    seed_parser.add_argument("--ens", help="ENS name")
    seed_parser.add_argument("--github", help="GitHub username")
    seed_parser.set_defaults(func=cmd_seed)

    stats_parser = subparsers.add_parser("graph-stats", help="Social graph quality breakdown")
    stats_parser.set_defaults(func=cmd_graph_stats)

    refresh_parser = subparsers.add_parser("refresh-stale", help="Queue stale wallets for refresh")
    refresh_parser.set_defaults(func=cmd_refresh_stale)

    args = parser.parse_args()
    if not getattr(args, "func", None):
        parser.print_help()
        sys.exit(1)

    configure_logging()
    try:
        asyncio.run(args.func(args))
    except WalletGraphError as e:
        print(f"Failed: [{e.code}] {e.message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
