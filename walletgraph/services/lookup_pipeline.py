"""
Resolution Pipeline

process_chunk(job_id) advances one lookup job by at most one chunk
(LOOKUP_CHUNK_SIZE wallets) and persists the new checkpoint before
returning. The worker keeps calling it until it reports completed=True.

Per chunk, sources are consulted cheapest first:
    1. social graph  - high + fresh rows are trusted and the wallet is done
                       (no cache read, no provider call); medium rows are
                       merged as a baseline and still looked up
    2. wallet cache  - hits are merged and the wallet is done
    3. ENS + Neynar  - concurrent; ENS only when the job asked for it and the
                       tier allows it, Neynar when the tier allows it
    4. Web3.bio      - one request per wallet, only for wallets still
                       missing a twitter handle
Every merge is fill-only (WalletIdentity.merge), and provider results are
merged in the fixed order ens -> neynar -> web3bio no matter which call
returned first, so the outcome is deterministic.

Provider failures never abort a chunk: run_provider() turns them into an
empty "failed" outcome. Graph/cache read failures degrade to "no data".
Anything else (job load, progress save, finalization) marks the job failed.
A JobLeaseLostError means another worker advanced the job first; this
chunk's work is discarded and the job is left alone.

Finalization (resume pointer reached the end):
    history archive (best-effort) -> social graph upsert_with_retry ->
    write outcome -> status completed -> lookup_completed analytics event
"""
import asyncio
import logging
from typing import Dict, List, Mapping, Optional, Set

from walletgraph.adapters import (
    IdentityProvider,
    ProviderOutcome,
    create_ens_provider,
    create_neynar_provider,
    create_web3bio_provider,
    run_provider,
)
from walletgraph.core.config import settings
from walletgraph.core.exceptions import JobLeaseLostError, JobLoadError, JobNotFoundError
from walletgraph.core.utils import ensure_aware, utcnow
from walletgraph.models.lookup_job import LookupJob
from walletgraph.schemas.identity import WalletIdentity
from walletgraph.schemas.job import JobOptions, JobStatus, ProcessResult, SocialGraphWriteStatus
from walletgraph.services.analytics import AnalyticsSink, analytics as default_analytics
from walletgraph.services.history import LookupArchive
from walletgraph.services.job_ledger import COUNTER_FIELDS, JobLedger
from walletgraph.services.priority import calculate_priority_score, find_holdings_column, parse_holdings_value
from walletgraph.services.quality import classify
from walletgraph.services.social_graph import SocialGraphStore, graph_row_to_partial
from walletgraph.services.wallet_cache import WalletCache

logger = logging.getLogger(__name__)

ENS = "ens"
NEYNAR = "neynar"
FALLBACK = "web3bio"

# Fixed merge order for the concurrent provider tier
PROVIDER_MERGE_ORDER = (ENS, NEYNAR)


class ResolutionPipeline:
    """
    Usage:
        pipeline = build_pipeline()
        result = await pipeline.process_chunk(job_id)
    """

    def __init__(
        self,
        ledger: JobLedger,
        graph: SocialGraphStore,
        cache: WalletCache,
        providers: Mapping[str, IdentityProvider],
        archive: Optional[LookupArchive] = None,
        analytics: Optional[AnalyticsSink] = None,
        chunk_size: Optional[int] = None,
    ):
        self.ledger = ledger
        self.graph = graph
        self.cache = cache
        self.providers = dict(providers)
        self.archive = archive
        self.analytics = analytics or default_analytics
        self.chunk_size = chunk_size or settings.LOOKUP_CHUNK_SIZE

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def process_chunk(self, job_id: str) -> ProcessResult:
        try:
            job = await self.ledger.get_job(job_id)
        except JobNotFoundError as e:
            logger.warning(f"[LOOKUP:{job_id}] {e.message}")
            return ProcessResult(completed=True, processed_count=0, error=e.message)
        except JobLoadError as e:
            logger.error(f"[LOOKUP:{job_id}] {e.message}")
            await self._fail(job_id, e.message)
            return ProcessResult(completed=True, processed_count=0, error=e.message)
        except Exception as e:
            message = f"Failed to load job: {type(e).__name__}: {e}"
            await self._fail(job_id, message)
            return ProcessResult(completed=True, processed_count=0, error=message)

        if JobStatus(job.status).is_terminal:
            # Terminal jobs are a no-op: stored counters, no writes
            return self._result_from_job(job, completed=True)

        try:
            return await self._run_chunk(job)
        except JobLeaseLostError as e:
            logger.info(f"[LOOKUP:{job_id}] {e.message}; discarding this chunk")
            return ProcessResult(
                completed=False,
                processed_count=job.processed_count or 0,
                error=e.message,
            )
        except Exception as e:
            message = f"{type(e).__name__}: {e}"
            logger.exception(f"[LOOKUP:{job_id}] Failed")
            await self._fail(job_id, message)
            result = self._result_from_job(job, completed=True)
            result.error = message
            return result

    async def _fail(self, job_id: str, message: str) -> None:
        try:
            await self.ledger.mark_failed(job_id, message)
        except Exception as e:
            logger.error(f"[LOOKUP:{job_id}] Could not mark job failed ({message}): {e}")

    def _result_from_job(self, job: LookupJob, completed: bool) -> ProcessResult:
        return ProcessResult(
            completed=completed,
            processed_count=job.processed_count or 0,
            twitter_found=job.twitter_found or 0,
            farcaster_found=job.farcaster_found or 0,
            any_social_found=job.any_social_found or 0,
            cache_hits=job.cache_hits or 0,
            social_graph_write_status=(
                SocialGraphWriteStatus(job.social_graph_write_status)
                if job.social_graph_write_status else None
            ),
            error=job.error_message,
        )

    # ------------------------------------------------------------------
    # One chunk
    # ------------------------------------------------------------------

    async def _run_chunk(self, job: LookupJob) -> ProcessResult:
        options = JobOptions.model_validate(job.options or {})
        await self.ledger.mark_processing(job)

        wallets: List[str] = list(job.wallets or [])
        start = job.processed_count or 0
        chunk = wallets[start:start + self.chunk_size]

        results = self._load_results(job)
        counters = {name: getattr(job, name) or 0 for name in COUNTER_FIELDS}

        if not chunk:
            return await self._finalize(job, options, results, counters)

        self._init_chunk(job, chunk, results)
        chunk_ids = [results[w] for w in chunk]

        cache_hits = await self._resolve(job, options, chunk_ids)

        premium = options.tier.is_premium
        for identity in chunk_ids:
            if premium:
                identity.priority_score = calculate_priority_score(identity.holdings, identity.fc_followers)
            else:
                identity.strip_premium()

        counters["twitter_found"] += sum(1 for i in chunk_ids if i.twitter_handle)
        counters["farcaster_found"] += sum(1 for i in chunk_ids if i.farcaster)
        counters["any_social_found"] += sum(1 for i in chunk_ids if i.has_positive_identity())
        counters["cache_hits"] += cache_hits

        processed = start + len(chunk)
        logger.info(
            f"[LOOKUP:{job.id}] {processed}/{len(wallets)} wallets "
            f"(chunk twitter={sum(1 for i in chunk_ids if i.twitter_handle)}, cache_hits={cache_hits})"
        )

        if processed >= len(wallets):
            job.processed_count = processed
            return await self._finalize(job, options, results, counters)

        await self.ledger.save_progress(
            job,
            processed_count=processed,
            partial_results=[identity.to_result() for identity in results.values()],
            counters=counters,
            stage="chunk_saved",
        )
        return ProcessResult(completed=False, processed_count=processed, **counters)

    def _load_results(self, job: LookupJob) -> Dict[str, WalletIdentity]:
        """Accumulated results from earlier chunks, keyed by wallet (insertion = job order)."""
        results: Dict[str, WalletIdentity] = {}
        for raw in job.partial_results or []:
            identity = WalletIdentity.model_validate(raw)
            results[identity.wallet] = identity
        return results

    def _init_chunk(self, job: LookupJob, chunk: List[str], results: Dict[str, WalletIdentity]) -> None:
        original = job.original_data or {}
        holdings_column = None
        for wallet in chunk:
            if original.get(wallet):
                holdings_column = find_holdings_column(original[wallet].keys())
                break

        for wallet in chunk:
            if wallet in results:
                continue
            columns = dict(original.get(wallet) or {})
            holdings = None
            if holdings_column and columns.get(holdings_column) not in (None, ""):
                holdings = parse_holdings_value(columns[holdings_column])
            results[wallet] = WalletIdentity(wallet=wallet, holdings=holdings, columns=columns)

    async def _stage(self, job: LookupJob, stage: str) -> None:
        await self.ledger.update_stage(job, stage)

    # ------------------------------------------------------------------
    # Tiered resolution
    # ------------------------------------------------------------------

    async def _resolve(self, job: LookupJob, options: JobOptions, identities: List[WalletIdentity]) -> int:
        """Run the source tiers for one chunk, merging into ``identities`` in place. Returns cache hits."""
        by_wallet = {i.wallet: i for i in identities}

        # 1. Social graph
        await self._stage(job, "social_graph")
        needing = self._graph_tier(job, by_wallet, await self._read_graph(list(by_wallet)))

        # 2. Cache
        cache_hits = 0
        if needing:
            await self._stage(job, "cache")
            hits = await self._read_cache(needing)
            for wallet, partial in hits.items():
                if wallet in by_wallet:
                    by_wallet[wallet].merge(partial, "cache")
            cache_hits = len(hits)
            needing = [w for w in needing if w not in hits]

        # Wallets a provider answered for in this chunk
        resolved: Set[str] = set()

        # 3. ENS + Neynar, concurrently
        if needing:
            await self._stage(job, "providers")
            outcomes = await self._run_provider_tier(job, options, needing)
            for key in PROVIDER_MERGE_ORDER:
                if key in outcomes:
                    resolved |= self._merge_outcome(by_wallet, outcomes[key], self.providers[key].source_tag)

        # 4. Per-wallet fallback for wallets still missing twitter
        missing_twitter = [w for w in needing if not by_wallet[w].twitter_handle]
        fallback = self.providers.get(FALLBACK)
        if missing_twitter and fallback is not None:
            await self._stage(job, "fallback")
            outcome = await run_provider(fallback, missing_twitter)
            self._record_call(job, outcome)
            resolved |= self._merge_outcome(by_wallet, outcome, fallback.source_tag)

        # Write-through: only wallets a provider resolved. A graph baseline alone
        # must not be cached or the next lookup would skip its refresh.
        fresh = [by_wallet[w] for w in needing if w in resolved]
        if fresh:
            written = await self.cache.set_many(fresh)
            logger.debug(f"[PIPELINE] Cached {written}/{len(fresh)} resolved wallets")

        return cache_hits

    async def _read_graph(self, wallets: List[str]):
        try:
            return await self.graph.get_many(wallets)
        except Exception as e:
            logger.warning(f"[PIPELINE] Social graph read failed, treating all {len(wallets)} wallets as misses: {e}")
            return {}

    async def _read_cache(self, wallets: List[str]):
        try:
            return await self.cache.get_many(wallets)
        except Exception as e:
            logger.warning(f"[PIPELINE] Cache read failed, continuing without cache: {e}")
            return {}

    def _graph_tier(self, job: LookupJob, by_wallet: Dict[str, WalletIdentity], rows) -> List[str]:
        """Merge trusted/baseline graph rows. Returns wallets that still need a lookup."""
        now = utcnow()
        needing: List[str] = []
        hits = stale = misses = 0

        for wallet, identity in by_wallet.items():
            row = rows.get(wallet)
            assessment = classify(row, now)

            if row is not None and assessment.trusted:
                identity.merge(graph_row_to_partial(row), "graph")
                hits += 1
                continue

            if row is None:
                misses += 1
            else:
                stale += 1
                if assessment.usable_as_baseline:
                    identity.merge(graph_row_to_partial(row), "graph")
            needing.append(wallet)

        if hits:
            self.analytics.emit("social_graph_hit", {"job_id": job.id, "count": hits})
        if stale:
            self.analytics.emit("social_graph_stale", {"job_id": job.id, "count": stale})
        if misses:
            self.analytics.emit("social_graph_miss", {"job_id": job.id, "count": misses})

        logger.debug(f"[PIPELINE] Graph tier: {hits} trusted, {stale} refresh, {misses} missing")
        return needing

    async def _run_provider_tier(
        self, job: LookupJob, options: JobOptions, wallets: List[str]
    ) -> Dict[str, ProviderOutcome]:
        selected: List[str] = []
        if options.ens_enabled and ENS in self.providers:
            selected.append(ENS)
        if options.can_use_neynar and NEYNAR in self.providers:
            selected.append(NEYNAR)
        if not selected:
            return {}

        outcomes = await asyncio.gather(*(run_provider(self.providers[key], wallets) for key in selected))
        by_key: Dict[str, ProviderOutcome] = {}
        for key, outcome in zip(selected, outcomes):
            self._record_call(job, outcome)
            by_key[key] = outcome
        return by_key

    def _merge_outcome(
        self, by_wallet: Dict[str, WalletIdentity], outcome: ProviderOutcome, tag: str
    ) -> Set[str]:
        """Merge one provider's results. Returns the wallets it offered data for."""
        answered: Set[str] = set()
        for wallet, partial in outcome.results.items():
            identity = by_wallet.get(wallet)
            if identity is None or partial.is_empty():
                continue
            identity.merge(partial, tag)
            answered.add(wallet)
        return answered

    def _record_call(self, job: LookupJob, outcome: ProviderOutcome) -> None:
        if outcome.status == "skipped":
            return
        self.analytics.track_api_call(
            provider=outcome.provider,
            latency_ms=outcome.latency_ms,
            status=outcome.status,
            wallet_count=outcome.wallet_count,
            job_id=job.id,
        )

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    async def _finalize(
        self,
        job: LookupJob,
        options: JobOptions,
        results: Dict[str, WalletIdentity],
        counters: Dict[str, int],
    ) -> ProcessResult:
        await self._stage(job, "finalizing")

        ordered = [results[w] for w in (job.wallets or []) if w in results]
        result_dicts = [identity.to_result() for identity in ordered]

        if options.save_to_history and self.archive is not None:
            try:
                await self.archive.archive(
                    result_dicts,
                    label=options.history_name,
                    user_id=options.user_id or job.user_id,
                    job_id=job.id,
                )
            except Exception as e:
                logger.warning(f"[LOOKUP:{job.id}] History archive failed: {e}")

        write_status: Optional[SocialGraphWriteStatus] = None
        if options.persist_social_graph:
            report = await self.graph.upsert_with_retry(ordered)
            write_status = report.write_status
            if write_status == SocialGraphWriteStatus.SUCCESS:
                self.analytics.emit("social_graph_write_success", {"job_id": job.id, "count": report.succeeded})
            elif write_status is not None:
                self.analytics.emit("social_graph_write_failed", {
                    "job_id": job.id,
                    "succeeded": report.succeeded,
                    "failed": report.failed,
                    "errors": report.errors[:20],
                })

        await self.ledger.mark_completed(
            job,
            counters=counters,
            partial_results=result_dicts,
            write_status=write_status,
        )

        wallet_count = len(job.wallets or [])
        started = ensure_aware(job.started_at) or utcnow()
        duration_ms = int((utcnow() - started).total_seconds() * 1000)
        self.analytics.emit("lookup_completed", {
            "job_id": job.id,
            "duration_ms": duration_ms,
            "wallet_count": wallet_count,
            "match_rate": round(counters["any_social_found"] / wallet_count, 4) if wallet_count else 0.0,
            "twitter_found": counters["twitter_found"],
            "farcaster_found": counters["farcaster_found"],
            "cache_hits": counters["cache_hits"],
        })
        logger.info(
            f"[LOOKUP:{job.id}] Completed: {wallet_count} wallets, "
            f"twitter={counters['twitter_found']} farcaster={counters['farcaster_found']} "
            f"write_status={write_status.value if write_status else 'none'}"
        )

        return ProcessResult(
            completed=True,
            processed_count=wallet_count,
            social_graph_write_status=write_status,
            **counters,
        )


def build_pipeline(
    providers: Optional[Mapping[str, IdentityProvider]] = None,
    chunk_size: Optional[int] = None,
) -> ResolutionPipeline:
    """Wire the production collaborators."""
    if providers is None:
        providers = {
            ENS: create_ens_provider(),
            NEYNAR: create_neynar_provider(),
            FALLBACK: create_web3bio_provider(),
        }
    return ResolutionPipeline(
        ledger=JobLedger(),
        graph=SocialGraphStore(),
        cache=WalletCache(),
        providers=providers,
        archive=LookupArchive(),
        analytics=default_analytics,
        chunk_size=chunk_size,
    )


async def close_pipeline(pipeline: ResolutionPipeline) -> None:
    for provider in pipeline.providers.values():
        try:
            await provider.close()
        except Exception as e:
            logger.debug(f"[PIPELINE] Error closing {provider.name}: {e}")
