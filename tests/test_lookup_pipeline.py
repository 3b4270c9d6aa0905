"""
Resolution pipeline tests.

The pipeline runs against in-memory fakes for the ledger, social graph,
cache, providers and analytics, so every property below is checked without
a database or network.
"""
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from fakes import FakeProvider, wallet
from walletgraph.core.exceptions import JobLeaseLostError, JobLoadError, ProviderUnavailableError, StoreError
from walletgraph.core.utils import utcnow
from walletgraph.models.social_graph import SocialGraph
from walletgraph.schemas.identity import PartialIdentity
from walletgraph.schemas.job import AccessTier, JobOptions, SocialGraphWriteStatus
from walletgraph.services.lookup_pipeline import ENS, FALLBACK, NEYNAR, ResolutionPipeline

A, B, C = wallet(1), wallet(2), wallet(3)


def graph_row(address, score, days_until_stale=10, **fields):
    return SocialGraph(
        wallet=address,
        quality_score=score,
        stale_at=utcnow() + timedelta(days=days_until_stale),
        sources=fields.pop("sources", ["ens", "neynar"]),
        **fields,
    )


@pytest.fixture
def providers():
    return {
        ENS: FakeProvider(ENS),
        NEYNAR: FakeProvider(NEYNAR),
        FALLBACK: FakeProvider(FALLBACK),
    }


@pytest.fixture
def pipeline(ledger, graph, cache, providers, recording_analytics):
    return ResolutionPipeline(
        ledger=ledger,
        graph=graph,
        cache=cache,
        providers=providers,
        archive=AsyncMock(),
        analytics=recording_analytics,
        chunk_size=3000,
    )


class TestJobLifecycle:
    @pytest.mark.asyncio
    async def test_missing_job_reports_error(self, pipeline):
        result = await pipeline.process_chunk("does-not-exist")

        assert result.completed
        assert "not found" in result.error

    @pytest.mark.asyncio
    async def test_load_failure_marks_job_failed(self, pipeline, ledger):
        job_id = ledger.add_job([A])
        ledger.get_job = AsyncMock(side_effect=JobLoadError("connection refused", job_id=job_id))

        result = await pipeline.process_chunk(job_id)

        assert result.completed
        assert result.error == "connection refused"
        assert ledger.rows[job_id]["status"] == "failed"
        assert ledger.rows[job_id]["retry_count"] == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["completed", "failed"])
    async def test_terminal_job_is_a_no_op(self, pipeline, ledger, graph, providers, status):
        job_id = ledger.add_job(
            [A, B], status=status, processed_count=2,
            twitter_found=1, farcaster_found=2, any_social_found=2, cache_hits=1,
        )

        result = await pipeline.process_chunk(job_id)

        assert result.completed
        assert (result.processed_count, result.twitter_found, result.farcaster_found, result.cache_hits) == (2, 1, 2, 1)
        assert ledger.writes == []
        assert graph.read_calls == []
        assert all(p.calls == [] for p in providers.values())

    @pytest.mark.asyncio
    async def test_single_chunk_job_completes(self, pipeline, ledger, providers, recording_analytics):
        providers[NEYNAR].results = {A: PartialIdentity(farcaster="alice", twitter_handle="alice")}
        job_id = ledger.add_job([A, B])

        result = await pipeline.process_chunk(job_id)

        assert result.completed
        assert result.processed_count == 2
        assert result.twitter_found == 1
        row = ledger.rows[job_id]
        assert row["status"] == "completed"
        assert row["completed_at"] is not None
        assert row["social_graph_write_status"] == "success"

        completed = recording_analytics.named("lookup_completed")
        assert len(completed) == 1
        assert completed[0]["wallet_count"] == 2
        assert completed[0]["match_rate"] == 0.5

    @pytest.mark.asyncio
    async def test_resume_in_chunks(self, pipeline, ledger, providers):
        wallets = [wallet(i) for i in range(10_000)]
        providers[NEYNAR].results = {
            w: PartialIdentity(farcaster=f"user{i}") for i, w in enumerate(wallets) if i % 4 == 0
        }
        job_id = ledger.add_job(wallets)

        results = [await pipeline.process_chunk(job_id) for _ in range(4)]

        assert [r.processed_count for r in results] == [3000, 6000, 9000, 10000]
        assert [r.completed for r in results] == [False, False, False, True]
        # Cumulative counters = sum of per-chunk contributions
        assert [r.farcaster_found for r in results] == [750, 1500, 2250, 2500]
        assert ledger.rows[job_id]["farcaster_found"] == 2500
        assert len(ledger.results_of(job_id)) == 10_000
        # Each wallet was looked up exactly once
        assert len(providers[NEYNAR].wallets_seen) == 10_000

    @pytest.mark.asyncio
    async def test_processed_count_never_exceeds_wallets(self, pipeline, ledger):
        job_id = ledger.add_job([A, B, C])
        await pipeline.process_chunk(job_id)
        assert ledger.rows[job_id]["processed_count"] == 3

    @pytest.mark.asyncio
    async def test_side_band_columns_and_holdings(self, pipeline, ledger, providers):
        providers[NEYNAR].results = {A: PartialIdentity(farcaster="alice", fc_followers=99)}
        job_id = ledger.add_job(
            [A],
            options=JobOptions.for_tier(AccessTier.PRO),
            original_data={A: {"Balance": "$1,000", "note": "vip"}},
        )

        await pipeline.process_chunk(job_id)

        result = ledger.results_of(job_id)[A]
        assert result["holdings"] == 1000.0
        assert result["columns"] == {"Balance": "$1,000", "note": "vip"}
        assert result["priority_score"] == pytest.approx(2000.0)


class TestTieredResolution:
    @pytest.mark.asyncio
    async def test_trusted_graph_rows_skip_cache_and_providers(self, pipeline, ledger, graph, cache, providers):
        graph.rows[A] = graph_row(A, 90, twitter_handle="alice", farcaster="alice")
        job_id = ledger.add_job([A, B], options=JobOptions.for_tier(AccessTier.PRO, include_ens=True))

        await pipeline.process_chunk(job_id)

        assert cache.read_calls == [[B]]
        for provider in providers.values():
            assert A not in provider.wallets_seen
        assert providers[NEYNAR].calls == [[B]]
        result = ledger.results_of(job_id)[A]
        assert result["twitter_handle"] == "alice"
        assert "graph" in result["sources"]

    @pytest.mark.asyncio
    async def test_all_trusted_means_zero_external_calls(self, pipeline, ledger, graph, cache, providers):
        graph.rows[A] = graph_row(A, 100, twitter_handle="alice")
        graph.rows[B] = graph_row(B, 75, twitter_handle="bob")
        job_id = ledger.add_job([A, B])

        result = await pipeline.process_chunk(job_id)

        assert result.completed
        assert cache.read_calls == []
        assert cache.written == []
        assert all(p.calls == [] for p in providers.values())

    @pytest.mark.asyncio
    async def test_stale_high_row_is_looked_up_again(self, pipeline, ledger, graph, providers):
        graph.rows[A] = graph_row(A, 95, days_until_stale=-1, twitter_handle="old")
        providers[NEYNAR].results = {A: PartialIdentity(twitter_handle="new")}
        job_id = ledger.add_job([A])

        await pipeline.process_chunk(job_id)

        assert providers[NEYNAR].calls == [[A]]
        # Low/stale rows are not merged as a baseline
        assert ledger.results_of(job_id)[A]["twitter_handle"] == "new"

    @pytest.mark.asyncio
    async def test_medium_row_is_baseline_and_still_looked_up(
        self, pipeline, ledger, graph, providers, recording_analytics
    ):
        graph.rows[A] = graph_row(A, 50, twitter_handle="baseline")
        providers[NEYNAR].results = {A: PartialIdentity(twitter_handle="other", farcaster="alice")}
        job_id = ledger.add_job([A])

        await pipeline.process_chunk(job_id)

        assert providers[NEYNAR].calls == [[A]]
        result = ledger.results_of(job_id)[A]
        assert result["twitter_handle"] == "baseline"
        assert result["farcaster"] == "alice"
        assert recording_analytics.named("social_graph_stale")[0]["count"] == 1

    @pytest.mark.asyncio
    async def test_baseline_handle_still_takes_provider_followers(self, pipeline, ledger, graph, providers):
        graph.rows[A] = graph_row(A, 50, farcaster="alice.eth")
        providers[NEYNAR].results = {A: PartialIdentity(farcaster="alice", fc_followers=99, fc_fid=7)}
        job_id = ledger.add_job(
            [A],
            options=JobOptions.for_tier(AccessTier.PRO),
            original_data={A: {"Balance": "1000"}},
        )

        await pipeline.process_chunk(job_id)

        result = ledger.results_of(job_id)[A]
        assert result["farcaster"] == "alice.eth"
        assert result["fc_followers"] == 99
        assert result["fc_fid"] == 7
        assert result["priority_score"] == pytest.approx(2000.0)

    @pytest.mark.asyncio
    async def test_cache_hits_skip_providers(self, pipeline, ledger, cache, providers):
        cache.entries[A] = PartialIdentity(twitter_handle="cached", sources=["neynar"])
        providers[NEYNAR].results = {B: PartialIdentity(farcaster="bob")}
        job_id = ledger.add_job([A, B])

        result = await pipeline.process_chunk(job_id)

        assert result.cache_hits == 1
        assert providers[NEYNAR].calls == [[B]]
        assert A not in providers[FALLBACK].wallets_seen
        # Only freshly resolved wallets are written back
        assert [i.wallet for i in cache.written] == [B]
        assert ledger.results_of(job_id)[A]["sources"] == ["neynar", "cache"]

    @pytest.mark.asyncio
    async def test_fallback_only_for_missing_twitter(self, pipeline, ledger, providers):
        providers[NEYNAR].results = {
            A: PartialIdentity(farcaster="alice", twitter_handle="alice"),
            B: PartialIdentity(farcaster="bob"),
        }
        providers[FALLBACK].results = {B: PartialIdentity(twitter_handle="bob_x")}
        job_id = ledger.add_job([A, B, C])

        await pipeline.process_chunk(job_id)

        assert providers[FALLBACK].calls == [[B, C]]
        assert ledger.results_of(job_id)[B]["twitter_handle"] == "bob_x"

    @pytest.mark.asyncio
    async def test_ens_gated_by_option_and_tier(self, pipeline, ledger, providers):
        free_job = ledger.add_job([A], options=JobOptions.for_tier(AccessTier.FREE, include_ens=True))
        await pipeline.process_chunk(free_job)
        assert providers[ENS].calls == []

        no_flag_job = ledger.add_job([B], options=JobOptions.for_tier(AccessTier.PRO))
        await pipeline.process_chunk(no_flag_job)
        assert providers[ENS].calls == []

        ens_job = ledger.add_job([C], options=JobOptions.for_tier(AccessTier.PRO, include_ens=True))
        await pipeline.process_chunk(ens_job)
        assert providers[ENS].calls == [[C]]

    @pytest.mark.asyncio
    async def test_neynar_gated_by_entitlement(self, pipeline, ledger, providers):
        job_id = ledger.add_job([A], options=JobOptions.for_tier(AccessTier.FREE, can_use_neynar=False))
        await pipeline.process_chunk(job_id)

        assert providers[NEYNAR].calls == []
        assert providers[FALLBACK].calls == [[A]]

    @pytest.mark.asyncio
    async def test_ens_merged_before_neynar(self, pipeline, ledger, providers):
        providers[ENS].results = {A: PartialIdentity(ens_name="alice.eth", twitter_handle="from_ens")}
        providers[NEYNAR].results = {A: PartialIdentity(twitter_handle="from_neynar", farcaster="alice")}
        job_id = ledger.add_job([A], options=JobOptions.for_tier(AccessTier.UNLIMITED, include_ens=True))

        await pipeline.process_chunk(job_id)

        result = ledger.results_of(job_id)[A]
        assert result["twitter_handle"] == "from_ens"
        assert result["farcaster"] == "alice"
        assert result["sources"] == ["ens", "neynar"]


class TestDegradation:
    @pytest.mark.asyncio
    async def test_provider_failure_does_not_abort_chunk(
        self, pipeline, ledger, providers, recording_analytics
    ):
        providers[NEYNAR].error = ProviderUnavailableError("neynar down", provider=NEYNAR)
        providers[FALLBACK].results = {A: PartialIdentity(twitter_handle="alice")}
        job_id = ledger.add_job([A, B])

        result = await pipeline.process_chunk(job_id)

        assert result.completed
        assert result.error is None
        assert ledger.rows[job_id]["status"] == "completed"
        # Neynar gave nothing, so both wallets go to the fallback tier
        assert providers[FALLBACK].calls == [[A, B]]
        statuses = {c["provider"]: c["status"] for c in recording_analytics.api_calls}
        assert statuses == {NEYNAR: "failed", FALLBACK: "ok"}

    @pytest.mark.asyncio
    async def test_outage_does_not_cache_graph_baseline(self, pipeline, ledger, graph, cache, providers):
        graph.rows[A] = graph_row(A, 50, twitter_handle="alice")
        providers[NEYNAR].error = ProviderUnavailableError("neynar down", provider=NEYNAR)
        providers[FALLBACK].error = ProviderUnavailableError("web3bio down", provider=FALLBACK)
        job_id = ledger.add_job([A])

        result = await pipeline.process_chunk(job_id)

        assert result.completed
        assert ledger.results_of(job_id)[A]["twitter_handle"] == "alice"
        assert cache.written == []

    @pytest.mark.asyncio
    async def test_graph_read_failure_degrades_to_lookup(self, pipeline, ledger, graph, providers):
        graph.get_many = AsyncMock(side_effect=StoreError("db blip"))
        providers[NEYNAR].results = {A: PartialIdentity(farcaster="alice")}
        job_id = ledger.add_job([A])

        result = await pipeline.process_chunk(job_id)

        assert result.completed
        assert result.farcaster_found == 1

    @pytest.mark.asyncio
    async def test_history_failure_is_not_fatal(self, pipeline, ledger):
        pipeline.archive.archive.side_effect = RuntimeError("history table missing")
        job_id = ledger.add_job([A], options=JobOptions(save_to_history=True, history_name="run"))

        result = await pipeline.process_chunk(job_id)

        assert result.completed
        assert ledger.rows[job_id]["status"] == "completed"
        pipeline.archive.archive.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_finalize_error_marks_job_failed(self, pipeline, ledger, graph, providers):
        providers[NEYNAR].results = {A: PartialIdentity(farcaster="alice")}
        graph.raise_on_upsert = RuntimeError("connection reset")
        job_id = ledger.add_job([A])

        result = await pipeline.process_chunk(job_id)

        assert result.completed
        assert "connection reset" in result.error
        row = ledger.rows[job_id]
        assert row["status"] == "failed"
        assert row["retry_count"] == 1
        assert "connection reset" in row["error_message"]

    @pytest.mark.asyncio
    async def test_lost_lease_discards_chunk(self, pipeline, ledger):
        ledger.lose_lease_on = "save_progress"
        pipeline.chunk_size = 1
        job_id = ledger.add_job([A, B])

        result = await pipeline.process_chunk(job_id)

        assert not result.completed
        assert result.error
        row = ledger.rows[job_id]
        assert row["status"] == "processing"
        assert row["processed_count"] == 0
        assert row["retry_count"] == 0

    @pytest.mark.asyncio
    async def test_concurrent_writer_loses_on_version(self, pipeline, ledger):
        job_id = ledger.add_job([A, B])
        pipeline.chunk_size = 1
        stale_copy = await ledger.get_job(job_id)

        await pipeline.process_chunk(job_id)
        assert ledger.rows[job_id]["processed_count"] == 1

        with pytest.raises(JobLeaseLostError):
            await ledger.save_progress(stale_copy, 1, [], {})
        assert ledger.rows[job_id]["processed_count"] == 1


class TestFinalization:
    @pytest.mark.asyncio
    async def test_free_tier_strips_premium_fields(self, pipeline, ledger, providers):
        providers[NEYNAR].results = {A: PartialIdentity(farcaster="alice", fc_followers=99)}
        job_id = ledger.add_job([A], original_data={A: {"holdings": "1000"}})

        await pipeline.process_chunk(job_id)

        result = ledger.results_of(job_id)[A]
        assert result["farcaster"] == "alice"
        assert result["fc_followers"] is None
        assert result["priority_score"] is None

    @pytest.mark.asyncio
    async def test_partial_graph_write_outcome(self, pipeline, ledger, graph, providers, recording_analytics):
        providers[NEYNAR].results = {A: PartialIdentity(farcaster="alice"), B: PartialIdentity(farcaster="bob")}
        graph.fail_wallets = {B}
        job_id = ledger.add_job([A, B, C])

        result = await pipeline.process_chunk(job_id)

        assert result.completed
        assert result.social_graph_write_status == SocialGraphWriteStatus.PARTIAL
        assert ledger.rows[job_id]["status"] == "completed"
        assert ledger.rows[job_id]["social_graph_write_status"] == "partial"
        # C had nothing positive so it is not written
        assert [i.wallet for i in graph.upserted] == [A]
        failed = recording_analytics.named("social_graph_write_failed")
        assert failed[0]["failed"] == 1

    @pytest.mark.asyncio
    async def test_persist_disabled_skips_graph(self, pipeline, ledger, graph, providers):
        providers[NEYNAR].results = {A: PartialIdentity(farcaster="alice")}
        job_id = ledger.add_job([A], options=JobOptions(persist_social_graph=False))

        result = await pipeline.process_chunk(job_id)

        assert graph.upserted == []
        assert result.social_graph_write_status is None

    @pytest.mark.asyncio
    async def test_history_archived_in_job_order(self, pipeline, ledger):
        job_id = ledger.add_job([B, A], options=JobOptions(save_to_history=True, history_name="my list"))

        await pipeline.process_chunk(job_id)

        args, kwargs = pipeline.archive.archive.call_args
        assert [r["wallet"] for r in args[0]] == [B, A]
        assert kwargs["label"] == "my list"
        assert kwargs["job_id"] == job_id
