"""
Job ledger tests against a mocked AsyncSession.

The conditional UPDATE ... RETURNING statements are not executed; the mock
result decides whether the row matched, which is what the ledger reacts to.
"""
from unittest.mock import MagicMock

import pytest

from fakes import wallet
from walletgraph.core.exceptions import InvalidJobError, JobLeaseLostError, JobNotFoundError
from walletgraph.models.lookup_job import LookupJob
from walletgraph.schemas.job import JobOptions, JobStatus, SocialGraphWriteStatus
from walletgraph.services.job_ledger import JobLedger

A, B, C = wallet(1), wallet(2), wallet(3)


def returning(value):
    result = MagicMock()
    result.scalar_one_or_none.return_value = value
    return result


def rows(*values):
    result = MagicMock()
    result.all.return_value = [(v,) for v in values]
    return result


def loaded_job(**fields):
    values = {"id": "job-1", "wallets": [A, B, C], "processed_count": 0, "version": 4}
    values.update(fields)
    return LookupJob(**values)


@pytest.fixture
def job_ledger(session_factory):
    return JobLedger(session_factory=session_factory, lease_seconds=60)


class TestCreateJob:
    @pytest.mark.asyncio
    async def test_normalizes_and_dedupes(self, job_ledger, mock_db):
        job_id = await job_ledger.create_job(
            [A.upper().replace("0X", "0x"), f" {B} ", A, ""],
            original_data={A: {"balance": "10"}, C: {"balance": "99"}},
            options=JobOptions(include_ens=True),
            user_id="user-1",
        )

        job = mock_db.add.call_args.args[0]
        assert job.id == job_id
        assert job.wallets == [A, B]
        assert job.original_data == {A: {"balance": "10"}}
        assert job.options["include_ens"] is True
        assert job.status == JobStatus.PENDING.value
        assert job.user_id == "user-1"
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_empty_job_is_rejected(self, job_ledger, mock_db):
        with pytest.raises(InvalidJobError):
            await job_ledger.create_job(["", "   "])
        mock_db.add.assert_not_called()


class TestReads:
    @pytest.mark.asyncio
    async def test_missing_job(self, job_ledger):
        with pytest.raises(JobNotFoundError):
            await job_ledger.get_job("nope")

    @pytest.mark.asyncio
    async def test_progress_snapshot(self, job_ledger, mock_db):
        mock_db.get.return_value = loaded_job(
            status="processing", processed_count=1, current_stage="providers", twitter_found=1,
        )

        progress = await job_ledger.get_progress("job-1")

        assert progress.total_wallets == 3
        assert progress.percent_complete == 33.3
        assert progress.current_stage == "providers"
        assert progress.status == JobStatus.PROCESSING


class TestVersionedWrites:
    @pytest.mark.asyncio
    async def test_save_progress_bumps_version(self, job_ledger, mock_db):
        mock_db.execute.return_value = returning(5)
        job = loaded_job()

        await job_ledger.save_progress(job, 2, [{"wallet": A}], {"twitter_found": 1}, stage="chunk_saved")

        assert job.version == 5
        assert job.processed_count == 2
        assert job.twitter_found == 1
        assert job.current_stage == "chunk_saved"
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("requested,stored,expected", [(10, 0, 3), (1, 2, 2)])
    async def test_processed_count_is_clamped(self, job_ledger, mock_db, requested, stored, expected):
        mock_db.execute.return_value = returning(5)
        job = loaded_job(processed_count=stored)

        await job_ledger.save_progress(job, requested, [], {})

        assert job.processed_count == expected

    @pytest.mark.asyncio
    async def test_stale_version_loses(self, job_ledger, mock_db):
        mock_db.execute.return_value = returning(None)
        job = loaded_job()

        with pytest.raises(JobLeaseLostError) as exc_info:
            await job_ledger.save_progress(job, 1, [], {})

        assert exc_info.value.details["expected_version"] == 4
        assert job.version == 4
        assert job.processed_count == 0
        mock_db.rollback.assert_awaited_once()
        mock_db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_mark_completed(self, job_ledger, mock_db):
        mock_db.execute.return_value = returning(9)
        job = loaded_job(processed_count=3, lease_owner="worker-1")

        await job_ledger.mark_completed(
            job, {"twitter_found": 2}, write_status=SocialGraphWriteStatus.PARTIAL,
        )

        assert job.status == "completed"
        assert job.social_graph_write_status == "partial"
        assert job.lease_owner is None
        assert job.completed_at is not None

    @pytest.mark.asyncio
    async def test_mark_failed(self, job_ledger, mock_db):
        mock_db.execute.return_value = returning("job-1")
        assert await job_ledger.mark_failed("job-1", "boom") is True

        mock_db.execute.return_value = returning(None)
        assert await job_ledger.mark_failed("job-1", "boom") is False


class TestLeases:
    @pytest.mark.asyncio
    async def test_claim_next_jobs_skips_lost_claims(self, job_ledger, mock_db):
        mock_db.execute.side_effect = [rows("job-1", "job-2"), returning("job-1"), returning(None)]

        claimed = await job_ledger.claim_next_jobs(limit=5, owner="worker-1")

        assert claimed == ["job-1"]
        assert mock_db.execute.await_count == 3

    @pytest.mark.asyncio
    async def test_release(self, job_ledger, mock_db):
        mock_db.execute.return_value = returning("job-1")
        assert await job_ledger.release_job("job-1", "worker-1") is True


class TestReset:
    @pytest.mark.asyncio
    async def test_reset_missing_job(self, job_ledger, mock_db):
        mock_db.execute.return_value = returning(None)
        with pytest.raises(JobNotFoundError):
            await job_ledger.reset_job("nope")

    @pytest.mark.asyncio
    async def test_reset(self, job_ledger, mock_db):
        mock_db.execute.return_value = returning("job-1")
        await job_ledger.reset_job("job-1")
        mock_db.commit.assert_awaited_once()
