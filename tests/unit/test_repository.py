"""
Unit tests for the job repository.
"""

from datetime import timedelta

import pytest

from webhook_relay.constants import JobStatus
from webhook_relay.db.connection import Database
from webhook_relay.db.models import WebhookJob, utcnow
from webhook_relay.db.repository import DUPLICATE, JobRepository

PAYLOAD = {"merchantId": "m1", "amount": 100, "currency": "USD", "transactionId": "t1"}
TARGET = "http://receiver.test/webhook"


async def create(store: Database, key: str = "txn-t1", payload: dict = PAYLOAD) -> int:
    async with store.session() as session:
        return await JobRepository(session).create_job(
            merchant_id=payload["merchantId"],
            payload=payload,
            target_url=TARGET,
            idempotency_key=key,
        )


async def fetch(store: Database, job_id: int) -> WebhookJob | None:
    async with store.session() as session:
        return await JobRepository(session).get_job(job_id)


class TestCreateJob:
    """Tests for job creation and idempotency."""

    async def test_create_job_success(self, store: Database):
        """Test successful job creation."""
        job_id = await create(store)

        job = await fetch(store, job_id)
        assert job is not None
        assert job.merchant_id == "m1"
        assert job.payload == PAYLOAD
        assert job.target_url == TARGET
        assert job.status == JobStatus.PENDING
        assert job.attempt_count == 0
        assert job.last_error is None
        assert job.idempotency_key == "txn-t1"

    async def test_duplicate_key_is_rejected(self, store: Database):
        """Test that a reused idempotency key leaves the original job untouched."""
        job_id = await create(store)

        duplicate = await create(store, payload={**PAYLOAD, "amount": 999})

        assert duplicate is DUPLICATE
        job = await fetch(store, job_id)
        assert job.payload["amount"] == 100

    async def test_duplicate_in_same_session(self, db_session):
        repo = JobRepository(db_session)
        first = await repo.create_job("m1", PAYLOAD, TARGET, "txn-same")
        second = await repo.create_job("m1", PAYLOAD, TARGET, "txn-same")

        assert isinstance(first, int)
        assert second is DUPLICATE

    async def test_get_missing_job(self, db_session):
        assert await JobRepository(db_session).get_job(12345) is None


class TestStatusTransitions:
    """Tests for delivered/failed transitions."""

    async def test_mark_delivered(self, store: Database):
        job_id = await create(store)

        async with store.session() as session:
            assert await JobRepository(session).mark_delivered(job_id, 4) is True

        job = await fetch(store, job_id)
        assert job.status == JobStatus.DELIVERED
        assert job.attempt_count == 4
        assert job.is_terminal

    async def test_mark_delivered_is_idempotent(self, store: Database):
        """Test that a redundant redelivery does not regress the attempt count."""
        job_id = await create(store)

        async with store.session() as session:
            await JobRepository(session).mark_delivered(job_id, 3)
        async with store.session() as session:
            assert await JobRepository(session).mark_delivered(job_id, 3) is True
        async with store.session() as session:
            assert await JobRepository(session).mark_delivered(job_id, 2) is True

        job = await fetch(store, job_id)
        assert job.status == JobStatus.DELIVERED
        assert job.attempt_count == 3

    async def test_mark_failed(self, store: Database):
        job_id = await create(store)

        async with store.session() as session:
            applied = await JobRepository(session).mark_failed(
                job_id, 8, "Request failed with status code 500"
            )

        assert applied is True
        job = await fetch(store, job_id)
        assert job.status == JobStatus.FAILED
        assert job.attempt_count == 8
        assert job.last_error == "Request failed with status code 500"

    async def test_terminal_states_are_final(self, store: Database):
        """Test that delivered jobs cannot fail and failed jobs cannot be delivered."""
        delivered_id = await create(store, key="txn-a")
        failed_id = await create(store, key="txn-b")

        async with store.session() as session:
            repo = JobRepository(session)
            await repo.mark_delivered(delivered_id, 1)
            await repo.mark_failed(failed_id, 8, "boom")

        async with store.session() as session:
            repo = JobRepository(session)
            assert await repo.mark_failed(delivered_id, 2, "late failure") is False
            assert await repo.mark_delivered(failed_id, 9) is False
            assert await repo.record_attempt_error(failed_id, 9, "late") is False

        assert (await fetch(store, delivered_id)).status == JobStatus.DELIVERED
        assert (await fetch(store, failed_id)).status == JobStatus.FAILED

    async def test_record_attempt_error(self, store: Database):
        job_id = await create(store)

        async with store.session() as session:
            repo = JobRepository(session)
            assert await repo.record_attempt_error(job_id, 2, "second failure") is True
            # A stale write for an earlier attempt is ignored
            assert await repo.record_attempt_error(job_id, 1, "first failure") is False

        job = await fetch(store, job_id)
        assert job.status == JobStatus.PENDING
        assert job.attempt_count == 2
        assert job.last_error == "second failure"

    @pytest.mark.parametrize("terminal", [JobStatus.DELIVERED, JobStatus.FAILED])
    async def test_terminal_write_never_lowers_attempt_count(
        self, store: Database, terminal: JobStatus
    ):
        job_id = await create(store)

        async with store.session() as session:
            await JobRepository(session).record_attempt_error(job_id, 5, "fifth failure")

        async with store.session() as session:
            repo = JobRepository(session)
            if terminal == JobStatus.DELIVERED:
                assert await repo.mark_delivered(job_id, 1) is True
            else:
                assert await repo.mark_failed(job_id, 1, "boom") is True

        job = await fetch(store, job_id)
        assert job.status == terminal
        assert job.attempt_count == 5


class TestQueries:
    """Tests for reconciliation and reporting queries."""

    async def test_list_pending_oldest_first(self, store: Database):
        ids = [await create(store, key=f"txn-{n}") for n in range(3)]
        async with store.session() as session:
            await JobRepository(session).mark_delivered(ids[1], 1)

        async with store.session() as session:
            pending = await JobRepository(session).list_pending_older_than()

        assert [job.id for job in pending] == [ids[0], ids[2]]

    async def test_list_pending_respects_threshold(self, store: Database):
        await create(store)

        async with store.session() as session:
            repo = JobRepository(session)
            older = await repo.list_pending_older_than(utcnow() - timedelta(seconds=60))
            newer = await repo.list_pending_older_than(utcnow() + timedelta(seconds=1))

        assert older == []
        assert len(newer) == 1

    async def test_status_summary(self, store: Database):
        ids = [await create(store, key=f"txn-{n}") for n in range(4)]
        async with store.session() as session:
            repo = JobRepository(session)
            await repo.mark_delivered(ids[0], 1)
            await repo.mark_delivered(ids[1], 4)
            await repo.mark_failed(ids[2], 8, "boom")

        async with store.session() as session:
            summary = await JobRepository(session).get_status_summary()

        by_status = {row.status: row for row in summary}
        assert set(by_status) == {JobStatus.PENDING, JobStatus.DELIVERED, JobStatus.FAILED}
        assert by_status[JobStatus.DELIVERED].count == 2
        assert by_status[JobStatus.DELIVERED].avg_attempts == pytest.approx(2.5)
        assert by_status[JobStatus.DELIVERED].max_attempts == 4
        assert by_status[JobStatus.FAILED].max_attempts == 8
        assert by_status[JobStatus.PENDING].count == 1
        assert by_status[JobStatus.PENDING].avg_attempts == 0
