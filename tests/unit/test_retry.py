"""
Unit tests for retried job store writes.
"""

import pytest
from prometheus_client import REGISTRY
from sqlalchemy.exc import OperationalError

from webhook_relay.constants import METRIC_STATUS_WRITE_FAILURES, JobStatus
from webhook_relay.db.connection import Database
from webhook_relay.db.repository import JobRepository
from webhook_relay.db.retry import write_job_status
from webhook_relay.observability.metrics import get_metrics

PAYLOAD = {"merchantId": "m1", "amount": 100, "currency": "USD", "transactionId": "t1"}


def outage() -> OperationalError:
    return OperationalError("UPDATE webhook_jobs", {}, ConnectionRefusedError("refused"))


class TestWriteJobStatus:
    """Tests for write_job_status."""

    async def test_transient_errors_are_retried(self, store: Database):
        async with store.session() as session:
            job_id = await JobRepository(session).create_job(
                "m1", PAYLOAD, "http://receiver.test/webhook", "txn-t1"
            )

        calls = 0

        async def flaky_mark_delivered(repo: JobRepository) -> bool:
            nonlocal calls
            calls += 1
            if calls < 3:
                raise outage()
            return await repo.mark_delivered(job_id, 1)

        result = await write_job_status(
            store, flaky_mark_delivered, attempts=5, description="mark_delivered",
            job_id=job_id, min_wait=0,
        )

        assert result is True
        assert calls == 3
        async with store.session() as session:
            job = await JobRepository(session).get_job(job_id)
        assert job.status == JobStatus.DELIVERED

    async def test_gives_up_after_attempts(self, store: Database):
        get_metrics()
        before = REGISTRY.get_sample_value(METRIC_STATUS_WRITE_FAILURES) or 0.0
        calls = 0

        async def always_down(repo: JobRepository) -> bool:
            nonlocal calls
            calls += 1
            raise outage()

        result = await write_job_status(
            store, always_down, attempts=3, description="mark_failed", job_id=1, min_wait=0,
        )

        assert result is None
        assert calls == 3
        assert REGISTRY.get_sample_value(METRIC_STATUS_WRITE_FAILURES) == before + 1

    async def test_programming_errors_propagate(self, store: Database):
        async def broken(repo: JobRepository) -> bool:
            raise ValueError("bug")

        with pytest.raises(ValueError):
            await write_job_status(
                store, broken, attempts=3, description="mark_failed", job_id=1, min_wait=0,
            )
