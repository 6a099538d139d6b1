"""
Unit tests for log processors and delivery context.
"""

import asyncio
from datetime import datetime, timezone

import structlog

from webhook_relay.observability.logging import (
    component_stamper,
    delivery_log_context,
    redact_secrets,
)
from webhook_relay.types.job import WorkItem


def make_item(job_id: int) -> WorkItem:
    return WorkItem(
        item_id=job_id * 10,
        job_id=job_id,
        payload={},
        target_url="http://receiver.test/webhook",
        attempts_made=2,
        max_attempts=8,
        lease_owner="w1",
        lease_expires_at=datetime.now(timezone.utc),
    )


class TestProcessors:
    def test_redacts_sensitive_keys(self):
        event = redact_secrets(None, "info", {"event": "sent", "signature": "abc", "job_id": 1})

        assert event == {"event": "sent", "signature": "[redacted]", "job_id": 1}

    def test_component_stamp_does_not_override(self):
        stamp = component_stamper("webhook-relay", "worker")

        assert stamp(None, "info", {"event": "x"}) == {
            "event": "x",
            "service": "webhook-relay",
            "component": "worker",
        }
        assert stamp(None, "info", {"component": "reaper"})["component"] == "reaper"


class TestDeliveryLogContext:
    async def test_binds_and_unbinds(self):
        with delivery_log_context(make_item(42)):
            bound = structlog.contextvars.get_contextvars()

        assert bound["job_id"] == 42
        assert bound["attempt"] == 3
        assert bound["worker_id"] == "w1"
        assert "job_id" not in structlog.contextvars.get_contextvars()

    async def test_concurrent_deliveries_are_isolated(self):
        async def observe(job_id: int) -> int:
            with delivery_log_context(make_item(job_id)):
                await asyncio.sleep(0.01)
                return structlog.contextvars.get_contextvars()["job_id"]

        assert await asyncio.gather(observe(1), observe(2)) == [1, 2]
