"""
Unit tests for a single delivery attempt.
"""

import asyncio
import json
import time
from datetime import datetime, timezone

import httpx

from webhook_relay.signing import canonicalize, verify
from webhook_relay.types.job import WorkItem
from webhook_relay.worker.delivery import deliver_webhook

SECRET = "test-webhook-secret"
PAYLOAD = {"merchantId": "m1", "amount": 100, "currency": "USD", "transactionId": "t1"}


def make_item(attempts_made: int = 0, target_url: str = "http://receiver.test/webhook") -> WorkItem:
    return WorkItem(
        item_id=10,
        job_id=42,
        payload=PAYLOAD,
        target_url=target_url,
        attempts_made=attempts_made,
        max_attempts=8,
        lease_owner="w1",
        lease_expires_at=datetime.now(timezone.utc),
    )


def client_for(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestDeliverWebhook:
    """Tests for deliver_webhook."""

    async def test_request_is_signed_and_identified(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200)

        async with client_for(handler) as client:
            result = await deliver_webhook(client, make_item(attempts_made=2), SECRET, 12.0)

        assert result.success is True
        assert result.status_code == 200

        request = seen[0]
        body = request.content.decode()
        assert request.method == "POST"
        assert str(request.url) == "http://receiver.test/webhook"
        assert body == canonicalize(PAYLOAD)
        assert json.loads(body) == PAYLOAD
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["X-Attempt-Number"] == "3"
        assert request.headers["X-Idempotency-Key"] == "job-42"
        assert verify(body, request.headers["X-Webhook-Signature"], SECRET)

    async def test_any_2xx_is_success(self):
        async with client_for(lambda request: httpx.Response(204)) as client:
            result = await deliver_webhook(client, make_item(), SECRET, 12.0)

        assert result.success is True

    async def test_non_2xx_is_failure(self):
        async with client_for(lambda request: httpx.Response(503)) as client:
            result = await deliver_webhook(client, make_item(), SECRET, 12.0)

        assert result.success is False
        assert result.status_code == 503
        assert result.error == "Request failed with status code 503"

    async def test_timeout_is_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        async with client_for(handler) as client:
            result = await deliver_webhook(client, make_item(), SECRET, 12.0)

        assert result.success is False
        assert result.status_code is None
        assert result.error == "timeout of 12s exceeded"

    async def test_connection_error_is_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with client_for(handler) as client:
            result = await deliver_webhook(client, make_item(), SECRET, 12.0)

        assert result.success is False
        assert "ConnectError" in result.error

    async def test_trickling_response_is_bounded_by_total_timeout(self):
        """A receiver that keeps sending bytes cannot hold an attempt open."""
        done = asyncio.Event()

        async def trickle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            try:
                await reader.readuntil(b"\r\n\r\n")
                writer.write(b"HTTP/1.1 200 OK\r\nContent-Length: 1000\r\n\r\n")
                while not done.is_set():
                    writer.write(b"x")
                    await writer.drain()
                    await asyncio.sleep(0.2)
            except (ConnectionError, asyncio.IncompleteReadError):
                pass
            finally:
                writer.close()

        server = await asyncio.start_server(trickle, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        item = make_item(target_url=f"http://127.0.0.1:{port}/webhook")

        try:
            async with httpx.AsyncClient(trust_env=False) as client:
                start = time.monotonic()
                result = await deliver_webhook(client, item, SECRET, 1.0)
                elapsed = time.monotonic() - start
        finally:
            done.set()
            server.close()
            await server.wait_closed()

        assert result.success is False
        assert result.status_code is None
        assert result.error == "timeout of 1s exceeded"
        assert elapsed < 2.0
