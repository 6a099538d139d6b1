"""
Pytest configuration and shared fixtures.

Both databases are file-backed SQLite (aiosqlite) under tmp_path, so the
suite needs no external services. The receiver is an httpx.MockTransport.
"""

from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncSession

from webhook_relay.api.main import create_app
from webhook_relay.config import Settings
from webhook_relay.db.connection import Database
from webhook_relay.db.models import StoreBase
from webhook_relay.dispatch.models import QueueBase
from webhook_relay.dispatch.queue import DispatchQueue
from webhook_relay.service import SubmissionService
from webhook_relay.worker.main import DeliveryWorker

TEST_SECRET = "test-webhook-secret"
TEST_TARGET_URL = "http://receiver.test/webhook"


class FlakyReceiver:
    """
    MockTransport handler standing in for a merchant endpoint.

    The first `failures` requests get `failure_status`; later ones get 200.
    Every request is kept for inspection.
    """

    def __init__(self, failures: int = 0, failure_status: int = 500):
        self.failures = failures
        self.failure_status = failure_status
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if len(self.requests) <= self.failures:
            return httpx.Response(self.failure_status, json={"error": "Internal server error"})
        return httpx.Response(200, json={"received": True})

    @property
    def attempt_numbers(self) -> list[int]:
        return [int(r.headers["X-Attempt-Number"]) for r in self.requests]


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'store.db'}",
        queue_database_url=f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}",
        target_url=TEST_TARGET_URL,
        webhook_secret=SecretStr(TEST_SECRET),
        delivery_timeout_seconds=2.0,
        max_attempts=8,
        backoff_base_seconds=0.0,
        worker_concurrency=2,
        worker_poll_interval_seconds=0.05,
        worker_lease_duration_seconds=5,
        worker_heartbeat_interval_seconds=0.5,
        shutdown_timeout_seconds=5.0,
        status_write_retries=3,
        status_write_retry_wait_seconds=0.0,
        db_connect_retries=1,
        log_level="DEBUG",
        log_format="console",
    )


@pytest_asyncio.fixture
async def store(test_settings: Settings) -> AsyncGenerator[Database]:
    """Connected job store."""
    db = Database(test_settings.database_url, name="store")
    await db.connect(metadata=StoreBase.metadata)
    yield db
    await db.close()


@pytest_asyncio.fixture
async def queue_db(test_settings: Settings) -> AsyncGenerator[Database]:
    """Connected dispatch queue database."""
    db = Database(test_settings.queue_database_url, name="queue")
    await db.connect(metadata=QueueBase.metadata)
    yield db
    await db.close()


@pytest.fixture
def queue(queue_db: Database, test_settings: Settings) -> DispatchQueue:
    return DispatchQueue(queue_db, test_settings)


@pytest_asyncio.fixture
async def db_session(store: Database) -> AsyncGenerator[AsyncSession]:
    """Job store session, committed when the test ends."""
    async with store.session() as session:
        yield session


@pytest.fixture
def service(store: Database, queue: DispatchQueue, test_settings: Settings) -> SubmissionService:
    return SubmissionService(store, queue, test_settings)


@pytest.fixture
def receiver() -> FlakyReceiver:
    return FlakyReceiver()


@pytest_asyncio.fixture
async def http_client(receiver: FlakyReceiver) -> AsyncGenerator[httpx.AsyncClient]:
    """HTTP client whose every request lands on the receiver fixture."""
    async with httpx.AsyncClient(transport=httpx.MockTransport(receiver)) as client:
        yield client


@pytest.fixture
def worker(
    store: Database,
    queue: DispatchQueue,
    test_settings: Settings,
    http_client: httpx.AsyncClient,
) -> DeliveryWorker:
    return DeliveryWorker(
        store,
        queue,
        test_settings,
        http_client=http_client,
        worker_id="test-worker",
    )


@pytest.fixture
def app(test_settings: Settings, store: Database, queue: DispatchQueue) -> FastAPI:
    """FastAPI app bound to the test databases."""
    return create_app(test_settings, store=store, queue=queue)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def sample_event() -> dict[str, Any]:
    """The m1 / 100 USD / t1 payment event."""
    return {
        "merchantId": "m1",
        "amount": 100,
        "currency": "USD",
        "transactionId": "t1",
    }


@pytest.fixture
def drain(worker: DeliveryWorker) -> Callable[..., Awaitable[int]]:
    """Process items until nothing is eligible; returns how many were processed."""

    async def _drain(limit: int = 100) -> int:
        processed = 0
        while processed < limit and await worker.run_once():
            processed += 1
        return processed

    return _drain
