"""
Reference webhook receiver.

A small FastAPI app that behaves the way merchants are expected to: it checks
the signature over the raw body, deduplicates on the idempotency key, and
answers 2xx once it has accepted a webhook. A configurable share of requests
fails with 500 so retry behaviour can be watched end to end.
"""

import logging
import random
from dataclasses import dataclass, field

import uvicorn
from fastapi import FastAPI, Request, Response, status

from webhook_relay.config import get_settings
from webhook_relay.constants import (
    ATTEMPT_NUMBER_HEADER,
    IDEMPOTENCY_KEY_HEADER,
    SIGNATURE_HEADER,
)
from webhook_relay.observability.logging import setup_logging
from webhook_relay.signing import verify

logger = logging.getLogger(__name__)


@dataclass
class ReceiverStats:
    received: int = 0
    accepted: int = 0
    failed: int = 0
    rejected_signatures: int = 0
    duplicates: int = 0
    seen_keys: set[str] = field(default_factory=set)


def create_receiver_app(
    secret: str,
    failure_rate: float = 0.0,
    rng: random.Random | None = None,
) -> FastAPI:
    """
    Build the receiver application.

    Args:
        secret: Shared signing secret.
        failure_rate: Share of valid requests answered with 500.
        rng: Random source for failures.

    Returns:
        FastAPI app; its ReceiverStats live on app.state.stats.
    """
    rng = rng or random.Random()
    stats = ReceiverStats()
    app = FastAPI(title="Webhook Receiver")
    app.state.stats = stats

    @app.post("/webhook")
    async def receive(request: Request) -> Response:
        stats.received += 1
        body = (await request.body()).decode("utf-8")
        attempt = request.headers.get(ATTEMPT_NUMBER_HEADER)
        key = request.headers.get(IDEMPOTENCY_KEY_HEADER)

        if not verify(body, request.headers.get(SIGNATURE_HEADER), secret):
            stats.rejected_signatures += 1
            logger.warning("Invalid signature", extra={"attempt": attempt, "key": key})
            return Response(status_code=status.HTTP_401_UNAUTHORIZED)

        if rng.random() < failure_rate:
            stats.failed += 1
            logger.info("Simulating 500 error", extra={"attempt": attempt, "key": key})
            return Response(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

        if key in stats.seen_keys:
            stats.duplicates += 1
        else:
            stats.seen_keys.add(key)
            stats.accepted += 1

        logger.info("Accepted webhook", extra={"attempt": attempt, "key": key})
        return Response(status_code=status.HTTP_200_OK)

    @app.get("/stats")
    async def get_stats() -> dict:
        return {
            "received": stats.received,
            "accepted": stats.accepted,
            "failed": stats.failed,
            "rejected_signatures": stats.rejected_signatures,
            "duplicates": stats.duplicates,
        }

    return app


def run() -> None:
    """Run the receiver on port 4000 with a 70% failure rate."""
    settings = get_settings()
    setup_logging(settings, "receiver")
    app = create_receiver_app(settings.webhook_secret.get_secret_value(), failure_rate=0.7)
    uvicorn.run(app, host="0.0.0.0", port=4000, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
