"""
Outbound webhook delivery.

One call here is one attempt. The receiver may see the same job more than
once, so every request carries the job's stable idempotency key alongside the
signature and the attempt number.
"""

import asyncio
import logging
import time

import httpx

from webhook_relay.constants import (
    ATTEMPT_NUMBER_HEADER,
    DELIVERY_IDEMPOTENCY_PREFIX,
    IDEMPOTENCY_KEY_HEADER,
    SIGNATURE_HEADER,
)
from webhook_relay.errors import DeliveryError
from webhook_relay.signing import canonicalize, sign
from webhook_relay.types.job import DeliveryResult, WorkItem

logger = logging.getLogger(__name__)


def delivery_idempotency_key(job_id: int) -> str:
    """Idempotency token sent to the receiver; identical for every retry of a job."""
    return f"{DELIVERY_IDEMPOTENCY_PREFIX}{job_id}"


def build_request_headers(item: WorkItem, signature: str) -> dict[str, str]:
    """Headers for one delivery attempt."""
    return {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: signature,
        ATTEMPT_NUMBER_HEADER: str(item.attempt_number),
        IDEMPOTENCY_KEY_HEADER: delivery_idempotency_key(item.job_id),
    }


async def deliver_webhook(
    client: httpx.AsyncClient,
    item: WorkItem,
    secret: str,
    timeout_seconds: float,
) -> DeliveryResult:
    """
    POST the signed payload to the item's target.

    Any 2xx response is success. Transport errors, timeouts and other
    statuses are failures; none of them raise.

    Args:
        client: Shared HTTP client.
        item: The claimed work item.
        secret: Signing secret.
        timeout_seconds: Bound on the whole attempt, from connect to the
            last byte of the response body.

    Returns:
        DeliveryResult for the attempt.
    """
    body = canonicalize(item.payload)
    headers = build_request_headers(item, sign(body, secret))

    logger.info(
        f"Attempt {item.attempt_number}/{item.max_attempts}",
        extra={
            "job_id": item.job_id,
            "merchant_id": item.payload.get("merchantId"),
            "transaction_id": item.payload.get("transactionId"),
        },
    )

    start = time.monotonic()
    try:
        # httpx timeouts are per phase; a trickling body would never trip them
        async with asyncio.timeout(timeout_seconds):
            response = await client.post(
                item.target_url,
                content=body.encode("utf-8"),
                headers=headers,
                timeout=timeout_seconds,
            )
        if not response.is_success:
            raise DeliveryError(
                f"Request failed with status code {response.status_code}",
                status_code=response.status_code,
            )
    except (httpx.TimeoutException, TimeoutError):
        return DeliveryResult(
            success=False,
            error=f"timeout of {timeout_seconds:g}s exceeded",
            duration_ms=(time.monotonic() - start) * 1000,
        )
    except httpx.HTTPError as e:
        return DeliveryResult(
            success=False,
            error=f"{type(e).__name__}: {e}",
            duration_ms=(time.monotonic() - start) * 1000,
        )
    except DeliveryError as e:
        return DeliveryResult(
            success=False,
            status_code=e.status_code,
            error=str(e),
            duration_ms=(time.monotonic() - start) * 1000,
        )

    return DeliveryResult(
        success=True,
        status_code=response.status_code,
        duration_ms=(time.monotonic() - start) * 1000,
    )
