"""Retry utilities for job store status writes.

A delivery outcome is already final by the time its status is written, so a
store outage must not lose the write and must not cause another delivery.
Writes are retried with exponential backoff and abandoned (logged and
counted) only after the configured number of attempts.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.exc import SQLAlchemyError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from webhook_relay.db.connection import Database
from webhook_relay.db.repository import JobRepository
from webhook_relay.observability.metrics import get_metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Connection-level failures; constraint violations and bugs are not retried
TRANSIENT_STORE_ERRORS = (SQLAlchemyError, OSError)


def _log_retry(retry_state: RetryCallState) -> None:
    """Log retry attempts with context.

    Args:
        retry_state: Current retry state from tenacity.
    """
    logger.warning(
        "Retrying job store write",
        extra={
            "attempt": retry_state.attempt_number,
            "exception": str(retry_state.outcome.exception()) if retry_state.outcome else None,
        },
    )


def status_write_budget(attempts: int, min_wait: float = 0.5, max_wait: float = 10.0) -> float:
    """Total backoff sleep status_write_retrying() can spend before giving up."""
    return sum(min(max_wait, max(min_wait, min_wait * 2**n)) for n in range(max(0, attempts - 1)))


def status_write_retrying(
    attempts: int,
    min_wait: float = 0.5,
    max_wait: float = 10.0,
) -> AsyncRetrying:
    """Retry controller for store writes."""
    return AsyncRetrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(TRANSIENT_STORE_ERRORS),
        before_sleep=_log_retry,
        reraise=True,
    )


async def write_job_status(
    store: Database,
    operation: Callable[[JobRepository], Awaitable[T]],
    attempts: int,
    description: str,
    job_id: int,
    min_wait: float = 0.5,
) -> T | None:
    """
    Run a job store write with retries, each try in a fresh session.

    Args:
        store: The job store database.
        operation: Receives a JobRepository and performs the write.
        attempts: Maximum tries.
        description: Short name of the write, for logs.
        job_id: The job being written, for logs.
        min_wait: First backoff delay in seconds.

    Returns:
        The operation's result, or None if every try failed.
    """
    try:
        async for attempt in status_write_retrying(attempts, min_wait=min_wait):
            with attempt:
                async with store.session() as session:
                    return await operation(JobRepository(session))
    except TRANSIENT_STORE_ERRORS as e:
        logger.error(
            f"Giving up on {description}",
            extra={"job_id": job_id, "error": str(e)},
        )
        get_metrics().record_status_write_failure()
    return None
