"""
Event ingestion and job status routes.
"""

import logging

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import JSONResponse

from webhook_relay.api.deps import StoreSession, Submissions
from webhook_relay.db.models import utcnow
from webhook_relay.db.repository import JobRepository
from webhook_relay.errors import StoreUnavailableError
from webhook_relay.types.api import (
    DuplicateEventResponse,
    ErrorResponse,
    JobResponse,
    StatusSummaryResponse,
    SubmitEventRequest,
    SubmitEventResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Events"])


@router.post(
    "/events",
    response_model=SubmitEventResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit a payment event",
    description="Persist the event as a webhook job and queue it for delivery. "
    "A transactionId is accepted once.",
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_409_CONFLICT: {"model": DuplicateEventResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
)
async def submit_event(
    request: SubmitEventRequest,
    service: Submissions,
) -> SubmitEventResponse | JSONResponse:
    """
    Accept a payment event.

    The job is durable before this returns 202. If the dispatch queue is
    unreachable the job is still accepted and the reconciler enqueues it.

    Args:
        request: The event.
        service: Submission service bound to the app's databases.

    Returns:
        SubmitEventResponse with the new job id.
    """
    try:
        result = await service.submit(
            merchant_id=request.merchantId,
            amount=request.amount,
            currency=request.currency,
            transaction_id=request.transactionId,
        )
    except StoreUnavailableError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job store unavailable. Retry in a moment.",
        )

    if not result.created:
        logger.info(
            "Duplicate event rejected",
            extra={"transaction_id": request.transactionId},
        )
        body = DuplicateEventResponse(transaction_id=request.transactionId)
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content=body.model_dump(by_alias=True),
        )

    return SubmitEventResponse(job_id=result.job_id)


# Registered before /status/{job_id} so "all" is not parsed as an id
@router.get(
    "/status/all",
    response_model=StatusSummaryResponse,
    summary="Job statistics",
    description="Job counts and attempt statistics grouped by status.",
)
async def get_status_summary(session: StoreSession) -> StatusSummaryResponse:
    summary = await JobRepository(session).get_status_summary()
    return StatusSummaryResponse(summary=summary, timestamp=utcnow())


@router.get(
    "/status/{job_id}",
    response_model=JobResponse,
    summary="Get job status",
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
)
async def get_job_status(job_id: int, session: StoreSession) -> JobResponse:
    """
    Get a single job.

    Args:
        job_id: The job id.
        session: Job store session.

    Returns:
        JobResponse with the job's delivery state.

    Raises:
        HTTPException: If the job does not exist.
    """
    job = await JobRepository(session).get_job(job_id)

    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )

    return JobResponse.model_validate(job)
