"""
API request and response type definitions.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from webhook_relay.constants import JobStatus
from webhook_relay.types.job import StatusSummary


class SubmitEventRequest(BaseModel):
    """Request body for submitting a payment event."""

    merchantId: str = Field(..., min_length=1, description="Destination merchant")
    amount: float | int = Field(..., gt=0, description="Transaction amount")
    currency: str = Field(..., min_length=1, description="ISO currency code")
    transactionId: str = Field(..., min_length=1, description="Business transaction id")


class SubmitEventResponse(BaseModel):
    """Response body after an event is accepted."""

    model_config = ConfigDict(populate_by_name=True)

    message: str = "Event accepted. Webhook delivery in progress."
    job_id: int = Field(..., serialization_alias="jobId")


class DuplicateEventResponse(BaseModel):
    """Response body when the transaction id was already submitted."""

    model_config = ConfigDict(populate_by_name=True)

    error: str = "Duplicate event. This transactionId has already been received."
    transaction_id: str = Field(..., serialization_alias="transactionId")


class JobResponse(BaseModel):
    """Single job projection."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    merchant_id: str
    status: JobStatus
    attempt_count: int
    last_error: str | None
    idempotency_key: str
    created_at: datetime
    updated_at: datetime


class StatusSummaryResponse(BaseModel):
    """Job statistics grouped by status."""

    summary: list[StatusSummary]
    timestamp: datetime


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    queue: str
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: str | None = None
