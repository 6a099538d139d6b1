"""
Type definitions for the webhook relay.
Contains input/output type definitions, grouped by module.
"""

from webhook_relay.types.api import (
    DuplicateEventResponse,
    ErrorResponse,
    HealthResponse,
    JobResponse,
    StatusSummaryResponse,
    SubmitEventRequest,
    SubmitEventResponse,
)
from webhook_relay.types.job import (
    DeliveryResult,
    EventPayload,
    FailureKind,
    FailureOutcome,
    ReconcileReport,
    StalledFailure,
    StalledRecovery,
    StatusSummary,
    WorkItem,
)

__all__ = [
    # API types
    "SubmitEventRequest",
    "SubmitEventResponse",
    "DuplicateEventResponse",
    "JobResponse",
    "StatusSummaryResponse",
    "HealthResponse",
    "ErrorResponse",
    # Job types
    "EventPayload",
    "DeliveryResult",
    "StatusSummary",
    "WorkItem",
    "FailureKind",
    "FailureOutcome",
    "StalledRecovery",
    "StalledFailure",
    "ReconcileReport",
]
