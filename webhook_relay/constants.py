"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Durable job lifecycle states (job store).

    State transitions:
    - PENDING -> DELIVERED (receiver accepted an attempt)
    - PENDING -> FAILED (attempts exhausted)

    DELIVERED and FAILED are terminal.
    """

    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class DispatchStatus(StrEnum):
    """
    Work item states (dispatch queue).

    State transitions:
    - WAITING -> ACTIVE (claimed by a worker)
    - ACTIVE -> COMPLETED (delivery succeeded)
    - ACTIVE -> WAITING (attempt failed, retry scheduled; or lease expired)
    - ACTIVE -> FAILED (attempts exhausted or stalled too often)
    """

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


LIVE_DISPATCH_STATUSES = (DispatchStatus.WAITING, DispatchStatus.ACTIVE)

# Key prefixes
IDEMPOTENCY_KEY_PREFIX = "txn-"
DELIVERY_IDEMPOTENCY_PREFIX = "job-"
RECOVERY_DEDUPE_PREFIX = "recovery-"

# Outbound webhook headers
SIGNATURE_HEADER = "X-Webhook-Signature"
ATTEMPT_NUMBER_HEADER = "X-Attempt-Number"
IDEMPOTENCY_KEY_HEADER = "X-Idempotency-Key"

# Metrics names
METRIC_EVENTS_SUBMITTED = "webhook_events_submitted_total"
METRIC_EVENTS_DUPLICATE = "webhook_events_duplicate_total"
METRIC_DELIVERY_ATTEMPTS = "webhook_delivery_attempts_total"
METRIC_DELIVERY_LATENCY = "webhook_delivery_latency_seconds"
METRIC_JOBS_FINISHED = "webhook_jobs_finished_total"
METRIC_JOBS_RECONCILED = "webhook_jobs_reconciled_total"
METRIC_ITEMS_STALLED = "webhook_dispatch_items_stalled_total"
METRIC_QUEUE_DEPTH = "webhook_dispatch_queue_depth"
METRIC_STATUS_WRITE_FAILURES = "webhook_status_write_failures_total"

# Trace span names
SPAN_SUBMIT_EVENT = "submit_event"
SPAN_DELIVER_WEBHOOK = "deliver_webhook"
SPAN_RECONCILE = "reconcile_pending_jobs"
