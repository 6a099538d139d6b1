"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from webhook_relay.constants import (
    METRIC_DELIVERY_ATTEMPTS,
    METRIC_DELIVERY_LATENCY,
    METRIC_EVENTS_DUPLICATE,
    METRIC_EVENTS_SUBMITTED,
    METRIC_ITEMS_STALLED,
    METRIC_JOBS_FINISHED,
    METRIC_JOBS_RECONCILED,
    METRIC_QUEUE_DEPTH,
    METRIC_STATUS_WRITE_FAILURES,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the relay.

    Collects metrics for:
    - Event submissions and duplicate rejections
    - Delivery attempts, their outcome and latency
    - Terminal job outcomes
    - Reconciliation and stalled-item recovery
    - Queue depth
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.events_submitted = Counter(
            METRIC_EVENTS_SUBMITTED,
            "Total number of events accepted",
            ["merchant_id"],
            registry=self._registry,
        )

        self.events_duplicate = Counter(
            METRIC_EVENTS_DUPLICATE,
            "Total number of duplicate submissions rejected",
            registry=self._registry,
        )

        # outcome: success | failure
        self.delivery_attempts = Counter(
            METRIC_DELIVERY_ATTEMPTS,
            "Total number of delivery attempts",
            ["outcome"],
            registry=self._registry,
        )

        self.delivery_latency = Histogram(
            METRIC_DELIVERY_LATENCY,
            "Delivery attempt latency in seconds",
            ["outcome"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0),
            registry=self._registry,
        )

        # status: delivered | failed
        self.jobs_finished = Counter(
            METRIC_JOBS_FINISHED,
            "Total number of jobs reaching a terminal status",
            ["status"],
            registry=self._registry,
        )

        self.jobs_reconciled = Counter(
            METRIC_JOBS_RECONCILED,
            "Total number of pending jobs re-enqueued by the reconciler",
            registry=self._registry,
        )

        self.items_stalled = Counter(
            METRIC_ITEMS_STALLED,
            "Total number of dispatch items whose lease expired",
            ["action"],
            registry=self._registry,
        )

        self.status_write_failures = Counter(
            METRIC_STATUS_WRITE_FAILURES,
            "Job store status writes abandoned after retries",
            registry=self._registry,
        )

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of live items in the dispatch queue",
            registry=self._registry,
        )

    def record_event_submitted(self, merchant_id: str) -> None:
        """Record an accepted event."""
        self.events_submitted.labels(merchant_id=merchant_id).inc()

    def record_event_duplicate(self) -> None:
        """Record a rejected duplicate."""
        self.events_duplicate.inc()

    def record_delivery_attempt(self, success: bool, duration_seconds: float) -> None:
        """Record one delivery attempt."""
        outcome = "success" if success else "failure"
        self.delivery_attempts.labels(outcome=outcome).inc()
        self.delivery_latency.labels(outcome=outcome).observe(duration_seconds)

    def record_job_finished(self, status: str) -> None:
        """Record a terminal job transition."""
        self.jobs_finished.labels(status=status).inc()

    def record_reconciled(self, count: int) -> None:
        """Record re-enqueued jobs."""
        if count:
            self.jobs_reconciled.inc(count)

    def record_stalled(self, requeued: int, failed: int) -> None:
        """Record stalled-item recovery."""
        if requeued:
            self.items_stalled.labels(action="requeued").inc(requeued)
        if failed:
            self.items_stalled.labels(action="failed").inc(failed)

    def record_status_write_failure(self) -> None:
        """Record a status write that could not be persisted."""
        self.status_write_failures.inc()

    def update_queue_depth(self, depth: int) -> None:
        """Update live queue depth."""
        self.queue_depth.set(depth)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def get_metrics() -> MetricsCollector:
    """
    Get the process-wide metrics collector, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics
