"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from webhook_relay.observability.logging import setup_logging
from webhook_relay.observability.metrics import MetricsCollector, get_metrics
from webhook_relay.observability.tracing import get_tracer, setup_tracing

__all__ = [
    "setup_logging",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
]
