"""
Structured logging for the relay processes.

Modules log through the standard library (logging.getLogger(__name__) with
extra={...}); structlog renders every record, foreign or not, as one JSON or
console line stamped with the process component, the active trace, and the
delivery being worked on.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from opentelemetry import trace
from structlog.types import Processor

from webhook_relay.config import Settings
from webhook_relay.types.job import WorkItem

# Keys that must never reach a log line
REDACTED_KEYS = frozenset({"secret", "webhook_secret", "signature"})

QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpx", "httpcore", "aiosqlite")


def add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Attach trace_id/span_id when a span is recording."""
    span = trace.get_current_span()
    if span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key in REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = "[redacted]"
    return event_dict


def component_stamper(service: str, component: str) -> Processor:
    """
    Build a processor that labels every line with where it came from.

    The API, the worker and the receiver usually share one log stream, so
    each line carries the service name and the process component.
    """

    def stamp(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        event_dict.setdefault("service", service)
        event_dict.setdefault("component", component)
        return event_dict

    return stamp


def setup_logging(settings: Settings, component: str) -> None:
    """
    Configure structlog over the standard library root logger.

    Args:
        settings: log_level, log_format ("json" or "console") and the
            service name.
        component: "api", "worker" or "receiver".
    """
    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        component_stamper(settings.otel_service_name, component),
        add_trace_context,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.ExtraAdder(),
        redact_secrets,
    ]

    if settings.log_format == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def delivery_log_context(item: WorkItem) -> Iterator[None]:
    """
    Tag every log line emitted while an attempt is processed.

    Context variables are per task, so concurrent slots never see each
    other's job ids.
    """
    with structlog.contextvars.bound_contextvars(
        job_id=item.job_id,
        item_id=item.item_id,
        attempt=item.attempt_number,
        worker_id=item.lease_owner,
    ):
        yield
