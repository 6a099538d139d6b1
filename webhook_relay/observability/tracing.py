"""
OpenTelemetry tracing setup.
"""

import logging
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Tracer

from webhook_relay import __version__
from webhook_relay.config import Settings

logger = logging.getLogger(__name__)

_TRACER_NAME = "webhook_relay"


def setup_tracing(settings: Settings) -> None:
    """
    Set up OpenTelemetry tracing with an OTLP exporter.

    Does nothing unless otel_enabled is set; spans then go to the
    API's no-op provider.
    """
    if not settings.otel_enabled:
        return

    resource = Resource.create(
        {
            "service.name": settings.otel_service_name,
            "service.version": __version__,
        }
    )
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(
                endpoint=settings.otel_exporter_otlp_endpoint,
                insecure=True,
            )
        )
    )
    trace.set_tracer_provider(provider)
    logger.info(
        "Tracing enabled",
        extra={"endpoint": settings.otel_exporter_otlp_endpoint},
    )


def instrument_fastapi(app: Any, settings: Settings) -> None:
    """
    Instrument FastAPI application with OpenTelemetry.

    Args:
        app: The FastAPI application instance.
        settings: Tracing is only wired when otel_enabled is set.
    """
    if settings.otel_enabled:
        FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy(engine: Any, settings: Settings) -> None:
    """
    Instrument a SQLAlchemy engine with OpenTelemetry.

    Args:
        engine: The SQLAlchemy async engine instance.
        settings: Tracing is only wired when otel_enabled is set.
    """
    if settings.otel_enabled:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def get_tracer() -> Tracer:
    """
    Get the relay's tracer from the current provider.

    Returns:
        Tracer: The tracer instance.
    """
    return trace.get_tracer(_TRACER_NAME)
