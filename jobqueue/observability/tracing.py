"""
OpenTelemetry tracing setup.

Spans are always created through `get_tracer()`; until `setup_tracing()`
installs an exporting provider they go to OpenTelemetry's no-op provider.
"""

import logging
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Tracer

from jobqueue import __version__
from jobqueue.config import get_settings

logger = logging.getLogger(__name__)

# Global tracer instance
_tracer: Tracer | None = None


def setup_tracing(enable_console_export: bool = False) -> Tracer:
    """
    Set up OpenTelemetry tracing with an OTLP exporter.

    Args:
        enable_console_export: If True, also export spans to console.

    Returns:
        Tracer: The tracer instance.
    """
    global _tracer

    settings = get_settings()

    resource = Resource.create(
        {
            "service.name": settings.otel_service_name,
            "service.version": __version__,
        }
    )
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint, insecure=True)
        )
    )
    if enable_console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    _tracer = trace.get_tracer(settings.otel_service_name)
    logger.info(
        "Tracing enabled",
        extra={"endpoint": settings.otel_exporter_otlp_endpoint, "service": settings.otel_service_name},
    )
    return _tracer


def instrument_fastapi(app: Any) -> None:
    """
    Instrument FastAPI application with OpenTelemetry.

    Args:
        app: The FastAPI application instance.
    """
    FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy(engine: Any) -> None:
    """
    Instrument a SQLAlchemy engine with OpenTelemetry.

    Args:
        engine: An AsyncEngine; its sync engine is instrumented.
    """
    SQLAlchemyInstrumentor().instrument(engine=getattr(engine, "sync_engine", engine))


def get_tracer() -> Tracer:
    """
    Get the tracer instance.

    Returns:
        The configured tracer, or the global provider's tracer when tracing
        has not been set up.
    """
    if _tracer is None:
        return trace.get_tracer("jobqueue")
    return _tracer
