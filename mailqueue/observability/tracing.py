"""
OpenTelemetry tracing setup.

Spans cover enqueue, claim and every provider call. With OTEL_ENABLED=false
spans are still created but never exported, which keeps tests and one-shot
commands quiet.
"""

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Tracer

from mailqueue import __version__
from mailqueue.config import get_settings

_tracer: Tracer | None = None
_provider: TracerProvider | None = None


def setup_tracing() -> Tracer:
    """
    Set up OpenTelemetry tracing for the process.

    Safe to call more than once; the first call wins.

    Returns:
        Tracer: The tracer instance.
    """
    global _tracer, _provider

    if _tracer is not None:
        return _tracer

    settings = get_settings()

    _provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.otel_service_name,
                "service.version": __version__,
            }
        )
    )

    if settings.otel_enabled:
        _provider.add_span_processor(
            BatchSpanProcessor(
                OTLPSpanExporter(
                    endpoint=settings.otel_exporter_otlp_endpoint,
                    insecure=True,
                )
            )
        )

    trace.set_tracer_provider(_provider)
    _tracer = trace.get_tracer(settings.otel_service_name)

    return _tracer


def shutdown_tracing() -> None:
    """Flush pending spans. Called on process shutdown."""
    if _provider is not None:
        _provider.shutdown()


def get_tracer() -> Tracer:
    """Get the tracer instance, setting tracing up on first use."""
    return _tracer or setup_tracing()


def set_span_attributes(span: Span, **attributes: Any) -> None:
    """Set span attributes, skipping values that are None."""
    for key, value in attributes.items():
        if value is not None:
            span.set_attribute(key, value)


def instrument_fastapi(app: Any) -> None:
    """
    Instrument FastAPI application with OpenTelemetry.

    Args:
        app: The FastAPI application instance.
    """
    FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy(engine: Any) -> None:
    """
    Instrument SQLAlchemy engine with OpenTelemetry.

    Args:
        engine: The sync engine behind the async engine (AsyncEngine.sync_engine).
    """
    SQLAlchemyInstrumentor().instrument(engine=engine)
