"""
Distributed Tracing with OpenTelemetry.

Traces requests through the API, the ledger database and the external
provider round trip. Everything here is a no-op unless TRACING_ENABLED is set.
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

from app.config import settings

# Health checks and scrapes would otherwise dominate the trace volume
UNTRACED_URLS = "health,metrics"

# Never attached to a span, whatever the caller passes
_SECRET_ATTRIBUTES = frozenset({"privileged_key", "public_key", "apikey", "authorization"})


def setup_tracing() -> None:
    """Install an OTLP-exporting tracer provider tagged with the service identity."""
    if not settings.tracing_enabled:
        return

    resource = Resource.create(
        {
            "service.name": settings.service_name,
            "service.version": settings.api_version,
        }
    )
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
        )
    )
    trace.set_tracer_provider(provider)


def instrument_fastapi(app: Any) -> None:
    """Trace incoming requests. Must be called after app creation."""
    if not settings.tracing_enabled:
        return

    FastAPIInstrumentor.instrument_app(app, excluded_urls=UNTRACED_URLS)


def instrument_sqlalchemy(engine: Any) -> None:
    """Trace ledger statements issued through an async engine."""
    if not settings.tracing_enabled:
        return

    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def get_tracer(name: str) -> Tracer:
    """Tracer for manual spans; a no-op tracer when no provider is installed."""
    return trace.get_tracer(name)


def add_span_attributes(span: Span, **attributes: Any) -> None:
    """
    Add attributes to a span.

    None values are skipped, non-primitive values are stringified and
    credential-bearing names are dropped.

    Usage:
        add_span_attributes(span, operation="select", table="todos")
    """
    for key, value in attributes.items():
        if value is None or key.lower() in _SECRET_ATTRIBUTES:
            continue
        if isinstance(value, (str, int, float, bool)):
            span.set_attribute(key, value)
        else:
            span.set_attribute(key, str(value))
