"""OpenTelemetry tracing configuration for settlement runs."""
from typing import Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from sqlalchemy.ext.asyncio import AsyncEngine

from metered_billing.config import Settings, settings as default_settings


def setup_tracing(engine: AsyncEngine, config: Optional[Settings] = None) -> None:
    """
    Configure OpenTelemetry tracing with SQLAlchemy instrumentation.

    Until this is called, spans from ``get_tracer`` are no-ops.

    Args:
        engine: Async engine whose queries should be traced
        config: Settings to read the service name and exporter endpoint from
    """
    config = config or default_settings

    # Create resource with service name
    resource = Resource(attributes={SERVICE_NAME: config.otel_service_name})

    # Create tracer provider with an OTLP exporter
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=config.otel_exporter_otlp_endpoint)))

    # Set global tracer provider
    trace.set_tracer_provider(provider)

    # Async engines are instrumented through their sync core
    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def get_tracer(name: str) -> trace.Tracer:
    """
    Get a tracer instance for creating custom spans.

    Args:
        name: Tracer name (typically module name)

    Returns:
        Tracer: OpenTelemetry tracer instance
    """
    return trace.get_tracer(name)
