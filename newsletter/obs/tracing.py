"""
OpenTelemetry tracing for the API and the background loops.

Spans are always created so ids can be correlated in logs; they are only
exported when OTEL_EXPORTER_OTLP_ENDPOINT points at a collector.
"""
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Status, StatusCode

from newsletter.config import settings


def setup_tracing() -> TracerProvider:
    provider = TracerProvider(resource=Resource.create({
        "service.name": settings.OTEL_SERVICE_NAME,
        "deployment.environment": settings.ENVIRONMENT,
    }))
    if settings.OTEL_EXPORTER_OTLP_ENDPOINT:
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.OTEL_EXPORTER_OTLP_ENDPOINT))
        )
    trace.set_tracer_provider(provider)
    return provider


def instrument_fastapi(app):
    """Emit a server span per request, excluding the probes."""
    FastAPIInstrumentor.instrument_app(app, excluded_urls="health,ready,metrics")
    return app


def instrument_sqlalchemy(engine):
    """Emit a client span per statement issued through ``engine``."""
    SQLAlchemyInstrumentor().instrument(engine=engine)


def get_tracer(name: str):
    return trace.get_tracer(name)


def get_current_trace_id() -> Optional[str]:
    """Hex trace id of the active span, if one is recording."""
    span_context = trace.get_current_span().get_span_context()
    if not span_context.is_valid:
        return None
    return format(span_context.trace_id, '032x')


def add_span_attributes(attributes: Dict[str, Any]):
    span = trace.get_current_span()
    if span.is_recording():
        span.set_attributes({key: value for key, value in attributes.items() if value is not None})


def add_span_error(error: Exception, attributes: Optional[Dict[str, Any]] = None):
    """Mark the active span failed and attach the exception."""
    span = trace.get_current_span()
    if not span.is_recording():
        return
    span.set_status(Status(StatusCode.ERROR, str(error)))
    span.record_exception(error)
    if attributes:
        add_span_attributes(attributes)


@contextmanager
def worker_span(task_name: str, **attributes) -> Iterator[Any]:
    """Span around one iteration of a background loop."""
    tracer = get_tracer("newsletter.worker")
    with tracer.start_as_current_span(
        task_name,
        attributes={"worker.task": task_name, **attributes},
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        yield span
