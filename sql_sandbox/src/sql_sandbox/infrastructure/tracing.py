"""OpenTelemetry tracing configuration.

The sandbox opens one span per statement (``statement_span``) and one per
commit. Span attributes use the ``db.*`` semantic conventions where one
exists and a ``sandbox.*`` prefix otherwise.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Generator, Mapping

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Status, StatusCode

from sql_sandbox.domain.errors import SandboxError

if TYPE_CHECKING:
    from sql_sandbox.ports.inbound.transaction_manager import Transaction

DB_SYSTEM = "sql_sandbox"

_tracer: trace.Tracer | None = None


def setup_tracing(
    service_name: str = "sql_sandbox",
    otlp_endpoint: str | None = None,
    console_export: bool = False,
    resource_attributes: Mapping[str, Any] | None = None,
) -> trace.Tracer:
    """
    Set up OpenTelemetry tracing.

    Args:
        service_name: Name of the service for tracing
        otlp_endpoint: OTLP collector endpoint (e.g., "http://localhost:4317")
        console_export: Whether to also export to console (for debugging)
        resource_attributes: Extra resource attributes, e.g. the SQL dialect

    Returns:
        Configured tracer instance
    """
    global _tracer

    from sql_sandbox import __version__

    attributes: dict[str, Any] = {
        "service.name": service_name,
        "service.version": __version__,
        "db.system": DB_SYSTEM,
    }
    attributes.update(resource_attributes or {})
    provider = TracerProvider(resource=Resource.create(attributes))

    if otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True)))
    if console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    _tracer = provider.get_tracer(service_name, __version__)
    return _tracer


def get_tracer() -> trace.Tracer:
    """Get the global tracer instance."""
    global _tracer
    if _tracer is None:
        _tracer = trace.get_tracer("sql_sandbox")
    return _tracer


@contextmanager
def trace_span(
    name: str,
    attributes: Mapping[str, Any] | None = None,
) -> Generator[trace.Span, None, None]:
    """Open a span, skipping attributes whose value is None.

    Sandbox errors mark the span as failed with the error's class name
    in ``sandbox.error``; the error itself propagates unchanged.
    """
    with get_tracer().start_as_current_span(name) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        try:
            yield span
        except SandboxError as e:
            span.set_attribute("sandbox.error", type(e).__name__)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise


@contextmanager
def statement_span(operation: str, txn: Transaction) -> Generator[trace.Span, None, None]:
    """Span for one statement executed inside ``txn``."""
    with trace_span(
        "sandbox.execute",
        {
            "db.system": DB_SYSTEM,
            "db.operation": operation,
            "sandbox.txn_id": int(txn.txn_id),
            "sandbox.isolation": txn.isolation_level.name,
            "sandbox.statement_depth": txn.statement_depth,
        },
    ) as span:
        yield span
