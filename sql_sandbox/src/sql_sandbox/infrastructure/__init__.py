"""Infrastructure layer - cross-cutting concerns."""

from sql_sandbox.infrastructure.config import Config, get_config
from sql_sandbox.infrastructure.logging import setup_logging, get_logger, transaction_context
from sql_sandbox.infrastructure.metrics import setup_metrics, get_metrics, MetricsRegistry
from sql_sandbox.infrastructure.tracing import setup_tracing, get_tracer, statement_span, trace_span

__all__ = [
    "Config",
    "get_config",
    "setup_logging",
    "get_logger",
    "transaction_context",
    "setup_metrics",
    "get_metrics",
    "MetricsRegistry",
    "setup_tracing",
    "get_tracer",
    "statement_span",
    "trace_span",
]
