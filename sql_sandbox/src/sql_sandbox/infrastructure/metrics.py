"""Prometheus metrics for the SQL sandbox."""

from __future__ import annotations

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    start_http_server,
    REGISTRY,
    CollectorRegistry,
)


class MetricsRegistry:
    """Registry of all sandbox metrics."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        """Initialize metrics registry."""
        self._registry = registry or REGISTRY

        # Transaction metrics
        self.transactions_total = Counter(
            "sandbox_transactions_total",
            "Total number of finished transactions",
            ["status"],  # committed, aborted
            registry=self._registry,
        )

        self.transactions_active = Gauge(
            "sandbox_transactions_active",
            "Number of active transactions",
            registry=self._registry,
        )

        self.write_conflicts_total = Counter(
            "sandbox_write_conflicts_total",
            "Total write-intent conflicts detected",
            registry=self._registry,
        )

        # Statement metrics
        self.statement_latency_seconds = Histogram(
            "sandbox_statement_latency_seconds",
            "Statement latency in seconds",
            ["statement"],  # select, insert, update, delete, merge, ddl
            buckets=(0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 5.0),
            registry=self._registry,
        )

        self.statements_total = Counter(
            "sandbox_statements_total",
            "Total number of statements executed",
            ["statement", "status"],  # status: success, error
            registry=self._registry,
        )

        self.rows_scanned_total = Counter(
            "sandbox_rows_scanned_total",
            "Total rows produced by table scans",
            registry=self._registry,
        )

        # Trigger metrics
        self.trigger_invocations_total = Counter(
            "sandbox_trigger_invocations_total",
            "Total trigger procedure invocations",
            ["timing"],  # before, after
            registry=self._registry,
        )

        # View metrics
        self.view_cache_total = Counter(
            "sandbox_view_cache_total",
            "Materialized view cache lookups",
            ["result"],  # hit, miss
            registry=self._registry,
        )

        self.info = Info(
            "sql_sandbox",
            "SQL sandbox information",
            registry=self._registry,
        )


# Global metrics registry
_metrics: MetricsRegistry | None = None


def setup_metrics(port: int = 8001, registry: CollectorRegistry | None = None) -> MetricsRegistry:
    """
    Set up Prometheus metrics server.

    Args:
        port: Port for the metrics HTTP server
        registry: Optional custom registry

    Returns:
        The metrics registry
    """
    global _metrics
    _metrics = MetricsRegistry(registry)

    from sql_sandbox import __version__
    _metrics.info.info({
        "version": __version__,
    })

    start_http_server(port, registry=registry or REGISTRY)

    return _metrics


def get_metrics() -> MetricsRegistry:
    """Get the global metrics registry."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsRegistry()
    return _metrics
