"""Process-wide sandbox bootstrap.

Wires logging, tracing and metrics from the configuration and registers
a started Sandbox in the global container.

Usage:
    from sql_sandbox.application.runtime import bootstrap, get_sandbox, shutdown

    bootstrap()
    get_sandbox().execute("SELECT 1")
    shutdown()
"""

from __future__ import annotations

from sql_sandbox.application.sandbox import Sandbox
from sql_sandbox.infrastructure.config import Config, get_config
from sql_sandbox.infrastructure.container import get_container, reset_container
from sql_sandbox.infrastructure.logging import get_logger, setup_logging
from sql_sandbox.infrastructure.metrics import MetricsRegistry, setup_metrics
from sql_sandbox.infrastructure.tracing import setup_tracing

logger = get_logger(__name__)


def bootstrap(config: Config | None = None) -> Sandbox:
    """Configure observability and start the global sandbox.

    Raises:
        RuntimeError: If a sandbox is already registered.
    """
    config = config or get_config()
    container = get_container()
    if container.has(Sandbox):
        raise RuntimeError("Sandbox already bootstrapped; call shutdown() first")

    observability = config.observability
    engine = config.engine
    setup_logging(
        level=observability.log_level,
        log_format=observability.log_format,
        context={
            "service": observability.otel_service_name,
            "default_isolation": engine.default_isolation,
            "dialect": engine.sql_dialect,
        },
    )
    setup_tracing(
        service_name=observability.otel_service_name,
        otlp_endpoint=observability.otel_endpoint,
        resource_attributes={"sandbox.dialect": engine.sql_dialect},
    )

    metrics: MetricsRegistry | None = None
    if observability.metrics_enabled:
        metrics = setup_metrics(port=observability.metrics_port)
        container.register_singleton(MetricsRegistry, metrics)

    container.register_singleton(Config, config)
    container.register_factory(
        Sandbox,
        lambda c: _started(Sandbox(c.resolve(Config), metrics)),
        on_teardown=_stop,
    )
    sandbox = container.resolve(Sandbox)
    logger.info("sandbox_bootstrapped", metrics_enabled=metrics is not None)
    return sandbox


def get_sandbox() -> Sandbox:
    """Return the bootstrapped sandbox.

    Raises:
        RuntimeError: If bootstrap() has not been called.
    """
    container = get_container()
    if not container.has(Sandbox):
        raise RuntimeError("Sandbox not bootstrapped; call bootstrap() first")
    return container.resolve(Sandbox)


def shutdown() -> None:
    """Stop the global sandbox and reset the container."""
    reset_container()


def _started(sandbox: Sandbox) -> Sandbox:
    sandbox.start()
    return sandbox


def _stop(sandbox: Sandbox) -> None:
    if sandbox.is_started:
        sandbox.stop()
