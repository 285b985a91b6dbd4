"""Structured logging configuration.

Every sandbox log line is a structlog event. Static fields (service name,
default isolation level, SQL dialect) are attached by ``setup_logging``;
per-transaction fields are bound with ``transaction_context`` while a
statement runs.
"""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterator, Mapping

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

if TYPE_CHECKING:
    from sql_sandbox.ports.inbound.transaction_manager import Transaction

# Libraries whose INFO/WARNING chatter is not useful in sandbox logs.
_QUIET_LOGGERS = ("sqlglot",)


def render_enums(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Log enum members (isolation levels, trigger timings, states) by name."""
    for key, value in event_dict.items():
        if isinstance(value, Enum):
            event_dict[key] = value.name
    return event_dict


def static_context(fields: Mapping[str, Any]) -> Processor:
    """Build a processor that adds ``fields`` to events that lack them."""
    frozen = dict(fields)

    def add_static_context(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        for key, value in frozen.items():
            event_dict.setdefault(key, value)
        return event_dict

    return add_static_context


def setup_logging(
    level: str = "INFO",
    log_format: str = "json",
    context: Mapping[str, Any] | None = None,
) -> None:
    """
    Set up structured logging with structlog.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Log format ('json' or 'console')
        context: Fields added to every event, e.g. the default isolation
            level and dialect of the running sandbox
    """
    numeric_level = getattr(logging, level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.ERROR))

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        static_context(context or {}),
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        render_enums,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None, **initial_context: Any) -> structlog.BoundLogger:
    """Get a bound logger, optionally with initial context."""
    logger = structlog.get_logger(name)
    if initial_context:
        logger = logger.bind(**initial_context)
    return logger


@contextmanager
def transaction_context(txn: Transaction, **extra: Any) -> Iterator[None]:
    """Bind the transaction id and isolation level for every log line in the block.

    Trigger statements run nested inside their parent's block and log
    their own ``statement_depth``.
    """
    with structlog.contextvars.bound_contextvars(
        txn_id=txn.txn_id,
        isolation=txn.isolation_level,
        statement_depth=txn.statement_depth,
        **extra,
    ):
        yield
