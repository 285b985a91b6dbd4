"""Error taxonomy surfaced at the sandbox boundary.

Every engine error derives from SandboxError and carries enough context
(table, key, constraint name) for a caller to report it or retry.
"""

from __future__ import annotations

from typing import Any


class SandboxError(Exception):
    """Base class for all sandbox errors."""

    def __init__(
        self,
        message: str,
        *,
        table: str | None = None,
        key: Any = None,
        constraint: str | None = None,
    ) -> None:
        super().__init__(message)
        self.table = table
        self.key = key
        self.constraint = constraint


class NotFoundError(SandboxError):
    """A table, view, column, index or trigger could not be resolved."""


class AmbiguousColumnError(SandboxError):
    """An unqualified column name matches more than one source."""


class ConflictError(SandboxError):
    """A definition already exists, or an object cannot be changed that way."""


class SchemaError(SandboxError):
    """A table, view, index or trigger definition is invalid."""


class ConstraintViolationError(SandboxError):
    """An integrity constraint (NOT NULL, CHECK, type, foreign key, ...) failed."""


class DuplicateKeyError(ConstraintViolationError):
    """A primary-key or unique-index value already exists."""


class WriteConflictError(SandboxError):
    """Another transaction holds the row's write intent, or committed it first.

    The transaction that receives this error has been rolled back and
    should be retried from the start.
    """

    def __init__(self, message: str, *, blocking_txn: int | None = None, **context: Any) -> None:
        super().__init__(message, **context)
        self.blocking_txn = blocking_txn


class VetoError(SandboxError):
    """A BEFORE trigger rejected the mutation; the statement is undone."""

    def __init__(self, message: str, *, trigger: str | None = None, **context: Any) -> None:
        super().__init__(message, **context)
        self.trigger = trigger


class TriggerRecursionError(SandboxError):
    """Trigger nesting exceeded the configured maximum depth."""


class TransactionStateError(SandboxError):
    """The transaction is not ACTIVE (already committed or aborted)."""


class EvaluationError(SandboxError):
    """An expression could not be evaluated (bad operand types, division by zero, ...)."""
