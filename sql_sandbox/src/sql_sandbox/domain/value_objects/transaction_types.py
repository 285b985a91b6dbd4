"""Transaction-related types and enumerations.

These types define the lifecycle states and isolation levels for sandbox
transactions, together with the trigger timing and event vocabulary.
"""

from __future__ import annotations

from enum import Enum, auto


class TransactionState(Enum):
    """Transaction lifecycle states.

    State machine:

        begin() ──> ACTIVE ──commit()──> COMMITTED
                      │
                      └──rollback() / failed commit──> ABORTED

    COMMITTED and ABORTED are terminal: a transaction in either state
    accepts no further statements, commits or rollbacks.
    """

    ACTIVE = auto()
    """Transaction is running and can execute statements."""

    COMMITTED = auto()
    """Transaction has committed. All staged changes are visible to later snapshots."""

    ABORTED = auto()
    """Transaction was rolled back. Its working set has been discarded."""

    def is_terminal(self) -> bool:
        """Check if this is a terminal state (COMMITTED or ABORTED)."""
        return self in (TransactionState.COMMITTED, TransactionState.ABORTED)

    def is_active(self) -> bool:
        """Check if transaction can still perform operations."""
        return self == TransactionState.ACTIVE


class IsolationLevel(Enum):
    """Transaction isolation levels.

    - READ_COMMITTED: each statement reads the latest committed state as of
      the statement's start
    - REPEATABLE_READ: same snapshot for the entire transaction
    - SNAPSHOT: same as REPEATABLE_READ in our implementation (the default)

    Writes are protected by row intents and first-committer-wins under every
    level, so lost updates are rejected with WriteConflictError.
    """

    READ_COMMITTED = auto()
    REPEATABLE_READ = auto()
    SNAPSHOT = auto()

    def refreshes_per_statement(self) -> bool:
        """Return True if the data snapshot is retaken at each statement."""
        return self == IsolationLevel.READ_COMMITTED


class TriggerTiming(Enum):
    """When a trigger fires relative to the staged change."""

    BEFORE = "before"
    AFTER = "after"


class TriggerEvent(Enum):
    """Mutating events a trigger can subscribe to."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
