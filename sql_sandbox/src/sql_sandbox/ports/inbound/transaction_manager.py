"""Transaction Manager port for MVCC and transaction lifecycle.

This inbound port defines the contract for transaction management,
including begin/commit/rollback, snapshots and statement savepoints.

Key responsibilities:
- Manage transaction lifecycle
- Provide MVCC snapshots for isolation
- Validate integrity constraints at commit and publish atomically
- Release write intents when a transaction ends
"""

from __future__ import annotations

import time
from abc import abstractmethod
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from typing import Protocol

from sql_sandbox.domain.entities import CatalogSnapshot, WorkingSet
from sql_sandbox.domain.value_objects import CommitSeq, TransactionId
from sql_sandbox.domain.value_objects.transaction_types import (
    IsolationLevel,
    TransactionState,
)


@dataclass
class Transaction:
    """A sandbox transaction.

    Attributes:
        txn_id: Unique, monotonically increasing id.
        state: ACTIVE until commit or rollback.
        isolation_level: Decides whether the data snapshot is retaken
            at each statement.
        snapshot_seq: Commit sequence visible to this transaction's reads.
        begin_seq: Commit sequence at begin; used for vacuum horizons.
        catalog: Catalog snapshot captured at begin.
        working_set: Staged, uncommitted changes.
        trigger_depth: Current nesting depth of trigger invocations.
        statement_depth: Current nesting depth of statements (statements
            issued by triggers are nested).
    """

    txn_id: TransactionId
    snapshot_seq: CommitSeq
    catalog: CatalogSnapshot
    state: TransactionState = TransactionState.ACTIVE
    isolation_level: IsolationLevel = IsolationLevel.SNAPSHOT
    begin_seq: CommitSeq = CommitSeq(0)
    working_set: WorkingSet = field(default_factory=WorkingSet)
    trigger_depth: int = 0
    statement_depth: int = 0
    started_at: float = field(default_factory=time.time)

    def is_active(self) -> bool:
        """Return True if transaction can still perform operations."""
        return self.state == TransactionState.ACTIVE

    def is_terminal(self) -> bool:
        """Return True if transaction has ended."""
        return self.state in (TransactionState.COMMITTED, TransactionState.ABORTED)


@dataclass
class TransactionStats:
    """Statistics for transaction monitoring."""

    active_count: int
    committed_total: int
    aborted_total: int
    avg_duration_ms: float
    last_committed_seq: int


class TransactionManager(Protocol):
    """Protocol for transaction management.

    Isolation levels supported:
    - READ_COMMITTED: Fresh snapshot per statement
    - REPEATABLE_READ: Same snapshot for entire transaction
    - SNAPSHOT: Same as REPEATABLE_READ in our implementation

    Thread Safety:
        All methods must be thread-safe for concurrent transactions.
    """

    @abstractmethod
    def begin(self, isolation_level: IsolationLevel | None = None) -> Transaction:
        """Begin a new transaction with a data and catalog snapshot."""
        ...

    @abstractmethod
    def commit(self, txn: Transaction) -> CommitSeq:
        """Validate and publish a transaction's working set.

        Raises:
            TransactionStateError: If the transaction is not active.
            ConstraintViolationError: If validation fails; the
                transaction is then ABORTED.
        """
        ...

    @abstractmethod
    def rollback(self, txn: Transaction) -> None:
        """Discard the working set and mark the transaction ABORTED.

        Raises:
            TransactionStateError: If the transaction is not active.
        """
        ...

    @abstractmethod
    def statement(self, txn: Transaction) -> AbstractContextManager[Transaction]:
        """Run one statement atomically within ``txn``.

        On failure the statement's staged changes are undone; errors
        that doom the transaction roll it back entirely.
        """
        ...

    @abstractmethod
    def get_active_transactions(self) -> list[TransactionId]:
        """Return IDs of all active transactions."""
        ...

    @abstractmethod
    def get_stats(self) -> TransactionStats:
        """Return transaction statistics for monitoring."""
        ...
