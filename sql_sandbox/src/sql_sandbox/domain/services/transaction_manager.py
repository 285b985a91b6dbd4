"""Transaction Manager for MVCC and transaction lifecycle.

This module implements the transaction manager, which coordinates:
- Transaction lifecycle (begin, commit, rollback)
- MVCC snapshots for isolation
- Statement savepoints for statement-level atomicity
- Commit-time integrity validation and atomic publication

MVCC Snapshot Isolation:
    Each transaction sees a consistent snapshot of the committed state as
    of its start (or, under READ_COMMITTED, as of each statement's start).
    Writers stage new versions in their working set; readers see only
    versions committed at or before their snapshot.

Commit protocol:
    Under the commit lock the working set is validated against the latest
    committed state (primary keys, unique indexes, foreign keys in both
    directions). On success it is published at the next commit sequence
    number; on failure the transaction is ABORTED and the error raised.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import TYPE_CHECKING, Dict, Iterator

from sql_sandbox.domain.errors import (
    SandboxError,
    TransactionStateError,
    TriggerRecursionError,
    WriteConflictError,
)
from sql_sandbox.domain.services.catalog import Catalog
from sql_sandbox.domain.services.storage_engine import StorageEngine
from sql_sandbox.domain.value_objects import CommitSeq, TransactionId
from sql_sandbox.domain.value_objects.transaction_types import (
    IsolationLevel,
    TransactionState,
)
from sql_sandbox.ports.inbound.transaction_manager import Transaction, TransactionStats

if TYPE_CHECKING:
    from sql_sandbox.infrastructure.metrics import MetricsRegistry


# Errors after which the transaction cannot continue.
_FATAL = (WriteConflictError, TriggerRecursionError)


class MVCCTransactionManager:
    """MVCC-based transaction manager.

    Usage:
        txn_mgr = MVCCTransactionManager(catalog, storage)
        txn = txn_mgr.begin()
        with txn_mgr.statement(txn):
            storage.put(txn, schema, {"id": 1})
        txn_mgr.commit(txn)

    Thread Safety:
        All methods are thread-safe for concurrent transactions. A single
        transaction must only be used from one thread at a time.
    """

    def __init__(
        self,
        catalog: Catalog,
        storage: StorageEngine,
        default_isolation: IsolationLevel = IsolationLevel.SNAPSHOT,
        vacuum_on_commit: bool = True,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        """Initialize the transaction manager.

        Args:
            catalog: Source of catalog snapshots.
            storage: Row store the working sets are published to.
            default_isolation: Level used when begin() is given none.
            vacuum_on_commit: Whether to discard unreachable versions after
                every commit.
            metrics: Optional metrics registry.
        """
        self._catalog = catalog
        self._storage = storage
        self._default_isolation = default_isolation
        self._vacuum_on_commit = vacuum_on_commit
        self._metrics = metrics

        self._lock = threading.Lock()
        self._commit_lock = threading.Lock()
        self._next_txn_id = 1
        self._active_txns: Dict[TransactionId, Transaction] = {}

        # Statistics
        self._committed_total = 0
        self._aborted_total = 0
        self._total_duration_ms = 0.0

    @property
    def default_isolation(self) -> IsolationLevel:
        return self._default_isolation

    def begin(self, isolation_level: IsolationLevel | None = None) -> Transaction:
        """Begin a new transaction.

        Creates a new transaction with a unique ID, a data snapshot at the
        latest commit sequence, and the current catalog snapshot.

        Args:
            isolation_level: The isolation level (defaults to the configured one).

        Returns:
            A new ACTIVE Transaction.
        """
        with self._lock:
            txn_id = TransactionId(self._next_txn_id)
            self._next_txn_id += 1
            seq = self._storage.last_committed_seq
            txn = Transaction(
                txn_id=txn_id,
                snapshot_seq=seq,
                begin_seq=seq,
                catalog=self._catalog.current(),
                isolation_level=isolation_level or self._default_isolation,
            )
            self._active_txns[txn_id] = txn

        if self._metrics is not None:
            self._metrics.transactions_active.inc()
        return txn

    def commit(self, txn: Transaction) -> CommitSeq:
        """Commit a transaction.

        This operation:
        1. Validates the working set against the latest committed state
        2. Publishes it at the next commit sequence number
        3. Releases all write intents
        4. Updates transaction state

        A transaction with an empty working set commits without consuming
        a sequence number.

        Args:
            txn: The transaction to commit.

        Returns:
            The commit sequence number the changes are visible at.

        Raises:
            TransactionStateError: If transaction is not active.
            ConstraintViolationError: If validation fails. The transaction
                is ABORTED before the error propagates.
        """
        self._ensure_active(txn)

        with self._commit_lock:
            if txn.working_set.is_empty():
                seq = self._storage.last_committed_seq
            else:
                try:
                    self._storage.validate_commit(txn.working_set, self._catalog.current())
                except SandboxError:
                    self._finish(txn, TransactionState.ABORTED)
                    raise
                seq = CommitSeq(self._storage.last_committed_seq + 1)
                self._storage.publish(txn.working_set, seq)

        self._finish(txn, TransactionState.COMMITTED)
        if self._vacuum_on_commit:
            self._storage.vacuum(self.oldest_active_seq())
        return seq

    def rollback(self, txn: Transaction) -> None:
        """Discard the working set and mark the transaction ABORTED.

        Raises:
            TransactionStateError: If transaction is not active.
        """
        self._ensure_active(txn)
        self._finish(txn, TransactionState.ABORTED)

    def _finish(self, txn: Transaction, state: TransactionState) -> None:
        txn.working_set.clear()
        self._storage.lock_manager.release_all(txn.txn_id)
        txn.state = state

        with self._lock:
            self._active_txns.pop(txn.txn_id, None)
            if state == TransactionState.COMMITTED:
                self._committed_total += 1
            else:
                self._aborted_total += 1
            self._total_duration_ms += (time.time() - txn.started_at) * 1000

        if self._metrics is not None:
            self._metrics.transactions_active.dec()
            status = "committed" if state == TransactionState.COMMITTED else "aborted"
            self._metrics.transactions_total.labels(status=status).inc()

    @contextmanager
    def statement(self, txn: Transaction) -> Iterator[Transaction]:
        """Run one statement atomically within ``txn``.

        On entry, READ_COMMITTED transactions take a fresh data snapshot
        (top-level statements only; statements issued by triggers share
        their parent's snapshot). A savepoint is taken; if the block
        raises, everything staged since the savepoint is undone, intents on
        rows left without a staged write are released, and the
        transaction stays ACTIVE. WriteConflictError and
        TriggerRecursionError instead roll back the whole transaction.

        Raises:
            TransactionStateError: If transaction is not active.
        """
        self._ensure_active(txn)
        if txn.statement_depth == 0 and txn.isolation_level.refreshes_per_statement():
            txn.snapshot_seq = self._storage.last_committed_seq

        mark = txn.working_set.savepoint()
        txn.statement_depth += 1
        try:
            yield txn
        except _FATAL:
            if txn.is_active():
                self.rollback(txn)
            raise
        except BaseException:
            if txn.is_active():
                txn.working_set.rollback_to(mark)
                self._release_unstaged(txn)
            raise
        finally:
            txn.statement_depth -= 1

    def _release_unstaged(self, txn: Transaction) -> None:
        """Give back intents on rows that no longer carry a staged write."""
        lock_manager = self._storage.lock_manager
        stale = [
            intent
            for intent in lock_manager.get_intents_held(txn.txn_id)
            if txn.working_set.get(intent.table_id, intent.key) is None
        ]
        if stale:
            lock_manager.release(txn.txn_id, stale)

    def savepoint(self, txn: Transaction) -> int:
        """Return a mark that rollback_to() can undo back to."""
        self._ensure_active(txn)
        return txn.working_set.savepoint()

    def rollback_to(self, txn: Transaction, mark: int) -> None:
        """Undo the changes staged after ``mark``; the transaction stays ACTIVE."""
        self._ensure_active(txn)
        txn.working_set.rollback_to(mark)
        self._release_unstaged(txn)

    def refresh_catalog(self, txn: Transaction) -> None:
        """Let a transaction see DDL it has just issued itself."""
        txn.catalog = self._catalog.current()

    def oldest_active_seq(self) -> CommitSeq:
        """Lowest snapshot still in use; versions older than it can be vacuumed."""
        with self._lock:
            seqs = [t.snapshot_seq for t in self._active_txns.values()]
        return CommitSeq(min(seqs)) if seqs else self._storage.last_committed_seq

    def get_active_transactions(self) -> list[TransactionId]:
        """Return IDs of all active transactions."""
        with self._lock:
            return list(self._active_txns.keys())

    def get_stats(self) -> TransactionStats:
        """Return transaction statistics for monitoring."""
        with self._lock:
            active_count = len(self._active_txns)
            total = self._committed_total + self._aborted_total

            if total > 0:
                avg_duration = self._total_duration_ms / total
            else:
                avg_duration = 0.0

            return TransactionStats(
                active_count=active_count,
                committed_total=self._committed_total,
                aborted_total=self._aborted_total,
                avg_duration_ms=avg_duration,
                last_committed_seq=self._storage.last_committed_seq,
            )

    @staticmethod
    def _ensure_active(txn: Transaction) -> None:
        if not txn.is_active():
            raise TransactionStateError(
                f"transaction {txn.txn_id} is {txn.state.name}, not ACTIVE"
            )
