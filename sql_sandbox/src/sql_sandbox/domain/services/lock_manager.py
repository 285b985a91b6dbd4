"""Lock Manager for per-row write intents.

Every staged write first takes an exclusive intent on the row it touches.
The policy is no-wait: if another transaction already holds the intent,
the request is refused immediately and the caller raises
WriteConflictError. Nobody ever blocks, so no deadlock is possible and no
wait-for graph is needed.

Intent lifetime:
    1. Growing phase: intents are acquired as the transaction stages writes
    2. Release: all intents are dropped together at commit or rollback;
       a failed statement gives back the intents of the rows it un-staged
"""

from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, Set

from sql_sandbox.domain.value_objects import IntentKey, TransactionId


@dataclass
class IntentStats:
    """Lock table statistics."""

    intents_held: int
    transactions_holding: int
    conflicts_total: int


class LockManager:
    """Exclusive write-intent table keyed by (table, row key).

    Thread Safety:
        All operations are thread-safe using a single internal lock.
    """

    def __init__(self) -> None:
        """Initialize the lock manager."""
        self._lock = threading.Lock()

        # Intent table: resource -> holding transaction
        self._holders: Dict[IntentKey, TransactionId] = {}

        # Intents held by each transaction
        self._txn_intents: Dict[TransactionId, Set[IntentKey]] = defaultdict(set)

        self._conflicts_total = 0

    def try_acquire(self, txn_id: TransactionId, intent: IntentKey) -> TransactionId | None:
        """Acquire the exclusive intent on a row without waiting.

        Re-acquiring an intent the transaction already holds succeeds.

        Args:
            txn_id: The requesting transaction.
            intent: The row to lock.

        Returns:
            None if the intent is now held by ``txn_id``, otherwise the id
            of the transaction that holds it.
        """
        with self._lock:
            holder = self._holders.get(intent)
            if holder is not None and holder != txn_id:
                self._conflicts_total += 1
                return holder

            self._holders[intent] = txn_id
            self._txn_intents[txn_id].add(intent)
            return None

    def holder_of(self, intent: IntentKey) -> TransactionId | None:
        """Return the transaction holding ``intent``, if any."""
        with self._lock:
            return self._holders.get(intent)

    def release_all(self, txn_id: TransactionId) -> int:
        """Release all intents held by a transaction.

        Called during commit or rollback.

        Args:
            txn_id: The transaction.

        Returns:
            Number of intents released.
        """
        with self._lock:
            intents = self._txn_intents.pop(txn_id, set())
            for intent in intents:
                if self._holders.get(intent) == txn_id:
                    del self._holders[intent]
            return len(intents)

    def release(self, txn_id: TransactionId, intents: Iterable[IntentKey]) -> int:
        """Release some of a transaction's intents before it ends.

        Used when a failed statement is undone and the rows it claimed
        no longer carry staged writes. Intents held by other transactions
        are left alone.

        Returns:
            Number of intents released.
        """
        released = 0
        with self._lock:
            held = self._txn_intents.get(txn_id)
            if not held:
                return 0
            for intent in intents:
                if intent in held and self._holders.get(intent) == txn_id:
                    held.discard(intent)
                    del self._holders[intent]
                    released += 1
            if not held:
                del self._txn_intents[txn_id]
        return released

    def get_intents_held(self, txn_id: TransactionId) -> list[IntentKey]:
        """Get all rows a transaction holds intents on."""
        with self._lock:
            return list(self._txn_intents.get(txn_id, set()))

    def get_stats(self) -> IntentStats:
        with self._lock:
            return IntentStats(
                intents_held=len(self._holders),
                transactions_holding=sum(1 for s in self._txn_intents.values() if s),
                conflicts_total=self._conflicts_total,
            )
