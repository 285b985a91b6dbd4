"""Core identifiers and type-safe primitives for the sandbox.

These value objects provide type-safe identifiers that are used throughout
the system to prevent accidental mixing of transaction ids, commit
sequence numbers and table ids, which are all plain integers at runtime.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NewType, Tuple


TransactionId = NewType("TransactionId", int)
"""Unique identifier for a transaction. Monotonically increasing."""

CommitSeq = NewType("CommitSeq", int)
"""Commit sequence number. Every successful commit publishes at a new, higher sequence."""

TableId = NewType("TableId", int)
"""Identity of a table definition. A dropped and re-created table gets a new id."""

RowKey = Tuple[Any, ...]
"""Row identity: the primary-key values, or a one-element surrogate tuple."""

# Special sentinel values
INVALID_TXN_ID = TransactionId(0)
INITIAL_COMMIT_SEQ = CommitSeq(0)


@dataclass(frozen=True, slots=True)
class IntentKey:
    """Lockable identity of a single row: the table and the row key.

    Write intents are taken on an IntentKey, so two tables with equal
    primary-key values never contend with each other.

    Example:
        >>> IntentKey(TableId(3), (1,))
        Intent(3:(1,))
    """

    table_id: TableId
    key: RowKey

    def __post_init__(self) -> None:
        """Validate the intent key."""
        if not isinstance(self.key, tuple):
            raise ValueError(f"row key must be a tuple, got {type(self.key).__name__}")

    def __repr__(self) -> str:
        return f"Intent({self.table_id}:{self.key!r})"
