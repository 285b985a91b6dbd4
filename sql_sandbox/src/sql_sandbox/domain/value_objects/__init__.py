"""Value objects for the sandbox domain.

Value objects are immutable types that represent domain concepts.
They have no identity - two value objects with the same attributes are equal.

Exports:
    Identifiers:
        - TransactionId, CommitSeq, TableId: Type-safe integer identifiers
        - RowKey: Row identity tuple
        - IntentKey: (table, row key) pair that write intents lock
        - INVALID_TXN_ID, INITIAL_COMMIT_SEQ: Sentinel values

    Transaction Types:
        - TransactionState: Transaction lifecycle states (ACTIVE, COMMITTED, ABORTED)
        - IsolationLevel: READ_COMMITTED, REPEATABLE_READ, SNAPSHOT
        - TriggerTiming, TriggerEvent: Trigger vocabulary

    Data Types:
        - DataType: SQL column types
        - coerce: Value conversion to a column type
"""

from sql_sandbox.domain.value_objects.data_types import (
    CoercionError,
    DataType,
    coerce,
    parse_type_name,
)
from sql_sandbox.domain.value_objects.identifiers import (
    INITIAL_COMMIT_SEQ,
    INVALID_TXN_ID,
    CommitSeq,
    IntentKey,
    RowKey,
    TableId,
    TransactionId,
)
from sql_sandbox.domain.value_objects.transaction_types import (
    IsolationLevel,
    TransactionState,
    TriggerEvent,
    TriggerTiming,
)

__all__ = [
    # Identifiers
    "TransactionId",
    "CommitSeq",
    "TableId",
    "RowKey",
    "IntentKey",
    "INVALID_TXN_ID",
    "INITIAL_COMMIT_SEQ",
    # Transaction types
    "TransactionState",
    "IsolationLevel",
    "TriggerTiming",
    "TriggerEvent",
    # Data types
    "DataType",
    "CoercionError",
    "coerce",
    "parse_type_name",
]
