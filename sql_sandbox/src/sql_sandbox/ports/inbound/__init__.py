"""Inbound ports - API contracts for the sandbox.

Inbound ports define the interfaces that the execution engine and the
facade use to interact with the transaction manager.
"""

from sql_sandbox.ports.inbound.transaction_manager import (
    Transaction,
    TransactionManager,
    TransactionStats,
)

__all__ = [
    "Transaction",
    "TransactionManager",
    "TransactionStats",
]
