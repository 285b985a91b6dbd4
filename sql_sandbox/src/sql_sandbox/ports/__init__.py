"""Ports layer - interface definitions following Hexagonal Architecture.

Ports are abstract interfaces (protocols) that define contracts:
- Inbound ports: APIs offered to clients (e.g., TransactionManager)

Adapters and services implement these ports with concrete functionality.
"""

from sql_sandbox.ports.inbound import Transaction, TransactionManager, TransactionStats

__all__ = [
    "Transaction",
    "TransactionManager",
    "TransactionStats",
]
