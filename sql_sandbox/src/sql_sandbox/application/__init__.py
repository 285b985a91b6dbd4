"""Application layer for the sandbox.

The application layer orchestrates domain services to run statements.

Exports:
    Sandbox:
        - Sandbox: Main entry point for the sandbox
        - Session: Connection-like handle with BEGIN/COMMIT/ROLLBACK
        - SandboxStats: Point-in-time statistics
    Executor:
        - QueryExecutor: Executes commands using the Volcano iterator model
        - ResultSet / RowsAffected: Results of statement execution
        - Row: A row of data
        - Operator: Base class for executor operators
    Runtime:
        - bootstrap / get_sandbox / shutdown: Process-wide sandbox
"""

from sql_sandbox.application.executor import (
    ExecutionResult,
    FilterOperator,
    IndexLookupOperator,
    LimitOperator,
    NestedLoopJoinOperator,
    Operator,
    QueryExecutor,
    ResultSet,
    Row,
    RowsAffected,
    SeqScanOperator,
    ValuesOperator,
)
from sql_sandbox.application.runtime import bootstrap, get_sandbox, shutdown
from sql_sandbox.application.sandbox import Sandbox, SandboxStats, Session

__all__ = [
    "Sandbox",
    "SandboxStats",
    "Session",
    "QueryExecutor",
    "ExecutionResult",
    "ResultSet",
    "RowsAffected",
    "Row",
    "Operator",
    "SeqScanOperator",
    "IndexLookupOperator",
    "ValuesOperator",
    "FilterOperator",
    "NestedLoopJoinOperator",
    "LimitOperator",
    "bootstrap",
    "get_sandbox",
    "shutdown",
]
