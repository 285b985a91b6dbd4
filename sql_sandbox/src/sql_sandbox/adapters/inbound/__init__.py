"""Inbound adapters for the sandbox.

Exports:
    SQL Parser:
        - SQLParser: Converts SQL strings into command values
        - ParseError: Exception for parsing errors
"""

from sql_sandbox.adapters.inbound.sql_parser import ParseError, SQLParser

__all__ = [
    "ParseError",
    "SQLParser",
]
