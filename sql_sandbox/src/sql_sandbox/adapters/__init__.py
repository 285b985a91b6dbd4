"""Adapters layer - concrete implementations at the edges of the sandbox.

- Inbound adapters: Convert incoming SQL text into domain commands
"""

from sql_sandbox.adapters.inbound import ParseError, SQLParser

__all__ = [
    "ParseError",
    "SQLParser",
]
