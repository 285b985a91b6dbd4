"""
SQL Sandbox - embedded SQL execution sandbox for teaching

An in-memory relational engine with MVCC snapshot isolation, row-level
write intents, BEFORE/AFTER triggers, plain and materialized views,
window functions and MERGE.
"""

__version__ = "0.1.0"
__author__ = "Systems Engineering Portfolio"
