"""Domain services for the sandbox.

Services implement domain logic that doesn't naturally fit within a
single entity: the catalog, MVCC storage, write intents, transactions,
trigger dispatch, expression and window evaluation, and the view cache.
"""

from sql_sandbox.domain.services.catalog import Catalog, base_tables, resolve_in
from sql_sandbox.domain.services.expression_evaluator import (
    EvalContext,
    Frame,
    Layout,
    evaluate,
    is_true,
)
from sql_sandbox.domain.services.lock_manager import LockManager
from sql_sandbox.domain.services.storage_engine import StorageEngine
from sql_sandbox.domain.services.transaction_manager import MVCCTransactionManager
from sql_sandbox.domain.services.trigger_dispatcher import (
    TriggerContext,
    TriggerDispatcher,
    TriggerScope,
    sql_trigger,
)
from sql_sandbox.domain.services.view_cache import CachedView, ViewCache
from sql_sandbox.domain.services.window_functions import aggregate, compute_window

__all__ = [
    "Catalog",
    "base_tables",
    "resolve_in",
    "EvalContext",
    "Frame",
    "Layout",
    "evaluate",
    "is_true",
    "LockManager",
    "StorageEngine",
    "MVCCTransactionManager",
    "TriggerContext",
    "TriggerDispatcher",
    "TriggerScope",
    "sql_trigger",
    "CachedView",
    "ViewCache",
    "aggregate",
    "compute_window",
]
