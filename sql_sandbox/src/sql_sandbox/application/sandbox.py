"""Sandbox - Unified entry point for the SQL execution sandbox.

This module provides the Sandbox class that wires together the catalog,
storage engine, lock manager, transaction manager, trigger dispatcher,
view cache, executor and SQL parser.

Usage:
    from sql_sandbox.application import Sandbox

    with Sandbox() as sandbox:
        sandbox.execute("CREATE TABLE students (id INTEGER PRIMARY KEY, name VARCHAR(50))")
        sandbox.execute("INSERT INTO students VALUES (1, 'Alice')")

        txn = sandbox.begin()
        sandbox.execute("UPDATE students SET name = 'Alicia' WHERE id = 1", txn)
        sandbox.commit(txn)

        rows = sandbox.execute("SELECT * FROM students")
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from sql_sandbox.adapters.inbound.sql_parser import SQLParser
from sql_sandbox.application.executor import (
    ExecutionResult,
    QueryExecutor,
    RowsAffected,
)
from sql_sandbox.domain.entities import Command, CreateTrigger, TransactionControl
from sql_sandbox.domain.entities.commands import StatementType
from sql_sandbox.domain.errors import (
    SandboxError,
    TransactionStateError,
    VetoError,
    WriteConflictError,
)
from sql_sandbox.domain.services import (
    Catalog,
    LockManager,
    MVCCTransactionManager,
    StorageEngine,
    TriggerContext,
    TriggerDispatcher,
    ViewCache,
)
from sql_sandbox.domain.value_objects import IsolationLevel, TriggerEvent, TriggerTiming
from sql_sandbox.infrastructure.config import Config, get_config
from sql_sandbox.infrastructure.logging import get_logger, transaction_context
from sql_sandbox.infrastructure.metrics import MetricsRegistry
from sql_sandbox.infrastructure.tracing import statement_span, trace_span
from sql_sandbox.ports.inbound.transaction_manager import Transaction

logger = get_logger(__name__)


@dataclass
class SandboxStats:
    """Point-in-time statistics of a running sandbox."""

    started: bool
    sessions: int
    active_transactions: int
    committed_transactions: int
    aborted_transactions: int
    last_committed_seq: int
    tables: int
    views: int
    triggers: int
    live_row_versions: int
    held_intents: int
    view_cache_hits: int
    view_cache_misses: int


class Sandbox:
    """Embedded SQL sandbox orchestrating all components.

    Statements can be passed as command values or SQL text. Without an
    explicit transaction every statement runs in its own autocommit
    transaction.

    Thread Safety:
        A Sandbox may be shared between threads. A transaction (and a
        Session) must only be used by one thread at a time.
    """

    def __init__(
        self,
        config: Config | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        """Initialize the sandbox.

        Args:
            config: Sandbox configuration. Uses the global config if None.
            metrics: Optional metrics registry. Metrics are not recorded if None.
        """
        self._config = config or get_config()
        self._metrics = metrics

        self._catalog: Catalog | None = None
        self._lock_manager: LockManager | None = None
        self._storage: StorageEngine | None = None
        self._txn_manager: MVCCTransactionManager | None = None
        self._dispatcher: TriggerDispatcher | None = None
        self._view_cache: ViewCache | None = None
        self._parser: SQLParser | None = None
        self._executor: QueryExecutor | None = None

        self._sessions_lock = threading.Lock()
        self._next_session_id = 1
        self._sessions: dict[int, Session] = {}
        self._started = False

    @property
    def config(self) -> Config:
        return self._config

    @property
    def is_started(self) -> bool:
        """Check if the sandbox is started."""
        return self._started

    @property
    def catalog(self) -> Catalog:
        self._ensure_started()
        assert self._catalog is not None
        return self._catalog

    @property
    def storage(self) -> StorageEngine:
        self._ensure_started()
        assert self._storage is not None
        return self._storage

    @property
    def transaction_manager(self) -> MVCCTransactionManager:
        self._ensure_started()
        assert self._txn_manager is not None
        return self._txn_manager

    @property
    def parser(self) -> SQLParser:
        self._ensure_started()
        assert self._parser is not None
        return self._parser

    def start(self) -> None:
        """Create all components.

        Raises:
            RuntimeError: If already started.
        """
        if self._started:
            raise RuntimeError("Sandbox already started")

        engine = self._config.engine
        self._catalog = Catalog()
        self._lock_manager = LockManager()
        self._storage = StorageEngine(
            lock_manager=self._lock_manager,
            scan_batch_size=engine.scan_batch_size,
            metrics=self._metrics,
        )
        self._txn_manager = MVCCTransactionManager(
            self._catalog,
            self._storage,
            default_isolation=IsolationLevel[engine.default_isolation],
            vacuum_on_commit=engine.vacuum_on_commit,
            metrics=self._metrics,
        )
        self._dispatcher = TriggerDispatcher(max_depth=engine.max_trigger_depth, metrics=self._metrics)
        self._view_cache = ViewCache(self._storage.last_modified_seq, metrics=self._metrics)
        self._parser = SQLParser(dialect=engine.sql_dialect)
        self._executor = QueryExecutor(
            self._catalog,
            self._storage,
            self._txn_manager,
            self._dispatcher,
            self._view_cache,
            parse=self._parser.parse,
            max_recursion=engine.max_recursion,
        )

        self._started = True
        logger.info(
            "sandbox_started",
            default_isolation=engine.default_isolation,
            max_trigger_depth=engine.max_trigger_depth,
        )

    def stop(self) -> None:
        """Close all sessions (rolling back their transactions) and release components.

        Raises:
            RuntimeError: If not started.
        """
        self._ensure_started()
        assert self._txn_manager is not None

        with self._sessions_lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()

        for txn_id in self._txn_manager.get_active_transactions():
            logger.warning("transaction_abandoned", txn_id=txn_id)
        if self._view_cache is not None:
            self._view_cache.clear()

        self._executor = None
        self._parser = None
        self._view_cache = None
        self._dispatcher = None
        self._txn_manager = None
        self._storage = None
        self._lock_manager = None
        self._catalog = None
        self._started = False
        logger.info("sandbox_stopped")

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    def begin(self, isolation_level: IsolationLevel | str | None = None) -> Transaction:
        """Begin a transaction.

        Args:
            isolation_level: An IsolationLevel or its name. Defaults to
                ``engine.default_isolation``.
        """
        self._ensure_started()
        assert self._txn_manager is not None
        if isinstance(isolation_level, str):
            isolation_level = IsolationLevel[isolation_level.upper()]
        txn = self._txn_manager.begin(isolation_level)
        logger.debug("transaction_started", txn_id=txn.txn_id, isolation=txn.isolation_level.name)
        return txn

    def commit(self, txn: Transaction) -> int:
        """Commit a transaction and return its commit sequence number.

        Raises:
            ConstraintViolationError: If commit-time validation fails; the
                transaction is ABORTED.
            TransactionStateError: If the transaction is not ACTIVE.
        """
        self._ensure_started()
        assert self._txn_manager is not None
        span_attributes = {"sandbox.txn_id": int(txn.txn_id)}
        with transaction_context(txn), trace_span("sandbox.commit", span_attributes):
            try:
                seq = self._txn_manager.commit(txn)
            except SandboxError as e:
                logger.warning(
                    "transaction_commit_failed",
                    error=type(e).__name__,
                    constraint=e.constraint,
                )
                raise
        logger.info("transaction_committed", txn_id=txn.txn_id, commit_seq=seq)
        return seq

    def rollback(self, txn: Transaction) -> None:
        self._ensure_started()
        assert self._txn_manager is not None
        self._txn_manager.rollback(txn)
        logger.info("transaction_rolled_back", txn_id=txn.txn_id)

    # -------------------------------------------------------------------------
    # Statements
    # -------------------------------------------------------------------------

    def execute(
        self,
        statement: Command | str,
        transaction: Transaction | None = None,
    ) -> ExecutionResult:
        """Execute one statement.

        Args:
            statement: A command value or SQL text.
            transaction: The transaction to run in. If None, the statement
                runs in its own transaction which is committed on success
                and rolled back on failure.

        Returns:
            ResultSet for queries, RowsAffected otherwise.

        Raises:
            ParseError: If SQL text cannot be parsed.
            TransactionStateError: For BEGIN/COMMIT/ROLLBACK (use a Session).
            SandboxError: Any error raised while executing.
        """
        self._ensure_started()
        command = self._parser.parse(statement) if isinstance(statement, str) else statement
        if isinstance(command, TransactionControl):
            raise TransactionStateError(
                f"{command.statement_type.name} requires a session; use Sandbox.session()"
            )

        if transaction is not None:
            return self._run(command, transaction)

        txn = self.begin()
        try:
            result = self._run(command, txn)
        except BaseException:
            if txn.is_active():
                self._txn_manager.rollback(txn)
            raise
        self.commit(txn)
        return result

    def execute_script(
        self,
        sql: str,
        transaction: Transaction | None = None,
    ) -> list[ExecutionResult]:
        """Execute several ``;``-separated statements in order.

        Transaction control statements in the script are honored as in a
        Session. With an explicit ``transaction`` they are rejected.
        """
        self._ensure_started()
        commands = self._parser.parse_script(sql)
        if transaction is not None:
            return [self.execute(command, transaction) for command in commands]
        session = self.session()
        try:
            return [session.execute(command) for command in commands]
        finally:
            session.close()

    def session(self) -> Session:
        """Open a session that tracks one current transaction."""
        self._ensure_started()
        with self._sessions_lock:
            session = Session(self, self._next_session_id)
            self._sessions[session.session_id] = session
            self._next_session_id += 1
        return session

    def create_trigger(
        self,
        name: str,
        table: str,
        timing: TriggerTiming | str,
        events: TriggerEvent | str | Iterable[TriggerEvent | str],
        procedure: Callable[[TriggerContext], None],
    ) -> RowsAffected:
        """Register a row-level trigger.

        Example:
            >>> sandbox.create_trigger(
            ...     "students_audit", "students", "AFTER", ["UPDATE"],
            ...     sql_trigger("INSERT INTO audit VALUES (OLD.id, OLD.name, NEW.name)"),
            ... )
        """
        if isinstance(timing, str):
            timing = TriggerTiming(timing.lower())
        if isinstance(events, (str, TriggerEvent)):
            events = [events]
        event_set = frozenset(
            e if isinstance(e, TriggerEvent) else TriggerEvent(e.lower()) for e in events
        )
        command = CreateTrigger(name=name, table=table, timing=timing, events=event_set, procedure=procedure)
        result = self.execute(command)
        assert isinstance(result, RowsAffected)
        return result

    def _run(self, command: Command, txn: Transaction) -> ExecutionResult:
        assert self._executor is not None
        label = _statement_label(command.statement_type)
        start = time.perf_counter()
        status = "error"
        with transaction_context(txn), statement_span(label, txn):
            try:
                result = self._executor.execute(command, txn)
                status = "success"
                return result
            except VetoError as e:
                logger.info("trigger_vetoed", trigger=e.trigger, table=e.table, reason=str(e))
                raise
            except WriteConflictError as e:
                logger.info(
                    "write_conflict",
                    table=e.table,
                    key=e.key,
                    blocking_txn=e.blocking_txn,
                )
                raise
            finally:
                if self._metrics is not None:
                    self._metrics.statements_total.labels(statement=label, status=status).inc()
                    self._metrics.statement_latency_seconds.labels(statement=label).observe(
                        time.perf_counter() - start
                    )

    def _close_session(self, session_id: int) -> None:
        with self._sessions_lock:
            self._sessions.pop(session_id, None)

    def _ensure_started(self) -> None:
        if not self._started:
            raise RuntimeError("Sandbox not started")

    def get_stats(self) -> SandboxStats:
        """Return sandbox statistics for monitoring."""
        self._ensure_started()
        assert self._txn_manager is not None and self._storage is not None
        assert self._catalog is not None and self._lock_manager is not None
        assert self._view_cache is not None
        txn_stats = self._txn_manager.get_stats()
        storage_stats = self._storage.get_stats()
        snapshot = self._catalog.current()
        return SandboxStats(
            started=self._started,
            sessions=len(self._sessions),
            active_transactions=txn_stats.active_count,
            committed_transactions=txn_stats.committed_total,
            aborted_transactions=txn_stats.aborted_total,
            last_committed_seq=txn_stats.last_committed_seq,
            tables=len(snapshot.tables),
            views=len(snapshot.views),
            triggers=len(snapshot.triggers),
            live_row_versions=storage_stats.versions,
            held_intents=self._lock_manager.get_stats().intents_held,
            view_cache_hits=self._view_cache.hits,
            view_cache_misses=self._view_cache.misses,
        )

    def __enter__(self) -> Sandbox:
        """Context manager entry."""
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Context manager exit."""
        self.stop()


class Session:
    """A connection-like handle with BEGIN/COMMIT/ROLLBACK handling.

    Outside an explicit transaction every statement autocommits. A
    WriteConflictError or TriggerRecursionError ends the current
    transaction; the session then returns to autocommit.
    """

    def __init__(self, sandbox: Sandbox, session_id: int) -> None:
        self._sandbox = sandbox
        self.session_id = session_id
        self.current_transaction: Transaction | None = None

    @property
    def in_transaction(self) -> bool:
        return self.current_transaction is not None

    def execute(self, statement: Command | str) -> ExecutionResult:
        """Execute a statement in the session's transaction, or autocommit."""
        command = self._sandbox.parser.parse(statement) if isinstance(statement, str) else statement
        if isinstance(command, TransactionControl):
            return self._control(command.statement_type)

        txn = self.current_transaction
        if txn is None:
            return self._sandbox.execute(command)
        try:
            return self._sandbox.execute(command, txn)
        finally:
            if not txn.is_active():
                self.current_transaction = None

    def _control(self, statement_type: StatementType) -> RowsAffected:
        if statement_type == StatementType.BEGIN:
            if self.current_transaction is not None:
                raise TransactionStateError("a transaction is already in progress")
            self.current_transaction = self._sandbox.begin()
            return RowsAffected(0, "BEGIN")

        txn = self.current_transaction
        if txn is None:
            raise TransactionStateError("no transaction in progress")
        self.current_transaction = None
        if statement_type == StatementType.COMMIT:
            self._sandbox.commit(txn)
            return RowsAffected(0, "COMMIT")
        self._sandbox.rollback(txn)
        return RowsAffected(0, "ROLLBACK")

    def close(self) -> None:
        """Roll back any open transaction and detach from the sandbox."""
        txn = self.current_transaction
        self.current_transaction = None
        if txn is not None and txn.is_active():
            self._sandbox.rollback(txn)
        self._sandbox._close_session(self.session_id)


def _statement_label(statement_type: StatementType) -> str:
    if statement_type.is_ddl():
        return "ddl"
    return statement_type.name.lower()
