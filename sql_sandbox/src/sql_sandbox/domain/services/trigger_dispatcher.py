"""Row-level trigger dispatch.

BEFORE triggers run before a row change is staged. They receive the
proposed OLD and NEW row images, may edit NEW in place, or may veto the
change. AFTER triggers run once the change is staged and may issue more
statements in the same transaction.

Nesting (a trigger's statement firing another trigger) is bounded by
``max_depth``; exceeding it raises TriggerRecursionError, which rolls the
whole transaction back.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, NoReturn

from sql_sandbox.domain.entities import RowValues, TableSchema, TriggerDef
from sql_sandbox.domain.errors import TriggerRecursionError, VetoError
from sql_sandbox.domain.value_objects import TriggerEvent, TriggerTiming
from sql_sandbox.ports.inbound.transaction_manager import Transaction

if TYPE_CHECKING:
    from sql_sandbox.infrastructure.metrics import MetricsRegistry


@dataclass(frozen=True)
class TriggerScope:
    """The trigger row exposed to statements a trigger issues.

    ``OLD.col``/``NEW.col`` resolve against these images, and the
    pseudo-tables ``deleted``/``inserted`` contain them as one-row tables.
    """

    table: str
    columns: tuple[str, ...]
    old: RowValues | None
    new: RowValues | None


StatementRunner = Callable[[Any, Transaction, TriggerScope], Any]
"""Callback executing a command or SQL text inside the trigger's transaction."""


@dataclass
class TriggerContext:
    """Argument passed to every trigger procedure.

    Attributes:
        trigger: The firing trigger's definition.
        table: Name of the table the row belongs to.
        event: INSERT, UPDATE or DELETE.
        timing: BEFORE or AFTER.
        old: Row image before the change (None for INSERT).
        new: Row image after the change (None for DELETE). BEFORE
            triggers may modify it in place.
        transaction: The transaction the change belongs to.
    """

    trigger: TriggerDef
    table: str
    event: TriggerEvent
    timing: TriggerTiming
    old: RowValues | None
    new: RowValues | None
    transaction: Transaction
    _run: StatementRunner = field(repr=False)
    _columns: tuple[str, ...] = field(default=(), repr=False)

    @property
    def depth(self) -> int:
        return self.transaction.trigger_depth

    def execute(self, statement: Any) -> Any:
        """Execute a command or SQL text in the same transaction.

        Inside the statement ``OLD.col``/``NEW.col`` refer to this row, and
        ``inserted``/``deleted`` are one-row pseudo-tables.
        """
        scope = TriggerScope(self.table, self._columns, self.old, self.new)
        return self._run(statement, self.transaction, scope)

    def veto(self, reason: str = "") -> NoReturn:
        """Reject the change; the whole statement is rolled back."""
        message = reason or f"trigger '{self.trigger.name}' vetoed {self.event.value} on '{self.table}'"
        raise VetoError(message, trigger=self.trigger.name, table=self.table)


class TriggerDispatcher:
    """Fires matching triggers in registration order.

    Usage:
        dispatcher = TriggerDispatcher(max_depth=32)
        new = dispatcher.fire_before(txn, schema, TriggerEvent.INSERT, None, row, run)
        ... stage the change ...
        dispatcher.fire_after(txn, schema, TriggerEvent.INSERT, None, new, run)
    """

    def __init__(self, max_depth: int = 32, metrics: MetricsRegistry | None = None) -> None:
        self._max_depth = max_depth
        self._metrics = metrics

    @property
    def max_depth(self) -> int:
        return self._max_depth

    def has_triggers(self, txn: Transaction, schema: TableSchema, event: TriggerEvent) -> bool:
        return bool(
            txn.catalog.triggers_for(schema.table_id, TriggerTiming.BEFORE, event)
            or txn.catalog.triggers_for(schema.table_id, TriggerTiming.AFTER, event)
        )

    def fire_before(
        self,
        txn: Transaction,
        schema: TableSchema,
        event: TriggerEvent,
        old: RowValues | None,
        new: RowValues | None,
        run: StatementRunner,
    ) -> RowValues | None:
        """Run BEFORE triggers and return the (possibly edited) NEW image.

        Raises:
            VetoError: If a trigger rejects the change.
            TriggerRecursionError: If nesting exceeds the maximum depth.
        """
        proposed = dict(new) if new is not None else None
        for trigger in txn.catalog.triggers_for(schema.table_id, TriggerTiming.BEFORE, event):
            ctx = TriggerContext(
                trigger=trigger,
                table=schema.name,
                event=event,
                timing=TriggerTiming.BEFORE,
                old=dict(old) if old is not None else None,
                new=proposed,
                transaction=txn,
                _run=run,
                _columns=tuple(schema.column_names),
            )
            self._invoke(trigger, ctx)
            proposed = ctx.new
        return proposed

    def fire_after(
        self,
        txn: Transaction,
        schema: TableSchema,
        event: TriggerEvent,
        old: RowValues | None,
        new: RowValues | None,
        run: StatementRunner,
    ) -> None:
        """Run AFTER triggers for a staged change.

        Raises:
            VetoError: If a trigger rejects the change.
            TriggerRecursionError: If nesting exceeds the maximum depth.
        """
        for trigger in txn.catalog.triggers_for(schema.table_id, TriggerTiming.AFTER, event):
            ctx = TriggerContext(
                trigger=trigger,
                table=schema.name,
                event=event,
                timing=TriggerTiming.AFTER,
                old=dict(old) if old is not None else None,
                new=dict(new) if new is not None else None,
                transaction=txn,
                _run=run,
                _columns=tuple(schema.column_names),
            )
            self._invoke(trigger, ctx)

    def _invoke(self, trigger: TriggerDef, ctx: TriggerContext) -> None:
        txn = ctx.transaction
        if txn.trigger_depth + 1 > self._max_depth:
            raise TriggerRecursionError(
                f"trigger '{trigger.name}' exceeded the maximum nesting depth "
                f"of {self._max_depth}",
                table=trigger.table,
            )
        if self._metrics is not None:
            self._metrics.trigger_invocations_total.labels(timing=ctx.timing.value).inc()

        txn.trigger_depth += 1
        try:
            trigger.procedure(ctx)
        finally:
            txn.trigger_depth -= 1


def sql_trigger(*statements: str) -> Callable[[TriggerContext], None]:
    """Build a trigger procedure that runs SQL statements for each row.

    Example:
        >>> audit = sql_trigger(
        ...     "INSERT INTO audit (student_id, old_name, new_name) "
        ...     "VALUES (OLD.id, OLD.name, NEW.name)"
        ... )
    """
    if not statements:
        raise ValueError("sql_trigger requires at least one statement")

    def procedure(ctx: TriggerContext) -> None:
        for sql in statements:
            ctx.execute(sql)

    procedure.__name__ = "sql_trigger"
    return procedure
