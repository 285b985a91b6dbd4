"""Query Executor using the Volcano iterator model.

This module executes validated command values inside a transaction.

The Volcano model:
    - Each operator is an iterator with open(), next(), close() methods
    - Operators pull rows from their children on demand
    - Scans, filters and joins pipeline without materializing their input

SELECT evaluation order is fixed regardless of how the clauses were
written:

    FROM/JOIN -> WHERE -> GROUP BY -> HAVING -> window functions
    -> projection -> DISTINCT -> ORDER BY -> LIMIT/OFFSET

Grouping, windows and ordering need the whole input and work on
materialized frames.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Sequence, Union

from sql_sandbox.domain.entities import (
    AggregateExpr,
    Assignment,
    ColumnExpr,
    Command,
    CommonTableExpr,
    ComparisonExpr,
    ComparisonOp,
    CreateIndex,
    CreateTable,
    CreateTrigger,
    CreateView,
    Delete,
    DropIndex,
    DropTable,
    DropTrigger,
    DropView,
    Expression,
    FromItem,
    Insert,
    JoinKind,
    LiteralExpr,
    Merge,
    MergeAction,
    MergeClause,
    MergeMatch,
    OrderByItem,
    Query,
    RowValues,
    Select,
    SelectItem,
    SetOperation,
    SetOperator,
    StarExpr,
    SubqueryRef,
    TableSchema,
    TransactionControl,
    Update,
    ValuesRef,
    ViewDef,
    WindowExpr,
)
from sql_sandbox.domain.entities.expressions import conjuncts, find_aggregates, find_windows
from sql_sandbox.domain.errors import (
    ConflictError,
    ConstraintViolationError,
    EvaluationError,
    SchemaError,
    TransactionStateError,
)
from sql_sandbox.domain.services import (
    Catalog,
    EvalContext,
    Frame,
    Layout,
    MVCCTransactionManager,
    StorageEngine,
    TriggerDispatcher,
    TriggerScope,
    ViewCache,
    evaluate,
    is_true,
)
from sql_sandbox.domain.services.catalog import referenced_relations, resolve_in
from sql_sandbox.domain.services.expression_evaluator import group_key, sort_key
from sql_sandbox.domain.services.view_cache import CachedView
from sql_sandbox.domain.services.window_functions import WindowInput, aggregate, compute_window
from sql_sandbox.domain.value_objects import CoercionError, RowKey, TriggerEvent, coerce
from sql_sandbox.infrastructure.logging import get_logger
from sql_sandbox.ports.inbound.transaction_manager import Transaction

logger = get_logger(__name__)


@dataclass
class Row:
    """A row of data returned by the executor.

    Rows can be accessed by column name (case-insensitive) or index.
    """

    columns: list[str]
    values: list[Any]

    def __getitem__(self, key: str | int) -> Any:
        if isinstance(key, int):
            return self.values[key]
        try:
            idx = self.columns.index(key)
        except ValueError:
            lowered = [c.lower() for c in self.columns]
            try:
                idx = lowered.index(key.lower())
            except ValueError as e:
                raise KeyError(f"Column '{key}' not found") from e
        return self.values[idx]

    def get(self, key: str, default: Any = None) -> Any:
        try:
            return self[key]
        except KeyError:
            return default

    def as_dict(self) -> dict[str, Any]:
        return dict(zip(self.columns, self.values))

    def __repr__(self) -> str:
        pairs = ", ".join(f"{c}={v!r}" for c, v in zip(self.columns, self.values))
        return f"Row({pairs})"


@dataclass
class ResultSet:
    """Result of a query: column names and rows in output order."""

    columns: list[str]
    rows: list[Row] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self) -> Iterator[Row]:
        return iter(self.rows)

    def __getitem__(self, index: int) -> Row:
        return self.rows[index]

    def tuples(self) -> list[tuple]:
        return [tuple(r.values) for r in self.rows]

    def column(self, name: str) -> list[Any]:
        return [r[name] for r in self.rows]

    def scalar(self) -> Any:
        """First value of the first row, or None for an empty result."""
        return self.rows[0].values[0] if self.rows and self.rows[0].values else None

    def as_dicts(self) -> list[dict[str, Any]]:
        return [r.as_dict() for r in self.rows]


@dataclass
class RowsAffected:
    """Result of DML and DDL."""

    count: int = 0
    message: str = ""


ExecutionResult = Union[ResultSet, RowsAffected]


# =============================================================================
# Operators
# =============================================================================


class Operator(ABC):
    """Base class for executor operators (Volcano model).

    Operators produce flat value lists laid out according to ``layout``.
    """

    layout: Layout

    @abstractmethod
    def open(self) -> None:
        """Initialize the operator."""
        pass

    @abstractmethod
    def next(self) -> list[Any] | None:
        """Return the next row or None if exhausted."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Clean up resources."""
        pass

    def __iter__(self) -> Iterator[list[Any]]:
        """Allow iteration over operator results."""
        self.open()
        try:
            while True:
                row = self.next()
                if row is None:
                    break
                yield row
        finally:
            self.close()


class SeqScanOperator(Operator):
    """Sequential scan of a table through the storage engine's snapshot scan."""

    def __init__(self, storage: StorageEngine, txn: Transaction, schema: TableSchema, binding: str) -> None:
        self._storage = storage
        self._txn = txn
        self._schema = schema
        self.layout = Layout([(binding, schema.column_names)])
        self._iter: Iterator[tuple[RowKey, RowValues]] | None = None

    def open(self) -> None:
        self._iter = self._storage.scan(self._txn, self._schema)

    def next(self) -> list[Any] | None:
        assert self._iter is not None
        item = next(self._iter, None)
        if item is None:
            return None
        _, values = item
        return [values[c] for c in self._schema.column_names]

    def close(self) -> None:
        self._iter = None


class IndexLookupOperator(Operator):
    """Point lookup through the primary key or a secondary index."""

    def __init__(
        self,
        storage: StorageEngine,
        txn: Transaction,
        schema: TableSchema,
        binding: str,
        index_name: str | None,
        key: tuple,
    ) -> None:
        self._storage = storage
        self._txn = txn
        self._schema = schema
        self._index_name = index_name
        self._key = key
        self.layout = Layout([(binding, schema.column_names)])
        self._entries: list[tuple[RowKey, RowValues]] = []
        self._pos = 0

    def entries(self) -> list[tuple[RowKey, RowValues]]:
        """Return the matching ``(key, row)`` pairs."""
        if self._index_name is None:
            row = self._storage.get(self._txn, self._schema, self._key)
            return [(self._key, row)] if row is not None else []
        return self._storage.lookup(self._txn, self._schema, self._index_name, self._key)

    def open(self) -> None:
        self._entries = self.entries()
        self._pos = 0

    def next(self) -> list[Any] | None:
        if self._pos >= len(self._entries):
            return None
        _, row = self._entries[self._pos]
        self._pos += 1
        return [row[c] for c in self._schema.column_names]

    def close(self) -> None:
        self._entries = []


class ValuesOperator(Operator):
    """Emits pre-computed rows (CTEs, views, derived tables, VALUES lists)."""

    def __init__(self, layout: Layout, rows: Sequence[Sequence[Any]]) -> None:
        self.layout = layout
        self._rows = rows
        self._pos = 0

    def open(self) -> None:
        self._pos = 0

    def next(self) -> list[Any] | None:
        if self._pos >= len(self._rows):
            return None
        row = self._rows[self._pos]
        self._pos += 1
        return list(row)

    def close(self) -> None:
        pass


class FilterOperator(Operator):
    """Passes rows for which the predicate is TRUE."""

    def __init__(self, child: Operator, predicate: Expression, scope: EvalContext) -> None:
        self._child = child
        self._predicate = predicate
        self._scope = scope
        self.layout = child.layout
        self._iter: Iterator[list[Any]] | None = None

    def open(self) -> None:
        self._iter = iter(self._child)

    def next(self) -> list[Any] | None:
        assert self._iter is not None
        for row in self._iter:
            if is_true(evaluate(self._predicate, self._scope.with_frame(Frame(row)))):
                return row
        return None

    def close(self) -> None:
        self._iter = None


class NestedLoopJoinOperator(Operator):
    """Nested-loop join supporting INNER, LEFT, RIGHT, FULL and CROSS joins.

    The right input is materialized once; the left input streams.
    """

    def __init__(
        self,
        left: Operator,
        right: Operator,
        kind: JoinKind,
        condition: Expression | None,
        scope: EvalContext,
    ) -> None:
        self._left = left
        self._right = right
        self._kind = kind
        self._condition = condition
        self.layout = Layout(left.layout.sources + right.layout.sources)
        self._scope = EvalContext(self.layout, Frame([]), scope.outer, scope.run_query)
        self._gen: Iterator[list[Any]] | None = None

    def open(self) -> None:
        self._gen = self._rows()

    def next(self) -> list[Any] | None:
        assert self._gen is not None
        return next(self._gen, None)

    def close(self) -> None:
        self._gen = None

    def _rows(self) -> Iterator[list[Any]]:
        right_rows = list(self._right)
        left_width = self._left.layout.width
        right_width = self._right.layout.width
        matched_right: set[int] = set()

        for left in self._left:
            matched = False
            for i, right in enumerate(right_rows):
                combined = left + right
                if self._condition is None or is_true(
                    evaluate(self._condition, self._scope.with_frame(Frame(combined)))
                ):
                    matched = True
                    matched_right.add(i)
                    yield combined
            if not matched and self._kind in (JoinKind.LEFT, JoinKind.FULL):
                yield left + [None] * right_width

        if self._kind in (JoinKind.RIGHT, JoinKind.FULL):
            for i, right in enumerate(right_rows):
                if i not in matched_right:
                    yield [None] * left_width + right


class LimitOperator(Operator):
    """Skips ``offset`` rows, then passes at most ``limit`` rows."""

    def __init__(self, child: Operator, limit: int | None, offset: int = 0) -> None:
        self._child = child
        self._limit = limit
        self._offset = offset
        self.layout = child.layout
        self._iter: Iterator[list[Any]] | None = None
        self._emitted = 0

    def open(self) -> None:
        self._iter = iter(self._child)
        self._emitted = 0
        for _ in range(self._offset):
            if next(self._iter, None) is None:
                break

    def next(self) -> list[Any] | None:
        assert self._iter is not None
        if self._limit is not None and self._emitted >= self._limit:
            return None
        row = next(self._iter, None)
        if row is not None:
            self._emitted += 1
        return row

    def close(self) -> None:
        self._iter = None


# =============================================================================
# Executor
# =============================================================================


@dataclass
class _Relation:
    """A materialized relation: column names and rows."""

    columns: list[str]
    rows: list[tuple]


@dataclass
class _Env:
    """Per-statement state shared by nested queries."""

    txn: Transaction
    ctes: dict[str, _Relation] = field(default_factory=dict)
    trigger: TriggerScope | None = None

    def with_cte(self, name: str, relation: _Relation) -> _Env:
        ctes = dict(self.ctes)
        ctes[name.lower()] = relation
        return _Env(self.txn, ctes, self.trigger)


class QueryExecutor:
    """Executes commands within a transaction.

    Every call to ``execute`` is one statement: it runs inside the
    transaction manager's statement scope, so a failure undoes the
    statement's staged changes and leaves earlier statements intact.

    Usage:
        executor = QueryExecutor(catalog, storage, txn_mgr, dispatcher, view_cache)
        result = executor.execute(Select(...), txn)
    """

    def __init__(
        self,
        catalog: Catalog,
        storage: StorageEngine,
        txn_manager: MVCCTransactionManager,
        dispatcher: TriggerDispatcher,
        view_cache: ViewCache,
        parse: Callable[[str], Command] | None = None,
        max_recursion: int = 100,
    ) -> None:
        """Initialize executor.

        Args:
            catalog: Definitions registry.
            storage: MVCC row store.
            txn_manager: Provides statement scopes and catalog refresh.
            dispatcher: Fires row triggers around mutations.
            view_cache: Cache for materialized views.
            parse: Converts SQL text issued by triggers into commands.
            max_recursion: Iteration limit for WITH RECURSIVE.
        """
        self._catalog = catalog
        self._storage = storage
        self._txn_manager = txn_manager
        self._dispatcher = dispatcher
        self._view_cache = view_cache
        self._parse = parse
        self._max_recursion = max_recursion

    def execute(
        self,
        command: Command,
        txn: Transaction,
        trigger_scope: TriggerScope | None = None,
    ) -> ExecutionResult:
        """Execute one statement.

        Args:
            command: The validated command.
            txn: An ACTIVE transaction.
            trigger_scope: The trigger row, when a trigger issues the statement.

        Returns:
            ResultSet for queries, RowsAffected otherwise.
        """
        if isinstance(command, TransactionControl):
            raise TransactionStateError(
                f"{command.statement_type.name} must be issued through a session or the sandbox"
            )

        with self._txn_manager.statement(txn):
            env = _Env(txn, trigger=trigger_scope)
            outer = self._trigger_context(trigger_scope, env)

            if isinstance(command, (Select, SetOperation)):
                relation = self._run_query(command, env, outer)
                return ResultSet(
                    columns=list(relation.columns),
                    rows=[Row(list(relation.columns), list(r)) for r in relation.rows],
                )
            if isinstance(command, Insert):
                return self._execute_insert(command, env, outer)
            if isinstance(command, Update):
                return self._execute_update(command, env, outer)
            if isinstance(command, Delete):
                return self._execute_delete(command, env, outer)
            if isinstance(command, Merge):
                return self._execute_merge(command, env, outer)
            return self._execute_ddl(command, env)

    def _run_from_trigger(self, statement: Any, txn: Transaction, scope: TriggerScope) -> ExecutionResult:
        if isinstance(statement, str):
            if self._parse is None:
                raise SchemaError("SQL text requires a parser; pass a command instead")
            statement = self._parse(statement)
        return self.execute(statement, txn, trigger_scope=scope)

    def _trigger_context(self, scope: TriggerScope | None, env: _Env) -> EvalContext | None:
        if scope is None:
            return None
        columns = list(scope.columns)
        old = [scope.old.get(c) for c in columns] if scope.old is not None else [None] * len(columns)
        new = [scope.new.get(c) for c in columns] if scope.new is not None else [None] * len(columns)
        layout = Layout([("old", columns), ("new", columns)])
        return EvalContext(layout, Frame(old + new), None, self._runner(env))

    def _runner(self, env: _Env) -> Callable[[Query, EvalContext], list[tuple]]:
        def run(query: Query, ctx: EvalContext) -> list[tuple]:
            return self._run_query(query, env, ctx).rows

        return run

    def _scope(self, layout: Layout, env: _Env, outer: EvalContext | None) -> EvalContext:
        return EvalContext(layout, Frame([None] * layout.width), outer, self._runner(env))

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def _run_query(self, query: Query, env: _Env, outer: EvalContext | None) -> _Relation:
        env = self._bind_ctes(query.ctes, env, outer)
        if isinstance(query, SetOperation):
            return self._run_set_operation(query, env, outer)
        return self._run_select(query, env, outer)

    def _bind_ctes(self, ctes: Sequence[CommonTableExpr], env: _Env, outer: EvalContext | None) -> _Env:
        for cte in ctes:
            if self._is_recursive(cte):
                relation = self._run_recursive_cte(cte, env, outer)
            else:
                relation = self._run_query(cte.query, env, outer)
            if cte.columns:
                if len(cte.columns) != len(relation.columns):
                    raise SchemaError(
                        f"WITH query '{cte.name}' has {len(relation.columns)} columns "
                        f"but {len(cte.columns)} column names were given"
                    )
                relation = _Relation(list(cte.columns), relation.rows)
            env = env.with_cte(cte.name, relation)
        return env

    @staticmethod
    def _is_recursive(cte: CommonTableExpr) -> bool:
        query = cte.query
        return (
            cte.recursive
            and isinstance(query, SetOperation)
            and query.op == SetOperator.UNION
            and cte.name.lower() in referenced_relations(query.right)
        )

    def _run_recursive_cte(self, cte: CommonTableExpr, env: _Env, outer: EvalContext | None) -> _Relation:
        query = cte.query
        assert isinstance(query, SetOperation)
        anchor = self._run_query(query.left, env, outer)
        columns = list(cte.columns) or anchor.columns
        result = list(anchor.rows)
        seen = {group_key(row) for row in result}
        working = list(anchor.rows)

        iterations = 0
        while working:
            iterations += 1
            if iterations > self._max_recursion:
                raise EvaluationError(
                    f"recursive query '{cte.name}' exceeded {self._max_recursion} iterations"
                )
            step_env = env.with_cte(cte.name, _Relation(columns, working))
            step = self._run_query(query.right, step_env, outer)
            if len(step.columns) != len(columns):
                raise SchemaError(f"recursive query '{cte.name}' column count mismatch")
            if query.all:
                new_rows = step.rows
            else:
                new_rows = []
                for row in step.rows:
                    key = group_key(row)
                    if key not in seen:
                        seen.add(key)
                        new_rows.append(row)
            result.extend(new_rows)
            working = new_rows
        return _Relation(columns, result)

    def _run_set_operation(self, query: SetOperation, env: _Env, outer: EvalContext | None) -> _Relation:
        left = self._run_query(query.left, env, outer)
        right = self._run_query(query.right, env, outer)
        if len(left.columns) != len(right.columns):
            raise SchemaError(
                f"each {query.op.value} query must have the same number of columns"
            )

        if query.op == SetOperator.UNION:
            rows = left.rows + right.rows if query.all else _distinct(left.rows + right.rows)
        elif query.op == SetOperator.INTERSECT:
            rows = _intersect(left.rows, right.rows, query.all)
        else:
            rows = _except(left.rows, right.rows, query.all)

        layout = Layout([(None, left.columns)])
        scope = self._scope(layout, env, outer)
        frames = [scope.with_frame(Frame(r)) for r in rows]
        rows = self._order_and_limit(
            rows, frames, query.order_by, query.limit, query.offset, len(left.columns)
        )
        return _Relation(left.columns, rows)

    def _run_select(self, query: Select, env: _Env, outer: EvalContext | None) -> _Relation:
        # 1. FROM / JOIN
        if query.source is None:
            op: Operator = ValuesOperator(Layout(), [[]])
        else:
            op = self._plan_from(query, env, outer)
        layout = op.layout
        scope = self._scope(layout, env, outer)

        # 2. WHERE
        if query.where is not None:
            op = FilterOperator(op, query.where, scope)
        rows = list(op)

        # 3. GROUP BY / aggregates
        group_by = tuple(self._resolve_group_expr(g, query.items, layout) for g in query.group_by)
        aggregates: list[AggregateExpr] = []
        for expr in [i.expr for i in query.items] + [query.having] + [o.expr for o in query.order_by]:
            for agg in find_aggregates(expr):
                if agg not in aggregates:
                    aggregates.append(agg)

        if group_by or aggregates or query.having is not None:
            frames = self._group(rows, group_by, aggregates, scope, layout.width)
        else:
            frames = [Frame(r) for r in rows]

        # 4. HAVING
        if query.having is not None:
            frames = [f for f in frames if is_true(evaluate(query.having, scope.with_frame(f)))]

        # 5. Window functions
        windows: list[WindowExpr] = []
        for expr in [i.expr for i in query.items] + [o.expr for o in query.order_by]:
            for w in find_windows(expr):
                if w not in windows:
                    windows.append(w)
        for window in windows:
            self._compute_window(window, frames, scope)

        # 6. Projection
        columns, exprs = self._expand_items(query.items, layout)
        contexts = [scope.with_frame(f) for f in frames]
        output = [tuple(evaluate(e, ctx) for e in exprs) for ctx in contexts]

        # Output columns take precedence over source columns in ORDER BY.
        out_layout = Layout([(None, columns)])
        order_contexts = [
            EvalContext(out_layout, Frame(out, f.aggregates, f.windows), ctx, ctx.run_query)
            for out, f, ctx in zip(output, frames, contexts)
        ]

        # 7. DISTINCT
        if query.distinct:
            kept: dict[tuple, int] = {}
            for i, out in enumerate(output):
                kept.setdefault(group_key(out), i)
            output = [output[i] for i in kept.values()]
            order_contexts = [order_contexts[i] for i in kept.values()]

        # 8-9. ORDER BY, LIMIT/OFFSET
        output = self._order_and_limit(
            output, order_contexts, query.order_by, query.limit, query.offset, len(columns)
        )
        return _Relation(columns, output)

    def _order_and_limit(
        self,
        rows: list[tuple],
        contexts: list[EvalContext],
        order_by: Sequence[OrderByItem],
        limit: int | None,
        offset: int,
        width: int,
    ) -> list[tuple]:
        if order_by:
            keys = []
            for row, ctx in zip(rows, contexts):
                key = []
                for item in order_by:
                    if (
                        isinstance(item.expr, LiteralExpr)
                        and isinstance(item.expr.value, int)
                        and not isinstance(item.expr.value, bool)
                    ):
                        position = item.expr.value
                        if not 1 <= position <= width:
                            raise SchemaError(f"ORDER BY position {position} is not in select list")
                        key.append(row[position - 1])
                    else:
                        key.append(evaluate(item.expr, ctx))
                keys.append(tuple(key))
            directions = [(o.ascending, o.nulls_first) for o in order_by]
            cmp = sort_key(directions)
            order = sorted(range(len(rows)), key=lambda i: cmp(keys[i]))
            rows = [rows[i] for i in order]

        if limit is None and not offset:
            return rows
        limited = LimitOperator(ValuesOperator(Layout(), rows), limit, offset)
        return [tuple(r) for r in limited]

    @staticmethod
    def _resolve_group_expr(expr: Expression, items: Sequence[SelectItem], layout: Layout) -> Expression:
        """GROUP BY may name a select-list position or an output alias."""
        if isinstance(expr, LiteralExpr) and isinstance(expr.value, int) and not isinstance(expr.value, bool):
            if not 1 <= expr.value <= len(items):
                raise SchemaError(f"GROUP BY position {expr.value} is not in select list")
            return items[expr.value - 1].expr
        if isinstance(expr, ColumnExpr) and expr.table is None and layout.resolve(expr.name) is None:
            for item in items:
                if item.alias and item.alias.lower() == expr.name.lower():
                    return item.expr
        return expr

    def _group(
        self,
        rows: list[list[Any]],
        group_by: Sequence[Expression],
        aggregates: Sequence[AggregateExpr],
        scope: EvalContext,
        width: int,
    ) -> list[Frame]:
        groups: dict[tuple, list[list[Any]]] = {}
        for row in rows:
            ctx = scope.with_frame(Frame(row))
            key = group_key(evaluate(g, ctx) for g in group_by)
            groups.setdefault(key, []).append(row)

        # Aggregating an empty input without GROUP BY yields one group.
        if not groups and not group_by:
            groups[()] = []

        frames = []
        for members in groups.values():
            representative = members[0] if members else [None] * width
            values: dict[Expression, Any] = {}
            for agg in aggregates:
                if agg.arg is None:
                    values[agg] = len(members)
                    continue
                args = [evaluate(agg.arg, scope.with_frame(Frame(m))) for m in members]
                values[agg] = aggregate(agg.func.value, args, agg.distinct)
            frames.append(Frame(representative, aggregates=values))
        return frames

    def _compute_window(self, window: WindowExpr, frames: list[Frame], scope: EvalContext) -> None:
        inputs = []
        for frame in frames:
            ctx = scope.with_frame(frame)
            inputs.append(
                WindowInput(
                    partition=tuple(evaluate(p, ctx) for p in window.partition_by),
                    order=tuple(evaluate(o.expr, ctx) for o in window.order_by),
                    args=tuple(evaluate(a, ctx) for a in window.args),
                )
            )
        directions = [(o.ascending, o.nulls_first) for o in window.order_by]
        results = compute_window(
            window.func,
            inputs,
            directions,
            distinct=window.distinct,
            count_star=window.func == "COUNT" and not window.args,
        )
        for frame, value in zip(frames, results):
            frame.windows[window] = value

    @staticmethod
    def _expand_items(items: Sequence[SelectItem], layout: Layout) -> tuple[list[str], list[Expression]]:
        columns: list[str] = []
        exprs: list[Expression] = []
        for item in items:
            if isinstance(item.expr, StarExpr):
                for name, idx in layout.star(item.expr.table):
                    binding = layout.columns[idx][0]
                    columns.append(name)
                    exprs.append(ColumnExpr(name, binding))
            else:
                columns.append(item.alias or output_name(item.expr))
                exprs.append(item.expr)
        return columns, exprs

    # -------------------------------------------------------------------------
    # FROM clause
    # -------------------------------------------------------------------------

    def _plan_from(self, query: Select, env: _Env, outer: EvalContext | None) -> Operator:
        assert query.source is not None
        predicate = query.where if not query.joins else None
        op = self._source(query.source, env, outer, predicate)
        for join in query.joins:
            right = self._source(join.source, env, outer)
            scope = self._scope(Layout(), env, outer)
            op = NestedLoopJoinOperator(op, right, join.kind, join.condition, scope)
        return op

    def _source(
        self,
        item: FromItem,
        env: _Env,
        outer: EvalContext | None,
        predicate: Expression | None = None,
    ) -> Operator:
        if isinstance(item, SubqueryRef):
            relation = self._run_query(item.query, env, outer)
            return ValuesOperator(Layout([(item.alias, relation.columns)]), relation.rows)

        if isinstance(item, ValuesRef):
            ctx = self._scope(Layout(), env, outer)
            rows = [tuple(evaluate(e, ctx) for e in row) for row in item.rows]
            width = len(item.rows[0]) if item.rows else len(item.columns)
            columns = list(item.columns) or [f"column{i + 1}" for i in range(width)]
            return ValuesOperator(Layout([(item.alias, columns)]), rows)

        binding = item.binding
        name = item.name.lower()
        if name in env.ctes:
            relation = env.ctes[name]
            return ValuesOperator(Layout([(binding, relation.columns)]), relation.rows)

        if env.trigger is not None and name in ("inserted", "deleted"):
            image = env.trigger.new if name == "inserted" else env.trigger.old
            columns = list(env.trigger.columns)
            rows = [tuple(image.get(c) for c in columns)] if image is not None else []
            return ValuesOperator(Layout([(binding, columns)]), rows)

        relation_def = resolve_in(env.txn.catalog, item.name)
        if isinstance(relation_def, ViewDef):
            view = self._read_view(relation_def, env)
            return ValuesOperator(Layout([(binding, view.columns)]), view.rows)

        return self._table_access(relation_def, binding, env.txn, predicate)

    def _table_access(
        self,
        schema: TableSchema,
        binding: str,
        txn: Transaction,
        predicate: Expression | None,
    ) -> Operator:
        """Choose a primary-key or secondary-index lookup when the predicate pins one."""
        equalities: dict[str, Any] = {}
        for term in conjuncts(predicate):
            if not (isinstance(term, ComparisonExpr) and term.op == ComparisonOp.EQ):
                continue
            column, literal = term.left, term.right
            if isinstance(column, LiteralExpr):
                column, literal = literal, column
            if (
                isinstance(column, ColumnExpr)
                and isinstance(literal, LiteralExpr)
                and literal.value is not None
                and (column.table is None or column.table.lower() == binding.lower())
                and schema.has_column(column.name)
            ):
                equalities[schema.canonical(column.name).lower()] = literal.value

        if schema.primary_key and all(c.lower() in equalities for c in schema.primary_key):
            key = tuple(equalities[c.lower()] for c in schema.primary_key)
            return IndexLookupOperator(self._storage, txn, schema, binding, None, self._coerce_key(schema, key))

        for index in txn.catalog.indexes_for(schema.table_id):
            if all(c.lower() in equalities for c in index.columns):
                key = tuple(equalities[c.lower()] for c in index.columns)
                return IndexLookupOperator(
                    self._storage, txn, schema, binding, index.name, self._coerce_key(schema, key, index.columns)
                )

        return SeqScanOperator(self._storage, txn, schema, binding)

    @staticmethod
    def _coerce_key(schema: TableSchema, key: tuple, columns: Sequence[str] | None = None) -> tuple:
        names = columns or schema.primary_key
        coerced = []
        for name, value in zip(names, key):
            col = schema.column(name)
            try:
                coerced.append(coerce(value, col.data_type))
            except CoercionError:
                coerced.append(value)
        return tuple(coerced)

    def _read_view(self, view: ViewDef, env: _Env) -> _Relation:
        txn = env.txn
        base = _Env(txn)
        if not view.materialized:
            return self._run_query(view.query, base, None)

        deps = frozenset(
            txn.catalog.tables[name].table_id for name in view.dependencies if name in txn.catalog.tables
        )
        touched = txn.working_set.tables()
        cached = self._view_cache.get(view.name, deps, txn.snapshot_seq, touched)
        if cached is not None:
            return _Relation(list(cached.columns), list(cached.rows))

        relation = self._run_query(view.query, base, None)
        if not (touched & deps):
            self._view_cache.put(
                view.name,
                CachedView(
                    columns=tuple(relation.columns),
                    rows=tuple(relation.rows),
                    computed_seq=txn.snapshot_seq,
                    dependencies=deps,
                ),
            )
        return relation

    # -------------------------------------------------------------------------
    # DML
    # -------------------------------------------------------------------------

    def _target_table(self, name: str, txn: Transaction) -> TableSchema:
        relation = resolve_in(txn.catalog, name)
        if isinstance(relation, ViewDef):
            raise ConflictError(f"cannot modify view '{relation.name}'", table=relation.name)
        return relation

    def _execute_insert(self, command: Insert, env: _Env, outer: EvalContext | None) -> RowsAffected:
        txn = env.txn
        schema = self._target_table(command.table, txn)
        columns = [schema.canonical(c) for c in command.columns] or schema.column_names

        if command.query is not None:
            value_rows = self._run_query(command.query, env, outer).rows
        else:
            ctx = self._scope(Layout(), env, outer)
            value_rows = [tuple(evaluate(e, ctx) for e in row) for row in command.rows]

        for values in value_rows:
            if len(values) != len(columns):
                raise SchemaError(
                    f"INSERT into '{schema.name}' has {len(values)} values for {len(columns)} columns",
                    table=schema.name,
                )

        for values in value_rows:
            self._insert_row(schema, dict(zip(columns, values)), txn)
        return RowsAffected(len(value_rows), f"INSERT {len(value_rows)}")

    def _insert_row(self, schema: TableSchema, values: RowValues, txn: Transaction) -> RowKey:
        new = self._storage.prepare_row(schema, values, fill_defaults=True)
        new = self._dispatcher.fire_before(txn, schema, TriggerEvent.INSERT, None, new, self._run_from_trigger)
        assert new is not None
        key = self._storage.put(txn, schema, new)
        staged = self._storage.get(txn, schema, key)
        self._dispatcher.fire_after(txn, schema, TriggerEvent.INSERT, None, staged, self._run_from_trigger)
        return key

    def _matching_rows(
        self,
        schema: TableSchema,
        binding: str,
        where: Expression | None,
        env: _Env,
        outer: EvalContext | None,
    ) -> list[tuple[RowKey, RowValues]]:
        """Materialize (key, row) pairs that satisfy ``where`` before any change is applied."""
        layout = Layout([(binding, schema.column_names)])
        scope = self._scope(layout, env, outer)
        access = self._table_access(schema, binding, env.txn, where)
        if isinstance(access, IndexLookupOperator):
            candidates = access.entries()
        else:
            candidates = list(self._storage.scan(env.txn, schema))

        matches = []
        for key, row in candidates:
            values = [row[c] for c in schema.column_names]
            if where is None or is_true(evaluate(where, scope.with_frame(Frame(values)))):
                matches.append((key, row))
        return matches

    def _execute_update(self, command: Update, env: _Env, outer: EvalContext | None) -> RowsAffected:
        txn = env.txn
        schema = self._target_table(command.table, txn)
        binding = command.alias or schema.name
        targets = self._matching_rows(schema, binding, command.where, env, outer)

        layout = Layout([(binding, schema.column_names)])
        scope = self._scope(layout, env, outer)
        count = 0
        for key, _ in targets:
            current = self._storage.get(txn, schema, key)
            if current is None:
                continue
            ctx = scope.with_frame(Frame([current[c] for c in schema.column_names]))
            self._update_row(schema, key, current, command.assignments, ctx, txn)
            count += 1
        return RowsAffected(count, f"UPDATE {count}")

    def _update_row(
        self,
        schema: TableSchema,
        key: RowKey,
        old: RowValues,
        assignments: Sequence[Assignment],
        ctx: EvalContext,
        txn: Transaction,
    ) -> RowKey:
        new = dict(old)
        for assignment in assignments:
            new[schema.canonical(assignment.column)] = evaluate(assignment.expr, ctx)
        new = self._dispatcher.fire_before(txn, schema, TriggerEvent.UPDATE, old, new, self._run_from_trigger)
        assert new is not None
        new_key = self._storage.replace(txn, schema, key, new)
        staged = self._storage.get(txn, schema, new_key)
        self._dispatcher.fire_after(txn, schema, TriggerEvent.UPDATE, old, staged, self._run_from_trigger)
        return new_key

    def _execute_delete(self, command: Delete, env: _Env, outer: EvalContext | None) -> RowsAffected:
        txn = env.txn
        schema = self._target_table(command.table, txn)
        binding = command.alias or schema.name
        targets = self._matching_rows(schema, binding, command.where, env, outer)

        count = 0
        for key, _ in targets:
            current = self._storage.get(txn, schema, key)
            if current is None:
                continue
            if self._delete_row(schema, key, current, txn):
                count += 1
        return RowsAffected(count, f"DELETE {count}")

    def _delete_row(self, schema: TableSchema, key: RowKey, old: RowValues, txn: Transaction) -> bool:
        self._dispatcher.fire_before(txn, schema, TriggerEvent.DELETE, old, None, self._run_from_trigger)
        deleted = self._storage.delete(txn, schema, key)
        if deleted:
            self._dispatcher.fire_after(txn, schema, TriggerEvent.DELETE, old, None, self._run_from_trigger)
        return deleted

    def _execute_merge(self, command: Merge, env: _Env, outer: EvalContext | None) -> RowsAffected:
        """MERGE: a source pass, then a pass over unmatched target rows.

        Each source row either matches target rows (WHEN MATCHED) or not
        (WHEN NOT MATCHED BY TARGET). Target rows that no source row
        matched are then offered to WHEN NOT MATCHED BY SOURCE. For every
        row the first clause whose condition holds wins.

        Raises:
            ConstraintViolationError: If a target row matches more than one
                source row.
        """
        txn = env.txn
        schema = self._target_table(command.target.name, txn)
        target_binding = command.target.binding
        source = self._source(command.source, env, outer)
        source_layout = source.layout
        source_rows = list(source)
        target_rows = [(k, [v[c] for c in schema.column_names]) for k, v in self._storage.scan(txn, schema)]

        target_width = len(schema.column_names)
        layout = Layout([(target_binding, schema.column_names)] + source_layout.sources)
        scope = self._scope(layout, env, outer)
        source_nulls = [None] * source_layout.width

        by_match = {m: [c for c in command.clauses if c.match == m] for m in MergeMatch}
        matched_by: dict[RowKey, int] = {}
        count = 0

        for s_index, s_row in enumerate(source_rows):
            matches = []
            for t_key, t_row in target_rows:
                ctx = scope.with_frame(Frame(t_row + s_row))
                if is_true(evaluate(command.on, ctx)):
                    matches.append((t_key, t_row))

            if not matches:
                ctx = scope.with_frame(Frame([None] * target_width + s_row))
                clause = self._first_clause(by_match[MergeMatch.NOT_MATCHED_BY_TARGET], ctx)
                if clause is not None:
                    columns = [schema.canonical(c) for c in clause.columns] or schema.column_names
                    values = [evaluate(v, ctx) for v in clause.values]
                    if len(values) != len(columns):
                        raise SchemaError("MERGE INSERT value count does not match columns", table=schema.name)
                    self._insert_row(schema, dict(zip(columns, values)), txn)
                    count += 1
                continue

            for t_key, t_row in matches:
                if t_key in matched_by:
                    raise ConstraintViolationError(
                        f"MERGE matched target row {t_key!r} of '{schema.name}' "
                        f"with more than one source row",
                        table=schema.name,
                        key=t_key,
                        constraint="merge_cardinality",
                    )
                matched_by[t_key] = s_index
                ctx = scope.with_frame(Frame(t_row + s_row))
                clause = self._first_clause(by_match[MergeMatch.MATCHED], ctx)
                if clause is not None and self._apply_merge_action(schema, t_key, clause, ctx, txn):
                    count += 1

        for t_key, t_row in target_rows:
            if t_key in matched_by:
                continue
            ctx = scope.with_frame(Frame(t_row + source_nulls))
            clause = self._first_clause(by_match[MergeMatch.NOT_MATCHED_BY_SOURCE], ctx)
            if clause is not None and self._apply_merge_action(schema, t_key, clause, ctx, txn):
                count += 1

        return RowsAffected(count, f"MERGE {count}")

    @staticmethod
    def _first_clause(clauses: Sequence[MergeClause], ctx: EvalContext) -> MergeClause | None:
        for clause in clauses:
            if clause.condition is None or is_true(evaluate(clause.condition, ctx)):
                return clause
        return None

    def _apply_merge_action(
        self,
        schema: TableSchema,
        key: RowKey,
        clause: MergeClause,
        ctx: EvalContext,
        txn: Transaction,
    ) -> bool:
        current = self._storage.get(txn, schema, key)
        if current is None:
            return False
        if clause.action == MergeAction.DELETE:
            return self._delete_row(schema, key, current, txn)
        self._update_row(schema, key, current, clause.assignments, ctx, txn)
        return True

    # -------------------------------------------------------------------------
    # DDL
    # -------------------------------------------------------------------------

    def _execute_ddl(self, command: Command, env: _Env) -> RowsAffected:
        txn = env.txn
        message = self._apply_ddl(command, env)
        self._txn_manager.refresh_catalog(txn)
        return RowsAffected(0, message)

    def _apply_ddl(self, command: Command, env: _Env) -> str:
        if isinstance(command, CreateTable):
            schema = self._catalog.define_table(command, on_define=self._storage.create_table)
            if schema is not None:
                logger.info("table_defined", table=schema.name, table_id=schema.table_id)
            return "CREATE TABLE"

        if isinstance(command, DropTable):
            schema = self._catalog.drop_table(command.name, command.if_exists, on_drop=self._storage.drop_table)
            if schema is not None:
                logger.info("table_dropped", table=schema.name)
            return "DROP TABLE"

        if isinstance(command, CreateView):
            # Run the query once so invalid views are rejected up front.
            self._run_query(command.query, _Env(env.txn), None)
            view = self._catalog.define_view(command)
            for name in [view.name, *self._catalog.dependent_views(view.name)]:
                self._view_cache.invalidate(name)
            logger.info("view_defined", view=view.name, materialized=view.materialized)
            return "CREATE VIEW"

        if isinstance(command, DropView):
            view = self._catalog.drop_view(command.name, command.if_exists)
            if view is not None:
                self._view_cache.invalidate(view.name)
                logger.info("view_dropped", view=view.name)
            return "DROP VIEW"

        if isinstance(command, CreateIndex):
            index = self._catalog.define_index(command, on_define=self._storage.create_index)
            if index is not None:
                logger.info("index_defined", index=index.name, table=index.table, unique=index.unique)
            return "CREATE INDEX"

        if isinstance(command, DropIndex):
            self._catalog.drop_index(command.name, command.if_exists, on_drop=self._storage.drop_index)
            return "DROP INDEX"

        if isinstance(command, CreateTrigger):
            trigger = self._catalog.define_trigger(command)
            logger.info(
                "trigger_defined",
                trigger=trigger.name,
                table=trigger.table,
                timing=trigger.timing.value,
                events=sorted(e.value for e in trigger.events),
            )
            return "CREATE TRIGGER"

        if isinstance(command, DropTrigger):
            self._catalog.drop_trigger(command.name, command.if_exists)
            return "DROP TRIGGER"

        raise SchemaError(f"unsupported command: {type(command).__name__}")


def output_name(expr: Expression) -> str:
    """Default output column name for an unaliased select item."""
    if isinstance(expr, ColumnExpr):
        return expr.name
    return str(expr)


def _distinct(rows: Sequence[tuple]) -> list[tuple]:
    unique: dict[tuple, tuple] = {}
    for row in rows:
        unique.setdefault(group_key(row), row)
    return list(unique.values())


def _counts(rows: Sequence[tuple]) -> dict[tuple, int]:
    remaining: dict[tuple, int] = {}
    for row in rows:
        key = group_key(row)
        remaining[key] = remaining.get(key, 0) + 1
    return remaining


def _intersect(left: Sequence[tuple], right: Sequence[tuple], keep_all: bool) -> list[tuple]:
    if not keep_all:
        right_keys = {group_key(r) for r in right}
        return [r for r in _distinct(left) if group_key(r) in right_keys]
    remaining = _counts(right)
    result = []
    for r in left:
        key = group_key(r)
        if remaining.get(key, 0) > 0:
            remaining[key] -= 1
            result.append(r)
    return result


def _except(left: Sequence[tuple], right: Sequence[tuple], keep_all: bool) -> list[tuple]:
    if not keep_all:
        right_keys = {group_key(r) for r in right}
        return [r for r in _distinct(left) if group_key(r) not in right_keys]
    remaining = _counts(right)
    result = []
    for r in left:
        key = group_key(r)
        if remaining.get(key, 0) > 0:
            remaining[key] -= 1
        else:
            result.append(r)
    return result
