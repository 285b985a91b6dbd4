"""SQL Parser using sqlglot.

This module converts SQL text into the sandbox's command values. It only
builds values; all validation of names and types against the catalog
happens at execution time.

Supported statements:
    - SELECT (joins, subqueries, GROUP BY/HAVING, window functions,
      DISTINCT, ORDER BY, LIMIT/OFFSET, WITH [RECURSIVE])
    - UNION [ALL], INTERSECT, EXCEPT
    - INSERT (VALUES or query), UPDATE, DELETE, MERGE
    - CREATE/DROP TABLE, [MATERIALIZED] VIEW, INDEX; DROP TRIGGER
    - BEGIN, COMMIT, ROLLBACK

Triggers carry Python procedures and are created through
``Sandbox.create_trigger`` rather than CREATE TRIGGER.

References:
    - sqlglot documentation: https://sqlglot.com/
"""

from __future__ import annotations

from typing import Any, Callable

import sqlglot
from sqlglot import exp
from sqlglot.errors import SqlglotError

from sql_sandbox.domain.entities import (
    AggregateExpr,
    AggregateFunc,
    ArithmeticExpr,
    ArithmeticOp,
    Assignment,
    BetweenExpr,
    CaseExpr,
    CastExpr,
    CheckDef,
    ColumnDef,
    ColumnExpr,
    Command,
    CommonTableExpr,
    ComparisonExpr,
    ComparisonOp,
    CreateIndex,
    CreateTable,
    CreateView,
    Delete,
    DropIndex,
    DropTable,
    DropTrigger,
    DropView,
    Expression,
    ForeignKeyDef,
    FromItem,
    FunctionExpr,
    InListExpr,
    Insert,
    InSubqueryExpr,
    Join,
    JoinKind,
    LiteralExpr,
    LogicalExpr,
    LogicalOp,
    Merge,
    MergeAction,
    MergeClause,
    MergeMatch,
    NegateExpr,
    OrderByItem,
    Query,
    Select,
    SelectItem,
    SetOperation,
    SetOperator,
    StarExpr,
    SubqueryExpr,
    SubqueryKind,
    SubqueryRef,
    TableRef,
    TransactionControl,
    Update,
    ValuesRef,
    WindowExpr,
)
from sql_sandbox.domain.entities.commands import StatementType
from sql_sandbox.domain.errors import SandboxError
from sql_sandbox.domain.services.expression_evaluator import is_known_function
from sql_sandbox.domain.services.window_functions import AGGREGATE_FUNCTIONS, RANKING_FUNCTIONS
from sql_sandbox.domain.value_objects import DataType, parse_type_name


class ParseError(SandboxError):
    """SQL text could not be parsed or uses an unsupported construct."""


_COMPARISONS: dict[type, ComparisonOp] = {
    exp.EQ: ComparisonOp.EQ,
    exp.NEQ: ComparisonOp.NE,
    exp.LT: ComparisonOp.LT,
    exp.LTE: ComparisonOp.LE,
    exp.GT: ComparisonOp.GT,
    exp.GTE: ComparisonOp.GE,
}

_ARITHMETIC: dict[type, ArithmeticOp] = {
    exp.Add: ArithmeticOp.ADD,
    exp.Sub: ArithmeticOp.SUB,
    exp.Mul: ArithmeticOp.MUL,
    exp.Div: ArithmeticOp.DIV,
    exp.Mod: ArithmeticOp.MOD,
    exp.DPipe: ArithmeticOp.CONCAT,
}

_AGGREGATES: dict[type, AggregateFunc] = {
    exp.Count: AggregateFunc.COUNT,
    exp.Sum: AggregateFunc.SUM,
    exp.Avg: AggregateFunc.AVG,
    exp.Min: AggregateFunc.MIN,
    exp.Max: AggregateFunc.MAX,
}

_SET_OPERATORS: dict[type, SetOperator] = {
    exp.Union: SetOperator.UNION,
    exp.Intersect: SetOperator.INTERSECT,
    exp.Except: SetOperator.EXCEPT,
}

_TRANSACTION_STATEMENTS: dict[type, StatementType] = {
    exp.Transaction: StatementType.BEGIN,
    exp.Commit: StatementType.COMMIT,
    exp.Rollback: StatementType.ROLLBACK,
}

_TEXT_TYPES = (DataType.VARCHAR, DataType.TEXT)


def _arg(node: exp.Expression, *names: str) -> Any:
    """Return the first present argument among ``names``."""
    for name in names:
        value = node.args.get(name)
        if value is not None:
            return value
    return None


class SQLParser:
    """SQL parser using sqlglot.

    Parses SQL strings and produces command values that the executor
    runs inside a transaction.

    Example:
        >>> parser = SQLParser()
        >>> command = parser.parse("SELECT id, name FROM users WHERE age > 18")
        >>> type(command).__name__
        'Select'
    """

    def __init__(self, dialect: str = "sqlite") -> None:
        """Initialize the parser.

        Args:
            dialect: SQL dialect to use for parsing (default: sqlite).
        """
        self._dialect = dialect

    @property
    def dialect(self) -> str:
        return self._dialect

    def parse(self, sql: str) -> Command:
        """Parse a single SQL statement.

        Raises:
            ParseError: If the SQL is invalid, unsupported, or contains
                more than one statement.
        """
        commands = self.parse_script(sql)
        if not commands:
            raise ParseError("Empty SQL statement")
        if len(commands) > 1:
            raise ParseError("Multiple statements not supported; use parse_script()")
        return commands[0]

    def parse_script(self, sql: str) -> list[Command]:
        """Parse ``;``-separated SQL statements in order.

        Raises:
            ParseError: If any statement is invalid or unsupported.
        """
        try:
            statements = sqlglot.parse(sql, dialect=self._dialect)
        except SqlglotError as e:
            raise ParseError(f"Failed to parse SQL: {e}") from e

        commands = []
        for stmt in statements:
            if stmt is None:
                continue
            try:
                commands.append(self._convert_statement(stmt))
            except ValueError as e:
                # Command values validate themselves on construction.
                raise ParseError(str(e)) from e
        return commands

    # -------------------------------------------------------------------------
    # Statements
    # -------------------------------------------------------------------------

    def _convert_statement(self, stmt: exp.Expression) -> Command:
        for node_type, statement_type in _TRANSACTION_STATEMENTS.items():
            if isinstance(stmt, node_type):
                return TransactionControl(statement_type)

        if isinstance(stmt, (exp.Select, exp.Union, exp.Intersect, exp.Except, exp.Subquery)):
            return self._convert_query(stmt)
        if isinstance(stmt, exp.Insert):
            return self._convert_insert(stmt)
        if isinstance(stmt, exp.Update):
            return self._convert_update(stmt)
        if isinstance(stmt, exp.Delete):
            return self._convert_delete(stmt)
        if isinstance(stmt, exp.Merge):
            return self._convert_merge(stmt)
        if isinstance(stmt, exp.Create):
            return self._convert_create(stmt)
        if isinstance(stmt, exp.Drop):
            return self._convert_drop(stmt)
        if isinstance(stmt, exp.Command):
            return self._convert_command(stmt)
        raise ParseError(f"Unsupported statement type: {type(stmt).__name__}")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def _convert_query(self, node: exp.Expression) -> Query:
        if isinstance(node, exp.Subquery):
            return self._convert_query(node.this)
        if isinstance(node, exp.Select):
            return self._convert_select(node)
        for node_type, op in _SET_OPERATORS.items():
            if isinstance(node, node_type):
                return self._convert_set_operation(node, op)
        raise ParseError(f"Expected a query, got {type(node).__name__}")

    def _convert_set_operation(self, node: exp.Expression, op: SetOperator) -> SetOperation:
        limit, offset = self._limit_offset(node)
        return SetOperation(
            op=op,
            left=self._convert_query(node.this),
            right=self._convert_query(node.expression),
            all=not node.args.get("distinct"),
            order_by=self._order_by(node.args.get("order")),
            limit=limit,
            offset=offset,
            ctes=self._ctes(node),
        )

    def _convert_select(self, select: exp.Select) -> Select:
        distinct = select.args.get("distinct")
        if distinct is not None and distinct.args.get("on") is not None:
            raise ParseError("DISTINCT ON is not supported")

        source: FromItem | None = None
        joins: list[Join] = []
        from_clause = _arg(select, "from", "from_")
        if from_clause is not None:
            source = self._convert_from_item(from_clause.this)
            previous = source.binding
            for join in select.args.get("joins") or []:
                converted = self._convert_join(join, previous)
                joins.append(converted)
                previous = converted.source.binding
        elif select.args.get("joins"):
            raise ParseError("JOIN requires a FROM clause")

        where = select.args.get("where")
        group = select.args.get("group")
        having = select.args.get("having")
        limit, offset = self._limit_offset(select)

        return Select(
            items=tuple(self._convert_select_item(item) for item in select.expressions),
            source=source,
            joins=tuple(joins),
            where=self._convert_expression(where.this) if where is not None else None,
            group_by=tuple(self._convert_expression(g) for g in group.expressions) if group else (),
            having=self._convert_expression(having.this) if having is not None else None,
            order_by=self._order_by(select.args.get("order")),
            limit=limit,
            offset=offset,
            distinct=distinct is not None,
            ctes=self._ctes(select),
        )

    def _ctes(self, node: exp.Expression) -> tuple[CommonTableExpr, ...]:
        with_clause = _arg(node, "with", "with_")
        if with_clause is None:
            return ()
        recursive = bool(with_clause.args.get("recursive"))
        ctes = []
        for cte in with_clause.expressions:
            alias = cte.args.get("alias")
            columns = tuple(c.name for c in alias.columns) if alias is not None else ()
            ctes.append(
                CommonTableExpr(
                    name=cte.alias,
                    query=self._convert_query(cte.this),
                    columns=columns,
                    recursive=recursive,
                )
            )
        return tuple(ctes)

    def _convert_select_item(self, item: exp.Expression) -> SelectItem:
        if isinstance(item, exp.Alias):
            return SelectItem(expr=self._convert_expression(item.this), alias=item.alias)
        expr = self._convert_expression(item)
        if isinstance(expr, (ColumnExpr, StarExpr)):
            return SelectItem(expr=expr)
        # Unaliased computed columns are named after their SQL text.
        return SelectItem(expr=expr, alias=item.sql(dialect=self._dialect))

    def _convert_from_item(self, node: exp.Expression) -> FromItem:
        if isinstance(node, exp.Table):
            if not node.name:
                raise ParseError(f"Unsupported FROM item: {node.sql(dialect=self._dialect)}")
            return TableRef(name=node.name, alias=node.alias or None)

        if isinstance(node, exp.Values):
            return self._convert_values(node, node.args.get("alias"))

        if isinstance(node, exp.Subquery):
            alias = node.args.get("alias")
            if isinstance(node.this, exp.Values):
                return self._convert_values(node.this, alias or node.this.args.get("alias"))
            if alias is None or not alias.name:
                raise ParseError("subquery in FROM must have an alias")
            query = self._convert_query(node.this)
            if alias.columns:
                query = self._rename_outputs(query, [c.name for c in alias.columns])
            return SubqueryRef(query=query, alias=alias.name)

        raise ParseError(f"Unsupported FROM item: {type(node).__name__}")

    @staticmethod
    def _rename_outputs(query: Query, names: list[str]) -> Query:
        if not isinstance(query, Select) or len(query.items) != len(names):
            raise ParseError("derived table column list does not match its query")
        items = tuple(SelectItem(expr=i.expr, alias=n) for i, n in zip(query.items, names))
        return Select(
            items=items,
            source=query.source,
            joins=query.joins,
            where=query.where,
            group_by=query.group_by,
            having=query.having,
            order_by=query.order_by,
            limit=query.limit,
            offset=query.offset,
            distinct=query.distinct,
            ctes=query.ctes,
        )

    def _convert_values(self, node: exp.Values, alias: exp.TableAlias | None) -> ValuesRef:
        rows = tuple(
            tuple(self._convert_expression(v) for v in row.expressions)
            if isinstance(row, exp.Tuple)
            else (self._convert_expression(row),)
            for row in node.expressions
        )
        name = alias.name if alias is not None and alias.name else "values"
        columns = tuple(c.name for c in alias.columns) if alias is not None else ()
        return ValuesRef(rows=rows, alias=name, columns=columns)

    def _convert_join(self, join: exp.Join, previous_binding: str) -> Join:
        source = self._convert_from_item(join.this)
        side = (join.args.get("side") or "").upper()
        kind = (join.args.get("kind") or "").upper()
        condition = join.args.get("on")
        using = join.args.get("using")

        converted: Expression | None = None
        if condition is not None:
            converted = self._convert_expression(condition)
        elif using:
            terms = [
                ComparisonExpr(
                    ColumnExpr(u.name, previous_binding),
                    ComparisonOp.EQ,
                    ColumnExpr(u.name, source.binding),
                )
                for u in using
            ]
            converted = terms[0] if len(terms) == 1 else LogicalExpr(LogicalOp.AND, tuple(terms))

        if side in ("LEFT", "RIGHT", "FULL"):
            join_kind = JoinKind[side]
        elif kind == "CROSS" or converted is None:
            join_kind = JoinKind.CROSS
        else:
            join_kind = JoinKind.INNER
        return Join(source=source, kind=join_kind, condition=converted)

    def _order_by(self, order: exp.Order | None) -> tuple[OrderByItem, ...]:
        if order is None:
            return ()
        items = []
        for node in order.expressions:
            if isinstance(node, exp.Ordered):
                items.append(
                    OrderByItem(
                        expr=self._convert_expression(node.this),
                        ascending=not node.args.get("desc"),
                        nulls_first=bool(node.args.get("nulls_first")),
                    )
                )
            else:
                items.append(OrderByItem(expr=self._convert_expression(node)))
        return tuple(items)

    def _limit_offset(self, node: exp.Expression) -> tuple[int | None, int]:
        limit_node = node.args.get("limit")
        offset_node = node.args.get("offset")
        limit = self._int_clause(limit_node, "LIMIT") if limit_node is not None else None
        offset = self._int_clause(offset_node, "OFFSET") if offset_node is not None else 0
        return limit, offset

    @staticmethod
    def _int_clause(node: exp.Expression, clause: str) -> int:
        value = node.args.get("expression") or node.this
        if isinstance(value, exp.Literal) and value.is_int:
            return int(value.this)
        raise ParseError(f"{clause} requires an integer literal")

    # -------------------------------------------------------------------------
    # Expressions
    # -------------------------------------------------------------------------

    def _convert_expression(self, node: exp.Expression) -> Expression:
        """Convert a sqlglot expression to the sandbox's expression tree."""
        if isinstance(node, exp.Paren):
            return self._convert_expression(node.this)

        if isinstance(node, exp.Alias):
            return self._convert_expression(node.this)

        if isinstance(node, exp.Column):
            if isinstance(node.this, exp.Star):
                return StarExpr(table=node.table or None)
            return ColumnExpr(name=node.name, table=node.table or None)

        if isinstance(node, exp.Star):
            return StarExpr()

        if isinstance(node, exp.Literal):
            return LiteralExpr(self._literal_value(node))

        if isinstance(node, exp.Boolean):
            return LiteralExpr(bool(node.this))

        if isinstance(node, exp.Null):
            return LiteralExpr(None)

        comparison = _COMPARISONS.get(type(node))
        if comparison is not None:
            return ComparisonExpr(
                left=self._convert_expression(node.left),
                op=comparison,
                right=self._convert_expression(node.right),
            )

        arithmetic = _ARITHMETIC.get(type(node))
        if arithmetic is not None:
            return ArithmeticExpr(
                op=arithmetic,
                left=self._convert_expression(node.left),
                right=self._convert_expression(node.right),
            )

        if isinstance(node, exp.Neg):
            operand = self._convert_expression(node.this)
            if isinstance(operand, LiteralExpr) and isinstance(operand.value, (int, float)):
                return LiteralExpr(-operand.value)
            return NegateExpr(operand)

        if isinstance(node, (exp.And, exp.Or)):
            op = LogicalOp.AND if isinstance(node, exp.And) else LogicalOp.OR
            return LogicalExpr(
                op=op,
                operands=(self._convert_expression(node.left), self._convert_expression(node.right)),
            )

        if isinstance(node, exp.Not):
            return self._convert_not(node.this)

        if isinstance(node, (exp.Is, exp.Like, exp.In, exp.Between)):
            # Newer sqlglot folds NOT LIKE / NOT IN / NOT BETWEEN into a negate flag.
            return self._convert_predicate(node, negated=bool(node.args.get("negate")))

        if isinstance(node, exp.Case):
            return self._convert_case(node)

        if isinstance(node, exp.Cast):
            return CastExpr(
                operand=self._convert_expression(node.this),
                data_type=self._convert_data_type(node.args["to"]),
            )

        if isinstance(node, exp.Exists):
            return SubqueryExpr(query=self._convert_query(node.this), kind=SubqueryKind.EXISTS)

        if isinstance(node, exp.Subquery):
            return SubqueryExpr(query=self._convert_query(node.this))

        if isinstance(node, exp.Window):
            return self._convert_window(node)

        aggregate = _AGGREGATES.get(type(node))
        if aggregate is not None:
            return self._convert_aggregate(node, aggregate)

        if isinstance(node, exp.Func):
            return self._convert_function(node)

        raise ParseError(f"Unsupported expression type: {type(node).__name__}")

    def _convert_not(self, inner: exp.Expression) -> Expression:
        while isinstance(inner, exp.Paren):
            inner = inner.this
        if isinstance(inner, exp.Not):
            return self._convert_expression(inner.this)
        if isinstance(inner, (exp.Is, exp.Like, exp.In, exp.Between)):
            return self._convert_predicate(inner, negated=not inner.args.get("negate"))
        return LogicalExpr(op=LogicalOp.NOT, operands=(self._convert_expression(inner),))

    def _convert_predicate(self, node: exp.Expression, negated: bool) -> Expression:
        """Convert IS NULL, LIKE, IN and BETWEEN, folding in a surrounding NOT."""
        if isinstance(node, exp.Is):
            if not isinstance(node.expression, exp.Null):
                raise ParseError("IS is only supported with NULL")
            op = ComparisonOp.IS_NOT_NULL if negated else ComparisonOp.IS_NULL
            return ComparisonExpr(left=self._convert_expression(node.this), op=op)
        if isinstance(node, exp.Like):
            return ComparisonExpr(
                left=self._convert_expression(node.this),
                op=ComparisonOp.NOT_LIKE if negated else ComparisonOp.LIKE,
                right=self._convert_expression(node.expression),
            )
        if isinstance(node, exp.In):
            return self._convert_in(node, negated=negated)
        return BetweenExpr(
            value=self._convert_expression(node.this),
            low=self._convert_expression(node.args["low"]),
            high=self._convert_expression(node.args["high"]),
            negated=negated,
        )

    def _convert_in(self, node: exp.In, negated: bool) -> Expression:
        value = self._convert_expression(node.this)
        query = node.args.get("query")
        if query is not None:
            return InSubqueryExpr(value=value, query=self._convert_query(query), negated=negated)
        options = tuple(self._convert_expression(o) for o in node.expressions)
        return InListExpr(value=value, options=options, negated=negated)

    def _convert_case(self, node: exp.Case) -> CaseExpr:
        whens = tuple(
            (self._convert_expression(branch.this), self._convert_expression(branch.args["true"]))
            for branch in node.args.get("ifs") or []
        )
        default = node.args.get("default")
        operand = node.this
        return CaseExpr(
            whens=whens,
            default=self._convert_expression(default) if default is not None else None,
            operand=self._convert_expression(operand) if operand is not None else None,
        )

    def _convert_aggregate(self, node: exp.Expression, func: AggregateFunc) -> AggregateExpr:
        arg = node.this
        distinct = False
        if isinstance(arg, exp.Distinct):
            distinct = True
            if len(arg.expressions) != 1:
                raise ParseError(f"{func.value}(DISTINCT ...) takes exactly one argument")
            arg = arg.expressions[0]
        if arg is None or isinstance(arg, exp.Star):
            if func != AggregateFunc.COUNT:
                raise ParseError(f"{func.value}(*) is not supported")
            return AggregateExpr(func=func, arg=None, distinct=distinct)
        return AggregateExpr(func=func, arg=self._convert_expression(arg), distinct=distinct)

    def _convert_window(self, node: exp.Window) -> WindowExpr:
        if node.args.get("spec") is not None:
            raise ParseError("explicit window frames are not supported")
        func_node = node.this
        distinct = False
        aggregate = _AGGREGATES.get(type(func_node))
        if aggregate is not None:
            agg = self._convert_aggregate(func_node, aggregate)
            name = aggregate.value
            args: tuple[Expression, ...] = (agg.arg,) if agg.arg is not None else ()
            distinct = agg.distinct
        elif isinstance(func_node, exp.Func):
            name, raw_args = self._function_parts(func_node)
            args = tuple(self._convert_expression(a) for a in raw_args)
        else:
            raise ParseError(f"Unsupported window function: {type(func_node).__name__}")

        if name not in RANKING_FUNCTIONS and name not in AGGREGATE_FUNCTIONS:
            raise ParseError(f"Unsupported window function: {name}")

        partition = node.args.get("partition_by") or []
        return WindowExpr(
            func=name,
            args=args,
            partition_by=tuple(self._convert_expression(p) for p in partition),
            order_by=self._order_by(node.args.get("order")),
            distinct=distinct,
        )

    def _convert_function(self, node: exp.Func) -> Expression:
        name, raw_args = self._function_parts(node)
        if not is_known_function(name):
            raise ParseError(f"Unsupported function: {name}")
        return FunctionExpr(name=name, args=tuple(self._convert_expression(a) for a in raw_args))

    @staticmethod
    def _function_parts(node: exp.Func) -> tuple[str, list[exp.Expression]]:
        """Return (upper-case name, positional argument nodes) of a function call."""
        if isinstance(node, exp.Anonymous):
            return str(node.this).upper(), list(node.expressions)

        if isinstance(node, exp.Trim):
            position = str(node.args.get("position") or "").upper()
            name = {"LEADING": "LTRIM", "TRAILING": "RTRIM"}.get(position, "TRIM")
            args = [node.this]
            if node.args.get("expression") is not None:
                args.append(node.args["expression"])
            return name, args

        args: list[exp.Expression] = []
        for key in type(node).arg_types:
            value = node.args.get(key)
            if isinstance(value, list):
                args.extend(v for v in value if isinstance(v, exp.Expression))
            elif isinstance(value, exp.Expression):
                args.append(value)
        return node.sql_name().upper(), args

    @staticmethod
    def _literal_value(node: exp.Literal) -> Any:
        if node.is_string:
            return node.this
        text = node.this
        if node.is_int:
            return int(text)
        return float(text)

    @staticmethod
    def _convert_data_type(dtype: exp.DataType | None) -> DataType:
        """Convert a sqlglot data type to our internal representation."""
        if dtype is None:
            return DataType.TEXT
        # dtype.this is a DataType.Type enum; its name is the SQL type name.
        type_name = dtype.this.name if hasattr(dtype.this, "name") else str(dtype.this)
        return parse_type_name(type_name)

    # -------------------------------------------------------------------------
    # DML
    # -------------------------------------------------------------------------

    def _convert_insert(self, stmt: exp.Insert) -> Insert:
        target = stmt.this
        columns: tuple[str, ...] = ()
        if isinstance(target, exp.Schema):
            columns = tuple(c.name for c in target.expressions)
            target = target.this
        if not isinstance(target, exp.Table):
            raise ParseError("INSERT requires a table name")

        source = stmt.expression
        if isinstance(source, exp.Values):
            rows = tuple(
                tuple(self._convert_expression(v) for v in row.expressions)
                if isinstance(row, exp.Tuple)
                else (self._convert_expression(row),)
                for row in source.expressions
            )
            return Insert(table=target.name, columns=columns, rows=rows)
        if source is None:
            raise ParseError("INSERT requires VALUES or a query")
        return Insert(table=target.name, columns=columns, query=self._convert_query(source))

    def _assignments(self, nodes: list[exp.Expression]) -> tuple[Assignment, ...]:
        assignments = []
        for node in nodes:
            if not isinstance(node, exp.EQ) or not isinstance(node.left, (exp.Column, exp.Identifier)):
                raise ParseError(f"Invalid assignment: {node.sql(dialect=self._dialect)}")
            assignments.append(Assignment(column=node.left.name, expr=self._convert_expression(node.right)))
        return tuple(assignments)

    def _convert_update(self, stmt: exp.Update) -> Update:
        table = stmt.this
        if not isinstance(table, exp.Table):
            raise ParseError("UPDATE requires a table name")
        if _arg(stmt, "from", "from_") is not None:
            raise ParseError("UPDATE ... FROM is not supported; use MERGE")
        where = stmt.args.get("where")
        return Update(
            table=table.name,
            assignments=self._assignments(stmt.expressions),
            where=self._convert_expression(where.this) if where is not None else None,
            alias=table.alias or None,
        )

    def _convert_delete(self, stmt: exp.Delete) -> Delete:
        table = stmt.this
        if not isinstance(table, exp.Table):
            raise ParseError("DELETE requires a table name")
        where = stmt.args.get("where")
        return Delete(
            table=table.name,
            where=self._convert_expression(where.this) if where is not None else None,
            alias=table.alias or None,
        )

    def _convert_merge(self, stmt: exp.Merge) -> Merge:
        target = stmt.this
        if not isinstance(target, exp.Table):
            raise ParseError("MERGE requires a target table")
        whens = stmt.args.get("whens")
        when_nodes = whens.expressions if whens is not None else stmt.expressions
        return Merge(
            target=TableRef(name=target.name, alias=target.alias or None),
            source=self._convert_from_item(stmt.args["using"]),
            on=self._convert_expression(stmt.args["on"]),
            clauses=tuple(self._convert_when(w) for w in when_nodes),
        )

    def _convert_when(self, when: exp.Expression) -> MergeClause:
        if when.args.get("matched"):
            match = MergeMatch.MATCHED
        elif when.args.get("source"):
            match = MergeMatch.NOT_MATCHED_BY_SOURCE
        else:
            match = MergeMatch.NOT_MATCHED_BY_TARGET

        condition_node = when.args.get("condition")
        condition = self._convert_expression(condition_node) if condition_node is not None else None
        then = when.args.get("then")

        if isinstance(then, exp.Insert):
            columns_node, values_node = then.this, then.expression
            if isinstance(columns_node, exp.Star):
                raise ParseError("MERGE INSERT * is not supported")
            if values_node is None:
                columns_node, values_node = None, columns_node
            if values_node is None:
                raise ParseError("MERGE INSERT requires a VALUES list")
            columns = tuple(c.name for c in columns_node.expressions) if columns_node is not None else ()
            values = tuple(self._convert_expression(v) for v in values_node.expressions)
            return MergeClause(
                match=match,
                action=MergeAction.INSERT,
                condition=condition,
                columns=columns,
                values=values,
            )

        if isinstance(then, exp.Update):
            if isinstance(then.expressions, exp.Star) or not then.expressions:
                raise ParseError("MERGE UPDATE requires a SET list")
            return MergeClause(
                match=match,
                action=MergeAction.UPDATE,
                condition=condition,
                assignments=self._assignments(then.expressions),
            )

        if then is not None and str(then.name).upper() == "DELETE":
            return MergeClause(match=match, action=MergeAction.DELETE, condition=condition)

        raise ParseError("Unsupported MERGE action")

    # -------------------------------------------------------------------------
    # DDL
    # -------------------------------------------------------------------------

    def _convert_create(self, stmt: exp.Create) -> Command:
        kind = (stmt.args.get("kind") or "").upper()
        if kind == "TABLE":
            return self._convert_create_table(stmt)
        if kind in ("VIEW", "MATERIALIZED VIEW"):
            return self._convert_create_view(stmt, kind)
        if kind == "INDEX":
            return self._convert_create_index(stmt)
        if kind == "TRIGGER":
            raise ParseError("CREATE TRIGGER is not supported in SQL; use Sandbox.create_trigger()")
        raise ParseError(f"Unsupported CREATE {kind}")

    def _convert_create_table(self, stmt: exp.Create) -> CreateTable:
        schema = stmt.this
        if not isinstance(schema, exp.Schema) or not isinstance(schema.this, exp.Table):
            raise ParseError("CREATE TABLE requires a column list")
        if stmt.expression is not None:
            raise ParseError("CREATE TABLE ... AS is not supported")

        table_name = schema.this.name
        columns: list[ColumnDef] = []
        primary_key: list[str] = []
        foreign_keys: list[ForeignKeyDef] = []
        unique: list[tuple[str, ...]] = []
        checks: list[CheckDef] = []

        for node in schema.expressions:
            if isinstance(node, exp.ColumnDef):
                column, is_pk, fk = self._convert_column_def(node)
                columns.append(column)
                if is_pk:
                    primary_key.append(column.name)
                if fk is not None:
                    foreign_keys.append(fk)
            else:
                self._convert_table_constraint(node, None, primary_key, foreign_keys, unique, checks)

        return CreateTable(
            name=table_name,
            columns=tuple(columns),
            primary_key=tuple(primary_key),
            foreign_keys=tuple(foreign_keys),
            unique=tuple(unique),
            checks=tuple(checks),
            if_not_exists=bool(stmt.args.get("exists")),
        )

    def _convert_column_def(self, node: exp.ColumnDef) -> tuple[ColumnDef, bool, ForeignKeyDef | None]:
        dtype = node.args.get("kind")
        data_type = self._convert_data_type(dtype)
        max_length = None
        if dtype is not None and data_type in _TEXT_TYPES:
            length = dtype.find(exp.Literal)
            if length is not None and length.is_int:
                max_length = int(length.this)

        nullable = True
        is_pk = False
        is_unique = False
        default: Expression | None = None
        check: Expression | None = None
        fk: ForeignKeyDef | None = None

        for constraint in node.constraints:
            kind = constraint.kind
            if isinstance(kind, exp.NotNullColumnConstraint):
                nullable = bool(kind.args.get("allow_null"))
            elif isinstance(kind, exp.PrimaryKeyColumnConstraint):
                is_pk = True
            elif isinstance(kind, exp.UniqueColumnConstraint):
                is_unique = True
            elif isinstance(kind, exp.DefaultColumnConstraint):
                default = self._convert_expression(kind.this)
            elif isinstance(kind, exp.CheckColumnConstraint):
                check = self._convert_expression(kind.this)
            elif isinstance(kind, exp.Reference):
                ref_table, ref_columns = self._reference(kind)
                fk = ForeignKeyDef(columns=(node.name,), ref_table=ref_table, ref_columns=ref_columns)
            else:
                raise ParseError(f"Unsupported column constraint: {constraint.sql(dialect=self._dialect)}")

        column = ColumnDef(
            name=node.name,
            data_type=data_type,
            nullable=nullable,
            default=default,
            max_length=max_length,
            unique=is_unique,
            check=check,
        )
        return column, is_pk, fk

    def _convert_table_constraint(
        self,
        node: exp.Expression,
        name: str | None,
        primary_key: list[str],
        foreign_keys: list[ForeignKeyDef],
        unique: list[tuple[str, ...]],
        checks: list[CheckDef],
    ) -> None:
        if isinstance(node, exp.Constraint):
            for inner in node.expressions:
                self._convert_table_constraint(inner, node.name, primary_key, foreign_keys, unique, checks)
        elif isinstance(node, exp.PrimaryKey):
            if primary_key:
                raise ParseError("multiple primary keys are not allowed")
            primary_key.extend(self._names(node.expressions))
        elif isinstance(node, exp.ForeignKey):
            ref_table, ref_columns = self._reference(node.args["reference"])
            foreign_keys.append(
                ForeignKeyDef(
                    columns=tuple(self._names(node.expressions)),
                    ref_table=ref_table,
                    ref_columns=ref_columns,
                    name=name,
                )
            )
        elif isinstance(node, exp.UniqueColumnConstraint):
            target = node.this
            columns = self._names(target.expressions if isinstance(target, exp.Schema) else node.expressions)
            if not columns:
                raise ParseError("UNIQUE constraint requires a column list")
            unique.append(tuple(columns))
        elif isinstance(node, exp.CheckColumnConstraint):
            checks.append(CheckDef(expr=self._convert_expression(node.this), name=name))
        else:
            raise ParseError(f"Unsupported table constraint: {node.sql(dialect=self._dialect)}")

    def _reference(self, reference: exp.Expression) -> tuple[str, tuple[str, ...]]:
        target = reference.this
        if isinstance(target, exp.Schema):
            return target.this.name, tuple(self._names(target.expressions))
        if isinstance(target, exp.Table):
            return target.name, ()
        raise ParseError(f"Unsupported REFERENCES clause: {reference.sql(dialect=self._dialect)}")

    @staticmethod
    def _names(nodes: list[exp.Expression]) -> list[str]:
        names = []
        for node in nodes:
            if isinstance(node, exp.Ordered):
                node = node.this
            names.append(node.name)
        return names

    def _convert_create_view(self, stmt: exp.Create, kind: str) -> CreateView:
        properties = stmt.args.get("properties")
        materialized = kind == "MATERIALIZED VIEW" or (
            properties is not None
            and any(isinstance(p, exp.MaterializedProperty) for p in properties.expressions)
        )
        query = stmt.expression
        if query is None:
            raise ParseError("CREATE VIEW requires AS query")
        return CreateView(
            name=stmt.this.name,
            query=self._convert_query(query),
            materialized=materialized,
            or_replace=bool(stmt.args.get("replace")),
        )

    def _convert_create_index(self, stmt: exp.Create) -> CreateIndex:
        index = stmt.this
        if not isinstance(index, exp.Index):
            raise ParseError("CREATE INDEX requires an index definition")
        table = index.args.get("table")
        if table is None:
            raise ParseError("CREATE INDEX requires ON table")
        params = index.args.get("params")
        column_nodes = (params.args.get("columns") if params is not None else None) or index.args.get(
            "columns"
        ) or index.expressions
        return CreateIndex(
            name=index.name,
            table=table.name,
            columns=tuple(self._names(column_nodes or [])),
            unique=bool(stmt.args.get("unique")),
            if_not_exists=bool(stmt.args.get("exists")),
        )

    def _convert_drop(self, stmt: exp.Drop) -> Command:
        kind = (stmt.args.get("kind") or "").upper()
        target = stmt.this
        if target is None and stmt.args.get("tables"):
            target = stmt.args["tables"][0]
        name = target.name if target is not None else ""
        if_exists = bool(stmt.args.get("exists"))
        factories: dict[str, Callable[..., Command]] = {
            "TABLE": DropTable,
            "VIEW": DropView,
            "MATERIALIZED VIEW": DropView,
            "INDEX": DropIndex,
            "TRIGGER": DropTrigger,
        }
        factory = factories.get(kind)
        if factory is None or not name:
            raise ParseError(f"Unsupported DROP {kind}")
        return factory(name=name, if_exists=if_exists)

    def _convert_command(self, stmt: exp.Command) -> Command:
        """Handle statements sqlglot passes through as raw commands."""
        keyword = str(stmt.this).upper()
        rest = stmt.expression
        if isinstance(rest, exp.Expression):
            rest = rest.name
        words = str(rest or "").split()
        if keyword == "DROP" and words and words[0].upper() == "TRIGGER":
            words = words[1:]
            if_exists = len(words) >= 2 and [w.upper() for w in words[:2]] == ["IF", "EXISTS"]
            if if_exists:
                words = words[2:]
            if len(words) != 1:
                raise ParseError("DROP TRIGGER requires a trigger name")
            return DropTrigger(name=words[0].strip('"`[]'), if_exists=if_exists)
        if keyword == "CREATE" and words and words[0].upper() == "TRIGGER":
            raise ParseError("CREATE TRIGGER is not supported in SQL; use Sandbox.create_trigger()")
        raise ParseError(f"Unsupported statement: {keyword}")
