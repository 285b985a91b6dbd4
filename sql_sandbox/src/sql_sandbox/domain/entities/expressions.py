"""Scalar expression tree used by commands.

Expressions are frozen dataclasses, so structurally equal expressions
compare and hash equal. The executor relies on this to match an aggregate
or window call in ORDER BY or HAVING with the same call in the SELECT list.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, fields
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterator

from sql_sandbox.domain.value_objects.data_types import DataType

if TYPE_CHECKING:
    from sql_sandbox.domain.entities.commands import Query


class ComparisonOp(Enum):
    """Comparison operators for predicates."""

    EQ = "="
    NE = "<>"
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="
    IS_NULL = "IS NULL"
    IS_NOT_NULL = "IS NOT NULL"
    LIKE = "LIKE"
    NOT_LIKE = "NOT LIKE"


class LogicalOp(Enum):
    """Logical operators for combining predicates."""

    AND = "AND"
    OR = "OR"
    NOT = "NOT"


class ArithmeticOp(Enum):
    """Binary arithmetic and string operators."""

    ADD = "+"
    SUB = "-"
    MUL = "*"
    DIV = "/"
    MOD = "%"
    CONCAT = "||"


class AggregateFunc(Enum):
    """Aggregate functions."""

    COUNT = "COUNT"
    SUM = "SUM"
    AVG = "AVG"
    MIN = "MIN"
    MAX = "MAX"


class SubqueryKind(Enum):
    """How a nested query is consumed by its enclosing expression."""

    SCALAR = "scalar"
    EXISTS = "exists"


@dataclass(frozen=True)
class Expression(ABC):
    """Base class for expressions."""

    @abstractmethod
    def __str__(self) -> str:
        pass


@dataclass(frozen=True)
class ColumnExpr(Expression):
    """Column reference, optionally qualified with a table name or alias."""

    name: str
    table: str | None = None

    def __str__(self) -> str:
        if self.table:
            return f"{self.table}.{self.name}"
        return self.name


@dataclass(frozen=True)
class StarExpr(Expression):
    """``*`` or ``alias.*`` in a SELECT list."""

    table: str | None = None

    def __str__(self) -> str:
        return f"{self.table}.*" if self.table else "*"


@dataclass(frozen=True)
class LiteralExpr(Expression):
    """Literal value expression."""

    value: Any

    def __str__(self) -> str:
        if self.value is None:
            return "NULL"
        if isinstance(self.value, str):
            return "'" + self.value.replace("'", "''") + "'"
        return str(self.value)


@dataclass(frozen=True)
class ComparisonExpr(Expression):
    """Comparison expression (e.g., col = value)."""

    left: Expression
    op: ComparisonOp
    right: Expression | None = None  # None for IS NULL / IS NOT NULL

    def __str__(self) -> str:
        if self.right is None:
            return f"{self.left} {self.op.value}"
        return f"{self.left} {self.op.value} {self.right}"


@dataclass(frozen=True)
class LogicalExpr(Expression):
    """Logical expression combining other expressions."""

    op: LogicalOp
    operands: tuple[Expression, ...] = ()

    def __str__(self) -> str:
        if self.op == LogicalOp.NOT:
            return f"NOT ({self.operands[0]})"
        op_str = f" {self.op.value} "
        return f"({op_str.join(str(o) for o in self.operands)})"


@dataclass(frozen=True)
class ArithmeticExpr(Expression):
    """Binary arithmetic or string concatenation."""

    op: ArithmeticOp
    left: Expression
    right: Expression

    def __str__(self) -> str:
        return f"({self.left} {self.op.value} {self.right})"


@dataclass(frozen=True)
class NegateExpr(Expression):
    """Unary minus."""

    operand: Expression

    def __str__(self) -> str:
        return f"-{self.operand}"


@dataclass(frozen=True)
class InListExpr(Expression):
    """``value [NOT] IN (a, b, ...)``."""

    value: Expression
    options: tuple[Expression, ...]
    negated: bool = False

    def __str__(self) -> str:
        opts = ", ".join(str(o) for o in self.options)
        return f"{self.value} {'NOT IN' if self.negated else 'IN'} ({opts})"


@dataclass(frozen=True)
class BetweenExpr(Expression):
    """``value [NOT] BETWEEN low AND high``."""

    value: Expression
    low: Expression
    high: Expression
    negated: bool = False

    def __str__(self) -> str:
        keyword = "NOT BETWEEN" if self.negated else "BETWEEN"
        return f"{self.value} {keyword} {self.low} AND {self.high}"


@dataclass(frozen=True)
class CaseExpr(Expression):
    """Searched (``CASE WHEN c THEN r``) or simple (``CASE x WHEN v THEN r``) CASE."""

    whens: tuple[tuple[Expression, Expression], ...]
    default: Expression | None = None
    operand: Expression | None = None

    def __str__(self) -> str:
        head = f"CASE {self.operand}" if self.operand is not None else "CASE"
        arms = " ".join(f"WHEN {c} THEN {r}" for c, r in self.whens)
        tail = f" ELSE {self.default}" if self.default is not None else ""
        return f"{head} {arms}{tail} END"


@dataclass(frozen=True)
class FunctionExpr(Expression):
    """Scalar function call, e.g. UPPER(name) or COALESCE(a, b)."""

    name: str
    args: tuple[Expression, ...] = ()

    def __str__(self) -> str:
        return f"{self.name}({', '.join(str(a) for a in self.args)})"


@dataclass(frozen=True)
class CastExpr(Expression):
    """``CAST(operand AS type)``."""

    operand: Expression
    data_type: DataType

    def __str__(self) -> str:
        return f"CAST({self.operand} AS {self.data_type.value})"


@dataclass(frozen=True)
class AggregateExpr(Expression):
    """Aggregate function expression."""

    func: AggregateFunc
    arg: Expression | None = None  # None for COUNT(*)
    distinct: bool = False

    def __str__(self) -> str:
        if self.arg is None:
            return f"{self.func.value}(*)"
        distinct_str = "DISTINCT " if self.distinct else ""
        return f"{self.func.value}({distinct_str}{self.arg})"


@dataclass(frozen=True)
class OrderByItem:
    """An item in an ORDER BY clause.

    ``nulls_first=None`` means the default: NULLs sort first ascending and
    last descending.
    """

    expr: Expression
    ascending: bool = True
    nulls_first: bool | None = None

    def __str__(self) -> str:
        return f"{self.expr} {'ASC' if self.ascending else 'DESC'}"


@dataclass(frozen=True)
class WindowExpr(Expression):
    """Window function call: ``func(args) OVER (PARTITION BY ... ORDER BY ...)``.

    ``func`` is either a ranking/offset function name (ROW_NUMBER, RANK,
    DENSE_RANK, NTILE, LAG, LEAD, FIRST_VALUE, LAST_VALUE) or an aggregate
    function name (COUNT, SUM, AVG, MIN, MAX).
    """

    func: str
    args: tuple[Expression, ...] = ()
    partition_by: tuple[Expression, ...] = ()
    order_by: tuple[OrderByItem, ...] = ()
    distinct: bool = False

    def __str__(self) -> str:
        parts = []
        if self.partition_by:
            parts.append("PARTITION BY " + ", ".join(str(p) for p in self.partition_by))
        if self.order_by:
            parts.append("ORDER BY " + ", ".join(str(o) for o in self.order_by))
        args = ", ".join(str(a) for a in self.args) if self.args else ""
        if self.func == "COUNT" and not self.args:
            args = "*"
        return f"{self.func}({args}) OVER ({' '.join(parts)})"


@dataclass(frozen=True)
class SubqueryExpr(Expression):
    """Nested query used as a scalar value or an EXISTS test."""

    query: Query
    kind: SubqueryKind = SubqueryKind.SCALAR

    def __str__(self) -> str:
        if self.kind == SubqueryKind.EXISTS:
            return f"EXISTS ({self.query})"
        return f"({self.query})"


@dataclass(frozen=True)
class InSubqueryExpr(Expression):
    """``value [NOT] IN (SELECT ...)``."""

    value: Expression
    query: Query
    negated: bool = False

    def __str__(self) -> str:
        return f"{self.value} {'NOT IN' if self.negated else 'IN'} ({self.query})"


def iter_children(expr: Expression) -> Iterator[Expression]:
    """Yield the direct sub-expressions of ``expr``.

    Nested queries are not entered; they are evaluated in their own scope.
    """
    for f in fields(expr):
        yield from _expressions_in(getattr(expr, f.name))


def _expressions_in(value: Any) -> Iterator[Expression]:
    if isinstance(value, Expression):
        yield value
    elif isinstance(value, OrderByItem):
        yield value.expr
    elif isinstance(value, tuple):
        for item in value:
            yield from _expressions_in(item)


def walk(expr: Expression) -> Iterator[Expression]:
    """Depth-first pre-order traversal of an expression tree."""
    yield expr
    for child in iter_children(expr):
        yield from walk(child)


def find_aggregates(expr: Expression | None) -> list[AggregateExpr]:
    """Return aggregate calls in ``expr``, including those inside window arguments."""
    if expr is None:
        return []
    return [e for e in walk(expr) if isinstance(e, AggregateExpr)]


def find_windows(expr: Expression | None) -> list[WindowExpr]:
    """Return window calls in ``expr``."""
    if expr is None:
        return []
    return [e for e in walk(expr) if isinstance(e, WindowExpr)]


def conjuncts(expr: Expression | None) -> list[Expression]:
    """Split a predicate on top-level ANDs."""
    if expr is None:
        return []
    if isinstance(expr, LogicalExpr) and expr.op == LogicalOp.AND:
        result: list[Expression] = []
        for operand in expr.operands:
            result.extend(conjuncts(operand))
        return result
    return [expr]
