"""Validated command values.

Every statement the sandbox executes is one of the command dataclasses
below. The SQL parser adapter produces them from text; tests and trigger
procedures may also build them directly.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Callable, Union

from sql_sandbox.domain.entities.expressions import Expression, OrderByItem
from sql_sandbox.domain.entities.schema import CheckDef, ColumnDef, ForeignKeyDef
from sql_sandbox.domain.value_objects.transaction_types import TriggerEvent, TriggerTiming


class StatementType(Enum):
    """Types of statements."""

    SELECT = auto()
    INSERT = auto()
    UPDATE = auto()
    DELETE = auto()
    MERGE = auto()
    CREATE_TABLE = auto()
    DROP_TABLE = auto()
    CREATE_VIEW = auto()
    DROP_VIEW = auto()
    CREATE_INDEX = auto()
    DROP_INDEX = auto()
    CREATE_TRIGGER = auto()
    DROP_TRIGGER = auto()
    BEGIN = auto()
    COMMIT = auto()
    ROLLBACK = auto()

    def is_ddl(self) -> bool:
        return self in _DDL

    def is_dml(self) -> bool:
        return self in (
            StatementType.INSERT,
            StatementType.UPDATE,
            StatementType.DELETE,
            StatementType.MERGE,
        )

    def is_transaction_control(self) -> bool:
        return self in (StatementType.BEGIN, StatementType.COMMIT, StatementType.ROLLBACK)


_DDL = frozenset(
    {
        StatementType.CREATE_TABLE,
        StatementType.DROP_TABLE,
        StatementType.CREATE_VIEW,
        StatementType.DROP_VIEW,
        StatementType.CREATE_INDEX,
        StatementType.DROP_INDEX,
        StatementType.CREATE_TRIGGER,
        StatementType.DROP_TRIGGER,
    }
)


class JoinKind(Enum):
    """Join types."""

    INNER = "INNER"
    LEFT = "LEFT"
    RIGHT = "RIGHT"
    FULL = "FULL"
    CROSS = "CROSS"


class SetOperator(Enum):
    """Set operations combining two queries."""

    UNION = "UNION"
    INTERSECT = "INTERSECT"
    EXCEPT = "EXCEPT"


# =============================================================================
# FROM-clause sources
# =============================================================================


@dataclass(frozen=True)
class TableRef:
    """A named table, view, CTE or pseudo-table."""

    name: str
    alias: str | None = None

    @property
    def binding(self) -> str:
        return self.alias or self.name

    def __str__(self) -> str:
        return f"{self.name} AS {self.alias}" if self.alias else self.name


@dataclass(frozen=True)
class SubqueryRef:
    """A derived table: ``(SELECT ...) AS alias``."""

    query: Query
    alias: str

    @property
    def binding(self) -> str:
        return self.alias

    def __str__(self) -> str:
        return f"({self.query}) AS {self.alias}"


@dataclass(frozen=True)
class ValuesRef:
    """An inline row list: ``(VALUES (...), (...)) AS alias(c1, c2)``."""

    rows: tuple[tuple[Expression, ...], ...]
    alias: str
    columns: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        widths = {len(r) for r in self.rows}
        if len(widths) > 1:
            raise ValueError("VALUES rows must all have the same number of columns")
        if self.columns and widths and widths != {len(self.columns)}:
            raise ValueError("VALUES column list does not match row width")

    @property
    def binding(self) -> str:
        return self.alias

    def __str__(self) -> str:
        return f"(VALUES ...) AS {self.alias}"


FromItem = Union[TableRef, SubqueryRef, ValuesRef]


@dataclass(frozen=True)
class Join:
    """A join of the current source with another FROM item."""

    source: FromItem
    kind: JoinKind = JoinKind.INNER
    condition: Expression | None = None

    def __post_init__(self) -> None:
        if self.kind == JoinKind.CROSS and self.condition is not None:
            raise ValueError("CROSS JOIN does not take a join condition")


# =============================================================================
# Queries
# =============================================================================


@dataclass(frozen=True)
class SelectItem:
    """One entry of a SELECT list."""

    expr: Expression
    alias: str | None = None

    def __str__(self) -> str:
        return f"{self.expr} AS {self.alias}" if self.alias else str(self.expr)


@dataclass(frozen=True)
class CommonTableExpr:
    """A ``WITH name(columns) AS (query)`` definition."""

    name: str
    query: Query
    columns: tuple[str, ...] = ()
    recursive: bool = False


@dataclass(frozen=True)
class Select:
    """SELECT query.

    Clauses are evaluated in a fixed logical order regardless of how they
    were written: FROM/JOIN, WHERE, GROUP BY, HAVING, window functions,
    projection, DISTINCT, ORDER BY, LIMIT/OFFSET.
    """

    items: tuple[SelectItem, ...]
    source: FromItem | None = None
    joins: tuple[Join, ...] = ()
    where: Expression | None = None
    group_by: tuple[Expression, ...] = ()
    having: Expression | None = None
    order_by: tuple[OrderByItem, ...] = ()
    limit: int | None = None
    offset: int = 0
    distinct: bool = False
    ctes: tuple[CommonTableExpr, ...] = ()

    def __post_init__(self) -> None:
        if not self.items:
            raise ValueError("SELECT requires at least one output expression")
        if self.joins and self.source is None:
            raise ValueError("JOIN requires a FROM source")
        if self.limit is not None and self.limit < 0:
            raise ValueError("LIMIT must be non-negative")
        if self.offset < 0:
            raise ValueError("OFFSET must be non-negative")

    @property
    def statement_type(self) -> StatementType:
        return StatementType.SELECT

    def __str__(self) -> str:
        head = "SELECT DISTINCT" if self.distinct else "SELECT"
        text = f"{head} {', '.join(str(i) for i in self.items)}"
        if self.source is not None:
            text += f" FROM {self.source}"
        if self.where is not None:
            text += f" WHERE {self.where}"
        return text


@dataclass(frozen=True)
class SetOperation:
    """``left UNION|INTERSECT|EXCEPT [ALL] right`` with optional ordering."""

    op: SetOperator
    left: Query
    right: Query
    all: bool = False
    order_by: tuple[OrderByItem, ...] = ()
    limit: int | None = None
    offset: int = 0
    ctes: tuple[CommonTableExpr, ...] = ()

    @property
    def statement_type(self) -> StatementType:
        return StatementType.SELECT

    def __str__(self) -> str:
        op = f"{self.op.value} ALL" if self.all else self.op.value
        return f"{self.left} {op} {self.right}"


Query = Union[Select, SetOperation]


# =============================================================================
# DML
# =============================================================================


@dataclass(frozen=True)
class Assignment:
    """``column = expr`` in UPDATE SET or MERGE UPDATE SET."""

    column: str
    expr: Expression


@dataclass(frozen=True)
class Insert:
    """INSERT of literal rows or of a query's result."""

    table: str
    columns: tuple[str, ...] = ()
    rows: tuple[tuple[Expression, ...], ...] = ()
    query: Query | None = None

    def __post_init__(self) -> None:
        if bool(self.rows) == (self.query is not None):
            raise ValueError("INSERT takes either VALUES rows or a query")
        if self.columns:
            if len({c.lower() for c in self.columns}) != len(self.columns):
                raise ValueError("INSERT column list contains duplicates")
            for row in self.rows:
                if len(row) != len(self.columns):
                    raise ValueError("INSERT row width does not match column list")

    @property
    def statement_type(self) -> StatementType:
        return StatementType.INSERT


@dataclass(frozen=True)
class Update:
    """UPDATE table SET ... [WHERE ...]."""

    table: str
    assignments: tuple[Assignment, ...]
    where: Expression | None = None
    alias: str | None = None

    def __post_init__(self) -> None:
        if not self.assignments:
            raise ValueError("UPDATE requires at least one assignment")

    @property
    def statement_type(self) -> StatementType:
        return StatementType.UPDATE


@dataclass(frozen=True)
class Delete:
    """DELETE FROM table [WHERE ...]."""

    table: str
    where: Expression | None = None
    alias: str | None = None

    @property
    def statement_type(self) -> StatementType:
        return StatementType.DELETE


class MergeMatch(Enum):
    """Which rows a MERGE clause applies to."""

    MATCHED = "MATCHED"
    NOT_MATCHED_BY_TARGET = "NOT MATCHED BY TARGET"
    NOT_MATCHED_BY_SOURCE = "NOT MATCHED BY SOURCE"


class MergeAction(Enum):
    """What a MERGE clause does."""

    UPDATE = "UPDATE"
    DELETE = "DELETE"
    INSERT = "INSERT"


@dataclass(frozen=True)
class MergeClause:
    """One ``WHEN [NOT] MATCHED [BY ...] [AND cond] THEN action`` clause."""

    match: MergeMatch
    action: MergeAction
    condition: Expression | None = None
    assignments: tuple[Assignment, ...] = ()
    columns: tuple[str, ...] = ()
    values: tuple[Expression, ...] = ()

    def __post_init__(self) -> None:
        if self.match == MergeMatch.NOT_MATCHED_BY_TARGET:
            if self.action != MergeAction.INSERT:
                raise ValueError("WHEN NOT MATCHED BY TARGET only allows INSERT")
        elif self.action == MergeAction.INSERT:
            raise ValueError(f"WHEN {self.match.value} does not allow INSERT")
        if self.action == MergeAction.UPDATE and not self.assignments:
            raise ValueError("MERGE UPDATE requires at least one assignment")
        if self.action == MergeAction.INSERT:
            if not self.values:
                raise ValueError("MERGE INSERT requires a VALUES list")
            if self.columns and len(self.columns) != len(self.values):
                raise ValueError("MERGE INSERT column list does not match VALUES")


@dataclass(frozen=True)
class Merge:
    """MERGE INTO target USING source ON condition WHEN ..."""

    target: TableRef
    source: FromItem
    on: Expression
    clauses: tuple[MergeClause, ...]

    def __post_init__(self) -> None:
        if not self.clauses:
            raise ValueError("MERGE requires at least one WHEN clause")

    @property
    def statement_type(self) -> StatementType:
        return StatementType.MERGE


# =============================================================================
# DDL
# =============================================================================


@dataclass(frozen=True)
class CreateTable:
    """CREATE TABLE."""

    name: str
    columns: tuple[ColumnDef, ...]
    primary_key: tuple[str, ...] = ()
    foreign_keys: tuple[ForeignKeyDef, ...] = ()
    unique: tuple[tuple[str, ...], ...] = ()
    checks: tuple[CheckDef, ...] = ()
    if_not_exists: bool = False

    @property
    def statement_type(self) -> StatementType:
        return StatementType.CREATE_TABLE


@dataclass(frozen=True)
class DropTable:
    name: str
    if_exists: bool = False

    @property
    def statement_type(self) -> StatementType:
        return StatementType.DROP_TABLE


@dataclass(frozen=True)
class CreateView:
    """CREATE [MATERIALIZED] VIEW name AS query."""

    name: str
    query: Query
    materialized: bool = False
    or_replace: bool = False

    @property
    def statement_type(self) -> StatementType:
        return StatementType.CREATE_VIEW


@dataclass(frozen=True)
class DropView:
    name: str
    if_exists: bool = False

    @property
    def statement_type(self) -> StatementType:
        return StatementType.DROP_VIEW


@dataclass(frozen=True)
class CreateIndex:
    """CREATE [UNIQUE] INDEX name ON table (columns)."""

    name: str
    table: str
    columns: tuple[str, ...]
    unique: bool = False
    if_not_exists: bool = False

    def __post_init__(self) -> None:
        if not self.columns:
            raise ValueError("index requires at least one column")

    @property
    def statement_type(self) -> StatementType:
        return StatementType.CREATE_INDEX


@dataclass(frozen=True)
class DropIndex:
    name: str
    if_exists: bool = False

    @property
    def statement_type(self) -> StatementType:
        return StatementType.DROP_INDEX


@dataclass(frozen=True)
class CreateTrigger:
    """Register a row-level trigger procedure on a table.

    ``procedure`` is called with a TriggerContext for every affected row.
    """

    name: str
    table: str
    timing: TriggerTiming
    events: frozenset[TriggerEvent]
    procedure: Callable[[Any], None]

    def __post_init__(self) -> None:
        if not self.events:
            raise ValueError("trigger requires at least one event")
        if not callable(self.procedure):
            raise ValueError("trigger procedure must be callable")

    @property
    def statement_type(self) -> StatementType:
        return StatementType.CREATE_TRIGGER


@dataclass(frozen=True)
class DropTrigger:
    name: str
    if_exists: bool = False

    @property
    def statement_type(self) -> StatementType:
        return StatementType.DROP_TRIGGER


@dataclass(frozen=True)
class TransactionControl:
    """BEGIN / COMMIT / ROLLBACK."""

    statement_type: StatementType

    def __post_init__(self) -> None:
        if not self.statement_type.is_transaction_control():
            raise ValueError(f"{self.statement_type.name} is not a transaction statement")


Command = Union[
    Select,
    SetOperation,
    Insert,
    Update,
    Delete,
    Merge,
    CreateTable,
    DropTable,
    CreateView,
    DropView,
    CreateIndex,
    DropIndex,
    CreateTrigger,
    DropTrigger,
    TransactionControl,
]
