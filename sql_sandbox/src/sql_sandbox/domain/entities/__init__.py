"""Domain entities for the sandbox.

Exports:
    Expressions:
        - Expression and its concrete node types
        - OrderByItem, walk/find helpers

    Commands:
        - Select, SetOperation, Insert, Update, Delete, Merge
        - CreateTable, DropTable, CreateView, DropView, CreateIndex,
          DropIndex, CreateTrigger, DropTrigger, TransactionControl

    Schema:
        - ColumnDef, ForeignKeyDef, CheckDef, TableSchema, IndexDef,
          ViewDef, TriggerDef, CatalogSnapshot

    Working set:
        - RowVersion, StagedWrite, ChangeKind, WorkingSet
"""

from sql_sandbox.domain.entities.schema import (
    CatalogSnapshot,
    CheckDef,
    ColumnDef,
    ForeignKeyDef,
    IndexDef,
    TableSchema,
    TriggerDef,
    ViewDef,
)
from sql_sandbox.domain.entities.expressions import (
    AggregateExpr,
    AggregateFunc,
    ArithmeticExpr,
    ArithmeticOp,
    BetweenExpr,
    CaseExpr,
    CastExpr,
    ColumnExpr,
    ComparisonExpr,
    ComparisonOp,
    Expression,
    FunctionExpr,
    InListExpr,
    InSubqueryExpr,
    LiteralExpr,
    LogicalExpr,
    LogicalOp,
    NegateExpr,
    OrderByItem,
    StarExpr,
    SubqueryExpr,
    SubqueryKind,
    WindowExpr,
)
from sql_sandbox.domain.entities.commands import (
    Assignment,
    Command,
    CommonTableExpr,
    CreateIndex,
    CreateTable,
    CreateTrigger,
    CreateView,
    Delete,
    DropIndex,
    DropTable,
    DropTrigger,
    DropView,
    FromItem,
    Insert,
    Join,
    JoinKind,
    Merge,
    MergeAction,
    MergeClause,
    MergeMatch,
    Query,
    Select,
    SelectItem,
    SetOperation,
    SetOperator,
    StatementType,
    SubqueryRef,
    TableRef,
    TransactionControl,
    Update,
    ValuesRef,
)
from sql_sandbox.domain.entities.working_set import (
    ChangeKind,
    RowValues,
    RowVersion,
    StagedWrite,
    WorkingSet,
)

__all__ = [
    # Schema
    "CatalogSnapshot",
    "CheckDef",
    "ColumnDef",
    "ForeignKeyDef",
    "IndexDef",
    "TableSchema",
    "TriggerDef",
    "ViewDef",
    # Expressions
    "AggregateExpr",
    "AggregateFunc",
    "ArithmeticExpr",
    "ArithmeticOp",
    "BetweenExpr",
    "CaseExpr",
    "CastExpr",
    "ColumnExpr",
    "ComparisonExpr",
    "ComparisonOp",
    "Expression",
    "FunctionExpr",
    "InListExpr",
    "InSubqueryExpr",
    "LiteralExpr",
    "LogicalExpr",
    "LogicalOp",
    "NegateExpr",
    "OrderByItem",
    "StarExpr",
    "SubqueryExpr",
    "SubqueryKind",
    "WindowExpr",
    # Commands
    "Assignment",
    "Command",
    "CommonTableExpr",
    "CreateIndex",
    "CreateTable",
    "CreateTrigger",
    "CreateView",
    "Delete",
    "DropIndex",
    "DropTable",
    "DropTrigger",
    "DropView",
    "FromItem",
    "Insert",
    "Join",
    "JoinKind",
    "Merge",
    "MergeAction",
    "MergeClause",
    "MergeMatch",
    "Query",
    "Select",
    "SelectItem",
    "SetOperation",
    "SetOperator",
    "StatementType",
    "SubqueryRef",
    "TableRef",
    "TransactionControl",
    "Update",
    "ValuesRef",
    # Working set
    "ChangeKind",
    "RowValues",
    "RowVersion",
    "StagedWrite",
    "WorkingSet",
]
