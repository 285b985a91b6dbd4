"""Catalog definitions: tables, columns, constraints, indexes, views, triggers.

Definitions are immutable. The Catalog replaces them wholesale on DDL and
publishes a new CatalogSnapshot, so a transaction holding an older
snapshot keeps a consistent view of the schema.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Mapping

from sql_sandbox.domain.errors import NotFoundError
from sql_sandbox.domain.value_objects import DataType, RowKey, TableId, TriggerEvent, TriggerTiming

if TYPE_CHECKING:
    from sql_sandbox.domain.entities.commands import Query
    from sql_sandbox.domain.entities.expressions import Expression


@dataclass(frozen=True)
class ColumnDef:
    """Column definition."""

    name: str
    data_type: DataType = DataType.TEXT
    nullable: bool = True
    default: Expression | None = None
    max_length: int | None = None
    unique: bool = False
    check: Expression | None = None


@dataclass(frozen=True)
class ForeignKeyDef:
    """``FOREIGN KEY (columns) REFERENCES ref_table (ref_columns)``.

    An empty ``ref_columns`` means the referenced table's primary key.
    """

    columns: tuple[str, ...]
    ref_table: str
    ref_columns: tuple[str, ...] = ()
    name: str | None = None

    def __post_init__(self) -> None:
        if not self.columns:
            raise ValueError("foreign key requires at least one column")
        if self.ref_columns and len(self.ref_columns) != len(self.columns):
            raise ValueError("foreign key column count does not match referenced columns")


@dataclass(frozen=True)
class CheckDef:
    """Table-level CHECK constraint."""

    expr: Expression
    name: str | None = None


@dataclass(frozen=True)
class TableSchema:
    """Resolved table definition owned by the Catalog.

    Column names are stored as declared; lookups are case-insensitive and
    return the declared (canonical) spelling.
    """

    table_id: TableId
    name: str
    columns: tuple[ColumnDef, ...]
    primary_key: tuple[str, ...] = ()
    foreign_keys: tuple[ForeignKeyDef, ...] = ()
    checks: tuple[CheckDef, ...] = ()
    _by_lower: Mapping[str, ColumnDef] = field(
        default_factory=dict, init=False, repr=False, compare=False, hash=False
    )

    def __post_init__(self) -> None:
        object.__setattr__(self, "_by_lower", {c.name.lower(): c for c in self.columns})

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    @property
    def has_surrogate_key(self) -> bool:
        """True when rows are identified by an allocated surrogate key."""
        return not self.primary_key

    def has_column(self, name: str) -> bool:
        return name.lower() in self._by_lower

    def column(self, name: str) -> ColumnDef:
        """Look up a column by case-insensitive name.

        Raises:
            NotFoundError: If the table has no such column.
        """
        try:
            return self._by_lower[name.lower()]
        except KeyError:
            raise NotFoundError(
                f"column '{name}' does not exist in table '{self.name}'", table=self.name
            ) from None

    def canonical(self, name: str) -> str:
        """Return the declared spelling of a column name."""
        return self.column(name).name

    def key_of(self, values: Mapping[str, Any]) -> RowKey:
        """Extract the primary-key tuple from a canonical row mapping."""
        return tuple(values.get(c) for c in self.primary_key)


@dataclass(frozen=True)
class IndexDef:
    """Secondary index definition.

    ``implicit`` marks indexes created for UNIQUE column or table
    constraints; they are dropped together with their table.
    """

    name: str
    table: str
    table_id: TableId
    columns: tuple[str, ...]
    unique: bool = False
    implicit: bool = False


@dataclass(frozen=True)
class ViewDef:
    """Stored query, re-evaluated on each read unless materialized."""

    name: str
    query: Query
    materialized: bool = False
    dependencies: frozenset[str] = frozenset()


@dataclass(frozen=True)
class TriggerDef:
    """Row-level trigger registration."""

    name: str
    table: str
    table_id: TableId
    timing: TriggerTiming
    events: frozenset[TriggerEvent]
    procedure: Callable[[Any], None]
    order: int = 0

    def fires_on(self, timing: TriggerTiming, event: TriggerEvent) -> bool:
        return self.timing == timing and event in self.events


@dataclass(frozen=True)
class CatalogSnapshot:
    """Immutable view of every definition at one catalog version.

    All mappings are keyed by lower-cased name.
    """

    version: int = 0
    tables: Mapping[str, TableSchema] = field(default_factory=dict)
    views: Mapping[str, ViewDef] = field(default_factory=dict)
    indexes: Mapping[str, IndexDef] = field(default_factory=dict)
    triggers: Mapping[str, TriggerDef] = field(default_factory=dict)

    def table(self, name: str) -> TableSchema:
        """Resolve a table by name.

        Raises:
            NotFoundError: If no such table exists in this snapshot.
        """
        try:
            return self.tables[name.lower()]
        except KeyError:
            raise NotFoundError(f"table '{name}' does not exist", table=name) from None

    def table_by_id(self, table_id: TableId) -> TableSchema | None:
        for schema in self.tables.values():
            if schema.table_id == table_id:
                return schema
        return None

    def view(self, name: str) -> ViewDef | None:
        return self.views.get(name.lower())

    def indexes_for(self, table_id: TableId) -> list[IndexDef]:
        return [i for i in self.indexes.values() if i.table_id == table_id]

    def triggers_for(
        self, table_id: TableId, timing: TriggerTiming, event: TriggerEvent
    ) -> list[TriggerDef]:
        """Matching triggers in registration order."""
        matching = [
            t
            for t in self.triggers.values()
            if t.table_id == table_id and t.fires_on(timing, event)
        ]
        return sorted(matching, key=lambda t: t.order)

    def referencing(self, table_name: str) -> list[tuple[TableSchema, ForeignKeyDef]]:
        """Foreign keys in other tables that point at ``table_name``."""
        target = table_name.lower()
        return [
            (schema, fk)
            for schema in self.tables.values()
            for fk in schema.foreign_keys
            if fk.ref_table.lower() == target
        ]
