"""Catalog of table, view, index and trigger definitions.

The catalog is versioned: every structural change publishes a new
immutable CatalogSnapshot with ``version + 1``. Transactions capture the
snapshot that is current when they begin, so a concurrent CREATE or DROP
never changes the schema underneath a running statement.

Names are case-insensitive. Tables and views share one namespace;
indexes and triggers each have their own.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from typing import Callable, Iterator

from sql_sandbox.domain.entities.commands import (
    CreateIndex,
    CreateTable,
    CreateTrigger,
    CreateView,
    Query,
    Select,
    SetOperation,
    SubqueryRef,
    TableRef,
)
from sql_sandbox.domain.entities.expressions import InSubqueryExpr, SubqueryExpr, walk
from sql_sandbox.domain.entities.schema import (
    CatalogSnapshot,
    ForeignKeyDef,
    IndexDef,
    TableSchema,
    TriggerDef,
    ViewDef,
)
from sql_sandbox.domain.errors import ConflictError, NotFoundError, SchemaError
from sql_sandbox.domain.value_objects import TableId


class Catalog:
    """Versioned registry of definitions.

    DDL takes effect immediately and is not transactional: a rollback does
    not undo a CREATE or DROP.

    The optional ``on_define``/``on_drop`` callbacks let the caller create
    or discard the matching storage structures while the catalog lock is
    held; if a callback raises, the definition is not published.

    Thread Safety:
        All mutations are serialized by an internal lock. Readers use
        ``current()`` and never block.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._snapshot = CatalogSnapshot()
        self._next_table_id = 1
        self._next_trigger_order = 1

    def current(self) -> CatalogSnapshot:
        """Return the latest published snapshot."""
        return self._snapshot

    @property
    def version(self) -> int:
        return self._snapshot.version

    def resolve(self, name: str) -> TableSchema | ViewDef:
        """Resolve a table or view name in the current snapshot.

        Raises:
            NotFoundError: If neither a table nor a view has this name.
        """
        return resolve_in(self._snapshot, name)

    # -------------------------------------------------------------------------
    # Tables
    # -------------------------------------------------------------------------

    def define_table(
        self,
        command: CreateTable,
        on_define: Callable[[TableSchema, list[IndexDef]], None] | None = None,
    ) -> TableSchema | None:
        """Validate and register a table.

        Returns:
            The new TableSchema, or None when IF NOT EXISTS skipped it.

        Raises:
            ConflictError: If the name is taken.
            SchemaError: If the definition is invalid.
            NotFoundError: If a foreign key references an unknown table.
        """
        with self._lock:
            snap = self._snapshot
            key = command.name.lower()
            if key in snap.tables or key in snap.views:
                if command.if_not_exists and key in snap.tables:
                    return None
                raise ConflictError(f"relation '{command.name}' already exists", table=command.name)

            schema = self._build_table(command, TableId(self._next_table_id), snap)
            indexes = self._implicit_indexes(command, schema, snap)

            if on_define is not None:
                on_define(schema, indexes)

            self._next_table_id += 1
            tables = dict(snap.tables)
            tables[key] = schema
            all_indexes = dict(snap.indexes)
            for index in indexes:
                all_indexes[index.name.lower()] = index
            self._publish(replace(snap, tables=tables, indexes=all_indexes))
            return schema

    def _build_table(self, command: CreateTable, table_id: TableId, snap: CatalogSnapshot) -> TableSchema:
        if not command.columns:
            raise SchemaError(f"table '{command.name}' must have at least one column", table=command.name)

        seen: set[str] = set()
        for col in command.columns:
            lowered = col.name.lower()
            if lowered in seen:
                raise SchemaError(
                    f"column '{col.name}' specified more than once", table=command.name
                )
            seen.add(lowered)

        draft = TableSchema(table_id=table_id, name=command.name, columns=command.columns)

        pk = tuple(self._column_of(draft, c, "primary key") for c in command.primary_key)
        if len({c.lower() for c in pk}) != len(pk):
            raise SchemaError("primary key lists a column more than once", table=command.name)
        # Primary-key columns are implicitly NOT NULL.
        pk_lower = {c.lower() for c in pk}
        columns = tuple(
            replace(c, nullable=False) if c.name.lower() in pk_lower else c for c in command.columns
        )
        draft = TableSchema(table_id=table_id, name=command.name, columns=columns, primary_key=pk)

        foreign_keys = tuple(self._resolve_fk(draft, fk, snap) for fk in command.foreign_keys)
        return TableSchema(
            table_id=table_id,
            name=command.name,
            columns=columns,
            primary_key=pk,
            foreign_keys=foreign_keys,
            checks=command.checks,
        )

    @staticmethod
    def _column_of(schema: TableSchema, name: str, role: str) -> str:
        if not schema.has_column(name):
            raise SchemaError(
                f"{role} column '{name}' does not exist in table '{schema.name}'", table=schema.name
            )
        return schema.canonical(name)

    def _resolve_fk(self, child: TableSchema, fk: ForeignKeyDef, snap: CatalogSnapshot) -> ForeignKeyDef:
        columns = tuple(self._column_of(child, c, "foreign key") for c in fk.columns)

        if fk.ref_table.lower() == child.name.lower():
            parent = child
        else:
            parent = snap.table(fk.ref_table)

        if not parent.primary_key:
            raise SchemaError(
                f"referenced table '{parent.name}' has no primary key", table=child.name
            )
        ref_columns = tuple(self._column_of(parent, c, "referenced") for c in fk.ref_columns) or parent.primary_key
        if [c.lower() for c in ref_columns] != [c.lower() for c in parent.primary_key]:
            raise SchemaError(
                f"foreign key must reference the primary key of '{parent.name}'",
                table=child.name,
            )
        if len(columns) != len(ref_columns):
            raise SchemaError("foreign key column count mismatch", table=child.name)

        name = fk.name or f"{child.name}_{'_'.join(columns)}_fkey"
        return ForeignKeyDef(columns=columns, ref_table=parent.name, ref_columns=ref_columns, name=name)

    def _implicit_indexes(self, command: CreateTable, schema: TableSchema, snap: CatalogSnapshot) -> list[IndexDef]:
        column_sets: list[tuple[str, ...]] = [(c.name,) for c in schema.columns if c.unique]
        for group in command.unique:
            column_sets.append(tuple(self._column_of(schema, c, "unique") for c in group))

        indexes: list[IndexDef] = []
        seen: set[tuple[str, ...]] = set()
        for cols in column_sets:
            lowered = tuple(c.lower() for c in cols)
            if lowered in seen or lowered == tuple(c.lower() for c in schema.primary_key):
                continue
            seen.add(lowered)
            name = f"{schema.name}_{'_'.join(cols)}_key"
            if name.lower() in snap.indexes:
                raise ConflictError(f"index '{name}' already exists")
            indexes.append(
                IndexDef(
                    name=name,
                    table=schema.name,
                    table_id=schema.table_id,
                    columns=cols,
                    unique=True,
                    implicit=True,
                )
            )
        return indexes

    def drop_table(
        self,
        name: str,
        if_exists: bool = False,
        on_drop: Callable[[TableSchema], None] | None = None,
    ) -> TableSchema | None:
        """Remove a table with its indexes and triggers.

        Raises:
            NotFoundError: If the table does not exist (and not IF EXISTS).
            ConflictError: If another table's foreign key or a view depends on it.
        """
        with self._lock:
            snap = self._snapshot
            key = name.lower()
            schema = snap.tables.get(key)
            if schema is None:
                if key in snap.views:
                    raise ConflictError(f"'{name}' is a view; use DROP VIEW", table=name)
                if if_exists:
                    return None
                raise NotFoundError(f"table '{name}' does not exist", table=name)

            for other, fk in snap.referencing(schema.name):
                if other.table_id != schema.table_id:
                    raise ConflictError(
                        f"cannot drop table '{schema.name}': referenced by foreign key "
                        f"'{fk.name}' on '{other.name}'",
                        table=schema.name,
                        constraint=fk.name,
                    )
            for view in snap.views.values():
                if key in view.dependencies:
                    raise ConflictError(
                        f"cannot drop table '{schema.name}': view '{view.name}' depends on it",
                        table=schema.name,
                    )

            if on_drop is not None:
                on_drop(schema)

            tables = {k: v for k, v in snap.tables.items() if k != key}
            indexes = {k: v for k, v in snap.indexes.items() if v.table_id != schema.table_id}
            triggers = {k: v for k, v in snap.triggers.items() if v.table_id != schema.table_id}
            self._publish(replace(snap, tables=tables, indexes=indexes, triggers=triggers))
            return schema

    # -------------------------------------------------------------------------
    # Views
    # -------------------------------------------------------------------------

    def define_view(self, command: CreateView) -> ViewDef:
        """Register a view. Its base-table dependencies are computed here.

        Replacing a view re-derives the dependencies of every view that
        reads it, directly or through other views.

        Raises:
            ConflictError: If the name is taken (and not OR REPLACE of a view).
            NotFoundError: If the query references an unknown relation.
            SchemaError: If the query reads the view itself or a view built on it.
        """
        with self._lock:
            snap = self._snapshot
            key = command.name.lower()
            if key in snap.tables:
                raise ConflictError(f"relation '{command.name}' already exists", table=command.name)
            if key in snap.views and not command.or_replace:
                raise ConflictError(f"view '{command.name}' already exists", table=command.name)

            dependents = _dependent_views(snap, key)
            cycle = referenced_relations(command.query) & ({key} | {v.name.lower() for v in dependents})
            if cycle:
                raise SchemaError(f"view '{command.name}' cannot reference itself through '{sorted(cycle)[0]}'")

            view = ViewDef(
                name=command.name,
                query=command.query,
                materialized=command.materialized,
                dependencies=frozenset(base_tables(command.query, snap)),
            )
            views = dict(snap.views)
            views[key] = view
            staged = replace(snap, views=views)
            for dependent in dependents:
                views[dependent.name.lower()] = replace(
                    dependent, dependencies=frozenset(base_tables(dependent.query, staged))
                )
            self._publish(staged)
            return view

    def drop_view(self, name: str, if_exists: bool = False) -> ViewDef | None:
        """Remove a view.

        Raises:
            NotFoundError: If the view does not exist (and not IF EXISTS).
            ConflictError: If another view reads it.
        """
        with self._lock:
            snap = self._snapshot
            key = name.lower()
            view = snap.views.get(key)
            if view is None:
                if if_exists:
                    return None
                raise NotFoundError(f"view '{name}' does not exist", table=name)
            dependents = _dependent_views(snap, key)
            if dependents:
                raise ConflictError(
                    f"cannot drop view '{view.name}': view '{dependents[0].name}' depends on it",
                    table=view.name,
                )
            views = {k: v for k, v in snap.views.items() if k != key}
            self._publish(replace(snap, views=views))
            return view

    def dependent_views(self, name: str) -> list[str]:
        """Names of views that read ``name`` directly or through other views."""
        return [view.name for view in _dependent_views(self._snapshot, name.lower())]

    # -------------------------------------------------------------------------
    # Indexes
    # -------------------------------------------------------------------------

    def define_index(
        self,
        command: CreateIndex,
        on_define: Callable[[IndexDef], None] | None = None,
    ) -> IndexDef | None:
        """Register a secondary index.

        Raises:
            ConflictError: If an index with this name exists.
            NotFoundError: If the table does not exist.
            SchemaError: If a column does not exist.
        """
        with self._lock:
            snap = self._snapshot
            key = command.name.lower()
            if key in snap.indexes:
                if command.if_not_exists:
                    return None
                raise ConflictError(f"index '{command.name}' already exists")
            if command.table.lower() in snap.views:
                raise ConflictError(f"cannot index view '{command.table}'", table=command.table)
            schema = snap.table(command.table)
            columns = tuple(self._column_of(schema, c, "index") for c in command.columns)
            index = IndexDef(
                name=command.name,
                table=schema.name,
                table_id=schema.table_id,
                columns=columns,
                unique=command.unique,
            )
            if on_define is not None:
                on_define(index)
            indexes = dict(snap.indexes)
            indexes[key] = index
            self._publish(replace(snap, indexes=indexes))
            return index

    def drop_index(
        self,
        name: str,
        if_exists: bool = False,
        on_drop: Callable[[IndexDef], None] | None = None,
    ) -> IndexDef | None:
        with self._lock:
            snap = self._snapshot
            key = name.lower()
            index = snap.indexes.get(key)
            if index is None:
                if if_exists:
                    return None
                raise NotFoundError(f"index '{name}' does not exist")
            if index.implicit:
                raise ConflictError(
                    f"index '{name}' enforces a UNIQUE constraint and cannot be dropped",
                    table=index.table,
                    constraint=index.name,
                )
            if on_drop is not None:
                on_drop(index)
            indexes = {k: v for k, v in snap.indexes.items() if k != key}
            self._publish(replace(snap, indexes=indexes))
            return index

    # -------------------------------------------------------------------------
    # Triggers
    # -------------------------------------------------------------------------

    def define_trigger(self, command: CreateTrigger) -> TriggerDef:
        """Register a row-level trigger. Triggers fire in registration order.

        Raises:
            ConflictError: If the name is taken or the target is a view.
            NotFoundError: If the table does not exist.
        """
        with self._lock:
            snap = self._snapshot
            key = command.name.lower()
            if key in snap.triggers:
                raise ConflictError(f"trigger '{command.name}' already exists")
            if command.table.lower() in snap.views:
                raise ConflictError(
                    f"cannot create trigger on view '{command.table}'", table=command.table
                )
            schema = snap.table(command.table)
            trigger = TriggerDef(
                name=command.name,
                table=schema.name,
                table_id=schema.table_id,
                timing=command.timing,
                events=frozenset(command.events),
                procedure=command.procedure,
                order=self._next_trigger_order,
            )
            self._next_trigger_order += 1
            triggers = dict(snap.triggers)
            triggers[key] = trigger
            self._publish(replace(snap, triggers=triggers))
            return trigger

    def drop_trigger(self, name: str, if_exists: bool = False) -> TriggerDef | None:
        with self._lock:
            snap = self._snapshot
            key = name.lower()
            trigger = snap.triggers.get(key)
            if trigger is None:
                if if_exists:
                    return None
                raise NotFoundError(f"trigger '{name}' does not exist")
            triggers = {k: v for k, v in snap.triggers.items() if k != key}
            self._publish(replace(snap, triggers=triggers))
            return trigger

    def _publish(self, snapshot: CatalogSnapshot) -> None:
        self._snapshot = replace(snapshot, version=self._snapshot.version + 1)


def resolve_in(snapshot: CatalogSnapshot, name: str) -> TableSchema | ViewDef:
    """Resolve a relation name in a given snapshot.

    Raises:
        NotFoundError: If neither a table nor a view has this name.
    """
    key = name.lower()
    if key in snapshot.tables:
        return snapshot.tables[key]
    if key in snapshot.views:
        return snapshot.views[key]
    raise NotFoundError(f"relation '{name}' does not exist", table=name)


def base_tables(query: Query, snapshot: CatalogSnapshot) -> set[str]:
    """Lower-cased names of the base tables a query reads, through views.

    Raises:
        NotFoundError: If a referenced relation does not exist.
    """
    result: set[str] = set()
    for name in referenced_relations(query):
        relation = resolve_in(snapshot, name)
        if isinstance(relation, TableSchema):
            result.add(relation.name.lower())
        else:
            result.update(base_tables(relation.query, snapshot))
    return result


def _dependent_views(snapshot: CatalogSnapshot, key: str) -> list[ViewDef]:
    """Views reading relation ``key`` directly or transitively, nearest first."""
    found: dict[str, ViewDef] = {}
    frontier = [key]
    while frontier:
        current = frontier.pop(0)
        for view_key, view in snapshot.views.items():
            if view_key == key or view_key in found:
                continue
            if current in referenced_relations(view.query):
                found[view_key] = view
                frontier.append(view_key)
    return list(found.values())


def referenced_relations(query: Query, hidden: frozenset[str] = frozenset()) -> set[str]:
    """Names of relations a query reads, excluding its own CTE names."""
    names: set[str] = set()
    ctes = query.ctes
    scope = hidden | {c.name.lower() for c in ctes}
    for cte in ctes:
        names |= referenced_relations(cte.query, scope)

    if isinstance(query, SetOperation):
        names |= referenced_relations(query.left, scope)
        names |= referenced_relations(query.right, scope)
        return names

    sources = [query.source] + [j.source for j in query.joins] if query.source is not None else []
    for source in sources:
        if isinstance(source, TableRef) and source.name.lower() not in scope:
            names.add(source.name.lower())
        elif isinstance(source, SubqueryRef):
            names |= referenced_relations(source.query, scope)

    for nested in _nested_queries(query):
        names |= referenced_relations(nested, scope)
    return names


def _nested_queries(query: Select) -> Iterator[Query]:
    exprs = [item.expr for item in query.items]
    exprs += [e for e in (query.where, query.having) if e is not None]
    exprs += list(query.group_by)
    exprs += [j.condition for j in query.joins if j.condition is not None]
    exprs += [o.expr for o in query.order_by]
    for expr in exprs:
        for node in walk(expr):
            if isinstance(node, (SubqueryExpr, InSubqueryExpr)):
                yield node.query
