"""In-memory MVCC row store.

Each table maps a row key to a list of committed RowVersions in commit
order. A reader with snapshot ``s`` sees, for every key, the newest
version whose commit sequence is ``<= s``; a tombstone (``values is None``)
means the row is deleted.

Writers never touch committed versions. put/replace/delete stage row
images in the transaction's WorkingSet, and the transaction manager asks
the engine to ``publish`` them at commit. Reads overlay the caller's own
working set on top of its snapshot, so a transaction sees its own
uncommitted changes and nobody else's.

Concurrency:
    - Writes take a per-row exclusive intent (no-wait) and check
      first-committer-wins against the latest committed version.
    - Readers never block; the storage lock is held only for short
      copies of version lists.
    - publish appends every version first and advances
      ``last_committed_seq`` last, so a new snapshot sees all of a commit
      or none of it.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterator, List, Mapping, Set

from sql_sandbox.domain.entities import (
    CatalogSnapshot,
    ChangeKind,
    IndexDef,
    RowValues,
    RowVersion,
    TableSchema,
    WorkingSet,
)
from sql_sandbox.domain.errors import (
    ConstraintViolationError,
    DuplicateKeyError,
    NotFoundError,
    TransactionStateError,
    WriteConflictError,
)
from sql_sandbox.domain.services.expression_evaluator import Layout, evaluate, row_context
from sql_sandbox.domain.value_objects import (
    INITIAL_COMMIT_SEQ,
    CoercionError,
    CommitSeq,
    IntentKey,
    RowKey,
    TableId,
    coerce,
)
from sql_sandbox.domain.services.lock_manager import LockManager
from sql_sandbox.ports.inbound.transaction_manager import Transaction

if TYPE_CHECKING:
    from sql_sandbox.infrastructure.metrics import MetricsRegistry


@dataclass
class SecondaryIndex:
    """Value tuple -> keys of rows that have carried that value in any version.

    Entries are candidates only; lookups confirm them against the visible
    version of each row.
    """

    definition: IndexDef
    entries: Dict[tuple, Set[RowKey]] = field(default_factory=dict)

    def add(self, values: Mapping[str, Any], key: RowKey) -> None:
        self.entries.setdefault(self.key_of(values), set()).add(key)

    def key_of(self, values: Mapping[str, Any]) -> tuple:
        return tuple(values.get(c) for c in self.definition.columns)

    def candidates(self, value: tuple) -> Set[RowKey]:
        return set(self.entries.get(value, ()))


@dataclass
class TableData:
    """Committed versions and secondary indexes of one table."""

    schema: TableSchema
    versions: Dict[RowKey, List[RowVersion]] = field(default_factory=dict)
    indexes: Dict[str, SecondaryIndex] = field(default_factory=dict)
    last_modified_seq: CommitSeq = INITIAL_COMMIT_SEQ
    next_surrogate: int = 1


@dataclass
class StorageStats:
    """Storage statistics."""

    tables: int
    live_rows: int
    versions: int
    last_committed_seq: int


class StorageEngine:
    """MVCC storage for all tables.

    Usage:
        storage = StorageEngine(LockManager())
        storage.create_table(schema, [])
        key = storage.put(txn, schema, {"id": 1, "name": "Alice"})
        for key, row in storage.scan(txn, schema):
            ...

    Thread Safety:
        All methods are thread-safe. Each transaction's working set must
        only be used by the thread running that transaction.
    """

    def __init__(
        self,
        lock_manager: LockManager | None = None,
        scan_batch_size: int = 256,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        """Initialize the storage engine.

        Args:
            lock_manager: Intent table (created if not provided).
            scan_batch_size: Keys read per batch; the transaction's state
                is re-checked between batches.
            metrics: Optional metrics registry.
        """
        self._lock_manager = lock_manager or LockManager()
        self._scan_batch_size = scan_batch_size
        self._metrics = metrics
        self._lock = threading.RLock()
        self._tables: Dict[TableId, TableData] = {}
        self._last_committed_seq = INITIAL_COMMIT_SEQ

    @property
    def lock_manager(self) -> LockManager:
        return self._lock_manager

    @property
    def last_committed_seq(self) -> CommitSeq:
        return self._last_committed_seq

    # -------------------------------------------------------------------------
    # Structure
    # -------------------------------------------------------------------------

    def create_table(self, schema: TableSchema, indexes: list[IndexDef] | None = None) -> None:
        with self._lock:
            data = TableData(schema=schema)
            for index in indexes or []:
                data.indexes[index.name.lower()] = SecondaryIndex(index)
            self._tables[schema.table_id] = data

    def drop_table(self, schema: TableSchema) -> None:
        with self._lock:
            self._tables.pop(schema.table_id, None)

    def create_index(self, index: IndexDef) -> None:
        """Build a secondary index over every stored version.

        Raises:
            NotFoundError: If the table does not exist.
            DuplicateKeyError: If a unique index would be violated by the
                latest committed rows.
        """
        with self._lock:
            data = self._data(index.table_id, index.table)
            secondary = SecondaryIndex(index)
            for key, versions in data.versions.items():
                for version in versions:
                    if version.values is not None:
                        secondary.add(version.values, key)
            if index.unique:
                seen: dict[tuple, RowKey] = {}
                for key, versions in data.versions.items():
                    latest = versions[-1].values
                    if latest is None:
                        continue
                    value = secondary.key_of(latest)
                    if None in value:
                        continue
                    if value in seen:
                        raise DuplicateKeyError(
                            f"could not create unique index '{index.name}': "
                            f"duplicate value {value!r}",
                            table=index.table,
                            key=value,
                            constraint=index.name,
                        )
                    seen[value] = key
            data.indexes[index.name.lower()] = secondary

    def drop_index(self, index: IndexDef) -> None:
        with self._lock:
            data = self._tables.get(index.table_id)
            if data is not None:
                data.indexes.pop(index.name.lower(), None)

    def last_modified_seq(self, table_id: TableId) -> CommitSeq:
        data = self._tables.get(table_id)
        return data.last_modified_seq if data is not None else INITIAL_COMMIT_SEQ

    def _data(self, table_id: TableId, name: str) -> TableData:
        data = self._tables.get(table_id)
        if data is None:
            raise NotFoundError(f"table '{name}' no longer exists", table=name)
        return data

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, txn: Transaction, schema: TableSchema, key: RowKey) -> RowValues | None:
        """Return the row visible to ``txn`` at ``key``, or None."""
        self._check_active(txn)
        data = self._data(schema.table_id, schema.name)
        values = self._visible(txn, data, key)
        return dict(values) if values is not None else None

    def scan(
        self,
        txn: Transaction,
        schema: TableSchema,
        predicate: Callable[[RowValues], bool] | None = None,
    ) -> Iterator[tuple[RowKey, RowValues]]:
        """Lazily yield ``(key, row)`` for every row visible to ``txn``.

        Committed rows come first in key-insertion order, followed by rows
        the transaction staged under new keys. Every call starts a fresh
        iteration over the caller's snapshot.

        Args:
            txn: The reading transaction.
            schema: Table to scan.
            predicate: Optional filter; only rows for which it returns True
                are yielded.

        Raises:
            TransactionStateError: If the transaction stops being ACTIVE
                while the scan is in progress.
        """
        self._check_active(txn)
        data = self._data(schema.table_id, schema.name)
        rows = self._scan(txn, data)
        if predicate is None:
            return rows
        return ((key, values) for key, values in rows if predicate(values))

    def _scan(self, txn: Transaction, data: TableData) -> Iterator[tuple[RowKey, RowValues]]:
        snapshot = txn.snapshot_seq
        with self._lock:
            keys = list(data.versions.keys())
        staged = dict(txn.working_set.entries(data.schema.table_id))
        committed_keys = set(keys)

        for start in range(0, len(keys), self._scan_batch_size):
            if start:
                self._check_active(txn)
            batch = keys[start:start + self._scan_batch_size]
            with self._lock:
                rows = [(k, self._committed_at(data, k, snapshot)) for k in batch]
            produced = 0
            for key, values in rows:
                write = staged.get(key)
                if write is not None:
                    if write.values is None:
                        continue
                    values = write.values
                if values is None:
                    continue
                produced += 1
                yield key, dict(values)
            self._count_scanned(produced)

        for key, write in staged.items():
            if key not in committed_keys and write.values is not None:
                self._count_scanned(1)
                yield key, dict(write.values)

    def lookup(
        self,
        txn: Transaction,
        schema: TableSchema,
        index_name: str,
        values: tuple,
    ) -> list[tuple[RowKey, RowValues]]:
        """Find visible rows whose index columns equal ``values``.

        Raises:
            NotFoundError: If the index does not exist on this table.
        """
        self._check_active(txn)
        data = self._data(schema.table_id, schema.name)
        secondary = data.indexes.get(index_name.lower())
        if secondary is None:
            raise NotFoundError(f"index '{index_name}' does not exist", table=schema.name)
        results = []
        for key in self._index_candidates(secondary, data, values, txn.working_set):
            row = self._visible(txn, data, key)
            if row is not None and secondary.key_of(row) == values:
                results.append((key, dict(row)))
        return results

    def read_latest(
        self,
        table_id: TableId,
        key: RowKey,
        working_set: WorkingSet | None = None,
    ) -> RowValues | None:
        """Read a row from the latest committed state, overlaid with a working set."""
        if working_set is not None:
            write = working_set.get(table_id, key)
            if write is not None:
                return write.values
        with self._lock:
            data = self._tables.get(table_id)
            if data is None:
                return None
            versions = data.versions.get(key)
            return versions[-1].values if versions else None

    def scan_latest(
        self,
        table_id: TableId,
        working_set: WorkingSet | None = None,
    ) -> Iterator[tuple[RowKey, RowValues]]:
        """Iterate the latest committed state, overlaid with a working set."""
        with self._lock:
            data = self._tables.get(table_id)
            if data is None:
                return iter(())
            latest = [(k, v[-1].values) for k, v in data.versions.items()]
        staged = dict(working_set.entries(table_id)) if working_set is not None else {}
        return self._overlay(latest, staged)

    @staticmethod
    def _overlay(latest: list[tuple[RowKey, RowValues | None]], staged: dict) -> Iterator[tuple[RowKey, RowValues]]:
        seen = set()
        for key, values in latest:
            seen.add(key)
            write = staged.get(key)
            if write is not None:
                values = write.values
            if values is not None:
                yield key, values
        for key, write in staged.items():
            if key not in seen and write.values is not None:
                yield key, write.values

    def _visible(self, txn: Transaction, data: TableData, key: RowKey) -> RowValues | None:
        write = txn.working_set.get(data.schema.table_id, key)
        if write is not None:
            return write.values
        with self._lock:
            return self._committed_at(data, key, txn.snapshot_seq)

    @staticmethod
    def _committed_at(data: TableData, key: RowKey, seq: CommitSeq) -> RowValues | None:
        for version in reversed(data.versions.get(key, ())):
            if version.seq <= seq:
                return version.values
        return None

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def put(self, txn: Transaction, schema: TableSchema, values: Mapping[str, Any]) -> RowKey:
        """Stage a new row.

        Missing columns take their default value, then NULL.

        Returns:
            The new row's key.

        Raises:
            DuplicateKeyError: If the key or a unique value is already
                visible to ``txn``.
            ConstraintViolationError: On NOT NULL, type, length or CHECK failure.
            WriteConflictError: If another transaction holds or committed the row.
        """
        self._check_active(txn)
        data = self._data(schema.table_id, schema.name)
        row = self.prepare_row(schema, values, fill_defaults=True)

        if schema.has_surrogate_key:
            with self._lock:
                key: RowKey = (data.next_surrogate,)
                data.next_surrogate += 1
        else:
            key = schema.key_of(row)
            if self._visible(txn, data, key) is not None:
                raise DuplicateKeyError(
                    f"duplicate key value violates primary key of '{schema.name}': {key!r}",
                    table=schema.name,
                    key=key,
                    constraint=f"{schema.name}_pkey",
                )

        self._check_unique(txn, data, key, row)
        self._claim(txn, data, key)
        txn.working_set.stage(schema.table_id, key, row, existed=self._existed(txn, data, key))
        return key

    def replace(
        self,
        txn: Transaction,
        schema: TableSchema,
        key: RowKey,
        values: Mapping[str, Any],
    ) -> RowKey:
        """Stage a new image for an existing row.

        A changed primary key is staged as a delete of the old key plus an
        insert of the new one.

        Returns:
            The row's (possibly new) key.

        Raises:
            NotFoundError: If no row with ``key`` is visible to ``txn``.
            DuplicateKeyError: If the new key or a unique value collides.
            ConstraintViolationError: On NOT NULL, type, length or CHECK failure.
            WriteConflictError: If another transaction holds or committed the row.
        """
        self._check_active(txn)
        data = self._data(schema.table_id, schema.name)
        if self._visible(txn, data, key) is None:
            raise NotFoundError(f"row {key!r} not found in '{schema.name}'", table=schema.name, key=key)

        row = self.prepare_row(schema, values, fill_defaults=False)
        new_key = key if schema.has_surrogate_key else schema.key_of(row)

        if new_key != key and self._visible(txn, data, new_key) is not None:
            raise DuplicateKeyError(
                f"duplicate key value violates primary key of '{schema.name}': {new_key!r}",
                table=schema.name,
                key=new_key,
                constraint=f"{schema.name}_pkey",
            )

        self._check_unique(txn, data, new_key, row, ignore=key)
        self._claim(txn, data, key)
        if new_key != key:
            self._claim(txn, data, new_key)
            txn.working_set.stage(schema.table_id, key, None, existed=self._existed(txn, data, key))
        txn.working_set.stage(schema.table_id, new_key, row, existed=self._existed(txn, data, new_key))
        return new_key

    def delete(self, txn: Transaction, schema: TableSchema, key: RowKey) -> bool:
        """Stage the deletion of a row.

        Returns:
            True if a visible row was deleted, False if none was visible.

        Raises:
            WriteConflictError: If another transaction holds or committed the row.
        """
        self._check_active(txn)
        data = self._data(schema.table_id, schema.name)
        if self._visible(txn, data, key) is None:
            return False
        self._claim(txn, data, key)
        txn.working_set.stage(schema.table_id, key, None, existed=self._existed(txn, data, key))
        return True

    def prepare_row(
        self,
        schema: TableSchema,
        values: Mapping[str, Any],
        fill_defaults: bool = True,
    ) -> RowValues:
        """Canonicalize, coerce and validate a full row image.

        Raises:
            NotFoundError: If a value names an unknown column.
            ConstraintViolationError: On NOT NULL, type, length or CHECK failure.
        """
        given: dict[str, Any] = {}
        for name, value in values.items():
            given[schema.canonical(name)] = value

        layout = Layout([(schema.name, schema.column_names)])
        row: RowValues = {}
        for col in schema.columns:
            if col.name in given:
                value = given[col.name]
            elif fill_defaults and col.default is not None:
                value = evaluate(col.default, row_context(Layout(), []))
            else:
                value = None

            try:
                value = coerce(value, col.data_type, col.max_length)
            except CoercionError as e:
                raise ConstraintViolationError(
                    f"invalid value for column '{schema.name}.{col.name}': {e}",
                    table=schema.name,
                    constraint=f"{schema.name}.{col.name}",
                ) from e

            if value is None and not col.nullable:
                raise ConstraintViolationError(
                    f"null value in column '{col.name}' of '{schema.name}' violates NOT NULL",
                    table=schema.name,
                    constraint=f"{schema.name}.{col.name}.not_null",
                )
            row[col.name] = value

        ctx = row_context(layout, [row[c] for c in schema.column_names])
        checks = [(c.check, f"{schema.name}_{c.name}_check") for c in schema.columns if c.check is not None]
        checks += [(c.expr, c.name or f"{schema.name}_check") for c in schema.checks]
        for expr, name in checks:
            # Only FALSE fails a CHECK; NULL passes.
            if evaluate(expr, ctx) is False:
                raise ConstraintViolationError(
                    f"row in '{schema.name}' violates check constraint '{name}'",
                    table=schema.name,
                    key=schema.key_of(row) if schema.primary_key else None,
                    constraint=name,
                )
        return row

    def _existed(self, txn: Transaction, data: TableData, key: RowKey) -> bool:
        with self._lock:
            return self._committed_at(data, key, txn.snapshot_seq) is not None

    def _claim(self, txn: Transaction, data: TableData, key: RowKey) -> None:
        """Take the row's write intent and enforce first-committer-wins.

        Raises:
            WriteConflictError: If the intent is held by another transaction
                or the row was committed after ``txn``'s snapshot.
        """
        schema = data.schema
        blocking = self._lock_manager.try_acquire(txn.txn_id, IntentKey(schema.table_id, key))
        if blocking is not None:
            self._count_conflict()
            raise WriteConflictError(
                f"row {key!r} of '{schema.name}' is being modified by transaction {blocking}",
                blocking_txn=blocking,
                table=schema.name,
                key=key,
            )
        with self._lock:
            versions = data.versions.get(key)
            latest_seq = versions[-1].seq if versions else INITIAL_COMMIT_SEQ
        if latest_seq > txn.snapshot_seq:
            self._count_conflict()
            raise WriteConflictError(
                f"row {key!r} of '{schema.name}' was changed by a transaction that "
                f"committed after this one's snapshot",
                table=schema.name,
                key=key,
            )

    def _check_unique(
        self,
        txn: Transaction,
        data: TableData,
        key: RowKey,
        row: RowValues,
        ignore: RowKey | None = None,
    ) -> None:
        for secondary in data.indexes.values():
            if not secondary.definition.unique:
                continue
            value = secondary.key_of(row)
            if None in value:
                continue
            for other in self._index_candidates(secondary, data, value, txn.working_set):
                if other == key or other == ignore:
                    continue
                visible = self._visible(txn, data, other)
                if visible is not None and secondary.key_of(visible) == value:
                    raise _unique_violation(secondary.definition, value)

    def _index_candidates(
        self,
        secondary: SecondaryIndex,
        data: TableData,
        value: tuple,
        working_set: WorkingSet,
    ) -> Set[RowKey]:
        with self._lock:
            candidates = secondary.candidates(value)
        for key, write in working_set.entries(data.schema.table_id):
            if write.values is not None and secondary.key_of(write.values) == value:
                candidates.add(key)
        return candidates

    # -------------------------------------------------------------------------
    # Commit support
    # -------------------------------------------------------------------------

    def validate_commit(self, working_set: WorkingSet, catalog: CatalogSnapshot) -> None:
        """Check a working set against the latest committed state.

        Must be called while holding the commit lock.

        Raises:
            ConstraintViolationError: If a target table was dropped or a
                foreign key fails.
            DuplicateKeyError: If a primary key or unique value collides.
        """
        for table_id in working_set.tables():
            schema = catalog.table_by_id(table_id)
            data = self._tables.get(table_id)
            if schema is None or data is None:
                raise ConstraintViolationError(
                    "a table modified by this transaction was dropped", table=None
                )
            for key, write in working_set.entries(table_id):
                if write.values is None:
                    continue
                if write.kind == ChangeKind.INSERT and self.read_latest(table_id, key) is not None:
                    raise DuplicateKeyError(
                        f"duplicate key value violates primary key of '{schema.name}': {key!r}",
                        table=schema.name,
                        key=key,
                        constraint=f"{schema.name}_pkey",
                    )
                self._validate_unique_latest(data, key, write.values, working_set)
                self._validate_parents(schema, key, write.values, working_set, catalog)
            self._validate_children(schema, working_set, catalog)

    def _validate_unique_latest(
        self, data: TableData, key: RowKey, row: RowValues, working_set: WorkingSet
    ) -> None:
        for secondary in data.indexes.values():
            if not secondary.definition.unique:
                continue
            value = secondary.key_of(row)
            if None in value:
                continue
            for other in self._index_candidates(secondary, data, value, working_set):
                if other == key:
                    continue
                latest = self.read_latest(data.schema.table_id, other, working_set)
                if latest is not None and secondary.key_of(latest) == value:
                    raise _unique_violation(secondary.definition, value)

    def _validate_parents(
        self,
        schema: TableSchema,
        key: RowKey,
        row: RowValues,
        working_set: WorkingSet,
        catalog: CatalogSnapshot,
    ) -> None:
        for fk in schema.foreign_keys:
            value = tuple(row.get(c) for c in fk.columns)
            if None in value:
                continue
            parent = catalog.tables.get(fk.ref_table.lower())
            if parent is None or self.read_latest(parent.table_id, value, working_set) is None:
                raise ConstraintViolationError(
                    f"insert or update on '{schema.name}' violates foreign key "
                    f"'{fk.name}': key {value!r} is not present in '{fk.ref_table}'",
                    table=schema.name,
                    key=key,
                    constraint=fk.name,
                )

    def _validate_children(
        self, parent: TableSchema, working_set: WorkingSet, catalog: CatalogSnapshot
    ) -> None:
        referencing = catalog.referencing(parent.name)
        if not referencing:
            return
        removed = [
            key
            for key, write in working_set.entries(parent.table_id)
            if write.values is None and write.existed
        ]
        if not removed:
            return
        removed_set = set(removed)
        for child, fk in referencing:
            for child_key, child_row in self.scan_latest(child.table_id, working_set):
                value = tuple(child_row.get(c) for c in fk.columns)
                if value in removed_set and self.read_latest(parent.table_id, value, working_set) is None:
                    raise ConstraintViolationError(
                        f"delete on '{parent.name}' violates foreign key '{fk.name}' "
                        f"on '{child.name}': key {value!r} is still referenced",
                        table=parent.name,
                        key=value,
                        constraint=fk.name,
                    )

    def publish(self, working_set: WorkingSet, seq: CommitSeq) -> int:
        """Append every staged change as a version at ``seq``.

        Must be called while holding the commit lock, after validation.

        Returns:
            Number of versions written.
        """
        written = 0
        with self._lock:
            for table_id in working_set.tables():
                data = self._tables.get(table_id)
                if data is None:
                    continue
                for key, write in working_set.entries(table_id):
                    versions = data.versions.get(key)
                    if write.values is None and not versions:
                        continue
                    data.versions.setdefault(key, []).append(RowVersion(seq, write.values))
                    if write.values is not None:
                        for secondary in data.indexes.values():
                            secondary.add(write.values, key)
                    written += 1
                data.last_modified_seq = seq
            # Readers taking a snapshot after this line see the whole commit.
            self._last_committed_seq = seq
        return written

    def vacuum(self, oldest_seq: CommitSeq) -> int:
        """Discard versions no snapshot at or after ``oldest_seq`` can see.

        Returns:
            Number of versions removed.
        """
        removed = 0
        with self._lock:
            for data in self._tables.values():
                changed = False
                for key in list(data.versions.keys()):
                    versions = data.versions[key]
                    keep_from = 0
                    for i, version in enumerate(versions):
                        if version.seq <= oldest_seq:
                            keep_from = i
                    kept = versions[keep_from:]
                    if kept and kept[0].values is None:
                        kept = kept[1:]
                    if len(kept) != len(versions):
                        removed += len(versions) - len(kept)
                        changed = True
                        if kept:
                            data.versions[key] = kept
                        else:
                            del data.versions[key]
                if changed:
                    self._rebuild_indexes(data)
        return removed

    @staticmethod
    def _rebuild_indexes(data: TableData) -> None:
        for name, secondary in list(data.indexes.items()):
            rebuilt = SecondaryIndex(secondary.definition)
            for key, versions in data.versions.items():
                for version in versions:
                    if version.values is not None:
                        rebuilt.add(version.values, key)
            data.indexes[name] = rebuilt

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _check_active(txn: Transaction) -> None:
        if not txn.is_active():
            raise TransactionStateError(
                f"transaction {txn.txn_id} is {txn.state.name}, not ACTIVE"
            )

    def _count_scanned(self, n: int) -> None:
        if self._metrics is not None and n:
            self._metrics.rows_scanned_total.inc(n)

    def _count_conflict(self) -> None:
        if self._metrics is not None:
            self._metrics.write_conflicts_total.inc()

    def get_stats(self) -> StorageStats:
        with self._lock:
            live = sum(
                1
                for data in self._tables.values()
                for versions in data.versions.values()
                if versions and versions[-1].values is not None
            )
            total = sum(len(v) for data in self._tables.values() for v in data.versions.values())
            return StorageStats(
                tables=len(self._tables),
                live_rows=live,
                versions=total,
                last_committed_seq=self._last_committed_seq,
            )


def _unique_violation(index: IndexDef, value: tuple) -> DuplicateKeyError:
    return DuplicateKeyError(
        f"duplicate key value violates unique constraint '{index.name}': {value!r}",
        table=index.table,
        key=value,
        constraint=index.name,
    )
