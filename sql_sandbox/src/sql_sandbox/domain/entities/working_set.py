"""Per-transaction staging area and committed row versions.

A transaction never mutates committed state directly. Inserts, updates and
deletes are staged in its WorkingSet; commit publishes the staged rows as
new RowVersions at one commit sequence number.

The working set keeps an undo log so a single statement can be undone
without discarding the rest of the transaction (statement savepoints).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator

from sql_sandbox.domain.value_objects import CommitSeq, RowKey, TableId


RowValues = Dict[str, Any]
"""Mapping from canonical column name to value."""


@dataclass(frozen=True)
class RowVersion:
    """One committed version of a row. ``values is None`` marks a deletion."""

    seq: CommitSeq
    values: RowValues | None

    @property
    def is_tombstone(self) -> bool:
        return self.values is None


class ChangeKind(Enum):
    """How a staged entry relates to the row visible before the transaction."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class StagedWrite:
    """A pending row change.

    ``kind`` records the net effect relative to the transaction's snapshot:
    a row inserted and then updated in the same transaction stays an
    INSERT; a row inserted and then deleted stays staged as a DELETE with
    ``existed=False`` and publishes nothing.
    """

    kind: ChangeKind
    values: RowValues | None
    existed: bool

    @property
    def is_delete(self) -> bool:
        return self.values is None


_MISSING = object()


class WorkingSet:
    """Staged changes of one transaction, with statement-level undo.

    Thread Safety:
        A working set belongs to one transaction and is only touched by the
        thread running that transaction's statement.
    """

    def __init__(self) -> None:
        self._changes: dict[TableId, dict[RowKey, StagedWrite]] = {}
        self._undo: list[tuple[TableId, RowKey, Any]] = []

    def get(self, table_id: TableId, key: RowKey) -> StagedWrite | None:
        """Return the staged change for a row, if any."""
        return self._changes.get(table_id, {}).get(key)

    def stage(self, table_id: TableId, key: RowKey, values: RowValues | None, existed: bool) -> StagedWrite:
        """Record a new row image (or deletion) for ``key``.

        Args:
            table_id: Table the row belongs to.
            key: Row key.
            values: New canonical row values, or None to delete.
            existed: Whether a committed row with this key was visible to the
                transaction before it staged anything for the key.
        """
        table = self._changes.setdefault(table_id, {})
        previous = table.get(key, _MISSING)
        self._undo.append((table_id, key, previous))

        if isinstance(previous, StagedWrite):
            existed = previous.existed
        if values is None:
            kind = ChangeKind.DELETE
        elif existed:
            kind = ChangeKind.UPDATE
        else:
            kind = ChangeKind.INSERT

        write = StagedWrite(kind=kind, values=dict(values) if values is not None else None, existed=existed)
        # Re-staging moves the key to the end so scans see staging order.
        table.pop(key, None)
        table[key] = write
        return write

    def savepoint(self) -> int:
        """Return a mark that rollback_to() can undo back to."""
        return len(self._undo)

    def rollback_to(self, mark: int) -> None:
        """Undo every change staged after ``mark``."""
        while len(self._undo) > mark:
            table_id, key, previous = self._undo.pop()
            table = self._changes.get(table_id)
            if table is None:
                continue
            if previous is _MISSING:
                table.pop(key, None)
                if not table:
                    del self._changes[table_id]
            else:
                table[key] = previous

    def entries(self, table_id: TableId) -> Iterator[tuple[RowKey, StagedWrite]]:
        """Staged changes for one table in staging order."""
        return iter(list(self._changes.get(table_id, {}).items()))

    def tables(self) -> set[TableId]:
        return {t for t, changes in self._changes.items() if changes}

    def touches(self, table_ids: set[TableId] | frozenset[TableId]) -> bool:
        return bool(self.tables() & set(table_ids))

    def clear(self) -> None:
        self._changes.clear()
        self._undo.clear()

    def __len__(self) -> int:
        return sum(len(changes) for changes in self._changes.values())

    def is_empty(self) -> bool:
        return len(self) == 0
