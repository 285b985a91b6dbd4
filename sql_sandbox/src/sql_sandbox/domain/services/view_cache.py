"""Cached row sets for materialized views.

An entry remembers the commit sequence it was computed at. It is valid for
a reader when:

- the reader's snapshot is at or after that sequence,
- no underlying table has been modified by a commit since, and
- the reader's own working set does not touch any underlying table.

Anything else is a miss; the caller recomputes the view and may store the
fresh result if it was computed from committed data only.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

from sql_sandbox.domain.value_objects import CommitSeq, TableId

if TYPE_CHECKING:
    from sql_sandbox.infrastructure.metrics import MetricsRegistry


@dataclass(frozen=True)
class CachedView:
    """A computed view result."""

    columns: tuple[str, ...]
    rows: tuple[tuple[Any, ...], ...]
    computed_seq: CommitSeq
    dependencies: frozenset[TableId]


class ViewCache:
    """Materialized view results keyed by view name.

    Args:
        last_modified: Returns the commit sequence at which a table was
            last modified (the storage engine's ``last_modified_seq``).
        metrics: Optional metrics registry.
    """

    def __init__(
        self,
        last_modified: Callable[[TableId], CommitSeq],
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self._last_modified = last_modified
        self._metrics = metrics
        self._lock = threading.Lock()
        self._entries: dict[str, CachedView] = {}
        self.hits = 0
        self.misses = 0

    def get(
        self,
        view_name: str,
        dependencies: frozenset[TableId],
        snapshot_seq: CommitSeq,
        touched: set[TableId],
    ) -> CachedView | None:
        """Return a valid cached result or None.

        Args:
            view_name: The materialized view.
            dependencies: Ids of the base tables the view reads now.
            snapshot_seq: The reader's data snapshot.
            touched: Tables the reader's working set has staged changes in.
        """
        with self._lock:
            entry = self._entries.get(view_name.lower())
        valid = (
            entry is not None
            and entry.dependencies == dependencies
            and entry.computed_seq <= snapshot_seq
            and not (touched & dependencies)
            and all(self._last_modified(t) <= entry.computed_seq for t in dependencies)
        )
        self._record(valid)
        return entry if valid else None

    def put(self, view_name: str, entry: CachedView) -> None:
        with self._lock:
            current = self._entries.get(view_name.lower())
            if current is None or current.computed_seq <= entry.computed_seq:
                self._entries[view_name.lower()] = entry

    def invalidate(self, view_name: str) -> None:
        with self._lock:
            self._entries.pop(view_name.lower(), None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def _record(self, hit: bool) -> None:
        with self._lock:
            if hit:
                self.hits += 1
            else:
                self.misses += 1
        if self._metrics is not None:
            self._metrics.view_cache_total.labels(result="hit" if hit else "miss").inc()
