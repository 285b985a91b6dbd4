"""Unit tests for the materialized view cache."""

from __future__ import annotations

import pytest

from sql_sandbox.domain.services import CachedView, ViewCache
from sql_sandbox.domain.value_objects import CommitSeq, TableId


STUDENTS = TableId(1)
COURSES = TableId(2)


class FakeTables:
    """Stand-in for the storage engine's last_modified_seq."""

    def __init__(self) -> None:
        self.modified: dict[TableId, CommitSeq] = {}

    def __call__(self, table_id: TableId) -> CommitSeq:
        return self.modified.get(table_id, CommitSeq(0))


def entry(seq: int, deps: frozenset[TableId] = frozenset({STUDENTS})) -> CachedView:
    return CachedView(columns=("n",), rows=((1,),), computed_seq=CommitSeq(seq), dependencies=deps)


@pytest.mark.unit
class TestViewCache:
    """Tests for ViewCache validity rules."""

    @pytest.fixture
    def tables(self) -> FakeTables:
        return FakeTables()

    @pytest.fixture
    def cache(self, tables: FakeTables) -> ViewCache:
        return ViewCache(tables)

    def test_miss_then_hit(self, cache: ViewCache) -> None:
        deps = frozenset({STUDENTS})
        assert cache.get("v", deps, CommitSeq(3), set()) is None

        cache.put("v", entry(3))

        assert cache.get("V", deps, CommitSeq(3), set()) is not None
        assert (cache.hits, cache.misses) == (1, 1)

    def test_invalid_after_dependency_changes(self, cache: ViewCache, tables: FakeTables) -> None:
        cache.put("v", entry(3))
        tables.modified[STUDENTS] = CommitSeq(4)

        assert cache.get("v", frozenset({STUDENTS}), CommitSeq(4), set()) is None

    def test_unrelated_table_change_keeps_entry(self, cache: ViewCache, tables: FakeTables) -> None:
        cache.put("v", entry(3))
        tables.modified[COURSES] = CommitSeq(4)

        assert cache.get("v", frozenset({STUDENTS}), CommitSeq(4), set()) is not None

    def test_older_snapshot_misses(self, cache: ViewCache) -> None:
        """A reader whose snapshot predates the entry must recompute."""
        cache.put("v", entry(5))

        assert cache.get("v", frozenset({STUDENTS}), CommitSeq(4), set()) is None

    def test_own_uncommitted_changes_miss(self, cache: ViewCache) -> None:
        cache.put("v", entry(3))

        assert cache.get("v", frozenset({STUDENTS}), CommitSeq(3), {STUDENTS}) is None

    def test_redefined_dependencies_miss(self, cache: ViewCache) -> None:
        cache.put("v", entry(3))

        assert cache.get("v", frozenset({STUDENTS, COURSES}), CommitSeq(3), set()) is None

    def test_put_keeps_newest(self, cache: ViewCache) -> None:
        cache.put("v", entry(5))
        cache.put("v", entry(3))

        cached = cache.get("v", frozenset({STUDENTS}), CommitSeq(9), set())
        assert cached is not None and cached.computed_seq == 5

    def test_invalidate_and_clear(self, cache: ViewCache) -> None:
        cache.put("a", entry(1))
        cache.put("b", entry(1))

        cache.invalidate("A")
        assert len(cache) == 1
        cache.clear()
        assert len(cache) == 0
