"""Unit tests for MERGE execution."""

from __future__ import annotations

import pytest

from sql_sandbox.application import Sandbox
from sql_sandbox.application.executor import ResultSet, RowsAffected
from sql_sandbox.domain.errors import ConflictError, ConstraintViolationError
from sql_sandbox.domain.services import TriggerContext

FULL_MERGE = (
    "MERGE INTO target t USING source s ON t.id = s.id "
    "WHEN MATCHED THEN UPDATE SET val = s.val "
    "WHEN NOT MATCHED THEN INSERT (id, val) VALUES (s.id, s.val) "
    "WHEN NOT MATCHED BY SOURCE THEN DELETE"
)


@pytest.fixture
def tables(sandbox: Sandbox) -> Sandbox:
    sandbox.execute_script(
        """
        CREATE TABLE target (id INTEGER PRIMARY KEY, val TEXT);
        CREATE TABLE source (id INTEGER PRIMARY KEY, val TEXT);
        INSERT INTO target VALUES (1, 'a'), (2, 'b');
        INSERT INTO source VALUES (2, 'B'), (3, 'C')
        """
    )
    return sandbox


def target_rows(sandbox: Sandbox) -> list[tuple]:
    result = sandbox.execute("SELECT id, val FROM target ORDER BY id")
    assert isinstance(result, ResultSet)
    return result.tuples()


@pytest.mark.unit
class TestMerge:
    """Tests for MERGE clause selection."""

    def test_all_three_clauses(self, tables: Sandbox) -> None:
        result = tables.execute(FULL_MERGE)

        assert result == RowsAffected(3, "MERGE 3")
        assert target_rows(tables) == [(2, "B"), (3, "C")]

    def test_first_matching_clause_wins(self, tables: Sandbox) -> None:
        tables.execute("INSERT INTO source VALUES (1, 'drop')")

        tables.execute(
            "MERGE INTO target t USING source s ON t.id = s.id "
            "WHEN MATCHED AND s.val = 'drop' THEN DELETE "
            "WHEN MATCHED THEN UPDATE SET val = s.val"
        )

        assert target_rows(tables) == [(2, "B")]

    def test_clause_condition_on_unmatched_source(self, tables: Sandbox) -> None:
        result = tables.execute(
            "MERGE INTO target t USING source s ON t.id = s.id "
            "WHEN NOT MATCHED BY SOURCE AND t.val = 'zzz' THEN DELETE"
        )

        assert isinstance(result, RowsAffected) and result.count == 0
        assert target_rows(tables) == [(1, "a"), (2, "b")]

    def test_without_clauses_for_a_case_rows_are_left_alone(self, tables: Sandbox) -> None:
        tables.execute("MERGE INTO target t USING source s ON t.id = s.id WHEN MATCHED THEN UPDATE SET val = 'x'")

        assert target_rows(tables) == [(1, "a"), (2, "x")]

    def test_subquery_source(self, tables: Sandbox) -> None:
        tables.execute(
            "MERGE INTO target t USING (SELECT id, val FROM source WHERE id > 2) AS s ON t.id = s.id "
            "WHEN NOT MATCHED THEN INSERT (id, val) VALUES (s.id, s.val)"
        )

        assert target_rows(tables) == [(1, "a"), (2, "b"), (3, "C")]

    def test_target_row_matched_twice_is_rejected(self, sandbox: Sandbox) -> None:
        sandbox.execute_script(
            """
            CREATE TABLE target (id INTEGER PRIMARY KEY, val TEXT);
            CREATE TABLE changes (id INTEGER, val TEXT);
            INSERT INTO target VALUES (1, 'a');
            INSERT INTO changes VALUES (1, 'x'), (1, 'y')
            """
        )

        with pytest.raises(ConstraintViolationError) as exc_info:
            sandbox.execute(
                "MERGE INTO target t USING changes c ON t.id = c.id WHEN MATCHED THEN UPDATE SET val = c.val"
            )

        assert exc_info.value.constraint == "merge_cardinality"
        assert target_rows(sandbox) == [(1, "a")]

    def test_merge_into_view_is_rejected(self, tables: Sandbox) -> None:
        tables.execute("CREATE VIEW tv AS SELECT id, val FROM target")

        with pytest.raises(ConflictError):
            tables.execute("MERGE INTO tv t USING source s ON t.id = s.id WHEN MATCHED THEN DELETE")

    def test_merge_fires_row_triggers(self, tables: Sandbox) -> None:
        events: list[tuple[str, object]] = []

        def record(ctx: TriggerContext) -> None:
            row = ctx.new if ctx.new is not None else ctx.old
            assert row is not None
            events.append((ctx.event.value, row["id"]))

        tables.create_trigger("merge_log", "target", "AFTER", ["INSERT", "UPDATE", "DELETE"], record)

        tables.execute(FULL_MERGE)

        assert sorted(events) == [("delete", 1), ("insert", 3), ("update", 2)]
