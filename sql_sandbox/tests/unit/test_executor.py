"""Unit tests for QueryExecutor, driven through SQL text."""

from __future__ import annotations

import pytest

from sql_sandbox.application import Sandbox
from sql_sandbox.application.executor import ResultSet, RowsAffected
from sql_sandbox.domain.entities import CreateView
from sql_sandbox.domain.services import sql_trigger
from sql_sandbox.domain.errors import (
    ConflictError,
    DuplicateKeyError,
    EvaluationError,
    NotFoundError,
    SchemaError,
    TransactionStateError,
)

SCHOOL = """
CREATE TABLE students (id INTEGER PRIMARY KEY, name VARCHAR(50), age INTEGER);
CREATE TABLE courses (id INTEGER PRIMARY KEY, title TEXT);
CREATE TABLE enrollments (student_id INTEGER, course_id INTEGER, grade INTEGER);
INSERT INTO students VALUES (1, 'Alice', 20), (2, 'Bob', 22), (3, 'Carol', 20);
INSERT INTO courses VALUES (10, 'Math'), (20, 'Art');
INSERT INTO enrollments VALUES (1, 10, 90), (1, 20, 80), (2, 10, 70)
"""


@pytest.fixture
def school(sandbox: Sandbox) -> Sandbox:
    sandbox.execute_script(SCHOOL)
    return sandbox


def query(sandbox: Sandbox, sql: str) -> ResultSet:
    result = sandbox.execute(sql)
    assert isinstance(result, ResultSet)
    return result


@pytest.mark.unit
class TestSelect:
    """Tests for projection, filtering and ordering."""

    def test_select_star_by_primary_key(self, school: Sandbox) -> None:
        result = query(school, "SELECT * FROM students WHERE id = 2")

        assert result.columns == ["id", "name", "age"]
        assert result.tuples() == [(2, "Bob", 22)]
        assert result[0]["NAME"] == "Bob"

    def test_computed_column_named_after_expression(self, school: Sandbox) -> None:
        result = query(school, "SELECT UPPER(name) FROM students WHERE id = 1")

        assert result.columns == ["UPPER(name)"]
        assert result.scalar() == "ALICE"

    def test_select_without_from(self, sandbox: Sandbox) -> None:
        assert query(sandbox, "SELECT 7 / 2 AS q").scalar() == 3

    def test_order_limit_offset(self, school: Sandbox) -> None:
        assert query(school, "SELECT name FROM students ORDER BY age DESC, name LIMIT 2").column("name") == [
            "Bob",
            "Alice",
        ]
        assert query(school, "SELECT name FROM students ORDER BY id LIMIT 1 OFFSET 1").column("name") == ["Bob"]

    def test_order_by_position_and_alias(self, school: Sandbox) -> None:
        by_position = query(school, "SELECT name, age FROM students ORDER BY 2 DESC, 1")
        by_alias = query(school, "SELECT name AS who FROM students ORDER BY who DESC")

        assert by_position.column("name") == ["Bob", "Alice", "Carol"]
        assert by_alias.column("who") == ["Carol", "Bob", "Alice"]

    def test_order_by_position_out_of_range(self, school: Sandbox) -> None:
        with pytest.raises(SchemaError):
            school.execute("SELECT name FROM students ORDER BY 5")

    def test_order_by_column_not_selected(self, school: Sandbox) -> None:
        assert query(school, "SELECT name FROM students ORDER BY age DESC, id").column("name") == [
            "Bob",
            "Alice",
            "Carol",
        ]

    def test_distinct(self, school: Sandbox) -> None:
        assert query(school, "SELECT DISTINCT age FROM students ORDER BY age").column("age") == [20, 22]

    def test_not_like_keeps_only_non_matching_rows(self, school: Sandbox) -> None:
        assert query(school, "SELECT name FROM students WHERE name NOT LIKE 'A%' ORDER BY name").column("name") == [
            "Bob",
            "Carol",
        ]
        assert query(school, "SELECT name FROM students WHERE name LIKE 'A%'").column("name") == ["Alice"]

    def test_not_in_and_not_between(self, school: Sandbox) -> None:
        assert query(school, "SELECT id FROM students WHERE id NOT IN (1, 3)").column("id") == [2]
        assert query(school, "SELECT id FROM students WHERE age NOT BETWEEN 19 AND 21").column("id") == [2]

    def test_unknown_table(self, school: Sandbox) -> None:
        with pytest.raises(NotFoundError):
            school.execute("SELECT * FROM professors")

    def test_transaction_control_needs_session(self, sandbox: Sandbox) -> None:
        with pytest.raises(TransactionStateError):
            sandbox.execute("BEGIN")


@pytest.mark.unit
class TestJoins:
    """Tests for nested loop joins."""

    def test_inner_join_chain(self, school: Sandbox) -> None:
        result = query(
            school,
            "SELECT s.name, c.title FROM students s "
            "JOIN enrollments e ON s.id = e.student_id "
            "JOIN courses c ON c.id = e.course_id "
            "ORDER BY s.name, c.title",
        )

        assert result.tuples() == [("Alice", "Art"), ("Alice", "Math"), ("Bob", "Math")]

    def test_left_join_pads_with_nulls(self, school: Sandbox) -> None:
        result = query(
            school,
            "SELECT s.name, e.grade FROM students s LEFT JOIN enrollments e ON s.id = e.student_id "
            "WHERE e.grade IS NULL",
        )

        assert result.tuples() == [("Carol", None)]

    def test_cross_join(self, school: Sandbox) -> None:
        assert query(school, "SELECT COUNT(*) AS n FROM students CROSS JOIN courses").scalar() == 6


@pytest.mark.unit
class TestGrouping:
    """Tests for GROUP BY, HAVING and aggregates."""

    def test_group_by_with_having(self, school: Sandbox) -> None:
        result = query(school, "SELECT age, COUNT(*) AS n FROM students GROUP BY age HAVING COUNT(*) > 1")

        assert result.tuples() == [(20, 2)]

    def test_group_by_average(self, school: Sandbox) -> None:
        result = query(
            school,
            "SELECT course_id, AVG(grade) AS avg_grade FROM enrollments GROUP BY course_id ORDER BY course_id",
        )

        assert result.tuples() == [(10, 80), (20, 80)]

    def test_aggregate_over_empty_input_yields_one_row(self, school: Sandbox) -> None:
        result = query(school, "SELECT COUNT(*) AS n, MAX(age) AS oldest FROM students WHERE age > 100")

        assert result.tuples() == [(0, None)]

    def test_group_by_position(self, school: Sandbox) -> None:
        result = query(school, "SELECT age, COUNT(*) AS n FROM students GROUP BY 1 ORDER BY age")

        assert result.tuples() == [(20, 2), (22, 1)]


@pytest.mark.unit
class TestWindows:
    """Tests for window functions in SELECT."""

    def test_rank_over_whole_result(self, school: Sandbox) -> None:
        result = query(school, "SELECT name, RANK() OVER (ORDER BY age) AS r FROM students ORDER BY name")

        assert result.tuples() == [("Alice", 1), ("Bob", 3), ("Carol", 1)]

    def test_row_number_per_partition(self, school: Sandbox) -> None:
        result = query(
            school,
            "SELECT student_id, grade, "
            "ROW_NUMBER() OVER (PARTITION BY student_id ORDER BY grade DESC) AS rn "
            "FROM enrollments ORDER BY student_id, rn",
        )

        assert result.tuples() == [(1, 90, 1), (1, 80, 2), (2, 70, 1)]

    def test_partition_total(self, school: Sandbox) -> None:
        result = query(
            school,
            "SELECT grade, SUM(grade) OVER (PARTITION BY student_id) AS total "
            "FROM enrollments WHERE student_id = 1 ORDER BY grade",
        )

        assert result.tuples() == [(80, 170), (90, 170)]


@pytest.mark.unit
class TestCommonTableExpressions:
    """Tests for WITH and WITH RECURSIVE."""

    def test_simple_cte(self, school: Sandbox) -> None:
        result = query(school, "WITH older AS (SELECT name FROM students WHERE age > 20) SELECT name FROM older")

        assert result.column("name") == ["Bob"]

    def test_recursive_cte(self, sandbox: Sandbox) -> None:
        result = query(
            sandbox,
            "WITH RECURSIVE n(x) AS (SELECT 1 UNION ALL SELECT x + 1 FROM n WHERE x < 5) "
            "SELECT SUM(x) AS total FROM n",
        )

        assert result.scalar() == 15

    def test_runaway_recursion_is_stopped(self, sandbox: Sandbox) -> None:
        with pytest.raises(EvaluationError):
            sandbox.execute("WITH RECURSIVE n(x) AS (SELECT 1 UNION ALL SELECT x + 1 FROM n) SELECT x FROM n")

    def test_cte_column_list_mismatch(self, school: Sandbox) -> None:
        with pytest.raises(SchemaError):
            school.execute("WITH c(a, b) AS (SELECT id FROM students) SELECT a FROM c")


@pytest.mark.unit
class TestSetOperationsAndSubqueries:
    """Tests for UNION/INTERSECT/EXCEPT and nested queries."""

    def test_union_removes_duplicates(self, school: Sandbox) -> None:
        result = query(school, "SELECT age FROM students UNION SELECT 22")

        assert sorted(result.column("age")) == [20, 22]

    def test_duplicates_follow_sql_equality(self, sandbox: Sandbox) -> None:
        union = query(sandbox, "SELECT 1 AS v UNION SELECT 1.0 UNION SELECT TRUE")
        grouped = query(sandbox, "SELECT COUNT(*) AS n FROM (SELECT 2 AS v UNION ALL SELECT 2.0) AS t GROUP BY v")

        assert len(union) == 2
        assert grouped.tuples() == [(2,)]

    def test_intersect_and_except(self, school: Sandbox) -> None:
        both = query(school, "SELECT id FROM students INTERSECT SELECT student_id FROM enrollments")
        only = query(school, "SELECT id FROM students EXCEPT SELECT student_id FROM enrollments")

        assert sorted(both.column("id")) == [1, 2]
        assert only.column("id") == [3]

    def test_column_count_mismatch(self, school: Sandbox) -> None:
        with pytest.raises(SchemaError):
            school.execute("SELECT id, name FROM students UNION SELECT id FROM courses")

    def test_in_subquery(self, school: Sandbox) -> None:
        result = query(
            school, "SELECT name FROM students WHERE id IN (SELECT student_id FROM enrollments WHERE grade >= 80)"
        )

        assert result.column("name") == ["Alice"]

    def test_correlated_not_exists(self, school: Sandbox) -> None:
        result = query(
            school,
            "SELECT name FROM students s WHERE NOT EXISTS "
            "(SELECT 1 FROM enrollments e WHERE e.student_id = s.id)",
        )

        assert result.column("name") == ["Carol"]

    def test_scalar_subquery(self, school: Sandbox) -> None:
        result = query(school, "SELECT name FROM students WHERE age = (SELECT MAX(age) FROM students)")

        assert result.column("name") == ["Bob"]


@pytest.mark.unit
class TestModifications:
    """Tests for INSERT, UPDATE and DELETE."""

    def test_row_counts_and_messages(self, school: Sandbox) -> None:
        inserted = school.execute("INSERT INTO courses VALUES (30, 'Music'), (40, 'Latin')")
        updated = school.execute("UPDATE students SET age = age + 1 WHERE age = 20")
        deleted = school.execute("DELETE FROM enrollments WHERE grade < 75")

        assert inserted == RowsAffected(2, "INSERT 2")
        assert updated == RowsAffected(2, "UPDATE 2")
        assert deleted == RowsAffected(1, "DELETE 1")
        assert query(school, "SELECT age FROM students WHERE id = 1").scalar() == 21

    def test_insert_with_column_list_leaves_rest_null(self, school: Sandbox) -> None:
        school.execute("INSERT INTO courses (id) VALUES (30)")

        assert query(school, "SELECT title FROM courses WHERE id = 30").tuples() == [(None,)]

    def test_insert_select(self, school: Sandbox) -> None:
        school.execute("CREATE TABLE alumni (id INTEGER PRIMARY KEY, name TEXT)")

        result = school.execute("INSERT INTO alumni SELECT id, name FROM students WHERE age = 20")

        assert isinstance(result, RowsAffected) and result.count == 2
        assert query(school, "SELECT name FROM alumni ORDER BY id").column("name") == ["Alice", "Carol"]

    def test_insert_select_width_mismatch(self, school: Sandbox) -> None:
        with pytest.raises(SchemaError):
            school.execute("INSERT INTO courses (id) SELECT id, name FROM students")

    def test_duplicate_key_rolls_back_whole_statement(self, school: Sandbox) -> None:
        with pytest.raises(DuplicateKeyError):
            school.execute("INSERT INTO courses VALUES (30, 'Music'), (10, 'Again')")

        assert query(school, "SELECT COUNT(*) AS n FROM courses").scalar() == 2

    def test_update_primary_key(self, school: Sandbox) -> None:
        school.execute("UPDATE courses SET id = 11 WHERE id = 10")

        assert query(school, "SELECT id FROM courses ORDER BY id").column("id") == [11, 20]


@pytest.mark.unit
class TestViewsAndDDL:
    """Tests for views, the materialized view cache and DDL."""

    def test_ddl_messages(self, sandbox: Sandbox) -> None:
        assert sandbox.execute("CREATE TABLE t (id INTEGER PRIMARY KEY, v INTEGER)").message == "CREATE TABLE"
        assert sandbox.execute("CREATE INDEX t_v ON t (v)").message == "CREATE INDEX"
        assert sandbox.execute("DROP INDEX t_v").message == "DROP INDEX"
        assert sandbox.execute("DROP TABLE t").message == "DROP TABLE"
        assert sandbox.execute("DROP TABLE IF EXISTS t").message == "DROP TABLE"

    def test_create_duplicate_table(self, school: Sandbox) -> None:
        with pytest.raises(ConflictError):
            school.execute("CREATE TABLE students (id INTEGER)")

    def test_view_reflects_base_table(self, school: Sandbox) -> None:
        school.execute("CREATE VIEW older AS SELECT name FROM students WHERE age > 20")
        assert query(school, "SELECT name FROM older").column("name") == ["Bob"]

        school.execute("INSERT INTO students VALUES (4, 'Dan', 30)")

        assert query(school, "SELECT name FROM older ORDER BY name").column("name") == ["Bob", "Dan"]

    def test_views_are_read_only(self, school: Sandbox) -> None:
        school.execute("CREATE VIEW older AS SELECT name FROM students WHERE age > 20")

        with pytest.raises(ConflictError):
            school.execute("DELETE FROM older")

    def test_drop_table_with_dependent_view(self, school: Sandbox) -> None:
        school.execute("CREATE VIEW older AS SELECT name FROM students WHERE age > 20")

        with pytest.raises(ConflictError):
            school.execute("DROP TABLE students")

    def test_drop_table_removes_it(self, school: Sandbox) -> None:
        assert school.execute("DROP TABLE enrollments") == RowsAffected(0, "DROP TABLE")

        with pytest.raises(NotFoundError):
            school.execute("SELECT * FROM enrollments")

    def test_drop_trigger_through_sql(self, school: Sandbox) -> None:
        school.execute("CREATE TABLE audit (student_id INTEGER)")
        school.create_trigger(
            "students_audit", "students", "AFTER", "UPDATE", sql_trigger("INSERT INTO audit VALUES (NEW.id)")
        )
        school.execute("UPDATE students SET age = 21 WHERE id = 1")

        assert school.execute("DROP TRIGGER students_audit") == RowsAffected(0, "DROP TRIGGER")
        school.execute("UPDATE students SET age = 22 WHERE id = 1")

        assert query(school, "SELECT student_id FROM audit").column("student_id") == [1]
        assert school.execute("DROP TRIGGER IF EXISTS students_audit").message == "DROP TRIGGER"
        with pytest.raises(NotFoundError):
            school.execute("DROP TRIGGER students_audit")

    def test_materialized_view_uses_cache_until_base_changes(self, school: Sandbox) -> None:
        school.execute(
            CreateView(
                name="by_age",
                query=school.parser.parse("SELECT age, COUNT(*) AS n FROM students GROUP BY age"),
                materialized=True,
            )
        )
        sql = "SELECT age, n FROM by_age ORDER BY age"

        assert query(school, sql).tuples() == [(20, 2), (22, 1)]
        assert query(school, sql).tuples() == [(20, 2), (22, 1)]
        stats = school.get_stats()
        assert (stats.view_cache_hits, stats.view_cache_misses) == (1, 1)

        school.execute("INSERT INTO students VALUES (4, 'Dan', 22)")

        assert query(school, sql).tuples() == [(20, 2), (22, 2)]
        assert school.get_stats().view_cache_misses == 2

    def test_replacing_inner_view_refreshes_materialized_view(self, school: Sandbox) -> None:
        school.execute("CREATE TABLE alumni (id INTEGER PRIMARY KEY, name VARCHAR(50))")
        school.execute("CREATE VIEW names AS SELECT name FROM students")
        school.execute(
            CreateView(name="cached_names", query=school.parser.parse("SELECT name FROM names"), materialized=True)
        )
        assert len(query(school, "SELECT name FROM cached_names").rows) == 3

        school.execute(CreateView(name="names", query=school.parser.parse("SELECT name FROM alumni"), or_replace=True))
        assert query(school, "SELECT name FROM cached_names").rows == []
        school.execute("INSERT INTO alumni VALUES (1, 'Zed')")

        assert query(school, "SELECT name FROM cached_names").column("name") == ["Zed"]

    def test_drop_view_with_dependent_view(self, school: Sandbox) -> None:
        school.execute("CREATE VIEW names AS SELECT name FROM students")
        school.execute("CREATE VIEW short_names AS SELECT name FROM names WHERE LENGTH(name) < 5")

        with pytest.raises(ConflictError):
            school.execute("DROP VIEW names")

        assert query(school, "SELECT name FROM short_names").column("name") == ["Bob"]
        school.execute("DROP VIEW short_names")
        assert school.execute("DROP VIEW names").message == "DROP VIEW"
