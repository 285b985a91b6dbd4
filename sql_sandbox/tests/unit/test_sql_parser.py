"""Unit tests for SQL Parser."""

from __future__ import annotations

import pytest

from sql_sandbox.adapters.inbound import ParseError, SQLParser
from sql_sandbox.domain.entities import (
    AggregateExpr,
    AggregateFunc,
    ArithmeticExpr,
    ArithmeticOp,
    BetweenExpr,
    CaseExpr,
    ColumnExpr,
    ComparisonExpr,
    ComparisonOp,
    CreateIndex,
    CreateTable,
    CreateView,
    Delete,
    DropIndex,
    DropTable,
    DropTrigger,
    DropView,
    FunctionExpr,
    InListExpr,
    Insert,
    InSubqueryExpr,
    JoinKind,
    LiteralExpr,
    LogicalExpr,
    LogicalOp,
    Merge,
    MergeAction,
    MergeMatch,
    Select,
    SetOperation,
    SetOperator,
    StarExpr,
    SubqueryExpr,
    SubqueryKind,
    SubqueryRef,
    TableRef,
    TransactionControl,
    Update,
    ValuesRef,
    WindowExpr,
)
from sql_sandbox.domain.entities.commands import StatementType
from sql_sandbox.domain.value_objects import DataType


@pytest.fixture
def parser() -> SQLParser:
    """Create a SQL parser for testing."""
    return SQLParser()


class TestSQLParserSelect:
    """Tests for SELECT statement parsing."""

    def test_simple_select(self, parser: SQLParser) -> None:
        """Parse simple SELECT."""
        command = parser.parse("SELECT id, name FROM students")

        assert isinstance(command, Select)
        assert [i.expr for i in command.items] == [ColumnExpr("id"), ColumnExpr("name")]
        assert command.source == TableRef("students")

    def test_select_star_and_qualified_star(self, parser: SQLParser) -> None:
        command = parser.parse("SELECT *, s.* FROM students AS s")

        assert isinstance(command, Select)
        assert command.items[0].expr == StarExpr()
        assert command.items[1].expr == StarExpr(table="s")
        assert command.source == TableRef("students", alias="s")

    def test_where_with_and(self, parser: SQLParser) -> None:
        """Parse SELECT with multiple WHERE conditions."""
        command = parser.parse("SELECT id FROM students WHERE age > 18 AND name = 'John'")

        assert isinstance(command, Select)
        assert isinstance(command.where, LogicalExpr)
        assert command.where.op == LogicalOp.AND
        left, right = command.where.operands
        assert left == ComparisonExpr(ColumnExpr("age"), ComparisonOp.GT, LiteralExpr(18))
        assert right == ComparisonExpr(ColumnExpr("name"), ComparisonOp.EQ, LiteralExpr("John"))

    def test_computed_items_named_after_sql(self, parser: SQLParser) -> None:
        command = parser.parse("SELECT age + 1, age * 2 AS doubled FROM students")

        assert isinstance(command, Select)
        assert command.items[0].alias == "age + 1"
        assert command.items[0].expr == ArithmeticExpr(ArithmeticOp.ADD, ColumnExpr("age"), LiteralExpr(1))
        assert command.items[1].alias == "doubled"

    def test_literals(self, parser: SQLParser) -> None:
        command = parser.parse("SELECT 1, 2.5, 'x', NULL, TRUE, -3")

        assert isinstance(command, Select)
        values = [i.expr.value for i in command.items]  # type: ignore[attr-defined]
        assert values == [1, 2.5, "x", None, True, -3]
        assert command.source is None

    def test_negated_predicates(self, parser: SQLParser) -> None:
        command = parser.parse(
            "SELECT id FROM t WHERE a IS NOT NULL AND b NOT LIKE 'x%' "
            "AND c NOT IN (1, 2) AND d NOT BETWEEN 1 AND 5"
        )

        assert isinstance(command, Select)
        predicates = []
        node = command.where
        # AND is left-nested
        while isinstance(node, LogicalExpr) and node.op == LogicalOp.AND:
            predicates.insert(0, node.operands[1])
            node = node.operands[0]
        predicates.insert(0, node)

        assert predicates[0] == ComparisonExpr(ColumnExpr("a"), ComparisonOp.IS_NOT_NULL)
        assert isinstance(predicates[1], ComparisonExpr) and predicates[1].op == ComparisonOp.NOT_LIKE
        assert isinstance(predicates[2], InListExpr) and predicates[2].negated
        assert isinstance(predicates[3], BetweenExpr) and predicates[3].negated

    @pytest.mark.parametrize(
        "predicate,op",
        [
            ("name NOT LIKE 'A%'", ComparisonOp.NOT_LIKE),
            ("NOT name LIKE 'A%'", ComparisonOp.NOT_LIKE),
            ("NOT (name NOT LIKE 'A%')", ComparisonOp.LIKE),
            ("name IS NOT NULL", ComparisonOp.IS_NOT_NULL),
        ],
    )
    def test_single_negated_predicate(self, parser: SQLParser, predicate: str, op: ComparisonOp) -> None:
        command = parser.parse(f"SELECT id FROM students WHERE {predicate}")

        assert isinstance(command, Select)
        assert isinstance(command.where, ComparisonExpr)
        assert command.where.op == op
        assert command.where.left == ColumnExpr("name")

    def test_negated_in_and_between_alone(self, parser: SQLParser) -> None:
        in_list = parser.parse("SELECT id FROM t WHERE c NOT IN (1, 2)")
        between = parser.parse("SELECT id FROM t WHERE d NOT BETWEEN 1 AND 5")

        assert isinstance(in_list, Select) and isinstance(in_list.where, InListExpr)
        assert in_list.where.negated
        assert isinstance(between, Select) and isinstance(between.where, BetweenExpr)
        assert between.where.negated

    def test_order_by_limit_offset(self, parser: SQLParser) -> None:
        command = parser.parse("SELECT name FROM students ORDER BY name DESC, id LIMIT 10 OFFSET 5")

        assert isinstance(command, Select)
        assert [o.ascending for o in command.order_by] == [False, True]
        assert command.limit == 10
        assert command.offset == 5

    def test_group_by_having(self, parser: SQLParser) -> None:
        command = parser.parse(
            "SELECT dept, COUNT(*), COUNT(DISTINCT name) FROM staff GROUP BY dept HAVING COUNT(*) > 1"
        )

        assert isinstance(command, Select)
        assert command.group_by == (ColumnExpr("dept"),)
        assert command.items[1].expr == AggregateExpr(AggregateFunc.COUNT)
        assert command.items[2].expr == AggregateExpr(AggregateFunc.COUNT, ColumnExpr("name"), distinct=True)
        assert isinstance(command.having, ComparisonExpr)

    def test_joins(self, parser: SQLParser) -> None:
        command = parser.parse(
            "SELECT * FROM students s "
            "JOIN enrollments e ON s.id = e.student_id "
            "LEFT JOIN courses c ON c.id = e.course_id "
            "CROSS JOIN terms"
        )

        assert isinstance(command, Select)
        assert [j.kind for j in command.joins] == [JoinKind.INNER, JoinKind.LEFT, JoinKind.CROSS]
        assert command.joins[0].condition == ComparisonExpr(
            ColumnExpr("id", "s"), ComparisonOp.EQ, ColumnExpr("student_id", "e")
        )

    def test_join_using(self, parser: SQLParser) -> None:
        command = parser.parse("SELECT * FROM a JOIN b USING (id)")

        assert isinstance(command, Select)
        assert command.joins[0].condition == ComparisonExpr(
            ColumnExpr("id", "a"), ComparisonOp.EQ, ColumnExpr("id", "b")
        )

    def test_derived_table_and_values(self, parser: SQLParser) -> None:
        command = parser.parse(
            "SELECT * FROM (SELECT id FROM students) AS sub JOIN (VALUES (1, 'a'), (2, 'b')) AS v(n, l) ON sub.id = v.n"
        )

        assert isinstance(command, Select)
        assert isinstance(command.source, SubqueryRef)
        assert command.source.alias == "sub"
        values = command.joins[0].source
        assert isinstance(values, ValuesRef)
        assert values.columns == ("n", "l")
        assert len(values.rows) == 2

    def test_subqueries(self, parser: SQLParser) -> None:
        command = parser.parse(
            "SELECT (SELECT MAX(id) FROM t) AS m FROM s "
            "WHERE EXISTS (SELECT 1 FROM t WHERE t.id = s.id) AND s.id IN (SELECT id FROM t)"
        )

        assert isinstance(command, Select)
        assert isinstance(command.items[0].expr, SubqueryExpr)
        assert isinstance(command.where, LogicalExpr)
        exists, in_query = command.where.operands
        assert isinstance(exists, SubqueryExpr) and exists.kind == SubqueryKind.EXISTS
        assert isinstance(in_query, InSubqueryExpr)

    def test_case_and_functions(self, parser: SQLParser) -> None:
        command = parser.parse(
            "SELECT CASE WHEN age >= 18 THEN 'adult' ELSE 'minor' END AS grp, UPPER(name) AS u, "
            "COALESCE(email, 'none') AS e FROM students"
        )

        assert isinstance(command, Select)
        assert isinstance(command.items[0].expr, CaseExpr)
        assert command.items[1].expr == FunctionExpr("UPPER", (ColumnExpr("name"),))
        assert isinstance(command.items[2].expr, FunctionExpr)
        assert command.items[2].expr.name == "COALESCE"

    def test_window_function(self, parser: SQLParser) -> None:
        command = parser.parse(
            "SELECT ROW_NUMBER() OVER (PARTITION BY dept ORDER BY salary DESC) AS rn, "
            "SUM(salary) OVER (PARTITION BY dept) AS total FROM staff"
        )

        assert isinstance(command, Select)
        rn = command.items[0].expr
        assert isinstance(rn, WindowExpr)
        assert rn.func == "ROW_NUMBER"
        assert rn.partition_by == (ColumnExpr("dept"),)
        assert rn.order_by[0].ascending is False
        total = command.items[1].expr
        assert isinstance(total, WindowExpr)
        assert total.func == "SUM" and total.args == (ColumnExpr("salary"),)

    def test_set_operations(self, parser: SQLParser) -> None:
        union = parser.parse("SELECT id FROM a UNION ALL SELECT id FROM b")
        intersect = parser.parse("SELECT id FROM a INTERSECT SELECT id FROM b")

        assert isinstance(union, SetOperation)
        assert union.op == SetOperator.UNION and union.all
        assert isinstance(intersect, SetOperation)
        assert intersect.op == SetOperator.INTERSECT and not intersect.all

    def test_recursive_cte(self, parser: SQLParser) -> None:
        command = parser.parse(
            "WITH RECURSIVE n(x) AS (SELECT 1 UNION ALL SELECT x + 1 FROM n WHERE x < 5) SELECT x FROM n"
        )

        assert isinstance(command, Select)
        [cte] = command.ctes
        assert cte.name == "n"
        assert cte.columns == ("x",)
        assert cte.recursive
        assert isinstance(cte.query, SetOperation)

    def test_unknown_function_rejected(self, parser: SQLParser) -> None:
        with pytest.raises(ParseError):
            parser.parse("SELECT frobnicate(id) FROM t")


class TestSQLParserDML:
    """Tests for INSERT/UPDATE/DELETE/MERGE parsing."""

    def test_insert_values(self, parser: SQLParser) -> None:
        command = parser.parse("INSERT INTO students (id, name) VALUES (1, 'Alice'), (2, 'Bob')")

        assert isinstance(command, Insert)
        assert command.table == "students"
        assert command.columns == ("id", "name")
        assert command.rows[1] == (LiteralExpr(2), LiteralExpr("Bob"))

    def test_insert_select(self, parser: SQLParser) -> None:
        command = parser.parse("INSERT INTO archive SELECT * FROM students")

        assert isinstance(command, Insert)
        assert isinstance(command.query, Select)
        assert command.rows == ()

    def test_insert_width_mismatch(self, parser: SQLParser) -> None:
        with pytest.raises(ParseError):
            parser.parse("INSERT INTO students (id, name) VALUES (1)")

    def test_update(self, parser: SQLParser) -> None:
        command = parser.parse("UPDATE students SET name = 'Alicia', age = age + 1 WHERE id = 1")

        assert isinstance(command, Update)
        assert [a.column for a in command.assignments] == ["name", "age"]
        assert command.where == ComparisonExpr(ColumnExpr("id"), ComparisonOp.EQ, LiteralExpr(1))

    def test_delete(self, parser: SQLParser) -> None:
        command = parser.parse("DELETE FROM students WHERE id = 1")

        assert isinstance(command, Delete)
        assert command.table == "students"

    def test_merge(self, parser: SQLParser) -> None:
        command = parser.parse(
            "MERGE INTO target t USING source s ON t.id = s.id "
            "WHEN MATCHED THEN UPDATE SET val = s.val "
            "WHEN NOT MATCHED THEN INSERT (id, val) VALUES (s.id, s.val) "
            "WHEN NOT MATCHED BY SOURCE THEN DELETE"
        )

        assert isinstance(command, Merge)
        assert command.target == TableRef("target", alias="t")
        assert command.source == TableRef("source", alias="s")
        assert [(c.match, c.action) for c in command.clauses] == [
            (MergeMatch.MATCHED, MergeAction.UPDATE),
            (MergeMatch.NOT_MATCHED_BY_TARGET, MergeAction.INSERT),
            (MergeMatch.NOT_MATCHED_BY_SOURCE, MergeAction.DELETE),
        ]
        assert command.clauses[1].columns == ("id", "val")


class TestSQLParserDDL:
    """Tests for CREATE/DROP parsing."""

    def test_create_table(self, parser: SQLParser) -> None:
        command = parser.parse(
            "CREATE TABLE students ("
            "id INTEGER PRIMARY KEY, "
            "name VARCHAR(50) NOT NULL, "
            "email TEXT UNIQUE, "
            "age INTEGER DEFAULT 18 CHECK (age >= 0))"
        )

        assert isinstance(command, CreateTable)
        assert command.primary_key == ("id",)
        name = command.columns[1]
        assert name.data_type == DataType.VARCHAR
        assert name.max_length == 50
        assert name.nullable is False
        assert command.columns[2].unique
        assert command.columns[3].default == LiteralExpr(18)
        assert command.columns[3].check is not None

    def test_create_table_constraints(self, parser: SQLParser) -> None:
        command = parser.parse(
            "CREATE TABLE IF NOT EXISTS enrollments ("
            "student_id INTEGER, course_id INTEGER, "
            "PRIMARY KEY (student_id, course_id), "
            "FOREIGN KEY (student_id) REFERENCES students(id))"
        )

        assert isinstance(command, CreateTable)
        assert command.if_not_exists
        assert command.primary_key == ("student_id", "course_id")
        [fk] = command.foreign_keys
        assert fk.columns == ("student_id",)
        assert fk.ref_table == "students"
        assert fk.ref_columns == ("id",)

    def test_create_view(self, parser: SQLParser) -> None:
        command = parser.parse("CREATE VIEW adults AS SELECT * FROM students WHERE age >= 18")

        assert isinstance(command, CreateView)
        assert command.name == "adults"
        assert not command.materialized

    def test_create_index(self, parser: SQLParser) -> None:
        command = parser.parse("CREATE UNIQUE INDEX ix_email ON students (email)")

        assert isinstance(command, CreateIndex)
        assert command.table == "students"
        assert command.columns == ("email",)
        assert command.unique

    def test_drops(self, parser: SQLParser) -> None:
        assert parser.parse("DROP TABLE IF EXISTS students") == DropTable("students", if_exists=True)
        assert parser.parse("DROP TABLE students") == DropTable("students")
        assert parser.parse("DROP VIEW adults") == DropView("adults")
        assert parser.parse("DROP INDEX ix_email") == DropIndex("ix_email")

    @pytest.mark.parametrize(
        "sql,expected",
        [
            ("DROP TRIGGER students_audit", DropTrigger("students_audit")),
            ("DROP TRIGGER IF EXISTS students_audit", DropTrigger("students_audit", if_exists=True)),
        ],
    )
    def test_drop_trigger(self, parser: SQLParser, sql: str, expected: DropTrigger) -> None:
        assert parser.parse(sql) == expected


class TestSQLParserMisc:
    """Tests for transactions, scripts and errors."""

    @pytest.mark.parametrize(
        "sql,statement_type",
        [
            ("BEGIN", StatementType.BEGIN),
            ("COMMIT", StatementType.COMMIT),
            ("ROLLBACK", StatementType.ROLLBACK),
        ],
    )
    def test_transaction_control(self, parser: SQLParser, sql: str, statement_type: StatementType) -> None:
        assert parser.parse(sql) == TransactionControl(statement_type)

    def test_parse_script(self, parser: SQLParser) -> None:
        commands = parser.parse_script("CREATE TABLE t (a INT); INSERT INTO t VALUES (1); SELECT a FROM t;")

        assert [type(c).__name__ for c in commands] == ["CreateTable", "Insert", "Select"]

    def test_multiple_statements_rejected_by_parse(self, parser: SQLParser) -> None:
        with pytest.raises(ParseError):
            parser.parse("SELECT 1; SELECT 2")

    def test_empty_statement(self, parser: SQLParser) -> None:
        with pytest.raises(ParseError):
            parser.parse("   ")

    def test_syntax_error(self, parser: SQLParser) -> None:
        with pytest.raises(ParseError):
            parser.parse("SELECT * FROM students WHERE (")

    def test_create_trigger_points_to_api(self, parser: SQLParser) -> None:
        with pytest.raises(ParseError, match="create_trigger"):
            parser.parse("CREATE TRIGGER t AFTER UPDATE ON students")
