"""Unit tests for scalar expression evaluation."""

from __future__ import annotations

from decimal import Decimal
from typing import Any

import pytest

from sql_sandbox.domain.entities import (
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
    LiteralExpr,
    LogicalExpr,
    LogicalOp,
    NegateExpr,
    SubqueryExpr,
)
from sql_sandbox.domain.errors import AmbiguousColumnError, EvaluationError, NotFoundError
from sql_sandbox.domain.services import Layout, evaluate, is_true
from sql_sandbox.domain.services.expression_evaluator import (
    arithmetic,
    call_function,
    group_key,
    is_known_function,
    like,
    row_context,
    sort_key,
)
from sql_sandbox.domain.value_objects import DataType


def lit(value: Any) -> LiteralExpr:
    return LiteralExpr(value)


NULL = lit(None)


def ev(expr: Expression) -> Any:
    return evaluate(expr, row_context(Layout(), []))


@pytest.mark.unit
class TestLayout:
    """Tests for column resolution."""

    @pytest.fixture
    def layout(self) -> Layout:
        return Layout([("s", ["id", "name"]), ("e", ["id", "course"])])

    def test_qualified_and_unqualified(self, layout: Layout) -> None:
        assert layout.resolve("NAME") == 1
        assert layout.resolve("id", "E") == 2
        assert layout.resolve("missing") is None

    def test_ambiguous_unqualified(self, layout: Layout) -> None:
        with pytest.raises(AmbiguousColumnError):
            layout.resolve("id")

    def test_star_expansion(self, layout: Layout) -> None:
        assert [n for n, _ in layout.star()] == ["id", "name", "id", "course"]
        assert layout.star("e") == [("id", 2), ("course", 3)]
        with pytest.raises(NotFoundError):
            layout.star("x")

    def test_correlated_lookup_through_outer_scope(self, layout: Layout) -> None:
        outer = row_context(layout, [1, "Alice", 1, "Math"])
        inner = row_context(Layout([("g", ["grade"])]), ["A"], outer=outer)

        assert evaluate(ColumnExpr("name"), inner) == "Alice"
        assert evaluate(ColumnExpr("grade"), inner) == "A"
        with pytest.raises(NotFoundError):
            evaluate(ColumnExpr("nope"), inner)


@pytest.mark.unit
class TestThreeValuedLogic:
    """Tests for NULL handling in predicates."""

    @pytest.mark.parametrize(
        "op,a,b,expected",
        [
            (LogicalOp.AND, True, None, None),
            (LogicalOp.AND, False, None, False),
            (LogicalOp.OR, True, None, True),
            (LogicalOp.OR, False, None, None),
        ],
    )
    def test_kleene(self, op: LogicalOp, a: Any, b: Any, expected: Any) -> None:
        assert ev(LogicalExpr(op, (lit(a), lit(b)))) is expected

    def test_not_null_is_null(self) -> None:
        assert ev(LogicalExpr(LogicalOp.NOT, (NULL,))) is None

    def test_comparison_with_null(self) -> None:
        assert ev(ComparisonExpr(lit(1), ComparisonOp.EQ, NULL)) is None
        assert ev(ComparisonExpr(NULL, ComparisonOp.IS_NULL)) is True

    def test_in_list_with_null(self) -> None:
        assert ev(InListExpr(lit(3), (lit(1), NULL))) is None
        assert ev(InListExpr(lit(1), (lit(1), NULL))) is True
        assert ev(InListExpr(lit(3), (lit(1), lit(2)), negated=True)) is True

    def test_between(self) -> None:
        assert ev(BetweenExpr(lit(5), lit(1), lit(10))) is True
        assert ev(BetweenExpr(lit(5), lit(1), lit(10), negated=True)) is False

    def test_is_true(self) -> None:
        assert is_true(True)
        assert not is_true(None)
        assert not is_true(False)


@pytest.mark.unit
class TestArithmetic:
    """Tests for arithmetic operators."""

    @pytest.mark.parametrize(
        "op,a,b,expected",
        [
            (ArithmeticOp.ADD, 2, 3, 5),
            (ArithmeticOp.DIV, 7, 2, 3),
            (ArithmeticOp.DIV, -7, 2, -3),
            (ArithmeticOp.DIV, 7.0, 2, 3.5),
            (ArithmeticOp.MOD, -7, 2, -1),
            (ArithmeticOp.CONCAT, "a", 1, "a1"),
            (ArithmeticOp.MUL, Decimal("1.5"), 2, Decimal("3.0")),
        ],
    )
    def test_operators(self, op: ArithmeticOp, a: Any, b: Any, expected: Any) -> None:
        assert arithmetic(op, a, b) == expected

    def test_null_propagates(self) -> None:
        assert ev(ArithmeticExpr(ArithmeticOp.ADD, lit(1), NULL)) is None

    def test_division_by_zero(self) -> None:
        with pytest.raises(EvaluationError):
            arithmetic(ArithmeticOp.DIV, 1, 0)

    def test_non_numeric_operand(self) -> None:
        with pytest.raises(EvaluationError):
            arithmetic(ArithmeticOp.ADD, "a", 1)

    def test_negate(self) -> None:
        assert ev(NegateExpr(lit(4))) == -4
        with pytest.raises(EvaluationError):
            ev(NegateExpr(lit("x")))


@pytest.mark.unit
class TestScalarExpressions:
    """Tests for LIKE, CASE, CAST and functions."""

    @pytest.mark.parametrize(
        "value,pattern,expected",
        [("Alice", "A%", True), ("Alice", "a%", False), ("Bob", "B_b", True), ("Bob", "B_", False), (None, "%", None)],
    )
    def test_like(self, value: Any, pattern: str, expected: Any) -> None:
        assert like(value, pattern) is expected

    def test_searched_case(self) -> None:
        expr = CaseExpr(
            whens=((ComparisonExpr(lit(1), ComparisonOp.GT, lit(2)), lit("big")),),
            default=lit("small"),
        )
        assert ev(expr) == "small"

    def test_simple_case_without_match(self) -> None:
        expr = CaseExpr(whens=((lit(1), lit("one")),), operand=lit(2))
        assert ev(expr) is None

    def test_cast(self) -> None:
        assert ev(CastExpr(lit("42"), DataType.INTEGER)) == 42
        with pytest.raises(EvaluationError):
            ev(CastExpr(lit("x"), DataType.INTEGER))

    @pytest.mark.parametrize(
        "name,args,expected",
        [
            ("upper", ["abc"], "ABC"),
            ("LEN", ["abc"], 3),
            ("substr", ["abcdef", 2, 3], "bcd"),
            ("TRIM", ["  x  "], "x"),
            ("REPLACE", ["aXa", "X", "-"], "a-a"),
            ("ROUND", [2.567, 1], 2.6),
            ("COALESCE", [None, None, 3], 3),
            ("IFNULL", [None, "d"], "d"),
            ("NULLIF", [1, 1], None),
            ("CONCAT", ["a", None, "b"], "ab"),
            ("GREATEST", [3, None, 7], 7),
            ("LEAST", ["b", "a"], "a"),
            ("UPPER", [None], None),
        ],
    )
    def test_functions(self, name: str, args: list, expected: Any) -> None:
        assert call_function(name, args) == expected

    def test_unknown_function(self) -> None:
        assert not is_known_function("frobnicate")
        with pytest.raises(NotFoundError):
            ev(FunctionExpr("frobnicate", (lit(1),)))

    def test_subquery_needs_runner(self) -> None:
        with pytest.raises(EvaluationError):
            ev(SubqueryExpr(query=None))  # type: ignore[arg-type]


@pytest.mark.unit
class TestSortKey:
    """Tests for ORDER BY ordering."""

    def test_nulls_first_ascending_last_descending(self) -> None:
        values = [(2,), (None,), (1,)]

        assert sorted(values, key=sort_key([(True, None)])) == [(None,), (1,), (2,)]
        assert sorted(values, key=sort_key([(False, None)])) == [(2,), (1,), (None,)]

    def test_explicit_nulls_last(self) -> None:
        values = [(None,), (1,)]

        assert sorted(values, key=sort_key([(True, False)])) == [(1,), (None,)]

    def test_multiple_keys(self) -> None:
        values = [("b", 1), ("a", 2), ("a", 1)]

        ordered = sorted(values, key=sort_key([(True, None), (False, None)]))

        assert ordered == [("a", 2), ("a", 1), ("b", 1)]


@pytest.mark.unit
class TestGroupKey:
    """Tests for the keys used by GROUP BY, DISTINCT and PARTITION BY."""

    def test_equal_numbers_share_a_key(self) -> None:
        assert group_key([1]) == group_key([1.0]) == group_key([Decimal("1.00")])
        assert group_key([Decimal("0.1")]) == group_key([0.1])
        assert group_key([2]) != group_key([2.5])

    def test_booleans_never_match_numbers(self) -> None:
        assert group_key([True]) != group_key([1])
        assert group_key([False]) != group_key([0])
        assert group_key([True]) == group_key([True])

    def test_nulls_group_together(self) -> None:
        assert group_key([None, "a"]) == group_key([None, "a"])
        assert group_key([None]) != group_key([0])
