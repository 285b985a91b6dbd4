"""Scalar expression evaluation with SQL three-valued logic.

NULL is represented by None. Comparisons and arithmetic involving NULL
yield NULL; AND/OR follow Kleene logic; a predicate passes a filter only
when it evaluates to TRUE.

Column references are resolved through a Layout (the columns produced by
the current FROM clause) and, failing that, through the enclosing scopes
of correlated subqueries.
"""

from __future__ import annotations

import functools
import math
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Iterable, Sequence

from sql_sandbox.domain.entities.expressions import (
    AggregateExpr,
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
    InSubqueryExpr,
    LiteralExpr,
    LogicalExpr,
    LogicalOp,
    NegateExpr,
    StarExpr,
    SubqueryExpr,
    SubqueryKind,
    WindowExpr,
)
from sql_sandbox.domain.errors import AmbiguousColumnError, EvaluationError, NotFoundError
from sql_sandbox.domain.value_objects import CoercionError, coerce


_AMBIGUOUS = -1


class Layout:
    """Column positions of the rows flowing through one query scope.

    A layout is built from ``(binding, column names)`` pairs, one per FROM
    item, and maps qualified and unqualified names (case-insensitively) to
    positions in a flat value list.

    Example:
        >>> layout = Layout([("s", ["id", "name"]), ("a", ["id", "note"])])
        >>> layout.resolve("name")
        1
        >>> layout.resolve("id", "a")
        2
    """

    def __init__(self, sources: Sequence[tuple[str | None, Sequence[str]]] = ()) -> None:
        self.sources: list[tuple[str | None, list[str]]] = []
        self.columns: list[tuple[str | None, str]] = []
        self._qualified: dict[tuple[str, str], int] = {}
        self._unqualified: dict[str, int] = {}
        self._bindings: dict[str, list[int]] = {}
        for binding, names in sources:
            self._add(binding, names)

    def _add(self, binding: str | None, names: Sequence[str]) -> None:
        self.sources.append((binding, list(names)))
        positions = []
        for name in names:
            idx = len(self.columns)
            self.columns.append((binding, name))
            positions.append(idx)
            lowered = name.lower()
            self._unqualified[lowered] = _AMBIGUOUS if lowered in self._unqualified else idx
            if binding is not None:
                qkey = (binding.lower(), lowered)
                self._qualified[qkey] = _AMBIGUOUS if qkey in self._qualified else idx
        if binding is not None:
            self._bindings.setdefault(binding.lower(), []).extend(positions)

    @property
    def width(self) -> int:
        return len(self.columns)

    @property
    def names(self) -> list[str]:
        return [name for _, name in self.columns]

    def extend(self, binding: str | None, names: Sequence[str]) -> Layout:
        """Return a new layout with another source appended."""
        layout = Layout(self.sources)
        layout._add(binding, names)
        return layout

    def has_binding(self, binding: str) -> bool:
        return binding.lower() in self._bindings

    def binding_positions(self, binding: str) -> list[int]:
        return self._bindings.get(binding.lower(), [])

    def resolve(self, name: str, table: str | None = None) -> int | None:
        """Return the position of a column, or None if this scope lacks it.

        Raises:
            AmbiguousColumnError: If the name matches more than one column.
        """
        if table is not None:
            idx = self._qualified.get((table.lower(), name.lower()))
        else:
            idx = self._unqualified.get(name.lower())
        if idx == _AMBIGUOUS:
            label = f"{table}.{name}" if table else name
            raise AmbiguousColumnError(f"column reference '{label}' is ambiguous")
        return idx

    def star(self, table: str | None = None) -> list[tuple[str, int]]:
        """Expand ``*`` or ``table.*`` to (column name, position) pairs.

        Raises:
            NotFoundError: If ``table`` is not a binding in this scope.
        """
        if table is None:
            return [(name, i) for i, (_, name) in enumerate(self.columns)]
        if not self.has_binding(table):
            raise NotFoundError(f"missing FROM-clause entry for table '{table}'", table=table)
        return [(self.columns[i][1], i) for i in self._bindings[table.lower()]]


@dataclass
class Frame:
    """The values visible to an expression for one row or one group.

    ``aggregates`` and ``windows`` hold values computed by the grouping and
    window stages, keyed by the expression that produced them.
    """

    values: Sequence[Any]
    aggregates: dict[Expression, Any] = field(default_factory=dict)
    windows: dict[Expression, Any] = field(default_factory=dict)


QueryRunner = Callable[[Any, "EvalContext"], list[tuple]]
"""Callback that runs a nested query in an outer scope and returns its rows."""


@dataclass
class EvalContext:
    """Evaluation scope: a layout, the current frame and the enclosing scope."""

    layout: Layout
    frame: Frame
    outer: EvalContext | None = None
    run_query: QueryRunner | None = None

    def with_frame(self, frame: Frame) -> EvalContext:
        return EvalContext(self.layout, frame, self.outer, self.run_query)

    def lookup(self, column: ColumnExpr) -> Any:
        """Resolve a column through this scope and its enclosing scopes.

        Raises:
            NotFoundError: If no scope defines the column.
        """
        scope: EvalContext | None = self
        while scope is not None:
            idx = scope.layout.resolve(column.name, column.table)
            if idx is not None:
                return scope.frame.values[idx]
            scope = scope.outer
        raise NotFoundError(f"column '{column}' does not exist")


def row_context(
    layout: Layout,
    values: Sequence[Any],
    outer: EvalContext | None = None,
    run_query: QueryRunner | None = None,
) -> EvalContext:
    """Convenience constructor for a single-row scope."""
    return EvalContext(layout, Frame(values), outer, run_query)


# =============================================================================
# Evaluation
# =============================================================================


def evaluate(expr: Expression, ctx: EvalContext) -> Any:
    """Evaluate an expression in a scope.

    Raises:
        EvaluationError: On type errors, division by zero and similar.
        NotFoundError: On unknown columns or functions.
        AmbiguousColumnError: On ambiguous column references.
    """
    if isinstance(expr, LiteralExpr):
        return expr.value

    if isinstance(expr, ColumnExpr):
        return ctx.lookup(expr)

    if isinstance(expr, AggregateExpr):
        if expr in ctx.frame.aggregates:
            return ctx.frame.aggregates[expr]
        raise EvaluationError(f"aggregate {expr} is not allowed here")

    if isinstance(expr, WindowExpr):
        if expr in ctx.frame.windows:
            return ctx.frame.windows[expr]
        raise EvaluationError(f"window function {expr} is not allowed here")

    if isinstance(expr, ComparisonExpr):
        return _eval_comparison(expr, ctx)

    if isinstance(expr, LogicalExpr):
        return _eval_logical(expr, ctx)

    if isinstance(expr, ArithmeticExpr):
        return arithmetic(expr.op, evaluate(expr.left, ctx), evaluate(expr.right, ctx))

    if isinstance(expr, NegateExpr):
        value = evaluate(expr.operand, ctx)
        if value is None:
            return None
        if not _is_number(value):
            raise EvaluationError(f"cannot negate {type(value).__name__}")
        return -value

    if isinstance(expr, InListExpr):
        value = evaluate(expr.value, ctx)
        return _in_values(value, (evaluate(o, ctx) for o in expr.options), expr.negated)

    if isinstance(expr, BetweenExpr):
        value = evaluate(expr.value, ctx)
        low = evaluate(expr.low, ctx)
        high = evaluate(expr.high, ctx)
        result = _and(_compare(ComparisonOp.GE, value, low), _compare(ComparisonOp.LE, value, high))
        return _not(result) if expr.negated else result

    if isinstance(expr, CaseExpr):
        return _eval_case(expr, ctx)

    if isinstance(expr, FunctionExpr):
        return call_function(expr.name, [evaluate(a, ctx) for a in expr.args])

    if isinstance(expr, CastExpr):
        value = evaluate(expr.operand, ctx)
        try:
            return coerce(value, expr.data_type)
        except CoercionError as e:
            raise EvaluationError(str(e)) from e

    if isinstance(expr, SubqueryExpr):
        rows = _run_subquery(expr.query, ctx)
        if expr.kind == SubqueryKind.EXISTS:
            return bool(rows)
        if len(rows) > 1:
            raise EvaluationError("scalar subquery returned more than one row")
        if rows and len(rows[0]) != 1:
            raise EvaluationError("scalar subquery must return exactly one column")
        return rows[0][0] if rows else None

    if isinstance(expr, InSubqueryExpr):
        value = evaluate(expr.value, ctx)
        rows = _run_subquery(expr.query, ctx)
        if rows and len(rows[0]) != 1:
            raise EvaluationError("IN subquery must return exactly one column")
        return _in_values(value, (r[0] for r in rows), expr.negated)

    if isinstance(expr, StarExpr):
        raise EvaluationError("'*' is only allowed in a SELECT list or COUNT(*)")

    raise EvaluationError(f"unsupported expression: {type(expr).__name__}")


def is_true(value: Any) -> bool:
    """A predicate passes only when it is TRUE (not FALSE, not NULL)."""
    return value is True or (value is not None and value is not False and bool(value))


def _run_subquery(query: Any, ctx: EvalContext) -> list[tuple]:
    if ctx.run_query is None:
        raise EvaluationError("subqueries are not allowed here")
    return ctx.run_query(query, ctx)


def _eval_comparison(expr: ComparisonExpr, ctx: EvalContext) -> bool | None:
    left = evaluate(expr.left, ctx)
    if expr.op == ComparisonOp.IS_NULL:
        return left is None
    if expr.op == ComparisonOp.IS_NOT_NULL:
        return left is not None
    assert expr.right is not None
    right = evaluate(expr.right, ctx)
    if expr.op in (ComparisonOp.LIKE, ComparisonOp.NOT_LIKE):
        result = like(left, right)
        return _not(result) if expr.op == ComparisonOp.NOT_LIKE else result
    return _compare(expr.op, left, right)


def _eval_logical(expr: LogicalExpr, ctx: EvalContext) -> bool | None:
    if expr.op == LogicalOp.NOT:
        return _not(_truth(evaluate(expr.operands[0], ctx)))

    if expr.op == LogicalOp.AND:
        result: bool | None = True
        for operand in expr.operands:
            result = _and(result, _truth(evaluate(operand, ctx)))
            if result is False:
                return False
        return result

    result = False
    for operand in expr.operands:
        result = _or(result, _truth(evaluate(operand, ctx)))
        if result is True:
            return True
    return result


def _eval_case(expr: CaseExpr, ctx: EvalContext) -> Any:
    if expr.operand is not None:
        subject = evaluate(expr.operand, ctx)
        for when, then in expr.whens:
            if _compare(ComparisonOp.EQ, subject, evaluate(when, ctx)) is True:
                return evaluate(then, ctx)
    else:
        for when, then in expr.whens:
            if is_true(evaluate(when, ctx)):
                return evaluate(then, ctx)
    return evaluate(expr.default, ctx) if expr.default is not None else None


# =============================================================================
# Three-valued logic
# =============================================================================


def _truth(value: Any) -> bool | None:
    if value is None:
        return None
    return bool(value)


def _not(value: bool | None) -> bool | None:
    return None if value is None else not value


def _and(a: bool | None, b: bool | None) -> bool | None:
    if a is False or b is False:
        return False
    if a is None or b is None:
        return None
    return True


def _or(a: bool | None, b: bool | None) -> bool | None:
    if a is True or b is True:
        return True
    if a is None or b is None:
        return None
    return False


def _in_values(value: Any, options: Any, negated: bool) -> bool | None:
    if value is None:
        return None
    saw_null = False
    for option in options:
        if option is None:
            saw_null = True
            continue
        if _compare(ComparisonOp.EQ, value, option) is True:
            return not negated
    if saw_null:
        return None
    return negated


# =============================================================================
# Comparison and ordering
# =============================================================================


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _align(left: Any, right: Any) -> tuple[Any, Any]:
    """Make two numbers mutually comparable (Decimal and float don't mix)."""
    if isinstance(left, Decimal) and isinstance(right, float):
        return float(left), right
    if isinstance(left, float) and isinstance(right, Decimal):
        return left, float(right)
    return left, right


def compare_values(left: Any, right: Any) -> int:
    """Three-way comparison of two non-NULL values.

    Raises:
        EvaluationError: If the values are of incomparable types.
    """
    left, right = _align(left, right)
    if isinstance(left, bool) != isinstance(right, bool) and not (
        _is_number(left) or _is_number(right)
    ):
        raise EvaluationError(
            f"cannot compare {type(left).__name__} with {type(right).__name__}"
        )
    try:
        if left < right:
            return -1
        if left > right:
            return 1
        return 0
    except TypeError as e:
        raise EvaluationError(
            f"cannot compare {type(left).__name__} with {type(right).__name__}"
        ) from e


def _compare(op: ComparisonOp, left: Any, right: Any) -> bool | None:
    if left is None or right is None:
        return None
    if op == ComparisonOp.EQ:
        left, right = _align(left, right)
        if _is_number(left) != _is_number(right):
            return False
        return left == right
    if op == ComparisonOp.NE:
        left, right = _align(left, right)
        if _is_number(left) != _is_number(right):
            return True
        return left != right

    cmp = compare_values(left, right)
    if op == ComparisonOp.LT:
        return cmp < 0
    if op == ComparisonOp.LE:
        return cmp <= 0
    if op == ComparisonOp.GT:
        return cmp > 0
    if op == ComparisonOp.GE:
        return cmp >= 0
    raise EvaluationError(f"unsupported comparison: {op.value}")


def group_key(values: Iterable[Any]) -> tuple:
    """Hashable key under which values that compare equal collide.

    Used for GROUP BY, DISTINCT, set operations and PARTITION BY so they
    agree with ``=``: 1, 1.0 and Decimal("1") share a key, TRUE never
    shares one with 1, and NULLs share one with each other.
    """
    return tuple(_key_part(v) for v in values)


def _key_part(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, bool):
        return ("bool", value)
    if isinstance(value, float) and math.isfinite(value):
        # Matches the float alignment in _align: Decimal("0.1") = 0.1.
        return ("num", Decimal(repr(value)))
    if _is_number(value):
        return ("num", value)
    return ("value", value)


def sort_key(directions: Sequence[tuple[bool, bool | None]]) -> Callable[[Sequence[Any]], Any]:
    """Build a ``sorted`` key for rows of sort values.

    Args:
        directions: One ``(ascending, nulls_first)`` pair per sort value.
            ``nulls_first=None`` puts NULLs first when ascending and last
            when descending.
    """

    def cmp(a: Sequence[Any], b: Sequence[Any]) -> int:
        for (ascending, nulls_first), x, y in zip(directions, a, b):
            if x is None and y is None:
                continue
            first = (ascending if nulls_first is None else nulls_first)
            if x is None:
                return -1 if first else 1
            if y is None:
                return 1 if first else -1
            result = compare_values(x, y)
            if result:
                return result if ascending else -result
        return 0

    return functools.cmp_to_key(cmp)


# =============================================================================
# Arithmetic
# =============================================================================


def arithmetic(op: ArithmeticOp, left: Any, right: Any) -> Any:
    """Apply a binary arithmetic or concatenation operator.

    Integer division truncates toward zero, as in most SQL engines.

    Raises:
        EvaluationError: On division by zero or non-numeric operands.
    """
    if left is None or right is None:
        return None

    if op == ArithmeticOp.CONCAT:
        return f"{_text(left)}{_text(right)}"

    if not (_is_number(left) and _is_number(right)):
        raise EvaluationError(
            f"operator {op.value} requires numeric operands, "
            f"got {type(left).__name__} and {type(right).__name__}"
        )
    left, right = _align(left, right)

    if op == ArithmeticOp.ADD:
        return left + right
    if op == ArithmeticOp.SUB:
        return left - right
    if op == ArithmeticOp.MUL:
        return left * right

    if right == 0:
        raise EvaluationError("division by zero")
    if op == ArithmeticOp.DIV:
        if isinstance(left, int) and isinstance(right, int):
            quotient = abs(left) // abs(right)
            return quotient if (left >= 0) == (right >= 0) else -quotient
        return left / right
    if op == ArithmeticOp.MOD:
        if isinstance(left, int) and isinstance(right, int):
            remainder = abs(left) % abs(right)
            return remainder if left >= 0 else -remainder
        return left % right
    raise EvaluationError(f"unsupported operator: {op.value}")


def _text(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)


# =============================================================================
# LIKE
# =============================================================================


@functools.lru_cache(maxsize=256)
def _like_regex(pattern: str) -> re.Pattern[str]:
    parts = []
    for ch in pattern:
        if ch == "%":
            parts.append(".*")
        elif ch == "_":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return re.compile("".join(parts), re.DOTALL)


def like(value: Any, pattern: Any) -> bool | None:
    """SQL LIKE with ``%`` and ``_`` wildcards (case-sensitive)."""
    if value is None or pattern is None:
        return None
    return _like_regex(str(pattern)).fullmatch(_text(value)) is not None


# =============================================================================
# Scalar functions
# =============================================================================


def _null_in(fn: Callable[..., Any]) -> Callable[..., Any]:
    """Wrap a function so that any NULL argument yields NULL."""

    @functools.wraps(fn)
    def wrapper(*args: Any) -> Any:
        if any(a is None for a in args):
            return None
        return fn(*args)

    return wrapper


def _coalesce(*args: Any) -> Any:
    for arg in args:
        if arg is not None:
            return arg
    return None


def _nullif(a: Any, b: Any) -> Any:
    return None if _compare(ComparisonOp.EQ, a, b) is True else a


def _round(value: Any, digits: Any = 0) -> Any:
    if not _is_number(value):
        raise EvaluationError("ROUND requires a numeric argument")
    if isinstance(value, Decimal):
        return round(value, int(digits))
    result = round(value, int(digits))
    return result


def _substring(value: Any, start: Any, length: Any = None) -> Any:
    text = _text(value)
    begin = max(int(start) - 1, 0)
    if length is None:
        return text[begin:]
    end = int(start) - 1 + int(length)
    return text[begin:max(end, begin)]


def _concat(*args: Any) -> str:
    return "".join(_text(a) for a in args if a is not None)


def _abs(value: Any) -> Any:
    if not _is_number(value):
        raise EvaluationError("ABS requires a numeric argument")
    return abs(value)


def _extreme(pick: Callable[[int], bool]) -> Callable[..., Any]:
    def fn(*args: Any) -> Any:
        values = [a for a in args if a is not None]
        if not values:
            return None
        best = values[0]
        for value in values[1:]:
            if pick(compare_values(value, best)):
                best = value
        return best

    return fn


_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "UPPER": _null_in(lambda s: _text(s).upper()),
    "LOWER": _null_in(lambda s: _text(s).lower()),
    "LENGTH": _null_in(lambda s: len(_text(s))),
    "TRIM": _null_in(lambda s, chars=None: _text(s).strip(chars)),
    "LTRIM": _null_in(lambda s, chars=None: _text(s).lstrip(chars)),
    "RTRIM": _null_in(lambda s, chars=None: _text(s).rstrip(chars)),
    "REPLACE": _null_in(lambda s, old, new: _text(s).replace(_text(old), _text(new))),
    "SUBSTRING": _null_in(_substring),
    "ABS": _null_in(_abs),
    "ROUND": _null_in(_round),
    "COALESCE": _coalesce,
    "NULLIF": _nullif,
    "CONCAT": _concat,
    "GREATEST": _extreme(lambda c: c > 0),
    "LEAST": _extreme(lambda c: c < 0),
}

_ALIASES = {
    "LEN": "LENGTH",
    "CHAR_LENGTH": "LENGTH",
    "SUBSTR": "SUBSTRING",
    "IFNULL": "COALESCE",
    "ISNULL": "COALESCE",
    "NVL": "COALESCE",
}


def canonical_function_name(name: str) -> str:
    upper = name.upper()
    return _ALIASES.get(upper, upper)


def is_known_function(name: str) -> bool:
    return canonical_function_name(name) in _FUNCTIONS


def call_function(name: str, args: list[Any]) -> Any:
    """Call a scalar function by name.

    Raises:
        NotFoundError: If the function is unknown.
        EvaluationError: If the arguments are invalid.
    """
    fn = _FUNCTIONS.get(canonical_function_name(name))
    if fn is None:
        raise NotFoundError(f"function {name}() does not exist")
    try:
        return fn(*args)
    except (TypeError, ValueError, ArithmeticError) as e:
        raise EvaluationError(f"{name}(): {e}") from e
