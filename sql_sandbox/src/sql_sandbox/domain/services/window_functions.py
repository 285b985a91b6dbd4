"""Window function evaluation.

Rows are split into partitions by the PARTITION BY values, ordered within
each partition by the ORDER BY values (ties keep input order), and each
function then assigns one value per row.

Aggregates used as windows follow the SQL default frame: with an ORDER BY
the frame runs from the start of the partition to the current row
including its peers; without one it is the whole partition.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Sequence

from sql_sandbox.domain.entities.expressions import AggregateFunc
from sql_sandbox.domain.errors import EvaluationError
from sql_sandbox.domain.services.expression_evaluator import compare_values, group_key, sort_key


RANKING_FUNCTIONS = frozenset(
    {"ROW_NUMBER", "RANK", "DENSE_RANK", "NTILE", "LAG", "LEAD", "FIRST_VALUE", "LAST_VALUE"}
)
AGGREGATE_FUNCTIONS = frozenset(f.value for f in AggregateFunc)


@dataclass
class WindowInput:
    """Pre-evaluated inputs of one row for one window call.

    Attributes:
        partition: PARTITION BY values.
        order: ORDER BY values.
        args: Function argument values.
    """

    partition: tuple[Any, ...]
    order: tuple[Any, ...]
    args: tuple[Any, ...]


def compute_window(
    func: str,
    inputs: Sequence[WindowInput],
    directions: Sequence[tuple[bool, bool | None]],
    distinct: bool = False,
    count_star: bool = False,
) -> list[Any]:
    """Compute one window function over all rows.

    Args:
        func: Upper-case function name.
        inputs: One WindowInput per row, in input order.
        directions: ``(ascending, nulls_first)`` for each ORDER BY value.
        distinct: Whether an aggregate window uses DISTINCT.
        count_star: True for ``COUNT(*) OVER (...)``.

    Returns:
        The function value for each row, aligned with ``inputs``.

    Raises:
        EvaluationError: For unknown functions or invalid arguments.
    """
    if func not in RANKING_FUNCTIONS and func not in AGGREGATE_FUNCTIONS:
        raise EvaluationError(f"unknown window function {func}")

    results: list[Any] = [None] * len(inputs)
    ordered = bool(directions)
    key = sort_key(directions)

    for positions in _partitions(inputs):
        # sorted() is stable, so equal keys keep input order
        if ordered:
            positions = sorted(positions, key=lambda i: key(inputs[i].order))
        peers = _peer_groups(positions, inputs) if ordered else [positions]

        if func in AGGREGATE_FUNCTIONS:
            _aggregate_window(func, positions, peers, inputs, results, ordered, distinct, count_star)
        else:
            _ranking_window(func, positions, peers, inputs, results)

    return results


def _partitions(inputs: Sequence[WindowInput]) -> list[list[int]]:
    groups: dict[tuple[Any, ...], list[int]] = {}
    for i, row in enumerate(inputs):
        groups.setdefault(group_key(row.partition), []).append(i)
    return list(groups.values())


def _peer_groups(positions: list[int], inputs: Sequence[WindowInput]) -> list[list[int]]:
    groups: list[list[int]] = []
    for i in positions:
        if groups and _same_order(inputs[groups[-1][0]].order, inputs[i].order):
            groups[-1].append(i)
        else:
            groups.append([i])
    return groups


def _same_order(a: tuple[Any, ...], b: tuple[Any, ...]) -> bool:
    for x, y in zip(a, b):
        if x is None or y is None:
            if not (x is None and y is None):
                return False
        elif compare_values(x, y) != 0:
            return False
    return True


def _ranking_window(
    func: str,
    positions: list[int],
    peers: list[list[int]],
    inputs: Sequence[WindowInput],
    results: list[Any],
) -> None:
    if func == "ROW_NUMBER":
        for n, i in enumerate(positions, start=1):
            results[i] = n

    elif func == "RANK":
        rank = 1
        for group in peers:
            for i in group:
                results[i] = rank
            rank += len(group)

    elif func == "DENSE_RANK":
        for rank, group in enumerate(peers, start=1):
            for i in group:
                results[i] = rank

    elif func == "NTILE":
        buckets = _int_arg(inputs[positions[0]].args, 0, "NTILE", None)
        if buckets is None or buckets <= 0:
            raise EvaluationError("NTILE requires a positive bucket count")
        total = len(positions)
        size, extra = divmod(total, buckets)
        n = 0
        for bucket in range(1, buckets + 1):
            count = size + (1 if bucket <= extra else 0)
            for i in positions[n:n + count]:
                results[i] = bucket
            n += count

    elif func in ("LAG", "LEAD"):
        for n, i in enumerate(positions):
            args = inputs[i].args
            if not args:
                raise EvaluationError(f"{func} requires an argument")
            offset = _int_arg(args, 1, func, 1)
            default = args[2] if len(args) > 2 else None
            target = n - offset if func == "LAG" else n + offset
            if 0 <= target < len(positions):
                results[i] = inputs[positions[target]].args[0]
            else:
                results[i] = default

    elif func == "FIRST_VALUE":
        first = inputs[positions[0]].args[0]
        for i in positions:
            results[i] = first

    elif func == "LAST_VALUE":
        # Default frame ends at the current row's last peer.
        for group in peers:
            last = inputs[group[-1]].args[0]
            for i in group:
                results[i] = last


def _int_arg(args: tuple[Any, ...], index: int, func: str, default: int | None) -> int | None:
    if len(args) <= index or args[index] is None:
        return default
    value = args[index]
    if not isinstance(value, int) or isinstance(value, bool):
        raise EvaluationError(f"{func} argument {index + 1} must be an integer")
    return value


def _aggregate_window(
    func: str,
    positions: list[int],
    peers: list[list[int]],
    inputs: Sequence[WindowInput],
    results: list[Any],
    ordered: bool,
    distinct: bool,
    count_star: bool,
) -> None:
    def value_of(i: int) -> Any:
        if count_star:
            return 1
        return inputs[i].args[0] if inputs[i].args else None

    if not ordered:
        total = aggregate(func, [value_of(i) for i in positions], distinct, count_star)
        for i in positions:
            results[i] = total
        return

    seen: list[Any] = []
    for group in peers:
        seen.extend(value_of(i) for i in group)
        total = aggregate(func, seen, distinct, count_star)
        for i in group:
            results[i] = total


def aggregate(func: str, values: Sequence[Any], distinct: bool = False, count_star: bool = False) -> Any:
    """Fold values with an aggregate function.

    NULLs are ignored (except by COUNT(*)). Over no non-NULL input, COUNT
    yields 0 and the other aggregates yield NULL.

    Raises:
        EvaluationError: If SUM/AVG receive non-numeric values.
    """
    if count_star:
        return len(values)

    present = [v for v in values if v is not None]
    if distinct:
        present = _distinct(present)

    if func == "COUNT":
        return len(present)
    if not present:
        return None

    if func in ("SUM", "AVG"):
        for v in present:
            if not isinstance(v, (int, float, Decimal)) or isinstance(v, bool):
                raise EvaluationError(f"{func} requires numeric values, got {type(v).__name__}")
        if any(isinstance(v, float) for v in present):
            present = [float(v) for v in present]
        total = sum(present)
        if func == "SUM":
            return total
        return total / len(present)

    if func in ("MIN", "MAX"):
        pick: Callable[[int], bool] = (lambda c: c < 0) if func == "MIN" else (lambda c: c > 0)
        best = present[0]
        for v in present[1:]:
            if pick(compare_values(v, best)):
                best = v
        return best

    raise EvaluationError(f"unknown aggregate {func}")


def _distinct(values: list[Any]) -> list[Any]:
    unique: dict[tuple, Any] = {}
    for v in values:
        unique.setdefault(group_key((v,)), v)
    return list(unique.values())
