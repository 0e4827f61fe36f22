"""Predicate, aggregation and operation descriptors for lazy datasets.

The supported surface is closed: comparisons (``== != < <= > >=``) and
membership (``in``, ``not in``) joined by ``&``, and the commutative,
associative reducers count, sum, mean, min and max. Anything else raises
UnsupportedPredicateError when the operation is built.
"""

import operator
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Union

import pyarrow as pa
import pyarrow.compute as pc

from remote_datasets.exceptions import SchemaMismatchError, UnsupportedPredicateError

ROW_MARKER = "__row__"

_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}

_ARROW_COMPARATORS: dict[str, Callable[..., Any]] = {
    "==": pc.equal,
    "!=": pc.not_equal,
    "<": pc.less,
    "<=": pc.less_equal,
    ">": pc.greater,
    ">=": pc.greater_equal,
}

# pyarrow DNF spellings accepted in tuple predicates.
_TUPLE_OPERATORS: dict[str, str] = {
    "=": "==",
    "==": "==",
    "!=": "!=",
    "<": "<",
    "<=": "<=",
    ">": ">",
    ">=": ">=",
    "in": "in",
    "not in": "not in",
}

_SCALAR_TYPES = (str, bool, int, float, Decimal, date, datetime)

AGGREGATE_FUNCTIONS = frozenset({"count", "sum", "mean", "min", "max"})


def _check_scalar(value: Any, column: str) -> None:
    if isinstance(value, (Column, Comparison, Conjunction)) or not isinstance(value, _SCALAR_TYPES):
        raise UnsupportedPredicateError(
            f"Unsupported comparison value for column {column!r}: {value!r}. Only literal scalars are supported."
        )


@dataclass(frozen=True)
class Comparison:
    """A single comparison of a column against literal values."""

    column: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op in ("in", "not in"):
            if isinstance(self.value, (str, bytes)) or not isinstance(self.value, Iterable):
                raise UnsupportedPredicateError(f"Membership test on {self.column!r} needs a collection of values")
            values = tuple(self.value)
            if not values:
                raise UnsupportedPredicateError(f"Membership test on {self.column!r} needs at least one value")
            for v in values:
                _check_scalar(v, self.column)
            object.__setattr__(self, "value", values)
        elif self.op in _COMPARATORS:
            _check_scalar(self.value, self.column)
        else:
            raise UnsupportedPredicateError(f"Unsupported operator {self.op!r} on column {self.column!r}")

    def __and__(self, other: Any) -> "Conjunction":
        return Conjunction((self,)) & other

    def __or__(self, other: Any) -> Any:
        raise UnsupportedPredicateError("Disjunctions are not supported; combine predicates with '&'")

    def __invert__(self) -> Any:
        raise UnsupportedPredicateError("Negated predicates are not supported; use '!=' or 'not in'")

    def __bool__(self) -> bool:
        raise UnsupportedPredicateError("Predicates cannot be used as booleans; combine them with '&'")

    @property
    def values(self) -> tuple[Any, ...]:
        return self.value if self.op in ("in", "not in") else (self.value,)

    def evaluate(self, value: Any) -> bool:
        """Evaluate against one partition value; null never matches.

        :param value: Partition value
        :returns: Whether the value satisfies the comparison
        """
        if value is None:
            return False
        if self.op == "in":
            return value in self.value
        if self.op == "not in":
            return value not in self.value
        return bool(_COMPARATORS[self.op](value, self.value))

    def mask(self, table: pa.Table) -> pa.ChunkedArray:
        """Compute the row mask of this comparison over a table.

        :param table: Table holding the column
        :returns: Boolean mask; null rows never match
        """
        column = table[self.column]
        if self.op in ("in", "not in"):
            matches = pc.is_in(column, value_set=pa.array(self.value, type=column.type))
            if self.op == "in":
                return matches
            return pc.and_(pc.invert(matches), pc.is_valid(column))
        return _ARROW_COMPARATORS[self.op](column, pa.scalar(self.value, type=column.type))

    def __str__(self) -> str:
        return f"{self.column} {self.op} {self.value!r}"


@dataclass(frozen=True)
class Conjunction:
    """Comparisons that must all hold."""

    terms: tuple[Comparison, ...]

    def __and__(self, other: Any) -> "Conjunction":
        if isinstance(other, Comparison):
            return Conjunction(self.terms + (other,))
        if isinstance(other, Conjunction):
            return Conjunction(self.terms + other.terms)
        raise UnsupportedPredicateError(f"Cannot combine predicate with {other!r}")

    def __or__(self, other: Any) -> Any:
        raise UnsupportedPredicateError("Disjunctions are not supported; combine predicates with '&'")

    def __invert__(self) -> Any:
        raise UnsupportedPredicateError("Negated predicates are not supported; use '!=' or 'not in'")

    def __bool__(self) -> bool:
        raise UnsupportedPredicateError("Predicates cannot be used as booleans; combine them with '&'")


class Column:
    """Reference to a column, used to build comparisons.

    >>> col("year") == 2022
    Comparison(column='year', op='==', value=2022)
    """

    def __init__(self, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return f"col({self.name!r})"

    def __eq__(self, other: Any) -> Comparison:  # type: ignore[override]
        return Comparison(self.name, "==", other)

    def __ne__(self, other: Any) -> Comparison:  # type: ignore[override]
        return Comparison(self.name, "!=", other)

    def __lt__(self, other: Any) -> Comparison:
        return Comparison(self.name, "<", other)

    def __le__(self, other: Any) -> Comparison:
        return Comparison(self.name, "<=", other)

    def __gt__(self, other: Any) -> Comparison:
        return Comparison(self.name, ">", other)

    def __ge__(self, other: Any) -> Comparison:
        return Comparison(self.name, ">=", other)

    __hash__ = None  # type: ignore[assignment]

    def isin(self, values: Iterable[Any]) -> Comparison:
        return Comparison(self.name, "in", values)

    def not_in(self, values: Iterable[Any]) -> Comparison:
        return Comparison(self.name, "not in", values)

    def like(self, pattern: str) -> Comparison:
        raise UnsupportedPredicateError(f"Pattern matching on {self.name!r} is not supported")

    def startswith(self, prefix: str) -> Comparison:
        raise UnsupportedPredicateError(f"Pattern matching on {self.name!r} is not supported")

    def contains(self, substring: str) -> Comparison:
        raise UnsupportedPredicateError(f"Pattern matching on {self.name!r} is not supported")

    def matches(self, regex: str) -> Comparison:
        raise UnsupportedPredicateError(f"Pattern matching on {self.name!r} is not supported")


def col(name: str) -> Column:
    return Column(name)


def normalize_predicates(predicates: Iterable[Any], equalities: Mapping[str, Any] | None = None) -> tuple[Comparison, ...]:
    """Flatten predicates into a conjunction of comparisons.

    Accepts comparisons, ``&`` conjunctions, ``(column, op, value)`` tuples,
    lists of such tuples and keyword equalities.

    :param predicates: Predicate objects
    :param equalities: Column -> value equalities
    :returns: Tuple of comparisons
    :raises UnsupportedPredicateError: For anything outside the supported set
    """
    terms: list[Comparison] = []
    for predicate in predicates:
        terms.extend(_flatten(predicate))
    for column, value in (equalities or {}).items():
        terms.append(Comparison(column, "==", value))
    return tuple(terms)


def _flatten(predicate: Any) -> list[Comparison]:
    if isinstance(predicate, Comparison):
        return [predicate]
    if isinstance(predicate, Conjunction):
        return list(predicate.terms)
    if isinstance(predicate, tuple) and len(predicate) == 3 and isinstance(predicate[0], str):
        column, op, value = predicate
        if not isinstance(op, str) or op.lower() not in _TUPLE_OPERATORS:
            raise UnsupportedPredicateError(f"Unsupported operator {op!r} on column {column!r}")
        return [Comparison(column, _TUPLE_OPERATORS[op.lower()], value)]
    if isinstance(predicate, list):
        if any(isinstance(p, list) for p in predicate):
            raise UnsupportedPredicateError("Disjunctive (list of lists) filters are not supported")
        return [term for p in predicate for term in _flatten(p)]
    if callable(predicate):
        raise UnsupportedPredicateError(
            f"Arbitrary functions cannot be pushed down: {predicate!r}. Build predicates with col()."
        )
    raise UnsupportedPredicateError(f"Unsupported predicate: {predicate!r}")


@dataclass(frozen=True)
class Aggregation:
    """One reducer over a column; ``column=None`` counts rows."""

    func: str
    column: str | None = None

    def __post_init__(self) -> None:
        if self.func not in AGGREGATE_FUNCTIONS:
            raise UnsupportedPredicateError(
                f"Unsupported aggregation {self.func!r}; expected one of {sorted(AGGREGATE_FUNCTIONS)}"
            )
        if self.column is None and self.func != "count":
            raise UnsupportedPredicateError(f"Aggregation {self.func!r} needs a column")

    def partial_specs(self) -> list[tuple[str, str]]:
        """Per-fragment ``(column, function)`` partials this reducer merges from."""
        if self.column is None:
            return [(ROW_MARKER, "count")]
        if self.func == "mean":
            return [(self.column, "sum"), (self.column, "count")]
        return [(self.column, self.func)]

    def check_type(self, data_type: pa.DataType) -> None:
        if self.func in ("sum", "mean") and not (
            pa.types.is_integer(data_type) or pa.types.is_floating(data_type) or pa.types.is_decimal(data_type)
        ):
            raise SchemaMismatchError(f"Cannot {self.func} column {self.column!r} of type {data_type}")

    def result_type(self, data_type: pa.DataType | None) -> pa.DataType:
        if self.func == "count":
            return pa.int64()
        if self.func == "mean":
            return pa.float64()
        if self.func == "sum" and data_type is not None and pa.types.is_integer(data_type):
            return pa.int64()
        if self.func == "sum" and data_type is not None and pa.types.is_floating(data_type):
            return pa.float64()
        return data_type if data_type is not None else pa.null()


def count(column: str | None = None) -> Aggregation:
    return Aggregation("count", column)


def sum_(column: str) -> Aggregation:
    return Aggregation("sum", column)


def mean(column: str) -> Aggregation:
    return Aggregation("mean", column)


def min_(column: str) -> Aggregation:
    return Aggregation("min", column)


def max_(column: str) -> Aggregation:
    return Aggregation("max", column)


def normalize_aggregation(spec: Any) -> Aggregation:
    """Accept an Aggregation or a ``(column, function)`` tuple.

    :param spec: Aggregation spec
    :returns: Aggregation instance
    """
    if isinstance(spec, Aggregation):
        return spec
    if isinstance(spec, tuple) and len(spec) == 2 and isinstance(spec[1], str):
        return Aggregation(spec[1].lower(), spec[0])
    raise UnsupportedPredicateError(f"Unsupported aggregation: {spec!r}")


@dataclass(frozen=True)
class Filter:
    predicates: tuple[Comparison, ...]


@dataclass(frozen=True)
class Project:
    columns: tuple[str, ...]


@dataclass(frozen=True)
class Aggregate:
    keys: tuple[str, ...]
    aggregations: tuple[tuple[str, Aggregation], ...]


Operation = Union[Filter, Project, Aggregate]
