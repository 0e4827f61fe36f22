import pyarrow as pa
import pytest

from remote_datasets.exceptions import SchemaMismatchError, UnsupportedPredicateError
from remote_datasets.tabular.expressions import (
    Aggregation,
    Comparison,
    col,
    count,
    mean,
    normalize_aggregation,
    normalize_predicates,
)


def test_column_operators_build_comparisons() -> None:
    """
    Test that column operators produce comparison descriptors.
    """
    assert (col("year") == 2022) == Comparison("year", "==", 2022)
    assert (col("year") >= 2022) == Comparison("year", ">=", 2022)
    assert col("year").isin([2022, 2023]) == Comparison("year", "in", (2022, 2023))


def test_normalize_predicates_flattens_every_accepted_form() -> None:
    """
    Test that comparisons, conjunctions, tuples and keyword equalities become one conjunction.
    """
    terms = normalize_predicates(
        [
            (col("count") > 1) & (col("weight") < 2.0),
            ("year", "=", 2022),
            [("species", "not in", ["owl"])],
        ],
        {"category": "birds"},
    )

    assert terms == (
        Comparison("count", ">", 1),
        Comparison("weight", "<", 2.0),
        Comparison("year", "==", 2022),
        Comparison("species", "not in", ("owl",)),
        Comparison("category", "==", "birds"),
    )


def test_predicates_cannot_be_used_as_booleans() -> None:
    """
    Test that chained comparisons and 'and' are refused instead of silently misbehaving.
    """
    with pytest.raises(UnsupportedPredicateError):
        bool(col("year") == 2022)
    with pytest.raises(UnsupportedPredicateError):
        2021 < col("year") < 2023


def test_membership_needs_a_collection() -> None:
    with pytest.raises(UnsupportedPredicateError):
        col("species").isin("owl")
    with pytest.raises(UnsupportedPredicateError):
        col("species").isin([])


def test_evaluate_never_matches_null() -> None:
    """
    Test partition-value evaluation, including nulls from unparseable directories.
    """
    assert Comparison("year", "<", 2023).evaluate(2022)
    assert not Comparison("year", "!=", 2022).evaluate(None)
    assert not Comparison("year", "not in", [2022]).evaluate(None)


def test_mask_drops_nulls_for_negative_operators() -> None:
    """
    Test that row masks treat null as not matching, even for != and not in.
    """
    table = pa.table({"species": ["owl", None, "robin"]})

    not_equal = table.filter(Comparison("species", "!=", "owl").mask(table))
    not_in = table.filter(Comparison("species", "not in", ["owl"]).mask(table))

    assert not_equal.column("species").to_pylist() == ["robin"]
    assert not_in.column("species").to_pylist() == ["robin"]


def test_aggregations_validate_function_and_type() -> None:
    """
    Test the closed set of reducers and their numeric requirements.
    """
    assert normalize_aggregation(("weight", "MEAN")) == mean("weight")
    assert count().partial_specs() == [("__row__", "count")]
    assert mean("weight").partial_specs() == [("weight", "sum"), ("weight", "count")]

    with pytest.raises(UnsupportedPredicateError):
        Aggregation("median", "weight")
    with pytest.raises(UnsupportedPredicateError):
        Aggregation("sum")
    with pytest.raises(SchemaMismatchError):
        mean("species").check_type(pa.string())
