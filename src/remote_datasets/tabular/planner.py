"""Planning and execution for lazy datasets.

A plan splits the operation chain at the first aggregation. Filters and
projections ahead of it run during the scan: comparisons on partition keys
prune whole files before they are opened, only the needed columns are
decoded, and row filters are applied per file. Aggregations run partially per
file and the partials are merged. Anything after the first aggregation runs in
memory on the merged result.
"""

from dataclasses import dataclass
from functools import reduce
from typing import TYPE_CHECKING, Any

import numpy as np
import pyarrow as pa
import pyarrow.compute as pc
import pyarrow.parquet as pq
from dagster import get_dagster_logger

from remote_datasets.exceptions import SchemaMismatchError
from remote_datasets.storage import network_errors
from remote_datasets.tabular.expressions import ROW_MARKER, Aggregate, Comparison, Filter, Operation, Project

if TYPE_CHECKING:
    from remote_datasets.tabular.dataset import Fragment, LazyDataset

logger = get_dagster_logger()

GROUP_MARKER = "__group__"

_MERGE_FUNCTIONS = {"sum": "sum", "count": "sum", "min": "min", "max": "max"}


@dataclass(frozen=True)
class ScanPlan:
    """What a materialization will read and compute."""

    kept: tuple["Fragment", ...]
    pruned: tuple["Fragment", ...]
    partition_predicates: tuple[Comparison, ...]
    row_predicates: tuple[Comparison, ...]
    file_columns: tuple[str, ...]
    partition_columns: tuple[str, ...]
    output_columns: tuple[str, ...]
    aggregate: Aggregate | None
    remaining: tuple[Operation, ...]


def build_plan(dataset: "LazyDataset") -> ScanPlan:
    """Derive the scan plan of a dataset without any I/O.

    :param dataset: Lazy dataset
    :returns: ScanPlan instance
    """
    ops = dataset.operations
    split = next((i for i, op in enumerate(ops) if isinstance(op, Aggregate)), len(ops))
    scan_ops = ops[:split]
    aggregate = ops[split] if split < len(ops) else None
    remaining = ops[split + 1 :]

    partition_names = set(dataset.partition_names)
    predicates = [term for op in scan_ops if isinstance(op, Filter) for term in op.predicates]
    partition_predicates = tuple(p for p in predicates if p.column in partition_names)
    row_predicates = tuple(p for p in predicates if p.column not in partition_names)

    output_columns: tuple[str, ...] = tuple(dataset.schema.names)
    for op in scan_ops:
        if isinstance(op, Project):
            output_columns = op.columns

    if isinstance(aggregate, Aggregate):
        needed = list(aggregate.keys) + [agg.column for _, agg in aggregate.aggregations if agg.column]
    else:
        needed = list(output_columns)
    needed = list(dict.fromkeys(needed + [p.column for p in row_predicates]))

    file_names = set(dataset.file_schema.names)
    kept: list["Fragment"] = []
    pruned: list["Fragment"] = []
    for fragment in dataset.fragments:
        values = fragment.values
        if all(p.evaluate(values.get(p.column)) for p in partition_predicates):
            kept.append(fragment)
        else:
            pruned.append(fragment)

    return ScanPlan(
        kept=tuple(kept),
        pruned=tuple(pruned),
        partition_predicates=partition_predicates,
        row_predicates=row_predicates,
        file_columns=tuple(c for c in needed if c in file_names),
        partition_columns=tuple(c for c in needed if c in partition_names),
        output_columns=output_columns,
        aggregate=aggregate if isinstance(aggregate, Aggregate) else None,
        remaining=remaining,
    )


def _scan_schema(dataset: "LazyDataset", plan: ScanPlan) -> pa.Schema:
    fields = [dataset.file_schema.field(name) for name in plan.file_columns]
    if not plan.file_columns:
        fields.append(pa.field(ROW_MARKER, pa.int8()))
    fields.extend(dataset.partition_schema.field(name) for name in plan.partition_columns)
    return pa.schema(fields)


def _constant(value: Any, data_type: pa.DataType, length: int) -> pa.Array:
    if value is None:
        return pa.nulls(length, type=data_type)
    return pa.array([value] * length, type=data_type)


def _row_marker(length: int) -> pa.Array:
    return pa.array(np.zeros(length, dtype=np.int8))


def read_fragment(dataset: "LazyDataset", fragment: "Fragment", plan: ScanPlan, schema: pa.Schema) -> pa.Table:
    """Read the planned columns of one file and attach its partition columns.

    :param dataset: Lazy dataset
    :param fragment: File to read
    :param plan: Scan plan
    :param schema: Expected scan schema
    :returns: Table conforming to the scan schema
    """
    handle = dataset.source.handle
    with network_errors(f"Read s3://{handle.config.bucket}/{fragment.key}"), handle.open_input(fragment.key) as source:
        parquet_file = pq.ParquetFile(source)
        if plan.file_columns:
            try:
                table = parquet_file.read(columns=list(plan.file_columns)).select(list(plan.file_columns))
            except (KeyError, pa.ArrowInvalid) as e:
                raise SchemaMismatchError(f"{fragment.key} does not provide columns {list(plan.file_columns)}: {e}") from e
        else:
            table = pa.table({ROW_MARKER: _row_marker(parquet_file.metadata.num_rows)})

    values = fragment.values
    for name in plan.partition_columns:
        data_type = schema.field(name).type
        table = table.append_column(pa.field(name, data_type), _constant(values.get(name), data_type, table.num_rows))

    try:
        return table.cast(schema)
    except (pa.ArrowInvalid, pa.ArrowNotImplementedError, ValueError) as e:
        raise SchemaMismatchError(f"{fragment.key} does not match the dataset schema: {e}") from e


def apply_filter(table: pa.Table, predicates: tuple[Comparison, ...]) -> pa.Table:
    """Keep rows matching every predicate; null comparisons drop the row.

    :param table: Input table
    :param predicates: Conjunction of comparisons
    :returns: Filtered table
    """
    if not predicates:
        return table
    mask = reduce(pc.and_, (p.mask(table) for p in predicates))
    return table.filter(mask)


def _partial_specs(aggregate: Aggregate) -> list[tuple[str, str]]:
    specs = [spec for _, agg in aggregate.aggregations for spec in agg.partial_specs()]
    return list(dict.fromkeys(specs))


def _group_keys(aggregate: Aggregate) -> list[str]:
    return list(aggregate.keys) or [GROUP_MARKER]


def partial_aggregate(table: pa.Table, aggregate: Aggregate) -> pa.Table:
    """Reduce one piece of input to mergeable partials.

    :param table: Input rows
    :param aggregate: Aggregation descriptor
    :returns: Table of group keys and partial aggregates
    """
    if not aggregate.keys:
        table = table.append_column(GROUP_MARKER, _row_marker(table.num_rows))
    if ROW_MARKER not in table.column_names:
        table = table.append_column(ROW_MARKER, _row_marker(table.num_rows))
    specs = _partial_specs(aggregate)
    keys = _group_keys(aggregate)
    result = table.group_by(keys, use_threads=False).aggregate(specs)
    return result.select(keys + [f"{column}_{func}" for column, func in specs])


def merge_partials(partials: list[pa.Table], aggregate: Aggregate) -> pa.Table:
    """Merge partial aggregates into final results.

    :param partials: Outputs of :func:`partial_aggregate`
    :param aggregate: Aggregation descriptor
    :returns: Table of group keys followed by the named aggregations
    """
    combined = pa.concat_tables(partials)
    keys = _group_keys(aggregate)
    merge_specs = [(f"{column}_{func}", _MERGE_FUNCTIONS[func]) for column, func in _partial_specs(aggregate)]
    merged = combined.group_by(keys, use_threads=False).aggregate(merge_specs)

    def merged_column(column: str, func: str) -> Any:
        return merged[f"{column}_{func}_{_MERGE_FUNCTIONS[func]}"]

    columns: dict[str, Any] = {key: merged[key] for key in aggregate.keys}
    for name, agg in aggregate.aggregations:
        if agg.func == "mean":
            total = pc.cast(merged_column(agg.column or "", "sum"), pa.float64())
            rows = pc.cast(merged_column(agg.column or "", "count"), pa.float64())
            columns[name] = pc.divide(total, rows)
        else:
            column, func = agg.partial_specs()[0]
            columns[name] = merged_column(column, func)
    result = pa.table(columns)

    # Without keys there is always exactly one group: counts are 0, the rest null
    if not aggregate.keys and result.num_rows == 0:
        result = pa.table(
            {
                name: pa.array([0 if agg.func == "count" else None], type=result.schema.field(name).type)
                for name, agg in aggregate.aggregations
            }
        )
    return result


def apply_operation(table: pa.Table, op: Operation) -> pa.Table:
    """Run one operation on an in-memory table.

    :param table: Input table
    :param op: Operation descriptor
    :returns: Resulting table
    """
    if isinstance(op, Filter):
        return apply_filter(table, op.predicates)
    if isinstance(op, Project):
        return table.select(list(op.columns))
    return merge_partials([partial_aggregate(table, op)], op)


def execute(dataset: "LazyDataset") -> pa.Table:
    """Materialize a lazy dataset.

    :param dataset: Lazy dataset
    :returns: In-memory table
    """
    plan = build_plan(dataset)
    logger.info(
        f"Materializing {dataset.source.uri}: reading {len(plan.kept)} of {len(dataset.fragments)} file(s), "
        f"columns {list(plan.file_columns)}"
    )
    for fragment in plan.pruned:
        logger.debug(f"Pruned {fragment.key}")

    schema = _scan_schema(dataset, plan)
    pieces: list[pa.Table] = []
    for fragment in plan.kept:
        table = apply_filter(read_fragment(dataset, fragment, plan, schema), plan.row_predicates)
        if plan.aggregate is not None:
            pieces.append(partial_aggregate(table, plan.aggregate))
        else:
            pieces.append(table.select(list(plan.output_columns)))

    if not pieces:
        empty = schema.empty_table()
        if plan.aggregate is not None:
            pieces.append(partial_aggregate(empty, plan.aggregate))
        else:
            pieces.append(empty.select(list(plan.output_columns)))

    if plan.aggregate is not None:
        result = merge_partials(pieces, plan.aggregate)
    else:
        result = pa.concat_tables(pieces)

    for op in plan.remaining:
        result = apply_operation(result, op)
    logger.info(f"Materialized {result.num_rows} row(s) from {dataset.source.uri}")
    return result
