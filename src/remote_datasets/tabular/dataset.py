"""Lazy, partition-aware parquet datasets over a remote store."""

from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import Any
from urllib.parse import unquote

import pyarrow as pa
import pyarrow.parquet as pq
from dagster import get_dagster_logger

from remote_datasets.config.constants import PARQUET_SUFFIXES
from remote_datasets.exceptions import SchemaMismatchError
from remote_datasets.models.models import PartitionField, PartitionScheme
from remote_datasets.storage import PathRef, network_errors
from remote_datasets.tabular.expressions import (
    Aggregate,
    Comparison,
    Filter,
    Operation,
    Project,
    normalize_aggregation,
    normalize_predicates,
)
from remote_datasets.tabular.planner import build_plan, execute

logger = get_dagster_logger()

_ARROW_TYPES: dict[str, pa.DataType] = {
    "string": pa.string(),
    "int64": pa.int64(),
    "float64": pa.float64(),
}


@dataclass(frozen=True)
class Fragment:
    """One parquet object and the partition values its path encodes."""

    key: str
    size: int | None
    partition_values: tuple[tuple[str, Any], ...] = ()

    @property
    def values(self) -> dict[str, Any]:
        return dict(self.partition_values)


def _is_data_file(key: str) -> bool:
    name = key.rsplit("/", 1)[-1]
    return name.endswith(PARQUET_SUFFIXES) and not name.startswith(("_", "."))


def _raw_partition_values(relative_key: str, scheme: PartitionScheme) -> dict[str, str]:
    """Read raw partition segments from a key relative to the dataset root.

    :param relative_key: Object key relative to the dataset root
    :param scheme: Partition scheme
    :returns: Partition name -> raw segment value
    """
    segments = [unquote(s) for s in relative_key.split("/")[:-1] if s]
    if scheme.flavor == "hive":
        pairs = (s.split("=", 1) for s in segments if "=" in s)
        names = set(scheme.names)
        return {name: value for name, value in pairs if name in names}

    raw: dict[str, str] = {}
    for partition_field, segment in zip(scheme.keys, segments):
        if scheme.flavor == "auto" and segment.startswith(f"{partition_field.name}="):
            segment = segment[len(partition_field.name) + 1 :]
        raw[partition_field.name] = segment
    return raw


def _infer_field(partition_field: PartitionField, raw_values: list[str]) -> PartitionField:
    if partition_field.type is not None:
        return partition_field
    try:
        for value in raw_values:
            int(value)
    except ValueError:
        return partition_field.model_copy(update={"type": "string"})
    return partition_field.model_copy(update={"type": "int64" if raw_values else "string"})


def resolve_partitions(
    keys: list[str], base_prefix: str, scheme: PartitionScheme
) -> tuple[PartitionScheme, list[tuple[tuple[str, Any], ...]]]:
    """Type the partition values encoded in each key.

    :param keys: Object keys relative to the bucket root
    :param base_prefix: Dataset root prefix
    :param scheme: Declared partition scheme
    :returns: Tuple of (scheme with resolved types, partition values per key)
    :raises SchemaMismatchError: In strict mode, for values that do not parse
    """
    raw_per_key = [_raw_partition_values(key[len(base_prefix) :], scheme) for key in keys]
    resolved = scheme.model_copy(
        update={
            "keys": tuple(
                _infer_field(f, [raw[f.name] for raw in raw_per_key if f.name in raw]) for f in scheme.keys
            )
        }
    )

    typed: list[tuple[tuple[str, Any], ...]] = []
    for key, raw in zip(keys, raw_per_key):
        values: list[tuple[str, Any]] = []
        for partition_field in resolved.keys:
            segment = raw.get(partition_field.name)
            value = None
            if segment is not None:
                try:
                    value = partition_field.parse(segment)
                except ValueError as e:
                    if resolved.strict:
                        raise SchemaMismatchError(
                            f"Partition value {segment!r} for {partition_field.name!r} in {key} "
                            f"is not a valid {partition_field.type}"
                        ) from e
                    logger.warning(f"Partition value {segment!r} in {key} is not a valid {partition_field.type}, using null")
            values.append((partition_field.name, value))
        typed.append(tuple(values))
    return resolved, typed


def open_dataset(path_ref: PathRef, partitioning: PartitionScheme | list[str] | tuple[str, ...] | None = None) -> "LazyDataset":
    """Open a lazy dataset over the parquet objects under a path.

    Lists the objects once and reads the footer of the first file for the
    schema. No row data is read.

    :param path_ref: Location resolved by RemoteHandle.resolve_path
    :param partitioning: PartitionScheme or partition key names in directory order
    :returns: LazyDataset instance
    """
    if not isinstance(path_ref, PathRef):
        raise TypeError(
            f"open_dataset expects a PathRef from RemoteHandle.resolve_path, got {type(path_ref).__name__}"
        )
    if isinstance(partitioning, PartitionScheme):
        scheme = partitioning
    else:
        scheme = PartitionScheme.from_names(list(partitioning or []))

    handle = path_ref.handle
    objects = [obj for obj in handle.list_objects(path_ref.prefix) if _is_data_file(obj["Key"])]
    if not objects:
        raise SchemaMismatchError(f"No parquet files found under {path_ref.uri}")

    keys = [obj["Key"] for obj in objects]
    resolved, values = resolve_partitions(keys, path_ref.prefix, scheme)
    fragments = tuple(
        Fragment(key=obj["Key"], size=obj.get("Size"), partition_values=v) for obj, v in zip(objects, values)
    )

    with network_errors(f"Read footer of s3://{handle.config.bucket}/{fragments[0].key}"):
        with handle.open_input(fragments[0].key) as source:
            file_schema = pq.ParquetFile(source).schema_arrow

    partition_names = set(resolved.names)
    file_schema = pa.schema([f for f in file_schema if f.name not in partition_names])
    partition_schema = pa.schema([pa.field(f.name, _ARROW_TYPES[f.type or "string"]) for f in resolved.keys])

    logger.info(f"Opened dataset {path_ref.uri}: {len(fragments)} file(s), partitions {resolved.names}")
    return LazyDataset(
        source=path_ref,
        scheme=resolved,
        fragments=fragments,
        file_schema=file_schema,
        partition_schema=partition_schema,
    )


@dataclass(frozen=True)
class LazyDataset:
    """Deferred query over a partitioned parquet dataset.

    Every operation returns a new LazyDataset; nothing is read until
    :meth:`materialize`.
    """

    source: PathRef
    scheme: PartitionScheme
    fragments: tuple[Fragment, ...]
    file_schema: pa.Schema
    partition_schema: pa.Schema
    operations: tuple[Operation, ...] = ()

    def __repr__(self) -> str:
        return (
            f"LazyDataset({self.source.uri}, fragments={len(self.fragments)}, "
            f"operations={len(self.operations)}, columns={self.columns})"
        )

    @property
    def schema(self) -> pa.Schema:
        """Schema of the unmodified dataset: file columns then partition columns."""
        return pa.schema(list(self.file_schema) + list(self.partition_schema))

    @property
    def partition_names(self) -> list[str]:
        return self.scheme.names

    @property
    def column_types(self) -> dict[str, pa.DataType]:
        """Column name -> type after the operation chain."""
        types = {f.name: f.type for f in self.schema}
        for op in self.operations:
            if isinstance(op, Project):
                types = {name: types[name] for name in op.columns}
            elif isinstance(op, Aggregate):
                grouped = {name: types[name] for name in op.keys}
                for name, agg in op.aggregations:
                    grouped[name] = agg.result_type(types.get(agg.column) if agg.column else None)
                types = grouped
        return types

    @property
    def columns(self) -> list[str]:
        return list(self.column_types)

    def _with(self, op: Operation) -> "LazyDataset":
        return replace(self, operations=self.operations + (op,))

    def _check_columns(self, names: list[str] | tuple[str, ...]) -> dict[str, pa.DataType]:
        types = self.column_types
        unknown = [n for n in names if n not in types]
        if unknown:
            raise SchemaMismatchError(f"Unknown column(s) {unknown}; available: {list(types)}")
        return types

    def filter(self, *predicates: Any, **equalities: Any) -> "LazyDataset":
        """Keep rows matching every predicate.

        :param predicates: Comparisons built with ``col()`` or ``(column, op, value)`` tuples
        :param equalities: Column equalities, e.g. ``category="birds"``
        :returns: New LazyDataset
        :raises UnsupportedPredicateError: For predicates outside the supported set
        :raises SchemaMismatchError: For unknown columns or values of the wrong type
        """
        terms = normalize_predicates(predicates, equalities)
        if not terms:
            return self
        types = self._check_columns([t.column for t in terms])
        for term in terms:
            _check_value_types(term, types[term.column])
        return self._with(Filter(terms))

    def select(self, *columns: str) -> "LazyDataset":
        """Keep only the given columns.

        :param columns: Column names
        :returns: New LazyDataset
        """
        if not columns:
            raise SchemaMismatchError("select() needs at least one column")
        self._check_columns(columns)
        return self._with(Project(tuple(dict.fromkeys(columns))))

    def group_by(self, *keys: str) -> "GroupedDataset":
        """Group rows by key columns ahead of :meth:`GroupedDataset.summarize`.

        :param keys: Grouping column names
        :returns: GroupedDataset instance
        """
        self._check_columns(keys)
        return GroupedDataset(self, tuple(keys))

    def summarize(self, aggregations: Mapping[str, Any] | None = None, **named: Any) -> "LazyDataset":
        """Aggregate all rows into a single group.

        :param aggregations: Output name -> aggregation
        :returns: New LazyDataset
        """
        return self.group_by().summarize(aggregations, **named)

    def explain(self) -> str:
        """Describe the scan plan without reading anything.

        :returns: Plan text
        """
        plan = build_plan(self)
        lines = [f"Dataset {self.source.uri}"]
        lines.append(f"  fragments: {len(plan.kept)} kept, {len(plan.pruned)} pruned")
        kept_bytes = sum(fragment.size or 0 for fragment in plan.kept)
        lines.append(f"  kept object bytes: {kept_bytes}")
        for fragment in plan.pruned:
            lines.append(f"    pruned {fragment.key}")
        lines.append(f"  read columns: {plan.file_columns or '(row count only)'}")
        if plan.partition_predicates:
            lines.append(f"  partition filter: {' AND '.join(map(str, plan.partition_predicates))}")
        if plan.row_predicates:
            lines.append(f"  row filter: {' AND '.join(map(str, plan.row_predicates))}")
        if plan.aggregate is not None:
            lines.append(f"  aggregate by {list(plan.aggregate.keys)}: {[name for name, _ in plan.aggregate.aggregations]}")
        if plan.remaining:
            lines.append(f"  in-memory operations after scan: {len(plan.remaining)}")
        return "\n".join(lines)

    def materialize(self) -> pa.Table:
        """Plan and run the query, reading only the files and columns it needs.

        :returns: In-memory table
        """
        return execute(self)


@dataclass(frozen=True)
class GroupedDataset:
    """Dataset with pending grouping keys."""

    dataset: LazyDataset
    keys: tuple[str, ...]

    def summarize(self, aggregations: Mapping[str, Any] | None = None, **named: Any) -> LazyDataset:
        """Reduce each group with commutative, associative aggregations.

        :param aggregations: Output name -> Aggregation or ``(column, function)``
        :param named: Same as keyword arguments, e.g. ``total=sum_("count")``
        :returns: New LazyDataset
        """
        specs = {**(aggregations or {}), **named}
        if not specs:
            raise SchemaMismatchError("summarize() needs at least one aggregation")
        normalized = tuple((name, normalize_aggregation(spec)) for name, spec in specs.items())

        types = self.dataset.column_types
        clashes = [name for name, _ in normalized if name in self.keys]
        if clashes:
            raise SchemaMismatchError(f"Aggregation names clash with grouping keys: {clashes}")
        for name, agg in normalized:
            if agg.column is None:
                continue
            if agg.column not in types:
                raise SchemaMismatchError(f"Unknown column {agg.column!r} in aggregation {name!r}")
            agg.check_type(types[agg.column])
        return self.dataset._with(Aggregate(self.keys, normalized))


def _check_value_types(term: Comparison, data_type: pa.DataType) -> None:
    for value in term.values:
        try:
            pa.scalar(value, type=data_type)
        except (pa.ArrowInvalid, pa.ArrowTypeError, TypeError, ValueError) as e:
            raise SchemaMismatchError(
                f"Value {value!r} cannot be compared with column {term.column!r} of type {data_type}"
            ) from e

