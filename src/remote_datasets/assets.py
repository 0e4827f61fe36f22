"""Dagster assets for the tabular and raster workflows."""

from collections.abc import Callable
from typing import Any, Optional

import pyarrow as pa
from dagster import AssetExecutionContext, Config, Output, asset

from remote_datasets.config.constants import (
    CLOUD_COVER_PROPERTY,
    DEFAULT_HTTP_TIMEOUT,
    NDMI_BAND_PREFERENCES,
    NDVI_BAND_PREFERENCES,
)
from remote_datasets.connectors.s3_client import S3Resource
from remote_datasets.connectors.settings import SettingsResource
from remote_datasets.connectors.stac_client import STACResource
from remote_datasets.exceptions import SchemaMismatchError
from remote_datasets.geospatial.raster_ops import CombinedRaster, ndmi, ndvi, open_raster, same_grid, transform_bbox
from remote_datasets.geospatial.stac_ops import cloud_cover, search, select_asset_urls, select_best
from remote_datasets.models.models import CatalogItem, IndexStatistics
from remote_datasets.tabular.dataset import LazyDataset, open_dataset
from remote_datasets.tabular.expressions import count, max_, mean, min_, sum_


class PartitionSummaryConfig(Config):
    """Run configuration for :func:`partition_summary`."""

    dataset_path: str = ""
    partition_keys: list[str] = ["category", "year"]
    equalities: dict[str, str] = {}
    group_keys: list[str] = []
    value_column: Optional[str] = None


class SceneConfig(Config):
    """Run configuration for the spectral index assets."""

    bbox: list[float]
    time_range: str
    bbox_crs: str = "EPSG:4326"
    output_path: Optional[str] = None


@asset
def partition_summary(
    context: AssetExecutionContext,
    config: PartitionSummaryConfig,
    s3: S3Resource,
) -> Output[pa.Table]:
    """Summarize a partitioned parquet dataset.

    Filters on the configured equalities, which prune whole partitions when
    they name partition keys, then counts rows per group.

    :param context: Dagster context
    :param config: Run configuration
    :param s3: S3 resource
    :returns: Output with the summary table
    """
    handle = s3.get_handle()
    dataset = open_dataset(handle.resolve_path(config.dataset_path), config.partition_keys)

    query = _build_summary(dataset, config)
    context.log.debug(query.explain())
    table = query.materialize()
    context.log.info(f"Summarized {dataset.source.uri} into {table.num_rows} group(s)")

    return Output(
        table,
        metadata={
            "dataset": dataset.source.uri,
            "files": len(dataset.fragments),
            "groups": table.num_rows,
            "columns": ", ".join(table.column_names),
        },
    )


@asset
def scene_ndvi(
    context: AssetExecutionContext,
    config: SceneConfig,
    stac: STACResource,
    settings: SettingsResource,
) -> Output[Optional[IndexStatistics]]:
    """Compute NDVI over a box for the least cloudy scene in a time range.

    Uses Sentinel-2 red (B04) and near-infrared (B08) bands.

    :param context: Dagster context
    :param config: Run configuration
    :param stac: STAC resource
    :param settings: Settings resource
    :returns: Output with NDVI statistics
    """
    return _materialize_spectral_index(
        context=context,
        config=config,
        stac=stac,
        settings=settings,
        index_name="ndvi",
        band_preferences=NDVI_BAND_PREFERENCES,
        index_fn=ndvi,
    )


@asset
def scene_ndmi(
    context: AssetExecutionContext,
    config: SceneConfig,
    stac: STACResource,
    settings: SettingsResource,
) -> Output[Optional[IndexStatistics]]:
    """Compute NDMI over a box for the least cloudy scene in a time range.

    Uses Sentinel-2 near-infrared (B08) and shortwave infrared (B11/B12) bands.

    :param context: Dagster context
    :param config: Run configuration
    :param stac: STAC resource
    :param settings: Settings resource
    :returns: Output with NDMI statistics
    """
    return _materialize_spectral_index(
        context=context,
        config=config,
        stac=stac,
        settings=settings,
        index_name="ndmi",
        band_preferences=NDMI_BAND_PREFERENCES,
        index_fn=ndmi,
    )


def _coerce_equalities(dataset: LazyDataset, equalities: dict[str, str]) -> dict[str, Any]:
    """Cast string equalities from run config to the column types.

    :param dataset: Lazy dataset
    :param equalities: Column -> raw string value
    :returns: Column -> typed value
    """
    types = dataset.column_types
    typed: dict[str, Any] = {}
    for name, raw in equalities.items():
        if name not in types:
            typed[name] = raw
            continue
        try:
            typed[name] = pa.scalar(raw).cast(types[name]).as_py()
        except (pa.ArrowInvalid, pa.ArrowNotImplementedError) as e:
            raise SchemaMismatchError(f"Value {raw!r} for {name!r} is not a valid {types[name]}") from e
    return typed


def _build_summary(dataset: LazyDataset, config: PartitionSummaryConfig) -> LazyDataset:
    """Chain the filter and aggregation described by the run config.

    :param dataset: Lazy dataset
    :param config: Run configuration
    :returns: Lazy summary
    """
    filtered = dataset.filter(**_coerce_equalities(dataset, config.equalities))

    aggregations: dict[str, Any] = {"rows": count()}
    if config.value_column:
        column = config.value_column
        aggregations.update(
            {
                f"{column}_sum": sum_(column),
                f"{column}_mean": mean(column),
                f"{column}_min": min_(column),
                f"{column}_max": max_(column),
            }
        )

    if config.group_keys:
        return filtered.group_by(*config.group_keys).summarize(aggregations)
    return filtered.summarize(aggregations)


def _create_error_output(index_name: str, error: str) -> Output[Optional[IndexStatistics]]:
    """Create error Output for a scene computation that could not run.

    :param index_name: Index name
    :param error: Error message
    :returns: Output with error metadata
    """
    return Output(
        None,
        metadata={
            "success": False,
            "error": error,
            f"{index_name}_computed": False,
        },
    )


def _find_best_item(
    context: AssetExecutionContext,
    stac_client: Any,
    collection: str,
    config: SceneConfig,
    index_name: str,
    cloud_cover_threshold: int,
) -> tuple[CatalogItem | None, Output[Optional[IndexStatistics]] | None]:
    """Search for scenes below the cloud cover threshold and keep the clearest.

    :param context: Dagster context
    :param stac_client: STAC client
    :param collection: Collection ID
    :param config: Run configuration
    :param index_name: Index name
    :param cloud_cover_threshold: Maximum cloud cover percentage
    :returns: Tuple of (item or None, error_output or None)
    """
    bbox = config.bbox
    if config.bbox_crs != "EPSG:4326":
        bbox = list(transform_bbox(bbox, config.bbox_crs, "EPSG:4326"))

    items = search(
        stac_client,
        collection,
        bbox,
        config.time_range,
        query={CLOUD_COVER_PROPERTY: {"lt": cloud_cover_threshold}},
    )
    if not items:
        context.log.warning(f"No {collection} items below {cloud_cover_threshold}% cloud cover for {config.time_range}")
        return None, _create_error_output(
            index_name=index_name,
            error=f"No {collection} items found for {config.time_range}",
        )

    item = select_best(items, cloud_cover, minimize=True)
    context.log.info(f"Selected {item.id} ({item.cloud_cover}% cloud cover) from {len(items)} item(s)")
    return item, None


def _prepare_band_urls(
    context: AssetExecutionContext,
    item: CatalogItem,
    band_preferences: dict[str, list[str]],
    index_name: str,
) -> tuple[dict[str, str] | None, Output[Optional[IndexStatistics]] | None]:
    """Select band URLs from a catalog item.

    :param context: Dagster context
    :param item: Catalog item
    :param band_preferences: Band preference mapping
    :param index_name: Index name
    :returns: Tuple of (band_urls or None, error_output or None)
    """
    try:
        return select_asset_urls(item, band_preferences), None
    except SchemaMismatchError as e:
        context.log.error(str(e))
        return None, _create_error_output(index_name=index_name, error=str(e))


def _build_index(
    band_urls: dict[str, str],
    config: SceneConfig,
    index_fn: Callable[..., CombinedRaster],
    timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> CombinedRaster:
    """Open the bands lazily, crop them to the box and combine them.

    The first band sets the grid. Bands on a different grid (e.g. 20m SWIR
    next to 10m NIR) are resampled onto it.

    :param band_urls: Band label -> href, in the argument order of ``index_fn``
    :param config: Run configuration
    :param index_fn: Band math, e.g. :func:`ndvi`
    :param timeout: HTTP timeout in seconds
    :returns: Lazy index raster
    """
    rasters: list[Any] = []
    for url in band_urls.values():
        raster = open_raster(url, timeout=timeout)
        cropped = raster.crop(transform_bbox(config.bbox, config.bbox_crs, raster.crs))
        if rasters and not same_grid(rasters[0], cropped):
            rasters.append(raster.resample_to(rasters[0]))
        else:
            rasters.append(cropped)
    return index_fn(*rasters)


def _materialize_spectral_index(
    context: AssetExecutionContext,
    config: SceneConfig,
    stac: STACResource,
    settings: SettingsResource,
    index_name: str,
    band_preferences: dict[str, list[str]],
    index_fn: Callable[..., CombinedRaster],
) -> Output[Optional[IndexStatistics]]:
    """Materialize a spectral index for the clearest scene.

    Searches the catalog, prepares band URLs, reads only the cropped windows
    and optionally renders the result.

    :param context: Dagster context
    :param config: Run configuration
    :param stac: STAC resource
    :param settings: Settings resource
    :param index_name: Index name (e.g., "ndvi", "ndmi")
    :param band_preferences: Band preference mapping
    :param index_fn: Band math function
    :returns: Output with index statistics
    """
    stac_client = stac.create_client()
    item, error_output = _find_best_item(
        context,
        stac_client,
        settings.stac_collection,
        config,
        index_name,
        cloud_cover_threshold=settings.get_cloud_cover_threshold(),
    )
    if error_output is not None:
        return error_output

    assert item is not None, "Unexpected: item is None after successful search"

    band_urls, error_output = _prepare_band_urls(context, item, band_preferences, index_name)
    if error_output is not None:
        return error_output

    assert band_urls is not None, "Unexpected: band_urls is None after successful preparation"

    try:
        index = _build_index(band_urls, config, index_fn, timeout=settings.http_timeout)
    except SchemaMismatchError as e:
        context.log.error(str(e))
        return _create_error_output(index_name=index_name, error=str(e))
    statistics = IndexStatistics.from_array(index_name, item.id, index.compute())
    context.log.info(f"{index_name.upper()} for {item.id} computed over {index.shape[0]}x{index.shape[1]} pixels")

    metadata: dict[str, Any] = {
        "success": True,
        "error": None,
        f"{index_name}_computed": True,
        "item_id": item.id,
        "mean": statistics.mean,
        "valid_pixel_count": statistics.valid_pixel_count,
    }
    if config.output_path:
        metadata["output_path"] = index.render(config.output_path)

    return Output(statistics, metadata=metadata)
