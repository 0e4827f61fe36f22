"""STAC operations for searching items and selecting assets."""

import math
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime
from typing import Any

from dagster import get_dagster_logger
from pystac_client.exceptions import APIError
from requests.exceptions import RequestException

from remote_datasets.config.constants import CLOUD_COVER_PROPERTY
from remote_datasets.exceptions import ConfigurationError, EmptyResultError, NetworkError, SchemaMismatchError
from remote_datasets.models.models import CatalogItem

logger = get_dagster_logger()

BBox = tuple[float, float, float, float]


def parse_bbox(bbox: Sequence[float]) -> BBox:
    """Validate a (west, south, east, north) bounding box.

    :param bbox: Four coordinates
    :returns: Bounding box as a tuple of floats
    :raises ConfigurationError: If the box is malformed
    """
    try:
        values = tuple(float(v) for v in bbox)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Bounding box must hold four numbers, got {bbox!r}") from e
    if len(values) != 4 or not all(math.isfinite(v) for v in values):
        raise ConfigurationError(f"Bounding box must hold four finite numbers, got {bbox!r}")
    west, south, east, north = values
    if west > east or south > north:
        raise ConfigurationError(f"Bounding box must be ordered (west, south, east, north), got {bbox!r}")
    return west, south, east, north


def _parse_instant(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def parse_time_range(time_range: str) -> str:
    """Validate an ISO-8601 ``start/end`` range; ``..`` leaves an end open.

    :param time_range: Range string, e.g. ``2023-06-01/2023-06-30``
    :returns: The validated range string
    :raises ConfigurationError: If the range is malformed
    """
    parts = time_range.split("/") if isinstance(time_range, str) else []
    if len(parts) != 2 or parts == ["..", ".."]:
        raise ConfigurationError(f"Time range must be 'start/end', got {time_range!r}")
    try:
        instants = [_parse_instant(p) for p in parts if p != ".."]
    except ValueError as e:
        raise ConfigurationError(f"Time range {time_range!r} is not ISO-8601") from e
    if len(instants) == 2:
        start, end = instants
        try:
            ends_first = start > end
        except TypeError as e:
            raise ConfigurationError(f"Time range {time_range!r} mixes aware and naive instants") from e
        if ends_first:
            raise ConfigurationError(f"Time range {time_range!r} ends before it starts")
    return time_range


def search(
    stac_client: Any,
    collection_id: str,
    bbox: Sequence[float],
    time_range: str,
    query: dict[str, Any] | None = None,
    limit: int | None = None,
) -> list[CatalogItem]:
    """Search a collection for items intersecting a box and time range.

    Results keep the order the service returns; callers wanting a best match
    should use :func:`select_best`.

    :param stac_client: STAC client
    :param collection_id: Collection ID, e.g. ``sentinel-2-l2a``
    :param bbox: (west, south, east, north)
    :param time_range: ISO-8601 ``start/end`` range
    :param query: Optional STAC query extension filter
    :param limit: Optional maximum number of items
    :returns: List of CatalogItem
    """
    box = parse_bbox(bbox)
    datetime_range = parse_time_range(time_range)
    try:
        results = stac_client.search(
            collections=[collection_id],
            bbox=list(box),
            datetime=datetime_range,
            query=query,
            max_items=limit,
        )
        items = [CatalogItem.from_pystac(item) for item in results.items()]
    except (APIError, RequestException) as e:
        raise NetworkError(f"STAC search on {collection_id} failed: {e}") from e

    logger.info(f"Found {len(items)} item(s) in {collection_id} for {box} {datetime_range}")
    return items


def cloud_cover(item: CatalogItem) -> float:
    """Cloud cover percentage of an item.

    :param item: Catalog item
    :returns: Cloud cover
    :raises SchemaMismatchError: If the item carries no cloud cover
    """
    value = item.cloud_cover
    if value is None:
        raise SchemaMismatchError(f"Item {item.id} has no {CLOUD_COVER_PROPERTY} property")
    return value


def select_best(
    items: Iterable[CatalogItem],
    key_fn: Callable[[CatalogItem], Any] | str,
    minimize: bool = True,
) -> CatalogItem:
    """Pick the item with the smallest (or largest) metadata value.

    Ties resolve to the earliest item.

    :param items: Candidate items
    :param key_fn: Callable returning a scalar, or a property name
    :param minimize: Select the minimum if True, the maximum otherwise
    :returns: Selected item
    :raises EmptyResultError: If there are no candidates
    """
    candidates = list(items)
    if not candidates:
        raise EmptyResultError("Cannot select the best of zero items")

    if isinstance(key_fn, str):
        property_name = key_fn

        def extract(item: CatalogItem) -> Any:
            if item.properties.get(property_name) is None:
                raise SchemaMismatchError(f"Item {item.id} has no {property_name!r} property")
            return item.properties[property_name]

    else:
        extract = key_fn

    keys = [extract(item) for item in candidates]
    if minimize:
        best = min(range(len(candidates)), key=lambda i: keys[i])
    else:
        best = max(range(len(candidates)), key=lambda i: (keys[i], -i))
    logger.debug(f"Selected {candidates[best].id} with key {keys[best]!r} from {len(candidates)} item(s)")
    return candidates[best]


def select_asset_urls(
    item: CatalogItem,
    band_preferences: dict[str, list[str]],
    sign: Callable[[str], str] | None = None,
) -> dict[str, str]:
    """Resolve each logical band to the first available asset href.

    :param item: Catalog item
    :param band_preferences: Band label -> candidate asset keys in preference order
    :param sign: Optional href signer, e.g. ``planetary_computer.sign``
    :returns: Band label -> href
    :raises SchemaMismatchError: If a band has no matching asset
    """
    urls: dict[str, str] = {}
    missing = []

    for label, candidates in band_preferences.items():
        for asset_key in candidates:
            if asset_key in item.assets:
                href = item.assets[asset_key]
                urls[label] = sign(href) if sign else href
                break
        else:
            missing.append(label)

    if missing:
        raise SchemaMismatchError(
            f"Could not find required bands {missing} in item {item.id}. Available assets: {list(item.assets)}"
        )
    return urls
