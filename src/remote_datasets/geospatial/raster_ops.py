"""Lazy raster references: header-only opens, window crops, resampling and band math."""

import math
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from typing import Any

import numpy as np
import rasterio
import rasterio.warp
from affine import Affine
from dagster import get_dagster_logger
from numpy.typing import NDArray
from rasterio.crs import CRS
from rasterio.enums import Resampling
from rasterio.errors import RasterioIOError
from rasterio.windows import Window, from_bounds
from rasterio.windows import bounds as window_bounds
from rasterio.windows import transform as window_transform
from shapely.geometry import box, mapping, shape

from remote_datasets.config.constants import (
    DEFAULT_HTTP_TIMEOUT,
    GDAL_ENV_DEFAULTS,
    VSI_CURL_PREFIX,
    VSI_S3_PREFIX,
)
from remote_datasets.exceptions import EmptyResultError, NetworkError, SchemaMismatchError
from remote_datasets.geospatial.stac_ops import parse_bbox

logger = get_dagster_logger()

# Window edges within this many pixels of an integer snap to it.
_PIXEL_TOLERANCE = 1e-6


def to_vsi_path(url: str) -> str:
    """Wrap a URL in the GDAL virtual filesystem prefix for ranged reads.

    :param url: Asset URL or local path
    :returns: Path GDAL opens without downloading the whole file
    """
    if url.startswith(("/vsi", "\\vsi")):
        return url
    if url.startswith(("https://", "http://")):
        return f"{VSI_CURL_PREFIX}{url}"
    if url.startswith("s3://"):
        return f"{VSI_S3_PREFIX}{url[len('s3://'):]}"
    return url


def transform_bbox(bbox: Sequence[float], src_crs: Any, dst_crs: Any) -> tuple[float, float, float, float]:
    """Reproject a bounding box; callers do this before :meth:`RasterRef.crop`.

    :param bbox: (west, south, east, north) in ``src_crs``
    :param src_crs: Source CRS
    :param dst_crs: Target CRS, usually ``raster.crs``
    :returns: Bounds of the reprojected box in ``dst_crs``
    """
    geom = mapping(box(*parse_bbox(bbox)))
    transformed = rasterio.warp.transform_geom(src_crs=src_crs, dst_crs=dst_crs, geom=geom)
    west, south, east, north = shape(transformed).bounds
    return west, south, east, north


def gdal_env(timeout: float = DEFAULT_HTTP_TIMEOUT, **options: Any) -> rasterio.Env:
    """GDAL configuration applied to every raster open.

    :param timeout: HTTP timeout in seconds
    :param options: Extra GDAL configuration options
    :returns: rasterio.Env context manager
    """
    config = {**GDAL_ENV_DEFAULTS, "GDAL_HTTP_TIMEOUT": str(int(math.ceil(timeout))), **options}
    return rasterio.Env(**config)


@dataclass(frozen=True)
class RasterHeader:
    """Georeferencing and pixel layout read from a raster header."""

    crs: CRS | None
    transform: Affine
    width: int
    height: int
    count: int
    dtype: str
    nodata: float | None

    @classmethod
    def from_dataset(cls, src: Any) -> "RasterHeader":
        return cls(
            crs=src.crs,
            transform=src.transform,
            width=src.width,
            height=src.height,
            count=src.count,
            dtype=src.dtypes[0],
            nodata=src.nodata,
        )

    @property
    def res(self) -> tuple[float, float]:
        return abs(self.transform.a), abs(self.transform.e)


def _snap(value: float, op: Callable[[float], float]) -> int:
    nearest = round(value)
    if abs(value - nearest) < _PIXEL_TOLERANCE:
        return int(nearest)
    return int(op(value))


class _Computable:
    """Shared surface of lazy rasters: grid properties, compute and render."""

    @property
    def shape(self) -> tuple[int, int]:
        raise NotImplementedError

    @property
    def transform(self) -> Affine:
        raise NotImplementedError

    @property
    def crs(self) -> CRS | None:
        raise NotImplementedError

    @property
    def res(self) -> tuple[float, float]:
        return abs(self.transform.a), abs(self.transform.e)

    @property
    def bounds(self) -> tuple[float, float, float, float]:
        height, width = self.shape
        west, south, east, north = window_bounds(Window(0, 0, width, height), self.transform)
        return west, south, east, north

    def compute(self) -> NDArray[np.floating]:
        raise NotImplementedError

    @staticmethod
    def combine(rasters: Sequence["_Computable"], fn: Callable[..., Any]) -> "CombinedRaster":
        """Same as the module-level :func:`combine`."""
        return combine(rasters, fn)

    def render(self, path: str, driver: str = "GTiff") -> str:
        """Compute and write the result as a single-band raster.

        :param path: Output path
        :param driver: GDAL driver name
        :returns: Output path
        """
        data = self.compute()
        height, width = data.shape
        if height == 0 or width == 0:
            raise EmptyResultError(f"Nothing to render: the raster window is empty ({height}x{width})")
        with rasterio.open(
            path,
            "w",
            driver=driver,
            height=height,
            width=width,
            count=1,
            dtype="float32",
            crs=self.crs,
            transform=self.transform,
            nodata=np.nan,
        ) as dst:
            dst.write(data, 1)
        logger.info(f"Rendered {height}x{width} raster to {path}")
        return path


@dataclass(frozen=True)
class RasterRef(_Computable):
    """Lazily opened band of one remote raster.

    Only the header has been read. :meth:`crop` narrows the pixel window;
    :meth:`compute` reads exactly that window.
    """

    path: str
    band: int
    header: RasterHeader
    window: Window | None = None
    timeout: float = DEFAULT_HTTP_TIMEOUT
    env_options: tuple[tuple[str, Any], ...] = ()

    @property
    def full_window(self) -> Window:
        return Window(0, 0, self.header.width, self.header.height)

    @property
    def shape(self) -> tuple[int, int]:
        window = self.window if self.window is not None else self.full_window
        return int(window.height), int(window.width)

    @property
    def transform(self) -> Affine:
        if self.window is None:
            return self.header.transform
        return window_transform(self.window, self.header.transform)

    @property
    def crs(self) -> CRS | None:
        return self.header.crs

    def crop(self, bbox: Sequence[float]) -> "RasterRef":
        """Narrow to the pixels covering a box in the raster's own CRS.

        The box is not reprojected; use :func:`transform_bbox` first. A box
        outside the raster yields an empty window.

        :param bbox: (west, south, east, north) in ``self.crs``
        :returns: New RasterRef
        """
        west, south, east, north = parse_bbox(bbox)
        requested = from_bounds(west, south, east, north, transform=self.header.transform)
        base = self.window if self.window is not None else self.full_window

        col_start = max(_snap(requested.col_off, math.floor), int(base.col_off))
        row_start = max(_snap(requested.row_off, math.floor), int(base.row_off))
        col_stop = min(_snap(requested.col_off + requested.width, math.ceil), int(base.col_off + base.width))
        row_stop = min(_snap(requested.row_off + requested.height, math.ceil), int(base.row_off + base.height))

        window = Window(col_start, row_start, max(col_stop - col_start, 0), max(row_stop - row_start, 0))
        if window.width == 0 or window.height == 0:
            logger.warning(f"Crop {bbox} does not overlap {self.path}; check that it is in {self.crs}")
        return replace(self, window=window)

    def resample_to(self, target: _Computable, resampling: Resampling = Resampling.bilinear) -> "ResampledRaster":
        """Warp this band onto the grid of another raster, lazily.

        Used when bands have different resolutions (e.g., NIR 10m vs SWIR 20m).
        Nothing is read until :meth:`compute`, which reads only the window
        covering the target.

        :param target: Raster whose grid (CRS, transform, shape) to match
        :param resampling: Resampling method
        :returns: ResampledRaster on the target grid
        """
        if self.crs is None or target.crs is None:
            raise SchemaMismatchError(f"Cannot resample {self.path}: both rasters need a CRS")
        return ResampledRaster(
            source=self,
            target_crs=target.crs,
            target_transform=target.transform,
            target_shape=target.shape,
            resampling=resampling,
        )

    def compute(self) -> NDArray[np.floating]:
        """Read the current window as float32, nodata as NaN.

        :returns: Read-only 2D array
        """
        height, width = self.shape
        if height == 0 or width == 0:
            data = np.empty((height, width), dtype="float32")
        else:
            try:
                with gdal_env(self.timeout, **dict(self.env_options)), rasterio.open(self.path) as src:
                    data = src.read(self.band, window=self.window).astype("float32")
            except RasterioIOError as e:
                raise NetworkError(f"Reading {self.path} failed: {e}") from e
            if self.header.nodata is not None and not np.isnan(self.header.nodata):
                data[data == self.header.nodata] = np.nan
            logger.debug(f"Read {height}x{width} window of band {self.band} from {self.path}")
        data.flags.writeable = False
        return data


@dataclass(frozen=True)
class CombinedRaster(_Computable):
    """Pixel-wise function over aligned rasters, evaluated on compute."""

    sources: tuple[_Computable, ...]
    fn: Callable[..., Any]

    @property
    def shape(self) -> tuple[int, int]:
        return self.sources[0].shape

    @property
    def transform(self) -> Affine:
        return self.sources[0].transform

    @property
    def crs(self) -> CRS | None:
        return self.sources[0].crs

    def compute(self) -> NDArray[np.floating]:
        """Compute every source, then apply the function.

        :returns: Read-only 2D float32 array
        """
        arrays = [source.compute() for source in self.sources]
        with np.errstate(divide="ignore", invalid="ignore"):
            result = np.asarray(self.fn(*arrays), dtype="float32")
        if result.shape != self.shape:
            raise SchemaMismatchError(f"Band math returned shape {result.shape}, expected {self.shape}")
        result.flags.writeable = False
        return result


@dataclass(frozen=True)
class ResampledRaster(_Computable):
    """A raster band warped onto another grid when computed."""

    source: RasterRef
    target_crs: CRS
    target_transform: Affine
    target_shape: tuple[int, int]
    resampling: Resampling = Resampling.bilinear

    @property
    def shape(self) -> tuple[int, int]:
        return self.target_shape

    @property
    def transform(self) -> Affine:
        return self.target_transform

    @property
    def crs(self) -> CRS | None:
        return self.target_crs

    def compute(self) -> NDArray[np.floating]:
        """Read the source pixels covering the target and reproject them.

        :returns: Read-only 2D float32 array on the target grid
        """
        destination = np.full(self.shape, np.nan, dtype="float32")
        if destination.size > 0:
            west, south, east, north = self.bounds
            if self.source.crs != self.target_crs:
                west, south, east, north = transform_bbox((west, south, east, north), self.target_crs, self.source.crs)
            # One source pixel of margin so edge kernels see real neighbours
            pad = max(self.source.res)
            window = self.source.crop((west - pad, south - pad, east + pad, north + pad))
            source_data = np.array(window.compute(), dtype="float32")
            if source_data.size > 0:
                rasterio.warp.reproject(
                    source=source_data,
                    destination=destination,
                    src_transform=window.transform,
                    src_crs=window.crs,
                    dst_transform=self.target_transform,
                    dst_crs=self.target_crs,
                    src_nodata=np.nan,
                    dst_nodata=np.nan,
                    resampling=self.resampling,
                )
            logger.debug(
                f"Resampled {source_data.shape} window of {self.source.path} to {self.shape} ({self.resampling.name})"
            )
        destination.flags.writeable = False
        return destination

def open_raster(
    asset_url: str,
    band: int = 1,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
    env_options: dict[str, Any] | None = None,
) -> RasterRef:
    """Open a raster asset lazily, reading its header only.

    :param asset_url: HTTPS URL, s3:// URL or local path
    :param band: 1-based band index
    :param timeout: HTTP timeout in seconds
    :param env_options: Extra GDAL configuration options
    :returns: RasterRef instance
    """
    path = to_vsi_path(asset_url)
    options = env_options or {}
    try:
        with gdal_env(timeout, **options), rasterio.open(path) as src:
            header = RasterHeader.from_dataset(src)
    except RasterioIOError as e:
        raise NetworkError(f"Opening {path} failed: {e}") from e
    if not 1 <= band <= header.count:
        raise SchemaMismatchError(f"{path} has {header.count} band(s); band {band} does not exist")
    logger.debug(f"Opened {path}: {header.width}x{header.height}, {header.crs}")
    return RasterRef(path=path, band=band, header=header, timeout=timeout, env_options=tuple(options.items()))


def same_grid(a: _Computable, b: _Computable) -> bool:
    """Whether two rasters share CRS, shape and pixel grid.

    Transforms are compared in pixel units, so a sub-pixel shift is a
    mismatch however large the projected coordinates are.
    """
    if a.shape != b.shape or a.crs != b.crs:
        return False
    tolerance = _PIXEL_TOLERANCE * min(min(a.res), min(b.res))
    return bool(np.allclose(tuple(a.transform)[:6], tuple(b.transform)[:6], rtol=0, atol=tolerance))


def combine(rasters: Sequence[_Computable], fn: Callable[..., Any]) -> CombinedRaster:
    """Apply ``fn`` pixel-wise across rasters on the same grid.

    :param rasters: Rasters sharing extent, resolution and CRS
    :param fn: Elementwise numeric function taking one array per raster
    :returns: CombinedRaster instance
    :raises SchemaMismatchError: If the rasters are not aligned
    """
    sources = tuple(rasters)
    if not sources:
        raise EmptyResultError("combine() needs at least one raster")
    reference = sources[0]
    for other in sources[1:]:
        if not same_grid(reference, other):
            raise SchemaMismatchError(
                f"Raster extents do not match: {reference.shape} at {reference.bounds} ({reference.crs}) "
                f"vs {other.shape} at {other.bounds} ({other.crs})"
            )
    return CombinedRaster(sources=sources, fn=fn)


def ndvi(red: _Computable, nir: _Computable) -> CombinedRaster:
    """Normalized Difference Vegetation Index from red and NIR bands."""
    return combine([red, nir], lambda r, n: (n - r) / (n + r + 1e-6))


def ndmi(nir: _Computable, swir: _Computable) -> CombinedRaster:
    """Normalized Difference Moisture Index from NIR and SWIR bands."""
    return combine([nir, swir], lambda n, s: (n - s) / (n + s + 1e-6))
