from pathlib import Path
from typing import Any

import numpy as np
import pytest
import rasterio
from affine import Affine
from numpy.typing import NDArray

from remote_datasets.exceptions import EmptyResultError, NetworkError, SchemaMismatchError
from remote_datasets.geospatial import raster_ops


def _write_geotiff(
    path: Path,
    data: NDArray[np.floating],
    crs: str = "EPSG:4326",
    transform: Affine | None = None,
    nodata: float | None = None,
) -> str:
    """
    Helper function to write a GeoTIFF file for testing.

    Args:
      path: Path to write the GeoTIFF
      data: NumPy array with raster data
      crs: Coordinate reference system
      transform: Affine transform (defaults to one-unit pixels from the origin, y decreasing)
      nodata: Optional nodata value

    Returns:
      Path as a string
    """
    height, width = data.shape
    transform = transform or Affine.translation(0, 0) * Affine.scale(1, -1)
    with rasterio.open(
        path,
        "w",
        driver="GTiff",
        height=height,
        width=width,
        count=1,
        dtype=data.dtype,
        crs=crs,
        transform=transform,
        nodata=nodata,
    ) as dst:
        dst.write(data, 1)
    return str(path)


@pytest.fixture
def grid() -> NDArray[np.floating]:
    return np.arange(16, dtype="float32").reshape(4, 4)


def test_to_vsi_path_wraps_remote_urls() -> None:
    """
    Test the virtual filesystem prefixes used for range reads.
    """
    assert raster_ops.to_vsi_path("https://host/a/B04.tif") == "/vsicurl/https://host/a/B04.tif"
    assert raster_ops.to_vsi_path("http://host/B04.tif") == "/vsicurl/http://host/B04.tif"
    assert raster_ops.to_vsi_path("s3://bucket/key/B04.tif") == "/vsis3/bucket/key/B04.tif"
    assert raster_ops.to_vsi_path("/vsicurl/https://host/B04.tif") == "/vsicurl/https://host/B04.tif"
    assert raster_ops.to_vsi_path("/tmp/B04.tif") == "/tmp/B04.tif"


def test_open_raster_reads_header(tmp_path: Path, grid: NDArray[np.floating]) -> None:
    """
    Test that a raster reference carries the header without pixel data.
    """
    raster = raster_ops.open_raster(_write_geotiff(tmp_path / "band.tif", grid))

    assert raster.shape == (4, 4)
    assert raster.res == (1.0, 1.0)
    assert raster.bounds == (0.0, -4.0, 4.0, 0.0)
    assert raster.crs == rasterio.crs.CRS.from_epsg(4326)
    assert raster.window is None


def test_open_raster_errors(tmp_path: Path, grid: NDArray[np.floating]) -> None:
    """
    Test that unreadable sources and missing bands are reported.
    """
    with pytest.raises(NetworkError):
        raster_ops.open_raster(str(tmp_path / "missing.tif"))
    with pytest.raises(SchemaMismatchError):
        raster_ops.open_raster(_write_geotiff(tmp_path / "band.tif", grid), band=2)


def test_crop_reads_only_the_window(tmp_path: Path, grid: NDArray[np.floating]) -> None:
    """
    Test that cropping narrows the window and compute returns exactly those pixels.

    Verifies:
    - Window arithmetic from bounds
    - Cropped transform origin
    - Result is float32 and read-only
    """
    raster = raster_ops.open_raster(_write_geotiff(tmp_path / "band.tif", grid))

    cropped = raster.crop((1.0, -3.0, 3.0, -1.0))
    data = cropped.compute()

    assert cropped.shape == (2, 2)
    assert cropped.transform == Affine(1.0, 0.0, 1.0, 0.0, -1.0, -1.0)
    np.testing.assert_array_equal(data, grid[1:3, 1:3])
    assert data.dtype == np.float32
    assert not data.flags.writeable
    assert raster.window is None


def test_crop_clips_to_extent_and_nests(tmp_path: Path, grid: NDArray[np.floating]) -> None:
    """
    Test that a box hanging over the edge is clipped and crops compose.
    """
    raster = raster_ops.open_raster(_write_geotiff(tmp_path / "band.tif", grid))

    clipped = raster.crop((2.0, -10.0, 10.0, -2.0))
    assert clipped.shape == (2, 2)
    np.testing.assert_array_equal(clipped.compute(), grid[2:4, 2:4])

    nested = raster.crop((0.0, -3.0, 3.0, 0.0)).crop((2.0, -4.0, 4.0, -2.0))
    np.testing.assert_array_equal(nested.compute(), grid[2:3, 2:3])


def test_crop_outside_extent_is_empty(tmp_path: Path, grid: NDArray[np.floating]) -> None:
    """
    Test that a disjoint box yields an empty window, and rendering it fails.
    """
    raster = raster_ops.open_raster(_write_geotiff(tmp_path / "band.tif", grid))

    empty = raster.crop((10.0, 10.0, 11.0, 11.0))

    assert empty.compute().size == 0
    with pytest.raises(EmptyResultError):
        empty.render(str(tmp_path / "empty.tif"))


def test_compute_masks_nodata(tmp_path: Path) -> None:
    data = np.array([[0, 2], [3, 0]], dtype="int16")
    raster = raster_ops.open_raster(_write_geotiff(tmp_path / "band.tif", data, nodata=0))

    result = raster.compute()

    assert np.isnan(result[0, 0]) and np.isnan(result[1, 1])
    np.testing.assert_array_equal(result[0, 1:], [2.0])


def test_ndvi_matches_expected(tmp_path: Path) -> None:
    """
    Test that NDVI computation produces expected results.

    Verifies the NDVI formula: (NIR - Red) / (NIR + Red)
    with known input values.
    """
    red = raster_ops.open_raster(_write_geotiff(tmp_path / "red.tif", np.full((2, 2), 1, dtype="float32")))
    nir = raster_ops.open_raster(_write_geotiff(tmp_path / "nir.tif", np.full((2, 2), 3, dtype="float32")))

    result = raster_ops.ndvi(red, nir).compute()

    np.testing.assert_allclose(result, np.full((2, 2), 0.5, dtype="float32"), rtol=1e-5)


def test_ndmi_matches_expected(tmp_path: Path) -> None:
    nir = raster_ops.open_raster(_write_geotiff(tmp_path / "nir.tif", np.full((2, 2), 4, dtype="float32")))
    swir = raster_ops.open_raster(_write_geotiff(tmp_path / "swir.tif", np.full((2, 2), 1, dtype="float32")))

    result = raster_ops.ndmi(nir, swir).compute()

    np.testing.assert_allclose(result, np.full((2, 2), 0.6, dtype="float32"), rtol=1e-5)


@pytest.mark.parametrize(
    "second",
    [
        lambda r: r.crop((0.0, -3.0, 3.0, 0.0)),
        lambda r: r.crop((1.0, -4.0, 4.0, -1.0)).crop((1.0, -3.0, 3.0, -1.0)),
    ],
)
def test_combine_rejects_mismatched_extents_before_computing(
    tmp_path: Path, grid: NDArray[np.floating], second: Any
) -> None:
    """
    Test that misaligned rasters fail without any pixel computation.

    Covers a different pixel size and an equal size at a different origin.
    """
    calls: list[Any] = []
    r1 = raster_ops.open_raster(_write_geotiff(tmp_path / "a.tif", grid)).crop((0.0, -2.0, 2.0, 0.0))
    r2 = second(raster_ops.open_raster(_write_geotiff(tmp_path / "b.tif", grid)))

    with pytest.raises(SchemaMismatchError):
        raster_ops.RasterRef.combine([r1, r2], lambda *arrays: calls.append(arrays))
    assert calls == []


def test_combine_rejects_different_grids(tmp_path: Path, grid: NDArray[np.floating]) -> None:
    """
    Test that equal shapes on different resolutions or origins are refused.
    """
    fine = raster_ops.open_raster(_write_geotiff(tmp_path / "fine.tif", grid))
    coarse = raster_ops.open_raster(
        _write_geotiff(tmp_path / "coarse.tif", grid, transform=Affine.translation(0, 0) * Affine.scale(2, -2))
    )
    shifted = raster_ops.open_raster(
        _write_geotiff(tmp_path / "shifted.tif", grid, transform=Affine.translation(1, 0) * Affine.scale(1, -1))
    )
    projected = raster_ops.open_raster(_write_geotiff(tmp_path / "utm.tif", grid, crs="EPSG:32633"))

    for other in (coarse, shifted, projected):
        with pytest.raises(SchemaMismatchError):
            raster_ops.combine([fine, other], np.add)


def test_render_writes_cropped_geotiff(tmp_path: Path, grid: NDArray[np.floating]) -> None:
    """
    Test that render writes the computed window with its own georeferencing.
    """
    a = raster_ops.open_raster(_write_geotiff(tmp_path / "a.tif", grid)).crop((1.0, -3.0, 3.0, -1.0))
    b = raster_ops.open_raster(_write_geotiff(tmp_path / "b.tif", grid)).crop((1.0, -3.0, 3.0, -1.0))
    out = tmp_path / "sum.tif"

    assert raster_ops.combine([a, b], np.add).render(str(out)) == str(out)

    with rasterio.open(out) as src:
        assert src.transform == Affine(1.0, 0.0, 1.0, 0.0, -1.0, -1.0)
        assert src.crs == rasterio.crs.CRS.from_epsg(4326)
        np.testing.assert_array_equal(src.read(1), grid[1:3, 1:3] * 2)


def test_transform_bbox_reprojects_corners() -> None:
    """
    Test explicit reprojection of a box ahead of cropping.
    """
    assert raster_ops.transform_bbox((0, 0, 1, 1), "EPSG:4326", "EPSG:4326") == pytest.approx((0, 0, 1, 1))

    west, south, east, north = raster_ops.transform_bbox((0, 0, 1, 1), "EPSG:4326", "EPSG:3857")
    assert (west, south) == pytest.approx((0.0, 0.0), abs=1e-6)
    assert east == pytest.approx(111319.49, abs=1.0)
    assert north == pytest.approx(111325.14, abs=1.0)


def _utm_band(path: Path, value: float, size: int, res: float, west: float = 600000.0) -> str:
    data = np.full((size, size), value, dtype="float32")
    transform = Affine.translation(west, 5000000 + size * res) * Affine.scale(res, -res)
    return _write_geotiff(path, data, crs="EPSG:32633", transform=transform)


def test_combine_rejects_sub_pixel_shift_at_projected_origin(tmp_path: Path) -> None:
    """
    Test that grids offset by half a pixel are refused even at large projected coordinates.

    Verifies:
    - A 5 m shift of a 10 m grid at x=600000 is a mismatch
    - Identical grids at the same origin are accepted
    """
    a = raster_ops.open_raster(_utm_band(tmp_path / "a.tif", 1.0, 4, 10.0))
    b = raster_ops.open_raster(_utm_band(tmp_path / "b.tif", 1.0, 4, 10.0, west=600005.0))
    same = raster_ops.open_raster(_utm_band(tmp_path / "same.tif", 2.0, 4, 10.0))

    assert not raster_ops.same_grid(a, b)
    with pytest.raises(SchemaMismatchError):
        raster_ops.combine([a, b], np.add)

    assert raster_ops.same_grid(a, same)
    np.testing.assert_array_equal(raster_ops.combine([a, same], np.add).compute(), np.full((4, 4), 3.0))


def test_resample_to_aligns_coarser_band(tmp_path: Path) -> None:
    """
    Test that a 20 m band resampled onto a 10 m grid can be combined with it.

    Verifies:
    - The resampled raster takes the target shape, transform and CRS
    - Constant input stays constant after bilinear resampling
    - NDMI over the aligned pair matches the expected value
    """
    nir = raster_ops.open_raster(_utm_band(tmp_path / "B08.tif", 4.0, 20, 10.0))
    swir = raster_ops.open_raster(_utm_band(tmp_path / "B11.tif", 1.0, 10, 20.0))

    with pytest.raises(SchemaMismatchError):
        raster_ops.ndmi(nir, swir)

    resampled = swir.resample_to(nir)

    assert resampled.shape == (20, 20)
    assert resampled.transform == nir.transform
    assert resampled.crs == nir.crs
    np.testing.assert_allclose(resampled.compute(), np.full((20, 20), 1.0), rtol=1e-5)
    np.testing.assert_allclose(raster_ops.ndmi(nir, resampled).compute(), np.full((20, 20), 0.6), rtol=1e-5)


def test_resample_to_cropped_target_reads_matching_area(tmp_path: Path) -> None:
    """
    Test resampling onto a cropped grid, and NaN where the source has no data.
    """
    nir = raster_ops.open_raster(_utm_band(tmp_path / "B08.tif", 4.0, 20, 10.0))
    swir = raster_ops.open_raster(_utm_band(tmp_path / "B11.tif", 1.0, 5, 20.0))

    cropped = nir.crop((600000.0, 5000000.0, 600060.0, 5000060.0))
    inside = swir.resample_to(cropped).compute()
    assert inside.shape == (6, 6)
    np.testing.assert_allclose(inside, np.full((6, 6), 1.0), rtol=1e-5)

    outside = swir.resample_to(nir.crop((600150.0, 5000150.0, 600200.0, 5000200.0))).compute()
    assert outside.shape == (5, 5)
    assert np.isnan(outside).all()
    assert not outside.flags.writeable
