from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest
import rasterio
from rasterio.crs import CRS
from rasterio.transform import from_origin

from ned_workflow.config import FLOAT_NODATA
from ned_workflow.errors import TerrainError
from ned_workflow.raster import RasterioOperations, describe_raster
from ned_workflow.raster import terrain


def _plane(rise_x: float = 0.0, rise_y: float = 0.0, size: int = 8, cell: float = 10.0) -> np.ndarray:
    """Elevation rising ``rise_x`` per metre eastward and ``rise_y`` per metre southward."""

    rows, cols = np.mgrid[0:size, 0:size]
    return 100.0 + rise_x * cols * cell + rise_y * rows * cell


def test_slope_and_aspect_of_east_rising_plane() -> None:
    dzdx, dzdy = terrain.horn_gradients(_plane(rise_x=0.1), 10.0, 10.0)
    interior = (slice(1, -1), slice(1, -1))

    np.testing.assert_allclose(dzdx[interior], 0.1)
    np.testing.assert_allclose(dzdy[interior], 0.0, atol=1e-12)

    slope = terrain.compute_slope(dzdx, dzdy)
    np.testing.assert_allclose(slope[interior], np.degrees(np.arctan(0.1)), rtol=1e-5)

    aspect = terrain.compute_aspect(dzdx, dzdy, nodata=FLOAT_NODATA)
    np.testing.assert_allclose(aspect[interior], 270.0)


def test_aspect_of_south_rising_plane_faces_north() -> None:
    dzdx, dzdy = terrain.horn_gradients(_plane(rise_y=0.2), 10.0, 10.0)
    aspect = terrain.compute_aspect(dzdx, dzdy, nodata=FLOAT_NODATA)
    np.testing.assert_allclose(aspect[1:-1, 1:-1], 0.0, atol=1e-6)


def test_flat_cells_have_no_aspect() -> None:
    dzdx, dzdy = terrain.horn_gradients(np.full((5, 5), 42.0), 10.0, 10.0)
    assert np.all(terrain.compute_aspect(dzdx, dzdy, nodata=FLOAT_NODATA) == FLOAT_NODATA)
    assert np.all(terrain.compute_slope(dzdx, dzdy) == 0.0)
    # Flat ground under a 45 degree sun: 1 + 254 * cos(45).
    assert np.all(terrain.compute_hillshade(dzdx, dzdy) == 181)


def test_hillshade_lights_slopes_facing_the_sun() -> None:
    facing_west = terrain.horn_gradients(_plane(rise_x=0.5), 10.0, 10.0)
    facing_east = terrain.horn_gradients(_plane(rise_x=-0.5), 10.0, 10.0)

    lit = terrain.compute_hillshade(*facing_west, azimuth=315.0, altitude=45.0)
    shaded = terrain.compute_hillshade(*facing_east, azimuth=315.0, altitude=45.0)

    assert lit.dtype == np.uint8
    assert lit.min() >= 1 and shaded.min() >= 1
    assert lit[4, 4] > shaded[4, 4]


def test_cell_size_scales_geographic_grids() -> None:
    geographic = terrain.cell_size(from_origin(-84, 35, 0.001, 0.001), CRS.from_epsg(4269))
    assert geographic == pytest.approx((111.12, 111.12))

    projected = terrain.cell_size(from_origin(0, 0, 10, 10), CRS.from_epsg(5070))
    assert projected == (10.0, 10.0)


def test_derive_terrain_writes_products_on_input_grid(tmp_path: Path, write_raster) -> None:
    dem = _plane(rise_x=0.1, rise_y=0.05, size=12).astype("float32")
    dem[0, 0] = FLOAT_NODATA
    source = write_raster(
        tmp_path / "11-JUE" / "ned10m_11-JUE.tif",
        dem,
        from_origin(1000.0, 2000.0, 10.0, 10.0),
        "EPSG:5070",
        nodata=FLOAT_NODATA,
    )

    outputs = RasterioOperations().derive_terrain(source)

    assert set(outputs) == {"hillshade", "slope", "aspect"}
    assert outputs["slope"] == tmp_path / "11-JUE" / "ned10m_11-JUE_slope.tif"
    grid = describe_raster(source)
    for product, path in outputs.items():
        meta = describe_raster(path)
        for key in ("crs", "transform", "width", "height"):
            assert meta[key] == grid[key], (product, key)

    with rasterio.open(outputs["hillshade"]) as src:
        assert src.dtypes[0] == "uint8"
        assert src.nodata == 0
        assert src.descriptions[0] == "Hillshade"
        hillshade = src.read(1)
    with rasterio.open(outputs["slope"]) as src:
        assert src.dtypes[0] == "float32"
        assert src.nodata == FLOAT_NODATA
        slope = src.read(1)

    assert hillshade[0, 0] == 0
    assert slope[0, 0] == FLOAT_NODATA
    assert slope[6, 6] == pytest.approx(np.degrees(np.arctan(np.hypot(0.1, 0.05))), rel=1e-4)
    assert not list((tmp_path / "11-JUE").glob(".*"))


def test_derive_terrain_honours_explicit_outputs(tmp_path: Path, write_raster) -> None:
    source = write_raster(
        tmp_path / "dem.tif",
        _plane(rise_x=0.1).astype("float32"),
        from_origin(0.0, 80.0, 10.0, 10.0),
        "EPSG:5070",
    )
    ops = RasterioOperations()

    outputs = ops.derive_terrain(source, outputs={"aspect": tmp_path / "custom" / "aspect.tif"})
    assert outputs["aspect"] == tmp_path / "custom" / "aspect.tif"
    assert outputs["aspect"].exists()

    with pytest.raises(TerrainError):
        ops.derive_terrain(source, outputs={"curvature": tmp_path / "curvature.tif"})


def test_derive_terrain_rejects_empty_dem(tmp_path: Path, write_raster) -> None:
    source = write_raster(
        tmp_path / "empty.tif",
        np.full((4, 4), FLOAT_NODATA, dtype="float32"),
        from_origin(0.0, 40.0, 10.0, 10.0),
        "EPSG:5070",
        nodata=FLOAT_NODATA,
    )
    with pytest.raises(TerrainError):
        RasterioOperations().derive_terrain(source)
    assert not (tmp_path / "empty_hillshade.tif").exists()
