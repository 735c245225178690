from __future__ import annotations

import io
import math
import zipfile
from pathlib import Path
from typing import Dict, List, Tuple

import geopandas as gpd
import numpy as np
import pytest
import rasterio
import requests
from rasterio.transform import from_origin
from rasterio.warp import transform as transform_coords
from shapely.geometry import box

from ned_workflow.config import FLOAT_NODATA, RegionHierarchy, RunConfig
from ned_workflow.download import tile_url
from ned_workflow.errors import GeometryError, ReprojectionError
from ned_workflow.pipeline import region_geometry, run_pipeline
from ned_workflow.raster import describe_raster
from ned_workflow.stages import BLOCKED, COMPLETED, FAILED, SKIPPED


TILE_CORNERS = [(34, -83), (34, -84), (35, -83)]
REGION_BOX = box(-83.03, 33.97, -82.97, 34.03)


class _Response:
    def __init__(self, payload: bytes) -> None:
        self.payload = payload

    def __enter__(self) -> "_Response":
        return self

    def __exit__(self, *exc) -> None:
        return None

    def raise_for_status(self) -> None:
        return None

    def iter_content(self, chunk_size: int = 1024):
        yield self.payload


class FakeHttp:
    def __init__(self, archives: Dict[str, bytes]) -> None:
        self.archives = archives
        self.calls: List[str] = []

    def get(self, url: str, stream: bool = False, timeout: float = 0) -> _Response:
        self.calls.append(url)
        return _Response(self.archives[url])


class FakeOperations:
    """Records each raster call and touches the files it would write."""

    def __init__(self, fail_on: Tuple[str, ...] = ()) -> None:
        self.calls: List[Tuple[str, Path, dict]] = []
        self.fail_on = fail_on

    def _touch(self, kind: str, output: Path, kwargs: dict) -> Path:
        self.calls.append((kind, Path(output), kwargs))
        if kind in self.fail_on:
            raise ReprojectionError(f"{kind} failed for {output}")
        Path(output).parent.mkdir(parents=True, exist_ok=True)
        Path(output).write_bytes(b"raster")
        return Path(output)

    def subset(self, source, output, geometry, geometry_crs, target_crs, **kwargs):
        kwargs.update(source=source, geometry=geometry, geometry_crs=geometry_crs, target_crs=target_crs)
        return self._touch("subset", output, kwargs)

    def mosaic(self, inputs, output, **kwargs):
        kwargs.update(inputs=list(inputs))
        return self._touch("mosaic", output, kwargs)

    def warp(self, input, output, **kwargs):
        kwargs.update(input=input)
        return self._touch("warp", output, kwargs)

    def resample(self, input, output, target_resolution, **kwargs):
        kwargs.update(input=input, target_resolution=target_resolution)
        return self._touch("resample", output, kwargs)

    def derive_terrain(self, input, creation_options=None, outputs=None):
        self.calls.append(("derive_terrain", Path(input), {"outputs": dict(outputs or {})}))
        if "derive_terrain" in self.fail_on:
            raise ReprojectionError("terrain failed")
        for path in (outputs or {}).values():
            Path(path).parent.mkdir(parents=True, exist_ok=True)
            Path(path).write_bytes(b"raster")
        return dict(outputs or {})


def _zip_bytes(path: Path) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as bundle:
        bundle.write(path, arcname=path.name)
    return buffer.getvalue()


def _tile_archives(tmp_path: Path, write_raster) -> Dict[str, bytes]:
    archives = {}
    for lat, lon in TILE_CORNERS:
        rows, cols = np.mgrid[0:100, 0:100]
        x = lon + (cols + 0.5) * 0.01
        y = lat - (rows + 0.5) * 0.01
        elevation = (100.0 + 50.0 * (x + 84.0) + 30.0 * (35.0 - y)).astype("float32")
        name = f"n{lat:02d}w{abs(lon):03d}"
        tile = write_raster(
            tmp_path / "source_tiles" / f"USGS_13_{name}.tif",
            elevation,
            from_origin(lon, lat, 0.01, 0.01),
            "EPSG:4269",
            nodata=FLOAT_NODATA,
        )
        archives[tile_url("13", lat, lon)] = _zip_bytes(tile)
    return archives


def _write_layers(tmp_path: Path) -> Tuple[Path, Path]:
    index = gpd.GeoDataFrame(
        {
            "FILE_ID": [f"n{lat:02d}w{abs(lon):03d}" for lat, lon in TILE_CORNERS],
            "LAT": [lat for lat, _ in TILE_CORNERS],
            "LONG": [lon for _, lon in TILE_CORNERS],
        },
        geometry=[box(lon, lat - 1, lon + 1, lat) for lat, lon in TILE_CORNERS],
        crs="EPSG:4269",
    )
    regions = gpd.GeoDataFrame({"REGION": ["11-JUE"]}, geometry=[REGION_BOX], crs="EPSG:4269")
    index_path = tmp_path / "layers" / "ned_tiles.gpkg"
    regions_path = tmp_path / "layers" / "regions.gpkg"
    index_path.parent.mkdir(parents=True, exist_ok=True)
    index.to_file(index_path, driver="GPKG")
    regions.to_file(regions_path, driver="GPKG")
    return index_path, regions_path


def _write_land_cover(tmp_path: Path, write_raster) -> Path:
    (x,), (y,) = transform_coords("EPSG:4269", "EPSG:5070", [-83.0], [34.0])
    left = math.floor(x / 30.0) * 30.0 - 4500.0
    top = math.ceil(y / 30.0) * 30.0 + 4500.0
    return write_raster(
        tmp_path / "nlcd_2011.tif",
        np.full((300, 300), 41, dtype="uint8"),
        from_origin(left, top, 30.0, 30.0),
        "EPSG:5070",
        nodata=0,
    )


@pytest.fixture
def run_inputs(tmp_path: Path, write_raster):
    index_path, regions_path = _write_layers(tmp_path)
    config = RunConfig(
        base_dir=tmp_path / "processed",
        staging_dir=tmp_path / "staging",
        tile_index_path=index_path,
        regions_path=regions_path,
        land_cover_path=_write_land_cover(tmp_path, write_raster),
        hierarchy=RegionHierarchy.from_mapping({"11": ["11-JUE"]}),
        land_cover_epoch="2011",
        overview_factors=(2, 4),
    )
    return config, FakeHttp(_tile_archives(tmp_path, write_raster))


def test_pipeline_wires_stages_in_order(run_inputs) -> None:
    config, http = run_inputs
    ops = FakeOperations()

    report = run_pipeline(config, ops=ops, http=http)

    assert report.ok
    assert [tile.tile_id for tile in report.selection.tiles] == ["n34w083", "n34w084", "n35w083"]
    assert len(http.calls) == 3
    assert [kind for kind, _, _ in ops.calls] == [
        "subset",
        "mosaic",
        "warp",
        "resample",
        "derive_terrain",
        "derive_terrain",
        "mosaic",
        "mosaic",
        "mosaic",
    ]

    region_dir = config.base_dir / "11-JUE"
    land_cover = region_dir / "nlcd30m_11-JUE_2011.tif"
    calls = {(kind, output.name): kwargs for kind, output, kwargs in ops.calls}

    subset = calls[("subset", land_cover.name)]
    assert subset["target_resolution"] == 30.0
    assert subset["resampling_method"] == "nearest"
    assert subset["dtype"] == "uint8"
    assert subset["geometry"].equals(REGION_BOX)

    mosaic = calls[("mosaic", "ned09d_11-JUE.tif")]
    assert [path.name for path in mosaic["inputs"]] == [
        "USGS_13_n34w083.tif",
        "USGS_13_n34w084.tif",
        "USGS_13_n35w083.tif",
    ]
    assert mosaic["policy"] == "last"

    warp = calls[("warp", "ned10m_11-JUE.tif")]
    assert warp["alignment_reference"] == land_cover
    assert warp["target_resolution"] == 10.0
    assert warp["resampling_method"] == "bilinear"
    assert (warp["source_crs"], warp["target_crs"]) == ("EPSG:4269", "EPSG:5070")

    resample = calls[("resample", "ned30m_11-JUE.tif")]
    assert resample["input"] == region_dir / "ned10m_11-JUE.tif"
    assert resample["alignment_reference"] == land_cover
    assert resample["target_resolution"] == 30.0

    terrain = calls[("derive_terrain", "ned10m_11-JUE.tif")]
    assert terrain["outputs"]["slope"] == region_dir / "ned10m_11-JUE_slope.tif"

    office = calls[("mosaic", "nlcd30m_11_2011.tif")]
    assert office["inputs"] == [land_cover]
    assert office["dtype"] == "uint8"
    assert office["nodata"] == 0
    assert office["overview_factors"] == (2, 4)

    assert (config.base_dir / "catalog.csv").exists()


def test_pipeline_resumes_from_existing_outputs(run_inputs) -> None:
    config, http = run_inputs
    ops = FakeOperations()
    run_pipeline(config, ops=ops, http=http)
    calls_after_first = len(ops.calls)

    report = run_pipeline(config, ops=ops, http=http)

    assert {result.status for result in report.results} == {SKIPPED}
    assert len(ops.calls) == calls_after_first
    assert len(http.calls) == 3

    rerun = run_pipeline(config, ops=ops, http=http, start_at="warp:11-JUE:ned10m", resume=False)
    statuses = {result.stage: result.status for result in rerun.results}
    assert statuses["mosaic:11-JUE:ned09d"] == SKIPPED
    assert statuses["warp:11-JUE:ned10m"] == COMPLETED


def test_failed_download_stops_remaining_tiles(run_inputs) -> None:
    config, http = run_inputs
    first_url = tile_url("13", 34, -83)

    class _OfflineFirst(FakeHttp):
        def get(self, url, stream=False, timeout=0):
            self.calls.append(url)
            if url == first_url:
                raise requests.ConnectionError("connection reset")
            return _Response(self.archives[url])

    offline = _OfflineFirst(http.archives)
    ops = FakeOperations()

    report = run_pipeline(config, ops=ops, http=offline)

    assert offline.calls == [first_url]
    statuses = {result.stage: result.status for result in report.results}
    assert statuses["download:n34w083"] == FAILED
    for tile_id in ("n34w084", "n35w083"):
        assert statuses[f"download:{tile_id}"] == BLOCKED
        assert statuses[f"unzip:{tile_id}"] == BLOCKED
    assert statuses["mosaic:11-JUE:ned09d"] == BLOCKED
    assert not list(config.staging_dir.glob("*.zip"))

    (failed,) = report.failed
    assert failed.error_type == "DownloadError"
    assert failed.input_path == first_url


def test_failed_warp_blocks_downstream_stages(run_inputs) -> None:
    config, http = run_inputs
    ops = FakeOperations(fail_on=("warp",))

    report = run_pipeline(config, ops=ops, http=http)

    assert not report.ok
    statuses = {result.stage: result.status for result in report.results}
    assert statuses["warp:11-JUE:ned10m"] == FAILED
    assert statuses["resample:11-JUE:ned30m"] == BLOCKED
    assert statuses["terrain:11-JUE:ned10m"] == BLOCKED
    assert statuses["mosaic:11:ned10m"] == BLOCKED
    assert statuses["mosaic:11:nlcd30m"] == COMPLETED

    (failed,) = report.failed
    assert failed.error_type == "ReprojectionError"
    assert failed.input_path == config.base_dir / "11-JUE" / "ned09d_11-JUE.tif"
    assert not (config.base_dir / "11-JUE" / "ned10m_11-JUE.tif").exists()


def test_region_geometry_requires_known_region(run_inputs) -> None:
    config, _ = run_inputs
    boundaries = gpd.read_file(config.regions_path)
    assert region_geometry(boundaries, "REGION", "11-JUE").equals(REGION_BOX)
    with pytest.raises(GeometryError):
        region_geometry(boundaries, "REGION", "11-BCK")
    with pytest.raises(GeometryError):
        region_geometry(boundaries, "DISTRICT", "11-JUE")


def test_end_to_end_region_products(run_inputs) -> None:
    config, http = run_inputs

    report = run_pipeline(config, http=http)

    assert report.ok, [(r.stage, r.error) for r in report.failed + report.blocked]
    assert all(result.status == COMPLETED for result in report.results)

    region_dir = config.base_dir / "11-JUE"
    catalog = report.catalog
    assert catalog.path("ned09d", "11-JUE") == region_dir / "ned09d_11-JUE.tif"
    assert catalog.path("ned10m", "11-JUE") == region_dir / "ned10m_11-JUE.tif"
    assert catalog.path("ned30m", "11-JUE") == region_dir / "ned30m_11-JUE.tif"

    mosaic = describe_raster(catalog.path("ned09d", "11-JUE"))
    assert mosaic["bounds"] == pytest.approx((-84.0, 33.0, -82.0, 35.0))
    assert mosaic["res"] == pytest.approx((0.01, 0.01))

    land_cover = describe_raster(catalog.path("nlcd30m", "11-JUE"))
    fine = describe_raster(catalog.path("ned10m", "11-JUE"))
    coarse = describe_raster(catalog.path("ned30m", "11-JUE"))

    assert fine["crs"] == land_cover["crs"]
    assert fine["res"] == pytest.approx((10.0, 10.0))
    assert fine["transform"][2] == pytest.approx(land_cover["transform"][2])
    assert fine["transform"][5] == pytest.approx(land_cover["transform"][5])
    assert (fine["width"], fine["height"]) == (3 * land_cover["width"], 3 * land_cover["height"])

    assert coarse["transform"] == pytest.approx(land_cover["transform"])
    assert (coarse["width"], coarse["height"]) == (land_cover["width"], land_cover["height"])

    with rasterio.open(catalog.path("ned10m", "11-JUE")) as src:
        data = src.read(1, masked=True)
    assert data.count() > 0
    assert 100.0 < float(data.mean()) < 250.0

    for key in ("ned10m", "ned30m"):
        for product in ("hillshade", "slope", "aspect"):
            assert (region_dir / f"{key}_11-JUE_{product}.tif").exists()

    with rasterio.open(catalog.path("ned10m", "11")) as src:
        assert src.overviews(1) == [2, 4]
    assert catalog.path("nlcd30m", "11").exists()
    assert not list(region_dir.glob(".*"))
