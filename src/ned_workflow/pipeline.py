"""Assembles and runs the download, subset, mosaic, warp, resample and terrain stages."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import geopandas as gpd
import requests
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union

from .catalog import Catalog, build_catalog, derived_product_path
from .config import CATALOG_PAIRS, FLOAT_NODATA, RunConfig, split_derived_key, variable_spec
from .download import archive_path, extract_tile, fetch_tile, locate_tile_raster, tile_url
from .errors import ConfigurationError, GeometryError
from .raster.operations import TERRAIN_PRODUCTS, RasterioOperations, RasterOperations
from .stages import BLOCKED, FAILED, Stage, StageResult, run_stages
from .tiles import TileSelection, load_layer, select_tiles


LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineReport:
    catalog: Catalog
    selection: TileSelection
    results: Tuple[StageResult, ...]

    @property
    def failed(self) -> List[StageResult]:
        return [result for result in self.results if result.status == FAILED]

    @property
    def blocked(self) -> List[StageResult]:
        return [result for result in self.results if result.status == BLOCKED]

    @property
    def ok(self) -> bool:
        return all(result.ok for result in self.results)


_PRODUCERS = {
    "nlcd30m": "subset",
    "ned09d": "mosaic",
    "ned10m": "warp",
    "ned30m": "resample",
}


def _producer(key: str, region: str) -> str:
    """Name of the per-region stage writing ``key``."""

    if key not in _PRODUCERS:
        raise ConfigurationError(f"No stage produces '{key}'")
    return f"{_PRODUCERS[key]}:{region}:{key}"


def region_geometry(boundaries: gpd.GeoDataFrame, region_field: str, region: str) -> BaseGeometry:
    """Union of every boundary feature tagged ``region``."""

    if region_field not in boundaries.columns:
        raise GeometryError(f"Region layer lacks attribute '{region_field}'")
    matches = boundaries[boundaries[region_field].astype(str) == region]
    if matches.empty:
        raise GeometryError(f"Region layer has no boundary for '{region}'")
    geometry = unary_union(list(matches.geometry))
    if geometry.is_empty:
        raise GeometryError(f"Boundary for '{region}' is empty")
    return geometry


def _tile_stages(config: RunConfig, selection: TileSelection, http: Any) -> List[Stage]:
    """Download and unzip stages; each download waits on the previous tile's unzip."""

    stages: List[Stage] = []
    previous: Tuple[str, ...] = ()
    for tile in selection.tiles:
        url = tile_url(config.grid_size, tile.latitude, tile.longitude, config.tile_url_template)
        archive = archive_path(
            config.grid_size,
            tile.latitude,
            tile.longitude,
            config.staging_dir,
            config.tile_url_template,
        )
        extract_dir = config.staging_dir / tile.tile_id

        def download(tile=tile) -> Path:
            return fetch_tile(
                config.grid_size,
                tile.latitude,
                tile.longitude,
                config.staging_dir,
                http=http,
                url_template=config.tile_url_template,
            )

        def unzip(archive=archive, extract_dir=extract_dir) -> Path:
            return extract_tile(archive, extract_dir)

        stages.append(
            Stage(
                name=f"download:{tile.tile_id}",
                region=None,
                inputs=(url,),
                output=archive,
                action=download,
                depends_on=previous,
            )
        )
        stages.append(
            Stage(
                name=f"unzip:{tile.tile_id}",
                region=None,
                inputs=(archive,),
                output=extract_dir,
                action=unzip,
                depends_on=(f"download:{tile.tile_id}",),
            )
        )
        previous = (f"unzip:{tile.tile_id}",)
    return stages


def _region_stages(
    config: RunConfig,
    catalog: Catalog,
    selection: TileSelection,
    boundaries: gpd.GeoDataFrame,
    ops: RasterOperations,
    region: str,
) -> List[Stage]:
    land_cover = catalog.path("nlcd30m", region)
    ned09d = catalog.path("ned09d", region)
    ned10m = catalog.path("ned10m", region)
    ned30m = catalog.path("ned30m", region)
    tile_ids = selection.by_region.get(region, ())
    tile_dirs = tuple(config.staging_dir / tile_id for tile_id in tile_ids)
    land_cover_spec = variable_spec("land-cover")

    def subset() -> Path:
        return ops.subset(
            config.land_cover_path,
            land_cover,
            geometry=region_geometry(boundaries, config.region_field, region),
            geometry_crs=boundaries.crs,
            target_crs=config.target_crs,
            target_resolution=30.0,
            resampling_method=config.land_cover_resampling,
            dtype=land_cover_spec.dtype,
            nodata=land_cover_spec.nodata,
            creation_options=config.mosaic_creation_options,
        )

    def mosaic_tiles() -> Path:
        rasters = [locate_tile_raster(directory) for directory in tile_dirs]
        return ops.mosaic(
            rasters,
            ned09d,
            dtype="float32",
            creation_options=config.mosaic_creation_options,
            nodata=FLOAT_NODATA,
            policy=config.mosaic_policy,
        )

    def warp() -> Path:
        return ops.warp(
            ned09d,
            ned10m,
            alignment_reference=land_cover,
            target_resolution=10.0,
            resampling_method=config.warp_resampling,
            source_crs=config.source_crs,
            target_crs=config.target_crs,
            dtype="float32",
            nodata=FLOAT_NODATA,
            creation_options=config.mosaic_creation_options,
        )

    def resample() -> Path:
        return ops.resample(
            ned10m,
            ned30m,
            target_resolution=30.0,
            alignment_reference=land_cover,
            resampling_method=config.resample_resampling,
            dtype="float32",
            nodata=FLOAT_NODATA,
            creation_options=config.mosaic_creation_options,
        )

    stages = [
        Stage(
            name=_producer("nlcd30m", region),
            region=region,
            inputs=(config.land_cover_path,),
            output=land_cover,
            action=subset,
        ),
        Stage(
            name=_producer("ned09d", region),
            region=region,
            inputs=tile_dirs,
            output=ned09d,
            action=mosaic_tiles,
            depends_on=tuple(f"unzip:{tile_id}" for tile_id in tile_ids),
        ),
        Stage(
            name=_producer("ned10m", region),
            region=region,
            inputs=(ned09d, land_cover),
            output=ned10m,
            action=warp,
            depends_on=(_producer("ned09d", region), _producer("nlcd30m", region)),
        ),
        Stage(
            name=_producer("ned30m", region),
            region=region,
            inputs=(ned10m, land_cover),
            output=ned30m,
            action=resample,
            depends_on=(_producer("ned10m", region), _producer("nlcd30m", region)),
        ),
    ]

    for key in config.terrain_keys:
        source = catalog.path(key, region)
        targets = {product: derived_product_path(source, product) for product in TERRAIN_PRODUCTS}

        def derive(source=source, targets=targets) -> Dict[str, Path]:
            return ops.derive_terrain(
                source,
                creation_options=config.terrain_creation_options,
                outputs=targets,
            )

        stages.append(
            Stage(
                name=f"terrain:{region}:{key}",
                region=region,
                inputs=(source,),
                output=targets[TERRAIN_PRODUCTS[0]],
                action=derive,
                depends_on=(_producer(key, region),),
                also_writes=tuple(targets[product] for product in TERRAIN_PRODUCTS[1:]),
            )
        )
    return stages


def _office_stages(
    config: RunConfig,
    catalog: Catalog,
    ops: RasterOperations,
    office: str,
) -> List[Stage]:
    stages: List[Stage] = []
    regions = config.hierarchy.offices[office]
    for key in config.office_keys:
        variable, _ = split_derived_key(key)
        spec = variable_spec(variable)
        inputs = tuple(catalog.path(key, region) for region in regions)
        output = catalog.path(key, office)

        def mosaic(inputs=inputs, output=output, spec=spec) -> Path:
            return ops.mosaic(
                inputs,
                output,
                dtype=spec.dtype,
                creation_options=config.mosaic_creation_options,
                nodata=spec.nodata,
                policy=config.mosaic_policy,
                overview_factors=config.overview_factors,
            )

        stages.append(
            Stage(
                name=f"mosaic:{office}:{key}",
                region=office,
                inputs=inputs,
                output=output,
                action=mosaic,
                depends_on=tuple(_producer(key, region) for region in regions),
            )
        )
    return stages


def build_stages(
    config: RunConfig,
    catalog: Catalog,
    selection: TileSelection,
    boundaries: gpd.GeoDataFrame,
    ops: RasterOperations,
    http: Any = requests,
) -> List[Stage]:
    """Return every stage of a run in declaration order."""

    unknown = [key for key in config.terrain_keys + config.office_keys if key not in _PRODUCERS]
    if unknown:
        raise ConfigurationError(f"No stage produces: {', '.join(unknown)}")
    for key in config.terrain_keys:
        if split_derived_key(key)[0] != "elevation":
            raise ConfigurationError(f"Terrain derivation needs an elevation key, got '{key}'")

    stages = _tile_stages(config, selection, http)
    for region in config.hierarchy.regions:
        stages.extend(_region_stages(config, catalog, selection, boundaries, ops, region))
    for office in config.hierarchy.offices:
        stages.extend(_office_stages(config, catalog, ops, office))
    LOGGER.info("Planned %s stage(s)", len(stages))
    return stages


def run_pipeline(
    config: RunConfig,
    ops: Optional[RasterOperations] = None,
    resume: bool = True,
    offices: Optional[Sequence[str]] = None,
    start_at: Optional[str] = None,
    http: Any = requests,
) -> PipelineReport:
    """Select tiles, build the catalog and run every stage for ``config``."""

    config = config.restrict(offices)
    ops = ops or RasterioOperations()

    tile_index = load_layer(config.tile_index_path)
    boundaries = load_layer(config.regions_path)
    selection = select_tiles(
        tile_index,
        boundaries,
        crs=config.selection_crs,
        region_field=config.region_field,
        id_field=config.tile_id_field,
        lat_field=config.tile_lat_field,
        lon_field=config.tile_lon_field,
        region_codes=config.hierarchy.regions,
    )

    catalog = build_catalog(CATALOG_PAIRS, config.hierarchy.codes, config.catalog_config())
    catalog.write_csv(config.base_dir / "catalog.csv")

    stages = build_stages(config, catalog, selection, boundaries, ops, http=http)
    results = run_stages(stages, resume=resume, start_at=start_at)
    report = PipelineReport(catalog=catalog, selection=selection, results=tuple(results))
    if report.failed:
        for result in report.failed:
            LOGGER.error(
                "Resume point: stage %s (region=%s, input=%s): %s",
                result.stage,
                result.region,
                result.input_path,
                result.error,
            )
    else:
        LOGGER.info("Pipeline finished for %s region(s)", len(config.hierarchy.regions))
    return report


__all__ = ["PipelineReport", "build_stages", "region_geometry", "run_pipeline"]
