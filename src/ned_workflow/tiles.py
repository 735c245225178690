"""Select the elevation tiles intersecting each region boundary."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, FrozenSet, List, Mapping, Optional, Tuple, Union

import geopandas as gpd
import pandas as pd

from .errors import CRSMismatchError, GeometryError


LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class TileReference:
    """One source tile; ``latitude``/``longitude`` is the corner that names it."""

    tile_id: str
    latitude: float
    longitude: float
    regions: FrozenSet[str]


@dataclass(frozen=True)
class TileSelection:
    tiles: Tuple[TileReference, ...]
    by_region: Mapping[str, Tuple[str, ...]]

    def tiles_for(self, region: str) -> Tuple[TileReference, ...]:
        ids = self.by_region.get(region, ())
        lookup = {tile.tile_id: tile for tile in self.tiles}
        return tuple(lookup[tile_id] for tile_id in ids)

    def tile(self, tile_id: str) -> TileReference:
        for tile in self.tiles:
            if tile.tile_id == tile_id:
                return tile
        raise KeyError(tile_id)


def load_layer(path: Union[str, Path]) -> gpd.GeoDataFrame:
    """Read a polygon layer (shapefile, GeoPackage, GeoJSON)."""

    path = Path(path)
    if not path.exists():
        raise GeometryError(f"Vector layer {path} does not exist")
    gdf = gpd.read_file(path)
    LOGGER.info("Loaded %s feature(s) from %s", len(gdf), path)
    return gdf


def _check_geometry(gdf: gpd.GeoDataFrame, label: str) -> None:
    if gdf.empty:
        raise GeometryError(f"{label} layer contains no features")
    geometry = gdf.geometry
    if geometry.isna().any():
        raise GeometryError(f"{label} layer has {int(geometry.isna().sum())} null geometries")
    if geometry.is_empty.any():
        raise GeometryError(f"{label} layer has {int(geometry.is_empty.sum())} empty geometries")
    invalid = ~geometry.is_valid
    if invalid.any():
        raise GeometryError(f"{label} layer has {int(invalid.sum())} invalid geometries")


def _check_fields(gdf: gpd.GeoDataFrame, label: str, fields: Tuple[str, ...]) -> None:
    missing = [name for name in fields if name not in gdf.columns]
    if missing:
        raise GeometryError(f"{label} layer lacks attribute(s): {', '.join(missing)}")


def _harmonize_crs(
    tile_index: gpd.GeoDataFrame,
    regions: gpd.GeoDataFrame,
    crs: Optional[str],
) -> Tuple[gpd.GeoDataFrame, gpd.GeoDataFrame]:
    if crs is not None:
        if tile_index.crs is None or regions.crs is None:
            raise CRSMismatchError("Cannot reproject a layer that declares no CRS")
        return tile_index.to_crs(crs), regions.to_crs(crs)

    if tile_index.crs is None or regions.crs is None:
        raise CRSMismatchError(
            "Tile index and region layers must both declare a CRS "
            f"(tile index={tile_index.crs}, regions={regions.crs})"
        )
    if tile_index.crs != regions.crs:
        raise CRSMismatchError(
            f"Tile index CRS {tile_index.crs} differs from region CRS {regions.crs}; "
            "configure a selection CRS to reproject"
        )
    return tile_index, regions


def select_tiles(
    tile_index: gpd.GeoDataFrame,
    regions: gpd.GeoDataFrame,
    crs: Optional[str] = None,
    region_field: str = "REGION",
    id_field: str = "FILE_ID",
    lat_field: str = "LAT",
    lon_field: str = "LONG",
    region_codes: Optional[Tuple[str, ...]] = None,
) -> TileSelection:
    """Intersect tiles with region polygons and deduplicate across the run.

    ``region_codes`` restricts the selection to those regions; every listed
    code must exist in the region layer.
    """

    _check_fields(tile_index, "Tile index", (id_field, lat_field, lon_field))
    _check_fields(regions, "Region", (region_field,))

    if region_codes is not None:
        available = set(regions[region_field].astype(str))
        missing = [code for code in region_codes if code not in available]
        if missing:
            raise GeometryError(f"Region layer has no boundary for: {', '.join(missing)}")
        regions = regions[regions[region_field].astype(str).isin(region_codes)]

    _check_geometry(tile_index, "Tile index")
    _check_geometry(regions, "Region")
    tile_index, regions = _harmonize_crs(tile_index, regions, crs)

    tiles = tile_index[[id_field, lat_field, lon_field, "geometry"]].copy()
    tiles[id_field] = tiles[id_field].astype(str)
    zones = regions[[region_field, "geometry"]].copy()
    zones[region_field] = zones[region_field].astype(str)

    joined = gpd.sjoin(tiles, zones, how="inner", predicate="intersects")
    if joined.empty:
        LOGGER.warning("No tiles intersect the %s region(s)", len(zones))

    frame = pd.DataFrame(joined.drop(columns="geometry"))
    references: List[TileReference] = []
    by_region: Dict[str, List[str]] = {}
    for tile_id, group in frame.groupby(id_field, sort=True):
        first = group.iloc[0]
        region_set = frozenset(group[region_field])
        references.append(
            TileReference(
                tile_id=str(tile_id),
                latitude=float(first[lat_field]),
                longitude=float(first[lon_field]),
                regions=region_set,
            )
        )
        for region in region_set:
            by_region.setdefault(region, []).append(str(tile_id))

    selection = TileSelection(
        tiles=tuple(references),
        by_region={region: tuple(sorted(ids)) for region, ids in sorted(by_region.items())},
    )
    LOGGER.info(
        "Selected %s unique tile(s) across %s region(s)",
        len(selection.tiles),
        len(selection.by_region),
    )
    return selection


__all__ = ["TileReference", "TileSelection", "load_layer", "select_tiles"]
