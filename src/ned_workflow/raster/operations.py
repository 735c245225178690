"""Raster operations backing the subset, mosaic, warp, resample and terrain stages."""

from __future__ import annotations

import logging
import math
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, Optional, Protocol, Sequence, Tuple, Union

import geopandas as gpd
import numpy as np
import rasterio
from rasterio.crs import CRS
from rasterio.enums import Resampling
from rasterio.errors import CRSError, RasterioError
from rasterio.mask import mask
from rasterio.merge import merge
from rasterio.transform import Affine, array_bounds, from_origin
from rasterio.warp import calculate_default_transform, reproject
from shapely.geometry import mapping
from shapely.geometry.base import BaseGeometry

from ..catalog import derived_product_path
from ..config import COMPOSITING_POLICIES, FLOAT_NODATA, MOSAIC_CREATION_OPTIONS, TERRAIN_CREATION_OPTIONS
from ..errors import GeometryError, MosaicError, ReprojectionError, TerrainError
from . import terrain


LOGGER = logging.getLogger(__name__)


TERRAIN_PRODUCTS: Tuple[str, ...] = ("hillshade", "slope", "aspect")

Resolution = Union[float, Tuple[float, float]]
PathLike = Union[str, Path]


class RasterOperations(Protocol):
    """Collaborator the pipeline stages call; every method raises on failure."""

    def subset(
        self,
        source: PathLike,
        output: PathLike,
        geometry: BaseGeometry,
        geometry_crs: Any,
        target_crs: Any,
        target_resolution: Optional[Resolution] = None,
        resampling_method: str = "nearest",
        dtype: Optional[str] = None,
        nodata: Optional[float] = None,
        creation_options: Optional[Mapping[str, Any]] = None,
    ) -> Path:
        ...

    def mosaic(
        self,
        inputs: Sequence[PathLike],
        output: PathLike,
        dtype: str = "float32",
        creation_options: Optional[Mapping[str, Any]] = None,
        nodata: Optional[float] = FLOAT_NODATA,
        policy: str = "last",
        overview_factors: Sequence[int] = (),
    ) -> Path:
        ...

    def warp(
        self,
        input: PathLike,
        output: PathLike,
        alignment_reference: Optional[PathLike] = None,
        target_resolution: Optional[Resolution] = None,
        resampling_method: str = "bilinear",
        source_crs: Any = None,
        target_crs: Any = None,
        dtype: Optional[str] = None,
        nodata: Optional[float] = None,
        creation_options: Optional[Mapping[str, Any]] = None,
    ) -> Path:
        ...

    def resample(
        self,
        input: PathLike,
        output: PathLike,
        target_resolution: Resolution,
        alignment_reference: Optional[PathLike] = None,
        resampling_method: str = "average",
        dtype: Optional[str] = None,
        nodata: Optional[float] = None,
        creation_options: Optional[Mapping[str, Any]] = None,
    ) -> Path:
        ...

    def derive_terrain(
        self,
        input: PathLike,
        creation_options: Optional[Mapping[str, Any]] = None,
        outputs: Optional[Mapping[str, PathLike]] = None,
    ) -> Dict[str, Path]:
        ...


@contextmanager
def atomic_output(path: PathLike) -> Iterator[Path]:
    """Yield a temporary sibling of ``path``; rename it into place on success."""

    final_path = Path(path)
    final_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = final_path.with_name(f".{final_path.stem}.partial{final_path.suffix}")
    try:
        yield temp_path
    except BaseException:
        for leftover in (temp_path, temp_path.with_name(temp_path.name + ".aux.xml")):
            leftover.unlink(missing_ok=True)
        raise
    os.replace(temp_path, final_path)


def describe_raster(path: PathLike) -> Dict[str, Any]:
    """Grid metadata used to compare rasters."""

    with rasterio.open(path) as src:
        return {
            "crs": src.crs.to_string() if src.crs else None,
            "transform": tuple(src.transform)[:6],
            "width": src.width,
            "height": src.height,
            "count": src.count,
            "dtype": src.dtypes[0],
            "nodata": src.nodata,
            "bounds": tuple(src.bounds),
            "res": src.res,
        }


def _resampling(name: str) -> Resampling:
    try:
        return Resampling[name]
    except KeyError:
        raise ReprojectionError(f"Unsupported resampling method '{name}'") from None


def _parse_crs(value: Any) -> Optional[CRS]:
    if value is None:
        return None
    try:
        return CRS.from_user_input(value)
    except CRSError as exc:
        raise ReprojectionError(f"Unsupported coordinate system '{value}': {exc}") from exc


def _pair(resolution: Resolution) -> Tuple[float, float]:
    if isinstance(resolution, (tuple, list)):
        res_x, res_y = resolution
    else:
        res_x = res_y = resolution
    res_x, res_y = abs(float(res_x)), abs(float(res_y))
    if res_x <= 0 or res_y <= 0:
        raise ReprojectionError(f"Target resolution must be positive, got {resolution}")
    return res_x, res_y


def _cells(extent: float, size: float) -> int:
    # Round first so 3000 m / 10 m does not become 301 cells on float noise.
    return max(1, int(math.ceil(round(extent / size, 6))))


def _nodata_fits(value: float, dtype: str) -> bool:
    kind = np.dtype(dtype)
    if np.issubdtype(kind, np.integer):
        info = np.iinfo(kind)
        return bool(np.isfinite(value)) and float(value).is_integer() and info.min <= value <= info.max
    return True


def _output_nodata(requested: Optional[float], source: Optional[float], dtype: str) -> float:
    """Nodata for a warp output: requested, else the source's, else a sentinel the dtype can hold."""

    if requested is not None:
        value = requested
    elif source is not None:
        value = source
    else:
        value = FLOAT_NODATA if _nodata_fits(FLOAT_NODATA, dtype) else 0
    if not _nodata_fits(value, dtype):
        raise ReprojectionError(f"Nodata value {value} cannot be stored as {dtype}")
    return value


def _profile(
    base: Mapping[str, Any],
    creation_options: Optional[Mapping[str, Any]],
) -> Dict[str, Any]:
    profile = {"driver": "GTiff"}
    profile.update(base)
    if creation_options:
        profile.update(creation_options)
    return profile


class RasterioOperations:
    """Raster collaborator implemented with rasterio, numpy and scipy."""

    def __init__(
        self,
        hillshade_azimuth: float = 315.0,
        hillshade_altitude: float = 45.0,
        z_factor: float = 1.0,
        overview_resampling: str = "average",
    ) -> None:
        self.hillshade_azimuth = hillshade_azimuth
        self.hillshade_altitude = hillshade_altitude
        self.z_factor = z_factor
        self.overview_resampling = overview_resampling

    def subset(
        self,
        source: PathLike,
        output: PathLike,
        geometry: BaseGeometry,
        geometry_crs: Any,
        target_crs: Any,
        target_resolution: Optional[Resolution] = None,
        resampling_method: str = "nearest",
        dtype: Optional[str] = None,
        nodata: Optional[float] = None,
        creation_options: Optional[Mapping[str, Any]] = None,
    ) -> Path:
        """Crop ``source`` to ``geometry`` and project it onto ``target_crs``."""

        if geometry is None or geometry.is_empty:
            raise GeometryError(f"Empty boundary geometry for subset of {source}")
        if geometry_crs is None:
            raise GeometryError(f"Boundary geometry for subset of {source} declares no CRS")
        dst_crs = _parse_crs(target_crs)
        resampling = _resampling(resampling_method)

        try:
            with rasterio.open(source) as src:
                if src.crs is None:
                    raise ReprojectionError(f"Raster {source} declares no CRS")
                fill = src.nodata if nodata is None else nodata
                boundary = gpd.GeoSeries([geometry], crs=geometry_crs).to_crs(src.crs).iloc[0]
                try:
                    cropped, crop_transform = mask(
                        src,
                        [mapping(boundary)],
                        crop=True,
                        nodata=fill,
                        filled=True,
                    )
                except ValueError as exc:
                    raise GeometryError(f"Boundary does not overlap {source}: {exc}") from exc
                src_crs = src.crs
                src_res = src.res
                out_dtype = dtype or src.dtypes[0]
        except RasterioError as exc:
            raise ReprojectionError(f"Unable to read {source}: {exc}") from exc

        dst_crs = dst_crs or src_crs
        count, height, width = cropped.shape
        res = _pair(target_resolution) if target_resolution is not None else None
        if dst_crs == src_crs and (res is None or np.allclose(res, src_res)):
            data = cropped.astype(out_dtype)
            dst_transform = crop_transform
        else:
            left, bottom, right, top = array_bounds(height, width, crop_transform)
            try:
                dst_transform, dst_width, dst_height = calculate_default_transform(
                    src_crs, dst_crs, width, height, left, bottom, right, top, resolution=res
                )
            except (CRSError, RasterioError) as exc:
                raise ReprojectionError(f"Cannot project {source} to {dst_crs}: {exc}") from exc
            data = np.full((count, dst_height, dst_width), fill if fill is not None else 0, dtype=out_dtype)
            for band in range(count):
                reproject(
                    source=cropped[band],
                    destination=data[band],
                    src_transform=crop_transform,
                    src_crs=src_crs,
                    src_nodata=fill,
                    dst_transform=dst_transform,
                    dst_crs=dst_crs,
                    dst_nodata=fill,
                    resampling=resampling,
                )

        profile = _profile(
            {
                "height": data.shape[1],
                "width": data.shape[2],
                "count": count,
                "dtype": out_dtype,
                "crs": dst_crs,
                "transform": dst_transform,
                "nodata": fill,
            },
            creation_options,
        )
        output = Path(output)
        with atomic_output(output) as temp_path:
            with rasterio.open(temp_path, "w", **profile) as dst:
                dst.write(data)
        LOGGER.info("Subset %s -> %s (%sx%s)", Path(source).name, output, data.shape[2], data.shape[1])
        return output

    def mosaic(
        self,
        inputs: Sequence[PathLike],
        output: PathLike,
        dtype: str = "float32",
        creation_options: Optional[Mapping[str, Any]] = None,
        nodata: Optional[float] = FLOAT_NODATA,
        policy: str = "last",
        overview_factors: Sequence[int] = (),
    ) -> Path:
        """Merge ``inputs`` over their union extent; ``policy`` resolves overlaps."""

        paths = [Path(path) for path in inputs]
        if not paths:
            raise MosaicError(f"No inputs provided for mosaic {output}")
        if policy not in COMPOSITING_POLICIES:
            raise MosaicError(
                f"Unknown compositing policy '{policy}'; expected one of {COMPOSITING_POLICIES}"
            )
        if creation_options is None:
            creation_options = MOSAIC_CREATION_OPTIONS

        datasets = []
        try:
            for path in paths:
                try:
                    datasets.append(rasterio.open(path))
                except RasterioError as exc:
                    raise MosaicError(f"Unable to open mosaic input {path}: {exc}") from exc

            first = datasets[0]
            for dataset, path in zip(datasets, paths):
                if dataset.count != first.count:
                    raise MosaicError(
                        f"Band count mismatch: {paths[0]} has {first.count}, {path} has {dataset.count}"
                    )
                if dataset.crs != first.crs:
                    raise MosaicError(f"CRS mismatch: {paths[0]} is {first.crs}, {path} is {dataset.crs}")
                for band_dtype in dataset.dtypes:
                    if not np.can_cast(np.dtype(band_dtype), np.dtype(dtype), casting="same_kind"):
                        raise MosaicError(
                            f"Input {path} has dtype {band_dtype}, incompatible with {dtype}"
                        )

            LOGGER.info("Mosaicking %s raster(s) -> %s (policy=%s)", len(paths), output, policy)
            try:
                mosaicked, transform = merge(datasets, nodata=nodata, dtype=dtype, method=policy)
            except (RasterioError, ValueError) as exc:
                raise MosaicError(f"Mosaic of {len(paths)} raster(s) failed: {exc}") from exc
            crs = first.crs
        finally:
            for dataset in datasets:
                dataset.close()

        profile = _profile(
            {
                "height": mosaicked.shape[1],
                "width": mosaicked.shape[2],
                "count": mosaicked.shape[0],
                "dtype": dtype,
                "crs": crs,
                "transform": transform,
                "nodata": nodata,
            },
            creation_options,
        )
        output = Path(output)
        try:
            with atomic_output(output) as temp_path:
                with rasterio.open(temp_path, "w", **profile) as dst:
                    dst.write(mosaicked.astype(dtype, copy=False))
                    if overview_factors:
                        dst.build_overviews(list(overview_factors), _resampling(self.overview_resampling))
                        dst.update_tags(ns="rio_overview", resampling=self.overview_resampling)
        except RasterioError as exc:
            raise MosaicError(f"Unable to write mosaic {output}: {exc}") from exc
        LOGGER.info("Wrote mosaic -> %s", output)
        return output

    def _target_grid(
        self,
        src,
        src_crs: CRS,
        dst_crs: Optional[CRS],
        alignment_reference: Optional[PathLike],
        target_resolution: Optional[Resolution],
    ) -> Tuple[CRS, Affine, int, int]:
        if alignment_reference is not None:
            with rasterio.open(alignment_reference) as ref:
                if ref.crs is None:
                    raise ReprojectionError(f"Alignment reference {alignment_reference} declares no CRS")
                if dst_crs is not None and ref.crs != dst_crs:
                    raise ReprojectionError(
                        f"Target CRS {dst_crs} contradicts alignment reference CRS {ref.crs}"
                    )
                res_x, res_y = _pair(target_resolution) if target_resolution is not None else ref.res
                left, bottom, right, top = ref.bounds
                return (
                    ref.crs,
                    from_origin(left, top, res_x, res_y),
                    _cells(right - left, res_x),
                    _cells(top - bottom, res_y),
                )

        dst_crs = dst_crs or src_crs
        res = _pair(target_resolution) if target_resolution is not None else None
        transform, width, height = calculate_default_transform(
            src_crs, dst_crs, src.width, src.height, *src.bounds, resolution=res
        )
        return dst_crs, transform, width, height

    def warp(
        self,
        input: PathLike,
        output: PathLike,
        alignment_reference: Optional[PathLike] = None,
        target_resolution: Optional[Resolution] = None,
        resampling_method: str = "bilinear",
        source_crs: Any = None,
        target_crs: Any = None,
        dtype: Optional[str] = None,
        nodata: Optional[float] = None,
        creation_options: Optional[Mapping[str, Any]] = None,
    ) -> Path:
        """Reproject ``input`` onto ``target_crs``, optionally snapped to a reference grid.

        With ``alignment_reference`` the output takes the reference's origin,
        extent and CRS; its pixel size is ``target_resolution`` when given and
        the reference's otherwise.
        """

        resampling = _resampling(resampling_method)
        declared_src_crs = _parse_crs(source_crs)
        dst_crs = _parse_crs(target_crs)
        output = Path(output)

        try:
            with rasterio.open(input) as src:
                src_crs = declared_src_crs or src.crs
                if src_crs is None:
                    raise ReprojectionError(f"Raster {input} declares no CRS and none was supplied")
                dst_crs, dst_transform, width, height = self._target_grid(
                    src, src_crs, dst_crs, alignment_reference, target_resolution
                )
                out_dtype = dtype or src.dtypes[0]
                src_nodata = src.nodata
                dst_nodata = _output_nodata(nodata, src_nodata, out_dtype)
                data = np.full((src.count, height, width), dst_nodata, dtype=out_dtype)
                for band in range(1, src.count + 1):
                    reproject(
                        source=src.read(band),
                        destination=data[band - 1],
                        src_transform=src.transform,
                        src_crs=src_crs,
                        src_nodata=src_nodata,
                        dst_transform=dst_transform,
                        dst_crs=dst_crs,
                        dst_nodata=dst_nodata,
                        resampling=resampling,
                    )
                count = src.count
        except (CRSError, RasterioError, ValueError) as exc:
            raise ReprojectionError(f"Warp of {input} failed: {exc}") from exc

        profile = _profile(
            {
                "height": height,
                "width": width,
                "count": count,
                "dtype": out_dtype,
                "crs": dst_crs,
                "transform": dst_transform,
                "nodata": dst_nodata,
            },
            creation_options,
        )
        try:
            with atomic_output(output) as temp_path:
                with rasterio.open(temp_path, "w", **profile) as dst:
                    dst.write(data)
        except RasterioError as exc:
            raise ReprojectionError(f"Unable to write {output}: {exc}") from exc
        LOGGER.info(
            "Warped %s -> %s (%s, %s, %sx%s)",
            Path(input).name,
            output,
            dst_crs.to_string() if dst_crs else None,
            resampling_method,
            width,
            height,
        )
        return output

    def resample(
        self,
        input: PathLike,
        output: PathLike,
        target_resolution: Resolution,
        alignment_reference: Optional[PathLike] = None,
        resampling_method: str = "average",
        dtype: Optional[str] = None,
        nodata: Optional[float] = None,
        creation_options: Optional[Mapping[str, Any]] = None,
    ) -> Path:
        """Warp within the input's own CRS; aligns to the input's origin by default."""

        try:
            with rasterio.open(input) as src:
                crs = src.crs
        except RasterioError as exc:
            raise ReprojectionError(f"Unable to read {input}: {exc}") from exc
        if crs is None:
            raise ReprojectionError(f"Raster {input} declares no CRS")
        return self.warp(
            input,
            output,
            alignment_reference=alignment_reference if alignment_reference is not None else input,
            target_resolution=target_resolution,
            resampling_method=resampling_method,
            source_crs=crs,
            target_crs=crs,
            dtype=dtype,
            nodata=nodata,
            creation_options=creation_options,
        )

    def derive_terrain(
        self,
        input: PathLike,
        creation_options: Optional[Mapping[str, Any]] = None,
        outputs: Optional[Mapping[str, PathLike]] = None,
    ) -> Dict[str, Path]:
        """Write hillshade, slope and aspect rasters on the input's exact grid."""

        if creation_options is None:
            creation_options = TERRAIN_CREATION_OPTIONS
        targets = {product: derived_product_path(Path(input), product) for product in TERRAIN_PRODUCTS}
        if outputs:
            unknown = set(outputs) - set(TERRAIN_PRODUCTS)
            if unknown:
                raise TerrainError(f"Unknown terrain product(s): {', '.join(sorted(unknown))}")
            targets.update({product: Path(path) for product, path in outputs.items()})

        try:
            with rasterio.open(input) as src:
                dem = src.read(1, masked=True).astype("float64").filled(np.nan)
                grid = {
                    "height": src.height,
                    "width": src.width,
                    "count": 1,
                    "crs": src.crs,
                    "transform": src.transform,
                }
                size_x, size_y = terrain.cell_size(src.transform, src.crs)
        except RasterioError as exc:
            raise TerrainError(f"Unable to read elevation raster {input}: {exc}") from exc

        invalid = ~np.isfinite(dem)
        if invalid.all():
            raise TerrainError(f"Elevation raster {input} holds no valid pixels")

        LOGGER.info("Computing Horn gradients for %s", Path(input).name)
        dzdx, dzdy = terrain.horn_gradients(dem, size_x, size_y)
        invalid |= ~np.isfinite(dzdx) | ~np.isfinite(dzdy)

        hillshade = terrain.compute_hillshade(
            dzdx,
            dzdy,
            azimuth=self.hillshade_azimuth,
            altitude=self.hillshade_altitude,
            z_factor=self.z_factor,
        )
        hillshade[invalid] = terrain.HILLSHADE_NODATA
        slope = terrain.compute_slope(dzdx, dzdy, z_factor=self.z_factor)
        slope[invalid] = FLOAT_NODATA
        aspect = terrain.compute_aspect(dzdx, dzdy, nodata=FLOAT_NODATA)
        aspect[invalid] = FLOAT_NODATA

        products = {
            "hillshade": (hillshade, "uint8", terrain.HILLSHADE_NODATA),
            "slope": (slope, "float32", FLOAT_NODATA),
            "aspect": (aspect, "float32", FLOAT_NODATA),
        }
        written: Dict[str, Path] = {}
        for product in TERRAIN_PRODUCTS:
            band, band_dtype, band_nodata = products[product]
            profile = _profile(dict(grid, dtype=band_dtype, nodata=band_nodata), creation_options)
            target = targets[product]
            try:
                with atomic_output(target) as temp_path:
                    with rasterio.open(temp_path, "w", **profile) as dst:
                        dst.write(band, 1)
                        dst.set_band_description(1, product.capitalize())
            except RasterioError as exc:
                raise TerrainError(f"Unable to write {product} raster {target}: {exc}") from exc
            LOGGER.info("Wrote %s -> %s", product, target)
            written[product] = target
        return written


__all__ = [
    "COMPOSITING_POLICIES",
    "TERRAIN_PRODUCTS",
    "RasterOperations",
    "RasterioOperations",
    "atomic_output",
    "describe_raster",
]
