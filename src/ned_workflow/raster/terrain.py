"""Hillshade, slope and aspect from Horn's 3x3 elevation gradient."""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np
from rasterio.crs import CRS
from rasterio.transform import Affine
from scipy import ndimage


DEGREE_METERS = 111120.0
"""Ground distance per degree used for geographic inputs (gdaldem ``-s``)."""

HILLSHADE_NODATA = 0

# Kernels applied with ``ndimage.correlate`` (no flip): east minus west and
# south minus north, weighted 1-2-1 as in Horn (1981).
_DX_KERNEL = np.array([[-1.0, 0.0, 1.0], [-2.0, 0.0, 2.0], [-1.0, 0.0, 1.0]])
_DY_KERNEL = np.array([[-1.0, -2.0, -1.0], [0.0, 0.0, 0.0], [1.0, 2.0, 1.0]])


def cell_size(transform: Affine, crs: Optional[CRS], scale: Optional[float] = None) -> Tuple[float, float]:
    """Return ground cell size (x, y) in elevation units."""

    size_x = abs(float(transform.a))
    size_y = abs(float(transform.e))
    if scale is None:
        scale = DEGREE_METERS if crs is not None and crs.is_geographic else 1.0
    return size_x * scale, size_y * scale


def horn_gradients(dem: np.ndarray, size_x: float, size_y: float) -> Tuple[np.ndarray, np.ndarray]:
    """Return (dz/dx, dz/dy); edges use the nearest valid row/column."""

    dem = dem.astype("float64", copy=False)
    dzdx = ndimage.correlate(dem, _DX_KERNEL, mode="nearest") / (8.0 * size_x)
    dzdy = ndimage.correlate(dem, _DY_KERNEL, mode="nearest") / (8.0 * size_y)
    return dzdx, dzdy


def compute_slope(dzdx: np.ndarray, dzdy: np.ndarray, z_factor: float = 1.0) -> np.ndarray:
    slope = np.degrees(np.arctan(z_factor * np.hypot(dzdx, dzdy)))
    return slope.astype("float32")


def compute_aspect(dzdx: np.ndarray, dzdy: np.ndarray, nodata: float) -> np.ndarray:
    """Compass aspect in degrees (0 = north, clockwise); flat cells get ``nodata``."""

    angle = np.degrees(np.arctan2(dzdy, -dzdx))
    aspect = np.where(
        angle < 0,
        90.0 - angle,
        np.where(angle > 90.0, 450.0 - angle, 90.0 - angle),
    )
    flat = (dzdx == 0) & (dzdy == 0)
    aspect[flat] = nodata
    return aspect.astype("float32")


def compute_hillshade(
    dzdx: np.ndarray,
    dzdy: np.ndarray,
    azimuth: float = 315.0,
    altitude: float = 45.0,
    z_factor: float = 1.0,
) -> np.ndarray:
    """Illumination in 1..255; 0 is reserved for nodata."""

    zenith = np.radians(90.0 - altitude)
    azimuth_math = np.radians((360.0 - azimuth + 90.0) % 360.0)

    slope = np.arctan(z_factor * np.hypot(dzdx, dzdy))
    aspect = np.arctan2(dzdy, -dzdx)
    aspect = np.where(aspect < 0, aspect + 2 * np.pi, aspect)

    shade = np.cos(zenith) * np.cos(slope) + np.sin(zenith) * np.sin(slope) * np.cos(
        azimuth_math - aspect
    )
    shade = np.nan_to_num(shade, nan=0.0)
    shade = np.where(shade <= 0, 1.0, 1.0 + 254.0 * shade)
    return np.clip(np.rint(shade), 1, 255).astype("uint8")


__all__ = [
    "DEGREE_METERS",
    "HILLSHADE_NODATA",
    "cell_size",
    "compute_aspect",
    "compute_hillshade",
    "compute_slope",
    "horn_gradients",
]
