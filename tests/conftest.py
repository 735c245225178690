"""Shared fixtures for ned_workflow tests."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest
import rasterio


def _write_raster(
    path: Path,
    data: np.ndarray,
    transform,
    crs: str,
    nodata=None,
    dtype=None,
) -> Path:
    if data.ndim == 2:
        data = data[np.newaxis, ...]
    profile = {
        "driver": "GTiff",
        "height": data.shape[1],
        "width": data.shape[2],
        "count": data.shape[0],
        "dtype": dtype or data.dtype.name,
        "transform": transform,
        "crs": crs,
        "nodata": nodata,
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    with rasterio.open(path, "w", **profile) as dst:
        dst.write(data.astype(profile["dtype"]))
    return path


@pytest.fixture
def write_raster():
    """Return a helper that writes an ndarray to a GeoTIFF."""

    return _write_raster
