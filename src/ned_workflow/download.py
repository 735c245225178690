"""Helpers for downloading and extracting USGS NED tile archives."""

from __future__ import annotations

import logging
import shutil
import tempfile
import zipfile
import zlib
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Sequence

import requests

from .errors import DownloadError, ExtractionError


LOGGER = logging.getLogger(__name__)


DEFAULT_GRID_SIZE = "13"
TILE_URL_TEMPLATE = (
    "https://prd-tnm.s3.amazonaws.com/StagedProducts/Elevation/"
    "{grid}/ArcGrid/USGS_NED_{grid}_{tile}_ArcGrid.zip"
)
RASTER_SUFFIXES: Sequence[str] = (".tif", ".tiff", ".img")
ARCGRID_HEADER = "w001001.adf"


def tile_name(latitude: float, longitude: float) -> str:
    """Return the USGS tile key for a north-west corner, e.g. ``(35, -84) -> n35w084``."""

    lat = int(round(latitude))
    lon = int(round(longitude))
    lat_prefix = "n" if lat >= 0 else "s"
    lon_prefix = "e" if lon >= 0 else "w"
    return f"{lat_prefix}{abs(lat):02d}{lon_prefix}{abs(lon):03d}"


def tile_url(
    grid_size: str,
    latitude: float,
    longitude: float,
    url_template: str = TILE_URL_TEMPLATE,
) -> str:
    return url_template.format(grid=grid_size, tile=tile_name(latitude, longitude))


def archive_path(
    grid_size: str,
    latitude: float,
    longitude: float,
    destination_dir: Path,
    url_template: str = TILE_URL_TEMPLATE,
) -> Path:
    """Local path ``fetch_tile`` writes the archive to."""

    url = tile_url(grid_size, latitude, longitude, url_template)
    return Path(destination_dir) / url.rsplit("/", 1)[-1]


def fetch_tile(
    grid_size: str,
    latitude: float,
    longitude: float,
    destination_dir: Path,
    http: Any = requests,
    url_template: str = TILE_URL_TEMPLATE,
    timeout: float = 600,
) -> Path:
    """Download one tile archive into ``destination_dir`` and return its path.

    Each call opens and closes its own connection; there is no retry. An
    archive already present at the target path is reused.
    """

    destination_dir = Path(destination_dir)
    destination_dir.mkdir(parents=True, exist_ok=True)
    url = tile_url(grid_size, latitude, longitude, url_template)
    target_path = archive_path(grid_size, latitude, longitude, destination_dir, url_template)
    if target_path.exists():
        LOGGER.info("Tile archive cached -> %s", target_path)
        return target_path

    partial_path = target_path.with_name(target_path.name + ".part")
    LOGGER.info("Downloading tile %s -> %s", tile_name(latitude, longitude), target_path)
    try:
        with http.get(url, stream=True, timeout=timeout) as resp:
            resp.raise_for_status()
            with partial_path.open("wb") as dst:
                for chunk in resp.iter_content(chunk_size=1_048_576):
                    if chunk:
                        dst.write(chunk)
    except requests.RequestException as exc:
        partial_path.unlink(missing_ok=True)
        raise DownloadError(f"Failed to download {url}: {exc}") from exc
    except OSError as exc:
        partial_path.unlink(missing_ok=True)
        raise DownloadError(f"Failed to write {target_path}: {exc}") from exc

    partial_path.replace(target_path)
    LOGGER.info("Download complete -> %s", target_path)
    return target_path


def extract_tile(archive: Path, destination: Optional[Path] = None) -> Path:
    """Extract ``archive`` into ``destination`` (default: beside the archive, named after it)."""

    archive = Path(archive)
    if destination is None:
        destination = archive.with_suffix("")
    destination = Path(destination)
    if destination.exists() and any(destination.iterdir()):
        LOGGER.info("Tile already extracted -> %s", destination)
        return destination

    destination.parent.mkdir(parents=True, exist_ok=True)
    staging = Path(tempfile.mkdtemp(prefix=f".{destination.name}.", dir=destination.parent))
    try:
        with zipfile.ZipFile(archive) as bundle:
            root = staging.resolve()
            for member in bundle.namelist():
                target = (staging / member).resolve()
                if root != target and root not in target.parents:
                    raise ExtractionError(f"Archive member {member!r} escapes {destination}")
            corrupt = bundle.testzip()
            if corrupt is not None:
                raise ExtractionError(f"Corrupt member {corrupt!r} in {archive}")
            bundle.extractall(staging)
    except (zipfile.BadZipFile, zlib.error, OSError) as exc:
        shutil.rmtree(staging, ignore_errors=True)
        raise ExtractionError(f"Unable to extract {archive}: {exc}") from exc
    except ExtractionError:
        shutil.rmtree(staging, ignore_errors=True)
        raise

    if destination.exists():
        destination.rmdir()
    staging.replace(destination)
    LOGGER.info("Extracted %s -> %s", archive.name, destination)
    return destination


def locate_tile_raster(directory: Path) -> Path:
    """Return the elevation raster inside an extracted tile directory."""

    directory = Path(directory)
    if not directory.is_dir():
        raise ExtractionError(f"Tile directory {directory} does not exist")

    candidates = sorted(
        path for path in directory.rglob("*") if path.suffix.lower() in RASTER_SUFFIXES
    )
    if candidates:
        return candidates[0]

    headers = sorted(directory.rglob(ARCGRID_HEADER))
    if headers:
        # GDAL opens an ArcGrid coverage through its header file.
        return headers[0]
    raise ExtractionError(f"No raster found in extracted tile {directory}")


def fetch_tiles(
    tiles: Iterable[Any],
    grid_size: str,
    staging_dir: Path,
    http: Any = requests,
    url_template: str = TILE_URL_TEMPLATE,
) -> Dict[str, Path]:
    """Download and extract every tile; return ``{tile_id: extracted_dir}``.

    The first failure aborts the remaining batch.
    """

    extracted: Dict[str, Path] = {}
    tiles = list(tiles)
    LOGGER.info("Fetching %s tile(s) into %s", len(tiles), staging_dir)
    for tile in tiles:
        archive = fetch_tile(
            grid_size,
            tile.latitude,
            tile.longitude,
            staging_dir,
            http=http,
            url_template=url_template,
        )
        extracted[tile.tile_id] = extract_tile(archive, Path(staging_dir) / tile.tile_id)
    return extracted


__all__ = [
    "DEFAULT_GRID_SIZE",
    "TILE_URL_TEMPLATE",
    "archive_path",
    "extract_tile",
    "fetch_tile",
    "fetch_tiles",
    "locate_tile_raster",
    "tile_name",
    "tile_url",
]
