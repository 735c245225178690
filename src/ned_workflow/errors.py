"""Exception taxonomy shared by the catalog, tile and raster stages."""

from __future__ import annotations


class WorkflowError(Exception):
    """Base class for failures that abort a pipeline stage."""


class ConfigurationError(WorkflowError):
    """Unknown region, variable or resolution, or an inconsistent run config."""


class GeometryError(WorkflowError):
    """Empty, null or malformed geometry in a vector layer."""


class CRSMismatchError(WorkflowError):
    """Vector layers disagree on CRS and no reprojection target was configured."""


class DownloadError(WorkflowError):
    """A tile archive could not be fetched from the remote source."""


class ExtractionError(WorkflowError):
    """A tile archive is corrupt or holds no readable raster."""


class MosaicError(WorkflowError):
    """Mosaic inputs are missing, unreadable or mutually incompatible."""


class ReprojectionError(WorkflowError):
    """Warp or resample failed, usually on an unsupported CRS code."""


class TerrainError(WorkflowError):
    """Hillshade, slope or aspect derivation failed."""


__all__ = [
    "WorkflowError",
    "ConfigurationError",
    "GeometryError",
    "CRSMismatchError",
    "DownloadError",
    "ExtractionError",
    "MosaicError",
    "ReprojectionError",
    "TerrainError",
]
