"""Raster operations used by the pipeline stages."""

from .operations import RasterioOperations, RasterOperations, atomic_output, describe_raster

__all__ = ["RasterioOperations", "RasterOperations", "atomic_output", "describe_raster"]
