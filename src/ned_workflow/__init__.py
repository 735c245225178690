"""USGS NED tile catalog and processing workflow."""

from .catalog import Catalog, CatalogRow, build_catalog
from .config import CatalogConfig, RegionHierarchy, RunConfig, load_run_config
from .pipeline import run_pipeline

__all__ = [
    "Catalog",
    "CatalogConfig",
    "CatalogRow",
    "RegionHierarchy",
    "RunConfig",
    "build_catalog",
    "load_run_config",
    "run_pipeline",
]
