"""Configuration objects for the NED tile workflow."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Tuple, Union

from rasterio.enums import Resampling

from .download import DEFAULT_GRID_SIZE, TILE_URL_TEMPLATE
from .errors import ConfigurationError


LOGGER = logging.getLogger(__name__)


FLOAT_NODATA = -9999.0
LAND_COVER_NODATA = 0

MOSAIC_CREATION_OPTIONS: Mapping[str, Any] = {
    "BIGTIFF": "IF_SAFER",
    "compress": "deflate",
}
TERRAIN_CREATION_OPTIONS: Mapping[str, Any] = {
    "tiled": True,
    "compress": "deflate",
}
DEFAULT_OVERVIEW_FACTORS: Tuple[int, ...] = (2, 4, 8, 16)
COMPOSITING_POLICIES: Tuple[str, ...] = ("last", "first", "min", "max")


@dataclass(frozen=True)
class ResolutionSpec:
    name: str
    label: str
    meters: Optional[float]


@dataclass(frozen=True)
class VariableSpec:
    """Naming and pixel conventions for one catalog variable."""

    name: str
    code: str
    resolutions: Tuple[str, ...]
    dtype: str
    nodata: float


RESOLUTIONS: Mapping[str, ResolutionSpec] = {
    "arc-second": ResolutionSpec("arc-second", "09d", None),
    "10-meter": ResolutionSpec("10-meter", "10m", 10.0),
    "30-meter": ResolutionSpec("30-meter", "30m", 30.0),
}

VARIABLES: Mapping[str, VariableSpec] = {
    "elevation": VariableSpec(
        name="elevation",
        code="ned",
        resolutions=("arc-second", "10-meter", "30-meter"),
        dtype="float32",
        nodata=FLOAT_NODATA,
    ),
    "land-cover": VariableSpec(
        name="land-cover",
        code="nlcd",
        resolutions=("30-meter",),
        dtype="uint8",
        nodata=LAND_COVER_NODATA,
    ),
}

CATALOG_PAIRS: Tuple[Tuple[str, str], ...] = (
    ("elevation", "arc-second"),
    ("elevation", "10-meter"),
    ("elevation", "30-meter"),
    ("land-cover", "30-meter"),
)


def variable_spec(variable: str) -> VariableSpec:
    try:
        return VARIABLES[variable]
    except KeyError:
        raise ConfigurationError(
            f"Unknown variable '{variable}'; expected one of {sorted(VARIABLES)}"
        ) from None


def resolution_spec(resolution: str) -> ResolutionSpec:
    try:
        return RESOLUTIONS[resolution]
    except KeyError:
        raise ConfigurationError(
            f"Unknown resolution '{resolution}'; expected one of {sorted(RESOLUTIONS)}"
        ) from None


def derived_key(variable: str, resolution: str) -> str:
    """Return the lookup key for a variable/resolution pair, e.g. ``ned10m``."""

    var = variable_spec(variable)
    res = resolution_spec(resolution)
    if resolution not in var.resolutions:
        raise ConfigurationError(
            f"Variable '{variable}' is not produced at resolution '{resolution}'"
        )
    return f"{var.code}{res.label}"


def split_derived_key(key: str) -> Tuple[str, str]:
    """Inverse of :func:`derived_key`."""

    for variable, var in VARIABLES.items():
        for resolution in var.resolutions:
            if f"{var.code}{RESOLUTIONS[resolution].label}" == key:
                return variable, resolution
    raise ConfigurationError(f"Unknown derived key '{key}'")


@dataclass(frozen=True)
class RegionHierarchy:
    """Two-level grouping: each office aggregates an ordered list of regions."""

    offices: Mapping[str, Tuple[str, ...]]

    def __post_init__(self) -> None:
        seen: Dict[str, str] = {}
        for office, regions in self.offices.items():
            if not regions:
                raise ConfigurationError(f"Office '{office}' lists no regions")
            for region in regions:
                if region in self.offices:
                    raise ConfigurationError(f"Region code '{region}' is also an office code")
                if region in seen:
                    raise ConfigurationError(
                        f"Region '{region}' belongs to both '{seen[region]}' and '{office}'"
                    )
                seen[region] = office

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Iterable[str]]) -> "RegionHierarchy":
        return cls(offices={str(k): tuple(str(r) for r in v) for k, v in mapping.items()})

    @property
    def regions(self) -> Tuple[str, ...]:
        return tuple(region for regions in self.offices.values() for region in regions)

    @property
    def codes(self) -> Tuple[str, ...]:
        return self.regions + tuple(self.offices)

    def is_office(self, code: str) -> bool:
        return code in self.offices

    def office_of(self, region: str) -> str:
        for office, regions in self.offices.items():
            if region in regions:
                return office
        raise ConfigurationError(f"Unknown region code '{region}'")

    def validate(self, code: str) -> str:
        if code not in self.codes:
            raise ConfigurationError(
                f"Unknown region code '{code}'; configured codes are {sorted(self.codes)}"
            )
        return code

    def subset(self, offices: Optional[Sequence[str]]) -> "RegionHierarchy":
        """Return a hierarchy restricted to ``offices`` (all when ``None``)."""

        if not offices:
            return self
        for office in offices:
            if office not in self.offices:
                raise ConfigurationError(f"Unknown office code '{office}'")
        return RegionHierarchy(offices={office: self.offices[office] for office in offices})


@dataclass(frozen=True)
class CatalogConfig:
    """Immutable inputs to the catalog builder."""

    base_dir: Path
    hierarchy: RegionHierarchy
    suffix_rules: Mapping[str, str] = field(default_factory=dict)
    """Variable name -> filename suffix, e.g. ``{"land-cover": "2011"}``."""
    extension: str = "tif"


@dataclass(frozen=True)
class RunConfig:
    """Parameters for one end-to-end processing run."""

    base_dir: Path
    staging_dir: Path
    tile_index_path: Path
    regions_path: Path
    land_cover_path: Path
    hierarchy: RegionHierarchy
    land_cover_epoch: Optional[str] = None
    region_field: str = "REGION"
    tile_id_field: str = "FILE_ID"
    tile_lat_field: str = "LAT"
    tile_lon_field: str = "LONG"
    selection_crs: Optional[str] = None
    """CRS both vector layers are reprojected to before intersecting."""
    source_crs: str = "EPSG:4269"
    target_crs: str = "EPSG:5070"
    grid_size: str = DEFAULT_GRID_SIZE
    tile_url_template: str = TILE_URL_TEMPLATE
    warp_resampling: str = "bilinear"
    resample_resampling: str = "average"
    land_cover_resampling: str = "nearest"
    mosaic_policy: str = "last"
    terrain_keys: Tuple[str, ...] = ("ned10m", "ned30m")
    office_keys: Tuple[str, ...] = ("ned10m", "ned30m", "nlcd30m")
    overview_factors: Tuple[int, ...] = DEFAULT_OVERVIEW_FACTORS
    mosaic_creation_options: Mapping[str, Any] = field(
        default_factory=lambda: dict(MOSAIC_CREATION_OPTIONS)
    )
    terrain_creation_options: Mapping[str, Any] = field(
        default_factory=lambda: dict(TERRAIN_CREATION_OPTIONS)
    )

    def catalog_config(self) -> CatalogConfig:
        suffix_rules = {"land-cover": self.land_cover_epoch} if self.land_cover_epoch else {}
        return CatalogConfig(
            base_dir=self.base_dir,
            hierarchy=self.hierarchy,
            suffix_rules=suffix_rules,
        )

    def restrict(self, offices: Optional[Sequence[str]]) -> "RunConfig":
        if not offices:
            return self
        return replace(self, hierarchy=self.hierarchy.subset(offices))


_PATH_KEYS = {
    "base_dir": "base_dir",
    "staging_dir": "staging_dir",
    "tile_index": "tile_index_path",
    "regions_layer": "regions_path",
    "land_cover": "land_cover_path",
}
_TUPLE_KEYS = {"terrain_keys", "office_keys", "overview_factors"}
_PLAIN_KEYS = {
    "land_cover_epoch",
    "region_field",
    "tile_id_field",
    "tile_lat_field",
    "tile_lon_field",
    "selection_crs",
    "source_crs",
    "target_crs",
    "grid_size",
    "tile_url_template",
    "warp_resampling",
    "resample_resampling",
    "land_cover_resampling",
    "mosaic_policy",
    "mosaic_creation_options",
    "terrain_creation_options",
}


_RESAMPLING_KEYS = ("warp_resampling", "resample_resampling", "land_cover_resampling")


def _check_methods(values: Mapping[str, Any], config_path: Path) -> None:
    policy = values.get("mosaic_policy")
    if policy is not None and policy not in COMPOSITING_POLICIES:
        raise ConfigurationError(
            f"Unknown mosaic_policy '{policy}' in {config_path}; expected one of {COMPOSITING_POLICIES}"
        )
    for key in _RESAMPLING_KEYS:
        method = values.get(key)
        if method is not None and method not in Resampling.__members__:
            raise ConfigurationError(f"Unknown {key} '{method}' in {config_path}")


def load_run_config(path: Union[str, Path]) -> RunConfig:
    """Read a JSON run file; relative paths resolve against its directory."""

    config_path = Path(path).expanduser().resolve()
    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Unable to read run config {config_path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Run config {config_path} must hold a JSON object")

    unknown = set(data) - set(_PATH_KEYS) - _TUPLE_KEYS - _PLAIN_KEYS - {"offices"}
    if unknown:
        raise ConfigurationError(f"Unsupported run config key(s): {', '.join(sorted(unknown))}")

    values: Dict[str, Any] = {}
    for key, attr in _PATH_KEYS.items():
        if key not in data:
            raise ConfigurationError(f"Run config {config_path} is missing '{key}'")
        candidate = Path(data[key]).expanduser()
        if not candidate.is_absolute():
            candidate = config_path.parent / candidate
        values[attr] = candidate.resolve()

    offices = data.get("offices")
    if not isinstance(offices, dict) or not offices:
        raise ConfigurationError(f"Run config {config_path} must map at least one office to regions")
    for office, regions in offices.items():
        if not isinstance(regions, list):
            raise ConfigurationError(
                f"Office '{office}' in {config_path} must list its regions, got {regions!r}"
            )
    values["hierarchy"] = RegionHierarchy.from_mapping(offices)

    for key in _TUPLE_KEYS:
        if key in data:
            values[key] = tuple(data[key])
    for key in _PLAIN_KEYS:
        if key in data:
            values[key] = data[key]
    _check_methods(values, config_path)

    LOGGER.info(
        "Loaded run config %s (%s office(s), %s region(s))",
        config_path,
        len(values["hierarchy"].offices),
        len(values["hierarchy"].regions),
    )
    return RunConfig(**values)


__all__ = [
    "CATALOG_PAIRS",
    "COMPOSITING_POLICIES",
    "FLOAT_NODATA",
    "LAND_COVER_NODATA",
    "MOSAIC_CREATION_OPTIONS",
    "TERRAIN_CREATION_OPTIONS",
    "RESOLUTIONS",
    "VARIABLES",
    "CatalogConfig",
    "RegionHierarchy",
    "ResolutionSpec",
    "RunConfig",
    "VariableSpec",
    "derived_key",
    "load_run_config",
    "resolution_spec",
    "split_derived_key",
    "variable_spec",
]
