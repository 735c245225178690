"""Region/resolution catalog of deterministic output paths."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

import pandas as pd

from .config import RESOLUTIONS, VARIABLES, CatalogConfig, derived_key, resolution_spec, variable_spec
from .errors import ConfigurationError


LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class CatalogRow:
    variable: str
    resolution: str
    region: str
    derived_key: str
    output_path: Path

    @property
    def sort_key(self) -> Tuple[int, int, str]:
        """Declared variable order, then declared resolution order, then region."""

        return (
            list(VARIABLES).index(self.variable),
            list(RESOLUTIONS).index(self.resolution),
            self.region,
        )


def output_path_for(
    config: CatalogConfig,
    variable: str,
    resolution: str,
    region: str,
) -> Path:
    """``<base>/<region>/<key>_<region>[_<suffix>].<ext>`` for one catalog cell."""

    key = derived_key(variable, resolution)
    suffix = config.suffix_rules.get(variable)
    stem = f"{key}_{region}_{suffix}" if suffix else f"{key}_{region}"
    return Path(config.base_dir) / region / f"{stem}.{config.extension}"


def derived_product_path(path: Path, product: str) -> Path:
    """Sibling path for a product derived from ``path``, e.g. ``ned10m_X_slope.tif``."""

    path = Path(path)
    return path.with_name(f"{path.stem}_{product}{path.suffix}")


class Catalog:
    """Ordered, read-only collection of catalog rows indexed by key and region."""

    def __init__(self, rows: Iterable[CatalogRow]) -> None:
        self._rows: Tuple[CatalogRow, ...] = tuple(sorted(rows, key=lambda row: row.sort_key))
        self._index: Dict[Tuple[str, str], CatalogRow] = {}
        seen_paths: Dict[Path, CatalogRow] = {}
        for row in self._rows:
            clash = seen_paths.get(row.output_path)
            if clash is not None:
                raise ConfigurationError(
                    f"Catalog rows {clash.derived_key}/{clash.region} and {row.derived_key}/{row.region} "
                    f"share {row.output_path}"
                )
            seen_paths[row.output_path] = row
            self._index[(row.derived_key, row.region)] = row

    def __iter__(self) -> Iterator[CatalogRow]:
        return iter(self._rows)

    def __len__(self) -> int:
        return len(self._rows)

    @property
    def rows(self) -> Tuple[CatalogRow, ...]:
        return self._rows

    @property
    def regions(self) -> Tuple[str, ...]:
        return tuple(sorted({row.region for row in self._rows}))

    def lookup(self, key: str, region: str) -> CatalogRow:
        try:
            return self._index[(key, region)]
        except KeyError:
            raise ConfigurationError(f"No catalog row for '{key}' in region '{region}'") from None

    def path(self, key: str, region: str) -> Path:
        return self.lookup(key, region).output_path

    def get(self, key: str, region: str) -> Optional[CatalogRow]:
        return self._index.get((key, region))

    def for_region(self, region: str) -> List[CatalogRow]:
        return [row for row in self._rows if row.region == region]

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [
                {
                    "variable": row.variable,
                    "resolution": row.resolution,
                    "region": row.region,
                    "derived_key": row.derived_key,
                    "output_path": str(row.output_path),
                }
                for row in self._rows
            ],
            columns=["variable", "resolution", "region", "derived_key", "output_path"],
        )

    def write_csv(self, path: Union[str, Path]) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.to_frame().to_csv(path, index=False)
        LOGGER.info("Catalog with %s row(s) written -> %s", len(self), path)
        return path


def build_catalog(
    pairs: Sequence[Tuple[str, str]],
    regions: Sequence[str],
    config: CatalogConfig,
) -> Catalog:
    """Build one row per (variable, resolution) pair and region code."""

    if not pairs:
        raise ConfigurationError("At least one variable/resolution pair is required")
    if not regions:
        raise ConfigurationError("At least one region code is required")

    rows: List[CatalogRow] = []
    for variable, resolution in dict.fromkeys(pairs):
        variable_spec(variable)
        resolution_spec(resolution)
        key = derived_key(variable, resolution)
        for region in dict.fromkeys(regions):
            config.hierarchy.validate(region)
            rows.append(
                CatalogRow(
                    variable=variable,
                    resolution=resolution,
                    region=region,
                    derived_key=key,
                    output_path=output_path_for(config, variable, resolution, region),
                )
            )

    catalog = Catalog(rows)
    LOGGER.info(
        "Built catalog with %s row(s) for %s region code(s)",
        len(catalog),
        len(catalog.regions),
    )
    return catalog


__all__ = [
    "Catalog",
    "CatalogRow",
    "build_catalog",
    "derived_product_path",
    "output_path_for",
]
