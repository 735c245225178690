"""CLI for building the NED catalog and running the tile workflow."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from .catalog import build_catalog
from .config import CATALOG_PAIRS, load_run_config
from .errors import WorkflowError
from .pipeline import run_pipeline
from .tiles import load_layer, select_tiles


LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Download, mosaic, warp and derive terrain from USGS NED tiles.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    catalog = commands.add_parser("catalog", help="Write the output path catalog as CSV.")
    catalog.add_argument("--config", required=True, help="Path to the JSON run config.")
    catalog.add_argument("--output", help="CSV destination (default: <base_dir>/catalog.csv).")

    tiles = commands.add_parser("tiles", help="List the deduplicated tiles to fetch.")
    tiles.add_argument("--config", required=True, help="Path to the JSON run config.")
    tiles.add_argument("--office", action="append", help="Restrict to an office code (repeatable).")

    run = commands.add_parser("run", help="Run every stage, resuming from existing outputs.")
    run.add_argument("--config", required=True, help="Path to the JSON run config.")
    run.add_argument("--office", action="append", help="Restrict to an office code (repeatable).")
    run.add_argument("--start-at", help="Stage name to start from, e.g. warp:11-JUE:ned10m.")
    run.add_argument(
        "--no-resume",
        action="store_true",
        help="Re-run stages even when their outputs already exist.",
    )
    return parser


def _catalog(args: argparse.Namespace) -> int:
    config = load_run_config(args.config)
    catalog = build_catalog(CATALOG_PAIRS, config.hierarchy.codes, config.catalog_config())
    output = Path(args.output) if args.output else config.base_dir / "catalog.csv"
    catalog.write_csv(output)
    return 0


def _tiles(args: argparse.Namespace) -> int:
    config = load_run_config(args.config).restrict(args.office)
    selection = select_tiles(
        load_layer(config.tile_index_path),
        load_layer(config.regions_path),
        crs=config.selection_crs,
        region_field=config.region_field,
        id_field=config.tile_id_field,
        lat_field=config.tile_lat_field,
        lon_field=config.tile_lon_field,
        region_codes=config.hierarchy.regions,
    )
    for tile in selection.tiles:
        print(f"{tile.tile_id}\t{tile.latitude:g}\t{tile.longitude:g}\t{','.join(sorted(tile.regions))}")
    return 0


def _run(args: argparse.Namespace) -> int:
    config = load_run_config(args.config)
    report = run_pipeline(
        config,
        resume=not args.no_resume,
        offices=args.office,
        start_at=args.start_at,
    )
    return 0 if report.ok else 1


def main(args=None) -> int:
    parser = build_parser()
    parsed = parser.parse_args(args=args)

    logging.basicConfig(level=getattr(logging, parsed.log_level.upper()))

    handlers = {"catalog": _catalog, "tiles": _tiles, "run": _run}
    try:
        return handlers[parsed.command](parsed)
    except WorkflowError as exc:
        LOGGER.error("%s: %s", type(exc).__name__, exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
