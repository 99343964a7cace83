#!/usr/bin/env python3
"""marsh.geo

Raster and time-series processing CLI for marsh.

This is one of several marsh subsystem CLIs:
- marsh.registry → zone definition (resolve-zones)
- marsh.geo      → raster mask/merge/clip, zonal aggregation, gap filling (this file)
- marsh.features → tabular consumers (trap counts, temperature classes)

marsh.geo works on *already-resolved* zones (from marsh.registry):
- mask-merge   → per date: quality-mask tiles, merge, clip to boundary
- zonal-stats  → per date × zone: pixel sums and areas
- gap-fill     → repair known-bad dates per zone
- run          → all three in order, one per-date tally at the end

Design notes:
- Every step takes the same PipelineConfig (YAML + CLI overrides)
- Lazy-imports rasterio/geopandas modules to keep CLI startup fast
- All subcommands support --dry-run for safe exploration
- Exit code 2 when any date failed (skips alone still exit 0)

Examples:
  python -m marsh.geo --config config/pipeline.yaml mask-merge
  python -m marsh.geo --config config/pipeline.yaml zonal-stats --out-csv data/interim/tables/water_raw.csv
  python -m marsh.geo --config config/pipeline.yaml gap-fill --table data/interim/tables/water_raw.csv
  python -m marsh.geo --config config/pipeline.yaml run
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Optional

from marsh.config import (
    PIXEL_RULES,
    UNDERFLOW_POLICIES,
    AREA_UNITS,
    PipelineConfig,
    DEFAULT_PIPELINE_YAML,
    parse_date_list,
)
from marsh.log import setup_logging


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for marsh.geo.

    Structure:
    - Global args: apply to all subcommands (--config, --dry-run, etc.)
    - Subcommands: one per pipeline step, plus `run` for the whole chain
    """
    ap = argparse.ArgumentParser(
        prog="marsh.geo",
        description="Raster and time-series processing for marsh",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Subsystem CLIs:
  python -m marsh.registry  # Zone definition
  python -m marsh.geo       # Rasters, zonal aggregation, gap filling (this)
  python -m marsh.features  # Trap counts, temperature classes
        """,
    )

    # --- Global args ---
    ap.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_PIPELINE_YAML,
        help=f"Path to pipeline YAML (default: {DEFAULT_PIPELINE_YAML})",
    )
    ap.add_argument("--dry-run", action="store_true", help="Print planned actions without writing files")
    ap.add_argument("--overwrite", action="store_true", help="Rebuild clipped rasters that already exist")
    ap.add_argument("--workers", type=int, default=None, help="Worker processes (default from config: 1)")
    ap.add_argument("--timeout-s", type=float, default=None, help="Per-date timeout in seconds (workers > 1 only)")
    ap.add_argument("--dates", nargs="+", default=None, help="Only these dates (YYYY-MM-DD or YYYYMMDD)")
    ap.add_argument("--log-file", type=Path, default=None, help="Also write logs to this file")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    # --- Subcommands ---
    sub = ap.add_subparsers(dest="command", required=True)

    # --- mask-merge ---
    mm = sub.add_parser(
        "mask-merge",
        help="Mask, merge and clip tiles per date",
        description="""
For each acquisition date:
1. Set pixels flagged invalid by the quality mask to nodata
2. Merge the tiles (first tile wins on overlap)
3. Clip to the regional boundary from marsh.registry
4. Write {clipped_dir}/{clipped_prefix}_{YYYYMMDD}.tif
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    mm.add_argument("--tile-dir", type=Path, default=None, help="Directory holding tiles and masks")
    mm.add_argument("--clipped-dir", type=Path, default=None, help="Output directory for clipped rasters")

    # --- zonal-stats ---
    zs = sub.add_parser(
        "zonal-stats",
        help="Aggregate clipped rasters per zone and date",
        description="""
Sum qualifying pixels per zone for every clipped raster and convert to area.

Outputs a long CSV: zone_id, date, raw_count, valid_pixels, mean, area
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    zs.add_argument("--clipped-dir", type=Path, default=None, help="Directory of clipped rasters")
    zs.add_argument("--out-csv", type=Path, required=True, help="Output CSV path")
    zs.add_argument("--pixel-rule", choices=PIXEL_RULES, default=None, help="Pixel apportionment (default: area)")
    zs.add_argument("--area-unit", choices=sorted(AREA_UNITS), default=None, help="Output area unit (default: acre)")

    # --- gap-fill ---
    gf = sub.add_parser(
        "gap-fill",
        help="Repair known-bad dates per zone",
        description="""
Drop, midpoint-fill or interpolate the dates listed in the pipeline config,
each zone independently. Adds <col>_filled and repair columns.
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    gf.add_argument("--table", type=Path, required=True, help="Zonal CSV from zonal-stats")
    gf.add_argument("--out-csv", type=Path, default=None, help="Output CSV (default: out_csv from config)")
    gf.add_argument("--on-underflow", choices=UNDERFLOW_POLICIES, default=None)

    # --- run ---
    run = sub.add_parser("run", help="mask-merge → zonal-stats → gap-fill")
    run.add_argument("--skip-mask-merge", action="store_true", help="Reuse the clipped rasters already on disk")
    run.add_argument("--out-csv", type=Path, default=None, help="Output CSV (default: out_csv from config)")

    return ap


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _config(args: argparse.Namespace, **overrides) -> PipelineConfig:
    cfg = PipelineConfig.from_yaml(args.config)
    return cfg.with_overrides(workers=args.workers, timeout_s=args.timeout_s, **overrides)


def _dates(args: argparse.Namespace):
    return parse_date_list(args.dates) if args.dates else None


def _raw_csv_path(out_csv: Path) -> Path:
    return out_csv.with_name(out_csv.stem + "_raw" + out_csv.suffix)


def _handle_mask_merge(args: argparse.Namespace) -> int:
    cfg = _config(args, tile_dir=args.tile_dir, clipped_dir=args.clipped_dir)

    from marsh.geo.mask_merge import mask_merge_all

    tally = mask_merge_all(cfg, dates=_dates(args), overwrite=args.overwrite, dry_run=args.dry_run)
    return 2 if tally.failed else 0


def _handle_zonal_stats(args: argparse.Namespace) -> int:
    cfg = _config(args, clipped_dir=args.clipped_dir, pixel_rule=args.pixel_rule, area_unit=args.area_unit)

    from marsh.geo.tables import write_csv
    from marsh.geo.zonal import aggregate_all

    table, tally = aggregate_all(cfg, dates=_dates(args), dry_run=args.dry_run)
    if args.dry_run:
        print(f"[dry-run] Would write {args.out_csv}")
        return 0
    write_csv(table, args.out_csv)
    print(f"Wrote {len(table)} rows -> {args.out_csv}")
    return 2 if tally.failed else 0


def _handle_gap_fill(args: argparse.Namespace) -> int:
    cfg = _config(args, on_underflow=args.on_underflow, out_csv=args.out_csv)

    from marsh.geo.gapfill import gap_fill_config
    from marsh.geo.tables import read_table, write_csv

    table = read_table(args.table)
    if args.dry_run:
        print("[dry-run] Would gap-fill:")
        print(f"  Table: {args.table} ({len(table)} rows, {table['zone_id'].nunique()} zones)")
        print(f"  drop={len(cfg.drop_dates)} midpoint={len(cfg.midpoint_dates)} interpolate={len(cfg.interpolate_dates)}")
        print(f"  Output: {cfg.out_csv}")
        return 0

    filled = gap_fill_config(table, cfg)
    write_csv(filled, cfg.out_csv)
    print(f"Wrote {len(filled)} rows -> {cfg.out_csv}")
    return 0


def _handle_run(args: argparse.Namespace) -> int:
    """Run the whole chain and finish with one per-date tally."""
    cfg = _config(args, out_csv=args.out_csv)

    from marsh.geo.gapfill import gap_fill_config
    from marsh.geo.mask_merge import mask_merge_all
    from marsh.geo.tables import write_csv
    from marsh.geo.zonal import aggregate_all

    dates = _dates(args)
    mm_tally = None
    if not args.skip_mask_merge:
        mm_tally = mask_merge_all(cfg, dates=dates, overwrite=args.overwrite, dry_run=args.dry_run)

    table, zs_tally = aggregate_all(cfg, dates=dates, dry_run=args.dry_run)
    if args.dry_run:
        print(f"[dry-run] Would write {_raw_csv_path(cfg.out_csv)} and {cfg.out_csv}")
        return 0

    write_csv(table, _raw_csv_path(cfg.out_csv))
    filled = gap_fill_config(table, cfg)
    write_csv(filled, cfg.out_csv)
    print(f"Wrote {len(filled)} rows -> {cfg.out_csv}")

    print("Run summary:")
    if mm_tally is not None:
        print(mm_tally.summary("mask-merge"))
    print(zs_tally.summary("zonal-stats"))
    failed = (mm_tally.failed if mm_tally else {}) or zs_tally.failed
    return 2 if failed else 0


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for marsh.geo CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)
    setup_logging(args.verbose, args.log_file)

    handlers = {
        "mask-merge": _handle_mask_merge,
        "zonal-stats": _handle_zonal_stats,
        "gap-fill": _handle_gap_fill,
        "run": _handle_run,
    }

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
