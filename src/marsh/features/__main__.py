#!/usr/bin/env python3
"""marsh.features

Tabular consumers CLI for marsh.

This is one of several marsh subsystem CLIs:
- marsh.registry → zone definition
- marsh.geo      → raster mask/merge/clip, zonal aggregation, gap filling
- marsh.features → tabular consumers (this file)

Both commands read outputs of the other subsystems and write dashboard CSVs.

Examples:
  # Mosquito trap records per ZIP and date
  python -m marsh.features trap-counts \
    --traps-csv data/raw/surveillance/traps_2021.csv \
    --out-csv data/processed/trap_counts_by_zip.csv

  # Classify zonal mean temperature (from `marsh.geo zonal-stats`)
  python -m marsh.features temperature-classes \
    --table data/interim/tables/lst_by_zip.csv \
    --out-csv data/processed/lst_classes_by_zip.csv
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Optional

from marsh.config import PipelineConfig, load_yaml
from marsh.errors import ConfigError
from marsh.log import setup_logging


DEFAULT_BINS = [-50.0, 16.0, 22.0, 32.0, 60.0]
DEFAULT_LABELS = ["none", "low", "high", "declining"]


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for marsh.features."""
    ap = argparse.ArgumentParser(
        prog="marsh.features",
        description="Tabular consumers for marsh (trap counts, temperature classes)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # --- Global args ---
    ap.add_argument("--config", type=Path, default=None, help="Pipeline YAML (zones path, temperature bins)")
    ap.add_argument("--zones-gpkg", type=Path, default=None, help="Zones GeoPackage (default from --config)")
    ap.add_argument("--dry-run", action="store_true", help="Print planned actions without writing files")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = ap.add_subparsers(dest="command", required=True)

    # --- trap-counts ---
    traps = sub.add_parser("trap-counts", help="Total trap records per zone and date")
    traps.add_argument("--traps-csv", required=True, type=Path)
    traps.add_argument("--out-csv", required=True, type=Path)
    traps.add_argument("--lon-col", default="longitude")
    traps.add_argument("--lat-col", default="latitude")
    traps.add_argument("--date-col", default="date")
    traps.add_argument("--count-col", default="count")
    traps.add_argument("--traps-crs", default="EPSG:4326", help="CRS of the trap coordinates (default: EPSG:4326)")

    # --- temperature-classes ---
    temp = sub.add_parser("temperature-classes", help="Classify zonal mean temperature")
    temp.add_argument("--table", required=True, type=Path, help="Zonal table with a mean column")
    temp.add_argument("--out-csv", required=True, type=Path)
    temp.add_argument(
        "--value-col",
        default=None,
        help="Column to classify (default: mean_filled from gap-fill when present, else mean)",
    )
    temp.add_argument("--bins", nargs="+", type=float, default=None, help=f"Bin edges (default: {DEFAULT_BINS})")
    temp.add_argument("--labels", nargs="+", default=None, help=f"Class labels (default: {DEFAULT_LABELS})")

    return ap


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _zones_path(args: argparse.Namespace) -> Path:
    if args.zones_gpkg is not None:
        return args.zones_gpkg
    cfg = PipelineConfig.from_yaml(args.config) if args.config else PipelineConfig()
    return cfg.zones_gpkg


def _handle_trap_counts(args: argparse.Namespace) -> int:
    zones_gpkg = _zones_path(args)
    if args.dry_run:
        print("[dry-run] Would count traps:")
        print(f"  Traps: {args.traps_csv}")
        print(f"  Zones: {zones_gpkg}")
        print(f"  Output: {args.out_csv}")
        return 0

    from marsh.features.traps import join_traps, load_traps
    from marsh.geo.tables import write_csv
    from marsh.registry.resolve_zones import load_zones

    traps = load_traps(args.traps_csv, lon_col=args.lon_col, lat_col=args.lat_col, crs=args.traps_crs)
    counts = join_traps(traps, load_zones(zones_gpkg), date_col=args.date_col, count_col=args.count_col)
    write_csv(counts, args.out_csv)
    print(f"Wrote {len(counts)} zone/date rows -> {args.out_csv}")
    return 0


def _temperature_bins(args: argparse.Namespace):
    bins, labels = args.bins, args.labels
    if args.config and (bins is None or labels is None):
        block = load_yaml(args.config).get("temperature_classes") or {}
        if not isinstance(block, dict):
            raise ConfigError(f"{args.config}: temperature_classes must be a mapping")
        bins = bins if bins is not None else block.get("bins")
        labels = labels if labels is not None else block.get("labels")
    return (
        [float(b) for b in (bins or DEFAULT_BINS)],
        [str(x) for x in (labels or DEFAULT_LABELS)],
    )


def _handle_temperature_classes(args: argparse.Namespace) -> int:
    bins, labels = _temperature_bins(args)
    if args.dry_run:
        print("[dry-run] Would classify temperature:")
        print(f"  Table: {args.table} (column {args.value_col or 'mean_filled, else mean'})")
        print(f"  Bins: {bins}  Labels: {labels}")
        print(f"  Output: {args.out_csv}")
        return 0

    from marsh.features.thresholds import classify_temperature
    from marsh.geo.tables import read_table, write_csv

    table = read_table(args.table)
    value_col = args.value_col or ("mean_filled" if "mean_filled" in table.columns else "mean")
    print(f"Classifying column '{value_col}'")
    out = classify_temperature(table, bins, labels, value_col=value_col)
    write_csv(out, args.out_csv)
    counts = out["temperature_class"].value_counts(dropna=False)
    print(f"Wrote {len(out)} rows -> {args.out_csv}")
    for label, n in counts.items():
        print(f"  - {label}: {n}")
    return 0


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for marsh.features CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)
    setup_logging(args.verbose)

    handlers = {
        "trap-counts": _handle_trap_counts,
        "temperature-classes": _handle_temperature_classes,
    }

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
