#!/usr/bin/env python3
"""marsh.registry

Zone definition CLI for marsh.

This is one of several marsh subsystem CLIs:
- marsh.registry → zone definition (this file)
- marsh.geo      → raster mask/merge/clip, zonal aggregation, gap filling
- marsh.features → tabular consumers (trap counts, temperature classes)

marsh.registry is the source of truth for spatial zones. It defines WHAT
EXISTS spatially; every other subsystem reads its GeoPackage.

Outputs:
- data/interim/vectors/zones.gpkg, layer "zones"     → ZIP zones (WGS84)
- data/interim/vectors/zones.gpkg, layer "boundary"  → county ∩ basin

Examples:
  python -m marsh.registry resolve-zones \
    --county-shp data/raw/boundaries/tx_counties/tx_counties.shp \
    --basin-shp data/raw/boundaries/edwards_aquifer/edwards_aquifer.shp \
    --zip-shp data/raw/boundaries/tl_2020_us_zcta520/tl_2020_us_zcta520.shp \
    --county-name Bexar
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Optional

from marsh.config import (
    PipelineConfig,
    DEFAULT_PIPELINE_YAML,
)
from marsh.log import setup_logging


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for marsh.registry."""
    ap = argparse.ArgumentParser(
        prog="marsh.registry",
        description="Zone definition for marsh (source of truth for spatial units)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Subsystem CLIs:
  python -m marsh.registry  # Zone definition (this)
  python -m marsh.geo       # Rasters, zonal aggregation, gap filling
  python -m marsh.features  # Trap counts, temperature classes
        """,
    )

    # --- Global args ---
    ap.add_argument(
        "--config",
        type=Path,
        default=None,
        help=f"Pipeline YAML supplying defaults (e.g. {DEFAULT_PIPELINE_YAML})",
    )
    ap.add_argument(
        "--dry-run",
        action="store_true",
        help="Print planned actions without writing files",
    )
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    # --- Subcommands ---
    sub = ap.add_subparsers(dest="command", required=True)

    # --- resolve-zones ---
    resolve = sub.add_parser(
        "resolve-zones",
        help="Build ZIP zones from county, basin and ZIP layers",
        description="""
Build the canonical zone set.

This command:
1. Selects the county by name
2. Intersects it with the basin (aquifer) polygon → regional boundary
3. Intersects ZIP polygons with the boundary
4. Drops slivers below --min-area-m2 (equal-area CRS)
5. Writes zones + boundary layers (WGS84) to one GeoPackage
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    resolve.add_argument("--county-shp", required=True, type=Path, help="County polygon layer")
    resolve.add_argument("--basin-shp", required=True, type=Path, help="Basin / aquifer polygon layer")
    resolve.add_argument("--zip-shp", required=True, type=Path, help="ZIP (ZCTA) polygon layer")
    resolve.add_argument("--county-name", required=True, help="County to keep, e.g. Bexar")
    resolve.add_argument(
        "--out-gpkg",
        type=Path,
        default=None,
        help="Output GeoPackage (default: zones_gpkg from --config, else data/interim/vectors/zones.gpkg)",
    )
    resolve.add_argument("--county-field", default=None, help="County name column (auto-detected if not specified)")
    resolve.add_argument("--zip-field", default=None, help="ZIP code column (auto-detected if not specified)")
    resolve.add_argument(
        "--min-area-m2",
        type=float,
        default=None,
        help="Discard zones smaller than this after clipping (default: 1,000,000)",
    )
    resolve.add_argument(
        "--area-crs",
        default="EPSG:5070",
        help="CRS for area calculations (default: EPSG:5070 / CONUS Albers)",
    )
    resolve.add_argument(
        "--target-crs",
        default="EPSG:4326",
        help="Output CRS (default: EPSG:4326 / WGS84)",
    )
    resolve.add_argument("--qa-csv", type=Path, default=None, help="Optional path to write QA summary CSV")

    return ap


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _load_config(args: argparse.Namespace) -> PipelineConfig:
    if args.config is None:
        return PipelineConfig()
    return PipelineConfig.from_yaml(args.config)


def _handle_resolve_zones(args: argparse.Namespace) -> int:
    """Handle the resolve-zones subcommand."""
    cfg = _load_config(args).with_overrides(zones_gpkg=args.out_gpkg, min_area_m2=args.min_area_m2)

    if args.dry_run:
        print("[dry-run] Would resolve zones:")
        print(f"  County layer: {args.county_shp} (county={args.county_name})")
        print(f"  Basin layer: {args.basin_shp}")
        print(f"  ZIP layer: {args.zip_shp}")
        print(f"  Min area: {cfg.min_area_m2:.0f} m² (area CRS {args.area_crs})")
        print(f"  Output GeoPackage: {cfg.zones_gpkg}")
        return 0

    # Lazy import to keep CLI startup fast
    from marsh.registry.resolve_zones import resolve_zones

    resolve_zones(
        county_shp=args.county_shp,
        basin_shp=args.basin_shp,
        zip_shp=args.zip_shp,
        out_gpkg=cfg.zones_gpkg,
        county_name=args.county_name,
        county_field=args.county_field,
        zip_field=args.zip_field,
        min_area_m2=cfg.min_area_m2,
        area_crs=args.area_crs,
        target_crs=args.target_crs,
        zones_layer=cfg.zones_layer,
        boundary_layer=cfg.boundary_layer,
        qa_csv=args.qa_csv,
    )
    return 0


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for marsh.registry CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)
    setup_logging(args.verbose)

    handlers = {
        "resolve-zones": _handle_resolve_zones,
    }

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
