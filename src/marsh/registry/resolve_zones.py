#!/usr/bin/env python3
"""resolve_zones.py

Turn a county layer, a geologic basin (aquifer) layer and a ZIP-code polygon layer
into the canonical set of ZIP zones used by every downstream step.

Steps:
1. Select the county by name and intersect it with the dissolved basin
   → regional boundary
2. Intersect the ZIP layer with that boundary, one zone per ZIP
3. Remove overlaps between ZIPs: zones are taken in zone_id order and each
   loses whatever an earlier zone already covers
4. Compute true areas in an equal-area CRS and drop slivers below min_area_m2
5. Reproject to a lon/lat CRS and write zones + boundary to one GeoPackage

Called by:
  python -m marsh.registry resolve-zones ...

Notes:
- Every layer is reprojected explicitly into the county CRS before any overlay;
  nothing assumes two inputs share a reference frame.
- Slivers from near-tangent intersections are removed by the area cutoff on the
  clipped geometry. Zones therefore keep their clipped shape, not the full ZIP.
- ZIP codes are normalized so 78201, "78201", 78201.0 and "78201-1234" all match.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import geopandas as gpd
import pandas as pd
import shapely

from marsh.config import format_bbox
from marsh.errors import ConfigError

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Helper functions
# -----------------------------------------------------------------------------
# These are internal utilities. The public interface is resolve_zones().

def _normalize_zip(x) -> str:
    """Normalize a ZIP/ZCTA value to a 5-character string.

    Handles ints, floats from sloppy CSV/DBF exports (78201.0), ZIP+4
    ("78201-1234") and surrounding whitespace. Returns empty string for
    invalid inputs.
    """
    if x is None:
        return ""
    if isinstance(x, float):
        if x != x:  # NaN
            return ""
        if x.is_integer():
            x = int(x)
    s = str(x).strip()
    m = re.match(r"^(\d{1,5})(?:\.0+)?(?:-\d{4})?$", s)
    if not m:
        return ""
    return m.group(1).zfill(5)


def _pick_field(columns: Sequence[str], hints: Sequence[str], preferred: Optional[str], what: str) -> str:
    """Infer which column holds an identifier.

    If preferred is provided it must exist. Otherwise the first column whose
    lowercase name matches a hint (in hint order, exact match before substring)
    wins. Census and county GIS exports use ZCTA5CE10, ZCTA5CE20, GEOID10, ZIP,
    ZIP_CODE, NAME, CNTY_NM, ... inconsistently.
    """
    cols = [c for c in columns if c != "geometry"]
    if preferred:
        if preferred in cols:
            return preferred
        raise ConfigError(f"{what} field '{preferred}' not found. Available columns: {cols}")

    lowered = {c.lower(): c for c in cols}
    for hint in hints:
        if hint in lowered:
            return lowered[hint]
    for hint in hints:
        for cl, c in lowered.items():
            if hint in cl:
                return c
    raise ConfigError(
        f"Couldn't infer the {what} column. Pass it explicitly.\n"
        f"Columns: {cols}"
    )


ZIP_FIELD_HINTS = ("zcta5ce20", "zcta5ce10", "zcta5", "zip_code", "zipcode", "zip", "postal", "geoid20", "geoid10")
COUNTY_FIELD_HINTS = ("county", "cnty_nm", "cnty_name", "namelsad", "name")


def _read_layer(path: Path, what: str) -> gpd.GeoDataFrame:
    if not path.exists():
        raise ConfigError(f"{what} layer not found: {path}")
    gdf = gpd.read_file(path)
    if gdf.empty:
        raise ConfigError(f"{what} layer contains zero features: {path}")
    if gdf.crs is None:
        raise ConfigError(
            f"{what} layer has no CRS (.prj missing or unreadable): {path}. "
            "Fix that first; every overlay depends on CRS."
        )
    return gdf


def _make_valid(gdf: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
    """Repair invalid geometries and drop empties."""
    gdf = gdf.copy()
    gdf["geometry"] = gdf.geometry.make_valid()
    return gdf[~gdf.geometry.is_empty & gdf.geometry.notna()].copy()


def _compute_area_m2(gdf: gpd.GeoDataFrame, area_crs: str) -> pd.Series:
    """Polygon area in m² using an equal-area CRS (default CONUS Albers)."""
    if gdf.crs is None:
        raise ConfigError("Geometries have no CRS; can't compute area safely.")
    return gdf.to_crs(area_crs).geometry.area.astype(float)


def _overlap_area_m2(gdf: gpd.GeoDataFrame, area_crs: str) -> float:
    """Total area counted more than once across features (0 for a clean tiling)."""
    projected = gdf.to_crs(area_crs)
    return float(projected.geometry.area.sum() - projected.geometry.union_all().area)


# -----------------------------------------------------------------------------
# Core steps
# -----------------------------------------------------------------------------

def select_county(county: gpd.GeoDataFrame, county_name: str, county_field: Optional[str] = None) -> gpd.GeoDataFrame:
    """Rows of the county layer whose name matches county_name (case-insensitive)."""
    field = _pick_field(list(county.columns), COUNTY_FIELD_HINTS, county_field, "county name")
    wanted = county_name.strip().lower()
    names = county[field].astype(str).str.strip().str.lower()
    # "Bexar" should match "Bexar County" too
    hit = county[(names == wanted) | (names == f"{wanted} county")]
    if hit.empty:
        sample = sorted(county[field].astype(str).unique().tolist())[:25]
        raise ConfigError(
            f"County '{county_name}' not found in field '{field}'.\n"
            f"Sample values: {sample}"
        )
    return hit


def regional_boundary(county: gpd.GeoDataFrame, basin: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
    """county ∩ basin, dissolved to a single feature in the county CRS."""
    county = _make_valid(county)
    basin = _make_valid(basin.to_crs(county.crs))

    county_geom = county.geometry.union_all()
    basin_geom = basin.geometry.union_all()
    region = county_geom.intersection(basin_geom)
    if region.is_empty:
        raise ConfigError("County and basin polygons do not intersect; check inputs and CRS.")
    return gpd.GeoDataFrame({"name": ["boundary"]}, geometry=[region], crs=county.crs)


def clip_zips(
    zips: gpd.GeoDataFrame,
    boundary: gpd.GeoDataFrame,
    zip_field: Optional[str] = None,
) -> gpd.GeoDataFrame:
    """ZIP ∩ boundary, one row per normalized zone_id, in the boundary CRS."""
    field = _pick_field(list(zips.columns), ZIP_FIELD_HINTS, zip_field, "ZIP")
    zips = zips.to_crs(boundary.crs)
    zips = zips.assign(zone_id=zips[field].apply(_normalize_zip))

    bad = zips["zone_id"] == ""
    if bad.any():
        logger.warning("Dropping %d ZIP features with unparseable codes in '%s'", int(bad.sum()), field)
        zips = zips[~bad]

    zips = _make_valid(zips[["zone_id", "geometry"]])
    pieces = gpd.overlay(zips, boundary[["geometry"]], how="intersection", keep_geom_type=True)
    if pieces.empty:
        raise ConfigError("No ZIP polygons intersect the regional boundary.")

    # A ZIP cut by the boundary can come back as several pieces
    return pieces.dissolve(by="zone_id", as_index=False)[["zone_id", "geometry"]]


def filter_slivers(zones: gpd.GeoDataFrame, min_area_m2: float, area_crs: str) -> Tuple[gpd.GeoDataFrame, List[str]]:
    """Attach area_m2 and drop zones below min_area_m2. Returns (kept, dropped_ids)."""
    zones = zones.copy()
    zones["area_m2"] = _compute_area_m2(zones, area_crs).to_numpy()
    small = zones["area_m2"] < min_area_m2
    dropped = sorted(zones.loc[small, "zone_id"].tolist())
    return zones[~small].copy(), dropped


def remove_overlaps(zones: gpd.GeoDataFrame) -> Tuple[gpd.GeoDataFrame, List[str]]:
    """Make zones disjoint: in zone_id order, each zone keeps only the area no
    earlier zone claimed. Returns (zones, ids left empty)."""
    zones = zones.sort_values("zone_id").reset_index(drop=True)
    claimed = None
    geoms = []
    for geom in zones.geometry:
        own = geom if claimed is None else geom.difference(claimed)
        claimed = geom if claimed is None else claimed.union(geom)
        # difference can return lines or points along shared edges
        parts = [p for p in shapely.get_parts(own) if p.geom_type == "Polygon"]
        geoms.append(shapely.union_all(parts) if parts else None)

    zones = zones.copy()
    zones["geometry"] = gpd.GeoSeries(geoms, index=zones.index, crs=zones.crs)
    emptied = zones.geometry.isna() | zones.geometry.is_empty
    return zones[~emptied].copy(), zones.loc[emptied, "zone_id"].tolist()


# -----------------------------------------------------------------------------
# Core function (called by CLI)
# -----------------------------------------------------------------------------

def resolve_zones(
    county_shp: Path,
    basin_shp: Path,
    zip_shp: Path,
    out_gpkg: Optional[Path],
    *,
    county_name: str,
    county_field: Optional[str] = None,
    zip_field: Optional[str] = None,
    min_area_m2: float = 1_000_000.0,
    area_crs: str = "EPSG:5070",
    target_crs: str = "EPSG:4326",
    zones_layer: str = "zones",
    boundary_layer: str = "boundary",
    qa_csv: Optional[Path] = None,
) -> Tuple[gpd.GeoDataFrame, gpd.GeoDataFrame]:
    """Build the zone set from county, basin and ZIP layers.

    Args:
        county_shp: County polygon layer
        basin_shp: Basin / aquifer extent polygon layer
        zip_shp: ZIP (ZCTA) polygon layer
        out_gpkg: Output GeoPackage (None = don't write)
        county_name: County to keep (e.g. "Bexar")
        county_field: County name column (auto-detected if None)
        zip_field: ZIP code column (auto-detected if None)
        min_area_m2: Zones smaller than this after clipping are discarded
        area_crs: Equal-area CRS for area calculations
        target_crs: CRS for output geometries (default WGS84)
        qa_csv: Optional path to write a QA table (no geometry)

    Returns:
        (zones, boundary) GeoDataFrames in target_crs.

    Raises:
        ConfigError: missing/CRS-less inputs, unknown county, empty overlays.
    """
    if min_area_m2 < 0:
        raise ConfigError(f"min_area_m2 must be >= 0, got {min_area_m2}")

    # --- Load layers (fail before any output) ---
    county = _read_layer(county_shp, "County")
    basin = _read_layer(basin_shp, "Basin")
    zips = _read_layer(zip_shp, "ZIP")

    # --- Regional boundary ---
    county = select_county(county, county_name, county_field)
    boundary = regional_boundary(county, basin)

    # --- Candidate zones ---
    candidates = clip_zips(zips, boundary, zip_field)
    overlap = _overlap_area_m2(candidates, area_crs)
    if overlap > 1.0:
        candidates, emptied = remove_overlaps(candidates)
        logger.warning(
            "ZIP polygons overlap by %.1f m²; shared area assigned to the lowest zone_id (emptied: %s)",
            overlap,
            ", ".join(emptied) or "none",
        )
    zones, dropped = filter_slivers(candidates, min_area_m2, area_crs)
    if dropped:
        logger.info("Dropped %d sliver zones below %.0f m²: %s", len(dropped), min_area_m2, ", ".join(dropped))
    if zones.empty:
        raise ConfigError(f"Every candidate zone is smaller than min_area_m2={min_area_m2:.0f}")

    zones["area_km2"] = zones["area_m2"] / 1_000_000.0
    boundary["area_m2"] = _compute_area_m2(boundary, area_crs).to_numpy()

    # --- Reproject to output CRS ---
    zones = zones.to_crs(target_crs).sort_values("zone_id").reset_index(drop=True)
    zones = zones[["zone_id", "area_m2", "area_km2", "geometry"]]
    boundary = boundary.to_crs(target_crs)

    # --- Write outputs ---
    if out_gpkg is not None:
        out_gpkg.parent.mkdir(parents=True, exist_ok=True)
        zones.to_file(out_gpkg, layer=zones_layer, driver="GPKG")
        boundary.to_file(out_gpkg, layer=boundary_layer, driver="GPKG")

    if qa_csv:
        qa_csv.parent.mkdir(parents=True, exist_ok=True)
        zones.drop(columns="geometry").to_csv(qa_csv, index=False)

    # --- Human-friendly summary ---
    where = f"-> {out_gpkg} (layers={zones_layer},{boundary_layer})" if out_gpkg else "(not written)"
    print(f"Resolved {len(zones)} zones {where}")
    print(f"  boundary area_km2={boundary['area_m2'].iloc[0] / 1_000_000.0:.1f}; dropped slivers: {len(dropped)}")
    print(f"  boundary bbox: {format_bbox(tuple(boundary.total_bounds))} ({target_crs})")
    for _, row in zones.iterrows():
        print(f"  - {row['zone_id']} | area_km2={row['area_km2']:.2f}")

    return zones, boundary


def load_zones(gpkg: Path, layer: str = "zones") -> gpd.GeoDataFrame:
    """Read the zones written by resolve_zones()."""
    if not gpkg.exists():
        raise ConfigError(f"Zones GeoPackage not found: {gpkg}. Run `python -m marsh.registry resolve-zones` first.")
    zones = gpd.read_file(gpkg, layer=layer)
    if zones.crs is None:
        raise ConfigError(f"Zones layer has no CRS: {gpkg}:{layer}")
    if "zone_id" not in zones.columns:
        raise ConfigError(f"Zones layer lacks a zone_id column: {gpkg}:{layer}")
    zones["zone_id"] = zones["zone_id"].astype(str)
    return zones


def load_boundary(gpkg: Path, layer: str = "boundary") -> gpd.GeoDataFrame:
    """Read the regional boundary written by resolve_zones()."""
    if not gpkg.exists():
        raise ConfigError(f"Boundary GeoPackage not found: {gpkg}")
    boundary = gpd.read_file(gpkg, layer=layer)
    if boundary.crs is None or boundary.empty:
        raise ConfigError(f"Boundary layer missing CRS or features: {gpkg}:{layer}")
    return boundary
