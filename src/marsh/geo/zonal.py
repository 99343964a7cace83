#!/usr/bin/env python3
"""zonal.py

Zonal aggregation of the clipped per-date rasters over the ZIP zones.

For every clipped raster (one per date) and every zone:
  raw_count    = Σ pixel value × coverage, over valid (non-nodata) pixels
  valid_pixels = Σ coverage, over valid pixels
  mean         = raw_count / valid_pixels (NaN when the zone has no valid pixels)
  area         = raw_count × pixel_area_m2 / area_unit_m2

Coverage is the share of a pixel inside the zone:
- pixel_rule="area"   → exact area-weighted fraction (pixel box ∩ zone polygon)
- pixel_rule="center" → 1 if the pixel center falls in the zone, else 0

Nodata pixels contribute nothing. A zone with no valid pixels is reported with
zeros, never dropped. With count_values set, a pixel counts 1 when its value is in
the list (e.g. DSWE classes 1 and 2) and 0 otherwise.

Zones are reprojected once into the raster CRS and reused for every date.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Dict, List, Optional, Sequence, Tuple

import geopandas as gpd
import numpy as np
import pandas as pd
import rasterio
import shapely
from rasterio.errors import RasterioIOError
from rasterio.features import geometry_mask
from rasterio.transform import Affine, rowcol
from rasterio.windows import Window

from marsh.config import PipelineConfig
from marsh.errors import ConfigError, DateSkipped
from marsh.geo.batch import Tally, WorkItem, plan_items, run_items
from marsh.geo.mask_merge import list_clipped

logger = logging.getLogger(__name__)

COLUMNS = ["zone_id", "date", "raw_count", "valid_pixels", "mean", "area"]


# -----------------------------------------------------------------------------
# Coverage fractions
# -----------------------------------------------------------------------------

def _zone_window(geom, transform: Affine, shape: Tuple[int, int]) -> Optional[Window]:
    """Pixel window covering the geometry bounds, clamped to the raster."""
    minx, miny, maxx, maxy = geom.bounds
    rows, cols = rowcol(transform, [minx, maxx, minx, maxx], [miny, miny, maxy, maxy])
    row0, row1 = max(min(rows), 0), min(max(rows) + 1, shape[0])
    col0, col1 = max(min(cols), 0), min(max(cols) + 1, shape[1])
    if row1 <= row0 or col1 <= col0:
        return None
    return Window(col0, row0, col1 - col0, row1 - row0)


def coverage_fractions(geom, transform: Affine, shape: Tuple[int, int], rule: str = "area") -> np.ndarray:
    """Share of each pixel (0..1) covered by geom, for a north-up grid of the given shape."""
    if rule == "center":
        inside = geometry_mask([geom], out_shape=shape, transform=transform, all_touched=False, invert=True)
        return inside.astype(np.float64)
    if rule != "area":
        raise ConfigError(f"Unknown pixel rule: {rule}")

    touched = geometry_mask([geom], out_shape=shape, transform=transform, all_touched=True, invert=True)
    frac = np.zeros(shape, dtype=np.float64)
    rows, cols = np.nonzero(touched)
    if rows.size == 0:
        return frac

    x0 = transform.c + cols * transform.a
    y0 = transform.f + rows * transform.e
    x1 = x0 + transform.a
    y1 = y0 + transform.e
    boxes = shapely.box(np.minimum(x0, x1), np.minimum(y0, y1), np.maximum(x0, x1), np.maximum(y0, y1))
    pixel_area = abs(transform.a * transform.e)
    frac[rows, cols] = np.clip(shapely.area(shapely.intersection(boxes, geom)) / pixel_area, 0.0, 1.0)
    return frac


# -----------------------------------------------------------------------------
# Per-raster aggregation
# -----------------------------------------------------------------------------

def _valid_mask(data: np.ndarray, nodata: Optional[float]) -> np.ndarray:
    if nodata is None:
        return ~np.isnan(data) if np.issubdtype(data.dtype, np.floating) else np.ones(data.shape, dtype=bool)
    if np.isnan(nodata):
        return ~np.isnan(data)
    valid = data != nodata
    if np.issubdtype(data.dtype, np.floating):
        valid &= ~np.isnan(data)
    return valid


def aggregate_raster(
    src: rasterio.io.DatasetReader,
    zones: gpd.GeoDataFrame,
    *,
    date: dt.date,
    pixel_rule: str = "area",
    count_values: Optional[Sequence[float]] = None,
    pixel_area_m2: float = 900.0,
    area_unit_m2: float = 4046.86,
) -> pd.DataFrame:
    """Aggregate one open raster over zones already in the raster CRS."""
    transform = src.transform
    if transform.b != 0 or transform.d != 0:
        raise ConfigError(f"Rotated rasters are not supported: {src.name}")
    shape = (src.height, src.width)

    records: List[Dict] = []
    for zone_id, geom in zip(zones["zone_id"], zones.geometry):
        raw = covered = 0.0
        win = _zone_window(geom, transform, shape) if geom is not None and not geom.is_empty else None
        if win is not None:
            data = src.read(1, window=win)
            frac = coverage_fractions(geom, src.window_transform(win), data.shape, pixel_rule)
            valid = _valid_mask(data, src.nodata)
            if count_values is not None:
                values = np.isin(data, np.asarray(count_values)).astype(np.float64)
            else:
                values = data.astype(np.float64)
            weight = np.where(valid, frac, 0.0)
            raw = float(np.sum(np.where(valid, values, 0.0) * weight))
            covered = float(np.sum(weight))

        records.append({
            "zone_id": str(zone_id),
            "date": pd.Timestamp(date),
            "raw_count": raw,
            "valid_pixels": covered,
            "mean": raw / covered if covered > 0 else np.nan,
            "area": raw * pixel_area_m2 / area_unit_m2,
        })

    if not any(r["valid_pixels"] > 0 for r in records):
        logger.info("[%s] no valid pixels in any zone", date.isoformat())
    return pd.DataFrame.from_records(records, columns=COLUMNS)


def zonal_item(item: WorkItem, cfg: PipelineConfig, zones: gpd.GeoDataFrame) -> pd.DataFrame:
    """Work item: aggregate the clipped raster for one date."""
    label = item.date.isoformat()
    if item.path is None or not item.path.exists():
        raise DateSkipped(label, "clipped raster missing")
    try:
        with rasterio.open(item.path) as src:
            if src.crs is None:
                raise DateSkipped(label, f"raster has no CRS: {item.path.name}")
            if not zones.crs.equals(src.crs.to_wkt()):
                # raster in a different CRS than the first one
                logger.debug("[%s] reprojecting zones to %s", label, src.crs)
                zones = zones.to_crs(src.crs)
            if item.zone_ids:
                zones = zones[zones["zone_id"].isin(item.zone_ids)]
            return aggregate_raster(
                src,
                zones,
                date=item.date,
                pixel_rule=cfg.pixel_rule,
                count_values=cfg.count_values,
                pixel_area_m2=cfg.pixel_area_m2,
                area_unit_m2=cfg.area_unit_m2,
            )
    except RasterioIOError as e:
        raise DateSkipped(label, f"unreadable raster: {e}") from e


# -----------------------------------------------------------------------------
# Batch driver
# -----------------------------------------------------------------------------

def aggregate_all(
    cfg: PipelineConfig,
    zones: Optional[gpd.GeoDataFrame] = None,
    *,
    dates: Optional[Sequence[dt.date]] = None,
    dry_run: bool = False,
) -> Tuple[pd.DataFrame, Tally]:
    """Aggregate every clipped raster in cfg.clipped_dir over the zones.

    Returns the long table (sorted by date, zone_id) and the per-date tally.
    Skipped or failed dates are absent from the table, not zero.
    """
    if zones is None:
        from marsh.registry.resolve_zones import load_zones

        zones = load_zones(cfg.zones_gpkg, cfg.zones_layer)

    available = list_clipped(cfg)
    if dates is not None:
        wanted = set(dates)
        available = {d: p for d, p in available.items() if d in wanted}
    items = plan_items(available, available, zones["zone_id"].astype(str).tolist())
    print(f"[zonal-stats] {len(items)} dates x {len(zones)} zones from {cfg.clipped_dir}")

    if dry_run or not items:
        return pd.DataFrame(columns=COLUMNS), Tally()

    # Reproject once into the CRS of the first readable raster; reused for every date
    zones_proj = zones
    for item in items:
        try:
            with rasterio.open(item.path) as first:
                raster_crs = first.crs
        except RasterioIOError:
            continue
        if raster_crs is not None:
            zones_proj = zones.to_crs(raster_crs)
        break
    zones_proj = zones_proj[["zone_id", "geometry"]]

    tally = run_items(items, zonal_item, cfg, zones_proj, workers=cfg.workers, timeout_s=cfg.timeout_s)
    print(tally.summary("zonal-stats"))

    frames = [tally.results[d] for d in sorted(tally.results)]
    if not frames:
        return pd.DataFrame(columns=COLUMNS), tally
    table = pd.concat(frames, ignore_index=True).sort_values(["date", "zone_id"]).reset_index(drop=True)
    return table, tally
