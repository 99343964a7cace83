#!/usr/bin/env python3
"""mask_merge.py

Per acquisition date: mask each satellite tile with its quality-mask tile, merge the
masked tiles into one raster, clip it to the regional boundary and write one
GeoTIFF into the clipped directory.

This module is called by `python -m marsh.geo mask-merge ...` and by the `run`
pipeline command.

Behavior:
- Pixels whose mask value is in mask_invalid_values become nodata, and nodata in
  the source tile stays nodata.
- Tiles are merged in tile_ids order; the first tile wins on overlapping valid pixels.
- The boundary polygon is reprojected into the raster CRS; the raster is never
  warped.
- Tiles with different resolutions or CRS are a configuration error and stop the
  run before anything is merged.
- A missing or unreadable tile/mask only skips that date.

Output naming (the hand-off contract with zonal.py):
  {clipped_dir}/{clipped_prefix}_{YYYYMMDD}.tif
"""

from __future__ import annotations

import datetime as dt
import logging
import re
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import geopandas as gpd
import numpy as np
import rasterio
from rasterio.crs import CRS
from rasterio.errors import RasterioIOError
from rasterio.io import MemoryFile
from rasterio.mask import mask as rio_mask
from rasterio.merge import merge as rio_merge
from rasterio.transform import Affine

from marsh.config import PipelineConfig, date_token, parse_date
from marsh.errors import ConfigError, DateSkipped
from marsh.geo.batch import Tally, WorkItem, plan_items, run_items

logger = logging.getLogger(__name__)

DATE_REGEX = r"(\d{8})"


@dataclass
class MaskedTile:
    """One tile after quality masking, held in memory."""

    tile_id: str
    array: np.ndarray
    transform: Affine
    crs: CRS
    nodata: float

    @property
    def res(self) -> Tuple[float, float]:
        return (abs(self.transform.a), abs(self.transform.e))


# -----------------------------------------------------------------------------
# File naming
# -----------------------------------------------------------------------------

def tile_path(tile_dir: Path, pattern: str, tile_id: str, date: dt.date) -> Path:
    return tile_dir / pattern.format(tile=tile_id, date=date_token(date))


def clipped_path(cfg: PipelineConfig, date: dt.date) -> Path:
    return cfg.clipped_dir / f"{cfg.clipped_prefix}_{date_token(date)}.tif"


def _pattern_regex(pattern: str, **fixed: str) -> re.Pattern:
    """Regex for a filename pattern with {date} as the one capture group."""
    parts = pattern.split("{date}")
    if len(parts) != 2:
        raise ConfigError(f"Pattern must contain exactly one {{date}}: {pattern}")
    return re.compile(DATE_REGEX.join(re.escape(p.format(**fixed)) for p in parts))


def _dates_matching(directory: Path, pattern: str, **fixed: str) -> Dict[dt.date, Path]:
    if not directory.exists():
        raise ConfigError(f"Directory not found: {directory}")
    rx = _pattern_regex(pattern, **fixed)
    glob = pattern.format(date="*", **fixed)
    found: Dict[dt.date, Path] = {}
    for p in sorted(directory.glob(glob)):
        m = rx.fullmatch(p.relative_to(directory).as_posix())
        if not m:
            continue
        try:
            found[parse_date(m.group(1))] = p
        except ConfigError:
            logger.warning("Ignoring %s: '%s' is not a valid date", p.name, m.group(1))
    return found


def discover_dates(tile_dir: Path, tile_pattern: str, tile_id: str) -> List[dt.date]:
    """Acquisition dates for which tile_id has a file in tile_dir."""
    return sorted(_dates_matching(tile_dir, tile_pattern, tile=tile_id))


def list_clipped(cfg: PipelineConfig) -> Dict[dt.date, Path]:
    """Clipped rasters already in cfg.clipped_dir, keyed by date."""
    return _dates_matching(cfg.clipped_dir, cfg.clipped_prefix + "_{date}.tif")


# -----------------------------------------------------------------------------
# Core steps
# -----------------------------------------------------------------------------

def _nodata_mask(data: np.ndarray, nodata: Optional[float]) -> np.ndarray:
    """True where data equals nodata (NaN-aware)."""
    if nodata is None:
        return np.zeros(data.shape, dtype=bool)
    if np.issubdtype(data.dtype, np.floating) and np.isnan(nodata):
        return np.isnan(data)
    return data == nodata


def _out_dtype(dtype: np.dtype, nodata: float) -> np.dtype:
    """Smallest dtype holding both the tile values and the nodata sentinel."""
    if float(nodata).is_integer() and not np.issubdtype(dtype, np.floating):
        return np.result_type(dtype, np.min_scalar_type(int(nodata)))
    return np.result_type(dtype, np.float32)


def mask_tile(
    tile_path: Path,
    mask_path: Path,
    *,
    invalid_values: Sequence[float],
    nodata: float,
    date: str = "",
    tile_id: str = "",
) -> MaskedTile:
    """Apply a quality mask to a tile. Raises DateSkipped on missing/unreadable/misaligned inputs."""
    label = date or tile_path.name
    if not tile_path.exists():
        raise DateSkipped(label, f"missing tile {tile_path.name}")
    if not mask_path.exists():
        raise DateSkipped(label, f"missing mask {mask_path.name}")

    try:
        with rasterio.open(tile_path) as src:
            data = src.read(1)
            src_nodata = src.nodata
            transform, crs = src.transform, src.crs
        with rasterio.open(mask_path) as msk:
            qa = msk.read(1)
            mask_transform, mask_crs = msk.transform, msk.crs
    except RasterioIOError as e:
        raise DateSkipped(label, f"unreadable raster: {e}") from e

    if crs is None:
        raise DateSkipped(label, f"tile has no CRS: {tile_path.name}")
    if qa.shape != data.shape or not mask_transform.almost_equals(transform) or mask_crs != crs:
        raise DateSkipped(label, f"mask grid does not match tile grid: {mask_path.name}")

    invalid = np.isin(qa, np.asarray(invalid_values)) | _nodata_mask(data, src_nodata)
    out = data.astype(_out_dtype(data.dtype, nodata), copy=True)
    out[invalid] = nodata

    logger.debug("%s %s: %d/%d pixels masked", label, tile_id, int(invalid.sum()), invalid.size)
    return MaskedTile(tile_id=tile_id, array=out, transform=transform, crs=crs, nodata=nodata)


def _profile(array: np.ndarray, transform: Affine, crs, nodata: float) -> dict:
    return {
        "driver": "GTiff",
        "height": array.shape[-2],
        "width": array.shape[-1],
        "count": 1,
        "dtype": array.dtype.name,
        "crs": crs,
        "transform": transform,
        "nodata": nodata,
    }


def _check_compatible(tiles: Sequence[MaskedTile]) -> None:
    """Tiles must share resolution and CRS. Fails loudly before merge."""
    first = tiles[0]
    for t in tiles[1:]:
        if not np.allclose(t.res, first.res):
            raise ConfigError(
                f"Tile resolutions differ: {first.tile_id}={first.res} vs {t.tile_id}={t.res}. "
                "Resample the inputs; tiles are never merged across resolutions."
            )
        if t.crs != first.crs:
            raise ConfigError(f"Tile CRS differ: {first.tile_id}={first.crs} vs {t.tile_id}={t.crs}")


def merge_tiles(tiles: Sequence[MaskedTile], nodata: float) -> Tuple[np.ndarray, Affine, CRS]:
    """Merge masked tiles; the first tile wins where valid pixels overlap."""
    if not tiles:
        raise ConfigError("No tiles to merge")
    _check_compatible(tiles)
    dtype = np.result_type(*[t.array.dtype for t in tiles])

    with ExitStack() as stack:
        datasets = []
        for t in tiles:
            data = t.array.astype(dtype)
            memfile = stack.enter_context(MemoryFile())
            with memfile.open(**_profile(data, t.transform, t.crs, nodata)) as ds:
                ds.write(data, 1)
            datasets.append(stack.enter_context(memfile.open()))
        mosaic, transform = rio_merge(datasets, nodata=nodata, method="first")

    return mosaic[0], transform, tiles[0].crs


def clip_to_boundary(
    array: np.ndarray,
    transform: Affine,
    crs,
    boundary: gpd.GeoDataFrame,
    nodata: float,
) -> Tuple[np.ndarray, Affine]:
    """Crop to the boundary extent and set pixels outside the polygon to nodata."""
    if boundary.crs is None:
        raise ConfigError("Boundary has no CRS")
    shapes = list(boundary.to_crs(crs).geometry)

    with MemoryFile() as memfile:
        with memfile.open(**_profile(array, transform, crs, nodata)) as ds:
            ds.write(array, 1)
        with memfile.open() as ds:
            out, out_transform = rio_mask(ds, shapes, crop=True, nodata=nodata, filled=True)
    return out[0], out_transform


def write_raster(path: Path, array: np.ndarray, transform: Affine, crs, nodata: float) -> Path:
    """Write a single-band GeoTIFF via a temp file so a failed date never leaves a partial output."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".part")
    profile = _profile(array, transform, crs, nodata)
    profile.update(tiled=True, compress="deflate")
    with rasterio.open(tmp, "w", **profile) as dst:
        dst.write(array, 1)
    tmp.replace(path)
    return path


# -----------------------------------------------------------------------------
# Per-date work item and batch driver
# -----------------------------------------------------------------------------

def mask_merge_date(item: WorkItem, cfg: PipelineConfig, boundary: gpd.GeoDataFrame) -> Path:
    """Mask, merge and clip all tiles for one date. Returns the written path."""
    token = date_token(item.date)
    masked = [
        mask_tile(
            tile_path(cfg.tile_dir, cfg.tile_pattern, tile_id, item.date),
            tile_path(cfg.tile_dir, cfg.mask_pattern, tile_id, item.date),
            invalid_values=cfg.mask_invalid_values,
            nodata=cfg.nodata,
            date=item.date.isoformat(),
            tile_id=tile_id,
        )
        for tile_id in cfg.tile_ids
    ]
    merged, transform, crs = merge_tiles(masked, cfg.nodata)

    try:
        clipped, clip_transform = clip_to_boundary(merged, transform, crs, boundary, cfg.nodata)
    except ValueError as e:
        # rasterio.mask raises ValueError when shapes miss the raster entirely
        raise DateSkipped(item.date.isoformat(), f"boundary does not overlap tiles ({e})") from e

    out = write_raster(clipped_path(cfg, item.date), clipped, clip_transform, crs, cfg.nodata)
    logger.info("[%s] wrote %s", token, out.name)
    return out


def mask_merge_all(
    cfg: PipelineConfig,
    boundary: Optional[gpd.GeoDataFrame] = None,
    *,
    dates: Optional[Sequence[dt.date]] = None,
    overwrite: bool = False,
    dry_run: bool = False,
) -> Tally:
    """Run mask_merge_date over every date and return the per-date tally.

    Dates default to every date any tile id has a file for in cfg.tile_dir, so a
    date missing one of the tiles is reported as skipped rather than ignored.
    """
    if not cfg.tile_ids:
        raise ConfigError("tile_ids is empty; list the tile ids to merge in the pipeline config")
    if boundary is None:
        from marsh.registry.resolve_zones import load_boundary

        boundary = load_boundary(cfg.zones_gpkg, cfg.boundary_layer)

    if dates is None:
        dates = sorted({d for tile_id in cfg.tile_ids for d in discover_dates(cfg.tile_dir, cfg.tile_pattern, tile_id)})
    if not dates:
        print(f"[mask-merge] No tiles matching {cfg.tile_pattern} for {', '.join(cfg.tile_ids)} in {cfg.tile_dir}")

    todo = []
    for d in sorted(set(dates)):
        out = clipped_path(cfg, d)
        if out.exists() and not overwrite:
            print(f"[SKIP] {out.name} exists")
            continue
        todo.append(d)

    items = plan_items(todo)
    print(f"[mask-merge] {len(items)} dates to process -> {cfg.clipped_dir}")
    if dry_run:
        for item in items:
            print(f"  - {item.date.isoformat()} -> {clipped_path(cfg, item.date).name}")
        return Tally()

    tally = run_items(items, mask_merge_date, cfg, boundary, workers=cfg.workers, timeout_s=cfg.timeout_s)
    print(tally.summary("mask-merge"))
    return tally
