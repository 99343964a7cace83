#!/usr/bin/env python3

from __future__ import annotations

import datetime as dt
from pathlib import Path

import geopandas as gpd
import numpy as np
import pytest
from rasterio.crs import CRS
from rasterio.transform import from_origin
from shapely.geometry import Polygon

from marsh.config import PipelineConfig
from marsh.errors import ConfigError, DateSkipped
from marsh.geo import mask_merge as mm

UTM = "EPSG:32614"
NODATA = 255


def _tile(tile_id, array, x0, y0=60.0, res=30.0):
    return mm.MaskedTile(
        tile_id=tile_id,
        array=np.asarray(array, dtype=np.uint8),
        transform=from_origin(x0, y0, res, res),
        crs=CRS.from_string(UTM),
        nodata=NODATA,
    )


def test_mask_tile_sets_invalid_and_nodata_pixels(tmp_path: Path, write_tif):
    t = from_origin(0, 60, 30, 30)
    tile = write_tif(tmp_path / "a.tif", np.array([[1, 0], [2, 9]], dtype=np.uint8), t, nodata=9)
    qa = write_tif(tmp_path / "a_mask.tif", np.array([[0, 1], [0, 0]], dtype=np.uint8), t)

    out = mm.mask_tile(tile, qa, invalid_values=(1,), nodata=NODATA, tile_id="a")
    assert out.array.tolist() == [[1, NODATA], [2, NODATA]]
    assert out.res == (30.0, 30.0)


def test_mask_tile_missing_mask_skips(tmp_path: Path, write_tif):
    tile = write_tif(tmp_path / "a.tif", np.ones((2, 2), dtype=np.uint8), from_origin(0, 60, 30, 30))
    with pytest.raises(DateSkipped, match="missing mask"):
        mm.mask_tile(tile, tmp_path / "a_mask.tif", invalid_values=(1,), nodata=NODATA, date="2021-06-01")


def test_mask_tile_misaligned_mask_skips(tmp_path: Path, write_tif):
    tile = write_tif(tmp_path / "a.tif", np.ones((2, 2), dtype=np.uint8), from_origin(0, 60, 30, 30))
    qa = write_tif(tmp_path / "a_mask.tif", np.zeros((2, 2), dtype=np.uint8), from_origin(30, 60, 30, 30))
    with pytest.raises(DateSkipped, match="grid"):
        mm.mask_tile(tile, qa, invalid_values=(1,), nodata=NODATA)


def test_merge_first_tile_wins_on_overlap():
    a = _tile("a", [[1, 1], [1, NODATA]], x0=0)
    b = _tile("b", [[2, 2], [2, 2]], x0=30)

    merged, transform, crs = mm.merge_tiles([a, b], NODATA)
    assert merged.shape == (2, 3)
    # column 1 overlaps: a wins where valid, b fills a's nodata
    assert merged.tolist() == [[1, 1, 2], [1, 2, 2]]
    assert transform.c == 0 and transform.f == 60
    assert crs == CRS.from_string(UTM)


def test_merge_rejects_mixed_resolutions():
    a = _tile("a", [[1, 1], [1, 1]], x0=0)
    b = _tile("b", [[2]], x0=60, res=60.0)
    with pytest.raises(ConfigError, match="resolutions differ"):
        mm.merge_tiles([a, b], NODATA)


def test_clip_to_boundary_is_idempotent():
    array = np.ones((2, 3), dtype=np.uint8)
    transform = from_origin(0, 60, 30, 30)
    # cuts off the pixel centred at (15, 45)
    shape = Polygon([(0, 0), (90, 0), (90, 60), (35, 60), (0, 25)])
    boundary = gpd.GeoDataFrame(geometry=[shape], crs=UTM)

    once, t1 = mm.clip_to_boundary(array, transform, UTM, boundary, NODATA)
    assert once[0, 0] == NODATA
    assert int((once == 1).sum()) == 5

    twice, t2 = mm.clip_to_boundary(once, t1, UTM, boundary, NODATA)
    assert np.array_equal(once, twice)
    assert t1 == t2


def test_write_raster_leaves_no_partial_file(tmp_path: Path):
    import rasterio

    out = tmp_path / "clipped" / "water_20210601.tif"
    mm.write_raster(out, np.ones((2, 2), dtype=np.uint8), from_origin(0, 60, 30, 30), UTM, NODATA)
    assert out.exists()
    assert not list(out.parent.glob("*.part"))
    with rasterio.open(out) as src:
        assert src.nodata == NODATA
        assert src.read(1).sum() == 4


def test_discover_dates_and_list_clipped(tmp_path: Path):
    tiles = tmp_path / "tiles"
    tiles.mkdir()
    for name in ("h1_20210601_INWM.tif", "h1_20210615_INWM.tif", "h2_20210620_INWM.tif", "h1_2021061_INWM.tif"):
        (tiles / name).touch()
    clipped = tmp_path / "clipped"
    clipped.mkdir()
    (clipped / "water_20210601.tif").touch()
    (clipped / "water_20210601.tif.part").touch()

    assert mm.discover_dates(tiles, "{tile}_{date}_INWM.tif", "h1") == [dt.date(2021, 6, 1), dt.date(2021, 6, 15)]

    cfg = PipelineConfig(clipped_dir=clipped)
    assert mm.list_clipped(cfg) == {dt.date(2021, 6, 1): clipped / "water_20210601.tif"}
    assert mm.clipped_path(cfg, dt.date(2021, 6, 15)).name == "water_20210615.tif"


def test_mask_merge_all_requires_tile_ids(tmp_path: Path):
    boundary = gpd.GeoDataFrame(geometry=[Polygon([(0, 0), (1, 0), (1, 1)])], crs=UTM)
    with pytest.raises(ConfigError, match="tile_ids"):
        mm.mask_merge_all(PipelineConfig(tile_dir=tmp_path), boundary)


def test_date_missing_one_tile_is_reported_skipped(tmp_path: Path):
    tiles = tmp_path / "tiles"
    tiles.mkdir()
    # only the second tile exists for this date
    (tiles / "h2_20210620_INWM.tif").touch()
    cfg = PipelineConfig(tile_dir=tiles, clipped_dir=tmp_path / "clipped", tile_ids=("h1", "h2"))
    boundary = gpd.GeoDataFrame(geometry=[Polygon([(0, 0), (1, 0), (1, 1)])], crs=UTM)

    tally = mm.mask_merge_all(cfg, boundary)

    assert tally.total == 1
    assert "missing tile h1_20210620_INWM.tif" in tally.skipped[dt.date(2021, 6, 20)]
