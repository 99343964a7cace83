#!/usr/bin/env python3

from __future__ import annotations

from pathlib import Path

import geopandas as gpd
import pytest
from shapely.geometry import box

from marsh.errors import ConfigError
from marsh.registry import resolve_zones as rz

ALBERS = "EPSG:5070"


def test_normalize_zip_nums_and_strings():
    assert rz._normalize_zip("78201") == "78201"
    assert rz._normalize_zip(78201) == "78201"
    assert rz._normalize_zip(78201.0) == "78201"
    assert rz._normalize_zip(" 78201 ") == "78201"
    assert rz._normalize_zip("78201-1234") == "78201"
    assert rz._normalize_zip(7001) == "07001"


def test_normalize_zip_emptyish_inputs():
    assert rz._normalize_zip(None) == ""
    assert rz._normalize_zip("") == ""
    assert rz._normalize_zip(float("nan")) == ""
    assert rz._normalize_zip("ABCDE") == ""


def test_pick_field_hints_and_preferred():
    cols = ["OBJECTID", "ZCTA5CE20", "geometry"]
    assert rz._pick_field(cols, rz.ZIP_FIELD_HINTS, None, "ZIP") == "ZCTA5CE20"
    assert rz._pick_field(cols, rz.ZIP_FIELD_HINTS, "OBJECTID", "ZIP") == "OBJECTID"
    with pytest.raises(ConfigError):
        rz._pick_field(cols, rz.ZIP_FIELD_HINTS, "ZIP", "ZIP")
    with pytest.raises(ConfigError):
        rz._pick_field(["OBJECTID"], rz.ZIP_FIELD_HINTS, None, "ZIP")


@pytest.fixture
def layers(tmp_path: Path):
    """County 10x10 km, basin covering its west 6 km, four ZIPs."""
    county = gpd.GeoDataFrame(
        {"NAME": ["Bexar County", "Comal County"]},
        geometry=[box(0, 0, 10_000, 10_000), box(10_000, 0, 20_000, 10_000)],
        crs=ALBERS,
    )
    basin = gpd.GeoDataFrame({"AQ_NAME": ["Edwards"]}, geometry=[box(-5_000, -5_000, 6_000, 15_000)], crs=ALBERS)
    zips = gpd.GeoDataFrame(
        {"ZCTA5CE20": [78201, 78202, 78203, 99999]},
        geometry=[
            box(0, 0, 3_000, 10_000),
            box(3_000, 0, 5_990, 10_000),
            # only a 10 m strip of this one falls inside the basin
            box(5_990, 0, 9_000, 10_000),
            box(30_000, 0, 40_000, 10_000),
        ],
        crs=ALBERS,
    )
    paths = {}
    for name, gdf in (("county", county), ("basin", basin), ("zips", zips)):
        paths[name] = tmp_path / f"{name}.gpkg"
        gdf.to_file(paths[name], driver="GPKG")
    return paths


def _resolve(layers, tmp_path, **kw):
    return rz.resolve_zones(
        layers["county"],
        layers["basin"],
        layers["zips"],
        tmp_path / "out" / "zones.gpkg",
        county_name="bexar",
        area_crs=ALBERS,
        **kw,
    )


def test_resolve_zones_drops_slivers_and_outsiders(layers, tmp_path: Path):
    zones, boundary = _resolve(layers, tmp_path)

    assert list(zones["zone_id"]) == ["78201", "78202"]
    assert set(zones["zone_id"]) <= {"78201", "78202", "78203", "99999"}
    assert (zones["area_m2"] >= 1_000_000.0).all()
    assert zones.loc[zones["zone_id"] == "78201", "area_m2"].iloc[0] == pytest.approx(3.0e7, rel=1e-6)
    assert boundary["area_m2"].iloc[0] == pytest.approx(6.0e7, rel=1e-6)
    assert zones.crs.to_epsg() == 4326


def test_resolve_zones_min_area_zero_keeps_slivers(layers, tmp_path: Path):
    zones, _ = _resolve(layers, tmp_path, min_area_m2=0.0)
    assert list(zones["zone_id"]) == ["78201", "78202", "78203"]


def test_resolve_zones_writes_loadable_layers(layers, tmp_path: Path):
    _resolve(layers, tmp_path)
    gpkg = tmp_path / "out" / "zones.gpkg"

    zones = rz.load_zones(gpkg)
    boundary = rz.load_boundary(gpkg)
    assert zones["zone_id"].tolist() == ["78201", "78202"]
    assert len(boundary) == 1


def test_unknown_county_fails_before_output(layers, tmp_path: Path):
    with pytest.raises(ConfigError, match="Travis"):
        rz.resolve_zones(
            layers["county"], layers["basin"], layers["zips"], tmp_path / "zones.gpkg", county_name="Travis"
        )
    assert not (tmp_path / "zones.gpkg").exists()


def test_disjoint_basin_is_config_error():
    county = gpd.GeoDataFrame({"NAME": ["Bexar"]}, geometry=[box(0, 0, 10, 10)], crs=ALBERS)
    basin = gpd.GeoDataFrame(geometry=[box(100, 100, 110, 110)], crs=ALBERS)
    with pytest.raises(ConfigError):
        rz.regional_boundary(county, basin)


def test_missing_layer(tmp_path: Path):
    with pytest.raises(ConfigError, match="not found"):
        rz._read_layer(tmp_path / "missing.shp", "County")


def test_load_zones_requires_resolved_gpkg(tmp_path: Path):
    with pytest.raises(ConfigError, match="resolve-zones"):
        rz.load_zones(tmp_path / "zones.gpkg")


def test_registry_cli_resolve_zones(layers, tmp_path: Path):
    from marsh.registry import __main__ as registry_cli

    out = tmp_path / "cli" / "zones.gpkg"
    qa = tmp_path / "cli" / "zones_qa.csv"
    rc = registry_cli.main([
        "resolve-zones",
        "--county-shp", str(layers["county"]),
        "--basin-shp", str(layers["basin"]),
        "--zip-shp", str(layers["zips"]),
        "--county-name", "Bexar",
        "--out-gpkg", str(out),
        "--qa-csv", str(qa),
    ])
    assert rc == 0
    assert rz.load_zones(out)["zone_id"].tolist() == ["78201", "78202"]
    assert qa.exists()


def test_registry_cli_dry_run_writes_nothing(layers, tmp_path: Path):
    from marsh.registry import __main__ as registry_cli

    out = tmp_path / "dry" / "zones.gpkg"
    rc = registry_cli.main([
        "--dry-run",
        "resolve-zones",
        "--county-shp", str(layers["county"]),
        "--basin-shp", str(layers["basin"]),
        "--zip-shp", str(layers["zips"]),
        "--county-name", "Bexar",
        "--out-gpkg", str(out),
    ])
    assert rc == 0
    assert not out.exists()


def test_overlapping_zips_are_made_disjoint(layers, tmp_path: Path):
    # 78201 and 78202 share a 2 km x 10 km strip
    zips = gpd.GeoDataFrame(
        {"ZCTA5CE20": [78202, 78201]},
        geometry=[box(1_000, 0, 5_000, 10_000), box(0, 0, 3_000, 10_000)],
        crs=ALBERS,
    )
    zips.to_file(layers["zips"], driver="GPKG")

    zones, _ = _resolve(layers, tmp_path)
    area = dict(zip(zones["zone_id"], zones["area_m2"]))

    assert area["78201"] == pytest.approx(30_000_000, rel=1e-6)
    assert area["78202"] == pytest.approx(20_000_000, rel=1e-6)
    assert rz._overlap_area_m2(zones, ALBERS) == pytest.approx(0.0, abs=1.0)


def test_remove_overlaps_drops_fully_covered_zone():
    zones = gpd.GeoDataFrame(
        {"zone_id": ["78202", "78201", "78203"]},
        geometry=[box(1, 1, 2, 2), box(0, 0, 3, 3), box(3, 0, 4, 3)],
        crs=ALBERS,
    )
    kept, emptied = rz.remove_overlaps(zones)

    assert kept["zone_id"].tolist() == ["78201", "78203"]
    assert emptied == ["78202"]
    assert kept.geometry.area.tolist() == [9.0, 3.0]
