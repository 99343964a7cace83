#!/usr/bin/env python3

from __future__ import annotations

from pathlib import Path

import geopandas as gpd
import pandas as pd
import pytest
from shapely.geometry import box

from marsh.errors import ConfigError
from marsh.features import thresholds as th
from marsh.features import traps as tr


@pytest.fixture
def zones():
    return gpd.GeoDataFrame(
        {"zone_id": ["78201", "78202"]},
        geometry=[box(-98.6, 29.3, -98.5, 29.5), box(-98.5, 29.3, -98.4, 29.5)],
        crs="EPSG:4326",
    )


def test_load_traps_drops_rows_without_coordinates(tmp_path: Path):
    csv = tmp_path / "traps.csv"
    csv.write_text(
        "trap,date,count,longitude,latitude\n"
        "t1,2021-06-01,12,-98.55,29.4\n"
        "t2,2021-06-01,3,,29.4\n",
        encoding="utf-8",
    )
    traps = tr.load_traps(csv)
    assert traps["trap"].tolist() == ["t1"]
    assert traps.crs.to_epsg() == 4326


def test_join_traps_counts_per_zone_and_date(zones, capsys):
    traps = gpd.GeoDataFrame(
        {
            "date": ["2021-06-01", "2021-06-01", "2021-06-01", "2021-06-08", "2021-06-01"],
            "count": [12, 3, 7, 1, 50],
        },
        geometry=gpd.points_from_xy([-98.55, -98.52, -98.45, -98.45, -97.0], [29.4, 29.4, 29.4, 29.4, 29.4]),
        crs="EPSG:4326",
    )
    out = tr.join_traps(traps, zones)

    assert list(out.columns) == ["zone_id", "date", "traps", "mosquitoes"]
    first = out[out["date"] == pd.Timestamp("2021-06-01")].set_index("zone_id")
    assert first.loc["78201", "traps"] == 2
    assert first.loc["78201", "mosquitoes"] == 15
    assert first.loc["78202", "mosquitoes"] == 7
    assert len(out) == 3
    assert "1 trap records fall outside" in capsys.readouterr().out


def test_join_traps_needs_points_with_crs(zones):
    with pytest.raises(ConfigError):
        tr.join_traps(pd.DataFrame({"date": [], "count": []}), zones)


def test_classify_temperature_right_open_bins():
    table = pd.DataFrame({"zone_id": ["a", "b", "c", "d", "e"], "mean": [15.9, 16.0, 31.9, 32.0, None]})
    out = th.classify_temperature(table, [-50, 16, 22, 32, 60], ["none", "low", "high", "declining"])

    assert out["temperature_class"].tolist()[:4] == ["none", "low", "high", "declining"]
    assert pd.isna(out["temperature_class"].iloc[4])
    assert "temperature_class" not in table.columns


def test_classify_temperature_rejects_out_of_range():
    table = pd.DataFrame({"mean": [20.0, 75.0]})
    with pytest.raises(ValueError, match="outside bins"):
        th.classify_temperature(table, [-50, 16, 22, 32, 60], ["none", "low", "high", "declining"])


def test_validate_bins():
    with pytest.raises(ConfigError):
        th.validate_bins([0, 10, 10], ["a", "b"])
    with pytest.raises(ConfigError):
        th.validate_bins([0, 10, 20], ["a"])
    with pytest.raises(ConfigError):
        th.validate_bins([0], [])
    th.validate_bins([0, 10, 20], ["a", "b"])


def test_temperature_classes_cli_reads_bins_from_config(tmp_path: Path):
    from marsh.features import __main__ as features_cli

    table = tmp_path / "lst.csv"
    table.write_text("zone_id,date,mean\n78201,2021-06-01,5\n78202,2021-06-01,15\n", encoding="utf-8")
    yml = tmp_path / "pipeline.yaml"
    yml.write_text("temperature_classes:\n  bins: [0, 10, 20]\n  labels: [cool, warm]\n", encoding="utf-8")
    out_csv = tmp_path / "classes.csv"

    rc = features_cli.main(
        ["--config", str(yml), "temperature-classes", "--table", str(table), "--out-csv", str(out_csv)]
    )
    assert rc == 0
    assert pd.read_csv(out_csv)["temperature_class"].tolist() == ["cool", "warm"]


def test_trap_counts_cli_dry_run_writes_nothing(tmp_path: Path, capsys):
    from marsh.features import __main__ as features_cli

    out_csv = tmp_path / "counts.csv"
    rc = features_cli.main([
        "--zones-gpkg", str(tmp_path / "zones.gpkg"),
        "--dry-run",
        "trap-counts", "--traps-csv", str(tmp_path / "traps.csv"), "--out-csv", str(out_csv),
    ])
    assert rc == 0
    assert not out_csv.exists()
    assert "[dry-run]" in capsys.readouterr().out


def test_temperature_classes_cli_prefers_gap_filled_mean(tmp_path: Path):
    from marsh.features import __main__ as features_cli

    table = tmp_path / "lst_filled.csv"
    table.write_text(
        "zone_id,date,mean,mean_filled,repair\n"
        "78201,2021-06-01,5,5,observed\n"
        "78201,2021-06-02,99,15,midpoint\n",
        encoding="utf-8",
    )
    yml = tmp_path / "pipeline.yaml"
    yml.write_text("temperature_classes:\n  bins: [0, 10, 20]\n  labels: [cool, warm]\n", encoding="utf-8")
    out_csv = tmp_path / "classes.csv"

    rc = features_cli.main(
        ["--config", str(yml), "temperature-classes", "--table", str(table), "--out-csv", str(out_csv)]
    )
    assert rc == 0
    assert pd.read_csv(out_csv)["temperature_class"].tolist() == ["cool", "warm"]
