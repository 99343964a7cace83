#!/usr/bin/env python3
"""traps.py

Join mosquito trap records (point locations with a collection date and a count)
onto the zones and total them per zone and date.

Output columns: zone_id, date, traps, mosquitoes
- traps       → number of trap records in the zone that day
- mosquitoes  → sum of the count column

Trap points are reprojected into the zone CRS before the join. Points falling in
no zone are reported and left out.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Union

import geopandas as gpd
import pandas as pd

from marsh.errors import ConfigError

logger = logging.getLogger(__name__)


def load_traps(
    path: Path,
    *,
    lon_col: str = "longitude",
    lat_col: str = "latitude",
    crs: str = "EPSG:4326",
) -> gpd.GeoDataFrame:
    """Read a trap CSV into points. Rows without coordinates are dropped."""
    if not path.exists():
        raise ConfigError(f"Trap table not found: {path}")
    df = pd.read_csv(path)
    for c in (lon_col, lat_col):
        if c not in df.columns:
            raise ConfigError(f"Trap table lacks column '{c}'. Columns: {list(df.columns)}")

    no_xy = df[lon_col].isna() | df[lat_col].isna()
    if no_xy.any():
        logger.warning("Dropping %d trap rows without coordinates", int(no_xy.sum()))
        df = df[~no_xy]
    return gpd.GeoDataFrame(df, geometry=gpd.points_from_xy(df[lon_col], df[lat_col]), crs=crs)


def join_traps(
    traps: Union[gpd.GeoDataFrame, pd.DataFrame],
    zones: gpd.GeoDataFrame,
    *,
    date_col: str = "date",
    count_col: str = "count",
) -> pd.DataFrame:
    """Count trap records and mosquitoes per zone and date."""
    if not isinstance(traps, gpd.GeoDataFrame) or traps.crs is None:
        raise ConfigError("Trap points need a geometry column and a CRS (see load_traps)")
    for c in (date_col, count_col):
        if c not in traps.columns:
            raise ConfigError(f"Trap table lacks column '{c}'")

    points = traps.to_crs(zones.crs)
    joined = gpd.sjoin(points, zones[["zone_id", "geometry"]], how="left", predicate="within")

    outside = joined["zone_id"].isna()
    if outside.any():
        print(f"[trap-counts] {int(outside.sum())} trap records fall outside every zone")
    joined = joined[~outside]

    joined = joined.assign(
        date=pd.to_datetime(joined[date_col]).dt.normalize(),
        mosquitoes=pd.to_numeric(joined[count_col], errors="coerce").fillna(0),
    )
    out = (
        joined.groupby(["zone_id", "date"], as_index=False)
        .agg(traps=("mosquitoes", "size"), mosquitoes=("mosquitoes", "sum"))
        .sort_values(["date", "zone_id"])
        .reset_index(drop=True)
    )
    return out
