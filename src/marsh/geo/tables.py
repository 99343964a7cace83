#!/usr/bin/env python3
"""tables.py

CSV hand-off between zonal aggregation, gap filling and the dashboard exporters.

- zone_id is always read back as a string (ZIPs like 07001 keep their zero)
- date is written as ISO 8601 (YYYY-MM-DD) and read back as datetime64
"""

from __future__ import annotations

from pathlib import Path
from typing import Sequence

import pandas as pd

from marsh.errors import ConfigError

DATE_FORMAT = "%Y-%m-%d"


def write_csv(df: pd.DataFrame, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False, date_format=DATE_FORMAT)
    return path


def read_table(path: Path, required: Sequence[str] = ("zone_id", "date")) -> pd.DataFrame:
    """Read a long-format zone/date table written by write_csv()."""
    if not path.exists():
        raise ConfigError(f"Table not found: {path}")
    df = pd.read_csv(path, dtype={"zone_id": str})
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ConfigError(f"{path} is missing columns {missing}; has {list(df.columns)}")
    if "date" in df.columns:
        df["date"] = pd.to_datetime(df["date"], format=DATE_FORMAT)
    return df
