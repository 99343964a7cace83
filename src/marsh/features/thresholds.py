#!/usr/bin/env python3
"""thresholds.py

Classify zonal mean temperature into transmission-suitability classes.

The bins come from config, e.g. for West Nile virus in Culex:

  temperature_classes:
    bins:   [-50, 16, 22, 32, 60]
    labels: [none, low, high, declining]

Bins are right-open ([lo, hi)). A value outside every bin is an error, not a
silent NaN; missing values stay unclassified.
"""

from __future__ import annotations

from typing import Sequence

import pandas as pd

from marsh.errors import ConfigError


def validate_bins(bins: Sequence[float], labels: Sequence[str]) -> None:
    if len(bins) < 2:
        raise ConfigError("temperature bins need at least two edges")
    if any(hi <= lo for lo, hi in zip(bins[:-1], bins[1:])):
        raise ConfigError(f"temperature bins must be strictly increasing: {list(bins)}")
    if len(labels) != len(bins) - 1:
        raise ConfigError(f"expected {len(bins) - 1} labels for {len(bins)} bin edges, got {len(labels)}")


def classify_temperature(
    table: pd.DataFrame,
    bins: Sequence[float],
    labels: Sequence[str],
    *,
    value_col: str = "mean",
    out_col: str = "temperature_class",
) -> pd.DataFrame:
    """Return a copy of table with out_col holding the class label per row."""
    validate_bins(bins, labels)
    if value_col not in table.columns:
        raise ConfigError(f"Table lacks column '{value_col}'")

    values = pd.to_numeric(table[value_col], errors="coerce")
    classes = pd.cut(values, bins=list(bins), labels=list(labels), right=False)

    outside = values.notna() & classes.isna()
    if outside.any():
        shown = values[outside].round(2).tolist()[:10]
        raise ValueError(f"{int(outside.sum())} values fall outside bins {list(bins)}: {shown}")

    out = table.copy()
    out[out_col] = classes.astype("string")
    return out
