#!/usr/bin/env python3
"""gapfill.py

Repair known-bad dates in the per-zone time series produced by zonal.py.

Each (zone, date) row gets exactly one state, keyed only by the date:
- dropped          → date in drop_dates; the row is removed from the output
- flagged-midpoint → date in midpoint_dates; value = mean of the previous and
                     next dates' values (in date order, same zone)
- flagged-missing  → date in interpolate_dates, a calendar date with no row, or
                     a row with a NaN value; cleared, then filled by linear
                     interpolation in time between the nearest known points
- observed         → everything else; kept as is

Rules:
- Zones never borrow from each other; every zone is filled on its own.
- No extrapolation. A flagged date at the edge of a series (or a midpoint whose
  neighbour is missing or itself midpoint-flagged) is an underflow: raise
  GapFillError (on_underflow="error") or drop the row (on_underflow="drop").
  Never leave the original value in place.
- Count columns are rounded to the nearest integer after filling; area columns
  are not.

Output keeps the original columns and adds <col>_filled plus a `repair` column
(observed / midpoint / interpolated). When both raw_count and valid_pixels are
filled, mean_filled = raw_count_filled / valid_pixels_filled is added too (taken
before count rounding; NaN for zones with no valid pixels). The original `mean`
is never used to fill: it is NaN on zero-pixel zones, not missing.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from marsh.config import PipelineConfig
from marsh.errors import ConfigError, GapFillError

logger = logging.getLogger(__name__)

OBSERVED = "observed"
FLAGGED_MIDPOINT = "flagged-midpoint"
FLAGGED_MISSING = "flagged-missing"
DROPPED = "dropped"

# repair annotation written to the output, per terminal state
REPAIR_LABELS = {
    OBSERVED: "observed",
    FLAGGED_MIDPOINT: "midpoint",
    FLAGGED_MISSING: "interpolated",
}

VALUE_COLUMNS = ("raw_count", "valid_pixels", "area")
COUNT_COLUMNS = ("raw_count", "valid_pixels")


def _stamps(dates: Iterable[dt.date]) -> FrozenSet[pd.Timestamp]:
    return frozenset(pd.Timestamp(d).normalize() for d in dates)


@dataclass(frozen=True)
class GapFillPlan:
    drop_dates: FrozenSet[pd.Timestamp] = frozenset()
    midpoint_dates: FrozenSet[pd.Timestamp] = frozenset()
    interpolate_dates: FrozenSet[pd.Timestamp] = frozenset()
    calendar: Tuple[pd.Timestamp, ...] = ()
    on_underflow: str = "error"

    def __post_init__(self) -> None:
        if self.on_underflow not in ("error", "drop"):
            raise ConfigError(f"on_underflow must be 'error' or 'drop', got '{self.on_underflow}'")
        pairs = [
            ("drop", self.drop_dates, "midpoint", self.midpoint_dates),
            ("drop", self.drop_dates, "interpolate", self.interpolate_dates),
            ("midpoint", self.midpoint_dates, "interpolate", self.interpolate_dates),
        ]
        for a, sa, b, sb in pairs:
            both = sa & sb
            if both:
                shown = ", ".join(t.date().isoformat() for t in sorted(both))
                raise ConfigError(f"Dates flagged both {a} and {b}: {shown}")

    @classmethod
    def build(
        cls,
        *,
        drop: Iterable[dt.date] = (),
        midpoint: Iterable[dt.date] = (),
        interpolate: Iterable[dt.date] = (),
        calendar: Iterable[dt.date] = (),
        on_underflow: str = "error",
    ) -> "GapFillPlan":
        return cls(
            drop_dates=_stamps(drop),
            midpoint_dates=_stamps(midpoint),
            interpolate_dates=_stamps(interpolate),
            calendar=tuple(sorted(_stamps(calendar))),
            on_underflow=on_underflow,
        )

    @classmethod
    def from_config(cls, cfg: PipelineConfig) -> "GapFillPlan":
        return cls.build(
            drop=cfg.drop_dates,
            midpoint=cfg.midpoint_dates,
            interpolate=cfg.interpolate_dates,
            calendar=cfg.calendar,
            on_underflow=cfg.on_underflow,
        )

    def state_for(self, date: pd.Timestamp) -> str:
        if date in self.drop_dates:
            return DROPPED
        if date in self.midpoint_dates:
            return FLAGGED_MIDPOINT
        if date in self.interpolate_dates:
            return FLAGGED_MISSING
        return OBSERVED


# -----------------------------------------------------------------------------
# Per-zone filling
# -----------------------------------------------------------------------------

def _has_mean_inputs(columns) -> bool:
    return "raw_count" in columns and "valid_pixels" in columns


def _round_half_up(values: pd.Series) -> pd.Series:
    return np.floor(values + 0.5)


def fill_zone(
    series: pd.DataFrame,
    plan: GapFillPlan,
    value_columns: Sequence[str] = VALUE_COLUMNS,
    count_columns: Sequence[str] = COUNT_COLUMNS,
) -> pd.DataFrame:
    """Gap-fill the rows of a single zone. Returns rows sorted by date."""
    zone_id = str(series["zone_id"].iloc[0])
    frame = series.copy()
    frame["date"] = pd.to_datetime(frame["date"]).dt.normalize()
    if frame["date"].duplicated().any():
        dupes = sorted(frame.loc[frame["date"].duplicated(), "date"].dt.date.astype(str).unique())
        raise ValueError(f"zone {zone_id}: duplicate dates {dupes}")

    # Calendar dates with no observation become rows with no values
    if plan.calendar:
        seen = set(frame["date"])
        absent = [d for d in plan.calendar if d not in seen]
        if absent:
            frame = pd.concat(
                [frame, pd.DataFrame({"zone_id": zone_id, "date": absent})],
                ignore_index=True,
            )

    frame = frame.sort_values("date").reset_index(drop=True)
    state = frame["date"].map(plan.state_for)
    no_value = frame[list(value_columns)].isna().any(axis=1)
    state = state.where(~((state == OBSERVED) & no_value), FLAGGED_MISSING)

    # dropped → absent
    keep = state != DROPPED
    frame, state = frame[keep].reset_index(drop=True), state[keep].reset_index(drop=True)
    if frame.empty:
        empty = frame.assign(**{f"{c}_filled": pd.Series(dtype=float) for c in value_columns}, repair=pd.Series(dtype=str))
        return empty.assign(mean_filled=pd.Series(dtype=float)) if _has_mean_inputs(value_columns) else empty

    # Known-bad values never anchor the interpolation
    filled = frame[list(value_columns)].astype(float)
    filled.loc[state != OBSERVED] = np.nan
    filled.index = pd.DatetimeIndex(frame["date"])
    filled = filled.interpolate(method="time", limit_area="inside")
    filled = filled.reset_index(drop=True)

    underflow = (state == FLAGGED_MISSING) & filled.isna().any(axis=1)

    # Midpoint from the lag-1 / lead-1 rows of this zone
    mids = np.flatnonzero((state == FLAGGED_MIDPOINT).to_numpy())
    for i in mids:
        prev_ok = i > 0 and state.iat[i - 1] != FLAGGED_MIDPOINT and not underflow.iat[i - 1]
        next_ok = i < len(frame) - 1 and state.iat[i + 1] != FLAGGED_MIDPOINT and not underflow.iat[i + 1]
        if not (prev_ok and next_ok):
            underflow.iat[i] = True
            continue
        mid = (filled.iloc[i - 1] + filled.iloc[i + 1]) / 2.0
        if mid.isna().any():
            underflow.iat[i] = True
            continue
        filled.iloc[i] = mid

    if underflow.any():
        bad = frame.loc[underflow, "date"].dt.date.astype(str).tolist()
        if plan.on_underflow == "error":
            raise GapFillError(
                f"zone {zone_id}: not enough neighbouring data to repair {bad}; "
                "add these dates to drop_dates or set on_underflow: drop"
            )
        logger.warning("zone %s: dropping unrepairable dates %s", zone_id, bad)
        frame, state, filled = frame[~underflow], state[~underflow], filled[~underflow]

    mean_filled = None
    if _has_mean_inputs(filled.columns):
        covered = filled["valid_pixels"]
        mean_filled = (filled["raw_count"] / covered.where(covered > 0)).to_numpy()

    repaired = (state != OBSERVED).to_numpy()
    for c in count_columns:
        if c in filled.columns:
            filled.loc[repaired, c] = _round_half_up(filled.loc[repaired, c])

    out = frame.reset_index(drop=True)
    for c in value_columns:
        out[f"{c}_filled"] = filled[c].to_numpy()
    if mean_filled is not None:
        out["mean_filled"] = mean_filled
    out["repair"] = state.map(REPAIR_LABELS).to_numpy()
    return out


def gap_fill(
    table: pd.DataFrame,
    plan: GapFillPlan,
    value_columns: Sequence[str] = VALUE_COLUMNS,
    count_columns: Sequence[str] = COUNT_COLUMNS,
) -> pd.DataFrame:
    """Gap-fill every zone of a long (zone_id, date, ...) table independently."""
    missing = [c for c in ("zone_id", "date", *value_columns) if c not in table.columns]
    if missing:
        raise ConfigError(f"Table is missing columns {missing}")

    pieces: List[pd.DataFrame] = [
        fill_zone(group, plan, value_columns, count_columns)
        for _, group in table.groupby("zone_id", sort=True)
    ]
    if not pieces:
        return table.assign(**{f"{c}_filled": [] for c in value_columns}, repair=[])
    out = pd.concat(pieces, ignore_index=True)
    return out.sort_values(["date", "zone_id"]).reset_index(drop=True)


def summarize(filled: pd.DataFrame) -> str:
    counts = filled["repair"].value_counts()
    parts = [f"{label}={int(counts.get(label, 0))}" for label in REPAIR_LABELS.values()]
    return f"[gap-fill] {filled['zone_id'].nunique()} zones, {filled['date'].nunique()} dates: " + " ".join(parts)


def gap_fill_config(table: pd.DataFrame, cfg: PipelineConfig, value_columns: Optional[Sequence[str]] = None) -> pd.DataFrame:
    """gap_fill() with the plan taken from the pipeline config."""
    cols = tuple(value_columns) if value_columns else tuple(c for c in VALUE_COLUMNS if c in table.columns)
    out = gap_fill(table, GapFillPlan.from_config(cfg), cols, [c for c in COUNT_COLUMNS if c in cols])
    print(summarize(out))
    return out
