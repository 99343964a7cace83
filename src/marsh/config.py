#!/usr/bin/env python3
"""marsh.config

Shared configuration utilities for the marsh CLI subsystems.

This module provides the helpers used across marsh.registry, marsh.geo and
marsh.features, plus the PipelineConfig object that is passed explicitly to
every pipeline step.

Design notes:
- YAML loading is strict: files must exist and be valid mappings.
- Every path is explicit. Nothing here reads the working directory or
  environment; relative paths in YAML are resolved against the YAML file.
- All functions are pure (no side effects on import).
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml

from marsh.errors import ConfigError


# -----------------------------------------------------------------------------
# YAML loading
# -----------------------------------------------------------------------------

def load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML file and return as dict.

    Raises ConfigError on missing file or invalid format (non-mapping).
    """
    if not path.exists():
        raise ConfigError(f"Config not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ConfigError(f"Expected YAML mapping at {path}")
    return data


# -----------------------------------------------------------------------------
# Dates
# -----------------------------------------------------------------------------
# YAML hands back datetime.date for unquoted 2021-06-14, str for quoted ones.

DATE_TOKEN_FORMAT = "%Y%m%d"


def parse_date(x: Any) -> dt.date:
    """Coerce a YAML/CLI value into a date.

    Accepts date/datetime objects, ISO strings ("2021-06-14") and compact
    strings ("20210614").
    """
    if isinstance(x, dt.datetime):
        return x.date()
    if isinstance(x, dt.date):
        return x
    s = str(x).strip()
    for fmt in ("%Y-%m-%d", DATE_TOKEN_FORMAT):
        try:
            return dt.datetime.strptime(s, fmt).date()
        except ValueError:
            continue
    raise ConfigError(f"Unrecognized date: {x!r} (expected YYYY-MM-DD or YYYYMMDD)")


def parse_date_list(values: Optional[Iterable[Any]]) -> List[dt.date]:
    """Parse a list of dates, sorted and de-duplicated."""
    if not values:
        return []
    if isinstance(values, (str, dt.date)):
        values = [values]
    return sorted({parse_date(v) for v in values})


def date_token(d: dt.date) -> str:
    """Compact date string used in raster filenames."""
    return d.strftime(DATE_TOKEN_FORMAT)


# -----------------------------------------------------------------------------
# Units
# -----------------------------------------------------------------------------

# Square meters per output area unit
AREA_UNITS: Dict[str, float] = {
    "acre": 4046.86,
    "hectare": 10_000.0,
    "km2": 1_000_000.0,
    "m2": 1.0,
}

PIXEL_RULES = ("area", "center")
UNDERFLOW_POLICIES = ("error", "drop")


def area_unit_factor(unit: str) -> float:
    try:
        return AREA_UNITS[unit]
    except KeyError:
        raise ConfigError(f"Unknown area unit '{unit}'. Choose from: {sorted(AREA_UNITS)}") from None


def format_bbox(b: Tuple[float, float, float, float], precision: int = 5) -> str:
    """Format a bbox tuple as a readable string."""
    return f"[{b[0]:.{precision}f}, {b[1]:.{precision}f}, {b[2]:.{precision}f}, {b[3]:.{precision}f}]"


# -----------------------------------------------------------------------------
# Pipeline configuration
# -----------------------------------------------------------------------------

# Centralized so all CLIs use the same defaults.
DEFAULT_PIPELINE_YAML = Path("config/pipeline.yaml")
DEFAULT_ZONES_GPKG = Path("data/interim/vectors/zones.gpkg")

_PATH_FIELDS = ("zones_gpkg", "tile_dir", "clipped_dir", "out_csv")
_DATE_FIELDS = ("drop_dates", "midpoint_dates", "interpolate_dates", "calendar")


@dataclass(frozen=True)
class PipelineConfig:
    """Everything the mask/merge → zonal → gap-fill pipeline needs.

    Built once (from YAML, then CLI overrides) and handed to each step.
    """

    # Inputs
    zones_gpkg: Path = DEFAULT_ZONES_GPKG
    zones_layer: str = "zones"
    boundary_layer: str = "boundary"
    tile_dir: Path = Path("data/raw/dswe")
    tile_ids: Tuple[str, ...] = ()
    tile_pattern: str = "{tile}_{date}_INWM.tif"
    mask_pattern: str = "{tile}_{date}_MASK.tif"
    mask_invalid_values: Tuple[float, ...] = (1,)
    nodata: float = 255

    # Hand-off directory between mask/merge and zonal aggregation
    clipped_dir: Path = Path("data/interim/rasters/clipped")
    clipped_prefix: str = "water"

    # Aggregation
    pixel_area_m2: float = 900.0
    area_unit: str = "acre"
    pixel_rule: str = "area"
    count_values: Optional[Tuple[float, ...]] = None

    # Zones
    min_area_m2: float = 1_000_000.0

    # Gap filling
    drop_dates: Tuple[dt.date, ...] = ()
    midpoint_dates: Tuple[dt.date, ...] = ()
    interpolate_dates: Tuple[dt.date, ...] = ()
    calendar: Tuple[dt.date, ...] = ()
    on_underflow: str = "error"

    # Batch
    workers: int = 1
    timeout_s: Optional[float] = None

    out_csv: Path = Path("data/processed/water_area_by_zip.csv")

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        area_unit_factor(self.area_unit)
        if self.pixel_rule not in PIXEL_RULES:
            raise ConfigError(f"pixel_rule must be one of {PIXEL_RULES}, got '{self.pixel_rule}'")
        if self.on_underflow not in UNDERFLOW_POLICIES:
            raise ConfigError(f"on_underflow must be one of {UNDERFLOW_POLICIES}, got '{self.on_underflow}'")
        if self.pixel_area_m2 <= 0:
            raise ConfigError(f"pixel_area_m2 must be positive, got {self.pixel_area_m2}")
        if self.workers < 1:
            raise ConfigError(f"workers must be >= 1, got {self.workers}")
        if "{tile}" not in self.tile_pattern or "{date}" not in self.tile_pattern:
            raise ConfigError("tile_pattern must contain {tile} and {date} placeholders")
        if "{tile}" not in self.mask_pattern or "{date}" not in self.mask_pattern:
            raise ConfigError("mask_pattern must contain {tile} and {date} placeholders")

        # Drop / midpoint / interpolate must be disjoint
        sets = {
            "drop_dates": set(self.drop_dates),
            "midpoint_dates": set(self.midpoint_dates),
            "interpolate_dates": set(self.interpolate_dates),
        }
        names = list(sets)
        for i, a in enumerate(names):
            for b in names[i + 1:]:
                both = sets[a] & sets[b]
                if both:
                    shown = ", ".join(d.isoformat() for d in sorted(both))
                    raise ConfigError(f"Dates listed in both {a} and {b}: {shown}")

    @property
    def area_unit_m2(self) -> float:
        return area_unit_factor(self.area_unit)

    def with_overrides(self, **overrides: Any) -> "PipelineConfig":
        """Return a copy with non-None overrides applied (CLI flags win over YAML)."""
        clean = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **_coerce(clean)) if clean else self

    @classmethod
    def from_mapping(cls, data: Dict[str, Any], base_dir: Optional[Path] = None) -> "PipelineConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown pipeline config keys: {unknown}")
        values = _coerce(data)
        if base_dir is not None:
            for name in _PATH_FIELDS:
                p = values.get(name)
                if p is not None and not p.is_absolute():
                    values[name] = base_dir / p
        return cls(**values)

    @classmethod
    def from_yaml(cls, path: Path) -> "PipelineConfig":
        """Load the `pipeline:` block (or the whole mapping) from a YAML file."""
        data = load_yaml(path)
        block = data.get("pipeline", data)
        if not isinstance(block, dict):
            raise ConfigError(f"{path}: 'pipeline' must be a mapping")
        return cls.from_mapping(block, base_dir=path.resolve().parent)


def _coerce(values: Dict[str, Any]) -> Dict[str, Any]:
    """Convert YAML scalars/lists into the dataclass field types."""
    out = dict(values)
    for name in _PATH_FIELDS:
        if name in out and out[name] is not None:
            out[name] = Path(out[name])
    for name in _DATE_FIELDS:
        if name in out:
            out[name] = tuple(parse_date_list(out[name]))
    if "tile_ids" in out:
        out["tile_ids"] = tuple(str(t) for t in (out["tile_ids"] or ()))
    if "mask_invalid_values" in out:
        v = out["mask_invalid_values"]
        out["mask_invalid_values"] = tuple(float(x) for x in (v if isinstance(v, (list, tuple)) else [v]))
    if out.get("count_values") is not None:
        v = out["count_values"]
        out["count_values"] = tuple(float(x) for x in (v if isinstance(v, (list, tuple)) else [v]))
    for name in ("pixel_area_m2", "min_area_m2", "nodata"):
        if name in out and out[name] is not None:
            out[name] = float(out[name])
    if out.get("timeout_s") is not None:
        out["timeout_s"] = float(out["timeout_s"])
    if "workers" in out:
        out["workers"] = int(out["workers"])
    return out

