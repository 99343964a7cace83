#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

# Ensure we can import from src/ without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

UTM = "EPSG:32614"


@pytest.fixture
def write_tif():
    """Write a single-band GeoTIFF: write_tif(path, array, transform, crs=UTM, nodata=None)."""
    import rasterio

    def _write(path: Path, array, transform, crs=UTM, nodata=None) -> Path:
        array = np.asarray(array)
        path.parent.mkdir(parents=True, exist_ok=True)
        profile = {
            "driver": "GTiff",
            "height": array.shape[0],
            "width": array.shape[1],
            "count": 1,
            "dtype": array.dtype.name,
            "crs": crs,
            "transform": transform,
            "nodata": nodata,
        }
        with rasterio.open(path, "w", **profile) as dst:
            dst.write(array, 1)
        return path

    return _write
